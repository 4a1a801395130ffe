from __future__ import annotations

import asyncio
import logging

from dotenv import load_dotenv

from .config import load_settings
from .database import get_database_info
from .logging_setup import setup_logging
from .runtime import Custodian

log = logging.getLogger("custodian.main")


async def _serve(custodian: Custodian) -> None:
    await custodian.setup()
    info = await get_database_info(custodian.settings.sqlite_path)
    log.info("Database %s: %d tables, %d bytes", custodian.settings.sqlite_path, info["table_count"], info["size_bytes"])

    custodian.start()
    try:
        await asyncio.Event().wait()
    finally:
        await custodian.close()


def main() -> None:
    load_dotenv()
    settings = load_settings()
    setup_logging(settings.log_level)

    custodian = Custodian(settings)
    try:
        asyncio.run(_serve(custodian))
    except KeyboardInterrupt:
        log.info("Interrupted")


if __name__ == "__main__":
    main()
