from __future__ import annotations

import logging


def setup_logging(level: str = "INFO") -> None:
    resolved = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # aiosqlite logs every proxied call at DEBUG
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
