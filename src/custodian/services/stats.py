from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class RuntimeStats:
    started_at: float = field(default_factory=time.time)
    tasks_enqueued: int = 0
    tasks_executed: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    events_published: int = 0
    cascades_skipped: int = 0

    def uptime_seconds(self) -> int:
        return int(time.time() - self.started_at)
