from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

_ONE_MS = timedelta(milliseconds=1)


@dataclass(frozen=True)
class LiveCadenceLimiter:
    """Minimum wall-clock spacing between successful live runs."""

    min_interval_seconds: int

    def validate(self) -> None:
        if self.min_interval_seconds <= 0:
            raise ValueError("min_interval_seconds must be > 0")

    def retry_after_seconds(self, last_live_at: datetime | None, now: datetime) -> int:
        """Whole seconds (ceiling) until the next live run is allowed; 0 when allowed."""

        if last_live_at is None:
            return 0
        elapsed_ms = (now - last_live_at) // _ONE_MS
        window_ms = self.min_interval_seconds * 1000
        if elapsed_ms >= window_ms:
            return 0
        wait_ms = max(0, window_ms - elapsed_ms)
        return math.ceil(wait_ms / 1000)

    def is_allowed(self, last_live_at: datetime | None, now: datetime) -> bool:
        return self.retry_after_seconds(last_live_at, now) == 0
