from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from autocycle.domain.state import CycleState
from autocycle.persistence.json_files import read_json_object, write_json_atomic

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


class CycleStateStore:
    """Load and rewrite the whole cycle state document.

    There is no partial update: callers mutate the loaded ``CycleState`` and
    hand it back to ``persist``.
    """

    def __init__(self, path: str | Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.path = Path(path)
        self._clock = clock

    def load(self) -> CycleState:
        now = self._clock()
        payload = read_json_object(self.path)
        if payload is None:
            logger.info("cycle_state_defaults", extra={"extra": {"state_path": str(self.path)}})
            return CycleState.initial(now)
        return CycleState.from_dict(payload, now=now)

    def persist(self, state: CycleState) -> None:
        state.updated_at = self._clock()
        state.compact()
        write_json_atomic(self.path, state.to_dict())
        logger.debug(
            "cycle_state_persisted",
            extra={
                "extra": {
                    "state_path": str(self.path),
                    "active_live_run_id": state.active_live_run_id,
                    "replay_entries": len(state.runs),
                }
            },
        )
