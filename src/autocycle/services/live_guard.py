from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from autocycle.domain.errors import LiveLockActiveError, RateLockActiveError, ReplayBlockedError
from autocycle.domain.state import CycleState, ReplayRecord, ReplayStatus
from autocycle.services.rate_limiter import LiveCadenceLimiter

logger = logging.getLogger(__name__)

DEFAULT_MIN_LIVE_INTERVAL_SECONDS = 300
DEFAULT_LOCK_TTL_SECONDS = 900


@dataclass(frozen=True)
class LiveSafety:
    min_interval_seconds: int = DEFAULT_MIN_LIVE_INTERVAL_SECONDS
    lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS

    def validate(self) -> None:
        if self.min_interval_seconds <= 0:
            raise ValueError("min_interval_seconds must be > 0")
        if self.lock_ttl_seconds <= 0:
            raise ValueError("lock_ttl_seconds must be > 0")

    def to_dict(self, *, state_path: str | Path) -> dict[str, object]:
        return {
            "minLiveIntervalSeconds": self.min_interval_seconds,
            "lockTtlSeconds": self.lock_ttl_seconds,
            "statePath": str(state_path),
        }


def check_replay(state: CycleState, run_id: str) -> None:
    existing = state.runs.get(run_id)
    if existing is not None:
        raise ReplayBlockedError(run_id=run_id, status=existing.status)


def check_lock(state: CycleState, run_id: str, *, now: datetime, lock_ttl_seconds: int) -> None:
    active = state.active_live_run_id
    if not active or active == run_id:
        return
    started_at = state.active_live_started_at
    if started_at is None:
        logger.warning(
            "live_lock_unparsable_start_overridden", extra={"extra": {"active_run_id": active}}
        )
        return
    if now - started_at <= timedelta(seconds=lock_ttl_seconds):
        raise LiveLockActiveError(active_run_id=active, lock_ttl_seconds=lock_ttl_seconds)
    logger.warning(
        "live_lock_expired_overridden",
        extra={
            "extra": {
                "active_run_id": active,
                "active_started_at": started_at.isoformat(),
                "lock_ttl_seconds": lock_ttl_seconds,
            }
        },
    )


def resolve_final_status(*, ok: bool, tx_hash: str | None, error: str | None) -> ReplayStatus:
    if error:
        return ReplayStatus.FAILED
    if ok:
        return ReplayStatus.SUBMITTED if tx_hash else ReplayStatus.OK_WITHOUT_TX
    return ReplayStatus.BLOCKED


class LiveRunGuard:
    """Replay guard, TTL lock and cadence limit for live runs.

    The lock is cooperative: load, check and claim are separate steps on a
    plain file, so two processes racing between load and persist can both
    claim. Callers are expected to be driven by a single scheduler.
    """

    def __init__(self, safety: LiveSafety, *, limiter: LiveCadenceLimiter | None = None) -> None:
        safety.validate()
        self.safety = safety
        self.limiter = limiter or LiveCadenceLimiter(safety.min_interval_seconds)
        self.limiter.validate()

    def check(self, state: CycleState, run_id: str, *, now: datetime) -> None:
        check_replay(state, run_id)
        check_lock(state, run_id, now=now, lock_ttl_seconds=self.safety.lock_ttl_seconds)
        retry_after = self.limiter.retry_after_seconds(state.last_live_at, now)
        if retry_after > 0:
            raise RateLockActiveError(
                retry_after_seconds=retry_after,
                min_interval_seconds=self.limiter.min_interval_seconds,
            )

    def claim(self, state: CycleState, run_id: str, *, now: datetime) -> ReplayRecord:
        state.active_live_run_id = run_id
        state.active_live_started_at = now
        record = ReplayRecord(
            status=ReplayStatus.IN_PROGRESS,
            started_at=now,
            updated_at=now,
        )
        state.runs[run_id] = record
        state.compact()
        state.updated_at = now
        logger.info("live_lock_claimed", extra={"extra": {"run_id": run_id}})
        return record

    def check_and_claim(self, state: CycleState, run_id: str, *, now: datetime) -> ReplayRecord:
        self.check(state, run_id, now=now)
        return self.claim(state, run_id, now=now)

    def finalize(
        self,
        state: CycleState,
        run_id: str,
        *,
        ok: bool,
        tx_hash: str | None,
        blockers: Sequence[str],
        error: str | None,
        now: datetime,
    ) -> ReplayRecord:
        current = state.runs.get(run_id)
        started_at = current.started_at if current is not None else now
        status = resolve_final_status(ok=ok, tx_hash=tx_hash, error=error)
        record = ReplayRecord(
            status=status,
            started_at=started_at,
            updated_at=now,
            tx_hash=tx_hash,
            blockers=tuple(blockers),
            error=error,
        )
        state.runs[run_id] = record
        if not error and ok:
            state.last_live_at = now
        if state.active_live_run_id == run_id:
            state.active_live_run_id = None
            state.active_live_started_at = None
        state.compact()
        state.updated_at = now
        logger.info(
            "live_run_finalized",
            extra={"extra": {"run_id": run_id, "status": status.value, "tx_hash": tx_hash}},
        )
        return record
