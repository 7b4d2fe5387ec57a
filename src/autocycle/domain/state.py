from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

STATE_VERSION = 1
DEFAULT_MAX_REPLAY_ENTRIES = 200
MIN_REPLAY_ENTRIES = 20

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_KNOWN_KEYS = {
    "version",
    "updatedAt",
    "lastLiveAt",
    "activeLiveRunId",
    "activeLiveStartedAt",
    "replay",
}


class ReplayStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    OK_WITHOUT_TX = "ok_without_tx"
    BLOCKED = "blocked"
    FAILED = "failed"


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_positive_int(value: object, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class ReplayRecord:
    status: str
    started_at: datetime | None
    updated_at: datetime | None
    tx_hash: str | None = None
    blockers: tuple[str, ...] = ()
    error: str | None = None

    @property
    def sort_key(self) -> datetime:
        return self.updated_at or self.started_at or _EPOCH

    def to_dict(self) -> dict[str, object]:
        return {
            "status": str(self.status),
            "startedAt": to_iso(self.started_at),
            "updatedAt": to_iso(self.updated_at),
            "txHash": self.tx_hash,
            "blockers": list(self.blockers),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ReplayRecord:
        blockers_raw = payload.get("blockers")
        blockers = (
            tuple(str(item) for item in blockers_raw) if isinstance(blockers_raw, list) else ()
        )
        return cls(
            status=_optional_str(payload.get("status")) or "unknown",
            started_at=parse_iso(payload.get("startedAt")),
            updated_at=parse_iso(payload.get("updatedAt")),
            tx_hash=_optional_str(payload.get("txHash")),
            blockers=blockers,
            error=_optional_str(payload.get("error")),
        )


def compact_replay_runs(
    runs: Mapping[str, ReplayRecord], max_entries: int
) -> dict[str, ReplayRecord]:
    keep = max(MIN_REPLAY_ENTRIES, max_entries)
    ordered = sorted(runs.items(), key=lambda item: item[1].sort_key, reverse=True)
    return dict(ordered[:keep])


@dataclass
class CycleState:
    """Lock and replay history shared by every invocation through one JSON file."""

    version: int = STATE_VERSION
    updated_at: datetime | None = None
    last_live_at: datetime | None = None
    active_live_run_id: str | None = None
    active_live_started_at: datetime | None = None
    max_entries: int = DEFAULT_MAX_REPLAY_ENTRIES
    runs: dict[str, ReplayRecord] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def initial(cls, now: datetime) -> CycleState:
        return cls(updated_at=now)

    def compact(self) -> None:
        self.max_entries = parse_positive_int(self.max_entries, DEFAULT_MAX_REPLAY_ENTRIES)
        self.runs = compact_replay_runs(self.runs, self.max_entries)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = dict(self.extra)
        payload.update(
            {
                "version": self.version,
                "updatedAt": to_iso(self.updated_at),
                "lastLiveAt": to_iso(self.last_live_at),
                "activeLiveRunId": self.active_live_run_id,
                "activeLiveStartedAt": to_iso(self.active_live_started_at),
                "replay": {
                    "maxEntries": self.max_entries,
                    "runs": {run_id: record.to_dict() for run_id, record in self.runs.items()},
                },
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, now: datetime) -> CycleState:
        replay_raw = payload.get("replay")
        replay: Mapping[str, Any] = replay_raw if isinstance(replay_raw, Mapping) else {}
        max_entries = parse_positive_int(replay.get("maxEntries"), DEFAULT_MAX_REPLAY_ENTRIES)
        runs_raw = replay.get("runs")
        runs: dict[str, ReplayRecord] = {}
        if isinstance(runs_raw, Mapping):
            for run_id, record in runs_raw.items():
                if isinstance(record, Mapping):
                    runs[str(run_id)] = ReplayRecord.from_dict(record)
                else:
                    runs[str(run_id)] = ReplayRecord(
                        status="unknown", started_at=None, updated_at=None
                    )

        version_raw = payload.get("version")
        state = cls(
            version=parse_positive_int(version_raw, STATE_VERSION),
            updated_at=parse_iso(payload.get("updatedAt")) or now,
            last_live_at=parse_iso(payload.get("lastLiveAt")),
            active_live_run_id=_optional_str(payload.get("activeLiveRunId")),
            active_live_started_at=parse_iso(payload.get("activeLiveStartedAt")),
            max_entries=max_entries,
            runs=runs,
            extra={key: value for key, value in payload.items() if key not in _KNOWN_KEYS},
        )
        state.compact()
        return state
