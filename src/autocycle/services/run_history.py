from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from autocycle.domain.errors import InvalidArgumentError
from autocycle.domain.state import to_iso
from autocycle.persistence.json_files import read_json_object
from autocycle.services.state_store import utc_now

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100
DEFAULT_LIST_LIMIT = 10
SCAN_FACTOR = 3


@dataclass(frozen=True)
class RunRow:
    run_id: str
    mode: str
    started_at: str | None
    finished_at: str | None
    ok: bool
    status: str
    tx_hash: str | None
    blockers: tuple[str, ...]
    source_path: Path

    @classmethod
    def from_proof(cls, proof: Mapping[str, Any], source_path: Path) -> RunRow:
        tx_evidence = proof.get("txEvidence")
        if not isinstance(tx_evidence, Mapping):
            tx_evidence = {}
        intent = proof.get("intent")
        run_id = intent.get("runId") if isinstance(intent, Mapping) else None
        blockers = tx_evidence.get("blockers")
        return cls(
            run_id=str(run_id or proof.get("runId") or "unknown"),
            mode=str(proof.get("mode") or "unknown"),
            started_at=proof.get("startedAt") or None,
            finished_at=proof.get("finishedAt") or None,
            ok=proof.get("ok") is True,
            status=str(tx_evidence.get("status") or "unknown"),
            tx_hash=tx_evidence.get("txHash") or None,
            blockers=tuple(str(item) for item in blockers) if isinstance(blockers, list) else (),
            source_path=source_path,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "runId": self.run_id,
            "mode": self.mode,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "ok": self.ok,
            "status": self.status,
            "txHash": self.tx_hash,
            "blockers": list(self.blockers),
            "blockerCount": len(self.blockers),
            "sourcePath": str(self.source_path),
        }


@dataclass(frozen=True)
class RunListing:
    generated_at: datetime
    history_dir: Path
    latest_path: Path
    runs: tuple[RunRow, ...] = ()
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return bool(self.runs)

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "generatedAt": to_iso(self.generated_at),
            "historyDir": str(self.history_dir),
            "latestPath": str(self.latest_path),
            "count": len(self.runs),
            "runs": [row.to_dict() for row in self.runs],
            "errors": list(self.errors),
        }


def clamp_limit(limit: int) -> int:
    if limit <= 0:
        raise InvalidArgumentError("--limit must be a positive integer")
    return min(MAX_LIST_LIMIT, limit)


def list_runs(
    history_dir: str | Path,
    latest_path: str | Path,
    limit: int = DEFAULT_LIST_LIMIT,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> RunListing:
    """List the newest run proofs, newest first by file name.

    History file names start with the write timestamp, so name order is time
    order. When no history proof is readable the latest proof stands in.
    """

    history = Path(history_dir)
    latest = Path(latest_path)
    bounded = clamp_limit(limit)
    rows: list[RunRow] = []
    errors: list[str] = []

    try:
        names = sorted(
            (entry.name for entry in history.iterdir() if entry.name.endswith(".json")),
            reverse=True,
        )[: bounded * SCAN_FACTOR]
    except OSError:
        errors.append(f"history_missing_or_unreadable:{history}")
        names = []

    for name in names:
        if len(rows) >= bounded:
            break
        path = history / name
        proof = read_json_object(path)
        if proof is None:
            continue
        rows.append(RunRow.from_proof(proof, path))

    if not rows:
        proof = read_json_object(latest)
        if proof is not None:
            rows.append(RunRow.from_proof(proof, latest))
        else:
            errors.append(f"latest_missing_or_unreadable:{latest}")

    logger.debug(
        "run_history_listed",
        extra={"extra": {"history_dir": str(history), "count": len(rows), "errors": errors}},
    )
    return RunListing(
        generated_at=clock(),
        history_dir=history,
        latest_path=latest,
        runs=tuple(rows),
        errors=tuple(errors),
    )
