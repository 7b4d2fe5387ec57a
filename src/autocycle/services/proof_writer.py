from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from autocycle.domain.cycle import CycleMode, Decision, ExecutionResult, Intent
from autocycle.domain.state import to_iso
from autocycle.persistence.json_files import write_json_atomic
from autocycle.security.redaction import redact_data, redact_free_text
from autocycle.services.confirmation_gate import TransitionEvidence
from autocycle.services.reconcile_service import ReconcileSnapshot, summarize_reconcile
from autocycle.services.receipt import normalize_tx_receipt

logger = logging.getLogger(__name__)

SUITE_NAME = "autonomous-cycle"
PROOF_VERSION = 3


def decide(execution: ExecutionResult, mode: CycleMode) -> Decision:
    if not execution.ok:
        return Decision.HOLD_BLOCKED
    return Decision.EXECUTE if mode is CycleMode.LIVE else Decision.SIMULATE_EXECUTE


def build_route_selection(funding_route: str, *, include_primary_marker: bool = True) -> dict:
    markers = [f"ROUTE_CORE_{funding_route.upper()}"]
    if include_primary_marker:
        markers.append("FUNDING_PATH_PRIMARY")
    return {
        "primaryFundingRoute": funding_route,
        "selectedFundingRoute": funding_route,
        "isCoreRoute": True,
        "evidenceMarkers": markers,
    }


def _merge_transition(
    transition: TransitionEvidence, evidence: Mapping[str, Any]
) -> TransitionEvidence:
    runtime_transition = evidence.get("transition")
    if isinstance(runtime_transition, dict) and runtime_transition:
        return transition.with_runtime_transition(runtime_transition)
    return transition


def build_proof(
    *,
    started_at: datetime,
    finished_at: datetime,
    mode: CycleMode,
    intent: Intent,
    execution: ExecutionResult,
    transition: TransitionEvidence,
    reconcile: ReconcileSnapshot,
    safety: Mapping[str, object],
    funding_route: str,
    receipt_chain: str,
    include_primary_marker: bool = True,
) -> dict[str, object]:
    """Assemble the proof document for one invocation.

    ``ok`` mirrors the execution result; the decision is derived from it and
    the mode, never set independently.
    """

    evidence: Mapping[str, Any] = execution.evidence or {}
    trigger_transition = transition.transition() or {}
    trigger_proof = transition.trigger.proof
    trigger_tx_hash = trigger_proof.tx_hash if trigger_proof is not None else None

    tx_evidence = {
        "status": execution.status.value,
        "txHash": execution.tx_hash or trigger_tx_hash,
        "evidence": execution.evidence,
        "emittedEvents": (
            evidence.get("decodedEvents") or trigger_transition.get("emittedEvents") or []
        ),
        "stateDelta": evidence.get("stateDelta") or trigger_transition.get("stateDelta"),
        "receiptNormalized": normalize_tx_receipt(
            {
                "txHash": execution.tx_hash,
                "status": execution.status.value,
                "exitCode": evidence.get("exitCode"),
            },
            chain=receipt_chain,
            run_id=intent.run_id,
            mode=mode.value,
            observed_at=finished_at,
        ),
        "blockers": list(execution.blockers),
        "reason": execution.reason,
    }
    return {
        "suite": SUITE_NAME,
        "version": PROOF_VERSION,
        "startedAt": to_iso(started_at),
        "finishedAt": to_iso(finished_at),
        "mode": mode.value,
        "decision": decide(execution, mode).value,
        "intent": intent.to_dict(),
        "coreRouteSelection": build_route_selection(
            funding_route, include_primary_marker=include_primary_marker
        ),
        "cycleTransitionEvidence": _merge_transition(transition, evidence).to_dict(),
        "safety": dict(safety),
        "txEvidence": tx_evidence,
        "reconcileSummary": summarize_reconcile(execution, reconcile),
        "ok": execution.ok,
    }


def history_path_for(history_dir: str | Path, *, run_id: str, now: datetime) -> Path:
    stamp = (to_iso(now) or "").replace(":", "-").replace(".", "-")
    return Path(history_dir) / f"{stamp}-{run_id}.json"


class ProofWriter:
    def __init__(
        self,
        out_path: str | Path,
        history_dir: str | Path,
        *,
        known_secrets: Iterable[str] = (),
    ) -> None:
        self.out_path = Path(out_path)
        self.history_dir = Path(history_dir)
        self._known_secrets = tuple(secret for secret in known_secrets if secret)

    def write(self, proof: Mapping[str, object], *, run_id: str, now: datetime) -> Path:
        """Write the latest pointer and the immutable history copy; return the history path."""

        redacted = redact_free_text(redact_data(dict(proof)), known_secrets=self._known_secrets)
        write_json_atomic(self.out_path, redacted)
        history_path = history_path_for(self.history_dir, run_id=run_id, now=now)
        write_json_atomic(history_path, redacted)
        logger.info(
            "proof_written",
            extra={
                "extra": {
                    "run_id": run_id,
                    "out_path": str(self.out_path),
                    "history_path": str(history_path),
                    "ok": proof.get("ok"),
                    "decision": proof.get("decision"),
                }
            },
        )
        return history_path
