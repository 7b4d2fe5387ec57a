from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

from autocycle.domain.cycle import CycleMode, Decision, ExecutionResult, ExecutionStatus, Intent
from autocycle.services.confirmation_gate import evaluate_transition_evidence, parse_trigger_proof
from autocycle.services.proof_writer import (
    ProofWriter,
    build_proof,
    build_route_selection,
    decide,
    history_path_for,
)
from autocycle.services.receipt import (
    OFFCHAIN_RECEIPT_CHAIN,
    RECEIPT_SCHEMA,
    normalize_tx_receipt,
    resolve_receipt_chain,
)
from autocycle.services.reconcile_service import build_reconcile_snapshot

STARTED = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
FINISHED = STARTED + timedelta(seconds=3)
TX_HASH = "0x" + "f" * 64


def _intent() -> Intent:
    return Intent(
        run_id="run-1",
        token_in="USDC",
        token_out="USDT",
        amount_raw="1000",
        router_address="0xrouter",
        executor_address="0xexecutor",
    )


def _proof(execution: ExecutionResult, mode: CycleMode = CycleMode.LIVE, **overrides) -> dict:
    options = {
        "started_at": STARTED,
        "finished_at": FINISHED,
        "mode": mode,
        "intent": _intent(),
        "execution": execution,
        "transition": evaluate_transition_evidence(parse_trigger_proof("")),
        "reconcile": build_reconcile_snapshot(None, None),
        "safety": {"minLiveIntervalSeconds": 300, "lockTtlSeconds": 900, "statePath": "/s.json"},
        "funding_route": "core_funding",
        "receipt_chain": "evm",
    }
    options.update(overrides)
    return build_proof(**options)


def test_decision_follows_ok_and_mode() -> None:
    ok = ExecutionResult(ok=True, status=ExecutionStatus.EXECUTED)
    blocked = ExecutionResult(ok=False, status=ExecutionStatus.BLOCKED)

    assert decide(ok, CycleMode.LIVE) is Decision.EXECUTE
    assert decide(ok, CycleMode.DRYRUN) is Decision.SIMULATE_EXECUTE
    assert decide(blocked, CycleMode.LIVE) is Decision.HOLD_BLOCKED
    assert decide(blocked, CycleMode.DRYRUN) is Decision.HOLD_BLOCKED


def test_route_selection_markers() -> None:
    primary = build_route_selection("core_funding")
    held = build_route_selection("core_funding", include_primary_marker=False)

    assert primary["evidenceMarkers"] == ["ROUTE_CORE_CORE_FUNDING", "FUNDING_PATH_PRIMARY"]
    assert held["evidenceMarkers"] == ["ROUTE_CORE_CORE_FUNDING"]
    assert primary["isCoreRoute"] is True


def test_build_proof_has_full_schema() -> None:
    execution = ExecutionResult(
        ok=True,
        status=ExecutionStatus.EXECUTED,
        tx_hash=TX_HASH,
        evidence={"exitCode": 0, "decodedEvents": [{"name": "Done"}]},
    )

    proof = _proof(execution)

    assert set(proof) == {
        "suite",
        "version",
        "startedAt",
        "finishedAt",
        "mode",
        "decision",
        "intent",
        "coreRouteSelection",
        "cycleTransitionEvidence",
        "safety",
        "txEvidence",
        "reconcileSummary",
        "ok",
    }
    assert proof["suite"] == "autonomous-cycle"
    assert proof["version"] == 3
    assert proof["startedAt"] == "2026-03-01T12:00:00.000Z"
    assert proof["finishedAt"] == "2026-03-01T12:00:03.000Z"
    assert proof["decision"] == "execute"
    assert proof["ok"] is True
    tx_evidence = proof["txEvidence"]
    assert tx_evidence["txHash"] == TX_HASH
    assert tx_evidence["emittedEvents"] == [{"name": "Done"}]
    assert tx_evidence["receiptNormalized"]["schema"] == RECEIPT_SCHEMA
    assert tx_evidence["receiptNormalized"]["exitCode"] == 0
    assert proof["reconcileSummary"]["status"] == "submitted"


def test_build_proof_ok_mirrors_execution_result() -> None:
    execution = ExecutionResult(
        ok=False, status=ExecutionStatus.BLOCKED, reason="confirm_mismatch", blockers=("x",)
    )

    proof = _proof(execution)

    assert proof["ok"] is False
    assert proof["decision"] == "hold_blocked"
    assert proof["txEvidence"]["reason"] == "confirm_mismatch"
    assert proof["txEvidence"]["blockers"] == ["x"]


def test_runtime_transition_from_evidence_overrides_trigger() -> None:
    execution = ExecutionResult(
        ok=True,
        status=ExecutionStatus.EXECUTED,
        evidence={"transition": {"transitionId": "runtime-1"}},
    )

    proof = _proof(execution)

    evidence = proof["cycleTransitionEvidence"]
    assert evidence["verifiable"] is True
    assert evidence["transition"] == {"transitionId": "runtime-1"}
    assert evidence["blockers"] == []


def test_history_path_is_timestamp_prefixed() -> None:
    path = history_path_for("/proofs/runs", run_id="run-1", now=STARTED)

    assert path == Path("/proofs/runs/2026-03-01T12-00-00-000Z-run-1.json")


def test_writer_writes_latest_and_history_with_redaction(tmp_path: Path) -> None:
    out_path = tmp_path / "latest.json"
    history_dir = tmp_path / "runs"
    writer = ProofWriter(out_path, history_dir, known_secrets=("CONFIRM-SECRET-TEXT",))
    proof = {
        "ok": True,
        "decision": "execute",
        "txEvidence": {"evidence": {"stdout": "confirm was CONFIRM-SECRET-TEXT"}},
    }

    history_path = writer.write(proof, run_id="run-1", now=STARTED)

    latest = json.loads(out_path.read_text(encoding="utf-8"))
    history = json.loads(history_path.read_text(encoding="utf-8"))
    assert latest == history
    assert history_path.parent == history_dir
    assert "CONFIRM-SECRET-TEXT" not in out_path.read_text(encoding="utf-8")
    assert latest["ok"] is True


def test_writer_masks_known_secrets_only_in_free_text(tmp_path: Path) -> None:
    writer = ProofWriter(tmp_path / "latest.json", tmp_path / "runs", known_secrets=("live",))
    proof = {
        "ok": True,
        "mode": "live",
        "intent": {"runId": "run-live-1", "amountRaw": "1000"},
        "txEvidence": {"evidence": {"command": "send --mode live", "stderr": "live"}},
        "reconcileSummary": {"before": {"summary": {"stdoutTail": "went live"}}},
    }

    writer.write(proof, run_id="run-live-1", now=STARTED)

    written = json.loads((tmp_path / "latest.json").read_text(encoding="utf-8"))
    assert written["mode"] == "live"
    assert written["intent"] == {"runId": "run-live-1", "amountRaw": "1000"}
    assert "live" not in written["txEvidence"]["evidence"]["command"]
    assert written["txEvidence"]["evidence"]["stderr"] != "live"
    assert "live" not in written["reconcileSummary"]["before"]["summary"]["stdoutTail"]


def test_receipt_normalization_accepts_hash_aliases() -> None:
    receipt = normalize_tx_receipt(
        {"hash": TX_HASH, "block_height": "12", "code": 1},
        chain="evm",
        run_id="run-1",
        mode="live",
        observed_at=STARTED,
    )

    assert receipt == {
        "schema": RECEIPT_SCHEMA,
        "chain": "evm",
        "runId": "run-1",
        "mode": "live",
        "status": "unknown",
        "txHash": TX_HASH,
        "blockNumber": 12,
        "exitCode": 1,
        "observedAt": "2026-03-01T12:00:00.000Z",
    }


def test_receipt_chain_depends_on_onchain_mode() -> None:
    assert resolve_receipt_chain(chain="evm", onchain_mode=True) == "evm"
    assert resolve_receipt_chain(chain="evm", onchain_mode=False) == OFFCHAIN_RECEIPT_CHAIN
