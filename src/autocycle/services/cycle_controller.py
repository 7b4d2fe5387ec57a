from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from autocycle.config import Settings
from autocycle.domain.cycle import CycleMode, ExecutionResult, ExecutionStatus, Intent
from autocycle.domain.errors import ControllerError, ControllerErrorCode, ExecutionFaultError
from autocycle.domain.state import CycleState
from autocycle.logging_context import with_cycle_context
from autocycle.services.confirmation_gate import (
    TransitionEvidence,
    evaluate_confirmation,
    evaluate_transition_evidence,
    parse_trigger_proof,
)
from autocycle.services.executor_adapter import Executor, ExecutorAdapter, ShellCommandExecutor
from autocycle.services.live_guard import LiveRunGuard, LiveSafety
from autocycle.services.proof_writer import ProofWriter, build_proof
from autocycle.services.receipt import resolve_receipt_chain
from autocycle.services.reconcile_service import (
    ReconcileSnapshot,
    ReconcileSnapshotter,
    Snapshotter,
    build_reconcile_snapshot,
)
from autocycle.services.state_store import CycleStateStore, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleContext:
    """Everything one invocation needs; nothing about a run lives at module level."""

    run_id: str
    mode: CycleMode
    out_path: Path
    state_path: Path
    history_dir: Path
    confirm_input: str = ""
    trigger_json: str = ""


@dataclass(frozen=True)
class CycleResult:
    ok: bool
    out_path: Path
    history_path: Path
    proof: dict[str, Any]

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "out": str(self.out_path),
            "historyPath": str(self.history_path),
            "proof": self.proof,
        }


def build_intent(run_id: str, settings: Settings) -> Intent:
    return Intent(
        run_id=run_id,
        token_in=settings.token_in,
        token_out=settings.token_out,
        amount_raw=settings.amount_raw.strip(),
        router_address=settings.router_address,
        executor_address=settings.executor_address,
    )


class CycleController:
    def __init__(
        self,
        settings: Settings,
        *,
        executor: Executor | None = None,
        snapshotter: Snapshotter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.safety = LiveSafety(
            min_interval_seconds=settings.min_live_interval_seconds,
            lock_ttl_seconds=settings.lock_ttl_seconds,
        )
        self.guard = LiveRunGuard(self.safety)
        self.adapter = ExecutorAdapter(
            executor or ShellCommandExecutor(),
            max_amount_raw=settings.max_amount_raw,
            execute_active=settings.execute_active,
            live_command_template=settings.live_command,
            timeout_seconds=settings.execute_timeout_seconds,
            funding_route=settings.funding_route,
            known_secrets=(settings.expected_confirm_text(),),
        )
        self.snapshotter = snapshotter or ReconcileSnapshotter(
            timeout_seconds=settings.reconcile_snapshot_timeout_seconds
        )
        self._clock = clock

    def run(self, context: CycleContext) -> CycleResult:
        with with_cycle_context(context.run_id, context.mode.value, self.settings.cycle_id):
            return self._run(context)

    def _run(self, context: CycleContext) -> CycleResult:
        started_at = self._clock()
        intent = build_intent(context.run_id, self.settings)
        trigger_report = parse_trigger_proof(context.trigger_json or self.settings.trigger_json)
        transition = evaluate_transition_evidence(
            trigger_report, required_cycle_id=self.settings.cycle_id
        )
        store = CycleStateStore(context.state_path, clock=self._clock)
        state = store.load()
        writer = ProofWriter(
            context.out_path,
            context.history_dir,
            known_secrets=(self.settings.expected_confirm_text(),),
        )

        live_marked = False
        if context.mode is CycleMode.LIVE:
            # Raises before any mutation; guard rejections leave no proof behind.
            self.guard.check_and_claim(state, context.run_id, now=started_at)
            store.persist(state)
            live_marked = True

        proof: dict[str, Any] | None = None
        try:
            proof = self._decide_and_prove(context, intent, transition, started_at)
            history_path = writer.write(proof, run_id=context.run_id, now=self._clock())
        except Exception as exc:
            logger.exception(
                "cycle_run_failed",
                extra={"extra": {"live_marked": live_marked, "error_type": type(exc).__name__}},
            )
            if live_marked:
                try:
                    self._finalize(
                        store,
                        state,
                        context.run_id,
                        proof=proof,
                        error=str(exc) or type(exc).__name__,
                    )
                except Exception as finalize_exc:  # noqa: BLE001
                    # The run's own fault is the one callers must see.
                    logger.exception(
                        "cycle_finalize_failed",
                        extra={"extra": {"error_type": type(finalize_exc).__name__}},
                    )
            if isinstance(exc, ControllerError):
                raise
            raise ExecutionFaultError(
                f"cycle run failed: {exc}", run_id=context.run_id
            ) from exc

        if live_marked:
            self._finalize(store, state, context.run_id, proof=proof, error=None)

        logger.info(
            "cycle_run_completed",
            extra={
                "extra": {
                    "ok": proof["ok"],
                    "decision": proof["decision"],
                    "history_path": str(history_path),
                }
            },
        )
        return CycleResult(
            ok=bool(proof["ok"]),
            out_path=context.out_path,
            history_path=history_path,
            proof=proof,
        )

    def _decide_and_prove(
        self,
        context: CycleContext,
        intent: Intent,
        transition: TransitionEvidence,
        started_at: datetime,
    ) -> dict[str, Any]:
        mode = context.mode
        include_primary_marker = True
        if mode is CycleMode.LIVE and self.settings.requires_trigger_hold(
            transition_verifiable=transition.verifiable
        ):
            execution = ExecutionResult(
                ok=False,
                status=ExecutionStatus.BLOCKED,
                reason=ControllerErrorCode.ONCHAIN_TRIGGER_UNVERIFIABLE.value,
                blockers=transition.blockers,
            )
            reconcile = build_reconcile_snapshot(None, None)
            include_primary_marker = False
        else:
            execution, reconcile = self._execute_with_snapshots(context, intent, transition)

        logger.info(
            "cycle_execution_result",
            extra={
                "extra": {
                    "status": execution.status.value,
                    "ok": execution.ok,
                    "reason": execution.reason,
                    "blockers": list(execution.blockers),
                }
            },
        )
        return build_proof(
            started_at=started_at,
            finished_at=self._clock(),
            mode=mode,
            intent=intent,
            execution=execution,
            transition=transition,
            reconcile=reconcile,
            safety=self.safety.to_dict(state_path=context.state_path),
            funding_route=self.settings.funding_route,
            receipt_chain=resolve_receipt_chain(
                chain=self.settings.chain, onchain_mode=self.settings.onchain_mode
            ),
            include_primary_marker=include_primary_marker,
        )

    def _execute_with_snapshots(
        self,
        context: CycleContext,
        intent: Intent,
        transition: TransitionEvidence,
    ) -> tuple[ExecutionResult, ReconcileSnapshot]:
        trigger_proof = transition.trigger.proof
        confirmation = evaluate_confirmation(
            mode=context.mode,
            supplied=context.confirm_input,
            expected=self.settings.expected_confirm_text(),
            trigger_proof=trigger_proof,
        )
        if not confirmation.passed:
            execution = self.adapter.execute(
                intent, mode=context.mode, confirmation=confirmation, trigger_proof=trigger_proof
            )
            return execution, build_reconcile_snapshot(None, None)

        before = self.snapshotter.capture(self.settings.snapshot_before_source(), "before")
        execution = self.adapter.execute(
            intent, mode=context.mode, confirmation=confirmation, trigger_proof=trigger_proof
        )
        after = self.snapshotter.capture(self.settings.snapshot_after_source(), "after")
        return execution, build_reconcile_snapshot(before, after)

    def _finalize(
        self,
        store: CycleStateStore,
        state: CycleState,
        run_id: str,
        *,
        proof: Mapping[str, Any] | None,
        error: str | None,
    ) -> None:
        tx_evidence: Mapping[str, Any] = {}
        if proof is not None and isinstance(proof.get("txEvidence"), Mapping):
            tx_evidence = proof["txEvidence"]
        blockers = tx_evidence.get("blockers")
        self.guard.finalize(
            state,
            run_id,
            ok=bool(proof.get("ok")) if proof is not None else False,
            tx_hash=tx_evidence.get("txHash") or None,
            blockers=[str(item) for item in blockers] if isinstance(blockers, list) else [],
            error=error,
            now=self._clock(),
        )
        store.persist(state)
