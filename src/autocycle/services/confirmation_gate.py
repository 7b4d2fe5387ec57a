from __future__ import annotations

import hmac
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from autocycle.domain.cycle import ConfirmationMode, CycleMode, StateDelta, TriggerProof
from autocycle.domain.errors import ControllerErrorCode

TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")
DEFAULT_TRIGGER_EVENT = "DeterministicCycleTriggered"


@dataclass(frozen=True)
class TriggerProofReport:
    available: bool
    valid: bool
    source: str
    blockers: tuple[str, ...]
    proof: TriggerProof | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "available": self.available,
            "valid": self.valid,
            "source": self.source,
            "blockers": list(self.blockers),
        }
        if self.proof is not None:
            payload.update(
                {
                    "txHash": self.proof.tx_hash,
                    "cycleId": self.proof.cycle_id,
                    "transitionId": self.proof.transition_id,
                    "eventName": self.proof.event_name,
                    "emittedEvents": list(self.proof.emitted_events),
                    "stateDelta": (
                        self.proof.state_delta.to_dict() if self.proof.state_delta else None
                    ),
                    "raw": self.proof.raw,
                }
            )
        return payload


@dataclass(frozen=True)
class TransitionEvidence:
    verifiable: bool
    trigger: TriggerProofReport
    blockers: tuple[str, ...] = ()
    runtime_transition: dict[str, Any] | None = None

    def transition(self) -> dict[str, object] | None:
        if self.runtime_transition is not None:
            return self.runtime_transition
        proof = self.trigger.proof
        if proof is None or proof.state_delta is None:
            return None
        return {
            "transitionId": proof.transition_id,
            "cycleId": proof.cycle_id,
            "stateDelta": proof.state_delta.to_dict(),
            "triggerTxHash": proof.tx_hash,
            "eventName": proof.event_name,
            "emittedEvents": list(proof.emitted_events),
        }

    def with_runtime_transition(self, transition: dict[str, Any]) -> TransitionEvidence:
        return TransitionEvidence(
            verifiable=True,
            trigger=self.trigger,
            blockers=(),
            runtime_transition=transition,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "verifiable": self.verifiable,
            "onchainTrigger": self.trigger.to_dict(),
            "transition": self.transition(),
            "blockers": list(self.blockers),
        }


@dataclass(frozen=True)
class ConfirmationDecision:
    passed: bool
    mode: ConfirmationMode
    reason: str | None = None
    blockers: tuple[str, ...] = field(default_factory=tuple)


def _text(value: object) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _normalize_state_delta(raw: object) -> StateDelta | None:
    data: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    previous_state = _text(data.get("previousState") or data.get("prevState"))
    next_state = _text(data.get("nextState") or data.get("newState"))
    if not previous_state or not next_state:
        return None
    return StateDelta(previous_state=previous_state, next_state=next_state)


def parse_trigger_proof(raw: str | None) -> TriggerProofReport:
    source = (raw or "").strip()
    if not source:
        return TriggerProofReport(
            available=False,
            valid=False,
            source="missing",
            blockers=("onchain cycle trigger proof missing",),
        )
    try:
        parsed = json.loads(source)
    except json.JSONDecodeError as exc:
        return TriggerProofReport(
            available=True,
            valid=False,
            source="json_parse_error",
            blockers=(f"invalid trigger proof JSON: {exc}",),
        )
    data: Mapping[str, Any] = parsed if isinstance(parsed, Mapping) else {}

    tx_hash = _text(data.get("txHash") or data.get("transactionHash"))
    cycle_id = _text(data.get("cycleId"))
    transition_id = _text(data.get("transitionId") or data.get("nonce"))
    event_name = _text(data.get("eventName") or data.get("event")) or DEFAULT_TRIGGER_EVENT
    emitted_raw = data.get("emittedEvents")
    emitted_events = tuple(emitted_raw) if isinstance(emitted_raw, list) else ()
    state_delta = _normalize_state_delta(data.get("stateDelta") or data.get("state"))

    blockers: list[str] = []
    if not TX_HASH_PATTERN.match(tx_hash):
        blockers.append("invalid txHash in trigger proof")
    if not cycle_id:
        blockers.append("cycleId missing in trigger proof")
    if not transition_id:
        blockers.append("transitionId missing in trigger proof")
    if state_delta is None:
        blockers.append("stateDelta missing in trigger proof")

    proof = TriggerProof(
        tx_hash=tx_hash or None,
        cycle_id=cycle_id or None,
        transition_id=transition_id or None,
        state_delta=state_delta,
        event_name=event_name,
        emitted_events=emitted_events,
        raw=dict(data),
    )
    return TriggerProofReport(
        available=True,
        valid=not blockers,
        source="json",
        blockers=tuple(blockers),
        proof=proof,
    )


def evaluate_transition_evidence(
    report: TriggerProofReport, *, required_cycle_id: str = ""
) -> TransitionEvidence:
    blockers = list(report.blockers)
    required = required_cycle_id.strip()
    proof_cycle_id = report.proof.cycle_id if report.proof is not None else None
    if required and proof_cycle_id and required != proof_cycle_id:
        blockers.append(f"cycleId mismatch: expected {required}, got {proof_cycle_id}")
    return TransitionEvidence(
        verifiable=report.available and not blockers,
        trigger=report,
        blockers=tuple(blockers),
    )


def evaluate_confirmation(
    *,
    mode: CycleMode,
    supplied: str | None,
    expected: str,
    trigger_proof: TriggerProof | None,
) -> ConfirmationDecision:
    """Decide whether a run may proceed to the executor. Pure, no side effects."""

    if mode is CycleMode.DRYRUN:
        return ConfirmationDecision(passed=True, mode=ConfirmationMode.NOT_REQUIRED)

    supplied_text = supplied or ""
    if expected and hmac.compare_digest(supplied_text.encode(), expected.encode()):
        return ConfirmationDecision(passed=True, mode=ConfirmationMode.MANUAL_CONFIRM)
    if trigger_proof is not None and trigger_proof.is_verifiable:
        return ConfirmationDecision(passed=True, mode=ConfirmationMode.ONCHAIN_TRIGGER)
    return ConfirmationDecision(
        passed=False,
        mode=ConfirmationMode.NONE,
        reason=ControllerErrorCode.CONFIRM_MISMATCH.value,
        blockers=(
            "Live execution blocked: confirmation mismatch. Required input: --confirm "
            "<AUTOCYCLE_CONFIRM_TEXT> (or provide verifiable onchain trigger proof).",
        ),
    )
