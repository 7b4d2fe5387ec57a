from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from autocycle.domain.errors import InvalidArgumentError


class CycleMode(StrEnum):
    DRYRUN = "dryrun"
    LIVE = "live"


class Decision(StrEnum):
    EXECUTE = "execute"
    SIMULATE_EXECUTE = "simulate_execute"
    HOLD_BLOCKED = "hold_blocked"


class ExecutionStatus(StrEnum):
    DRYRUN = "dryrun"
    EXECUTED = "executed"
    FAILED = "failed"
    BLOCKED = "blocked"


class ConfirmationMode(StrEnum):
    NOT_REQUIRED = "not_required"
    MANUAL_CONFIRM = "manual_confirm"
    ONCHAIN_TRIGGER = "onchain_trigger"
    NONE = "none"


def parse_cycle_mode(value: str | CycleMode) -> CycleMode:
    if isinstance(value, CycleMode):
        return value
    normalized = str(value or "").strip().lower()
    try:
        return CycleMode(normalized)
    except ValueError as exc:
        raise InvalidArgumentError("--mode must be dryrun|live") from exc


@dataclass(frozen=True)
class Intent:
    """Transfer parameters declared for one cycle run."""

    run_id: str
    token_in: str
    token_out: str
    amount_raw: str
    router_address: str
    executor_address: str

    def to_dict(self) -> dict[str, str]:
        return {
            "runId": self.run_id,
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
            "amountRaw": self.amount_raw,
            "routerAddress": self.router_address,
            "executorAddress": self.executor_address,
        }


@dataclass(frozen=True)
class StateDelta:
    previous_state: str
    next_state: str

    @property
    def label(self) -> str:
        return f"{self.previous_state}->{self.next_state}"

    def to_dict(self) -> dict[str, str]:
        return {
            "previousState": self.previous_state,
            "nextState": self.next_state,
            "label": self.label,
        }


@dataclass(frozen=True)
class TriggerProof:
    """Externally supplied evidence that an on-chain transition authorizes the run."""

    tx_hash: str | None
    cycle_id: str | None
    transition_id: str | None
    state_delta: StateDelta | None
    event_name: str = "DeterministicCycleTriggered"
    emitted_events: tuple[Any, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_verifiable(self) -> bool:
        return bool(
            self.tx_hash
            and self.cycle_id
            and self.transition_id
            and self.state_delta is not None
            and self.state_delta.previous_state
            and self.state_delta.next_state
        )


@dataclass(frozen=True)
class ExecutionResult:
    ok: bool
    status: ExecutionStatus
    reason: str | None = None
    tx_hash: str | None = None
    blockers: tuple[str, ...] = ()
    evidence: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "status": self.status.value,
            "txHash": self.tx_hash,
            "blockers": list(self.blockers),
            "reason": self.reason,
            "evidence": self.evidence,
        }
