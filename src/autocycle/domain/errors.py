from __future__ import annotations

from enum import StrEnum


class ControllerErrorCode(StrEnum):
    INVALID_INTENT = "invalid_intent"
    AMOUNT_EXCEEDS_CAP = "amount_exceeds_cap"
    CONFIRM_MISMATCH = "confirm_mismatch"
    EXECUTE_BINDING_NOT_ACTIVE = "execute_binding_not_active"
    LIVE_COMMAND_MISSING = "live_command_missing"
    ONCHAIN_TRIGGER_UNVERIFIABLE = "onchain_trigger_unverifiable"
    REPLAY_BLOCKED = "replay_blocked"
    LIVE_LOCK_ACTIVE = "live_lock_active"
    RATE_LOCK_ACTIVE = "rate_lock_active"
    EXECUTION_FAULT = "execution_fault"
    INVALID_ARGUMENT = "invalid_argument"


class ControllerError(Exception):
    """Base for every error the cycle controller raises.

    ``expected`` separates policy rejections (replay, lock, rate) from faults,
    so callers can branch on type or code instead of parsing messages.
    """

    code: ControllerErrorCode = ControllerErrorCode.EXECUTION_FAULT
    expected: bool = False

    def __init__(self, message: str, *, code: ControllerErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class GuardRejectedError(ControllerError):
    expected = True


class ReplayBlockedError(GuardRejectedError):
    code = ControllerErrorCode.REPLAY_BLOCKED

    def __init__(self, *, run_id: str, status: str | None) -> None:
        self.run_id = run_id
        self.status = status or "unknown"
        super().__init__(
            f"idempotency guard: run-id replay blocked ({run_id}, status={self.status})"
        )


class LiveLockActiveError(GuardRejectedError):
    code = ControllerErrorCode.LIVE_LOCK_ACTIVE

    def __init__(self, *, active_run_id: str, lock_ttl_seconds: int) -> None:
        self.active_run_id = active_run_id
        self.lock_ttl_seconds = lock_ttl_seconds
        super().__init__(f"live lock active: {active_run_id} (ttl={lock_ttl_seconds}s)")


class RateLockActiveError(GuardRejectedError):
    code = ControllerErrorCode.RATE_LOCK_ACTIVE

    def __init__(self, *, retry_after_seconds: int, min_interval_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        self.min_interval_seconds = min_interval_seconds
        super().__init__(
            f"rate lock active: retry after {retry_after_seconds}s "
            f"(min interval {min_interval_seconds}s)"
        )


class ExecutionFaultError(ControllerError):
    code = ControllerErrorCode.EXECUTION_FAULT

    def __init__(self, message: str, *, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(message)


class InvalidArgumentError(ControllerError, ValueError):
    code = ControllerErrorCode.INVALID_ARGUMENT
