from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from autocycle.domain.cycle import (
    ConfirmationMode,
    CycleMode,
    ExecutionResult,
    ExecutionStatus,
    Intent,
    TriggerProof,
)
from autocycle.domain.errors import ControllerErrorCode
from autocycle.security.redaction import sanitize_text
from autocycle.services.confirmation_gate import ConfirmationDecision

logger = logging.getLogger(__name__)

TX_HASH_SEARCH_PATTERN = re.compile(r"0x[a-fA-F0-9]{64}")
TX_HASH_FULL_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")
TX_HASH_JSON_FIELDS = ("txHash", "transactionHash", "hash")
OUTPUT_TAIL_CHARS = 500
DEFAULT_EXECUTE_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_AMOUNT_RAW = 10**18

EXECUTE_ACTIVE_ENV = "AUTOCYCLE_EXECUTE_ACTIVE"
LIVE_COMMAND_ENV = "AUTOCYCLE_LIVE_COMMAND"

_AMOUNT_RAW_PATTERN = re.compile(r"^\d+$")


@dataclass(frozen=True)
class ExecutionRequest:
    intent: Intent
    mode: CycleMode
    command: str
    confirmation_mode: ConfirmationMode
    trigger_proof: dict[str, Any] | None
    timeout_seconds: float


@dataclass(frozen=True)
class RawExecution:
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False


class Executor(Protocol):
    def run(self, request: ExecutionRequest) -> RawExecution: ...


def _decode_output(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class ShellCommandExecutor:
    """Runs the rendered live command through the shell with a hard timeout."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env = dict(env) if env is not None else None

    def run(self, request: ExecutionRequest) -> RawExecution:
        env = self._env if self._env is not None else dict(os.environ)
        try:
            completed = subprocess.run(  # noqa: S602
                request.command,
                shell=True,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                env=env,
                timeout=request.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            logger.warning(
                "execute_command_timeout",
                extra={"extra": {"timeout_seconds": request.timeout_seconds}},
            )
            return RawExecution(
                exit_code=None,
                stdout=_decode_output(exc.stdout).strip(),
                stderr=_decode_output(exc.stderr).strip(),
                timed_out=True,
            )
        return RawExecution(
            exit_code=completed.returncode,
            stdout=(completed.stdout or "").strip(),
            stderr=(completed.stderr or "").strip(),
        )


def render_command(template: str, intent: Intent) -> str:
    replacements = {
        "{intent}": json.dumps(intent.to_dict(), separators=(",", ":")),
        "{runId}": intent.run_id,
        "{amountRaw}": intent.amount_raw,
        "{tokenIn}": intent.token_in,
        "{tokenOut}": intent.token_out,
        "{routerAddress}": intent.router_address,
        "{executorAddress}": intent.executor_address,
    }
    rendered = template
    for token, value in replacements.items():
        rendered = rendered.replace(token, value)
    return rendered


def parse_structured_output(text: str | None) -> dict[str, Any] | None:
    trimmed = (text or "").strip()
    if not trimmed:
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _tx_hash_from_text(text: str) -> str | None:
    match = TX_HASH_SEARCH_PATTERN.search(text or "")
    return match.group(0) if match else None


def _tx_hash_from_json(text: str) -> str | None:
    structured = parse_structured_output(text)
    if structured is None:
        return None
    for field_name in TX_HASH_JSON_FIELDS:
        candidate = structured.get(field_name)
        if isinstance(candidate, str) and TX_HASH_FULL_PATTERN.match(candidate):
            return candidate
    return None


def extract_tx_hash(*outputs: str) -> str | None:
    """Return the first tx hash found, trying each recognized shape in priority order."""

    for parser in (_tx_hash_from_text, _tx_hash_from_json):
        for output in outputs:
            found = parser(output)
            if found:
                return found
    return None


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    return text[-limit:] if limit > 0 else ""


def validate_amount_raw(value: str) -> int | None:
    candidate = (value or "").strip()
    if not _AMOUNT_RAW_PATTERN.match(candidate):
        return None
    return int(candidate)


class ExecutorAdapter:
    """Turns an intent into an executor call and normalizes what comes back.

    The cap, confirmation, activation and command checks all run before the
    collaborator is touched; only a live, confirmed, in-cap, armed request
    reaches ``Executor.run``.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        max_amount_raw: int = DEFAULT_MAX_AMOUNT_RAW,
        execute_active: bool = False,
        live_command_template: str = "",
        timeout_seconds: float = DEFAULT_EXECUTE_TIMEOUT_SECONDS,
        funding_route: str = "core_funding",
        known_secrets: Iterable[str] = (),
    ) -> None:
        if max_amount_raw < 0:
            raise ValueError("max_amount_raw must be >= 0")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.executor = executor
        self.max_amount_raw = max_amount_raw
        self.execute_active = execute_active
        self.live_command_template = live_command_template.strip()
        self.timeout_seconds = timeout_seconds
        self.funding_route = funding_route
        self._known_secrets = tuple(secret for secret in known_secrets if secret)

    def execute(
        self,
        intent: Intent,
        *,
        mode: CycleMode,
        confirmation: ConfirmationDecision,
        trigger_proof: TriggerProof | None = None,
    ) -> ExecutionResult:
        amount = validate_amount_raw(intent.amount_raw)
        if not intent.run_id or amount is None:
            return ExecutionResult(
                ok=False,
                status=ExecutionStatus.BLOCKED,
                reason=ControllerErrorCode.INVALID_INTENT.value,
                blockers=("Intent must include runId and a non-negative integer amountRaw.",),
                evidence={"runId": intent.run_id, "amountRaw": intent.amount_raw},
            )

        if amount > self.max_amount_raw:
            return ExecutionResult(
                ok=False,
                status=ExecutionStatus.BLOCKED,
                reason=ControllerErrorCode.AMOUNT_EXCEEDS_CAP.value,
                blockers=(f"amountRaw exceeds configured cap ({self.max_amount_raw}).",),
                evidence={
                    "runId": intent.run_id,
                    "amountRaw": intent.amount_raw,
                    "maxAmountRaw": str(self.max_amount_raw),
                },
            )

        if mode is CycleMode.DRYRUN:
            return ExecutionResult(
                ok=True,
                status=ExecutionStatus.DRYRUN,
                reason="not_executed",
                evidence={
                    "runId": intent.run_id,
                    "amountRaw": intent.amount_raw,
                    "commandConfigured": bool(self.live_command_template),
                    "primaryFundingRoute": self.funding_route,
                    "routeSelection": "core",
                },
            )

        verifiable_trigger = trigger_proof is not None and trigger_proof.is_verifiable
        if not confirmation.passed:
            return ExecutionResult(
                ok=False,
                status=ExecutionStatus.BLOCKED,
                reason=confirmation.reason or ControllerErrorCode.CONFIRM_MISMATCH.value,
                blockers=confirmation.blockers,
                evidence={
                    "runId": intent.run_id,
                    "verifiableOnchainTrigger": verifiable_trigger,
                },
            )

        if not self.execute_active:
            return ExecutionResult(
                ok=False,
                status=ExecutionStatus.BLOCKED,
                reason=ControllerErrorCode.EXECUTE_BINDING_NOT_ACTIVE.value,
                blockers=(
                    "Live execution blocked: missing/disabled env key "
                    f"{EXECUTE_ACTIVE_ENV}=true",
                ),
                evidence={"runId": intent.run_id, "missingEnvKeys": [EXECUTE_ACTIVE_ENV]},
            )

        if not self.live_command_template:
            return ExecutionResult(
                ok=False,
                status=ExecutionStatus.BLOCKED,
                reason=ControllerErrorCode.LIVE_COMMAND_MISSING.value,
                blockers=(f"Live execution blocked: missing env key {LIVE_COMMAND_ENV}",),
                evidence={"runId": intent.run_id, "missingEnvKeys": [LIVE_COMMAND_ENV]},
            )

        command = render_command(self.live_command_template, intent)
        request = ExecutionRequest(
            intent=intent,
            mode=mode,
            command=command,
            confirmation_mode=confirmation.mode,
            trigger_proof=trigger_proof.raw if trigger_proof is not None else None,
            timeout_seconds=self.timeout_seconds,
        )
        logger.info(
            "execute_command_start",
            extra={
                "extra": {
                    "run_id": intent.run_id,
                    "confirmation_mode": confirmation.mode.value,
                    "timeout_seconds": self.timeout_seconds,
                }
            },
        )
        raw = self.executor.run(request)
        return self._normalize(raw, request)

    def _normalize(self, raw: RawExecution, request: ExecutionRequest) -> ExecutionResult:
        structured = parse_structured_output(raw.stdout) or parse_structured_output(raw.stderr)
        tx_hash = extract_tx_hash(raw.stdout, raw.stderr)
        succeeded = raw.exit_code == 0 and not raw.timed_out
        if raw.timed_out:
            reason: str | None = "execute_timeout"
        elif not succeeded:
            reason = "execute_failed"
        else:
            reason = None

        structured = structured or {}
        evidence = {
            "runId": request.intent.run_id,
            "command": sanitize_text(request.command, known_secrets=self._known_secrets),
            "exitCode": raw.exit_code,
            "timedOut": raw.timed_out,
            "stdout": _tail(sanitize_text(raw.stdout, known_secrets=self._known_secrets)),
            "stderr": _tail(sanitize_text(raw.stderr, known_secrets=self._known_secrets)),
            "decodedEvents": structured.get("emittedEvents") or [],
            "stateDelta": structured.get("stateDelta"),
            "transition": structured.get("transition"),
            "primaryFundingRoute": self.funding_route,
            "routeSelection": "core",
            "confirmationMode": request.confirmation_mode.value,
            "triggerProof": request.trigger_proof,
        }
        logger.info(
            "execute_command_done",
            extra={
                "extra": {
                    "run_id": request.intent.run_id,
                    "exit_code": raw.exit_code,
                    "timed_out": raw.timed_out,
                    "tx_hash": tx_hash,
                }
            },
        )
        return ExecutionResult(
            ok=succeeded,
            status=ExecutionStatus.EXECUTED if succeeded else ExecutionStatus.FAILED,
            reason=reason,
            tx_hash=tx_hash,
            evidence=evidence,
        )
