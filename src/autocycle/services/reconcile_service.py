from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from autocycle.domain.cycle import ExecutionResult, ExecutionStatus

logger = logging.getLogger(__name__)

SNAPSHOT_TAIL_CHARS = 280
DEFAULT_SNAPSHOT_TIMEOUT_SECONDS = 20.0

_INTEGER_PATTERN = re.compile(r"^-?\d+$")


@dataclass(frozen=True)
class Snapshot:
    stage: str
    available: bool
    source: str
    status: int | None = None
    timeout_seconds: float | None = None
    parsed: dict[str, Any] | None = None
    reason: str | None = None
    stdout_tail: str = ""
    stderr_tail: str = ""

    @classmethod
    def unavailable(cls, stage: str, source: str, reason: str | None = None) -> Snapshot:
        return cls(stage=stage, available=False, source=source, reason=reason)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "stage": self.stage,
            "available": self.available,
            "source": self.source,
        }
        if self.source in {"not_configured", "not_captured"}:
            if self.reason:
                payload["reason"] = self.reason
            return payload
        payload.update(
            {
                "status": self.status,
                "timeoutSeconds": self.timeout_seconds,
                "parsed": self.parsed,
                "reason": self.reason,
                "summary": {"stdoutTail": self.stdout_tail, "stderrTail": self.stderr_tail},
            }
        )
        return payload


class Snapshotter(Protocol):
    def capture(self, source: str, stage: str) -> Snapshot: ...


def _parse_json_object(text: str) -> dict[str, Any] | None:
    trimmed = (text or "").strip()
    if not trimmed:
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class ReconcileSnapshotter:
    """Captures external balance state from a shell command or an HTTP URL.

    Failures never raise: they come back as ``available=False`` with a reason.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_SNAPSHOT_TIMEOUT_SECONDS,
        env: Mapping[str, str] | None = None,
        http_client_factory: Callable[[float], httpx.Client] | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.timeout_seconds = timeout_seconds
        self._env = dict(env) if env is not None else None
        self._http_client_factory = http_client_factory or (
            lambda timeout: httpx.Client(timeout=timeout)
        )

    def capture(self, source: str, stage: str) -> Snapshot:
        target = (source or "").strip()
        if not target:
            return Snapshot.unavailable(stage, "not_configured")
        if target.lower().startswith(("http://", "https://")):
            return self._capture_http(target, stage)
        return self._capture_command(target, stage)

    def _capture_command(self, command: str, stage: str) -> Snapshot:
        env = self._env if self._env is not None else dict(os.environ)
        try:
            completed = subprocess.run(  # noqa: S602
                command,
                shell=True,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                env=env,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            logger.warning(
                "reconcile_snapshot_timeout",
                extra={"extra": {"stage": stage, "timeout_seconds": self.timeout_seconds}},
            )
            return Snapshot(
                stage=stage,
                available=False,
                source="command",
                timeout_seconds=self.timeout_seconds,
                reason="snapshot_timeout",
                stdout_tail=_decode(exc.stdout).strip()[-SNAPSHOT_TAIL_CHARS:],
                stderr_tail=_decode(exc.stderr).strip()[-SNAPSHOT_TAIL_CHARS:],
            )
        except OSError as exc:
            logger.warning(
                "reconcile_snapshot_spawn_failed",
                extra={"extra": {"stage": stage, "error_type": type(exc).__name__}},
            )
            return Snapshot(
                stage=stage,
                available=False,
                source="command",
                timeout_seconds=self.timeout_seconds,
                reason=f"snapshot_spawn_failed: {exc}",
            )
        stdout = (completed.stdout or "").strip()
        stderr = (completed.stderr or "").strip()
        available = completed.returncode == 0
        return Snapshot(
            stage=stage,
            available=available,
            source="command",
            status=completed.returncode,
            timeout_seconds=self.timeout_seconds,
            parsed=_parse_json_object(stdout) or _parse_json_object(stderr),
            reason=None if available else "snapshot_command_failed",
            stdout_tail=stdout[-SNAPSHOT_TAIL_CHARS:],
            stderr_tail=stderr[-SNAPSHOT_TAIL_CHARS:],
        )

    def _capture_http(self, url: str, stage: str) -> Snapshot:
        try:
            with self._http_client_factory(self.timeout_seconds) as client:
                response = client.get(url)
        except httpx.TimeoutException:
            return Snapshot(
                stage=stage,
                available=False,
                source="http",
                timeout_seconds=self.timeout_seconds,
                reason="snapshot_timeout",
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "reconcile_snapshot_http_failed",
                extra={"extra": {"stage": stage, "error_type": type(exc).__name__}},
            )
            return Snapshot(
                stage=stage,
                available=False,
                source="http",
                timeout_seconds=self.timeout_seconds,
                reason=f"snapshot_http_error: {type(exc).__name__}",
            )
        body = response.text.strip()
        available = response.is_success
        return Snapshot(
            stage=stage,
            available=available,
            source="http",
            status=response.status_code,
            timeout_seconds=self.timeout_seconds,
            parsed=_parse_json_object(body),
            reason=None if available else f"snapshot_http_status_{response.status_code}",
            stdout_tail=body[-SNAPSHOT_TAIL_CHARS:],
        )


@dataclass(frozen=True)
class BalanceSnapshot:
    usdc_raw: str | None
    usdt_raw: str | None
    usdc_ui: str | None
    usdt_ui: str | None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "usdcRaw": self.usdc_raw,
            "usdtRaw": self.usdt_raw,
            "usdcUi": self.usdc_ui,
            "usdtUi": self.usdt_ui,
        }


_RAW_FIELDS = {
    "usdc_raw": ("usdcRaw", "USDCRaw", "usdc_balance_raw"),
    "usdt_raw": ("usdtRaw", "USDTRaw", "usdt_balance_raw"),
}
_UI_FIELDS = {
    "usdc_ui": ("usdcUi", "usdc"),
    "usdt_ui": ("usdtUi", "usdt"),
}


def _first_present(data: Mapping[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        value = data.get(name)
        if value is not None:
            return value
    return None


def _raw_amount(value: Any) -> str | None:
    """Integer amount as a string, or ``None`` if the value is not an integer."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and _INTEGER_PATTERN.match(value.strip()):
        return value.strip()
    return None


def _balance_from_shape(data: Mapping[str, Any]) -> BalanceSnapshot | None:
    fields: dict[str, str | None] = {}
    for attr, names in _RAW_FIELDS.items():
        value = _first_present(data, names)
        if value is None:
            fields[attr] = None
            continue
        amount = _raw_amount(value)
        if amount is None:
            return None
        fields[attr] = amount
    for attr, names in _UI_FIELDS.items():
        value = _first_present(data, names)
        if isinstance(value, bool) or isinstance(value, (dict, list)):
            value = None
        fields[attr] = str(value) if value is not None else None
    if all(value is None for value in fields.values()):
        return None
    return BalanceSnapshot(**fields)


def parse_balance(parsed: Mapping[str, Any] | None) -> BalanceSnapshot | None:
    """Extract balances from the first recognized shape: ``wallet`` object, then top level."""

    if not isinstance(parsed, Mapping):
        return None
    shapes: list[Mapping[str, Any]] = []
    wallet = parsed.get("wallet")
    if isinstance(wallet, Mapping):
        shapes.append(wallet)
    shapes.append(parsed)
    for shape in shapes:
        balance = _balance_from_shape(shape)
        if balance is not None:
            return balance
    return None


def raw_delta(before: str | None, after: str | None) -> str | None:
    if before is None or after is None:
        return None
    return str(int(after) - int(before))


@dataclass(frozen=True)
class ReconcileSnapshot:
    before: Snapshot
    after: Snapshot
    before_balance: BalanceSnapshot | None
    after_balance: BalanceSnapshot | None
    delta: dict[str, str | None] | None
    delta_unavailable_reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "beforeBalance": self.before_balance.to_dict() if self.before_balance else None,
            "afterBalance": self.after_balance.to_dict() if self.after_balance else None,
            "delta": self.delta,
        }
        if self.delta_unavailable_reason:
            payload["deltaUnavailableReason"] = self.delta_unavailable_reason
        return payload


def build_reconcile_snapshot(
    before: Snapshot | None, after: Snapshot | None
) -> ReconcileSnapshot:
    before_snapshot = before or Snapshot.unavailable("before", "not_captured")
    after_snapshot = after or Snapshot.unavailable("after", "not_captured")
    before_balance = parse_balance(before_snapshot.parsed)
    after_balance = parse_balance(after_snapshot.parsed)

    delta: dict[str, str | None] | None = None
    unavailable_reason: str | None = None
    if before_balance is not None and after_balance is not None:
        delta = {
            "usdcRawDelta": raw_delta(before_balance.usdc_raw, after_balance.usdc_raw),
            "usdtRawDelta": raw_delta(before_balance.usdt_raw, after_balance.usdt_raw),
        }
    else:
        missing = [
            stage
            for stage, balance in (("before", before_balance), ("after", after_balance))
            if balance is None
        ]
        unavailable_reason = f"balance_unavailable: {','.join(missing)}"
    return ReconcileSnapshot(
        before=before_snapshot,
        after=after_snapshot,
        before_balance=before_balance,
        after_balance=after_balance,
        delta=delta,
        delta_unavailable_reason=unavailable_reason,
    )


def summarize_reconcile(
    execution: ExecutionResult, snapshot: ReconcileSnapshot
) -> dict[str, object]:
    if execution.status is ExecutionStatus.EXECUTED:
        return {
            "status": "submitted" if execution.tx_hash else "submitted_without_hash",
            "notes": ["Execution command completed.", "Verify txHash on the chain explorer."],
            "reconcileSnapshot": snapshot.to_dict(),
        }
    if execution.status is ExecutionStatus.DRYRUN:
        return {
            "status": "dryrun_only",
            "notes": [
                "No state change performed.",
                "Live mode requires explicit confirmation and active binding.",
            ],
            "reconcileSnapshot": snapshot.to_dict(),
        }
    return {
        "status": "blocked_or_failed",
        "notes": [
            "Execution path blocked or failed.",
            "Review blockers/evidence and resolve config guardrails.",
        ],
        "reconcileSnapshot": snapshot.to_dict(),
    }
