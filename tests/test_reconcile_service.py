from __future__ import annotations

import json
import sys

import httpx

from autocycle.domain.cycle import ExecutionResult, ExecutionStatus
from autocycle.services.reconcile_service import (
    ReconcileSnapshotter,
    Snapshot,
    build_reconcile_snapshot,
    parse_balance,
    summarize_reconcile,
)


def _snapshot(stage: str, parsed: dict | None) -> Snapshot:
    return Snapshot(stage=stage, available=True, source="command", status=0, parsed=parsed)


def _mock_client_factory(handler):
    def _factory(timeout: float) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(handler), timeout=timeout)

    return _factory


def test_empty_source_is_not_configured() -> None:
    snapshot = ReconcileSnapshotter().capture("  ", "before")

    assert snapshot.available is False
    assert snapshot.to_dict() == {"stage": "before", "available": False, "source": "not_configured"}


def test_command_snapshot_parses_json_stdout() -> None:
    payload = json.dumps({"usdcRaw": "100", "usdtRaw": "5"})
    command = f"echo '{payload}'"

    snapshot = ReconcileSnapshotter(timeout_seconds=30).capture(command, "before")

    assert snapshot.available is True
    assert snapshot.status == 0
    assert snapshot.parsed == {"usdcRaw": "100", "usdtRaw": "5"}
    assert snapshot.to_dict()["summary"]["stdoutTail"] == payload


def test_command_snapshot_failure_is_unavailable() -> None:
    command = f"{sys.executable} -c \"import sys; sys.exit(4)\""

    snapshot = ReconcileSnapshotter(timeout_seconds=30).capture(command, "after")

    assert snapshot.available is False
    assert snapshot.status == 4
    assert snapshot.reason == "snapshot_command_failed"


def test_command_snapshot_tolerates_non_utf8_output() -> None:
    command = f"{sys.executable} -c \"import sys; sys.stdout.buffer.write(b'ok \\xff\\xfe')\""

    snapshot = ReconcileSnapshotter(timeout_seconds=30).capture(command, "before")

    assert snapshot.available is True
    assert snapshot.status == 0
    assert snapshot.stdout_tail.startswith("ok ")
    assert "�" in snapshot.stdout_tail


def test_command_snapshot_timeout_is_unavailable() -> None:
    command = f"{sys.executable} -c \"import time; time.sleep(5)\""

    snapshot = ReconcileSnapshotter(timeout_seconds=0.2).capture(command, "before")

    assert snapshot.available is False
    assert snapshot.reason == "snapshot_timeout"


def test_command_snapshot_tails_are_bounded() -> None:
    command = f"{sys.executable} -c \"print('x' * 1000)\""

    snapshot = ReconcileSnapshotter(timeout_seconds=30).capture(command, "before")

    assert len(snapshot.stdout_tail) == 280


def test_http_snapshot_uses_httpx_client() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"wallet": {"usdcRaw": "7", "usdtRaw": "9"}})

    snapshotter = ReconcileSnapshotter(http_client_factory=_mock_client_factory(handler))

    snapshot = snapshotter.capture("https://balances.example/wallet", "before")

    assert seen == ["https://balances.example/wallet"]
    assert snapshot.available is True
    assert snapshot.source == "http"
    assert snapshot.parsed == {"wallet": {"usdcRaw": "7", "usdtRaw": "9"}}


def test_http_snapshot_error_status_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="down")

    snapshotter = ReconcileSnapshotter(http_client_factory=_mock_client_factory(handler))

    snapshot = snapshotter.capture("http://balances.example/", "after")

    assert snapshot.available is False
    assert snapshot.reason == "snapshot_http_status_503"


def test_http_snapshot_transport_error_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    snapshotter = ReconcileSnapshotter(http_client_factory=_mock_client_factory(handler))

    snapshot = snapshotter.capture("http://balances.example/", "after")

    assert snapshot.available is False
    assert snapshot.reason == "snapshot_http_error: ConnectError"


def test_parse_balance_prefers_wallet_shape_and_alternate_spellings() -> None:
    balance = parse_balance(
        {"wallet": {"USDCRaw": "12", "usdt_balance_raw": 34, "usdc": "0.000012"}, "usdcRaw": "1"}
    )

    assert balance is not None
    assert balance.usdc_raw == "12"
    assert balance.usdt_raw == "34"
    assert balance.usdc_ui == "0.000012"


def test_parse_balance_rejects_non_integer_raw_values() -> None:
    assert parse_balance({"usdcRaw": "1.5"}) is None
    assert parse_balance({"unrelated": True}) is None
    assert parse_balance(None) is None


def test_delta_uses_arbitrary_precision_integers() -> None:
    big = 10**30
    before = _snapshot("before", {"usdcRaw": str(big), "usdtRaw": "0"})
    after = _snapshot("after", {"usdcRaw": str(big - 1), "usdtRaw": str(big + 7)})

    reconcile = build_reconcile_snapshot(before, after)

    assert reconcile.delta == {"usdcRawDelta": "-1", "usdtRawDelta": str(big + 7)}
    assert reconcile.delta_unavailable_reason is None


def test_delta_unavailable_names_missing_stages() -> None:
    reconcile = build_reconcile_snapshot(_snapshot("before", {"usdcRaw": "1"}), None)

    payload = reconcile.to_dict()

    assert reconcile.delta is None
    assert payload["deltaUnavailableReason"] == "balance_unavailable: after"
    assert payload["after"] == {"stage": "after", "available": False, "source": "not_captured"}


def test_summarize_reconcile_status_by_execution_outcome() -> None:
    snapshot = build_reconcile_snapshot(None, None)

    executed = ExecutionResult(ok=True, status=ExecutionStatus.EXECUTED, tx_hash="0x" + "a" * 64)
    no_hash = ExecutionResult(ok=True, status=ExecutionStatus.EXECUTED)
    dryrun = ExecutionResult(ok=True, status=ExecutionStatus.DRYRUN)
    blocked = ExecutionResult(ok=False, status=ExecutionStatus.BLOCKED)

    assert summarize_reconcile(executed, snapshot)["status"] == "submitted"
    assert summarize_reconcile(no_hash, snapshot)["status"] == "submitted_without_hash"
    assert summarize_reconcile(dryrun, snapshot)["status"] == "dryrun_only"
    assert summarize_reconcile(blocked, snapshot)["status"] == "blocked_or_failed"
