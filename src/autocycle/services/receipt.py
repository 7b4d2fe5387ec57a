from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from autocycle.domain.state import to_iso

RECEIPT_SCHEMA = "tx-receipt-normalized/v1"
OFFCHAIN_RECEIPT_CHAIN = "offchain-orchestrator"


def _non_empty(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _finite_number(value: object) -> int | float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        number = float(str(value))
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def resolve_receipt_chain(*, chain: str, onchain_mode: bool) -> str:
    return chain if onchain_mode else OFFCHAIN_RECEIPT_CHAIN


def normalize_tx_receipt(
    receipt: Mapping[str, Any] | None,
    *,
    chain: str | None = None,
    run_id: str | None = None,
    mode: str | None = None,
    status: str | None = None,
    observed_at: datetime | None = None,
) -> dict[str, object]:
    source: Mapping[str, Any] = receipt if isinstance(receipt, Mapping) else {}
    tx_hash = (
        _non_empty(source.get("txHash"))
        or _non_empty(source.get("transactionHash"))
        or _non_empty(source.get("hash"))
    )
    block_number = _finite_number(source.get("blockNumber"))
    if block_number is None:
        block_number = _finite_number(source.get("block_height"))
    exit_code = _finite_number(source.get("exitCode"))
    if exit_code is None:
        exit_code = _finite_number(source.get("code"))
    return {
        "schema": RECEIPT_SCHEMA,
        "chain": _non_empty(chain) or _non_empty(source.get("chain")),
        "runId": _non_empty(run_id) or _non_empty(source.get("runId")),
        "mode": _non_empty(mode) or _non_empty(source.get("mode")),
        "status": _non_empty(status) or _non_empty(source.get("status")) or "unknown",
        "txHash": tx_hash,
        "blockNumber": block_number,
        "exitCode": exit_code,
        "observedAt": to_iso(observed_at or datetime.now(UTC)),
    }
