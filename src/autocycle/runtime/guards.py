from __future__ import annotations

import re
import time
from pathlib import Path

from autocycle.domain.errors import InvalidArgumentError

RUN_ID_MAX_LENGTH = 120
RUN_ID_PREFIX = "autonomous-cycle"

_RUN_ID_DISALLOWED = re.compile(r"[^a-zA-Z0-9._:-]")


def default_run_id(now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{RUN_ID_PREFIX}-{stamp}"


def normalize_run_id(raw: str | None, *, now_ms: int | None = None) -> str:
    candidate = (raw or "").strip()
    if not candidate:
        return default_run_id(now_ms)
    return _RUN_ID_DISALLOWED.sub("-", candidate)[:RUN_ID_MAX_LENGTH]


def resolve_path(raw: str | Path) -> Path:
    candidate = str(raw).strip()
    if not candidate:
        raise InvalidArgumentError("path must not be empty")
    return Path(candidate).expanduser().resolve()
