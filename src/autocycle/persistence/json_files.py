from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def write_json_atomic(path: str | Path, payload: Mapping[str, Any]) -> Path:
    """Write ``payload`` so readers see either the old or the new document.

    The temp file lives in the destination directory so ``os.replace`` stays a
    same-filesystem rename.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{target.name}.{os.getpid()}.", suffix=".tmp", dir=target.parent
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2, default=str))
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    return target


def read_json_object(path: str | Path) -> dict[str, Any] | None:
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning(
            "json_read_failed",
            extra={"extra": {"path": str(source), "error_type": type(exc).__name__}},
        )
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("json_malformed", extra={"extra": {"path": str(source)}})
        return None
    return parsed if isinstance(parsed, dict) else None
