from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = {
    "AUTOCYCLE_CONFIRM_TEXT",
    "CONFIRM_TEXT",
    "SECRET",
    "PRIVATE_KEY",
    "PASSWORD",
    "PASSPHRASE",
    "MNEMONIC",
    "SEED_PHRASE",
    "AUTHORIZATION",
    "SIGNATURE",
    "API_KEY",
}

_SENSITIVE_PARTS = tuple(part.casefold() for part in SENSITIVE_KEYS)
_SENSITIVE_EXACT_KEYS = {
    "confirm",
    "confirm_text",
    "expected_confirm_text",
    "api_key",
    "apikey",
    "secret",
    "private_key",
    "privatekey",
    "passphrase",
    "password",
    "mnemonic",
    "signature",
    "authorization",
    "auth",
}
_SENSITIVE_EXACT_COMPACT_KEYS = {k.replace("_", "") for k in _SENSITIVE_EXACT_KEYS}

_PLAIN_SECRET_PATTERNS = (
    re.compile(r"(?im)(authorization\s*[:=]\s*)(bearer\s+)?([^\s,;]+)"),
    re.compile(r"(?im)(private[_-]?key\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(--private-key[\s=]+)([^\s,;]+)"),
    re.compile(r"(?im)(autocycle_confirm_text\s*[:=]\s*)([^\s,;]+)"),
)

_JSON_KEY_VALUE_PATTERN = re.compile(
    r'("(?:privateKey|private_key|secret|password|passphrase|mnemonic|authorization|confirm|confirmText)"\s*:\s*")([^"\\]*)(")',
    re.IGNORECASE,
)


def _is_sensitive_key(key: object) -> bool:
    normalized = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", str(key)).replace("-", "_").casefold()
    compact = normalized.replace("_", "")
    return compact in _SENSITIVE_EXACT_COMPACT_KEYS or any(
        part in normalized for part in _SENSITIVE_PARTS
    )


def _mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    if len(value) <= 2:
        return "*" * len(value)
    return f"{'*' * (len(value) - 2)}{value[-2:]}"


def redact_value(value: Any) -> Any:
    return redact_data(value)


def _redact_match(match: re.Match[str]) -> str:
    prefix = match.group(1)
    optional_scheme = ""
    if match.lastindex and match.lastindex >= 3:
        optional_scheme = match.group(2) or ""
    return f"{prefix}{optional_scheme}[REDACTED]"


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    try:
        redacted = str(text)
        for secret in known_secrets:
            if secret:
                redacted = redacted.replace(secret, _mask_secret(str(secret)))

        for pattern in _PLAIN_SECRET_PATTERNS:
            redacted = pattern.sub(_redact_match, redacted)

        return _JSON_KEY_VALUE_PATTERN.sub(
            lambda m: f"{m.group(1)}{_mask_secret(m.group(2))}{m.group(3)}", redacted
        )
    except Exception:  # noqa: BLE001
        return REDACTED


def sanitize_mapping(
    d: Mapping[str, Any], known_secrets: Iterable[str] = ()
) -> dict[str, Any]:
    secrets = tuple(known_secrets)
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        key_str = str(key)
        if _is_sensitive_key(key_str) and isinstance(value, str | int | float):
            sanitized[key_str] = _mask_secret(str(value))
            continue
        sanitized[key_str] = redact_data(value, known_secrets=secrets)
    return sanitized


def redact_data(value: Any, *, known_secrets: Iterable[str] = ()) -> Any:
    secrets = tuple(known_secrets)
    try:
        if isinstance(value, Mapping):
            return sanitize_mapping(value, known_secrets=secrets)
        if isinstance(value, list):
            return [redact_data(item, known_secrets=secrets) for item in value]
        if isinstance(value, tuple):
            return tuple(redact_data(item, known_secrets=secrets) for item in value)
        if isinstance(value, str):
            return sanitize_text(value, known_secrets=secrets)
        return value
    except Exception:  # noqa: BLE001
        return REDACTED


FREE_TEXT_KEYS = frozenset(
    {"command", "stdout", "stderr", "stdoutTail", "stderrTail", "error", "message"}
)


def redact_free_text(
    value: Any,
    *,
    known_secrets: Iterable[str] = (),
    keys: frozenset[str] = FREE_TEXT_KEYS,
) -> Any:
    """Mask known secrets only inside free-text fields.

    Structured values (modes, run ids, hashes, amounts) are left intact so a
    short secret can never rewrite them.
    """

    secrets = tuple(secret for secret in known_secrets if secret)
    if not secrets:
        return value
    if isinstance(value, Mapping):
        masked: dict[str, Any] = {}
        for key, item in value.items():
            if key in keys and isinstance(item, str):
                masked[key] = sanitize_text(item, known_secrets=secrets)
            else:
                masked[key] = redact_free_text(item, known_secrets=secrets, keys=keys)
        return masked
    if isinstance(value, list):
        return [redact_free_text(item, known_secrets=secrets, keys=keys) for item in value]
    return value
