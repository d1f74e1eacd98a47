"""Redaction of credentials before anything reaches log output.

Collection runs pass personal access tokens to remote helpers and REST
endpoints; command lines and request headers are logged on failure, so every
formatter runs its output through :func:`redact_string` and
:func:`redact_structure`.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

REDACTED = "<REDACTED>"

_SENSITIVE_KEY_NORMALIZED = {
    "authorization",
    "accesstoken",
    "token",
    "pat",
    "pattoken",
    "password",
}

_KEY_VALUE_RE = re.compile(
    r"(?i)(authorization|access[-_]?token|pat[-_]?token|password|token)(\s*[:=]\s*)"
    r"(\"[^\"]*\"|'[^']*'|Bearer\s+[^,\s]+|[^,\s]+)"
)
_BEARER_RE = re.compile(r"(?i)Bearer\s+[^\s,\"']+")
# --<something>-token <value> as passed on remote command lines
_FLAG_RE = re.compile(r"(?i)(--[a-z0-9-]*(?:token|password))(\s+|=)([^\s]+)")
_FLAG_NAME_RE = re.compile(r"(?i)--[a-z0-9-]*(?:token|password)")


def _normalize_key(key: str) -> str:
    return re.sub(r"[^a-z0-9]", "", key.lower())


def is_sensitive_key(key: str) -> bool:
    return _normalize_key(key) in _SENSITIVE_KEY_NORMALIZED


class SecretStr:
    """String wrapper whose ``str()`` and ``repr()`` never show the value.

    Use :meth:`reveal` at the single point where the real value is needed,
    e.g. when building an ``Authorization`` header.
    """

    def __init__(self, value: Any) -> None:
        self._value = "" if value is None else str(value)

    def reveal(self) -> str:
        return self._value

    def __bool__(self) -> bool:
        return bool(self._value)

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return REDACTED

    def __str__(self) -> str:
        return REDACTED

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretStr):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)


def redact_string(text: str) -> str:
    def replace_match(match: re.Match[str]) -> str:
        value = match.group(3)
        if value.startswith(("'", '"')) and value.endswith(value[0]):
            quote = value[0]
            return f"{match.group(1)}{match.group(2)}{quote}{REDACTED}{quote}"
        return f"{match.group(1)}{match.group(2)}{REDACTED}"

    redacted = _FLAG_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
    redacted = _KEY_VALUE_RE.sub(replace_match, redacted)
    redacted = _BEARER_RE.sub(f"Bearer {REDACTED}", redacted)
    return redacted


def redact_structure(value: Any) -> Any:
    if isinstance(value, SecretStr):
        return value
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, Mapping):
        return {
            key: SecretStr(val) if is_sensitive_key(str(key)) else redact_structure(val)
            for key, val in value.items()
        }
    if isinstance(value, tuple):
        return tuple(redact_structure(item) for item in value)
    if isinstance(value, list):
        return [redact_structure(item) for item in value]
    return value


def redact_headers(headers: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: SecretStr(value) if is_sensitive_key(str(key)) else redact_structure(value)
        for key, value in headers.items()
    }


def redact_args(args: list[str]) -> list[str]:
    """Redact an argv list, including values passed as the word after a secret flag."""
    redacted: list[str] = []
    for index, arg in enumerate(args):
        if index and _FLAG_NAME_RE.fullmatch(args[index - 1]):
            redacted.append(REDACTED)
        else:
            redacted.append(redact_string(arg))
    return redacted
