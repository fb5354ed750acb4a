"""Redaction helpers so credentials never reach log output."""

from __future__ import annotations

import re
from typing import Any, Iterable

SENSITIVE_KEYS = {
    "authorization",
    "access_token",
    "token",
    "sec-websocket-protocol",
    "upload_url",
    "url",
}

_BEARER_RE = re.compile(r"(Bearer\s+)([^\s,]+)", flags=re.IGNORECASE)
_SUBPROTOCOL_RE = re.compile(r"(bearer\s*,\s*)([^\s,]+)", flags=re.IGNORECASE)
# Presigned S3/MinIO URLs carry their authority in the query string.
_QUERY_RE = re.compile(
    r"([?&](?:access_token|token|X-Amz-Signature|X-Amz-Credential|X-Amz-Security-Token)=)([^&#\s]+)",
    flags=re.IGNORECASE,
)


def redact_text(text: str) -> str:
    """Redact bearer tokens and presigned query secrets from free text."""

    rendered = str(text)
    rendered = _BEARER_RE.sub(r"\1[REDACTED]", rendered)
    rendered = _SUBPROTOCOL_RE.sub(r"\1[REDACTED]", rendered)
    rendered = _QUERY_RE.sub(r"\1[REDACTED]", rendered)
    return rendered


def redact_protocols(protocols: Iterable[str]) -> list[str]:
    """Mask everything but the scheme marker in a subprotocol list."""

    return [p if p.lower() == "bearer" else "[REDACTED]" for p in protocols]


def redact_mapping(obj: dict[str, Any]) -> dict[str, Any]:
    redacted: dict[str, Any] = {}
    for key, value in obj.items():
        lower_key = str(key).lower()
        if lower_key in SENSITIVE_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = redact_mapping(value)
        elif isinstance(value, list):
            redacted[key] = [redact_mapping(item) if isinstance(item, dict) else item for item in value]
        elif isinstance(value, str):
            redacted[key] = redact_text(value)
        else:
            redacted[key] = value
    return redacted
