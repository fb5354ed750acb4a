"""Bearer credential sources consumed by the REST client and event stream."""

from __future__ import annotations

import os
from typing import Awaitable, Callable

TokenSource = Callable[[], Awaitable[str]]


class CredentialError(Exception):
    """Raised when no usable bearer credential could be obtained."""


class StaticTokenSource:
    def __init__(self, token: str) -> None:
        self._token = token

    async def __call__(self) -> str:
        return self._token


class EnvTokenSource:
    """Re-reads the environment on every call so a rotated token is picked up."""

    def __init__(self, name: str = "CHATSYNC_TOKEN") -> None:
        self.name = name

    async def __call__(self) -> str:
        token = os.environ.get(self.name, "")
        if not token:
            raise CredentialError(f"{self.name} is not set")
        return token


async def fetch_token(source: TokenSource) -> str:
    """Ask ``source`` for a fresh token, normalizing every failure to CredentialError."""

    try:
        token = await source()
    except CredentialError:
        raise
    except Exception as exc:
        raise CredentialError(f"token source failed: {exc}") from exc
    if not isinstance(token, str):
        raise CredentialError("token source returned a non-string credential")
    token = token.strip()
    if token.lower().startswith("bearer "):
        token = token[len("bearer ") :].strip()
    if not token:
        raise CredentialError("token source returned an empty credential")
    return token
