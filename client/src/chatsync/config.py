from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class BackoffPolicy:
    base_ms: int = 500
    cap_ms: int = 10_000
    breaker_threshold: int = 10
    breaker_cooldown_ms: int = 10_000

    @property
    def breaker_enabled(self) -> bool:
        return self.breaker_threshold > 0

    def delay_ms(self, attempt: int) -> int:
        """Reconnect delay for the ``attempt``-th consecutive failure (0-based)."""

        if attempt < 0:
            raise ValueError("attempt must be non-negative")
        if self.base_ms <= 0:
            return 0
        # 2**attempt is unbounded; the cap is reached long before 2**32.
        exponent = min(attempt, 32)
        return min(self.cap_ms, self.base_ms * (2**exponent))


@dataclass(frozen=True)
class ClientConfig:
    api_base: str
    ws_base: str
    token: str | None = None
    request_timeout_s: float = 30.0
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_base_url(name: str, raw: str | None, schemes: tuple[str, ...]) -> str:
    if not raw:
        raise ValueError(f"{name} is required")
    if not raw.startswith(tuple(f"{scheme}://" for scheme in schemes)):
        raise ValueError(f"{name} must start with one of: {', '.join(schemes)}")
    return raw.rstrip("/")


def load_backoff_policy_from_env() -> BackoffPolicy:
    base_ms = _parse_non_negative_int("CHATSYNC_BACKOFF_BASE_MS", 500)
    cap_ms = _parse_non_negative_int("CHATSYNC_BACKOFF_CAP_MS", 10_000)
    threshold = _parse_non_negative_int("CHATSYNC_BREAKER_THRESHOLD", 10)
    cooldown_ms = _parse_non_negative_int("CHATSYNC_BREAKER_COOLDOWN_MS", cap_ms)
    if cap_ms < base_ms:
        raise ValueError("CHATSYNC_BACKOFF_CAP_MS must be >= CHATSYNC_BACKOFF_BASE_MS")
    if cooldown_ms > cap_ms:
        raise ValueError("CHATSYNC_BREAKER_COOLDOWN_MS must be <= CHATSYNC_BACKOFF_CAP_MS")
    return BackoffPolicy(
        base_ms=base_ms,
        cap_ms=cap_ms,
        breaker_threshold=threshold,
        breaker_cooldown_ms=cooldown_ms,
    )


def load_client_config_from_env(*, api_base: str | None = None, ws_base: str | None = None) -> ClientConfig:
    """Build a :class:`ClientConfig` from ``CHATSYNC_*`` variables.

    Explicit ``api_base``/``ws_base`` arguments take precedence over the
    environment. When no websocket base is configured it is derived from the
    API base by swapping the scheme.
    """

    resolved_api = _parse_base_url(
        "CHATSYNC_API_BASE", api_base or os.environ.get("CHATSYNC_API_BASE"), ("http", "https")
    )
    derived_ws = "ws" + resolved_api[len("http") :]
    resolved_ws = _parse_base_url(
        "CHATSYNC_WS_BASE", ws_base or os.environ.get("CHATSYNC_WS_BASE") or derived_ws, ("ws", "wss")
    )
    return ClientConfig(
        api_base=resolved_api,
        ws_base=resolved_ws,
        token=os.environ.get("CHATSYNC_TOKEN") or None,
        request_timeout_s=_parse_positive_float("CHATSYNC_REQUEST_TIMEOUT_S", 30.0),
        backoff=load_backoff_policy_from_env(),
    )
