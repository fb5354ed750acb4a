"""Live event stream bound to one channel, with backoff reconnect.

The manager owns at most one websocket per channel. Every handshake pulls a
fresh credential from the injected token source and offers it as the
``bearer, <token>`` subprotocol pair. Transport failures never surface to the
caller; they move the manager into ``RECONNECT_WAIT`` (or ``DEGRADED`` once the
breaker threshold is reached) and the loop tries again after the delay.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Tuple

import aiohttp
from aiohttp import WSMsgType

from .auth import CredentialError, TokenSource, fetch_token
from .config import BackoffPolicy
from .redact import redact_protocols, redact_text

logger = logging.getLogger(__name__)

STATE_IDLE = "IDLE"
STATE_CONNECTING = "CONNECTING"
STATE_OPEN = "OPEN"
STATE_RECONNECT_WAIT = "RECONNECT_WAIT"
STATE_DEGRADED = "DEGRADED"

BEARER_PROTOCOL = "bearer"

TRANSPORT_ERRORS = (aiohttp.ClientError, OSError, asyncio.TimeoutError)

EventCallback = Callable[[Any], None]
StateCallback = Callable[[str], None]
ReopenCallback = Callable[[str], None]


def decode_payload(data: Any) -> Any:
    """JSON-decode a text frame; anything else is handed over untouched."""

    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError:
            return bytes(data)
    if not isinstance(data, str):
        return data
    try:
        return json.loads(data)
    except ValueError:
        return data


class WebSocketEventStream:
    """Adapts an aiohttp client websocket to an async iterator of payloads."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws

    @property
    def protocol(self) -> str | None:
        return self._ws.protocol

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        async for msg in self._ws:
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                yield decode_payload(msg.data)
            elif msg.type == WSMsgType.ERROR:
                raise ConnectionError(f"websocket error: {self._ws.exception()}")

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


Connector = Callable[[str, Tuple[str, ...]], Awaitable[Any]]


class AiohttpConnector:
    """Default connector: ``ws_connect`` on a lazily created client session."""

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        connect_timeout_s: float = 10.0,
        heartbeat_s: float | None = 30.0,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._connect_timeout_s = connect_timeout_s
        self._heartbeat_s = heartbeat_s

    async def __call__(self, url: str, protocols: Tuple[str, ...]) -> WebSocketEventStream:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=self._connect_timeout_s)
            )
        ws = await self._session.ws_connect(url, protocols=protocols, heartbeat=self._heartbeat_s)
        return WebSocketEventStream(ws)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None


class ConnectionManager:
    """Keeps one live event stream for the selected channel."""

    def __init__(
        self,
        ws_base: str,
        token_source: TokenSource,
        on_event: EventCallback,
        *,
        connector: Optional[Connector] = None,
        policy: BackoffPolicy | None = None,
        on_state_change: StateCallback | None = None,
        on_reopen: ReopenCallback | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._ws_base = ws_base.rstrip("/")
        self._token_source = token_source
        self._on_event = on_event
        self._owns_connector = connector is None
        self._connector: Connector = connector or AiohttpConnector()
        self.policy = policy or BackoffPolicy()
        self._on_state_change = on_state_change
        self._on_reopen = on_reopen
        self._sleep = sleep

        self._state = STATE_IDLE
        self._channel_id: str | None = None
        self._attempt = 0
        self._last_delay_ms: int | None = None
        self._task: asyncio.Task | None = None
        self._stream: Any = None
        self._switch_lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state

    @property
    def channel_id(self) -> str | None:
        return self._channel_id

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def last_delay_ms(self) -> int | None:
        return self._last_delay_ms

    def stream_url(self, channel_id: str) -> str:
        query = urllib.parse.urlencode({"channel_id": channel_id})
        return f"{self._ws_base}/ws?{query}"

    async def select(self, channel_id: str | None) -> None:
        """Bind the stream to ``channel_id``; ``None`` releases it.

        Overlapping calls run one at a time in call order, so the last
        caller wins and no superseded stream task outlives the switch.
        """

        async with self._switch_lock:
            if channel_id and channel_id == self._channel_id and self._state != STATE_IDLE:
                return
            await self._teardown()
            if not channel_id:
                return
            self._channel_id = channel_id
            self._set_state(STATE_CONNECTING)
            self._task = asyncio.create_task(self._run(channel_id), name=f"chatsync-stream:{channel_id}")

    async def release(self) -> None:
        async with self._switch_lock:
            await self._teardown()

    async def close(self) -> None:
        async with self._switch_lock:
            await self._teardown()
        if self._owns_connector and isinstance(self._connector, AiohttpConnector):
            await self._connector.close()

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _teardown(self) -> None:
        task, self._task = self._task, None
        self._channel_id = None
        self._attempt = 0
        self._set_state(STATE_IDLE)
        if task is not None and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        stream, self._stream = self._stream, None
        if stream is not None:
            await self._close_stream(stream)

    async def _run(self, channel_id: str) -> None:
        url = self.stream_url(channel_id)
        recovering = False
        while True:
            self._set_state(STATE_CONNECTING)
            stream = await self._handshake(url)
            if stream is None:
                recovering = True
                await self._wait_before_retry()
                continue

            self._stream = stream
            self._attempt = 0
            self._set_state(STATE_OPEN)
            logger.info("event stream open for channel %s", channel_id)
            if recovering:
                self._notify_reopen(channel_id)
            try:
                await self._pump(stream, channel_id)
                logger.warning("event stream for channel %s closed by peer", channel_id)
            except TRANSPORT_ERRORS as exc:
                logger.warning("event stream for channel %s dropped: %s", channel_id, redact_text(str(exc)))
            finally:
                if self._stream is stream:
                    self._stream = None
                await self._close_stream(stream)
            recovering = True
            await self._wait_before_retry()

    async def _handshake(self, url: str) -> Any:
        try:
            token = await fetch_token(self._token_source)
        except CredentialError as exc:
            logger.warning("no credential for stream handshake: %s", exc)
            return None
        protocols = (BEARER_PROTOCOL, token)
        logger.debug("opening %s with protocols %s", url, redact_protocols(protocols))
        try:
            return await self._connector(url, protocols)
        except TRANSPORT_ERRORS as exc:
            logger.warning("stream handshake to %s failed: %s", url, redact_text(str(exc)))
            return None

    async def _pump(self, stream: Any, channel_id: str) -> None:
        async for payload in stream:
            if self._state != STATE_OPEN or self._channel_id != channel_id:
                continue
            try:
                self._on_event(payload)
            except Exception:
                logger.exception("event callback failed for channel %s", channel_id)

    async def _wait_before_retry(self) -> None:
        attempt = self._attempt
        self._attempt += 1
        if self.policy.breaker_enabled and self._attempt >= self.policy.breaker_threshold:
            delay_ms = self.policy.breaker_cooldown_ms
            self._set_state(STATE_DEGRADED)
        else:
            delay_ms = self.policy.delay_ms(attempt)
            self._set_state(STATE_RECONNECT_WAIT)
        self._last_delay_ms = delay_ms
        logger.debug("reconnect attempt %d in %d ms", self._attempt, delay_ms)
        await self._sleep(delay_ms / 1000)

    async def _close_stream(self, stream: Any) -> None:
        try:
            await stream.close()
        except TRANSPORT_ERRORS as exc:
            logger.debug("error while closing event stream: %s", exc)

    def _set_state(self, state: str) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.exception("state callback failed for %s", state)

    def _notify_reopen(self, channel_id: str) -> None:
        if self._on_reopen is None:
            return
        try:
            self._on_reopen(channel_id)
        except Exception:
            logger.exception("reopen callback failed for channel %s", channel_id)
