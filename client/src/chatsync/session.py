"""Glue between the active channel, its event stream and its message log."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import aiohttp

from .api_client import ApiError, ChatApi
from .auth import CredentialError, TokenSource
from .config import BackoffPolicy
from .connection import ConnectionManager, Connector, StateCallback
from .message_log import MessageLog
from .models import Message

logger = logging.getLogger(__name__)

EVENT_MESSAGE_CREATED = "message_created"

_FETCH_ERRORS = (ApiError, CredentialError, aiohttp.ClientError, asyncio.TimeoutError, ValueError)


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("%s failed: %s", task.get_name(), exc)


class ChannelSession:
    """Keeps the stream and the log pointed at the same channel.

    ``select`` switches both in one step: the log is invalidated before the
    old stream is torn down, so a snapshot or event for the previous channel
    can never land in the new one. Overlapping ``select`` calls are applied
    in call order. ``close`` (or leaving ``async with``) cancels every task and
    closes the stream.
    """

    def __init__(
        self,
        api: ChatApi,
        ws_base: str,
        token_source: TokenSource,
        *,
        connector: Optional[Connector] = None,
        policy: BackoffPolicy | None = None,
        on_message: Callable[[Message], None] | None = None,
        on_passthrough: Callable[[Any], None] | None = None,
        on_state_change: StateCallback | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.log = MessageLog(api.list_messages)
        self.connection = ConnectionManager(
            ws_base,
            token_source,
            self._handle_event,
            connector=connector,
            policy=policy,
            on_state_change=on_state_change,
            on_reopen=self._schedule_reconcile,
            sleep=sleep,
        )
        self._on_message = on_message
        self._on_passthrough = on_passthrough
        self._load_task: asyncio.Task | None = None
        self._reconcile_task: asyncio.Task | None = None
        self._switch_lock = asyncio.Lock()

    @property
    def channel_id(self) -> str | None:
        return self.log.channel_id

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.log.messages

    async def select(self, channel_id: str | None) -> None:
        async with self._switch_lock:
            if channel_id and channel_id == self.log.channel_id and channel_id == self.connection.channel_id:
                return
            self.log.clear()
            await self._cancel_background()
            await self.connection.select(channel_id)
            if channel_id:
                self._load_task = asyncio.create_task(self.log.load(channel_id), name=f"snapshot:{channel_id}")
                self._load_task.add_done_callback(_log_task_failure)

    async def wait_loaded(self) -> bool:
        """Wait for the current snapshot; re-raises its fetch error, if any."""

        task = self._load_task
        if task is None:
            return False
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return False
            raise

    async def reload(self) -> bool:
        if self.log.channel_id is None:
            return False
        return await self.log.load(self.log.channel_id)

    async def send(self, text: str, parent_id: str | None = None) -> Message:
        if self.log.channel_id is None:
            raise RuntimeError("no active channel")
        message = await self.api.post_message(self.log.channel_id, text, parent_id)
        self.log.append(message)
        return message

    async def close(self) -> None:
        async with self._switch_lock:
            try:
                await self._cancel_background()
            finally:
                await self.connection.close()
                self.log.clear()

    async def __aenter__(self) -> "ChannelSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _handle_event(self, payload: Any) -> None:
        if not isinstance(payload, dict) or payload.get("type") != EVENT_MESSAGE_CREATED:
            if self._on_passthrough is not None:
                self._on_passthrough(payload)
            return
        try:
            message = Message.from_payload(payload.get("message") or {})
        except ValueError as exc:
            logger.warning("ignoring malformed message_created event: %s", exc)
            return
        if message.channel_id != self.log.channel_id:
            return
        if self.log.append(message) and self._on_message is not None:
            self._on_message(message)

    def _schedule_reconcile(self, channel_id: str) -> None:
        if self._reconcile_task is not None and not self._reconcile_task.done():
            return
        self._reconcile_task = asyncio.create_task(self._reconcile(channel_id), name=f"reconcile:{channel_id}")
        self._reconcile_task.add_done_callback(_log_task_failure)

    async def _reconcile(self, channel_id: str) -> None:
        if self._load_task is not None and not self._load_task.done():
            # A snapshot is already on its way; it covers the outage.
            return
        try:
            added = await self.log.reconcile(channel_id)
        except _FETCH_ERRORS as exc:
            logger.warning("reconciliation for channel %s failed: %s", channel_id, exc)
            return
        if self._on_message is not None:
            for message in added:
                self._on_message(message)

    async def _cancel_background(self) -> None:
        tasks = [t for t in (self._load_task, self._reconcile_task) if t is not None and not t.done()]
        self._load_task = None
        self._reconcile_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
