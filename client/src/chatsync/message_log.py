from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, List, Sequence

from .models import Message

logger = logging.getLogger(__name__)

SnapshotFetcher = Callable[[str], Awaitable[Sequence[Message]]]


class MessageLog:
    """Arrival-ordered, id-deduplicated messages for the active channel.

    A snapshot ``load`` replaces the contents wholesale; live events are
    appended at the tail. Every ``load``/``clear`` bumps a generation counter,
    and a snapshot that resolves under an older generation is discarded.
    """

    def __init__(self, fetch_snapshot: SnapshotFetcher) -> None:
        self._fetch_snapshot = fetch_snapshot
        self._channel_id: str | None = None
        self._messages: List[Message] = []
        self._index: Dict[str, Message] = {}
        self._generation = 0

    @property
    def channel_id(self) -> str | None:
        return self._channel_id

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    def ids(self) -> list[str]:
        return [message.id for message in self._messages]

    def clear(self) -> None:
        self._generation += 1
        self._channel_id = None
        self._reset([])

    async def load(self, channel_id: str) -> bool:
        """Make ``channel_id`` active and replace the contents with its snapshot.

        Returns ``False`` when the channel changed while the fetch was in
        flight and the result was dropped.
        """

        self._generation += 1
        generation = self._generation
        self._channel_id = channel_id
        self._reset([])
        snapshot = await self._fetch_snapshot(channel_id)
        if generation != self._generation:
            logger.debug("discarding stale snapshot for channel %s", channel_id)
            return False
        self._reset(m for m in snapshot if m.channel_id == channel_id)
        return True

    async def reconcile(self, channel_id: str) -> list[Message]:
        """Merge a fresh snapshot, keeping messages already present in place.

        Messages the log has not seen yet are appended in snapshot order and
        returned.
        """

        if channel_id != self._channel_id:
            return []
        generation = self._generation
        snapshot = await self._fetch_snapshot(channel_id)
        if generation != self._generation or channel_id != self._channel_id:
            logger.debug("discarding stale reconciliation for channel %s", channel_id)
            return []
        added = [message for message in snapshot if self.append(message)]
        if added:
            logger.info("reconciled %d missed message(s) into channel %s", len(added), channel_id)
        return added

    def append(self, message: Message) -> bool:
        if self._channel_id is None or message.channel_id != self._channel_id:
            return False
        if message.id in self._index:
            return False
        self._messages.append(message)
        self._index[message.id] = message
        return True

    def _reset(self, messages) -> None:
        self._messages = []
        self._index = {}
        for message in messages:
            # Snapshots may repeat an id; the first occurrence wins.
            if message.id not in self._index:
                self._messages.append(message)
                self._index[message.id] = message
