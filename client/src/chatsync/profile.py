from __future__ import annotations

import asyncio
import logging
from typing import Dict

import aiohttp

from .api_client import ApiError, ChatApi
from .auth import CredentialError
from .models import DISPOSITION_INLINE, Profile
from .uploads import UploadResult, UploadSaga, UploadSource

logger = logging.getLogger(__name__)


class ProfileDraft:
    """Editable copy of the caller's profile.

    An uploaded avatar is held as a pending file id and only becomes the
    profile avatar when :meth:`save` commits it. ``""`` as the pending id
    means "remove the avatar".
    """

    def __init__(self, api: ChatApi, saga: UploadSaga | None = None) -> None:
        self._api = api
        self._saga = saga or UploadSaga(api)
        self.display_name = ""
        self.avatar_url: str | None = None
        self.pending_avatar_file_id: str | None = None
        self._loaded: Profile | None = None

    @property
    def dirty(self) -> bool:
        if self._loaded is None:
            return bool(self.display_name) or self.pending_avatar_file_id is not None
        return (
            self.display_name != (self._loaded.display_name or "")
            or self.pending_avatar_file_id != self._loaded.avatar_file_id
        )

    async def load(self) -> Profile:
        profile = await self._api.get_me()
        self._loaded = profile
        self.display_name = profile.display_name or ""
        self.avatar_url = profile.avatar_url
        self.pending_avatar_file_id = profile.avatar_file_id
        return profile

    async def upload_avatar(self, source: UploadSource) -> UploadResult:
        result = await self._saga.upload_avatar(source)
        self.avatar_url = result.href
        self.pending_avatar_file_id = result.record.id
        return result

    def clear_avatar(self) -> None:
        self.avatar_url = None
        self.pending_avatar_file_id = ""

    async def save(self) -> None:
        await self._api.update_me(self.display_name, self.pending_avatar_file_id)
        self._loaded = Profile(
            id=self._loaded.id if self._loaded else "",
            email=self._loaded.email if self._loaded else None,
            display_name=self.display_name,
            avatar_file_id=self.pending_avatar_file_id or None,
            avatar_url=self.avatar_url,
        )
        self.pending_avatar_file_id = self._loaded.avatar_file_id


class AvatarURLCache:
    """file id -> inline URL, so each author avatar is resolved once."""

    def __init__(self, api: ChatApi) -> None:
        self._api = api
        self._urls: Dict[str, str] = {}

    async def resolve(self, file_id: str | None) -> str | None:
        if not file_id:
            return None
        cached = self._urls.get(file_id)
        if cached:
            return cached
        try:
            signed = await self._api.file_url(file_id, DISPOSITION_INLINE)
        except (ApiError, CredentialError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("avatar %s unavailable: %s", file_id, exc)
            return None
        self._urls[file_id] = signed.url
        return signed.url

    def forget(self, file_id: str) -> None:
        self._urls.pop(file_id, None)
