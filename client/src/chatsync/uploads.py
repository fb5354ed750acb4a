"""Client-orchestrated upload saga: grant, transfer, complete, resolve.

There is no server-side coordinator across the four steps. A failure at any
step aborts the rest and surfaces as a single :class:`UploadFailed`. When the
bytes already reached storage (step 3 or 4 failed) the saga asks the metadata
service to discard the object so storage and metadata stay consistent.
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple

import aiohttp

from .api_client import ApiError, ChatApi
from .models import (
    DEFAULT_CONTENT_TYPE,
    PURPOSE_AVATAR,
    PURPOSE_MESSAGE_ATTACHMENT,
    FileRecord,
    Message,
    SignedURL,
    UploadTicket,
    disposition_for,
    is_image_content_type,
)
from .redact import redact_text

logger = logging.getLogger(__name__)

STEP_GRANT = "grant"
STEP_TRANSFER = "transfer"
STEP_COMPLETE = "complete"
STEP_RESOLVE = "resolve"

Transfer = Callable[[str, bytes, str], Awaitable[str]]

# Servers that predate /files/discard answer with one of these.
_DISCARD_UNSUPPORTED = frozenset({404, 405})


class StorageTransferError(Exception):
    def __init__(self, status: int, detail: str = "") -> None:
        self.status = status
        self.detail = detail
        super().__init__(f"storage PUT failed: {status}" + (f" ({detail})" if detail else ""))


class UploadFailed(Exception):
    """The one failure the saga reports; the cause is chained for diagnostics."""

    def __init__(self, filename: str, step: str) -> None:
        self.filename = filename
        self.step = step
        super().__init__(f"upload of {filename} failed")


def normalize_etag(raw: Optional[str]) -> str:
    return (raw or "").replace('"', "")


async def put_object(session: aiohttp.ClientSession, upload_url: str, body: bytes, content_type: str) -> str:
    """PUT ``body`` straight to a presigned URL and return the normalized ETag."""

    async with session.put(upload_url, data=body, headers={"Content-Type": content_type}) as response:
        if not 200 <= response.status < 300:
            detail = (await response.text()).strip()[:200]
            raise StorageTransferError(response.status, detail)
        return normalize_etag(response.headers.get("ETag"))


@dataclass(frozen=True)
class UploadSource:
    filename: str
    content_type: str
    data: bytes

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: Path | str, content_type: str | None = None) -> "UploadSource":
        path = Path(path).expanduser()
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            filename=path.name,
            content_type=content_type or guessed or DEFAULT_CONTENT_TYPE,
            data=path.read_bytes(),
        )


@dataclass(frozen=True)
class UploadTarget:
    purpose: str
    workspace_id: str | None = None
    channel_id: str | None = None

    @classmethod
    def attachment(cls, workspace_id: str, channel_id: str) -> "UploadTarget":
        if not workspace_id or not channel_id:
            raise ValueError("attachments need both workspace_id and channel_id")
        return cls(purpose=PURPOSE_MESSAGE_ATTACHMENT, workspace_id=workspace_id, channel_id=channel_id)

    @classmethod
    def avatar(cls) -> "UploadTarget":
        return cls(purpose=PURPOSE_AVATAR)


@dataclass(frozen=True)
class UploadResult:
    record: FileRecord
    url: SignedURL
    disposition: str

    @property
    def href(self) -> str:
        return self.url.url


class UploadSaga:
    def __init__(
        self,
        api: ChatApi,
        *,
        transfer: Transfer | None = None,
        compensate: bool = True,
        compute_sha256: bool = False,
    ) -> None:
        self._api = api
        self._transfer = transfer or self._default_transfer
        self._compensate = compensate
        self._compute_sha256 = compute_sha256

    async def _default_transfer(self, upload_url: str, body: bytes, content_type: str) -> str:
        return await put_object(self._api.session, upload_url, body, content_type)

    async def run(self, source: UploadSource, target: UploadTarget) -> UploadResult:
        step = STEP_GRANT
        ticket: UploadTicket | None = None
        record: FileRecord | None = None
        stored = False
        try:
            ticket = await self._request_grant(source, target)

            step = STEP_TRANSFER
            etag = await self._transfer(ticket.upload_url, source.data, source.content_type)
            stored = True

            step = STEP_COMPLETE
            record = await self._api.complete_upload(
                purpose=target.purpose,
                storage_key=ticket.storage_key,
                etag=etag,
                filename=source.filename,
                content_type=source.content_type,
                size_bytes=source.size_bytes,
                workspace_id=target.workspace_id,
                channel_id=target.channel_id,
                sha256_hex=hashlib.sha256(source.data).hexdigest() if self._compute_sha256 else None,
            )

            step = STEP_RESOLVE
            disposition = disposition_for(source.content_type)
            url = await self._api.file_url(record.id, disposition)
        except Exception as exc:
            logger.warning(
                "upload of %s aborted at %s step: %s", source.filename, step, redact_text(str(exc))
            )
            if stored and self._compensate and ticket is not None:
                await self._discard(ticket, record)
            raise UploadFailed(source.filename, step) from exc
        return UploadResult(record=record, url=url, disposition=disposition)

    async def upload_attachment(self, source: UploadSource, workspace_id: str, channel_id: str) -> UploadResult:
        return await self.run(source, UploadTarget.attachment(workspace_id, channel_id))

    async def upload_avatar(self, source: UploadSource) -> UploadResult:
        return await self.run(source, UploadTarget.avatar())

    async def _request_grant(self, source: UploadSource, target: UploadTarget) -> UploadTicket:
        if target.purpose == PURPOSE_AVATAR:
            return await self._api.sign_upload_avatar(source.filename, source.content_type, source.size_bytes)
        return await self._api.sign_upload_attachment(
            target.workspace_id,
            target.channel_id,
            source.filename,
            source.content_type,
            source.size_bytes,
        )

    async def _discard(self, ticket: UploadTicket, record: FileRecord | None) -> None:
        file_id = record.id if record is not None else ticket.file_id
        try:
            await self._api.discard_upload(ticket.storage_key, file_id)
        except Exception as exc:
            if isinstance(exc, ApiError) and exc.status in _DISCARD_UNSUPPORTED:
                logger.info("server has no discard endpoint; %s left for storage expiry", ticket.storage_key)
            else:
                logger.warning("could not discard orphaned object %s", ticket.storage_key, exc_info=True)
        else:
            logger.info("discarded orphaned object %s", ticket.storage_key)


def attachment_message_text(filename: str, content_type: str, url: str) -> str:
    label = "(image)" if is_image_content_type(content_type) else "(file)"
    return f"{label} {filename}\n{url}"


async def send_attachment(
    saga: UploadSaga,
    api: ChatApi,
    source: UploadSource,
    workspace_id: str,
    channel_id: str,
) -> Tuple[UploadResult, Message]:
    """Upload ``source`` into the channel and post a message linking to it."""

    result = await saga.upload_attachment(source, workspace_id, channel_id)
    message = await api.post_message(
        channel_id,
        attachment_message_text(source.filename, source.content_type, result.href),
    )
    return result, message
