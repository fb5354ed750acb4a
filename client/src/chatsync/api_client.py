"""aiohttp client for the chat REST resources the core depends on."""

from __future__ import annotations

import json
import logging
import urllib.parse
from typing import Any, Dict, List, Optional

import aiohttp

from .auth import TokenSource, fetch_token
from .models import (
    DISPOSITION_ATTACHMENT,
    DISPOSITION_INLINE,
    FileRecord,
    Message,
    Profile,
    SignedURL,
    UploadTicket,
)
from .redact import redact_mapping, redact_text

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status: int, message: str, *, method: str = "", path: str = "") -> None:
        self.status = status
        self.message = message
        self.method = method
        self.path = path
        super().__init__(message or f"HTTP {status}")


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _quote(segment: str) -> str:
    return urllib.parse.quote(str(segment), safe="")


async def _error_message(response: aiohttp.ClientResponse) -> str:
    if response.content_type == "application/json":
        try:
            body = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if body.get("detail"):
                return str(body["detail"])
        return json.dumps(body) if body is not None else ""
    return (await response.text()).strip()


class ChatApi:
    """REST client; every call asks the token source for a fresh credential.

    The client owns its :class:`aiohttp.ClientSession` unless one is passed in.
    The same session is reused for direct storage transfers, which must not
    carry the bearer header.
    """

    def __init__(
        self,
        base_url: str,
        token_source: TokenSource,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token_source = token_source
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ChatApi":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, object]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        token = await fetch_token(self._token_source)
        headers = {"Authorization": f"Bearer {token}"}
        url = _build_url(self.base_url, path)
        if payload is not None:
            logger.debug("%s %s payload=%s", method, redact_text(url), redact_mapping(payload))
        async with self.session.request(
            method,
            url,
            json=payload,
            params=params,
            headers=headers,
            timeout=self._timeout,
        ) as response:
            logger.debug("%s %s -> %s", method, redact_text(url), response.status)
            if not 200 <= response.status < 300:
                raise ApiError(response.status, await _error_message(response), method=method, path=path)
            if response.content_type == "application/json":
                return await response.json()
            raw = await response.text()
            return raw

    # ---- messages ----

    async def list_messages(self, channel_id: str) -> List[Message]:
        body = await self._request("GET", f"/channels/{_quote(channel_id)}/messages")
        if not isinstance(body, list):
            raise ApiError(200, "message list response is not an array", method="GET")
        return [Message.from_payload(item) for item in body]

    async def post_message(self, channel_id: str, text: str, parent_id: str | None = None) -> Message:
        payload: Dict[str, object] = {"text": text, "parent_id": parent_id}
        body = await self._request("POST", f"/channels/{_quote(channel_id)}/messages", payload=payload)
        return Message.from_payload(body)

    # ---- uploads ----

    async def sign_upload_attachment(
        self,
        workspace_id: str,
        channel_id: str,
        filename: str,
        content_type: str,
        size_bytes: int,
    ) -> UploadTicket:
        payload: Dict[str, object] = {
            "filename": filename,
            "content_type": content_type,
            "size_bytes": size_bytes,
        }
        body = await self._request(
            "POST",
            f"/workspaces/{_quote(workspace_id)}/channels/{_quote(channel_id)}/files/sign-upload",
            payload=payload,
        )
        return UploadTicket.from_payload(body)

    async def sign_upload_avatar(self, filename: str, content_type: str, size_bytes: int) -> UploadTicket:
        payload: Dict[str, object] = {
            "filename": filename,
            "content_type": content_type,
            "size_bytes": size_bytes,
        }
        body = await self._request("POST", "/users/me/avatar/sign-upload", payload=payload)
        return UploadTicket.from_payload(body)

    async def complete_upload(
        self,
        *,
        purpose: str,
        storage_key: str,
        etag: str,
        filename: str,
        content_type: str,
        size_bytes: int,
        workspace_id: str | None = None,
        channel_id: str | None = None,
        sha256_hex: str | None = None,
    ) -> FileRecord:
        payload: Dict[str, object] = {
            "purpose": purpose,
            "storage_key": storage_key,
            "etag": etag,
            "sha256_hex": sha256_hex,
            "filename": filename,
            "content_type": content_type,
            "size_bytes": size_bytes,
            "workspace_id": workspace_id,
            "channel_id": channel_id,
        }
        body = await self._request("POST", "/files/complete", payload=payload)
        return FileRecord.from_payload(body)

    async def file_url(self, file_id: str, disposition: str = DISPOSITION_ATTACHMENT) -> SignedURL:
        if disposition not in {DISPOSITION_INLINE, DISPOSITION_ATTACHMENT}:
            raise ValueError(f"unsupported disposition: {disposition}")
        body = await self._request(
            "GET",
            f"/files/{_quote(file_id)}/url",
            params={"disposition": disposition},
        )
        return SignedURL.from_payload(body)

    async def discard_upload(self, storage_key: str, file_id: str | None = None) -> None:
        payload: Dict[str, object] = {"storage_key": storage_key, "file_id": file_id}
        await self._request("POST", "/files/discard", payload=payload)

    # ---- profile ----

    async def get_me(self) -> Profile:
        body = await self._request("GET", "/users/me")
        return Profile.from_payload(body)

    async def update_me(self, display_name: str | None, avatar_file_id_or_null: str | None) -> Dict[str, object]:
        """``avatar_file_id_or_null``: ``None`` leaves the avatar, ``""`` clears it."""

        payload: Dict[str, object] = {
            "display_name": display_name,
            "avatar_file_id_or_null": avatar_file_id_or_null,
        }
        body = await self._request("PUT", "/users/me", payload=payload)
        return body if isinstance(body, dict) else {}
