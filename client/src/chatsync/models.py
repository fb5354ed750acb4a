from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

PURPOSE_MESSAGE_ATTACHMENT = "message_attachment"
PURPOSE_AVATAR = "avatar"

DISPOSITION_INLINE = "inline"
DISPOSITION_ATTACHMENT = "attachment"

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _require_str(payload: Mapping[str, Any], key: str, kind: str) -> str:
    value = payload.get(key)
    if value is None or value == "":
        raise ValueError(f"{kind} payload missing {key}")
    return str(value)


def is_image_content_type(content_type: str | None) -> bool:
    return bool(content_type) and content_type.lower().startswith("image/")


def disposition_for(content_type: str | None) -> str:
    return DISPOSITION_INLINE if is_image_content_type(content_type) else DISPOSITION_ATTACHMENT


@dataclass(frozen=True)
class Message:
    """A chat message as seen by the client; immutable once materialized."""

    id: str
    channel_id: str
    user_id: str
    text: str
    created_at: str
    workspace_id: str | None = None
    user_display_name: str | None = None
    user_avatar_file_id: str | None = None
    parent_id: str | None = None
    thread_root_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Message":
        """Build a message from a REST or stream payload.

        Live events may omit ``created_at``; those are stamped with the
        current UTC time.
        """

        if not isinstance(payload, Mapping):
            raise ValueError("message payload must be an object")
        return cls(
            id=_require_str(payload, "id", "message"),
            channel_id=_require_str(payload, "channel_id", "message"),
            user_id=str(payload.get("user_id") or ""),
            text=str(payload.get("text") or ""),
            created_at=_optional_str(payload.get("created_at")) or _utc_now_iso(),
            workspace_id=_optional_str(payload.get("workspace_id")),
            user_display_name=_optional_str(payload.get("user_display_name")),
            user_avatar_file_id=_optional_str(payload.get("user_avatar_file_id")),
            parent_id=_optional_str(payload.get("parent_id")),
            thread_root_id=_optional_str(payload.get("thread_root_id")),
        )

    @property
    def display_name(self) -> str:
        if self.user_display_name:
            return self.user_display_name
        return f"User {self.user_id[:6]}"


@dataclass(frozen=True)
class UploadTicket:
    upload_url: str
    storage_key: str
    file_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "UploadTicket":
        return cls(
            upload_url=_require_str(payload, "upload_url", "upload grant"),
            storage_key=_require_str(payload, "storage_key", "upload grant"),
            file_id=_optional_str(payload.get("file_id")),
        )


@dataclass(frozen=True)
class FileRecord:
    """Server-confirmed metadata for an uploaded object."""

    id: str
    storage_key: str
    filename: str
    content_type: str
    size_bytes: int
    etag: str | None
    is_image: bool
    workspace_id: str | None = None
    channel_id: str | None = None
    purpose: str | None = None
    created_at: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FileRecord":
        content_type = _optional_str(payload.get("content_type")) or DEFAULT_CONTENT_TYPE
        is_image = payload.get("is_image")
        size = payload.get("size_bytes")
        return cls(
            id=_require_str(payload, "id", "file record"),
            storage_key=_require_str(payload, "storage_key", "file record"),
            filename=str(payload.get("filename") or ""),
            content_type=content_type,
            size_bytes=int(size) if isinstance(size, (int, float)) else 0,
            etag=_optional_str(payload.get("etag")),
            is_image=bool(is_image) if isinstance(is_image, bool) else is_image_content_type(content_type),
            workspace_id=_optional_str(payload.get("workspace_id")),
            channel_id=_optional_str(payload.get("channel_id")),
            purpose=_optional_str(payload.get("purpose")),
            created_at=_optional_str(payload.get("created_at")),
        )


@dataclass(frozen=True)
class SignedURL:
    url: str
    expires_at: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SignedURL":
        return cls(
            url=_require_str(payload, "url", "file url"),
            expires_at=_optional_str(payload.get("expires_at")),
        )


@dataclass(frozen=True)
class Profile:
    id: str
    email: str | None = None
    display_name: str | None = None
    avatar_file_id: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Profile":
        return cls(
            id=_require_str(payload, "id", "profile"),
            email=_optional_str(payload.get("email")),
            display_name=_optional_str(payload.get("display_name")),
            avatar_file_id=_optional_str(payload.get("avatar_file_id")),
            avatar_url=_optional_str(payload.get("avatar_url")),
        )

    @property
    def needs_setup(self) -> bool:
        return not (self.display_name or "").strip()
