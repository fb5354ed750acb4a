"""Chat client core: channel stream, message log and file uploads."""

from .api_client import ApiError, ChatApi
from .auth import CredentialError, EnvTokenSource, StaticTokenSource
from .config import BackoffPolicy, ClientConfig, load_client_config_from_env
from .connection import ConnectionManager
from .message_log import MessageLog
from .models import Message, Profile
from .profile import AvatarURLCache, ProfileDraft
from .session import ChannelSession
from .uploads import StorageTransferError, UploadFailed, UploadSaga, UploadSource, send_attachment

__all__ = [
    "ApiError",
    "AvatarURLCache",
    "BackoffPolicy",
    "ChannelSession",
    "ChatApi",
    "ClientConfig",
    "ConnectionManager",
    "CredentialError",
    "EnvTokenSource",
    "Message",
    "MessageLog",
    "Profile",
    "ProfileDraft",
    "StaticTokenSource",
    "StorageTransferError",
    "UploadFailed",
    "UploadSaga",
    "UploadSource",
    "load_client_config_from_env",
    "send_attachment",
]
