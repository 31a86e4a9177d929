"""Remote storage clients."""

from .base import (
    BaseRemoteClient,
    RemoteItem,
    FOLDER_MIME_TYPE,
    VIRTUAL_MIME_PREFIX
)
from ..exceptions import (
    RemoteError,
    AuthenticationError,
    TransientError,
    APIConnectionError,
    RateLimitError,
    NotFoundError,
    is_auth_error
)

from .google_drive import GoogleDriveClient

__all__ = [
    "BaseRemoteClient",
    "RemoteItem",
    "FOLDER_MIME_TYPE",
    "VIRTUAL_MIME_PREFIX",

    "RemoteError",
    "AuthenticationError",
    "TransientError",
    "APIConnectionError",
    "RateLimitError",
    "NotFoundError",
    "is_auth_error",

    "GoogleDriveClient",
]
