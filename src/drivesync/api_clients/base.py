"""Base remote client interface and remote item model."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.logging import get_logger


FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
VIRTUAL_MIME_PREFIX = "application/vnd.google-apps."


@dataclass
class RemoteItem:
    """One entry of a remote folder listing."""

    id: str
    name: str
    mime_type: str
    modified_time: datetime
    size: Optional[int] = None
    checksum: Optional[str] = None
    parents: List[str] = field(default_factory=list)

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def is_virtual(self) -> bool:
        """Native documents (Docs, Sheets, ...) with no binary content."""
        return self.mime_type.startswith(VIRTUAL_MIME_PREFIX) and not self.is_folder

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mime_type": self.mime_type,
            "modified_time": self.modified_time.isoformat(),
            "size": self.size,
            "checksum": self.checksum,
            "parents": list(self.parents),
        }


class BaseRemoteClient(ABC):
    """Abstract base class for remote storage clients.

    Implementations translate transport failures into the exceptions in
    ``drivesync.exceptions`` so the engine can tell retryable failures from
    fatal ones.
    """

    def __init__(self, **kwargs):
        self.logger = get_logger(self.__class__.__name__)
        self._authenticated = False

    @abstractmethod
    async def authenticate(self) -> bool:
        """Authenticate with the remote service.

        Raises:
            AuthenticationError: If credentials are missing or rejected
        """

    @abstractmethod
    async def list_folder(self, parent_id: str) -> List[RemoteItem]:
        """List the direct children of a folder (files, folders, virtual items)."""

    @abstractmethod
    async def get(self, item_id: str, destination: Path) -> None:
        """Download the content of a file into ``destination``."""

    @abstractmethod
    async def create(self, name: str, parent_id: str, source: Path) -> RemoteItem:
        """Upload ``source`` as a new file named ``name`` under ``parent_id``."""

    @abstractmethod
    async def update(self, item_id: str, source: Path) -> RemoteItem:
        """Replace the content of an existing file with ``source``."""

    @abstractmethod
    async def delete(self, item_id: str) -> None:
        """Delete a remote item.

        Raises:
            NotFoundError: If the item does not exist
        """

    @abstractmethod
    async def find_folder(self, name: str, parent_id: str) -> Optional[str]:
        """Return the id of the child folder ``name`` of ``parent_id``, if any."""

    @abstractmethod
    async def create_folder(self, name: str, parent_id: Optional[str]) -> str:
        """Create a folder and return its id."""

    @abstractmethod
    async def list_all_folders(self) -> List[RemoteItem]:
        """List every folder visible to the account, with parent links."""

    async def ensure_folder_path(self, folder_path: str, root_id: str = "root") -> str:
        """Resolve a nested folder path like ``Projects/ChatApp``, creating missing parts.

        Returns:
            ID of the innermost folder
        """
        parts = [part.strip() for part in folder_path.split("/") if part.strip()]
        if not parts:
            raise ValueError(f"Invalid folder path: {folder_path!r}")

        parent_id = root_id
        for part in parts:
            folder_id = await self.find_folder(part, parent_id)
            if folder_id is None:
                folder_id = await self.create_folder(part, parent_id)
            parent_id = folder_id

        self.logger.info("Resolved folder path", folder_path=folder_path, folder_id=parent_id)
        return parent_id

    async def invalidate_credentials(self) -> None:
        """Forget stored credentials after an authentication failure."""
        self._authenticated = False

    async def get_sync_info(self) -> Dict[str, Any]:
        return {
            "client_type": self.__class__.__name__,
            "authenticated": self._authenticated
        }
