"""Remote folder enumeration into a flat path index."""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set, Tuple

from ..api_clients.base import BaseRemoteClient, RemoteItem
from ..utils.logging import get_logger


@dataclass
class RemoteScanResult:
    """Flat view of a remote tree.

    ``folders`` maps every traversed folder's relative path to its id; the
    root folder is stored under ``""``.
    """

    files: Dict[str, RemoteItem] = field(default_factory=dict)
    folders: Dict[str, str] = field(default_factory=dict)
    folder_count: int = 0
    virtual_count: int = 0


class RemoteTreeScanner:
    """Lists a remote folder recursively.

    Traversal is iterative with an explicit visited set, so a folder that
    shows up twice (shortcuts, multiple parents, malformed graphs) is only
    expanded once. Virtual items are counted but never returned as files.
    """

    def __init__(self, client: BaseRemoteClient, root_folder_id: str):
        self.client = client
        self.root_folder_id = root_folder_id
        self.logger = get_logger(self.__class__.__name__)

    async def scan(self) -> RemoteScanResult:
        result = RemoteScanResult()
        result.folders[""] = self.root_folder_id

        visited: Set[str] = {self.root_folder_id}
        pending: List[Tuple[str, str]] = [(self.root_folder_id, "")]

        while pending:
            folder_id, prefix = pending.pop()
            for item in await self.client.list_folder(folder_id):
                path = f"{prefix}/{item.name}" if prefix else item.name

                if item.is_folder:
                    result.folder_count += 1
                    if item.id in visited:
                        self.logger.warning("Skipping already visited folder", path=path, folder_id=item.id)
                        continue
                    visited.add(item.id)
                    result.folders[path] = item.id
                    pending.append((item.id, path))

                elif item.is_virtual:
                    result.virtual_count += 1

                else:
                    existing = result.files.get(path)
                    if existing is not None:
                        self.logger.warning("Duplicate remote name, keeping newest", path=path)
                        if existing.modified_time >= item.modified_time:
                            continue
                    result.files[path] = item

        self.logger.info(
            "Scanned remote tree",
            root_folder_id=self.root_folder_id,
            files=len(result.files),
            folders=result.folder_count,
            virtual=result.virtual_count
        )
        return result


def resolve_item_path(
    item_id: str,
    items_by_id: Mapping[str, RemoteItem],
    root_id: Optional[str] = "root"
) -> str:
    """Rebuild an item's path by following first-parent links.

    Stops at ``root_id`` or at an item with no known parent. Returns ``""``
    when the parent chain loops back on itself.
    """
    names: List[str] = []
    visited: Set[str] = set()
    current: Optional[str] = item_id

    while current is not None and current != root_id:
        if current in visited:
            return ""
        visited.add(current)

        item = items_by_id.get(current)
        if item is None:
            break
        names.append(item.name)
        current = item.parents[0] if item.parents else None

    return "/".join(reversed(names))
