"""Tracked-file record and chunk partitioning."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


CHUNK_PREFIX = "chunk-"
CHUNK_SUFFIX = ".json"
ROOT_CHUNK_KEY = "root"
DIGIT_CHUNK_KEY = "0-9"
SPECIAL_CHUNK_KEY = "special"

_UNSAFE_KEY_CHARS = re.compile(r"[^a-z0-9-]")


@dataclass
class TrackedFile:
    """Last known synchronized state of one path.

    Not the current state of either side: a record only asserts that both
    replicas were observed equal at this revision.
    """

    path: str
    remote_id: str
    modified_time: datetime
    size: Optional[int] = None
    checksum: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the on-disk chunk entry format."""
        return {
            "driveId": self.remote_id,
            "modifiedTime": self.modified_time.isoformat(),
            "size": self.size,
            "checksum": self.checksum,
        }

    @classmethod
    def from_record(cls, path: str, record: Dict[str, Any]) -> "TrackedFile":
        return cls(
            path=path,
            remote_id=record["driveId"],
            modified_time=parse_timestamp(record.get("modifiedTime")),
            size=record.get("size"),
            checksum=record.get("checksum"),
        )


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif value:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    else:
        return datetime.fromtimestamp(0, tz=timezone.utc)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def chunk_key_for(relative_path: str) -> str:
    """Derive the chunk key for a path.

    The key depends only on the first path segment so related paths share a
    chunk and the assignment is stable across restarts.
    """
    normalized = relative_path.lower().replace("\\", "/")
    first_part = normalized.split("/")[0]

    if not first_part:
        return ROOT_CHUNK_KEY

    if len(first_part) == 1:
        key = first_part
    elif re.match(r"[0-9]", first_part):
        key = DIGIT_CHUNK_KEY
    elif not re.match(r"[a-z0-9]", first_part):
        key = SPECIAL_CHUNK_KEY
    else:
        key = first_part[:2]

    return _UNSAFE_KEY_CHARS.sub("_", key)


def chunk_name_for(relative_path: str) -> str:
    """File name of the chunk owning ``relative_path``."""
    return f"{CHUNK_PREFIX}{chunk_key_for(relative_path)}{CHUNK_SUFFIX}"
