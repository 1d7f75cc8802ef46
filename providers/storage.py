from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable


@dataclass(frozen=True)
class ObjectMetadata:
    content_length: int
    is_dir: bool = False


@dataclass(frozen=True)
class ObjectEntry:
    # Path relative to the bucket root, e.g. "dir/sub/file.bin" or "dir/sub/".
    path: str
    metadata: ObjectMetadata


@runtime_checkable
class StorageOperator(Protocol):
    """
    Provider operator: a bucket-bound handle configured with credentials and a
    per-request timeout. The wire protocol behind it is the SDK's business.

    Implementations raise their SDK's native exceptions; the object storage
    backend wraps them.
    """

    async def list(self, path: str, recursive: bool = True) -> List[ObjectEntry]:
        """All descendants of `path` (a prefix ending in "/"), files and directories."""
        ...

    async def stat(self, path: str) -> ObjectMetadata: ...

    async def reader(
        self,
        path: str,
        offset: int = 0,
        length: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        """
        Open `path` and return its bytes from `offset` as a chunk stream
        (`length` bytes when given, else to the end).
        """
        ...


class ObjectNotFound(FileNotFoundError):
    """Raised by operators when a key (or directory prefix) does not exist."""


def entries_from_objects(prefix: str, objects: Iterable[Tuple[str, int]]) -> List[ObjectEntry]:
    """
    Build a recursive listing for flat-namespace stores from (key, size) pairs.

    Keys ending in "/" are directory markers. Intermediate directories that
    only exist implicitly (as a key prefix) are synthesized once. The listed
    prefix itself is never an entry.
    """
    out: Dict[str, ObjectEntry] = {}

    for key, size in objects:
        if not key.startswith(prefix) or key == prefix:
            continue

        rel = key[len(prefix):]
        parts = rel.split("/")
        # every component but the last is a directory
        for i in range(1, len(parts)):
            dir_path = prefix + "/".join(parts[:i]) + "/"
            if dir_path not in out:
                out[dir_path] = ObjectEntry(dir_path, ObjectMetadata(0, True))

        if key.endswith("/"):
            continue
        out[key] = ObjectEntry(key, ObjectMetadata(int(size or 0), False))

    return list(out.values())
