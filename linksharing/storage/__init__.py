from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from linksharing.access import Access


@dataclass
class ObjectInfo:
    key: str
    size: int
    created: datetime


@dataclass
class ListItem:
    key: str
    size: int
    is_prefix: bool


class Project(Protocol):
    async def stat_object(self, bucket: str, key: str) -> ObjectInfo: ...

    def list_objects(self, bucket: str, prefix: str) -> AsyncIterator[ListItem]: ...

    async def download_object(
        self, bucket: str, key: str, offset: int = 0, length: int = -1
    ) -> AsyncIterator[bytes]: ...

    async def object_ips(self, bucket: str, key: str) -> list[str]: ...

    async def close(self) -> None: ...


class StorageBackend(Protocol):
    async def open_project(self, access: Access) -> Project: ...


def collapse_prefixes(items: Iterable[ListItem], prefix: str) -> Iterable[ListItem]:
    """Fold every key below a further "/" into a single prefix item."""
    seen: set[str] = set()
    for item in items:
        rest = item.key[len(prefix) :]
        if "/" not in rest:
            yield item
            continue
        sub = prefix + rest.split("/")[0] + "/"
        if sub not in seen:
            seen.add(sub)
            yield ListItem(key=sub, size=0, is_prefix=True)
