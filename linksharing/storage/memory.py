from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone

from linksharing.access import Access
from linksharing.errors import BucketNotFoundError, ObjectNotFoundError
from linksharing.storage import ListItem, ObjectInfo, Project, StorageBackend, collapse_prefixes


@dataclass
class Object:
    body: bytes
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class InMemoryProject(Project):
    storage: dict[str, dict[str, Object]]
    node_ips: list[str]
    closed: bool = False

    def _bucket(self, bucket: str) -> dict[str, Object]:
        try:
            return self.storage[bucket]
        except KeyError:
            raise BucketNotFoundError(bucket) from None

    def _object(self, bucket: str, key: str) -> Object:
        try:
            return self._bucket(bucket)[key]
        except KeyError:
            raise ObjectNotFoundError(f"{bucket}/{key}") from None

    async def stat_object(self, bucket: str, key: str) -> ObjectInfo:
        obj = self._object(bucket, key)
        return ObjectInfo(key=key, size=len(obj.body), created=obj.created)

    async def list_objects(self, bucket: str, prefix: str) -> AsyncIterator[ListItem]:
        objects = self._bucket(bucket)
        items = [
            ListItem(key=key, size=len(obj.body), is_prefix=False)
            for key, obj in objects.items()
            if key.startswith(prefix)
        ]
        for item in collapse_prefixes(items, prefix):
            yield item

    async def download_object(
        self, bucket: str, key: str, offset: int = 0, length: int = -1
    ) -> AsyncIterator[bytes]:
        body = self._object(bucket, key).body
        end = len(body) if length < 0 else offset + length

        async def chunks() -> AsyncIterator[bytes]:
            yield body[offset:end]

        return chunks()

    async def object_ips(self, bucket: str, key: str) -> list[str]:
        self._object(bucket, key)
        return list(self.node_ips)

    async def close(self) -> None:
        self.closed = True


@dataclass
class InMemoryBackend(StorageBackend):
    storage: dict[str, dict[str, Object]] = field(default_factory=dict)
    node_ips: list[str] = field(default_factory=list)
    projects: list[InMemoryProject] = field(default_factory=list)

    def create_bucket(self, bucket: str) -> None:
        self.storage.setdefault(bucket, {})

    def put(self, bucket: str, key: str, body: bytes) -> None:
        self.storage.setdefault(bucket, {})[key] = Object(body=body)

    async def open_project(self, access: Access) -> InMemoryProject:
        project = InMemoryProject(self.storage, self.node_ips)
        self.projects.append(project)
        return project
