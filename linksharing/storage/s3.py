from __future__ import annotations

import socket
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import urlsplit

import anyio
from aioaws.core import RequestError
from aioaws.s3 import S3Client, S3Config
from httpx import AsyncClient, HTTPError, Response

from linksharing.access import Access
from linksharing.errors import BackendError, BucketNotFoundError, ObjectNotFoundError
from linksharing.storage import ListItem, ObjectInfo, Project, StorageBackend, collapse_prefixes


@dataclass
class S3Project(Project):
    client: AsyncClient
    access: Access
    downloads: list[Response] = field(default_factory=list)

    def _get_client(self, bucket: str) -> S3Client:
        return S3Client(
            self.client,
            S3Config(
                aws_access_key=self.access.access_key_id,
                aws_secret_key=self.access.secret_access_key,
                aws_region=self.access.region,
                aws_s3_bucket=bucket,
                aws_host=self.access.endpoint,
            ),
        )

    async def _bucket_missing(self, client: S3Client, key: str) -> bool:
        try:
            async for _ in client.list(prefix=key):
                break
        except RequestError as e:
            return e.status == 404
        return False

    async def stat_object(self, bucket: str, key: str) -> ObjectInfo:
        client = self._get_client(bucket)
        url = client.signed_download_url(key, method="HEAD")
        try:
            response = await self.client.head(url)
        except HTTPError as e:
            raise BackendError(f"stat {bucket}/{key}: {e}") from e
        if response.status_code == 404:
            if await self._bucket_missing(client, key):
                raise BucketNotFoundError(bucket)
            raise ObjectNotFoundError(f"{bucket}/{key}")
        if response.is_error:
            raise BackendError(f"stat {bucket}/{key}: HTTP {response.status_code}")
        last_modified = response.headers.get("Last-Modified")
        if last_modified:
            created = parsedate_to_datetime(last_modified)
        else:
            created = datetime.now(timezone.utc)
        return ObjectInfo(key=key, size=int(response.headers["Content-Length"]), created=created)

    async def list_objects(self, bucket: str, prefix: str) -> AsyncIterator[ListItem]:
        client = self._get_client(bucket)
        try:
            # S3 listings are recursive; fold sub-prefixes back into directory entries
            items = [
                ListItem(key=obj.key, size=obj.size, is_prefix=False)
                async for obj in client.list(prefix=prefix)
            ]
        except RequestError as e:
            if e.status == 404:
                raise BucketNotFoundError(bucket) from e
            raise BackendError(f"list {bucket}/{prefix}: HTTP {e.status}") from e
        except HTTPError as e:
            raise BackendError(f"list {bucket}/{prefix}: {e}") from e
        for item in collapse_prefixes(items, prefix):
            yield item

    async def download_object(
        self, bucket: str, key: str, offset: int = 0, length: int = -1
    ) -> AsyncIterator[bytes]:
        client = self._get_client(bucket)
        url = client.signed_download_url(key, method="GET")
        headers: dict[str, str] = {}
        if length > 0:
            headers["Range"] = f"bytes={offset}-{offset + length - 1}"
        elif offset > 0:
            headers["Range"] = f"bytes={offset}-"
        try:
            response = await self.client.send(self.client.build_request("GET", url, headers=headers), stream=True)
        except HTTPError as e:
            raise BackendError(f"download {bucket}/{key}: {e}") from e
        if response.is_error:
            await response.aclose()
            if response.status_code == 404:
                raise ObjectNotFoundError(f"{bucket}/{key}")
            raise BackendError(f"download {bucket}/{key}: HTTP {response.status_code}")
        self.downloads.append(response)
        return _iter_body(response)

    async def object_ips(self, bucket: str, key: str) -> list[str]:
        host = urlsplit(self.access.endpoint).hostname if self.access.endpoint else None
        if host is None:
            host = f"s3.{self.access.region}.amazonaws.com"
        try:
            infos = await anyio.getaddrinfo(host, 443, type=socket.SOCK_STREAM)
        except OSError as e:
            raise BackendError(f"resolve {host}: {e}") from e
        return list(dict.fromkeys(str(info[4][0]) for info in infos))

    async def close(self) -> None:
        # bodies that were never streamed still hold a pooled connection;
        # the http client itself is shared and owned by S3Storage
        for response in self.downloads:
            await response.aclose()
        self.downloads.clear()


async def _iter_body(response: Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()


@dataclass
class S3Storage(StorageBackend):
    client: AsyncClient

    @classmethod
    @asynccontextmanager
    async def connect(cls) -> AsyncIterator[S3Storage]:
        async with AsyncClient() as client:
            yield cls(client)

    async def open_project(self, access: Access) -> S3Project:
        return S3Project(self.client, access)
