from __future__ import annotations

import mimetypes
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from email.utils import format_datetime

from fastapi import Request, Response
from fastapi.responses import StreamingResponse

from linksharing.storage import ObjectInfo, Project

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiable(Exception):
    pass


@dataclass
class ObjectRanger:
    project: Project
    info: ObjectInfo
    bucket: str

    def size(self) -> int:
        return self.info.size

    async def range(self, offset: int, length: int) -> AsyncIterator[bytes]:
        return await self.project.download_object(self.bucket, self.info.key, offset=offset, length=length)


def parse_range(header: str | None, size: int) -> tuple[int, int] | None:
    """Parse a single ``Range`` header into an inclusive (start, end) pair.

    Returns None when the whole object should be served: no header, a header
    we do not understand, or a multi-range request.
    """
    if not header:
        return None
    m = _RANGE_RE.match(header.strip())
    if not m:
        return None
    start_str, end_str = m.groups()
    if not start_str and not end_str:
        return None
    if not start_str:
        suffix = int(end_str)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(header)
        return max(size - suffix, 0), size - 1
    start = int(start_str)
    end = int(end_str) if end_str else size - 1
    if start >= size or start > end:
        raise RangeNotSatisfiable(header)
    return start, min(end, size - 1)


async def serve_content(
    request: Request,
    name: str,
    modified: datetime,
    ranger: ObjectRanger,
    headers: dict[str, str] | None = None,
) -> Response:
    size = ranger.size()
    headers = dict(headers or {})
    headers["Accept-Ranges"] = "bytes"
    headers["Last-Modified"] = format_datetime(modified, usegmt=True)
    media_type = mimetypes.guess_type(name)[0] or "application/octet-stream"

    try:
        byte_range = parse_range(request.headers.get("range"), size)
    except RangeNotSatisfiable:
        headers["Content-Range"] = f"bytes */{size}"
        return Response(status_code=416, headers=headers)

    if byte_range is None:
        headers["Content-Length"] = str(size)
        return StreamingResponse(
            await ranger.range(0, size),
            status_code=200,
            headers=headers,
            media_type=media_type,
        )

    start, end = byte_range
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(end - start + 1)
    return StreamingResponse(
        await ranger.range(start, end - start + 1),
        status_code=206,
        headers=headers,
        media_type=media_type,
    )
