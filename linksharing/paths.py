from __future__ import annotations

from dataclasses import dataclass

from linksharing.access import Access
from linksharing.errors import ValidationError

RAW_MARKER = "raw"


@dataclass
class ParsedPath:
    raw: bool
    access: Access
    serialized_access: str
    bucket: str
    key: str


def parse_request_path(path: str) -> ParsedPath:
    """Split a traditional request path into its grant, bucket and key.

    The grammar is ``[raw/]<access>/<bucket>[/<key...>]``; the key may itself
    contain separators.
    """
    raw = False
    # drop the leading slash
    if path.startswith("/"):
        path = path[1:]

    segments = path.split("/", 3)
    if len(segments) == 4:
        if segments[0] == RAW_MARKER:
            raw = True
            segments = segments[1:]
        else:
            segments = [segments[0], segments[1], segments[2] + "/" + segments[3]]

    if len(segments) == 1:
        if segments[0] == "":
            raise ValidationError("missing access")
        raise ValidationError("missing bucket")

    serialized_access, bucket = segments[0], segments[1]
    if bucket == "":
        raise ValidationError("missing bucket")
    key = segments[2] if len(segments) == 3 else ""
    access = Access.parse(serialized_access)
    return ParsedPath(
        raw=raw,
        access=access,
        serialized_access=serialized_access,
        bucket=bucket,
        key=key,
    )
