from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from linksharing.storage import ListItem

_UNITS = [
    ("EB", 10**18),
    ("PB", 10**15),
    ("TB", 10**12),
    ("GB", 10**9),
    ("MB", 10**6),
    ("KB", 10**3),
]


def format_size(size: int) -> str:
    """Human readable decimal size, e.g. ``1.5 MB``.

    A unit is used once the size reaches two thirds of it, so 700 bytes
    renders as ``0.7 KB``.
    """
    for unit, scale in _UNITS:
        if abs(size) >= scale * 2 / 3:
            return f"{size / scale:.1f} {unit}"
    return f"{size} B"


@dataclass
class Breadcrumb:
    label: str
    url: str


@dataclass
class Entry:
    name: str
    size: str
    is_prefix: bool


@dataclass
class Listing:
    bucket: str
    breadcrumbs: list[Breadcrumb] = field(default_factory=list)
    entries: list[Entry] = field(default_factory=list)


def build_breadcrumbs(serialized_access: str, bucket: str, prefix: str) -> list[Breadcrumb]:
    root = Breadcrumb(label=bucket, url=f"{serialized_access}/{bucket}/")
    breadcrumbs = [root]
    if prefix:
        components = prefix.removesuffix("/").split("/")
        for i, component in enumerate(components, start=1):
            path = "/".join(components[:i])
            breadcrumbs.append(Breadcrumb(label=component, url=f"{root.url}/{path}/"))
    return breadcrumbs


async def build_listing(
    items: AsyncIterator[ListItem],
    serialized_access: str,
    bucket: str,
    prefix: str,
) -> Listing:
    listing = Listing(bucket=bucket, breadcrumbs=build_breadcrumbs(serialized_access, bucket, prefix))
    # TODO: page through the listing instead of draining it for large prefixes
    async for item in items:
        listing.entries.append(
            Entry(
                name=item.key[len(prefix) :],
                size=format_size(item.size),
                is_prefix=item.is_prefix,
            )
        )
    return listing
