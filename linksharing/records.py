"""Hosting mode: turn a domain's TXT records into an access grant and a root.

A hosted domain publishes records such as::

    storj_grant-1:<first part of the grant>
    storj_grant-2:<second part of the grant>
    storj_root:mybucket/folder

TXT values are length limited, so the grant is split into numbered parts that
are reassembled in index order regardless of the order DNS returns them in.
"""
from __future__ import annotations

import logging
from typing import Protocol

import anyio
import dns.asyncresolver
import dns.exception

from linksharing.access import Access
from linksharing.errors import ResolutionError

logger = logging.getLogger(__name__)

GRANT_KEY = "storj_grant"
ROOT_KEY = "storj_root"


class TxtLookup(Protocol):
    async def lookup_txt(self, hostname: str) -> list[str]: ...


class DnsTxtLookup(TxtLookup):
    def __init__(self, resolver: dns.asyncresolver.Resolver | None = None) -> None:
        self.resolver = resolver or dns.asyncresolver.Resolver()

    async def lookup_txt(self, hostname: str) -> list[str]:
        try:
            answer = await self.resolver.resolve(hostname, "TXT")
        except dns.exception.DNSException as e:
            raise ResolutionError(f"txt lookup for {hostname} failed: {e}") from e
        try:
            # a single TXT record may be made of several character-strings
            return [b"".join(rdata.strings).decode() for rdata in answer]
        except UnicodeDecodeError as e:
            raise ResolutionError(f"txt record for {hostname} is not valid UTF-8: {e}") from e


def parse_records(records: list[str]) -> tuple[Access, str]:
    grants: dict[int, str] = {}
    root = ""
    for record in records:
        key, sep, value = record.partition(":")
        if not sep:
            continue
        if key.startswith(GRANT_KEY + "-"):
            index = key[len(GRANT_KEY) + 1 :]
            try:
                grants[int(index)] = value
            except ValueError:
                raise ResolutionError(f"invalid grant index {index!r} in txt record") from None
        elif key == ROOT_KEY:
            root = value

    if root == "":
        raise ResolutionError("missing root path in txt record")

    parts = []
    for i in range(1, max(grants, default=0) + 1):
        if not grants.get(i):
            raise ResolutionError("missing grants")
        parts.append(grants[i])
    if not parts:
        raise ResolutionError("missing grants")
    return Access.parse("".join(parts)), root


async def resolve(lookup: TxtLookup, hostname: str, timeout: float) -> tuple[Access, str]:
    try:
        with anyio.fail_after(timeout):
            records = await lookup.lookup_txt(hostname)
    except TimeoutError:
        raise ResolutionError(f"txt lookup for {hostname} timed out") from None
    logger.debug("resolved %d txt records for %s", len(records), hostname)
    return parse_records(records)
