from __future__ import annotations

import base64
import binascii
import json
from dataclasses import asdict, dataclass
from hashlib import sha256

from linksharing.errors import AccessError

CHECKSUM_SIZE = 4


def _checksum(payload: bytes) -> bytes:
    return sha256(sha256(payload).digest()).digest()[:CHECKSUM_SIZE]


@dataclass(frozen=True)
class Access:
    """A bearer grant for the storage backend.

    Serialized as unpadded URL-safe base64 of the JSON payload followed by a
    4 byte checksum, so it can be embedded in a URL path segment or split
    across DNS TXT records.
    """

    access_key_id: str
    secret_access_key: str
    region: str = "us-east-1"
    endpoint: str | None = None

    def serialize(self) -> str:
        payload = json.dumps(asdict(self), separators=(",", ":"), sort_keys=True).encode()
        encoded = base64.urlsafe_b64encode(payload + _checksum(payload))
        return encoded.rstrip(b"=").decode()

    @classmethod
    def parse(cls, serialized: str) -> Access:
        if not serialized:
            raise AccessError("missing access grant")
        padded = serialized + "=" * (-len(serialized) % 4)
        try:
            raw = base64.b64decode(padded, altchars=b"-_", validate=True)
        except (binascii.Error, ValueError):
            raise AccessError("invalid access grant format") from None
        payload, checksum = raw[:-CHECKSUM_SIZE], raw[-CHECKSUM_SIZE:]
        if not payload or _checksum(payload) != checksum:
            raise AccessError("invalid access grant format")
        try:
            fields = json.loads(payload)
            return cls(
                access_key_id=fields["access_key_id"],
                secret_access_key=fields["secret_access_key"],
                region=fields.get("region", "us-east-1"),
                endpoint=fields.get("endpoint"),
            )
        except (ValueError, KeyError, TypeError):
            raise AccessError("invalid access grant format") from None
