from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import geoip2.database
import geoip2.errors
from maxminddb import InvalidDatabaseError


class GeoIPError(Exception):
    pass


@dataclass
class Location:
    latitude: float
    longitude: float


class Geolocator(Protocol):
    def locate(self, ip: str) -> Location | None: ...


class NullGeolocator(Geolocator):
    def locate(self, ip: str) -> Location | None:
        return None


class MaxMindGeolocator(Geolocator):
    """Looks addresses up in a MaxMind GeoIP2/GeoLite2 city database."""

    def __init__(self, path: str) -> None:
        self.reader = geoip2.database.Reader(path)

    def locate(self, ip: str) -> Location | None:
        try:
            city = self.reader.city(ip)
        except (geoip2.errors.GeoIP2Error, InvalidDatabaseError, ValueError) as e:
            raise GeoIPError(f"{ip}: {e}") from e
        if city.location.latitude is None or city.location.longitude is None:
            return None
        return Location(latitude=city.location.latitude, longitude=city.location.longitude)

    def close(self) -> None:
        self.reader.close()
