from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal
from urllib.parse import SplitResult, urlsplit

from pydantic_settings import BaseSettings, SettingsConfigDict

from linksharing.errors import ConfigError


def parse_url_base(url_base: str) -> SplitResult:
    try:
        u = urlsplit(url_base)
        u.port  # raises on a malformed port
    except ValueError as e:
        raise ConfigError(f"invalid URL base: {e}") from e
    if u.scheme not in ("http", "https"):
        raise ConfigError("URL base must be http:// or https://")
    if not u.hostname:
        raise ConfigError("URL base must contain host")
    if u.username is not None or u.password is not None:
        raise ConfigError("URL base must not contain user info")
    if u.query:
        raise ConfigError("URL base must not contain query values")
    if u.fragment:
        raise ConfigError("URL base must not contain a fragment")
    return u


@dataclass
class Config:
    url_base: str
    # seconds a hosting domain's TXT records are trusted for
    txt_record_ttl: float = 3600.0
    dns_timeout: float = 5.0
    base: SplitResult = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.base = parse_url_base(self.url_base)
        if self.txt_record_ttl < 0:
            raise ConfigError(f"txt_record_ttl must not be negative, got {self.txt_record_ttl}")
        if self.dns_timeout <= 0:
            raise ConfigError(f"dns_timeout must be positive, got {self.dns_timeout}")

    @property
    def base_host(self) -> str:
        return self.base.hostname or ""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LINKSHARING_", env_file=".env", extra="ignore")

    address: str = "0.0.0.0"
    port: int = 8080
    url_base: str = "http://localhost:8080"
    templates: str | None = None
    txt_record_ttl: float = 3600.0
    dns_timeout: float = 5.0
    geoip_database: str | None = None
    storage: Literal["memory", "s3"] = "s3"
    log_level: str = "INFO"

    def to_config(self) -> Config:
        return Config(
            url_base=self.url_base,
            txt_record_ttl=self.txt_record_ttl,
            dns_timeout=self.dns_timeout,
        )
