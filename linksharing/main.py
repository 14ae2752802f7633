from __future__ import annotations

import logging
from contextlib import AsyncExitStack

import anyio
from fastapi import FastAPI

from linksharing.api import router
from linksharing.cache import TxtRecordCache
from linksharing.config import Config, Settings
from linksharing.depends import bind
from linksharing.geoip import Geolocator, MaxMindGeolocator, NullGeolocator
from linksharing.records import DnsTxtLookup, TxtLookup
from linksharing.render import Templates
from linksharing.storage import StorageBackend

logger = logging.getLogger(__name__)


def make_app(
    storage: StorageBackend,
    cache: TxtRecordCache,
    config: Config,
    lookup: TxtLookup,
    templates: Templates | None = None,
    geolocator: Geolocator | None = None,
) -> FastAPI:
    app = FastAPI(openapi_url=None, docs_url=None, redoc_url=None)
    app.include_router(router)
    bind(app, StorageBackend, storage)
    bind(app, TxtRecordCache, cache)
    bind(app, Config, config)
    bind(app, TxtLookup, lookup)
    bind(app, Templates, templates or Templates())
    bind(app, Geolocator, geolocator or NullGeolocator())
    return app


async def main() -> None:
    import uvicorn

    from linksharing.storage.memory import InMemoryBackend
    from linksharing.storage.s3 import S3Storage

    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = settings.to_config()
    templates = Templates(settings.templates)

    async with AsyncExitStack() as stack:
        fs: StorageBackend
        if settings.storage == "s3":
            fs = await stack.enter_async_context(S3Storage.connect())
        else:
            fs = InMemoryBackend()

        geolocator: Geolocator = NullGeolocator()
        if settings.geoip_database:
            maxmind = MaxMindGeolocator(settings.geoip_database)
            stack.callback(maxmind.close)
            geolocator = maxmind

        app = make_app(
            fs,
            TxtRecordCache(ttl=config.txt_record_ttl),
            config,
            DnsTxtLookup(),
            templates,
            geolocator,
        )
        logger.info("serving %s on %s:%d (%s storage)", config.url_base, settings.address, settings.port, settings.storage)

        server = uvicorn.Server(uvicorn.Config(app, host=settings.address, port=settings.port, log_config=None))
        await server.serve()


def run() -> None:
    anyio.run(main)


if __name__ == "__main__":
    run()
