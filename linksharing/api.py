from __future__ import annotations

import logging
import posixpath
import re
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Annotated
from urllib.parse import SplitResult, urlunsplit

import anyio
from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, StreamingResponse
from fastapi.routing import APIRoute
from starlette.routing import Match
from starlette.types import Receive, Scope, Send

from linksharing.access import Access
from linksharing.cache import TxtRecordCache
from linksharing.config import Config
from linksharing.depends import Injected
from linksharing.errors import (
    AccessError,
    BackendError,
    BucketNotFoundError,
    ObjectNotFoundError,
    RenderError,
    ResolutionError,
    ValidationError,
)
from linksharing.geoip import Geolocator, GeoIPError, Location
from linksharing.listing import build_listing, format_size
from linksharing.paths import parse_request_path
from linksharing.ranger import ObjectRanger, serve_content
from linksharing.records import TxtLookup, resolve
from linksharing.render import Templates
from linksharing.storage import ObjectInfo, Project, StorageBackend

logger = logging.getLogger(__name__)


class AnyMethodRoute(APIRoute):
    """Hands every HTTP method to the endpoint, which decides what is allowed."""

    def matches(self, scope: Scope) -> tuple[Match, Scope]:
        match, child_scope = super().matches(scope)
        # a method outside self.methods is only a partial match
        if match is Match.PARTIAL:
            match = Match.FULL
        return match, child_scope

    async def handle(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.app(scope, receive, send)


router = APIRouter(route_class=AnyMethodRoute)


@dataclass
class NotFoundMessages:
    bucket: str
    object: str


TRADITIONAL_NOT_FOUND = NotFoundMessages(
    bucket="Oops! Bucket not found.",
    object="Oops! Object not found.",
)
HOSTING_NOT_FOUND = NotFoundMessages(
    bucket="Oops! This site's bucket was not found.",
    object="Oops! Page not found.",
)


@dataclass
class ObjectPage:
    name: str
    size: str
    pieces: int
    locations: list[Location]


def split_host(host: str) -> str:
    # remove the port, keeping IPv6 literals intact
    if host.startswith("["):
        return host[1 : host.find("]")].lower()
    return host.rsplit(":", 1)[0].lower()


def request_host(host: Annotated[str, Header()] = "") -> str:
    return split_host(host)


def make_location(base: SplitResult, path: str) -> str:
    joined = posixpath.normpath(re.sub("/+", "/", f"{base.path}/{path}"))
    return urlunsplit((base.scheme, base.netloc, joined, "", ""))


def render_page(templates: Templates, name: str, status_code: int, **context: object) -> Response:
    try:
        body = templates.render(name, **context)
    except RenderError:
        logger.exception("error while executing template")
        body = b""
    return HTMLResponse(body, status_code=status_code)


def storage_error_response(
    templates: Templates,
    action: str,
    err: BackendError,
    messages: NotFoundMessages,
) -> Response:
    if isinstance(err, BucketNotFoundError):
        return render_page(templates, "404.html", 404, message=messages.bucket)
    if isinstance(err, ObjectNotFoundError):
        return render_page(templates, "404.html", 404, message=messages.object)
    logger.error("unable to handle request: action=%s", action, exc_info=err)
    return PlainTextResponse("unable to handle request", status_code=500)


async def close_project(project: Project) -> None:
    try:
        await project.close()
    except BackendError:
        logger.warning("unable to close project", exc_info=True)


async def open_project(backend: StorageBackend, access: Access, stack: AsyncExitStack) -> Project:
    project = await backend.open_project(access)
    stack.push_async_callback(close_project, project)
    return project


class ProjectStreamingResponse(StreamingResponse):
    """Streams an object body and closes its project when the exchange ends.

    The project is closed even when the client disconnects before the body
    is started.
    """

    def __init__(self, response: StreamingResponse, stack: AsyncExitStack) -> None:
        super().__init__(response.body_iterator, status_code=response.status_code, background=response.background)
        self.raw_headers = response.raw_headers
        self.stack = stack

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.stack.aclose()


async def close_after_body(response: Response, stack: AsyncExitStack) -> Response:
    """Keep the project open until a streamed body has been sent."""
    if not isinstance(response, StreamingResponse):
        await stack.aclose()
        return response
    return ProjectStreamingResponse(response, stack)


async def serve_object(
    request: Request,
    stack: AsyncExitStack,
    templates: Templates,
    ranger: ObjectRanger,
    messages: NotFoundMessages,
    headers: dict[str, str] | None = None,
) -> Response:
    try:
        response = await serve_content(request, ranger.info.key, ranger.info.created, ranger, headers)
    except BackendError as e:
        return storage_error_response(templates, "download object", e, messages)
    return await close_after_body(response, stack.pop_all())


def locate_pieces(geolocator: Geolocator, ips: list[str]) -> list[Location]:
    locations = []
    for ip in ips:
        try:
            location = geolocator.locate(ip)
        except GeoIPError:
            logger.exception("failed to get IP info")
            continue
        if location is not None:
            locations.append(location)
    return locations


async def object_page(
    project: Project,
    geolocator: Geolocator,
    bucket: str,
    info: ObjectInfo,
) -> ObjectPage:
    ips = await project.object_ips(bucket, info.key)
    locations = locate_pieces(geolocator, ips)
    return ObjectPage(
        name=info.key,
        size=format_size(info.size),
        pieces=len(locations),
        locations=locations,
    )


async def handle_traditional(
    request: Request,
    config: Config,
    backend: StorageBackend,
    templates: Templates,
    geolocator: Geolocator,
) -> Response:
    """Serve a share link: ``[raw/]<access>/<bucket>[/<key>]``."""
    location_only = request.method == "HEAD"
    path: str = request.scope["path"]
    try:
        parsed = parse_request_path(path)
    except ValidationError as e:
        return PlainTextResponse(f"invalid request: {e}", status_code=400)

    async with AsyncExitStack() as stack:
        try:
            project = await open_project(backend, parsed.access, stack)
        except BackendError as e:
            return storage_error_response(templates, "open project", e, TRADITIONAL_NOT_FOUND)

        if parsed.key == "" or parsed.key.endswith("/"):
            if not path.endswith("/"):
                # relative links in the listing only resolve below a trailing slash
                return RedirectResponse(path + "/", status_code=301)
            try:
                listing = await build_listing(
                    project.list_objects(parsed.bucket, parsed.key),
                    parsed.serialized_access,
                    parsed.bucket,
                    parsed.key,
                )
            except BackendError as e:
                return storage_error_response(templates, "list prefix", e, TRADITIONAL_NOT_FOUND)
            return render_page(templates, "prefix-listing.html", 200, listing=listing)

        try:
            info = await project.stat_object(parsed.bucket, parsed.key)
        except BackendError as e:
            return storage_error_response(templates, "stat object", e, TRADITIONAL_NOT_FOUND)

        if location_only:
            return RedirectResponse(make_location(config.base, path), status_code=302)

        download = "download" in request.query_params
        view = "view" in request.query_params
        if not download and not view and not parsed.raw:
            try:
                page = await object_page(project, geolocator, parsed.bucket, info)
            except BackendError as e:
                return storage_error_response(templates, "get object IPs", e, TRADITIONAL_NOT_FOUND)
            return render_page(templates, "single-object.html", 200, object=page)

        headers = {}
        if download:
            filename = parsed.key.split("/")[-1]
            headers["Content-Disposition"] = f'attachment; filename="{filename}"'
        ranger = ObjectRanger(project, info, parsed.bucket)
        return await serve_object(request, stack, templates, ranger, TRADITIONAL_NOT_FOUND, headers)


async def root_and_access(
    cache: TxtRecordCache,
    lookup: TxtLookup,
    hostname: str,
    timeout: float,
) -> tuple[Access, str]:
    entry, fresh = cache.get(hostname)
    if entry is not None and fresh:
        return entry.access, entry.root
    # concurrent misses may resolve the same hostname twice; the last put wins
    access, root = await resolve(lookup, hostname, timeout)
    cache.put(hostname, access, root)
    return access, root


def hosted_key(root: str, path: str) -> tuple[str, str]:
    """Map a hosted request path onto the bucket and key under ``root``.

    With ``root="bucket1/folder1"`` the path ``/folder2/index.html`` maps to
    ``("bucket1", "folder1/folder2/index.html")``.
    """
    bucket, _, prefix = root.partition("/")
    key = path.removeprefix("/") or "index.html"
    prefix = prefix.removesuffix("/")
    if prefix:
        key = f"{prefix}/{key}"
    return bucket, key


async def handle_hosting(
    request: Request,
    hostname: str,
    config: Config,
    backend: StorageBackend,
    cache: TxtRecordCache,
    lookup: TxtLookup,
    templates: Templates,
) -> Response:
    """Serve a custom domain whose grant and root live in DNS TXT records."""
    try:
        access, root = await root_and_access(cache, lookup, hostname, config.dns_timeout)
    except (ResolutionError, AccessError) as e:
        logger.error("unable to handle request: hostname=%s: %s", hostname, e)
        return PlainTextResponse("unable to handle request", status_code=500)

    bucket, key = hosted_key(root, request.scope["path"])

    async with AsyncExitStack() as stack:
        try:
            project = await open_project(backend, access, stack)
        except BackendError as e:
            return storage_error_response(templates, "open project", e, HOSTING_NOT_FOUND)

        try:
            info = await project.stat_object(bucket, key)
        except BackendError as e:
            return storage_error_response(templates, "stat object", e, HOSTING_NOT_FOUND)

        ranger = ObjectRanger(project, info, bucket)
        return await serve_object(request, stack, templates, ranger, HOSTING_NOT_FOUND)


@router.api_route("/{path:path}", methods=["GET", "HEAD"])
async def serve(
    request: Request,
    host: Annotated[str, Depends(request_host)],
    config: Injected[Config],
    backend: Injected[StorageBackend],
    cache: Injected[TxtRecordCache],
    lookup: Injected[TxtLookup],
    templates: Injected[Templates],
    geolocator: Injected[Geolocator],
) -> Response:
    if host != config.base_host:
        return await handle_hosting(request, host, config, backend, cache, lookup, templates)

    if request.method not in ("GET", "HEAD"):
        return PlainTextResponse("method not allowed", status_code=405)
    return await handle_traditional(request, config, backend, templates, geolocator)
