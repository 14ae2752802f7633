import socket
from typing import AsyncIterator

import anyio
import pytest
import uvicorn
from fastapi import FastAPI
from httpx import AsyncClient

from linksharing.access import Access
from linksharing.cache import TxtRecordCache
from linksharing.config import Config
from linksharing.geoip import GeoIPError, Location
from linksharing.main import make_app
from linksharing.storage.memory import InMemoryBackend


class FakeLookup:
    def __init__(self) -> None:
        self.records: dict[str, list[str]] = {}
        self.calls: list[str] = []
        self.delay = 0.0
        # hold every lookup until this many have started
        self.wait_for = 0

    async def lookup_txt(self, hostname: str) -> list[str]:
        self.calls.append(hostname)
        while len(self.calls) < self.wait_for:
            await anyio.sleep(0.01)
        await anyio.sleep(self.delay)
        return self.records.get(hostname, [])


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakeGeolocator:
    def __init__(self, locations: dict[str, Location]) -> None:
        self.locations = locations

    def locate(self, ip: str) -> Location | None:
        try:
            return self.locations[ip]
        except KeyError:
            raise GeoIPError(ip) from None


def publish(lookup: FakeLookup, hostname: str, serialized: str, root: str) -> None:
    parts = [serialized[i : i + 40] for i in range(0, len(serialized), 40)]
    records = [f"storj_grant-{i}:{part}" for i, part in enumerate(parts, start=1)]
    lookup.records[hostname] = [f"storj_root:{root}"] + records[::-1]


@pytest.fixture
def fs() -> InMemoryBackend:
    fs = InMemoryBackend(node_ips=["10.0.0.1", "10.0.0.2", "10.0.0.3"])
    fs.put("testbucket", "test/foo", b"FOO")
    fs.put("testbucket", "test/sub/bar.txt", b"BAR")
    fs.put("testbucket", "readme.txt", b"hello")
    return fs


@pytest.fixture
def lookup() -> FakeLookup:
    return FakeLookup()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def cache(clock: Clock) -> TxtRecordCache:
    return TxtRecordCache(ttl=60, clock=clock)


@pytest.fixture
def app(fs: InMemoryBackend, cache: TxtRecordCache, lookup: FakeLookup) -> FastAPI:
    geolocator = FakeGeolocator(
        {
            "10.0.0.1": Location(latitude=52.52, longitude=13.405),
            "10.0.0.2": Location(latitude=40.7128, longitude=-74.006),
        }
    )
    return make_app(
        fs,
        cache,
        Config(url_base="http://127.0.0.1", dns_timeout=0.5),
        lookup,
        geolocator=geolocator,
    )


@pytest.fixture
async def endpoint(app: FastAPI) -> AsyncIterator[str]:
    """Run the gateway on a free port with the in-memory backend."""
    # find an open port
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        port = s.getsockname()[1]

    host = f"http://127.0.0.1:{port}"

    async with AsyncClient(base_url=host) as client:

        async def is_up() -> bool:
            try:
                await client.get("/")
                return True
            except Exception:
                return False

        server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=port))
        async with anyio.create_task_group() as tg:
            tg.start_soon(server.serve)
            while not (await is_up()):
                await anyio.sleep(0.05)

            yield host
            await server.shutdown()
            tg.cancel_scope.cancel()


@pytest.mark.anyio
async def test_method_not_allowed(endpoint: str, serialized_access: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.put(f"/{serialized_access}/testbucket/test/foo", content=b"x")
        assert resp.status_code == 405
        assert resp.text == "method not allowed"


@pytest.mark.anyio
@pytest.mark.parametrize("method", ["GET", "HEAD"])
async def test_invalid_requests(endpoint: str, serialized_access: str, method: str) -> None:
    cases = [
        ("/", "invalid request: missing access"),
        ("/BADACCESS/testbucket/test/foo", "invalid request: invalid access grant format"),
        (f"/{serialized_access}", "invalid request: missing bucket"),
    ]
    async with AsyncClient(base_url=endpoint) as client:
        for path, body in cases:
            resp = await client.request(method, path)
            assert resp.status_code == 400, path
            if method == "GET":
                assert resp.text == body


@pytest.mark.anyio
async def test_bucket_root_redirects(endpoint: str, serialized_access: str) -> None:
    """Listing URLs gain a trailing slash before any relative link is emitted."""
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/{serialized_access}/testbucket")
        assert resp.status_code == 301
        assert resp.headers["Location"] == f"/{serialized_access}/testbucket/"


@pytest.mark.anyio
async def test_list_bucket_root(endpoint: str, serialized_access: str, fs: InMemoryBackend) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/{serialized_access}/testbucket/")
        assert resp.status_code == 200
        assert "text/html" in resp.headers["Content-Type"]
        assert 'href="test/"' in resp.text
        assert "readme.txt" in resp.text
        assert "5 B" in resp.text
    assert all(project.closed for project in fs.projects)


@pytest.mark.anyio
async def test_list_prefix(endpoint: str, serialized_access: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/{serialized_access}/testbucket/test/")
        assert resp.status_code == 200
        assert 'href="foo?view"' in resp.text
        assert 'href="sub/"' in resp.text
        assert f'href="/{serialized_access}/testbucket//test/"' in resp.text
        assert "readme.txt" not in resp.text


@pytest.mark.anyio
async def test_list_bucket_not_found(endpoint: str, serialized_access: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/{serialized_access}/someotherbucket/")
        assert resp.status_code == 404
        assert "Bucket not found" in resp.text


@pytest.mark.anyio
async def test_bucket_not_found(endpoint: str, serialized_access: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/{serialized_access}/someotherbucket/test/foo")
        assert resp.status_code == 404
        assert "Bucket not found" in resp.text


@pytest.mark.anyio
async def test_object_not_found(endpoint: str, serialized_access: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/{serialized_access}/testbucket/test/bar")
        assert resp.status_code == 404
        assert "Object not found" in resp.text

        resp = await client.head(f"/{serialized_access}/testbucket/test/bar")
        assert resp.status_code == 404


@pytest.mark.anyio
async def test_download(endpoint: str, serialized_access: str, fs: InMemoryBackend) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/{serialized_access}/testbucket/test/foo?download")
        assert resp.status_code == 200
        assert resp.content == b"FOO"
        assert resp.headers["Content-Disposition"] == 'attachment; filename="foo"'
        assert resp.headers["Accept-Ranges"] == "bytes"
    assert fs.projects and all(project.closed for project in fs.projects)


@pytest.mark.anyio
async def test_view(endpoint: str, serialized_access: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/{serialized_access}/testbucket/test/sub/bar.txt?view")
        assert resp.status_code == 200
        assert resp.content == b"BAR"
        assert resp.headers["Content-Type"].startswith("text/plain")
        assert "Content-Disposition" not in resp.headers


@pytest.mark.anyio
async def test_raw(endpoint: str, serialized_access: str) -> None:
    """The raw marker skips the information page without any query flag."""
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/raw/{serialized_access}/testbucket/test/foo")
        assert resp.status_code == 200
        assert resp.content == b"FOO"


@pytest.mark.anyio
async def test_range(endpoint: str, serialized_access: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(
            f"/{serialized_access}/testbucket/test/foo?view",
            headers={"Range": "bytes=1-"},
        )
        assert resp.status_code == 206
        assert resp.content == b"OO"
        assert resp.headers["Content-Range"] == "bytes 1-2/3"

        resp = await client.get(
            f"/{serialized_access}/testbucket/test/foo?view",
            headers={"Range": "bytes=5-"},
        )
        assert resp.status_code == 416
        assert resp.headers["Content-Range"] == "bytes */3"


@pytest.mark.anyio
async def test_object_page(endpoint: str, serialized_access: str) -> None:
    """Without flags an object gets an information page; unlocatable nodes are skipped."""
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get(f"/{serialized_access}/testbucket/test/foo")
        assert resp.status_code == 200
        assert "text/html" in resp.headers["Content-Type"]
        assert "test/foo" in resp.text
        assert "3 B" in resp.text
        assert "<dt>Pieces</dt><dd>2</dd>" in resp.text
        assert 'data-lat="52.52"' in resp.text
        assert "FOO" not in resp.text


@pytest.mark.anyio
async def test_head_redirects_to_base(endpoint: str, serialized_access: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.head(f"/{serialized_access}/testbucket/test/foo")
        assert resp.status_code == 302
        assert resp.headers["Location"] == f"http://127.0.0.1/{serialized_access}/testbucket/test/foo"


@pytest.mark.anyio
async def test_hosting(
    endpoint: str,
    serialized_access: str,
    fs: InMemoryBackend,
    lookup: FakeLookup,
) -> None:
    fs.put("bucket1", "folder1/folder2/index.html", b"<h1>nested</h1>")
    fs.put("bucket1", "folder1/index.html", b"<h1>home</h1>")
    publish(lookup, "mydomain.com", serialized_access, "bucket1/folder1")

    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/folder2/index.html", headers={"Host": "mydomain.com"})
        assert resp.status_code == 200
        assert resp.content == b"<h1>nested</h1>"
        assert resp.headers["Content-Type"].startswith("text/html")

        resp = await client.get("/", headers={"Host": "mydomain.com:8080"})
        assert resp.status_code == 200
        assert resp.content == b"<h1>home</h1>"

        resp = await client.get("/missing.html", headers={"Host": "mydomain.com"})
        assert resp.status_code == 404
        assert "Page not found" in resp.text

    # the TXT records were fetched once and then served from the cache
    assert lookup.calls == ["mydomain.com"]
    assert all(project.closed for project in fs.projects)


@pytest.mark.anyio
async def test_hosting_bucket_root(endpoint: str, serialized_access: str, lookup: FakeLookup) -> None:
    publish(lookup, "www.example.org", serialized_access, "testbucket")
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/test/foo", headers={"Host": "www.example.org"})
        assert resp.status_code == 200
        assert resp.content == b"FOO"

        resp = await client.get("/readme.txt", headers={"Host": "www.example.org"}, params={"download": ""})
        assert resp.content == b"hello"
        assert "Content-Disposition" not in resp.headers


@pytest.mark.anyio
async def test_hosting_unresolvable(
    endpoint: str,
    serialized_access: str,
    lookup: FakeLookup,
    cache: TxtRecordCache,
) -> None:
    lookup.records["noroot.example.org"] = [f"storj_grant-1:{serialized_access}"]
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/index.html", headers={"Host": "noroot.example.org"})
        assert resp.status_code == 500
        assert resp.text == "unable to handle request"

        resp = await client.get("/index.html", headers={"Host": "unknown.example.org"})
        assert resp.status_code == 500

    # failed resolutions are never cached
    assert len(cache) == 0


@pytest.mark.anyio
async def test_hosting_bucket_not_found(endpoint: str, access: Access, lookup: FakeLookup) -> None:
    publish(lookup, "mydomain.com", access.serialize(), "nosuchbucket")
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/", headers={"Host": "mydomain.com"})
        assert resp.status_code == 404
        assert "bucket was not found" in resp.text


@pytest.mark.anyio
async def test_unsupported_method_is_plain_text(endpoint: str, serialized_access: str, lookup: FakeLookup) -> None:
    """Methods outside the usual set reach the handler instead of the router's JSON 405."""
    publish(lookup, "mydomain.com", serialized_access, "testbucket")
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.request("PROPFIND", f"/{serialized_access}/testbucket/x")
        assert resp.status_code == 405
        assert resp.text == "method not allowed"

        # hosting mode serves content for any method
        resp = await client.request("PROPFIND", "/test/foo", headers={"Host": "mydomain.com"})
        assert resp.status_code == 200
        assert resp.content == b"FOO"


@pytest.mark.anyio
async def test_disconnect_before_body_closes_project(
    app: FastAPI,
    serialized_access: str,
    fs: InMemoryBackend,
) -> None:
    """A client that goes away before the body starts still releases the project."""
    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.3"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": f"/{serialized_access}/testbucket/test/foo",
        "raw_path": f"/{serialized_access}/testbucket/test/foo".encode(),
        "query_string": b"view",
        "root_path": "",
        "headers": [(b"host", b"127.0.0.1")],
        "client": ("127.0.0.1", 50000),
        "server": ("127.0.0.1", 80),
    }

    async def receive() -> dict[str, object]:
        return {"type": "http.disconnect"}

    async def send(message: dict[str, object]) -> None:
        if message["type"] == "http.response.start":
            await anyio.sleep_forever()

    with anyio.fail_after(5):
        await app(scope, receive, send)

    assert len(fs.projects) == 1
    assert fs.projects[0].closed


@pytest.mark.anyio
async def test_hosting_expired_entry_is_resolved_again(
    endpoint: str,
    serialized_access: str,
    lookup: FakeLookup,
    cache: TxtRecordCache,
    clock: Clock,
) -> None:
    publish(lookup, "mydomain.com", serialized_access, "testbucket")
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/test/foo", headers={"Host": "mydomain.com"})
        assert resp.content == b"FOO"

        clock.now += 59
        resp = await client.get("/test/foo", headers={"Host": "mydomain.com"})
        assert resp.content == b"FOO"
        assert lookup.calls == ["mydomain.com"]

        clock.now += 1
        resp = await client.get("/test/foo", headers={"Host": "mydomain.com"})
        assert resp.content == b"FOO"
        assert lookup.calls == ["mydomain.com", "mydomain.com"]

    entry, fresh = cache.get("mydomain.com")
    assert fresh
    assert entry is not None and entry.resolved_at == clock.now
    assert len(cache) == 1


@pytest.mark.anyio
async def test_hosting_timed_out_resolution_is_not_cached(
    endpoint: str,
    serialized_access: str,
    lookup: FakeLookup,
    cache: TxtRecordCache,
) -> None:
    publish(lookup, "slow.example.org", serialized_access, "testbucket")
    lookup.delay = 2
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/test/foo", headers={"Host": "slow.example.org"})
        assert resp.status_code == 500
        assert resp.text == "unable to handle request"
    assert len(cache) == 0


@pytest.mark.anyio
async def test_hosting_concurrent_misses_both_resolve(
    endpoint: str,
    serialized_access: str,
    lookup: FakeLookup,
    cache: TxtRecordCache,
) -> None:
    """Concurrent misses are not coalesced; both resolve and the last write wins."""
    publish(lookup, "mydomain.com", serialized_access, "testbucket")
    lookup.wait_for = 2
    statuses: list[int] = []

    async with AsyncClient(base_url=endpoint) as client:

        async def fetch() -> None:
            resp = await client.get("/test/foo", headers={"Host": "mydomain.com"})
            statuses.append(resp.status_code)

        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                tg.start_soon(fetch)
                tg.start_soon(fetch)

    assert statuses == [200, 200]
    assert lookup.calls == ["mydomain.com", "mydomain.com"]
    assert len(cache) == 1
    entry, fresh = cache.get("mydomain.com")
    assert fresh
    assert entry is not None and entry.root == "testbucket"
