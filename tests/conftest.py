from __future__ import annotations

import base64
import dataclasses
import hashlib
import io
from typing import Any, AsyncIterable, Mapping, Optional

import aiohttp
import multidict
import pytest
import pytest_aiohttp
import pytest_asyncio
import yarl

import tuschunks


@dataclasses.dataclass
class MockTusServer:
    # URLs to create and upload.
    create_endpoint: yarl.URL
    upload_endpoint: yarl.URL

    # The value of the "Location" header returned on creation.
    location: str

    # The uploaded data will be accumulated here.
    data: Optional[bytearray]

    # "Upload-Length" and "Upload-Metadata" of the creation request.
    upload_length: Optional[int]
    metadata: Optional[str]

    # Complete HTTP headers used in the last head/post request.
    head_headers: Optional[Mapping[str, str]]
    post_headers: Optional[Mapping[str, str]]

    # Headers of all PATCH requests.
    patch_headers: list[Mapping[str, str]]

    # Number of PATCH requests with a checksum that did not match the data.
    checksum_mismatches: int

    # Reject uploaded data with a "400 Bad Request" error.
    reject_upload: bool

    # Answer HEAD and OPTIONS requests with "200 OK" instead of "204 No Content".
    reply_ok: bool

    # The aiohttp test server object.
    server: aiohttp.test_utils.TestServer


def sha1_checksum(data: bytes) -> str:
    return "sha1 " + base64.b64encode(hashlib.sha1(data).digest()).decode()  # noqa: S324


@pytest_asyncio.fixture
async def tus_server(aiohttp_server: pytest_aiohttp.AiohttpServer) -> MockTusServer:
    """Return a fake tus server that can consume a single file."""

    async def handler_create(request: aiohttp.web.Request) -> aiohttp.web.Response:
        server: MockTusServer = request.app["state"]["server"]

        server.post_headers = request.headers
        server.upload_length = int(request.headers["Upload-Length"])
        server.metadata = request.headers.get("Upload-Metadata")

        # "Create" the upload.
        server.data = bytearray()

        headers = {"Location": server.location}
        raise aiohttp.web.HTTPCreated(headers=headers)

    async def handler_options(request: aiohttp.web.Request) -> aiohttp.web.Response:
        server: MockTusServer = request.app["state"]["server"]

        headers = {
            "Tus-Resumable": "1.0.0",
            "Tus-Version": "1.0.0,0.2.2",
            "Tus-Extension": "creation,checksum,termination",
            "Tus-Max-Size": "1073741824",
        }

        if server.reply_ok:
            raise aiohttp.web.HTTPOk(headers=headers)
        raise aiohttp.web.HTTPNoContent(headers=headers)

    async def handler_head(request: aiohttp.web.Request) -> aiohttp.web.Response:
        server: MockTusServer = request.app["state"]["server"]

        server.head_headers = request.headers

        if server.data is None:
            raise aiohttp.web.HTTPNotFound

        headers = {"Tus-Resumable": "1.0.0", "Upload-Offset": str(len(server.data))}
        if server.metadata is not None:
            headers["Upload-Metadata"] = server.metadata

        if server.reply_ok:
            raise aiohttp.web.HTTPOk(headers=headers)
        raise aiohttp.web.HTTPNoContent(headers=headers)

    async def handler_upload(request: aiohttp.web.Request) -> aiohttp.web.Response:
        server: MockTusServer = request.app["state"]["server"]

        body = await request.read()
        server.patch_headers.append(request.headers)

        if server.data is None:
            raise aiohttp.web.HTTPNotFound

        if server.reject_upload:
            raise aiohttp.web.HTTPBadRequest(text="chunk rejected")

        if int(request.headers["Upload-Offset"]) != len(server.data):
            raise aiohttp.web.HTTPConflict

        if request.headers["Upload-Checksum"] != sha1_checksum(body):
            server.checksum_mismatches += 1
            return aiohttp.web.Response(status=460)

        server.data.extend(body)
        headers = {"Tus-Resumable": "1.0.0", "Upload-Offset": str(len(server.data))}
        raise aiohttp.web.HTTPNoContent(headers=headers)

    async def handler_delete(request: aiohttp.web.Request) -> aiohttp.web.Response:
        server: MockTusServer = request.app["state"]["server"]

        if server.data is None:
            raise aiohttp.web.HTTPNotFound

        server.data = None
        raise aiohttp.web.HTTPNoContent

    async def handler_get(request: aiohttp.web.Request) -> aiohttp.web.Response:
        server: MockTusServer = request.app["state"]["server"]

        if server.data is None:
            raise aiohttp.web.HTTPNotFound

        return aiohttp.web.Response(body=bytes(server.data))

    upload_name = "1234abcdefgh"

    app = aiohttp.web.Application()
    app["state"] = {}
    app.router.add_route("POST", "/files", handler_create)
    app.router.add_route("OPTIONS", "/files", handler_options)
    app.router.add_route("HEAD", "/files/" + upload_name, handler_head)
    app.router.add_route("PATCH", "/files/" + upload_name, handler_upload)
    app.router.add_route("DELETE", "/files/" + upload_name, handler_delete)
    app.router.add_route("GET", "/files/" + upload_name, handler_get)

    http_server = await aiohttp_server(app)
    create_endpoint = http_server.make_url("/files")
    upload_endpoint = create_endpoint / upload_name

    server = MockTusServer(
        create_endpoint=create_endpoint,
        upload_endpoint=upload_endpoint,
        location=str(upload_endpoint),
        data=None,
        upload_length=None,
        metadata=None,
        head_headers=None,
        post_headers=None,
        patch_headers=[],
        checksum_mismatches=0,
        reject_upload=False,
        reply_ok=False,
        server=http_server,
    )

    app["state"]["server"] = server

    return server


@pytest.fixture
def memory_file() -> io.BytesIO:
    """Dummy data to use during tests."""
    return io.BytesIO(b"\x00\x01\x02\x03")


class EOFBytesIO:
    """A wrapper around 'io.BytesIO' that never returns data."""

    def __init__(self, b: io.BytesIO) -> None:
        self._b = b

    def seek(self, *args: Any, **kwargs: Any) -> int:
        return self._b.seek(*args, **kwargs)

    def read(self, *args: Any, **kwargs: Any) -> bytes:
        return b""


@pytest.fixture
def eof_memory_file(memory_file: io.BytesIO) -> io.BytesIO:
    # The two functions implemented by 'BinaryIO' are the only
    # ones tuschunks uses, so the type error can be ignored.
    return EOFBytesIO(memory_file)  # type: ignore[return-value]


def _response(status: int, headers: Optional[Mapping[str, str]] = None) -> tuschunks.Response:
    h = multidict.CIMultiDictProxy(multidict.CIMultiDict(headers or {}))
    return tuschunks.Response(status, h, b"")


class FakeTusTransport:
    """In-memory stand-in for 'Transport' that behaves like a tus server.

    Connection resets are simulated by storing only a part of a chunk and then
    raising the error the real transport raises for a reset.
    """

    def __init__(self, data: Optional[bytes] = None) -> None:
        self.data = bytearray(data or b"")

        # All requests as (method, headers) tuples.
        self.requests: list[tuple[str, dict[str, str]]] = []

        # "Upload-Offset" and body of every PATCH request.
        self.patches: list[tuple[int, bytes]] = []

        # Maps the number of a PATCH request to the number of bytes the server
        # keeps before the connection is reset.
        self.reset_on_patch: dict[int, int] = {}

        # PATCH requests that fail with a network error other than a reset.
        self.fail_on_patch: set[int] = set()

        # Maps the number of a HEAD request to the network error it fails with.
        self.fail_on_head: dict[int, tuschunks.NetworkFault] = {}

    @property
    def methods(self) -> list[str]:
        return [method for method, _ in self.requests]

    async def request(
        self,
        method: str,
        url: yarl.URL,
        headers: Optional[Mapping[str, str]] = None,
        data: Optional[AsyncIterable[bytes]] = None,
        cancel: Optional[tuschunks.CancellationToken] = None,
        progress: Optional[tuschunks.ProgressCallback] = None,
    ) -> tuschunks.Response:
        if cancel is not None:
            cancel.raise_if_cancelled()

        self.requests.append((method, dict(headers or {})))

        if method == "HEAD":
            number = self.methods.count("HEAD") - 1
            if number in self.fail_on_head:
                raise tuschunks.TransportError("HEAD failed", self.fail_on_head[number])

            return _response(204, {"Upload-Offset": str(len(self.data))})

        assert method == "PATCH"
        assert headers is not None
        assert data is not None

        number = len(self.patches)
        body = b"".join([piece async for piece in data])
        patch_offset = int(headers["Upload-Offset"])
        self.patches.append((patch_offset, body))

        if patch_offset != len(self.data):
            return _response(409)

        if number in self.reset_on_patch:
            self.data.extend(body[: self.reset_on_patch[number]])
            raise tuschunks.TransportError(
                "Connection reset by peer", tuschunks.NetworkFault.CONNECTION_RESET
            )

        if number in self.fail_on_patch:
            raise tuschunks.TransportError("Timeout", tuschunks.NetworkFault.OTHER)

        self.data.extend(body)
        return _response(204, {"Upload-Offset": str(len(self.data))})


@pytest.fixture
def fake_transport() -> FakeTusTransport:
    return FakeTusTransport()
