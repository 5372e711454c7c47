"""Single HTTP exchanges on top of aiohttp.

All other modules talk to the server through :class:`Transport`. It returns
every HTTP response to the caller, whatever its status code, and converts
network-level failures into :class:`tuschunks.common.TransportError`.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import errno
from typing import TYPE_CHECKING, Any

import aiohttp

from . import common
from .log import logger

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterable, Awaitable, Mapping

    import multidict
    import yarl

    from .cancel import CancellationToken

# Size of the pieces in which response bodies are read.
_READ_PIECE_SIZE = 64 * 1024


@dataclasses.dataclass(frozen=True)
class Response:
    """Result of a single HTTP exchange."""

    status: int
    headers: multidict.CIMultiDictProxy[str]
    body: bytes

    @property
    def text(self) -> str:
        """The body, decoded for use in diagnostics."""
        return self.body.decode(errors="replace")


def classify(error: BaseException) -> common.NetworkFault:
    """Determine the kind of a network-level failure.

    The cause chain is searched as well, since aiohttp tends to wrap the
    socket error that actually happened.
    """
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))

        if isinstance(current, ConnectionResetError | aiohttp.ServerDisconnectedError):
            return common.NetworkFault.CONNECTION_RESET

        if isinstance(current, OSError) and current.errno == errno.ECONNRESET:
            return common.NetworkFault.CONNECTION_RESET

        current = current.__cause__ or current.__context__

    return common.NetworkFault.OTHER


class Transport:
    """Issue HTTP requests through an aiohttp session.

    :param session: HTTP session to use for connections.
    :param ssl: SSL validation mode, passed on to aiohttp.
    :param headers: Optional headers included in every request.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ssl: common.SSLArgument = True,  # noqa: FBT002
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._session = session
        self._ssl = ssl
        self._headers = dict(headers or {})

    async def request(  # noqa: PLR0913
        self,
        method: str,
        url: yarl.URL,
        headers: Mapping[str, str] | None = None,
        data: bytes | AsyncIterable[bytes] | None = None,
        cancel: CancellationToken | None = None,
        progress: common.ProgressCallback | None = None,
    ) -> Response:
        """Perform a single HTTP exchange.

        :param method: The HTTP method.
        :param url: The URL to send the request to.
        :param headers: Headers used in the request, in addition to the ones
            given to the constructor.
        :param data: Optional request body.
        :param cancel: If given, the exchange is aborted as soon as the token
            is triggered.
        :param progress: Called with the number of received bytes and the
            total body size (0 if unknown) while the response body is read.
        :return: The response of the server.
        :raises common.TransportError: When the exchange fails on the network level.
        :raises asyncio.CancelledError: When the token is triggered.
        """
        request_headers = dict(self._headers)
        request_headers.update(headers or {})

        if cancel is not None:
            cancel.raise_if_cancelled()

        exchange = self._exchange(method, url, request_headers, data, progress)

        try:
            if cancel is None:
                return await exchange
            return await _cancellable(exchange, cancel)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            kind = classify(e)
            logger.debug(f'{method} request to "{url}" failed ({kind.value}): {e!r}')
            msg = f"{method} request to {url} failed: {e!r}"
            raise common.TransportError(msg, kind) from e

    async def _exchange(
        self,
        method: str,
        url: yarl.URL,
        headers: dict[str, str],
        data: bytes | AsyncIterable[bytes] | None,
        progress: common.ProgressCallback | None,
    ) -> Response:
        kwargs: dict[str, Any] = {"headers": headers, "ssl": self._ssl}
        if data is not None:
            kwargs["data"] = data

        async with self._session.request(method, url, **kwargs) as response:
            if progress is None:
                body = await response.read()
            else:
                body = await _read_with_progress(response, progress)

            return Response(response.status, response.headers, body)


async def _read_with_progress(
    response: aiohttp.ClientResponse, progress: common.ProgressCallback
) -> bytes:
    """Read the response body and report the number of bytes received."""
    total = response.content_length or 0
    received = 0
    pieces = []

    async for piece in response.content.iter_chunked(_READ_PIECE_SIZE):
        pieces.append(piece)
        received += len(piece)
        progress(received, total)

    return b"".join(pieces)


async def _cancellable(
    exchange: Awaitable[Response], cancel: CancellationToken
) -> Response:
    """Run the exchange until it is done or the token is triggered."""
    task = asyncio.ensure_future(exchange)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # A request that fails because of the cancellation counts as cancelled,
    # whatever error aiohttp reported for it.
    if cancel.cancelled and (task.cancelled() or task.exception() is not None):
        logger.debug("Exchange aborted, cancellation requested.")
        cancel.raise_if_cancelled()

    return task.result()
