"""High-level client bundling the session, configuration and cancellation."""

from __future__ import annotations

import asyncio
import dataclasses
import pathlib
from typing import TYPE_CHECKING

import aiohttp
import yarl

from . import common, core, creation
from .cancel import CancellationToken
from .log import logger
from .transport import Transport

if TYPE_CHECKING:  # pragma: no cover
    import os
    from collections.abc import Mapping
    from types import TracebackType
    from typing import BinaryIO

    from .transport import Response


@dataclasses.dataclass
class ClientConfiguration:
    """Class to hold settings for :class:`TusClient`."""

    ssl: common.SSLArgument = True
    """
    'ssl' argument passed on to the aiohttp calls.

    This can be a boolean, or an instance of ssl.SSLContext, see
    the `aiohttp documentation
    <https://docs.aiohttp.org/en/stable/client_advanced.html#ssl-control-for-tcp-sockets>`_
    for the different meanings.
    """

    headers: Mapping[str, str] = dataclasses.field(default_factory=dict)
    """
    Additional headers included in every request.
    """

    max_resyncs: int | None = None
    """
    Number of consecutive connection resets tolerated while sending a chunk.

    After each reset the offset is queried from the server and the upload
    continues from there. None means no limit.
    """

    resync_delay_seconds: float = 0.0
    """
    Time to wait after a connection reset before the offset is queried again.
    """

    progress_piece_size: int = 64 * 1024
    """
    Chunks are streamed in pieces of this size, progress is reported after
    each piece.
    """


class TusClient:
    """Client for a tus server.

    All operations of one client run one after the other. Use several clients
    to upload in parallel.

    :param config: Settings for the client.
    :param client_session: An aiohttp ClientSession to use. If not given, the
        client opens its own one, which is closed by :meth:`close`.
    :param cancel: The token that aborts the operations of this client.
        A new one is created if not given.
    """

    def __init__(
        self,
        config: ClientConfiguration | None = None,
        client_session: aiohttp.ClientSession | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.config = config if config is not None else ClientConfiguration()
        self.cancel_token = cancel if cancel is not None else CancellationToken()

        self._owns_session = client_session is None
        self._session = client_session
        self._transport: Transport | None = None

    async def __aenter__(self) -> TusClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session, if it was opened by the client."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._transport = None

    @property
    def transport(self) -> Transport:
        """The transport used for all requests."""
        if self._transport is None:
            if self._session is None:
                self._session = aiohttp.ClientSession()
            self._transport = Transport(
                self._session, ssl=self.config.ssl, headers=self.config.headers
            )

        return self._transport

    def cancel(self) -> None:
        """Abort the current and all future operations of this client."""
        logger.info("Cancelling operations...")
        self.cancel_token.cancel()

    async def create(
        self,
        url: str | yarl.URL,
        upload_length: int,
        metadata: common.Metadata | None = None,
    ) -> yarl.URL:
        """Create an upload.

        :param url: The creation endpoint of the server.
        :param upload_length: The number of bytes that will be uploaded.
        :param metadata: Additional metadata for the upload.
        :return: The absolute URL to upload the data to.
        """
        return await creation.create(
            self.transport,
            yarl.URL(url),
            upload_length,
            metadata if metadata is not None else {},
            cancel=self.cancel_token,
        )

    async def create_from_file(
        self,
        url: str | yarl.URL,
        path: str | os.PathLike[str],
        metadata: common.Metadata | None = None,
    ) -> yarl.URL:
        """Create an upload for a file.

        The size of the file is used as upload length. If the metadata does
        not contain a "filename" entry, the name of the file is added.

        :param url: The creation endpoint of the server.
        :param path: The file that will be uploaded.
        :param metadata: Additional metadata for the upload.
        :return: The absolute URL to upload the data to.
        """
        file = pathlib.Path(path)
        md = dict(metadata or {})
        md.setdefault("filename", file.name)

        size = (await asyncio.to_thread(file.stat)).st_size
        return await self.create(url, size, md)

    async def upload(
        self,
        location: str | yarl.URL,
        buffer: BinaryIO,
        progress: common.ProgressCallback | None = None,
    ) -> None:
        """Upload data to an upload created before.

        The upload starts at the offset reported by the server, so aborted
        uploads are resumed.

        :param location: The URL of the upload.
        :param buffer: The data to upload. It is not closed.
        :param progress: Called with the number of bytes on the server and the
            size of the buffer.
        """
        await core.upload_buffer(
            self.transport,
            yarl.URL(location),
            buffer,
            progress=progress,
            cancel=self.cancel_token,
            piece_size=self.config.progress_piece_size,
            max_resyncs=self.config.max_resyncs,
            resync_delay_seconds=self.config.resync_delay_seconds,
        )

    async def upload_file(
        self,
        location: str | yarl.URL,
        path: str | os.PathLike[str],
        progress: common.ProgressCallback | None = None,
    ) -> None:
        """Upload a file to an upload created before.

        :param location: The URL of the upload.
        :param path: The file to upload.
        :param progress: Called with the number of bytes on the server and the
            size of the file.
        """
        with pathlib.Path(path).open("rb") as file:
            await self.upload(location, file, progress)

    async def get_offset(self, location: str | yarl.URL) -> int:
        """Get the number of bytes the server has for an upload."""
        return await core.offset(
            self.transport, yarl.URL(location), cancel=self.cancel_token
        )

    async def get_server_info(self, url: str | yarl.URL) -> core.ServerInfo:
        """Query the protocol versions, extensions and limits of the server."""
        return await core.server_info(
            self.transport, yarl.URL(url), cancel=self.cancel_token
        )

    async def head(self, location: str | yarl.URL) -> int:
        """Get the HTTP status code of a HEAD request for an upload."""
        return await core.head(
            self.transport, yarl.URL(location), cancel=self.cancel_token
        )

    async def delete(self, location: str | yarl.URL) -> bool:
        """Delete an upload, returns True if it is gone."""
        return await core.delete(
            self.transport, yarl.URL(location), cancel=self.cancel_token
        )

    async def metadata(self, location: str | yarl.URL) -> dict[str, str | None]:
        """Read back the metadata of an upload."""
        return await core.metadata(
            self.transport, yarl.URL(location), cancel=self.cancel_token
        )

    async def download(
        self,
        location: str | yarl.URL,
        progress: common.ProgressCallback | None = None,
    ) -> Response:
        """Download the data of an upload."""
        return await core.download(
            self.transport,
            yarl.URL(location),
            progress=progress,
            cancel=self.cancel_token,
        )
