"""Implementation of the core protocol.

The
`core tus protocol <https://tus.io/protocols/resumable-upload.html#core-protocol>`_
defines how the data upload is handled.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import dataclasses
import hashlib
import io
from typing import TYPE_CHECKING

import tenacity

from . import common
from .log import logger

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterator
    from typing import BinaryIO

    import multidict
    import yarl

    from .cancel import CancellationToken
    from .transport import Response, Transport

# Status codes accepted for HEAD and OPTIONS requests. The protocol asks for
# "204 No Content", but some servers reply with "200 OK" for the sake of
# browsers.
_QUERY_STATUS_CODES = (204, 200)

# Status codes for which a deletion counts as successful.
_DELETE_STATUS_CODES = (204, 404, 410)


@dataclasses.dataclass(frozen=True)
class ServerInfo:
    """Class to hold the server's configuration."""

    version: str
    """
    The protocol version the server uses ("Tus-Resumable" header).
    """

    supported_versions: list[str]
    """
    List of protocol versions supported by the server, sorted by the server's
    preference.
    """

    extensions: list[str]
    """
    The protocol extensions supported by the server.
    """

    max_size: int
    """
    The maximum allowed upload size in bytes, 0 if not reported by the server.
    """


def _parse_positive_integer_header(
    headers: multidict.CIMultiDictProxy[str], header_name: str
) -> int:
    """Convert a HTTP header into a positive integer value.

    Raises a ProtocolError if the conversion is not posible.
    """
    header_value = headers[header_name]

    try:
        if (result := int(header_value)) < 0:
            raise RuntimeError  # noqa: TRY301
    except Exception as e:
        msg = (
            f'Unable to convert "{header_name}" header '
            f'"{header_value}" to a positive integer.'
        )
        raise common.ProtocolError(msg) from e

    return result


def _split_list_header(
    headers: multidict.CIMultiDictProxy[str], header_name: str
) -> list[str]:
    """Split a comma separated header, a missing header gives an empty list."""
    if not (value := headers.get(header_name, "").strip()):
        return []

    return [v.strip() for v in value.split(",")]


async def offset(
    transport: Transport,
    location: yarl.URL,
    cancel: CancellationToken | None = None,
) -> int:
    """Get the number of uploaded bytes.

    :param transport: Transport to use for the request.
    :param location: The upload endpoint to query.
    :param cancel: Token to abort the request.
    :return: The number of bytes that are already on the server.
    :raises common.OffsetQueryFailed: When the server rejects the request.
    :raises common.OffsetMissing: When the server does not report the offset.
    """
    tus_headers = {"Tus-Resumable": common.TUS_PROTOCOL_VERSION}

    logger.debug(f'Getting offset of "{location}"...')
    response = await transport.request(
        "HEAD", location, headers=tus_headers, cancel=cancel
    )

    if response.status not in _QUERY_STATUS_CODES:
        msg = f"Offset query failed with status {response.status}."
        raise common.OffsetQueryFailed(msg, response.status, response.text)

    if response.status == 200:  # noqa: PLR2004
        logger.debug('Server replied "200 OK" instead of "204 No Content".')

    if "Upload-Offset" not in response.headers:
        msg = 'HTTP header "Upload-Offset" not included in server response.'
        raise common.OffsetMissing(msg, response.status)

    return _parse_positive_integer_header(response.headers, "Upload-Offset")


def _parse_metadata(header: str) -> dict[str, str | None]:
    """Split and decode the input into a metadata dictionary."""
    if not (header := header.strip()):
        return {}

    md: dict[str, str | None] = {}
    for pair in header.split(","):
        kv = pair.split()
        if len(kv) == 1:
            md[kv[0]] = None
        elif len(kv) == 2:  # noqa: PLR2004
            md[kv[0]] = base64.b64decode(kv[1], validate=True).decode("utf-8")
        else:
            msg = "Key/Value pair consists of more than two elements."
            raise ValueError(msg)

    return md


async def metadata(
    transport: Transport,
    location: yarl.URL,
    cancel: CancellationToken | None = None,
) -> dict[str, str | None]:
    """Get the metadata associated with an upload.

    :param transport: Transport to use for the request.
    :param location: The upload endpoint to query.
    :param cancel: Token to abort the request.
    :return: The metadata of the upload. Keys without a value map to None.
    :raises common.MetadataQueryFailed: When the server rejects the request.
    :raises common.ProtocolError: When the metadata can not be decoded.
    """
    tus_headers = {"Tus-Resumable": common.TUS_PROTOCOL_VERSION}

    logger.debug(f'Getting metadata of "{location}"...')
    response = await transport.request(
        "HEAD", location, headers=tus_headers, cancel=cancel
    )

    if response.status not in _QUERY_STATUS_CODES:
        msg = f"Metadata query failed with status {response.status}."
        raise common.MetadataQueryFailed(msg, response.status, response.text)

    if "Upload-Metadata" not in response.headers:
        return {}

    try:
        return _parse_metadata(response.headers["Upload-Metadata"])
    except (ValueError, binascii.Error) as e:
        msg = f"Unable to parse metadata: {e}"
        raise common.ProtocolError(msg) from e


class _ProgressReporter:
    """Forward upload progress to a callback.

    Values are capped at the total and only passed on when they are bigger
    than the last reported one, so the callback sees a strictly increasing
    sequence even when the offset moves back after a resync.
    """

    def __init__(self, callback: common.ProgressCallback | None, total: int) -> None:
        self._callback = callback
        self._total = total
        self._last = -1

    def __call__(self, transferred: int) -> None:
        transferred = min(transferred, self._total)
        if self._callback is None or transferred <= self._last:
            return

        self._last = transferred
        self._callback(transferred, self._total)


async def _stream_chunk(
    chunk: bytes,
    chunk_offset: int,
    reporter: _ProgressReporter,
    piece_size: int,
    cancel: CancellationToken | None,
) -> AsyncIterator[bytes]:
    """Yield the chunk in pieces, reporting the progress after each one."""
    view = memoryview(chunk)
    sent = 0
    while sent < len(view):
        piece = view[sent : sent + piece_size]
        yield bytes(piece)
        sent += len(piece)

        # Give a pending cancellation the chance to run.
        await asyncio.sleep(0)
        reporter(chunk_offset + sent)

        if cancel is not None:
            cancel.raise_if_cancelled()


def _check_offset(current_offset: int, total_size: int) -> None:
    if current_offset > total_size:
        # The offset that the server expects next does not exist.
        msg = "Server offset too big."
        raise common.ProtocolError(msg)


def _is_connection_reset(error: BaseException) -> bool:
    return (
        isinstance(error, common.TransportError)
        and error.kind is common.NetworkFault.CONNECTION_RESET
    )


def _log_before_resync(retry_state: tenacity.RetryCallState) -> None:
    """Log the connection reset that caused a resync."""
    if (retry_state.outcome is not None) and retry_state.outcome.failed:
        logger.warning(
            "Connection reset while uploading, "
            f"querying the offset again: {retry_state.outcome.exception()}"
        )


def _make_resyncing(
    max_resyncs: int | None, resync_delay_seconds: float
) -> tenacity.AsyncRetrying:
    """Create the tenacity object that handles connection resets.

    Only connection resets are retried, everything else is raised unchanged.
    """
    if max_resyncs is None:
        stop = tenacity.stop_never
    else:
        stop = tenacity.stop_after_attempt(max_resyncs + 1)

    return tenacity.AsyncRetrying(
        retry=tenacity.retry_if_exception(_is_connection_reset),
        stop=stop,
        wait=tenacity.wait_fixed(resync_delay_seconds),
        before_sleep=_log_before_resync,
        reraise=True,
    )


async def _upload_chunk(  # noqa: PLR0913
    transport: Transport,
    location: yarl.URL,
    buffer: BinaryIO,
    current_offset: int,
    chunksize: int,
    reporter: _ProgressReporter,
    piece_size: int,
    cancel: CancellationToken | None,
) -> int:
    """Upload the chunk starting at 'current_offset'.

    Returns the offset after the chunk.
    """
    await asyncio.to_thread(buffer.seek, current_offset, io.SEEK_SET)

    if not (chunk := await asyncio.to_thread(buffer.read, chunksize)):
        # The size of the buffer is checked before, we should never get here.
        msg = "Buffer returned unexpected EOF."
        raise RuntimeError(msg)

    digest = hashlib.sha1(chunk).digest()  # noqa: S324

    tus_headers = {
        "Tus-Resumable": common.TUS_PROTOCOL_VERSION,
        "Upload-Offset": str(current_offset),
        "Content-Length": str(len(chunk)),
        "Upload-Checksum": "sha1 " + base64.b64encode(digest).decode(),
        "Content-Type": "application/offset+octet-stream",
    }

    body = _stream_chunk(chunk, current_offset, reporter, piece_size, cancel)

    logger.debug(
        f'Uploading {len(chunk)} bytes at offset {current_offset} to "{location}"...'
    )
    response = await transport.request(
        "PATCH", location, headers=tus_headers, data=body, cancel=cancel
    )

    if response.status != 204:  # noqa: PLR2004
        msg = f"Upload failed with status {response.status}."
        raise common.UploadFailed(msg, response.status, response.text)

    return current_offset + len(chunk)


async def upload_buffer(  # noqa: PLR0913
    transport: Transport,
    location: yarl.URL,
    buffer: BinaryIO,
    progress: common.ProgressCallback | None = None,
    cancel: CancellationToken | None = None,
    chunksize: int = common.CHUNK_SIZE,
    piece_size: int = 64 * 1024,
    max_resyncs: int | None = None,
    resync_delay_seconds: float = 0.0,
) -> None:
    """Upload data to the server.

    The upload continues at the offset reported by the server, so this
    function also resumes aborted uploads. When the connection is reset while
    a chunk is sent, the offset is queried again and the upload continues
    from there.

    :param transport: Transport to use for the requests.
    :param location: The endpoint to upload to.
    :param buffer: The data to upload.
    :param progress: Called with the number of bytes on the server and the
        size of the buffer.
    :param cancel: Token to abort the upload.
    :param chunksize: The size of individual chunks to upload at a time.
    :param piece_size: The size of the pieces in which a chunk is streamed,
        progress is reported after each piece.
    :param max_resyncs: Maximum number of consecutive connection resets for a
        chunk, None for no limit.
    :param resync_delay_seconds: Time to wait before querying the offset after
        a connection reset.
    :raises common.ProtocolError: When the server does not comply to the tus protocol.
    :raises common.UploadFailed: When the server rejects a chunk.
    :raises common.TransportError: When the connection fails for any other reason
        than a reset while sending a chunk, or when the limit of resets is
        exceeded. Errors while querying the offset again are raised as they are.
    :raises RuntimeError: When reading of the buffer fails.
    """
    total_size = await asyncio.to_thread(buffer.seek, 0, io.SEEK_END)
    reporter = _ProgressReporter(progress, total_size)

    # We ask the server for the number of bytes it already has for the upload. This
    # makes it possible to use this function also for resuming aborted uploads.
    current_offset = await offset(transport, location, cancel=cancel)
    _check_offset(current_offset, total_size)

    if current_offset == total_size:
        logger.info(f'Upload of "{location}" is already complete.')
        reporter(total_size)
        return

    logger.debug(f'Resuming upload of "{location}" at offset {current_offset}...')

    while current_offset < total_size:
        if cancel is not None:
            cancel.raise_if_cancelled()

        async for attempt in _make_resyncing(max_resyncs, resync_delay_seconds):
            # Errors of the offset query are not retried, only the chunk is.
            if attempt.retry_state.attempt_number > 1:
                current_offset = await offset(transport, location, cancel=cancel)
                _check_offset(current_offset, total_size)
                logger.info(f"Continuing upload at offset {current_offset}.")

                if current_offset == total_size:
                    break

            with attempt:
                current_offset = await _upload_chunk(
                    transport,
                    location,
                    buffer,
                    current_offset,
                    chunksize,
                    reporter,
                    piece_size,
                    cancel,
                )

    reporter(total_size)
    logger.info("Complete buffer uploaded.")


async def server_info(
    transport: Transport,
    url: yarl.URL,
    cancel: CancellationToken | None = None,
) -> ServerInfo:
    """Get the server's configuration.

    Missing headers do not cause an error, the corresponding fields are just
    left empty.

    :param transport: Transport to use for the request.
    :param url: The creation endpoint of the server.
    :param cancel: Token to abort the request.
    :return: An object describing the server's configuration.
    :raises common.CapabilityQueryFailed: When the server rejects the request.
    """
    logger.debug("Querying server configuration...")
    response = await transport.request("OPTIONS", url, cancel=cancel)

    if response.status not in _QUERY_STATUS_CODES:
        msg = f"Server configuration query failed with status {response.status}."
        raise common.CapabilityQueryFailed(msg, response.status, response.text)

    if response.status == 200:  # noqa: PLR2004
        logger.debug('Server replied "200 OK" instead of "204 No Content".')

    try:
        max_size = int(response.headers.get("Tus-Max-Size", ""))
    except ValueError:
        max_size = 0

    return ServerInfo(
        version=response.headers.get("Tus-Resumable", ""),
        supported_versions=_split_list_header(response.headers, "Tus-Version"),
        extensions=_split_list_header(response.headers, "Tus-Extension"),
        max_size=max_size,
    )


async def head(
    transport: Transport,
    location: yarl.URL,
    cancel: CancellationToken | None = None,
) -> int:
    """Get the status of an upload.

    :param transport: Transport to use for the request.
    :param location: The upload endpoint to query.
    :param cancel: Token to abort the request.
    :return: The HTTP status code of the response, including error codes.
    """
    tus_headers = {"Tus-Resumable": common.TUS_PROTOCOL_VERSION}

    logger.debug(f'Requesting status of "{location}"...')
    response = await transport.request(
        "HEAD", location, headers=tus_headers, cancel=cancel
    )
    return response.status


async def delete(
    transport: Transport,
    location: yarl.URL,
    cancel: CancellationToken | None = None,
) -> bool:
    """Delete an upload.

    An upload that does not exist (anymore) counts as deleted.

    :param transport: Transport to use for the request.
    :param location: The upload to delete.
    :param cancel: Token to abort the request.
    :return: True if the upload is gone.
    """
    tus_headers = {"Tus-Resumable": common.TUS_PROTOCOL_VERSION}

    logger.debug(f'Deleting "{location}"...')
    response = await transport.request(
        "DELETE", location, headers=tus_headers, cancel=cancel
    )
    return response.status in _DELETE_STATUS_CODES


async def download(
    transport: Transport,
    location: yarl.URL,
    progress: common.ProgressCallback | None = None,
    cancel: CancellationToken | None = None,
) -> Response:
    """Download the data of an upload.

    :param transport: Transport to use for the request.
    :param location: The upload to download.
    :param progress: Called with the number of received bytes and the total
        size (0 if unknown).
    :param cancel: Token to abort the download.
    :return: The response of the server, whatever its status code.
    """
    logger.debug(f'Downloading "{location}"...')
    return await transport.request("GET", location, cancel=cancel, progress=progress)
