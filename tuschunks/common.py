"""Common constants and classes used in the tuschunks package."""

from __future__ import annotations

import enum
import ssl
from collections.abc import Callable, Mapping
from typing import Final, TypeAlias

import aiohttp

# The version of the tus protocol we implement.
TUS_PROTOCOL_VERSION: Final = "1.0.0"

# Size of the chunks sent in a single PATCH request.
CHUNK_SIZE: Final = 3 * 1024 * 1024

SSLArgument: TypeAlias = bool | ssl.SSLContext | aiohttp.Fingerprint

Metadata: TypeAlias = Mapping[str, str]
"""
Metadata attached to an upload on creation.

Keys must not contain spaces or commas, values are arbitrary strings that are
sent UTF-8 and base64 encoded.
"""

ProgressCallback: TypeAlias = Callable[[int, int], None]
"""
Called with ``(bytes_transferred, bytes_total)`` while data is transferred.
"""


class NetworkFault(enum.Enum):
    """Kind of a network-level failure."""

    CONNECTION_RESET = "connection reset"
    """The peer forcibly closed the connection during the exchange."""

    OTHER = "other"
    """Timeouts, name resolution failures and all other socket errors."""


class TusError(Exception):
    """Base class of all errors raised by this package."""


class ProtocolError(TusError):
    """Server response did not follow the tus protocol."""

    def __init__(
        self, message: str, status: int | None = None, body: str | None = None
    ) -> None:
        if body:
            message = f"{message} {body}"
        super().__init__(message)
        self.status = status
        self.body = body


class CreationFailed(ProtocolError):
    """The server did not answer the creation request with "201 Created"."""


class LocationMissing(ProtocolError):
    """Upload created, but the response has no "Location" header."""


class LocationInvalid(ProtocolError):
    """The "Location" header of the creation response is not a valid URL."""


class UploadFailed(ProtocolError):
    """The server rejected a chunk of data."""


class OffsetQueryFailed(ProtocolError):
    """The server rejected the request for the current offset."""


class MetadataQueryFailed(ProtocolError):
    """The server rejected the request for the metadata of an upload."""


class OffsetMissing(ProtocolError):
    """The offset query succeeded, but no "Upload-Offset" header was sent."""


class CapabilityQueryFailed(ProtocolError):
    """The server rejected the request for its configuration."""


class TransportError(TusError):
    """The HTTP exchange failed on the network level.

    The original exception is available as ``__cause__``.
    """

    def __init__(self, message: str, kind: NetworkFault) -> None:
        super().__init__(message)
        self.kind = kind
