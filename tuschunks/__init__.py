"""
Top-level module containing the client and the error classes.
"""

from __future__ import annotations

from .cancel import CancellationToken
from .client import ClientConfiguration, TusClient
from .common import (
    CHUNK_SIZE,
    CapabilityQueryFailed,
    CreationFailed,
    LocationInvalid,
    LocationMissing,
    Metadata,
    MetadataQueryFailed,
    NetworkFault,
    OffsetMissing,
    OffsetQueryFailed,
    ProgressCallback,
    ProtocolError,
    SSLArgument,
    TransportError,
    TusError,
    UploadFailed,
)
from .core import ServerInfo
from .transport import Response, Transport

__all__ = (
    "CHUNK_SIZE",
    "CancellationToken",
    "CapabilityQueryFailed",
    "ClientConfiguration",
    "CreationFailed",
    "LocationInvalid",
    "LocationMissing",
    "Metadata",
    "MetadataQueryFailed",
    "NetworkFault",
    "OffsetMissing",
    "OffsetQueryFailed",
    "ProgressCallback",
    "ProtocolError",
    "Response",
    "SSLArgument",
    "ServerInfo",
    "Transport",
    "TransportError",
    "TusClient",
    "TusError",
    "UploadFailed",
)
