"""Implementation of the creation extension.

The
`creation extension <https://tus.io/protocols/resumable-upload.html#creation>`_
defines how to reserve space on the server for uploading data to.
"""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING

import yarl

from . import common
from .log import logger

if TYPE_CHECKING:  # pragma: no cover
    from .cancel import CancellationToken
    from .transport import Transport


def _sanitize_key(key: str) -> str:
    """Remove the characters that are not allowed in metadata keys.

    Spaces and commas are dropped, not escaped, so two different keys can end
    up being the same.
    """
    sanitized = key.replace(" ", "").replace(",", "")
    if sanitized != key:
        logger.warning(f'Metadata key "{key}" sent as "{sanitized}".')

    return sanitized


def encode_metadata(metadata: common.Metadata) -> str:
    """Encode the metadata to the value of the metadata header.

    :param metadata: The metadata to encode.
    :return: The value for the "Upload-Metadata" header.
    """

    def encode_value(value: str) -> str:
        encoded_bytes = base64.b64encode(value.encode("utf-8"))
        return encoded_bytes.decode()

    pairs = [f"{_sanitize_key(k)} {encode_value(v)}" for k, v in metadata.items()]
    return ",".join(pairs)


def _resolve_location(url: yarl.URL, location: str) -> yarl.URL:
    """Turn the "Location" header into an absolute URL."""
    try:
        location_url = yarl.URL(location)
    except (TypeError, ValueError) as e:
        msg = f'Invalid "Location" header "{location}": {e}'
        raise common.LocationInvalid(msg) from e

    if location_url.is_absolute():
        return location_url

    resolved = url.join(location_url)
    logger.debug(f'Upload URL "{location}" was relative, changed to "{resolved}".')
    return resolved


async def create(
    transport: Transport,
    url: yarl.URL,
    upload_length: int,
    metadata: common.Metadata,
    cancel: CancellationToken | None = None,
) -> yarl.URL:
    """Create an upload.

    :param transport: Transport to use for the request.
    :param url: The creation endpoint of the server.
    :param upload_length: The number of bytes that will be uploaded.
    :param metadata: Additional metadata for the upload.
    :param cancel: Token to abort the request.
    :return: The URL to upload the data to.
    :raises common.CreationFailed: When the server does not reply with "201 Created".
    :raises common.LocationMissing: When the reply has no "Location" header.
    :raises common.LocationInvalid: When the "Location" header is not a valid URL.
    """
    if upload_length < 0:
        msg = f"Upload length must not be negative, got {upload_length}."
        raise ValueError(msg)

    tus_headers = {
        "Tus-Resumable": common.TUS_PROTOCOL_VERSION,
        "Upload-Length": str(upload_length),
        "Content-Length": "0",
    }

    if metadata_header := encode_metadata(metadata):
        tus_headers["Upload-Metadata"] = metadata_header

    logger.debug("Creating upload...")
    response = await transport.request("POST", url, headers=tus_headers, cancel=cancel)

    if response.status != 201:  # noqa: PLR2004
        msg = f"Wrong status code {response.status}, expected 201."
        raise common.CreationFailed(msg, response.status, response.text)

    if "Location" not in response.headers:
        msg = 'Upload created, but no "Location" header in response.'
        raise common.LocationMissing(msg, response.status)

    location = _resolve_location(url, response.headers["Location"])
    logger.debug(f'Upload created, upload URL is "{location}".')
    return location
