from __future__ import annotations

import io
import logging

import requests
from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers

from riakhttp.channel import Channel
from riakhttp.errors import MultipartError, ProtocolError, TransportError
from riakhttp.multipart import MultipartReader, parse_boundary

logger = logging.getLogger(__name__)

VCLOCK_HEADER = "X-Riak-Vclock"
CHUNK_SIZE = 64 * 1024


def decode_siblings(response: requests.Response, out: Channel) -> None:
    """
    Deliver every sibling value in ``response`` to ``out``, then close it.

    A 300 response carries the siblings as a ``multipart/mixed`` body. Each
    part is copied into its own buffer before the reader advances, and handed
    on as a response of its own with the parent's vector clock attached,
    since the store sends the clock once for the whole envelope. A 200
    response is a single resolved value and is forwarded unchanged.

    ``out`` is closed exactly once, whether decoding completes or fails.

    Raises:
        ProtocolError: If a 300 is not ``multipart/mixed``.
        MultipartError: If the boundary is missing or the body is malformed.
        TransportError: If the body could not be read.
    """
    try:
        if response.status_code != 300:
            out.put(response)
            return
        with response:
            _decode_multipart(response, out)
    finally:
        out.close()


def _decode_multipart(response: requests.Response, out: Channel) -> None:
    media_type, boundary = parse_boundary(response.headers.get("Content-Type", ""))
    if media_type != "multipart/mixed":
        raise ProtocolError(
            f"Server gave us a 300, but not a multipart/mixed message: {media_type}"
        )
    if boundary is None:
        raise MultipartError("No boundary name found in content-type")

    vclock = response.headers.get(VCLOCK_HEADER)
    reader = MultipartReader(response.iter_content(chunk_size=CHUNK_SIZE), boundary)
    count = 0
    try:
        for part in reader:
            # the reader drops unread content when it advances
            payload = part.read()
            out.put(_sibling_response(response, part.headers, payload, vclock))
            count += 1
    except requests.RequestException as e:
        raise TransportError(f"Failed reading sibling body: {e}") from e
    logger.debug(f"Decoded {count} siblings from {response.url}")


def _sibling_response(
    parent: requests.Response,
    headers: CaseInsensitiveDict,
    payload: bytes,
    vclock: str | None,
) -> requests.Response:
    sibling = requests.Response()
    sibling.status_code = 200
    sibling.reason = "OK"
    sibling.headers = CaseInsensitiveDict(headers)
    if vclock is not None:
        sibling.headers[VCLOCK_HEADER] = vclock
    sibling.headers["Content-Length"] = str(len(payload))
    sibling.raw = io.BytesIO(payload)
    sibling.encoding = get_encoding_from_headers(sibling.headers)
    sibling.url = parent.url
    sibling.request = parent.request
    return sibling
