"""Streamed key enumeration for a bucket."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any

import requests

from riakhttp.channel import Channel
from riakhttp.dispatch import ANY_STATUS, debug_fail, dispatch, passthrough
from riakhttp.errors import EnvelopeDecodeError, TransportError

if TYPE_CHECKING:
    from riakhttp.client import Client
    from riakhttp.connection import Connection

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8 * 1024
_WHITESPACE = " \t\r\n"
# longest token that can be cut short at the end of the buffer: "false", "\uXXXX"
_PARTIAL_TOKEN = 6


def _is_truncated(error: json.JSONDecodeError, buf: str) -> bool:
    """True when ``buf`` failed to decode only because it stops too soon."""
    if error.msg.startswith("Unterminated string"):
        return True
    return len(buf) - error.pos < _PARTIAL_TOKEN


def iter_envelopes(chunks: Iterable[bytes]) -> Iterator[dict[str, Any]]:
    """
    Decode a stream of concatenated JSON documents one at a time.

    Only the document being decoded is buffered, however long the stream.
    A document that cannot be completed by more input fails as soon as it
    is seen, without reading the rest of the stream.

    Raises:
        EnvelopeDecodeError: If the stream holds something other than JSON
            objects, or ends inside a document.
    """
    decoder = json.JSONDecoder()
    text_decoder = codecs.getincrementaldecoder("utf-8")()
    buf = ""
    eof = False
    chunk_iter = iter(chunks)

    while True:
        buf = buf.lstrip(_WHITESPACE)
        wanted = 0
        if buf:
            try:
                envelope, end = decoder.raw_decode(buf)
            except json.JSONDecodeError as e:
                if eof or not _is_truncated(e, buf):
                    raise EnvelopeDecodeError(f"Malformed key envelope: {e}") from e
                # grow the buffer geometrically so a large document is
                # decoded a bounded number of times
                wanted = len(buf)
            else:
                if not isinstance(envelope, dict):
                    raise EnvelopeDecodeError(
                        f"Expected a JSON object, got {type(envelope).__name__}"
                    )
                buf = buf[end:]
                yield envelope
                continue
        elif eof:
            return

        added = 0
        while True:
            try:
                chunk = next(chunk_iter)
            except StopIteration:
                eof = True
                buf += _decode_utf8(text_decoder, b"", final=True)
                break
            text = _decode_utf8(text_decoder, chunk)
            buf += text
            added += len(text)
            if added >= wanted:
                break


def _decode_utf8(decoder: codecs.IncrementalDecoder, data: bytes, final: bool = False) -> str:
    try:
        return decoder.decode(data, final=final)
    except UnicodeDecodeError as e:
        raise EnvelopeDecodeError(f"Key stream is not valid UTF-8: {e}") from e


def key_stream_params() -> dict[str, str]:
    return {"keys": "stream", "props": "false"}


def stream_keys(
    client: Client,
    bucket: str,
    out: Channel,
    connection: Connection | None = None,
) -> None:
    """
    Push every key of ``bucket`` onto ``out`` in the order the store sends them.

    ``out`` is closed exactly once on every path; on a non-200 reply it is
    closed without any keys having been produced.

    Raises:
        UnhandledResponseError: If the store refused the listing.
        EnvelopeDecodeError: If a streamed envelope is malformed.
        TransportError: If the connection failed mid-stream.
    """
    try:
        req = client.request(
            "GET",
            client.bucket_path(bucket),
            headers={"Accept": "application/json"},
            params=key_stream_params(),
        )
        response = dispatch(
            req,
            {
                200: passthrough,
                ANY_STATUS: debug_fail(f"Unexpected response listing keys of {bucket}"),
            },
            connection=connection,
            timeout=client.timeout,
        )
        with response:
            count = 0
            try:
                for envelope in iter_envelopes(response.iter_content(chunk_size=CHUNK_SIZE)):
                    for key in envelope.get("keys") or ():
                        out.put(key)
                        count += 1
            except requests.RequestException as e:
                raise TransportError(f"Key stream for {bucket} broke off: {e}") from e
        logger.debug(f"Listed {count} keys in bucket {bucket}")
    finally:
        out.close()
