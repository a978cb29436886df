"""
Incremental reader for ``multipart/mixed`` bodies.

The body is consumed from an iterable of byte chunks, so a response with
many large parts is never held in memory at once. Only the current part is
readable: asking for the next part discards whatever the caller left unread.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from email.message import Message

from requests.structures import CaseInsensitiveDict

from riakhttp.errors import MultipartError

CR = b"\r"
LF = b"\n"


def parse_boundary(content_type: str) -> tuple[str, str | None]:
    """
    Split a Content-Type header into its media type and ``boundary``.

    Returns:
        Tuple of (lower-cased media type, boundary or None).
    """
    msg = Message()
    msg["Content-Type"] = content_type or ""
    boundary = msg.get_param("boundary")
    if isinstance(boundary, tuple):
        # RFC 2231 encoded parameter
        boundary = boundary[2]
    return msg.get_content_type(), boundary or None


class Part:
    """One body part: its headers and a reader over its content."""

    def __init__(self, reader: MultipartReader, headers: CaseInsensitiveDict) -> None:
        self.headers = headers
        self._reader = reader
        self._pending = bytearray()
        self._finished = False

    def read(self, size: int = -1) -> bytes:
        """
        Read up to ``size`` bytes of content, or all that remains.

        Returns ``b""`` at the end of the part, and for a part that has been
        superseded by a later ``next_part`` call.
        """
        if self._reader._current is not self:
            return b""
        while not self._finished and (size < 0 or len(self._pending) < size):
            data, self._finished = self._reader._read_chunk()
            self._pending += data
        if size < 0 or size > len(self._pending):
            size = len(self._pending)
        out = bytes(self._pending[:size])
        del self._pending[:size]
        return out


class MultipartReader:
    """Iterate the parts of a multipart body delivered as byte chunks."""

    def __init__(self, chunks: Iterable[bytes], boundary: str) -> None:
        if not boundary:
            raise MultipartError("No boundary given for multipart body")
        self._chunks: Iterator[bytes] = iter(chunks)
        self._dash_boundary = b"--" + boundary.encode("latin-1")
        # a delimiter is always preceded by a line break; seed one so the
        # first boundary line matches the same pattern as the rest
        self._pattern = LF + self._dash_boundary
        self._buf = bytearray(b"\r\n")
        self._eof = False
        self._in_body = True  # the preamble is read like a part and dropped
        self._done = False
        self._current: Part | None = None

    def __iter__(self) -> Iterator[Part]:
        while True:
            part = self.next_part()
            if part is None:
                return
            yield part

    def next_part(self) -> Part | None:
        """
        Advance to the next part.

        Returns:
            The next part, or None once the closing delimiter is reached.

        Raises:
            MultipartError: If the body is truncated or a boundary line is
                malformed.
        """
        self._current = None
        while self._in_body:
            self._read_chunk()
        if self._done or not self._after_delimiter():
            self._done = True
            return None
        headers = self._read_headers()
        self._in_body = True
        self._current = Part(self, headers)
        return self._current

    def _fill(self) -> None:
        for chunk in self._chunks:
            if chunk:
                self._buf += chunk
                return
        self._eof = True

    def _scan(self) -> tuple[int | None, int]:
        """Find the next delimiter; otherwise report how much is safe to emit."""
        plen = len(self._pattern)
        pos = 0
        while True:
            idx = self._buf.find(self._pattern, pos)
            if idx < 0:
                if self._eof:
                    return None, len(self._buf)
                # keep enough of the tail to complete a split delimiter
                return None, max(0, len(self._buf) - plen)
            tail = bytes(self._buf[idx + plen : idx + plen + 2])
            if len(tail) < 2 and not self._eof:
                return None, max(0, idx - 1)
            if not tail or tail == b"--" or tail[:1] in (CR, LF, b" ", b"\t"):
                return idx, 0
            # boundary text inside content
            pos = idx + 1

    def _read_chunk(self) -> tuple[bytes, bool]:
        """Return the next slice of the current body and whether it ended."""
        while True:
            idx, safe = self._scan()
            if idx is not None:
                end = idx
                if end > 0 and self._buf[end - 1 : end] == CR:
                    end -= 1
                data = bytes(self._buf[:end])
                del self._buf[: idx + len(self._pattern)]
                self._in_body = False
                return data, True
            if safe > 0:
                data = bytes(self._buf[:safe])
                del self._buf[:safe]
                return data, False
            if self._eof:
                raise MultipartError("Multipart body ended before the closing boundary")
            self._fill()

    def _after_delimiter(self) -> bool:
        """Consume the rest of a boundary line; False if it closed the body."""
        while len(self._buf) < 2 and not self._eof:
            self._fill()
        if self._buf[:2] == b"--":
            return False
        line = self._read_line()
        if line.strip(b" \t\r\n"):
            raise MultipartError(f"Malformed multipart boundary line: {line[:80]!r}")
        return True

    def _read_line(self) -> bytes:
        while True:
            nl = self._buf.find(LF)
            if nl >= 0:
                line = bytes(self._buf[: nl + 1])
                del self._buf[: nl + 1]
                return line
            if self._eof:
                raise MultipartError("Multipart body ended inside a part header")
            self._fill()

    def _read_headers(self) -> CaseInsensitiveDict:
        headers: CaseInsensitiveDict = CaseInsensitiveDict()
        last = None
        while True:
            line = self._read_line().rstrip(b"\r\n")
            if not line:
                return headers
            text = line.decode("latin-1")
            if text[:1] in (" ", "\t") and last is not None:
                # folded continuation of the previous header
                headers[last] = f"{headers[last]} {text.strip()}"
                continue
            name, sep, value = text.partition(":")
            if not sep:
                raise MultipartError(f"Malformed part header: {text[:80]!r}")
            name, value = name.strip(), value.strip()
            if name in headers:
                headers[name] = f"{headers[name]}, {value}"
            else:
                headers[name] = value
            last = name
