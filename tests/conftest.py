"""Shared fixtures: in-memory responses and a scripted connection."""

from __future__ import annotations

import io
from collections.abc import Iterable

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from riakhttp.client import Client

TESTING_ROOT = "http://localhost:8098/"
TESTING_BUCKET = "transientBucket"


def make_response(
    status: int = 200,
    body: bytes = b"",
    headers: dict[str, str] | None = None,
    url: str = "http://localhost:8098/riak/b/k",
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.headers = CaseInsensitiveDict(headers or {})
    response.raw = io.BytesIO(body)
    response.url = url
    return response


class ChunkedBody(io.RawIOBase):
    """A body that hands back at most one scripted chunk per read."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = list(chunks)

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if not self._chunks:
            return b""
        return self._chunks.pop(0)


def make_chunked_response(
    status: int, chunks: Iterable[bytes], headers: dict[str, str] | None = None
) -> requests.Response:
    response = make_response(status, headers=headers)
    response.raw = ChunkedBody(chunks)
    return response


class FakeConnection:
    """Stands in for a Connection, replaying responses in order."""

    def __init__(self, *responses: requests.Response | Exception) -> None:
        self.responses = list(responses)
        self.sent = []
        self.closed = False

    def send(self, request, timeout=None):
        self.sent.append((request, timeout))
        reply = self.responses.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def client() -> Client:
    return Client(TESTING_ROOT, client_id="test-client")
