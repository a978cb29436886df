"""
Request execution and status-code routing.

Every store operation is one ``Request`` plus an outcome table mapping
status codes to handlers. ``dispatch`` sends the request and hands the
response to the matching handler, falling back to the ``ANY_STATUS``
entry, and failing loudly when neither exists.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import requests

from riakhttp.connection import WIRE_SCHEMES, Connection, dial_http
from riakhttp.errors import StoreError, UnhandledResponseError

logger = logging.getLogger(__name__)

# wildcard entry in an outcome table
ANY_STATUS = -1

Handler = Callable[[requests.Response], Any]
OutcomeTable = Mapping[int, Handler]


@dataclass(frozen=True)
class Request:
    """One logical store request, built once and never modified."""

    method: str
    scheme: str
    host: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None

    @property
    def content_length(self) -> int:
        return len(self.body) if self.body is not None else 0

    @property
    def url(self) -> str:
        url = f"{WIRE_SCHEMES.get(self.scheme, self.scheme)}://{self.host}{self.path}"
        if self.params:
            url += "?" + urlencode(sorted(self.params.items()))
        return url


def dispatch(
    request: Request,
    outcomes: OutcomeTable,
    connection: Connection | None = None,
    timeout: float | None = None,
) -> Any:
    """
    Execute ``request`` and route the response through ``outcomes``.

    Args:
        request: The request to send.
        outcomes: Status code to handler, optionally with an ``ANY_STATUS``
            entry used when the observed code has no handler of its own.
        connection: Connection to reuse. When omitted a new one is dialed
            for the request's host and scheme, and closed once the handler
            is done unless it hands back the still-open response.
        timeout: Per-request timeout in seconds.

    Returns:
        Whatever the selected handler returns.

    Raises:
        ConnectivityError: If no connection could be acquired.
        TransportError: If sending or receiving the response failed.
        UnhandledResponseError: If no handler matches the status code.
        Any error raised by the selected handler.
    """
    dialed = connection is None
    if connection is None:
        connection = dial_http(request.host, request.scheme)

    result = None
    try:
        response = connection.send(request, timeout=timeout)
        handler = outcomes.get(response.status_code)
        if handler is None:
            handler = outcomes.get(ANY_STATUS)
        if handler is None:
            response.close()
            raise UnhandledResponseError(response.status_code)
        result = handler(response)
        return result
    finally:
        # a streamed response still needs its socket
        if dialed and not isinstance(result, requests.Response):
            connection.close()


def ok(response: requests.Response) -> None:
    """Outcome handler for a success that carries nothing the caller needs."""
    response.close()


def passthrough(response: requests.Response) -> requests.Response:
    """Outcome handler that hands the open response to the caller."""
    return response


def raises(error_cls: type[StoreError], message: str | None = None) -> Handler:
    """Build a handler that releases the response and raises ``error_cls``."""

    def handler(response: requests.Response) -> None:
        response.close()
        raise error_cls(message)

    return handler


def fail(message: str) -> Handler:
    """Build a handler that raises an unhandled-response error."""

    def handler(response: requests.Response) -> None:
        response.close()
        raise UnhandledResponseError(response.status_code, message)

    return handler


def debug_fail(message: str, body: bool = True) -> Handler:
    """Like ``fail``, but dumps the response at DEBUG level first."""

    def handler(response: requests.Response) -> None:
        try:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"{message}\n{dump_response(response, body=body)}")
        finally:
            response.close()
        raise UnhandledResponseError(response.status_code, message)

    return handler


def dump_response(response: requests.Response, body: bool = True) -> str:
    """Render a response's status line, headers and, optionally, body."""
    lines = [f"HTTP {response.status_code} {response.reason or ''}".rstrip()]
    lines.extend(f"{name}: {value}" for name, value in response.headers.items())
    if body:
        lines.append("")
        lines.append(response.content.decode("utf-8", errors="replace"))
    return "\n".join(lines)
