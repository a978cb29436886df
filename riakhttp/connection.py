"""Connection acquisition for the store's HTTP interface."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import NewConnectionError

from riakhttp.errors import ConnectivityError, TransportError

if TYPE_CHECKING:
    from riakhttp.dispatch import Request

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443, "riak": 8098}

# the store's own scheme is plain HTTP on its default port
WIRE_SCHEMES = {"http": "http", "https": "https", "riak": "http"}


def split_host_port(host: str, scheme: str) -> tuple[str, int]:
    """
    Split ``host[:port]`` and fill in the scheme's default port.

    Raises:
        ConnectivityError: For an unknown scheme or a malformed host string.
    """
    if scheme not in DEFAULT_PORTS:
        raise ConnectivityError(f"Unknown scheme: {scheme!r}")
    if not host:
        raise ConnectivityError("No host given")

    if host.startswith("["):
        name, _, rest = host[1:].partition("]")
        if rest and not rest.startswith(":"):
            raise ConnectivityError(f"Malformed host {host!r}")
        port = rest[1:]
    elif host.count(":") == 1:
        name, _, port = host.partition(":")
    else:
        # plain name or a bare IPv6 literal
        name, port = host, ""
    if not name:
        raise ConnectivityError(f"Malformed host {host!r}")
    if not port:
        return name, DEFAULT_PORTS[scheme]
    try:
        return name, int(port)
    except ValueError as e:
        raise ConnectivityError(f"Bad port in host {host!r}") from e


class Connection:
    """
    A reusable request/response channel to one store node.

    Backed by a ``requests.Session`` holding a single pooled socket, so
    consecutive requests reuse the same persistent connection. A connection
    may be used by one caller at a time.
    """

    def __init__(
        self,
        host: str,
        scheme: str = "http",
        session: requests.Session | None = None,
        timeout: float | None = None,
    ) -> None:
        name, port = split_host_port(host, scheme)
        self.host = host
        self.scheme = scheme
        self.timeout = timeout
        netloc = f"[{name}]:{port}" if ":" in name else f"{name}:{port}"
        self.base_url = f"{WIRE_SCHEMES[scheme]}://{netloc}"
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=1, pool_maxsize=1, max_retries=0)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def send(self, request: Request, timeout: float | None = None) -> requests.Response:
        """
        Send a request and return the response with its body still unread.

        Raises:
            ConnectivityError: If the store could not be reached at all.
            TransportError: If the request could not be sent or no response
                headers arrived (including timeouts).
        """
        prepared = self.session.prepare_request(
            requests.Request(
                method=request.method,
                url=self.base_url + request.path,
                headers=dict(request.headers),
                params=dict(request.params),
                data=request.body,
            )
        )
        try:
            return self.session.send(
                prepared,
                stream=True,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except requests.ConnectTimeout as e:
            raise ConnectivityError(f"Timed out connecting to {self.base_url}: {e}") from e
        except requests.ConnectionError as e:
            if _refused(e):
                raise ConnectivityError(f"Couldn't connect to {self.base_url}: {e}") from e
            raise TransportError(f"Transport failure talking to {self.base_url}: {e}") from e
        except requests.Timeout as e:
            raise TransportError(f"Timed out talking to {self.base_url}: {e}") from e
        except requests.RequestException as e:
            raise TransportError(f"Transport failure talking to {self.base_url}: {e}") from e

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Connection({self.base_url!r})"


def _refused(error: requests.ConnectionError) -> bool:
    # requests wraps the dial failure in the urllib3 retry error
    cause = error.args[0] if error.args else None
    return isinstance(getattr(cause, "reason", cause), NewConnectionError)


def dial_http(host: str, scheme: str = "http", timeout: float | None = None) -> Connection:
    """
    Acquire a new connection to ``host`` for ``scheme``.

    Args:
        host: ``host`` or ``host:port``.
        scheme: ``http``, ``https`` or ``riak``.
        timeout: Default per-request timeout in seconds.

    Returns:
        A connection the caller may reuse or close.

    Raises:
        ConnectivityError: If the address cannot be used.
    """
    conn = Connection(host, scheme, timeout=timeout)
    logger.debug(f"Dialed {conn.base_url}")
    return conn
