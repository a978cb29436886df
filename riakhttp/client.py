"""
HTTP client for the store's key/value and bucket API.

Each operation builds one ``Request`` and an outcome table, and leaves the
sending to ``dispatch``. Operations accept an optional ``connection`` to
reuse; without one, a connection is dialed for that call alone.

See http://docs.basho.com/riak/kv/latest/developing/api/http/ for the wire
contract.
"""

from __future__ import annotations

import json
import logging
import os
import posixpath
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, urlsplit

import requests
from requests.structures import CaseInsensitiveDict

from riakhttp.channel import Channel
from riakhttp.connection import Connection, dial_http
from riakhttp.dispatch import (
    ANY_STATUS,
    Request,
    debug_fail,
    dispatch,
    ok,
    passthrough,
    raises,
)
from riakhttp.errors import (
    BadRequestError,
    EnvelopeDecodeError,
    PreconditionFailedError,
    ServiceUnavailableError,
    UnacceptableError,
    UnknownKeyError,
)
from riakhttp.keys import stream_keys
from riakhttp.props import Properties
from riakhttp.siblings import decode_siblings

logger = logging.getLogger(__name__)

CLIENT_ID_HEADER = "X-Riak-ClientId"
DEFAULT_ROOT_URL = "http://localhost:8098/"


def default_client_id() -> str:
    return f"{socket.gethostname()}.{os.getpid()}"


@dataclass
class BucketDetails:
    """A bucket's properties and, when requested, its keys."""

    props: dict[str, Any] = field(default_factory=dict)
    keys: list[str] = field(default_factory=list)

    @property
    def properties(self) -> Properties:
        return Properties.from_json(self.props)


class Client:
    """
    Client for one store, addressed by its root URL.

    Attributes:
        client_id: Sent as ``X-Riak-ClientId`` on writes.
        scheme: ``http``, ``https`` or ``riak``.
        host: ``host[:port]`` of the store.
        root_path: Path prefix the API lives under.
        timeout: Default per-request timeout in seconds.
    """

    def __init__(
        self,
        root_url: str = DEFAULT_ROOT_URL,
        client_id: str = "",
        timeout: float | None = None,
    ) -> None:
        parts = urlsplit(root_url)
        self.root_url = root_url
        self.scheme = parts.scheme or "http"
        self.host = parts.netloc
        self.root_path = parts.path or "/"
        self.client_id = client_id or default_client_id()
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"Client({self.root_url!r}, client_id={self.client_id!r})"

    def connect(self) -> Connection:
        """Dial a connection to this client's store for reuse across calls."""
        return dial_http(self.host, self.scheme, timeout=self.timeout)

    # Request building -----------------------------------------------

    def request(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        body: bytes | None = None,
    ) -> Request:
        """Build a request for an absolute ``path`` on this store."""
        hdrs = CaseInsensitiveDict(headers or {})
        if method in ("POST", "PUT"):
            hdrs[CLIENT_ID_HEADER] = self.client_id
        return Request(
            method=method,
            scheme=self.scheme,
            host=self.host,
            path=path,
            headers=hdrs,
            params=dict(params or {}),
            body=body,
        )

    def root(self) -> str:
        return posixpath.join("/", self.root_path.lstrip("/"))

    def bucket_path(self, bucket: str) -> str:
        return posixpath.join(self.root(), "riak", quote(bucket, safe=""))

    def key_path(self, bucket: str, key: str) -> str:
        return posixpath.join(self.bucket_path(bucket), quote(key, safe=""))

    def ping_request(self) -> Request:
        # no /riak/ on a ping
        return self.request("GET", self.root())

    def list_buckets_request(self) -> Request:
        return self.request(
            "GET", posixpath.join(self.root(), "riak"), params={"buckets": "true"}
        )

    def get_bucket_request(self, name: str, props: bool = True, keys: bool = False) -> Request:
        params = {}
        if not props:
            params["props"] = "false"
        if keys:
            params["keys"] = "true"
        return self.request(
            "GET",
            self.bucket_path(name),
            headers={"Content-Type": "application/json"},
            params=params,
        )

    def set_bucket_request(self, name: str, properties: Properties) -> Request:
        body = json.dumps({"props": properties.to_json()}).encode("utf-8")
        return self.request(
            "PUT",
            self.bucket_path(name),
            headers={"Content-Type": "application/json"},
            body=body,
        )

    def get_item_request(
        self,
        bucket: str,
        key: str,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Request:
        return self.request("GET", self.key_path(bucket, key), headers, params)

    def get_multi_item_request(
        self,
        bucket: str,
        key: str,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Request:
        hdrs = CaseInsensitiveDict(headers or {})
        if not hdrs.get("Accept"):
            hdrs["Accept"] = "multipart/mixed"
        return self.request("GET", self.key_path(bucket, key), hdrs, params)

    def put_item_request(
        self,
        bucket: str,
        key: str,
        body: bytes,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Request:
        if headers is None:
            headers = {"Content-Type": "application/binary"}
        return self.request("PUT", self.key_path(bucket, key), headers, params, body=body)

    def delete_item_request(
        self, bucket: str, key: str, params: Mapping[str, str] | None = None
    ) -> Request:
        return self.request("DELETE", self.key_path(bucket, key), params=params)

    # Operations -----------------------------------------------------

    def ping(self, connection: Connection | None = None) -> None:
        dispatch(
            self.ping_request(),
            {200: ok, ANY_STATUS: debug_fail("Unexpected response from ping")},
            connection=connection,
            timeout=self.timeout,
        )

    def list_buckets(self, connection: Connection | None = None) -> list[str]:
        """
        List every bucket holding at least one key.

        Expensive on the server; not for production traffic.
        """
        reply = dispatch(
            self.list_buckets_request(),
            {200: _read_json, ANY_STATUS: debug_fail("ListBuckets failed")},
            connection=connection,
            timeout=self.timeout,
        )
        return list(reply.get("buckets") or [])

    def get_bucket(
        self,
        name: str,
        props: bool = True,
        keys: bool = False,
        connection: Connection | None = None,
    ) -> BucketDetails:
        """
        Fetch a bucket's properties and optionally its keys.

        Asking for keys this way returns them in one document, which a large
        bucket will overflow; use ``list_keys`` to stream them instead.
        """
        reply = dispatch(
            self.get_bucket_request(name, props, keys),
            {200: _read_json, ANY_STATUS: debug_fail("Server refused enumeration")},
            connection=connection,
            timeout=self.timeout,
        )
        return BucketDetails(props=reply.get("props") or {}, keys=reply.get("keys") or [])

    def set_bucket(
        self, name: str, properties: Properties, connection: Connection | None = None
    ) -> None:
        dispatch(
            self.set_bucket_request(name, properties),
            {204: ok, ANY_STATUS: debug_fail("Server refused creation")},
            connection=connection,
            timeout=self.timeout,
        )

    def get_item(
        self,
        bucket: str,
        key: str,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        connection: Connection | None = None,
    ) -> requests.Response:
        """
        Fetch a single resolved value.

        Returns:
            The open 200 response; the caller reads and closes it.

        Raises:
            UnknownKeyError: If the key does not exist.
        """
        req = self.get_item_request(bucket, key, headers, params)
        return dispatch(
            req,
            {
                200: passthrough,
                404: raises(UnknownKeyError),
                ANY_STATUS: debug_fail(f"GetItem failed: {req.url}"),
            },
            connection=connection,
            timeout=self.timeout,
        )

    def get_multi_item(
        self,
        bucket: str,
        key: str,
        out: Channel,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        connection: Connection | None = None,
    ) -> None:
        """
        Fetch every sibling of a value onto ``out``.

        Without an ``Accept`` header, ``multipart/mixed`` is requested so
        that conflicting writes come back as siblings. ``out`` is closed
        exactly once whatever happens.
        """
        decoding = False

        def decode(response: requests.Response) -> None:
            nonlocal decoding
            decoding = True
            decode_siblings(response, out)

        try:
            dispatch(
                self.get_multi_item_request(bucket, key, headers, params),
                {
                    200: decode,
                    300: decode,
                    400: raises(BadRequestError),
                    404: raises(UnknownKeyError),
                    406: raises(UnacceptableError),
                    503: raises(ServiceUnavailableError),
                    ANY_STATUS: debug_fail("GetMultiItem failed"),
                },
                connection=connection,
                timeout=self.timeout,
            )
        finally:
            # decode_siblings closes on its own paths
            if not decoding:
                out.close()

    def put_item(
        self,
        bucket: str,
        key: str,
        body: bytes,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        connection: Connection | None = None,
    ) -> None:
        """
        Store ``body`` under ``key``.

        Pass the ``X-Riak-Vclock`` from an earlier read in ``headers`` to make
        the write conditional on that version.

        Raises:
            PreconditionFailedError: If a conditional header did not hold.
        """
        req = self.put_item_request(bucket, key, body, headers, params)
        dispatch(
            req,
            {
                204: ok,
                412: raises(PreconditionFailedError),
                ANY_STATUS: debug_fail(f"PutItem failed: {req.url}"),
            },
            connection=connection,
            timeout=self.timeout,
        )

    def delete_item(
        self,
        bucket: str,
        key: str,
        params: Mapping[str, str] | None = None,
        connection: Connection | None = None,
    ) -> None:
        """
        Delete ``key`` from ``bucket``.

        Raises:
            UnknownKeyError: If the key was already absent.
            BadRequestError: If the store rejected the request parameters.
            ServiceUnavailableError: If the store could not serve the delete.
        """
        dispatch(
            self.delete_item_request(bucket, key, params),
            {
                204: ok,
                400: raises(BadRequestError),
                404: raises(UnknownKeyError),
                503: raises(ServiceUnavailableError),
                ANY_STATUS: debug_fail("DeleteItem failed"),
            },
            connection=connection,
            timeout=self.timeout,
        )

    def list_keys(
        self, bucket: str, out: Channel, connection: Connection | None = None
    ) -> None:
        """Stream every key of ``bucket`` onto ``out``, then close it."""
        stream_keys(self, bucket, out, connection=connection)


def _read_json(response: requests.Response) -> dict[str, Any]:
    with response:
        try:
            reply = response.json()
        except ValueError as e:
            raise EnvelopeDecodeError(f"Malformed JSON reply: {e}") from e
    if not isinstance(reply, dict):
        raise EnvelopeDecodeError(f"Expected a JSON object, got {type(reply).__name__}")
    return reply
