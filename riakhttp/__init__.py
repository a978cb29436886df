"""
riakhttp - a client for Riak's HTTP interface, and a bulk bucket cleaner.

Example usage:
    from riakhttp import Channel, Client

    client = Client("http://localhost:8098/")
    client.put_item("fruit", "apple", b"red")

    siblings = Channel()
    client.get_multi_item("fruit", "apple", siblings)
    for sibling in siblings:
        print(sibling.headers["X-Riak-Vclock"], sibling.content)
"""

from riakhttp.channel import Channel
from riakhttp.cleaner import BucketCleaner, CleanerConfig, DeleteReport
from riakhttp.client import BucketDetails, Client
from riakhttp.connection import Connection, dial_http
from riakhttp.dispatch import ANY_STATUS, Request, dispatch
from riakhttp.errors import (
    BadRequestError,
    ChannelClosedError,
    ConfigurationError,
    ConnectivityError,
    EnvelopeDecodeError,
    MultipartError,
    PreconditionFailedError,
    ProtocolError,
    RiakError,
    ServiceUnavailableError,
    StoreError,
    TransportError,
    UnacceptableError,
    UnhandledResponseError,
    UnknownKeyError,
)
from riakhttp.props import Properties, Quorum, default_properties

__version__ = "0.1.0"
__all__ = [
    "ANY_STATUS",
    "BadRequestError",
    "BucketCleaner",
    "BucketDetails",
    "Channel",
    "ChannelClosedError",
    "CleanerConfig",
    "Client",
    "ConfigurationError",
    "Connection",
    "ConnectivityError",
    "DeleteReport",
    "EnvelopeDecodeError",
    "MultipartError",
    "PreconditionFailedError",
    "Properties",
    "ProtocolError",
    "Quorum",
    "Request",
    "RiakError",
    "ServiceUnavailableError",
    "StoreError",
    "TransportError",
    "UnacceptableError",
    "UnhandledResponseError",
    "UnknownKeyError",
    "default_properties",
    "dial_http",
    "dispatch",
]
