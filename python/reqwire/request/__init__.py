"""Requests classes and builders."""

from reqwire.http import RequestBody
from reqwire.request._builder import BaseRequestBuilder, BlockingRequestBuilder, RequestBuilder
from reqwire.request._request import (
    BlockingConsumedRequest,
    BlockingStreamRequest,
    ConsumedRequest,
    Request,
    StreamRequest,
)

__all__ = [
    "BaseRequestBuilder",
    "BlockingConsumedRequest",
    "BlockingRequestBuilder",
    "BlockingStreamRequest",
    "ConsumedRequest",
    "Request",
    "RequestBody",
    "RequestBuilder",
    "StreamRequest",
]
