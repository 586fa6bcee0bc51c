"""Response classes."""

from reqwire.response._response import (
    BaseResponse,
    BlockingResponse,
    BlockingResponseBodyReader,
    Response,
    ResponseBodyReader,
)

__all__ = [
    "BaseResponse",
    "BlockingResponse",
    "BlockingResponseBodyReader",
    "Response",
    "ResponseBodyReader",
]
