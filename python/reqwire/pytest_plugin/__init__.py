"""Reqwire pytest plugin for HTTP client mocking."""

from .mock import CapturedRequest, ClientMocker, Mock, MockResponse, client_mocker

__all__ = [  # noqa: RUF022
    "client_mocker",
    "CapturedRequest",
    "ClientMocker",
    "Mock",
    "MockResponse",
]
