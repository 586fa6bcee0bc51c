import pytest

from .mock import client_mocker  # load the client_mocker fixture

pytest.register_assert_rewrite("reqwire.pytest_plugin.internal.assert_message")


def pytest_configure(config):
    """Configure the pytest plugin."""
    config.addinivalue_line(
        "markers",
        "reqwire: mark test to use reqwire HTTP client mocking"
    )
