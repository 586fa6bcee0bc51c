"""Client classes and builders."""

from reqwire.client._blocking import DrainPolicy, Runtime
from reqwire.client._builder import BaseClientBuilder, BlockingClientBuilder, ClientBuilder
from reqwire.client._client import BaseClient, BlockingClient, Client
from reqwire.client._config import ClientConfig
from reqwire.client._pool import ConnectionState, PoolKey, PoolStats

__all__ = [
    "BaseClient",
    "BaseClientBuilder",
    "BlockingClient",
    "BlockingClientBuilder",
    "Client",
    "ClientBuilder",
    "ClientConfig",
    "ConnectionState",
    "DrainPolicy",
    "PoolKey",
    "PoolStats",
    "Runtime",
]
