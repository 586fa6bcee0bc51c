"""reqwire - Ergonomic asyncio based HTTP client library.

Inspired by [reqwest](https://github.com/seanmonstar/reqwest).

Feature-rich:
- Asynchronous and blocking HTTP clients sharing one execution engine
- Connection pooling and keep-alive with per-host limits and idle eviction
- Redirect following with configurable policies and cross-origin header stripping
- Cookie management with a pluggable cookie provider
- Raw, JSON, form and streaming request bodies
- Streaming response bodies
- Timeouts covering connect, pool wait, reads and the full redirect chain
- HTTP proxies (forwarding and CONNECT tunnelling)
- HTTPS/TLS support with custom root certificates
- Mocking and testing utilities
"""

__version__ = "0.4.0"
