from collections.abc import AsyncGenerator, AsyncIterator
from datetime import timedelta

import pytest
from reqwire.client import Client, ClientBuilder
from reqwire.exceptions import (
    BodyNotReplayableError,
    ConnectError,
    ConnectRefusedError,
    ConnectTimeoutError,
    ReadTimeoutError,
    TransportError,
)
from reqwire.http import HeaderMap, RequestBody
from reqwire.retry import IDEMPOTENT_METHODS, RetryPolicy
from reqwire.transport import ProxyTarget, RequestHead, ResponseHead

Outcome = int | BaseException


class FakeConnection:
    def __init__(self, transport: "FakeTransport") -> None:
        self.transport = transport
        self.closed = False

    async def send(self, head: RequestHead, body: AsyncIterator[bytes] | None) -> ResponseHead:
        sent = [chunk async for chunk in body] if body is not None else None
        self.transport.sent.append((head.method, head.target, sent))
        outcome = self.transport.send_outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return ResponseHead(outcome, HeaderMap({"content-length": "2"}))

    async def read_body(self) -> AsyncGenerator[bytes, None]:
        yield b"ok"

    def is_reusable(self) -> bool:
        return not self.closed

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Transport with scripted connect and send outcomes."""

    def __init__(self, *, connect_errors: list[BaseException] | None = None, send_outcomes: list[Outcome]) -> None:
        self.connect_errors = connect_errors or []
        self.send_outcomes = send_outcomes
        self.connects = 0
        self.sent: list[tuple[str, str, list[bytes] | None]] = []

    async def connect(self, scheme: str, host: str, port: int, *, tunnel: ProxyTarget | None = None) -> FakeConnection:
        self.connects += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        return FakeConnection(self)


def build_client(transport: FakeTransport, policy: RetryPolicy | None = RetryPolicy()) -> Client:
    return ClientBuilder().transport(transport).retry(policy).build()


async def test_retry_stale_connection():
    transport = FakeTransport(send_outcomes=[200, TransportError("connection reset"), 200])
    async with build_client(transport) as client:
        assert await (await client.get("http://example.test/a").build().send()).text() == "ok"
        resp = await client.get("http://example.test/b").build().send()
        assert resp.status == 200

    assert transport.connects == 2
    assert [target for _, target, _ in transport.sent] == ["/a", "/b", "/b"]


async def test_retry_stale_connection_os_error():
    transport = FakeTransport(send_outcomes=[200, ConnectionResetError("reset by peer"), 200])
    async with build_client(transport) as client:
        await (await client.get("http://example.test/").build().send()).bytes()
        assert (await client.get("http://example.test/").build().send()).status == 200
    assert transport.connects == 2


async def test_no_retry_on_fresh_connection():
    transport = FakeTransport(send_outcomes=[TransportError("connection reset"), 200])
    async with build_client(transport) as client:
        with pytest.raises(TransportError, match="connection reset"):
            await client.get("http://example.test/").build().send()
    assert transport.connects == 1


async def test_no_retry_without_policy():
    transport = FakeTransport(connect_errors=[ConnectRefusedError("tcp connect error")], send_outcomes=[200])
    async with build_client(transport, None) as client:
        with pytest.raises(ConnectRefusedError):
            await client.get("http://example.test/").build().send()
    assert transport.connects == 1


async def test_retry_connect_errors():
    transport = FakeTransport(
        connect_errors=[ConnectRefusedError("tcp connect error"), ConnectRefusedError("tcp connect error")],
        send_outcomes=[200],
    )
    async with build_client(transport) as client:
        assert (await client.get("http://example.test/").build().send()).status == 200
    assert transport.connects == 3


async def test_retry_gives_up_after_max_retries():
    transport = FakeTransport(connect_errors=[ConnectError("tcp connect error")] * 3, send_outcomes=[200])
    async with build_client(transport, RetryPolicy(max_retries=2)) as client:
        with pytest.raises(ConnectError):
            await client.get("http://example.test/").build().send()
    assert transport.connects == 3


async def test_non_idempotent_not_retried():
    transport = FakeTransport(connect_errors=[ConnectRefusedError("tcp connect error")], send_outcomes=[200])
    async with build_client(transport) as client:
        with pytest.raises(ConnectRefusedError):
            await client.post("http://example.test/").body_bytes(b"data").build().send()
    assert transport.connects == 1

    transport = FakeTransport(connect_errors=[ConnectRefusedError("tcp connect error")], send_outcomes=[200])
    async with build_client(transport, RetryPolicy(methods=frozenset({"post"}))) as client:
        assert (await client.post("http://example.test/").body_bytes(b"data").build().send()).status == 200
    assert transport.sent == [("POST", "/", [b"data"])]


async def test_replayable_body_resent():
    transport = FakeTransport(send_outcomes=[200, TransportError("connection reset"), 200])
    async with build_client(transport, RetryPolicy(methods=frozenset({"PUT"}))) as client:
        await (await client.put("http://example.test/").body_bytes(b"first").build().send()).bytes()
        body = RequestBody.from_stream_factory(lambda: [b"a", b"b"])
        req = client.put("http://example.test/").body(body).build()
        assert (await req.send()).status == 200
    assert [body for _, _, body in transport.sent] == [[b"first"], [b"a", b"b"], [b"a", b"b"]]


async def test_single_pass_stream_not_retried():
    async def stream() -> AsyncGenerator[bytes]:
        yield b"once"

    transport = FakeTransport(send_outcomes=[200, TransportError("connection reset"), 200])
    async with build_client(transport, RetryPolicy(methods=frozenset({"PUT"}))) as client:
        await (await client.put("http://example.test/").build().send()).bytes()
        req = client.put("http://example.test/").body_stream(stream()).build()
        with pytest.raises(BodyNotReplayableError, match="can not be replayed") as e:
            await req.send()
    assert isinstance(e.value.__cause__, TransportError)
    assert transport.connects == 1


async def test_connect_timeout_retry_opt_in():
    transport = FakeTransport(connect_errors=[ConnectTimeoutError("connect timeout")], send_outcomes=[200])
    async with build_client(transport) as client:
        with pytest.raises(ConnectTimeoutError):
            await client.get("http://example.test/").build().send()

    transport = FakeTransport(connect_errors=[ConnectTimeoutError("connect timeout")], send_outcomes=[200])
    async with build_client(transport, RetryPolicy(retry_connect_timeouts=True)) as client:
        assert (await client.get("http://example.test/").build().send()).status == 200


def test_policy_should_retry():
    policy = RetryPolicy()
    assert policy.methods == IDEMPOTENT_METHODS
    assert policy.should_retry("get", ConnectError("x"), reused_connection=False, retries=0)
    assert not policy.should_retry("GET", ConnectError("x"), reused_connection=False, retries=2)
    assert not policy.should_retry("POST", ConnectError("x"), reused_connection=False, retries=0)
    assert policy.should_retry("GET", TransportError("x"), reused_connection=True, retries=0)
    assert not policy.should_retry("GET", TransportError("x"), reused_connection=False, retries=0)
    assert not policy.should_retry("GET", ReadTimeoutError("x"), reused_connection=True, retries=0)
    assert not RetryPolicy(retry_stale_connections=False).should_retry(
        "GET", TransportError("x"), reused_connection=True, retries=0
    )
    assert RetryPolicy(methods=frozenset({"post"})).methods == {"POST"}


def test_policy_backoff():
    assert RetryPolicy().backoff_delay(1) == 0.0
    policy = RetryPolicy(backoff=timedelta(milliseconds=100), backoff_multiplier=2.0)
    assert policy.backoff_delay(1) == pytest.approx(0.1)
    assert policy.backoff_delay(3) == pytest.approx(0.4)

    with pytest.raises(ValueError, match="max_retries must be non-negative"):
        RetryPolicy(max_retries=-1)
