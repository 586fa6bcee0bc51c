import gzip
import json
import string
import zlib
from collections.abc import AsyncGenerator, MutableMapping

import pytest
from reqwire.client import Client, ClientBuilder
from reqwire.exceptions import DecodeError, JSONDecodeError, StatusError
from reqwire.http import HeaderMap, Url
from reqwire.pytest_plugin import ClientMocker

from tests.servers.echo_body_parts_server import EchoBodyPartsServer
from tests.servers.echo_server import EchoServer


@pytest.fixture
async def client() -> AsyncGenerator[Client, None]:
    async with ClientBuilder().error_for_status(True).build() as client:
        yield client


async def test_status(client: Client, echo_server: EchoServer) -> None:
    req = client.get(echo_server.url).build()
    resp = await req.send()
    resp.error_for_status()
    assert resp.status == 200

    resp.status = 404
    assert resp.status == 404
    with pytest.raises(StatusError, match="HTTP status client error") as e:
        resp.error_for_status()
    assert e.value.details and e.value.details["status"] == 404

    with pytest.raises(ValueError, match="invalid status code"):
        resp.status = 9999


async def test_headers(client: Client, echo_server: EchoServer) -> None:
    req = (
        client.get(echo_server.url)
        .query(
            [("header_x_test1", "Value1"), ("header_x_test1", "Value2"), ("header_x_test2", "Value3")],
        )
        .build()
    )
    resp = await req.send()

    assert type(resp.headers) is HeaderMap and isinstance(resp.headers, MutableMapping)

    assert resp.headers.getall("X-Test1") == ["Value1", "Value2"] and resp.headers["x-test1"] == "Value1"
    assert resp.headers.getall("X-Test2") == ["Value3"] and resp.headers["x-test2"] == "Value3"

    resp.headers["X-Test2"] = "Value4"
    assert resp.headers["X-Test2"] == "Value4" and resp.headers["x-test2"] == "Value4"

    assert resp.headers.popall("x-test1") == ["Value1", "Value2"]
    assert "X-Test1" not in resp.headers and "x-test1" not in resp.headers


async def test_version(client: Client, echo_server: EchoServer) -> None:
    resp = await client.get(echo_server.url).build().send()
    assert resp.version == "HTTP/1.1"

    resp.version = "HTTP/3.0"
    assert resp.version == "HTTP/3.0"

    with pytest.raises(ValueError, match="invalid http version"):
        resp.version = "foobar"


async def test_url_and_history(client: Client, echo_server: EchoServer) -> None:
    resp = await client.get(echo_server.url / "path").build().send()
    assert resp.url == echo_server.url / "path"
    assert resp.history == []

    resp.history.append(Url("http://example.com"))
    assert resp.history == [], "history is a copy"


async def test_extensions(client: Client, echo_server: EchoServer) -> None:
    req = client.get(echo_server.url).extensions({"a": "b"}).build()
    req.extensions["c"] = "d"
    resp = await req.send()
    assert resp.extensions == {"a": "b", "c": "d"}
    resp.extensions["c"] = "e"
    assert resp.extensions == {"a": "b", "c": "e"}
    resp.extensions = {"foo": "bar", "test": "value"}
    assert resp.extensions.pop("test") == "value"
    assert resp.extensions == {"foo": "bar"}


@pytest.mark.parametrize("kind", ["chunk", "bytes", "text", "json"])
async def test_body(client: Client, echo_body_parts_server: EchoBodyPartsServer, kind: str) -> None:
    async def stream_gen() -> AsyncGenerator[bytes, None]:
        yield b'{"foo": "bar", "test": "value"'
        yield b', "baz": 123}'

    resp = await client.post(echo_body_parts_server.url).body_stream(stream_gen()).build().send()
    if kind == "chunk":
        assert (await resp.next_chunk()) == b'{"foo": "bar", "test": "value"'
        assert (await resp.next_chunk()) == b', "baz": 123}'
        assert (await resp.next_chunk()) is None
        with pytest.raises(RuntimeError, match="Response body already consumed"):
            await resp.bytes()
        with pytest.raises(RuntimeError, match="Response body already consumed"):
            await resp.text()
        with pytest.raises(RuntimeError, match="Response body already consumed"):
            await resp.json()
    elif kind == "bytes":
        assert (await resp.bytes()) == b'{"foo": "bar", "test": "value", "baz": 123}'
        assert (await resp.bytes()) == b'{"foo": "bar", "test": "value", "baz": 123}'
        assert (await resp.next_chunk()) is None
    elif kind == "text":
        assert (await resp.text()) == '{"foo": "bar", "test": "value", "baz": 123}'
        assert (await resp.text()) == '{"foo": "bar", "test": "value", "baz": 123}'
        assert (await resp.next_chunk()) is None
    else:
        assert kind == "json"
        assert (await resp.json()) == {"foo": "bar", "test": "value", "baz": 123}
        assert (await resp.json()) == {"foo": "bar", "test": "value", "baz": 123}
        assert (await resp.next_chunk()) is None


async def test_read(client: Client, echo_body_parts_server: EchoBodyPartsServer) -> None:
    chars = string.ascii_letters + string.digits
    body = b"".join(chars[v % len(chars)].encode() for v in range(131072))

    async def stream_gen() -> AsyncGenerator[bytes, None]:
        yield body

    resp = await client.post(echo_body_parts_server.url).body_stream(stream_gen()).build().send()
    assert (await resp.read()) == body[:65536]
    assert (await resp.read()) == body[65536:]
    assert (await resp.read()) == b""

    resp = await client.post(echo_body_parts_server.url).body_stream(stream_gen()).build().send()
    assert (await resp.read(0)) == b""
    assert (await resp.read(100)) == body[:100]
    assert (await resp.read(100)) == body[100:200]
    assert (await resp.read(131072)) == body[200:]
    assert (await resp.read(10)) == b""

    with pytest.raises(ValueError, match="amount must be non-negative"):
        await resp.read(-1)


async def test_body_reader(client: Client, echo_body_parts_server: EchoBodyPartsServer) -> None:
    async with client.post(echo_body_parts_server.url).body_stream([b"abc", b"def"]).build_streamed() as resp:
        reader = resp.body_reader
        assert await reader.read(2) == b"ab"
        assert await reader.read_chunk() == b"c"
        assert await reader.read_chunk() == b"def"
        assert await reader.read_chunk() is None


ASCII_TEST = b"""
{
  "a": "qwe",
  "b": "qweqwe",
  "c": "qweq",
  "d: "qwe"
}
"""


@pytest.mark.parametrize(
    "body",
    [
        pytest.param(b"", id="empty"),
        pytest.param(ASCII_TEST, id="ascii"),
        pytest.param(b'["tab\tcharacter\tin\tstring\t"]', id="tabs"),
        pytest.param(b'{"a": 1', id="truncated"),
    ],
)
async def test_bad_json(client: Client, echo_body_parts_server: EchoBodyPartsServer, body: bytes) -> None:
    resp = await client.post(echo_body_parts_server.url).body_bytes(body).build().send()
    with pytest.raises(JSONDecodeError) as e:
        await resp.json()
    assert isinstance(e.value, json.JSONDecodeError)
    assert isinstance(e.value, DecodeError)
    assert e.value.details == {"causes": None}

    with pytest.raises(json.JSONDecodeError) as std_err:
        json.loads(body)
    assert e.value.lineno == std_err.value.lineno


@pytest.mark.parametrize(
    ("body", "charset", "expect"),
    [
        pytest.param(b"ascii text", "ascii", "ascii text", id="ascii"),
        pytest.param("ascii bäd".encode(), "ascii", "ascii b��d", id="ascii_bad"),
        pytest.param("latin bäd".encode("latin-1"), "latin-1", "latin bäd", id="latin1"),
        pytest.param("utf-8 text 😊".encode(), "utf-8", "utf-8 text 😊", id="utf8"),
        pytest.param(b"utf-8 bad \xe2\x82", "utf-8", "utf-8 bad �", id="utf8_bad"),
        pytest.param("utf-8 text 😊".encode(), None, "utf-8 text 😊", id="utf8_default"),
        pytest.param(b"unknown", "no-such-charset", "unknown", id="unknown_charset"),
    ],
)
async def test_text(
    client: Client,
    echo_body_parts_server: EchoBodyPartsServer,
    body: bytes,
    charset: str | None,
    expect: str,
) -> None:
    content_type = f"text/plain; charset={charset}" if charset else "text/plain"
    resp = (
        await client.post(echo_body_parts_server.url)
        .body_bytes(body)
        .query({"content_type": content_type})
        .build()
        .send()
    )
    assert resp.content_charset() == charset
    assert await resp.text() == expect


async def test_content_charset(client: Client, echo_body_parts_server: EchoBodyPartsServer) -> None:
    resp = await client.post(echo_body_parts_server.url).body_bytes(b"test").build().send()
    assert resp.content_charset() is None

    resp.headers["content-type"] = 'text/html; charset="UTF-8"'
    assert resp.content_charset() == "UTF-8"

    assert resp.headers.pop("content-type") == 'text/html; charset="UTF-8"'
    assert resp.content_charset() is None


async def test_error_for_status(echo_server: EchoServer) -> None:
    async with ClientBuilder().build() as client:
        resp = await client.get(echo_server.url).query([("status", 201)]).build().send()
        resp.error_for_status()

        resp = await client.get(echo_server.url).query([("status", 404)]).build().send()
        with pytest.raises(StatusError, match="HTTP status client error") as e:
            resp.error_for_status()
        assert e.value.details and e.value.details["status"] == 404


async def test_repr(client: Client, echo_server: EchoServer) -> None:
    resp = await client.get(echo_server.url).build().send()
    assert repr(resp) == f"Response(status=200, url='{echo_server.url}')"


@pytest.fixture
async def mocked_client(client_mocker: ClientMocker) -> AsyncGenerator[Client, None]:
    async with ClientBuilder().error_for_status(True).build() as client:
        yield client


async def test_decode_streamed_gzip_chunks(mocked_client: Client, client_mocker: ClientMocker) -> None:
    payload = b"".join(string.ascii_letters.encode() for _ in range(100))
    compressed = gzip.compress(payload)
    chunks = [compressed[i : i + 7] for i in range(0, len(compressed), 7)]
    client_mocker.get("/gz").with_header("content-encoding", "x-gzip").with_body_chunks(chunks)

    async with mocked_client.get("http://example.com/gz").build_streamed() as resp:
        assert "content-encoding" not in resp.headers
        assert await resp.bytes() == payload


async def test_decode_raw_deflate(mocked_client: Client, client_mocker: ClientMocker) -> None:
    compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
    raw = compressor.compress(b"raw deflate") + compressor.flush()
    client_mocker.get("/raw").with_header("content-encoding", "deflate").with_body_bytes(raw)
    client_mocker.get("/zlib").with_header("content-encoding", "Deflate").with_body_bytes(zlib.compress(b"zlib"))

    assert await (await mocked_client.get("http://example.com/raw").build().send()).text() == "raw deflate"
    assert await (await mocked_client.get("http://example.com/zlib").build().send()).text() == "zlib"


@pytest.mark.parametrize("body", [gzip.compress(b"truncated body")[:-6], b"not gzip at all"])
async def test_decode_invalid_body(mocked_client: Client, client_mocker: ClientMocker, body: bytes) -> None:
    client_mocker.get("/").with_header("content-encoding", "gzip").with_body_bytes(body)

    with pytest.raises(DecodeError, match="error decoding response body") as e:
        await mocked_client.get("http://example.com/").build().send()
    assert e.value.details and e.value.details["causes"]


async def test_decode_empty_body(mocked_client: Client, client_mocker: ClientMocker) -> None:
    client_mocker.head("/").with_header("content-encoding", "gzip").with_header("content-length", "0")

    resp = await mocked_client.head("http://example.com/").build().send()
    assert await resp.bytes() == b""


async def test_unknown_encoding_passed_through(mocked_client: Client, client_mocker: ClientMocker) -> None:
    client_mocker.get("/").with_header("content-encoding", "br").with_body_bytes(b"\x0b\x02\x80")

    resp = await mocked_client.get("http://example.com/").build().send()
    assert resp.headers["content-encoding"] == "br"
    assert await resp.bytes() == b"\x0b\x02\x80"
