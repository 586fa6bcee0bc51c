from collections.abc import AsyncGenerator

import pytest
from reqwire.client import ClientBuilder
from reqwire.exceptions import (
    BodyNotReplayableError,
    BuilderError,
    InvalidRedirectLocationError,
    RedirectError,
    RequestPanicError,
    TooManyRedirectsError,
)
from reqwire.http import HeaderMap, RequestBody, Url
from reqwire.pytest_plugin import ClientMocker, Mock
from reqwire.redirect import Attempt, Hop, Policy, RedirectEngine, SensitiveHeaders
from reqwire.redirect._engine import make_referer, redirect_method

from tests.servers.echo_server import EchoServer


def redirect_to(client_mocker: ClientMocker, path: str, location: str, status: int = 302) -> Mock:
    return client_mocker.mock(path=path).with_status(status).with_header("location", location)


@pytest.mark.parametrize("method", ["GET", "POST", "PUT", "DELETE"])
async def test_303_switches_to_get(client_mocker: ClientMocker, method: str):
    redirect_to(client_mocker, "/start", "/done", status=303)
    client_mocker.get("/done").with_body_text("done")

    async with ClientBuilder().error_for_status(True).build() as client:
        resp = await client.request(method, "http://example.com/start").body_text("payload").build().send()
        assert await resp.text() == "done"

    first, second = client_mocker.get_requests()
    assert first.method == method and first.body == b"payload"
    assert second.method == "GET"
    assert second.body is None
    assert "content-length" not in second.headers
    assert "content-type" not in second.headers


@pytest.mark.parametrize("status", [301, 302])
async def test_301_302_post_becomes_get(client_mocker: ClientMocker, status: int):
    start_mock = redirect_to(client_mocker, "/start", "/done", status=status)
    done_mock = client_mocker.mock(path="/done")

    async with ClientBuilder().build() as client:
        await client.post("http://example.com/start").body_text("payload").build().send()
        await client.put("http://example.com/start").body_text("payload").build().send()

    assert [(r.method, r.body) for r in start_mock.get_requests()] == [("POST", b"payload"), ("PUT", b"payload")]
    assert [(r.method, r.body) for r in done_mock.get_requests()] == [("GET", None), ("PUT", b"payload")]


@pytest.mark.parametrize("status", [307, 308])
async def test_307_308_keep_method_and_body(client_mocker: ClientMocker, status: int):
    redirect_to(client_mocker, "/start", "/done", status=status)
    client_mocker.post("/done").with_body_text("done")

    async with ClientBuilder().build() as client:
        resp = await client.post("http://example.com/start").body_bytes(b"B" * 100).build().send()
        assert await resp.text() == "done"
        assert resp.history == [Url("http://example.com/start")]
        assert resp.url == Url("http://example.com/done")

    first, second = client_mocker.get_requests()
    assert first.body == second.body == b"B" * 100
    assert second.method == "POST"
    assert second.headers["content-length"] == "100"


async def test_307_with_single_pass_stream_fails(client_mocker: ClientMocker):
    redirect_to(client_mocker, "/start", "/done", status=307)
    done = client_mocker.post("/done")

    async def stream() -> AsyncGenerator[bytes]:
        yield b"part1"
        yield b"part2"

    async with ClientBuilder().build() as client:
        req = client.post("http://example.com/start").body_stream(stream()).build()
        with pytest.raises(BodyNotReplayableError):
            await req.send()

    assert client_mocker.get_requests()[0].body == b"part1part2"
    done.assert_called(count=0)


async def test_307_with_stream_factory_is_replayed(client_mocker: ClientMocker):
    redirect_to(client_mocker, "/start", "/done", status=307)
    client_mocker.post("/done")

    def stream() -> list[bytes]:
        return [b"part1", b"part2"]

    async with ClientBuilder().build() as client:
        await client.post("http://example.com/start").body(RequestBody.from_stream_factory(stream)).build().send()

    assert [r.body for r in client_mocker.get_requests()] == [b"part1part2", b"part1part2"]
    assert all(r.headers["transfer-encoding"] == "chunked" for r in client_mocker.get_requests())


async def test_too_many_redirects(client_mocker: ClientMocker):
    redirect_to(client_mocker, "/loop", "/loop")

    async with ClientBuilder().redirect(Policy.limited(3)).build() as client:
        with pytest.raises(TooManyRedirectsError) as e:
            await client.get("http://example.com/loop").build().send()

    assert e.value.hops == 3
    assert e.value.details == {"hops": 3}
    assert len(e.value.history) == 4
    assert client_mocker.get_call_count() == 4, "initial request and at most 3 redirects"


async def test_redirect_policy_none(client_mocker: ClientMocker):
    redirect_to(client_mocker, "/start", "/done")

    async with ClientBuilder().redirect(Policy.none()).build() as client:
        resp = await client.get("http://example.com/start").build().send()

    assert resp.status == 302
    assert resp.headers["location"] == "/done"
    assert resp.history == []
    assert client_mocker.get_call_count() == 1


async def test_redirect_policy_custom(client_mocker: ClientMocker):
    redirect_to(client_mocker, "/a", "/b")
    redirect_to(client_mocker, "/b", "/c")
    attempts: list[Attempt] = []

    def policy(attempt: Attempt):
        attempts.append(attempt)
        return attempt.stop() if attempt.url.path == "/c" else attempt.follow()

    async with ClientBuilder().redirect(Policy.custom(policy)).build() as client:
        resp = await client.get("http://example.com/a").build().send()

    assert resp.status == 302
    assert resp.url == Url("http://example.com/b")
    assert [(a.status, str(a.url), [str(u) for u in a.previous]) for a in attempts] == [
        (302, "http://example.com/b", ["http://example.com/a"]),
        (302, "http://example.com/c", ["http://example.com/a", "http://example.com/b"]),
    ]


async def test_redirect_policy_custom_error(client_mocker: ClientMocker):
    redirect_to(client_mocker, "/a", "/b")

    async with ClientBuilder().redirect(Policy.custom(lambda a: a.error("nope"))).build() as client:
        with pytest.raises(RedirectError, match="nope") as e:
            await client.get("http://example.com/a").build().send()
    assert e.value.history == [Url("http://example.com/a")]

    def failing(_attempt: Attempt):
        raise ValueError("boom")

    async with ClientBuilder().redirect(Policy.custom(failing)).build() as client:
        with pytest.raises(RequestPanicError) as panic:
            await client.get("http://example.com/a").build().send()
    assert panic.value.details == {"causes": [{"message": "ValueError: boom"}]}


@pytest.mark.parametrize(
    ("location", "same_origin"),
    [
        ("/other", True),
        ("http://example.com:80/other", True),
        ("http://other.example.com/other", False),
        ("http://example.com:8080/other", False),
        ("https://example.com/other", False),
    ],
)
async def test_sensitive_headers_on_cross_origin(client_mocker: ClientMocker, location: str, same_origin: bool):
    redirect_to(client_mocker, "/start", location)
    client_mocker.get("/other")

    async with ClientBuilder().build() as client:
        await (
            client.get("http://example.com/start")
            .bearer_auth("secret")
            .header("cookie", "a=1")
            .header("x-custom", "kept")
            .build()
            .send()
        )

    _, second = client_mocker.get_requests()
    assert second.headers["x-custom"] == "kept"
    if same_origin:
        assert second.headers["authorization"] == "Bearer secret"
        assert second.headers["cookie"] == "a=1"
    else:
        assert "authorization" not in second.headers
        assert "cookie" not in second.headers


async def test_sensitive_headers_custom(client_mocker: ClientMocker):
    redirect_to(client_mocker, "/start", "http://other.com/next")
    client_mocker.get("/next")

    headers = SensitiveHeaders().allow("authorization").deny("x-secret")
    async with ClientBuilder().redirect_sensitive_headers(headers).build() as client:
        await client.get("http://example.com/start").bearer_auth("t").header("x-secret", "s").build().send()

    _, second = client_mocker.get_requests()
    assert second.headers["authorization"] == "Bearer t"
    assert "x-secret" not in second.headers


async def test_referer(client_mocker: ClientMocker):
    redirect_to(client_mocker, "https://example.com/start", "/next?a=1")
    redirect_to(client_mocker, "https://example.com/next", "http://example.com/plain")
    client_mocker.get("/plain")

    async with ClientBuilder().build() as client:
        await client.get("https://user:pw@example.com/start#frag").build().send()

    first, second, third = client_mocker.get_requests()
    assert "referer" not in first.headers
    assert second.headers["referer"] == "https://example.com/start"
    assert "referer" not in third.headers, "https to http downgrade"


async def test_referer_disabled(client_mocker: ClientMocker):
    redirect_to(client_mocker, "/start", "/next")
    client_mocker.get("/next")

    async with ClientBuilder().referer(False).build() as client:
        await client.get("http://example.com/start").build().send()

    assert "referer" not in client_mocker.get_requests()[1].headers


@pytest.mark.parametrize("location", [None, "", "ftp://example.com/file"])
async def test_invalid_location(client_mocker: ClientMocker, location: str | None):
    mock = client_mocker.get("/start").with_status(302)
    if location is not None:
        mock.with_header("location", location)

    async with ClientBuilder().build() as client:
        with pytest.raises(InvalidRedirectLocationError) as e:
            await client.get("http://example.com/start").build().send()
    assert e.value.history == [Url("http://example.com/start")]


async def test_https_only_rejects_redirect_to_http(client_mocker: ClientMocker):
    redirect_to(client_mocker, "https://example.com/start", "http://example.com/plain")

    async with ClientBuilder().https_only(True).build() as client:
        with pytest.raises(BuilderError, match="URL scheme is not allowed"):
            await client.get("https://example.com/start").build().send()
        with pytest.raises(BuilderError, match="URL scheme is not allowed"):
            await client.get("http://example.com/start").build().send()


async def test_fragment_is_carried_over(client_mocker: ClientMocker):
    redirect_to(client_mocker, "/start", "/next")
    client_mocker.get("/next")

    async with ClientBuilder().build() as client:
        resp = await client.get("http://example.com/start#section").build().send()

    assert resp.url == Url("http://example.com/next#section")


async def test_redirect_body_is_drained_and_connection_reused(client_mocker: ClientMocker):
    client_mocker.get("/start").with_status(302).with_header("location", "/done").with_body_text("moved")
    client_mocker.get("/done")

    async with ClientBuilder().build() as client:
        await client.get("http://example.com/start").build().send()

    first, second = client_mocker.get_requests()
    assert first.connection_id == second.connection_id


async def test_redirect_with_server(echo_server: EchoServer):
    start = echo_server.url.with_query({"status": 302, "header_location": "/target?x=1"})

    async with ClientBuilder().error_for_status(True).build() as client:
        resp = await client.get(start).build().send()
        data = await resp.json()

    assert data["path"] == "/target"
    assert data["query"] == [["x", "1"]]
    assert resp.history == [start]
    assert echo_server.calls == 2


def test_redirect_method():
    assert redirect_method(303, "POST") == ("GET", False)
    assert redirect_method(303, "HEAD") == ("GET", False)
    assert redirect_method(302, "POST") == ("GET", False)
    assert redirect_method(301, "POST") == ("GET", False)
    assert redirect_method(302, "DELETE") == ("DELETE", True)
    assert redirect_method(307, "POST") == ("POST", True)
    assert redirect_method(308, "PATCH") == ("PATCH", True)


def test_make_referer():
    assert make_referer(Url("http://a.com/"), Url("http://u:p@b.com/x#f")) == "http://b.com/x"
    assert make_referer(Url("https://a.com/"), Url("http://b.com/x")) == "http://b.com/x"
    assert make_referer(Url("http://a.com/"), Url("https://b.com/x")) is None


def test_redirect_engine_final_response():
    engine = RedirectEngine(Policy.default(), sensitive_headers=SensitiveHeaders())
    hop = Hop("GET", Url("http://example.com/"), HeaderMap(), None)
    assert engine.next_hop(200, None, hop, [hop.url]) is None
    assert engine.next_hop(304, "/other", hop, [hop.url]) is None


def test_policy_validation():
    with pytest.raises(ValueError, match="max_hops must be a non-negative integer"):
        Policy.limited(-1)
    with pytest.raises(TypeError):
        Policy.custom("not callable")  # type: ignore[arg-type]
    assert repr(Policy.limited(3)) == "Policy.limited(3)"
    assert not Policy.none().follows
