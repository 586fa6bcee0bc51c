import asyncio
from typing import Any
from urllib.parse import parse_qsl

import orjson

from .server import Receive, Send, Server, receive_all


class EchoBodyPartsServer(Server):
    async def app(self, scope: dict[str, Any], receive: Receive, send: Send) -> None:
        assert scope["type"] == "http"
        query: dict[str, str] = dict(parse_qsl(scope["query_string"].decode()))

        resp_headers = [[b"content-type", query.get("content_type", "application/json").encode()]]

        await send({"type": "http.response.start", "status": 200, "headers": resp_headers})

        chunks = [chunk async for chunk in receive_all(receive) if chunk]

        for chunk in chunks:
            if sleep := (try_json(chunk) or {}).get("sleep"):
                await asyncio.sleep(sleep)
            await send({"type": "http.response.body", "body": chunk, "more_body": True})
        await send({"type": "http.response.body", "body": b"", "more_body": False})


def try_json(data: bytes) -> dict[str, Any] | None:
    try:
        val = orjson.loads(data)
        return val if isinstance(val, dict) else None
    except orjson.JSONDecodeError:
        return None
