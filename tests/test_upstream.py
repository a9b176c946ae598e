"""
Test origin calls against a local aiohttp server
"""

import asyncio

import pytest
from aiohttp import test_utils, web

from capture_relay.core.errors import UpstreamError
from capture_relay.engine.body import decode_body, encode_body
from capture_relay.engine.upstream import UpstreamClient, forwardable_headers


async def echo(request):
    payload = await request.read()
    return web.json_response({
        "method": request.method,
        "path": request.path_qs,
        "content_length": request.headers.get("Content-Length"),
        "x_custom": request.headers.get("X-Custom"),
        "body": payload.decode("utf-8"),
    })


async def binary(request):
    return web.Response(body=b"\xff\xd8\xff\x00", content_type="image/jpeg")


async def slow(request):
    await asyncio.sleep(1.0)
    return web.Response(text="late")


@pytest.fixture
async def origin():
    app = web.Application()
    app.router.add_route("*", "/echo", echo)
    app.router.add_get("/binary", binary)
    app.router.add_get("/slow", slow)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield server
    await server.close()


async def test_request_forwarded_with_recomputed_length(origin):
    client = UpstreamClient(timeout_seconds=5)
    try:
        response = await client.send(
            "post",
            str(origin.make_url("/echo?x=1")),
            headers={"Content-Length": "999", "X-Custom": "kept"},
            body="hello"
        )
    finally:
        await client.close()

    assert response.status == 200
    assert response.body["method"] == "POST"
    assert response.body["path"] == "/echo?x=1"
    assert response.body["content_length"] == "5"
    assert response.body["x_custom"] == "kept"
    assert response.body["body"] == "hello"
    assert response.body_size > 0
    assert client.get_stats()["requests_sent"] == 1


async def test_binary_response_stored_as_marker(origin):
    client = UpstreamClient(timeout_seconds=5)
    try:
        response = await client.send("GET", str(origin.make_url("/binary")))
    finally:
        await client.close()

    assert response.body["_type"] == "binary"
    assert response.body["_encoding"] == "base64"
    assert response.body_size == 4


async def test_timeout_raises_upstream_error(origin):
    client = UpstreamClient(timeout_seconds=0.2)
    try:
        with pytest.raises(UpstreamError, match="timed out"):
            await client.send("GET", str(origin.make_url("/slow")))
    finally:
        await client.close()

    assert client.get_stats()["errors"] == 1


async def test_connection_refused_raises_upstream_error():
    client = UpstreamClient(timeout_seconds=2)
    try:
        with pytest.raises(UpstreamError, match="failed"):
            await client.send("GET", "http://127.0.0.1:1/")
    finally:
        await client.close()


async def test_invalid_url_raises_upstream_error():
    client = UpstreamClient(timeout_seconds=2)
    try:
        with pytest.raises(UpstreamError):
            await client.send("GET", "not a url")
    finally:
        await client.close()


def test_forwardable_headers_drop_length_and_join_lists():
    headers = forwardable_headers({
        "content-length": "10",
        "Accept": ["text/html", "application/json"],
        "X-Empty": None,
        "X-Number": 3,
    })

    assert headers == {"Accept": "text/html, application/json", "X-Number": "3"}


def test_decode_body():
    assert decode_body(b"") == ""
    assert decode_body(b"plain") == "plain"
    assert decode_body(b'{"a": 1}', "application/json; charset=utf-8") == {"a": 1}
    assert decode_body(b"{broken", "application/json") == "{broken"
    assert decode_body(b"\xff\xfe")["_type"] == "binary"


def test_encode_body():
    assert encode_body(None) is None
    assert encode_body("") is None
    assert encode_body("héllo") == "héllo".encode("utf-8")
    assert encode_body({"a": 1}) == b'{"a": 1}'
    assert encode_body(decode_body(b"\xff\xfe")) == b"\xff\xfe"
