import asyncio
import hmac
import socket
from typing import AsyncIterator, Dict, List, Tuple
from urllib.parse import parse_qsl

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from sigv4_probe.canonical import build_canonical_request
from sigv4_probe.models import UNSIGNED_PAYLOAD, Credentials, SigningScope
from sigv4_probe.signer import build_string_to_sign, compute_signature, derive_signing_key

SECRETS: Dict[str, str] = {"minioadmin": "minioadmin"}


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(access_key="minioadmin", secret_key="minioadmin")


def parse_authorization(value: str) -> Tuple[str, Dict[str, str]]:
    algorithm, _, rest = value.partition(" ")
    fields = dict(part.strip().split("=", 1) for part in rest.split(","))
    return algorithm, fields


async def verify_signature(request: web.Request) -> web.Response:
    # Recompute the signature from what actually arrived on the wire.
    authorization = request.headers.get("Authorization")
    if not authorization:
        return web.Response(status=403, text="MissingAuthorization")

    _, fields = parse_authorization(authorization)
    access_key, date, region, service, _ = fields["Credential"].split("/")
    secret_key = SECRETS.get(access_key)
    if secret_key is None:
        return web.Response(status=403, text="InvalidAccessKeyId")

    signed = fields["SignedHeaders"].split(";")
    headers: List[Tuple[str, str]] = [
        (name, value) for name in signed for value in request.headers.getall(name, [])
    ]
    body = await request.read()
    path, _, query = request.raw_path.partition("?")

    canonical = build_canonical_request(
        request.method,
        path,
        query=parse_qsl(query, keep_blank_values=True),
        headers=headers,
        payload=body,
        signed_headers=signed,
        unsigned_payload=request.headers.get("x-amz-content-sha256") == UNSIGNED_PAYLOAD,
    )
    scope = SigningScope(date=date, region=region, service=service)
    string_to_sign = build_string_to_sign(
        request.headers["x-amz-date"], scope, canonical.hexdigest()
    )
    expected = compute_signature(derive_signing_key(secret_key, scope), string_to_sign)

    if not hmac.compare_digest(expected, fields["Signature"]):
        return web.Response(status=403, text="SignatureDoesNotMatch")

    if path == "/moved/":
        return web.Response(status=307, headers={"Location": "/cern-test-bucket/"})
    if path == "/missing/":
        return web.Response(status=404, text="NoSuchBucket")
    return web.Response(status=200, text="<ListBucketResult/>")


@pytest_asyncio.fixture
async def mock_s3() -> AsyncIterator[TestServer]:
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", verify_signature)
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def silent_server() -> AsyncIterator[str]:
    """Accepts connections and never answers."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        await reader.read()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}/cern-test-bucket/"
    server.close()
    await server.wait_closed()


@pytest_asyncio.fixture
async def watched_silent_server() -> AsyncIterator[Tuple[str, asyncio.Event]]:
    """Never answers, and reports when the client side of a connection closes."""
    closed = asyncio.Event()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        await reader.read()
        closed.set()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}/cern-test-bucket/", closed
    server.close()
    await server.wait_closed()


@pytest_asyncio.fixture
async def garbage_server() -> AsyncIterator[str]:
    """Answers every request with something that is not HTTP."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        await reader.readuntil(b"\r\n\r\n")
        writer.write(b"NOT-HTTP garbage\r\n\r\n")
        await writer.drain()
        await reader.read()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}/cern-test-bucket/"
    server.close()
    await server.wait_closed()


@pytest.fixture
def closed_port_url() -> str:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}/cern-test-bucket/"
