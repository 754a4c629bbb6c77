import asyncio
import time
from datetime import datetime, timezone
from typing import Tuple

import msgspec
import pytest
from aiohttp.test_utils import TestServer

from sigv4_probe import (
    Credentials,
    ExchangeState,
    ProtocolError,
    SingleShotExchanger,
    TransportError,
    exchange,
    sign_request,
)
from sigv4_probe.client import _ORDER


def sign(url: str, credentials: Credentials, method: str = "GET", body: bytes = b""):
    return sign_request(
        method,
        url,
        credentials,
        region="us-east-1",
        service="s3",
        body=body,
    )


@pytest.mark.asyncio
async def test_signed_get_accepted(mock_s3: TestServer, credentials: Credentials):
    url = str(mock_s3.make_url("/cern-test-bucket/"))
    exchanger = SingleShotExchanger(timeout=5)

    outcome = await exchanger.send(sign(url, credentials))

    assert outcome.status == 200
    assert outcome.ok
    assert outcome.body == b"<ListBucketResult/>"
    assert exchanger.state is ExchangeState.DONE


@pytest.mark.asyncio
async def test_state_history_moves_forward(mock_s3: TestServer, credentials: Credentials):
    url = str(mock_s3.make_url("/cern-test-bucket/"))
    exchanger = SingleShotExchanger(timeout=5)

    await exchanger.send(sign(url, credentials))

    history = exchanger.history
    assert history[0] is ExchangeState.IDLE
    assert history[-1] is ExchangeState.DONE
    assert ExchangeState.CONNECTING in history
    assert ExchangeState.RECEIVING_BODY in history
    assert [_ORDER.index(s) for s in history] == sorted(_ORDER.index(s) for s in history)


@pytest.mark.asyncio
async def test_signed_put_accepted(mock_s3: TestServer, credentials: Credentials):
    url = str(mock_s3.make_url("/cern-test-bucket/my object.txt"))
    outcome = await exchange(sign(url, credentials, "PUT", b"Welcome to Amazon S3."))
    assert outcome.status == 200


@pytest.mark.asyncio
async def test_query_parameters_survive_the_wire(
    mock_s3: TestServer, credentials: Credentials
):
    url = str(mock_s3.make_url("/cern-test-bucket/?prefix=a b&max-keys=2&list-type=2"))
    outcome = await exchange(sign(url, credentials))
    assert outcome.status == 200


@pytest.mark.asyncio
async def test_tampered_body_rejected(mock_s3: TestServer, credentials: Credentials):
    url = str(mock_s3.make_url("/cern-test-bucket/object"))
    signed = sign(url, credentials, "PUT", b"original body")
    tampered = msgspec.structs.replace(signed, body=b"original bodY")

    outcome = await exchange(tampered)

    assert outcome.status == 403
    assert outcome.is_error
    assert outcome.text() == "SignatureDoesNotMatch"


@pytest.mark.asyncio
async def test_wrong_secret_rejected(mock_s3: TestServer):
    url = str(mock_s3.make_url("/cern-test-bucket/"))
    bad = Credentials(access_key="minioadmin", secret_key="not-the-secret")
    outcome = await exchange(sign(url, bad))
    assert outcome.status == 403


@pytest.mark.asyncio
async def test_non_2xx_is_an_outcome(mock_s3: TestServer, credentials: Credentials):
    url = str(mock_s3.make_url("/missing/"))
    outcome = await exchange(sign(url, credentials))
    assert outcome.status == 404
    assert not outcome.ok


@pytest.mark.asyncio
async def test_redirect_not_followed(mock_s3: TestServer, credentials: Credentials):
    url = str(mock_s3.make_url("/moved/"))
    outcome = await exchange(sign(url, credentials))
    assert outcome.status == 307
    assert outcome.is_redirect
    assert outcome.location == "/cern-test-bucket/"


@pytest.mark.asyncio
async def test_timeout_fails_with_transport_error(
    silent_server: str, credentials: Credentials
):
    exchanger = SingleShotExchanger(timeout=1)
    started = time.monotonic()

    with pytest.raises(TransportError, match="Timed out"):
        await exchanger.send(sign(silent_server, credentials))

    assert time.monotonic() - started < 3
    assert exchanger.state is ExchangeState.FAILED


@pytest.mark.asyncio
async def test_connection_refused(closed_port_url: str, credentials: Credentials):
    exchanger = SingleShotExchanger(timeout=2)
    with pytest.raises(TransportError):
        await exchanger.send(sign(closed_port_url, credentials))
    assert exchanger.state is ExchangeState.FAILED


@pytest.mark.asyncio
async def test_malformed_response(garbage_server: str, credentials: Credentials):
    exchanger = SingleShotExchanger(timeout=2)
    with pytest.raises(ProtocolError):
        await exchanger.send(sign(garbage_server, credentials))
    assert exchanger.state is ExchangeState.FAILED


@pytest.mark.asyncio
async def test_cancellation_fails_exchange(
    watched_silent_server: Tuple[str, asyncio.Event], credentials: Credentials
):
    url, connection_closed = watched_silent_server
    exchanger = SingleShotExchanger(timeout=30)
    task = asyncio.create_task(exchanger.send(sign(url, credentials)))
    await asyncio.sleep(0.2)
    assert not connection_closed.is_set()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert exchanger.state is ExchangeState.FAILED
    # The server sees EOF once the client socket is torn down.
    await asyncio.wait_for(connection_closed.wait(), timeout=2)


@pytest.mark.asyncio
async def test_exchanger_is_single_use(mock_s3: TestServer, credentials: Credentials):
    url = str(mock_s3.make_url("/cern-test-bucket/"))
    exchanger = SingleShotExchanger(timeout=5)
    await exchanger.send(sign(url, credentials))

    with pytest.raises(RuntimeError, match="already used"):
        await exchanger.send(sign(url, credentials))


@pytest.mark.asyncio
async def test_stale_signature_date(mock_s3: TestServer, credentials: Credentials):
    # The mock server does not check clock skew, only the signature itself.
    url = str(mock_s3.make_url("/cern-test-bucket/"))
    signed = sign_request(
        "GET",
        url,
        credentials,
        region="us-east-1",
        service="s3",
        now=datetime(2013, 5, 24, tzinfo=timezone.utc),
    )
    outcome = await exchange(signed)
    assert outcome.status == 200


def test_timeout_must_be_positive():
    with pytest.raises(ValueError):
        SingleShotExchanger(timeout=0)
