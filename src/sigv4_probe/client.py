import asyncio
import enum
import logging
from types import SimpleNamespace
from typing import Any, List

import aiohttp
from aiohttp.http_exceptions import HttpProcessingError

from .exceptions import ProtocolError, TransportError
from .models import ExchangeOutcome, SignedRequest

logger = logging.getLogger("sigv4_probe")
logger.addHandler(logging.NullHandler())

DEFAULT_TIMEOUT: float = 5.0


class ExchangeState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SENDING = "sending"
    AWAITING_RESPONSE = "awaiting-response"
    RECEIVING_BODY = "receiving-body"
    DONE = "done"
    FAILED = "failed"


_ORDER = [
    ExchangeState.IDLE,
    ExchangeState.CONNECTING,
    ExchangeState.SENDING,
    ExchangeState.AWAITING_RESPONSE,
    ExchangeState.RECEIVING_BODY,
    ExchangeState.DONE,
]
TERMINAL_STATES = frozenset({ExchangeState.DONE, ExchangeState.FAILED})


class SingleShotExchanger:
    """
    Sends exactly one signed request and collects the response.

    No retries and no redirect following: a 3xx comes back as an outcome, since
    the signature only covers the exact request that was signed. Each exchanger
    owns its own session and connection and can be used once.

    :param timeout: Deadline in seconds for the whole exchange, from connecting
        until the last body byte.
    :type timeout: float
    :param user_agent: Value of the unsigned ``User-Agent`` header.
    :type user_agent: str
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = "sigv4-probe/0.1.0",
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self.timeout = timeout
        self.user_agent = user_agent
        self.state = ExchangeState.IDLE
        self.history: List[ExchangeState] = [ExchangeState.IDLE]

    def _advance(self, state: ExchangeState) -> None:
        # Trace hooks may report a phase the exchange already moved past.
        if self.state in TERMINAL_STATES:
            return
        if state is not ExchangeState.FAILED and _ORDER.index(state) <= _ORDER.index(
            self.state
        ):
            return

        logger.debug(f"Exchange {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _trace_config(self) -> aiohttp.TraceConfig:
        async def on_connection_create_start(
            session: aiohttp.ClientSession, ctx: SimpleNamespace, params: Any
        ) -> None:
            self._advance(ExchangeState.CONNECTING)

        async def on_connection_create_end(
            session: aiohttp.ClientSession, ctx: SimpleNamespace, params: Any
        ) -> None:
            self._advance(ExchangeState.SENDING)

        async def on_request_headers_sent(
            session: aiohttp.ClientSession, ctx: SimpleNamespace, params: Any
        ) -> None:
            self._advance(ExchangeState.AWAITING_RESPONSE)

        trace_config = aiohttp.TraceConfig()
        trace_config.on_connection_create_start.append(on_connection_create_start)
        trace_config.on_connection_create_end.append(on_connection_create_end)
        trace_config.on_request_headers_sent.append(on_request_headers_sent)
        return trace_config

    async def send(self, request: SignedRequest) -> ExchangeOutcome:
        """
        Perform the exchange.

        :param request: A request produced by :func:`sigv4_probe.signer.sign_request`.
        :type request: SignedRequest
        :return: Status, headers and body of the response.
        :rtype: ExchangeOutcome
        :raises TransportError: Connection refused, DNS failure, disconnect or timeout.
        :raises ProtocolError: The response could not be parsed as HTTP.
        :raises RuntimeError: The exchanger was already used.
        """
        if self.state is not ExchangeState.IDLE:
            raise RuntimeError(f"Exchanger already used (state: {self.state.value})")

        self._advance(ExchangeState.CONNECTING)
        headers = list(request.headers)
        headers.append(("User-Agent", self.user_agent))

        try:
            async with aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(force_close=True, limit=1),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                trace_configs=[self._trace_config()],
            ) as session:
                async with session.request(
                    request.method,
                    request.url,
                    headers=headers,
                    data=request.body or None,
                    allow_redirects=False,
                ) as response:
                    self._advance(ExchangeState.RECEIVING_BODY)
                    body = await response.read()
                    outcome = ExchangeOutcome(
                        status=response.status,
                        reason=response.reason or "",
                        headers=tuple(
                            (str(k), v) for k, v in response.headers.items()
                        ),
                        body=body,
                    )

        except asyncio.TimeoutError as e:
            self._advance(ExchangeState.FAILED)
            logger.debug(f"Exchange timed out after {self.timeout}s")
            raise TransportError(f"Timed out after {self.timeout}s") from e

        except (
            aiohttp.ClientResponseError,
            aiohttp.ClientPayloadError,
            HttpProcessingError,
        ) as e:
            self._advance(ExchangeState.FAILED)
            raise ProtocolError(f"Malformed response: {e}") from e

        except (aiohttp.ClientConnectionError, OSError) as e:
            self._advance(ExchangeState.FAILED)
            raise TransportError(f"{type(e).__name__}: {e}") from e

        except BaseException:
            # Cancellation included: the session is already closed here.
            self._advance(ExchangeState.FAILED)
            raise

        self._advance(ExchangeState.DONE)
        logger.debug(f"{request.method} {request.url} -> {outcome.status}")
        return outcome


async def exchange(
    request: SignedRequest, timeout: float = DEFAULT_TIMEOUT
) -> ExchangeOutcome:
    return await SingleShotExchanger(timeout=timeout).send(request)


def exchange_sync(
    request: SignedRequest, timeout: float = DEFAULT_TIMEOUT
) -> ExchangeOutcome:
    """Blocking variant of :func:`exchange` for callers without an event loop."""
    return asyncio.run(exchange(request, timeout=timeout))

