"""Transports that perform one raw provider call.

Transports know nothing about rate limits or retries: they execute a single
request and translate every failure into the FetchError taxonomy. The
RateLimitedFetcher decides what to do with each error class.

Two concrete transports:
- HttpTransport: JSON-over-HTTP providers via a shared aiohttp session
- ExchangeTransport: exchange market data via ccxt async (ticker,
  funding rate, open interest)
"""

import asyncio
import json
from abc import ABC, abstractmethod

import aiohttp
import ccxt.async_support as ccxt_async

from marketwatch.clock import Clock
from marketwatch.exceptions import (
    FetchTimeoutError,
    ProviderHTTPError,
    RateLimitedError,
    TransientFetchError,
)
from marketwatch.logging import get_logger
from marketwatch.models import Provider, ProviderKind, ProviderRequest, RawResponse

logger = get_logger(__name__)

_USER_AGENT = "marketwatch/0.1 (+collector)"


def declares_rate_limit(provider: Provider, payload: object) -> bool:
    """Return True if a 200 response body is the provider saying "slow down".

    Some providers (Alpha Vantage, Etherscan) answer over-budget calls with
    HTTP 200 and an informational message instead of a 429.
    """
    if not provider.rate_limit_markers:
        return False
    text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    lowered = text.lower()
    return any(marker.lower() in lowered for marker in provider.rate_limit_markers)


class Transport(ABC):
    """Abstract single-call transport."""

    @abstractmethod
    async def send(self, provider: Provider, request: ProviderRequest) -> RawResponse:
        """Execute one call and return the decoded response."""
        ...

    async def close(self) -> None:
        """Release network resources."""


class HttpTransport(Transport):
    """aiohttp-based transport for JSON HTTP providers.

    The session is created lazily and shared by every provider; pass one in
    to reuse an application-wide session (it is then not closed here).
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._clock = clock or Clock()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": _USER_AGENT, "Accept": "application/json"}
            )
            self._owns_session = True
        return self._session

    async def send(self, provider: Provider, request: ProviderRequest) -> RawResponse:
        session = await self._get_session()
        try:
            async with session.request(
                request.method,
                request.url,
                params=request.params or None,
                headers=request.headers or None,
                json=request.json_body,
            ) as response:
                status = response.status
                if status == 429:
                    raise RateLimitedError(provider.id, "HTTP 429")
                if status >= 500:
                    raise TransientFetchError(provider.id, f"HTTP {status}")
                if status >= 400:
                    body = await response.text()
                    raise ProviderHTTPError(provider.id, status, body[:200])
                payload = await response.json(content_type=None)
        except (RateLimitedError, TransientFetchError, ProviderHTTPError):
            raise
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(provider.id, "request timed out") from e
        except aiohttp.ClientError as e:
            raise TransientFetchError(provider.id, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            # Body was not JSON; treat like a broken response from a flaky edge
            raise TransientFetchError(provider.id, f"undecodable body: {e}") from e

        if declares_rate_limit(provider, payload):
            raise RateLimitedError(provider.id, "provider-declared rate limit")

        return RawResponse(
            provider_id=provider.id,
            status=status,
            payload=payload,
            received_at=self._clock.now(),
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("http_transport_closed")
        self._session = None


class ExchangeTransport(Transport):
    """ccxt async transport for exchange market data.

    ``ProviderRequest.exchange_call`` names the unified ccxt method
    (e.g. "fetch_ticker") and ``exchange_args`` its positional arguments.
    ccxt's own throttler is left enabled; the fetcher's window still applies.
    """

    _ALLOWED_CALLS = frozenset(
        {"fetch_ticker", "fetch_tickers", "fetch_funding_rate", "fetch_open_interest"}
    )

    def __init__(
        self,
        exchange_id: str = "binance",
        exchange: ccxt_async.Exchange | None = None,
        clock: Clock | None = None,
    ) -> None:
        if exchange is None:
            exchange_cls = getattr(ccxt_async, exchange_id)
            exchange = exchange_cls({"enableRateLimit": True})
        self._exchange = exchange
        self._clock = clock or Clock()

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def send(self, provider: Provider, request: ProviderRequest) -> RawResponse:
        call = request.exchange_call
        if call not in self._ALLOWED_CALLS:
            raise ProviderHTTPError(provider.id, 400, f"unsupported exchange call {call!r}")

        method = getattr(self._exchange, call)
        try:
            payload = await method(*request.exchange_args)
        except ccxt_async.RateLimitExceeded as e:
            raise RateLimitedError(provider.id, str(e)) from e
        except ccxt_async.RequestTimeout as e:
            raise FetchTimeoutError(provider.id, str(e)) from e
        except ccxt_async.NetworkError as e:
            raise TransientFetchError(provider.id, str(e)) from e
        except ccxt_async.ExchangeError as e:
            raise ProviderHTTPError(provider.id, 400, str(e)) from e

        return RawResponse(
            provider_id=provider.id,
            status=200,
            payload=payload,
            received_at=self._clock.now(),
        )

    async def close(self) -> None:
        """Close the ccxt exchange session; reached from TransportRouter.close on shutdown."""
        await self._exchange.close()
        logger.info("exchange_transport_closed")


class TransportRouter(Transport):
    """Dispatches each provider to the transport for its kind."""

    def __init__(self, transports: dict[ProviderKind, Transport]) -> None:
        self._transports = transports

    async def send(self, provider: Provider, request: ProviderRequest) -> RawResponse:
        transport = self._transports.get(provider.kind)
        if transport is None:
            raise ProviderHTTPError(provider.id, 400, f"no transport for {provider.kind.value}")
        return await transport.send(provider, request)

    async def close(self) -> None:
        for transport in self._transports.values():
            try:
                await transport.close()
            except Exception:
                logger.warning("transport_close_failed", exc_info=True)
