"""
Exchange rate cache (VES per 1 USD)

The cache is an owned object created in the app lifespan and injected
into the reservation service. It holds a single snapshot and refreshes it
once the snapshot is older than the TTL:

- concurrent misses are collapsed into one provider call (single flight)
- provider failure raises ExchangeRateUnavailableError
- if a fallback rate is configured the failure is logged and the fallback
  is served and cached instead; this never happens silently

Prices may therefore use a rate up to one TTL old.
"""
import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Protocol

import httpx
import structlog

from .exceptions import ExchangeRateUnavailableError
from .metrics import exchange_rate_refresh_total, exchange_rate_gauge
from .utils import to_decimal

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600


class RateProvider(Protocol):
    """Anything that can fetch the current rate"""

    name: str

    async def fetch_rate(self) -> Decimal:
        ...


@dataclass(frozen=True)
class RateSnapshot:
    """Cached rate and when (clock time) it was fetched"""
    rate: Decimal
    fetched_at: float
    source: str

# ============================================================
# Providers
# ============================================================

class FixedRateProvider:
    """Always returns the configured rate (FX_FAKE)"""

    name = "fixed"

    def __init__(self, rate: Decimal = Decimal("150.5")):
        if to_decimal(rate) <= 0:
            raise ValueError(f"Fixed rate must be positive, got {rate}")
        self.rate = to_decimal(rate)

    async def fetch_rate(self) -> Decimal:
        return self.rate


class HttpRateProvider:
    """
    Fetches the rate from public JSON endpoints, trying each URL in order.

    Accepted payloads:
        {"result": 36.5}                 (convert endpoint)
        {"rates": {"VES": 36.5}}         (latest endpoint)
    """

    name = "http"

    def __init__(
        self,
        urls: List[str],
        timeout: float = 5.0,
        currency: str = "VES",
        client: Optional[httpx.AsyncClient] = None
    ):
        if not urls:
            raise ValueError("HttpRateProvider needs at least one URL")
        self.urls = urls
        self.timeout = timeout
        self.currency = currency
        self._client = client

    def _extract_rate(self, payload) -> Optional[Decimal]:
        if not isinstance(payload, dict):
            return None
        raw = payload.get("result")
        if raw is None:
            raw = (payload.get("rates") or {}).get(self.currency)
        if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
            return None
        try:
            rate = to_decimal(raw)
        except InvalidOperation:
            return None
        return rate if rate > 0 else None

    async def _fetch_one(self, client: httpx.AsyncClient, url: str) -> Decimal:
        response = await client.get(url, timeout=self.timeout)
        response.raise_for_status()
        rate = self._extract_rate(response.json())
        if rate is None:
            raise ValueError(f"Invalid rate payload from {url}")
        return rate

    async def fetch_rate(self) -> Decimal:
        errors = []
        if self._client is not None:
            client_cm = None
            client = self._client
        else:
            client_cm = httpx.AsyncClient()
            client = await client_cm.__aenter__()

        try:
            for url in self.urls:
                try:
                    return await self._fetch_one(client, url)
                except (httpx.HTTPError, ValueError) as e:
                    logger.warning("exchange_rate_endpoint_failed", url=url, error=str(e))
                    errors.append(f"{url}: {e}")
        finally:
            if client_cm is not None:
                await client_cm.__aexit__(None, None, None)

        raise ExchangeRateUnavailableError(
            f"All exchange rate endpoints failed ({len(errors)} tried)"
        )

# ============================================================
# Cache
# ============================================================

class ExchangeRateCache:
    """Single-entry, single-flight, TTL-bounded rate cache"""

    def __init__(
        self,
        provider: RateProvider,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        fallback_rate: Optional[Decimal] = None
    ):
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.fallback_rate = to_decimal(fallback_rate) if fallback_rate is not None else None
        self._snapshot: Optional[RateSnapshot] = None
        self._refresh_lock = asyncio.Lock()

    def _fresh(self, now: float) -> Optional[RateSnapshot]:
        snapshot = self._snapshot
        if snapshot is not None and now - snapshot.fetched_at < self.ttl_seconds:
            return snapshot
        return None

    async def get_rate(self) -> Decimal:
        """Return the cached rate, refreshing it when stale"""
        snapshot = self._fresh(self.clock())
        if snapshot is not None:
            return snapshot.rate

        async with self._refresh_lock:
            # another caller may have refreshed while we waited
            snapshot = self._fresh(self.clock())
            if snapshot is not None:
                return snapshot.rate
            snapshot = await self._refresh()
            return snapshot.rate

    async def _refresh(self) -> RateSnapshot:
        try:
            rate = to_decimal(await self.provider.fetch_rate())
            if rate <= 0:
                raise ValueError(f"Provider returned non-positive rate {rate}")
            source = self.provider.name
        except Exception as e:
            if self.fallback_rate is None:
                exchange_rate_refresh_total.labels(source="error").inc()
                logger.error("exchange_rate_unavailable", provider=self.provider.name, error=str(e))
                if isinstance(e, ExchangeRateUnavailableError):
                    raise
                raise ExchangeRateUnavailableError(str(e)) from e
            logger.warning(
                "exchange_rate_fallback",
                provider=self.provider.name,
                fallback_rate=str(self.fallback_rate),
                error=str(e)
            )
            rate = self.fallback_rate
            source = "fallback"

        self._snapshot = RateSnapshot(rate=rate, fetched_at=self.clock(), source=source)
        exchange_rate_refresh_total.labels(source=source).inc()
        exchange_rate_gauge.set(float(rate))
        logger.info("exchange_rate_refreshed", rate=str(rate), source=source)
        return self._snapshot

    def snapshot(self) -> Optional[RateSnapshot]:
        """Current snapshot (possibly stale) without triggering a refresh"""
        return self._snapshot

    def invalidate(self) -> None:
        """Drop the snapshot; the next get_rate() refreshes"""
        self._snapshot = None


def build_rate_provider(settings) -> RateProvider:
    """Provider selected by FX_PROVIDER"""
    if settings.fx_provider == "http":
        return HttpRateProvider(
            urls=settings.fx_provider_urls,
            timeout=settings.fx_timeout_seconds,
            currency=settings.primary_currency
        )
    return FixedRateProvider(settings.fx_fixed_rate)


def build_exchange_rate_cache(settings) -> ExchangeRateCache:
    return ExchangeRateCache(
        provider=build_rate_provider(settings),
        ttl_seconds=settings.fx_cache_ttl_seconds,
        fallback_rate=settings.fx_fallback_rate
    )
