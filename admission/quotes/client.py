from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from admission.common import log_event
from admission.common.values import to_float, to_int

from .types import (
    DEFAULT_QUOTE_ENDPOINTS,
    DEFAULT_RAYDIUM_QUOTE_URL,
    LAMPORTS_PER_SOL,
    RAYDIUM_FALLBACK_ENDPOINT,
    SOL_MINT,
    QuoteClientError,
    QuoteErrorKind,
    QuoteResult,
)

CacheKey = tuple[str, str, int, int]

_FAILURE_PRIORITY = (
    QuoteErrorKind.NO_ROUTE,
    QuoteErrorKind.RATE_LIMITED,
    QuoteErrorKind.HTTP_ERROR,
    QuoteErrorKind.NETWORK_ERROR,
)
_NO_RETRY_KINDS = {QuoteErrorKind.NO_ROUTE, QuoteErrorKind.HTTP_ERROR}
MAX_ACCEPTABLE_PRICE_IMPACT_PCT = 50.0


def _is_no_routes_error_text(text: str) -> bool:
    normalized = (text or "").lower()
    return (
        "no_routes_found" in normalized
        or "could not find" in normalized
        or "no route" in normalized
    )


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
        details = payload.get("details")
        if details:
            return str(details)
    return str(payload)


def _sanitize_endpoint_for_log(endpoint: str) -> str:
    parsed = urlsplit(endpoint)
    if not parsed.scheme:
        return endpoint
    return urlunsplit((parsed.scheme, parsed.netloc, parsed.path or "/", "", ""))


def classify_quote_response(endpoint: str, status: int, body: str) -> QuoteResult:
    data: Any = None
    try:
        data = json.loads(body) if body else None
    except json.JSONDecodeError:
        data = None

    if status == 429:
        return QuoteResult.failure(QuoteErrorKind.RATE_LIMITED, f"Rate limited by {_sanitize_endpoint_for_log(endpoint)}")

    if status >= 400:
        detail = _error_message_from_payload(data.get("error")) if isinstance(data, dict) and data.get("error") else body
        if status in {400, 404} and _is_no_routes_error_text(detail):
            return QuoteResult.failure(QuoteErrorKind.NO_ROUTE, f"No route: {detail[:200]}")
        return QuoteResult.failure(QuoteErrorKind.HTTP_ERROR, f"HTTP {status}: {detail[:200]}")

    if not isinstance(data, dict):
        return QuoteResult.failure(QuoteErrorKind.HTTP_ERROR, "Quote response is not a JSON object")

    if data.get("error"):
        message = _error_message_from_payload(data.get("error"))
        if _is_no_routes_error_text(message):
            return QuoteResult.failure(QuoteErrorKind.NO_ROUTE, f"No route: {message[:200]}")
        return QuoteResult.failure(QuoteErrorKind.HTTP_ERROR, f"Quote error payload: {message[:200]}")

    if "outAmount" not in data:
        return QuoteResult.failure(QuoteErrorKind.HTTP_ERROR, "Quote response missing outAmount")

    if to_int(data.get("outAmount"), 0) <= 0:
        return QuoteResult.failure(QuoteErrorKind.NO_ROUTE, "Quote returned zero output")

    price_impact = abs(to_float(data.get("priceImpactPct"), 0.0))
    if price_impact > MAX_ACCEPTABLE_PRICE_IMPACT_PCT:
        return QuoteResult.failure(
            QuoteErrorKind.NO_ROUTE,
            f"Price impact {price_impact:.1f}% exceeds {MAX_ACCEPTABLE_PRICE_IMPACT_PCT:.0f}%",
        )

    return QuoteResult.success(data, endpoint)


class QuoteClient:
    """Swap quote client with a result cache, endpoint racing and a local rate-limit breaker.

    Each instance owns its cache and breaker state, so separate users never share
    throttling decisions.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        endpoints: tuple[str, ...] = DEFAULT_QUOTE_ENDPOINTS,
        raydium_url: str = DEFAULT_RAYDIUM_QUOTE_URL,
        api_key: str = "",
        timeout_seconds: float = 8.0,
        cache_ttl_seconds: float = 60.0,
        max_retries: int = 2,
        critical_extra_retries: int = 2,
        backoff_base_seconds: float = 0.6,
        stagger_seconds: float = 0.05,
        breaker_threshold: int = 2,
        breaker_reset_seconds: float = 15.0,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not endpoints:
            raise ValueError("QuoteClient requires at least one quote endpoint.")

        self._logger = logger
        self._endpoints = tuple(endpoints)
        self._raydium_url = raydium_url
        self._api_key = api_key.strip()
        self._timeout_seconds = max(0.1, timeout_seconds)
        self._cache_ttl_seconds = max(0.0, cache_ttl_seconds)
        self._max_retries = max(0, max_retries)
        self._critical_extra_retries = max(0, critical_extra_retries)
        self._backoff_base_seconds = max(0.0, backoff_base_seconds)
        self._stagger_seconds = max(0.0, stagger_seconds)
        self._breaker_threshold = max(1, breaker_threshold)
        self._breaker_reset_seconds = max(0.0, breaker_reset_seconds)
        self._clock = clock

        self._session = session
        self._owns_session = session is None
        self._cache: dict[CacheKey, tuple[float, QuoteResult]] = {}
        self._consecutive_rate_limited = 0
        self._breaker_open_until = 0.0

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def http_session(self) -> aiohttp.ClientSession:
        await self.connect()
        if self._session is None:
            raise QuoteClientError("Quote HTTP session is not initialized.")
        return self._session

    def clear_cache(self) -> None:
        self._cache.clear()

    def reset(self) -> None:
        self.clear_cache()
        self._consecutive_rate_limited = 0
        self._breaker_open_until = 0.0

    @property
    def breaker_open(self) -> bool:
        return self._breaker_is_open(self._clock())

    def build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    def _breaker_is_open(self, now: float) -> bool:
        if self._breaker_open_until <= 0:
            return False
        if now >= self._breaker_open_until:
            self._breaker_open_until = 0.0
            self._consecutive_rate_limited = 0
            log_event(
                self._logger,
                level="info",
                event="quote_breaker_reset",
                message="Quote circuit breaker closed after reset window",
            )
            return False
        return True

    def _note_rate_limited_cycle(self, now: float) -> None:
        self._consecutive_rate_limited += 1
        if self._consecutive_rate_limited >= self._breaker_threshold and self._breaker_open_until <= 0:
            self._breaker_open_until = now + self._breaker_reset_seconds
            log_event(
                self._logger,
                level="warning",
                event="quote_breaker_opened",
                message="Quote circuit breaker opened after repeated rate limiting",
                consecutive_rate_limited=self._consecutive_rate_limited,
                reset_seconds=self._breaker_reset_seconds,
            )

    def _prune_cache(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._cache.items() if expires_at <= now]
        for key in expired:
            self._cache.pop(key, None)

    async def fetch_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        *,
        timeout: float | None = None,
        skip_cache: bool = False,
        critical: bool = False,
    ) -> QuoteResult:
        cache_key: CacheKey = (input_mint, output_mint, int(amount), int(slippage_bps))
        now = self._clock()

        if not skip_cache:
            self._prune_cache(now)
            cached = self._cache.get(cache_key)
            if cached and cached[0] > now:
                log_event(
                    self._logger,
                    level="debug",
                    event="quote_cache_hit",
                    message="Serving quote from cache",
                    output_mint=output_mint,
                    ok=cached[1].ok,
                )
                return cached[1]

        if not critical and self._breaker_is_open(now):
            return QuoteResult.failure(
                QuoteErrorKind.RATE_LIMITED,
                "Quote circuit breaker open - skipping non-critical request",
            )

        await self.connect()

        timeout_seconds = self._timeout_seconds if timeout is None else max(0.1, timeout)
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
        }
        max_attempts = self._max_retries + 1 + (self._critical_extra_retries if critical else 0)

        result = QuoteResult.failure(QuoteErrorKind.NETWORK_ERROR, "No quote attempt was made")
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self._backoff_base_seconds * (2 ** (attempt - 2)))

            result = await self._race_endpoints(params, timeout_seconds)
            if result.ok or result.kind in _NO_RETRY_KINDS:
                break

            if attempt < max_attempts:
                log_event(
                    self._logger,
                    level="warning",
                    event="quote_retry",
                    message="Quote attempt failed; retrying",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    kind=result.kind.value if result.kind else None,
                    error=result.message,
                    critical=critical,
                )

        if result.rate_limited:
            log_event(
                self._logger,
                level="warning",
                event="quote_rate_limited",
                message="All quote endpoints rate limited; trying Raydium fallback",
                output_mint=output_mint,
                attempts=max_attempts,
            )
            fallback = await self._fetch_raydium(params, timeout_seconds)
            if fallback.ok:
                result = fallback

        if result.ok:
            self._consecutive_rate_limited = 0
        elif result.rate_limited:
            self._note_rate_limited_cycle(self._clock())

        if result.ok or result.no_route:
            self._cache[cache_key] = (self._clock() + self._cache_ttl_seconds, result)

        return result

    async def has_route(self, token_mint: str, *, timeout: float = 5.0) -> bool:
        result = await self.fetch_quote(
            SOL_MINT,
            token_mint,
            LAMPORTS_PER_SOL // 1000,
            1500,
            timeout=timeout,
        )
        return result.ok

    async def _race_endpoints(self, params: dict[str, str], timeout_seconds: float) -> QuoteResult:
        tasks = [
            asyncio.create_task(
                self._query_endpoint(
                    endpoint,
                    params,
                    timeout_seconds,
                    delay=index * self._stagger_seconds,
                )
            )
            for index, endpoint in enumerate(self._endpoints)
        ]

        failures: list[QuoteResult] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                result = await next_done
                if result.ok:
                    return result
                failures.append(result)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for kind in _FAILURE_PRIORITY:
            for failure in failures:
                if failure.kind is kind:
                    return failure
        return QuoteResult.failure(QuoteErrorKind.NETWORK_ERROR, "No quote endpoints responded")

    async def _query_endpoint(
        self,
        endpoint: str,
        params: dict[str, str],
        timeout_seconds: float,
        *,
        delay: float = 0.0,
    ) -> QuoteResult:
        if delay > 0:
            await asyncio.sleep(delay)

        session = await self.http_session()
        try:
            async with session.get(
                endpoint,
                params=params,
                headers=self.build_headers(),
                timeout=aiohttp.ClientTimeout(total=timeout_seconds),
            ) as response:
                status = response.status
                body = (await response.read()).decode("utf-8", errors="replace")
        except asyncio.TimeoutError:
            return QuoteResult.failure(
                QuoteErrorKind.NETWORK_ERROR,
                f"Quote request timed out after {timeout_seconds:.1f}s",
            )
        except aiohttp.ClientError as error:
            return QuoteResult.failure(QuoteErrorKind.NETWORK_ERROR, f"Quote request failed: {error}")

        result = classify_quote_response(endpoint, status, body)
        if not result.ok:
            log_event(
                self._logger,
                level="debug",
                event="quote_endpoint_failed",
                message="Quote endpoint returned a failure",
                endpoint=_sanitize_endpoint_for_log(endpoint),
                status=status,
                kind=result.kind.value if result.kind else None,
            )
        return result

    async def _fetch_raydium(self, params: dict[str, str], timeout_seconds: float) -> QuoteResult:
        session = await self.http_session()
        raydium_params = dict(params)
        raydium_params["txVersion"] = "V0"
        try:
            async with session.get(
                self._raydium_url,
                params=raydium_params,
                timeout=aiohttp.ClientTimeout(total=timeout_seconds),
            ) as response:
                status = response.status
                body = (await response.read()).decode("utf-8", errors="replace")
        except asyncio.TimeoutError:
            return QuoteResult.failure(QuoteErrorKind.NETWORK_ERROR, "Raydium quote timed out")
        except aiohttp.ClientError as error:
            return QuoteResult.failure(QuoteErrorKind.NETWORK_ERROR, f"Raydium quote failed: {error}")

        if status == 429:
            return QuoteResult.failure(QuoteErrorKind.RATE_LIMITED, "Raydium rate limited")

        try:
            data = json.loads(body) if body else None
        except json.JSONDecodeError:
            data = None

        if status >= 400 or not isinstance(data, dict):
            return QuoteResult.failure(QuoteErrorKind.HTTP_ERROR, f"Raydium HTTP {status}")

        payload = data.get("data")
        if not data.get("success") or not isinstance(payload, dict):
            return QuoteResult.failure(
                QuoteErrorKind.NO_ROUTE,
                f"Raydium: {data.get('msg') or 'no route'}",
            )

        out_amount = to_int(payload.get("outputAmount"), 0)
        if out_amount <= 0:
            return QuoteResult.failure(QuoteErrorKind.NO_ROUTE, "Raydium returned zero output")

        log_event(
            self._logger,
            level="info",
            event="quote_raydium_fallback_used",
            message="Using Raydium fallback quote",
            output_mint=params.get("outputMint"),
        )
        quote = {
            "outAmount": str(out_amount),
            "priceImpactPct": to_float(payload.get("priceImpact"), 0.0),
            "routePlan": [{"label": "Raydium"}],
            "_source": RAYDIUM_FALLBACK_ENDPOINT,
        }
        return QuoteResult.success(quote, RAYDIUM_FALLBACK_ENDPOINT)
