from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp
from solders.pubkey import Pubkey

from admission.common import log_event, short_address

from .client import QuoteClient
from .types import (
    DEFAULT_RAYDIUM_QUOTE_URL,
    DEFAULT_TOKEN_INDEX_URL,
    LAMPORTS_PER_SOL,
    SOL_MINT,
    RouteValidationResult,
)

MIN_MINT_LENGTH = 26
ROUTE_PROBE_LAMPORTS = LAMPORTS_PER_SOL // 1000
ROUTE_PROBE_SLIPPAGE_BPS = 100

INDEXING_ERROR_PATTERNS = (
    "token not found",
    "not indexed",
    "unknown token",
    "token does not exist",
    "unrecognized token",
    "awaiting indexing",
    "not supported",
    "invalid mint",
)


def is_indexing_error(message: str | None) -> bool:
    normalized = (message or "").lower()
    return any(pattern in normalized for pattern in INDEXING_ERROR_PATTERNS)


def is_valid_mint(token_mint: str) -> bool:
    if not token_mint or len(token_mint) < MIN_MINT_LENGTH:
        return False
    try:
        Pubkey.from_string(token_mint)
    except ValueError:
        return False
    return True


@dataclass(slots=True, frozen=True)
class _VenueCheck:
    has_route: bool
    error: str | None = None
    indexing_error: bool = False
    rate_limited: bool = False


class RouteValidator:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        quote_client: QuoteClient,
        raydium_url: str = DEFAULT_RAYDIUM_QUOTE_URL,
        token_index_url: str = DEFAULT_TOKEN_INDEX_URL,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._logger = logger
        self._quote_client = quote_client
        self._raydium_url = raydium_url
        self._token_index_url = token_index_url.rstrip("/")
        self._timeout_seconds = max(0.1, timeout_seconds)

    async def validate_swap_route(self, token_mint: str) -> RouteValidationResult:
        if not is_valid_mint(token_mint):
            return RouteValidationResult(has_route=False, error="Invalid token mint address")

        jupiter, raydium, indexed = await asyncio.gather(
            self._check_jupiter(token_mint),
            self._check_raydium(token_mint),
            self._check_token_index(token_mint),
        )

        if jupiter.has_route:
            return RouteValidationResult(has_route=True, source="jupiter")
        if raydium.has_route:
            return RouteValidationResult(has_route=True, source="raydium")

        if not indexed or jupiter.indexing_error or raydium.indexing_error:
            log_event(
                self._logger,
                level="info",
                event="route_awaiting_indexing",
                message="Token has no route yet and appears to be awaiting indexing",
                token=short_address(token_mint),
                indexed=indexed,
            )
            return RouteValidationResult(
                has_route=False,
                awaiting_indexing=True,
                error="Token awaiting indexing - retry later",
            )

        errors = [
            f"Jupiter: {jupiter.error or 'no route'}",
            f"Raydium: {raydium.error or 'no route'}",
        ]
        return RouteValidationResult(has_route=False, error="; ".join(errors))

    async def has_valid_route(self, token_mint: str) -> bool:
        return (await self.validate_swap_route(token_mint)).has_route

    async def is_token_awaiting_indexing(self, token_mint: str) -> bool:
        return (await self.validate_swap_route(token_mint)).awaiting_indexing

    async def _check_jupiter(self, token_mint: str) -> _VenueCheck:
        result = await self._quote_client.fetch_quote(
            SOL_MINT,
            token_mint,
            ROUTE_PROBE_LAMPORTS,
            ROUTE_PROBE_SLIPPAGE_BPS,
            timeout=self._timeout_seconds,
        )
        if result.ok:
            return _VenueCheck(has_route=True)
        return _VenueCheck(
            has_route=False,
            error=result.message,
            indexing_error=is_indexing_error(result.message),
            rate_limited=result.rate_limited,
        )

    async def _check_raydium(self, token_mint: str) -> _VenueCheck:
        params = {
            "inputMint": SOL_MINT,
            "outputMint": token_mint,
            "amount": str(ROUTE_PROBE_LAMPORTS),
            "slippageBps": str(ROUTE_PROBE_SLIPPAGE_BPS),
            "txVersion": "V0",
        }
        session = await self._quote_client.http_session()
        try:
            async with session.get(
                self._raydium_url,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
            ) as response:
                status = response.status
                body = (await response.read()).decode("utf-8", errors="replace")
        except asyncio.TimeoutError:
            return _VenueCheck(has_route=False, error="Raydium route check timed out")
        except aiohttp.ClientError as error:
            return _VenueCheck(has_route=False, error=f"Raydium route check failed: {error}")

        if status == 429:
            return _VenueCheck(has_route=False, error="Raydium rate limited", rate_limited=True)
        if status == 404:
            return _VenueCheck(has_route=False, error="Raydium: token awaiting indexing", indexing_error=True)

        data: Any = None
        try:
            data = json.loads(body) if body else None
        except json.JSONDecodeError:
            data = None

        if status >= 400 or not isinstance(data, dict):
            return _VenueCheck(has_route=False, error=f"Raydium HTTP {status}")

        if data.get("success") and data.get("data"):
            return _VenueCheck(has_route=True)

        message = str(data.get("msg") or "no route")
        return _VenueCheck(has_route=False, error=message, indexing_error=is_indexing_error(message))

    async def _check_token_index(self, token_mint: str) -> bool:
        session = await self._quote_client.http_session()
        try:
            async with session.get(
                f"{self._token_index_url}/{token_mint}",
                headers=self._quote_client.build_headers(),
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
            ) as response:
                if response.status >= 400:
                    return False
                data = await response.json(content_type=None)
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as error:
            log_event(
                self._logger,
                level="debug",
                event="token_index_check_failed",
                message="Token index lookup failed; treating token as not indexed",
                token=short_address(token_mint),
                error=str(error),
            )
            return False

        return isinstance(data, dict) and bool(data.get("address"))
