"""
Market Data Connection Manager
------------------------------

This file contains the `MarketDataConnector` class, which has the
Single Responsibility of managing the HTTP client lifecycle for the
remote market-data store (a PostgREST-style REST table).
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class MarketDataConnector:
    """
    Handles the lifecycle of the shared `httpx.AsyncClient`.
    """
    def __init__(self,
                 base_url: str,
                 api_key: str = "",
                 table: str = "market_data",
                 timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._table = table
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    async def __aenter__(self):
        """Allows using the connector as an async context manager."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        """Closes the client on context exit."""
        await self.disconnect()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def connect(self) -> None:
        """Creates the HTTP client."""
        async with self._lock:
            if self._client is not None:
                return
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers(),
                timeout=self._timeout,
                transport=self._transport,
            )
            logger.info(f"Market data client ready for {self._base_url} (table: {self._table})")

    async def disconnect(self) -> None:
        """Closes the HTTP client."""
        async with self._lock:
            if self._client is None:
                return
            await self._client.aclose()
            self._client = None
            logger.info("Market data client closed.")

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def table_path(self) -> str:
        return f"/rest/v1/{self._table}"

    async def get_rows(self, params: Dict[str, str]) -> Any:
        """
        GETs rows from the candle table and returns the decoded JSON body.
        Raises `httpx.HTTPError` on transport failure or a non-2xx status.
        """
        if self._client is None:
            await self.connect()
        response = await self._client.get(
            self.table_path,
            params=params,
            headers={"Cache-Control": "no-store"},
        )
        response.raise_for_status()
        return response.json()
