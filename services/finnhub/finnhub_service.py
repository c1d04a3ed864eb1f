# services/finnhub/finnhub_service.py
from __future__ import annotations
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx

from utils.common_helpers import safe_float, safe_json


class FinnhubServiceError(Exception):
    """Domain-level error for the Finnhub service."""


def finnhub_api_key() -> str:
    return (os.getenv("FINNHUB_API_KEY") or "").strip()


class FinnhubService:
    """
    Minimal async quote lookup against Finnhub's ``/quote`` endpoint.

    The free tier is limited per minute; callers that fan out over several
    symbols are expected to space their calls (see ``FixedDelayGate``).
    """

    BASE_URL = "https://finnhub.io/api/v1"

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key or finnhub_api_key()
        if not self.api_key:
            raise FinnhubServiceError("Missing FINNHUB_API_KEY")
        self.timeout = timeout if timeout is not None else float(os.getenv("FINNHUB_TIMEOUT_SEC", "5"))

    @asynccontextmanager
    async def _client(self, client: Optional[httpx.AsyncClient] = None):
        if client is not None:
            yield client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as c:
            yield c

    def _auth_params(self, **params: Any) -> Dict[str, Any]:
        return {**params, "token": self.api_key}

    async def get_price(
        self,
        symbol: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> Optional[float]:
        """
        Current price for ONE symbol, or None when Finnhub has no price for it.
        Raises FinnhubServiceError when the request itself fails.
        """
        sym = (symbol or "").strip().upper()
        if not sym:
            raise FinnhubServiceError("Missing symbol")

        async with self._client(client) as c:
            try:
                r = await c.get(f"{self.BASE_URL}/quote", params=self._auth_params(symbol=sym))
                r.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise FinnhubServiceError(f"Finnhub quote failed: {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise FinnhubServiceError(f"Finnhub quote failed: {type(e).__name__}") from e

            data = safe_json(r) or {}
            price = safe_float(data.get("c"))
            # Finnhub answers unknown symbols with zeros rather than an error.
            if not price:
                return None
            return price
