"""
USD price lookup via CoinGecko's simple price endpoint.

Only needed to size a deposit when neither pool token is the stable asset.
"""

from __future__ import annotations

from typing import Optional

import httpx

from lpbot.errors import LpBotError

COINGECKO_API_URL = "https://api.coingecko.com/api/v3"


class CoinGeckoClient:
    def __init__(
        self,
        base_url: str = COINGECKO_API_URL,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def price_usd(self, token_id: str) -> float:
        resp = await self.client.get(
            f"{self.base_url}/simple/price",
            params={"ids": token_id, "vs_currencies": "usd"},
        )
        resp.raise_for_status()
        data = resp.json()
        try:
            price = float(data[token_id]["usd"])
        except (KeyError, TypeError, ValueError) as exc:
            raise LpBotError(f"no USD price for {token_id}: {data}") from exc
        if price <= 0:
            raise LpBotError(f"non-positive USD price for {token_id}: {price}")
        return price
