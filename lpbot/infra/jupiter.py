"""
Async client for the Jupiter swap aggregator (quote + swap endpoints).

The service returns unsigned versioned transactions; signing and submission
are done by the swap executor.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import httpx
from solders.transaction import VersionedTransaction

from lpbot.errors import SwapServiceError


@dataclass(frozen=True)
class SwapTransactions:
    """Transactions for one swap, in submission order."""
    swap: VersionedTransaction
    setup: Optional[VersionedTransaction] = None
    cleanup: Optional[VersionedTransaction] = None

    def ordered(self) -> List[Tuple[str, VersionedTransaction]]:
        txs: List[Tuple[str, VersionedTransaction]] = []
        if self.setup is not None:
            txs.append(("setup", self.setup))
        txs.append(("swap", self.swap))
        if self.cleanup is not None:
            txs.append(("cleanup", self.cleanup))
        return txs


def _decode_tx(encoded: Optional[str]) -> Optional[VersionedTransaction]:
    if not encoded:
        return None
    return VersionedTransaction.from_bytes(base64.b64decode(encoded))


class JupiterClient:
    def __init__(
        self,
        base_url: str = "https://quote-api.jup.ag/v6",
        slippage_bps: int = 10,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.slippage_bps = slippage_bps
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def quote(self, input_mint: str, output_mint: str, amount: int, swap_mode: str) -> dict:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "swapMode": swap_mode,
            "slippageBps": str(self.slippage_bps),
        }
        resp = await self.client.get(f"{self.base_url}/quote", params=params)
        data = self._json(resp, "quote")
        if "error" in data:
            raise SwapServiceError(f"quote rejected: {data['error']}")
        return data

    async def swap_transactions(self, quote: dict, user_public_key: str) -> SwapTransactions:
        body = {
            "quoteResponse": quote,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        resp = await self.client.post(f"{self.base_url}/swap", json=body)
        data = self._json(resp, "swap")
        swap = _decode_tx(data.get("swapTransaction"))
        if swap is None:
            raise SwapServiceError(f"swap response without transaction: {data}")
        return SwapTransactions(
            swap=swap,
            setup=_decode_tx(data.get("setupTransaction")),
            cleanup=_decode_tx(data.get("cleanupTransaction")),
        )

    async def fetch_swap(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        swap_mode: str,
        user_public_key: str,
    ) -> SwapTransactions:
        """Quote the best route and return its transactions."""
        quote = await self.quote(input_mint, output_mint, amount, swap_mode)
        return await self.swap_transactions(quote, user_public_key)

    @staticmethod
    def _json(resp: httpx.Response, label: str) -> Any:
        if resp.status_code >= 400:
            raise SwapServiceError(f"{label} HTTP {resp.status_code}: {resp.text[:200]}")
        data = resp.json()
        if not isinstance(data, dict):
            raise SwapServiceError(f"{label} returned unexpected payload")
        return data
