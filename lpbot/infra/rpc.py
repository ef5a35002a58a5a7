"""
Minimal async JSON-RPC client for the Solana ledger using HTTP/2.

Only the handful of methods the bot needs are exposed. Every method raises
RpcError on a JSON-RPC error object and httpx errors on transport failures;
retrying is the caller's decision.
"""

from __future__ import annotations

import base64
import itertools
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import httpx
from solders.pubkey import Pubkey

from lpbot.errors import RpcError


@dataclass(frozen=True)
class AccountInfo:
    """Decoded `getAccountInfo` value."""
    lamports: int
    data: bytes
    owner: str

    @classmethod
    def from_rpc(cls, value: Optional[dict]) -> Optional["AccountInfo"]:
        if value is None:
            return None
        raw = value.get("data") or ["", "base64"]
        payload = raw[0] if isinstance(raw, list) else raw
        return cls(
            lamports=int(value.get("lamports", 0)),
            data=base64.b64decode(payload) if payload else b"",
            owner=value.get("owner", ""),
        )


class SolanaRpc:
    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        commitment: str = "confirmed",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.commitment = commitment
        # A shared client passed in is not closed by close(); otherwise we own it.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(http2=True, timeout=timeout)
            self._owns_client = True
        self._ids = itertools.count(1)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def send_raw_transaction(
        self,
        raw: bytes,
        skip_preflight: bool = True,
        max_retries: int = 20,
    ) -> str:
        """Broadcast signed transaction bytes, returning the signature string."""
        opts = {
            "encoding": "base64",
            "skipPreflight": skip_preflight,
            "maxRetries": max_retries,
            "preflightCommitment": self.commitment,
        }
        encoded = base64.b64encode(raw).decode("ascii")
        return await self._call("sendTransaction", [encoded, opts])

    async def get_transaction(self, signature: str) -> Optional[dict]:
        """
        Fetch a transaction record. Returns None while the ledger has no
        record at the configured commitment.
        """
        opts = {
            "commitment": self.commitment,
            "maxSupportedTransactionVersion": 0,
            "encoding": "json",
        }
        return await self._call("getTransaction", [signature, opts])

    async def get_block_height(self) -> int:
        return int(await self._call("getBlockHeight", [{"commitment": self.commitment}]))

    async def get_latest_blockhash(self) -> Tuple[str, int]:
        """Return `(blockhash, last_valid_block_height)`."""
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = result["value"]
        return value["blockhash"], int(value["lastValidBlockHeight"])

    async def get_account_info(self, address: Pubkey | str) -> Optional[AccountInfo]:
        opts = {"encoding": "base64", "commitment": self.commitment}
        result = await self._call("getAccountInfo", [str(address), opts])
        return AccountInfo.from_rpc(result["value"])

    async def get_multiple_accounts(
        self, addresses: Sequence[Pubkey | str]
    ) -> List[Optional[AccountInfo]]:
        if not addresses:
            return []
        opts = {"encoding": "base64", "commitment": self.commitment}
        result = await self._call("getMultipleAccounts", [[str(a) for a in addresses], opts])
        return [AccountInfo.from_rpc(v) for v in result["value"]]

    async def _call(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = await self.client.post(self.url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if "error" in data and data["error"] is not None:
            err = data["error"]
            raise RpcError(method, err.get("code"), err.get("message", ""))
        return data.get("result")
