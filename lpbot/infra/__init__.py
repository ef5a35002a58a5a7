"""
Infrastructure package.

Network clients (ledger RPC, swap aggregator, price feed), the retry
primitive and logging configuration.
"""

from lpbot.infra.coingecko import CoinGeckoClient
from lpbot.infra.jupiter import JupiterClient, SwapTransactions
from lpbot.infra.logging_cfg import build_logger, log_event
from lpbot.infra.retry import retry
from lpbot.infra.rpc import AccountInfo, SolanaRpc

__all__ = [
    "AccountInfo",
    "CoinGeckoClient",
    "JupiterClient",
    "SolanaRpc",
    "SwapTransactions",
    "build_logger",
    "log_event",
    "retry",
]
