"""
Well-known Solana addresses and protocol constants.
"""

from solders.pubkey import Pubkey

WHIRLPOOL_PROGRAM_ID = Pubkey.from_string("whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
SYSVAR_RENT_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

SOL_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")
USDC_MINT = Pubkey.from_string("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")

# SOL/USDC, tick spacing 64
SOL_USDC_WHIRLPOOL = "HJPjoWUrhoZzkNfRpHuieeFk9WcZWjwy6PBjZ81ngndJ"

# Program custom error codes meaning "slippage tolerance exceeded"
WHIRLPOOL_SLIPPAGE_ERROR = 6018          # token min subceeded (withdrawal)
WHIRLPOOL_TOKEN_MAX_ERROR = 6017         # token max exceeded (deposit)
JUPITER_SLIPPAGE_ERRORS = (6001, 6000)

# Lamports always left in the wallet for fees and rent
MIN_SOL_BALANCE_RAW = 70_000_000

TICK_ARRAY_SIZE = 88
MIN_TICK_INDEX = -443636
MAX_TICK_INDEX = 443636
