"""
Concentrated-liquidity position rebalancer for Orca Whirlpools.
"""

__version__ = "0.4.0"
