"""
Revenue Distributor

Async service for a token-sale revenue program that:
- Withdraws withheld Token-2022 transfer fees into the fee vault
- Converts program tokens to SOL and accumulates the proceeds durably
- Distributes accumulated SOL to holders in batched ledger transactions
"""

__version__ = "0.1.0"
