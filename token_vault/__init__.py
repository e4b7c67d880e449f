"""
Token Vault

A custodial value ledger with fee-adjusted deposits, non-compounding yield,
delayed withdrawals, and append-only schema revisions.
"""

__version__ = "3.0.0"
