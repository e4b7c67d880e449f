"""
Vault Error Taxonomy

Every failure raised by the vault derives from VaultError and carries a
stable ``code`` used by the API layer and the audit trail.
"""

from typing import Optional


class VaultError(Exception):
    """Base class for all vault failures"""

    code = "vault_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidAmount(VaultError):
    """Zero, negative, or non-integer quantity"""
    code = "invalid_amount"


class InsufficientBalance(VaultError):
    """Account principal does not cover the requested amount"""
    code = "insufficient_balance"


class Unauthorized(VaultError):
    """Caller lacks the capability required by the operation"""
    code = "unauthorized"


class AlreadyInitialized(VaultError):
    """Migration step re-run or run against the wrong schema version"""
    code = "already_initialized"


class InvalidParameter(VaultError):
    """Fee, rate, or delay outside its permitted bounds"""
    code = "invalid_parameter"


class NoYield(VaultError):
    """Nothing has accrued for the account"""
    code = "no_yield"


class NoPendingRequest(VaultError):
    """No withdrawal request is outstanding for the account"""
    code = "no_pending_request"


class DelayNotElapsed(VaultError):
    """Withdrawal request is not yet executable"""
    code = "delay_not_elapsed"


class DelayNotConfigured(VaultError):
    """Withdrawal delay is zero, so the execute path is disabled"""
    code = "delay_not_configured"


class TransferFailed(VaultError):
    """The value-transfer collaborator rejected a debit or credit"""
    code = "transfer_failed"


class UnsupportedOperation(VaultError):
    """Operation is not part of the active revision"""
    code = "unsupported_operation"


class ReentrantCall(VaultError):
    """An operation was entered while another one is still running"""
    code = "reentrant_call"


class InvariantViolation(VaultError):
    """Persisted state breaks a ledger invariant"""
    code = "invariant_violation"


class DepositsPaused(VaultError):
    """Pause gate is closed to deposits"""
    code = "deposits_paused"
