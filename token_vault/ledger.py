"""
Account Ledger Module

Authoritative principal balances and the aggregate total. Deposits pull
funds from the depositor before the ledger is credited; withdrawals commit
the ledger debit before the payout is pushed.
"""

import logging
from typing import Callable, Optional

from .audit import AuditEventType, AuditTrail
from .errors import InsufficientBalance, InvalidAmount, InvalidParameter
from .schema import Account, BPS_DENOMINATOR, GlobalState, VaultStore
from .transfers import TransferGateway


logger = logging.getLogger(__name__)

AccountHook = Callable[[Account], None]


def validate_amount(amount) -> int:
    """Amounts are strictly positive integers in base units"""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount("Amount must be greater than zero")
    return amount


def validate_bps(value, name: str, limit: int = BPS_DENOMINATOR) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{name} must be an integer number of basis points")
    if value < 0 or value > min(limit, BPS_DENOMINATOR):
        raise InvalidParameter(f"{name} must be between 0 and {min(limit, BPS_DENOMINATOR)} bps")
    return value


def fee_for(amount: int, fee_bps: int) -> int:
    return amount * fee_bps // BPS_DENOMINATOR


def debit_principal(account: Account, state: GlobalState, amount: int) -> None:
    """Remove ``amount`` from an account and the aggregate, in memory only"""
    if account.principal < amount:
        raise InsufficientBalance(
            f"Balance {account.principal} of {account.identity} does not cover {amount}"
        )
    account.principal -= amount
    state.total_principal -= amount


class AccountLedger:
    """
    Deposit and withdraw against per-account principal.

    The revision-specific behaviour (starting the yield clock on a first
    deposit, settling accrued yield before a debit) is passed in as hooks
    so the ledger itself stays unaware of yield.
    """

    def __init__(self, store: VaultStore, gateway: TransferGateway,
                 audit_trail: AuditTrail, max_fee_bps: int = BPS_DENOMINATOR):
        self.store = store
        self.storage = store.storage
        self.gateway = gateway
        self.audit = audit_trail
        self.max_fee_bps = max_fee_bps

    def balance_of(self, identity: str) -> int:
        return self.store.load_account(identity).principal

    def total_principal(self) -> int:
        return self.store.load_state().total_principal

    def deposit_fee(self) -> int:
        return self.store.load_state().deposit_fee_bps

    def deposit(self, identity: str, amount: int, prepare: Optional[AccountHook] = None) -> int:
        """
        Pull ``amount`` into custody and credit the net-of-fee principal.

        Args:
            identity: Depositor
            amount: Gross amount pulled from the depositor
            prepare: Called with the account before it is credited

        Returns:
            Net amount credited to principal
        """
        validate_amount(amount)
        fee = fee_for(amount, self.store.load_state().deposit_fee_bps)
        net = amount - fee

        # A failed pull raises before anything is written
        self.gateway.pull(identity, amount, "deposit")

        with self.storage.atomic():
            state = self.store.load_state()
            account = self.store.load_account(identity)
            if prepare:
                prepare(account)
            account.principal += net
            state.total_principal += net
            self.store.save_account(account)
            self.store.save_state(state)
            self.audit.log_event(
                AuditEventType.DEPOSIT, "account", identity,
                {"amount": amount, "fee": fee, "net": net}, identity
            )

        logger.info(f"Deposit of {amount} by {identity}, {net} credited after fee {fee}")
        return net

    def withdraw(self, identity: str, amount: int, settle: Optional[AccountHook] = None) -> int:
        """Debit principal, commit, then push ``amount`` to the depositor"""
        validate_amount(amount)

        with self.storage.atomic():
            state = self.store.load_state()
            account = self.store.load_account(identity)
            if account.principal < amount:
                raise InsufficientBalance("Insufficient balance")
            if settle:
                settle(account)
            debit_principal(account, state, amount)
            self.store.save_account(account)
            self.store.save_state(state)
            self.audit.log_event(
                AuditEventType.WITHDRAWAL, "account", identity,
                {"amount": amount}, identity
            )

        self.gateway.push(identity, amount, "withdraw")
        logger.info(f"Withdrawal of {amount} by {identity}")
        return amount

    def set_deposit_fee(self, caller: str, fee_bps: int) -> int:
        """Change the intake fee; caller authorization is checked by the vault"""
        validate_bps(fee_bps, "Deposit fee", self.max_fee_bps)
        with self.storage.atomic():
            state = self.store.load_state()
            previous = state.deposit_fee_bps
            state.deposit_fee_bps = fee_bps
            self.store.save_state(state)
            self.audit.log_event(
                AuditEventType.DEPOSIT_FEE_CHANGED, "vault", "global",
                {"previous": previous, "current": fee_bps}, caller
            )
        logger.info(f"Deposit fee changed from {previous} to {fee_bps} bps")
        return previous
