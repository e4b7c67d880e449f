"""
Withdrawal Delay State Machine Module

Per-account lifecycle:

    NO_REQUEST -> PENDING -> EXECUTABLE -> executed
                    |  ^
                    +--+  a new request replaces the old one
    any state -> emergency withdrawal (full balance, no delay)

EXECUTABLE is derived from timestamps, never stored. A configured delay of
zero disables the execute path entirely; it does not mean "no delay".
"""

import logging
from enum import Enum
from typing import Callable, Optional

from .audit import AuditEventType, AuditTrail
from .clock import Clock
from .config import MAX_WITHDRAWAL_DELAY_SECONDS
from .errors import (
    DelayNotConfigured, DelayNotElapsed, InsufficientBalance, InvalidParameter, NoPendingRequest
)
from .ledger import debit_principal, validate_amount
from .rbac import Capability, RoleGate
from .schema import Account, VaultStore, WithdrawalRequest
from .transfers import TransferGateway


logger = logging.getLogger(__name__)


class WithdrawalStatus(Enum):
    NO_REQUEST = "no_request"
    PENDING = "pending"
    EXECUTABLE = "executable"


class WithdrawalDelayStateMachine:

    def __init__(self, store: VaultStore, roles: RoleGate, gateway: TransferGateway,
                 audit_trail: AuditTrail, clock: Clock, max_delay_seconds: int):
        self.store = store
        self.storage = store.storage
        self.roles = roles
        self.gateway = gateway
        self.audit = audit_trail
        self.clock = clock
        self.max_delay_seconds = min(max_delay_seconds, MAX_WITHDRAWAL_DELAY_SECONDS)

    # Queries

    def withdrawal_delay(self) -> int:
        return self.store.load_state().withdrawal_delay_seconds

    def withdrawal_request_of(self, identity: str) -> Optional[WithdrawalRequest]:
        return self.store.load_account(identity).withdrawal_request

    def status_of(self, identity: str) -> WithdrawalStatus:
        request = self.withdrawal_request_of(identity)
        if not request or request.amount == 0:
            return WithdrawalStatus.NO_REQUEST
        delay = self.withdrawal_delay()
        if delay > 0 and self.clock.now() >= request.executable_at(delay):
            return WithdrawalStatus.EXECUTABLE
        return WithdrawalStatus.PENDING

    # Administration

    def set_withdrawal_delay(self, caller: str, seconds: int) -> int:
        """Change the delay; returns the previous value"""
        self.roles.require(caller, Capability.ADMIN)
        if isinstance(seconds, bool) or not isinstance(seconds, int):
            raise InvalidParameter("Withdrawal delay must be an integer number of seconds")
        if seconds < 0 or seconds > self.max_delay_seconds:
            raise InvalidParameter(f"Withdrawal delay must be between 0 and {self.max_delay_seconds} seconds")

        with self.storage.atomic():
            state = self.store.load_state()
            previous = state.withdrawal_delay_seconds
            state.withdrawal_delay_seconds = seconds
            self.store.save_state(state)
            self.audit.log_event(
                AuditEventType.WITHDRAWAL_DELAY_CHANGED, "vault", "global",
                {"previous": previous, "current": seconds}, caller
            )
        logger.info(f"Withdrawal delay changed from {previous}s to {seconds}s")
        return previous

    # Lifecycle

    def request_withdrawal(self, identity: str, amount: int) -> Optional[WithdrawalRequest]:
        """
        Record a request for ``amount``, replacing any outstanding one.

        Returns:
            The superseded request, if there was one
        """
        validate_amount(amount)
        with self.storage.atomic():
            account = self.store.load_account(identity)
            if account.principal < amount:
                raise InsufficientBalance("Insufficient balance")
            superseded = account.withdrawal_request
            account.withdrawal_request = WithdrawalRequest(amount=amount, request_time=self.clock.now())
            self.store.save_account(account)
            self.audit.log_event(
                AuditEventType.WITHDRAWAL_REQUESTED, "account", identity,
                {
                    "amount": amount,
                    "superseded": superseded.to_dict() if superseded else None
                },
                identity
            )

        if superseded:
            logger.info(f"Withdrawal request of {superseded.amount} by {identity} superseded")
        logger.info(f"Withdrawal of {amount} requested by {identity}")
        return superseded

    def execute_withdrawal(self, identity: str,
                           settle: Optional[Callable[[Account], None]] = None) -> int:
        """Pay out the outstanding request once its delay has elapsed"""
        with self.storage.atomic():
            state = self.store.load_state()
            account = self.store.load_account(identity)
            request = account.withdrawal_request
            if not request or request.amount == 0:
                raise NoPendingRequest(f"No pending withdrawal request for {identity}")
            if state.withdrawal_delay_seconds == 0:
                raise DelayNotConfigured("Withdrawal delay is not configured")
            if self.clock.now() < request.executable_at(state.withdrawal_delay_seconds):
                raise DelayNotElapsed("Withdrawal delay not passed")

            amount = request.amount
            account.withdrawal_request = None
            if settle:
                settle(account)
            debit_principal(account, state, amount)
            self.store.save_account(account)
            self.store.save_state(state)
            self.audit.log_event(
                AuditEventType.WITHDRAWAL_EXECUTED, "account", identity,
                {"amount": amount, "requested_at": request.request_time}, identity
            )

        self.gateway.push(identity, amount, "execute_withdrawal")
        logger.info(f"Delayed withdrawal of {amount} executed for {identity}")
        return amount

    def emergency_withdraw(self, identity: str,
                           settle: Optional[Callable[[Account], None]] = None) -> int:
        """Pay out the entire principal immediately, cancelling any request"""
        with self.storage.atomic():
            state = self.store.load_state()
            account = self.store.load_account(identity)
            amount = account.principal
            if amount == 0:
                raise InsufficientBalance(f"No balance to withdraw for {identity}")

            cancelled = account.withdrawal_request
            account.withdrawal_request = None
            if settle:
                settle(account)
            debit_principal(account, state, amount)
            self.store.save_account(account)
            self.store.save_state(state)
            self.audit.log_event(
                AuditEventType.EMERGENCY_WITHDRAWAL, "account", identity,
                {
                    "amount": amount,
                    "cancelled_request": cancelled.to_dict() if cancelled else None
                },
                identity
            )

        self.gateway.push(identity, amount, "emergency_withdraw")
        logger.warning(f"Emergency withdrawal of {amount} by {identity}")
        return amount
