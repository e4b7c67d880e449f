"""
Yield Accrual Engine Module

Simple (non-compounding) yield on principal, proportional to elapsed time:

    accrued = pending + principal * rate_bps * elapsed / (SECONDS_PER_YEAR * 10_000)

Accounts that held principal before yield tracking existed start accruing
at the regime start time rather than at their original deposit time.
Claimed yield is paid out of custody and never added to principal.
"""

import logging

from .audit import AuditEventType, AuditTrail
from .clock import Clock
from .errors import NoYield
from .ledger import validate_bps
from .rbac import Capability, RoleGate
from .schema import Account, BPS_DENOMINATOR, GlobalState, VaultStore
from .transfers import TransferGateway


logger = logging.getLogger(__name__)


class YieldAccrualEngine:
    """Computes, settles and pays out time-proportional yield"""

    def __init__(self, store: VaultStore, roles: RoleGate, gateway: TransferGateway,
                 audit_trail: AuditTrail, clock: Clock, seconds_per_year: int):
        self.store = store
        self.storage = store.storage
        self.roles = roles
        self.gateway = gateway
        self.audit = audit_trail
        self.clock = clock
        self.seconds_per_year = seconds_per_year

    # Calculations

    def effective_last_claim(self, account: Account, state: GlobalState) -> int:
        if account.last_yield_claim_time:
            return account.last_yield_claim_time
        return state.yield_regime_start_time

    def accrued_since_settlement(self, account: Account, state: GlobalState, now: int) -> int:
        """Yield earned since the last claim or settlement, at the current rate"""
        elapsed = max(0, now - self.effective_last_claim(account, state))
        if not elapsed or not account.principal or not state.yield_rate_bps:
            return 0
        return (account.principal * state.yield_rate_bps * elapsed
                // (self.seconds_per_year * BPS_DENOMINATOR))

    def accrued(self, identity: str) -> int:
        """Total claimable yield for ``identity`` right now"""
        state = self.store.load_state()
        account = self.store.load_account(identity)
        return account.pending_yield + self.accrued_since_settlement(account, state, self.clock.now())

    def yield_rate(self) -> int:
        return self.store.load_state().yield_rate_bps

    # Account hooks

    def start_clock(self, account: Account) -> None:
        """Deposit hook: an empty account starts accruing now, nothing is owed for the gap"""
        if account.principal == 0:
            account.last_yield_claim_time = self.clock.now()

    def settle(self, account: Account) -> None:
        """Debit hook: bank what has accrued so far into pending_yield"""
        state = self.store.load_state()
        now = self.clock.now()
        account.pending_yield += self.accrued_since_settlement(account, state, now)
        account.last_yield_claim_time = now

    # Operations

    def claim_yield(self, identity: str) -> int:
        """
        Pay out all accrued yield to ``identity``.

        Raises:
            NoYield: nothing has accrued

        Returns:
            Amount paid
        """
        with self.storage.atomic():
            state = self.store.load_state()
            account = self.store.load_account(identity)
            now = self.clock.now()
            amount = account.pending_yield + self.accrued_since_settlement(account, state, now)
            if amount <= 0:
                raise NoYield(f"No yield accrued for {identity}")

            account.pending_yield = 0
            account.last_yield_claim_time = now
            self.store.save_account(account)
            self.audit.log_event(
                AuditEventType.YIELD_CLAIMED, "account", identity,
                {"amount": amount}, identity
            )

        self.gateway.push(identity, amount, "claim_yield")
        logger.info(f"Yield of {amount} claimed by {identity}")
        return amount

    def set_yield_rate(self, caller: str, rate_bps: int, max_bps: int = BPS_DENOMINATOR) -> int:
        """
        Change the annual rate. Every account is settled at the old rate
        first, so the new rate applies only from this moment on.

        Returns:
            The previous rate
        """
        self.roles.require(caller, Capability.ADMIN)
        validate_bps(rate_bps, "Yield rate", max_bps)

        with self.storage.atomic():
            state = self.store.load_state()
            previous = state.yield_rate_bps
            if previous != rate_bps:
                for account in self.store.iter_accounts():
                    if account.principal:
                        self.settle(account)
                        self.store.save_account(account)
            state.yield_rate_bps = rate_bps
            self.store.save_state(state)
            self.audit.log_event(
                AuditEventType.YIELD_RATE_CHANGED, "vault", "global",
                {"previous": previous, "current": rate_bps}, caller
            )

        logger.info(f"Yield rate changed from {previous} to {rate_bps} bps")
        return previous
