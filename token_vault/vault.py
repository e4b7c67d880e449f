"""
Token Vault Module

The single entry point for callers. The active revision is read from the
persisted schema version on every call; it decides which operations exist
and which hooks the ledger runs. Mutators are serialized and guarded
against reentry from inside an external transfer.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

from .audit import AuditEvent, AuditTrail, NullAuditTrail
from .clock import Clock
from .config import VaultConfig, get_config
from .errors import InvariantViolation, ReentrantCall, UnsupportedOperation
from .events import DomainEvent, EventDispatcher
from .ledger import AccountLedger
from .logging_config import log_action
from .migrations import RevisionMigrationManager
from .pause import PauseGate
from .rbac import Capability, RoleGate
from .schema import Account, BPS_DENOMINATOR, VaultStore, WithdrawalRequest
from .storage import StorageInterface, create_storage
from .transfers import InMemoryTransferService, TransferGateway, ValueTransferService
from .withdrawals import WithdrawalDelayStateMachine, WithdrawalStatus
from .yield_engine import YieldAccrualEngine


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Revision:
    """Feature set of one schema version"""
    version: int
    tag: str
    operations: FrozenSet[str]
    yield_tracking: bool = False


_ALWAYS = frozenset({
    "balance_of", "total_principal", "deposit_fee", "asset_ref", "admin",
    "has_role", "accounts", "verify_invariants",
})
_V1 = _ALWAYS | {"deposit", "withdraw", "set_deposit_fee", "grant_role", "revoke_role"}
_V2 = _V1 | {
    "claim_yield", "set_yield_rate", "pause_deposits", "unpause_deposits",
    "yield_rate", "is_paused", "user_yield",
}
_V3 = _V2 | {
    "set_withdrawal_delay", "request_withdrawal", "execute_withdrawal", "emergency_withdraw",
    "withdrawal_delay", "withdrawal_request_of", "withdrawal_status",
}

REVISIONS: Dict[int, Revision] = {
    0: Revision(0, "UNINITIALIZED", frozenset()),
    1: Revision(1, "V1", frozenset(_V1)),
    2: Revision(2, "V2", frozenset(_V2), yield_tracking=True),
    3: Revision(3, "V3", frozenset(_V3), yield_tracking=True),
}


class TokenVault:
    """
    Custodial ledger whose feature set evolves through revisions V1..V3
    while its persisted state is only ever appended to.
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        transfers: Optional[ValueTransferService] = None,
        clock: Optional[Clock] = None,
        config: Optional[VaultConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage_backend, self.config.sqlite_path)
        self.transfers = transfers or InMemoryTransferService()
        self.clock = clock or Clock()
        if audit_trail is not None:
            self.audit_trail = audit_trail
        elif self.config.enable_audit_logging:
            self.audit_trail = AuditTrail(self.storage)
        else:
            self.audit_trail = NullAuditTrail()
        self.events = event_dispatcher or EventDispatcher()

        self.store = VaultStore(self.storage)
        self.roles = RoleGate(self.storage, self.audit_trail)
        self.gateway = TransferGateway(self.transfers, self.audit_trail)
        self.ledger = AccountLedger(
            self.store, self.gateway, self.audit_trail, self.config.max_fee_bps
        )
        self.pause_gate = PauseGate(self.store, self.roles, self.audit_trail)
        self.yields = YieldAccrualEngine(
            self.store, self.roles, self.gateway, self.audit_trail, self.clock,
            self.config.seconds_per_year
        )
        self.withdrawals = WithdrawalDelayStateMachine(
            self.store, self.roles, self.gateway, self.audit_trail, self.clock,
            self.config.max_withdrawal_delay_seconds
        )
        self.migrations = RevisionMigrationManager(
            self.store, self.roles, self.audit_trail, self.clock,
            self.config.max_fee_bps, self.config.max_withdrawal_delay_seconds
        )

        self._serial = threading.RLock()
        self._active: Optional[str] = None

    # Dispatch and guarding

    @property
    def revision(self) -> Revision:
        return REVISIONS[self.store.load_state().schema_version]

    def _require(self, operation: str) -> Revision:
        revision = self.revision
        if operation not in revision.operations:
            raise UnsupportedOperation(f"{operation} is not available in revision {revision.tag}")
        return revision

    @contextmanager
    def _operation(self, name: str):
        """Serialize mutators and reject nested entry from the same call chain"""
        with self._serial:
            if self._active is not None:
                logger.error(f"Reentrant call to {name} while {self._active} is running")
                raise ReentrantCall(f"{name} called while {self._active} is in progress")
            self._active = name
            try:
                yield
            finally:
                self._active = None

    def _settle_hook(self, revision: Revision):
        return self.yields.settle if revision.yield_tracking else None

    # Revision transitions

    def initialize(self, caller: str, asset_ref: str, admin: str, deposit_fee_bps: int) -> str:
        """Revision 1 initialization. Callable once, by the deployer."""
        return self.upgrade(caller, 1, asset_ref, admin, deposit_fee_bps)

    def initialize_v2(self, caller: str, yield_rate_bps: int) -> str:
        return self.upgrade(caller, 2, yield_rate_bps)

    def initialize_v3(self, caller: str, withdrawal_delay_seconds: int) -> str:
        return self.upgrade(caller, 3, withdrawal_delay_seconds)

    def upgrade(self, caller: str, target_version: int, *args: Any) -> str:
        """Run the migration into ``target_version`` and activate its logic"""
        with self._operation("upgrade"):
            self.migrations.migrate(caller, target_version, *args)
            tag = REVISIONS[target_version].tag
        log_action(logger, "info", f"Vault upgraded to {tag}", caller=caller,
                   action="upgrade", extra={"arguments": list(args)})
        self.events.emit(DomainEvent.REVISION_MIGRATED, "schema", tag, {
            "version": target_version, "caller": caller
        })
        return tag

    # Queries

    @contextmanager
    def _read(self, operation: Optional[str] = None):
        """Hold the mutator lock so a query never sees a half-applied operation"""
        with self._serial:
            if operation is not None:
                self._require(operation)
            yield

    def implementation_version(self) -> str:
        with self._read():
            return self.revision.tag

    def schema_version(self) -> int:
        with self._read():
            return self.store.load_state().schema_version

    def migration_status(self) -> Dict[str, Any]:
        with self._read():
            return self.migrations.get_migration_status()

    def balance_of(self, account: str) -> int:
        with self._read("balance_of"):
            return self.ledger.balance_of(account)

    def total_principal(self) -> int:
        with self._read("total_principal"):
            return self.ledger.total_principal()

    def deposit_fee(self) -> int:
        with self._read("deposit_fee"):
            return self.ledger.deposit_fee()

    def asset_ref(self) -> str:
        with self._read("asset_ref"):
            return self.store.load_state().asset_ref

    def admin(self) -> str:
        with self._read("admin"):
            return self.store.load_state().admin

    def has_role(self, identity: str, capability: Capability) -> bool:
        with self._read("has_role"):
            return self.roles.has_capability(identity, capability)

    def accounts(self) -> List[Account]:
        with self._read("accounts"):
            return list(self.store.iter_accounts())

    def yield_rate(self) -> int:
        with self._read("yield_rate"):
            return self.yields.yield_rate()

    def is_paused(self) -> bool:
        with self._read("is_paused"):
            return self.pause_gate.is_paused()

    def user_yield(self, account: str) -> int:
        with self._read("user_yield"):
            return self.yields.accrued(account)

    def withdrawal_delay(self) -> int:
        with self._read("withdrawal_delay"):
            return self.withdrawals.withdrawal_delay()

    def withdrawal_request_of(self, account: str) -> Optional[WithdrawalRequest]:
        with self._read("withdrawal_request_of"):
            return self.withdrawals.withdrawal_request_of(account)

    def withdrawal_status(self, account: str) -> WithdrawalStatus:
        with self._read("withdrawal_status"):
            return self.withdrawals.status_of(account)

    def audit_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        with self._read():
            return self.audit_trail.get_all_events(limit)

    def verify_audit_trail(self) -> Dict[str, Any]:
        with self._read():
            return self.audit_trail.verify_integrity()

    def verify_invariants(self) -> Dict[str, Any]:
        """
        Check the ledger invariants against persisted state.

        Raises:
            InvariantViolation: describing the first broken invariant
        """
        with self._read("verify_invariants"):
            state = self.store.load_state()
            accounts = list(self.store.iter_accounts())
        total = sum(a.principal for a in accounts)

        if total != state.total_principal:
            raise InvariantViolation(
                f"Total principal {state.total_principal} != sum of balances {total}"
            )
        if any(a.principal < 0 for a in accounts):
            raise InvariantViolation("Negative principal")
        if not 0 <= state.deposit_fee_bps <= BPS_DENOMINATOR:
            raise InvariantViolation(f"Deposit fee {state.deposit_fee_bps} out of bounds")
        if not 0 <= state.yield_rate_bps <= BPS_DENOMINATOR:
            raise InvariantViolation(f"Yield rate {state.yield_rate_bps} out of bounds")
        if not 0 <= state.withdrawal_delay_seconds <= self.withdrawals.max_delay_seconds:
            raise InvariantViolation(f"Withdrawal delay {state.withdrawal_delay_seconds} out of bounds")

        return {
            "schema_version": state.schema_version,
            "accounts": len(accounts),
            "total_principal": state.total_principal,
            "pending_requests": sum(1 for a in accounts if a.withdrawal_request),
        }

    # Ledger mutators

    def deposit(self, caller: str, amount: int) -> int:
        """Deposit ``amount``; returns the net principal credited"""
        with self._operation("deposit"):
            revision = self._require("deposit")
            prepare = None
            if revision.yield_tracking:
                self.pause_gate.require_not_paused()
                prepare = self.yields.start_clock
            net = self.ledger.deposit(caller, amount, prepare)
        log_action(logger, "info", "Deposit credited", caller=caller, account=caller,
                   action="deposit", amount=net)
        self.events.emit(DomainEvent.DEPOSITED, "account", caller, {
            "amount": amount, "net": net
        })
        return net

    def withdraw(self, caller: str, amount: int) -> int:
        with self._operation("withdraw"):
            revision = self._require("withdraw")
            paid = self.ledger.withdraw(caller, amount, self._settle_hook(revision))
        log_action(logger, "info", "Withdrawal paid", caller=caller, account=caller,
                   action="withdraw", amount=paid)
        self.events.emit(DomainEvent.WITHDRAWN, "account", caller, {"amount": paid})
        return paid

    # Yield mutators

    def claim_yield(self, caller: str) -> int:
        with self._operation("claim_yield"):
            self._require("claim_yield")
            paid = self.yields.claim_yield(caller)
        log_action(logger, "info", "Yield claimed", caller=caller, account=caller,
                   action="claim_yield", amount=paid)
        self.events.emit(DomainEvent.YIELD_CLAIMED, "account", caller, {"amount": paid})
        return paid

    # Withdrawal delay mutators

    def request_withdrawal(self, caller: str, amount: int) -> WithdrawalRequest:
        with self._operation("request_withdrawal"):
            self._require("request_withdrawal")
            superseded = self.withdrawals.request_withdrawal(caller, amount)
            request = self.withdrawals.withdrawal_request_of(caller)
        log_action(logger, "info", "Withdrawal requested", caller=caller, account=caller,
                   action="request_withdrawal", amount=amount)
        self.events.emit(DomainEvent.WITHDRAWAL_REQUESTED, "account", caller, {
            "amount": amount,
            "request_time": request.request_time,
            "superseded_amount": superseded.amount if superseded else None
        })
        return request

    def execute_withdrawal(self, caller: str) -> int:
        with self._operation("execute_withdrawal"):
            revision = self._require("execute_withdrawal")
            paid = self.withdrawals.execute_withdrawal(caller, self._settle_hook(revision))
        log_action(logger, "info", "Delayed withdrawal executed", caller=caller, account=caller,
                   action="execute_withdrawal", amount=paid)
        self.events.emit(DomainEvent.WITHDRAWAL_EXECUTED, "account", caller, {"amount": paid})
        return paid

    def emergency_withdraw(self, caller: str) -> int:
        with self._operation("emergency_withdraw"):
            revision = self._require("emergency_withdraw")
            paid = self.withdrawals.emergency_withdraw(caller, self._settle_hook(revision))
        log_action(logger, "warning", "Emergency withdrawal", caller=caller, account=caller,
                   action="emergency_withdraw", amount=paid)
        self.events.emit(DomainEvent.EMERGENCY_WITHDRAWAL, "account", caller, {
            "account": caller, "amount": paid
        })
        return paid

    # Administrative mutators

    def set_deposit_fee(self, caller: str, fee_bps: int) -> int:
        with self._operation("set_deposit_fee"):
            self._require("set_deposit_fee")
            self.roles.require(caller, Capability.ADMIN)
            previous = self.ledger.set_deposit_fee(caller, fee_bps)
        self._parameter_changed(caller, "deposit_fee_bps", previous, fee_bps)
        return previous

    def set_yield_rate(self, caller: str, rate_bps: int) -> int:
        with self._operation("set_yield_rate"):
            self._require("set_yield_rate")
            previous = self.yields.set_yield_rate(caller, rate_bps)
        self._parameter_changed(caller, "yield_rate_bps", previous, rate_bps)
        return previous

    def set_withdrawal_delay(self, caller: str, seconds: int) -> int:
        with self._operation("set_withdrawal_delay"):
            self._require("set_withdrawal_delay")
            previous = self.withdrawals.set_withdrawal_delay(caller, seconds)
        self._parameter_changed(caller, "withdrawal_delay_seconds", previous, seconds)
        return previous

    def pause_deposits(self, caller: str) -> bool:
        with self._operation("pause_deposits"):
            self._require("pause_deposits")
            changed = self.pause_gate.pause(caller)
        if changed:
            self.events.emit(DomainEvent.DEPOSITS_PAUSED, "vault", "global", {"caller": caller})
        return changed

    def unpause_deposits(self, caller: str) -> bool:
        with self._operation("unpause_deposits"):
            self._require("unpause_deposits")
            changed = self.pause_gate.unpause(caller)
        if changed:
            self.events.emit(DomainEvent.DEPOSITS_UNPAUSED, "vault", "global", {"caller": caller})
        return changed

    def grant_role(self, caller: str, identity: str, capability: Capability) -> bool:
        with self._operation("grant_role"):
            self._require("grant_role")
            granted = self.roles.grant(caller, identity, capability)
        if granted:
            self.events.emit(DomainEvent.ROLE_GRANTED, "role", identity, {
                "capability": capability.value, "caller": caller
            })
        return granted

    def revoke_role(self, caller: str, identity: str, capability: Capability) -> bool:
        with self._operation("revoke_role"):
            self._require("revoke_role")
            revoked = self.roles.revoke(caller, identity, capability)
        if revoked:
            self.events.emit(DomainEvent.ROLE_REVOKED, "role", identity, {
                "capability": capability.value, "caller": caller
            })
        return revoked

    def _parameter_changed(self, caller: str, name: str, previous: int, current: int) -> None:
        log_action(logger, "info", f"{name} changed", caller=caller, action="set_parameter",
                   extra={"parameter": name, "previous": previous, "current": current})
        self.events.emit(DomainEvent.PARAMETER_CHANGED, "vault", "global", {
            "parameter": name, "previous": previous, "current": current, "caller": caller
        })


def create_vault(config: Optional[VaultConfig] = None, **kwargs) -> TokenVault:
    """Build a vault from configuration, with in-memory collaborators unless given"""
    config = config or get_config()
    kwargs.setdefault("storage", create_storage(config.storage_backend, config.sqlite_path))
    return TokenVault(config=config, **kwargs)
