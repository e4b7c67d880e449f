"""
Pause Gate Module

Global switch on the deposit path. Withdrawals are never paused.
"""

import logging

from .audit import AuditEventType, AuditTrail
from .errors import DepositsPaused
from .rbac import Capability, RoleGate
from .schema import VaultStore


logger = logging.getLogger(__name__)


class PauseGate:

    def __init__(self, store: VaultStore, roles: RoleGate, audit_trail: AuditTrail):
        self.store = store
        self.roles = roles
        self.audit = audit_trail

    def is_paused(self) -> bool:
        return bool(self.store.load_state().paused)

    def require_not_paused(self) -> None:
        if self.is_paused():
            raise DepositsPaused("Deposits are paused")

    def pause(self, caller: str) -> bool:
        """Close the gate. Returns False if it was already closed."""
        return self._set(caller, True)

    def unpause(self, caller: str) -> bool:
        """Open the gate. Returns False if it was already open."""
        return self._set(caller, False)

    def _set(self, caller: str, paused: bool) -> bool:
        self.roles.require(caller, Capability.PAUSER)
        with self.store.storage.atomic():
            state = self.store.load_state()
            if state.paused == paused:
                return False
            state.paused = paused
            self.store.save_state(state)
            self.audit.log_event(
                AuditEventType.DEPOSITS_PAUSED if paused else AuditEventType.DEPOSITS_UNPAUSED,
                "vault", "global", {}, caller
            )
        logger.info(f"Deposits {'paused' if paused else 'unpaused'} by {caller}")
        return True
