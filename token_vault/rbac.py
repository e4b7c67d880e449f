"""
Role-Based Access Control Module

Each identity holds a set of capabilities. Gated operations consult the
pure predicate ``has_capability`` before touching any state.
"""

import logging
from enum import Enum
from typing import Optional, Set

from .audit import AuditEventType, AuditTrail
from .errors import Unauthorized
from .storage import StorageInterface


logger = logging.getLogger(__name__)


class Capability(Enum):
    """Vault capabilities"""
    ADMIN = "admin"          # change fee, yield rate, delay; grant and revoke roles
    UPGRADER = "upgrader"    # authorize a revision transition
    PAUSER = "pauser"        # toggle the deposit pause gate


class RoleGate:
    """Capability sets per identity, persisted in the ``role_grants`` table"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit_trail
        self.table = "role_grants"

    def capabilities_of(self, identity: str) -> Set[Capability]:
        """All capabilities held by ``identity``"""
        data = self.storage.load(self.table, identity)
        if not data:
            return set()
        return {Capability(c) for c in data.get("capabilities", [])}

    def has_capability(self, identity: str, capability: Capability) -> bool:
        return capability in self.capabilities_of(identity)

    def require(self, identity: str, capability: Capability) -> None:
        """Raise Unauthorized unless ``identity`` holds ``capability``"""
        if not self.has_capability(identity, capability):
            logger.warning(f"{identity} lacks {capability.value}")
            raise Unauthorized(f"{identity} lacks the {capability.value} capability")

    def holders(self, capability: Capability) -> Set[str]:
        return {
            data["identity"] for data in self.storage.load_all(self.table)
            if capability.value in data.get("capabilities", [])
        }

    def grant(self, caller: str, identity: str, capability: Capability) -> bool:
        """Admin-gated grant. Returns False if the identity already held it."""
        self.require(caller, Capability.ADMIN)
        return self._grant(identity, capability, caller)

    def revoke(self, caller: str, identity: str, capability: Capability) -> bool:
        """Admin-gated revoke. Returns False if the identity did not hold it."""
        self.require(caller, Capability.ADMIN)
        capabilities = self.capabilities_of(identity)
        if capability not in capabilities:
            return False
        capabilities.discard(capability)
        self._save(identity, capabilities)
        if self.audit:
            self.audit.log_event(
                AuditEventType.ROLE_REVOKED, "role", identity,
                {"capability": capability.value}, caller
            )
        logger.info(f"Revoked {capability.value} from {identity}")
        return True

    def _grant(self, identity: str, capability: Capability, caller: Optional[str] = None) -> bool:
        """Ungated grant, used by initialization steps"""
        capabilities = self.capabilities_of(identity)
        if capability in capabilities:
            return False
        capabilities.add(capability)
        self._save(identity, capabilities)
        if self.audit:
            self.audit.log_event(
                AuditEventType.ROLE_GRANTED, "role", identity,
                {"capability": capability.value}, caller
            )
        logger.info(f"Granted {capability.value} to {identity}")
        return True

    def _save(self, identity: str, capabilities: Set[Capability]) -> None:
        self.storage.save(self.table, identity, {
            "identity": identity,
            "capabilities": sorted(c.value for c in capabilities),
        })
