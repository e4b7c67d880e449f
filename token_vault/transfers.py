"""
Value Transfer Module

The vault never holds the asset itself; it asks a transfer service to pull
funds into custody (debit) or push them back out (credit). Either call may
fail, and neither is assumed safe against reentry into the vault.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional
import logging
import threading

from .audit import AuditEventType
from .errors import TransferFailed
from .logging_config import log_action


logger = logging.getLogger(__name__)


class ValueTransferService(ABC):
    """Interface of the external value-transfer medium"""

    @abstractmethod
    def debit(self, source: str, amount: int) -> bool:
        """Move ``amount`` from ``source`` into vault custody. Returns False on failure."""
        pass

    @abstractmethod
    def credit(self, destination: str, amount: int) -> bool:
        """Move ``amount`` from vault custody to ``destination``. Returns False on failure."""
        pass


class InMemoryTransferService(ValueTransferService):
    """
    In-memory token book standing in for the external asset.

    Holds wallet balances per identity plus a custody balance for the vault.
    ``fail_debits`` / ``fail_credits`` force failures, and ``on_debit`` /
    ``on_credit`` hooks run inside the transfer to simulate a hostile token
    that calls back into the vault.
    """

    def __init__(self, asset_ref: str = "MTK", custody: str = "vault"):
        self.asset_ref = asset_ref
        self.custody = custody
        self._balances: Dict[str, int] = {}
        self._lock = threading.RLock()
        self.fail_debits = False
        self.fail_credits = False
        self.on_debit: Optional[Callable[[str, int], None]] = None
        self.on_credit: Optional[Callable[[str, int], None]] = None

    def mint(self, holder: str, amount: int) -> None:
        """Create tokens out of thin air for a wallet"""
        if amount < 0:
            raise ValueError("Cannot mint a negative amount")
        with self._lock:
            self._balances[holder] = self._balances.get(holder, 0) + amount

    def balance_of(self, holder: str) -> int:
        with self._lock:
            return self._balances.get(holder, 0)

    def custody_balance(self) -> int:
        return self.balance_of(self.custody)

    def _move(self, source: str, destination: str, amount: int) -> bool:
        with self._lock:
            if amount < 0 or self._balances.get(source, 0) < amount:
                return False
            self._balances[source] = self._balances.get(source, 0) - amount
            self._balances[destination] = self._balances.get(destination, 0) + amount
            return True

    def debit(self, source: str, amount: int) -> bool:
        if self.on_debit:
            self.on_debit(source, amount)
        if self.fail_debits:
            logger.warning(f"Forced debit failure for {source}")
            return False
        return self._move(source, self.custody, amount)

    def credit(self, destination: str, amount: int) -> bool:
        if self.on_credit:
            self.on_credit(destination, amount)
        if self.fail_credits:
            logger.warning(f"Forced credit failure for {destination}")
            return False
        return self._move(self.custody, destination, amount)


class TransferGateway:
    """
    Wraps a ValueTransferService, turning a False return or a raised
    exception into TransferFailed.

    ``pull`` runs before any ledger write, so its failure leaves no trace.
    ``push`` runs after the ledger has committed; a failure there is an
    integration fault and is logged at CRITICAL and audited before raising.
    """

    def __init__(self, service: ValueTransferService, audit_trail=None):
        self.service = service
        self.audit = audit_trail

    def pull(self, source: str, amount: int, action: str) -> None:
        try:
            moved = self.service.debit(source, amount)
        except Exception as e:
            logger.warning(f"{action}: debit of {amount} from {source} raised {e!r}")
            raise TransferFailed(f"Debit of {amount} from {source} failed: {e}") from e
        if not moved:
            logger.warning(f"{action}: debit of {amount} from {source} failed")
            raise TransferFailed(f"Debit of {amount} from {source} failed")

    def push(self, destination: str, amount: int, action: str) -> None:
        try:
            moved = self.service.credit(destination, amount)
        except Exception as e:
            self._credit_failed(destination, amount, action, repr(e))
            raise TransferFailed(
                f"Credit of {amount} to {destination} failed after ledger commit: {e}"
            ) from e
        if moved:
            return
        self._credit_failed(destination, amount, action, "service returned False")
        raise TransferFailed(f"Credit of {amount} to {destination} failed after ledger commit")

    def _credit_failed(self, destination: str, amount: int, action: str, reason: str) -> None:
        log_action(
            logger, "critical",
            f"{action}: ledger committed but credit of {amount} to {destination} failed",
            account=destination, action=action, amount=amount, extra={"reason": reason}
        )
        if self.audit:
            self.audit.log_event(
                AuditEventType.TRANSFER_FAILED, "account", destination,
                {"action": action, "amount": amount, "direction": "credit", "reason": reason}
            )
