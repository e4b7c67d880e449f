"""
Security tests

Reentrancy from inside external transfers, unauthorized callers on every
gated operation, and ledger consistency under concurrent callers.
"""

import threading

import pytest

from token_vault.storage import InMemoryStorage
from token_vault.audit import AuditEventType
from token_vault.clock import ManualClock
from token_vault.config import VaultConfig
from token_vault.errors import (
    InsufficientBalance, InvariantViolation, ReentrantCall, TransferFailed, Unauthorized
)
from token_vault.rbac import Capability
from token_vault.transfers import InMemoryTransferService
from token_vault.schema import VaultStore
from token_vault.vault import TokenVault


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def token():
    service = InMemoryTransferService()
    service.mint("alice", 100_000)
    service.mint("mallory", 100_000)
    return service


@pytest.fixture
def vault(token, clock):
    vault = TokenVault(
        storage=InMemoryStorage(),
        transfers=token,
        clock=clock,
        config=VaultConfig()
    )
    vault.initialize("deployer", "MTK", "admin", 0)
    vault.initialize_v2("admin", 0)
    vault.initialize_v3("admin", 60)
    return vault


class TestReentrancy:
    """A hostile token calling back into the vault mid-transfer"""

    def test_reentrant_withdraw_is_rejected(self, vault, token):
        vault.deposit("mallory", 1000)
        attempts = []

        def reenter(destination, amount):
            try:
                vault.withdraw("mallory", amount)
            except ReentrantCall as e:
                attempts.append(e)

        token.on_credit = reenter
        assert vault.withdraw("mallory", 1000) == 1000

        assert len(attempts) == 1
        assert vault.balance_of("mallory") == 0
        assert token.balance_of("mallory") == 100_000

    def test_reentrant_deposit_during_pull(self, vault, token):
        def reenter(source, amount):
            vault.deposit("mallory", amount)

        token.on_debit = reenter
        with pytest.raises(TransferFailed) as excinfo:
            vault.deposit("mallory", 500)
        assert isinstance(excinfo.value.__cause__, ReentrantCall)

        token.on_debit = None
        assert vault.balance_of("mallory") == 0
        assert vault.total_principal() == 0

    def test_uncaught_reentry_during_payout_is_audited(self, vault, token):
        vault.deposit("mallory", 1000)

        def reenter(destination, amount):
            vault.withdraw("mallory", 1)

        token.on_credit = reenter
        with pytest.raises(TransferFailed) as excinfo:
            vault.withdraw("mallory", 1000)
        assert isinstance(excinfo.value.__cause__, ReentrantCall)

        # Debit stays committed; the missing payout is on record
        assert vault.balance_of("mallory") == 0
        assert vault.total_principal() == 0
        assert token.balance_of("mallory") == 99_000
        failures = vault.audit_trail.get_events_by_type(AuditEventType.TRANSFER_FAILED)
        assert len(failures) == 1
        assert failures[0].metadata["amount"] == 1000
        assert "ReentrantCall" in failures[0].metadata["reason"]

    def test_raising_service_becomes_transfer_failed(self, vault, token):
        def broken(source, amount):
            raise ConnectionError("token node unreachable")

        token.on_debit = broken
        with pytest.raises(TransferFailed) as excinfo:
            vault.deposit("alice", 100)
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        assert vault.total_principal() == 0
        assert token.balance_of("alice") == 100_000

    def test_reentrant_emergency_during_execute(self, vault, token, clock):
        vault.deposit("mallory", 1000)
        vault.request_withdrawal("mallory", 1000)
        clock.advance(60)
        attempts = []

        def reenter(destination, amount):
            try:
                vault.emergency_withdraw("mallory")
            except ReentrantCall as e:
                attempts.append(e)

        token.on_credit = reenter
        assert vault.execute_withdrawal("mallory") == 1000
        assert len(attempts) == 1
        assert vault.total_principal() == 0

    def test_guard_released_after_failure(self, vault, token):
        token.fail_debits = True
        with pytest.raises(TransferFailed):
            vault.deposit("alice", 100)
        token.fail_debits = False
        assert vault.deposit("alice", 100) == 100


class TestAuthorization:
    """Every gated operation rejects a caller without the capability"""

    @pytest.mark.parametrize("operation, args", [
        ("set_deposit_fee", (0,)),
        ("set_yield_rate", (0,)),
        ("set_withdrawal_delay", (0,)),
        ("pause_deposits", ()),
        ("unpause_deposits", ()),
        ("grant_role", ("mallory", Capability.ADMIN)),
        ("revoke_role", ("admin", Capability.ADMIN)),
    ])
    def test_gated_operations(self, vault, operation, args):
        with pytest.raises(Unauthorized):
            getattr(vault, operation)("mallory", *args)

    def test_upgrade_requires_upgrader(self):
        vault2 = TokenVault(
            storage=InMemoryStorage(), transfers=InMemoryTransferService(),
            clock=ManualClock(), config=VaultConfig()
        )
        vault2.initialize("deployer", "MTK", "admin", 0)
        with pytest.raises(Unauthorized):
            vault2.initialize_v2("mallory", 10_000)
        assert vault2.implementation_version() == "V1"

    def test_revoked_admin_loses_access(self, vault):
        vault.grant_role("admin", "ops", Capability.ADMIN)
        vault.revoke_role("ops", "admin", Capability.ADMIN)
        with pytest.raises(Unauthorized):
            vault.set_deposit_fee("admin", 100)
        assert vault.set_deposit_fee("ops", 100) == 0

    def test_withdraw_only_touches_callers_account(self, vault):
        vault.deposit("alice", 1000)
        with pytest.raises(InsufficientBalance):
            vault.withdraw("mallory", 1000)
        assert vault.balance_of("alice") == 1000


class TestConcurrency:
    """Concurrent callers are serialized"""

    def test_parallel_deposits_and_withdrawals(self, vault, token):
        users = [f"user{i}" for i in range(8)]
        for user in users:
            token.mint(user, 1000)

        def work(user):
            for _ in range(10):
                vault.deposit(user, 50)
            for _ in range(5):
                vault.withdraw(user, 20)

        threads = [threading.Thread(target=work, args=(u,)) for u in users]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for user in users:
            assert vault.balance_of(user) == 500 - 100
        report = vault.verify_invariants()
        assert report["total_principal"] == 400 * len(users)

    def test_reader_never_sees_half_applied_deposit(self, token, clock):
        storage = ReaderOnAccountSave()
        vault = TokenVault(storage=storage, transfers=token, clock=clock, config=VaultConfig())
        vault.initialize("deployer", "MTK", "admin", 0)

        storage.read = vault.verify_invariants
        vault.deposit("alice", 1000)
        storage.reader.join(timeout=5)

        assert not storage.reader.is_alive()
        assert len(storage.results) == 1
        assert not isinstance(storage.results[0], InvariantViolation)
        assert storage.results[0]["total_principal"] == 1000

    def test_reader_sees_balance_and_total_together(self, token, clock):
        storage = ReaderOnAccountSave()
        vault = TokenVault(storage=storage, transfers=token, clock=clock, config=VaultConfig())
        vault.initialize("deployer", "MTK", "admin", 0)

        storage.read = lambda: (vault.balance_of("alice"), vault.total_principal())
        vault.deposit("alice", 700)
        storage.reader.join(timeout=5)

        assert storage.results == [(700, 700)]


class ReaderOnAccountSave(InMemoryStorage):
    """Starts a reader thread right after an account document is written"""

    def __init__(self):
        super().__init__()
        self.read = None
        self.reader = None
        self.results = []

    def save(self, table, record_id, data):
        super().save(table, record_id, data)
        if table == VaultStore.ACCOUNTS_TABLE and self.read and self.reader is None:
            self.reader = threading.Thread(target=self._run)
            self.reader.start()
            # Give an unsynchronized reader time to observe the partial write
            self.reader.join(timeout=0.2)

    def _run(self):
        try:
            self.results.append(self.read())
        except InvariantViolation as e:
            self.results.append(e)
