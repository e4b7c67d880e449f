"""
Test suite for the revision migration manager

Tests ordering and single execution of migrations, upgrader gating,
append-only layouts and the migration records.
"""

import pytest

from token_vault.storage import InMemoryStorage
from token_vault.audit import AuditEventType, AuditTrail
from token_vault.clock import ManualClock
from token_vault.config import VaultConfig
from token_vault.errors import (
    AlreadyInitialized, InvalidParameter, InvariantViolation, Unauthorized, UnsupportedOperation
)
from token_vault.migrations import Migration, RevisionMigrationManager
from token_vault.rbac import Capability, RoleGate
from token_vault.schema import (
    ACCOUNT_FIELDS, GLOBAL_FIELDS, VaultStore, check_append_only, layout_for
)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit(storage):
    return AuditTrail(storage)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(storage):
    return VaultStore(storage)


@pytest.fixture
def roles(storage, audit):
    return RoleGate(storage, audit)


@pytest.fixture
def manager(store, roles, audit, clock):
    config = VaultConfig()
    return RevisionMigrationManager(
        store, roles, audit, clock, config.max_fee_bps, config.max_withdrawal_delay_seconds
    )


class TestLayouts:
    """Test the cumulative field tables"""

    def test_each_revision_extends_the_previous(self):
        for fields in (GLOBAL_FIELDS, ACCOUNT_FIELDS):
            for version in range(1, 4):
                check_append_only(layout_for(fields, version - 1), layout_for(fields, version))

    def test_global_layout_order(self):
        assert layout_for(GLOBAL_FIELDS, 3) == [
            "asset_ref", "admin", "deposit_fee_bps", "total_principal",
            "yield_rate_bps", "yield_regime_start_time", "paused",
            "withdrawal_delay_seconds",
        ]

    def test_reordering_is_rejected(self):
        with pytest.raises(InvariantViolation):
            check_append_only(["a", "b"], ["b", "a", "c"])

    def test_removal_is_rejected(self):
        with pytest.raises(InvariantViolation):
            check_append_only(["a", "b"], ["a"])

    def test_duplicate_is_rejected(self):
        with pytest.raises(InvariantViolation):
            check_append_only(["a"], ["a", "a"])


class TestMigrationOrder:
    """Test that migrations run once and in order"""

    def test_initial_status(self, manager):
        status = manager.get_migration_status()
        assert status["current_version"] == 0
        assert status["latest_version"] == 3
        assert status["pending_count"] == 3
        assert status["needs_migration"] is True

    def test_full_sequence(self, manager, clock):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        manager.migrate("admin", 2, 1000)
        state = manager.migrate("admin", 3, 3600)

        assert state.schema_version == 3
        assert state.yield_regime_start_time == clock.now()
        assert state.withdrawal_delay_seconds == 3600
        assert manager.get_migration_status()["needs_migration"] is False
        assert [m["name"] for m in manager.get_applied_migrations()] == [
            "initialize", "initializeV2", "initializeV3"
        ]

    def test_initialize_twice(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        with pytest.raises(AlreadyInitialized):
            manager.migrate("admin", 1, "MTK", "attacker", 0)
        assert manager.store.load_state().admin == "admin"

    def test_cannot_skip_a_version(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        with pytest.raises(AlreadyInitialized):
            manager.migrate("admin", 3, 3600)
        assert manager.get_current_version() == 1

    def test_cannot_migrate_backwards(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        manager.migrate("admin", 2, 1000)
        with pytest.raises(AlreadyInitialized):
            manager.migrate("admin", 2, 1000)

    def test_beyond_latest_is_unsupported(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 0)
        manager.migrate("admin", 2, 0)
        manager.migrate("admin", 3, 0)
        with pytest.raises(UnsupportedOperation):
            manager.migrate("admin", 4)

    def test_wrong_argument_count(self, manager):
        with pytest.raises(InvalidParameter):
            manager.migrate("deployer", 1, "MTK", "admin")
        assert manager.get_current_version() == 0


class TestAuthorization:

    def test_upgrader_required_after_first_revision(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        with pytest.raises(Unauthorized):
            manager.migrate("deployer", 2, 1000)
        assert manager.get_current_version() == 1

    def test_delegated_upgrader(self, manager, roles):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        roles.grant("admin", "release-bot", Capability.UPGRADER)
        manager.migrate("release-bot", 2, 1000)
        assert manager.get_current_version() == 2

    def test_unauthorized_check_precedes_version_check(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        with pytest.raises(Unauthorized):
            manager.migrate("stranger", 1, "MTK", "stranger", 0)


class TestInitializerValidation:
    """Invalid arguments leave the schema untouched"""

    def test_fee_out_of_bounds(self, manager):
        with pytest.raises(InvalidParameter):
            manager.migrate("deployer", 1, "MTK", "admin", 10_001)
        assert manager.get_current_version() == 0
        assert manager.get_applied_migrations() == []

    def test_missing_admin(self, manager):
        with pytest.raises(InvalidParameter):
            manager.migrate("deployer", 1, "MTK", "", 0)

    def test_rate_out_of_bounds(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 0)
        with pytest.raises(InvalidParameter):
            manager.migrate("admin", 2, -1)
        assert manager.get_current_version() == 1

    def test_delay_out_of_bounds(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 0)
        manager.migrate("admin", 2, 0)
        with pytest.raises(InvalidParameter):
            manager.migrate("admin", 3, 10 ** 9)
        assert manager.get_current_version() == 2


class TestAppendOnly:
    """Test that migrations cannot rewrite earlier fields"""

    def test_initializer_rewriting_old_field_is_rolled_back(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 500)

        def rogue(state, caller, args):
            state.deposit_fee_bps = 0
            state.yield_rate_bps = args[0]

        manager.migrations[(1, 2)].initializer = rogue
        with pytest.raises(InvariantViolation):
            manager.migrate("admin", 2, 1000)

        state = manager.store.load_state()
        assert state.schema_version == 1
        assert state.deposit_fee_bps == 500

    def test_persisted_layout_grows_by_appension(self, manager, store):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        v1_layout = store.load_state().layout
        manager.migrate("admin", 2, 1000)
        v2_layout = store.load_state().layout

        assert v2_layout[:len(v1_layout)] == v1_layout
        assert v2_layout[len(v1_layout):] == ["yield_rate_bps", "yield_regime_start_time", "paused"]

    def test_migration_must_step_by_one(self, manager):
        with pytest.raises(ValueError):
            manager.add_migration(Migration(1, 3, "jump", (), lambda s, c, a: None))


class TestMigrationRecords:

    def test_checksums_validate(self, manager):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        manager.migrate("admin", 2, 1000)
        assert manager.validate_migrations() is True

    def test_tampered_checksum_detected(self, manager, storage):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        record = storage.load("schema_migrations", "v001")
        record["checksum"] = "0" * 64
        storage.save("schema_migrations", "v001", record)
        assert manager.validate_migrations() is False

    def test_migrations_are_audited(self, manager, audit):
        manager.migrate("deployer", 1, "MTK", "admin", 500)
        manager.migrate("admin", 2, 1000)

        events = audit.get_events_by_type(AuditEventType.REVISION_MIGRATED)
        assert [e.entity_id for e in events] == ["v1", "v2"]
        assert events[1].metadata["appended_fields"] == [
            "yield_rate_bps", "yield_regime_start_time", "paused"
        ]
        assert events[1].caller == "admin"
