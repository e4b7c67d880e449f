"""
Revision Migration System

Each revision transition is a migration keyed by (from_version, to_version).
A migration may only append fields to the persisted layouts and seed them;
fields owned by earlier revisions are never read for rewriting, reordered
or reinterpreted. Migrations run exactly once, strictly in order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditEventType, AuditTrail
from .clock import Clock
from .config import MAX_WITHDRAWAL_DELAY_SECONDS
from .errors import AlreadyInitialized, InvalidParameter, InvariantViolation, UnsupportedOperation
from .ledger import validate_bps
from .rbac import Capability, RoleGate
from .schema import (
    ACCOUNT_FIELDS, GLOBAL_FIELDS, GlobalState, VaultStore,
    check_append_only, layout_checksum, layout_for
)


logger = logging.getLogger(__name__)


@dataclass
class Migration:
    """A single revision transition"""
    from_version: int
    to_version: int
    name: str
    params: Tuple[str, ...]
    initializer: Callable[[GlobalState, str, Tuple[Any, ...]], None]
    applied_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def key(self) -> Tuple[int, int]:
        return (self.from_version, self.to_version)

    @property
    def global_layout(self) -> List[str]:
        return layout_for(GLOBAL_FIELDS, self.to_version)

    @property
    def account_layout(self) -> List[str]:
        return layout_for(ACCOUNT_FIELDS, self.to_version)

    def __str__(self) -> str:
        return f"Migration v{self.from_version}->v{self.to_version}: {self.name}"


class RevisionMigrationManager:
    """Runs the one-time initialization for each revision"""

    def __init__(self, store: VaultStore, roles: RoleGate, audit_trail: AuditTrail,
                 clock: Clock, max_fee_bps: int, max_delay_seconds: int):
        self.store = store
        self.storage = store.storage
        self.roles = roles
        self.audit = audit_trail
        self.clock = clock
        self.max_fee_bps = max_fee_bps
        self.max_delay_seconds = min(max_delay_seconds, MAX_WITHDRAWAL_DELAY_SECONDS)
        self.migrations: Dict[Tuple[int, int], Migration] = {}
        self._migration_table = "schema_migrations"
        self._init_migrations()

    def _init_migrations(self) -> None:
        """Register the built-in revisions"""
        self.add_migration(Migration(
            0, 1, "initialize",
            ("asset_ref", "admin", "deposit_fee_bps"),
            self._initialize_v1
        ))
        self.add_migration(Migration(
            1, 2, "initializeV2",
            ("yield_rate_bps",),
            self._initialize_v2
        ))
        self.add_migration(Migration(
            2, 3, "initializeV3",
            ("withdrawal_delay_seconds",),
            self._initialize_v3
        ))

    def add_migration(self, migration: Migration) -> None:
        if migration.to_version != migration.from_version + 1:
            raise ValueError(f"{migration} must advance exactly one version")
        if migration.key in self.migrations:
            raise ValueError(f"{migration} is already registered")
        self.migrations[migration.key] = migration

    # Status

    def get_current_version(self) -> int:
        return self.store.load_state().schema_version

    def latest_version(self) -> int:
        return max((m.to_version for m in self.migrations.values()), default=0)

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        applied = self.storage.load_all(self._migration_table)
        return sorted(applied, key=lambda m: m["to_version"])

    def get_pending_migrations(self) -> List[Migration]:
        current = self.get_current_version()
        return [m for key, m in sorted(self.migrations.items()) if m.from_version >= current]

    def get_migration_status(self) -> Dict[str, Any]:
        current = self.get_current_version()
        pending = self.get_pending_migrations()
        return {
            "current_version": current,
            "latest_version": self.latest_version(),
            "pending_count": len(pending),
            "applied_count": len(self.get_applied_migrations()),
            "pending_migrations": [
                {"from_version": m.from_version, "to_version": m.to_version, "name": m.name}
                for m in pending
            ],
            "needs_migration": bool(pending)
        }

    def validate_migrations(self) -> bool:
        """Check that every applied migration's recorded layout matches its definition"""
        for record in self.get_applied_migrations():
            migration = self.migrations.get((record["from_version"], record["to_version"]))
            if not migration:
                logger.warning(f"Applied migration v{record['to_version']} not found in definitions")
                return False
            if record["checksum"] != layout_checksum(migration.global_layout + migration.account_layout):
                logger.error(f"Checksum mismatch for {migration}")
                return False
        return True

    # Execution

    def migrate(self, caller: str, target_version: int, *args: Any) -> GlobalState:
        """
        Advance the schema from its current version to ``target_version``.

        Raises:
            Unauthorized: caller lacks the upgrader capability (after the first revision)
            AlreadyInitialized: target is not exactly current + 1
            UnsupportedOperation: no migration is registered for the step
        """
        state = self.store.load_state()
        current = state.schema_version

        if current > 0:
            self.roles.require(caller, Capability.UPGRADER)
        if target_version != current + 1:
            raise AlreadyInitialized(
                f"Cannot migrate to v{target_version} from v{current}"
            )
        migration = self.migrations.get((current, target_version))
        if migration is None:
            raise UnsupportedOperation(f"No migration from v{current} to v{target_version}")
        if len(args) != len(migration.params):
            raise InvalidParameter(
                f"{migration.name} takes ({', '.join(migration.params)}), got {len(args)} arguments"
            )

        previous_accounts = layout_for(ACCOUNT_FIELDS, current)
        check_append_only(state.layout, migration.global_layout)
        check_append_only(previous_accounts, migration.account_layout)

        logger.info(f"Applying {migration}")
        with self.storage.atomic():
            existing = {name: getattr(state, name) for name in state.layout}
            state.layout = migration.global_layout
            migration.initializer(state, caller, args)

            if {name: getattr(state, name) for name in existing} != existing:
                raise InvariantViolation(f"{migration} rewrote a field owned by an earlier revision")

            state.schema_version = target_version
            self.store.save_state(state)

            now = datetime.now(timezone.utc)
            self.storage.save(self._migration_table, f"v{target_version:03d}", {
                "from_version": current,
                "to_version": target_version,
                "name": migration.name,
                "applied_by": caller,
                "applied_at": now.isoformat(),
                "checksum": layout_checksum(migration.global_layout + migration.account_layout)
            })
            self.audit.log_event(
                AuditEventType.REVISION_MIGRATED, "schema", f"v{target_version}",
                {
                    "from_version": current,
                    "name": migration.name,
                    "appended_fields": migration.global_layout[len(existing):],
                    "arguments": list(args)
                },
                caller
            )

        migration.applied_at = now
        logger.info(f"Successfully applied {migration}")
        return state

    # Initializers: seed only the fields the revision introduces

    def _initialize_v1(self, state: GlobalState, caller: str, args: Tuple[Any, ...]) -> None:
        asset_ref, admin, deposit_fee_bps = args
        if not asset_ref or not isinstance(asset_ref, str):
            raise InvalidParameter("Asset reference is required")
        if not admin or not isinstance(admin, str):
            raise InvalidParameter("Admin identity is required")
        state.asset_ref = asset_ref
        state.admin = admin
        state.deposit_fee_bps = validate_bps(deposit_fee_bps, "Deposit fee", self.max_fee_bps)
        state.total_principal = 0
        self.roles._grant(admin, Capability.ADMIN, caller)
        self.roles._grant(admin, Capability.UPGRADER, caller)

    def _initialize_v2(self, state: GlobalState, caller: str, args: Tuple[Any, ...]) -> None:
        (yield_rate_bps,) = args
        state.yield_rate_bps = validate_bps(yield_rate_bps, "Yield rate")
        state.yield_regime_start_time = self.clock.now()
        state.paused = False
        self.roles._grant(state.admin, Capability.PAUSER, caller)

    def _initialize_v3(self, state: GlobalState, caller: str, args: Tuple[Any, ...]) -> None:
        (delay,) = args
        if isinstance(delay, bool) or not isinstance(delay, int) or not 0 <= delay <= self.max_delay_seconds:
            raise InvalidParameter(f"Withdrawal delay must be between 0 and {self.max_delay_seconds} seconds")
        state.withdrawal_delay_seconds = delay
