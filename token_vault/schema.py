"""
Versioned State Schema Module

The vault persists one GlobalState document and one document per account.
Each revision may only append fields to these documents: the field tables
below are cumulative, and a record written under revision N is read back
under revision N+1 with the later fields filled from their defaults.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import InvariantViolation
from .storage import StorageInterface


BPS_DENOMINATOR = 10_000

# (field name, default) in declaration order, per revision that introduced them
GLOBAL_FIELDS: Dict[int, List[Tuple[str, Any]]] = {
    1: [
        ("asset_ref", ""),
        ("admin", ""),
        ("deposit_fee_bps", 0),
        ("total_principal", 0),
    ],
    2: [
        ("yield_rate_bps", 0),
        ("yield_regime_start_time", 0),
        ("paused", False),
    ],
    3: [
        ("withdrawal_delay_seconds", 0),
    ],
}

ACCOUNT_FIELDS: Dict[int, List[Tuple[str, Any]]] = {
    1: [
        ("principal", 0),
    ],
    2: [
        ("last_yield_claim_time", 0),
        ("pending_yield", 0),
    ],
    3: [
        ("withdrawal_request", None),
    ],
}


def layout_for(fields: Dict[int, List[Tuple[str, Any]]], version: int) -> List[str]:
    """Ordered field names visible at ``version``"""
    names: List[str] = []
    for v in sorted(fields):
        if v > version:
            break
        names.extend(name for name, _ in fields[v])
    return names


def check_append_only(previous: List[str], proposed: List[str]) -> None:
    """Raise unless ``proposed`` keeps ``previous`` as an unchanged prefix"""
    if proposed[:len(previous)] != previous:
        raise InvariantViolation(
            f"Layout {proposed} does not extend {previous} by appension"
        )
    if len(set(proposed)) != len(proposed):
        raise InvariantViolation(f"Layout {proposed} declares a field twice")


def layout_checksum(layout: List[str]) -> str:
    return hashlib.sha256(json.dumps(layout).encode('utf-8')).hexdigest()


def _defaults(fields: Dict[int, List[Tuple[str, Any]]]) -> Dict[str, Any]:
    return {name: default for v in sorted(fields) for name, default in fields[v]}


@dataclass
class WithdrawalRequest:
    """Outstanding delayed withdrawal for one account"""
    amount: int
    request_time: int

    def executable_at(self, delay_seconds: int) -> int:
        return self.request_time + delay_seconds

    def to_dict(self) -> Dict[str, int]:
        return {"amount": self.amount, "request_time": self.request_time}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, int]]) -> Optional['WithdrawalRequest']:
        if not data:
            return None
        return cls(amount=int(data["amount"]), request_time=int(data["request_time"]))


@dataclass
class Account:
    """Per-depositor ledger entry. Implicitly all-zero until first written."""
    identity: str
    principal: int = 0
    last_yield_claim_time: int = 0
    pending_yield: int = 0
    withdrawal_request: Optional[WithdrawalRequest] = None

    def to_record(self, layout: List[str]) -> Dict[str, Any]:
        values = {
            "principal": self.principal,
            "last_yield_claim_time": self.last_yield_claim_time,
            "pending_yield": self.pending_yield,
            "withdrawal_request": self.withdrawal_request.to_dict() if self.withdrawal_request else None,
        }
        record: Dict[str, Any] = {"identity": self.identity}
        for name in layout:
            record[name] = values[name]
        return record

    @classmethod
    def from_record(cls, identity: str, data: Optional[Dict[str, Any]]) -> 'Account':
        values = _defaults(ACCOUNT_FIELDS)
        if data:
            values.update({k: v for k, v in data.items() if k in values})
        return cls(
            identity=identity,
            principal=int(values["principal"]),
            last_yield_claim_time=int(values["last_yield_claim_time"]),
            pending_yield=int(values["pending_yield"]),
            withdrawal_request=WithdrawalRequest.from_dict(values["withdrawal_request"]),
        )


@dataclass
class GlobalState:
    """Vault-wide singleton. ``layout`` lists the persisted fields in order."""
    schema_version: int = 0
    layout: List[str] = field(default_factory=list)
    asset_ref: str = ""
    admin: str = ""
    deposit_fee_bps: int = 0
    total_principal: int = 0
    yield_rate_bps: int = 0
    yield_regime_start_time: int = 0
    paused: bool = False
    withdrawal_delay_seconds: int = 0

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "schema_version": self.schema_version,
            "layout": list(self.layout),
        }
        for name in self.layout:
            record[name] = getattr(self, name)
        return record

    @classmethod
    def from_record(cls, data: Optional[Dict[str, Any]]) -> 'GlobalState':
        if not data:
            return cls()
        state = cls(schema_version=int(data["schema_version"]), layout=list(data["layout"]))
        for name in state.layout:
            setattr(state, name, data[name])
        return state


class VaultStore:
    """Reads and writes vault documents through a StorageInterface"""

    STATE_TABLE = "vault_state"
    ACCOUNTS_TABLE = "vault_accounts"
    STATE_ID = "global"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def load_state(self) -> GlobalState:
        return GlobalState.from_record(self.storage.load(self.STATE_TABLE, self.STATE_ID))

    def save_state(self, state: GlobalState) -> None:
        self.storage.save(self.STATE_TABLE, self.STATE_ID, state.to_record())

    def account_layout(self) -> List[str]:
        return layout_for(ACCOUNT_FIELDS, self.load_state().schema_version)

    def load_account(self, identity: str) -> Account:
        return Account.from_record(identity, self.storage.load(self.ACCOUNTS_TABLE, identity))

    def save_account(self, account: Account) -> None:
        self.storage.save(self.ACCOUNTS_TABLE, account.identity, account.to_record(self.account_layout()))

    def raw_account(self, identity: str) -> Optional[Dict[str, Any]]:
        """Persisted document exactly as stored, for layout inspection"""
        return self.storage.load(self.ACCOUNTS_TABLE, identity)

    def iter_accounts(self) -> Iterator[Account]:
        for record in self.storage.load_all(self.ACCOUNTS_TABLE):
            yield Account.from_record(record["identity"], record)
