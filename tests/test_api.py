"""
Integration tests for the Token Vault API
Tests end-to-end workflows using FastAPI TestClient
"""

import jwt
import pytest
from fastapi.testclient import TestClient

from token_vault.api import create_app
from token_vault.clock import ManualClock
from token_vault.config import SECONDS_PER_DAY, VaultConfig
from token_vault.storage import InMemoryStorage
from token_vault.transfers import InMemoryTransferService
from token_vault.vault import TokenVault


JWT_SECRET = "test-secret-that-is-long-enough-for-hs256"


def as_caller(identity):
    return {"X-Caller-Id": identity}


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def token():
    service = InMemoryTransferService()
    service.mint("alice", 10_000)
    service.mint(service.custody, 10_000)
    return service


@pytest.fixture
def vault(token, clock):
    return TokenVault(storage=InMemoryStorage(), transfers=token, clock=clock, config=VaultConfig())


@pytest.fixture
def client(vault):
    """Test client around a fresh, uninitialized vault"""
    return TestClient(create_app(vault))


@pytest.fixture
def v3_client(client):
    """Test client around a vault upgraded to revision 3"""
    client.post("/revision/initialize", headers=as_caller("deployer"), json={
        "asset_ref": "MTK", "admin": "admin", "deposit_fee_bps": 500
    })
    client.post("/revision/initialize-v2", headers=as_caller("admin"), json={"yield_rate_bps": 1000})
    client.post("/revision/initialize-v3", headers=as_caller("admin"), json={
        "withdrawal_delay_seconds": SECONDS_PER_DAY
    })
    return client


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["system"] == "Token Vault"
        assert data["implementation"] == "UNINITIALIZED"
        assert "endpoints" in data


class TestRevisionFlow:
    """Test initialization over HTTP"""

    def test_initialize(self, client):
        r = client.post("/revision/initialize", headers=as_caller("deployer"), json={
            "asset_ref": "MTK", "admin": "admin", "deposit_fee_bps": 500
        })
        assert r.status_code == 200
        assert r.json() == {"implementation": "V1", "schema_version": 1}
        assert client.get("/vault/asset").json() == {"asset_ref": "MTK"}

    def test_initialize_twice_conflicts(self, v3_client):
        r = v3_client.post("/revision/initialize-v2", headers=as_caller("admin"), json={"yield_rate_bps": 0})
        assert r.status_code == 409
        assert r.json()["code"] == "already_initialized"

    def test_unsupported_operation_before_initialize(self, client):
        r = client.get("/vault/total-principal")
        assert r.status_code == 404
        assert r.json()["code"] == "unsupported_operation"

    def test_migration_status(self, v3_client):
        data = v3_client.get("/revision/migrations").json()
        assert data["current_version"] == 3
        assert data["needs_migration"] is False


class TestLedgerFlow:
    """Deposit, yield and withdrawal through the API"""

    def test_deposit_and_withdraw(self, v3_client):
        r = v3_client.post("/accounts/deposit", headers=as_caller("alice"), json={"amount": 100})
        assert r.status_code == 200
        assert r.json()["amount"] == 95

        assert v3_client.get("/accounts/alice/balance").json()["principal"] == 95

        r = v3_client.post("/accounts/withdraw", headers=as_caller("alice"), json={"amount": 45})
        assert r.json()["amount"] == 45
        assert v3_client.get("/vault/total-principal").json()["total_principal"] == 50

    def test_invalid_amount(self, v3_client):
        r = v3_client.post("/accounts/deposit", headers=as_caller("alice"), json={"amount": 0})
        assert r.status_code == 400
        assert r.json()["code"] == "invalid_amount"

    def test_insufficient_balance(self, v3_client):
        r = v3_client.post("/accounts/withdraw", headers=as_caller("alice"), json={"amount": 1})
        assert r.status_code == 400
        assert r.json()["detail"] == "Insufficient balance"

    def test_missing_caller(self, v3_client):
        r = v3_client.post("/accounts/deposit", json={"amount": 100})
        assert r.status_code == 401

    def test_transfer_failure(self, v3_client, token):
        token.fail_debits = True
        r = v3_client.post("/accounts/deposit", headers=as_caller("alice"), json={"amount": 100})
        assert r.status_code == 502
        assert r.json()["code"] == "transfer_failed"

    def test_yield_claim(self, v3_client, clock):
        v3_client.post("/accounts/deposit", headers=as_caller("alice"), json={"amount": 1000})
        clock.advance(365 * SECONDS_PER_DAY)

        assert v3_client.get("/accounts/alice/yield").json()["accrued_yield"] == 95
        r = v3_client.post("/accounts/claim-yield", headers=as_caller("alice"))
        assert r.json()["amount"] == 95

    def test_delayed_withdrawal(self, v3_client, clock):
        v3_client.post("/accounts/deposit", headers=as_caller("alice"), json={"amount": 1000})
        r = v3_client.post("/withdrawals/request", headers=as_caller("alice"), json={"amount": 500})
        assert r.json()["status"] == "pending"
        assert r.json()["executable_at"] == clock.now() + SECONDS_PER_DAY

        r = v3_client.post("/withdrawals/execute", headers=as_caller("alice"))
        assert r.status_code == 409
        assert r.json()["code"] == "delay_not_elapsed"

        clock.advance(SECONDS_PER_DAY)
        assert v3_client.get("/accounts/alice/withdrawal").json()["status"] == "executable"
        r = v3_client.post("/withdrawals/execute", headers=as_caller("alice"))
        assert r.json()["amount"] == 500

    def test_emergency_withdrawal(self, v3_client):
        v3_client.post("/accounts/deposit", headers=as_caller("alice"), json={"amount": 1000})
        r = v3_client.post("/withdrawals/emergency", headers=as_caller("alice"))
        assert r.json()["amount"] == 950
        accounts = v3_client.get("/vault/accounts").json()
        assert accounts["total_principal"] == 0


class TestAdminFlow:
    """Parameter changes, pausing and roles"""

    def test_set_parameters(self, v3_client):
        r = v3_client.post("/admin/deposit-fee", headers=as_caller("admin"), json={"fee_bps": 100})
        assert r.json() == {"parameter": "deposit_fee_bps", "previous": 500, "current": 100}

        r = v3_client.post("/admin/yield-rate", headers=as_caller("admin"), json={"rate_bps": 200})
        assert r.json()["previous"] == 1000

        r = v3_client.post("/admin/withdrawal-delay", headers=as_caller("admin"), json={"seconds": 0})
        assert r.json()["current"] == 0
        assert v3_client.get("/vault/withdrawal-delay").json() == {"withdrawal_delay_seconds": 0}

    def test_non_admin_forbidden(self, v3_client):
        r = v3_client.post("/admin/deposit-fee", headers=as_caller("alice"), json={"fee_bps": 0})
        assert r.status_code == 403
        assert r.json()["code"] == "unauthorized"

    def test_invalid_parameter(self, v3_client):
        r = v3_client.post("/admin/yield-rate", headers=as_caller("admin"), json={"rate_bps": 20_000})
        assert r.status_code == 400

    def test_pause_blocks_deposits(self, v3_client):
        assert v3_client.post("/admin/pause", headers=as_caller("admin")).json() == {"changed": True}
        assert v3_client.get("/vault/paused").json() == {"paused": True}

        r = v3_client.post("/accounts/deposit", headers=as_caller("alice"), json={"amount": 100})
        assert r.status_code == 409
        assert r.json()["code"] == "deposits_paused"

    def test_roles(self, v3_client):
        r = v3_client.post("/roles/grant", headers=as_caller("admin"), json={
            "identity": "ops", "capability": "pauser"
        })
        assert r.json() == {"changed": True}
        assert v3_client.get("/roles/ops/pauser").json()["granted"] is True

        r = v3_client.post("/roles/revoke", headers=as_caller("admin"), json={
            "identity": "ops", "capability": "pauser"
        })
        assert r.json() == {"changed": True}
        assert v3_client.get("/roles/ops/pauser").json()["granted"] is False

    def test_unknown_capability(self, v3_client):
        r = v3_client.get("/roles/ops/superuser")
        assert r.status_code == 400

    def test_invariants_and_audit(self, v3_client):
        v3_client.post("/accounts/deposit", headers=as_caller("alice"), json={"amount": 100})
        assert v3_client.get("/vault/invariants").json()["total_principal"] == 95

        events = v3_client.get("/audit/events").json()["events"]
        assert events[-1]["event_type"] == "deposit"
        assert v3_client.get("/audit/verify").json()["valid"] is True


class TestJWTAuthentication:
    """Caller identity from a bearer token"""

    @pytest.fixture
    def auth_client(self, token, clock):
        config = VaultConfig(auth_enabled=True, jwt_secret=JWT_SECRET)
        vault = TokenVault(storage=InMemoryStorage(), transfers=token, clock=clock, config=config)
        vault.initialize("deployer", "MTK", "admin", 0)
        return TestClient(create_app(vault))

    def bearer(self, subject):
        encoded = jwt.encode({"sub": subject}, JWT_SECRET, algorithm="HS256")
        return {"Authorization": f"Bearer {encoded}"}

    def test_token_identifies_caller(self, auth_client):
        r = auth_client.post("/accounts/deposit", headers=self.bearer("alice"), json={"amount": 100})
        assert r.status_code == 200
        assert r.json()["account"] == "alice"

    def test_header_ignored_when_auth_enabled(self, auth_client):
        r = auth_client.post("/accounts/deposit", headers=as_caller("alice"), json={"amount": 100})
        assert r.status_code == 401

    def test_bad_signature(self, auth_client):
        forged = jwt.encode({"sub": "admin"}, "x" * 48, algorithm="HS256")
        r = auth_client.post(
            "/admin/deposit-fee", headers={"Authorization": f"Bearer {forged}"}, json={"fee_bps": 0}
        )
        assert r.status_code == 401
