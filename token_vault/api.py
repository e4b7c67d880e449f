"""
FastAPI REST API Module

Exposes every vault query (GET) and mutator (POST) over HTTP. The caller
identity comes from a JWT bearer token when authentication is enabled,
otherwise from the ``X-Caller-Id`` header. Runs on port 8095.
"""

from typing import Any, Dict, Optional

import jwt
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import __version__
from .config import get_config
from .errors import (
    AlreadyInitialized, DelayNotElapsed, DepositsPaused, InvariantViolation,
    ReentrantCall, TransferFailed, Unauthorized, UnsupportedOperation, VaultError
)
from .rbac import Capability
from .schemas import (
    AccountListResponse, AccountModel, AmountRequest, AmountResponse, ChangedResponse,
    DelayRequest, ErrorResponse, FeeRequest, InitializeRequest, InitializeV2Request,
    InitializeV3Request, ParameterResponse, RateRequest, RevisionResponse, RoleRequest,
    WithdrawalRequestModel, WithdrawalStatusResponse
)
from .vault import TokenVault, create_vault


STATUS_CODES = {
    Unauthorized: status.HTTP_403_FORBIDDEN,
    UnsupportedOperation: status.HTTP_404_NOT_FOUND,
    AlreadyInitialized: status.HTTP_409_CONFLICT,
    DelayNotElapsed: status.HTTP_409_CONFLICT,
    DepositsPaused: status.HTTP_409_CONFLICT,
    ReentrantCall: status.HTTP_409_CONFLICT,
    InvariantViolation: status.HTTP_500_INTERNAL_SERVER_ERROR,
    TransferFailed: status.HTTP_502_BAD_GATEWAY,
}

security = HTTPBearer(auto_error=False)


def status_for(error: VaultError) -> int:
    """HTTP status for a vault error; anything unlisted is a 400"""
    for error_type, code in STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


# Dependencies
def get_vault(request: Request) -> TokenVault:
    return request.app.state.vault


def get_caller(
    vault: TokenVault = Depends(get_vault),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_caller_id: Optional[str] = Header(None)
) -> str:
    """Resolve the identity on whose behalf the request acts"""
    config = vault.config
    if not config.auth_enabled:
        if not x_caller_id:
            raise HTTPException(status_code=401, detail="X-Caller-Id header is required")
        return x_caller_id

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    caller = payload.get("sub")
    if not caller:
        raise HTTPException(status_code=401, detail="Invalid token")
    return caller


def parse_capability(value: str) -> Capability:
    try:
        return Capability(value.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown capability: {value}")


# Revision endpoints
revision_router = APIRouter()


@revision_router.get("", response_model=RevisionResponse)
async def get_revision(vault: TokenVault = Depends(get_vault)):
    return RevisionResponse(
        implementation=vault.implementation_version(),
        schema_version=vault.schema_version()
    )


@revision_router.get("/migrations")
async def get_migration_status(vault: TokenVault = Depends(get_vault)) -> Dict[str, Any]:
    return vault.migration_status()


@revision_router.post("/initialize", response_model=RevisionResponse)
async def initialize(
    request: InitializeRequest,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    vault.initialize(caller, request.asset_ref, request.admin, request.deposit_fee_bps)
    return RevisionResponse(implementation=vault.implementation_version(), schema_version=1)


@revision_router.post("/initialize-v2", response_model=RevisionResponse)
async def initialize_v2(
    request: InitializeV2Request,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    vault.initialize_v2(caller, request.yield_rate_bps)
    return RevisionResponse(implementation=vault.implementation_version(), schema_version=2)


@revision_router.post("/initialize-v3", response_model=RevisionResponse)
async def initialize_v3(
    request: InitializeV3Request,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    vault.initialize_v3(caller, request.withdrawal_delay_seconds)
    return RevisionResponse(implementation=vault.implementation_version(), schema_version=3)


# Vault-wide queries
vault_router = APIRouter()


@vault_router.get("/asset")
async def get_asset(vault: TokenVault = Depends(get_vault)):
    return {"asset_ref": vault.asset_ref()}


@vault_router.get("/admin")
async def get_admin(vault: TokenVault = Depends(get_vault)):
    return {"admin": vault.admin()}


@vault_router.get("/total-principal")
async def get_total_principal(vault: TokenVault = Depends(get_vault)):
    return {"total_principal": vault.total_principal()}


@vault_router.get("/deposit-fee")
async def get_deposit_fee(vault: TokenVault = Depends(get_vault)):
    return {"deposit_fee_bps": vault.deposit_fee()}


@vault_router.get("/yield-rate")
async def get_yield_rate(vault: TokenVault = Depends(get_vault)):
    return {"yield_rate_bps": vault.yield_rate()}


@vault_router.get("/paused")
async def get_paused(vault: TokenVault = Depends(get_vault)):
    return {"paused": vault.is_paused()}


@vault_router.get("/withdrawal-delay")
async def get_withdrawal_delay(vault: TokenVault = Depends(get_vault)):
    return {"withdrawal_delay_seconds": vault.withdrawal_delay()}


@vault_router.get("/invariants")
async def get_invariants(vault: TokenVault = Depends(get_vault)) -> Dict[str, Any]:
    return vault.verify_invariants()


@vault_router.get("/accounts", response_model=AccountListResponse)
async def list_accounts(vault: TokenVault = Depends(get_vault)):
    accounts = vault.accounts()
    return AccountListResponse(
        accounts=[AccountModel.from_account(a) for a in accounts],
        total_principal=vault.total_principal()
    )


# Account endpoints
accounts_router = APIRouter()


@accounts_router.get("/{account}/balance")
async def get_balance(account: str, vault: TokenVault = Depends(get_vault)):
    return {"account": account, "principal": vault.balance_of(account)}


@accounts_router.get("/{account}/yield")
async def get_user_yield(account: str, vault: TokenVault = Depends(get_vault)):
    return {"account": account, "accrued_yield": vault.user_yield(account)}


@accounts_router.get("/{account}/withdrawal", response_model=WithdrawalStatusResponse)
async def get_withdrawal(account: str, vault: TokenVault = Depends(get_vault)):
    request = vault.withdrawal_request_of(account)
    return WithdrawalStatusResponse(
        account=account,
        status=vault.withdrawal_status(account).value,
        request=WithdrawalRequestModel.from_request(request),
        executable_at=request.executable_at(vault.withdrawal_delay()) if request else None
    )


@accounts_router.post("/deposit", response_model=AmountResponse)
async def deposit(
    request: AmountRequest,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    net = vault.deposit(caller, request.amount)
    return AmountResponse(account=caller, amount=net, message="Deposit credited")


@accounts_router.post("/withdraw", response_model=AmountResponse)
async def withdraw(
    request: AmountRequest,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    paid = vault.withdraw(caller, request.amount)
    return AmountResponse(account=caller, amount=paid, message="Withdrawal paid")


@accounts_router.post("/claim-yield", response_model=AmountResponse)
async def claim_yield(caller: str = Depends(get_caller), vault: TokenVault = Depends(get_vault)):
    paid = vault.claim_yield(caller)
    return AmountResponse(account=caller, amount=paid, message="Yield claimed")


# Withdrawal delay endpoints
withdrawals_router = APIRouter()


@withdrawals_router.post("/request", response_model=WithdrawalStatusResponse)
async def request_withdrawal(
    request: AmountRequest,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    pending = vault.request_withdrawal(caller, request.amount)
    return WithdrawalStatusResponse(
        account=caller,
        status=vault.withdrawal_status(caller).value,
        request=WithdrawalRequestModel.from_request(pending),
        executable_at=pending.executable_at(vault.withdrawal_delay())
    )


@withdrawals_router.post("/execute", response_model=AmountResponse)
async def execute_withdrawal(caller: str = Depends(get_caller), vault: TokenVault = Depends(get_vault)):
    paid = vault.execute_withdrawal(caller)
    return AmountResponse(account=caller, amount=paid, message="Withdrawal executed")


@withdrawals_router.post("/emergency", response_model=AmountResponse)
async def emergency_withdraw(caller: str = Depends(get_caller), vault: TokenVault = Depends(get_vault)):
    paid = vault.emergency_withdraw(caller)
    return AmountResponse(account=caller, amount=paid, message="Emergency withdrawal paid")


# Administrative endpoints
admin_router = APIRouter()


@admin_router.post("/deposit-fee", response_model=ParameterResponse)
async def set_deposit_fee(
    request: FeeRequest,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    previous = vault.set_deposit_fee(caller, request.fee_bps)
    return ParameterResponse(parameter="deposit_fee_bps", previous=previous, current=request.fee_bps)


@admin_router.post("/yield-rate", response_model=ParameterResponse)
async def set_yield_rate(
    request: RateRequest,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    previous = vault.set_yield_rate(caller, request.rate_bps)
    return ParameterResponse(parameter="yield_rate_bps", previous=previous, current=request.rate_bps)


@admin_router.post("/withdrawal-delay", response_model=ParameterResponse)
async def set_withdrawal_delay(
    request: DelayRequest,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    previous = vault.set_withdrawal_delay(caller, request.seconds)
    return ParameterResponse(
        parameter="withdrawal_delay_seconds", previous=previous, current=request.seconds
    )


@admin_router.post("/pause", response_model=ChangedResponse)
async def pause_deposits(caller: str = Depends(get_caller), vault: TokenVault = Depends(get_vault)):
    return ChangedResponse(changed=vault.pause_deposits(caller))


@admin_router.post("/unpause", response_model=ChangedResponse)
async def unpause_deposits(caller: str = Depends(get_caller), vault: TokenVault = Depends(get_vault)):
    return ChangedResponse(changed=vault.unpause_deposits(caller))


# Role endpoints
roles_router = APIRouter()


@roles_router.get("/{identity}/{capability}")
async def has_role(identity: str, capability: str, vault: TokenVault = Depends(get_vault)):
    cap = parse_capability(capability)
    return {"identity": identity, "capability": cap.value, "granted": vault.has_role(identity, cap)}


@roles_router.post("/grant", response_model=ChangedResponse)
async def grant_role(
    request: RoleRequest,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    cap = parse_capability(request.capability)
    return ChangedResponse(changed=vault.grant_role(caller, request.identity, cap))


@roles_router.post("/revoke", response_model=ChangedResponse)
async def revoke_role(
    request: RoleRequest,
    caller: str = Depends(get_caller),
    vault: TokenVault = Depends(get_vault)
):
    cap = parse_capability(request.capability)
    return ChangedResponse(changed=vault.revoke_role(caller, request.identity, cap))


# Audit endpoints
audit_router = APIRouter()


@audit_router.get("/events")
async def get_audit_events(limit: int = 100, vault: TokenVault = Depends(get_vault)):
    events = vault.audit_events(limit)
    return {"events": [e.to_dict() for e in events]}


@audit_router.get("/verify")
async def verify_audit(vault: TokenVault = Depends(get_vault)) -> Dict[str, Any]:
    return vault.verify_audit_trail()


def create_app(vault: Optional[TokenVault] = None) -> FastAPI:
    """Create and configure the FastAPI application around ``vault``"""
    app = FastAPI(
        title="Token Vault API",
        description="Custodial token vault with fee-adjusted deposits, yield and delayed withdrawals",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.vault = vault or create_vault()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError):
        return JSONResponse(
            status_code=status_for(exc),
            content=ErrorResponse(code=exc.code, detail=exc.message).model_dump()
        )

    app.include_router(revision_router, prefix="/revision", tags=["Revision"])
    app.include_router(vault_router, prefix="/vault", tags=["Vault"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(withdrawals_router, prefix="/withdrawals", tags=["Withdrawals"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])
    app.include_router(roles_router, prefix="/roles", tags=["Roles"])
    app.include_router(audit_router, prefix="/audit", tags=["Audit"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "token_vault_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "system": "Token Vault",
            "version": __version__,
            "implementation": app.state.vault.implementation_version(),
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "revision": "/revision",
                "vault": "/vault",
                "accounts": "/accounts",
                "withdrawals": "/withdrawals",
                "admin": "/admin",
                "roles": "/roles",
                "audit": "/audit"
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "token_vault.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
