"""
Pydantic schemas for API requests and responses
"""

from typing import List, Optional
from pydantic import BaseModel, Field

from .schema import Account, WithdrawalRequest


# Revision schemas
class InitializeRequest(BaseModel):
    asset_ref: str = Field(..., description="Reference to the custodied token")
    admin: str = Field(..., description="Identity receiving the admin and upgrader capabilities")
    deposit_fee_bps: int = Field(..., description="Intake fee in basis points")


class InitializeV2Request(BaseModel):
    yield_rate_bps: int = Field(..., description="Annual simple yield rate in basis points")


class InitializeV3Request(BaseModel):
    withdrawal_delay_seconds: int = Field(..., description="Delay between request and execution")


class RevisionResponse(BaseModel):
    implementation: str
    schema_version: int


# Ledger schemas
class AmountRequest(BaseModel):
    amount: int = Field(..., description="Quantity in base units of the asset")


class AmountResponse(BaseModel):
    account: str
    amount: int
    message: str


# Parameter schemas
class FeeRequest(BaseModel):
    fee_bps: int


class RateRequest(BaseModel):
    rate_bps: int


class DelayRequest(BaseModel):
    seconds: int


class ParameterResponse(BaseModel):
    parameter: str
    previous: int
    current: int


# Role schemas
class RoleRequest(BaseModel):
    identity: str
    capability: str = Field(..., description="Capability (admin, upgrader, pauser)")


class ChangedResponse(BaseModel):
    changed: bool


# Withdrawal schemas
class WithdrawalRequestModel(BaseModel):
    amount: int
    request_time: int

    @classmethod
    def from_request(cls, request: Optional[WithdrawalRequest]) -> Optional['WithdrawalRequestModel']:
        if request is None:
            return None
        return cls(amount=request.amount, request_time=request.request_time)


class WithdrawalStatusResponse(BaseModel):
    account: str
    status: str
    request: Optional[WithdrawalRequestModel] = None
    executable_at: Optional[int] = None


# Account schemas
class AccountModel(BaseModel):
    identity: str
    principal: int
    last_yield_claim_time: int = 0
    pending_yield: int = 0
    withdrawal_request: Optional[WithdrawalRequestModel] = None

    @classmethod
    def from_account(cls, account: Account) -> 'AccountModel':
        return cls(
            identity=account.identity,
            principal=account.principal,
            last_yield_claim_time=account.last_yield_claim_time,
            pending_yield=account.pending_yield,
            withdrawal_request=WithdrawalRequestModel.from_request(account.withdrawal_request)
        )


class AccountListResponse(BaseModel):
    accounts: List[AccountModel]
    total_principal: int


class ErrorResponse(BaseModel):
    code: str
    detail: str
