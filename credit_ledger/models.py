from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    EARNED = "earned"
    SPENT = "spent"


class CreditSource(str, Enum):
    SIGNUP = "signup"
    REFERRAL = "referral"
    PURCHASE = "purchase"
    PAYMENT = "payment"
    ADMIN = "admin"


class ErrorCode(str, Enum):
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ALREADY_INITIALIZED = "ALREADY_INITIALIZED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_SOURCE = "INVALID_SOURCE"
    MISSING_ORDER_ID = "MISSING_ORDER_ID"
    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    SELF_REFERRAL_NOT_ALLOWED = "SELF_REFERRAL_NOT_ALLOWED"
    DUPLICATE_REFERRAL = "DUPLICATE_REFERRAL"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class AccountCreditRecord(BaseModel):
    account_id: str
    total_credits: int = Field(ge=0)
    available_credits: int = Field(ge=0)
    pending_credits: int = Field(default=0, ge=0)
    lifetime_earned: int = Field(ge=0)
    lifetime_spent: int = Field(default=0, ge=0)
    referral_code: str
    referred_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreditTransaction(BaseModel):
    transaction_id: str
    account_id: str
    type: TransactionType
    amount: int = Field(gt=0)
    source: CreditSource
    description: str
    order_id: Optional[str] = None
    referral_account_id: Optional[str] = None
    status: str = "completed"
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class ReferralOutcome(BaseModel):
    success: bool
    referrer_id: Optional[str] = None
    transaction: Optional[CreditTransaction] = None
    error: Optional[ErrorCode] = None
    message: str = ""


class CreditResult(BaseModel):
    success: bool
    record: Optional[AccountCreditRecord] = None
    transaction: Optional[CreditTransaction] = None
    amount: int = 0
    error: Optional[ErrorCode] = None
    available_credits: Optional[int] = None
    message: str = ""
    referral: Optional[ReferralOutcome] = None


class ReferralCodeCheck(BaseModel):
    valid: bool
    exists: Optional[bool] = None
    message: Optional[str] = None
    error: Optional[str] = None


class PaymentValidation(BaseModel):
    ok: bool
    available_credits: int = 0
    credit_value: Decimal = Decimal("0.00")
    error: Optional[ErrorCode] = None
    message: str = ""


class ReferralStats(BaseModel):
    account_id: str
    total_referrals: int
    total_referral_credits: int
    referral_history: list[CreditTransaction]


class CreditSystemStats(BaseModel):
    total_accounts: int
    total_credits_issued: int
    total_credits_spent: int
    total_credits_outstanding: int
    total_transactions: int
    signup_bonuses: int
    referral_bonuses: int
    purchase_credits: int
    credit_payments: int
    admin_adjustments: int


class CreditTier(BaseModel):
    tier: str
    threshold: int
    next_tier: Optional[int] = None


class CreditSummary(BaseModel):
    record: AccountCreditRecord
    tier: CreditTier
    formatted_credits: str
    formatted_value: str
    referral_link: str


class TransactionHistoryResponse(BaseModel):
    account_id: str
    transactions: list[CreditTransaction]
    total_count: int


class InitializeAccountRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    referral_code: Optional[str] = Field(default=None, description="Code of the referring account")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "account_id": "u8Kq2mZt1xYb",
            "referral_code": "AB12CDE3FG45",
        }
    })


class AwardCreditsRequest(BaseModel):
    amount: int = Field(..., gt=0)
    source: CreditSource
    description: str
    order_id: Optional[str] = None
    referral_account_id: Optional[str] = None


class SpendCreditsRequest(BaseModel):
    amount: int = Field(..., gt=0)
    order_id: str = Field(..., min_length=1)
    description: str = "Order payment"


class ValidatePaymentRequest(BaseModel):
    credit_amount: int = Field(..., ge=0)


class PurchaseCreditsRequest(BaseModel):
    order_total: Decimal = Field(..., ge=0, description="Order total in dollars")
    order_id: str = Field(..., min_length=1)

    model_config = ConfigDict(json_schema_extra={
        "example": {"order_total": "45.99", "order_id": "O-1001"}
    })


class AdminAdjustRequest(BaseModel):
    amount: int = Field(..., description="Positive to award, negative to debit")
    reason: str
    admin_id: str
