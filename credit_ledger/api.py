from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .exceptions import StoreUnavailableError
from .logger import setup_logger
from .models import (
    AccountCreditRecord, AdminAdjustRequest, AwardCreditsRequest, CreditResult,
    CreditSummary, CreditSystemStats, ErrorCode, InitializeAccountRequest,
    PaymentValidation, PurchaseCreditsRequest, ReferralCodeCheck, ReferralStats,
    SpendCreditsRequest, TransactionHistoryResponse, ValidatePaymentRequest,
)
from .service import CreditLedgerService

ERROR_STATUS = {
    ErrorCode.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.ALREADY_INITIALIZED: status.HTTP_409_CONFLICT,
    ErrorCode.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_SOURCE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.MISSING_ORDER_ID: status.HTTP_400_BAD_REQUEST,
    ErrorCode.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

settings = load_settings()
ledger_service = CreditLedgerService(settings=settings)

router = APIRouter()


def get_ledger_service() -> CreditLedgerService:
    return ledger_service


def _raise_for_result(result: CreditResult) -> None:
    if result.success:
        return
    code = ERROR_STATUS.get(result.error, status.HTTP_400_BAD_REQUEST)
    detail = {"error": result.error.value if result.error else None, "message": result.message}
    if result.available_credits is not None:
        detail["available_credits"] = result.available_credits
    raise HTTPException(status_code=code, detail=detail)


@router.get("/health", tags=["System"])
def health_check(request: Request):
    return {"status": "healthy", "service": request.app.state.settings.service_name}


@router.post("/accounts", response_model=CreditResult, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def initialize_account(request: InitializeAccountRequest,
                       service: CreditLedgerService = Depends(get_ledger_service)) -> CreditResult:
    result = service.initialize(request.account_id, request.referral_code)
    _raise_for_result(result)
    return result


@router.get("/accounts/{account_id}/credits", response_model=AccountCreditRecord, tags=["Accounts"])
def get_credits(account_id: str, service: CreditLedgerService = Depends(get_ledger_service)) -> AccountCreditRecord:
    result = service.get_or_initialize(account_id)
    _raise_for_result(result)
    return result.record


@router.get("/accounts/{account_id}/summary", response_model=CreditSummary, tags=["Accounts"])
def get_summary(account_id: str, base_url: Optional[str] = None,
                service: CreditLedgerService = Depends(get_ledger_service)) -> CreditSummary:
    summary = service.get_summary(account_id, base_url)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Credit account {account_id} not found")
    return summary


@router.post("/accounts/{account_id}/credits/award", response_model=CreditResult, tags=["Credits"])
def award_credits(account_id: str, request: AwardCreditsRequest,
                  service: CreditLedgerService = Depends(get_ledger_service)) -> CreditResult:
    result = service.award(account_id, request.amount, request.source, request.description,
                           order_id=request.order_id, referral_account_id=request.referral_account_id)
    _raise_for_result(result)
    return result


@router.post("/accounts/{account_id}/credits/spend", response_model=CreditResult, tags=["Credits"])
def spend_credits(account_id: str, request: SpendCreditsRequest,
                  service: CreditLedgerService = Depends(get_ledger_service)) -> CreditResult:
    result = service.spend(account_id, request.amount, request.order_id, request.description)
    _raise_for_result(result)
    return result


@router.post("/accounts/{account_id}/credits/validate", response_model=PaymentValidation, tags=["Credits"])
def validate_payment(account_id: str, request: ValidatePaymentRequest,
                     service: CreditLedgerService = Depends(get_ledger_service)) -> PaymentValidation:
    return service.validate_payment(account_id, request.credit_amount)


@router.post("/accounts/{account_id}/purchases", response_model=CreditResult, tags=["Credits"])
def purchase_credits(account_id: str, request: PurchaseCreditsRequest,
                     service: CreditLedgerService = Depends(get_ledger_service)) -> CreditResult:
    result = service.process_purchase_credits(account_id, request.order_total, request.order_id)
    _raise_for_result(result)
    return result


@router.post("/accounts/{account_id}/credits/adjust", response_model=CreditResult, tags=["Admin"])
def admin_adjust(account_id: str, request: AdminAdjustRequest,
                 service: CreditLedgerService = Depends(get_ledger_service)) -> CreditResult:
    result = service.admin_adjust_credits(account_id, request.amount, request.reason, request.admin_id)
    _raise_for_result(result)
    return result


@router.get("/accounts/{account_id}/transactions", response_model=TransactionHistoryResponse, tags=["Credits"])
def get_transactions(account_id: str, limit: int = 50,
                     service: CreditLedgerService = Depends(get_ledger_service)) -> TransactionHistoryResponse:
    return TransactionHistoryResponse(
        account_id=account_id,
        transactions=service.get_transactions(account_id, limit),
        total_count=service.count_transactions(account_id),
    )


@router.get("/accounts/{account_id}/referrals", response_model=ReferralStats, tags=["Referrals"])
def get_referral_stats(account_id: str,
                       service: CreditLedgerService = Depends(get_ledger_service)) -> ReferralStats:
    return service.get_referral_stats(account_id)


@router.get("/referral-codes/{code}", response_model=ReferralCodeCheck, tags=["Referrals"])
def check_referral_code(code: str, service: CreditLedgerService = Depends(get_ledger_service)) -> ReferralCodeCheck:
    return service.check_referral_code(code)


@router.get("/admin/stats", response_model=CreditSystemStats, tags=["Admin"])
def get_system_stats(service: CreditLedgerService = Depends(get_ledger_service)) -> CreditSystemStats:
    return service.get_system_stats()


async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"error": ErrorCode.STORE_UNAVAILABLE.value, "message": str(exc)}},
    )


def create_app(app_settings: Optional[Settings] = None, root_path: str = "") -> FastAPI:
    app_settings = app_settings or settings
    setup_logger(level=app_settings.log_level)

    app = FastAPI(
        title="Credit Ledger API",
        description="Loyalty credit balances, referral bonuses and purchase rewards",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = app_settings
    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
