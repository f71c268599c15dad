import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Union
from uuid import uuid4

from .config import Settings
from .exceptions import (
    AccountNotFoundError,
    InsufficientCreditsError,
    InvalidAmountError,
    StoreUnavailableError,
)
from .models import (
    AccountCreditRecord,
    CreditResult,
    CreditSource,
    CreditSummary,
    CreditSystemStats,
    CreditTransaction,
    ErrorCode,
    PaymentValidation,
    ReferralCodeCheck,
    ReferralOutcome,
    ReferralStats,
    TransactionType,
)
from .money import (
    Number,
    calculate_purchase_credits,
    credits_to_dollars,
    format_credit_value,
    format_credits,
    get_credit_tier,
)
from .referrals import (
    ReferralResolver,
    generate_referral_code,
    normalize_referral_code,
    referral_link,
)
from .store import ACCOUNTS, TRANSACTIONS, InMemoryLedgerStore, LedgerStore, Subscription

logger = logging.getLogger(__name__)

REFERRAL_CODE_ATTEMPTS = 5
ORDER_SOURCES = (CreditSource.PURCHASE, CreditSource.PAYMENT)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(f"Amount must be a positive integer, got {amount!r}")


class CreditLedgerService:
    """Sole writer of account balances.

    Every balance change is an atomic read-modify-write on the account record,
    followed by a separate append to the transaction log. A failure between the
    two leaves a committed balance change without a log entry; that failure is
    logged and the result carries ``transaction=None``.
    """

    def __init__(self, store: Optional[LedgerStore] = None, settings: Optional[Settings] = None):
        self.store = store or InMemoryLedgerStore()
        self.settings = settings or Settings()
        self.rates = self.settings.rates
        self.referrals = ReferralResolver(self.store, self, self.rates)

    # -- account lifecycle -------------------------------------------------

    def initialize(self, account_id: str, referral_code: Optional[str] = None) -> CreditResult:
        referral_code = normalize_referral_code(referral_code) or None
        if self.store.get(ACCOUNTS, account_id) is not None:
            return self._already_initialized(account_id)

        bonus = self.rates.signup_bonus
        now = _now()
        record = AccountCreditRecord(
            account_id=account_id,
            total_credits=bonus,
            available_credits=bonus,
            pending_credits=0,
            lifetime_earned=bonus,
            lifetime_spent=0,
            referral_code=self._new_referral_code(account_id),
            referred_by=referral_code,
            created_at=now,
            updated_at=now,
        )
        # create-if-absent; a concurrent first access loses here and gets no bonus
        if not self.store.create(ACCOUNTS, account_id, record.model_dump()):
            return self._already_initialized(account_id)

        transaction = self._log_transaction(
            account_id, TransactionType.EARNED, bonus, CreditSource.SIGNUP,
            "Welcome bonus for new account",
        )
        logger.info("Credit account initialized",
                    extra={"account_id": account_id, "amount": bonus, "source": "signup"})

        result = CreditResult(
            success=True,
            record=record,
            transaction=transaction,
            amount=bonus,
            message=f"Welcome! You've received {format_credits(bonus)} credits!",
        )
        if referral_code:
            result.referral = self._apply_referral(referral_code, account_id)
        return result

    def get_or_initialize(self, account_id: str) -> CreditResult:
        data = self.store.get(ACCOUNTS, account_id)
        if data is None:
            result = self.initialize(account_id)
            if result.success or result.error != ErrorCode.ALREADY_INITIALIZED:
                return result
            # another session created it first
            data = self.store.get(ACCOUNTS, account_id)
            if data is None:
                return CreditResult(success=False, error=ErrorCode.ACCOUNT_NOT_FOUND,
                                    message=f"Credit account {account_id} not found")
        return CreditResult(success=True, record=AccountCreditRecord.model_validate(data))

    # -- mutations ---------------------------------------------------------

    def award(
        self,
        account_id: str,
        amount: int,
        source: Union[CreditSource, str],
        description: str,
        order_id: Optional[str] = None,
        referral_account_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> CreditResult:
        try:
            source = CreditSource(source)
        except ValueError:
            return CreditResult(success=False, error=ErrorCode.INVALID_SOURCE,
                                message=f"Unknown credit source {source!r}")
        try:
            _check_amount(amount)
        except InvalidAmountError as e:
            return CreditResult(success=False, error=ErrorCode.INVALID_AMOUNT, message=str(e))
        if source in ORDER_SOURCES and not order_id:
            return CreditResult(success=False, error=ErrorCode.MISSING_ORDER_ID,
                                message=f"{source.value.capitalize()} credits require an order id")

        def apply(current: Optional[dict]) -> dict:
            if current is None:
                raise AccountNotFoundError(f"Credit account {account_id} not found")
            current["total_credits"] = current.get("total_credits", 0) + amount
            current["available_credits"] = current.get("available_credits", 0) + amount
            current["lifetime_earned"] = current.get("lifetime_earned", 0) + amount
            current["updated_at"] = _now()
            return current

        try:
            updated = self.store.atomic_update(ACCOUNTS, account_id, apply)
        except AccountNotFoundError as e:
            logger.warning(str(e), extra={"account_id": account_id, "amount": amount,
                                          "error_code": ErrorCode.ACCOUNT_NOT_FOUND.value})
            return CreditResult(success=False, error=ErrorCode.ACCOUNT_NOT_FOUND, message=str(e))

        transaction = self._log_transaction(
            account_id, TransactionType.EARNED, amount, source, description,
            order_id=order_id, referral_account_id=referral_account_id, metadata=metadata,
        )
        logger.info("Credits awarded", extra={"account_id": account_id, "amount": amount,
                                              "source": source.value, "order_id": order_id})
        return CreditResult(
            success=True,
            record=AccountCreditRecord.model_validate(updated),
            transaction=transaction,
            amount=amount,
            message=f"You earned {format_credits(amount)} credits!",
        )

    def spend(self, account_id: str, amount: int, order_id: str,
              description: str = "Order payment") -> CreditResult:
        if not order_id:
            return CreditResult(success=False, error=ErrorCode.MISSING_ORDER_ID,
                                message="Credit payments require an order id")
        return self._debit(account_id, amount, CreditSource.PAYMENT, description, order_id=order_id)

    def _debit(self, account_id: str, amount: int, source: CreditSource, description: str,
               order_id: Optional[str] = None, metadata: Optional[dict] = None) -> CreditResult:
        try:
            _check_amount(amount)
        except InvalidAmountError as e:
            return CreditResult(success=False, error=ErrorCode.INVALID_AMOUNT, message=str(e))

        def apply(current: Optional[dict]) -> dict:
            if current is None:
                raise AccountNotFoundError(f"Credit account {account_id} not found")
            available = current.get("available_credits", 0)
            # balance check runs against the value being swapped, not an earlier read
            if available < amount:
                raise InsufficientCreditsError(available, amount)
            current["available_credits"] = available - amount
            current["total_credits"] = current.get("total_credits", 0) - amount
            current["lifetime_spent"] = current.get("lifetime_spent", 0) + amount
            current["updated_at"] = _now()
            return current

        try:
            updated = self.store.atomic_update(ACCOUNTS, account_id, apply)
        except AccountNotFoundError as e:
            logger.warning(str(e), extra={"account_id": account_id, "amount": amount,
                                          "error_code": ErrorCode.ACCOUNT_NOT_FOUND.value})
            return CreditResult(success=False, error=ErrorCode.ACCOUNT_NOT_FOUND, message=str(e))
        except InsufficientCreditsError as e:
            logger.warning("Spend rejected", extra={
                "account_id": account_id, "amount": amount, "order_id": order_id,
                "available_credits": e.available_credits,
                "error_code": ErrorCode.INSUFFICIENT_CREDITS.value,
            })
            return CreditResult(success=False, error=ErrorCode.INSUFFICIENT_CREDITS,
                                available_credits=e.available_credits,
                                message="Insufficient credits")

        transaction = self._log_transaction(
            account_id, TransactionType.SPENT, amount, source, description,
            order_id=order_id, metadata=metadata,
        )
        logger.info("Credits spent", extra={"account_id": account_id, "amount": amount,
                                            "source": source.value, "order_id": order_id})
        record = AccountCreditRecord.model_validate(updated)
        return CreditResult(
            success=True,
            record=record,
            transaction=transaction,
            amount=amount,
            available_credits=record.available_credits,
            message=f"{format_credits(amount)} credits used for payment",
        )

    def process_purchase_credits(self, account_id: str, order_total: Number, order_id: str) -> CreditResult:
        credits_earned = calculate_purchase_credits(order_total, self.rates.purchase_rate)
        if credits_earned == 0:
            return CreditResult(success=True, amount=0, message="No credits earned for this order")
        return self.award(
            account_id,
            credits_earned,
            CreditSource.PURCHASE,
            f"Credits earned from order #{order_id}",
            order_id=order_id,
        )

    def admin_adjust_credits(self, account_id: str, amount: int, reason: str, admin_id: str) -> CreditResult:
        """Award (positive) or debit (negative) on behalf of an administrator.

        Authorization is the caller's responsibility.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            return CreditResult(success=False, error=ErrorCode.INVALID_AMOUNT,
                                message="Adjustment must be a non-zero integer")

        description = f"Admin adjustment: {reason}"
        metadata = {"admin_id": admin_id, "reason": reason}
        if amount > 0:
            return self.award(account_id, amount, CreditSource.ADMIN, description, metadata=metadata)
        return self._debit(account_id, abs(amount), CreditSource.ADMIN, description, metadata=metadata)

    # -- read side ---------------------------------------------------------

    def validate_payment(self, account_id: str, credit_amount: int) -> PaymentValidation:
        """Pre-flight check for checkout. Reserves nothing; ``spend`` re-checks."""
        if isinstance(credit_amount, bool) or not isinstance(credit_amount, int) or credit_amount < 0:
            return PaymentValidation(ok=False, error=ErrorCode.INVALID_AMOUNT,
                                     message="Credit amount must be a non-negative integer")

        result = self.get_or_initialize(account_id)
        if not result.success:
            return PaymentValidation(ok=False, error=result.error, message="Unable to get user credits")

        available = result.record.available_credits
        if credit_amount > available:
            return PaymentValidation(ok=False, available_credits=available,
                                     error=ErrorCode.INSUFFICIENT_CREDITS,
                                     message="Insufficient credits")
        return PaymentValidation(
            ok=True,
            available_credits=available,
            credit_value=credits_to_dollars(credit_amount, self.rates.credit_value),
        )

    def get_transactions(self, account_id: str, limit: int = 50) -> list[CreditTransaction]:
        """Newest first; ties keep the most recently appended entry first."""
        docs = self.store.find_by_field(TRANSACTIONS, "account_id", account_id)
        transactions = [CreditTransaction.model_validate(doc) for doc in reversed(docs)]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions[:limit] if limit > 0 else []

    def count_transactions(self, account_id: str) -> int:
        return len(self.store.find_by_field(TRANSACTIONS, "account_id", account_id))

    def get_referral_stats(self, account_id: str) -> ReferralStats:
        return self.referrals.get_referral_stats(account_id)

    def check_referral_code(self, code: Optional[str]) -> ReferralCodeCheck:
        return self.referrals.check_referral_code(code)

    def process_referral_bonus(self, code: str, new_account_id: str) -> ReferralOutcome:
        return self.referrals.process_referral_bonus(code, new_account_id)

    def get_system_stats(self) -> CreditSystemStats:
        accounts = self.store.list_all(ACCOUNTS)
        transactions = self.store.list_all(TRANSACTIONS)

        def count(source: CreditSource) -> int:
            return sum(1 for t in transactions if t.get("source") == source)

        return CreditSystemStats(
            total_accounts=len(accounts),
            total_credits_issued=sum(a.get("lifetime_earned", 0) for a in accounts),
            total_credits_spent=sum(a.get("lifetime_spent", 0) for a in accounts),
            total_credits_outstanding=sum(a.get("available_credits", 0) for a in accounts),
            total_transactions=len(transactions),
            signup_bonuses=count(CreditSource.SIGNUP),
            referral_bonuses=count(CreditSource.REFERRAL),
            purchase_credits=count(CreditSource.PURCHASE),
            credit_payments=count(CreditSource.PAYMENT),
            admin_adjustments=count(CreditSource.ADMIN),
        )

    def get_summary(self, account_id: str, base_url: Optional[str] = None) -> Optional[CreditSummary]:
        result = self.get_or_initialize(account_id)
        if not result.success:
            return None
        record = result.record
        return CreditSummary(
            record=record,
            tier=get_credit_tier(record.lifetime_earned),
            formatted_credits=format_credits(record.available_credits),
            formatted_value=format_credit_value(record.available_credits, self.rates.credit_value),
            referral_link=referral_link(record.referral_code, base_url or self.settings.referral_base_url),
        )

    def subscribe(self, account_id: str,
                  callback: Callable[[Optional[AccountCreditRecord]], None]) -> Subscription:
        """Push the committed record to ``callback`` after every change.

        ``None`` is delivered while the account does not exist. Subscribers
        should re-fetch after a reconnect rather than rely on delivery.
        """
        def listener(value: Optional[dict]) -> None:
            callback(AccountCreditRecord.model_validate(value) if value is not None else None)

        return self.store.subscribe(ACCOUNTS, account_id, listener)

    # -- helpers -----------------------------------------------------------

    def _already_initialized(self, account_id: str) -> CreditResult:
        logger.warning("Credit account already initialized",
                       extra={"account_id": account_id,
                              "error_code": ErrorCode.ALREADY_INITIALIZED.value})
        return CreditResult(success=False, error=ErrorCode.ALREADY_INITIALIZED,
                            message="User credits already initialized")

    def _new_referral_code(self, account_id: str) -> str:
        code = generate_referral_code(account_id)
        for _ in range(REFERRAL_CODE_ATTEMPTS - 1):
            if not self.referrals.code_exists(code):
                break
            code = generate_referral_code(account_id)
        return code

    def _apply_referral(self, referral_code: str, account_id: str) -> ReferralOutcome:
        # signup stands regardless of what happens to the referral bonus
        try:
            return self.referrals.process_referral_bonus(referral_code, account_id)
        except StoreUnavailableError:
            logger.exception("Referral bonus failed after signup",
                             extra={"account_id": account_id,
                                    "error_code": ErrorCode.STORE_UNAVAILABLE.value})
            return ReferralOutcome(success=False, error=ErrorCode.STORE_UNAVAILABLE,
                                   message="Referral bonus could not be processed")

    def _log_transaction(
        self,
        account_id: str,
        type: TransactionType,
        amount: int,
        source: CreditSource,
        description: str,
        order_id: Optional[str] = None,
        referral_account_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[CreditTransaction]:
        transaction = CreditTransaction(
            transaction_id=uuid4().hex,
            account_id=account_id,
            type=type,
            amount=amount,
            source=source,
            description=description,
            order_id=order_id,
            referral_account_id=referral_account_id,
            created_at=_now(),
            metadata=metadata or {},
        )
        try:
            self.store.append(TRANSACTIONS, transaction.model_dump())
        except StoreUnavailableError:
            logger.exception("Balance committed but transaction log append failed", extra={
                "account_id": account_id, "amount": amount, "source": source.value,
                "order_id": order_id,
            })
            return None
        return transaction
