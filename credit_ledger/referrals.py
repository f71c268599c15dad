import logging
import re
import secrets
import string
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from .config import CreditRates
from .exceptions import (
    CodeNotFoundError,
    DuplicateReferralError,
    SelfReferralNotAllowedError,
    StoreUnavailableError,
)
from .models import (
    CreditSource,
    CreditTransaction,
    ErrorCode,
    ReferralCodeCheck,
    ReferralOutcome,
    ReferralStats,
)
from .store import ACCOUNTS, REFERRAL_CLAIMS, TRANSACTIONS, LedgerStore

if TYPE_CHECKING:
    from .service import CreditLedgerService

logger = logging.getLogger(__name__)

REFERRAL_CODE_LENGTH = 12
REFERRAL_CODE_PATTERN = re.compile(r"^[A-Z0-9]{12}$")
CODE_ALPHABET = string.ascii_uppercase + string.digits
BASE36_DIGITS = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def normalize_referral_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def generate_referral_code(account_id: str) -> str:
    """12-character code: up to 3 account characters, the low 3 base-36 digits
    of the millisecond clock, and a random fill of at least 6 characters."""
    user_part = re.sub(r"[^A-Z0-9]", "", account_id.upper())[:3]
    timestamp = _base36(int(time.time() * 1000))[-3:]
    random_length = REFERRAL_CODE_LENGTH - len(user_part) - len(timestamp)
    random_part = "".join(secrets.choice(CODE_ALPHABET) for _ in range(random_length))
    return f"{user_part}{timestamp}{random_part}"


def validate_referral_code_format(code: Optional[str]) -> ReferralCodeCheck:
    if not code:
        return ReferralCodeCheck(valid=False, error="Referral code is required")
    if not REFERRAL_CODE_PATTERN.match(code):
        return ReferralCodeCheck(valid=False, error="Invalid referral code format")
    return ReferralCodeCheck(valid=True)


def referral_link(code: str, base_url: str) -> str:
    if not code:
        return ""
    return f"{base_url.rstrip('/')}/register?ref={code}"


def _claim_key(referrer_id: str, referred_account_id: str) -> str:
    return f"{referrer_id}:{referred_account_id}"


class ReferralResolver:
    """Maps referral codes to accounts and pays each referral bonus once."""

    def __init__(self, store: LedgerStore, ledger: "CreditLedgerService", rates: CreditRates):
        self.store = store
        self.ledger = ledger
        self.rates = rates

    def find_referrer(self, code: str) -> Optional[str]:
        matches = self.store.find_by_field(ACCOUNTS, "referral_code", code, limit=1)
        return matches[0]["account_id"] if matches else None

    def code_exists(self, code: str) -> bool:
        return self.find_referrer(normalize_referral_code(code)) is not None

    def _lookup(self, code: str, new_account_id: Optional[str]) -> str:
        referrer_id = self.find_referrer(code)
        if referrer_id is None:
            raise CodeNotFoundError(f"Referral code {code} not found")
        if new_account_id is not None and referrer_id == new_account_id:
            raise SelfReferralNotAllowedError("Cannot refer yourself")
        return referrer_id

    def resolve(self, code: str, new_account_id: Optional[str] = None) -> ReferralOutcome:
        code = normalize_referral_code(code)
        try:
            referrer_id = self._lookup(code, new_account_id)
        except CodeNotFoundError:
            return ReferralOutcome(success=False, error=ErrorCode.CODE_NOT_FOUND,
                                   message="Invalid referral code")
        except SelfReferralNotAllowedError:
            return ReferralOutcome(success=False, error=ErrorCode.SELF_REFERRAL_NOT_ALLOWED,
                                   message="Cannot refer yourself")
        return ReferralOutcome(success=True, referrer_id=referrer_id,
                               message=f"Referral code belongs to {referrer_id}")

    def _claim(self, referrer_id: str, new_account_id: str) -> str:
        key = _claim_key(referrer_id, new_account_id)
        claimed = self.store.create(REFERRAL_CLAIMS, key, {
            "referrer_id": referrer_id,
            "referred_account_id": new_account_id,
            "source": CreditSource.REFERRAL.value,
            "created_at": datetime.now(timezone.utc),
        })
        if not claimed:
            raise DuplicateReferralError(
                f"Referral bonus for {new_account_id} already credited to {referrer_id}"
            )
        return key

    def process_referral_bonus(self, code: str, new_account_id: str) -> ReferralOutcome:
        resolution = self.resolve(code, new_account_id)
        if not resolution.success:
            logger.warning(
                "Referral bonus not granted: %s", resolution.message,
                extra={"account_id": new_account_id, "error_code": resolution.error.value},
            )
            return resolution

        referrer_id = resolution.referrer_id
        try:
            claim = self._claim(referrer_id, new_account_id)
        except DuplicateReferralError as e:
            logger.warning(str(e), extra={"referrer_id": referrer_id, "account_id": new_account_id,
                                          "error_code": ErrorCode.DUPLICATE_REFERRAL.value})
            return ReferralOutcome(success=False, referrer_id=referrer_id,
                                   error=ErrorCode.DUPLICATE_REFERRAL,
                                   message="Referral bonus already awarded for this account")

        try:
            result = self.ledger.award(
                referrer_id,
                self.rates.referral_bonus,
                CreditSource.REFERRAL,
                "Referral bonus for inviting new user",
                referral_account_id=new_account_id,
            )
        except StoreUnavailableError:
            self._release_claim(claim, referrer_id, new_account_id)
            raise

        if not result.success:
            self._release_claim(claim, referrer_id, new_account_id)
            return ReferralOutcome(success=False, referrer_id=referrer_id,
                                   error=result.error, message=result.message)

        logger.info("Referral bonus awarded",
                    extra={"referrer_id": referrer_id, "account_id": new_account_id,
                           "amount": self.rates.referral_bonus})
        return ReferralOutcome(
            success=True,
            referrer_id=referrer_id,
            transaction=result.transaction,
            message=f"Referral bonus awarded to {referrer_id}",
        )

    def _release_claim(self, claim: str, referrer_id: str, new_account_id: str) -> None:
        try:
            self.store.delete(REFERRAL_CLAIMS, claim)
        except StoreUnavailableError:
            # claim stays behind with no award; remove it by hand to allow a retry
            logger.exception("Could not release referral claim %s", claim,
                             extra={"referrer_id": referrer_id, "account_id": new_account_id,
                                    "error_code": ErrorCode.STORE_UNAVAILABLE.value})

    def check_referral_code(self, code: Optional[str]) -> ReferralCodeCheck:
        code = normalize_referral_code(code)
        validation = validate_referral_code_format(code)
        if not validation.valid:
            return validation

        if self.code_exists(code):
            return ReferralCodeCheck(
                valid=True,
                exists=True,
                message="Valid referral code! You'll receive bonus credits after signup.",
            )
        return ReferralCodeCheck(valid=False, exists=False, error="Referral code not found")

    def get_referral_stats(self, account_id: str) -> ReferralStats:
        history = [
            CreditTransaction.model_validate(doc)
            for doc in self.store.find_by_field(TRANSACTIONS, "account_id", account_id)
            if doc.get("source") == CreditSource.REFERRAL
        ]
        history.sort(key=lambda t: t.created_at, reverse=True)
        return ReferralStats(
            account_id=account_id,
            total_referrals=len(history),
            total_referral_credits=sum(t.amount for t in history),
            referral_history=history,
        )
