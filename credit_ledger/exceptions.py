class CreditLedgerError(Exception):
    pass


class AccountNotFoundError(CreditLedgerError):
    pass


class AlreadyInitializedError(CreditLedgerError):
    pass


class InvalidAmountError(CreditLedgerError):
    pass


class InsufficientCreditsError(CreditLedgerError):
    def __init__(self, available_credits: int, requested: int):
        self.available_credits = available_credits
        self.requested = requested
        super().__init__(
            f"Insufficient credits: requested {requested}, available {available_credits}"
        )


class CodeNotFoundError(CreditLedgerError):
    pass


class SelfReferralNotAllowedError(CreditLedgerError):
    pass


class DuplicateReferralError(CreditLedgerError):
    pass


class StoreUnavailableError(CreditLedgerError):
    pass


class TransactionConflictError(StoreUnavailableError):
    """Optimistic update gave up after repeated version conflicts."""
