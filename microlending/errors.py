"""Typed errors raised by the lending engine.

Each error carries a stable ``code`` and the HTTP ``status_code`` the
calling layer should answer with. The engine raises them unmodified; it
never maps them to responses itself.
"""


class LendingError(Exception):
    """Base exception for all engine errors."""

    code = "LENDING_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class LoanNotFoundError(LendingError):
    """Raised when a referenced loan does not exist."""

    code = "LOAN_NOT_FOUND"
    status_code = 404

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id


class PaymentNotFoundError(LendingError):
    """Raised when a referenced payment does not exist."""

    code = "PAYMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found")
        self.payment_id = payment_id


class PaymentNotAllowedError(LendingError):
    """Raised when the loan status forbids the requested operation."""

    code = "PAYMENT_NOT_ALLOWED"

    def __init__(self, loan_id: str, status: str, message: str = None):
        super().__init__(
            message or f"Loan {loan_id} does not accept this operation in status {status}"
        )
        self.loan_id = loan_id
        self.status = status


class InvalidStatusTransitionError(PaymentNotAllowedError):
    """Raised when a lifecycle event is not legal from the current status."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, status: str, event: str, loan_id: str = ""):
        super().__init__(
            loan_id, status,
            f"Cannot apply {event} to a loan in status {status}"
        )
        self.event = event


class CannotReversePaymentError(PaymentNotAllowedError):
    """Raised when a payment cannot be reversed."""

    code = "CANNOT_REVERSE_PAYMENT"

    def __init__(self, payment_id: str, reason: str, loan_id: str = "", status: str = ""):
        super().__init__(
            loan_id, status,
            f"Cannot reverse payment {payment_id}: {reason}"
        )
        self.payment_id = payment_id


class InvalidPaymentAmountError(LendingError):
    """Raised when a payment amount or its components are invalid."""

    code = "INVALID_PAYMENT_AMOUNT"


class InvalidLoanTermsError(LendingError):
    """Raised when loan terms cannot produce a valid schedule."""

    code = "INVALID_LOAN_TERMS"


class PaymentExceedsBalanceError(InvalidPaymentAmountError):
    """Raised when the capital portion exceeds the remaining capital."""

    code = "PAYMENT_EXCEEDS_BALANCE"

    def __init__(self, capital_applied, remaining_capital):
        super().__init__(
            f"Capital applied ({capital_applied}) exceeds the remaining balance ({remaining_capital})"
        )
        self.capital_applied = capital_applied
        self.remaining_capital = remaining_capital
