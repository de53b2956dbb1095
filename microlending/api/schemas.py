"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from datetime import date
from typing import Literal, Optional
from pydantic import BaseModel, Field

from ..money import decimal_from_string
from ..errors import InvalidLoanTermsError, InvalidPaymentAmountError
from ..amortization import LoanStructure, PaymentFrequency
from ..loans import PaymentType
from ..allocation import PaymentComponents


def parse_amount(value: Optional[str], error_cls=InvalidPaymentAmountError) -> Optional[Decimal]:
    """Parse a user-entered amount, raising the engine error the caller expects"""
    if value is None:
        return None
    try:
        return decimal_from_string(value)
    except ValueError:
        raise error_cls(f"'{value}' is not a valid amount")


# Loan schemas
class CreateLoanRequest(BaseModel):
    client_id: str
    principal_amount: str = Field(..., description="Decimal amount as string")
    structure: LoanStructure
    payment_frequency: PaymentFrequency
    term_count: int = Field(..., ge=1)
    created_by_id: str
    annual_interest_rate: Optional[str] = Field(None, description="Annual percentage, 24 means 24%")
    total_finance_charge: Optional[str] = Field(None, description="Required for FLAT_RATE loans")
    guarantees: Optional[str] = None
    start_date: Optional[date] = None

    def to_kwargs(self) -> dict:
        return {
            "client_id": self.client_id,
            "principal_amount": parse_amount(self.principal_amount, InvalidLoanTermsError),
            "structure": self.structure,
            "payment_frequency": self.payment_frequency,
            "term_count": self.term_count,
            "created_by_id": self.created_by_id,
            "annual_interest_rate": parse_amount(self.annual_interest_rate, InvalidLoanTermsError),
            "total_finance_charge": parse_amount(self.total_finance_charge, InvalidLoanTermsError),
            "guarantees": self.guarantees,
            "start_date": self.start_date,
        }


class CancelLoanRequest(BaseModel):
    canceled_by_id: str
    reason: Optional[str] = None


class LoanActionRequest(BaseModel):
    action: Literal["mark_overdue"]
    user_id: str
    reason: Optional[str] = None


# Payment schemas
class PaymentRequest(BaseModel):
    loan_id: str
    total_amount: str = Field(..., description="Decimal amount as string")
    payment_type: PaymentType = PaymentType.REGULAR
    created_by_id: str
    payment_date: Optional[date] = None
    capital_applied: Optional[str] = None
    interest_applied: Optional[str] = None
    late_fee_applied: Optional[str] = None

    def components(self) -> Optional[PaymentComponents]:
        """Explicit split, when both capital and interest are supplied"""
        if self.capital_applied is None or self.interest_applied is None:
            return None
        return PaymentComponents(
            capital=parse_amount(self.capital_applied),
            interest=parse_amount(self.interest_applied),
            late_fee=parse_amount(self.late_fee_applied) or Decimal('0.00')
        )


class ReversePaymentRequest(BaseModel):
    reversed_by_id: str
    reason: Optional[str] = None
