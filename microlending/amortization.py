"""
Amortization Module

Installment calculation and amortization tables for interest-bearing
(French method) and flat-rate loans, plus the due-date stepping shared by
schedule generation, late-fee day counting and maturity dates.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import calendar

from .money import ZERO, HUNDRED, to_decimal, round_money
from .errors import InvalidLoanTermsError


class PaymentFrequency(Enum):
    """Payment frequency options"""
    DAILY = "DAILY"          # 360 payments per year (commercial year)
    WEEKLY = "WEEKLY"        # 52 payments per year
    BIWEEKLY = "BIWEEKLY"    # 26 payments per year
    MONTHLY = "MONTHLY"      # 12 payments per year

    @property
    def periods_per_year(self) -> int:
        return _PERIODS_PER_YEAR[self]


_PERIODS_PER_YEAR = {
    PaymentFrequency.DAILY: 360,
    PaymentFrequency.WEEKLY: 52,
    PaymentFrequency.BIWEEKLY: 26,
    PaymentFrequency.MONTHLY: 12,
}


class LoanStructure(Enum):
    """How the cost of credit is charged"""
    INTEREST_BEARING = "INTEREST_BEARING"  # Interest on declining balance
    FLAT_RATE = "FLAT_RATE"                # Fixed finance charge spread evenly


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(start_date: date, frequency: PaymentFrequency, installment_number: int) -> date:
    """
    Due date of the n-th installment counted from the loan start date

    Stepping is always computed from the start date so a loan opened on the
    31st keeps falling on each month's last day instead of drifting to the 28th.

    Args:
        start_date: Loan start (disbursement) date
        frequency: Payment frequency
        installment_number: 1-based installment number (0 returns start_date)

    Returns:
        Due date
    """
    if frequency == PaymentFrequency.DAILY:
        return start_date + timedelta(days=installment_number)
    elif frequency == PaymentFrequency.WEEKLY:
        return start_date + timedelta(days=7 * installment_number)
    elif frequency == PaymentFrequency.BIWEEKLY:
        return start_date + timedelta(days=14 * installment_number)
    elif frequency == PaymentFrequency.MONTHLY:
        return add_months(start_date, installment_number)
    else:
        raise ValueError(f"Unsupported payment frequency: {frequency}")


def maturity_date(start_date: date, frequency: PaymentFrequency, term_count: int) -> date:
    """Date of the final installment, as printed on legal documents"""
    return due_date_for(start_date, frequency, term_count)


@dataclass(frozen=True)
class LoanTerms:
    """Validated loan terms"""
    principal_amount: Decimal
    structure: LoanStructure
    payment_frequency: PaymentFrequency
    term_count: int
    annual_interest_rate: Optional[Decimal] = None   # Percentage, 24 means 24%/yr
    total_finance_charge: Optional[Decimal] = None   # FLAT_RATE only

    def __post_init__(self):
        object.__setattr__(self, 'principal_amount', round_money(self.principal_amount))
        if self.annual_interest_rate is not None:
            object.__setattr__(self, 'annual_interest_rate', to_decimal(self.annual_interest_rate))
        if self.total_finance_charge is not None:
            object.__setattr__(self, 'total_finance_charge', round_money(self.total_finance_charge))

        if self.principal_amount <= ZERO:
            raise InvalidLoanTermsError("Principal amount must be greater than zero")
        if not isinstance(self.term_count, int) or self.term_count < 1:
            raise InvalidLoanTermsError("Term count must be at least 1")

        if self.structure == LoanStructure.INTEREST_BEARING:
            if self.annual_interest_rate is None:
                raise InvalidLoanTermsError("Interest-bearing loans require an annual interest rate")
            if self.annual_interest_rate < 0:
                raise InvalidLoanTermsError("Annual interest rate cannot be negative")
        elif self.structure == LoanStructure.FLAT_RATE:
            if self.total_finance_charge is None:
                raise InvalidLoanTermsError("Flat-rate loans require a total finance charge")
            if self.total_finance_charge < ZERO:
                raise InvalidLoanTermsError("Total finance charge cannot be negative")

    @property
    def finance_charge(self) -> Decimal:
        """Finance charge for FLAT_RATE loans, zero otherwise"""
        if self.structure == LoanStructure.FLAT_RATE:
            return self.total_finance_charge
        return ZERO

    @property
    def total_payable(self) -> Decimal:
        """Principal plus flat finance charge (interest-bearing: principal only)"""
        return self.principal_amount + self.finance_charge


@dataclass
class AmortizationEntry:
    """Single row of a display amortization table"""
    installment_number: int
    due_date: date
    total_payment: Decimal
    interest: Decimal
    capital: Decimal
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'total_payment': str(self.total_payment),
            'interest': str(self.interest),
            'capital': str(self.capital),
            'balance': str(self.balance),
        }


def periodic_rate(annual_interest_rate: Decimal, frequency: PaymentFrequency) -> Decimal:
    """Convert an annual percentage into a per-period fraction"""
    return to_decimal(annual_interest_rate) / HUNDRED / Decimal(frequency.periods_per_year)


def compute_installment(terms: LoanTerms) -> Decimal:
    """
    Compute the fixed installment amount

    FLAT_RATE: (principal + finance charge) / term count.
    INTEREST_BEARING: principal * r / (1 - (1 + r)^-n), or principal / n when r = 0.

    Args:
        terms: Validated loan terms

    Returns:
        Installment rounded to cents
    """
    n = terms.term_count

    if terms.structure == LoanStructure.FLAT_RATE:
        return round_money(terms.total_payable / Decimal(n))

    rate = periodic_rate(terms.annual_interest_rate, terms.payment_frequency)
    if rate == 0:
        return round_money(terms.principal_amount / Decimal(n))

    factor = (Decimal('1') + rate) ** -n
    return round_money(terms.principal_amount * rate / (Decimal('1') - factor))


def flat_interest_share(terms: LoanTerms) -> Decimal:
    """Per-installment share of the flat finance charge"""
    return round_money(terms.finance_charge / Decimal(terms.term_count))


def build_schedule(terms: LoanTerms, start_date: date) -> List[AmortizationEntry]:
    """
    Build the full amortization table

    Rounding drift is absorbed by the last installment, so the capital column
    always sums to the principal and, for FLAT_RATE, the totals sum to
    principal + finance charge.

    Args:
        terms: Validated loan terms
        start_date: Loan start date; the first installment falls one period later

    Returns:
        List of AmortizationEntry ordered by installment number
    """
    if terms.structure == LoanStructure.FLAT_RATE:
        schedule = _build_flat_rate_schedule(terms, start_date)
    else:
        schedule = _build_declining_balance_schedule(terms, start_date)

    final = schedule[-1]
    if final.capital < ZERO or final.interest < ZERO:
        raise InvalidLoanTermsError(
            "Terms are too small to split into the requested number of installments"
        )
    return schedule


def _build_declining_balance_schedule(terms: LoanTerms, start_date: date) -> List[AmortizationEntry]:
    """Interest recomputed on the remaining balance each period"""
    schedule = []
    installment = compute_installment(terms)
    rate = periodic_rate(terms.annual_interest_rate, terms.payment_frequency)
    balance = terms.principal_amount

    for number in range(1, terms.term_count + 1):
        interest = round_money(balance * rate)

        if number == terms.term_count:
            # Final installment retires exactly what is left
            capital = balance
        else:
            capital = min(installment - interest, balance)

        balance = balance - capital
        schedule.append(AmortizationEntry(
            installment_number=number,
            due_date=due_date_for(start_date, terms.payment_frequency, number),
            total_payment=capital + interest,
            interest=interest,
            capital=capital,
            balance=balance
        ))

    return schedule


def _build_flat_rate_schedule(terms: LoanTerms, start_date: date) -> List[AmortizationEntry]:
    """Flat interest share per installment, capital is the rest"""
    schedule = []
    installment = compute_installment(terms)
    interest_share = flat_interest_share(terms)
    capital_share = installment - interest_share
    balance = terms.principal_amount
    interest_left = terms.finance_charge

    for number in range(1, terms.term_count + 1):
        if number == terms.term_count:
            capital = balance
            interest = interest_left
        else:
            capital = capital_share
            interest = interest_share

        balance = balance - capital
        interest_left = interest_left - interest
        schedule.append(AmortizationEntry(
            installment_number=number,
            due_date=due_date_for(start_date, terms.payment_frequency, number),
            total_payment=capital + interest,
            interest=interest,
            capital=capital,
            balance=balance
        ))

    return schedule


def effective_rate_per_term(terms: LoanTerms) -> Decimal:
    """Flat finance charge as a percentage of principal (informative, for contracts)"""
    return (terms.finance_charge / terms.principal_amount * HUNDRED).quantize(Decimal('0.0001'))
