"""
Late Fee Module

Penalty (mora) calculation for overdue installments and the business policy
value objects passed explicitly into the engine at call time.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional
from enum import Enum

from .money import ZERO, HUNDRED, to_decimal, round_money
from .amortization import PaymentFrequency
from .lifecycle import ScheduleStatus


class LateFeeType(Enum):
    """How the late fee is charged"""
    PERCENTAGE_DAILY = "PERCENTAGE_DAILY"  # % of the overdue amount per day late
    FIXED = "FIXED"                        # Flat charge per overdue installment


class ExcessPolicy(Enum):
    """What to do with money beyond what settles the loan"""
    REJECT = "reject"   # Refuse the payment
    REFUND = "refund"   # Record the applied part, report the excess for refund


@dataclass(frozen=True)
class LateFeePolicy:
    """Configured late fee rule"""
    fee_type: LateFeeType = LateFeeType.PERCENTAGE_DAILY
    fee_value: Decimal = ZERO   # Percentage per day, or flat amount

    def __post_init__(self):
        object.__setattr__(self, 'fee_value', to_decimal(self.fee_value))
        if self.fee_value < 0:
            raise ValueError("Late fee value cannot be negative")


@dataclass(frozen=True)
class LendingPolicy:
    """Business-wide policy, built from configuration by the caller"""
    late_fee: LateFeePolicy = field(default_factory=LateFeePolicy)
    grace_period_days: int = 0
    default_rates: Dict[PaymentFrequency, Decimal] = field(default_factory=dict)
    excess_policy: ExcessPolicy = ExcessPolicy.REJECT

    def __post_init__(self):
        if self.grace_period_days < 0:
            raise ValueError("Grace period cannot be negative")

    def default_rate_for(self, frequency: PaymentFrequency) -> Optional[Decimal]:
        """Default annual rate (percentage) for a frequency, if configured"""
        return self.default_rates.get(frequency)


def days_late(due_date: date, as_of: date) -> int:
    """Days elapsed since the due date; negative when paid early"""
    return (as_of - due_date).days


def compute_late_fee(overdue_amount: Decimal, days_late: int,
                     grace_period_days: int, policy: LateFeePolicy) -> Decimal:
    """
    Compute the penalty accrued on one overdue installment

    Args:
        overdue_amount: Unpaid amount of the installment
        days_late: Days since the due date (negative for early payment)
        grace_period_days: Days tolerated before any fee accrues
        policy: Fee type and value

    Returns:
        Fee rounded to cents, never negative
    """
    if days_late <= grace_period_days:
        return ZERO

    effective_days_late = max(0, days_late - grace_period_days)

    if policy.fee_type == LateFeeType.FIXED:
        return round_money(policy.fee_value)

    overdue_amount = to_decimal(overdue_amount)
    if overdue_amount <= 0:
        return ZERO
    fee = overdue_amount * (policy.fee_value / HUNDRED) * Decimal(effective_days_late)
    return round_money(fee)


def assess_late_fees(installments: Iterable[Any], as_of: date,
                     policy: LendingPolicy) -> Dict[str, Decimal]:
    """
    Late fee still owed per installment

    Installments are schedule rows exposing ``id``, ``due_date``,
    ``expected_amount``, ``paid_amount``, ``late_fee_paid`` and ``status``.
    Fees already collected on an installment are netted out.

    Args:
        installments: Schedule rows of one loan
        as_of: Assessment date
        policy: Lending policy (fee rule and grace period)

    Returns:
        Mapping of installment id to fee owed, only for positive amounts
    """
    owed = {}
    for row in installments:
        if row.status == ScheduleStatus.PAID:
            continue
        outstanding = row.expected_amount - row.paid_amount
        if outstanding <= ZERO:
            continue

        fee = compute_late_fee(
            outstanding,
            days_late(row.due_date, as_of),
            policy.grace_period_days,
            policy.late_fee
        )
        fee = fee - row.late_fee_paid
        if fee > ZERO:
            owed[row.id] = fee
    return owed
