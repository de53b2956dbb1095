"""
Payment Allocation Module

Splits an incoming payment across late fee, interest and capital
(waterfall, highest priority first) and works out the resulting balance,
status and per-installment credits. Pure: no storage access.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .money import ZERO, to_decimal, round_money, sum_money
from .errors import (
    InvalidPaymentAmountError, PaymentNotAllowedError,
    PaymentExceedsBalanceError, CannotReversePaymentError
)
from .amortization import LoanStructure, PaymentFrequency, due_date_for, periodic_rate
from .late_fees import ExcessPolicy, LendingPolicy, assess_late_fees
from .lifecycle import (
    LoanStatus, ScheduleStatus, can_apply_payment,
    status_after_payment, status_after_reversal
)
from .loans import Loan, ScheduleEntry, Payment, PaymentType, InstallmentCredit


@dataclass(frozen=True)
class PaymentComponents:
    """Explicit split supplied by the caller instead of the waterfall"""
    capital: Decimal
    interest: Decimal = ZERO
    late_fee: Decimal = ZERO


@dataclass
class LoanPosition:
    """Everything the allocator needs to know about a loan at one date"""
    loan_id: str
    status: LoanStatus
    structure: LoanStructure
    principal_amount: Decimal
    remaining_capital: Decimal
    as_of: date
    installments: List[ScheduleEntry] = field(default_factory=list)
    late_fees_owed: Dict[str, Decimal] = field(default_factory=dict)
    annual_interest_rate: Optional[Decimal] = None
    finance_charge: Decimal = ZERO
    interest_paid: Decimal = ZERO
    payment_frequency: Optional[PaymentFrequency] = None
    start_date: Optional[date] = None
    term_count: int = 0
    capital_payments: List[Tuple[date, Decimal]] = field(default_factory=list)  # live entries only

    @classmethod
    def from_records(cls, loan: Loan, schedule: List[ScheduleEntry],
                     payments: List[Payment], as_of: date,
                     policy: LendingPolicy) -> 'LoanPosition':
        """
        Build the position of a loan from its stored records

        Args:
            loan: Loan record
            schedule: Its installment rows
            payments: Its ledger entries, reversals included
            as_of: Payment or assessment date
            policy: Lending policy used to assess late fees

        Returns:
            LoanPosition
        """
        reversed_ids = {p.reverses_payment_id for p in payments if p.reverses_payment_id}
        live = [p for p in payments if not p.is_reversal and p.id not in reversed_ids]

        return cls(
            loan_id=loan.id,
            status=loan.status,
            structure=loan.structure,
            principal_amount=loan.principal_amount,
            remaining_capital=loan.remaining_capital,
            as_of=as_of,
            installments=list(schedule),
            late_fees_owed=assess_late_fees(schedule, as_of, policy),
            annual_interest_rate=loan.annual_interest_rate,
            finance_charge=loan.terms.finance_charge,
            interest_paid=sum_money(p.interest_applied for p in payments),
            payment_frequency=loan.payment_frequency,
            start_date=loan.start_date,
            term_count=loan.term_count,
            capital_payments=[(p.payment_date, p.capital_applied) for p in live],
        )

    @property
    def late_fee_owed(self) -> Decimal:
        return sum_money(self.late_fees_owed.values())

    @property
    def outstanding_finance_charge(self) -> Decimal:
        return max(ZERO, self.finance_charge - self.interest_paid)

    def _capital_outstanding_on(self, day: date) -> Decimal:
        """Capital owed at the end of a day, rebuilt from the payments made after it"""
        return self.remaining_capital + sum_money(
            capital for paid_on, capital in self.capital_payments if paid_on > day
        )

    def accrued_interest(self) -> Decimal:
        """
        Interest earned by the periods elapsed so far, net of interest already paid

        Each schedule period whose due date has been reached charges the
        periodic rate on the capital outstanding when the period opened,
        rounded like the amortization table, so paying every installment on
        its due date retires the loan exactly.
        """
        if self.structure != LoanStructure.INTEREST_BEARING:
            return ZERO
        if not self.annual_interest_rate or self.start_date is None or self.payment_frequency is None:
            return ZERO

        rate = periodic_rate(self.annual_interest_rate, self.payment_frequency)
        earned = ZERO
        for number in range(1, self.term_count + 1):
            if due_date_for(self.start_date, self.payment_frequency, number) > self.as_of:
                break
            opened = due_date_for(self.start_date, self.payment_frequency, number - 1)
            earned += round_money(self._capital_outstanding_on(opened) * rate)

        return max(ZERO, earned - self.interest_paid)

    def interest_due(self) -> Decimal:
        """Interest that settling the loan today would require"""
        if self.structure == LoanStructure.FLAT_RATE:
            return self.outstanding_finance_charge
        return self.accrued_interest()

    def settlement_amount(self) -> Decimal:
        """Late fees + interest due + remaining capital"""
        return self.late_fee_owed + self.interest_due() + self.remaining_capital


@dataclass
class Allocation:
    """Outcome of allocating (or reversing) one payment"""
    capital_applied: Decimal
    interest_applied: Decimal
    late_fee_applied: Decimal
    new_balance: Decimal
    previous_status: LoanStatus
    new_status: LoanStatus
    excess: Decimal = ZERO
    installment_credits: List[InstallmentCredit] = field(default_factory=list)

    @property
    def total_applied(self) -> Decimal:
        return self.capital_applied + self.interest_applied + self.late_fee_applied

    @property
    def status_changed(self) -> bool:
        return self.new_status != self.previous_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            'capital_applied': str(self.capital_applied),
            'interest_applied': str(self.interest_applied),
            'late_fee_applied': str(self.late_fee_applied),
            'total_applied': str(self.total_applied),
            'excess': str(self.excess),
            'new_balance': str(self.new_balance),
            'previous_status': self.previous_status.value,
            'new_status': self.new_status.value,
            'status_changed': self.status_changed,
            'installment_credits': [c.to_dict() for c in self.installment_credits],
        }


def _require_cents(value: Decimal, label: str) -> Decimal:
    try:
        value = to_decimal(value)
    except ValueError:
        raise InvalidPaymentAmountError(f"{label} is not a valid amount")
    if not value.is_finite() or value != round_money(value):
        raise InvalidPaymentAmountError(f"{label} cannot have more than two decimals")
    return value


def _validate_components(amount: Decimal, components: PaymentComponents) -> Tuple[Decimal, Decimal, Decimal]:
    capital = _require_cents(components.capital, "Capital applied")
    interest = _require_cents(components.interest, "Interest applied")
    late_fee = _require_cents(components.late_fee, "Late fee applied")

    if capital < ZERO or interest < ZERO or late_fee < ZERO:
        raise InvalidPaymentAmountError("Payment components cannot be negative")

    if capital + interest + late_fee != amount:
        raise InvalidPaymentAmountError(
            f"Capital ({capital}) + interest ({interest}) + late fee ({late_fee}) "
            f"must equal the payment amount ({amount})"
        )
    return capital, interest, late_fee


def _interest_portion(available: Decimal, position: LoanPosition,
                      payment_type: PaymentType) -> Decimal:
    if position.structure == LoanStructure.INTEREST_BEARING:
        return position.accrued_interest()

    outstanding = position.outstanding_finance_charge
    if payment_type == PaymentType.FULL_SETTLEMENT:
        return outstanding

    # Finance charge is collected in proportion to the total payable
    total_payable = position.principal_amount + position.finance_charge
    share = round_money(available * position.finance_charge / total_payable)
    return min(share, outstanding)


def _waterfall(amount: Decimal, position: LoanPosition,
               payment_type: PaymentType) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
    """Returns (late_fee, interest, capital, excess)"""
    remaining = amount

    late_fee = min(remaining, position.late_fee_owed)
    remaining -= late_fee

    interest = ZERO
    if payment_type != PaymentType.CAPITAL_PAYMENT:
        interest = min(remaining, _interest_portion(remaining, position, payment_type))
        remaining -= interest

    capital = min(remaining, position.remaining_capital)
    remaining -= capital

    if (position.structure == LoanStructure.FLAT_RATE
            and payment_type != PaymentType.CAPITAL_PAYMENT
            and capital == position.remaining_capital):
        # Capital retired: whatever finance charge is left is due now
        leftover = max(ZERO, position.outstanding_finance_charge - interest)
        extra = min(remaining, leftover)
        interest += extra
        remaining -= extra

    return late_fee, interest, capital, remaining


def _credit_installments(position: LoanPosition, amount: Decimal,
                         late_fee: Decimal) -> List[InstallmentCredit]:
    """Spread capital + interest over unpaid rows in order, late fees over the rows that accrued them"""
    if not position.installments:
        return []

    credits: Dict[str, InstallmentCredit] = {}

    def credit_for(row_id: str) -> InstallmentCredit:
        if row_id not in credits:
            credits[row_id] = InstallmentCredit(row_id)
        return credits[row_id]

    unpaid = [row for row in position.installments if row.outstanding > ZERO
              and row.status != ScheduleStatus.PAID]

    left = amount
    for row in unpaid:
        if left <= ZERO:
            break
        take = min(left, row.outstanding)
        credit_for(row.id).amount += take
        left -= take
    if left > ZERO:
        target = unpaid[-1] if unpaid else position.installments[-1]
        credit_for(target.id).amount += left

    late_left = late_fee
    for row_id, owed in position.late_fees_owed.items():
        if late_left <= ZERO:
            break
        take = min(late_left, owed)
        credit_for(row_id).late_fee += take
        late_left -= take
    if late_left > ZERO:
        target = unpaid[0] if unpaid else position.installments[-1]
        credit_for(target.id).late_fee += late_left

    order = {row.id: row.sequence for row in position.installments}
    return sorted(credits.values(), key=lambda c: order[c.schedule_id])


def _overdue_after(position: LoanPosition, credits: List[InstallmentCredit],
                   new_balance: Decimal, by_paid_amount: bool = False) -> bool:
    """Whether some installment due before the position date stays unpaid, or capital outlives the schedule"""
    if (new_balance > ZERO and position.installments
            and position.installments[-1].due_date < position.as_of):
        return True

    credited = {c.schedule_id: c.amount for c in credits}
    for row in position.installments:
        if row.due_date >= position.as_of:
            continue
        if not by_paid_amount and row.status == ScheduleStatus.PAID:
            continue
        if row.paid_amount + credited.get(row.id, ZERO) < row.expected_amount:
            return True
    return False


def allocate(amount, position: LoanPosition,
             payment_type: PaymentType = PaymentType.REGULAR,
             overrides: Optional[PaymentComponents] = None,
             excess_policy: ExcessPolicy = ExcessPolicy.REJECT) -> Allocation:
    """
    Allocate a payment against a loan position

    Args:
        amount: Payment amount, positive with at most two decimals
        position: Loan position at the payment date (overdue detection already applied)
        payment_type: REGULAR, CAPITAL_PAYMENT or FULL_SETTLEMENT
        overrides: Explicit components replacing the waterfall
        excess_policy: What to do with money beyond the settlement amount

    Returns:
        Allocation

    Raises:
        InvalidPaymentAmountError: Non-positive amount, components not summing to it,
            capital above the balance, or excess under the reject policy
        PaymentNotAllowedError: Loan is PAID or CANCELED
    """
    amount = _require_cents(amount, "Payment amount")
    if amount <= ZERO:
        raise InvalidPaymentAmountError("Payment amount must be greater than zero")

    if overrides is not None:
        capital, interest, late_fee = _validate_components(amount, overrides)

    if not can_apply_payment(position.status):
        raise PaymentNotAllowedError(position.loan_id, position.status.value)

    excess = ZERO
    if overrides is not None:
        if capital > position.remaining_capital:
            raise PaymentExceedsBalanceError(capital, position.remaining_capital)
    else:
        if payment_type == PaymentType.FULL_SETTLEMENT:
            settlement = position.settlement_amount()
            if amount < settlement:
                raise InvalidPaymentAmountError(
                    f"Full settlement requires {settlement}, received {amount}"
                )

        late_fee, interest, capital, excess = _waterfall(amount, position, payment_type)
        if excess > ZERO and excess_policy == ExcessPolicy.REJECT:
            raise InvalidPaymentAmountError(
                f"Payment of {amount} exceeds the {amount - excess} needed to settle the loan"
            )

    new_balance = max(ZERO, round_money(position.remaining_capital - capital))
    credits = _credit_installments(position, capital + interest, late_fee)
    new_status = status_after_payment(
        position.status,
        new_balance == ZERO,
        _overdue_after(position, credits, new_balance)
    )

    return Allocation(
        capital_applied=capital,
        interest_applied=interest,
        late_fee_applied=late_fee,
        new_balance=new_balance,
        previous_status=position.status,
        new_status=new_status,
        excess=excess,
        installment_credits=credits,
    )


def reverse(payment: Payment, position: LoanPosition) -> Allocation:
    """
    Negated allocation undoing a recorded payment

    Args:
        payment: Ledger entry being reversed
        position: Current loan position at the reversal date

    Returns:
        Allocation with every component negated and capital restored

    Raises:
        CannotReversePaymentError: Entry is itself a reversal, or the loan is canceled
    """
    if payment.is_reversal:
        raise CannotReversePaymentError(
            payment.id, "it is already a reversal", position.loan_id, position.status.value
        )
    if position.status == LoanStatus.CANCELED:
        raise CannotReversePaymentError(
            payment.id, "the loan is canceled", position.loan_id, position.status.value
        )

    credits = [c.negated() for c in payment.installment_credits]
    new_balance = round_money(position.remaining_capital + payment.capital_applied)
    new_status = status_after_reversal(
        position.status,
        new_balance == ZERO,
        _overdue_after(position, credits, new_balance, by_paid_amount=True)
    )

    return Allocation(
        capital_applied=-payment.capital_applied,
        interest_applied=-payment.interest_applied,
        late_fee_applied=-payment.late_fee_applied,
        new_balance=new_balance,
        previous_status=position.status,
        new_status=new_status,
        installment_credits=credits,
    )
