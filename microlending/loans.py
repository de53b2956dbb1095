"""
Loan Records Module

Loan, installment schedule and payment records, and the store that maps them
onto the three persistent tables. The payments table is an append-only
ledger: rows are written once and never updated or deleted.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

from .money import ZERO, to_decimal, round_money
from .errors import InvalidPaymentAmountError
from .storage import StorageInterface, StorageRecord
from .amortization import LoanTerms, LoanStructure, PaymentFrequency
from .lifecycle import LoanStatus, ScheduleStatus, OPEN_STATUSES


class PaymentType(Enum):
    """How a payment is meant to be applied"""
    REGULAR = "REGULAR"                  # Full waterfall
    CAPITAL_PAYMENT = "CAPITAL_PAYMENT"  # Extra payment straight to capital
    FULL_SETTLEMENT = "FULL_SETTLEMENT"  # Payoff of the whole outstanding debt


def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _optional_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


@dataclass
class Loan(StorageRecord):
    """Lending agreement with its running balance"""
    client_id: str
    principal_amount: Decimal
    structure: LoanStructure
    payment_frequency: PaymentFrequency
    term_count: int
    installment_amount: Decimal          # Fixed at creation
    remaining_capital: Decimal
    status: LoanStatus = LoanStatus.ACTIVE
    annual_interest_rate: Optional[Decimal] = None
    total_finance_charge: Optional[Decimal] = None
    start_date: Optional[date] = None
    next_due_date: Optional[date] = None
    maturity_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    guarantees: Optional[str] = None
    created_by_id: Optional[str] = None
    updated_by_id: Optional[str] = None
    cancel_reason: Optional[str] = None

    @property
    def terms(self) -> LoanTerms:
        return LoanTerms(
            principal_amount=self.principal_amount,
            structure=self.structure,
            payment_frequency=self.payment_frequency,
            term_count=self.term_count,
            annual_interest_rate=self.annual_interest_rate,
            total_finance_charge=self.total_finance_charge,
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        result = self._base_dict()
        result.update({
            'client_id': self.client_id,
            'principal_amount': str(self.principal_amount),
            'structure': self.structure.value,
            'payment_frequency': self.payment_frequency.value,
            'term_count': self.term_count,
            'installment_amount': str(self.installment_amount),
            'remaining_capital': str(self.remaining_capital),
            'status': self.status.value,
            'annual_interest_rate': (
                str(self.annual_interest_rate) if self.annual_interest_rate is not None else None
            ),
            'total_finance_charge': (
                str(self.total_finance_charge) if self.total_finance_charge is not None else None
            ),
            'start_date': _iso(self.start_date),
            'next_due_date': _iso(self.next_due_date),
            'maturity_date': _iso(self.maturity_date),
            'last_payment_date': _iso(self.last_payment_date),
            'guarantees': self.guarantees,
            'created_by_id': self.created_by_id,
            'updated_by_id': self.updated_by_id,
            'cancel_reason': self.cancel_reason,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            client_id=data['client_id'],
            principal_amount=Decimal(data['principal_amount']),
            structure=LoanStructure(data['structure']),
            payment_frequency=PaymentFrequency(data['payment_frequency']),
            term_count=data['term_count'],
            installment_amount=Decimal(data['installment_amount']),
            remaining_capital=Decimal(data['remaining_capital']),
            status=LoanStatus(data['status']),
            annual_interest_rate=_optional_decimal(data.get('annual_interest_rate')),
            total_finance_charge=_optional_decimal(data.get('total_finance_charge')),
            start_date=_date(data.get('start_date')),
            next_due_date=_date(data.get('next_due_date')),
            maturity_date=_date(data.get('maturity_date')),
            last_payment_date=_date(data.get('last_payment_date')),
            guarantees=data.get('guarantees'),
            created_by_id=data.get('created_by_id'),
            updated_by_id=data.get('updated_by_id'),
            cancel_reason=data.get('cancel_reason'),
        )


@dataclass
class ScheduleEntry(StorageRecord):
    """One expected installment of a loan"""
    loan_id: str
    sequence: int
    due_date: date
    expected_amount: Decimal
    expected_capital: Decimal
    expected_interest: Decimal
    paid_amount: Decimal = ZERO       # Capital + interest credited so far
    late_fee_paid: Decimal = ZERO
    status: ScheduleStatus = ScheduleStatus.PENDING

    @staticmethod
    def make_id(loan_id: str, sequence: int) -> str:
        return f"{loan_id}_{sequence}"

    @property
    def outstanding(self) -> Decimal:
        return max(ZERO, self.expected_amount - self.paid_amount)

    def to_dict(self) -> Dict[str, Any]:
        result = self._base_dict()
        result.update({
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'due_date': self.due_date.isoformat(),
            'expected_amount': str(self.expected_amount),
            'expected_capital': str(self.expected_capital),
            'expected_interest': str(self.expected_interest),
            'paid_amount': str(self.paid_amount),
            'late_fee_paid': str(self.late_fee_paid),
            'status': self.status.value,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            sequence=data['sequence'],
            due_date=date.fromisoformat(data['due_date']),
            expected_amount=Decimal(data['expected_amount']),
            expected_capital=Decimal(data['expected_capital']),
            expected_interest=Decimal(data['expected_interest']),
            paid_amount=Decimal(data['paid_amount']),
            late_fee_paid=Decimal(data['late_fee_paid']),
            status=ScheduleStatus(data['status']),
        )


@dataclass
class InstallmentCredit:
    """Part of a payment credited to one installment row"""
    schedule_id: str
    amount: Decimal = ZERO       # Capital + interest
    late_fee: Decimal = ZERO

    def negated(self) -> 'InstallmentCredit':
        return InstallmentCredit(self.schedule_id, -self.amount, -self.late_fee)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schedule_id': self.schedule_id,
            'amount': str(self.amount),
            'late_fee': str(self.late_fee),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InstallmentCredit':
        return cls(data['schedule_id'], Decimal(data['amount']), Decimal(data['late_fee']))


@dataclass
class Payment(StorageRecord):
    """
    Immutable ledger entry against a loan

    Positive for a payment, negative for a reversal. The three components
    always sum exactly to the total.
    """
    loan_id: str
    total_amount: Decimal
    capital_applied: Decimal
    interest_applied: Decimal
    late_fee_applied: Decimal
    payment_type: PaymentType
    payment_date: date
    created_by_id: Optional[str] = None
    reverses_payment_id: Optional[str] = None
    reason: Optional[str] = None
    excess_amount: Decimal = ZERO        # Returned to the payer, not applied
    installment_credits: List[InstallmentCredit] = field(default_factory=list)

    def __post_init__(self):
        for name in ('total_amount', 'capital_applied', 'interest_applied', 'late_fee_applied'):
            setattr(self, name, to_decimal(getattr(self, name)))

        components = self.capital_applied + self.interest_applied + self.late_fee_applied
        if components != self.total_amount:
            raise InvalidPaymentAmountError(
                f"Payment components {components} do not equal total {self.total_amount}"
            )

    @property
    def is_reversal(self) -> bool:
        return self.total_amount < ZERO

    def to_dict(self) -> Dict[str, Any]:
        result = self._base_dict()
        result.update({
            'loan_id': self.loan_id,
            'total_amount': str(self.total_amount),
            'capital_applied': str(self.capital_applied),
            'interest_applied': str(self.interest_applied),
            'late_fee_applied': str(self.late_fee_applied),
            'payment_type': self.payment_type.value,
            'payment_date': self.payment_date.isoformat(),
            'created_by_id': self.created_by_id,
            'reverses_payment_id': self.reverses_payment_id,
            'reason': self.reason,
            'excess_amount': str(self.excess_amount),
            'installment_credits': [c.to_dict() for c in self.installment_credits],
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            total_amount=Decimal(data['total_amount']),
            capital_applied=Decimal(data['capital_applied']),
            interest_applied=Decimal(data['interest_applied']),
            late_fee_applied=Decimal(data['late_fee_applied']),
            payment_type=PaymentType(data['payment_type']),
            payment_date=date.fromisoformat(data['payment_date']),
            created_by_id=data.get('created_by_id'),
            reverses_payment_id=data.get('reverses_payment_id'),
            reason=data.get('reason'),
            excess_amount=Decimal(data.get('excess_amount', '0.00')),
            installment_credits=[
                InstallmentCredit.from_dict(c) for c in data.get('installment_credits', [])
            ],
        )


@dataclass
class LoanSummary:
    """Totals derived from the payment ledger; never stored"""
    loan_id: str
    status: LoanStatus
    principal_amount: Decimal
    remaining_capital: Decimal
    capital_paid: Decimal
    interest_paid: Decimal
    late_fees_paid: Decimal
    total_paid: Decimal
    payment_count: int
    progress_percentage: Decimal
    next_due_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'status': self.status.value,
            'principal_amount': str(self.principal_amount),
            'remaining_capital': str(self.remaining_capital),
            'capital_paid': str(self.capital_paid),
            'interest_paid': str(self.interest_paid),
            'late_fees_paid': str(self.late_fees_paid),
            'total_paid': str(self.total_paid),
            'payment_count': self.payment_count,
            'progress_percentage': str(self.progress_percentage),
            'next_due_date': _iso(self.next_due_date),
        }


class LoanStore:
    """Persistence of loans, schedule rows and the payment ledger"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.schedules_table = "payment_schedules"
        self.payments_table = "payments"

    def load_loan(self, loan_id: str, for_update: bool = False) -> Optional[Loan]:
        """
        Load a loan

        Args:
            loan_id: Loan ID
            for_update: Lock the row until the enclosing atomic unit ends

        Returns:
            Loan or None if not found
        """
        if for_update:
            data = self.storage.load_for_update(self.loans_table, loan_id)
        else:
            data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def list_loans(self, statuses=None) -> List[Loan]:
        """All loans, optionally restricted to a set of statuses, oldest first"""
        loans = [Loan.from_dict(d) for d in self.storage.load_all(self.loans_table)]
        if statuses is not None:
            loans = [loan for loan in loans if loan.status in statuses]
        loans.sort(key=lambda loan: (loan.created_at, loan.id))
        return loans

    def load_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        rows = self.storage.find(self.schedules_table, {'loan_id': loan_id})
        entries = [ScheduleEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def save_schedule_entry(self, entry: ScheduleEntry) -> None:
        self.storage.save(self.schedules_table, entry.id, entry.to_dict())

    def append_payment(self, payment: Payment) -> None:
        """Write a ledger entry; existing entries are never overwritten"""
        if self.storage.exists(self.payments_table, payment.id):
            raise ValueError(f"Payment {payment.id} already recorded")
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def load_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        return Payment.from_dict(data) if data else None

    def load_payments(self, loan_id: str) -> List[Payment]:
        """Ledger entries of a loan in the order they were recorded"""
        rows = self.storage.find(self.payments_table, {'loan_id': loan_id})
        payments = [Payment.from_dict(row) for row in rows]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def find_payments_on(self, payment_date: date) -> List[Payment]:
        """Ledger entries of every loan dated on one day, in the order they were recorded"""
        rows = self.storage.find(self.payments_table, {'payment_date': payment_date.isoformat()})
        payments = [Payment.from_dict(row) for row in rows]
        payments.sort(key=lambda p: p.created_at)
        return payments


def round_progress(paid: Decimal, principal: Decimal) -> Decimal:
    """Share of principal repaid as a percentage, two decimals"""
    if principal <= ZERO:
        return ZERO
    return round_money(paid / principal * Decimal('100'))
