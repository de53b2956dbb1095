"""
Loan Ledger Module

Coordinates loan origination, payment registration, reversal and
cancellation. Every mutation re-reads the loan with its row locked, applies
the change and writes the payment ledger, schedule rows, loan and audit
event in one atomic unit: either all of it is visible or none of it is.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set
import uuid

from .money import ZERO, round_money, sum_money
from .errors import (
    LoanNotFoundError, PaymentNotFoundError, PaymentNotAllowedError,
    CannotReversePaymentError
)
from .storage import StorageInterface
from .audit import AuditTrail, AuditAction, AuditEntity
from .amortization import (
    LoanTerms, LoanStructure, PaymentFrequency, AmortizationEntry,
    compute_installment, build_schedule, maturity_date
)
from .late_fees import LendingPolicy, ExcessPolicy
from .lifecycle import (
    LoanStatus, ScheduleStatus, LoanEvent, OPEN_STATUSES,
    can_apply_payment, can_cancel, transition
)
from .loans import (
    Loan, ScheduleEntry, Payment, PaymentType, LoanSummary, LoanStore,
    round_progress
)
from .allocation import Allocation, LoanPosition, PaymentComponents, allocate, reverse
from .logging_config import get_logger, log_action


@dataclass
class PaymentResult:
    """A recorded ledger entry and what it did to the loan"""
    payment: Payment
    loan: Loan
    allocation: Allocation

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment': self.payment.to_dict(),
            'loan': self.loan.to_dict(),
            'allocation': self.allocation.to_dict(),
        }


def _row_status(row: ScheduleEntry, as_of: date, settled: bool) -> ScheduleStatus:
    if settled or row.paid_amount >= row.expected_amount:
        return ScheduleStatus.PAID
    if row.due_date < as_of:
        return ScheduleStatus.OVERDUE
    return ScheduleStatus.PENDING


def _next_due_date(schedule: List[ScheduleEntry], remaining_capital: Decimal) -> Optional[date]:
    for row in schedule:
        if row.status != ScheduleStatus.PAID:
            return row.due_date
    # Every row credited but capital left: it fell due with the last installment
    if schedule and remaining_capital > ZERO:
        return schedule[-1].due_date
    return None


class LoanLedger:
    """
    Ledger transaction coordinator for microloans
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        policy: Optional[LendingPolicy] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.policy = policy or LendingPolicy()
        self.store = LoanStore(storage)
        self.logger = get_logger("microlending.ledger")

    # Origination

    def create_loan(
        self,
        client_id: str,
        principal_amount,
        structure,
        payment_frequency,
        term_count: int,
        created_by_id: str,
        annual_interest_rate=None,
        total_finance_charge=None,
        guarantees: Optional[str] = None,
        start_date: Optional[date] = None
    ) -> Loan:
        """
        Originate a loan with its installment schedule

        Args:
            client_id: Borrower ID
            principal_amount: Amount lent
            structure: INTEREST_BEARING or FLAT_RATE
            payment_frequency: DAILY, WEEKLY, BIWEEKLY or MONTHLY
            term_count: Number of installments
            created_by_id: User creating the loan
            annual_interest_rate: Percentage; defaults to the policy rate for the frequency
            total_finance_charge: Fixed charge for FLAT_RATE loans
            guarantees: Free-text collateral description
            start_date: Disbursement date (defaults to today)

        Returns:
            Created Loan in ACTIVE status

        Raises:
            InvalidLoanTermsError: If the terms cannot produce a schedule
        """
        structure = LoanStructure(structure)
        payment_frequency = PaymentFrequency(payment_frequency)

        if structure == LoanStructure.INTEREST_BEARING:
            if annual_interest_rate is None:
                annual_interest_rate = self.policy.default_rate_for(payment_frequency)
            total_finance_charge = None

        terms = LoanTerms(
            principal_amount=principal_amount,
            structure=structure,
            payment_frequency=payment_frequency,
            term_count=term_count,
            annual_interest_rate=annual_interest_rate,
            total_finance_charge=total_finance_charge
        )
        installment = compute_installment(terms)
        start_date = start_date or date.today()
        table = build_schedule(terms, start_date)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            principal_amount=terms.principal_amount,
            structure=structure,
            payment_frequency=payment_frequency,
            term_count=term_count,
            installment_amount=installment,
            remaining_capital=terms.principal_amount,
            status=LoanStatus.ACTIVE,
            annual_interest_rate=terms.annual_interest_rate,
            total_finance_charge=terms.total_finance_charge,
            start_date=start_date,
            next_due_date=table[0].due_date,
            maturity_date=maturity_date(start_date, payment_frequency, term_count),
            guarantees=guarantees,
            created_by_id=created_by_id,
            updated_by_id=created_by_id
        )

        with self.storage.atomic():
            self.store.save_loan(loan)
            for entry in table:
                self.store.save_schedule_entry(ScheduleEntry(
                    id=ScheduleEntry.make_id(loan.id, entry.installment_number),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    sequence=entry.installment_number,
                    due_date=entry.due_date,
                    expected_amount=entry.total_payment,
                    expected_capital=entry.capital,
                    expected_interest=entry.interest
                ))

            self.audit_trail.log_event(
                action=AuditAction.CREATE_LOAN,
                entity_type=AuditEntity.LOAN,
                entity_id=loan.id,
                metadata={
                    "client_id": client_id,
                    "principal_amount": loan.principal_amount,
                    "structure": structure,
                    "payment_frequency": payment_frequency,
                    "term_count": term_count,
                    "installment_amount": installment,
                    "annual_interest_rate": loan.annual_interest_rate,
                    "total_finance_charge": loan.total_finance_charge,
                },
                user_id=created_by_id
            )

        log_action(
            self.logger, "info", "Loan created",
            user_id=created_by_id, action=AuditAction.CREATE_LOAN.value,
            resource=f"loan:{loan.id}",
            extra={"principal_amount": str(loan.principal_amount),
                   "installment_amount": str(installment)}
        )
        return loan

    # Payments

    def register_payment(
        self,
        loan_id: str,
        amount,
        created_by_id: str,
        payment_type=PaymentType.REGULAR,
        payment_date: Optional[date] = None,
        components: Optional[PaymentComponents] = None
    ) -> PaymentResult:
        """
        Apply a payment to a loan

        The loan row is locked for the whole unit, so concurrent payments on
        the same loan are applied one after the other, each against the
        balance the previous one left.

        Args:
            loan_id: Loan ID
            amount: Payment amount
            created_by_id: User registering the payment
            payment_type: REGULAR, CAPITAL_PAYMENT or FULL_SETTLEMENT
            payment_date: Date the money was received (defaults to today)
            components: Explicit capital/interest/late fee split

        Returns:
            PaymentResult

        Raises:
            LoanNotFoundError: If the loan does not exist
            PaymentNotAllowedError: If the loan is PAID or CANCELED
            InvalidPaymentAmountError: If the amount or its split is invalid
        """
        payment_type = PaymentType(payment_type)
        payment_date = payment_date or date.today()

        with self.storage.atomic():
            loan = self._lock_loan(loan_id)
            schedule = self.store.load_schedule(loan_id)
            dirty = self._detect_overdue(loan, schedule, payment_date)

            position = LoanPosition.from_records(
                loan, schedule, self.store.load_payments(loan_id), payment_date, self.policy
            )
            allocation = allocate(
                amount, position, payment_type, components, self.policy.excess_policy
            )

            now = datetime.now(timezone.utc)
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                total_amount=allocation.total_applied,
                capital_applied=allocation.capital_applied,
                interest_applied=allocation.interest_applied,
                late_fee_applied=allocation.late_fee_applied,
                payment_type=payment_type,
                payment_date=payment_date,
                created_by_id=created_by_id,
                excess_amount=allocation.excess,
                installment_credits=allocation.installment_credits
            )
            self.store.append_payment(payment)

            settled = allocation.new_status == LoanStatus.PAID
            credited = self._apply_credits(schedule, allocation)
            for row in schedule:
                if settled or row.id in credited:
                    status = _row_status(row, payment_date, settled)
                    if status != row.status:
                        row.status = status
                        dirty.add(row.id)
            self._save_rows(schedule, dirty | credited, now)

            loan.remaining_capital = allocation.new_balance
            loan.status = allocation.new_status
            loan.next_due_date = _next_due_date(schedule, loan.remaining_capital)
            if loan.last_payment_date is None or payment_date > loan.last_payment_date:
                loan.last_payment_date = payment_date
            loan.updated_by_id = created_by_id
            loan.updated_at = now
            self.store.save_loan(loan)

            self.audit_trail.log_event(
                action=AuditAction.REGISTER_PAYMENT,
                entity_type=AuditEntity.PAYMENT,
                entity_id=payment.id,
                metadata={
                    "loan_id": loan.id,
                    "payment_type": payment_type,
                    "total_amount": payment.total_amount,
                    "capital_applied": payment.capital_applied,
                    "interest_applied": payment.interest_applied,
                    "late_fee_applied": payment.late_fee_applied,
                    "excess": allocation.excess,
                    "previous_status": allocation.previous_status,
                    "new_status": allocation.new_status,
                    "remaining_capital": loan.remaining_capital,
                },
                user_id=created_by_id
            )

        log_action(
            self.logger, "info", "Payment registered",
            user_id=created_by_id, action=AuditAction.REGISTER_PAYMENT.value,
            resource=f"loan:{loan.id}",
            extra={"payment_id": payment.id, "total_amount": str(payment.total_amount),
                   "remaining_capital": str(loan.remaining_capital),
                   "status": loan.status.value}
        )
        return PaymentResult(payment=payment, loan=loan, allocation=allocation)

    def reverse_payment(
        self,
        payment_id: str,
        reversed_by_id: str,
        reason: Optional[str] = None,
        reversal_date: Optional[date] = None
    ) -> PaymentResult:
        """
        Reverse a payment by appending a negated ledger entry

        Args:
            payment_id: Payment to reverse
            reversed_by_id: User requesting the reversal
            reason: Why the payment is reversed
            reversal_date: Date of the reversal (defaults to today)

        Returns:
            PaymentResult holding the reversal entry

        Raises:
            PaymentNotFoundError: If the payment does not exist
            CannotReversePaymentError: Reversal of a reversal, double reversal
                or reversal on a canceled loan
        """
        as_of = reversal_date or date.today()

        with self.storage.atomic():
            original = self.store.load_payment(payment_id)
            if original is None:
                raise PaymentNotFoundError(payment_id)

            loan = self._lock_loan(original.loan_id)
            payments = self.store.load_payments(loan.id)
            if any(p.reverses_payment_id == payment_id for p in payments):
                raise CannotReversePaymentError(
                    payment_id, "it has already been reversed", loan.id, loan.status.value
                )

            schedule = self.store.load_schedule(loan.id)
            position = LoanPosition.from_records(loan, schedule, payments, as_of, self.policy)
            allocation = reverse(original, position)

            now = datetime.now(timezone.utc)
            reversal = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                total_amount=-original.total_amount,
                capital_applied=allocation.capital_applied,
                interest_applied=allocation.interest_applied,
                late_fee_applied=allocation.late_fee_applied,
                payment_type=original.payment_type,
                payment_date=as_of,
                created_by_id=reversed_by_id,
                reverses_payment_id=original.id,
                reason=reason,
                installment_credits=allocation.installment_credits
            )
            self.store.append_payment(reversal)

            settled = allocation.new_status == LoanStatus.PAID
            dirty = self._apply_credits(schedule, allocation)
            for row in schedule:
                status = _row_status(row, as_of, settled)
                if status != row.status:
                    row.status = status
                    dirty.add(row.id)
            self._save_rows(schedule, dirty, now)

            remaining_live = [
                p for p in payments
                if p.id != original.id and not p.is_reversal
                and not any(r.reverses_payment_id == p.id for r in payments)
            ]
            loan.remaining_capital = allocation.new_balance
            loan.status = allocation.new_status
            loan.next_due_date = _next_due_date(schedule, loan.remaining_capital)
            loan.last_payment_date = max(
                (p.payment_date for p in remaining_live), default=None
            )
            loan.updated_by_id = reversed_by_id
            loan.updated_at = now
            self.store.save_loan(loan)

            self.audit_trail.log_event(
                action=AuditAction.REVERSE_PAYMENT,
                entity_type=AuditEntity.PAYMENT,
                entity_id=original.id,
                metadata={
                    "loan_id": loan.id,
                    "reversal_id": reversal.id,
                    "total_amount": reversal.total_amount,
                    "capital_restored": original.capital_applied,
                    "previous_status": allocation.previous_status,
                    "new_status": allocation.new_status,
                    "remaining_capital": loan.remaining_capital,
                    "reason": reason,
                },
                user_id=reversed_by_id
            )

        log_action(
            self.logger, "info", "Payment reversed",
            user_id=reversed_by_id, action=AuditAction.REVERSE_PAYMENT.value,
            resource=f"payment:{payment_id}",
            extra={"reversal_id": reversal.id, "loan_id": loan.id,
                   "remaining_capital": str(loan.remaining_capital)}
        )
        return PaymentResult(payment=reversal, loan=loan, allocation=allocation)

    def cancel_loan(self, loan_id: str, canceled_by_id: str, reason: Optional[str] = None) -> Loan:
        """
        Cancel a loan

        The balance is left untouched and no payment is recorded; the loan
        simply stops accepting any further activity.

        Raises:
            LoanNotFoundError: If the loan does not exist
            PaymentNotAllowedError: If the loan is already PAID or CANCELED
        """
        with self.storage.atomic():
            loan = self._lock_loan(loan_id)
            if not can_cancel(loan.status):
                raise PaymentNotAllowedError(
                    loan.id, loan.status.value,
                    f"Loan {loan.id} cannot be canceled in status {loan.status.value}"
                )

            previous_status = loan.status
            loan.status = transition(loan.status, LoanEvent.CANCEL, loan_id=loan.id)
            loan.cancel_reason = reason
            loan.updated_by_id = canceled_by_id
            loan.updated_at = datetime.now(timezone.utc)
            self.store.save_loan(loan)

            self.audit_trail.log_event(
                action=AuditAction.CANCEL_LOAN,
                entity_type=AuditEntity.LOAN,
                entity_id=loan.id,
                metadata={
                    "previous_status": previous_status,
                    "remaining_capital": loan.remaining_capital,
                    "reason": reason,
                },
                user_id=canceled_by_id
            )

        log_action(
            self.logger, "info", "Loan canceled",
            user_id=canceled_by_id, action=AuditAction.CANCEL_LOAN.value,
            resource=f"loan:{loan.id}", extra={"reason": reason}
        )
        return loan

    def mark_overdue(self, loan_id: str, marked_by_id: str, reason: Optional[str] = None) -> Loan:
        """
        Flag an ACTIVE loan as OVERDUE by hand, ahead of the daily sweep

        Raises:
            LoanNotFoundError: If the loan does not exist
            InvalidStatusTransitionError: If the loan is not ACTIVE
        """
        with self.storage.atomic():
            loan = self._lock_loan(loan_id)
            previous_status = loan.status
            loan.status = transition(loan.status, LoanEvent.MARK_OVERDUE, loan_id=loan.id)
            loan.updated_by_id = marked_by_id
            loan.updated_at = datetime.now(timezone.utc)
            self.store.save_loan(loan)

            self.audit_trail.log_event(
                action=AuditAction.MARK_OVERDUE,
                entity_type=AuditEntity.LOAN,
                entity_id=loan.id,
                metadata={
                    "previous_status": previous_status,
                    "new_status": loan.status,
                    "reason": reason,
                },
                user_id=marked_by_id
            )

        log_action(
            self.logger, "info", "Loan marked overdue",
            user_id=marked_by_id, action=AuditAction.MARK_OVERDUE.value,
            resource=f"loan:{loan.id}", extra={"reason": reason}
        )
        return loan

    # Reads

    def get_loan(self, loan_id: str) -> Loan:
        """Get a loan or raise LoanNotFoundError"""
        loan = self.store.load_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        statuses = {LoanStatus(status)} if status is not None else None
        return self.store.list_loans(statuses)

    def get_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        self.get_loan(loan_id)
        return self.store.load_schedule(loan_id)

    def get_amortization(self, loan_id: str) -> List[AmortizationEntry]:
        """Display amortization table recomputed from the loan terms"""
        loan = self.get_loan(loan_id)
        return build_schedule(loan.terms, loan.start_date)

    def get_payments(self, loan_id: str) -> List[Payment]:
        self.get_loan(loan_id)
        return self.store.load_payments(loan_id)

    def get_payments_on(self, payment_date: Optional[date] = None) -> List[Payment]:
        """Ledger entries of every loan dated on one day (defaults to today), reversals included"""
        return self.store.find_payments_on(payment_date or date.today())

    def get_payment(self, payment_id: str) -> Payment:
        payment = self.store.load_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    def get_loan_summary(self, loan_id: str) -> LoanSummary:
        """
        Totals paid to date, aggregated from the payment ledger

        Reversals carry negated components, so summing every entry nets
        reversed payments out.
        """
        loan = self.get_loan(loan_id)
        payments = self.store.load_payments(loan_id)
        reversed_ids = {p.reverses_payment_id for p in payments if p.reverses_payment_id}

        capital_paid = sum_money(p.capital_applied for p in payments)
        return LoanSummary(
            loan_id=loan.id,
            status=loan.status,
            principal_amount=loan.principal_amount,
            remaining_capital=loan.remaining_capital,
            capital_paid=capital_paid,
            interest_paid=sum_money(p.interest_applied for p in payments),
            late_fees_paid=sum_money(p.late_fee_applied for p in payments),
            total_paid=sum_money(p.total_amount for p in payments),
            payment_count=len([
                p for p in payments if not p.is_reversal and p.id not in reversed_ids
            ]),
            progress_percentage=round_progress(capital_paid, loan.principal_amount),
            next_due_date=loan.next_due_date
        )

    def get_overdue_loans(self, as_of: Optional[date] = None) -> List[Loan]:
        """Open loans flagged OVERDUE or with an installment already past due"""
        as_of = as_of or date.today()
        return [
            loan for loan in self.store.list_loans(OPEN_STATUSES)
            if loan.status == LoanStatus.OVERDUE
            or (loan.next_due_date is not None and loan.next_due_date < as_of)
        ]

    def preview_allocation(
        self,
        loan_id: str,
        amount,
        payment_type=PaymentType.REGULAR,
        payment_date: Optional[date] = None,
        components: Optional[PaymentComponents] = None
    ) -> Allocation:
        """How a payment would be split, without recording anything; excess is reported"""
        payment_date = payment_date or date.today()
        loan = self.get_loan(loan_id)
        schedule = self.store.load_schedule(loan_id)
        self._detect_overdue(loan, schedule, payment_date)
        position = LoanPosition.from_records(
            loan, schedule, self.store.load_payments(loan_id), payment_date, self.policy
        )
        return allocate(amount, position, PaymentType(payment_type), components, ExcessPolicy.REFUND)

    # Internals

    def _lock_loan(self, loan_id: str) -> Loan:
        loan = self.store.load_loan(loan_id, for_update=True)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def _detect_overdue(self, loan: Loan, schedule: List[ScheduleEntry], as_of: date) -> Set[str]:
        """Flag installments past due at the payment date; nothing is written here"""
        dirty = set()
        if not can_apply_payment(loan.status):
            return dirty

        for row in schedule:
            if row.status == ScheduleStatus.PENDING and row.due_date < as_of:
                row.status = ScheduleStatus.OVERDUE
                dirty.add(row.id)

        past_maturity = (loan.remaining_capital > ZERO and schedule
                         and schedule[-1].due_date < as_of)
        if loan.status == LoanStatus.ACTIVE and (past_maturity or any(
            row.status == ScheduleStatus.OVERDUE for row in schedule
        )):
            loan.status = transition(loan.status, LoanEvent.MARK_OVERDUE, loan_id=loan.id)
        return dirty

    def _apply_credits(self, schedule: List[ScheduleEntry], allocation: Allocation) -> Set[str]:
        rows = {row.id: row for row in schedule}
        credited = set()
        for credit in allocation.installment_credits:
            row = rows[credit.schedule_id]
            row.paid_amount = round_money(row.paid_amount + credit.amount)
            row.late_fee_paid = round_money(row.late_fee_paid + credit.late_fee)
            credited.add(row.id)
        return credited

    def _save_rows(self, schedule: List[ScheduleEntry], row_ids: Set[str], now: datetime) -> None:
        for row in schedule:
            if row.id in row_ids:
                row.updated_at = now
                self.store.save_schedule_entry(row)
