"""
Test suite for the payment allocator

The allocator is pure: these tests build loan positions by hand and check
the waterfall (late fee, interest, capital), validation and reversals.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from microlending.errors import (
    InvalidPaymentAmountError, PaymentNotAllowedError,
    PaymentExceedsBalanceError, CannotReversePaymentError
)
from microlending.amortization import LoanStructure, PaymentFrequency
from microlending.late_fees import ExcessPolicy
from microlending.lifecycle import LoanStatus, ScheduleStatus
from microlending.loans import ScheduleEntry, Payment, PaymentType, InstallmentCredit
from microlending.allocation import LoanPosition, PaymentComponents, allocate, reverse


NOW = datetime.now(timezone.utc)


def rows_for_flat_loan(status_first=ScheduleStatus.PENDING):
    """5000 + 500 weekly over 4 starting 2024-01-01"""
    rows = []
    for n, due in enumerate([date(2024, 1, 8), date(2024, 1, 15),
                             date(2024, 1, 22), date(2024, 1, 29)], start=1):
        rows.append(ScheduleEntry(
            id=f"flat_{n}", created_at=NOW, updated_at=NOW, loan_id="flat",
            sequence=n, due_date=due, expected_amount=Decimal('1375.00'),
            expected_capital=Decimal('1250.00'), expected_interest=Decimal('125.00'),
            status=status_first if n == 1 else ScheduleStatus.PENDING
        ))
    return rows


def flat_position(**overrides):
    values = dict(
        loan_id="flat",
        status=LoanStatus.ACTIVE,
        structure=LoanStructure.FLAT_RATE,
        principal_amount=Decimal('5000.00'),
        remaining_capital=Decimal('5000.00'),
        as_of=date(2024, 1, 5),
        installments=rows_for_flat_loan(),
        finance_charge=Decimal('500.00'),
    )
    values.update(overrides)
    return LoanPosition(**values)


def interest_bearing_position(**overrides):
    values = dict(
        loan_id="ib",
        status=LoanStatus.ACTIVE,
        structure=LoanStructure.INTEREST_BEARING,
        principal_amount=Decimal('10000.00'),
        remaining_capital=Decimal('10000.00'),
        as_of=date(2024, 2, 1),
        annual_interest_rate=Decimal('36'),
        payment_frequency=PaymentFrequency.MONTHLY,
        start_date=date(2024, 1, 1),
        term_count=12,
    )
    values.update(overrides)
    return LoanPosition(**values)


def recorded_payment(capital, interest, late_fee='0.00', total=None, credits=None):
    capital, interest, late_fee = Decimal(capital), Decimal(interest), Decimal(late_fee)
    return Payment(
        id="pay-1", created_at=NOW, updated_at=NOW, loan_id="ib",
        total_amount=Decimal(total) if total else capital + interest + late_fee,
        capital_applied=capital, interest_applied=interest, late_fee_applied=late_fee,
        payment_type=PaymentType.REGULAR, payment_date=date(2024, 1, 31),
        installment_credits=credits or []
    )


class TestValidation:
    """Test preconditions checked before any allocation"""

    def test_zero_amount_rejected(self):
        with pytest.raises(InvalidPaymentAmountError):
            allocate(Decimal('0'), flat_position())

    def test_negative_amount_rejected(self):
        with pytest.raises(InvalidPaymentAmountError):
            allocate(Decimal('-10'), flat_position())

    def test_sub_cent_amount_rejected(self):
        with pytest.raises(InvalidPaymentAmountError):
            allocate(Decimal('10.001'), flat_position())

    def test_components_must_sum_to_total(self):
        """1000 with capital 500 + interest 100 does not add up"""
        components = PaymentComponents(capital=Decimal('500'), interest=Decimal('100'))
        with pytest.raises(InvalidPaymentAmountError):
            allocate(Decimal('1000'), flat_position(), overrides=components)

    def test_negative_component_rejected(self):
        components = PaymentComponents(capital=Decimal('110'), interest=Decimal('-10'))
        with pytest.raises(InvalidPaymentAmountError):
            allocate(Decimal('100'), flat_position(), overrides=components)

    def test_capital_above_balance_rejected(self):
        components = PaymentComponents(capital=Decimal('900'))
        position = interest_bearing_position(remaining_capital=Decimal('800.00'))
        with pytest.raises(PaymentExceedsBalanceError):
            allocate(Decimal('900'), position, overrides=components)

    @pytest.mark.parametrize("status", [LoanStatus.PAID, LoanStatus.CANCELED])
    def test_closed_loans_reject_payments(self, status):
        with pytest.raises(PaymentNotAllowedError):
            allocate(Decimal('100'), flat_position(status=status))


class TestWaterfall:
    """Test late fee, interest and capital ordering"""

    def test_flat_rate_regular_installment(self):
        allocation = allocate(Decimal('1375.00'), flat_position())

        assert allocation.late_fee_applied == Decimal('0.00')
        assert allocation.interest_applied == Decimal('125.00')
        assert allocation.capital_applied == Decimal('1250.00')
        assert allocation.new_balance == Decimal('3750.00')
        assert allocation.new_status == LoanStatus.ACTIVE
        assert not allocation.status_changed
        assert allocation.installment_credits == [InstallmentCredit("flat_1", Decimal('1375.00'))]

    def test_components_always_sum_to_total(self):
        for amount in ('0.01', '1', '99.99', '1375', '2000.50', '5499.99'):
            allocation = allocate(Decimal(amount), flat_position())
            assert allocation.total_applied == Decimal(amount)

    def test_late_fee_collected_first(self):
        position = flat_position(
            status=LoanStatus.OVERDUE,
            as_of=date(2024, 1, 13),
            installments=rows_for_flat_loan(ScheduleStatus.OVERDUE),
            late_fees_owed={"flat_1": Decimal('27.50')}
        )
        allocation = allocate(Decimal('1402.50'), position)

        assert allocation.late_fee_applied == Decimal('27.50')
        assert allocation.interest_applied == Decimal('125.00')
        assert allocation.capital_applied == Decimal('1250.00')
        assert allocation.new_status == LoanStatus.ACTIVE
        assert allocation.status_changed
        assert allocation.installment_credits[0].late_fee == Decimal('27.50')

    def test_partial_payment_keeps_loan_overdue(self):
        position = flat_position(
            status=LoanStatus.OVERDUE,
            as_of=date(2024, 1, 13),
            installments=rows_for_flat_loan(ScheduleStatus.OVERDUE),
            late_fees_owed={"flat_1": Decimal('27.50')}
        )
        allocation = allocate(Decimal('500.00'), position)

        assert allocation.late_fee_applied == Decimal('27.50')
        assert allocation.new_status == LoanStatus.OVERDUE
        assert not allocation.status_changed

    def test_small_payment_goes_entirely_to_late_fee(self):
        position = flat_position(late_fees_owed={"flat_1": Decimal('27.50')})
        allocation = allocate(Decimal('20.00'), position)

        assert allocation.late_fee_applied == Decimal('20.00')
        assert allocation.interest_applied == Decimal('0.00')
        assert allocation.capital_applied == Decimal('0.00')

    def test_capital_payment_skips_interest(self):
        allocation = allocate(Decimal('1000.00'), flat_position(), PaymentType.CAPITAL_PAYMENT)

        assert allocation.interest_applied == Decimal('0.00')
        assert allocation.capital_applied == Decimal('1000.00')
        assert allocation.new_balance == Decimal('4000.00')

    def test_interest_accrues_per_elapsed_period(self):
        """10000 at 36%: one monthly period at 3%"""
        allocation = allocate(Decimal('1000.00'), interest_bearing_position())

        assert allocation.interest_applied == Decimal('300.00')
        assert allocation.capital_applied == Decimal('700.00')
        assert allocation.new_balance == Decimal('9300.00')

    def test_no_interest_before_first_due_date(self):
        allocation = allocate(Decimal('1000.00'), interest_bearing_position(as_of=date(2024, 1, 20)))

        assert allocation.interest_applied == Decimal('0.00')
        assert allocation.capital_applied == Decimal('1000.00')

    def test_interest_already_paid_is_netted(self):
        position = interest_bearing_position(interest_paid=Decimal('300.00'))
        allocation = allocate(Decimal('1000.00'), position)

        assert allocation.interest_applied == Decimal('0.00')
        assert allocation.capital_applied == Decimal('1000.00')

    def test_each_period_charges_capital_outstanding_when_it_opened(self):
        """Second period runs on 9300 after 700 of capital was paid on Feb 1"""
        position = interest_bearing_position(
            remaining_capital=Decimal('9300.00'),
            as_of=date(2024, 3, 1),
            interest_paid=Decimal('300.00'),
            capital_payments=[(date(2024, 2, 1), Decimal('700.00'))],
        )
        allocation = allocate(Decimal('1000.00'), position)

        assert allocation.interest_applied == Decimal('279.00')
        assert allocation.capital_applied == Decimal('721.00')

    def test_capital_left_after_last_due_date_keeps_loan_overdue(self):
        last_row = ScheduleEntry(
            id="ib_1", created_at=NOW, updated_at=NOW, loan_id="ib", sequence=1,
            due_date=date(2024, 2, 1), expected_amount=Decimal('1000.00'),
            expected_capital=Decimal('1000.00'), expected_interest=Decimal('0.00'),
            paid_amount=Decimal('1000.00'), status=ScheduleStatus.PAID
        )
        position = interest_bearing_position(
            status=LoanStatus.OVERDUE,
            remaining_capital=Decimal('22.51'),
            annual_interest_rate=Decimal('0'),
            term_count=1,
            as_of=date(2024, 3, 1),
            installments=[last_row],
        )

        partial = allocate(Decimal('10.00'), position)
        assert partial.new_balance == Decimal('12.51')
        assert partial.new_status == LoanStatus.OVERDUE

        settled = allocate(Decimal('22.51'), position)
        assert settled.new_status == LoanStatus.PAID

    def test_full_settlement_collects_everything(self):
        allocation = allocate(
            Decimal('10300.00'), interest_bearing_position(), PaymentType.FULL_SETTLEMENT
        )

        assert allocation.interest_applied == Decimal('300.00')
        assert allocation.capital_applied == Decimal('10000.00')
        assert allocation.new_balance == Decimal('0.00')
        assert allocation.new_status == LoanStatus.PAID
        assert allocation.status_changed

    def test_full_settlement_short_amount_rejected(self):
        with pytest.raises(InvalidPaymentAmountError):
            allocate(Decimal('5000.00'), interest_bearing_position(), PaymentType.FULL_SETTLEMENT)

    def test_flat_rate_settlement_collects_remaining_charge(self):
        allocation = allocate(Decimal('5500.00'), flat_position(), PaymentType.FULL_SETTLEMENT)

        assert allocation.interest_applied == Decimal('500.00')
        assert allocation.capital_applied == Decimal('5000.00')
        assert allocation.new_status == LoanStatus.PAID

    def test_explicit_full_settlement_split(self):
        """Balance 800 paid with capital 800"""
        position = interest_bearing_position(
            remaining_capital=Decimal('800.00'), as_of=date(2024, 1, 1)
        )
        allocation = allocate(
            Decimal('800.00'), position, PaymentType.FULL_SETTLEMENT,
            overrides=PaymentComponents(capital=Decimal('800.00'))
        )

        assert allocation.new_balance == Decimal('0.00')
        assert allocation.new_status == LoanStatus.PAID
        assert allocation.status_changed


class TestExcess:
    """Test money beyond what settles the loan"""

    def test_excess_rejected_by_default(self):
        with pytest.raises(InvalidPaymentAmountError):
            allocate(Decimal('6000.00'), flat_position())

    def test_excess_reported_for_refund(self):
        allocation = allocate(
            Decimal('6000.00'), flat_position(), excess_policy=ExcessPolicy.REFUND
        )

        assert allocation.excess == Decimal('500.00')
        assert allocation.total_applied == Decimal('5500.00')
        assert allocation.capital_applied == Decimal('5000.00')
        assert allocation.interest_applied == Decimal('500.00')
        assert allocation.new_status == LoanStatus.PAID


class TestReverse:
    """Test negated allocations"""

    def test_reverse_restores_capital(self):
        payment = recorded_payment('700.00', '300.00')
        position = interest_bearing_position(remaining_capital=Decimal('9300.00'))
        allocation = reverse(payment, position)

        assert allocation.capital_applied == Decimal('-700.00')
        assert allocation.interest_applied == Decimal('-300.00')
        assert allocation.late_fee_applied == Decimal('-0.00')
        assert allocation.new_balance == Decimal('10000.00')
        assert allocation.total_applied == -payment.total_amount

    def test_reverse_reopens_paid_loan(self):
        payment = recorded_payment('800.00', '0.00')
        position = interest_bearing_position(
            status=LoanStatus.PAID, remaining_capital=Decimal('0.00')
        )
        allocation = reverse(payment, position)

        assert allocation.new_balance == Decimal('800.00')
        assert allocation.new_status == LoanStatus.ACTIVE
        assert allocation.status_changed

    def test_reverse_negates_installment_credits(self):
        credit = InstallmentCredit("flat_1", Decimal('1375.00'), Decimal('27.50'))
        payment = recorded_payment('1250.00', '125.00', '27.50', credits=[credit])
        position = flat_position(remaining_capital=Decimal('3750.00'), as_of=date(2024, 1, 20))
        allocation = reverse(payment, position)

        assert allocation.installment_credits == [
            InstallmentCredit("flat_1", Decimal('-1375.00'), Decimal('-27.50'))
        ]

    def test_reversal_cannot_be_reversed(self):
        reversal = recorded_payment('-700.00', '-300.00')
        with pytest.raises(CannotReversePaymentError):
            reverse(reversal, interest_bearing_position())

    def test_canceled_loan_rejects_reversal(self):
        payment = recorded_payment('700.00', '300.00')
        with pytest.raises(CannotReversePaymentError):
            reverse(payment, interest_bearing_position(status=LoanStatus.CANCELED))


class TestPaymentRecord:
    """Test the ledger entry invariant"""

    def test_components_must_sum_exactly(self):
        with pytest.raises(InvalidPaymentAmountError):
            recorded_payment('500.00', '100.00', total='1000.00')
