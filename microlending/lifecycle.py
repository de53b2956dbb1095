"""
Loan Lifecycle Module

Closed set of loan and installment statuses and the transition table that
governs them. Display labels for statuses belong to the presentation layer.
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple

from .errors import InvalidStatusTransitionError


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"        # Initial state, payments current
    OVERDUE = "OVERDUE"      # At least one installment past due
    PAID = "PAID"            # Remaining capital reached zero
    CANCELED = "CANCELED"    # Manual override, frozen


class ScheduleStatus(Enum):
    """Installment row states"""
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class LoanEvent(Enum):
    """Events that move a loan between states"""
    MARK_OVERDUE = "mark_overdue"      # Sweeper or payment-time detection
    BRING_CURRENT = "bring_current"    # Payment cleared every overdue installment
    SETTLE = "settle"                  # Remaining capital reached zero
    CANCEL = "cancel"                  # Manual, irreversible
    REOPEN = "reopen"                  # Reversal restored capital on a PAID loan


# (from, event) -> allowed targets
_TRANSITIONS: Dict[Tuple[LoanStatus, LoanEvent], FrozenSet[LoanStatus]] = {
    (LoanStatus.ACTIVE, LoanEvent.MARK_OVERDUE): frozenset({LoanStatus.OVERDUE}),
    (LoanStatus.OVERDUE, LoanEvent.BRING_CURRENT): frozenset({LoanStatus.ACTIVE}),
    (LoanStatus.ACTIVE, LoanEvent.SETTLE): frozenset({LoanStatus.PAID}),
    (LoanStatus.OVERDUE, LoanEvent.SETTLE): frozenset({LoanStatus.PAID}),
    (LoanStatus.ACTIVE, LoanEvent.CANCEL): frozenset({LoanStatus.CANCELED}),
    (LoanStatus.OVERDUE, LoanEvent.CANCEL): frozenset({LoanStatus.CANCELED}),
    (LoanStatus.PAID, LoanEvent.REOPEN): frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE}),
}

OPEN_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})


def can_apply_payment(status: LoanStatus) -> bool:
    """Only ACTIVE and OVERDUE loans accept payments"""
    return status in OPEN_STATUSES


def can_cancel(status: LoanStatus) -> bool:
    """Cancel is reachable from ACTIVE or OVERDUE only"""
    return status in OPEN_STATUSES


def transition(status: LoanStatus, event: LoanEvent,
               target: LoanStatus = None, loan_id: str = "") -> LoanStatus:
    """
    Apply a lifecycle event

    Args:
        status: Current loan status
        event: Event being applied
        target: Required when the event has more than one legal target (REOPEN)
        loan_id: Used in the error message only

    Returns:
        The new status

    Raises:
        InvalidStatusTransitionError: If the event is illegal from this status
    """
    allowed = _TRANSITIONS.get((status, event))
    if not allowed:
        raise InvalidStatusTransitionError(status.value, event.value, loan_id)

    if target is None:
        if len(allowed) != 1:
            raise InvalidStatusTransitionError(status.value, event.value, loan_id)
        return next(iter(allowed))

    if target not in allowed:
        raise InvalidStatusTransitionError(status.value, event.value, loan_id)
    return target


def status_after_payment(status: LoanStatus, new_balance_is_zero: bool,
                         overdue_remaining: bool) -> LoanStatus:
    """
    Resolve the status once a payment has been applied

    Args:
        status: Status after any payment-time overdue detection
        new_balance_is_zero: Remaining capital reached exactly zero
        overdue_remaining: Some installment is still past due and unpaid

    Returns:
        Resulting status
    """
    if new_balance_is_zero:
        return transition(status, LoanEvent.SETTLE)
    if status == LoanStatus.OVERDUE and not overdue_remaining:
        return transition(status, LoanEvent.BRING_CURRENT)
    return status


def status_after_reversal(status: LoanStatus, new_balance_is_zero: bool,
                          overdue_remaining: bool) -> LoanStatus:
    """Resolve the status once a reversal restored capital"""
    if new_balance_is_zero:
        return status
    target = LoanStatus.OVERDUE if overdue_remaining else LoanStatus.ACTIVE
    if status == LoanStatus.PAID:
        return transition(status, LoanEvent.REOPEN, target)
    if status == LoanStatus.ACTIVE and overdue_remaining:
        return transition(status, LoanEvent.MARK_OVERDUE)
    if status == LoanStatus.OVERDUE and not overdue_remaining:
        return transition(status, LoanEvent.BRING_CURRENT)
    return status
