"""
Loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, get_lending_system
from .schemas import CreateLoanRequest, CancelLoanRequest, LoanActionRequest
from ..money import format_money
from ..amortization import effective_rate_per_term
from ..lifecycle import LoanStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Originate a new loan with its installment schedule"""
    loan = system.ledger.create_loan(**request.to_kwargs())
    schedule = system.ledger.get_schedule(loan.id)
    return {
        "loan": loan.to_dict(),
        "schedule": [row.to_dict() for row in schedule],
        "message": "Loan created successfully"
    }


@router.get("")
def list_loans(
    status: Optional[LoanStatus] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans, optionally by status"""
    loans = system.ledger.list_loans(status)
    return {"loans": [loan.to_dict() for loan in loans], "total_count": len(loans)}


@router.get("/overdue")
def get_overdue_loans(
    as_of: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Open loans that are behind schedule"""
    loans = system.ledger.get_overdue_loans(as_of)
    return {"loans": [loan.to_dict() for loan in loans], "total_count": len(loans)}


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    return system.ledger.get_loan(loan_id).to_dict()


@router.get("/{loan_id}/schedule")
def get_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Stored installment rows with their payment status"""
    schedule = system.ledger.get_schedule(loan_id)
    return {"loan_id": loan_id, "schedule": [row.to_dict() for row in schedule]}


@router.get("/{loan_id}/amortization")
def get_loan_amortization(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Display amortization table (installment, due date, interest, capital, balance)"""
    loan = system.ledger.get_loan(loan_id)
    table = system.ledger.get_amortization(loan_id)
    return {
        "loan_id": loan_id,
        "installment_amount": str(loan.installment_amount),
        "effective_rate": str(effective_rate_per_term(loan.terms)),
        "amortization": [entry.to_dict() for entry in table]
    }


@router.get("/{loan_id}/summary")
def get_loan_summary(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Totals paid to date and repayment progress, with display amounts in the configured currency"""
    summary = system.ledger.get_loan_summary(loan_id)
    currency = system.config.currency_code
    response = summary.to_dict()
    response["currency_code"] = currency
    response["display"] = {
        "principal_amount": format_money(summary.principal_amount, currency),
        "remaining_capital": format_money(summary.remaining_capital, currency),
        "total_paid": format_money(summary.total_paid, currency),
    }
    return response


@router.get("/{loan_id}/payments")
def get_loan_payments(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Payment ledger of a loan, reversals included"""
    payments = system.ledger.get_payments(loan_id)
    return {"loan_id": loan_id, "payments": [p.to_dict() for p in payments]}


@router.post("/{loan_id}/cancel")
def cancel_loan(
    loan_id: str,
    request: CancelLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Cancel a loan; the balance is left as is"""
    loan = system.ledger.cancel_loan(loan_id, request.canceled_by_id, request.reason)
    return {"loan": loan.to_dict(), "message": "Loan canceled successfully"}


@router.patch("/{loan_id}")
def apply_loan_action(
    loan_id: str,
    request: LoanActionRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Manual status override; only "mark_overdue" is supported"""
    loan = system.ledger.mark_overdue(loan_id, request.user_id, request.reason)
    return {"loan": loan.to_dict(), "message": "Loan marked as overdue"}
