"""
Payment endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, get_lending_system
from .schemas import PaymentRequest, ReversePaymentRequest, parse_amount


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def register_payment(
    request: PaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Register a payment against a loan"""
    result = system.ledger.register_payment(
        loan_id=request.loan_id,
        amount=parse_amount(request.total_amount),
        created_by_id=request.created_by_id,
        payment_type=request.payment_type,
        payment_date=request.payment_date,
        components=request.components()
    )
    response = result.to_dict()
    response["message"] = "Payment registered successfully"
    return response


@router.post("/preview")
def preview_payment(
    request: PaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Show how a payment would be split without recording it"""
    allocation = system.ledger.preview_allocation(
        loan_id=request.loan_id,
        amount=parse_amount(request.total_amount),
        payment_type=request.payment_type,
        payment_date=request.payment_date,
        components=request.components()
    )
    return allocation.to_dict()


@router.get("/today")
def get_payments_on(
    payment_date: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Ledger entries of every loan dated today, or on payment_date when given"""
    day = payment_date or date.today()
    payments = system.ledger.get_payments_on(day)
    return {
        "payment_date": day.isoformat(),
        "payments": [p.to_dict() for p in payments],
        "total_count": len(payments)
    }


@router.get("/{payment_id}")
def get_payment(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get a ledger entry"""
    return system.ledger.get_payment(payment_id).to_dict()


@router.post("/{payment_id}/reverse", status_code=status.HTTP_201_CREATED)
def reverse_payment(
    payment_id: str,
    request: ReversePaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Reverse a payment with a negated ledger entry"""
    result = system.ledger.reverse_payment(
        payment_id, request.reversed_by_id, request.reason
    )
    response = result.to_dict()
    response["message"] = "Payment reversed successfully"
    return response
