"""
Loan payment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import LendingSystem, get_actor, get_lending_system
from .schemas import RecordPaymentRequest, ReversePaymentRequest, CorrectPaymentRequest, MoneyModel
from ..applications import PaymentRecord


router = APIRouter()


def payment_to_response(record: PaymentRecord) -> dict:
    return {
        "id": record.id,
        "loan_id": record.loan_id,
        "collection_date": record.collection_date.isoformat(),
        "amount_paid": MoneyModel.from_money(record.amount_paid).model_dump(),
        "fine": MoneyModel.from_money(record.fine).model_dump(),
        "total": MoneyModel.from_money(record.total).model_dump(),
        "payment_mode": record.payment_mode.value,
        "remarks": record.remarks,
        "entry_type": record.entry_type.value,
        "reverses": record.reverses,
        "recorded_by": record.recorded_by,
        "recorded_at": record.recorded_at.isoformat()
    }


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    loan_id: str,
    request: RecordPaymentRequest,
    system: LendingSystem = Depends(get_lending_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Record a collection against an approved loan"""
    record = system.application_manager.record_payment(
        loan_id,
        amount_paid=request.amount_paid,
        fine=request.fine,
        collection_date=request.collection_date,
        actor=actor,
        payment_mode=request.payment_mode,
        remarks=request.remarks
    )
    return payment_to_response(record)


@router.get("/{loan_id}/payments")
async def list_payments(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """List payment entries of a loan, reversals included"""
    records = system.application_manager.get_payments(loan_id)
    return {"payments": [payment_to_response(r) for r in records]}


@router.post("/{loan_id}/payments/{payment_id}/reverse", status_code=status.HTTP_201_CREATED)
async def reverse_payment(
    loan_id: str,
    payment_id: str,
    request: ReversePaymentRequest,
    system: LendingSystem = Depends(get_lending_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Cancel a payment with a compensating entry"""
    reversal = system.application_manager.reverse_payment(
        loan_id, payment_id, actor=actor,
        reversal_date=request.reversal_date, reason=request.reason
    )
    return payment_to_response(reversal)


@router.post("/{loan_id}/payments/{payment_id}/correct", status_code=status.HTTP_201_CREATED)
async def correct_payment(
    loan_id: str,
    payment_id: str,
    request: CorrectPaymentRequest,
    system: LendingSystem = Depends(get_lending_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Replace a payment: reversal plus a new entry"""
    reversal, replacement = system.application_manager.correct_payment(
        loan_id, payment_id,
        amount_paid=request.amount_paid,
        fine=request.fine,
        collection_date=request.collection_date,
        actor=actor,
        payment_mode=request.payment_mode,
        remarks=request.remarks,
        reversal_date=request.reversal_date
    )
    return {
        "reversal": payment_to_response(reversal),
        "replacement": payment_to_response(replacement)
    }
