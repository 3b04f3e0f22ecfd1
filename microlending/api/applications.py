"""
Loan application endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import LendingSystem, get_actor, get_lending_system
from .schemas import (
    SubmitApplicationRequest, ApproveApplicationRequest, RejectApplicationRequest,
    MoneyModel, money_or_none
)
from ..applications import ApplicationStatus, LoanApplication
from ..exceptions import ValidationError


router = APIRouter()


def application_to_response(application: LoanApplication) -> dict:
    return {
        "id": application.id,
        "customer_id": application.customer_id,
        "scheme_id": application.scheme_id,
        "branch_code": application.branch_code,
        "status": application.status.value,
        "requested_amount": MoneyModel.from_money(application.requested_amount).model_dump(),
        "approved_amount": money_or_none(application.approved_amount),
        "admin_remarks": application.admin_remarks,
        "submission_timestamp": application.submission_timestamp.isoformat(),
        "decision_timestamp": (application.decision_timestamp.isoformat()
                               if application.decision_timestamp else None),
        "submitted_by": application.submitted_by,
        "decided_by": application.decided_by,
        "version": application.version
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_application(
    request: SubmitApplicationRequest,
    system: LendingSystem = Depends(get_lending_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Submit a new loan application"""
    application = system.application_manager.submit(
        customer_id=request.customer_id,
        requested_amount=request.requested_amount,
        scheme_id=request.scheme_id,
        actor=actor,
        branch_code=request.branch_code
    )
    return application_to_response(application)


@router.get("")
async def list_applications(
    status: Optional[str] = None,
    branch_code: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List applications, optionally filtered by status and branch"""
    try:
        status_filter = ApplicationStatus(status) if status else None
    except ValueError as e:
        raise ValidationError(f"Unknown application status: {status}") from e

    applications = system.application_manager.list_applications(
        status=status_filter, branch_code=branch_code
    )
    return {"applications": [application_to_response(a) for a in applications]}


@router.get("/{application_id}")
async def get_application(application_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get loan application details"""
    application = system.application_manager.get_application(application_id)
    if not application:
        raise HTTPException(status_code=404, detail="Loan application not found")
    return application_to_response(application)


@router.post("/{application_id}/approve")
async def approve_application(
    application_id: str,
    request: ApproveApplicationRequest,
    system: LendingSystem = Depends(get_lending_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Approve an application and generate its repayment schedule"""
    application = system.application_manager.approve(
        application_id,
        approved_amount=request.approved_amount,
        schedule_terms=request.schedule.to_schedule_terms(),
        actor=actor
    )
    return application_to_response(application)


@router.post("/{application_id}/reject")
async def reject_application(
    application_id: str,
    request: RejectApplicationRequest,
    system: LendingSystem = Depends(get_lending_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Reject an application with a reason"""
    application = system.application_manager.reject(application_id, request.reason, actor=actor)
    return application_to_response(application)


@router.get("/{application_id}/schedule")
async def get_schedule(application_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get the repayment schedule of an approved loan"""
    if not system.application_manager.get_application(application_id):
        raise HTTPException(status_code=404, detail="Loan application not found")

    schedule = system.application_manager.get_schedule(application_id)
    return {
        "schedule": [
            {
                "installment_index": entry.installment_index,
                "due_date": entry.due_date.isoformat(),
                "expected_amount": MoneyModel.from_money(entry.expected_amount).model_dump()
            }
            for entry in schedule
        ]
    }


@router.get("/{application_id}/summary")
async def get_loan_summary(application_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get the repayment position of an approved loan"""
    summary = system.application_manager.get_loan_summary(application_id)
    return {
        "loan_id": summary.loan_id,
        "approved_amount": MoneyModel.from_money(summary.approved_amount).model_dump(),
        "total_expected": MoneyModel.from_money(summary.total_expected).model_dump(),
        "total_collected": MoneyModel.from_money(summary.total_collected).model_dump(),
        "fines_collected": MoneyModel.from_money(summary.fines_collected).model_dump(),
        "outstanding": MoneyModel.from_money(summary.outstanding).model_dump(),
        "installments_total": summary.installments_total,
        "installments_covered": summary.installments_covered,
        "next_due_date": summary.next_due_date.isoformat() if summary.next_due_date else None,
        "next_due_amount": money_or_none(summary.next_due_amount)
    }
