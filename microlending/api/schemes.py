"""
Loan scheme endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import LendingSystem, get_actor, get_lending_system
from .schemas import CreateSchemeRequest
from ..schemes import LoanScheme


router = APIRouter()


def scheme_to_response(scheme: LoanScheme) -> dict:
    return {
        "id": scheme.id,
        "name": scheme.name,
        "loan_type": scheme.loan_type,
        "interest_rate": str(scheme.interest_rate),
        "repayment_frequency": scheme.repayment_frequency.value,
        "processing_fee": str(scheme.processing_fee),
        "other_charges": str(scheme.other_charges),
        "late_fine": str(scheme.late_fine),
        "loan_period": scheme.loan_period,
        "created_at": scheme.created_at.isoformat()
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_scheme(
    request: CreateSchemeRequest,
    system: LendingSystem = Depends(get_lending_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Create a new loan scheme"""
    scheme = system.scheme_catalog.create_scheme(
        name=request.name,
        interest_rate=request.interest_rate,
        repayment_frequency=request.repayment_frequency,
        loan_type=request.loan_type,
        processing_fee=request.processing_fee,
        other_charges=request.other_charges,
        late_fine=request.late_fine,
        loan_period=request.loan_period,
        actor=actor
    )
    return scheme_to_response(scheme)


@router.get("")
async def list_schemes(system: LendingSystem = Depends(get_lending_system)):
    """List all loan schemes"""
    return {"schemes": [scheme_to_response(s) for s in system.scheme_catalog.list_schemes()]}


@router.get("/{scheme_id}")
async def get_scheme(scheme_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get loan scheme by ID"""
    return scheme_to_response(system.scheme_catalog.get_scheme(scheme_id))
