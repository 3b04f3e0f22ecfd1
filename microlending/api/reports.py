"""
Collection report endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse

from .dependencies import LendingSystem, get_lending_system


router = APIRouter()


# Sync handlers: report runs block on storage reads and the day pool
@router.get("/daily-collections")
def daily_collections(
    days: Optional[int] = Query(None, description="Window size in days, ending at as_of"),
    as_of: Optional[date] = Query(None, description="Last day of the window; defaults to today"),
    format: str = Query("json", pattern="^(json|csv)$"),
    system: LendingSystem = Depends(get_lending_system)
):
    """Expected vs. collected amounts per day over a trailing window"""
    report = system.reconciliation_engine.daily_collection_report(number_of_days=days, as_of=as_of)
    if format == "csv":
        return PlainTextResponse(report.to_csv(), media_type="text/csv")
    return report.to_dict()


@router.get("/collection-sheet")
def collection_sheet(
    day: date,
    branch_code: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Paid and pending approved loans for one day"""
    return system.reconciliation_engine.collection_sheet(day, branch_code=branch_code).to_dict()


@router.get("/portfolio")
def portfolio(system: LendingSystem = Depends(get_lending_system)):
    """Application counts per status and approved volume"""
    return system.reconciliation_engine.portfolio_summary()
