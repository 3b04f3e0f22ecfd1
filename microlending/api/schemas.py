"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Optional
from pydantic import BaseModel, Field

from ..applications import ScheduleTerms
from ..currency import Money


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (INR, USD, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def money_or_none(money: Optional[Money]) -> Optional[dict]:
    return MoneyModel.from_money(money).model_dump() if money is not None else None


# Scheme schemas
class CreateSchemeRequest(BaseModel):
    name: str
    interest_rate: Decimal = Field(..., description="Percent, e.g. 12.5")
    repayment_frequency: str = Field("monthly", description="daily, weekly or monthly")
    loan_type: str = "personal"
    processing_fee: Decimal = Decimal('0')
    other_charges: Decimal = Decimal('0')
    late_fine: Decimal = Decimal('0')
    loan_period: Optional[str] = None


# Application schemas
class SubmitApplicationRequest(BaseModel):
    customer_id: str
    requested_amount: Decimal
    scheme_id: str
    branch_code: Optional[str] = None


class ScheduleTermsModel(BaseModel):
    installment_count: int
    frequency: str = "monthly"
    installment_amount: Optional[Decimal] = None
    start_date: Optional[date] = None

    def to_schedule_terms(self) -> ScheduleTerms:
        return ScheduleTerms(
            installment_count=self.installment_count,
            frequency=self.frequency,
            installment_amount=self.installment_amount,
            start_date=self.start_date
        )


class ApproveApplicationRequest(BaseModel):
    approved_amount: Decimal
    schedule: ScheduleTermsModel


class RejectApplicationRequest(BaseModel):
    reason: str


# Payment schemas
class RecordPaymentRequest(BaseModel):
    amount_paid: Decimal
    fine: Decimal = Decimal('0')
    collection_date: Optional[date] = None  # Defaults to today
    payment_mode: str = "cash"
    remarks: Optional[str] = None


class ReversePaymentRequest(BaseModel):
    reversal_date: Optional[date] = None
    reason: Optional[str] = None


class CorrectPaymentRequest(RecordPaymentRequest):
    reversal_date: Optional[date] = None
