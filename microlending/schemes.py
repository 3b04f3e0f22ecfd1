"""
Loan Scheme Module

Catalogue of loan schemes (interest rate, repayment cadence, fees) that loan
applications are submitted against. Scheme maintenance screens live outside
the core; the lifecycle only needs to know which scheme ids are valid.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import ValidationError, NotFoundError
from .logging_config import get_logger, log_action


logger = get_logger("microlending.schemes")


class RepaymentFrequency(Enum):
    """Installment cadence"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass
class LoanScheme(StorageRecord):
    """Loan product offered to customers"""
    name: str
    loan_type: str
    interest_rate: Decimal              # Percent, e.g. 12.5
    repayment_frequency: RepaymentFrequency
    processing_fee: Decimal = Decimal('0')
    other_charges: Decimal = Decimal('0')
    late_fine: Decimal = Decimal('0')   # Fine per missed installment
    loan_period: Optional[str] = None   # Free text, e.g. "100 days"

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanScheme':
        data = dict(data)
        data['repayment_frequency'] = RepaymentFrequency(data['repayment_frequency'])
        for field in ('interest_rate', 'processing_fee', 'other_charges', 'late_fine'):
            data[field] = Decimal(data[field])
        return super().from_dict(data)


class SchemeCatalog:
    """Creates and looks up loan schemes"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.schemes_table = "loan_schemes"

    def create_scheme(
        self,
        name: str,
        interest_rate,
        repayment_frequency: RepaymentFrequency,
        loan_type: str = "personal",
        processing_fee=Decimal('0'),
        other_charges=Decimal('0'),
        late_fine=Decimal('0'),
        loan_period: Optional[str] = None,
        scheme_id: Optional[str] = None,
        actor: Optional[str] = None
    ) -> LoanScheme:
        """
        Register a new loan scheme

        Raises:
            ValidationError: on a short name, an empty loan type, or negative rates/fees
        """
        name = (name or "").strip()
        if len(name) < 2:
            raise ValidationError("Scheme name must be at least 2 characters")
        if not (loan_type or "").strip():
            raise ValidationError("Loan type is required")

        try:
            amounts = {
                'interest_rate': to_decimal(interest_rate),
                'processing_fee': to_decimal(processing_fee),
                'other_charges': to_decimal(other_charges),
                'late_fine': to_decimal(late_fine),
            }
        except ValueError as e:
            raise ValidationError(str(e)) from e
        for field, value in amounts.items():
            if value < 0:
                raise ValidationError(f"{field.replace('_', ' ').capitalize()} cannot be negative")
        try:
            frequency = RepaymentFrequency(repayment_frequency)
        except ValueError as e:
            raise ValidationError(f"Unsupported repayment frequency: {repayment_frequency}") from e

        now = datetime.now(timezone.utc)
        scheme = LoanScheme(
            id=scheme_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            loan_type=loan_type.strip(),
            repayment_frequency=frequency,
            loan_period=loan_period,
            **amounts
        )

        with self.storage.atomic():
            self.storage.insert(self.schemes_table, scheme.id, scheme.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEME_CREATED,
                entity_type="scheme",
                entity_id=scheme.id,
                metadata={"name": scheme.name, "interest_rate": scheme.interest_rate},
                user_id=actor
            )

        log_action(logger, "info", f"Loan scheme {scheme.name} created",
                   user_id=actor, action="create_scheme", resource=scheme.id)
        return scheme

    def get_scheme(self, scheme_id: str) -> LoanScheme:
        data = self.storage.load(self.schemes_table, scheme_id)
        if not data:
            raise NotFoundError("Scheme", scheme_id)
        return LoanScheme.from_dict(data)

    def scheme_exists(self, scheme_id: str) -> bool:
        return bool(scheme_id) and self.storage.exists(self.schemes_table, scheme_id)

    def list_schemes(self) -> List[LoanScheme]:
        schemes = [LoanScheme.from_dict(data) for data in self.storage.load_all(self.schemes_table)]
        schemes.sort(key=lambda s: s.name.lower())
        return schemes
