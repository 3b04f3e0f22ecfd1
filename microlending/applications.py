"""
Loan Application Lifecycle Module

Enforces the one-way Pending -> Approved | Rejected state machine, generates
the repayment schedule at approval, and appends collection entries against
approved loans.

Decisions are guarded by a compare-and-swap on the application status, run in
the same storage transaction as the schedule insert: of two concurrent
decisions on one application exactly one commits, and no reader ever sees an
approved loan without its schedule. Schedule rows and payment records are
insert-only; a payment is corrected by appending a reversal entry.
"""

import calendar
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from .audit import AuditEventType, AuditTrail
from .currency import Currency, Money, to_decimal
from .exceptions import InvalidStateError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .schemes import RepaymentFrequency, SchemeCatalog
from .storage import DuplicateRecordError, StorageInterface, StorageRecord


logger = get_logger("microlending.applications")

DateLike = Union[date, datetime, str]


class ApplicationStatus(Enum):
    """Loan application states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentMode(Enum):
    """How a collection was received"""
    CASH = "cash"
    ONLINE = "online"
    CHEQUE = "cheque"


class EntryType(Enum):
    """Payment ledger entry kind"""
    PAYMENT = "payment"
    REVERSAL = "reversal"


def to_reporting_date(value: DateLike, tz: tzinfo) -> date:
    """
    Resolve a calendar day in the reporting calendar.

    Aware datetimes are converted to `tz` first; naive datetimes are taken
    as already local. ISO strings of either form are accepted.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(tz)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return to_reporting_date(datetime.fromisoformat(text), tz)
        except ValueError as e:
            raise ValidationError(f"Invalid date: {value!r}") from e
    raise ValidationError(f"Invalid date: {value!r}")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def installment_due_date(start_date: date, frequency: RepaymentFrequency, index: int) -> date:
    """Due date of the index-th (1-based) installment"""
    if frequency == RepaymentFrequency.DAILY:
        return start_date + timedelta(days=index)
    elif frequency == RepaymentFrequency.WEEKLY:
        return start_date + timedelta(weeks=index)
    elif frequency == RepaymentFrequency.MONTHLY:
        # Always offset from the start so a 31st start is not dragged to the 28th
        return add_months(start_date, index)
    else:
        raise ValidationError(f"Unsupported repayment frequency: {frequency}")


@dataclass
class ScheduleTerms:
    """Repayment terms supplied with an approval"""
    installment_count: int
    frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    installment_amount: Optional[Money] = None
    start_date: Optional[date] = None

    def __post_init__(self):
        if isinstance(self.installment_count, bool) or not isinstance(self.installment_count, int):
            raise ValidationError("Installment count must be an integer")
        if self.installment_count <= 0:
            raise ValidationError("Installment count must be positive")
        try:
            self.frequency = RepaymentFrequency(self.frequency)
        except ValueError as e:
            raise ValidationError(f"Unsupported repayment frequency: {self.frequency}") from e


@dataclass
class LoanApplication(StorageRecord):
    """A customer's request for credit; becomes a loan once approved"""
    customer_id: str
    requested_amount: Money
    scheme_id: str
    status: ApplicationStatus
    submission_timestamp: datetime
    submitted_by: Optional[str] = None
    branch_code: Optional[str] = None
    approved_amount: Optional[Money] = None
    admin_remarks: Optional[str] = None
    decision_timestamp: Optional[datetime] = None
    decided_by: Optional[str] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status != ApplicationStatus.PENDING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanApplication':
        data = dict(data)
        data['status'] = ApplicationStatus(data['status'])
        data['requested_amount'] = Money.from_dict(data['requested_amount'])
        if data.get('approved_amount'):
            data['approved_amount'] = Money.from_dict(data['approved_amount'])
        data['submission_timestamp'] = datetime.fromisoformat(data['submission_timestamp'])
        if data.get('decision_timestamp'):
            data['decision_timestamp'] = datetime.fromisoformat(data['decision_timestamp'])
        return super().from_dict(data)


@dataclass
class ScheduledPayment(StorageRecord):
    """One installment of an approved loan's repayment schedule"""
    loan_id: str
    installment_index: int
    due_date: date
    expected_amount: Money

    @staticmethod
    def make_id(loan_id: str, installment_index: int) -> str:
        return f"{loan_id}:{installment_index}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduledPayment':
        data = dict(data)
        data['due_date'] = date.fromisoformat(data['due_date'])
        data['expected_amount'] = Money.from_dict(data['expected_amount'])
        return super().from_dict(data)


@dataclass
class PaymentRecord(StorageRecord):
    """Append-only collection entry against an approved loan"""
    loan_id: str
    collection_date: date
    amount_paid: Money
    fine: Money
    recorded_at: datetime
    recorded_by: Optional[str] = None
    payment_mode: PaymentMode = PaymentMode.CASH
    remarks: Optional[str] = None
    entry_type: EntryType = EntryType.PAYMENT
    reverses: Optional[str] = None

    @property
    def total(self) -> Money:
        """Amount collected including the fine"""
        return self.amount_paid + self.fine

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        data = dict(data)
        data['collection_date'] = date.fromisoformat(data['collection_date'])
        data['amount_paid'] = Money.from_dict(data['amount_paid'])
        data['fine'] = Money.from_dict(data['fine'])
        data['recorded_at'] = datetime.fromisoformat(data['recorded_at'])
        data['payment_mode'] = PaymentMode(data['payment_mode'])
        data['entry_type'] = EntryType(data['entry_type'])
        return super().from_dict(data)


@dataclass
class LoanSummary:
    """Repayment position of one approved loan"""
    loan_id: str
    approved_amount: Money
    total_expected: Money
    total_collected: Money
    fines_collected: Money
    outstanding: Money
    installments_total: int
    installments_covered: int
    next_due_date: Optional[date] = None
    next_due_amount: Optional[Money] = None


class LoanApplicationManager:
    """
    Loan application lifecycle: submission, decision, schedule generation
    and collection entries.
    """

    def __init__(
        self,
        storage: StorageInterface,
        scheme_catalog: SchemeCatalog,
        audit_trail: AuditTrail,
        currency: Currency = Currency.INR,
        reporting_timezone: str = "Asia/Kolkata",
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.scheme_catalog = scheme_catalog
        self.audit_trail = audit_trail
        self.currency = currency
        self.timezone = ZoneInfo(reporting_timezone)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.applications_table = "loan_applications"
        self.schedule_table = "scheduled_payments"
        self.payments_table = "payment_records"

    # Helpers

    def _now(self) -> datetime:
        return self._clock()

    def _today(self) -> date:
        return to_reporting_date(self._now(), self.timezone)

    def _to_money(self, value: Any, label: str) -> Money:
        if isinstance(value, Money):
            if value.currency != self.currency:
                raise ValidationError(
                    f"{label} must be in {self.currency.code}, got {value.currency.code}"
                )
            return value
        try:
            return Money(to_decimal(value), self.currency)
        except (ValueError, ArithmeticError) as e:
            raise ValidationError(f"{label}: {e}") from e

    def _load_application(self, application_id: str) -> LoanApplication:
        data = self.storage.load(self.applications_table, application_id)
        if not data:
            raise NotFoundError("Loan application", application_id)
        return LoanApplication.from_dict(data)

    @staticmethod
    def _ensure_pending(application: LoanApplication) -> None:
        if application.status != ApplicationStatus.PENDING:
            raise InvalidStateError(
                f"Loan application {application.id} is already {application.status.value}"
            )

    def _swap_status(self, updated: LoanApplication) -> None:
        """Write `updated` only if the stored application is still pending"""
        swapped = self.storage.compare_and_swap(
            self.applications_table, updated.id, "status",
            ApplicationStatus.PENDING.value, updated.to_dict()
        )
        if not swapped:
            # Lost the race: report the state that won
            self._ensure_pending(self._load_application(updated.id))
            raise InvalidStateError(f"Loan application {updated.id} changed concurrently")

    def _load_approved_loan(self, loan_id: str) -> LoanApplication:
        loan = self._load_application(loan_id)
        if loan.status != ApplicationStatus.APPROVED:
            raise InvalidStateError(
                f"Loan {loan_id} is {loan.status.value}; payments require an approved loan"
            )
        return loan

    # Lifecycle

    def submit(
        self,
        customer_id: str,
        requested_amount,
        scheme_id: str,
        actor: Optional[str] = None,
        branch_code: Optional[str] = None
    ) -> LoanApplication:
        """
        Submit a new loan application

        Raises:
            ValidationError: empty customer, non-positive amount or unknown scheme
        """
        if not (customer_id or "").strip():
            raise ValidationError("Customer id is required")
        amount = self._to_money(requested_amount, "Requested amount")
        if not amount.is_positive():
            raise ValidationError("Requested amount must be positive")
        if not self.scheme_catalog.scheme_exists(scheme_id):
            raise ValidationError(f"Unknown loan scheme: {scheme_id}")

        now = self._now()
        application = LoanApplication(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id.strip(),
            requested_amount=amount,
            scheme_id=scheme_id,
            status=ApplicationStatus.PENDING,
            submission_timestamp=now,
            submitted_by=actor,
            branch_code=branch_code
        )

        with self.storage.atomic():
            self.storage.insert(self.applications_table, application.id, application.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.APPLICATION_SUBMITTED,
                entity_type="loan_application",
                entity_id=application.id,
                metadata={
                    "customer_id": application.customer_id,
                    "requested_amount": amount.amount,
                    "scheme_id": scheme_id
                },
                user_id=actor
            )

        log_action(logger, "info", f"Loan application submitted for customer {application.customer_id}",
                   user_id=actor, action="submit_application", resource=application.id)
        return application

    def build_schedule(
        self,
        loan_id: str,
        approved_amount: Money,
        terms: ScheduleTerms,
        default_start: date
    ) -> List[ScheduledPayment]:
        """
        Generate the full installment set for an approval

        Every installment is the approved amount divided by the installment
        count, rounded to the currency precision; the last one absorbs the
        remainder so the schedule sums to the approved amount exactly.
        """
        count = terms.installment_count
        amounts = approved_amount.split(count)

        if terms.installment_amount is not None:
            requested = self._to_money(terms.installment_amount, "Installment amount")
            if abs(requested.amount - amounts[0].amount) > self.currency.minor_unit:
                raise ValidationError(
                    f"Installment amount {requested.amount} does not match "
                    f"{approved_amount.amount} over {count} installments"
                )

        if any(not amount.is_positive() for amount in amounts):
            raise ValidationError(
                f"Approved amount {approved_amount.amount} is too small for {count} installments"
            )

        start = to_reporting_date(terms.start_date, self.timezone) if terms.start_date else default_start
        now = self._now()
        return [
            ScheduledPayment(
                id=ScheduledPayment.make_id(loan_id, index),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                installment_index=index,
                due_date=installment_due_date(start, terms.frequency, index),
                expected_amount=amount
            )
            for index, amount in enumerate(amounts, start=1)
        ]

    def approve(
        self,
        application_id: str,
        approved_amount,
        schedule_terms: ScheduleTerms,
        actor: Optional[str] = None
    ) -> LoanApplication:
        """
        Approve a pending application and create its repayment schedule

        Raises:
            NotFoundError: application does not exist
            InvalidStateError: application is no longer pending
            ValidationError: non-positive amount or unusable schedule terms
        """
        current = self._load_application(application_id)
        self._ensure_pending(current)

        amount = self._to_money(approved_amount, "Approved amount")
        if not amount.is_positive():
            raise ValidationError("Approved amount must be positive")
        if not isinstance(schedule_terms, ScheduleTerms):
            raise ValidationError("Schedule terms are required")

        now = self._now()
        schedule = self.build_schedule(
            application_id, amount, schedule_terms, to_reporting_date(now, self.timezone)
        )
        approved = replace(
            current,
            status=ApplicationStatus.APPROVED,
            approved_amount=amount,
            decision_timestamp=now,
            decided_by=actor,
            updated_at=now,
            version=current.version + 1
        )

        with self.storage.atomic():
            self._swap_status(approved)
            for installment in schedule:
                self.storage.insert(self.schedule_table, installment.id, installment.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.APPLICATION_APPROVED,
                entity_type="loan_application",
                entity_id=application_id,
                metadata={"approved_amount": amount.amount},
                user_id=actor
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_CREATED,
                entity_type="loan_application",
                entity_id=application_id,
                metadata={
                    "installments": len(schedule),
                    "frequency": schedule_terms.frequency,
                    "first_due_date": schedule[0].due_date,
                    "last_due_date": schedule[-1].due_date
                },
                user_id=actor
            )

        log_action(logger, "info", f"Loan application approved with {len(schedule)} installments",
                   user_id=actor, action="approve_application", resource=application_id,
                   extra={"approved_amount": str(amount.amount)})
        return approved

    def reject(self, application_id: str, reason: str, actor: Optional[str] = None) -> LoanApplication:
        """
        Reject a pending application

        Raises:
            ValidationError: reason is empty or whitespace
            NotFoundError: application does not exist
            InvalidStateError: application is no longer pending
        """
        remarks = (reason or "").strip()
        if not remarks:
            raise ValidationError("Rejection reason is required")

        current = self._load_application(application_id)
        self._ensure_pending(current)

        now = self._now()
        rejected = replace(
            current,
            status=ApplicationStatus.REJECTED,
            admin_remarks=remarks,
            decision_timestamp=now,
            decided_by=actor,
            updated_at=now,
            version=current.version + 1
        )

        with self.storage.atomic():
            self._swap_status(rejected)
            self.audit_trail.log_event(
                event_type=AuditEventType.APPLICATION_REJECTED,
                entity_type="loan_application",
                entity_id=application_id,
                metadata={"reason": remarks},
                user_id=actor
            )

        log_action(logger, "info", "Loan application rejected",
                   user_id=actor, action="reject_application", resource=application_id)
        return rejected

    # Collections

    def record_payment(
        self,
        loan_id: str,
        amount_paid,
        fine=Decimal('0'),
        collection_date: Optional[DateLike] = None,
        actor: Optional[str] = None,
        payment_mode: PaymentMode = PaymentMode.CASH,
        remarks: Optional[str] = None
    ) -> PaymentRecord:
        """
        Append a collection entry to an approved loan

        collection_date defaults to today in the reporting calendar.

        Raises:
            NotFoundError: loan does not exist
            InvalidStateError: loan is not approved
            ValidationError: negative amount or fine
        """
        self._load_approved_loan(loan_id)

        paid = self._to_money(amount_paid, "Amount paid")
        fine_amount = self._to_money(fine if fine is not None else Decimal('0'), "Fine")
        if paid.is_negative():
            raise ValidationError("Amount paid cannot be negative")
        if fine_amount.is_negative():
            raise ValidationError("Fine cannot be negative")
        try:
            mode = PaymentMode(payment_mode)
        except ValueError as e:
            raise ValidationError(f"Unsupported payment mode: {payment_mode}") from e

        day = self._today() if collection_date is None else to_reporting_date(collection_date, self.timezone)
        now = self._now()
        record = PaymentRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            collection_date=day,
            amount_paid=paid,
            fine=fine_amount,
            recorded_at=now,
            recorded_by=actor,
            payment_mode=mode,
            remarks=remarks.strip() if remarks else None
        )

        with self.storage.atomic():
            self.storage.insert(self.payments_table, record.id, record.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "payment_id": record.id,
                    "amount_paid": paid.amount,
                    "fine": fine_amount.amount,
                    "collection_date": day
                },
                user_id=actor
            )

        log_action(logger, "info", f"Payment of {record.total.amount} recorded",
                   user_id=actor, action="record_payment", resource=loan_id,
                   extra={"payment_id": record.id, "collection_date": day.isoformat()})
        return record

    def reverse_payment(
        self,
        loan_id: str,
        payment_id: str,
        actor: Optional[str] = None,
        reversal_date: Optional[DateLike] = None,
        reason: Optional[str] = None
    ) -> PaymentRecord:
        """
        Cancel a payment by appending a compensating entry

        The reversal carries the negated amounts and is dated reversal_date
        (default today), so reports for the original day are left untouched.

        Raises:
            NotFoundError: loan or payment does not exist
            InvalidStateError: entry is itself a reversal or is already reversed
        """
        self._load_approved_loan(loan_id)
        day = self._today() if reversal_date is None else to_reporting_date(reversal_date, self.timezone)

        with self.storage.atomic():
            data = self.storage.load(self.payments_table, payment_id)
            if not data or data.get('loan_id') != loan_id:
                raise NotFoundError("Payment", payment_id)
            original = PaymentRecord.from_dict(data)
            if original.entry_type == EntryType.REVERSAL:
                raise InvalidStateError(f"Payment {payment_id} is a reversal and cannot be reversed")

            now = self._now()
            reversal = PaymentRecord(
                id=f"{payment_id}-reversal",
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                collection_date=day,
                amount_paid=-original.amount_paid,
                fine=-original.fine,
                recorded_at=now,
                recorded_by=actor,
                payment_mode=original.payment_mode,
                remarks=reason.strip() if reason else None,
                entry_type=EntryType.REVERSAL,
                reverses=payment_id
            )
            try:
                self.storage.insert(self.payments_table, reversal.id, reversal.to_dict())
            except DuplicateRecordError as e:
                raise InvalidStateError(f"Payment {payment_id} has already been reversed") from e

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_REVERSED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "payment_id": payment_id,
                    "reversal_id": reversal.id,
                    "reversal_date": day,
                    "reason": reversal.remarks
                },
                user_id=actor
            )

        log_action(logger, "info", f"Payment {payment_id} reversed",
                   user_id=actor, action="reverse_payment", resource=loan_id)
        return reversal

    def correct_payment(
        self,
        loan_id: str,
        payment_id: str,
        amount_paid,
        fine=Decimal('0'),
        collection_date: Optional[DateLike] = None,
        actor: Optional[str] = None,
        payment_mode: PaymentMode = PaymentMode.CASH,
        remarks: Optional[str] = None,
        reversal_date: Optional[DateLike] = None
    ) -> Tuple[PaymentRecord, PaymentRecord]:
        """Reverse a payment and record its replacement as one unit"""
        with self.storage.atomic():
            reversal = self.reverse_payment(
                loan_id, payment_id, actor=actor, reversal_date=reversal_date,
                reason=remarks or "Corrected"
            )
            replacement = self.record_payment(
                loan_id, amount_paid, fine, collection_date,
                actor=actor, payment_mode=payment_mode, remarks=remarks
            )
        return reversal, replacement

    # Queries

    def get_application(self, application_id: str) -> Optional[LoanApplication]:
        data = self.storage.load(self.applications_table, application_id)
        return LoanApplication.from_dict(data) if data else None

    def list_applications(
        self,
        status: Optional[ApplicationStatus] = None,
        branch_code: Optional[str] = None
    ) -> List[LoanApplication]:
        """Applications matching the filters, oldest submission first"""
        filters: Dict[str, Any] = {}
        if status is not None:
            filters['status'] = ApplicationStatus(status).value
        if branch_code is not None:
            filters['branch_code'] = branch_code
        applications = [LoanApplication.from_dict(data)
                        for data in self.storage.find(self.applications_table, filters)]
        applications.sort(key=lambda a: (a.submission_timestamp, a.id))
        return applications

    def get_schedule(self, loan_id: str) -> List[ScheduledPayment]:
        rows = [ScheduledPayment.from_dict(data)
                for data in self.storage.find(self.schedule_table, {'loan_id': loan_id})]
        rows.sort(key=lambda s: s.installment_index)
        return rows

    def get_payments(self, loan_id: str) -> List[PaymentRecord]:
        records = [PaymentRecord.from_dict(data)
                   for data in self.storage.find(self.payments_table, {'loan_id': loan_id})]
        records.sort(key=lambda p: (p.collection_date, p.recorded_at, p.id))
        return records

    def get_loan_summary(self, loan_id: str) -> LoanSummary:
        """
        Repayment position of an approved loan

        Installments are covered oldest first by the net amount paid; fines
        are reported separately and do not cover installments.
        """
        loan = self._load_approved_loan(loan_id)
        schedule = self.get_schedule(loan_id)
        payments = self.get_payments(loan_id)

        zero = Money.zero(self.currency)
        total_expected = sum((s.expected_amount for s in schedule), zero)
        total_collected = sum((p.amount_paid for p in payments), zero)
        fines_collected = sum((p.fine for p in payments), zero)
        outstanding = total_expected - total_collected
        if outstanding.is_negative():
            outstanding = zero

        covered = 0
        running = zero
        next_due = None
        for installment in schedule:
            running = running + installment.expected_amount
            if running <= total_collected:
                covered += 1
            else:
                next_due = installment
                break

        return LoanSummary(
            loan_id=loan_id,
            approved_amount=loan.approved_amount,
            total_expected=total_expected,
            total_collected=total_collected,
            fines_collected=fines_collected,
            outstanding=outstanding,
            installments_total=len(schedule),
            installments_covered=covered,
            next_due_date=next_due.due_date if next_due else None,
            next_due_amount=next_due.expected_amount if next_due else None
        )
