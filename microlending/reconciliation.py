"""
Collections Reconciliation Engine

Day-bucketed comparison of what was due (scheduled installments) against what
was collected (payment records, fines included) across all loans.

Each day costs two range queries, one over installment due dates and one over
collection dates, independent of the number of loans. Days share no state and
are computed on a thread pool; a day whose reads fail or overrun the per-day
time box is reported as a zeroed, degraded entry instead of aborting the
report.
"""

import csv
import io
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from .applications import (
    ApplicationStatus, DateLike, LoanApplication, PaymentRecord, ScheduledPayment,
    to_reporting_date
)
from .currency import round_half_up
from .exceptions import PartialAggregationFailure, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger("microlending.reconciliation")

ZERO = Decimal('0')


@dataclass(frozen=True)
class DailyReportEntry:
    """Expected vs. collected totals for one calendar day"""
    date: date
    expected_today: Decimal
    collected_today: Decimal
    degraded: bool = False

    @property
    def variance(self) -> Decimal:
        return self.collected_today - self.expected_today

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date.isoformat(),
            'expected_today': str(self.expected_today),
            'collected_today': str(self.collected_today),
            'variance': str(self.variance),
            'degraded': self.degraded
        }


@dataclass
class DailyCollectionReport:
    """Daily entries in ascending date order plus the days that could not be computed"""
    start_date: date
    end_date: date
    entries: List[DailyReportEntry]
    failed_dates: List[date] = field(default_factory=list)

    @property
    def is_degraded(self) -> bool:
        return bool(self.failed_dates)

    @property
    def total_expected(self) -> Decimal:
        return sum((e.expected_today for e in self.entries), ZERO)

    @property
    def total_collected(self) -> Decimal:
        return sum((e.collected_today for e in self.entries), ZERO)

    def raise_for_failures(self) -> None:
        """Raise PartialAggregationFailure if any day is degraded"""
        if self.failed_dates:
            raise PartialAggregationFailure(self.failed_dates, report=self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'entries': [entry.to_dict() for entry in self.entries],
            'failed_dates': [day.isoformat() for day in self.failed_dates],
            'degraded': self.is_degraded,
            'total_expected': str(self.total_expected),
            'total_collected': str(self.total_collected)
        }

    def to_csv(self) -> str:
        output = io.StringIO()
        headers = ['date', 'expected_today', 'collected_today', 'variance', 'degraded']
        writer = csv.DictWriter(output, fieldnames=headers)
        writer.writeheader()
        for entry in self.entries:
            writer.writerow(entry.to_dict())
        return output.getvalue()


@dataclass
class CollectionSheetLine:
    """One approved loan's position on a collection day"""
    loan_id: str
    customer_id: str
    branch_code: Optional[str]
    expected: Decimal
    collected: Decimal
    collectors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'customer_id': self.customer_id,
            'branch_code': self.branch_code,
            'expected': str(self.expected),
            'collected': str(self.collected),
            'collectors': list(self.collectors)
        }


@dataclass
class CollectionSheet:
    """Per-day split of approved loans into paid and pending"""
    day: date
    branch_code: Optional[str]
    paid: List[CollectionSheetLine]
    pending: List[CollectionSheetLine]

    @property
    def collected(self) -> Decimal:
        return sum((line.collected for line in self.paid), ZERO)

    @property
    def expected(self) -> Decimal:
        return sum((line.expected for line in self.paid + self.pending), ZERO)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'day': self.day.isoformat(),
            'branch_code': self.branch_code,
            'paid': [line.to_dict() for line in self.paid],
            'pending': [line.to_dict() for line in self.pending],
            'collected': str(self.collected),
            'expected': str(self.expected)
        }


class ReconciliationEngine:
    """
    Read-only aggregation over the schedule and payment stores.

    The engine never writes; given the same store contents and window it
    returns identical reports.
    """

    def __init__(
        self,
        storage: StorageInterface,
        reporting_timezone: str = "Asia/Kolkata",
        default_days: int = 30,
        max_days: int = 90,
        max_workers: int = 8,
        day_timeout_seconds: float = 10.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.timezone = ZoneInfo(reporting_timezone)
        self.default_days = default_days
        self.max_days = max_days
        self.max_workers = max_workers
        self.day_timeout_seconds = day_timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.applications_table = "loan_applications"
        self.schedule_table = "scheduled_payments"
        self.payments_table = "payment_records"

    def daily_collection_report(
        self,
        number_of_days: Optional[int] = None,
        as_of: Optional[DateLike] = None
    ) -> DailyCollectionReport:
        """
        Report on the trailing window of number_of_days calendar days ending
        on the day of as_of (inclusive).

        Raises:
            ValidationError: number_of_days outside 1..max_days
        """
        days = self.default_days if number_of_days is None else number_of_days
        if isinstance(days, bool) or not isinstance(days, int):
            raise ValidationError("Number of days must be an integer")
        if not 1 <= days <= self.max_days:
            raise ValidationError(f"Number of days must be between 1 and {self.max_days}")

        end = to_reporting_date(as_of if as_of is not None else self._clock(), self.timezone)
        start = end - timedelta(days=days - 1)
        return self.report_for_range(start, end)

    def report_for_range(self, start_date: DateLike, end_date: DateLike) -> DailyCollectionReport:
        """
        Report on every day from start_date to end_date inclusive

        Raises:
            ValidationError: end before start, or more than max_days days
        """
        start = to_reporting_date(start_date, self.timezone)
        end = to_reporting_date(end_date, self.timezone)
        if end < start:
            raise ValidationError("End date must not be before start date")
        span = (end - start).days + 1
        if span > self.max_days:
            raise ValidationError(f"Report range cannot exceed {self.max_days} days")

        days = [start + timedelta(days=offset) for offset in range(span)]
        computed = self._compute_days(days)

        entries = []
        failed_dates = []
        for day in days:
            entry = computed.get(day)
            if entry is None:
                failed_dates.append(day)
                entry = DailyReportEntry(date=day, expected_today=round_half_up(ZERO),
                                         collected_today=round_half_up(ZERO), degraded=True)
            entries.append(entry)

        report = DailyCollectionReport(start_date=start, end_date=end,
                                       entries=entries, failed_dates=failed_dates)
        log_action(logger, "warning" if failed_dates else "info",
                   f"Daily collection report computed for {start.isoformat()}..{end.isoformat()}",
                   action="daily_collection_report",
                   extra={"days": span, "failed_dates": [d.isoformat() for d in failed_dates]})
        return report

    def aggregate_day(self, day: date) -> DailyReportEntry:
        """Totals for a single day; read errors propagate to the caller"""
        next_day = day + timedelta(days=1)

        expected = ZERO
        for row in self.storage.find_range(self.schedule_table, 'due_date', day, next_day):
            expected += ScheduledPayment.from_dict(row).expected_amount.amount

        collected = ZERO
        for row in self.storage.find_range(self.payments_table, 'collection_date', day, next_day):
            record = PaymentRecord.from_dict(row)
            collected += record.amount_paid.amount + record.fine.amount

        return DailyReportEntry(
            date=day,
            expected_today=round_half_up(expected),
            collected_today=round_half_up(collected)
        )

    def _compute_days(self, days: List[date]) -> Dict[date, DailyReportEntry]:
        """Aggregate each day in isolation; failed days are left out of the result"""
        results: Dict[date, DailyReportEntry] = {}

        if self.max_workers <= 1 or len(days) == 1:
            for day in days:
                try:
                    results[day] = self.aggregate_day(day)
                except Exception as e:
                    self._log_failed_day(day, e)
            return results

        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(days)),
                                      thread_name_prefix="reconciliation")
        try:
            futures = {day: executor.submit(self.aggregate_day, day) for day in days}
            for day, future in futures.items():
                try:
                    results[day] = future.result(timeout=self.day_timeout_seconds)
                except FutureTimeoutError as e:
                    future.cancel()
                    self._log_failed_day(day, e, timed_out=True)
                except Exception as e:
                    self._log_failed_day(day, e)
        finally:
            # A hung read must not hold the report hostage
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    @staticmethod
    def _log_failed_day(day: date, error: BaseException, timed_out: bool = False) -> None:
        reason = "timed out" if timed_out else f"{type(error).__name__}: {error}"
        logger.warning(f"Collection totals for {day.isoformat()} unavailable ({reason})",
                       exc_info=None if timed_out else error)

    def collection_sheet(self, day: DateLike, branch_code: Optional[str] = None) -> CollectionSheet:
        """
        Paid and pending approved loans for one day

        A loan is paid when its net collection for the day (fines included)
        is positive; everything else is pending.
        """
        day = to_reporting_date(day, self.timezone)
        next_day = day + timedelta(days=1)

        filters: Dict[str, Any] = {'status': ApplicationStatus.APPROVED.value}
        if branch_code is not None:
            filters['branch_code'] = branch_code
        loans = [LoanApplication.from_dict(data)
                 for data in self.storage.find(self.applications_table, filters)]
        loans.sort(key=lambda loan: (loan.customer_id, loan.id))

        expected_by_loan: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for row in self.storage.find_range(self.schedule_table, 'due_date', day, next_day):
            installment = ScheduledPayment.from_dict(row)
            expected_by_loan[installment.loan_id] += installment.expected_amount.amount

        collected_by_loan: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        collectors_by_loan: Dict[str, set] = defaultdict(set)
        for row in self.storage.find_range(self.payments_table, 'collection_date', day, next_day):
            record = PaymentRecord.from_dict(row)
            collected_by_loan[record.loan_id] += record.amount_paid.amount + record.fine.amount
            if record.recorded_by:
                collectors_by_loan[record.loan_id].add(record.recorded_by)

        paid, pending = [], []
        for loan in loans:
            line = CollectionSheetLine(
                loan_id=loan.id,
                customer_id=loan.customer_id,
                branch_code=loan.branch_code,
                expected=round_half_up(expected_by_loan.get(loan.id, ZERO)),
                collected=round_half_up(collected_by_loan.get(loan.id, ZERO)),
                collectors=sorted(collectors_by_loan.get(loan.id, ()))
            )
            (paid if line.collected > ZERO else pending).append(line)

        return CollectionSheet(day=day, branch_code=branch_code, paid=paid, pending=pending)

    def portfolio_summary(self) -> Dict[str, Any]:
        """Application counts per status and total approved amount"""
        counts = {status.value: 0 for status in ApplicationStatus}
        total_requested = ZERO
        total_approved = ZERO
        for data in self.storage.load_all(self.applications_table):
            application = LoanApplication.from_dict(data)
            counts[application.status.value] += 1
            total_requested += application.requested_amount.amount
            if application.approved_amount is not None:
                total_approved += application.approved_amount.amount

        return {
            'total_applications': sum(counts.values()),
            'by_status': counts,
            'total_requested': str(round_half_up(total_requested)),
            'total_approved': str(round_half_up(total_approved))
        }
