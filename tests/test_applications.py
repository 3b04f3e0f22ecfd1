"""
Test suite for the loan application lifecycle

Tests submission, the one-way approve/reject state machine, schedule
generation, concurrent decisions and payment entries (including reversals).
"""

import pytest
import threading
from datetime import date, datetime, timezone
from decimal import Decimal

from microlending.applications import (
    LoanApplicationManager, ApplicationStatus, ScheduleTerms, PaymentMode, EntryType,
    to_reporting_date, add_months
)
from microlending.audit import AuditTrail, AuditEventType
from microlending.currency import Money, Currency
from microlending.exceptions import ValidationError, InvalidStateError, NotFoundError
from microlending.schemes import SchemeCatalog, RepaymentFrequency
from microlending.storage import InMemoryStorage, SQLiteStorage


# 10:00 in Asia/Kolkata
FIXED_NOW = datetime(2024, 6, 1, 4, 30, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def catalog(storage, audit_trail):
    return SchemeCatalog(storage, audit_trail)


@pytest.fixture
def scheme(catalog):
    return catalog.create_scheme("Monthly Plan", "12", RepaymentFrequency.MONTHLY)


@pytest.fixture
def manager(storage, catalog, audit_trail):
    return LoanApplicationManager(storage, catalog, audit_trail, clock=lambda: FIXED_NOW)


@pytest.fixture
def pending(manager, scheme):
    return manager.submit("CUST001", Decimal('12000'), scheme.id, actor="agent-1", branch_code="B1")


@pytest.fixture
def loan(manager, pending):
    return manager.approve(pending.id, Decimal('12000'), ScheduleTerms(12, RepaymentFrequency.MONTHLY),
                           actor="officer-1")


def inr(amount):
    return Money(Decimal(amount), Currency.INR)


class TestSubmit:

    def test_submit_creates_pending_application(self, manager, scheme, storage):
        application = manager.submit("CUST001", "5000", scheme.id, actor="agent-1", branch_code="B1")

        assert application.status == ApplicationStatus.PENDING
        assert application.requested_amount == inr('5000')
        assert application.submission_timestamp == FIXED_NOW
        assert application.submitted_by == "agent-1"
        assert application.approved_amount is None
        assert application.admin_remarks is None
        assert application.decision_timestamp is None
        assert manager.get_application(application.id) == application

    def test_ids_are_unique(self, manager, scheme):
        first = manager.submit("CUST001", 100, scheme.id)
        second = manager.submit("CUST001", 100, scheme.id)

        assert first.id != second.id

    @pytest.mark.parametrize("customer_id,amount,use_scheme", [
        ("CUST001", "0", True),
        ("CUST001", "-10", True),
        ("CUST001", "abc", True),
        ("CUST001", "NaN", True),
        ("CUST001", "Infinity", True),
        ("CUST001", "1e30", True),
        ("CUST001", "100", False),
        ("   ", "100", True),
    ])
    def test_submit_validation(self, manager, scheme, storage, customer_id, amount, use_scheme):
        scheme_id = scheme.id if use_scheme else "unknown-scheme"

        with pytest.raises(ValidationError):
            manager.submit(customer_id, amount, scheme_id)
        assert storage.count(manager.applications_table) == 0

    def test_submit_rejects_other_currency(self, manager, scheme):
        with pytest.raises(ValidationError, match="INR"):
            manager.submit("CUST001", Money(Decimal('100'), Currency.USD), scheme.id)

    def test_submit_is_audited(self, manager, scheme, audit_trail):
        application = manager.submit("CUST001", 100, scheme.id, actor="agent-1")
        events = audit_trail.get_events_for_entity("loan_application", application.id)

        assert [e.event_type for e in events] == [AuditEventType.APPLICATION_SUBMITTED]
        assert events[0].user_id == "agent-1"


class TestApprove:

    def test_approve_sets_terminal_fields(self, manager, pending):
        approved = manager.approve(pending.id, "10000", ScheduleTerms(10, RepaymentFrequency.MONTHLY),
                                   actor="officer-1")

        assert approved.status == ApplicationStatus.APPROVED
        assert approved.approved_amount == inr('10000')
        assert approved.decision_timestamp == FIXED_NOW
        assert approved.decided_by == "officer-1"
        assert approved.admin_remarks is None
        assert approved.version == pending.version + 1
        assert manager.get_application(pending.id) == approved

    def test_schedule_matches_terms(self, manager, pending):
        manager.approve(pending.id, "1000", ScheduleTerms(3, RepaymentFrequency.MONTHLY))
        schedule = manager.get_schedule(pending.id)

        assert [s.installment_index for s in schedule] == [1, 2, 3]
        assert [s.expected_amount.amount for s in schedule] == [
            Decimal('333.33'), Decimal('333.33'), Decimal('333.34')
        ]
        assert sum(s.expected_amount.amount for s in schedule) == Decimal('1000.00')
        # First installment falls one period after the decision day
        assert [s.due_date for s in schedule] == [date(2024, 7, 1), date(2024, 8, 1), date(2024, 9, 1)]
        assert all(s.id == f"{pending.id}:{s.installment_index}" for s in schedule)

    @pytest.mark.parametrize("frequency,expected", [
        (RepaymentFrequency.DAILY, [date(2024, 6, 2), date(2024, 6, 3), date(2024, 6, 4)]),
        (RepaymentFrequency.WEEKLY, [date(2024, 6, 8), date(2024, 6, 15), date(2024, 6, 22)]),
        ("monthly", [date(2024, 7, 1), date(2024, 8, 1), date(2024, 9, 1)]),
    ])
    def test_due_date_cadence(self, manager, pending, frequency, expected):
        manager.approve(pending.id, "300", ScheduleTerms(3, frequency))

        assert [s.due_date for s in manager.get_schedule(pending.id)] == expected

    def test_monthly_schedule_clamps_to_month_end(self, manager, pending):
        terms = ScheduleTerms(3, RepaymentFrequency.MONTHLY, start_date=date(2024, 1, 31))
        manager.approve(pending.id, "300", terms)

        assert [s.due_date for s in manager.get_schedule(pending.id)] == [
            date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)
        ]

    def test_explicit_installment_amount(self, manager, pending):
        terms = ScheduleTerms(4, RepaymentFrequency.WEEKLY, installment_amount=Decimal('250'))
        manager.approve(pending.id, "1000", terms)

        assert [s.expected_amount.amount for s in manager.get_schedule(pending.id)] == [Decimal('250.00')] * 4

    def test_installment_amount_must_agree(self, manager, pending):
        terms = ScheduleTerms(4, RepaymentFrequency.WEEKLY, installment_amount=Decimal('300'))

        with pytest.raises(ValidationError, match="does not match"):
            manager.approve(pending.id, "1000", terms)

        assert manager.get_application(pending.id).status == ApplicationStatus.PENDING
        assert manager.get_schedule(pending.id) == []

    def test_amount_too_small_for_installments(self, manager, pending):
        with pytest.raises(ValidationError):
            manager.approve(pending.id, "0.02", ScheduleTerms(3, RepaymentFrequency.DAILY))
        assert manager.get_schedule(pending.id) == []

    @pytest.mark.parametrize("amount", ["0", "-100", "1e30", Decimal("NaN")])
    def test_invalid_amount(self, manager, pending, amount):
        with pytest.raises(ValidationError):
            manager.approve(pending.id, amount, ScheduleTerms(3))

    def test_invalid_terms(self):
        with pytest.raises(ValidationError):
            ScheduleTerms(0)
        with pytest.raises(ValidationError):
            ScheduleTerms(3, "yearly")

    def test_approve_missing(self, manager):
        with pytest.raises(NotFoundError):
            manager.approve("missing", "100", ScheduleTerms(1))

    def test_second_approve_fails_without_changes(self, manager, loan):
        before = manager.get_application(loan.id)
        schedule_before = manager.get_schedule(loan.id)

        with pytest.raises(InvalidStateError):
            manager.approve(loan.id, "500", ScheduleTerms(2), actor="officer-2")

        assert manager.get_application(loan.id) == before
        assert manager.get_schedule(loan.id) == schedule_before

    def test_approve_after_reject(self, manager, pending):
        manager.reject(pending.id, "Incomplete documents")

        with pytest.raises(InvalidStateError):
            manager.approve(pending.id, "100", ScheduleTerms(1))
        assert manager.get_schedule(pending.id) == []

    def test_approve_is_audited(self, manager, loan, audit_trail):
        events = audit_trail.get_events_for_entity("loan_application", loan.id)

        assert [e.event_type for e in events] == [
            AuditEventType.APPLICATION_SUBMITTED,
            AuditEventType.APPLICATION_APPROVED,
            AuditEventType.SCHEDULE_CREATED,
        ]
        assert events[2].metadata["installments"] == 12
        assert audit_trail.verify_integrity()['valid']


class TestReject:

    @pytest.mark.parametrize("reason", ["", "  ", None])
    def test_reason_required(self, manager, pending, reason):
        with pytest.raises(ValidationError):
            manager.reject(pending.id, reason)
        assert manager.get_application(pending.id).status == ApplicationStatus.PENDING

    def test_reject(self, manager, pending):
        rejected = manager.reject(pending.id, "  Income not verified ", actor="officer-1")

        assert rejected.status == ApplicationStatus.REJECTED
        assert rejected.admin_remarks == "Income not verified"
        assert rejected.approved_amount is None
        assert rejected.decision_timestamp == FIXED_NOW
        assert manager.get_application(pending.id) == rejected

    def test_reject_missing(self, manager):
        with pytest.raises(NotFoundError):
            manager.reject("missing", "reason")

    def test_reject_is_terminal(self, manager, pending, loan):
        with pytest.raises(InvalidStateError):
            manager.reject(loan.id, "Changed my mind")

        second = manager.submit("CUST002", 100, pending.scheme_id)
        manager.reject(second.id, "No")
        with pytest.raises(InvalidStateError):
            manager.reject(second.id, "Still no")
        assert manager.get_application(second.id).admin_remarks == "No"


class TestConcurrentDecisions:
    """Only the first decision to observe a pending application wins"""

    def _race(self, *actions):
        barrier = threading.Barrier(len(actions))
        outcomes = [None] * len(actions)

        def run(index, action):
            barrier.wait()
            try:
                outcomes[index] = action()
            except InvalidStateError as e:
                outcomes[index] = e

        threads = [threading.Thread(target=run, args=(i, a)) for i, a in enumerate(actions)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return outcomes

    def _check_single_winner(self, manager, pending, counts):
        outcomes = self._race(*[
            (lambda n=n: manager.approve(pending.id, "1200", ScheduleTerms(n, RepaymentFrequency.WEEKLY)))
            for n in counts
        ])

        winners = [i for i, o in enumerate(outcomes) if not isinstance(o, InvalidStateError)]
        assert len(winners) == 1
        assert all(isinstance(o, InvalidStateError) for i, o in enumerate(outcomes) if i != winners[0])
        assert len(manager.get_schedule(pending.id)) == counts[winners[0]]

    def test_concurrent_approvals(self, manager, pending):
        self._check_single_winner(manager, pending, [3, 6, 4, 12])

    def test_concurrent_approvals_sqlite(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "lending.db")
        audit_trail = AuditTrail(storage)
        catalog = SchemeCatalog(storage, audit_trail)
        manager = LoanApplicationManager(storage, catalog, audit_trail, clock=lambda: FIXED_NOW)
        scheme = catalog.create_scheme("Weekly Plan", "10", "weekly")
        pending = manager.submit("CUST001", 1200, scheme.id)

        self._check_single_winner(manager, pending, [3, 6])
        storage.close()

    def test_approve_races_reject(self, manager, pending):
        outcomes = self._race(
            lambda: manager.approve(pending.id, "1200", ScheduleTerms(4)),
            lambda: manager.reject(pending.id, "Duplicate application"),
        )

        final = manager.get_application(pending.id)
        assert sum(1 for o in outcomes if isinstance(o, InvalidStateError)) == 1
        if final.status == ApplicationStatus.APPROVED:
            assert final.admin_remarks is None
            assert len(manager.get_schedule(pending.id)) == 4
        else:
            assert final.approved_amount is None
            assert manager.get_schedule(pending.id) == []


class TestRecordPayment:

    def test_record_payment(self, manager, loan):
        record = manager.record_payment(loan.id, "1000", "50", date(2024, 7, 1), actor="agent-1",
                                        payment_mode=PaymentMode.ONLINE, remarks=" UPI ")

        assert record.loan_id == loan.id
        assert record.collection_date == date(2024, 7, 1)
        assert record.amount_paid == inr('1000')
        assert record.fine == inr('50')
        assert record.total == inr('1050')
        assert record.recorded_by == "agent-1"
        assert record.recorded_at == FIXED_NOW
        assert record.payment_mode == PaymentMode.ONLINE
        assert record.remarks == "UPI"
        assert record.entry_type == EntryType.PAYMENT
        assert manager.get_payments(loan.id) == [record]

    def test_collection_date_in_reporting_calendar(self, manager, loan):
        # 20:00 UTC is already the next day in Asia/Kolkata
        record = manager.record_payment(loan.id, 100, 0, datetime(2024, 6, 1, 20, 0, tzinfo=timezone.utc))
        assert record.collection_date == date(2024, 6, 2)

        assert manager.record_payment(loan.id, 100, 0, "2024-06-05").collection_date == date(2024, 6, 5)
        assert manager.record_payment(loan.id, 100).collection_date == date(2024, 6, 1)

    def test_payment_never_touches_schedule(self, manager, loan):
        schedule = manager.get_schedule(loan.id)
        manager.record_payment(loan.id, "5000", "0", date(2024, 7, 1))

        assert manager.get_schedule(loan.id) == schedule

    def test_payment_on_pending_loan(self, manager, pending):
        with pytest.raises(InvalidStateError):
            manager.record_payment(pending.id, 100, 0, date(2024, 6, 1))

    def test_payment_on_rejected_loan(self, manager, pending):
        manager.reject(pending.id, "No")
        with pytest.raises(InvalidStateError):
            manager.record_payment(pending.id, 100, 0, date(2024, 6, 1))

    def test_payment_on_missing_loan(self, manager):
        with pytest.raises(NotFoundError):
            manager.record_payment("missing", 100, 0, date(2024, 6, 1))

    @pytest.mark.parametrize("amount,fine", [
        ("-1", "0"), ("100", "-0.01"), ("x", "0"), ("1e30", "0"), ("NaN", "0"), ("100", "-Infinity")
    ])
    def test_payment_validation(self, manager, loan, amount, fine):
        with pytest.raises(ValidationError):
            manager.record_payment(loan.id, amount, fine, date(2024, 6, 1))
        assert manager.get_payments(loan.id) == []

    def test_invalid_collection_date(self, manager, loan):
        with pytest.raises(ValidationError):
            manager.record_payment(loan.id, 100, 0, "01/06/2024")

    def test_payments_ordered_by_collection_date(self, manager, loan):
        later = manager.record_payment(loan.id, 100, 0, date(2024, 6, 3))
        earlier = manager.record_payment(loan.id, 100, 0, date(2024, 6, 2))

        assert manager.get_payments(loan.id) == [earlier, later]


class TestReversals:

    def test_reverse_payment(self, manager, loan):
        payment = manager.record_payment(loan.id, "1000", "50", date(2024, 7, 1))
        reversal = manager.reverse_payment(loan.id, payment.id, actor="officer-1",
                                           reversal_date=date(2024, 7, 2), reason="Bounced cheque")

        assert reversal.entry_type == EntryType.REVERSAL
        assert reversal.reverses == payment.id
        assert reversal.amount_paid == inr('-1000')
        assert reversal.fine == inr('-50')
        assert reversal.collection_date == date(2024, 7, 2)
        assert reversal.remarks == "Bounced cheque"
        # Original entry is untouched
        assert manager.get_payments(loan.id)[0] == payment

    def test_cannot_reverse_twice(self, manager, loan):
        payment = manager.record_payment(loan.id, "1000", "0", date(2024, 7, 1))
        manager.reverse_payment(loan.id, payment.id)

        with pytest.raises(InvalidStateError, match="already been reversed"):
            manager.reverse_payment(loan.id, payment.id)
        assert len(manager.get_payments(loan.id)) == 2

    def test_cannot_reverse_reversal(self, manager, loan):
        payment = manager.record_payment(loan.id, "1000", "0", date(2024, 7, 1))
        reversal = manager.reverse_payment(loan.id, payment.id)

        with pytest.raises(InvalidStateError):
            manager.reverse_payment(loan.id, reversal.id)

    def test_reverse_requires_matching_loan(self, manager, loan, scheme):
        other = manager.submit("CUST002", 500, scheme.id)
        manager.approve(other.id, 500, ScheduleTerms(1))
        payment = manager.record_payment(other.id, "100", "0", date(2024, 7, 1))

        with pytest.raises(NotFoundError):
            manager.reverse_payment(loan.id, payment.id)
        with pytest.raises(NotFoundError):
            manager.reverse_payment(loan.id, "missing")

    def test_correct_payment(self, manager, loan):
        payment = manager.record_payment(loan.id, "1000", "0", date(2024, 7, 1))
        reversal, replacement = manager.correct_payment(
            loan.id, payment.id, "900", "10", date(2024, 7, 1), actor="officer-1"
        )

        assert reversal.reverses == payment.id
        assert replacement.amount_paid == inr('900')
        assert replacement.fine == inr('10')
        assert len(manager.get_payments(loan.id)) == 3

    @pytest.mark.parametrize("amount", ["-900", "1e30"])
    def test_failed_correction_leaves_no_reversal(self, manager, loan, amount):
        payment = manager.record_payment(loan.id, "1000", "0", date(2024, 7, 1))

        with pytest.raises(ValidationError):
            manager.correct_payment(loan.id, payment.id, amount, "0", date(2024, 7, 1))

        assert manager.get_payments(loan.id) == [payment]
        # Still reversible afterwards
        manager.reverse_payment(loan.id, payment.id)


class TestQueries:

    def test_list_applications(self, manager, scheme):
        a = manager.submit("CUST001", 100, scheme.id, branch_code="B1")
        b = manager.submit("CUST002", 100, scheme.id, branch_code="B2")
        c = manager.submit("CUST003", 100, scheme.id, branch_code="B1")
        manager.approve(a.id, 100, ScheduleTerms(1))
        manager.reject(b.id, "No")

        assert {x.id for x in manager.list_applications()} == {a.id, b.id, c.id}
        assert [x.id for x in manager.list_applications(status=ApplicationStatus.APPROVED)] == [a.id]
        assert [x.id for x in manager.list_applications(status="pending", branch_code="B1")] == [c.id]
        assert manager.get_application("missing") is None

    def test_loan_summary(self, manager, loan):
        manager.record_payment(loan.id, "1000", "25", date(2024, 7, 1))
        manager.record_payment(loan.id, "1500", "0", date(2024, 8, 1))

        summary = manager.get_loan_summary(loan.id)

        assert summary.approved_amount == inr('12000')
        assert summary.total_expected == inr('12000')
        assert summary.total_collected == inr('2500')
        assert summary.fines_collected == inr('25')
        assert summary.outstanding == inr('9500')
        assert summary.installments_total == 12
        assert summary.installments_covered == 2
        assert summary.next_due_date == date(2024, 9, 1)
        assert summary.next_due_amount == inr('1000')

    def test_loan_summary_nets_reversals(self, manager, loan):
        payment = manager.record_payment(loan.id, "1000", "0", date(2024, 7, 1))
        manager.reverse_payment(loan.id, payment.id)

        summary = manager.get_loan_summary(loan.id)

        assert summary.total_collected == inr('0')
        assert summary.installments_covered == 0
        assert summary.next_due_date == date(2024, 7, 1)

    def test_loan_summary_requires_approval(self, manager, pending):
        with pytest.raises(InvalidStateError):
            manager.get_loan_summary(pending.id)


class TestCalendarHelpers:

    def test_to_reporting_date(self):
        from zoneinfo import ZoneInfo
        tz = ZoneInfo("Asia/Kolkata")

        assert to_reporting_date(date(2024, 6, 1), tz) == date(2024, 6, 1)
        assert to_reporting_date(datetime(2024, 5, 31, 18, 30, tzinfo=timezone.utc), tz) == date(2024, 6, 1)
        assert to_reporting_date(datetime(2024, 5, 31, 23, 0), tz) == date(2024, 5, 31)
        assert to_reporting_date("2024-06-01", tz) == date(2024, 6, 1)
        assert to_reporting_date("2024-05-31T20:00:00+00:00", tz) == date(2024, 6, 1)
        with pytest.raises(ValidationError):
            to_reporting_date(20240601, tz)

    def test_add_months(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)
