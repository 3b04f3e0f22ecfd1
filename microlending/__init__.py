"""
Microlending Core

Loan application lifecycle with an approval workflow, precomputed installment
schedules, append-only payment records, and a daily collection reconciliation
report. All money math uses Decimal.
"""

__version__ = "1.0.0"
