"""
Shared API dependencies: the wired lending system and the calling actor
"""

import threading
from typing import Optional

from fastapi import Header

from ..applications import LoanApplicationManager
from ..audit import AuditTrail
from ..config import LendingConfig, get_config
from ..currency import Currency
from ..reconciliation import ReconciliationEngine
from ..schemes import SchemeCatalog
from ..storage import StorageInterface, create_storage


class LendingSystem:
    """Microlending core with all components initialized"""

    def __init__(self, config: Optional[LendingConfig] = None, storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        if storage is None:
            storage = create_storage(self.config.storage_backend, self.config.database_path)
        self.storage = storage

        self.audit_trail = AuditTrail(self.storage)
        self.scheme_catalog = SchemeCatalog(self.storage, self.audit_trail)
        self.application_manager = LoanApplicationManager(
            self.storage, self.scheme_catalog, self.audit_trail,
            currency=Currency[self.config.default_currency],
            reporting_timezone=self.config.reporting_timezone
        )
        self.reconciliation_engine = ReconciliationEngine(
            self.storage,
            reporting_timezone=self.config.reporting_timezone,
            default_days=self.config.report_default_days,
            max_days=self.config.report_max_days,
            max_workers=self.config.report_max_workers,
            day_timeout_seconds=self.config.report_day_timeout_seconds
        )


_system: Optional[LendingSystem] = None
_system_lock = threading.Lock()


def get_lending_system() -> LendingSystem:
    """Process-wide lending system, built on first use"""
    global _system
    with _system_lock:
        if _system is None:
            _system = LendingSystem()
        return _system


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Opaque caller identity; recorded, never authorized here"""
    return x_actor_id
