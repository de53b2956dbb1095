"""
Overdue Sweeper Module

Batch job, triggered externally (typically once a day), that flags
installments and loans that have fallen behind schedule. Running it again
on the same day changes nothing.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import time

from .storage import StorageInterface
from .audit import AuditTrail, AuditAction, AuditEntity
from .lifecycle import LoanStatus, ScheduleStatus, LoanEvent, OPEN_STATUSES, transition
from .loans import LoanStore
from .logging_config import get_logger, log_action


@dataclass
class SweepResult:
    """Outcome of one sweep run"""
    as_of: date
    installments_flagged: int = 0
    loans_flagged: int = 0
    loans_scanned: int = 0
    duration_ms: int = 0

    @property
    def affected(self) -> int:
        """Rows moved to OVERDUE (installments + loans)"""
        return self.installments_flagged + self.loans_flagged

    def to_dict(self) -> Dict[str, Any]:
        return {
            'affected': self.affected,
            'installments_flagged': self.installments_flagged,
            'loans_flagged': self.loans_flagged,
            'loans_scanned': self.loans_scanned,
            'as_of': self.as_of.isoformat(),
            'duration_ms': self.duration_ms,
        }


class OverdueSweeper:
    """
    Flags past-due installments and loans
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.store = LoanStore(storage)
        self.logger = get_logger("microlending.sweeper")

    def run(self, as_of: Optional[date] = None, run_by_id: str = "system") -> SweepResult:
        """
        Sweep every open loan

        Each loan is handled in its own atomic unit with its row locked, so
        the sweep never races a payment on the same loan and a failure on one
        loan leaves the loans already swept committed.

        Args:
            as_of: Reference date (defaults to today); anything due before it is late
            run_by_id: Identity recorded in the audit trail

        Returns:
            SweepResult
        """
        as_of = as_of or date.today()
        started = time.monotonic()
        result = SweepResult(as_of=as_of)

        for loan in self.store.list_loans(OPEN_STATUSES):
            installments, loan_flagged = self._sweep_loan(loan.id, as_of, run_by_id)
            result.loans_scanned += 1
            result.installments_flagged += installments
            if loan_flagged:
                result.loans_flagged += 1

        result.duration_ms = int((time.monotonic() - started) * 1000)

        log_action(
            self.logger, "info", "Overdue sweep completed",
            user_id=run_by_id, action=AuditAction.PROCESS_OVERDUE.value,
            extra=result.to_dict()
        )
        return result

    def _sweep_loan(self, loan_id: str, as_of: date, run_by_id: str) -> Tuple[int, bool]:
        with self.storage.atomic():
            loan = self.store.load_loan(loan_id, for_update=True)
            # Paid or canceled since the loan list was read
            if loan is None or not loan.is_open:
                return 0, False

            now = datetime.now(timezone.utc)
            installments = 0
            for row in self.store.load_schedule(loan_id):
                if row.status == ScheduleStatus.PENDING and row.due_date < as_of:
                    row.status = ScheduleStatus.OVERDUE
                    row.updated_at = now
                    self.store.save_schedule_entry(row)
                    installments += 1

            loan_flagged = False
            if (loan.status == LoanStatus.ACTIVE and loan.next_due_date is not None
                    and loan.next_due_date < as_of):
                loan.status = transition(loan.status, LoanEvent.MARK_OVERDUE, loan_id=loan.id)
                loan.updated_by_id = run_by_id
                loan.updated_at = now
                self.store.save_loan(loan)
                loan_flagged = True

            if installments or loan_flagged:
                self.audit_trail.log_event(
                    action=AuditAction.PROCESS_OVERDUE,
                    entity_type=AuditEntity.LOAN,
                    entity_id=loan.id,
                    metadata={
                        "as_of": as_of,
                        "installments_flagged": installments,
                        "loan_flagged": loan_flagged,
                        "status": loan.status,
                    },
                    user_id=run_by_id
                )
            return installments, loan_flagged
