"""
System container and the shared-secret check for scheduled jobs
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from ..config import LendingConfig, get_config
from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..ledger import LoanLedger
from ..sweeper import OverdueSweeper


class LendingSystem:
    """Lending engine with all components initialized"""

    def __init__(self, settings: Optional[LendingConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = settings or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = LoanLedger(self.storage, self.audit_trail, self.config.policy())
        self.sweeper = OverdueSweeper(self.storage, self.audit_trail)

    def close(self) -> None:
        self.storage.close()


_lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    """Dependency returning the process-wide system, built on first use"""
    global _lending_system
    if _lending_system is None:
        _lending_system = LendingSystem()
    return _lending_system


def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
) -> None:
    """Require 'Authorization: Bearer <cron_secret>' on scheduler endpoints"""
    secret = system.config.cron_secret
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduled jobs are not configured"
        )
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
