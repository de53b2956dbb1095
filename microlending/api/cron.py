"""
Scheduled job endpoints
"""

from datetime import datetime, timezone
from fastapi import APIRouter, Depends

from .auth import LendingSystem, get_lending_system, verify_cron_secret


router = APIRouter()


@router.get("/process-overdue", dependencies=[Depends(verify_cron_secret)])
def process_overdue(system: LendingSystem = Depends(get_lending_system)):
    """Flag overdue installments and loans; meant to be called once a day"""
    result = system.sweeper.run(run_by_id="cron")
    response = result.to_dict()
    response["success"] = True
    response["executed_at"] = datetime.now(timezone.utc).isoformat()
    return response
