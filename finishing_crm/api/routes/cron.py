"""
Cron Routes - entry points for an external scheduler.

Both endpoints require the X-Cron-Secret header:
- POST /api/outbox/run: Drain due outbox jobs
- POST /api/cron/generate-reorder-reminders: Queue reorder reminder emails
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from finishing_crm.api.dependencies import get_db, get_email_provider_dependency, verify_cron_secret
from finishing_crm.jobs.outbox_runner import OutboxRunner
from finishing_crm.lib.logging import get_logger
from finishing_crm.services.email_provider import EmailProvider
from finishing_crm.services.reorder_service import ReorderReminderService

logger = get_logger(__name__)
router = APIRouter(tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.post("/api/outbox/run", summary="Process due outbox jobs")
async def run_outbox(
    db: Session = Depends(get_db),
    email_provider: EmailProvider = Depends(get_email_provider_dependency),
) -> Dict[str, Any]:
    summary = await OutboxRunner(db, email_provider=email_provider).run()
    return summary.to_dict()


@router.post("/api/cron/generate-reorder-reminders", summary="Queue reorder reminders")
def generate_reorder_reminders(db: Session = Depends(get_db)) -> Dict[str, Any]:
    result = ReorderReminderService(db).generate()
    return {"success": True, **result.to_dict()}
