"""
Scheduler trigger.

External cron (or an operator) calls this once a day; the Celery beat task
`tasks.push_scheduled_stacks` runs the same job in-cluster.
"""
import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.auth import verify_cron_secret
from core.database import get_db
from services.scheduled_stack_push import run_scheduled_stack_push

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/cron", tags=["cron"])


@router.api_route("/stack-push", methods=["GET", "POST"], dependencies=[Depends(verify_cron_secret)])
def cron_stack_push(
    target_date: Optional[date] = Query(None, alias="date", description="Day to push (default: tomorrow, UTC)"),
    db: Session = Depends(get_db),
):
    summary = run_scheduled_stack_push(db, target_date=target_date)
    return summary.to_dict()
