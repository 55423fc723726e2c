"""
Dashboard API - report summary across leads, projects and audit activity
"""
from datetime import datetime, timedelta
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.database import get_db
from subsidy_crm.models.user import User, AppModule
from subsidy_crm.models.lead import Lead
from subsidy_crm.models.project import Project, Task, TaskStatus
from subsidy_crm.models.audit_log import AuditLog
from subsidy_crm.api.auth import require_module

router = APIRouter()


class ReportSummary(BaseModel):
    total_leads: int
    converted_leads: int
    conversion_rate: float
    avg_first_response_minutes: Optional[int] = None
    avg_interactions_per_lead: float
    total_projects: int
    stage_distribution: Dict[str, int]
    task_completion_rate: float
    audit_events_last_7_days: int


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0


@router.get("/summary", response_model=ReportSummary)
async def report_summary(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_module(AppModule.DASHBOARD)),
):
    total_leads = (await db.execute(select(func.count(Lead.id)))).scalar() or 0
    converted_leads = (await db.execute(
        select(func.count(Lead.id)).where(Lead.is_converted.is_(True))
    )).scalar() or 0

    # Response averages only cover leads that have been responded to
    responded = (await db.execute(
        select(
            func.count(Lead.id),
            func.avg(Lead.first_response_minutes),
            func.avg(Lead.notes_count + Lead.calls_count),
        ).where(Lead.first_response_minutes.is_not(None))
    )).one()
    responded_count, avg_first_response, avg_interactions = responded

    stage_rows = (await db.execute(
        select(Project.current_stage, func.count(Project.id)).group_by(Project.current_stage)
    )).all()
    stage_distribution = {getattr(stage, "value", stage): count for stage, count in stage_rows}

    total_tasks = (await db.execute(select(func.count(Task.id)))).scalar() or 0
    completed_tasks = (await db.execute(
        select(func.count(Task.id)).where(Task.status == TaskStatus.COMPLETED)
    )).scalar() or 0

    audit_events = (await db.execute(
        select(func.count(AuditLog.id)).where(AuditLog.created_at >= datetime.utcnow() - timedelta(days=7))
    )).scalar() or 0

    return ReportSummary(
        total_leads=total_leads,
        converted_leads=converted_leads,
        conversion_rate=_percent(converted_leads, total_leads),
        avg_first_response_minutes=round(avg_first_response) if responded_count else None,
        avg_interactions_per_lead=round(float(avg_interactions), 2) if responded_count else 0,
        total_projects=sum(stage_distribution.values()),
        stage_distribution=stage_distribution,
        task_completion_rate=_percent(completed_tasks, total_tasks),
        audit_events_last_7_days=audit_events,
    )
