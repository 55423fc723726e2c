"""
Leads API - enquiry capture, follow-up tracking and conversion to client
"""
import hmac
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.database import get_db
from subsidy_crm.models.user import User, AppModule
from subsidy_crm.models.client import Client
from subsidy_crm.models.lead import Lead, LeadStatus, LeadSource, RequirementType, LeadTemperature
from subsidy_crm.api.auth import require_module
from subsidy_crm.api.clients import ClientResponse
from subsidy_crm.api.projects import ProjectResponse, project_response, load_project, create_project_for_client
from subsidy_crm.services import lead_lifecycle
from subsidy_crm.services.sequences import generate_lead_code, generate_client_code
from subsidy_crm.services.side_effects import PostCommitHooks, get_post_commit_hooks
from subsidy_crm.services.system_settings import SettingsService, get_settings_service
from subsidy_crm.utils.helpers import json_safe
from subsidy_crm.utils.validators import parse_enum

logger = logging.getLogger(__name__)

router = APIRouter()
leads_user = require_module(AppModule.LEADS)


# ===================== Schemas =====================

class NoteResponse(BaseModel):
    id: int
    note: str
    created_by_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CallResponse(BaseModel):
    id: int
    call_at: datetime
    duration_minutes: int
    summary: str
    created_by_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LeadResponse(BaseModel):
    id: int
    lead_code: str
    company_name: str
    contact_person: str
    mobile_number: str
    email: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    industry_type: Optional[str] = None
    requirement_type: Optional[RequirementType] = None
    source: LeadSource
    status: LeadStatus
    temperature: Optional[LeadTemperature] = None
    assigned_to_id: Optional[int] = None
    created_by_id: Optional[int] = None
    enquiry_received_at: Optional[datetime] = None
    first_response_at: Optional[datetime] = None
    first_response_minutes: Optional[int] = None
    last_interaction_at: Optional[datetime] = None
    last_status_changed_at: Optional[datetime] = None
    update_count: int = 0
    notes_count: int = 0
    calls_count: int = 0
    total_call_duration_minutes: int = 0
    next_follow_up_at: Optional[datetime] = None
    is_converted: bool = False
    converted_at: Optional[datetime] = None
    converted_client_id: Optional[int] = None
    status_history: List[Dict[str, Any]] = []
    timeline: List[Dict[str, Any]] = []
    notes: List[NoteResponse] = []
    calls: List[CallResponse] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LeadList(BaseModel):
    page: int
    limit: int
    total: int
    leads: List[LeadResponse]


class LeadCreate(BaseModel):
    company_name: Optional[str] = None
    contact_person: Optional[str] = None
    mobile_number: Optional[str] = None
    email: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    industry_type: Optional[str] = None
    requirement_type: Optional[str] = None
    source: Optional[str] = None
    assigned_to_id: Optional[int] = None
    next_follow_up_at: Optional[datetime] = None


class WebformLead(BaseModel):
    company_name: Optional[str] = None
    contact_person: Optional[str] = None
    mobile_number: Optional[str] = None
    email: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    requirement_type: Optional[str] = None
    message: Optional[str] = None


class LeadUpdate(LeadCreate):
    status: Optional[str] = None


class NoteCreate(BaseModel):
    note: Optional[str] = None


class CallCreate(BaseModel):
    call_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    summary: Optional[str] = None


class ConvertRequest(BaseModel):
    category_id: Optional[int] = None
    scheme_id: Optional[int] = None
    scheme_name: Optional[str] = None
    department: Optional[str] = None
    application_no: Optional[str] = None
    project_value: Optional[float] = None
    expected_subsidy_amount: Optional[float] = None
    start_date: Optional[date] = None
    target_completion_date: Optional[date] = None


class ConvertResponse(BaseModel):
    message: Optional[str] = None
    lead: Optional[LeadResponse] = None
    client: Optional[ClientResponse] = None
    project: Optional[ProjectResponse] = None


# ===================== Helpers =====================

def lead_response(lead: Lead, now: Optional[datetime] = None) -> LeadResponse:
    data = LeadResponse.model_validate(lead)
    data.temperature = lead_lifecycle.lead_temperature(lead.last_interaction_at, now)
    return data


async def load_lead(db: AsyncSession, lead_id: int) -> Lead:
    result = await db.execute(
        select(Lead).where(Lead.id == lead_id).execution_options(populate_existing=True)
    )
    lead = result.scalar_one_or_none()
    if lead is None:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


async def _ensure_assignee(db: AsyncSession, user_id: Optional[int]) -> None:
    if user_id is not None and await db.get(User, user_id) is None:
        raise HTTPException(status_code=400, detail="Assigned user not found")


def _lead_snapshot(lead: Lead) -> Dict[str, Any]:
    return json_safe({
        "status": lead.status,
        "assigned_to_id": lead.assigned_to_id,
        "next_follow_up_at": lead.next_follow_up_at,
    })


# ===================== Public webform =====================

@router.post("/webform", response_model=LeadResponse, status_code=201)
async def create_lead_from_website(
    data: WebformLead,
    x_webhook_key: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    settings_service: SettingsService = Depends(get_settings_service),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    """Website contact form submission, authenticated by the shared webhook key"""
    config = await settings_service.webhook_config()
    if not config["is_active"]:
        raise HTTPException(status_code=503, detail="Website webhook key is not configured on server")
    if not x_webhook_key or not hmac.compare_digest(x_webhook_key.encode("utf-8"), config["key"].encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid webhook key")

    result = await db.execute(
        select(User.id).where(User.is_active.is_(True)).order_by(User.created_at, User.id).limit(1)
    )
    actor_id = result.scalar_one_or_none()
    if actor_id is None:
        raise HTTPException(
            status_code=400,
            detail="No active user found. Seed an admin user before using webform endpoint.",
        )

    now = datetime.utcnow()
    lead = lead_lifecycle.build_lead(
        await generate_lead_code(db), data.model_dump(exclude={"message"}), actor_id, now,
        source=LeadSource.WEBSITE, created_message="Lead created from website contact form",
    )
    lead_lifecycle.attach_website_message(lead, actor_id, data.message, now)
    db.add(lead)
    await settings_service.set({"webhook_last_received_at": now.isoformat()})
    await db.commit()
    response = lead_response(await load_lead(db, lead.id), now)
    logger.info(f"Website lead {lead.lead_code} received")

    hooks.broadcast(
        "LEAD_CREATED", "Website lead received", f"{lead.company_name} ({lead.lead_code}) from website",
        payload={"lead_id": lead.id},
    )
    hooks.audit(
        "LEAD_CREATED_WEBSITE", "LEAD", lead.id, actor_id,
        after={"lead_code": lead.lead_code, "company_name": lead.company_name, "source": lead.source},
    )
    await hooks.run(db)
    return response


# ===================== Authenticated =====================

@router.get("", response_model=LeadList)
async def list_leads(
    status: Optional[str] = None,
    source: Optional[str] = None,
    assigned_to_id: Optional[int] = None,
    search: Optional[str] = None,
    bucket: Optional[str] = None,
    temperature: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(leads_user),
):
    now = datetime.utcnow()
    conditions = []
    if status:
        conditions.append(Lead.status == parse_enum(LeadStatus, status, "Invalid lead status"))
    if source:
        conditions.append(Lead.source == parse_enum(LeadSource, source, "Invalid lead source"))
    if assigned_to_id:
        conditions.append(Lead.assigned_to_id == assigned_to_id)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        conditions.append(or_(
            Lead.company_name.ilike(pattern),
            Lead.contact_person.ilike(pattern),
            Lead.mobile_number.ilike(pattern),
            Lead.email.ilike(pattern),
            Lead.lead_code.ilike(pattern),
        ))
    bucket_condition = lead_lifecycle.temperature_filter(bucket or temperature, now)
    if bucket_condition is not None:
        conditions.append(bucket_condition)

    total = (await db.execute(select(func.count(Lead.id)).where(*conditions))).scalar() or 0
    result = await db.execute(
        select(Lead)
        .where(*conditions)
        .order_by(Lead.updated_at.desc(), Lead.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    leads = [lead_response(lead, now) for lead in result.scalars().all()]
    return LeadList(page=page, limit=limit, total=total, leads=leads)


@router.get("/{lead_id}", response_model=LeadResponse)
async def get_lead(
    lead_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(leads_user),
):
    return lead_response(await load_lead(db, lead_id))


@router.post("", response_model=LeadResponse, status_code=201)
async def create_lead(
    data: LeadCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(leads_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    await _ensure_assignee(db, data.assigned_to_id)
    lead = lead_lifecycle.build_lead(await generate_lead_code(db), data.model_dump(), current_user.id)
    db.add(lead)
    await db.commit()
    response = lead_response(await load_lead(db, lead.id))

    hooks.broadcast(
        "LEAD_CREATED", "New lead created", f"{lead.company_name} ({lead.lead_code}) added",
        payload={"lead_id": lead.id}, actor_id=current_user.id,
    )
    hooks.audit(
        "LEAD_CREATED", "LEAD", lead.id, current_user.id,
        after={"lead_code": lead.lead_code, "company_name": lead.company_name,
               "status": lead.status, "source": lead.source},
    )
    await hooks.run(db)
    return response


@router.patch("/{lead_id}", response_model=LeadResponse)
async def update_lead(
    lead_id: int,
    data: LeadUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(leads_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    changes = data.model_dump(exclude_unset=True)
    await _ensure_assignee(db, changes.get("assigned_to_id"))
    lead = await load_lead(db, lead_id)
    before = _lead_snapshot(lead)
    lead_lifecycle.update_lead(lead, current_user.id, changes)
    after = _lead_snapshot(lead)
    await db.commit()
    response = lead_response(await load_lead(db, lead.id))

    hooks.broadcast(
        "LEAD_UPDATED", "Lead updated", f"{lead.company_name} updated",
        payload={"lead_id": lead.id}, actor_id=current_user.id,
    )
    hooks.audit("LEAD_UPDATED", "LEAD", lead.id, current_user.id, before=before, after=after)
    await hooks.run(db)
    return response


@router.post("/{lead_id}/notes", response_model=LeadResponse, status_code=201)
async def add_lead_note(
    lead_id: int,
    data: NoteCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(leads_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    lead = await load_lead(db, lead_id)
    note = lead_lifecycle.add_note(lead, current_user.id, data.note)
    await db.commit()
    response = lead_response(await load_lead(db, lead.id))

    hooks.broadcast(
        "LEAD_NOTE", "Lead note added", f"{lead.company_name} note updated",
        payload={"lead_id": lead.id}, actor_id=current_user.id,
    )
    hooks.audit("LEAD_NOTE_ADDED", "LEAD", lead.id, current_user.id, metadata={"note_length": len(note.note)})
    await hooks.run(db)
    return response


@router.post("/{lead_id}/calls", response_model=LeadResponse, status_code=201)
async def add_lead_call(
    lead_id: int,
    data: CallCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(leads_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    lead = await load_lead(db, lead_id)
    call = lead_lifecycle.add_call(lead, current_user.id, data.call_at, data.duration_minutes, data.summary)
    await db.commit()
    response = lead_response(await load_lead(db, lead.id))

    hooks.broadcast(
        "LEAD_CALL", "Lead call logged", f"{lead.company_name} call added",
        payload={"lead_id": lead.id}, actor_id=current_user.id,
    )
    hooks.audit(
        "LEAD_CALL_LOGGED", "LEAD", lead.id, current_user.id,
        metadata={"duration_minutes": call.duration_minutes, "call_at": call.call_at},
    )
    await hooks.run(db)
    return response


@router.post("/{lead_id}/convert", response_model=ConvertResponse)
async def convert_lead(
    lead_id: int,
    data: Optional[ConvertRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(leads_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    """Create a client and its first project from the lead; repeating returns the existing client"""
    lead = await load_lead(db, lead_id)
    if lead.is_converted and lead.converted_client_id:
        existing = await db.get(Client, lead.converted_client_id)
        return ConvertResponse(
            message="Lead already converted",
            client=ClientResponse.model_validate(existing) if existing else None,
        )

    now = datetime.utcnow()
    client = lead_lifecycle.build_client_from_lead(lead, await generate_client_code(db), current_user.id, now)
    db.add(client)
    await db.flush()

    fields = (data or ConvertRequest()).model_dump(exclude_none=True)
    project = await create_project_for_client(
        db, client, current_user.id, lead_id=lead.id,
        created_message="Project created during lead conversion", **fields,
    )
    await db.flush()
    lead_lifecycle.mark_converted(lead, client, current_user.id, now)
    await db.commit()

    response = ConvertResponse(
        lead=lead_response(await load_lead(db, lead.id), now),
        client=ClientResponse.model_validate(client),
        project=project_response(await load_project(db, project.id)),
    )

    hooks.broadcast(
        "LEAD_CONVERTED", "Lead converted", f"{lead.company_name} converted to client {client.client_code}",
        payload={"lead_id": lead.id, "client_id": client.id, "project_id": project.id},
        actor_id=current_user.id,
    )
    hooks.audit(
        "LEAD_CONVERTED", "LEAD", lead.id, current_user.id,
        metadata={"client_id": client.id, "project_id": project.id,
                  "client_code": client.client_code, "project_code": project.project_code},
    )
    await hooks.run(db)
    return response
