"""
Clients API - client registry with an optional first project
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.database import get_db
from subsidy_crm.models.user import User, AppModule
from subsidy_crm.models.client import Client
from subsidy_crm.models.project import Project
from subsidy_crm.api.auth import require_module
from subsidy_crm.api.projects import (
    ProjectSummary, ProjectResponse, project_summary, project_response, load_project, create_project_for_client,
)
from subsidy_crm.services.sequences import generate_client_code
from subsidy_crm.services.side_effects import PostCommitHooks, get_post_commit_hooks
from subsidy_crm.utils.helpers import append_timeline

logger = logging.getLogger(__name__)

router = APIRouter()
clients_user = require_module(AppModule.CLIENTS)


class ClientResponse(BaseModel):
    id: int
    client_code: str
    company_name: str
    gst_no: Optional[str] = None
    factory_address: Optional[str] = None
    contact_person: Optional[str] = None
    mobile_number: Optional[str] = None
    email: Optional[str] = None
    agreement_signed: bool = False
    agreement_date: Optional[date] = None
    assigned_consultant_id: Optional[int] = None
    source_lead_id: Optional[int] = None
    created_by_id: Optional[int] = None
    timeline: List[Dict[str, Any]] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ClientDetail(ClientResponse):
    projects: List[ProjectSummary] = []


class ClientCreate(BaseModel):
    company_name: str
    gst_no: Optional[str] = None
    factory_address: Optional[str] = None
    contact_person: Optional[str] = None
    mobile_number: Optional[str] = None
    email: Optional[str] = None
    agreement_signed: bool = False
    agreement_date: Optional[date] = None
    assigned_consultant_id: Optional[int] = None
    create_project: bool = True
    # First project
    category_id: Optional[int] = None
    scheme_id: Optional[int] = None
    scheme_name: Optional[str] = None
    department: Optional[str] = None
    application_no: Optional[str] = None
    project_value: Optional[float] = None
    expected_subsidy_amount: Optional[float] = None
    start_date: Optional[date] = None
    target_completion_date: Optional[date] = None


class ClientCreated(BaseModel):
    client: ClientResponse
    project: Optional[ProjectResponse] = None


PROJECT_FIELDS = (
    "category_id", "scheme_id", "scheme_name", "department", "application_no", "project_value",
    "expected_subsidy_amount", "start_date", "target_completion_date",
)


async def _client_projects(db: AsyncSession, client_id: int) -> List[Project]:
    result = await db.execute(
        select(Project).where(Project.client_id == client_id).order_by(Project.id)
    )
    return list(result.unique().scalars().all())


@router.get("", response_model=List[ClientResponse])
async def list_clients(
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(clients_user),
):
    query = select(Client)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.where(or_(
            Client.company_name.ilike(pattern),
            Client.client_code.ilike(pattern),
            Client.contact_person.ilike(pattern),
            Client.email.ilike(pattern),
        ))
    result = await db.execute(query.order_by(Client.updated_at.desc(), Client.id.desc()))
    return result.scalars().all()


@router.get("/{client_id}", response_model=ClientDetail)
async def get_client(
    client_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(clients_user),
):
    client = await db.get(Client, client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    detail = ClientDetail.model_validate(ClientResponse.model_validate(client).model_dump())
    detail.projects = [project_summary(p) for p in await _client_projects(db, client_id)]
    return detail


@router.post("", response_model=ClientCreated, status_code=201)
async def create_client(
    data: ClientCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(clients_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    """Create a client and, unless create_project is false, its first project"""
    company_name = (data.company_name or "").strip()
    if not company_name:
        raise HTTPException(status_code=400, detail="company_name is required")

    client = Client(
        client_code=await generate_client_code(db),
        company_name=company_name,
        gst_no=data.gst_no,
        factory_address=data.factory_address,
        contact_person=data.contact_person,
        mobile_number=data.mobile_number,
        email=(data.email or "").strip().lower() or None,
        agreement_signed=data.agreement_signed,
        agreement_date=data.agreement_date,
        assigned_consultant_id=data.assigned_consultant_id,
        created_by_id=current_user.id,
        timeline=[],
    )
    append_timeline(client, "CLIENT_CREATED", "Client created manually", current_user.id)
    db.add(client)
    await db.flush()

    project = None
    if data.create_project:
        fields = {f: getattr(data, f) for f in PROJECT_FIELDS if getattr(data, f) is not None}
        project = await create_project_for_client(
            db, client, current_user.id, created_message="Project created with client", **fields,
        )

    await db.commit()
    response = ClientCreated(
        client=ClientResponse.model_validate(client),
        project=project_response(await load_project(db, project.id)) if project else None,
    )
    logger.info(f"Client {client.client_code} created by user {current_user.id}")

    hooks.broadcast(
        "CLIENT_CREATED", "Client created", f"{client.company_name} ({client.client_code}) added",
        payload={"client_id": client.id, "project_id": project.id if project else None},
        actor_id=current_user.id,
    )
    hooks.audit(
        "CLIENT_CREATED", "CLIENT", client.id, current_user.id,
        after={"client_code": client.client_code, "company_name": client.company_name, "with_project": bool(project)},
        metadata={"project_id": project.id if project else None,
                  "project_code": project.project_code if project else None},
    )
    await hooks.run(db)
    return response
