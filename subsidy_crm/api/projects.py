"""
Projects API - milestones, tasks, execution and document uploads.

Every mutation loads the whole project aggregate, runs it through the
automation engine and commits once; notifications and audit follow the commit.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from fastapi.responses import FileResponse
from pydantic import BaseModel
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.database import get_db
from subsidy_crm.models.user import User, AppModule
from subsidy_crm.models.client import Client
from subsidy_crm.models.project import (
    Project, Milestone, Task, ProjectStage, MilestoneStatus, TaskStatus, TaskPriority,
)
from subsidy_crm.api.auth import require_module
from subsidy_crm.services import project_automation as automation
from subsidy_crm.services import file_storage
from subsidy_crm.services.catalog import resolve_scheme_fields
from subsidy_crm.services.access import is_admin, ensure_admin, ensure_project_access, ensure_task_execution_access
from subsidy_crm.services.guidance import STAGE_GUIDANCE
from subsidy_crm.services.sequences import generate_project_code
from subsidy_crm.services.side_effects import PostCommitHooks, get_post_commit_hooks
from subsidy_crm.utils.helpers import append_timeline

logger = logging.getLogger(__name__)

router = APIRouter()
projects_user = require_module(AppModule.PROJECTS)


# ===================== Schemas =====================

class CommentResponse(BaseModel):
    id: int
    text: str
    author_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AttachmentResponse(BaseModel):
    id: int
    file_name: str
    file_url: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    uploaded_by_id: Optional[int] = None
    uploaded_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TaskResponse(BaseModel):
    id: int
    milestone_id: int
    name: str
    description: Optional[str] = None
    assignee_id: Optional[int] = None
    deadline: Optional[date] = None
    priority: TaskPriority
    requires_attachment: Optional[bool] = None
    status: TaskStatus
    completed_at: Optional[datetime] = None
    timeline: List[Dict[str, Any]] = []
    comments: List[CommentResponse] = []
    attachments: List[AttachmentResponse] = []

    class Config:
        from_attributes = True


class MilestoneResponse(BaseModel):
    id: int
    project_id: int
    name: str
    description: Optional[str] = None
    stage: ProjectStage
    status: MilestoneStatus
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    position: int = 0
    timeline: List[Dict[str, Any]] = []
    tasks: List[TaskResponse] = []

    class Config:
        from_attributes = True


class ProjectSummary(BaseModel):
    id: int
    project_code: str
    client_id: int
    client_code: Optional[str] = None
    client_name: Optional[str] = None
    lead_id: Optional[int] = None
    category_id: Optional[int] = None
    scheme_id: Optional[int] = None
    scheme_name: str
    department: Optional[str] = None
    application_no: Optional[str] = None
    project_value: float = 0
    expected_subsidy_amount: float = 0
    start_date: Optional[date] = None
    target_completion_date: Optional[date] = None
    current_stage: ProjectStage
    activity_stats: Optional[Dict[str, int]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProjectResponse(ProjectSummary):
    stage_guidance: Optional[str] = None
    stage_history: List[Dict[str, Any]] = []
    timeline: List[Dict[str, Any]] = []
    created_by_id: Optional[int] = None
    milestones: List[MilestoneResponse] = []


class ProjectCreate(BaseModel):
    client_id: int
    category_id: Optional[int] = None
    scheme_id: Optional[int] = None
    scheme_name: Optional[str] = None
    department: Optional[str] = None
    application_no: Optional[str] = None
    project_value: Optional[float] = None
    expected_subsidy_amount: Optional[float] = None
    start_date: Optional[date] = None
    target_completion_date: Optional[date] = None


class ProjectUpdate(BaseModel):
    category_id: Optional[int] = None
    scheme_id: Optional[int] = None
    scheme_name: Optional[str] = None
    department: Optional[str] = None
    application_no: Optional[str] = None
    project_value: Optional[float] = None
    expected_subsidy_amount: Optional[float] = None
    start_date: Optional[date] = None
    target_completion_date: Optional[date] = None
    current_stage: Optional[str] = None


class MilestoneCreate(BaseModel):
    name: str
    stage: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None


class MilestoneUpdate(BaseModel):
    name: Optional[str] = None
    stage: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    status: Optional[str] = None


class TaskCreate(BaseModel):
    name: str
    description: Optional[str] = None
    assignee_id: Optional[int] = None
    deadline: Optional[date] = None
    priority: Optional[str] = None
    requires_attachment: Optional[bool] = None


class TaskUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    assignee_id: Optional[int] = None
    deadline: Optional[date] = None
    priority: Optional[str] = None
    requires_attachment: Optional[bool] = None
    status: Optional[str] = None


class CommentCreate(BaseModel):
    text: str


# ===================== Helpers =====================

def project_summary(project: Project, model=ProjectSummary):
    data = model.model_validate(project)
    if project.client is not None:
        data.client_code = project.client.client_code
        data.client_name = project.client.company_name
    return data


def project_response(project: Project) -> ProjectResponse:
    data = project_summary(project, ProjectResponse)
    data.stage_guidance = STAGE_GUIDANCE.get(ProjectStage(project.current_stage))
    return data


async def load_project(db: AsyncSession, project_id: int) -> Project:
    """Project with client, milestones, tasks, comments and attachments loaded fresh"""
    result = await db.execute(
        select(Project)
        .where(Project.id == project_id)
        .execution_options(populate_existing=True)
    )
    project = result.unique().scalar_one_or_none()
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


async def create_project_for_client(
    db: AsyncSession,
    client: Client,
    actor_id: int,
    lead_id: Optional[int] = None,
    created_message: str = "Project created",
    **fields,
) -> Project:
    """Default-plan project for a client; the caller commits"""
    fields = await resolve_scheme_fields(db, fields)
    project_code = await generate_project_code(db)
    project = automation.build_project(
        project_code, client.id, actor_id, lead_id=lead_id,
        created_message=created_message, **fields,
    )
    db.add(project)
    append_timeline(client, "PROJECT_CREATED", f"Project {project_code} created", actor_id)
    return project


async def _commit_and_reload(db: AsyncSession, project: Project) -> ProjectResponse:
    await db.commit()
    return project_response(await load_project(db, project.id))


def _queue_project_event(hooks: PostCommitHooks, project: Project, actor: User, event: str, title: str,
                         message: str, audit_action: Optional[str] = None, **audit_kwargs) -> None:
    hooks.broadcast(
        event, title, message,
        payload={"project_id": project.id}, actor_id=actor.id,
    )
    hooks.audit(audit_action or event, "PROJECT", project.id, actor.id, **audit_kwargs)


# ===================== Read =====================

@router.get("", response_model=List[ProjectSummary])
async def list_projects(
    client_id: Optional[int] = None,
    current_stage: Optional[str] = None,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
):
    """Admins see every project; other users only projects with a task assigned to them"""
    query = select(Project)
    if client_id:
        query = query.where(Project.client_id == client_id)
    if current_stage:
        query = query.where(Project.current_stage == current_stage.strip().upper())
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.where(or_(
            Project.project_code.ilike(pattern),
            Project.scheme_name.ilike(pattern),
            Project.application_no.ilike(pattern),
        ))
    if not is_admin(current_user):
        assigned = (
            select(Milestone.project_id)
            .join(Task, Task.milestone_id == Milestone.id)
            .where(Task.assignee_id == current_user.id)
        )
        query = query.where(Project.id.in_(assigned))

    result = await db.execute(query.order_by(Project.updated_at.desc(), Project.id.desc()))
    return [project_summary(p) for p in result.unique().scalars().all()]


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
):
    project = await load_project(db, project_id)
    ensure_project_access(project, current_user)
    return project_response(project)


# ===================== Admin edits =====================

@router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(
    data: ProjectCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    """Add another project to an existing client"""
    ensure_admin(current_user)
    client = await db.get(Client, data.client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")

    project = await create_project_for_client(
        db, client, current_user.id, **data.model_dump(exclude={"client_id"}, exclude_none=True),
    )
    response = await _commit_and_reload(db, project)

    _queue_project_event(
        hooks, project, current_user, "PROJECT_CREATED", "Project created",
        f"{project.project_code} created for {client.company_name}",
        after={"project_code": project.project_code, "client_id": client.id},
    )
    await hooks.run(db)
    return response


@router.patch("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: int,
    data: ProjectUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    ensure_admin(current_user)
    project = await load_project(db, project_id)
    before = {
        "current_stage": project.current_stage,
        "target_completion_date": project.target_completion_date,
        "expected_subsidy_amount": project.expected_subsidy_amount,
    }

    changes = await resolve_scheme_fields(db, data.model_dump(exclude_unset=True))
    automation.update_project(project, current_user, changes)
    after = {
        "current_stage": project.current_stage,
        "target_completion_date": project.target_completion_date,
        "expected_subsidy_amount": project.expected_subsidy_amount,
    }
    response = await _commit_and_reload(db, project)

    _queue_project_event(
        hooks, project, current_user, "PROJECT_UPDATED", "Project updated",
        f"{project.project_code} was updated", before=before, after=after,
    )
    await hooks.run(db)
    return response


@router.post("/{project_id}/milestones", response_model=ProjectResponse, status_code=201)
async def add_milestone(
    project_id: int,
    data: MilestoneCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    ensure_admin(current_user)
    project = await load_project(db, project_id)
    milestone = automation.add_milestone(
        project, current_user, data.name, stage=data.stage,
        start_date=data.start_date, due_date=data.due_date, description=data.description,
    )
    response = await _commit_and_reload(db, project)

    _queue_project_event(
        hooks, project, current_user, "MILESTONE_CREATED", "Milestone added",
        f"{project.project_code}: {milestone.name}",
        metadata={"milestone_id": milestone.id, "stage": milestone.stage},
    )
    await hooks.run(db)
    return response


@router.patch("/{project_id}/milestones/{milestone_id}", response_model=ProjectResponse)
async def update_milestone(
    project_id: int,
    milestone_id: int,
    data: MilestoneUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    ensure_admin(current_user)
    project = await load_project(db, project_id)
    milestone = automation.find_milestone(project, milestone_id)
    automation.update_milestone(project, milestone, current_user, data.model_dump(exclude_unset=True))
    response = await _commit_and_reload(db, project)

    _queue_project_event(
        hooks, project, current_user, "MILESTONE_UPDATED", "Milestone updated",
        f"{project.project_code}: {milestone.name}",
        metadata={"milestone_id": milestone.id},
    )
    await hooks.run(db)
    return response


@router.post("/{project_id}/milestones/{milestone_id}/tasks", response_model=ProjectResponse, status_code=201)
async def add_task(
    project_id: int,
    milestone_id: int,
    data: TaskCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    ensure_admin(current_user)
    if data.assignee_id is not None and await db.get(User, data.assignee_id) is None:
        raise HTTPException(status_code=400, detail="Assignee not found")
    project = await load_project(db, project_id)
    milestone = automation.find_milestone(project, milestone_id)
    task = automation.add_task(
        project, milestone, current_user, data.name,
        description=data.description, assignee_id=data.assignee_id, deadline=data.deadline,
        priority=data.priority, requires_attachment=data.requires_attachment,
    )
    response = await _commit_and_reload(db, project)

    _queue_project_event(
        hooks, project, current_user, "TASK_CREATED", "Task created",
        f"{project.project_code}: {task.name}",
        metadata={"milestone_id": milestone.id, "task_id": task.id},
    )
    await hooks.run(db)
    return response


@router.patch("/{project_id}/milestones/{milestone_id}/tasks/{task_id}", response_model=ProjectResponse)
async def update_task(
    project_id: int,
    milestone_id: int,
    task_id: int,
    data: TaskUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    changes = data.model_dump(exclude_unset=True)
    if changes.get("assignee_id") is not None and await db.get(User, changes["assignee_id"]) is None:
        raise HTTPException(status_code=400, detail="Assignee not found")
    project = await load_project(db, project_id)
    milestone, task = automation.find_task(project, milestone_id, task_id)
    before = {"status": task.status, "assignee_id": task.assignee_id}
    automation.update_task(project, milestone, task, current_user, changes)
    after = {"status": task.status, "assignee_id": task.assignee_id}
    response = await _commit_and_reload(db, project)

    _queue_project_event(
        hooks, project, current_user, "TASK_UPDATED", "Task updated",
        f"{project.project_code}: {task.name}",
        before=before, after=after, metadata={"milestone_id": milestone.id, "task_id": task.id},
    )
    await hooks.run(db)
    return response


# ===================== Task execution =====================

@router.post("/{project_id}/milestones/{milestone_id}/tasks/{task_id}/complete", response_model=ProjectResponse)
async def complete_task(
    project_id: int,
    milestone_id: int,
    task_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    project = await load_project(db, project_id)
    milestone, task = automation.find_task(project, milestone_id, task_id)
    previous_stage = project.current_stage
    automation.complete_task(project, milestone, task, current_user)
    response = await _commit_and_reload(db, project)

    _queue_project_event(
        hooks, project, current_user, "TASK_COMPLETED", "Task completed",
        f"{project.project_code}: {task.name}",
        metadata={
            "milestone_id": milestone.id,
            "task_id": task.id,
            "stage_before": previous_stage,
            "stage_after": project.current_stage,
        },
    )
    await hooks.run(db)
    return response


@router.post("/{project_id}/milestones/{milestone_id}/tasks/{task_id}/comments",
             response_model=ProjectResponse, status_code=201)
async def add_task_comment(
    project_id: int,
    milestone_id: int,
    task_id: int,
    data: CommentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    project = await load_project(db, project_id)
    milestone, task = automation.find_task(project, milestone_id, task_id)
    automation.add_task_comment(project, milestone, task, current_user, data.text)
    response = await _commit_and_reload(db, project)

    _queue_project_event(
        hooks, project, current_user, "TASK_COMMENT", "Task comment",
        f"{project.project_code}: comment on {task.name}",
        audit_action="TASK_COMMENT_ADDED",
        metadata={"milestone_id": milestone.id, "task_id": task.id},
    )
    await hooks.run(db)
    return response


@router.post("/{project_id}/milestones/{milestone_id}/tasks/{task_id}/attachments",
             response_model=ProjectResponse, status_code=201)
async def upload_task_attachment(
    project_id: int,
    milestone_id: int,
    task_id: int,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    """Upload a PDF against a task; the file is only stored once the gate passes"""
    project = await load_project(db, project_id)
    milestone, task = automation.find_task(project, milestone_id, task_id)
    ensure_task_execution_access(task, current_user)

    content = await file.read()
    file_name = file.filename or "document.pdf"
    stored_ref = file_storage.save_pdf(content, file_name, file.content_type)

    automation.add_task_attachment(
        project, milestone, task, current_user,
        file_name=file_name, file_url=stored_ref,
        mime_type=file.content_type or "application/pdf", size=len(content),
    )
    response = await _commit_and_reload(db, project)

    _queue_project_event(
        hooks, project, current_user, "TASK_ATTACHMENT", "Task document uploaded",
        f"{project.project_code}: {task.name}",
        audit_action="TASK_ATTACHMENT_UPLOADED",
        metadata={"milestone_id": milestone.id, "task_id": task.id, "file_name": file_name, "size": len(content)},
    )
    await hooks.run(db)
    return response


@router.get("/{project_id}/milestones/{milestone_id}/tasks/{task_id}/attachments/{attachment_id}/download")
async def download_task_attachment(
    project_id: int,
    milestone_id: int,
    task_id: int,
    attachment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(projects_user),
):
    project = await load_project(db, project_id)
    ensure_project_access(project, current_user)
    _, task = automation.find_task(project, milestone_id, task_id)
    ensure_task_execution_access(task, current_user)
    attachment = automation.find_attachment(task, attachment_id)

    path = file_storage.resolve_upload(attachment.file_url)
    filename = (attachment.file_name or "document.pdf").replace('"', "")
    return FileResponse(
        path,
        media_type=attachment.mime_type or "application/pdf",
        filename=filename,
        content_disposition_type="inline",
    )
