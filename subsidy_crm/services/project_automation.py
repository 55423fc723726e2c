"""
Project automation engine.

Milestone statuses are rolled up from their tasks, the project stage moves
forward once every milestone of the current stage is closed, and a project
whose milestones are all closed completes itself. Every mutation below works
on a fully loaded aggregate and finishes with sync_project_automation(), so
the caller only has to commit.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, Optional, Tuple

from subsidy_crm.exceptions import NotFoundError, ValidationError, ForbiddenError, StateConflictError
from subsidy_crm.models.project import (
    Project, Milestone, Task, TaskComment, TaskAttachment,
    ProjectStage, MilestoneStatus, TaskStatus, TaskPriority,
    STAGE_FLOW, AUTO_LOCKED_STAGES,
)
from subsidy_crm.models.user import User
from subsidy_crm.services import guidance
from subsidy_crm.services.access import is_admin, ensure_admin, ensure_task_execution_access
from subsidy_crm.utils.helpers import append_timeline, append_history
from subsidy_crm.utils.validators import parse_enum, require_text

logger = logging.getLogger(__name__)

CLOSED_TASK_STATUSES = {TaskStatus.COMPLETED, TaskStatus.SKIPPED}
STARTED_TASK_STATUSES = {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.SKIPPED}
CLOSED_MILESTONE_STATUSES = {MilestoneStatus.DONE, MilestoneStatus.SKIPPED}


# ==================== ROLLUP ====================


def recompute_milestone_status(milestone: Milestone, now: Optional[datetime] = None) -> bool:
    """Derive a milestone's status from its tasks; returns True if it changed"""
    now = now or datetime.utcnow()
    tasks = list(milestone.tasks or [])
    previous = milestone.status

    if not tasks:
        status, completed_at = MilestoneStatus.PENDING, None
    elif all(t.status in CLOSED_TASK_STATUSES for t in tasks):
        status, completed_at = MilestoneStatus.DONE, milestone.completed_at or now
    elif any(t.status in STARTED_TASK_STATUSES for t in tasks):
        status, completed_at = MilestoneStatus.IN_PROGRESS, None
    else:
        status, completed_at = MilestoneStatus.PENDING, None

    milestone.status = status
    milestone.completed_at = completed_at
    return previous != status


def _all_closed(milestones) -> bool:
    milestones = list(milestones)
    return bool(milestones) and all(m.status in CLOSED_MILESTONE_STATUSES for m in milestones)


def next_open_stage(project: Project, current_stage) -> Optional[ProjectStage]:
    """First later stage in the flow that still has open milestones"""
    if current_stage not in STAGE_FLOW:
        return None
    start = STAGE_FLOW.index(current_stage) + 1
    for stage in STAGE_FLOW[start:]:
        milestones = [m for m in project.milestones if m.stage == stage]
        if milestones and not _all_closed(milestones):
            return stage
    return None


def advance_project_stage(project: Project, actor_id: Optional[int] = None, now: Optional[datetime] = None) -> bool:
    """
    Move the project forward when its current stage is closed.

    Parked projects (ON_HOLD, REJECTED, COMPLETED) are left alone. When no
    later stage is open and every milestone is closed the project completes.
    Returns True if the stage changed.
    """
    now = now or datetime.utcnow()
    current = ProjectStage(project.current_stage)
    if current in AUTO_LOCKED_STAGES:
        return False

    current_milestones = [m for m in project.milestones if m.stage == current]
    if not _all_closed(current_milestones):
        return False

    target = next_open_stage(project, current)
    if target and target != current:
        project.current_stage = target
        append_history(project, "stage_history", current, target, actor_id, now)
        append_timeline(
            project, "STAGE_AUTO_ADVANCED",
            f"Project automatically moved from {current.value} to {target.value}",
            actor_id, now,
        )
        logger.info(f"Project {project.project_code} advanced {current.value} -> {target.value}")
        return True

    if _all_closed(project.milestones) and current != ProjectStage.COMPLETED:
        project.current_stage = ProjectStage.COMPLETED
        append_history(project, "stage_history", current, ProjectStage.COMPLETED, actor_id, now)
        append_timeline(
            project, "PROJECT_AUTO_COMPLETED",
            "All milestones closed. Project marked as completed automatically.",
            actor_id, now,
        )
        logger.info(f"Project {project.project_code} completed automatically")
        return True

    return False


def recompute_activity_stats(project: Project) -> Dict[str, int]:
    stats = {
        "milestone_count": len(project.milestones),
        "task_count": 0,
        "completed_task_count": 0,
        "comment_count": 0,
        "attachment_count": 0,
    }
    for milestone in project.milestones:
        for task in milestone.tasks:
            stats["task_count"] += 1
            if task.status == TaskStatus.COMPLETED:
                stats["completed_task_count"] += 1
            stats["comment_count"] += len(task.comments)
            stats["attachment_count"] += len(task.attachments)

    if project.activity_stats != stats:
        project.activity_stats = stats
    return stats


def sync_project_automation(project: Project, actor_id: Optional[int] = None, now: Optional[datetime] = None) -> None:
    """Guidance defaults, milestone rollup, stage advance and stats, in that order"""
    now = now or datetime.utcnow()
    guidance.apply_guidance_defaults(project.milestones)
    for milestone in project.milestones:
        recompute_milestone_status(milestone, now)
    advance_project_stage(project, actor_id, now)
    recompute_activity_stats(project)


# ==================== LOOKUPS ====================


def find_milestone(project: Project, milestone_id: int) -> Milestone:
    for milestone in project.milestones:
        if milestone.id == milestone_id:
            return milestone
    raise NotFoundError("Milestone not found")


def find_task(project: Project, milestone_id: int, task_id: int) -> Tuple[Milestone, Task]:
    milestone = find_milestone(project, milestone_id)
    for task in milestone.tasks:
        if task.id == task_id:
            return milestone, task
    raise NotFoundError("Task not found")


def find_attachment(task: Task, attachment_id: int) -> TaskAttachment:
    for attachment in task.attachments:
        if attachment.id == attachment_id:
            return attachment
    raise NotFoundError("Attachment not found")


def _touch(project: Project, now: datetime) -> None:
    # Forces an UPDATE of the root row so the version counter is checked
    project.updated_at = now


def _start_if_pending(task: Task, actor_id: int, now: datetime) -> None:
    if task.status == TaskStatus.PENDING:
        task.status = TaskStatus.IN_PROGRESS
        append_timeline(task, "TASK_STARTED", "Task moved to in-progress automatically", actor_id, now)


# ==================== TASK EXECUTION ====================


def complete_task(project: Project, milestone: Milestone, task: Task, actor: User,
                  now: Optional[datetime] = None) -> Task:
    """Mark a task COMPLETED once its attachment requirement is satisfied"""
    now = now or datetime.utcnow()
    ensure_task_execution_access(task, actor)

    if task.status == TaskStatus.SKIPPED:
        raise StateConflictError("Skipped task cannot be completed directly")
    if guidance.task_requires_attachment(task, milestone.stage) and not task.attachments:
        raise StateConflictError("Upload required documents before completing this task")

    task.status = TaskStatus.COMPLETED
    task.completed_at = now
    append_timeline(task, "TASK_COMPLETED", "Task marked completed", actor.id, now)
    append_timeline(milestone, "TASK_COMPLETED", f"{task.name} completed", actor.id, now)
    append_timeline(project, "TASK_COMPLETED", f"{task.name} completed", actor.id, now)

    sync_project_automation(project, actor.id, now)
    _touch(project, now)
    return task


def add_task_comment(project: Project, milestone: Milestone, task: Task, actor: User, text: str,
                     now: Optional[datetime] = None) -> TaskComment:
    now = now or datetime.utcnow()
    text = require_text(text, "Comment text is required")
    ensure_task_execution_access(task, actor)

    comment = TaskComment(text=text, author_id=actor.id, created_at=now)
    task.comments.append(comment)
    _start_if_pending(task, actor.id, now)
    append_timeline(task, "TASK_COMMENT", "Comment added", actor.id, now)
    append_timeline(milestone, "TASK_COMMENT", f"Comment added on task {task.name}", actor.id, now)
    append_timeline(project, "TASK_COMMENT", f"Comment added on {task.name}", actor.id, now)

    sync_project_automation(project, actor.id, now)
    _touch(project, now)
    return comment


def add_task_attachment(project: Project, milestone: Milestone, task: Task, actor: User,
                        file_name: str, file_url: str, mime_type: Optional[str], size: Optional[int],
                        now: Optional[datetime] = None) -> TaskAttachment:
    """Record an already-stored file against the task"""
    now = now or datetime.utcnow()
    ensure_task_execution_access(task, actor)

    attachment = TaskAttachment(
        file_name=file_name,
        file_url=file_url,
        mime_type=mime_type,
        size=size,
        uploaded_by_id=actor.id,
        uploaded_at=now,
    )
    task.attachments.append(attachment)
    _start_if_pending(task, actor.id, now)
    append_timeline(task, "TASK_ATTACHMENT", f"PDF uploaded: {file_name}", actor.id, now)
    append_timeline(milestone, "TASK_ATTACHMENT", f"Attachment uploaded for task {task.name}", actor.id, now)
    append_timeline(project, "TASK_ATTACHMENT", f"Attachment uploaded for {task.name}", actor.id, now)

    sync_project_automation(project, actor.id, now)
    _touch(project, now)
    return attachment


# ==================== ADMIN EDITS ====================

PROJECT_FIELDS = (
    "category_id", "scheme_id", "scheme_name", "department", "application_no", "project_value",
    "expected_subsidy_amount", "start_date", "target_completion_date",
)


def update_project(project: Project, actor: User, changes: Dict[str, Any],
                   now: Optional[datetime] = None) -> Project:
    """Apply field edits; a manual stage change is recorded in the stage history"""
    now = now or datetime.utcnow()
    ensure_admin(actor)

    new_stage = None
    if changes.get("current_stage") is not None:
        new_stage = parse_enum(ProjectStage, changes["current_stage"], "Invalid project stage")

    for field in PROJECT_FIELDS:
        if field in changes:
            setattr(project, field, changes[field])

    previous = project.current_stage
    if new_stage is not None and new_stage != previous:
        project.current_stage = new_stage
        append_history(project, "stage_history", previous, new_stage, actor.id, now)

    sync_project_automation(project, actor.id, now)
    append_timeline(project, "PROJECT_UPDATED", "Project updated", actor.id, now)
    _touch(project, now)
    return project


def add_milestone(project: Project, actor: User, name: str, stage=None, start_date: Optional[date] = None,
                  due_date: Optional[date] = None, description: Optional[str] = None,
                  now: Optional[datetime] = None) -> Milestone:
    now = now or datetime.utcnow()
    ensure_admin(actor)
    name = require_text(name, "Milestone name is required")
    target_stage = parse_enum(ProjectStage, stage, "Invalid milestone stage") if stage else project.current_stage

    milestone = guidance.build_milestone(
        name, target_stage, actor.id, now,
        created_message=f"Milestone {name} created",
        description=description,
        start_date=start_date,
        due_date=due_date,
        position=len(project.milestones),
    )
    project.milestones.append(milestone)
    append_timeline(project, "MILESTONE_CREATED", f"Milestone {name} created", actor.id, now)

    sync_project_automation(project, actor.id, now)
    _touch(project, now)
    return milestone


MILESTONE_FIELDS = ("name", "start_date", "due_date", "description")


def update_milestone(project: Project, milestone: Milestone, actor: User, changes: Dict[str, Any],
                     now: Optional[datetime] = None) -> Milestone:
    """Edit milestone details; its status stays derived"""
    now = now or datetime.utcnow()
    ensure_admin(actor)
    if "status" in changes and changes["status"] is not None:
        raise ValidationError("Milestone status is automated and cannot be set directly")

    new_stage = None
    if changes.get("stage") is not None:
        new_stage = parse_enum(ProjectStage, changes["stage"], "Invalid milestone stage")
    if "name" in changes:
        require_text(changes["name"], "Milestone name is required")

    for field in MILESTONE_FIELDS:
        if field in changes:
            setattr(milestone, field, changes[field])
    if new_stage is not None:
        milestone.stage = new_stage

    append_timeline(milestone, "MILESTONE_UPDATED", "Milestone updated", actor.id, now)
    append_timeline(project, "MILESTONE_UPDATED", f"Milestone {milestone.name} updated", actor.id, now)

    sync_project_automation(project, actor.id, now)
    _touch(project, now)
    return milestone


def add_task(project: Project, milestone: Milestone, actor: User, name: str,
             description: Optional[str] = None, assignee_id: Optional[int] = None,
             deadline: Optional[date] = None, priority=None, requires_attachment: Optional[bool] = None,
             now: Optional[datetime] = None) -> Task:
    now = now or datetime.utcnow()
    ensure_admin(actor)
    name = require_text(name, "Task name is required")

    task = guidance.build_task(
        name, milestone.stage, actor.id, now,
        created_message=f"Task {name} created",
        description=description,
        requires_attachment=requires_attachment,
        priority=parse_enum(TaskPriority, priority, "Invalid task priority") if priority else None,
        assignee_id=assignee_id,
        deadline=deadline,
    )
    milestone.tasks.append(task)
    append_timeline(milestone, "TASK_CREATED", f"Task {name} added", actor.id, now)
    append_timeline(project, "TASK_CREATED", f"Task {name} added in milestone {milestone.name}", actor.id, now)

    sync_project_automation(project, actor.id, now)
    _touch(project, now)
    return task


TASK_FIELDS = ("name", "description", "assignee_id", "deadline", "requires_attachment")


def update_task(project: Project, milestone: Milestone, task: Task, actor: User, changes: Dict[str, Any],
                now: Optional[datetime] = None) -> Task:
    """
    Edit task details. The only status an editor may set is SKIPPED, and only
    an admin may do so; everything else is driven by complete/comment/attach.
    """
    now = now or datetime.utcnow()

    skip = False
    if changes.get("status") is not None:
        status = str(getattr(changes["status"], "value", changes["status"])).upper()
        if status != TaskStatus.SKIPPED.value:
            raise ValidationError("Task status is automated. Use complete action to mark completed.")
        if not is_admin(actor):
            raise ForbiddenError("Only admin can skip a task")
        skip = True
    ensure_admin(actor)

    priority = None
    if changes.get("priority") is not None:
        priority = parse_enum(TaskPriority, changes["priority"], "Invalid task priority")
    if "name" in changes:
        require_text(changes["name"], "Task name is required")

    for field in TASK_FIELDS:
        if field in changes:
            setattr(task, field, changes[field])
    if priority is not None:
        task.priority = priority

    if skip:
        task.status = TaskStatus.SKIPPED
        task.completed_at = now

    append_timeline(task, "TASK_UPDATED", "Task updated", actor.id, now)
    append_timeline(milestone, "TASK_UPDATED", f"Task {task.name} updated", actor.id, now)
    append_timeline(project, "TASK_UPDATED", f"{task.name} updated", actor.id, now)

    sync_project_automation(project, actor.id, now)
    _touch(project, now)
    return task


# ==================== CREATION ====================


def build_project(project_code: str, client_id: int, actor_id: Optional[int], lead_id: Optional[int] = None,
                  now: Optional[datetime] = None, created_message: str = "Project created",
                  **fields) -> Project:
    """New DOCUMENTATION-stage project with the default milestone plan and stats"""
    now = now or datetime.utcnow()
    project = Project(
        project_code=project_code,
        client_id=client_id,
        lead_id=lead_id,
        scheme_name=fields.pop("scheme_name", None) or "To Be Defined",
        project_value=fields.pop("project_value", None) or 0,
        expected_subsidy_amount=fields.pop("expected_subsidy_amount", None) or 0,
        start_date=fields.pop("start_date", None) or now.date(),
        current_stage=ProjectStage.DOCUMENTATION,
        stage_history=[],
        timeline=[],
        milestones=guidance.build_default_milestones(now, actor_id),
        created_by_id=actor_id,
        **fields,
    )
    append_history(project, "stage_history", None, ProjectStage.DOCUMENTATION, actor_id, now)
    append_timeline(project, "PROJECT_CREATED", created_message, actor_id, now)
    recompute_activity_stats(project)
    return project
