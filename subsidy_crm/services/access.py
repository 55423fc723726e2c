"""
Access control - roles, per-module allowlists and the task execution gate
"""
from subsidy_crm.exceptions import ForbiddenError
from subsidy_crm.models.user import User, UserRole, AppModule, normalize_module_access
from subsidy_crm.models.project import Project, Task


def is_admin(user: User) -> bool:
    return user is not None and user.role == UserRole.ADMIN


def ensure_admin(user: User) -> None:
    if not is_admin(user):
        raise ForbiddenError("You do not have access to this resource")


def has_module_access(user: User, module: AppModule) -> bool:
    """Admins bypass the allowlist; DASHBOARD is always granted"""
    if is_admin(user):
        return True
    return module.value in normalize_module_access(user.module_access)


def ensure_module_access(user: User, module: AppModule) -> None:
    if not has_module_access(user, module):
        raise ForbiddenError(f"You do not have access to the {module.value.lower()} module")


def ensure_task_execution_access(task: Task, user: User) -> None:
    """Non-admins may only act on tasks assigned to themselves"""
    if is_admin(user):
        return
    if task.assignee_id is None:
        raise ForbiddenError("Task is unassigned. Contact admin for assignment.")
    if task.assignee_id != user.id:
        raise ForbiddenError("You can only update tasks assigned to you")


def is_project_member(project: Project, user: User) -> bool:
    """True if the user is the assignee of at least one task in the project"""
    return any(
        task.assignee_id == user.id
        for milestone in project.milestones
        for task in milestone.tasks
    )


def ensure_project_access(project: Project, user: User) -> None:
    if is_admin(user):
        return
    if not is_project_member(project, user):
        raise ForbiddenError("You do not have access to this project")
