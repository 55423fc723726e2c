"""
Project automation engine tests - rollup, stage advance and the task gates.
Runs on transient model objects; no database needed.
"""
from datetime import datetime

import pytest

from subsidy_crm.exceptions import ForbiddenError, StateConflictError, ValidationError
from subsidy_crm.models.project import ProjectStage, MilestoneStatus, TaskStatus, TaskAttachment, STAGE_FLOW
from subsidy_crm.models.user import User, UserRole
from subsidy_crm.services import project_automation as automation
from subsidy_crm.services.guidance import build_milestone, build_task

NOW = datetime(2024, 3, 1, 10, 0, 0)


def make_admin():
    return User(id=1, name="Admin", email="a@x.com", role=UserRole.ADMIN, is_active=True)


def make_user(user_id=2):
    return User(id=user_id, name="User", email=f"u{user_id}@x.com", role=UserRole.USER, is_active=True)


def make_project():
    return automation.build_project("PRJ-0001", client_id=1, actor_id=1, now=NOW)


def attach(task):
    task.attachments.append(TaskAttachment(file_name="doc.pdf", file_url="x_doc.pdf", size=10))


def close_stage(project, stage):
    for milestone in project.milestones:
        if milestone.stage == stage:
            for task in milestone.tasks:
                task.status = TaskStatus.COMPLETED


# ===================== CREATION =====================


class TestCreation:

    def test_build_project_defaults(self):
        project = make_project()
        assert project.current_stage == ProjectStage.DOCUMENTATION
        assert project.scheme_name == "To Be Defined"
        assert [m.name for m in project.milestones] == [
            "Documentation Collection", "Application Filing", "Department Scrutiny", "Approval & Disbursement",
        ]
        assert project.milestones[0].start_date == NOW.date()
        assert project.activity_stats == {
            "milestone_count": 4, "task_count": 10, "completed_task_count": 0,
            "comment_count": 0, "attachment_count": 0,
        }
        assert project.stage_history[0]["to"] == "DOCUMENTATION"

    def test_default_tasks_carry_guidance(self):
        project = make_project()
        first = project.milestones[0].tasks[0]
        assert first.name == "Collect KYC documents"
        assert first.description.startswith("Collect PAN, Aadhaar")
        assert first.requires_attachment is True
        scrutiny_task = project.milestones[2].tasks[0]
        assert scrutiny_task.requires_attachment is False


# ===================== ROLLUP =====================


class TestRollup:

    def test_milestone_status_rollup(self):
        milestone = build_milestone("Review", ProjectStage.SCRUTINY, now=NOW)
        assert automation.recompute_milestone_status(milestone, NOW) is False
        assert milestone.status == MilestoneStatus.PENDING

        milestone.tasks.append(build_task("Track remarks", ProjectStage.SCRUTINY, now=NOW))
        milestone.tasks.append(build_task("Call officer", ProjectStage.SCRUTINY, now=NOW))
        milestone.tasks[0].status = TaskStatus.IN_PROGRESS
        automation.recompute_milestone_status(milestone, NOW)
        assert milestone.status == MilestoneStatus.IN_PROGRESS

        milestone.tasks[0].status = TaskStatus.COMPLETED
        milestone.tasks[1].status = TaskStatus.SKIPPED
        automation.recompute_milestone_status(milestone, NOW)
        assert milestone.status == MilestoneStatus.DONE
        assert milestone.completed_at == NOW

    def test_stage_advances_when_current_stage_closes(self):
        project = make_project()
        close_stage(project, ProjectStage.DOCUMENTATION)
        automation.sync_project_automation(project, 1, NOW)

        assert project.milestones[0].status == MilestoneStatus.DONE
        assert project.current_stage == ProjectStage.APPLICATION_FILED
        assert project.stage_history[-1]["from"] == "DOCUMENTATION"
        assert project.timeline[-1]["type"] == "STAGE_AUTO_ADVANCED"

    def test_stage_skips_stages_without_milestones(self):
        project = make_project()
        for stage in (ProjectStage.DOCUMENTATION, ProjectStage.APPLICATION_FILED):
            close_stage(project, stage)
            automation.sync_project_automation(project, 1, NOW)
        assert project.current_stage == ProjectStage.SCRUTINY

        close_stage(project, ProjectStage.SCRUTINY)
        automation.sync_project_automation(project, 1, NOW)
        # No CLARIFICATIONS milestone, so the next open stage is APPROVED
        assert project.current_stage == ProjectStage.APPROVED

    def test_project_completes_when_everything_closed(self):
        project = make_project()
        for stage in (ProjectStage.DOCUMENTATION, ProjectStage.APPLICATION_FILED,
                      ProjectStage.SCRUTINY, ProjectStage.APPROVED):
            close_stage(project, stage)
            automation.sync_project_automation(project, 1, NOW)
        assert project.current_stage == ProjectStage.COMPLETED
        assert project.timeline[-1]["type"] == "PROJECT_AUTO_COMPLETED"

    def test_stage_never_moves_backward(self):
        project = make_project()
        for stage in (ProjectStage.DOCUMENTATION, ProjectStage.APPLICATION_FILED):
            close_stage(project, stage)
            automation.sync_project_automation(project, 1, NOW)
        assert project.current_stage == ProjectStage.SCRUTINY

        # Reopening an earlier milestone leaves the stage where it is
        documentation = project.milestones[0]
        automation.add_task(project, documentation, make_admin(), "Extra affidavit", now=NOW)
        assert documentation.status != MilestoneStatus.DONE
        assert project.current_stage == ProjectStage.SCRUTINY

        automation.update_project(project, make_admin(), {"current_stage": "DOCUMENTATION"}, NOW)
        assert project.current_stage == ProjectStage.DOCUMENTATION
        manual = len(project.stage_history)

        close_stage(project, ProjectStage.DOCUMENTATION)
        automation.sync_project_automation(project, 1, NOW)
        assert project.current_stage == ProjectStage.SCRUTINY
        for entry in project.stage_history[manual:]:
            assert STAGE_FLOW.index(ProjectStage(entry["to"])) > STAGE_FLOW.index(ProjectStage(entry["from"]))

    def test_parked_project_is_not_advanced(self):
        project = make_project()
        project.current_stage = ProjectStage.ON_HOLD
        close_stage(project, ProjectStage.DOCUMENTATION)
        automation.sync_project_automation(project, 1, NOW)
        assert project.current_stage == ProjectStage.ON_HOLD

    def test_sync_is_idempotent(self):
        project = make_project()
        close_stage(project, ProjectStage.DOCUMENTATION)
        automation.sync_project_automation(project, 1, NOW)
        history = list(project.stage_history)
        timeline = list(project.timeline)
        stats = dict(project.activity_stats)

        automation.sync_project_automation(project, 1, NOW)
        assert project.stage_history == history
        assert project.timeline == timeline
        assert project.activity_stats == stats


# ===================== TASK GATES =====================


class TestTaskGates:

    def test_complete_requires_attachment(self):
        project = make_project()
        milestone = project.milestones[0]
        task = milestone.tasks[0]

        with pytest.raises(StateConflictError, match="Upload required documents"):
            automation.complete_task(project, milestone, task, make_admin(), NOW)
        assert task.status == TaskStatus.PENDING

        attach(task)
        automation.complete_task(project, milestone, task, make_admin(), NOW)
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at == NOW
        assert project.activity_stats["completed_task_count"] == 1

    def test_cleared_flag_keeps_document_requirement(self):
        project = make_project()
        milestone = project.milestones[0]
        task = milestone.tasks[0]
        task.requires_attachment = False

        with pytest.raises(StateConflictError, match="Upload required documents"):
            automation.complete_task(project, milestone, task, make_admin(), NOW)
        assert task.status == TaskStatus.PENDING
        assert not task.attachments

    def test_skipped_task_cannot_be_completed(self):
        project = make_project()
        milestone = project.milestones[2]
        task = milestone.tasks[0]
        task.status = TaskStatus.SKIPPED
        with pytest.raises(StateConflictError, match="Skipped task"):
            automation.complete_task(project, milestone, task, make_admin(), NOW)

    def test_only_assignee_may_execute_task(self):
        project = make_project()
        milestone = project.milestones[2]
        task = milestone.tasks[0]

        with pytest.raises(ForbiddenError, match="unassigned"):
            automation.add_task_comment(project, milestone, task, make_user(), "Hello", NOW)

        task.assignee_id = 3
        with pytest.raises(ForbiddenError, match="assigned to you"):
            automation.add_task_comment(project, milestone, task, make_user(2), "Hello", NOW)
        assert task.comments == []

        automation.add_task_comment(project, milestone, task, make_user(3), "Hello", NOW)
        assert len(task.comments) == 1

    def test_comment_starts_pending_task(self):
        project = make_project()
        milestone = project.milestones[2]
        task = milestone.tasks[0]
        automation.add_task_comment(project, milestone, task, make_admin(), "Following up", NOW)

        assert task.status == TaskStatus.IN_PROGRESS
        assert milestone.status == MilestoneStatus.IN_PROGRESS
        assert project.activity_stats["comment_count"] == 1
        assert task.timeline[-1]["type"] == "TASK_COMMENT"

    def test_attachment_starts_pending_task(self):
        project = make_project()
        milestone = project.milestones[0]
        task = milestone.tasks[0]
        automation.add_task_attachment(project, milestone, task, make_admin(), "kyc.pdf", "abc_kyc.pdf",
                                       "application/pdf", 2048, NOW)
        assert task.status == TaskStatus.IN_PROGRESS
        assert project.activity_stats["attachment_count"] == 1

    def test_comment_text_required(self):
        project = make_project()
        milestone = project.milestones[0]
        with pytest.raises(ValidationError, match="Comment text is required"):
            automation.add_task_comment(project, milestone, milestone.tasks[0], make_admin(), "  ", NOW)


# ===================== ADMIN EDITS =====================


class TestAdminEdits:

    def test_task_status_only_allows_skip(self):
        project = make_project()
        milestone = project.milestones[0]
        task = milestone.tasks[0]

        with pytest.raises(ValidationError, match="automated"):
            automation.update_task(project, milestone, task, make_admin(), {"status": "COMPLETED"}, NOW)
        with pytest.raises(ForbiddenError, match="Only admin can skip"):
            automation.update_task(project, milestone, task, make_user(), {"status": "SKIPPED"}, NOW)

        automation.update_task(project, milestone, task, make_admin(), {"status": "SKIPPED"}, NOW)
        assert task.status == TaskStatus.SKIPPED

    def test_milestone_status_cannot_be_set(self):
        project = make_project()
        with pytest.raises(ValidationError, match="Milestone status is automated"):
            automation.update_milestone(project, project.milestones[0], make_admin(), {"status": "DONE"}, NOW)

    def test_add_milestone_defaults_to_current_stage(self):
        project = make_project()
        milestone = automation.add_milestone(project, make_admin(), "Extra checks", now=NOW)
        assert milestone.stage == ProjectStage.DOCUMENTATION
        assert milestone.description
        assert project.activity_stats["milestone_count"] == 5

    def test_manual_stage_change_recorded(self):
        project = make_project()
        automation.update_project(project, make_admin(), {"current_stage": "ON_HOLD"}, NOW)
        assert project.current_stage == ProjectStage.ON_HOLD
        assert project.stage_history[-1] == {
            "from": "DOCUMENTATION", "to": "ON_HOLD", "at": NOW.isoformat(), "changed_by": 1,
        }

    def test_non_admin_cannot_edit_project(self):
        project = make_project()
        with pytest.raises(ForbiddenError):
            automation.update_project(project, make_user(), {"scheme_name": "PMEGP"}, NOW)
