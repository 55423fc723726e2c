"""
Guidance library - default descriptions, attachment requirements and the
default milestone plan for new subsidy projects.
"""
import re
from datetime import date, datetime
from typing import List, Optional

from subsidy_crm.models.project import (
    Milestone, Task, ProjectStage, MilestoneStatus, TaskStatus, TaskPriority,
)
from subsidy_crm.utils.helpers import append_timeline

STAGE_GUIDANCE = {
    ProjectStage.DOCUMENTATION:
        "Collect and validate all mandatory client and financial documents before moving to filing.",
    ProjectStage.APPLICATION_FILED:
        "Prepare final application packet, submit to department, and capture acknowledgement proof.",
    ProjectStage.SCRUTINY:
        "Track department observations closely and prepare response items with clear ownership.",
    ProjectStage.CLARIFICATIONS:
        "Submit clarification responses with supporting documents within committed timelines.",
    ProjectStage.APPROVED:
        "Collect official approval artifacts and ensure all sanction conditions are met.",
    ProjectStage.DISBURSED:
        "Track disbursement release, validate credited amount, and close compliance items.",
    ProjectStage.ON_HOLD:
        "Pause execution with clear blocker note and owner; resume only after blocker is resolved.",
    ProjectStage.COMPLETED:
        "Project delivery cycle is complete and all required records are archived.",
    ProjectStage.REJECTED:
        "Capture rejection reason, supporting communication, and close-out recommendation.",
}

TASK_LIBRARY = {
    "collect kyc documents":
        "Collect PAN, Aadhaar, incorporation and statutory KYC documents. Validate legibility and validity.",
    "collect financial statements":
        "Collect latest audited financials, GST returns and bank statements needed for scheme evaluation.",
    "prepare project report":
        "Prepare detailed project report including project scope, cost breakup, and expected subsidy mapping.",
    "fill application form":
        "Populate application form with verified business and project data. Cross-check mandatory fields.",
    "upload required documents":
        "Upload all mandatory annexures and proofs in the required format and naming convention.",
    "submit application":
        "Submit final application and capture submission acknowledgement/reference number.",
    "track scrutiny remarks":
        "Monitor scrutiny updates from department portal/email and log each observation with owner.",
    "submit clarifications":
        "Prepare clarification response package with supporting proofs and submit within timeline.",
    "collect approval letter":
        "Obtain sanctioned approval letter/order and verify sanction amount and conditions.",
    "track subsidy disbursement":
        "Track release milestones and validate subsidy credit with supporting payment references.",
    "prepare and submit application":
        "Compile, verify and submit complete application package with all required annexures.",
    "track status and submit clarifications":
        "Track status checkpoints and submit department clarification responses with documentary evidence.",
    "collect approval and track disbursement":
        "Capture approval documents and continuously track disbursement until receipt confirmation.",
}

MILESTONE_LIBRARY = {
    "documentation collection":
        "Collect baseline legal, financial and project documents required to initiate scheme processing.",
    "application filing":
        "Complete filing readiness and submit application with full document set and acknowledgement.",
    "department scrutiny":
        "Manage scrutiny observations, clarifications and response submissions during assessment.",
    "approval disbursement":
        "Track sanction approval and subsidy disbursement to financial closure.",
}

TASK_FALLBACK = "Execute task and record key evidence."
MILESTONE_FALLBACK = "Execute milestone plan and close all tasks."

ATTACHMENT_KEYWORDS = re.compile(
    r"(doc|document|kyc|statement|upload|application|report|approval|letter|clarification|proof|file)",
    re.IGNORECASE,
)

ATTACHMENT_STAGES = {ProjectStage.DOCUMENTATION, ProjectStage.APPLICATION_FILED}

DEFAULT_MILESTONE_PLAN = [
    ("Documentation Collection", ProjectStage.DOCUMENTATION,
     ["Collect KYC documents", "Collect financial statements", "Prepare project report"]),
    ("Application Filing", ProjectStage.APPLICATION_FILED,
     ["Fill application form", "Upload required documents", "Submit application"]),
    ("Department Scrutiny", ProjectStage.SCRUTINY,
     ["Track scrutiny remarks", "Submit clarifications"]),
    ("Approval & Disbursement", ProjectStage.APPROVED,
     ["Collect approval letter", "Track subsidy disbursement"]),
]


def normalize_label(value: Optional[str]) -> str:
    """Lower-case and collapse every run of non-alphanumerics into one space"""
    return re.sub(r"[^a-z0-9]+", " ", str(value or "").strip().lower())


def _stage(stage) -> Optional[ProjectStage]:
    if stage is None or stage == "":
        return None
    try:
        return ProjectStage(stage)
    except ValueError:
        return None


def default_task_description(task_name: str, stage=None) -> str:
    return (
        TASK_LIBRARY.get(normalize_label(task_name))
        or STAGE_GUIDANCE.get(_stage(stage))
        or TASK_FALLBACK
    )


def default_milestone_description(milestone_name: str, stage=None) -> str:
    return (
        MILESTONE_LIBRARY.get(normalize_label(milestone_name))
        or STAGE_GUIDANCE.get(_stage(stage))
        or MILESTONE_FALLBACK
    )


def task_needs_attachment(task_name: str, stage=None) -> bool:
    """Documentation/filing stages and document-like task names require a file"""
    if _stage(stage) in ATTACHMENT_STAGES:
        return True
    return bool(ATTACHMENT_KEYWORDS.search(str(task_name or "")))


def task_requires_attachment(task: Task, stage=None) -> bool:
    """Explicit flag or inferred from name and stage"""
    return bool(task.requires_attachment) or task_needs_attachment(task.name, stage)


def apply_guidance_defaults(milestones: List[Milestone]) -> bool:
    """
    Fill blank milestone/task descriptions and unset attachment flags.

    Existing values are never overwritten. Returns True if anything changed.
    """
    changed = False
    for milestone in milestones:
        if not (milestone.description or "").strip():
            milestone.description = default_milestone_description(milestone.name, milestone.stage)
            changed = True
        for task in milestone.tasks:
            if not (task.description or "").strip():
                task.description = default_task_description(task.name, milestone.stage)
                changed = True
            if task.requires_attachment is None:
                task.requires_attachment = task_needs_attachment(task.name, milestone.stage)
                changed = True
    return changed


def build_task(name: str, stage, actor_id: Optional[int] = None, now: Optional[datetime] = None,
               created_message: str = "Task created", **fields) -> Task:
    """New PENDING task with guidance defaults for missing fields"""
    now = now or datetime.utcnow()
    task = Task(
        name=name,
        description=fields.pop("description", None) or default_task_description(name, stage),
        requires_attachment=fields.pop("requires_attachment", None),
        priority=fields.pop("priority", None) or TaskPriority.MEDIUM,
        status=TaskStatus.PENDING,
        timeline=[],
        comments=[],
        attachments=[],
        **fields,
    )
    if task.requires_attachment is None:
        task.requires_attachment = task_needs_attachment(name, stage)
    append_timeline(task, "TASK_CREATED", created_message, actor_id, now)
    return task


def build_milestone(name: str, stage, actor_id: Optional[int] = None, now: Optional[datetime] = None,
                    created_message: str = "Milestone created", **fields) -> Milestone:
    """New PENDING milestone with no tasks"""
    now = now or datetime.utcnow()
    stage = _stage(stage) or ProjectStage.DOCUMENTATION
    milestone = Milestone(
        name=name,
        stage=stage,
        description=fields.pop("description", None) or default_milestone_description(name, stage),
        status=MilestoneStatus.PENDING,
        timeline=[],
        tasks=[],
        **fields,
    )
    append_timeline(milestone, "MILESTONE_CREATED", created_message, actor_id, now)
    return milestone


def build_default_milestones(now: Optional[datetime] = None, actor_id: Optional[int] = None) -> List[Milestone]:
    """The standard four-milestone subsidy plan; the first milestone starts today"""
    now = now or datetime.utcnow()
    milestones = []
    for index, (name, stage, task_names) in enumerate(DEFAULT_MILESTONE_PLAN):
        milestone = build_milestone(name, stage, actor_id, now, position=index)
        if index == 0:
            milestone.start_date = now.date() if isinstance(now, datetime) else date.today()
        for task_name in task_names:
            milestone.tasks.append(build_task(task_name, stage, actor_id, now))
        milestones.append(milestone)
    return milestones
