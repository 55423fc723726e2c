"""
Backfill guidance defaults on existing projects.

Fills blank milestone/task descriptions and unset attachment flags, repairs
milestone stages that are missing or no longer valid, and recomputes each
project's activity stats. Statuses and stages are left as they are. Safe to
run repeatedly.

Usage:
    python -m scripts.backfill_project_guidance
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select, text

from subsidy_crm.database import AsyncSessionLocal, engine, init_models
from subsidy_crm.models.project import Project, ProjectStage
from subsidy_crm.services.guidance import apply_guidance_defaults
from subsidy_crm.services.project_automation import recompute_activity_stats
from subsidy_crm.utils.logger import get_logger

logger = get_logger(__name__)

VALID_STAGES = {stage.value for stage in ProjectStage}

STAGE_KEYWORDS = [
    ("document", ProjectStage.DOCUMENTATION),
    ("application", ProjectStage.APPLICATION_FILED),
    ("scrutiny", ProjectStage.SCRUTINY),
    ("clarification", ProjectStage.CLARIFICATIONS),
    ("approval", ProjectStage.APPROVED),
    ("disbur", ProjectStage.DISBURSED),
]


def infer_stage(milestone_name, fallback) -> ProjectStage:
    """Guess a milestone's stage from its name, else use the project's stage"""
    name = (milestone_name or "").lower()
    for keyword, stage in STAGE_KEYWORDS:
        if keyword in name:
            return stage
    if fallback in VALID_STAGES:
        return ProjectStage(fallback)
    return ProjectStage.DOCUMENTATION


async def repair_milestone_stages(session) -> int:
    """Raw pass so rows with unknown stage values never hit the enum loader"""
    result = await session.execute(text(
        "SELECT m.id, m.name, m.stage, p.current_stage "
        "FROM project_milestones m JOIN projects p ON p.id = m.project_id"
    ))
    repaired = 0
    for milestone_id, name, stage, project_stage in result.all():
        if stage in VALID_STAGES:
            continue
        await session.execute(
            text("UPDATE project_milestones SET stage = :stage WHERE id = :id"),
            {"stage": infer_stage(name, project_stage).value, "id": milestone_id},
        )
        repaired += 1
    return repaired


def count_missing(project: Project):
    milestones = 0
    task_fields = 0
    for milestone in project.milestones:
        if not (milestone.description or "").strip():
            milestones += 1
        for task in milestone.tasks:
            if not (task.description or "").strip():
                task_fields += 1
            if task.requires_attachment is None:
                task_fields += 1
    return milestones, task_fields


async def backfill_projects(session):
    """Run the backfill on an open session; the caller commits"""
    projects_updated = 0
    milestones_updated = 0
    task_fields_updated = 0

    milestones_updated += await repair_milestone_stages(session)
    if milestones_updated:
        logger.info(f"Repaired stage on {milestones_updated} milestones")
    await session.flush()

    result = await session.execute(
        select(Project).order_by(Project.id).execution_options(populate_existing=True)
    )
    for project in result.unique().scalars().all():
        milestones, task_fields = count_missing(project)
        stats_before = dict(project.activity_stats or {})

        apply_guidance_defaults(project.milestones)
        recompute_activity_stats(project)

        if milestones or task_fields or project.activity_stats != stats_before:
            projects_updated += 1
            logger.info(f"Backfilled {project.project_code}")
        milestones_updated += milestones
        task_fields_updated += task_fields

    return projects_updated, milestones_updated, task_fields_updated


async def backfill():
    async with AsyncSessionLocal() as session:
        counts = await backfill_projects(session)
        await session.commit()
    return counts


async def main():
    try:
        await init_models()
        projects, milestones, task_fields = await backfill()
    except Exception as e:
        print(f"Backfill failed: {e}")
        sys.exit(1)
    finally:
        await engine.dispose()

    print(
        f"Backfill completed. Projects updated: {projects}, "
        f"milestones updated: {milestones}, task fields updated: {task_fields}"
    )


if __name__ == "__main__":
    asyncio.run(main())
