"""
Project models - subsidy applications moving through the regulatory lifecycle.

A project owns its milestones, each milestone owns its tasks, and each task
owns its comments and attachments. The whole graph is loaded and saved as one
aggregate; statuses of milestones and the current stage of the project are
derived by the automation engine.
"""
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, Date, DateTime, ForeignKey, JSON,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum
from subsidy_crm.database import Base, versioned_mapper_args


class ProjectStage(str, Enum):
    DOCUMENTATION = "DOCUMENTATION"
    APPLICATION_FILED = "APPLICATION_FILED"
    SCRUTINY = "SCRUTINY"
    CLARIFICATIONS = "CLARIFICATIONS"
    APPROVED = "APPROVED"
    DISBURSED = "DISBURSED"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


# Forward order of the working stages
STAGE_FLOW = [
    ProjectStage.DOCUMENTATION,
    ProjectStage.APPLICATION_FILED,
    ProjectStage.SCRUTINY,
    ProjectStage.CLARIFICATIONS,
    ProjectStage.APPROVED,
    ProjectStage.DISBURSED,
]

# Automation never touches a project parked in one of these
AUTO_LOCKED_STAGES = {ProjectStage.ON_HOLD, ProjectStage.REJECTED, ProjectStage.COMPLETED}


class MilestoneStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    SKIPPED = "SKIPPED"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


class TaskPriority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    project_code = Column(String, unique=True, index=True, nullable=False)  # PRJ-0001
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=True)
    category_id = Column(Integer, ForeignKey("scheme_categories.id"), nullable=True)
    scheme_id = Column(Integer, ForeignKey("schemes.id"), nullable=True)

    scheme_name = Column(String, nullable=False, default="To Be Defined")
    department = Column(String, nullable=True)
    application_no = Column(String, nullable=True)
    project_value = Column(Float, nullable=False, default=0)
    expected_subsidy_amount = Column(Float, nullable=False, default=0)
    start_date = Column(Date, nullable=True)
    target_completion_date = Column(Date, nullable=True)

    current_stage = Column(
        SQLEnum(ProjectStage, native_enum=False), nullable=False, default=ProjectStage.DOCUMENTATION
    )
    stage_history = Column(JSON, nullable=False, default=list)  # [{from, to, at, changed_by}]
    activity_stats = Column(JSON, nullable=True)
    timeline = Column(JSON, nullable=False, default=list)

    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = versioned_mapper_args(version)

    # Relationships
    client = relationship("Client", lazy="joined")
    milestones = relationship(
        "Milestone", back_populates="project", cascade="all, delete-orphan",
        order_by="Milestone.id", lazy="selectin",
    )


class Milestone(Base):
    __tablename__ = "project_milestones"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    stage = Column(
        SQLEnum(ProjectStage, native_enum=False), nullable=False, default=ProjectStage.DOCUMENTATION
    )
    status = Column(
        SQLEnum(MilestoneStatus, native_enum=False), nullable=False, default=MilestoneStatus.PENDING
    )
    start_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    position = Column(Integer, nullable=False, default=0)
    timeline = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    project = relationship("Project", back_populates="milestones")
    tasks = relationship(
        "Task", back_populates="milestone", cascade="all, delete-orphan",
        order_by="Task.id", lazy="selectin",
    )


class Task(Base):
    __tablename__ = "project_tasks"

    id = Column(Integer, primary_key=True, index=True)
    milestone_id = Column(Integer, ForeignKey("project_milestones.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    deadline = Column(Date, nullable=True)
    priority = Column(SQLEnum(TaskPriority, native_enum=False), nullable=False, default=TaskPriority.MEDIUM)
    requires_attachment = Column(Boolean, nullable=True)  # filled from guidance when unset
    status = Column(SQLEnum(TaskStatus, native_enum=False), nullable=False, default=TaskStatus.PENDING)
    completed_at = Column(DateTime, nullable=True)
    timeline = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    milestone = relationship("Milestone", back_populates="tasks")
    comments = relationship(
        "TaskComment", back_populates="task", cascade="all, delete-orphan",
        order_by="TaskComment.id", lazy="selectin",
    )
    attachments = relationship(
        "TaskAttachment", back_populates="task", cascade="all, delete-orphan",
        order_by="TaskAttachment.id", lazy="selectin",
    )


class TaskComment(Base):
    __tablename__ = "task_comments"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("project_tasks.id"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    task = relationship("Task", back_populates="comments")


class TaskAttachment(Base):
    __tablename__ = "task_attachments"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("project_tasks.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    file_url = Column(String, nullable=False)  # reference relative to UPLOAD_DIR
    mime_type = Column(String, nullable=True)
    size = Column(Integer, nullable=True)
    uploaded_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    task = relationship("Task", back_populates="attachments")
