import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base
from .utils.clock import utcnow


def generate_id():
    """Generate a unique string primary key"""
    return str(uuid.uuid4())


# Developer levels, lowest to highest
FRESHER = "FRESHER"
MID = "MID"
EXPERT = "EXPERT"
LEVELS = (FRESHER, MID, EXPERT)
LEVEL_PRIORITY = {FRESHER: 1, MID: 2, EXPERT: 3}

# Project statuses
PROJECT_DRAFT = "draft"
PROJECT_SUBMITTED = "submitted"
PROJECT_ASSIGNING = "assigning"
PROJECT_ACCEPTED = "accepted"
PROJECT_IN_PROGRESS = "in_progress"
PROJECT_COMPLETED = "completed"
PROJECT_CANCELED = "canceled"

# Batch statuses
BATCH_ACTIVE = "active"
BATCH_COMPLETED = "completed"
BATCH_EXPIRED = "expired"
BATCH_REPLACED = "replaced"

# Candidate response statuses
RESPONSE_PENDING = "pending"
RESPONSE_ACCEPTED = "accepted"
RESPONSE_REJECTED = "rejected"
RESPONSE_EXPIRED = "expired"
RESPONSE_INVALIDATED = "invalidated"

SOURCE_AUTO_ROTATION = "AUTO_ROTATION"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    developer_profile = relationship("DeveloperProfile", back_populates="user", uselist=False)


class Skill(Base):
    __tablename__ = "skills"

    id = Column(String(36), primary_key=True, default=generate_id)
    slug = Column(String(100), unique=True, nullable=False)
    name = Column(String(255), nullable=False)


class DeveloperProfile(Base):
    __tablename__ = "developer_profiles"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    level = Column(String(20), nullable=False, index=True)  # FRESHER, MID, EXPERT
    # pending, approved, rejected
    admin_approval_status = Column(String(20), default="pending", nullable=False, index=True)
    # available, checking, not_available
    availability_status = Column(String(20), default="available", nullable=False)
    # Outreach goes through WhatsApp; unverified numbers are never offered work
    whatsapp_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="developer_profile")
    skills = relationship("DeveloperSkill", back_populates="developer", cascade="all, delete-orphan")
    assignment_candidates = relationship("AssignmentCandidate", back_populates="developer")


class DeveloperSkill(Base):
    __tablename__ = "developer_skills"

    developer_id = Column(String(36), ForeignKey("developer_profiles.id"), primary_key=True)
    skill_id = Column(String(36), ForeignKey("skills.id"), primary_key=True)

    developer = relationship("DeveloperProfile", back_populates="skills")
    skill = relationship("Skill")


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=generate_id)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    client_user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    skills_required = Column(JSON, default=list, nullable=False)  # list of skill ids

    # Status workflow: draft → submitted → assigning → accepted → in_progress → completed
    # canceled can be reached from any non-terminal status
    status = Column(String(20), default=PROJECT_DRAFT, nullable=False, index=True)
    current_batch_id = Column(
        String(36),
        ForeignKey("assignment_batches.id", use_alter=True, name="fk_projects_current_batch"),
        nullable=True,
    )
    # Flips false → true exactly once, on first acceptance
    contact_reveal_enabled = Column(Boolean, default=False, nullable=False)
    contact_revealed_developer_id = Column(
        String(36), ForeignKey("developer_profiles.id"), nullable=True
    )

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    client = relationship("User", foreign_keys=[client_user_id])
    current_batch = relationship("AssignmentBatch", foreign_keys=[current_batch_id], post_update=True)
    batches = relationship(
        "AssignmentBatch",
        back_populates="project",
        foreign_keys="AssignmentBatch.project_id",
        order_by="AssignmentBatch.batch_number",
    )


class AssignmentBatch(Base):
    __tablename__ = "assignment_batches"
    __table_args__ = (UniqueConstraint("project_id", "batch_number", name="uq_batch_project_number"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False, index=True)
    batch_number = Column(Integer, nullable=False)  # 1, 2, 3... per project

    # active → completed (first acceptance) | replaced (refresh) | expired (all candidates timed out)
    status = Column(String(20), default=BATCH_ACTIVE, nullable=False, index=True)
    status_reason = Column(String(100), nullable=True)
    selection = Column(JSON, nullable=False)  # {"fresherCount": 5, "midCount": 5, "expertCount": 3}
    created_at = Column(DateTime, default=utcnow, nullable=False)

    project = relationship("Project", back_populates="batches", foreign_keys=[project_id])
    candidates = relationship(
        "AssignmentCandidate", back_populates="batch", order_by="AssignmentCandidate.created_at"
    )


class AssignmentCandidate(Base):
    """One developer's invitation within a batch"""

    __tablename__ = "assignment_candidates"

    id = Column(String(36), primary_key=True, default=generate_id)
    batch_id = Column(String(36), ForeignKey("assignment_batches.id"), nullable=False, index=True)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False, index=True)
    developer_id = Column(String(36), ForeignKey("developer_profiles.id"), nullable=False, index=True)
    level = Column(String(20), nullable=False)
    skill_ids = Column(JSON, default=list, nullable=False)  # required skills this developer matched

    assigned_at = Column(DateTime, nullable=False)
    acceptance_deadline = Column(DateTime, nullable=False, index=True)
    responded_at = Column(DateTime, nullable=True)
    invalidated_at = Column(DateTime, nullable=True)

    # pending → accepted | rejected | expired | invalidated (one-way)
    response_status = Column(String(20), default=RESPONSE_PENDING, nullable=False, index=True)
    is_first_accepted = Column(Boolean, default=False, nullable=False)
    usual_response_time_ms_snapshot = Column(Integer, nullable=True)
    status_text_for_client = Column(String(255), nullable=True)
    source = Column(String(30), default=SOURCE_AUTO_ROTATION, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    batch = relationship("AssignmentBatch", back_populates="candidates")
    project = relationship("Project")
    developer = relationship("DeveloperProfile", back_populates="assignment_candidates")


class RotationCursor(Base):
    """Last developer offered per (skill, level), used for round-robin fairness"""

    __tablename__ = "rotation_cursors"

    skill_id = Column(String(36), ForeignKey("skills.id"), primary_key=True)
    level = Column(String(20), primary_key=True)
    last_developer_id = Column(String(36), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CronRun(Base):
    __tablename__ = "cron_runs"

    id = Column(String(36), primary_key=True, default=generate_id)
    job = Column(String(100), nullable=False, index=True)
    status = Column(String(20), default="started", nullable=False)  # started, succeeded, failed
    success = Column(Boolean, nullable=True)
    details = Column(JSON, nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)
