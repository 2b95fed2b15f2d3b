"""Rotation repository - Database operations for batches, candidates and cursors"""

from collections import defaultdict
from datetime import datetime
from typing import Optional

from sqlalchemy import exists, func
from sqlalchemy.orm import Session, joinedload

from ...config import RECENT_RESPONSE_WINDOW
from ...models import (
    BATCH_ACTIVE,
    BATCH_COMPLETED,
    PROJECT_ACCEPTED,
    PROJECT_ASSIGNING,
    PROJECT_SUBMITTED,
    RESPONSE_ACCEPTED,
    RESPONSE_INVALIDATED,
    RESPONSE_PENDING,
    RESPONSE_REJECTED,
    SOURCE_AUTO_ROTATION,
    AssignmentBatch,
    AssignmentCandidate,
    DeveloperProfile,
    DeveloperSkill,
    Project,
    RotationCursor,
)
from .selection import DeveloperCandidate, PoolDeveloper, ResponseRecord

ELIGIBLE_AVAILABILITY = ("available", "checking")
STATUS_TEXT_CHECKING = "developer is checking"
STATUS_TEXT_ACCEPTED = "developer accepted"
STATUS_TEXT_REJECTED = "developer declined"
STATUS_TEXT_INVALIDATED = "replaced by a new batch"


class RotationRepository:
    """Repository for rotation database operations"""

    # Projects

    @staticmethod
    def get_project(db: Session, project_id: str) -> Optional[Project]:
        """Get a project with its client"""
        return (
            db.query(Project)
            .options(joinedload(Project.client))
            .filter(Project.id == project_id)
            .first()
        )

    @staticmethod
    def count_batches(db: Session, project_id: str) -> int:
        return (
            db.query(func.count(AssignmentBatch.id))
            .filter(AssignmentBatch.project_id == project_id)
            .scalar()
        )

    @staticmethod
    def set_current_batch(db: Session, project: Project, batch_id: str) -> None:
        project.current_batch_id = batch_id
        project.status = PROJECT_ASSIGNING
        db.flush()

    @staticmethod
    def claim_project(db: Session, project_id: str, batch_id: str, developer_id: str) -> int:
        """
        Reveal contact to the first accepting developer.
        Only matches while the batch is still current and nobody has won yet.
        Returns the number of rows updated (0 or 1).
        """
        return (
            db.query(Project)
            .filter(
                Project.id == project_id,
                Project.current_batch_id == batch_id,
                Project.contact_reveal_enabled.is_(False),
                Project.status.in_([PROJECT_ASSIGNING, PROJECT_SUBMITTED]),
            )
            .update(
                {
                    Project.status: PROJECT_ACCEPTED,
                    Project.contact_reveal_enabled: True,
                    Project.contact_revealed_developer_id: developer_id,
                },
                synchronize_session=False,
            )
        )

    # Candidate pool

    @staticmethod
    def find_eligible_developers(
        db: Session,
        skill_id: str,
        level: str,
        client_user_id: str,
        project_id: str,
        limit: int,
    ) -> list[PoolDeveloper]:
        """
        Developers who may be offered this project for one (skill, level) pair,
        ordered by id. Each comes with their recent accept/reject history.
        """
        has_skill = exists().where(
            DeveloperSkill.developer_id == DeveloperProfile.id,
            DeveloperSkill.skill_id == skill_id,
        )
        # Pending in any active batch, on any project
        pending_elsewhere = exists().where(
            AssignmentCandidate.developer_id == DeveloperProfile.id,
            AssignmentCandidate.response_status == RESPONSE_PENDING,
            AssignmentCandidate.batch_id == AssignmentBatch.id,
            AssignmentBatch.status == BATCH_ACTIVE,
        )
        offered_here = exists().where(
            AssignmentCandidate.developer_id == DeveloperProfile.id,
            AssignmentCandidate.project_id == project_id,
        )

        rows = (
            db.query(DeveloperProfile.id, DeveloperProfile.level)
            .filter(
                DeveloperProfile.admin_approval_status == "approved",
                DeveloperProfile.availability_status.in_(ELIGIBLE_AVAILABILITY),
                DeveloperProfile.level == level,
                DeveloperProfile.user_id != client_user_id,
                DeveloperProfile.whatsapp_verified.is_(True),
                has_skill,
                ~pending_elsewhere,
                ~offered_here,
            )
            .order_by(DeveloperProfile.id.asc())
            .limit(limit)
            .all()
        )

        history = RotationRepository.get_recent_responses(db, [row.id for row in rows])
        return [
            PoolDeveloper(developer_id=row.id, level=row.level, recent_responses=history.get(row.id, []))
            for row in rows
        ]

    @staticmethod
    def get_recent_responses(
        db: Session, developer_ids: list[str], window: int = RECENT_RESPONSE_WINDOW
    ) -> dict[str, list[ResponseRecord]]:
        """Most recent accepted/rejected responses per developer, newest first"""
        if not developer_ids:
            return {}

        rows = (
            db.query(
                AssignmentCandidate.developer_id,
                AssignmentCandidate.response_status,
                AssignmentCandidate.assigned_at,
                AssignmentCandidate.responded_at,
            )
            .filter(
                AssignmentCandidate.developer_id.in_(developer_ids),
                AssignmentCandidate.response_status.in_([RESPONSE_ACCEPTED, RESPONSE_REJECTED]),
            )
            .order_by(AssignmentCandidate.developer_id, AssignmentCandidate.responded_at.desc())
            .all()
        )

        history: dict[str, list[ResponseRecord]] = defaultdict(list)
        for row in rows:
            if len(history[row.developer_id]) < window:
                history[row.developer_id].append(
                    ResponseRecord(row.response_status, row.assigned_at, row.responded_at)
                )
        return dict(history)

    # Rotation cursors

    @staticmethod
    def get_rotation_cursor(db: Session, skill_id: str, level: str) -> Optional[str]:
        cursor = db.get(RotationCursor, (skill_id, level))
        return cursor.last_developer_id if cursor else None

    @staticmethod
    def upsert_rotation_cursor(db: Session, skill_id: str, level: str, developer_id: str) -> None:
        cursor = db.get(RotationCursor, (skill_id, level))
        if cursor is None:
            db.add(RotationCursor(skill_id=skill_id, level=level, last_developer_id=developer_id))
        else:
            cursor.last_developer_id = developer_id
        db.flush()

    # Batches

    @staticmethod
    def get_next_batch_number(db: Session, project_id: str) -> int:
        last = (
            db.query(func.max(AssignmentBatch.batch_number))
            .filter(AssignmentBatch.project_id == project_id)
            .scalar()
        )
        return (last or 0) + 1

    @staticmethod
    def create_batch(
        db: Session, project_id: str, batch_number: int, selection: dict, created_at: datetime
    ) -> AssignmentBatch:
        batch = AssignmentBatch(
            project_id=project_id,
            batch_number=batch_number,
            status=BATCH_ACTIVE,
            selection=selection,
            created_at=created_at,
        )
        db.add(batch)
        db.flush()
        return batch

    @staticmethod
    def create_candidates(
        db: Session,
        batch: AssignmentBatch,
        candidates: list[DeveloperCandidate],
        assigned_at: datetime,
        acceptance_deadline: datetime,
    ) -> list[AssignmentCandidate]:
        rows = [
            AssignmentCandidate(
                batch_id=batch.id,
                project_id=batch.project_id,
                developer_id=candidate.developer_id,
                level=candidate.level,
                skill_ids=list(candidate.skill_ids),
                assigned_at=assigned_at,
                acceptance_deadline=acceptance_deadline,
                response_status=RESPONSE_PENDING,
                is_first_accepted=False,
                usual_response_time_ms_snapshot=candidate.usual_response_time_ms,
                status_text_for_client=STATUS_TEXT_CHECKING,
                source=SOURCE_AUTO_ROTATION,
                created_at=assigned_at,
            )
            for candidate in candidates
        ]
        db.add_all(rows)
        db.flush()
        return rows

    @staticmethod
    def retire_batch(db: Session, batch_id: str, status: str, reason: str) -> int:
        """Move an active batch to a terminal status. Returns rows updated."""
        return (
            db.query(AssignmentBatch)
            .filter(AssignmentBatch.id == batch_id, AssignmentBatch.status == BATCH_ACTIVE)
            .update(
                {AssignmentBatch.status: status, AssignmentBatch.status_reason: reason},
                synchronize_session=False,
            )
        )

    @staticmethod
    def invalidate_pending_candidates(db: Session, batch_id: str, now: datetime) -> int:
        return (
            db.query(AssignmentCandidate)
            .filter(
                AssignmentCandidate.batch_id == batch_id,
                AssignmentCandidate.response_status == RESPONSE_PENDING,
            )
            .update(
                {
                    AssignmentCandidate.response_status: RESPONSE_INVALIDATED,
                    AssignmentCandidate.invalidated_at: now,
                    AssignmentCandidate.status_text_for_client: STATUS_TEXT_INVALIDATED,
                },
                synchronize_session=False,
            )
        )

    @staticmethod
    def complete_batch(db: Session, batch_id: str) -> None:
        db.query(AssignmentBatch).filter(AssignmentBatch.id == batch_id).update(
            {AssignmentBatch.status: BATCH_COMPLETED}, synchronize_session=False
        )

    @staticmethod
    def get_batch_with_candidates(db: Session, batch_id: str) -> Optional[AssignmentBatch]:
        return (
            db.query(AssignmentBatch)
            .options(joinedload(AssignmentBatch.candidates))
            .filter(AssignmentBatch.id == batch_id)
            .first()
        )

    # Candidates

    @staticmethod
    def get_candidate(db: Session, candidate_id: str) -> Optional[AssignmentCandidate]:
        """Get a candidate with its batch, project, client and developer"""
        return (
            db.query(AssignmentCandidate)
            .options(
                joinedload(AssignmentCandidate.batch)
                .joinedload(AssignmentBatch.project)
                .joinedload(Project.client),
                joinedload(AssignmentCandidate.developer),
            )
            .filter(AssignmentCandidate.id == candidate_id)
            .first()
        )

    @staticmethod
    def claim_candidate(db: Session, candidate_id: str, now: datetime) -> int:
        """Mark a still-pending, in-deadline candidate as the first acceptance"""
        return (
            db.query(AssignmentCandidate)
            .filter(
                AssignmentCandidate.id == candidate_id,
                AssignmentCandidate.response_status == RESPONSE_PENDING,
                AssignmentCandidate.is_first_accepted.is_(False),
                AssignmentCandidate.acceptance_deadline >= now,
            )
            .update(
                {
                    AssignmentCandidate.response_status: RESPONSE_ACCEPTED,
                    AssignmentCandidate.responded_at: now,
                    AssignmentCandidate.is_first_accepted: True,
                    AssignmentCandidate.status_text_for_client: STATUS_TEXT_ACCEPTED,
                },
                synchronize_session=False,
            )
        )

    @staticmethod
    def reject_candidate(db: Session, candidate_id: str, now: datetime) -> int:
        """Mark a pending candidate as declined. No deadline condition."""
        return (
            db.query(AssignmentCandidate)
            .filter(
                AssignmentCandidate.id == candidate_id,
                AssignmentCandidate.response_status == RESPONSE_PENDING,
            )
            .update(
                {
                    AssignmentCandidate.response_status: RESPONSE_REJECTED,
                    AssignmentCandidate.responded_at: now,
                    AssignmentCandidate.status_text_for_client: STATUS_TEXT_REJECTED,
                },
                synchronize_session=False,
            )
        )
