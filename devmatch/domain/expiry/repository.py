"""Expiry repository - Database operations for the expiry sweep"""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, exists, text
from sqlalchemy.orm import Session

from ...models import (
    BATCH_ACTIVE,
    PROJECT_ASSIGNING,
    RESPONSE_EXPIRED,
    RESPONSE_INVALIDATED,
    RESPONSE_PENDING,
    SOURCE_AUTO_ROTATION,
    AssignmentBatch,
    AssignmentCandidate,
    CronRun,
    Project,
)

STATUS_TEXT_EXPIRED = "no response in time"


class ExpiryRepository:
    """Repository for expiry and cleanup database operations"""

    @staticmethod
    def expire_overdue_candidates(db: Session, now: datetime) -> int:
        """Move pending auto-rotation candidates past their deadline to expired"""
        return (
            db.query(AssignmentCandidate)
            .filter(
                AssignmentCandidate.response_status == RESPONSE_PENDING,
                AssignmentCandidate.acceptance_deadline < now,
                AssignmentCandidate.source == SOURCE_AUTO_ROTATION,
            )
            .update(
                {
                    AssignmentCandidate.response_status: RESPONSE_EXPIRED,
                    AssignmentCandidate.responded_at: now,
                    AssignmentCandidate.status_text_for_client: STATUS_TEXT_EXPIRED,
                },
                synchronize_session=False,
            )
        )

    @staticmethod
    def find_exhausted_batches(db: Session, limit: int) -> list[tuple[str, str]]:
        """
        Active batches of assigning projects where every candidate expired.
        Returns (batch_id, project_id) pairs, oldest batch first.
        """
        has_candidates = exists().where(AssignmentCandidate.batch_id == AssignmentBatch.id)
        has_live_candidate = exists().where(
            and_(
                AssignmentCandidate.batch_id == AssignmentBatch.id,
                AssignmentCandidate.response_status != RESPONSE_EXPIRED,
            )
        )

        rows = (
            db.query(AssignmentBatch.id, AssignmentBatch.project_id)
            .join(Project, Project.id == AssignmentBatch.project_id)
            .filter(
                AssignmentBatch.status == BATCH_ACTIVE,
                Project.status == PROJECT_ASSIGNING,
                has_candidates,
                ~has_live_candidate,
            )
            .order_by(AssignmentBatch.created_at.asc())
            .limit(limit)
            .all()
        )
        return [(row.id, row.project_id) for row in rows]

    @staticmethod
    def delete_old_candidates(db: Session, cutoff: datetime) -> int:
        """Delete expired/invalidated candidates assigned before the cutoff"""
        return (
            db.query(AssignmentCandidate)
            .filter(
                AssignmentCandidate.response_status.in_([RESPONSE_EXPIRED, RESPONSE_INVALIDATED]),
                AssignmentCandidate.assigned_at < cutoff,
            )
            .delete(synchronize_session=False)
        )

    @staticmethod
    def bound_transaction(db: Session, timeout_ms: int) -> bool:
        """
        Cap statement run time and lock waits for the rest of the current
        transaction. PostgreSQL only; returns False on other backends.
        """
        if db.get_bind().dialect.name != "postgresql":
            return False
        timeout_ms = max(int(timeout_ms), 1)
        db.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
        db.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
        return True

    # Cron audit

    @staticmethod
    def start_cron_run(db: Session, job: str, started_at: datetime, details: Optional[dict] = None) -> CronRun:
        run = CronRun(job=job, status="started", started_at=started_at, details=details)
        db.add(run)
        db.commit()
        db.refresh(run)
        return run

    @staticmethod
    def finish_cron_run(
        db: Session, run: CronRun, success: bool, finished_at: datetime, details: Optional[dict] = None
    ) -> CronRun:
        run.status = "succeeded" if success else "failed"
        run.success = success
        run.finished_at = finished_at
        run.details = {**(run.details or {}), **(details or {})}
        db.commit()
        return run
