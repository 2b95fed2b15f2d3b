"""
Expiry sweep - Expires overdue candidates and regenerates exhausted batches

Meant to run once a minute (arq cron or the /cron endpoint). Both phases are
safe to re-run: the expire phase only matches still-pending rows and the
refresh phase only matches batches that are still active.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from ...config import AUTO_REFRESH_BATCH_LIMIT, AUTO_REFRESH_TIMEOUT_SECONDS, CANDIDATE_RETENTION_DAYS
from ...correlation import get_correlation_id
from ...database import UnitOfWork
from ...exceptions import BatchSuperseded, NoEligibleCandidates
from ...models import BATCH_EXPIRED
from ...services.best_effort import run_best_effort
from ...utils.clock import Clock, utcnow
from ..rotation.repository import RotationRepository
from ..rotation.service import RotationService
from .repository import ExpiryRepository

logger = logging.getLogger(__name__)

REASON_ALL_EXPIRED = "all_candidates_expired"
REASON_NO_REPLACEMENT = "no_replacement_candidates"
REASON_SUPERSEDED = "batch_superseded"

SWEEP_JOB = "expire_candidates"
CLEANUP_JOB = "cleanup_old_candidates"


@dataclass
class SweepResult:
    expired_count: int
    refreshed_batch_count: int
    processed_at: datetime

    def to_dict(self) -> dict:
        return {
            "expiredCount": self.expired_count,
            "refreshedBatchCount": self.refreshed_batch_count,
            "processedAt": self.processed_at.isoformat(),
        }


@dataclass
class CleanupResult:
    deleted_count: int
    processed_at: datetime

    def to_dict(self) -> dict:
        return {"deletedCount": self.deleted_count, "processedAt": self.processed_at.isoformat()}


class ExpiryService:
    """Service layer for the periodic expiry sweep"""

    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        rotation: Optional[RotationService] = None,
        session_factory: Optional[sessionmaker] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.uow = UnitOfWork(db)
        self.repo = ExpiryRepository()
        self.clock = clock
        self.rotation = rotation or RotationService(db, clock=clock, session_factory=session_factory)
        self.monotonic = monotonic

    def expire_pending_candidates(self) -> int:
        """Phase 1: pending candidates past their deadline become expired"""
        with self.uow.transaction() as db:
            count = self.repo.expire_overdue_candidates(db, self.clock())

        if count:
            logger.info(f"⏰ Expired {count} overdue candidates")
        else:
            logger.debug("ℹ️ No overdue candidates")
        return count

    def refresh_exhausted_batches(
        self,
        limit: int = AUTO_REFRESH_BATCH_LIMIT,
        timeout_seconds: float = AUTO_REFRESH_TIMEOUT_SECONDS,
    ) -> int:
        """
        Phase 2: replace batches in which every candidate expired.

        At most `limit` batches per run. Each batch is refreshed in its own
        transaction; a failure is logged and the next batch is processed.
        Once `timeout_seconds` have elapsed no further batch is started and
        the partial count is returned. On PostgreSQL each refresh is also
        capped at the store by the budget still remaining when it starts.
        """
        started = self.monotonic()
        targets = self.repo.find_exhausted_batches(self.db, limit)
        # Release the read transaction before per-batch writes
        self.db.rollback()

        if not targets:
            return 0

        logger.info(f"🔄 Auto-refreshing {len(targets)} exhausted batches")
        refreshed = 0
        for batch_id, project_id in targets:
            remaining = timeout_seconds - (self.monotonic() - started)
            if remaining <= 0:
                logger.warning(
                    f"⚠️ Auto-refresh timed out after {timeout_seconds}s, "
                    f"{refreshed}/{len(targets)} batches refreshed"
                )
                break

            if run_best_effort(
                lambda: self._refresh_one(batch_id, project_id, remaining),
                attempts=1,
                description=f"auto-refresh of batch {batch_id}",
            ):
                refreshed += 1

        return refreshed

    def _refresh_one(self, batch_id: str, project_id: str, budget_seconds: float) -> None:
        # Lock waits count against the sweep budget
        self.repo.bound_transaction(self.rotation.db, int(budget_seconds * 1000))
        try:
            result = self.rotation.refresh_batch(
                project_id,
                retire_status=BATCH_EXPIRED,
                retire_reason=REASON_ALL_EXPIRED,
                expected_batch_id=batch_id,
            )
        except NoEligibleCandidates:
            # Retired without a replacement
            self._retire(batch_id, REASON_NO_REPLACEMENT)
            raise
        except BatchSuperseded:
            # The project already moved on to another batch
            self._retire(batch_id, REASON_SUPERSEDED)
            raise

        logger.info(f"✅ Batch {batch_id} replaced by batch #{result.batch_number} for project {project_id}")

    def _retire(self, batch_id: str, reason: str) -> None:
        with self.uow.transaction() as db:
            RotationRepository.retire_batch(db, batch_id, BATCH_EXPIRED, reason)
        logger.info(f"Batch {batch_id} expired: {reason}")

    def run(self) -> SweepResult:
        """Run both phases"""
        expired = self.expire_pending_candidates()
        refreshed = self.refresh_exhausted_batches()
        result = SweepResult(expired_count=expired, refreshed_batch_count=refreshed, processed_at=self.clock())
        logger.info(f"📊 Expiry sweep summary: {result.to_dict()}")
        return result

    def cleanup_old_candidates(self, older_than_days: int = CANDIDATE_RETENTION_DAYS) -> CleanupResult:
        """Delete expired and invalidated candidates older than the retention window"""
        now = self.clock()
        with self.uow.transaction() as db:
            deleted = self.repo.delete_old_candidates(db, now - timedelta(days=older_than_days))

        logger.info(f"🧹 Deleted {deleted} candidates older than {older_than_days} days")
        return CleanupResult(deleted_count=deleted, processed_at=now)

    def run_audited(self, job: str = SWEEP_JOB) -> dict:
        """Run a job and record it as a CronRun row"""
        actions = {SWEEP_JOB: self.run, CLEANUP_JOB: self.cleanup_old_candidates}
        if job not in actions:
            raise ValueError(f"Unknown cron job: {job}")

        cron_run = self.repo.start_cron_run(
            self.db, job, self.clock(), details={"correlationId": get_correlation_id()}
        )
        try:
            result = actions[job]().to_dict()
        except Exception as e:
            logger.error(f"❌ Cron job {job} failed: {str(e)}")
            self.db.rollback()
            self.repo.finish_cron_run(self.db, cron_run, False, self.clock(), details={"error": str(e)})
            raise

        self.repo.finish_cron_run(self.db, cron_run, True, self.clock(), details={"result": result})
        return result
