"""Rotation service - Batch generation, refresh and the accept/reject state machine"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from ...config import (
    ACCEPTANCE_DEADLINE_MINUTES,
    CURSOR_MAX_ATTEMPTS,
    GENERATION_MAX_ATTEMPTS,
    MAX_BATCHES_PER_PROJECT,
    POOL_FETCH_MULTIPLIER,
)
from ...database import SessionLocal, UnitOfWork
from ...exceptions import (
    AlreadyAccepted,
    BatchNotActive,
    BatchSuperseded,
    CandidateNoLongerPending,
    CandidateNotFound,
    DeadlinePassed,
    InvalidCandidateState,
    InvalidProjectState,
    NoEligibleCandidates,
    ProjectAlreadyAccepted,
    ProjectNotFound,
    RotationError,
    SelfAcceptForbidden,
    TransientStoreConflict,
    Unauthorized,
    is_transient_conflict,
)
from ...models import (
    BATCH_ACTIVE,
    BATCH_REPLACED,
    LEVELS,
    PROJECT_ASSIGNING,
    PROJECT_SUBMITTED,
    RESPONSE_PENDING,
    AssignmentBatch,
    AssignmentCandidate,
    Project,
)
from ...services.best_effort import run_best_effort
from ...utils.clock import Clock, utcnow
from .repository import RotationRepository
from .selection import (
    BatchSelection,
    DeveloperCandidate,
    apply_fair_ordering,
    deduplicate_candidates,
    rebalance_and_trim,
    to_candidates,
)

logger = logging.getLogger(__name__)

GENERATABLE_STATUSES = (PROJECT_SUBMITTED, PROJECT_ASSIGNING)
REASON_REFRESHED = "refreshed"
REASON_SUPERSEDED = "superseded_by_new_batch"


@dataclass
class BatchGenerationResult:
    batch_id: str
    batch_number: int
    project_id: str
    candidates: list[DeveloperCandidate]
    selection: BatchSelection


@dataclass
class AcceptResult:
    message: str
    candidate_id: str
    batch_id: str
    project: Project


@dataclass
class RejectResult:
    message: str
    candidate_id: str


class RotationService:
    """Service layer for assignment rotation"""

    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        session_factory: Optional[sessionmaker] = None,
    ):
        self.db = db
        self.uow = UnitOfWork(db)
        self.repo = RotationRepository()
        self.clock = clock
        # Used for cursor writes that must land outside the caller's transaction
        self.session_factory = session_factory or SessionLocal

    # ------------------------------------------------------------------
    # Batch generation
    # ------------------------------------------------------------------

    def generate_batch(self, project_id: str, overrides: Optional[dict] = None) -> BatchGenerationResult:
        """Select candidates for a project and persist them as a new active batch"""
        selection = BatchSelection.from_overrides(overrides)
        logger.info(f"🚀 Generating batch for project {project_id} with selection {selection.to_dict()}")
        return self._run_generation(
            "generate_batch", lambda: self._generate_in_transaction(project_id, selection)
        )

    def refresh_batch(
        self,
        project_id: str,
        overrides: Optional[dict] = None,
        *,
        retire_status: str = BATCH_REPLACED,
        retire_reason: str = REASON_REFRESHED,
        expected_batch_id: Optional[str] = None,
    ) -> BatchGenerationResult:
        """
        Atomically retire the project's current batch (pending candidates are
        invalidated) and generate its replacement. Either both happen or neither.

        expected_batch_id makes the refresh conditional on the project still
        pointing at that batch.
        """
        selection = BatchSelection.from_overrides(overrides)
        logger.info(f"🔄 Refreshing batch for project {project_id}")

        def attempt() -> BatchGenerationResult:
            with self.uow.transaction() as db:
                project = self.repo.get_project(db, project_id)
                if not project:
                    raise ProjectNotFound(project_id)

                old_batch_id = project.current_batch_id
                if expected_batch_id and old_batch_id != expected_batch_id:
                    raise BatchSuperseded(expected_batch_id, old_batch_id)

                if old_batch_id:
                    now = self.clock()
                    self.repo.retire_batch(db, old_batch_id, retire_status, retire_reason)
                    invalidated = self.repo.invalidate_pending_candidates(db, old_batch_id, now)
                    logger.info(
                        f"🔄 Retired batch {old_batch_id} as {retire_status}, "
                        f"invalidated {invalidated} pending candidates"
                    )

                return self._generate_in_transaction(project_id, selection)

        return self._run_generation("refresh_batch", attempt)

    def can_generate_new_batch(self, project_id: str) -> bool:
        """False once a project has gone through MAX_BATCHES_PER_PROJECT batches"""
        return self.repo.count_batches(self.db, project_id) < MAX_BATCHES_PER_PROJECT

    def _run_generation(
        self, operation: str, attempt: Callable[[], BatchGenerationResult]
    ) -> BatchGenerationResult:
        """Retry transient conflicts, then update rotation cursors once committed"""
        if self.uow.in_transaction:
            # Joined a caller's transaction: it owns retries and the commit
            return attempt()

        tries = 0
        while True:
            tries += 1
            try:
                result = attempt()
                break
            except RotationError:
                raise
            except Exception as e:
                if not is_transient_conflict(e):
                    raise
                if tries >= GENERATION_MAX_ATTEMPTS:
                    logger.error(f"❌ {operation} failed after {tries} attempts: {e}")
                    raise TransientStoreConflict(operation, tries) from e
                logger.warning(
                    f"⚠️ Transaction conflict in {operation} (attempt {tries}/{GENERATION_MAX_ATTEMPTS}), retrying"
                )

        logger.info(
            f"✅ Batch #{result.batch_number} ({result.batch_id}) created for project "
            f"{result.project_id} with {len(result.candidates)} candidates"
        )
        self.update_rotation_cursors(result.candidates)
        return result

    def _generate_in_transaction(self, project_id: str, selection: BatchSelection) -> BatchGenerationResult:
        with self.uow.transaction() as db:
            project = self.repo.get_project(db, project_id)
            if not project:
                raise ProjectNotFound(project_id)
            if project.status not in GENERATABLE_STATUSES:
                raise InvalidProjectState(project_id, project.status)

            now = self.clock()
            if project.current_batch_id:
                # A project keeps at most one active batch
                self._retire_active_batch(db, project.current_batch_id, now)

            candidates = self._select_candidates(db, project, selection)
            if not candidates:
                logger.warning(f"⚠️ No eligible candidates for project {project_id}")
                raise NoEligibleCandidates(project_id)

            batch = self.repo.create_batch(
                db,
                project.id,
                self.repo.get_next_batch_number(db, project.id),
                selection.to_dict(),
                now,
            )
            self.repo.create_candidates(
                db, batch, candidates, now, now + timedelta(minutes=ACCEPTANCE_DEADLINE_MINUTES)
            )
            self.repo.set_current_batch(db, project, batch.id)

            return BatchGenerationResult(
                batch_id=batch.id,
                batch_number=batch.batch_number,
                project_id=project.id,
                candidates=candidates,
                selection=selection,
            )

    def _retire_active_batch(self, db: Session, batch_id: str, now: datetime) -> None:
        if not self.repo.retire_batch(db, batch_id, BATCH_REPLACED, REASON_SUPERSEDED):
            return
        invalidated = self.repo.invalidate_pending_candidates(db, batch_id, now)
        logger.info(f"🔄 Batch {batch_id} superseded, invalidated {invalidated} pending candidates")

    def _select_candidates(
        self, db: Session, project: Project, selection: BatchSelection
    ) -> list[DeveloperCandidate]:
        raw: list[DeveloperCandidate] = []
        for skill_id in project.skills_required or []:
            for level in reversed(LEVELS):
                count = selection.fetch_count(level)
                if count <= 0:
                    continue
                pool = self.repo.find_eligible_developers(
                    db,
                    skill_id,
                    level,
                    project.client_user_id,
                    project.id,
                    limit=count * POOL_FETCH_MULTIPLIER,
                )
                cursor = self.repo.get_rotation_cursor(db, skill_id, level)
                ordered = apply_fair_ordering(pool, cursor)
                raw.extend(to_candidates(ordered, skill_id, count))
                logger.debug(f"Pool for {skill_id}-{level}: {len(pool)} eligible, cursor={cursor}")

        deduped = deduplicate_candidates(raw)
        logger.info(f"Selected {len(raw)} raw candidates, {len(deduped)} after deduplication")
        return rebalance_and_trim(deduped, selection)

    # ------------------------------------------------------------------
    # Rotation cursors (post-commit, best effort)
    # ------------------------------------------------------------------

    def update_rotation_cursors(self, candidates: list[DeveloperCandidate]) -> None:
        """Record the last developer selected for every (skill, level) pair used"""
        last_by_pair: dict[tuple[str, str], str] = {}
        for candidate in candidates:
            for skill_id in candidate.skill_ids:
                last_by_pair[(skill_id, candidate.level)] = candidate.developer_id

        for (skill_id, level), developer_id in last_by_pair.items():
            run_best_effort(
                lambda: self._write_cursor(self.db, skill_id, level, developer_id),
                attempts=CURSOR_MAX_ATTEMPTS,
                fallback=lambda: self._write_cursor_standalone(skill_id, level, developer_id),
                description=f"rotation cursor update {skill_id}-{level}",
            )

    def _write_cursor(self, db: Session, skill_id: str, level: str, developer_id: str) -> None:
        try:
            self.repo.upsert_rotation_cursor(db, skill_id, level, developer_id)
            db.commit()
        except Exception:
            db.rollback()
            raise

    def _write_cursor_standalone(self, skill_id: str, level: str, developer_id: str) -> None:
        with self.session_factory() as db:
            self._write_cursor(db, skill_id, level, developer_id)

    # ------------------------------------------------------------------
    # Accept / reject
    # ------------------------------------------------------------------

    def accept_candidate(self, candidate_id: str, acting_user_id: str) -> AcceptResult:
        """
        First-accept wins. Two conditional updates guarantee a single winner:
        the project claim (only while the batch is current and contact is not
        yet revealed) and the candidate claim (only while still pending and
        in deadline). Either affecting zero rows means another actor won.
        """
        with self.uow.transaction() as db:
            candidate = self._load_candidate(db, candidate_id)
            batch: AssignmentBatch = candidate.batch
            project: Project = batch.project

            if candidate.developer.user_id != acting_user_id:
                raise Unauthorized("You can only accept your own assignments", candidate_id=candidate_id)
            if candidate.response_status != RESPONSE_PENDING:
                raise InvalidCandidateState(candidate_id, candidate.response_status, "accept")

            now = self.clock()
            if now > candidate.acceptance_deadline:
                raise DeadlinePassed(candidate_id, candidate.acceptance_deadline)
            if batch.status != BATCH_ACTIVE:
                raise BatchNotActive(batch.id, batch.status, "accept")
            if project.current_batch_id != candidate.batch_id:
                raise BatchSuperseded(candidate.batch_id, project.current_batch_id)
            if candidate.is_first_accepted:
                raise AlreadyAccepted(candidate_id)
            if project.client_user_id == acting_user_id:
                raise SelfAcceptForbidden(project.id)

            if self.repo.claim_project(db, project.id, candidate.batch_id, candidate.developer_id) != 1:
                logger.info(f"Project {project.id} claim lost by candidate {candidate_id}")
                raise ProjectAlreadyAccepted(project.id)

            if self.repo.claim_candidate(db, candidate_id, now) != 1:
                raise CandidateNoLongerPending(candidate_id)

            self.repo.complete_batch(db, candidate.batch_id)
            batch_id = candidate.batch_id

        logger.info(f"✅ Candidate {candidate_id} accepted project {project.id}")
        self.db.refresh(project)
        return AcceptResult(
            message="Assignment accepted successfully! The client can now contact you.",
            candidate_id=candidate_id,
            batch_id=batch_id,
            project=project,
        )

    def reject_candidate(self, candidate_id: str, acting_user_id: str) -> RejectResult:
        with self.uow.transaction() as db:
            candidate = self._load_candidate(db, candidate_id)

            if candidate.developer.user_id != acting_user_id:
                raise Unauthorized("You can only reject your own assignments", candidate_id=candidate_id)
            if candidate.response_status != RESPONSE_PENDING:
                raise InvalidCandidateState(candidate_id, candidate.response_status, "reject")
            if candidate.batch.status != BATCH_ACTIVE:
                raise BatchNotActive(candidate.batch_id, candidate.batch.status, "reject")

            if self.repo.reject_candidate(db, candidate_id, self.clock()) != 1:
                raise CandidateNoLongerPending(candidate_id)

        logger.info(f"Candidate {candidate_id} rejected")
        return RejectResult(message="Assignment rejected successfully.", candidate_id=candidate_id)

    def _load_candidate(self, db: Session, candidate_id: str) -> AssignmentCandidate:
        candidate = self.repo.get_candidate(db, candidate_id)
        if not candidate:
            raise CandidateNotFound(candidate_id)
        return candidate

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_current_assignment(self, project_id: str) -> tuple[Project, Optional[AssignmentBatch]]:
        """The project and its current batch (with candidates), if any"""
        project = self.repo.get_project(self.db, project_id)
        if not project:
            raise ProjectNotFound(project_id)
        if not project.current_batch_id:
            return project, None
        return project, self.repo.get_batch_with_candidates(self.db, project.current_batch_id)
