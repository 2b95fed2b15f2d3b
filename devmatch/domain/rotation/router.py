"""Rotation router - FastAPI endpoints for batches and candidate responses"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_acting_user_id
from ...database import get_db
from ...exceptions import BatchPoolExhausted
from ...models import AssignmentBatch
from .schemas import (
    AcceptResponse,
    AssignmentResponse,
    BatchGenerationResponse,
    BatchResponse,
    CandidateResponse,
    RejectResponse,
    SelectedCandidate,
    SelectionOverride,
)
from .service import BatchGenerationResult, RotationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Rotation"])


def get_rotation_service(db: Session = Depends(get_db)) -> RotationService:
    """Dependency injection for RotationService"""
    return RotationService(db)


def _generation_response(result: BatchGenerationResult) -> BatchGenerationResponse:
    return BatchGenerationResponse(
        batchId=result.batch_id,
        batchNumber=result.batch_number,
        projectId=result.project_id,
        selection=result.selection.to_dict(),
        candidates=[
            SelectedCandidate(
                developerId=c.developer_id,
                level=c.level,
                skillIds=c.skill_ids,
                usualResponseTimeMs=c.usual_response_time_ms,
            )
            for c in result.candidates
        ],
    )


def _batch_response(batch: AssignmentBatch) -> BatchResponse:
    return BatchResponse(
        id=batch.id,
        batchNumber=batch.batch_number,
        status=batch.status,
        statusReason=batch.status_reason,
        selection=batch.selection,
        createdAt=batch.created_at,
        candidates=[
            CandidateResponse(
                id=c.id,
                developerId=c.developer_id,
                level=c.level,
                skillIds=c.skill_ids or [],
                responseStatus=c.response_status,
                statusTextForClient=c.status_text_for_client,
                assignedAt=c.assigned_at,
                acceptanceDeadline=c.acceptance_deadline,
                respondedAt=c.responded_at,
                isFirstAccepted=c.is_first_accepted,
                usualResponseTimeMs=c.usual_response_time_ms_snapshot,
            )
            for c in batch.candidates
        ],
    )


# ============================================================================
# BATCHES
# ============================================================================


@router.post("/projects/{project_id}/batches/generate", response_model=BatchGenerationResponse)
async def generate_batch(
    project_id: str,
    override: Optional[SelectionOverride] = None,
    acting_user_id: str = Depends(get_acting_user_id),
    service: RotationService = Depends(get_rotation_service),
):
    """Generate a new candidate batch for a project"""
    if not service.can_generate_new_batch(project_id):
        raise BatchPoolExhausted(project_id, service.repo.count_batches(service.db, project_id))

    logger.info(f"📋 Batch generation requested for project {project_id} by {acting_user_id}")
    result = service.generate_batch(project_id, override.to_overrides() if override else None)
    return _generation_response(result)


@router.post("/projects/{project_id}/batches/refresh", response_model=BatchGenerationResponse)
async def refresh_batch(
    project_id: str,
    override: Optional[SelectionOverride] = None,
    acting_user_id: str = Depends(get_acting_user_id),
    service: RotationService = Depends(get_rotation_service),
):
    """Replace the project's current batch with a new one"""
    logger.info(f"📋 Batch refresh requested for project {project_id} by {acting_user_id}")
    result = service.refresh_batch(project_id, override.to_overrides() if override else None)
    return _generation_response(result)


@router.get("/projects/{project_id}/assignment", response_model=AssignmentResponse)
async def get_assignment(
    project_id: str,
    acting_user_id: str = Depends(get_acting_user_id),
    service: RotationService = Depends(get_rotation_service),
):
    """Get the project's current batch and candidate statuses"""
    project, batch = service.get_current_assignment(project_id)
    return AssignmentResponse(
        projectId=project.id,
        projectStatus=project.status,
        contactRevealEnabled=project.contact_reveal_enabled,
        contactRevealedDeveloperId=project.contact_revealed_developer_id,
        currentBatch=_batch_response(batch) if batch else None,
    )


# ============================================================================
# CANDIDATE RESPONSES
# ============================================================================


@router.post("/candidates/{candidate_id}/accept", response_model=AcceptResponse)
async def accept_candidate(
    candidate_id: str,
    acting_user_id: str = Depends(get_acting_user_id),
    service: RotationService = Depends(get_rotation_service),
):
    """Accept an assignment. Only the first acceptance per project wins."""
    result = service.accept_candidate(candidate_id, acting_user_id)
    return AcceptResponse(
        message=result.message,
        candidateId=result.candidate_id,
        batchId=result.batch_id,
        projectId=result.project.id,
        projectStatus=result.project.status,
        contactRevealedDeveloperId=result.project.contact_revealed_developer_id,
    )


@router.post("/candidates/{candidate_id}/reject", response_model=RejectResponse)
async def reject_candidate(
    candidate_id: str,
    acting_user_id: str = Depends(get_acting_user_id),
    service: RotationService = Depends(get_rotation_service),
):
    """Decline an assignment"""
    result = service.reject_candidate(candidate_id, acting_user_id)
    return RejectResponse(message=result.message, candidateId=result.candidate_id)
