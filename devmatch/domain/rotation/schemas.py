"""Rotation domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SelectionOverride(BaseModel):
    """Optional per-level quota override for a new batch"""

    fresherCount: Optional[int] = Field(None, ge=0)
    midCount: Optional[int] = Field(None, ge=0)
    expertCount: Optional[int] = Field(None, ge=0)

    def to_overrides(self) -> dict:
        return {
            "fresher_count": self.fresherCount,
            "mid_count": self.midCount,
            "expert_count": self.expertCount,
        }


class SelectedCandidate(BaseModel):
    developerId: str
    level: str
    skillIds: list[str]
    usualResponseTimeMs: int


class BatchGenerationResponse(BaseModel):
    """Schema for a freshly generated batch"""

    batchId: str
    batchNumber: int
    projectId: str
    selection: dict
    candidates: list[SelectedCandidate]


class CandidateResponse(BaseModel):
    id: str
    developerId: str
    level: str
    skillIds: list[str]
    responseStatus: str
    statusTextForClient: Optional[str] = None
    assignedAt: datetime
    acceptanceDeadline: datetime
    respondedAt: Optional[datetime] = None
    isFirstAccepted: bool
    usualResponseTimeMs: Optional[int] = None


class BatchResponse(BaseModel):
    id: str
    batchNumber: int
    status: str
    statusReason: Optional[str] = None
    selection: Optional[dict] = None
    createdAt: datetime
    candidates: list[CandidateResponse]


class AssignmentResponse(BaseModel):
    """Schema for a project's current assignment state"""

    projectId: str
    projectStatus: str
    contactRevealEnabled: bool
    contactRevealedDeveloperId: Optional[str] = None
    currentBatch: Optional[BatchResponse] = None


class AcceptResponse(BaseModel):
    success: bool = True
    message: str
    candidateId: str
    batchId: str
    projectId: str
    projectStatus: str
    contactRevealedDeveloperId: Optional[str] = None


class RejectResponse(BaseModel):
    success: bool = True
    message: str
    candidateId: str
