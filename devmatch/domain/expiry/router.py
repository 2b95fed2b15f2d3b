"""
Cron endpoint for the expiry sweep
(Called once a minute by the external scheduler, or run by the arq worker)
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ...auth import verify_cron_secret
from ...database import get_db
from .service import SWEEP_JOB, ExpiryService

router = APIRouter(prefix="/cron", tags=["cron"])


class SweepResponse(BaseModel):
    expiredCount: int
    refreshedBatchCount: int
    processedAt: str


@router.post("/expire-candidates", response_model=SweepResponse, dependencies=[Depends(verify_cron_secret)])
async def expire_candidates(db: Session = Depends(get_db)):
    """Expire overdue candidates and regenerate exhausted batches"""
    result = ExpiryService(db).run_audited(SWEEP_JOB)
    return SweepResponse(**result)
