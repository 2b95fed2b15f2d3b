import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import ACTING_USER_HEADER, CRON_SECRET

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_acting_user_id(request: Request) -> str:
    """
    Identity of the caller, as asserted by the upstream gateway.
    Token verification happens before requests reach this service.
    """
    user_id = request.headers.get(ACTING_USER_HEADER)
    if not user_id:
        logger.warning(f"⚠️ Request to {request.url.path} without {ACTING_USER_HEADER} header")
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Require `Authorization: Bearer <CRON_SECRET>` when a secret is configured"""
    if not CRON_SECRET:
        return
    if credentials is None or not hmac.compare_digest(credentials.credentials, CRON_SECRET):
        logger.warning("⚠️ Cron endpoint called with invalid secret")
        raise HTTPException(status_code=401, detail="Invalid cron secret")
