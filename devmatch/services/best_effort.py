"""
Fire-and-forget with bounded retry.

Used for auxiliary writes (rotation cursors, per-batch refreshes in the
sweep). The caller only learns whether the action eventually landed, never
an exception.
"""

import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def run_best_effort(
    action: Callable[[], None],
    *,
    attempts: int = 3,
    fallback: Optional[Callable[[], None]] = None,
    description: str = "best-effort task",
) -> bool:
    """
    Run action up to `attempts` times, then fallback once, then give up.

    Returns True if action or fallback succeeded, False otherwise.
    """
    for attempt in range(1, attempts + 1):
        try:
            action()
            return True
        except Exception as e:
            logger.warning(f"⚠️ {description} failed (attempt {attempt}/{attempts}): {e}")

    if fallback is not None:
        try:
            fallback()
            logger.info(f"✅ {description} succeeded via fallback")
            return True
        except Exception as e:
            logger.warning(f"⚠️ {description} fallback failed: {e}")

    logger.error(f"❌ Giving up on {description}")
    return False
