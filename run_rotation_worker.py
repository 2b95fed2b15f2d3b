"""
Rotation Background Worker Runner
Run this as a separate process: python run_rotation_worker.py
"""

import logging
import sys

from arq import run_worker

from devmatch.correlation import configure_logging
from devmatch.worker import WorkerSettings

configure_logging(logging.INFO)

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    logger.info("🚀 Starting Rotation Background Worker...")
    try:
        run_worker(WorkerSettings)
    except KeyboardInterrupt:
        logger.info("👋 Rotation worker stopped by user")
    except Exception as e:
        logger.error(f"❌ Rotation worker crashed: {e}")
        sys.exit(1)
