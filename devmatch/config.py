import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./devmatch.db")
# Isolation level for every connection
DB_ISOLATION_LEVEL = os.getenv("DB_ISOLATION_LEVEL", "SERIALIZABLE")

# Redis (arq worker)
REDIS_URL = os.getenv("REDIS_URL")

# Shared secret the external scheduler sends as "Authorization: Bearer <secret>"
CRON_SECRET = os.getenv("CRON_SECRET")

# Identity header set by the upstream auth gateway
ACTING_USER_HEADER = os.getenv("ACTING_USER_HEADER", "X-Forwarded-User")

# Rotation
ACCEPTANCE_DEADLINE_MINUTES = int(os.getenv("ACCEPTANCE_DEADLINE_MINUTES", "15"))
ROTATION_FRESHER_COUNT = int(os.getenv("ROTATION_FRESHER_COUNT", "5"))
ROTATION_MID_COUNT = int(os.getenv("ROTATION_MID_COUNT", "5"))
ROTATION_EXPERT_COUNT = int(os.getenv("ROTATION_EXPERT_COUNT", "3"))
POOL_FETCH_MULTIPLIER = int(os.getenv("POOL_FETCH_MULTIPLIER", "4"))
RECENT_RESPONSE_WINDOW = int(os.getenv("RECENT_RESPONSE_WINDOW", "5"))
GENERATION_MAX_ATTEMPTS = int(os.getenv("GENERATION_MAX_ATTEMPTS", "3"))
CURSOR_MAX_ATTEMPTS = int(os.getenv("CURSOR_MAX_ATTEMPTS", "3"))
MAX_BATCHES_PER_PROJECT = int(os.getenv("MAX_BATCHES_PER_PROJECT", "8"))
DEFAULT_RESPONSE_TIME_MS = int(os.getenv("DEFAULT_RESPONSE_TIME_MS", "60000"))

# Expiry sweep
AUTO_REFRESH_BATCH_LIMIT = int(os.getenv("AUTO_REFRESH_BATCH_LIMIT", "5"))
AUTO_REFRESH_TIMEOUT_SECONDS = float(os.getenv("AUTO_REFRESH_TIMEOUT_SECONDS", "60"))
CANDIDATE_RETENTION_DAYS = int(os.getenv("CANDIDATE_RETENTION_DAYS", "30"))

# CORS
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
