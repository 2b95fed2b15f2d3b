import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import models  # noqa: F401
from .config import ALLOWED_ORIGINS
from .correlation import configure_logging, correlation_scope
from .database import Base, engine
from .domain.expiry import router as expiry_router
from .domain.rotation import router as rotation_router
from .exceptions import RotationError

CORRELATION_HEADER = "X-Correlation-ID"

configure_logging(logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Another worker may have created them first
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="DevMatch Rotation API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(RotationError)
async def rotation_error_handler(request: Request, exc: RotationError):
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path} - {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} - {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    with correlation_scope(request.headers.get(CORRELATION_HEADER)) as correlation_id:
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
            raise
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=[CORRELATION_HEADER],
)

# Routes
app.include_router(rotation_router)
app.include_router(expiry_router)


@app.get("/health")
def health():
    return {"status": "healthy"}
