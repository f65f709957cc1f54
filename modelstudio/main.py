from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from modelstudio.common.exceptions import ModelStudioError, ValidationError
from modelstudio.config import settings
from modelstudio.db.postgres import async_session_factory, create_tables, engine
from modelstudio.models.registry import get_registry, init_registry

from modelstudio.export import router as export_router
from modelstudio.models import router as models_router
from modelstudio.prediction import router as prediction_router
from modelstudio.training import router as training_router

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: datetime
    details: Optional[Dict[str, Any]] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.SERVICE_NAME}...")

    try:
        await create_tables(engine)
        logger.info("Database tables ready")
    except Exception as e:
        logger.error(f"Database not available: {e}")
        raise

    registry = init_registry(async_session_factory)
    logger.info(
        f"Model registry ready (trainer={registry.trainer.name}, predictor={registry.predictor.name}, "
        f"artifacts={settings.ARTIFACT_STORE_PATH})"
    )

    yield

    await registry.stop()
    await engine.dispose()
    logger.info(f"Shutting down {settings.SERVICE_NAME}...")


app = FastAPI(
    title="Model Studio",
    description="Train, version, export and serve machine-learning models over tabular datasets",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _failure(error: str, kind: str, status_code: int = 500) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, "kind": kind})


@app.exception_handler(ModelStudioError)
async def model_studio_error_handler(request: Request, exc: ModelStudioError):
    if exc.kind in ("backend", "parse"):
        logger.error(f"{request.method} {request.url.path} failed ({exc.kind}): {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.kind}): {exc.message}")
    return _failure(exc.message, exc.kind)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return _failure(f"Invalid request: {problems}", ValidationError.kind)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _failure(str(exc.detail), "http", status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return _failure(str(exc) or exc.__class__.__name__, "backend")


# Wire routers with no prefix so the dashboard's paths are kept
app.include_router(training_router.router)
app.include_router(prediction_router.router)
app.include_router(models_router.router)
app.include_router(export_router.router)


@app.get("/", response_model=HealthResponse)
async def root():
    return HealthResponse(
        status="healthy",
        service=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        timestamp=datetime.now(timezone.utc),
    )


@app.get("/health", response_model=HealthResponse)
async def health_check():
    registry = get_registry()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        db_ok = False

    return HealthResponse(
        status="healthy" if db_ok else "unhealthy",
        service=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        timestamp=datetime.now(timezone.utc),
        details={
            "database": db_ok,
            "trainer_backend": registry.trainer.name,
            "predictor_backend": registry.predictor.name,
            "loaded_bundles": registry.bundles.loaded_count,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("modelstudio.main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
