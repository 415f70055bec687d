from fastapi import FastAPI, APIRouter, Depends, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import logging
from typing import Optional

import config
from engagement_engine import (
    Caller,
    Conflict,
    EngagementPipeline,
    EngagementState,
    InvalidArgument,
    MicroBreakPolicy,
    NotFound,
    PipelineError,
    StorageUnavailable,
    any_lesson_exists,
)
from models.session_models import (
    EndSessionRequest,
    EngagementStateResponse,
    IngestRequest,
    IngestResponse,
    ProgressPingRequest,
    ProgressResponse,
    SessionResponse,
    StartSessionRequest,
)
from services.lesson_directory import HttpLessonDirectory


# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


mongo_client = None


def build_pipeline() -> EngagementPipeline:
    """Wire the pipeline from environment configuration."""
    global mongo_client

    policy = MicroBreakPolicy.from_settings(
        low_threshold=config.LOW_ATTENTION_THRESHOLD,
        consecutive_low_limit=config.CONSECUTIVE_LOW_LIMIT,
        cooldown_seconds=config.BREAK_COOLDOWN_SECONDS,
        ema_alpha=config.EMA_ALPHA,
    )

    lesson_exists = any_lesson_exists
    if config.LESSON_SERVICE_URL:
        lesson_exists = HttpLessonDirectory(config.LESSON_SERVICE_URL, timeout=config.LESSON_SERVICE_TIMEOUT)

    session_store = progress_store = None
    if config.STORAGE_BACKEND == "mongo":
        from services.mongo_store import create_mongo_stores
        mongo_client, session_store, progress_store = create_mongo_stores(config.MONGO_URL, config.DB_NAME)

    return EngagementPipeline(
        session_store=session_store,
        progress_store=progress_store,
        policy=policy,
        lesson_exists=lesson_exists,
        duplicate_window=config.DUPLICATE_WINDOW,
        completion_ratio=config.COMPLETION_RATIO,
    )


pipeline = build_pipeline()

# Create the main app without a prefix
app = FastAPI(title="Lesson Engagement API")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


def get_pipeline() -> EngagementPipeline:
    return pipeline


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: str = Header("student"),
) -> Caller:
    """Identity set by the authenticating gateway in front of this service."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing caller identity")
    return Caller(user_id=x_user_id.strip(), role=x_user_role)


def _http_error(e: PipelineError) -> HTTPException:
    if isinstance(e, InvalidArgument):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, Conflict):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, StorageUnavailable):
        return HTTPException(status_code=503, detail=e.message, headers={"Retry-After": "1"})
    return HTTPException(status_code=500, detail=e.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are InvalidArgument, same as core validation."""
    # The rejected input is left out: NaN or Infinity cannot be rendered as JSON
    errors = [
        {"loc": error.get("loc"), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(errors)})


@api_router.get("/")
async def root():
    return {"message": "Lesson Engagement API"}


@api_router.get("/health")
async def health(pipeline: EngagementPipeline = Depends(get_pipeline)):
    return {
        "status": "ok",
        "storage": config.STORAGE_BACKEND,
        "activeSessions": pipeline.aggregator.active_sessions,
        "policy": pipeline.policy.to_dict(),
    }


# Session endpoints

@api_router.post("/session/start", response_model=SessionResponse)
async def start_session(
    request: StartSessionRequest,
    caller: Caller = Depends(get_caller),
    pipeline: EngagementPipeline = Depends(get_pipeline),
):
    """
    Open a session for the caller on a lesson.
    Any session still open on the same lesson is closed as abandoned.
    """
    try:
        session = await pipeline.start_session(caller, request.lessonId, request.deviceInfo)
        return session.to_dict()
    except PipelineError as e:
        raise _http_error(e) from e
    except Exception as e:
        logger.error(f"Error starting session: {str(e)}")
        raise HTTPException(status_code=500, detail="Error starting session")


@api_router.post("/session/end", response_model=SessionResponse)
async def end_session(
    request: EndSessionRequest,
    caller: Caller = Depends(get_caller),
    pipeline: EngagementPipeline = Depends(get_pipeline),
):
    """
    End a session. Safe to retry: ending a closed session returns it unchanged.
    """
    try:
        session = await pipeline.end_session(caller, request.sessionId)
        return session.to_dict()
    except PipelineError as e:
        raise _http_error(e) from e
    except Exception as e:
        logger.error(f"Error ending session: {str(e)}")
        raise HTTPException(status_code=500, detail="Error ending session")


@api_router.get("/session/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    caller: Caller = Depends(get_caller),
    pipeline: EngagementPipeline = Depends(get_pipeline),
):
    try:
        session = await pipeline.get_session(caller, session_id)
        return session.to_dict()
    except PipelineError as e:
        raise _http_error(e) from e
    except Exception as e:
        logger.error(f"Error fetching session: {str(e)}")
        raise HTTPException(status_code=500, detail="Error fetching session")


# Telemetry endpoints

@api_router.post("/telemetry/ingest", response_model=IngestResponse)
async def ingest_telemetry(
    request: IngestRequest,
    caller: Caller = Depends(get_caller),
    pipeline: EngagementPipeline = Depends(get_pipeline),
):
    """
    Fold a batch of emotion/attention samples.
    Returns one micro-break decision per sample, in input order; malformed
    samples are listed in `errors` without failing the batch.
    """
    try:
        result = await pipeline.ingest(caller, request.sessionId, request.samples)
        return result.to_dict()
    except PipelineError as e:
        raise _http_error(e) from e
    except Exception as e:
        logger.error(f"Error ingesting telemetry: {str(e)}")
        raise HTTPException(status_code=500, detail="Error ingesting telemetry")


@api_router.get("/telemetry/{session_id}/state", response_model=EngagementStateResponse)
async def get_engagement_state(
    session_id: str,
    caller: Caller = Depends(get_caller),
    pipeline: EngagementPipeline = Depends(get_pipeline),
):
    """
    Poll the current engagement state of a session.
    """
    try:
        state = await pipeline.engagement_state(caller, session_id)
    except PipelineError as e:
        raise _http_error(e) from e
    except Exception as e:
        logger.error(f"Error fetching engagement state: {str(e)}")
        raise HTTPException(status_code=500, detail="Error fetching engagement state")

    if state is None:
        state = EngagementState(session_id=session_id)
    body = state.to_dict()
    body["cooling"] = state.is_cooling(pipeline.aggregator.clock())
    return body


# Progress endpoints

@api_router.post("/progress/ping", response_model=ProgressResponse)
async def ping_progress(
    request: ProgressPingRequest,
    caller: Caller = Depends(get_caller),
    pipeline: EngagementPipeline = Depends(get_pipeline),
):
    """
    Record lesson progress. Stale or repeated pings are acknowledged
    without moving the stored position backwards.
    """
    try:
        record = await pipeline.ping_progress(
            caller,
            request.lessonId,
            request.positionSec,
            request.durationSec,
            request.completed,
        )
        return record.to_dict()
    except PipelineError as e:
        raise _http_error(e) from e
    except Exception as e:
        logger.error(f"Error recording progress: {str(e)}")
        raise HTTPException(status_code=500, detail="Error recording progress")


@api_router.get("/progress/{user_id}/{lesson_id}", response_model=ProgressResponse)
async def get_progress(
    user_id: str,
    lesson_id: str,
    caller: Caller = Depends(get_caller),
    pipeline: EngagementPipeline = Depends(get_pipeline),
):
    try:
        record = await pipeline.get_progress(caller, user_id, lesson_id)
        return record.to_dict()
    except PipelineError as e:
        raise _http_error(e) from e
    except Exception as e:
        logger.error(f"Error fetching progress: {str(e)}")
        raise HTTPException(status_code=500, detail="Error fetching progress")


# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def prepare_storage():
    if mongo_client is None:
        return
    try:
        await pipeline.sessions.store.ensure_indexes()
        await pipeline.progress.store.ensure_indexes()
        logger.info(f"MongoDB indexes ready on {config.DB_NAME}")
    except Exception as e:
        logger.error(f"Could not create MongoDB indexes: {e}")


@app.on_event("shutdown")
async def shutdown_db_client():
    if mongo_client is not None:
        mongo_client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.BACKEND_HOST, port=config.BACKEND_PORT)
