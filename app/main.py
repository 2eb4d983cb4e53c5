import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.endpoints import dashboard
from app.api.v1.router import api_router
from app.core.config import settings
from app.core.context import build_context
from app.core.database import async_session, dispose_engine, init_db
from app.core.exceptions import VoiceCRMError
from app.core.seed import seed_defaults

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await init_db()
    await seed_defaults(async_session, settings.DEFAULT_ORGANIZATION_ID)
    context = build_context(async_session, settings)
    app.state.context = context
    context.events.subscribe("*", dashboard.forward_event)
    await context.start()
    logger.info("Voice CRM pipeline started (env=%s)", settings.APP_ENV)
    yield
    await context.stop()
    await dispose_engine()


app = FastAPI(
    title="VoiceCRM API",
    description="Voice notes to approved CRM actions: transcription, insights, decisions, approvals",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(VoiceCRMError)
async def pipeline_error_handler(request: Request, exc: VoiceCRMError):
    logger.error("Unhandled pipeline error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.get("/health")
async def health():
    return {"status": "ok", "service": "voicecrm-api", "version": "0.1.0"}
