"""FastAPI application: chat endpoint plus admin diagnostics.

Endpoints:

  POST /chat                      One conversation turn
  POST /chat/reset                Forget a conversation
  GET  /health                    Health check

  GET  /admin/sessions/stats      Session counts by stage        (admin token)
  GET  /admin/sessions/{id}       One session, full record       (admin token)
  POST /admin/sessions/purge      Delete expired sessions        (admin token)
  GET  /admin/config              Loaded category config stats   (admin token)
  POST /admin/config/reload       Drop the config cache, re-read (admin token)

The category config is loaded during startup; a broken config file aborts
startup instead of failing the first conversation.
"""

from __future__ import annotations

# Load .env into os.environ before settings and SDK clients are built.
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

# Configure root logger early so every intake.* logger has a handler when
# run via `uvicorn intake.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from intake.ai.client import AnthropicCompletionClient
from intake.auth import require_admin_token
from intake.categories.loader import CategoryConfigLoader
from intake.config import Settings, settings
from intake.conversation import ConversationEngine
from intake.detection import CategoryDetector
from intake.errors import (
    ConfigurationError,
    IntakeError,
    SessionNotFound,
    SessionStoreUnavailable,
    SubmissionError,
)
from intake.extraction import FieldExtractor
from intake.geocoding import GoogleGeocoder
from intake.marketplace.leadprosper import LeadProsperClient
from intake.models.session import ClientMeta
from intake.schema_engine import SchemaRegistry
from intake.store.base import SessionStore
from intake.store.memory import InMemorySessionStore
from intake.store.sqlite import SqliteSessionStore
from intake.submission import LeadSubmissionPipeline, TrackingIds

log = logging.getLogger("intake.app")

_START_TIME = time.time()


# ── Request bodies ───────────────────────────────────────────────


class TrackingBody(BaseModel):
    jornaya_leadid: Optional[str] = None
    trustedform_cert_url: Optional[str] = None


class ChatRequest(BaseModel):
    session_id: Optional[str] = None
    message: str = Field(min_length=1, max_length=4000)
    tracking: TrackingBody = TrackingBody()
    landing_page_url: Optional[str] = None


class ResetRequest(BaseModel):
    session_id: str


# ── Wiring ───────────────────────────────────────────────────────


def build_store(cfg: Settings) -> SessionStore:
    if cfg.session_backend == "sqlite":
        return SqliteSessionStore(cfg.database_path, ttl_seconds=cfg.session_ttl_seconds)
    return InMemorySessionStore(ttl_seconds=cfg.session_ttl_seconds)


def build_engine(cfg: Settings = settings) -> ConversationEngine:
    """Assemble the engine and its collaborators from settings."""
    loader = CategoryConfigLoader(cfg.categories_path, ttl_seconds=cfg.config_cache_ttl_seconds)
    store = build_store(cfg)
    schemas = SchemaRegistry(loader)

    client = None
    if cfg.llm_provider == "claude" and cfg.anthropic_api_key:
        client = AnthropicCompletionClient(
            api_key=cfg.anthropic_api_key,
            model=cfg.llm_model,
            timeout=cfg.ai_timeout_seconds,
            max_tokens=cfg.llm_max_tokens,
        )

    geocoder = None
    if cfg.google_maps_api_key:
        geocoder = GoogleGeocoder(
            cfg.google_maps_api_key, cfg.geocode_url, cfg.geocode_timeout_seconds,
        )

    pipeline = LeadSubmissionPipeline(
        store,
        loader,
        schemas,
        LeadProsperClient(cfg.leadprosper_url, cfg.marketplace_timeout_seconds),
        default_tcpa_text=cfg.tcpa_text,
        timeout=cfg.marketplace_timeout_seconds,
    )
    return ConversationEngine(
        store,
        loader,
        CategoryDetector(loader, client),
        FieldExtractor(client, geocoder, cfg.geocode_timeout_seconds),
        schemas,
        pipeline,
        claim_timeout=cfg.submission_claim_timeout_seconds,
    )


def _client_meta(request: Request, landing_page_url: str | None = None) -> ClientMeta:
    """IP from X-Forwarded-For (first hop) or the socket, UA and referrer from headers."""
    forwarded = request.headers.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if not ip and request.client is not None:
        ip = request.client.host
    return ClientMeta(
        ip_address=ip or None,
        user_agent=request.headers.get("user-agent"),
        landing_page_url=landing_page_url or request.headers.get("referer"),
    )


def create_app(engine: ConversationEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    engine = engine or build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for warning in settings.validate_startup():
            log.warning(warning)
        await engine.startup()
        yield
        await engine.shutdown()

    app = FastAPI(
        title="Legal Intake Engine",
        description="Conversational lead intake for legal practice areas",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # ── Error mapping ──────────────────────────────────────────

    @app.exception_handler(ConfigurationError)
    @app.exception_handler(SessionStoreUnavailable)
    async def internal_error(request: Request, exc: IntakeError) -> JSONResponse:
        log.error("%s on %s %s", type(exc).__name__, request.method, request.url.path, exc_info=exc)
        return JSONResponse({"error": "Internal server error"}, status_code=exc.status_code)

    @app.exception_handler(SubmissionError)
    async def submission_error(request: Request, exc: SubmissionError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=409)

    @app.exception_handler(SessionNotFound)
    async def session_not_found(request: Request, exc: SessionNotFound) -> JSONResponse:
        return JSONResponse({"error": "Session not found"}, status_code=404)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Chat ───────────────────────────────────────────────────

    @app.post("/chat")
    async def chat(body: ChatRequest, request: Request) -> JSONResponse:
        result = await engine.handle_message(
            body.session_id,
            body.message,
            client_meta=_client_meta(request, body.landing_page_url),
            tracking=TrackingIds(
                jornaya_leadid=body.tracking.jornaya_leadid,
                trustedform_cert_url=body.tracking.trustedform_cert_url,
            ),
        )
        return JSONResponse({
            "reply": result.reply,
            "session_id": result.session_id,
            "complete": result.complete,
            "stage": result.stage.value,
        })

    @app.post("/chat/reset")
    async def chat_reset(body: ResetRequest) -> JSONResponse:
        return JSONResponse({"success": await engine.reset(body.session_id)})

    # ── Admin ──────────────────────────────────────────────────

    @app.get("/admin/sessions/stats", dependencies=[Depends(require_admin_token)])
    async def session_stats() -> JSONResponse:
        return JSONResponse(await engine.store.stats())

    @app.get("/admin/sessions/{session_id}", dependencies=[Depends(require_admin_token)])
    async def get_session(session_id: str) -> JSONResponse:
        session = await engine.store.require(session_id)
        return JSONResponse(session.model_dump(mode="json"))

    @app.post("/admin/sessions/purge", dependencies=[Depends(require_admin_token)])
    async def purge_sessions() -> JSONResponse:
        purged = await engine.store.purge_expired()
        log.info("Purged %d expired sessions", purged)
        return JSONResponse({"purged": purged})

    @app.get("/admin/config", dependencies=[Depends(require_admin_token)])
    async def config_stats() -> JSONResponse:
        return JSONResponse({
            "categories": engine.loader.stats(),
            "schemas": engine.schemas.stats(),
        })

    @app.post("/admin/config/reload", dependencies=[Depends(require_admin_token)])
    async def reload_config() -> JSONResponse:
        engine.loader.invalidate()
        config = engine.loader.load()
        log.info("Category config reloaded (%d categories)", len(config.categories))
        return JSONResponse({"reloaded": True, "categories": config.keys()})

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "intake.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
