from fastapi import FastAPI, File, Form, Header, Query, Request, Response, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from contextlib import asynccontextmanager
from uuid import UUID
import json
import logging
from typing import Optional, Any

from .models import (
    ClientUpsertRequest,
    ClientUpsertResponse,
    SessionCreateRequest,
    SessionCreateResponse,
    SessionEndResponse,
    TurnResponse,
    PaymentRequest,
    PaymentResponse,
    PaymentListResponse,
)
from .config import get_settings
from .db import Database
from .directory import ClientDirectory, TherapistDirectory
from .entitlement import EntitlementEvaluator
from .errors import CoachError, ForbiddenError, ValidationError
from .conversation import ConversationOrchestrator
from .payments import PaymentRecorder, parse_provider, parse_status
from .session import SessionManager
from .speech_client import AUDIO_MIME
from .summarizer import Summarizer
from .summary import render_summary_html
from .migrate import run_migrations

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global instances
db = Database()
entitlements = EntitlementEvaluator(db)
session_manager = SessionManager(db, entitlements)
conversation = ConversationOrchestrator(db)
summarizer = Summarizer(db)
payments = PaymentRecorder(db)
clients = ClientDirectory(db)
therapists = TherapistDirectory(db)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    logger.info("Starting Voice Coach API")
    try:
        if db.pool is not None:
            try:
                await db.close()
            except Exception:
                db.pool = None
        await db.get_pool()
        logger.info("Database connection pool initialized")

        applied = await run_migrations(db)
        logger.info(f"Migrations completed ({applied} applied)")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    yield

    logger.info("Shutting down Voice Coach API")
    await db.close()
    logger.info("Database connection pool closed")


# Create FastAPI app with lifespan
app = FastAPI(
    title="Voice Coach API",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CoachError)
async def coach_error_handler(request: Request, exc: CoachError):
    logger.log(exc.log_level, f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"{request.method} {request.url.path} -> 400 invalid request")
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({"error": "bad_request", "details": exc.errors()})
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"error": "internal_error"})


def _require_admin_key(key: Optional[str]) -> None:
    settings = get_settings()
    if not settings.admin_api_key or key != settings.admin_api_key:
        raise ForbiddenError("Forbidden")


def _webhook_authorized(authorization: Optional[str]) -> bool:
    secret = get_settings().revenuecat_webhook_secret
    if not secret:
        return True
    return authorization in (secret, f"Bearer {secret}")


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "voicecoach",
        "version": "1.0.0"
    }


@app.post("/clients", status_code=201, response_model=ClientUpsertResponse)
async def upsert_client(request: ClientUpsertRequest):
    """Create or update a client profile."""
    return await clients.upsert_client(
        client_id=request.clientId,
        username=request.username,
        gender=request.gender,
        language=request.language
    )


@app.get("/clients")
async def list_clients():
    return await clients.list_clients()


@app.get("/clients/{client_id}/sessions")
async def list_client_sessions(
    client_id: str,
    status: Optional[str] = Query(None, pattern="^(active|ended)$"),
    sort: str = Query("created_desc", pattern="^(created_desc|created_asc)$"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0)
):
    return await session_manager.list_sessions(
        client_id,
        status=status,
        sort=sort,
        limit=limit,
        offset=offset
    )


@app.post("/clients/{client_id}/reset")
async def reset_client(client_id: str, x_admin_key: Optional[str] = Header(None)):
    """
    Admin-only: soft-delete every session of a client.

    The main session is kept, so the trial window is not restarted.
    """
    _require_admin_key(x_admin_key)
    return await session_manager.soft_delete_all(client_id)


@app.get("/therapists")
async def list_therapists(
    q: Optional[str] = None,
    gender: Optional[int] = Query(None, ge=0, le=2),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0)
):
    return await therapists.list_therapists(q=q, gender=gender, limit=limit, offset=offset)


@app.get("/therapists/{therapist_id}/voice-preview")
async def therapist_voice_preview(therapist_id: UUID):
    return await therapists.get_voice_preview(str(therapist_id))


@app.post("/sessions", status_code=201, response_model=SessionCreateResponse)
async def create_session(request: SessionCreateRequest):
    """
    Start the client's next session.

    First sessions carry a pre-recorded intro URL; follow-ups carry a short
    opener built from earlier summaries.
    """
    return await session_manager.create_session(
        client_id=request.clientId,
        therapist_id=str(request.therapistId),
        intent=request.therapyIntent,
        language=request.language
    )


@app.post(
    "/sessions/{session_id}/messages/audio",
    status_code=201,
    response_model=TurnResponse,
    response_model_exclude_unset=True
)
async def session_audio_turn(
    session_id: UUID,
    audio: Optional[UploadFile] = File(None),
    language: Optional[str] = Form(None),
    stream: int = Query(0)
):
    """
    One spoken turn: upload a clip, get the coach's reply.

    stream=1 returns the reply audio as raw bytes; otherwise a JSON envelope
    with base64 audio.
    """
    if audio is None:
        raise ValidationError("audio file is required", code="audio_missing")
    data = await audio.read()
    if not data:
        raise ValidationError("audio file is empty", code="audio_missing")

    result = await conversation.handle_audio_turn(
        str(session_id),
        data,
        filename=audio.filename or "audio.ogg",
        content_type=audio.content_type or "application/octet-stream",
        language=language
    )

    if stream == 1 and result.audio:
        return Response(
            content=result.audio,
            media_type=AUDIO_MIME,
            headers={"Content-Disposition": 'inline; filename="reply.mp3"'}
        )
    return result.to_payload()


@app.post("/sessions/{session_id}/end", response_model=SessionEndResponse, response_model_exclude_none=True)
async def end_session(session_id: UUID, force: int = Query(0)):
    """End a session and store its PUBLIC/COACH summary."""
    return await summarizer.end_session(str(session_id), force=force == 1)


SUMMARY_FORMATS = {"md", "markdown", "json", "html", "markdown+html", "raw"}


@app.get("/sessions/{session_id}/summary")
async def session_summary(
    session_id: UUID,
    format: str = Query("md"),
    coach: int = Query(0),
    if_none_match: Optional[str] = Header(None)
):
    """
    PUBLIC summary (plus COACH with coach=1).

    md/markdown/json return the JSON envelope, html renders an <article>,
    raw returns the combined markdown as text/markdown.
    """
    fmt = format.lower()
    if fmt not in SUMMARY_FORMATS:
        raise ValidationError("format must be md|markdown|json|html|raw")

    result = await summarizer.get_summary(str(session_id), include_coach=coach == 1)
    headers = {"ETag": result["etag"], "Cache-Control": "private, max-age=60"}

    if if_none_match and if_none_match == result["etag"]:
        return Response(status_code=304, headers=headers)

    if fmt in ("html", "markdown+html"):
        return HTMLResponse(content=render_summary_html(result["combined"]), headers=headers)
    if fmt == "raw":
        return Response(
            content=result["combined"],
            media_type="text/markdown; charset=utf-8",
            headers=headers
        )

    body = {k: v for k, v in result.items() if k not in ("etag", "combined")}
    if coach != 1:
        body.pop("coach_markdown", None)
    return JSONResponse(content=jsonable_encoder(body), headers=headers)


@app.post("/payments", status_code=201, response_model=PaymentResponse)
async def record_payment(request: PaymentRequest):
    """Record a payment; redelivery of the same (provider, transactionId) updates in place."""
    return await payments.record_payment(request.model_dump())


@app.get("/payments", response_model=PaymentListResponse)
async def list_payments(
    clientId: Optional[str] = None,
    provider: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=200),
    offset: int = Query(0, ge=0),
    x_admin_key: Optional[str] = Header(None)
):
    _require_admin_key(x_admin_key)

    provider_code = parse_provider(provider) if provider else None
    if provider and provider_code is None:
        raise ValidationError("provider must be ios|android|web (or 1|2|3)")
    status_code = parse_status(status) if status else None
    if status and status_code is None:
        raise ValidationError("status must be pending|completed|refunded|revoked (or 0|1|2|3)")

    return await payments.list_payments(
        client_id=clientId,
        provider=provider_code,
        status=status_code,
        limit=limit,
        offset=offset
    )


@app.post("/webhooks/revenuecat")
async def revenuecat_webhook(request: Request, authorization: Optional[str] = Header(None)):
    """
    RevenueCat events. The raw body is audit-logged before it is authorized
    or interpreted, including bodies that are not valid JSON.
    """

    raw = await request.body()
    try:
        payload: Any = json.loads(raw) if raw else {}
    except ValueError:
        payload = {"unparsed": raw.decode("utf-8", errors="replace")}

    return await payments.handle_revenuecat_webhook(payload, authorized=_webhook_authorized(authorization))


@app.post("/admin/clients/{client_id}/mock-trial-expired")
async def mock_trial_expired(
    client_id: str,
    days: int = Query(8, ge=1),
    x_admin_key: Optional[str] = Header(None)
):
    """
    Admin/test-only: delete the client's payments and move the main session
    back so the trial reads as expired.
    """
    _require_admin_key(x_admin_key)
    return await session_manager.mock_expire_trial(client_id, days=days)
