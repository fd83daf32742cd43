"""FastAPI application for OpenBroadcast."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any
import tomllib

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .acceptance import accept_invite
from .config import settings
from .crud import (
    create_attendee,
    create_event,
    create_invite,
    get_event,
    get_event_attendees,
    get_event_invites,
    get_invite,
)
from .database import SessionLocal
from .messaging import (
    FanoutPolicy,
    InvalidRecipientSpecification,
    MessagePayload,
    MessagingService,
    NotFound,
    PartialFanoutFailure,
    recipient_target,
)
from .models import Attendee, Event, Invite, Message, Meta
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .utils import utcnow

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("openbroadcast")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()
MESSAGES_PER_PAGE = settings.messages_per_page


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.fanout_policy = FanoutPolicy.from_settings(settings)
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="OpenBroadcast", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_messaging(request: Request, db: Session = Depends(get_db)) -> MessagingService:
    policy = getattr(request.app.state, "fanout_policy", None)
    return MessagingService(db, policy=policy or FanoutPolicy.from_settings(settings))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(InvalidRecipientSpecification)
async def invalid_recipient_handler(
    request: Request, exc: InvalidRecipientSpecification
):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(PartialFanoutFailure)
async def fanout_failure_handler(request: Request, exc: PartialFanoutFailure):
    logger.error(
        "Broadcast aborted on %s %s: %s", request.method, request.url.path, exc
    )
    return JSONResponse(
        {
            "detail": "The broadcast was not sent; no messages were created.",
            "recipient_kind": exc.recipient_kind,
            "recipient_id": exc.recipient_id,
        },
        status_code=500,
    )


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        return JSONResponse(
            {
                "detail": "The database is busy at the moment. Please wait a few seconds and try again."
            },
            status_code=503,
        )
    logger.error(
        "Operational database error on %s %s: %s",
        request.method,
        request.url.path,
        raw,
    )
    return JSONResponse(
        {"detail": "We hit a database issue. Please try again."}, status_code=500
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


def _get_bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _fetch_root_token_in_session(db: Session) -> str | None:
    meta = db.get(Meta, settings.root_token_key)
    return meta.value if meta else None


def _ensure_event(db: Session, event_id: str) -> Event:
    event = get_event(db, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _require_admin_header(event: Event, request: Request, db: Session) -> str:
    token = _get_bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    if token == event.admin_token:
        return token
    root_token = _fetch_root_token_in_session(db)
    if root_token and token == root_token:
        return token
    raise HTTPException(status_code=403, detail="Invalid admin token")


def _build_pagination(*, page: int, per_page: int, total: int) -> dict[str, Any]:
    total_pages = max(1, (total + per_page - 1) // per_page) if total else 1
    page = max(1, min(page, total_pages)) if total else 1
    return {
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "total": total,
        "has_prev": page > 1,
        "has_next": page < total_pages and total > 0,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < total_pages and total > 0 else None,
    }


def _isoformat(value) -> str | None:
    return value.isoformat() if value else None


def _serialize_event(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "created_at": _isoformat(event.created_at),
    }


def _serialize_attendee(attendee: Attendee) -> dict[str, Any]:
    return {
        "id": attendee.id,
        "event_id": attendee.event_id,
        "email": attendee.email,
        "first_name": attendee.first_name,
        "last_name": attendee.last_name,
        "accepted_at": _isoformat(attendee.accepted_at),
        "created_at": _isoformat(attendee.created_at),
    }


def _serialize_invite(invite: Invite) -> dict[str, Any]:
    return {
        "id": invite.id,
        "event_id": invite.event_id,
        "email": invite.email,
        "first_name": invite.first_name,
        "last_name": invite.last_name,
        "status": invite.status,
        "accepted_at": _isoformat(invite.accepted_at),
        "created_at": _isoformat(invite.created_at),
    }


def _serialize_message(message: Message, *, include_delivery: bool = True):
    payload = {
        "id": message.id,
        "event_id": message.event_id,
        "attendee_id": message.attendee_id,
        "title": message.title,
        "body": message.body,
        "attachments": message.attachments or [],
        "status": message.status,
        "unread": message.unread,
        "created_at": _isoformat(message.created_at),
        "updated_at": _isoformat(message.last_modified),
    }
    if include_delivery:
        payload.update(
            {
                "invite_id": message.invite_id,
                "delivery_state": message.delivery_state,
                "delivered_at": _isoformat(message.delivered_at),
            }
        )
    return payload


class EventCreatePayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)


class AttendeeCreatePayload(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    first_name: str | None = None
    last_name: str | None = None
    accepted: bool = False


class InviteCreatePayload(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    first_name: str | None = None
    last_name: str | None = None
    status: str | None = None


class MessageCreatePayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    body: str
    attachments: list[Any] = Field(default_factory=list)
    status: str | None = None
    audience: str | None = Field(
        None, description="all, invited, or accepted; ignored for single recipients"
    )
    attendee_id: str | None = None
    invite_id: str | None = None


class MessageUpdatePayload(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=255)
    body: str | None = None
    attachments: list[Any] | None = None
    status: str | None = None
    unread: bool | None = None


# -------- JSON API (v1) --------


@app.post("/api/v1/events", status_code=201)
def api_create_event(payload: EventCreatePayload, db: Session = Depends(get_db)):
    event = create_event(db, title=payload.title.strip())
    return {"event": _serialize_event(event), "admin_token": event.admin_token}


@app.post("/api/v1/events/{event_id}/attendees", status_code=201)
def api_create_attendee(
    event_id: str,
    payload: AttendeeCreatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_admin_header(event, request, db)
    try:
        attendee = create_attendee(
            db,
            event=event,
            email=payload.email,
            first_name=payload.first_name,
            last_name=payload.last_name,
            accepted_at=utcnow() if payload.accepted else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"attendee": _serialize_attendee(attendee)}


@app.post("/api/v1/events/{event_id}/invites", status_code=201)
def api_create_invite(
    event_id: str,
    payload: InviteCreatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_admin_header(event, request, db)
    try:
        invite = create_invite(
            db,
            event=event,
            email=payload.email,
            first_name=payload.first_name,
            last_name=payload.last_name,
            status=payload.status,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"invite": _serialize_invite(invite)}


@app.get("/api/v1/events/{event_id}/attendees")
def api_list_attendees(event_id: str, request: Request, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    _require_admin_header(event, request, db)
    attendees = get_event_attendees(db, event.id)
    return {"attendees": [_serialize_attendee(a) for a in attendees]}


@app.get("/api/v1/events/{event_id}/invites")
def api_list_invites(event_id: str, request: Request, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    _require_admin_header(event, request, db)
    invites = get_event_invites(db, event.id)
    return {"invites": [_serialize_invite(i) for i in invites]}


@app.post("/api/v1/events/{event_id}/invites/{invite_id}/accept")
def api_accept_invite(event_id: str, invite_id: str, db: Session = Depends(get_db)):
    _ensure_event(db, event_id)
    invite = get_invite(db, event_id, invite_id)
    if not invite:
        raise HTTPException(status_code=404, detail="Invite not found")
    result = accept_invite(db, invite)
    return {
        "invite": _serialize_invite(result.invite),
        "attendee": _serialize_attendee(result.attendee),
        "promoted": result.promoted,
        "already_accepted": result.already_accepted,
    }


@app.post("/api/v1/events/{event_id}/messages", status_code=201)
def api_create_message(
    event_id: str,
    payload: MessageCreatePayload,
    request: Request,
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging),
):
    event = _ensure_event(db, event_id)
    _require_admin_header(event, request, db)
    target = recipient_target(
        attendee_id=payload.attendee_id,
        invite_id=payload.invite_id,
        audience=payload.audience,
    )
    report = messaging.fan_out(
        event.id,
        MessagePayload(
            title=payload.title,
            body=payload.body,
            target=target,
            attachments=payload.attachments,
            status=payload.status or "sent",
        ),
    )
    representative = report.representative
    return {
        "message": _serialize_message(representative) if representative else None,
        "created": len(report.created),
        "delivered": report.delivered_count,
        "queued": report.queued_count,
        "failed": len(report.failures),
    }


@app.get("/api/v1/events/{event_id}/messages")
def api_list_messages(
    event_id: str,
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(MESSAGES_PER_PAGE, ge=1, le=100),
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging),
):
    event = _ensure_event(db, event_id)
    _require_admin_header(event, request, db)
    total = messaging.count_event_messages(event.id)
    pagination = _build_pagination(page=page, per_page=per_page, total=total)
    offset = (pagination["page"] - 1) * per_page
    messages = messaging.list_event_messages(event.id, offset=offset, limit=per_page)
    return {
        "messages": [_serialize_message(m) for m in messages],
        "pagination": pagination,
    }


@app.get("/api/v1/events/{event_id}/messages/{message_id}")
def api_get_message(
    event_id: str,
    message_id: str,
    request: Request,
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging),
):
    event = _ensure_event(db, event_id)
    _require_admin_header(event, request, db)
    return {"message": _serialize_message(messaging.get_message(event.id, message_id))}


@app.patch("/api/v1/events/{event_id}/messages/{message_id}")
def api_update_message(
    event_id: str,
    message_id: str,
    payload: MessageUpdatePayload,
    request: Request,
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging),
):
    event = _ensure_event(db, event_id)
    _require_admin_header(event, request, db)
    message = messaging.update_message(
        event.id, message_id, **payload.model_dump(exclude_unset=True)
    )
    return {"message": _serialize_message(message)}


@app.delete("/api/v1/events/{event_id}/messages/{message_id}", status_code=204)
def api_delete_message(
    event_id: str,
    message_id: str,
    request: Request,
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging),
):
    event = _ensure_event(db, event_id)
    _require_admin_header(event, request, db)
    messaging.delete_message(event.id, message_id)
    return Response(status_code=204)


# -------- Recipient-facing (mobile) API --------


@app.get("/api/v1/events/{event_id}/mobile-messages")
def api_list_mobile_messages(
    event_id: str,
    attendee_id: str | None = Query(None),
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging),
):
    event = _ensure_event(db, event_id)
    messages = messaging.list_visible_messages(event.id, attendee_id)
    return {
        "messages": [
            _serialize_message(m, include_delivery=False) for m in messages
        ],
        "total": len(messages),
    }


@app.get("/api/v1/events/{event_id}/mobile-messages/{message_id}")
def api_get_mobile_message(
    event_id: str,
    message_id: str,
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging),
):
    event = _ensure_event(db, event_id)
    message = messaging.get_message(event.id, message_id, visible_only=True)
    return {"message": _serialize_message(message, include_delivery=False)}


@app.post("/api/v1/events/{event_id}/mobile-messages/{message_id}/acknowledge")
def api_acknowledge_mobile_message(
    event_id: str,
    message_id: str,
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging),
):
    event = _ensure_event(db, event_id)
    messaging.acknowledge_message(event.id, message_id)
    return {"ok": True}
