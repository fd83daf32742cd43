"""CRUD helpers for events, attendees, and invites."""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import INVITE_STATUSES, Attendee, Event, Invite
from .utils import display_name_from_email, normalize_email, utcnow


def _now() -> datetime:
    return utcnow()


def _normalize_invite_status(status: str | None) -> str:
    normalized = (status or "").strip().lower() or "pending"
    if normalized not in INVITE_STATUSES:
        raise ValueError("Invalid invite status")
    return normalized


def create_event(session: Session, *, title: str) -> Event:
    """Create and persist a new event."""
    event = Event(
        admin_token=secrets.token_urlsafe(32),
        title=title,
        created_at=_now(),
    )
    session.add(event)
    session.flush()
    return event


def get_event(session: Session, event_id: str) -> Event | None:
    return session.get(Event, event_id)


def get_attendee(session: Session, event_id: str, attendee_id: str) -> Attendee | None:
    stmt = select(Attendee).where(
        Attendee.id == attendee_id, Attendee.event_id == event_id
    )
    return session.scalars(stmt).first()


def get_attendee_by_email(session: Session, event_id: str, email: str) -> Attendee | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    stmt = select(Attendee).where(
        Attendee.event_id == event_id, func.lower(Attendee.email) == normalized
    )
    return session.scalars(stmt).first()


def get_event_attendees(session: Session, event_id: str) -> Sequence[Attendee]:
    stmt = (
        select(Attendee)
        .where(Attendee.event_id == event_id)
        .order_by(Attendee.created_at.asc())
    )
    return session.scalars(stmt).all()


def create_attendee(
    session: Session,
    *,
    event: Event,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    accepted_at: datetime | None = None,
) -> Attendee:
    """Create an attendee; emails are unique per event."""
    normalized = normalize_email(email)
    if not normalized:
        raise ValueError("Email is required")
    if get_attendee_by_email(session, event.id, normalized):
        raise ValueError("Attendee already exists for this email")
    attendee = Attendee(
        event=event,
        email=normalized,
        first_name=first_name,
        last_name=last_name,
        accepted_at=accepted_at,
    )
    session.add(attendee)
    session.flush()
    return attendee


def get_invite(session: Session, event_id: str, invite_id: str) -> Invite | None:
    stmt = select(Invite).where(Invite.id == invite_id, Invite.event_id == event_id)
    return session.scalars(stmt).first()


def get_event_invites(session: Session, event_id: str) -> Sequence[Invite]:
    stmt = (
        select(Invite)
        .where(Invite.event_id == event_id)
        .order_by(Invite.created_at.asc())
    )
    return session.scalars(stmt).all()


def create_invite(
    session: Session,
    *,
    event: Event,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    status: str | None = None,
) -> Invite:
    """Create an invite for an email address."""
    normalized = normalize_email(email)
    if not normalized:
        raise ValueError("Email is required")
    normalized_status = _normalize_invite_status(status)
    invite = Invite(
        event=event,
        email=normalized,
        first_name=first_name,
        last_name=last_name,
        status=normalized_status,
        accepted_at=_now() if normalized_status == "accepted" else None,
    )
    session.add(invite)
    session.flush()
    return invite


def ensure_attendee_for_invite(session: Session, invite: Invite) -> Attendee:
    """Return the invitee's attendee record, creating it from invite data."""
    attendee = get_attendee_by_email(session, invite.event_id, invite.email)
    if attendee:
        return attendee
    attendee = Attendee(
        event_id=invite.event_id,
        email=normalize_email(invite.email),
        first_name=invite.first_name or display_name_from_email(invite.email),
        last_name=invite.last_name or "",
    )
    session.add(attendee)
    session.flush()
    return attendee


def mark_invite_accepted(
    session: Session, invite: Invite, attendee: Attendee
) -> Invite:
    """Record acceptance on both the invite and the attendee."""
    now = _now()
    invite.status = "accepted"
    invite.accepted_at = invite.accepted_at or now
    invite.last_modified = now
    if attendee.accepted_at is None:
        attendee.accepted_at = now
        attendee.last_modified = now
    session.add_all([invite, attendee])
    session.flush()
    return invite
