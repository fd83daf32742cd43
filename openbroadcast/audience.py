"""Audience resolution for event broadcasts.

A broadcast names an audience selector rather than individual recipients.
Resolution turns the selector into two target lists:

* ``attendees``: people with an account who receive the message immediately.
* ``invites``: invitations whose message is queued until the invite is
  accepted.

Resolution is read-only; an empty result is valid and simply produces an
empty fan-out.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .models import Attendee, Invite

AUDIENCE_ALL = "all"
AUDIENCE_INVITED = "invited"
AUDIENCE_ACCEPTED = "accepted"
AUDIENCES = {AUDIENCE_ALL, AUDIENCE_INVITED, AUDIENCE_ACCEPTED}


@dataclass(frozen=True)
class AudienceResolution:
    attendees: list[Attendee] = field(default_factory=list)
    invites: list[Invite] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.attendees and not self.invites

    @property
    def total(self) -> int:
        return len(self.attendees) + len(self.invites)


def normalize_audience(raw: str | None) -> str:
    """Return a valid audience selector; ``None`` or blank means ``all``."""
    normalized = (raw or "").strip().lower() or AUDIENCE_ALL
    if normalized not in AUDIENCES:
        raise ValueError(f"Invalid audience {raw!r}")
    return normalized


def _all_attendees(session: Session, event_id: str) -> list[Attendee]:
    stmt = (
        select(Attendee)
        .where(Attendee.event_id == event_id)
        .order_by(Attendee.created_at.asc(), Attendee.id.asc())
    )
    return list(session.scalars(stmt).all())


def _accepted_attendees(session: Session, event_id: str) -> list[Attendee]:
    # Either signal counts: an accepted invite for the email, or accepted_at on
    # the attendee itself.
    accepted_invite_emails = select(func.lower(Invite.email)).where(
        Invite.event_id == event_id, Invite.status == "accepted"
    )
    stmt = (
        select(Attendee)
        .where(
            Attendee.event_id == event_id,
            or_(
                Attendee.accepted_at.is_not(None),
                func.lower(Attendee.email).in_(accepted_invite_emails),
            ),
        )
        .order_by(Attendee.created_at.asc(), Attendee.id.asc())
    )
    return list(session.scalars(stmt).all())


def _event_invites(session: Session, event_id: str) -> list[Invite]:
    stmt = (
        select(Invite)
        .where(Invite.event_id == event_id)
        .order_by(Invite.created_at.asc(), Invite.id.asc())
    )
    return list(session.scalars(stmt).all())


def resolve_audience(
    session: Session, event_id: str, audience: str | None = None
) -> AudienceResolution:
    """Resolve ``audience`` for ``event_id`` into delivery and queue targets."""
    selector = normalize_audience(audience)

    if selector == AUDIENCE_ACCEPTED:
        return AudienceResolution(attendees=_accepted_attendees(session, event_id))

    if selector == AUDIENCE_INVITED:
        return AudienceResolution(invites=_event_invites(session, event_id))

    # Attendees and invites are resolved independently of each other.
    return AudienceResolution(
        attendees=_all_attendees(session, event_id),
        invites=_event_invites(session, event_id),
    )
