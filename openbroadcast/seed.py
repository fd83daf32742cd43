"""Development helpers for populating fake events, attendees, and invites."""

from __future__ import annotations

import random

from faker import Faker
from sqlalchemy.orm import Session

from .crud import create_attendee, create_event, create_invite
from .database import get_session
from .models import Event
from .storage import init_db
from .utils import utcnow

_event_types = [
    "Summit",
    "Offsite",
    "Conference",
    "Retreat",
    "Workshop",
    "Gala",
]
_invite_statuses = ["pending", "pending", "sent", "accepted"]


def seed_fake_data(
    *,
    event_count: int = 2,
    max_attendees_per_event: int = 5,
    max_invites_per_event: int = 5,
) -> dict[str, int]:
    """Populate the SQLite database with synthetic events and recipients."""
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_attendees_per_event < 0:
        raise ValueError("max_attendees_per_event must be >= 0")
    if max_invites_per_event < 0:
        raise ValueError("max_invites_per_event must be >= 0")

    init_db()
    fake = Faker()
    stats = {"events": 0, "attendees": 0, "invites": 0}

    with get_session() as session:
        for _ in range(event_count):
            event = create_event(
                session, title=f"{fake.city()} {random.choice(_event_types)}"
            )
            stats["events"] += 1
            stats["attendees"] += _create_attendees(
                session, fake, event, max_attendees_per_event
            )
            stats["invites"] += _create_invites(
                session, fake, event, max_invites_per_event
            )

    return stats


def _create_attendees(session: Session, fake: Faker, event: Event, limit: int) -> int:
    if limit <= 0:
        return 0
    total = random.randint(0, limit)
    for _ in range(total):
        create_attendee(
            session,
            event=event,
            email=fake.unique.email(),
            first_name=fake.first_name(),
            last_name=fake.last_name(),
            accepted_at=utcnow() if random.random() < 0.5 else None,
        )
    return total


def _create_invites(session: Session, fake: Faker, event: Event, limit: int) -> int:
    if limit <= 0:
        return 0
    total = random.randint(0, limit)
    for _ in range(total):
        create_invite(
            session,
            event=event,
            email=fake.unique.email(),
            first_name=fake.first_name(),
            last_name=fake.last_name(),
            status=random.choice(_invite_statuses),
        )
    return total
