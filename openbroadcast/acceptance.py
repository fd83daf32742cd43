"""Invite acceptance workflow."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from .crud import ensure_attendee_for_invite, mark_invite_accepted
from .messaging import promote_queued_messages
from .models import Attendee, Invite

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class AcceptanceResult:
    invite: Invite
    attendee: Attendee
    promoted: int
    already_accepted: bool = False


def accept_invite(session: Session, invite: Invite) -> AcceptanceResult:
    """Accept ``invite`` and release the messages queued for it.

    The attendee is resolved (or created from the invite) and flushed before
    promotion so delivered messages always reference a persisted attendee.
    An already-accepted invite still has anything queued against it
    delivered; promotion only touches queued rows, so repeats return 0.
    """
    attendee = ensure_attendee_for_invite(session, invite)
    if invite.status == "accepted":
        if attendee.accepted_at is None:
            mark_invite_accepted(session, invite, attendee)
        promoted = promote_queued_messages(session, invite.id, attendee.id)
        return AcceptanceResult(
            invite=invite, attendee=attendee, promoted=promoted, already_accepted=True
        )

    mark_invite_accepted(session, invite, attendee)
    promoted = promote_queued_messages(session, invite.id, attendee.id)
    logger.info(
        "Invite %s accepted by attendee %s; %d queued messages delivered",
        invite.id,
        attendee.id,
        promoted,
    )
    return AcceptanceResult(invite=invite, attendee=attendee, promoted=promoted)
