"""Reconciliation sweep for queued messages.

Acceptance normally promotes queued messages in the same transaction. The
sweep catches invites that were marked accepted some other way (imports,
manual edits) and still hold queued messages.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from .crud import get_attendee_by_email
from .database import get_session
from .messaging import promote_queued_messages
from .models import DELIVERY_QUEUED, Invite, Message

# Use uvicorn's error logger so sweep messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")

RECONCILE_BATCH_SIZE = 200


def run_reconcile_cycle() -> dict:
    """Promote queued messages whose invite is already accepted."""
    stats = {
        "invites_checked": 0,
        "invites_promoted": 0,
        "messages_promoted": 0,
        "invites_skipped": 0,
        "batches": 0,
    }
    logger.info("Reconcile cycle started")

    with get_session() as session:
        pending_invites = (
            select(Invite)
            .where(
                Invite.status == "accepted",
                Invite.id.in_(
                    select(Message.invite_id).where(
                        Message.delivery_state == DELIVERY_QUEUED
                    )
                ),
            )
            .order_by(Invite.id)
        )
        last_seen: str | None = None
        while True:
            query = pending_invites
            if last_seen:
                query = query.where(Invite.id > last_seen)
            batch = session.scalars(query.limit(RECONCILE_BATCH_SIZE)).all()
            if not batch:
                break
            for invite in batch:
                stats["invites_checked"] += 1
                attendee = get_attendee_by_email(session, invite.event_id, invite.email)
                if not attendee:
                    logger.warning(
                        "Invite %s is accepted but has no attendee for %s; leaving messages queued",
                        invite.id,
                        invite.email,
                    )
                    stats["invites_skipped"] += 1
                    continue
                promoted = promote_queued_messages(session, invite.id, attendee.id)
                if promoted:
                    stats["invites_promoted"] += 1
                    stats["messages_promoted"] += promoted
            last_seen = batch[-1].id
            stats["batches"] += 1
            session.commit()

    logger.info(
        "Reconcile cycle finished: checked=%d, promoted invites=%d, messages=%d, skipped=%d across %d batches",
        stats["invites_checked"],
        stats["invites_promoted"],
        stats["messages_promoted"],
        stats["invites_skipped"],
        stats["batches"],
    )
    return stats
