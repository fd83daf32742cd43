"""Message fan-out, delivery promotion, and recipient visibility.

Every message row addresses exactly one recipient. Messages for people who
already have an attendee account are written ``delivered``; messages for
invitees are written ``queued`` against the invite and promoted to
``delivered`` once the invite is accepted. Recipient-facing listings only
ever return ``delivered`` rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .audience import normalize_audience, resolve_audience
from .config import Settings
from .crud import get_attendee, get_event, get_invite
from .models import (
    DELIVERY_DELIVERED,
    DELIVERY_QUEUED,
    Attendee,
    Event,
    Invite,
    Message,
)
from .utils import utcnow

# Use uvicorn's error logger so messaging lines show up with level prefixes.
logger = logging.getLogger("uvicorn.error")

EDITABLE_FIELDS = {"title", "body", "attachments", "status", "unread"}


class MessagingError(Exception):
    """Base class for messaging failures."""


class NotFound(MessagingError):
    """Raised when a referenced event, attendee, invite, or message is missing."""


class InvalidRecipientSpecification(MessagingError):
    """Raised when a message names both an attendee and an invite."""


class PartialFanoutFailure(MessagingError):
    """A single recipient write that failed inside a broadcast."""

    def __init__(self, *, recipient_kind: str, recipient_id: str, reason: str):
        super().__init__(
            f"Could not create message for {recipient_kind} {recipient_id}: {reason}"
        )
        self.recipient_kind = recipient_kind
        self.recipient_id = recipient_id
        self.reason = reason


@dataclass(frozen=True)
class Direct:
    """A single recipient that already has an attendee account."""

    attendee_id: str


@dataclass(frozen=True)
class Deferred:
    """A single invitee whose message waits for acceptance."""

    invite_id: str


@dataclass(frozen=True)
class Broadcast:
    """Every recipient matched by an audience selector."""

    audience: str = "all"


RecipientTarget = Union[Direct, Deferred, Broadcast]


def recipient_target(
    *,
    attendee_id: str | None = None,
    invite_id: str | None = None,
    audience: str | None = None,
) -> RecipientTarget:
    """Build the recipient variant from the optional request fields."""
    attendee_id = (attendee_id or "").strip() or None
    invite_id = (invite_id or "").strip() or None
    if attendee_id and invite_id:
        raise InvalidRecipientSpecification(
            "Provide either attendee_id or invite_id, not both"
        )
    if attendee_id:
        return Direct(attendee_id=attendee_id)
    if invite_id:
        return Deferred(invite_id=invite_id)
    try:
        return Broadcast(audience=normalize_audience(audience))
    except ValueError as exc:
        raise InvalidRecipientSpecification(str(exc)) from exc


@dataclass(frozen=True)
class MessagePayload:
    title: str
    body: str
    target: RecipientTarget = field(default_factory=Broadcast)
    attachments: list[Any] = field(default_factory=list)
    status: str = "sent"


@dataclass(frozen=True)
class FanoutPolicy:
    """How a broadcast reacts to a recipient write failing.

    Best effort (the default) isolates every recipient in its own savepoint
    and keeps going; atomic lets the first failure abort the broadcast so the
    surrounding transaction rolls back.
    """

    atomic: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "FanoutPolicy":
        return cls(atomic=settings.fanout_mode == "atomic")

    @property
    def mode(self) -> str:
        return "atomic" if self.atomic else "best_effort"


@dataclass
class FanoutReport:
    created: list[Message] = field(default_factory=list)
    failures: list[PartialFanoutFailure] = field(default_factory=list)

    @property
    def representative(self) -> Message | None:
        return self.created[0] if self.created else None

    @property
    def delivered_count(self) -> int:
        return sum(1 for m in self.created if m.delivery_state == DELIVERY_DELIVERED)

    @property
    def queued_count(self) -> int:
        return sum(1 for m in self.created if m.delivery_state == DELIVERY_QUEUED)


def _new_message(
    *,
    event_id: str,
    payload: MessagePayload,
    attendee: Attendee | None = None,
    invite: Invite | None = None,
) -> Message:
    now = utcnow()
    delivered = attendee is not None
    return Message(
        event_id=event_id,
        attendee_id=attendee.id if attendee is not None else None,
        invite_id=invite.id if invite is not None and not delivered else None,
        title=payload.title,
        body=payload.body,
        attachments=list(payload.attachments or []),
        status=payload.status or "sent",
        delivery_state=DELIVERY_DELIVERED if delivered else DELIVERY_QUEUED,
        delivered_at=now if delivered else None,
        unread=True,
        created_at=now,
        last_modified=now,
    )


def promote_queued_messages(session: Session, invite_id: str, attendee_id: str) -> int:
    """Deliver every message queued for ``invite_id`` to ``attendee_id``.

    One conditional UPDATE; a repeated or concurrent call for the same invite
    matches no queued rows and returns 0.
    """
    now = utcnow()
    stmt = (
        update(Message)
        .where(
            Message.invite_id == invite_id,
            Message.delivery_state == DELIVERY_QUEUED,
        )
        .values(
            attendee_id=attendee_id,
            delivery_state=DELIVERY_DELIVERED,
            delivered_at=now,
            last_modified=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    result = session.execute(stmt)
    promoted = result.rowcount or 0
    if promoted:
        logger.info(
            "Promoted %d queued messages for invite %s to attendee %s",
            promoted,
            invite_id,
            attendee_id,
        )
    else:
        logger.debug("No queued messages to promote for invite %s", invite_id)
    return promoted


def visible_messages_query(event_id: str, attendee_id: str | None = None):
    """Select statement for recipient-visible messages, newest first."""
    stmt = select(Message).where(
        Message.event_id == event_id,
        Message.delivery_state == DELIVERY_DELIVERED,
    )
    if attendee_id:
        stmt = stmt.where(Message.attendee_id == attendee_id)
    return stmt.order_by(Message.created_at.desc(), Message.id.desc())


class MessagingService:
    """Message operations bound to one session and one fan-out policy."""

    def __init__(self, session: Session, *, policy: FanoutPolicy | None = None):
        self.session = session
        self.policy = policy or FanoutPolicy()

    def _require_event(self, event_id: str) -> Event:
        event = get_event(self.session, event_id)
        if not event:
            raise NotFound(f"Event {event_id} not found")
        return event

    def _persist(self, message: Message, *, kind: str, recipient_id: str) -> bool:
        if self.policy.atomic:
            self.session.add(message)
            try:
                self.session.flush()
            except SQLAlchemyError as exc:
                raise PartialFanoutFailure(
                    recipient_kind=kind, recipient_id=recipient_id, reason=str(exc)
                ) from exc
            return True
        try:
            with self.session.begin_nested():
                self.session.add(message)
        except SQLAlchemyError:
            logger.exception(
                "Message creation failed for %s %s; continuing broadcast",
                kind,
                recipient_id,
            )
            return False
        return True

    def fan_out(self, event_id: str, payload: MessagePayload) -> FanoutReport:
        """Create one message per recipient named by ``payload.target``."""
        self._require_event(event_id)
        target = payload.target
        report = FanoutReport()

        if isinstance(target, Direct):
            attendee = get_attendee(self.session, event_id, target.attendee_id)
            if not attendee:
                raise NotFound(f"Attendee {target.attendee_id} not found")
            message = _new_message(event_id=event_id, payload=payload, attendee=attendee)
            self.session.add(message)
            self.session.flush()
            report.created.append(message)
            return report

        if isinstance(target, Deferred):
            invite = get_invite(self.session, event_id, target.invite_id)
            if not invite:
                raise NotFound(f"Invite {target.invite_id} not found")
            message = _new_message(event_id=event_id, payload=payload, invite=invite)
            self.session.add(message)
            self.session.flush()
            report.created.append(message)
            return report

        if not isinstance(target, Broadcast):
            raise InvalidRecipientSpecification(f"Unsupported recipient {target!r}")

        resolution = resolve_audience(self.session, event_id, target.audience)
        if resolution.is_empty:
            logger.info(
                "Broadcast for event %s (audience=%s) matched no recipients",
                event_id,
                target.audience,
            )
            return report

        for attendee in resolution.attendees:
            message = _new_message(event_id=event_id, payload=payload, attendee=attendee)
            self._record(report, message, kind="attendee", recipient_id=attendee.id)
        for invite in resolution.invites:
            message = _new_message(event_id=event_id, payload=payload, invite=invite)
            self._record(report, message, kind="invite", recipient_id=invite.id)

        logger.info(
            "Broadcast for event %s (audience=%s, mode=%s): %d delivered, %d queued, %d failed",
            event_id,
            target.audience,
            self.policy.mode,
            report.delivered_count,
            report.queued_count,
            len(report.failures),
        )
        return report

    def _record(
        self, report: FanoutReport, message: Message, *, kind: str, recipient_id: str
    ) -> None:
        if self._persist(message, kind=kind, recipient_id=recipient_id):
            report.created.append(message)
            return
        report.failures.append(
            PartialFanoutFailure(
                recipient_kind=kind,
                recipient_id=recipient_id,
                reason="database error",
            )
        )

    def create_broadcast(self, event_id: str, payload: MessagePayload) -> Message | None:
        """Fan out ``payload`` and return the first created message, if any."""
        return self.fan_out(event_id, payload).representative

    def promote_queued_messages(self, invite_id: str, attendee_id: str) -> int:
        return promote_queued_messages(self.session, invite_id, attendee_id)

    def list_visible_messages(
        self, event_id: str, attendee_id: str | None = None
    ) -> Sequence[Message]:
        """Delivered messages for the event, optionally for one attendee."""
        return self.session.scalars(visible_messages_query(event_id, attendee_id)).all()

    def count_event_messages(self, event_id: str) -> int:
        return (
            self.session.scalar(
                select(func.count())
                .select_from(Message)
                .where(Message.event_id == event_id)
            )
            or 0
        )

    def list_event_messages(
        self, event_id: str, *, offset: int = 0, limit: int | None = None
    ) -> Sequence[Message]:
        """Organizer view: every message of the event in any delivery state."""
        self._require_event(event_id)
        stmt = (
            select(Message)
            .where(Message.event_id == event_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset(offset)
        )
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def get_message(
        self, event_id: str, message_id: str, *, visible_only: bool = False
    ) -> Message:
        stmt = select(Message).where(
            Message.id == message_id, Message.event_id == event_id
        )
        if visible_only:
            stmt = stmt.where(Message.delivery_state == DELIVERY_DELIVERED)
        message = self.session.scalars(stmt).first()
        if not message:
            raise NotFound(f"Message {message_id} not found")
        return message

    def update_message(self, event_id: str, message_id: str, **changes: Any) -> Message:
        """Edit content fields; delivery state and recipients are not editable."""
        message = self.get_message(event_id, message_id)
        for key, value in changes.items():
            if key not in EDITABLE_FIELDS or value is None:
                continue
            setattr(message, key, value)
        message.last_modified = utcnow()
        self.session.add(message)
        self.session.flush()
        return message

    def acknowledge_message(self, event_id: str, message_id: str) -> Message:
        message = self.get_message(event_id, message_id, visible_only=True)
        message.unread = False
        message.last_modified = utcnow()
        self.session.add(message)
        self.session.flush()
        return message

    def delete_message(self, event_id: str, message_id: str) -> None:
        message = self.get_message(event_id, message_id)
        self.session.delete(message)
        self.session.flush()
