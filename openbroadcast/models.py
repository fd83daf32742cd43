"""SQLAlchemy models for OpenBroadcast."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

DELIVERY_DELIVERED = "delivered"
DELIVERY_QUEUED = "queued"

INVITE_STATUSES = {"pending", "sent", "accepted", "declined"}


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    admin_token = Column(String(128), nullable=False, unique=True)
    title = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    attendees = relationship(
        "Attendee", back_populates="event", cascade="all, delete-orphan"
    )
    invites = relationship("Invite", back_populates="event", cascade="all, delete-orphan")
    messages = relationship(
        "Message",
        back_populates="event",
        cascade="all, delete",
        passive_deletes=True,
        order_by="desc(Message.created_at)",
    )


class Attendee(Base):
    __tablename__ = "attendees"
    __table_args__ = (UniqueConstraint("event_id", "email", name="uq_attendee_email"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    email = Column(String(320), nullable=False)
    first_name = Column(String(120), nullable=True)
    last_name = Column(String(120), nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="attendees")


class Invite(Base):
    __tablename__ = "invites"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    email = Column(String(320), nullable=False)
    first_name = Column(String(120), nullable=True)
    last_name = Column(String(120), nullable=True)
    status = Column(String(16), nullable=False, default="pending")
    accepted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="invites")


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "delivery_state IN ('delivered', 'queued')", name="ck_message_delivery_state"
        ),
        CheckConstraint(
            "delivery_state != 'queued' OR (invite_id IS NOT NULL AND attendee_id IS NULL)",
            name="ck_message_queued_recipient",
        ),
        CheckConstraint(
            "delivery_state != 'delivered' OR delivered_at IS NOT NULL",
            name="ck_message_delivered_at",
        ),
        Index("ix_messages_invite_delivery", "invite_id", "delivery_state"),
        Index("ix_messages_event_created", "event_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    attendee_id = Column(
        String(36), ForeignKey("attendees.id", ondelete="CASCADE"), nullable=True
    )
    invite_id = Column(String(36), ForeignKey("invites.id"), nullable=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    attachments = Column(JSON, nullable=False, default=list)
    status = Column(String(32), nullable=False, default="sent")
    delivery_state = Column(String(16), nullable=False, default=DELIVERY_QUEUED)
    unread = Column(Boolean, nullable=False, default=True)
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="messages")
    attendee = relationship("Attendee")
    invite = relationship("Invite")
