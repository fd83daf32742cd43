from __future__ import annotations

import pytest

from openbroadcast.acceptance import accept_invite
from openbroadcast.crud import (
    create_attendee,
    create_event,
    create_invite,
    ensure_attendee_for_invite,
    get_attendee_by_email,
    get_invite,
)


def test_create_attendee_normalizes_email(session):
    event = create_event(session, title="Summit")
    attendee = create_attendee(session, event=event, email="  Alice@Example.COM ")
    session.commit()
    assert attendee.email == "alice@example.com"
    assert get_attendee_by_email(session, event.id, "ALICE@example.com").id == attendee.id


def test_attendee_email_unique_per_event(session):
    event = create_event(session, title="Summit")
    other = create_event(session, title="Retreat")
    create_attendee(session, event=event, email="bob@example.com")
    with pytest.raises(ValueError):
        create_attendee(session, event=event, email="BOB@example.com")
    # Same email in another event is fine.
    create_attendee(session, event=other, email="bob@example.com")


def test_create_invite_rejects_unknown_status(session):
    event = create_event(session, title="Summit")
    with pytest.raises(ValueError):
        create_invite(session, event=event, email="x@example.com", status="maybe")


def test_create_invite_accepted_sets_timestamp(session):
    event = create_event(session, title="Summit")
    invite = create_invite(
        session, event=event, email="x@example.com", status="accepted"
    )
    assert invite.accepted_at is not None
    pending = create_invite(session, event=event, email="y@example.com")
    assert pending.status == "pending"
    assert pending.accepted_at is None


def test_get_invite_scoped_to_event(session):
    event = create_event(session, title="Summit")
    other = create_event(session, title="Retreat")
    invite = create_invite(session, event=event, email="x@example.com")
    session.commit()
    assert get_invite(session, event.id, invite.id) is not None
    assert get_invite(session, other.id, invite.id) is None


def test_ensure_attendee_for_invite_creates_from_invite_data(session):
    event = create_event(session, title="Summit")
    invite = create_invite(
        session, event=event, email="dana@example.com", first_name="Dana"
    )
    attendee = ensure_attendee_for_invite(session, invite)
    assert attendee.email == "dana@example.com"
    assert attendee.first_name == "Dana"
    assert ensure_attendee_for_invite(session, invite).id == attendee.id


def test_ensure_attendee_for_invite_falls_back_to_email_name(session):
    event = create_event(session, title="Summit")
    invite = create_invite(session, event=event, email="sam.lee@example.com")
    attendee = ensure_attendee_for_invite(session, invite)
    assert attendee.first_name == "sam.lee"


def test_accept_invite_marks_both_records(session):
    event = create_event(session, title="Summit")
    invite = create_invite(session, event=event, email="erin@example.com")
    result = accept_invite(session, invite)
    session.commit()
    assert result.already_accepted is False
    assert result.promoted == 0
    assert invite.status == "accepted"
    assert invite.accepted_at is not None
    assert result.attendee.accepted_at is not None


def test_accept_invite_twice_is_not_a_new_acceptance(session):
    event = create_event(session, title="Summit")
    invite = create_invite(session, event=event, email="erin@example.com")
    first = accept_invite(session, invite)
    second = accept_invite(session, invite)
    assert second.already_accepted is True
    assert second.promoted == 0
    assert second.attendee.id == first.attendee.id
