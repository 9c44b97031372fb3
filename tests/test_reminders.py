from __future__ import annotations

from datetime import timedelta

from conftest import make_event
from eventgate.models import FormSubmission, SentEmail
from eventgate.reminders import run_reminder_cycle


def _approved(session, event, email, status="approved"):
    session.add(
        FormSubmission(
            event_id=event.id,
            form_type="attendee",
            status=status,
            answers={},
            user_name=email.split("@")[0].title(),
            user_email=email,
            ticket_number="TICKET-" + email.split("@")[0].upper(),
        )
    )
    session.flush()


def test_reminders_go_to_approved_attendees_of_upcoming_events(
    session, organizer, transport
):
    soon = make_event(session, organizer, title="Soon", starts_in=timedelta(hours=2))
    later = make_event(session, organizer, title="Later", starts_in=timedelta(days=3))
    _approved(session, soon, "ada@example.com")
    _approved(session, soon, "ADA@example.com")
    _approved(session, soon, "pending@example.com", status="pending")
    _approved(session, later, "bob@example.com")
    session.commit()

    stats = run_reminder_cycle(transport=transport)

    assert stats == {"events": 1, "sent": 1, "failed": 0, "skipped": 1}
    assert [message.to.lower() for message in transport.sent] == ["ada@example.com"]
    assert "Soon" in transport.sent[0].subject
    assert "TICKET-ADA" in transport.sent[0].text


def test_reminders_are_not_repeated_but_failures_retry(session, organizer, transport):
    soon = make_event(session, organizer, title="Soon", starts_in=timedelta(hours=2))
    _approved(session, soon, "ada@example.com")
    _approved(session, soon, "bob@example.com")
    session.commit()
    transport.fail_for.add("bob@example.com")

    first = run_reminder_cycle(transport=transport)
    transport.fail_for.clear()
    second = run_reminder_cycle(transport=transport)
    third = run_reminder_cycle(transport=transport)

    assert (first["sent"], first["failed"]) == (1, 1)
    assert (second["sent"], second["failed"], second["skipped"]) == (1, 0, 1)
    assert (third["sent"], third["skipped"]) == (0, 2)
    assert [message.to for message in transport.sent] == [
        "ada@example.com",
        "bob@example.com",
    ]
    statuses = sorted(
        row.status
        for row in session.query(SentEmail).filter(SentEmail.email_type == "reminder")
    )
    assert statuses == ["failed", "sent", "sent"]


def test_reminder_cycle_without_events(transport):
    assert run_reminder_cycle(transport=transport) == {
        "events": 0,
        "sent": 0,
        "failed": 0,
        "skipped": 0,
    }
