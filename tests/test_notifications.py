from __future__ import annotations

import pytest

from conftest import caller_for, make_event
from eventgate.errors import Unauthorized, ValidationError
from eventgate.models import FormSubmission, SentEmail
from eventgate.notifications import INVALID_RECIPIENT, kind_for


def _custom(to, **extra):
    payload = {"id": to, "to": to, "name": "Friend", "subject": "Hello", "message": "Hi"}
    payload.update(extra)
    return payload


def test_kind_for():
    assert kind_for("attendee", "approved") == "attendee-approval"
    assert kind_for("speaker", "rejected") == "speaker-rejection"


def test_batch_tolerates_individual_failures(session, dispatcher, transport):
    transport.fail_for.add("full@example.com")
    transport.raise_for.add("down@example.com")
    payloads = [
        _custom("ok@example.com"),
        _custom("full@example.com"),
        _custom("down@example.com"),
        _custom("not-an-email"),
        _custom("also-ok@example.com"),
    ]

    results = dispatcher.notify_batch("custom", payloads)

    assert [result.id for result in results] == [p["id"] for p in payloads]
    assert [result.success for result in results] == [True, False, False, False, True]
    assert results[1].error == "Mailbox unavailable"
    assert results[2].error == "SMTP connection dropped"
    assert results[3].error == INVALID_RECIPIENT
    assert sorted(message.to for message in transport.sent) == [
        "also-ok@example.com",
        "ok@example.com",
    ]

    rows = {row.recipient_email: row for row in session.query(SentEmail).all()}
    assert rows["ok@example.com"].status == "sent"
    assert rows["ok@example.com"].message_id
    assert rows["full@example.com"].status == "failed"
    assert rows["full@example.com"].error_message == "Mailbox unavailable"
    assert rows["not-an-email"].status == "failed"
    assert all(row.email_type == "custom" for row in rows.values())


def test_result_to_dict_uses_camel_case(dispatcher):
    result = dispatcher.notify("custom", _custom("ok@example.com"))
    payload = result.to_dict()
    assert payload["success"] is True
    assert payload["id"] == "ok@example.com"
    assert payload["messageId"].startswith("<")
    assert "error" not in payload


def test_unknown_kind_is_rejected_before_sending(session, dispatcher, transport):
    with pytest.raises(ValueError):
        dispatcher.notify_batch("carrier-pigeon", [_custom("ok@example.com")])
    with pytest.raises(ValueError):
        dispatcher.notify("carrier-pigeon", _custom("ok@example.com"))
    assert transport.sent == []
    assert session.query(SentEmail).count() == 0


def test_rejection_includes_additional_info(dispatcher, event):
    message = dispatcher.compose(
        "attendee-rejection",
        {
            "to": "jane@example.com",
            "name": "Jane",
            "event": event,
            "additional_info": "Bring <ID> next time",
        },
    )

    assert message.subject == f"Update Regarding Your Registration: {event.title}"
    assert "Dear Jane" in message.text
    assert "Bring <ID> next time" in message.text
    assert "Bring &lt;ID&gt; next time" in message.html


def test_rejection_falls_back_to_role_note(dispatcher, event):
    message = dispatcher.compose(
        "volunteer-rejection", {"to": "v@example.com", "event": event}
    )
    assert "volunteer application" in message.text
    assert "more volunteer applications" in message.text


def test_payload_outcome_overrides_kind_default(dispatcher, event):
    message = dispatcher.compose(
        "speaker-approval",
        {"to": "s@example.com", "event": event, "outcome": "rejected"},
    )
    assert message.subject.startswith("Update Regarding Your Speaker Application")


def test_ticket_email_mentions_ticket(dispatcher, event):
    message = dispatcher.compose(
        "ticket",
        {
            "to": "t@example.com",
            "event": event,
            "ticket_number": "abc-123",
            "ticket_type": "VIP",
        },
    )
    assert message.subject == f"Your Event Ticket: {event.title}"
    assert "abc-123" in message.text
    assert "vip ticket" in message.text


def test_email_submissions_personalizes_and_skips_foreign_ids(
    session, dispatcher, event, organizer, transport
):
    other = make_event(session, organizer, title="Elsewhere")
    ids = []
    for target, name in ((event, "Ada"), (event, "Bob"), (other, "Eve")):
        submission = FormSubmission(
            event_id=target.id,
            form_type="attendee",
            status="approved",
            answers={},
            user_name=name,
            user_email=f"{name.lower()}@example.com",
        )
        session.add(submission)
        session.flush()
        ids.append(submission.id)

    summary = dispatcher.email_submissions(
        event.id,
        caller_for(organizer),
        submission_ids=ids,
        subject="Parking update",
        message="Hi {name}, use the north lot.",
    )

    assert summary["sent"] == 2
    assert summary["failed"] == 0
    assert [item["id"] for item in summary["results"]] == ids[:2]
    texts = {message.to: message.text for message in transport.sent}
    assert "Hi Ada, use the north lot." in texts["ada@example.com"]
    assert "Hi Bob, use the north lot." in texts["bob@example.com"]
    assert "eve@example.com" not in texts


def test_email_submissions_requires_subject_and_message(dispatcher, event, organizer):
    with pytest.raises(ValidationError) as excinfo:
        dispatcher.email_submissions(
            event.id,
            caller_for(organizer),
            submission_ids=[],
            subject=" ",
            message="",
        )
    assert excinfo.value.fields == ["subject", "message", "submissionIds"]


def test_sent_emails_are_scoped_to_sender(dispatcher, organizer, admin, attendee):
    dispatcher.notify("custom", _custom("a@example.com", sender_id=organizer.id))
    dispatcher.notify("custom", _custom("b@example.com", sender_id=admin.id))
    dispatcher.notify("custom", _custom("broken", sender_id=organizer.id))

    own = dispatcher.sent_emails(caller_for(organizer))
    assert own.total == 2
    assert {row.recipient_email for row in own.items} == {"a@example.com", "broken"}

    failed = dispatcher.sent_emails(caller_for(organizer), status="failed")
    assert [row.recipient_email for row in failed.items] == ["broken"]

    assert dispatcher.sent_emails(caller_for(admin)).total == 3
    assert dispatcher.sent_emails(caller_for(attendee)).total == 0
    with pytest.raises(Unauthorized):
        dispatcher.sent_emails(None)
