from __future__ import annotations

import pytest

from conftest import caller_for, make_user
from eventgate.errors import (
    Conflict,
    Forbidden,
    NotFound,
    Unauthorized,
    ValidationError,
)
from eventgate.policy import ROLE_EVENT_PLANNER


def _review(review_service, user, event, **overrides):
    values = {"rating": 4, "title": "Great talks", "comment": "Loved the venue."}
    values.update(overrides)
    return review_service.create_review(caller_for(user), event_id=event.id, **values)


def test_create_review_starts_pending(review_service, event, attendee):
    review = _review(review_service, attendee, event, title="  Nice  ")
    assert review.status == "pending"
    assert review.title == "Nice"
    assert review.rating == 4
    assert review.user_id == attendee.id


def test_one_review_per_user_and_event(review_service, event, attendee):
    _review(review_service, attendee, event)
    with pytest.raises(Conflict):
        _review(review_service, attendee, event, rating=1)


@pytest.mark.parametrize(
    "overrides, key",
    [
        ({"rating": 0}, "rating"),
        ({"rating": 6}, "rating"),
        ({"rating": "five"}, "rating"),
        ({"title": "x" * 101}, "title"),
        ({"comment": "y" * 1001}, "comment"),
    ],
)
def test_review_field_limits(review_service, event, attendee, overrides, key):
    with pytest.raises(ValidationError) as excinfo:
        _review(review_service, attendee, event, **overrides)
    assert key in excinfo.value.invalid


def test_review_requires_fields_and_caller(review_service, event, attendee):
    with pytest.raises(ValidationError) as excinfo:
        _review(review_service, attendee, event, title="", comment=" ")
    assert excinfo.value.fields == ["title", "comment"]
    with pytest.raises(Unauthorized):
        review_service.create_review(
            None, event_id=event.id, rating=5, title="t", comment="c"
        )


def test_public_listing_shows_only_approved(review_service, event, attendee, organizer):
    review = _review(review_service, attendee, event)
    assert review_service.list_reviews(event_id=event.id).total == 0

    review_service.set_review_status(review.id, "approved", caller_for(organizer))

    page = review_service.list_reviews(event_id=event.id)
    assert [item.id for item in page.items] == [review.id]


def test_pending_listing_requires_event_manager(
    session, review_service, event, attendee, organizer, admin
):
    _review(review_service, attendee, event)

    pending = review_service.list_reviews(
        event_id=event.id, status="pending", caller=caller_for(organizer)
    )
    assert pending.total == 1
    with pytest.raises(Forbidden):
        review_service.list_reviews(
            event_id=event.id, status="pending", caller=caller_for(attendee)
        )
    with pytest.raises(Forbidden):
        review_service.list_reviews(status="pending", caller=caller_for(organizer))
    with pytest.raises(Unauthorized):
        review_service.list_reviews(status="pending")
    assert review_service.list_reviews(status="pending", caller=caller_for(admin)).total == 1
    with pytest.raises(ValidationError):
        review_service.list_reviews(status="hidden")


def test_moderation_is_limited_to_the_organizer(
    session, review_service, event, attendee
):
    review = _review(review_service, attendee, event)
    stranger = make_user(session, role=ROLE_EVENT_PLANNER)
    with pytest.raises(Forbidden):
        review_service.set_review_status(review.id, "approved", caller_for(stranger))
    with pytest.raises(NotFound):
        review_service.set_review_status("missing", "approved", caller_for(stranger))


def test_set_review_status_rejects_unknown_values(review_service, event, attendee, organizer):
    review = _review(review_service, attendee, event)
    with pytest.raises(ValidationError):
        review_service.set_review_status(review.id, "pending", caller_for(organizer))


def test_reply_lifecycle(review_service, event, attendee, organizer):
    review = _review(review_service, attendee, event)
    caller = caller_for(organizer)

    review_service.reply_to_review(review.id, "Thanks for coming!", caller)
    replied = review_service.reply_to_review(review.id, "  Updated reply ", caller)
    assert replied.reply_text == "Updated reply"
    assert replied.reply_created_at is not None

    cleared = review_service.delete_reply(review.id, caller)
    assert cleared.reply_text is None
    with pytest.raises(NotFound):
        review_service.delete_reply(review.id, caller)
    with pytest.raises(ValidationError):
        review_service.reply_to_review(review.id, "   ", caller)


def test_my_reviews(review_service, event, attendee, organizer):
    _review(review_service, attendee, event)
    assert len(review_service.my_reviews(caller_for(attendee))) == 1
    assert review_service.my_reviews(caller_for(organizer)) == []
