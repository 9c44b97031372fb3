from __future__ import annotations

from types import SimpleNamespace

import pytest

from eventgate.errors import Forbidden, Unauthorized
from eventgate.policy import (
    EVENT_CREATE,
    EVENT_MANAGE,
    REVIEW_CREATE,
    REVIEW_MODERATE,
    SUBMISSION_CREATE,
    Caller,
    authorize,
    is_organizer_or_admin,
)

OWNED_EVENT = SimpleNamespace(organizer_id="planner-1")

planner = Caller(user_id="planner-1", role="event-planner")
other_planner = Caller(user_id="planner-2", role="event-planner")
member = Caller(user_id="user-1", role="user")
root = Caller(user_id="root", role="super-admin")


def test_missing_caller_is_unauthorized():
    for action in (EVENT_CREATE, EVENT_MANAGE, SUBMISSION_CREATE):
        with pytest.raises(Unauthorized):
            authorize(None, OWNED_EVENT, action)


def test_super_admin_passes_everything():
    for action in (EVENT_CREATE, EVENT_MANAGE, REVIEW_MODERATE):
        assert authorize(root, OWNED_EVENT, action) is root


def test_event_create_requires_planner_role():
    assert authorize(planner, None, EVENT_CREATE) is planner
    with pytest.raises(Forbidden):
        authorize(member, None, EVENT_CREATE)


def test_event_manage_requires_ownership():
    assert authorize(planner, OWNED_EVENT, EVENT_MANAGE) is planner
    with pytest.raises(Forbidden):
        authorize(other_planner, OWNED_EVENT, EVENT_MANAGE)
    with pytest.raises(Forbidden):
        authorize(member, OWNED_EVENT, EVENT_MANAGE)


def test_review_moderation_requires_planner_owning_event():
    assert authorize(planner, OWNED_EVENT, REVIEW_MODERATE) is planner
    owner_without_role = Caller(user_id="planner-1", role="user")
    with pytest.raises(Forbidden):
        authorize(owner_without_role, OWNED_EVENT, REVIEW_MODERATE)


def test_create_actions_accept_any_identified_caller():
    assert authorize(member, None, SUBMISSION_CREATE) is member
    assert authorize(member, None, REVIEW_CREATE) is member


def test_unknown_action_is_a_programming_error():
    with pytest.raises(ValueError):
        authorize(member, None, "event:delete")


def test_is_organizer_or_admin():
    assert is_organizer_or_admin(OWNED_EVENT, planner)
    assert is_organizer_or_admin(OWNED_EVENT, root)
    assert not is_organizer_or_admin(OWNED_EVENT, member)
    assert not is_organizer_or_admin(OWNED_EVENT, None)
