from __future__ import annotations

import pytest

from eventgate.config import settings
from eventgate.models import User
from eventgate.policy import ROLE_EVENT_PLANNER, ROLE_SUPER_ADMIN
from eventgate.storage import (
    create_user,
    ensure_super_admin,
    fetch_super_admin_token,
    rotate_super_admin_token,
)


def test_super_admin_token_lifecycle(session):
    first = ensure_super_admin()
    assert isinstance(first, str) and first
    assert ensure_super_admin() == first
    assert fetch_super_admin_token() == first

    rotated = rotate_super_admin_token()
    assert rotated != first
    assert fetch_super_admin_token() == rotated

    admins = session.query(User).filter(User.email == settings.super_admin_email).all()
    assert len(admins) == 1
    assert admins[0].role == ROLE_SUPER_ADMIN


def test_create_user_normalizes_email_and_issues_token():
    user = create_user(email="  Planner@Example.COM ", role=ROLE_EVENT_PLANNER)
    assert user.email == "planner@example.com"
    assert user.api_token
    assert user.role == ROLE_EVENT_PLANNER


def test_create_user_rejects_unknown_role():
    with pytest.raises(ValueError):
        create_user(email="x@example.com", role="overlord")
