"""Role and ownership checks shared by every service."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import Forbidden, Unauthorized

ROLE_USER = "user"
ROLE_EVENT_PLANNER = "event-planner"
ROLE_SUPER_ADMIN = "super-admin"
VALID_ROLES = {ROLE_USER, ROLE_EVENT_PLANNER, ROLE_SUPER_ADMIN}

EVENT_CREATE = "event:create"
EVENT_MANAGE = "event:manage"
REVIEW_MODERATE = "review:moderate"
SUBMISSION_CREATE = "submission:create"
REVIEW_CREATE = "review:create"


@dataclass(frozen=True)
class Caller:
    """Identity of whoever is making the current request."""

    user_id: str
    role: str
    email: str | None = None
    name: str | None = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == ROLE_SUPER_ADMIN


def is_organizer_or_admin(event, caller: Caller | None) -> bool:
    if caller is None or event is None:
        return False
    return caller.is_super_admin or event.organizer_id == caller.user_id


def authorize(caller: Caller | None, resource, action: str) -> Caller:
    """Raise unless ``caller`` may perform ``action`` on ``resource``.

    ``resource`` is the event for event-scoped actions and ``None`` for
    actions that only depend on the caller's role.
    """
    if caller is None:
        raise Unauthorized()
    if caller.is_super_admin:
        return caller

    if action in {SUBMISSION_CREATE, REVIEW_CREATE}:
        return caller
    if action == EVENT_CREATE:
        if caller.role != ROLE_EVENT_PLANNER:
            raise Forbidden("Only event planners can create events.")
        return caller
    if action == EVENT_MANAGE:
        if not is_organizer_or_admin(resource, caller):
            raise Forbidden(
                "You don't have permission to manage this event."
            )
        return caller
    if action == REVIEW_MODERATE:
        if caller.role != ROLE_EVENT_PLANNER or not is_organizer_or_admin(
            resource, caller
        ):
            raise Forbidden("You don't have permission to moderate this review.")
        return caller
    raise ValueError(f"Unknown action {action!r}")
