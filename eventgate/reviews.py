"""Event reviews and organizer replies."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError

from .config import Settings, settings as default_settings
from .errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from .models import REVIEW_STATUSES, Review
from .policy import (
    EVENT_MANAGE,
    REVIEW_CREATE,
    REVIEW_MODERATE,
    Caller,
    authorize,
)
from .repositories import Page, PageRequest, Repositories
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

MAX_TITLE_LENGTH = 100
MAX_COMMENT_LENGTH = 1000
MODERATION_STATUSES = ("approved", "rejected")


def _validate_review(rating: Any, title: str, comment: str) -> tuple[int, str, str]:
    missing = [
        name
        for name, value in (("rating", rating), ("title", title), ("comment", comment))
        if value is None or (isinstance(value, str) and not value.strip())
    ]
    if missing:
        raise ValidationError("Missing required fields.", fields=missing)

    invalid: dict[str, str] = {}
    try:
        rating = int(rating)
    except (TypeError, ValueError):
        rating = 0
    if not 1 <= rating <= 5:
        invalid["rating"] = "Rating must be between 1 and 5"
    title = title.strip()
    comment = comment.strip()
    if len(title) > MAX_TITLE_LENGTH:
        invalid["title"] = f"Title cannot be more than {MAX_TITLE_LENGTH} characters"
    if len(comment) > MAX_COMMENT_LENGTH:
        invalid["comment"] = (
            f"Comment cannot be more than {MAX_COMMENT_LENGTH} characters"
        )
    if invalid:
        raise ValidationError("Some fields were invalid.", invalid=invalid)
    return rating, title, comment


class ReviewService:
    def __init__(
        self, repos: Repositories, *, settings: Settings | None = None
    ) -> None:
        self.repos = repos
        self.settings = settings or default_settings

    def _require_review(self, review_id: str) -> Review:
        review = self.repos.reviews.get(review_id)
        if review is None:
            raise NotFound("Review not found")
        return review

    def create_review(
        self,
        caller: Caller | None,
        *,
        event_id: str,
        rating: Any,
        title: str,
        comment: str,
    ) -> Review:
        authorize(caller, None, REVIEW_CREATE)
        rating, title, comment = _validate_review(rating, title, comment)
        event = self.repos.events.require(event_id)
        if self.repos.reviews.for_user(event.id, caller.user_id):
            raise Conflict("You have already reviewed this event")

        review = Review(
            event_id=event.id,
            user_id=caller.user_id,
            user_name=caller.name,
            rating=rating,
            title=title,
            comment=comment,
            status="pending",
        )
        try:
            self.repos.reviews.add(review)
        except IntegrityError as exc:
            self.repos.session.rollback()
            raise Conflict("You have already reviewed this event") from exc
        logger.info("Review %s created for %s", review.id, event.slug)
        return review

    def list_reviews(
        self,
        *,
        event_id: str | None = None,
        status: str = "approved",
        page: int = 1,
        limit: int | None = None,
        caller: Caller | None = None,
    ) -> Page:
        status = (status or "approved").strip().lower()
        if status not in REVIEW_STATUSES:
            raise ValidationError("Invalid status filter.", invalid={"status": status})
        event = self.repos.events.require(event_id) if event_id else None
        if status != "approved":
            # Unmoderated reviews are only visible to the event's managers.
            if event is not None:
                authorize(caller, event, EVENT_MANAGE)
            elif caller is None:
                raise Unauthorized()
            elif not caller.is_super_admin:
                raise Forbidden()

        criteria = [
            Review.status == status,
            Review.event_id == event.id if event else None,
        ]
        request = PageRequest(
            page=page,
            limit=limit or self.settings.submissions_per_page,
            max_limit=self.settings.max_page_size,
        )
        return self.repos.reviews.paginate(
            *criteria, request=request, order_by=(Review.created_at.desc(),)
        )

    def my_reviews(self, caller: Caller | None) -> list[Review]:
        authorize(caller, None, REVIEW_CREATE)
        return self.repos.reviews.find(
            Review.user_id == caller.user_id, order_by=(Review.created_at.desc(),)
        )

    def set_review_status(
        self, review_id: str, status: str, caller: Caller | None
    ) -> Review:
        review = self._require_review(review_id)
        authorize(caller, review.event, REVIEW_MODERATE)
        status = (status or "").strip().lower()
        if status not in MODERATION_STATUSES:
            raise ValidationError(
                "Invalid status. Use 'approved' or 'rejected'.",
                invalid={"status": status},
            )
        review.status = status
        self.repos.session.flush()
        logger.info("Review %s %s by %s", review.id, status, caller.user_id)
        return review

    def reply_to_review(
        self, review_id: str, text: str, caller: Caller | None
    ) -> Review:
        review = self._require_review(review_id)
        authorize(caller, review.event, REVIEW_MODERATE)
        text = (text or "").strip()
        if not text:
            raise ValidationError("Reply text is required.", fields=["text"])
        if len(text) > MAX_COMMENT_LENGTH:
            raise ValidationError(
                "Reply is too long.",
                invalid={"text": f"Reply cannot be more than {MAX_COMMENT_LENGTH} characters"},
            )
        review.reply_text = text
        review.reply_created_at = utcnow()
        self.repos.session.flush()
        return review

    def delete_reply(self, review_id: str, caller: Caller | None) -> Review:
        review = self._require_review(review_id)
        authorize(caller, review.event, REVIEW_MODERATE)
        if not review.reply_text:
            raise NotFound("Reply not found")
        review.reply_text = None
        review.reply_created_at = None
        self.repos.session.flush()
        return review
