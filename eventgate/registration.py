"""Events, forms, submissions and their moderation."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy.exc import IntegrityError

from .config import Settings, settings as default_settings
from .errors import Conflict, FormNotPublished, NotFound, ValidationError
from .models import FORM_TYPES, SUBMISSION_STATUSES, Event, FormSubmission
from .notifications import APPROVED, REJECTED, NotificationDispatcher, kind_for
from .policy import (
    EVENT_CREATE,
    EVENT_MANAGE,
    SUBMISSION_CREATE,
    Caller,
    authorize,
)
from .repositories import PageRequest, Page, Repositories, search_clause
from .utils import (
    NO_EMAIL,
    PHONE_PATTERN,
    URL_PATTERN,
    extract_email,
    extract_name,
    format_event_date,
    is_valid_email,
    utcnow,
)

logger = logging.getLogger("uvicorn.error")

FORM_TYPE_ALIASES = {"register": "attendee"}
FORM_STATUSES = {"draft", "published"}
DECISIONS = (APPROVED, REJECTED)
QUESTION_TYPES = {
    "text",
    "textarea",
    "email",
    "phone",
    "url",
    "number",
    "date",
    "select",
    "radio",
    "checkbox",
}

DEFAULT_QUESTIONS: dict[str, list[dict[str, Any]]] = {
    "attendee": [
        {"id": "name", "label": "Full Name", "type": "text", "required": True},
        {"id": "email", "label": "Email", "type": "email", "required": True},
    ],
    "volunteer": [
        {"id": "name", "label": "Full Name", "type": "text", "required": True},
        {"id": "email", "label": "Email", "type": "email", "required": True},
        {"id": "phone", "label": "Phone", "type": "phone", "required": False},
        {
            "id": "availability",
            "label": "Availability",
            "type": "textarea",
            "required": False,
        },
    ],
    "speaker": [
        {"id": "name", "label": "Full Name", "type": "text", "required": True},
        {"id": "email", "label": "Email", "type": "email", "required": True},
        {"id": "topic", "label": "Talk Topic", "type": "text", "required": True},
        {"id": "bio", "label": "Speaker Bio", "type": "textarea", "required": False},
    ],
}


def normalize_form_type(value: str | None) -> str:
    form_type = (value or "").strip().lower()
    form_type = FORM_TYPE_ALIASES.get(form_type, form_type)
    if form_type not in FORM_TYPES:
        raise ValidationError(
            f"Invalid form type. Use one of: {', '.join(FORM_TYPES)}.",
            invalid={"formType": value or ""},
        )
    return form_type


def normalize_decision(value: str | None) -> str:
    decision = (value or "").strip().lower()
    if decision not in DECISIONS:
        raise ValidationError(
            "Invalid status. Use 'approved' or 'rejected'.",
            invalid={"status": value or ""},
        )
    return decision


def ticket_number_for(submission_id: str) -> str:
    return "TICKET-" + submission_id.replace("-", "")[:8].upper()


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def _format_problem(question_type: str, value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if question_type == "email" and not is_valid_email(text):
        return "Invalid email address"
    if question_type == "phone":
        digits = re.sub(r"[\s\-()]", "", text)
        if not PHONE_PATTERN.match(digits):
            return "Invalid phone number"
    if question_type == "url" and not URL_PATTERN.match(text):
        return "Invalid URL"
    return None


def validate_answers(questions: Iterable[Mapping], answers: Mapping[str, Any]) -> None:
    """Raise ``ValidationError`` for missing required or malformed answers.

    Missing fields are reported in question order.
    """
    missing: list[str] = []
    invalid: dict[str, str] = {}
    for question in questions:
        question_id = question.get("id")
        if not question_id:
            continue
        value = answers.get(question_id)
        if _is_blank(value):
            if question.get("required"):
                missing.append(question_id)
            continue
        problem = _format_problem(question.get("type") or "text", value)
        if problem:
            invalid[question_id] = problem
    if missing:
        raise ValidationError(
            "Please fill in all required fields.", fields=missing, invalid=invalid
        )
    if invalid:
        raise ValidationError("Some answers are not valid.", invalid=invalid)


def normalize_questions(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        raise ValidationError("Questions must be a list.", invalid={"questions": "list"})
    seen: set[str] = set()
    questions: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise ValidationError(
                "Each question must be an object.",
                invalid={f"questions[{index}]": "object"},
            )
        question_id = str(item.get("id") or "").strip()
        if not question_id:
            raise ValidationError(
                "Every question needs an id.", fields=[f"questions[{index}].id"]
            )
        if question_id in seen:
            raise ValidationError(
                "Question ids must be unique.",
                invalid={question_id: "Duplicate question id"},
            )
        seen.add(question_id)
        question_type = str(item.get("type") or "text").strip().lower()
        if question_type not in QUESTION_TYPES:
            raise ValidationError(
                "Unknown question type.",
                invalid={question_id: f"Unknown type {question_type!r}"},
            )
        question = {
            "id": question_id,
            "label": str(item.get("label") or question_id),
            "type": question_type,
            "required": bool(item.get("required", False)),
        }
        options = item.get("options")
        if options:
            question["options"] = [str(option) for option in options]
        if item.get("placeholder"):
            question["placeholder"] = str(item["placeholder"])
        questions.append(question)
    return questions


class RegistrationService:
    def __init__(
        self,
        repos: Repositories,
        dispatcher: NotificationDispatcher,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.repos = repos
        self.dispatcher = dispatcher
        self.settings = settings or default_settings

    # Events ----------------------------------------------------------------

    def create_event(
        self,
        caller: Caller | None,
        *,
        title: str,
        start_time: datetime,
        end_time: datetime | None = None,
        description: str | None = None,
        location: str | None = None,
        capacity: int | None = None,
    ) -> Event:
        authorize(caller, None, EVENT_CREATE)
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required.", fields=["title"])
        if end_time and end_time < start_time:
            raise ValidationError(
                "End time must be after the start time.",
                invalid={"endTime": "Before start time"},
            )
        if capacity is not None and capacity < 1:
            raise ValidationError(
                "Capacity must be at least 1.", invalid={"capacity": str(capacity)}
            )
        event = Event(
            slug=self.repos.events.unique_slug(title),
            organizer_id=caller.user_id,
            title=title,
            description=description,
            location=location,
            start_time=start_time,
            end_time=end_time,
            capacity=capacity or 100,
        )
        self.repos.events.add(event)
        for form_type in FORM_TYPES:
            form = self.repos.forms.ensure(event.id, form_type)
            form.questions = [dict(q) for q in DEFAULT_QUESTIONS[form_type]]
        self.repos.session.flush()
        self.repos.session.refresh(event)
        logger.info("Event %s created by %s", event.slug, caller.user_id)
        return event

    def get_event(self, event_ref: str) -> Event:
        return self.repos.events.require(event_ref)

    # Forms -----------------------------------------------------------------

    def get_form(self, event_ref: str, form_type: str) -> dict[str, Any]:
        event = self.repos.events.require(event_ref)
        form_type = normalize_form_type(form_type)
        form = self.repos.forms.for_event(event.id, form_type)
        is_event_passed = event.start_time <= utcnow()
        status = form.status if form else "draft"
        if is_event_passed:
            status = "closed"
        return {
            "formType": form_type,
            "questions": list(form.questions or []) if form else [],
            "status": status,
            "eventTitle": event.title,
            "eventSlug": event.slug,
            "eventDate": format_event_date(event.start_time),
            "isEventPassed": is_event_passed,
        }

    def configure_form(
        self, event_ref: str, form_type: str, questions: Any, caller: Caller | None
    ):
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        form_type = normalize_form_type(form_type)
        form = self.repos.forms.ensure(event.id, form_type)
        form.questions = normalize_questions(questions)
        self.repos.session.flush()
        logger.info(
            "Configured %s form for %s (%d questions)",
            form_type,
            event.slug,
            len(form.questions),
        )
        return form

    def set_form_status(
        self, event_ref: str, form_type: str, status: str, caller: Caller | None
    ):
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        form_type = normalize_form_type(form_type)
        status = (status or "").strip().lower()
        if status not in FORM_STATUSES:
            raise ValidationError(
                "Invalid form status. Use 'draft' or 'published'.",
                invalid={"status": status},
            )
        form = self.repos.forms.ensure(event.id, form_type)
        form.status = status
        self.repos.session.flush()
        logger.info("%s form for %s is now %s", form_type, event.slug, status)
        return form

    def publish_all_forms(self, event_ref: str, caller: Caller | None) -> dict[str, str]:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        statuses = {}
        for form_type in FORM_TYPES:
            form = self.repos.forms.ensure(event.id, form_type)
            form.status = "published"
            statuses[form_type] = form.status
        self.repos.session.flush()
        logger.info("Published every form for %s", event.slug)
        return statuses

    # Submissions -----------------------------------------------------------

    def submit_form(
        self,
        event_ref: str,
        form_type: str,
        answers: Mapping[str, Any] | None,
        caller: Caller | None = None,
    ) -> dict[str, Any]:
        event = self.repos.events.require(event_ref)
        form_type = normalize_form_type(form_type)
        if caller is not None:
            authorize(caller, event, SUBMISSION_CREATE)

        form = self.repos.forms.for_event(event.id, form_type)
        if form is None or form.status != "published":
            raise FormNotPublished(f"The {form_type} form is not published.")
        if event.start_time <= utcnow():
            raise FormNotPublished("Registration for this event has closed.")

        answers = dict(answers or {})
        validate_answers(form.questions or [], answers)

        if caller is not None and self.repos.submissions.live_for_user(
            event.id, caller.user_id, form_type
        ):
            raise Conflict(f"You have already submitted a {form_type} form.")

        user_email = extract_email(answers)
        if user_email == NO_EMAIL and caller is not None and caller.email:
            user_email = caller.email
        submission = FormSubmission(
            event_id=event.id,
            user_id=caller.user_id if caller else None,
            form_type=form_type,
            status="pending",
            answers=answers,
            user_name=extract_name(answers),
            user_email=user_email,
        )
        try:
            self.repos.submissions.add(submission)
        except IntegrityError as exc:
            self.repos.session.rollback()
            raise Conflict(f"You have already submitted a {form_type} form.") from exc

        logger.info(
            "New %s submission %s for %s", form_type, submission.id, event.slug
        )
        self._notify_organizer(event, submission)
        return {
            "submission_id": submission.id,
            "status": submission.status,
            "submission": submission,
        }

    def _notify_organizer(self, event: Event, submission: FormSubmission) -> None:
        organizer = event.organizer
        if organizer is None:
            return
        result = self.dispatcher.notify(
            "custom",
            {
                "id": submission.id,
                "to": organizer.email,
                "name": organizer.full_name,
                "event": event,
                "subject": f"New {submission.form_type} submission: {event.title}",
                "message": (
                    f"{submission.user_name} ({submission.user_email}) submitted "
                    f"the {submission.form_type} form. It is waiting for review."
                ),
                "sender_id": organizer.id,
            },
        )
        if not result.success:
            logger.warning(
                "Could not notify organizer of submission %s: %s",
                submission.id,
                result.error,
            )

    def _notification_payload(
        self, event: Event, submission: FormSubmission, decision: str
    ) -> dict[str, Any]:
        return {
            "id": submission.id,
            "to": submission.user_email,
            "name": submission.user_name,
            "event": event,
            "outcome": decision,
            "ticket_number": submission.ticket_number,
            "sender_id": event.organizer_id,
            "organizer_name": event.organizer.full_name if event.organizer else None,
        }

    def _require_submission(
        self, event: Event, form_type: str, submission_id: str
    ) -> FormSubmission:
        submission = self.repos.submissions.get(submission_id)
        if (
            submission is None
            or submission.event_id != event.id
            or submission.form_type != form_type
        ):
            raise NotFound("Submission not found")
        return submission

    def _live_sibling(self, submission: FormSubmission) -> FormSubmission | None:
        """Another non-rejected submission of the same form by the same user."""
        if submission.user_id is None:
            return None
        return self.repos.submissions.live_for_user(
            submission.event_id,
            submission.user_id,
            submission.form_type,
            exclude_id=submission.id,
        )

    def _split_live_conflicts(
        self, submissions: list[FormSubmission]
    ) -> tuple[list[FormSubmission], list[str]]:
        """Drop submissions that would give a user a second live entry."""
        batch = {submission.id for submission in submissions}
        claimed: set[str] = set()
        allowed: list[FormSubmission] = []
        skipped: list[str] = []
        # Live rows keep their slot ahead of rejected rows from the same user.
        for submission in sorted(submissions, key=lambda s: s.status == REJECTED):
            if submission.user_id is None:
                allowed.append(submission)
                continue
            live = self._live_sibling(submission)
            if submission.user_id in claimed or (
                live is not None and live.id not in batch
            ):
                skipped.append(submission.id)
                continue
            claimed.add(submission.user_id)
            allowed.append(submission)
        return allowed, skipped

    def moderate(
        self,
        event_ref: str,
        form_type: str,
        submission_id: str,
        decision: str,
        caller: Caller | None,
    ) -> dict[str, Any]:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        form_type = normalize_form_type(form_type)
        decision = normalize_decision(decision)
        submission = self._require_submission(event, form_type, submission_id)
        if decision != REJECTED:
            live = self._live_sibling(submission)
            if live is not None:
                raise Conflict(
                    f"This user already has an active {form_type} submission.",
                    submissionId=live.id,
                )

        submission.status = decision
        if decision == APPROVED and form_type == "attendee":
            submission.ticket_number = (
                submission.ticket_number or ticket_number_for(submission.id)
            )
        try:
            self.repos.session.flush()
        except IntegrityError as exc:
            self.repos.session.rollback()
            raise Conflict(
                f"This user already has an active {form_type} submission."
            ) from exc
        logger.info(
            "Submission %s %s by %s", submission.id, decision, caller.user_id
        )

        result = self.dispatcher.notify(
            kind_for(form_type, decision),
            self._notification_payload(event, submission, decision),
        )
        return {"submission": submission, "notification": result}

    def bulk_moderate(
        self,
        event_ref: str,
        form_type: str,
        submission_ids: list[str] | None,
        decision: str,
        caller: Caller | None,
    ) -> dict[str, Any]:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        form_type = normalize_form_type(form_type)
        decision = normalize_decision(decision)
        ids = [str(item) for item in (submission_ids or []) if item]
        if not ids:
            raise ValidationError(
                "No submissions were selected.", fields=["submissionIds"]
            )

        candidates = self.repos.submissions.for_event(event.id, form_type, ids)
        skipped_ids: list[str] = []
        if decision != REJECTED:
            candidates, skipped_ids = self._split_live_conflicts(candidates)
        target_ids = [submission.id for submission in candidates]

        model = FormSubmission
        updated_count = 0
        if target_ids:
            updated_count = self.repos.submissions.update_many(
                model.id.in_(target_ids),
                model.event_id == event.id,
                model.form_type == form_type,
                status=decision,
                updated_at=utcnow(),
            )
        submissions = self.repos.submissions.for_event(event.id, form_type, target_ids)
        if decision == APPROVED and form_type == "attendee":
            for submission in submissions:
                if not submission.ticket_number:
                    submission.ticket_number = ticket_number_for(submission.id)
            self.repos.session.flush()

        logger.info(
            "Bulk %s %d %s submissions for %s",
            decision,
            updated_count,
            form_type,
            event.slug,
        )
        if skipped_ids:
            logger.warning(
                "Skipped %d %s submissions with another live entry: %s",
                len(skipped_ids),
                form_type,
                ", ".join(skipped_ids),
            )
        results = self.dispatcher.notify_batch(
            kind_for(form_type, decision),
            [
                self._notification_payload(event, submission, decision)
                for submission in submissions
            ],
        )
        sent = sum(result.success for result in results)
        return {
            "updated_count": updated_count,
            "skipped_ids": skipped_ids,
            "notifications": {
                "sent": sent,
                "failed": len(results) - sent,
                "results": [result.to_dict() for result in results],
            },
        }

    def list_submissions(
        self,
        event_ref: str,
        caller: Caller | None,
        *,
        form_type: str | None = None,
        status: str | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> Page:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        model = FormSubmission
        criteria = [model.event_id == event.id]
        if form_type:
            criteria.append(model.form_type == normalize_form_type(form_type))
        if status:
            if status not in SUBMISSION_STATUSES:
                raise ValidationError(
                    "Invalid status filter.", invalid={"status": status}
                )
            criteria.append(model.status == status)
        criteria.append(search_clause(search, model.user_name, model.user_email))
        request = PageRequest(
            page=page,
            limit=limit or self.settings.submissions_per_page,
            max_limit=self.settings.max_page_size,
        )
        return self.repos.submissions.paginate(
            *criteria, request=request, order_by=(model.created_at.desc(),)
        )

    def submission_counts(
        self, event_ref: str, caller: Caller | None
    ) -> dict[str, dict[str, int]]:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        counts = {
            form_type: {status: 0 for status in SUBMISSION_STATUSES}
            for form_type in FORM_TYPES
        }
        for form_type, status, count in self.repos.submissions.status_counts(event.id):
            counts.setdefault(form_type, {})[status] = count
        return counts

    def my_pending_submissions(self, caller: Caller | None) -> list[FormSubmission]:
        authorize(caller, None, SUBMISSION_CREATE)
        model = FormSubmission
        return self.repos.submissions.find(
            model.user_id == caller.user_id,
            model.status == "pending",
            order_by=(model.created_at.desc(),),
        )
