"""Template-based notifications handed to a mail transport."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from .config import Settings, settings as default_settings
from .errors import Unauthorized, ValidationError
from .mail import MailMessage, SendResult
from .models import Event, FormSubmission, SentEmail
from .policy import EVENT_MANAGE, Caller, authorize
from .repositories import PageRequest, Repositories
from .utils import format_event_date, humanize_time, is_valid_email, text_to_html

logger = logging.getLogger("uvicorn.error")

TEMPLATE_DIR = Path(__file__).parent / "templates" / "email"

APPROVED = "approved"
REJECTED = "rejected"
OUTCOMES = (APPROVED, REJECTED)

# kind -> (form type, default outcome or template name)
KINDS: dict[str, tuple[str | None, str]] = {
    "attendee-approval": ("attendee", APPROVED),
    "attendee-rejection": ("attendee", REJECTED),
    "volunteer-approval": ("volunteer", APPROVED),
    "volunteer-rejection": ("volunteer", REJECTED),
    "speaker-approval": ("speaker", APPROVED),
    "speaker-rejection": ("speaker", REJECTED),
    "ticket": (None, "ticket"),
    "reminder": (None, "reminder"),
    "custom": (None, "custom"),
}

EMAIL_TYPES = {
    APPROVED: "success",
    REJECTED: "rejection",
    "ticket": "ticket",
    "reminder": "reminder",
    "custom": "custom",
}

ROLE_LABELS = {
    "attendee": "registration",
    "volunteer": "volunteer application",
    "speaker": "speaker application",
}

REJECTION_NOTES = {
    "attendee": (
        "Registrations are reviewed against the event's capacity and "
        "requirements. Please contact the organizer if you have any questions."
    ),
    "volunteer": (
        "We received more volunteer applications than we have roles for. "
        "We hope you will apply again for a future event."
    ),
    "speaker": (
        "The programme committee could not fit your proposal into this "
        "event's schedule. Thank you for submitting it."
    ),
}

INVALID_RECIPIENT = "Invalid recipient email address"


def kind_for(form_type: str, outcome: str) -> str:
    suffix = "approval" if outcome == APPROVED else "rejection"
    return f"{form_type}-{suffix}"


def build_environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html"]),
        keep_trailing_newline=True,
    )
    env.filters["humanize_time"] = humanize_time
    env.filters["text_to_html"] = text_to_html
    return env


@dataclass
class DeliveryResult:
    success: bool
    id: str | None = None
    message_id: str | None = None
    error: str | None = None
    email_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "id": self.id}
        if self.message_id:
            payload["messageId"] = self.message_id
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class _Prepared:
    payload_id: str | None
    record: SentEmail
    message: MailMessage | None
    error: str | None = None


class NotificationDispatcher:
    """Compose notification emails, send them, and keep the SentEmail log."""

    def __init__(
        self,
        repos: Repositories,
        transport,
        *,
        settings: Settings | None = None,
        environment: Environment | None = None,
    ) -> None:
        self.repos = repos
        self.transport = transport
        self.settings = settings or default_settings
        self.env = environment or build_environment()

    # Composition -----------------------------------------------------------

    def _template_for(self, kind: str, payload: Mapping[str, Any]) -> tuple[str, str]:
        if kind not in KINDS:
            raise ValueError(f"Unknown notification kind {kind!r}")
        form_type, default = KINDS[kind]
        if form_type is None:
            return default, default
        outcome = payload.get("outcome") or default
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome {outcome!r}")
        return outcome, form_type

    def _subject(self, template: str, role: str, payload, event: Event | None) -> str:
        title = event.title if event else "your event"
        if payload.get("subject"):
            return str(payload["subject"])
        if template == APPROVED:
            return f"Your {ROLE_LABELS[role].title()} Has Been Approved: {title}"
        if template == REJECTED:
            return f"Update Regarding Your {ROLE_LABELS[role].title()}: {title}"
        if template == "ticket":
            return f"Your Event Ticket: {title}"
        if template == "reminder":
            return f"Reminder: {title} is coming up"
        return f"Important Information About {title}"

    def compose(self, kind: str, payload: Mapping[str, Any]) -> MailMessage:
        """Render the subject and bodies for one notification."""
        template, role = self._template_for(kind, payload)
        event: Event | None = payload.get("event")
        additional_info = payload.get("additional_info")
        if template == REJECTED and not additional_info:
            additional_info = REJECTION_NOTES.get(role)

        subject = self._subject(template, role, payload, event)
        context = {
            "subject": subject,
            "recipient_name": payload.get("name") or "there",
            "event": event,
            "event_date": format_event_date(event.start_time) if event else "TBD",
            "event_url": (
                f"{self.settings.app_url.rstrip('/')}/events/{event.slug}"
                if event
                else None
            ),
            "role_label": ROLE_LABELS.get(role, "registration"),
            "ticket_number": payload.get("ticket_number"),
            "ticket_type": payload.get("ticket_type") or "Standard",
            "additional_info": additional_info,
            "message": payload.get("message") or "",
            "organizer_name": payload.get("organizer_name") or "The organizing team",
        }
        text = self.env.get_template(f"{template}.txt").render(**context)
        html = self.env.get_template(f"{template}.html").render(**context)
        return MailMessage(
            to=(payload.get("to") or "").strip(),
            to_name=payload.get("name"),
            subject=subject,
            text=text,
            html=html,
        )

    # Delivery --------------------------------------------------------------

    def _prepare(self, kind: str, payload: Mapping[str, Any]) -> _Prepared:
        template, _ = self._template_for(kind, payload)
        event: Event | None = payload.get("event")
        recipient = (payload.get("to") or "").strip()
        record = self.repos.sent_emails.record(
            user_id=payload.get("sender_id") or (event.organizer_id if event else None),
            event_id=payload.get("event_id") or (event.id if event else None),
            recipient_email=recipient,
            recipient_name=payload.get("name"),
            subject="",
            content="",
            email_type=EMAIL_TYPES[template],
            status="pending",
        )
        try:
            message = self.compose(kind, payload)
        except TemplateError as exc:
            logger.error("Could not render %s notification: %s", kind, exc)
            return _Prepared(payload.get("id"), record, None, "Could not render message")
        record.subject = message.subject
        record.content = message.text
        if not is_valid_email(recipient):
            return _Prepared(payload.get("id"), record, None, INVALID_RECIPIENT)
        return _Prepared(payload.get("id"), record, message)

    def _deliver(self, message: MailMessage) -> SendResult:
        try:
            return self.transport.send(message)
        except Exception as exc:  # transport errors never escape a send
            logger.exception("Mail transport failed for %s", message.to)
            return SendResult(success=False, error=str(exc) or type(exc).__name__)

    def _settle(self, prepared: _Prepared, outcome: SendResult | None) -> DeliveryResult:
        record = prepared.record
        if outcome is None:
            outcome = SendResult(success=False, error=prepared.error)
        record.status = "sent" if outcome.success else "failed"
        record.message_id = outcome.message_id
        record.error_message = None if outcome.success else outcome.error
        self.repos.session.flush()
        return DeliveryResult(
            success=outcome.success,
            id=prepared.payload_id,
            message_id=outcome.message_id,
            error=None if outcome.success else (outcome.error or "Send failed"),
            email_id=record.id,
        )

    def notify(self, kind: str, payload: Mapping[str, Any]) -> DeliveryResult:
        prepared = self._prepare(kind, payload)
        outcome = self._deliver(prepared.message) if prepared.message else None
        result = self._settle(prepared, outcome)
        if not result.success:
            logger.warning(
                "Notification %s to %s failed: %s",
                kind,
                prepared.record.recipient_email,
                result.error,
            )
        return result

    def notify_batch(
        self, kind: str, payloads: Iterable[Mapping[str, Any]]
    ) -> list[DeliveryResult]:
        """Send every payload, tolerating individual failures.

        Results come back in input order.
        """
        if kind not in KINDS:
            raise ValueError(f"Unknown notification kind {kind!r}")
        prepared = [self._prepare(kind, payload) for payload in payloads]
        outcomes: list[SendResult | None] = [None] * len(prepared)
        sendable = [
            (index, item.message)
            for index, item in enumerate(prepared)
            if item.message is not None
        ]
        if sendable:
            workers = max(1, min(self.settings.mail_concurrency, len(sendable)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [
                    (index, pool.submit(self._deliver, message))
                    for index, message in sendable
                ]
                for index, future in futures:
                    outcomes[index] = future.result()

        results = [
            self._settle(item, outcome) for item, outcome in zip(prepared, outcomes)
        ]
        succeeded = sum(result.success for result in results)
        logger.info(
            "Batch %s notifications: %d sent, %d failed",
            kind,
            succeeded,
            len(results) - succeeded,
        )
        return results

    # Organizer email -------------------------------------------------------

    def email_submissions(
        self,
        event_ref: str,
        caller: Caller | None,
        *,
        submission_ids: list[str],
        subject: str,
        message: str,
        include_event_details: bool = True,
    ) -> dict[str, Any]:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)

        missing = [
            name
            for name, value in (("subject", subject), ("message", message))
            if not (value or "").strip()
        ]
        if not submission_ids:
            missing.append("submissionIds")
        if missing:
            raise ValidationError("Missing required fields.", fields=missing)

        submissions = self.repos.submissions.find(
            FormSubmission.id.in_(submission_ids),
            FormSubmission.event_id == event.id,
        )
        by_id = {submission.id: submission for submission in submissions}
        organizer = event.organizer.full_name if event.organizer else None
        payloads = []
        for submission_id in submission_ids:
            submission = by_id.get(submission_id)
            if submission is None:
                continue
            name = submission.user_name or "there"
            payloads.append(
                {
                    "id": submission.id,
                    "to": submission.user_email,
                    "name": name,
                    "event": event if include_event_details else None,
                    "subject": subject.strip(),
                    "message": message.replace("{name}", name),
                    "sender_id": caller.user_id,
                    "event_id": event.id,
                    "organizer_name": organizer,
                }
            )
        results = self.notify_batch("custom", payloads)
        sent = sum(result.success for result in results)
        return {
            "sent": sent,
            "failed": len(results) - sent,
            "results": [result.to_dict() for result in results],
        }

    def sent_emails(
        self,
        caller: Caller | None,
        *,
        event_id: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ):
        if caller is None:
            raise Unauthorized()
        model = SentEmail
        criteria = [
            None if caller.is_super_admin else model.user_id == caller.user_id,
            model.event_id == event_id if event_id else None,
            model.status == status if status else None,
        ]
        request = PageRequest(
            page=page,
            limit=limit or self.settings.submissions_per_page,
            max_limit=self.settings.max_page_size,
        )
        return self.repos.sent_emails.paginate(
            *criteria, request=request, order_by=(model.created_at.desc(),)
        )
