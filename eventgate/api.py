"""FastAPI application for EventGate."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any
import tomllib

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .checkin import CheckInService
from .config import settings
from .database import SessionLocal
from .errors import (
    Conflict,
    ServiceError,
    Unavailable,
    UpstreamFailure,
    ValidationError,
)
from .mail import build_transport
from .models import Event, EventForm, FormSubmission, Review, SentEmail, Ticket
from .notifications import NotificationDispatcher
from .policy import Caller
from .registration import RegistrationService
from .repositories import Repositories
from .reviews import ReviewService
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventgate")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.mail_transport = build_transport(settings)
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="EventGate", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_caller(request: Request, db: Session = Depends(get_db)) -> Caller | None:
    """Resolve the bearer token to a caller; unknown tokens yield no caller."""
    user = Repositories(db).users.by_token(_get_bearer_token(request))
    if user is None:
        return None
    return Caller(
        user_id=user.id,
        role=user.role,
        email=user.email,
        name=user.full_name,
    )


@dataclass
class Services:
    repos: Repositories
    registration: RegistrationService
    check_in: CheckInService
    notifications: NotificationDispatcher
    reviews: ReviewService


def get_services(request: Request, db: Session = Depends(get_db)) -> Services:
    transport = getattr(request.app.state, "mail_transport", None)
    if transport is None:
        transport = build_transport(settings)
        request.app.state.mail_transport = transport
    repos = Repositories(db)
    dispatcher = NotificationDispatcher(repos, transport, settings=settings)
    return Services(
        repos=repos,
        registration=RegistrationService(repos, dispatcher, settings=settings),
        check_in=CheckInService(repos, dispatcher, settings=settings),
        notifications=dispatcher,
        reviews=ReviewService(repos, settings=settings),
    )


# Error handlers --------------------------------------------------------------


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if isinstance(exc, UpstreamFailure):
        logger.error(
            "Upstream failure on %s %s: %s",
            request.method,
            request.url.path,
            exc.message,
        )
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Something went wrong."
    return JSONResponse(
        {"error": "HTTPError", "message": message}, status_code=exc.status_code
    )


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    lower = raw.lower()
    if "database is locked" in lower or "timeout" in lower:
        logger.error(
            "Database is busy while handling %s %s",
            request.method,
            request.url.path,
        )
        error = Unavailable()
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        error = UpstreamFailure()
    return JSONResponse(error.to_dict(), status_code=error.status_code)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(
        "Integrity error on %s %s: %s", request.method, request.url.path, exc.orig
    )
    error = Conflict()
    return JSONResponse(error.to_dict(), status_code=error.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {
            "error": "RequestValidationError",
            "message": "Some of the fields were invalid. Please double-check and try again.",
            "detail": jsonable_encoder(exc.errors()),
        },
        status_code=422,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse(
        {"error": "InternalError", "message": "Internal server error"},
        status_code=500,
    )


# Serializers -----------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_datetime(name: str, raw: str | None) -> datetime | None:
    """Parse an ISO8601 value into a naive UTC datetime."""
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {name}; use ISO8601 format", invalid={name: raw}
        ) from exc
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def _serialize_form(form: EventForm) -> dict[str, Any]:
    return {
        "formType": form.form_type,
        "status": form.status,
        "questions": list(form.questions or []),
        "lastModified": _iso(form.last_modified),
    }


def _serialize_event(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "slug": event.slug,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "startTime": _iso(event.start_time),
        "endTime": _iso(event.end_time),
        "capacity": event.capacity,
        "organizerId": event.organizer_id,
        "forms": {form.form_type: form.status for form in event.forms},
        "createdAt": _iso(event.created_at),
    }


def _serialize_submission(submission: FormSubmission) -> dict[str, Any]:
    return {
        "id": submission.id,
        "eventId": submission.event_id,
        "userId": submission.user_id,
        "formType": submission.form_type,
        "status": submission.status,
        "data": dict(submission.answers or {}),
        "userName": submission.user_name,
        "userEmail": submission.user_email,
        "notes": submission.notes,
        "ticketNumber": submission.ticket_number,
        "isCheckedIn": bool(submission.is_checked_in),
        "checkInCount": submission.check_in_count or 0,
        "checkedInAt": _iso(submission.checked_in_at),
        "lastCheckedInAt": _iso(submission.last_checked_in_at),
        "checkedInBy": submission.checked_in_by,
        "createdAt": _iso(submission.created_at),
        "updatedAt": _iso(submission.updated_at),
    }


def _serialize_ticket(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "eventId": ticket.event_id,
        "userId": ticket.user_id,
        "holderName": ticket.holder_name,
        "holderEmail": ticket.holder_email,
        "ticketType": ticket.ticket_type,
        "isCheckedIn": bool(ticket.is_checked_in),
        "checkInCount": ticket.check_in_count or 0,
        "checkedInAt": _iso(ticket.checked_in_at),
        "createdAt": _iso(ticket.created_at),
    }


def _serialize_review(review: Review) -> dict[str, Any]:
    reply = None
    if review.reply_text:
        reply = {"text": review.reply_text, "createdAt": _iso(review.reply_created_at)}
    return {
        "id": review.id,
        "eventId": review.event_id,
        "userId": review.user_id,
        "userName": review.user_name,
        "rating": review.rating,
        "title": review.title,
        "comment": review.comment,
        "status": review.status,
        "reply": reply,
        "createdAt": _iso(review.created_at),
        "updatedAt": _iso(review.updated_at),
    }


def _serialize_sent_email(email: SentEmail) -> dict[str, Any]:
    return {
        "id": email.id,
        "eventId": email.event_id,
        "recipientEmail": email.recipient_email,
        "recipientName": email.recipient_name,
        "subject": email.subject,
        "emailType": email.email_type,
        "status": email.status,
        "errorMessage": email.error_message,
        "messageId": email.message_id,
        "createdAt": _iso(email.created_at),
    }


def _serialize_moderation(outcome: dict[str, Any]) -> dict[str, Any]:
    return {
        "submission": _serialize_submission(outcome["submission"]),
        "notification": outcome["notification"].to_dict(),
    }


def _serialize_bulk(outcome: dict[str, Any]) -> dict[str, Any]:
    return {
        "updatedCount": outcome["updated_count"],
        "skippedIds": outcome["skipped_ids"],
        "notifications": outcome["notifications"],
    }


# Payloads --------------------------------------------------------------------


class CamelPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EventCreatePayload(CamelPayload):
    title: str
    description: str | None = None
    location: str | None = None
    start_time: str = Field(..., alias="startTime", description="ISO datetime string")
    end_time: str | None = Field(None, alias="endTime")
    capacity: int | None = Field(None, ge=1)


class FormSubmitPayload(CamelPayload):
    data: dict[str, Any] = Field(default_factory=dict)


class FormConfigPayload(CamelPayload):
    questions: list[dict[str, Any]]


class FormStatusPayload(CamelPayload):
    status: str = "published"


class ModerationPayload(CamelPayload):
    status: str


class BulkModerationPayload(CamelPayload):
    submission_ids: list[str] = Field(default_factory=list, alias="submissionIds")


class TicketPayload(CamelPayload):
    holder_name: str = Field(..., alias="holderName")
    holder_email: str = Field(..., alias="holderEmail")
    user_id: str | None = Field(None, alias="userId")
    ticket_type: str = Field("Standard", alias="ticketType")


class CheckInPayload(CamelPayload):
    ticket_id: str = Field(..., alias="ticketId")
    event_id: str | None = Field(None, alias="eventId")
    method: str = "manual"


class EmailPayload(CamelPayload):
    submission_ids: list[str] = Field(default_factory=list, alias="submissionIds")
    subject: str = ""
    message: str = ""
    include_event_details: bool = Field(True, alias="includeEventDetails")


class ReviewCreatePayload(CamelPayload):
    event_id: str = Field(..., alias="eventId")
    rating: int
    title: str
    comment: str


class ReviewStatusPayload(CamelPayload):
    status: str


class ReviewReplyPayload(CamelPayload):
    text: str


# Events and forms ------------------------------------------------------------


@app.post("/events", status_code=201)
def create_event_view(
    payload: EventCreatePayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    start_time = _parse_datetime("startTime", payload.start_time)
    if start_time is None:
        raise ValidationError("startTime is required", fields=["startTime"])
    event = services.registration.create_event(
        caller,
        title=payload.title,
        description=payload.description,
        location=payload.location,
        start_time=start_time,
        end_time=_parse_datetime("endTime", payload.end_time),
        capacity=payload.capacity,
    )
    return {"event": _serialize_event(event)}


@app.get("/events/{event_id}")
def event_detail(event_id: str, services: Services = Depends(get_services)):
    return {"event": _serialize_event(services.registration.get_event(event_id))}


@app.get("/events/{event_id}/forms/{form_type}")
def get_form_view(
    event_id: str, form_type: str, services: Services = Depends(get_services)
):
    return services.registration.get_form(event_id, form_type)


@app.put("/events/{event_id}/forms/{form_type}/config")
def configure_form_view(
    event_id: str,
    form_type: str,
    payload: FormConfigPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    form = services.registration.configure_form(
        event_id, form_type, payload.questions, caller
    )
    return {"form": _serialize_form(form)}


@app.post("/events/{event_id}/forms/{form_type}/publish")
def publish_form_view(
    event_id: str,
    form_type: str,
    payload: FormStatusPayload | None = None,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    status = payload.status if payload else "published"
    form = services.registration.set_form_status(event_id, form_type, status, caller)
    return {"form": _serialize_form(form)}


@app.post("/events/{event_id}/publish-all-forms")
def publish_all_forms_view(
    event_id: str,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return {"forms": services.registration.publish_all_forms(event_id, caller)}


@app.post("/events/{event_id}/forms/{form_type}")
def submit_form_view(
    event_id: str,
    form_type: str,
    payload: FormSubmitPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    outcome = services.registration.submit_form(
        event_id, form_type, payload.data, caller
    )
    return {
        "message": "Form submitted successfully",
        "submissionId": outcome["submission_id"],
        "status": outcome["status"],
        "submission": _serialize_submission(outcome["submission"]),
    }


# Submissions -----------------------------------------------------------------


@app.get("/events/{event_id}/submissions")
def list_submissions_view(
    event_id: str,
    form_type: str | None = Query(None, alias="formType"),
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int | None = None,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    result = services.registration.list_submissions(
        event_id,
        caller,
        form_type=form_type,
        status=status,
        search=search,
        page=page,
        limit=limit,
    )
    return result.to_dict(_serialize_submission)


@app.get("/events/{event_id}/submissions/counts")
def submission_counts_view(
    event_id: str,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return {"counts": services.registration.submission_counts(event_id, caller)}


@app.patch("/events/{event_id}/submissions/{form_type}/bulk-approve")
def bulk_approve_view(
    event_id: str,
    form_type: str,
    payload: BulkModerationPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    outcome = services.registration.bulk_moderate(
        event_id, form_type, payload.submission_ids, "approved", caller
    )
    return _serialize_bulk(outcome)


@app.patch("/events/{event_id}/submissions/{form_type}/bulk-reject")
def bulk_reject_view(
    event_id: str,
    form_type: str,
    payload: BulkModerationPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    outcome = services.registration.bulk_moderate(
        event_id, form_type, payload.submission_ids, "rejected", caller
    )
    return _serialize_bulk(outcome)


@app.patch("/events/{event_id}/submissions/{form_type}/{submission_id}")
def moderate_submission_view(
    event_id: str,
    form_type: str,
    submission_id: str,
    payload: ModerationPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    outcome = services.registration.moderate(
        event_id, form_type, submission_id, payload.status, caller
    )
    return _serialize_moderation(outcome)


@app.post("/events/{event_id}/submissions/{form_type}/{submission_id}/approve")
def approve_submission_view(
    event_id: str,
    form_type: str,
    submission_id: str,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    outcome = services.registration.moderate(
        event_id, form_type, submission_id, "approved", caller
    )
    return _serialize_moderation(outcome)


@app.post("/events/{event_id}/submissions/{form_type}/{submission_id}/reject")
def reject_submission_view(
    event_id: str,
    form_type: str,
    submission_id: str,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    outcome = services.registration.moderate(
        event_id, form_type, submission_id, "rejected", caller
    )
    return _serialize_moderation(outcome)


@app.get("/submissions/my-pending")
def my_pending_view(
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    submissions = services.registration.my_pending_submissions(caller)
    return {"submissions": [_serialize_submission(s) for s in submissions]}


# Tickets and check-in --------------------------------------------------------


@app.post("/events/{event_id}/tickets", status_code=201)
def issue_ticket_view(
    event_id: str,
    payload: TicketPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    outcome = services.check_in.issue_ticket(
        event_id,
        caller,
        holder_name=payload.holder_name,
        holder_email=payload.holder_email,
        user_id=payload.user_id,
        ticket_type=payload.ticket_type,
    )
    notification = outcome["notification"]
    return {
        "ticket": _serialize_ticket(outcome["ticket"]),
        "notification": notification.to_dict() if notification else None,
    }


@app.post("/check-ins")
def check_in_view(
    payload: CheckInPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    result = services.check_in.check_in(
        payload.event_id, payload.ticket_id, caller, method=payload.method
    )
    body = result.to_dict()
    body["message"] = (
        "Attendee already checked in" if result.is_duplicate else "Check-in successful"
    )
    return body


@app.get("/events/{event_id}/check-ins/stats")
def check_in_stats_view(
    event_id: str,
    limit: int | None = None,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    stats = services.check_in.get_stats(event_id, caller)
    recent = services.check_in.recent_activity(event_id, caller, limit=limit)
    return {"stats": stats.to_dict(), "recentCheckIns": recent}


@app.get("/events/{event_id}/check-ins/history")
def check_in_history_view(
    event_id: str,
    search: str | None = None,
    page: int = 1,
    limit: int | None = None,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    result = services.check_in.history(
        event_id, caller, search=search, page=page, limit=limit
    )
    return result.to_dict(lambda record: record.to_dict())


# Email -----------------------------------------------------------------------


@app.post("/events/{event_id}/email")
def email_submissions_view(
    event_id: str,
    payload: EmailPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.notifications.email_submissions(
        event_id,
        caller,
        submission_ids=payload.submission_ids,
        subject=payload.subject,
        message=payload.message,
        include_event_details=payload.include_event_details,
    )


@app.get("/emails/sent")
def sent_emails_view(
    event_id: str | None = Query(None, alias="eventId"),
    status: str | None = None,
    page: int = 1,
    limit: int | None = None,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    result = services.notifications.sent_emails(
        caller, event_id=event_id, status=status, page=page, limit=limit
    )
    return result.to_dict(_serialize_sent_email)


# Reviews ---------------------------------------------------------------------


@app.post("/reviews", status_code=201)
def create_review_view(
    payload: ReviewCreatePayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    review = services.reviews.create_review(
        caller,
        event_id=payload.event_id,
        rating=payload.rating,
        title=payload.title,
        comment=payload.comment,
    )
    return {
        "message": "Review submitted successfully",
        "review": _serialize_review(review),
    }


@app.get("/reviews")
def list_reviews_view(
    event_id: str | None = Query(None, alias="eventId"),
    status: str = "approved",
    page: int = 1,
    limit: int | None = None,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    result = services.reviews.list_reviews(
        event_id=event_id, status=status, page=page, limit=limit, caller=caller
    )
    return result.to_dict(_serialize_review)


@app.get("/reviews/my-reviews")
def my_reviews_view(
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return {"reviews": [_serialize_review(r) for r in services.reviews.my_reviews(caller)]}


@app.put("/reviews/{review_id}/status")
def review_status_view(
    review_id: str,
    payload: ReviewStatusPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    review = services.reviews.set_review_status(review_id, payload.status, caller)
    return {"review": _serialize_review(review)}


@app.post("/reviews/{review_id}/reply")
def reply_to_review_view(
    review_id: str,
    payload: ReviewReplyPayload,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    review = services.reviews.reply_to_review(review_id, payload.text, caller)
    return {"review": _serialize_review(review)}


@app.delete("/reviews/{review_id}/reply")
def delete_reply_view(
    review_id: str,
    caller: Caller | None = Depends(get_caller),
    services: Services = Depends(get_services),
):
    review = services.reviews.delete_reply(review_id, caller)
    return {"review": _serialize_review(review)}
