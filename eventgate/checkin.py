"""Check-in, attendance statistics and ticket issuance."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from .config import Settings, settings as default_settings
from .errors import NotFound, Unauthorized, ValidationError
from .models import CheckIn, Event, FormSubmission, Ticket
from .notifications import NotificationDispatcher
from .policy import EVENT_MANAGE, Caller, authorize, is_organizer_or_admin
from .repositories import Page, PageRequest, Repositories
from .utils import (
    NO_EMAIL,
    UNKNOWN_NAME,
    extract_email,
    extract_name,
    is_valid_email,
    utcnow,
)

logger = logging.getLogger("uvicorn.error")

REFERENCE_PREFIXES = ("TICKET:", "TKT:", "ID:", "T-", "E-", "#")
CHECK_IN_METHODS = {"manual", "qr", "scan", "search"}

ORIGIN_TICKET = "ticket"
ORIGIN_SUBMISSION = "submission"


def clean_reference(value: str | None) -> str:
    """Trim a scanned reference and strip one known prefix."""
    reference = (value or "").strip()
    upper = reference.upper()
    for prefix in REFERENCE_PREFIXES:
        if upper.startswith(prefix):
            return reference[len(prefix):].strip()
    return reference


def _latest(first: datetime | None, second: datetime | None) -> datetime | None:
    if first is None:
        return second
    if second is None:
        return first
    return max(first, second)


@dataclass(frozen=True)
class AttendanceRecord:
    """One attendee, whether they hold a ticket or an approved submission."""

    origin: str
    id: str
    event_id: str
    user_id: str | None
    name: str
    email: str
    is_checked_in: bool
    check_in_count: int
    checked_in_at: datetime | None
    last_checked_in_at: datetime | None
    created_at: datetime | None
    ticket_number: str | None = None

    @classmethod
    def from_submission(cls, submission: FormSubmission) -> "AttendanceRecord":
        answers = submission.answers or {}
        return cls(
            origin=ORIGIN_SUBMISSION,
            id=submission.id,
            event_id=submission.event_id,
            user_id=submission.user_id,
            name=submission.user_name or extract_name(answers),
            email=submission.user_email or extract_email(answers),
            is_checked_in=bool(submission.is_checked_in),
            check_in_count=submission.check_in_count or 0,
            checked_in_at=submission.checked_in_at,
            last_checked_in_at=submission.last_checked_in_at,
            created_at=submission.created_at,
            ticket_number=submission.ticket_number,
        )

    @classmethod
    def from_ticket(cls, ticket: Ticket) -> "AttendanceRecord":
        return cls(
            origin=ORIGIN_TICKET,
            id=ticket.id,
            event_id=ticket.event_id,
            user_id=ticket.user_id,
            name=(ticket.holder_name or "").strip() or UNKNOWN_NAME,
            email=(ticket.holder_email or "").strip() or NO_EMAIL,
            is_checked_in=bool(ticket.is_checked_in),
            check_in_count=ticket.check_in_count or 0,
            checked_in_at=ticket.checked_in_at,
            last_checked_in_at=ticket.last_checked_in_at,
            created_at=ticket.created_at,
            ticket_number=ticket.id,
        )

    def merged_with(self, other: "AttendanceRecord") -> "AttendanceRecord":
        return replace(
            self,
            is_checked_in=self.is_checked_in or other.is_checked_in,
            check_in_count=self.check_in_count + other.check_in_count,
            checked_in_at=_latest(self.checked_in_at, other.checked_in_at),
            last_checked_in_at=_latest(
                self.last_checked_in_at, other.last_checked_in_at
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "origin": self.origin,
            "userId": self.user_id,
            "name": self.name or UNKNOWN_NAME,
            "email": self.email or NO_EMAIL,
            "ticketNumber": self.ticket_number,
            "isCheckedIn": self.is_checked_in,
            "checkInCount": self.check_in_count,
            "checkedInAt": _isoformat(self.checked_in_at),
            "lastCheckedInAt": _isoformat(self.last_checked_in_at),
            "createdAt": _isoformat(self.created_at),
        }


def merge_attendance(records: list[AttendanceRecord]) -> list[AttendanceRecord]:
    """Fold a user's ticket into their submission; the submission's identity wins.

    Each submission absorbs at most one ticket. Other tickets, and records
    without a user id, stay separate attendees.
    """
    owners: dict[str, int] = {}
    for index, record in enumerate(records):
        if record.origin == ORIGIN_SUBMISSION and record.user_id:
            owners.setdefault(record.user_id, index)

    merged = list(records)
    absorbed: set[int] = set()
    for index, record in enumerate(records):
        if record.origin != ORIGIN_TICKET or not record.user_id:
            continue
        owner = owners.pop(record.user_id, None)
        if owner is None:
            continue
        merged[owner] = merged[owner].merged_with(record)
        absorbed.add(index)
    return [record for index, record in enumerate(merged) if index not in absorbed]


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class AttendanceStats:
    total: int
    checked_in: int
    remaining: int
    percentage: int

    @classmethod
    def from_records(cls, records: list[AttendanceRecord]) -> "AttendanceStats":
        total = len(records)
        checked_in = sum(1 for record in records if record.is_checked_in)
        # Integer half-up rounding of checked_in / total * 100.
        percentage = (checked_in * 200 + total) // (2 * total) if total else 0
        return cls(
            total=total,
            checked_in=checked_in,
            remaining=total - checked_in,
            percentage=percentage,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "checkedIn": self.checked_in,
            "remaining": self.remaining,
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class CheckInResult:
    origin: str
    record_id: str
    event_id: str
    is_checked_in: bool
    check_in_count: int
    checked_in_at: datetime | None
    last_checked_in_at: datetime | None
    attendee: dict[str, str]

    @property
    def is_duplicate(self) -> bool:
        return self.check_in_count > 1

    @property
    def status(self) -> str:
        return "already_checked_in" if self.is_duplicate else "checked_in"

    def to_dict(self) -> dict[str, Any]:
        return {
            "isCheckedIn": self.is_checked_in,
            "checkInCount": self.check_in_count,
            "isDuplicate": self.is_duplicate,
            "status": self.status,
            "checkedInAt": _isoformat(self.checked_in_at),
            "lastCheckedInAt": _isoformat(self.last_checked_in_at),
            "origin": self.origin,
            "recordId": self.record_id,
            "eventId": self.event_id,
            "attendee": dict(self.attendee),
        }


class CheckInService:
    def __init__(
        self,
        repos: Repositories,
        dispatcher: NotificationDispatcher | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.repos = repos
        self.dispatcher = dispatcher
        self.settings = settings or default_settings

    def _lookup(self, reference: str):
        """Find a ticket or submission by id, then a submission by ticket number."""
        ticket = self.repos.tickets.get(reference)
        if ticket is not None:
            return ORIGIN_TICKET, ticket
        submission = self.repos.submissions.get(reference)
        if submission is None:
            submission = self.repos.submissions.by_ticket_number(reference)
        if submission is not None:
            return ORIGIN_SUBMISSION, submission
        raise NotFound("Ticket not found")

    def check_in(
        self,
        event_ref: str | None,
        reference: str | None,
        caller: Caller | None,
        method: str = "manual",
    ) -> CheckInResult:
        if caller is None:
            raise Unauthorized()
        event = self.repos.events.require(event_ref) if event_ref else None
        if event is not None:
            authorize(caller, event, EVENT_MANAGE)

        cleaned = clean_reference(reference)
        if not cleaned:
            raise ValidationError("Ticket ID is required.", fields=["ticketId"])
        method = (method or "manual").strip().lower()
        if method not in CHECK_IN_METHODS:
            raise ValidationError(
                "Unknown check-in method.", invalid={"method": method}
            )

        origin, record = self._lookup(cleaned)
        if event is None:
            event = self.repos.events.by_ref(record.event_id)
            # Records of events the caller cannot manage look missing.
            if not is_organizer_or_admin(event, caller):
                raise NotFound("Ticket not found")
        if record.event_id != event.id:
            raise ValidationError("This ticket is for a different event")
        if origin == ORIGIN_SUBMISSION and (
            record.form_type != "attendee" or record.status != "approved"
        ):
            raise ValidationError("This is not a valid approved ticket")

        repository = (
            self.repos.tickets if origin == ORIGIN_TICKET else self.repos.submissions
        )
        now = utcnow()
        updated = repository.record_check_in(
            record.id, operator_id=caller.user_id, at=now
        )
        attendance = (
            AttendanceRecord.from_ticket(updated)
            if origin == ORIGIN_TICKET
            else AttendanceRecord.from_submission(updated)
        )
        result = CheckInResult(
            origin=origin,
            record_id=updated.id,
            event_id=event.id,
            is_checked_in=bool(updated.is_checked_in),
            check_in_count=updated.check_in_count,
            checked_in_at=updated.checked_in_at,
            last_checked_in_at=updated.last_checked_in_at,
            attendee={"name": attendance.name, "email": attendance.email},
        )
        self.repos.check_ins.add(
            CheckIn(
                event_id=event.id,
                origin=origin,
                record_id=updated.id,
                attendee_name=attendance.name,
                attendee_email=attendance.email,
                checked_in_at=now,
                checked_in_by=caller.user_id,
                method=method,
                is_duplicate=result.is_duplicate,
            )
        )
        logger.info(
            "Checked in %s %s for %s (count %d)",
            origin,
            updated.id,
            event.slug,
            updated.check_in_count,
        )
        return result

    def attendance_records(self, event: Event) -> list[AttendanceRecord]:
        records = [
            AttendanceRecord.from_submission(submission)
            for submission in self.repos.submissions.approved_attendees(event.id)
        ]
        if self.settings.count_tickets_in_stats:
            records.extend(
                AttendanceRecord.from_ticket(ticket)
                for ticket in self.repos.tickets.for_event(event.id)
            )
        return merge_attendance(records)

    def get_stats(self, event_ref: str, caller: Caller | None) -> AttendanceStats:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        return AttendanceStats.from_records(self.attendance_records(event))

    def recent_activity(
        self, event_ref: str, caller: Caller | None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        limit = self.settings.recent_check_ins_limit if limit is None else limit
        checked_in = [
            record
            for record in self.attendance_records(event)
            if record.is_checked_in and record.checked_in_at
        ]
        checked_in.sort(key=lambda record: record.checked_in_at, reverse=True)
        return [
            {
                "id": record.id,
                "origin": record.origin,
                "name": record.name or UNKNOWN_NAME,
                "email": record.email or NO_EMAIL,
                "checkedInAt": _isoformat(record.checked_in_at),
            }
            for record in checked_in[: max(0, limit)]
        ]

    def history(
        self,
        event_ref: str,
        caller: Caller | None,
        *,
        search: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> Page:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        records = self.attendance_records(event)
        term = (search or "").strip().lower()
        if term:
            records = [
                record
                for record in records
                if term in (record.name or "").lower()
                or term in (record.email or "").lower()
            ]
        checked_in = sorted(
            (record for record in records if record.is_checked_in),
            key=lambda record: record.checked_in_at or datetime.min,
            reverse=True,
        )
        waiting = sorted(
            (record for record in records if not record.is_checked_in),
            key=lambda record: record.created_at or datetime.min,
            reverse=True,
        )
        ordered = checked_in + waiting
        request = PageRequest(
            page=page,
            limit=limit or self.settings.submissions_per_page,
            max_limit=self.settings.max_page_size,
        )
        return Page(
            items=ordered[request.offset : request.offset + request.limit],
            total=len(ordered),
            page=request.page,
            limit=request.limit,
        )

    def issue_ticket(
        self,
        event_ref: str,
        caller: Caller | None,
        *,
        holder_name: str,
        holder_email: str,
        user_id: str | None = None,
        ticket_type: str = "Standard",
    ) -> dict[str, Any]:
        event = self.repos.events.require(event_ref)
        authorize(caller, event, EVENT_MANAGE)
        holder_name = (holder_name or "").strip()
        holder_email = (holder_email or "").strip()
        missing = [
            field
            for field, value in (
                ("holderName", holder_name),
                ("holderEmail", holder_email),
            )
            if not value
        ]
        if missing:
            raise ValidationError("Missing required fields.", fields=missing)
        if not is_valid_email(holder_email):
            raise ValidationError(
                "Invalid email address.", invalid={"holderEmail": holder_email}
            )
        if user_id and self.repos.users.get(user_id) is None:
            raise NotFound("User not found")

        ticket = self.repos.tickets.add(
            Ticket(
                event_id=event.id,
                user_id=user_id,
                holder_name=holder_name,
                holder_email=holder_email,
                ticket_type=(ticket_type or "Standard").strip() or "Standard",
            )
        )
        logger.info(
            "Issued %s ticket %s for %s", ticket.ticket_type, ticket.id, event.slug
        )

        notification = None
        if self.dispatcher is not None:
            notification = self.dispatcher.notify(
                "ticket",
                {
                    "id": ticket.id,
                    "to": holder_email,
                    "name": holder_name,
                    "event": event,
                    "ticket_number": ticket.id,
                    "ticket_type": ticket.ticket_type,
                    "sender_id": caller.user_id,
                },
            )
        return {"ticket": ticket, "notification": notification}
