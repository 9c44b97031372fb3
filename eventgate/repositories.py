"""Per-entity repositories over a SQLAlchemy session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from .errors import NotFound
from .models import (
    CheckIn,
    Event,
    EventForm,
    FormSubmission,
    Review,
    SentEmail,
    Ticket,
    User,
)
from .utils import slugify, utcnow


@dataclass
class Page:
    items: list[Any]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0

    def to_dict(self, serializer: Callable[[Any], Any] | None = None) -> dict:
        items = [serializer(item) for item in self.items] if serializer else self.items
        return {
            "items": items,
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "pages": self.pages,
        }


@dataclass
class PageRequest:
    page: int = 1
    limit: int = 20
    max_limit: int = field(default=100, repr=False)

    def __post_init__(self) -> None:
        self.page = max(1, int(self.page or 1))
        self.limit = max(1, min(int(self.limit or 1), self.max_limit))

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def search_clause(query: str | None, *columns):
    """Case-insensitive substring match across ``columns``."""
    term = (query or "").strip()
    if not term:
        return None
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    return or_(*(column.ilike(pattern, escape="\\") for column in columns))


class Repository:
    """Narrow store contract shared by every entity."""

    model: type = None

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, record_id: str | None):
        if not record_id:
            return None
        return self.session.get(self.model, record_id)

    def add(self, record):
        self.session.add(record)
        self.session.flush()
        return record

    def _select(self, criteria: Iterable):
        stmt = select(self.model)
        for condition in criteria:
            if condition is not None:
                stmt = stmt.where(condition)
        return stmt

    def find(
        self,
        *criteria,
        order_by: Sequence = (),
        offset: int = 0,
        limit: int | None = None,
    ) -> list:
        stmt = self._select(criteria)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def first(self, *criteria):
        return self.session.scalars(self._select(criteria).limit(1)).first()

    def count(self, *criteria) -> int:
        stmt = select(func.count()).select_from(self.model)
        for condition in criteria:
            if condition is not None:
                stmt = stmt.where(condition)
        return self.session.scalar(stmt) or 0

    def paginate(
        self, *criteria, request: PageRequest, order_by: Sequence = ()
    ) -> Page:
        total = self.count(*criteria)
        items = self.find(
            *criteria, order_by=order_by, offset=request.offset, limit=request.limit
        )
        return Page(items=items, total=total, page=request.page, limit=request.limit)

    def update_one(self, record_id: str, **values) -> int:
        return self.update_many(self.model.id == record_id, **values)

    def update_many(self, *criteria, **values) -> int:
        """Apply ``values`` to every matching row; returns the matched count."""
        stmt = update(self.model)
        for condition in criteria:
            stmt = stmt.where(condition)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        result = self.session.execute(stmt)
        return result.rowcount or 0

    def reload(self, record_id: str):
        stmt = (
            select(self.model)
            .where(self.model.id == record_id)
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).first()


class CheckInCounterMixin:
    def record_check_in(self, record_id: str, *, operator_id: str, at: datetime):
        """Atomically bump the check-in counter and return the fresh row."""
        model = self.model
        self.update_one(
            record_id,
            is_checked_in=True,
            check_in_count=model.check_in_count + 1,
            checked_in_at=func.coalesce(model.checked_in_at, at),
            last_checked_in_at=at,
            checked_in_by=operator_id,
        )
        return self.reload(record_id)


class UserRepository(Repository):
    model = User

    def by_token(self, token: str | None) -> User | None:
        if not token:
            return None
        return self.first(User.api_token == token)

    def by_email(self, email: str | None) -> User | None:
        if not email:
            return None
        return self.first(User.email == email.strip().lower())


class EventRepository(Repository):
    model = Event

    def by_ref(self, event_ref: str | None) -> Event | None:
        """Resolve an event by id first, then by slug."""
        if not event_ref:
            return None
        return self.get(event_ref) or self.first(Event.slug == event_ref)

    def require(self, event_ref: str | None) -> Event:
        event = self.by_ref(event_ref)
        if not event:
            raise NotFound("Event not found")
        return event

    def unique_slug(self, title: str) -> str:
        base = slugify(title) or "event"
        slug = base
        suffix = 2
        while self.count(Event.slug == slug):
            slug = f"{base}-{suffix}"
            suffix += 1
        return slug

    def starting_between(self, start: datetime, end: datetime) -> list[Event]:
        return self.find(
            Event.start_time > start,
            Event.start_time <= end,
            order_by=(Event.start_time.asc(),),
        )


class FormRepository(Repository):
    model = EventForm

    def for_event(self, event_id: str, form_type: str) -> EventForm | None:
        return self.first(
            EventForm.event_id == event_id, EventForm.form_type == form_type
        )

    def ensure(self, event_id: str, form_type: str) -> EventForm:
        form = self.for_event(event_id, form_type)
        if form:
            return form
        return self.add(EventForm(event_id=event_id, form_type=form_type))


class SubmissionRepository(CheckInCounterMixin, Repository):
    model = FormSubmission

    def live_for_user(
        self,
        event_id: str,
        user_id: str,
        form_type: str,
        exclude_id: str | None = None,
    ) -> FormSubmission | None:
        return self.first(
            FormSubmission.event_id == event_id,
            FormSubmission.user_id == user_id,
            FormSubmission.form_type == form_type,
            FormSubmission.status != "rejected",
            FormSubmission.id != exclude_id if exclude_id else None,
        )

    def by_ticket_number(self, ticket_number: str) -> FormSubmission | None:
        return self.first(
            func.upper(FormSubmission.ticket_number) == ticket_number.upper()
        )

    def approved_attendees(self, event_id: str) -> list[FormSubmission]:
        return self.find(
            FormSubmission.event_id == event_id,
            FormSubmission.form_type == "attendee",
            FormSubmission.status == "approved",
        )

    def for_event(
        self, event_id: str, form_type: str, submission_ids: Iterable[str]
    ) -> list[FormSubmission]:
        stmt = (
            select(FormSubmission)
            .where(
                FormSubmission.id.in_(list(submission_ids)),
                FormSubmission.event_id == event_id,
                FormSubmission.form_type == form_type,
            )
            .order_by(FormSubmission.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(stmt).all())

    def status_counts(self, event_id: str) -> list[tuple[str, str, int]]:
        stmt = (
            select(FormSubmission.form_type, FormSubmission.status, func.count())
            .where(FormSubmission.event_id == event_id)
            .group_by(FormSubmission.form_type, FormSubmission.status)
        )
        return [tuple(row) for row in self.session.execute(stmt).all()]


class TicketRepository(CheckInCounterMixin, Repository):
    model = Ticket

    def for_event(self, event_id: str) -> list[Ticket]:
        return self.find(Ticket.event_id == event_id)


class CheckInRepository(Repository):
    model = CheckIn


class ReviewRepository(Repository):
    model = Review

    def for_user(self, event_id: str, user_id: str) -> Review | None:
        return self.first(Review.event_id == event_id, Review.user_id == user_id)


class SentEmailRepository(Repository):
    model = SentEmail

    def record(self, **values) -> SentEmail:
        values.setdefault("created_at", utcnow())
        return self.add(SentEmail(**values))

    def reminded_recipients(self, event_id: str) -> set[str]:
        stmt = select(SentEmail.recipient_email).where(
            SentEmail.event_id == event_id,
            SentEmail.email_type == "reminder",
            SentEmail.status == "sent",
        )
        return {email.lower() for email in self.session.scalars(stmt).all()}


@dataclass
class Repositories:
    """Bundle of repositories bound to one session."""

    session: Session
    users: UserRepository = field(init=False)
    events: EventRepository = field(init=False)
    forms: FormRepository = field(init=False)
    submissions: SubmissionRepository = field(init=False)
    tickets: TicketRepository = field(init=False)
    check_ins: CheckInRepository = field(init=False)
    reviews: ReviewRepository = field(init=False)
    sent_emails: SentEmailRepository = field(init=False)

    def __post_init__(self) -> None:
        self.users = UserRepository(self.session)
        self.events = EventRepository(self.session)
        self.forms = FormRepository(self.session)
        self.submissions = SubmissionRepository(self.session)
        self.tickets = TicketRepository(self.session)
        self.check_ins = CheckInRepository(self.session)
        self.reviews = ReviewRepository(self.session)
        self.sent_emails = SentEmailRepository(self.session)
