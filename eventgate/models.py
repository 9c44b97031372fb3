"""SQLAlchemy models for EventGate."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

FORM_TYPES = ("attendee", "volunteer", "speaker")
FORM_STATUSES = ("draft", "published")
SUBMISSION_STATUSES = ("pending", "approved", "rejected")
REVIEW_STATUSES = ("pending", "approved", "rejected")
EMAIL_TYPES = ("success", "rejection", "ticket", "reminder", "custom")
EMAIL_STATUSES = ("sent", "failed", "pending")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True)
    first_name = Column(String(120), nullable=True)
    last_name = Column(String(120), nullable=True)
    role = Column(String(32), nullable=False, default="user")
    api_token = Column(String(128), nullable=False, unique=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String(255), nullable=False, unique=True)
    organizer_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    capacity = Column(Integer, nullable=False, default=100)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    organizer = relationship("User")
    forms = relationship(
        "EventForm",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="EventForm.form_type",
    )

    def form(self, form_type: str) -> "EventForm | None":
        for form in self.forms:
            if form.form_type == form_type:
                return form
        return None


class EventForm(Base):
    __tablename__ = "event_forms"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    form_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="draft")
    questions = Column(JSON, nullable=False, default=list)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="forms")

    __table_args__ = (UniqueConstraint("event_id", "form_type"),)


class FormSubmission(Base):
    __tablename__ = "form_submissions"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    form_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    answers = Column(JSON, nullable=False, default=dict)
    user_name = Column(String(255), nullable=True)
    user_email = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    ticket_number = Column(String(32), nullable=True, index=True)
    is_checked_in = Column(Boolean, nullable=False, default=False)
    check_in_count = Column(Integer, nullable=False, default=0)
    checked_in_at = Column(DateTime, nullable=True)
    last_checked_in_at = Column(DateTime, nullable=True)
    checked_in_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event")

    __table_args__ = (
        Index("ix_form_submissions_event_form", "event_id", "form_type"),
        Index("ix_form_submissions_event_status", "event_id", "status"),
        # At most one live submission per user, event and form type.
        Index(
            "uq_form_submissions_live",
            "event_id",
            "user_id",
            "form_type",
            unique=True,
            sqlite_where=text("status != 'rejected'"),
            postgresql_where=text("status != 'rejected'"),
        ),
    )


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    holder_name = Column(String(255), nullable=True)
    holder_email = Column(String(255), nullable=True)
    ticket_type = Column(String(64), nullable=False, default="Standard")
    is_checked_in = Column(Boolean, nullable=False, default=False)
    check_in_count = Column(Integer, nullable=False, default=0)
    checked_in_at = Column(DateTime, nullable=True)
    last_checked_in_at = Column(DateTime, nullable=True)
    checked_in_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event")


class CheckIn(Base):
    __tablename__ = "check_ins"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    origin = Column(String(16), nullable=False)
    record_id = Column(String(36), nullable=False)
    attendee_name = Column(String(255), nullable=False)
    attendee_email = Column(String(255), nullable=False)
    checked_in_at = Column(DateTime, default=_now, nullable=False)
    checked_in_by = Column(String(36), nullable=False)
    method = Column(String(32), nullable=False)
    is_duplicate = Column(Boolean, nullable=False, default=False)


class Review(Base):
    __tablename__ = "reviews"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    user_name = Column(String(255), nullable=True)
    rating = Column(Integer, nullable=False)
    title = Column(String(100), nullable=False)
    comment = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    reply_text = Column(Text, nullable=True)
    reply_created_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event")

    __table_args__ = (UniqueConstraint("event_id", "user_id"),)


class SentEmail(Base):
    __tablename__ = "sent_emails"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=True, index=True)
    event_id = Column(String(36), nullable=True, index=True)
    recipient_email = Column(String(255), nullable=False, index=True)
    recipient_name = Column(String(255), nullable=True)
    subject = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    email_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    error_message = Column(Text, nullable=True)
    message_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
