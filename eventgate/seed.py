"""Development helpers for populating fake events, submissions and reviews."""

from __future__ import annotations

import random
import secrets
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .database import get_session
from .models import FORM_TYPES, Event, FormSubmission, Review, Ticket, User
from .policy import ROLE_EVENT_PLANNER, ROLE_USER
from .registration import DEFAULT_QUESTIONS, ticket_number_for
from .repositories import Repositories
from .storage import init_db
from .utils import utcnow

_event_types = [
    "Conference",
    "Workshop",
    "Meetup",
    "Hackathon",
    "Summit",
    "Panel",
    "Networking Night",
]
_submission_statuses = ["pending", "approved", "approved", "approved", "rejected"]
_review_titles = [
    "Great event",
    "Well organized",
    "Learned a lot",
    "Could be better",
    "Fantastic speakers",
]


def seed_fake_data(
    *,
    event_count: int = 3,
    submissions_per_event: int = 8,
    tickets_per_event: int = 2,
    reviews_per_event: int = 3,
) -> dict[str, int]:
    """Populate the database with a synthetic organizer and their events."""
    for name, value in (
        ("event_count", event_count),
        ("submissions_per_event", submissions_per_event),
        ("tickets_per_event", tickets_per_event),
        ("reviews_per_event", reviews_per_event),
    ):
        if value < 0:
            raise ValueError(f"{name} must be >= 0")

    init_db()
    fake = Faker()
    stats = {"events": 0, "submissions": 0, "tickets": 0, "reviews": 0}

    with get_session() as session:
        repos = Repositories(session)
        organizer = _create_user(session, fake, role=ROLE_EVENT_PLANNER)
        for _ in range(event_count):
            event = _create_event(repos, fake, organizer)
            stats["events"] += 1
            attendees = _create_submissions(session, fake, event, submissions_per_event)
            stats["submissions"] += submissions_per_event
            stats["tickets"] += _create_tickets(session, fake, event, tickets_per_event)
            stats["reviews"] += _create_reviews(
                session, fake, event, attendees, reviews_per_event
            )

    return stats


def _create_user(session: Session, fake: Faker, *, role: str = ROLE_USER) -> User:
    first_name = fake.first_name()
    last_name = fake.last_name()
    user = User(
        email=f"{secrets.token_hex(4)}.{fake.email()}".lower(),
        first_name=first_name,
        last_name=last_name,
        role=role,
        api_token=secrets.token_urlsafe(32),
    )
    session.add(user)
    session.flush()
    return user


def _random_start_time() -> datetime:
    day_offset = random.randint(1, 30)
    minute_offset = random.randint(0, 23 * 60)
    return utcnow() + timedelta(days=day_offset, minutes=minute_offset)


def _create_event(repos: Repositories, fake: Faker, organizer: User) -> Event:
    start_time = _random_start_time()
    title = f"{fake.city()} {random.choice(_event_types)}"
    event = repos.events.add(
        Event(
            slug=repos.events.unique_slug(title),
            organizer_id=organizer.id,
            title=title,
            description="\n\n".join(fake.paragraphs(nb=2)),
            location=fake.address().replace("\n", ", "),
            start_time=start_time,
            end_time=start_time + timedelta(hours=random.randint(1, 8)),
            capacity=random.choice([50, 100, 250]),
        )
    )
    for form_type in FORM_TYPES:
        form = repos.forms.ensure(event.id, form_type)
        form.questions = [dict(q) for q in DEFAULT_QUESTIONS[form_type]]
        form.status = "published"
    return event


def _answers(fake: Faker, form_type: str, name: str, email: str) -> dict:
    answers = {"name": name, "email": email}
    if form_type == "volunteer":
        answers["availability"] = random.choice(["Morning", "Afternoon", "All day"])
    elif form_type == "speaker":
        answers["topic"] = fake.catch_phrase()
        answers["bio"] = fake.sentence(nb_words=12)
    return answers


def _create_submissions(
    session: Session, fake: Faker, event: Event, total: int
) -> list[User]:
    """Create submissions and return the users whose attendance was approved."""
    attendees: list[User] = []
    for _ in range(total):
        user = _create_user(session, fake)
        form_type = random.choice(["attendee", "attendee", "volunteer", "speaker"])
        status = random.choice(_submission_statuses)
        submission = FormSubmission(
            event_id=event.id,
            user_id=user.id,
            form_type=form_type,
            status=status,
            answers=_answers(fake, form_type, user.full_name, user.email),
            user_name=user.full_name,
            user_email=user.email,
        )
        session.add(submission)
        session.flush()
        if form_type == "attendee" and status == "approved":
            submission.ticket_number = ticket_number_for(submission.id)
            attendees.append(user)
    return attendees


def _create_tickets(session: Session, fake: Faker, event: Event, total: int) -> int:
    for _ in range(total):
        session.add(
            Ticket(
                event_id=event.id,
                holder_name=fake.name(),
                holder_email=fake.email(),
                ticket_type=random.choice(["Standard", "VIP"]),
            )
        )
    session.flush()
    return total


def _create_reviews(
    session: Session, fake: Faker, event: Event, attendees: list[User], total: int
) -> int:
    reviewers = attendees[:total]
    for user in reviewers:
        session.add(
            Review(
                event_id=event.id,
                user_id=user.id,
                user_name=user.full_name,
                rating=random.randint(1, 5),
                title=random.choice(_review_titles),
                comment=fake.paragraph(nb_sentences=3)[:1000],
                status=random.choice(["pending", "approved"]),
            )
        )
    session.flush()
    return len(reviewers)
