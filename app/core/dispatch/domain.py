# app/core/dispatch/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from app.core.dispatch.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# STATUS ENUMS
# ============================================================================

class JobStatus(str, Enum):
    NEW = "new"
    OFFERED = "offered"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    DONE_AWAITING_REVIEW = "done_awaiting_review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OfferStatus(str, Enum):
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


# Statuses in which a job carries an assigned cleaner
ASSIGNED_STATUSES = frozenset({
    JobStatus.ACCEPTED,
    JobStatus.IN_PROGRESS,
    JobStatus.DONE_AWAITING_REVIEW,
    JobStatus.COMPLETED,
})

DISPATCHABLE_STATUSES = frozenset({JobStatus.NEW, JobStatus.OFFERED})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
ACTIVE_CLEANER_STATUSES = frozenset({JobStatus.ACCEPTED, JobStatus.IN_PROGRESS})

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    # new -> accepted only through direct assignment
    JobStatus.NEW: frozenset({JobStatus.OFFERED, JobStatus.ACCEPTED, JobStatus.CANCELLED}),
    JobStatus.OFFERED: frozenset({JobStatus.OFFERED, JobStatus.ACCEPTED, JobStatus.CANCELLED}),
    JobStatus.ACCEPTED: frozenset({
        JobStatus.IN_PROGRESS, JobStatus.DONE_AWAITING_REVIEW, JobStatus.CANCELLED,
    }),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.DONE_AWAITING_REVIEW, JobStatus.CANCELLED}),
    JobStatus.DONE_AWAITING_REVIEW: frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

OFFER_TRANSITIONS: dict[OfferStatus, frozenset[OfferStatus]] = {
    OfferStatus.SENT: frozenset({
        OfferStatus.ACCEPTED, OfferStatus.DECLINED, OfferStatus.TIMEOUT, OfferStatus.CANCELLED,
    }),
    OfferStatus.ACCEPTED: frozenset(),
    OfferStatus.DECLINED: frozenset(),
    OfferStatus.TIMEOUT: frozenset(),
    OfferStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in JOB_TRANSITIONS[JobStatus(current)]


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is a legal job transition."""
    current, target = JobStatus(current), JobStatus(target)
    if target not in JOB_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Job cannot move from {current.value} to {target.value}"
        )


def ensure_offer_transition(current: OfferStatus, target: OfferStatus) -> None:
    current, target = OfferStatus(current), OfferStatus(target)
    if target not in OFFER_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Offer cannot move from {current.value} to {target.value}"
        )


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass
class Landlord:
    id: str
    name: str
    chat_id: str | None = None
    created_at: datetime | None = None


@dataclass
class Property:
    id: str
    landlord_id: str
    name: str
    address: str | None = None
    created_at: datetime | None = None


@dataclass
class Cleaner:
    id: str
    landlord_id: str
    name: str
    chat_id: str | None = None  # notification address, None = not linked
    active: bool = True
    notes: str | None = None
    created_at: datetime | None = None

    @property
    def is_linked(self) -> bool:
        return bool(self.chat_id and self.chat_id.strip())

    @property
    def is_eligible(self) -> bool:
        return self.active and self.is_linked


@dataclass
class PropertyCleanerLink:
    """Ranking hint: primary first, then ascending priority."""
    property_id: str
    cleaner: Cleaner
    priority: int = 0
    is_primary: bool = False


@dataclass
class Job:
    id: str
    landlord_id: str
    property_id: str
    window_start: datetime
    window_end: datetime
    status: JobStatus = JobStatus.NEW
    assigned_cleaner_id: str | None = None
    reminder_sent_at: datetime | None = None
    booking_id: str | None = None
    property_name: str = ""
    created_at: datetime | None = None

    @property
    def is_assigned(self) -> bool:
        return self.assigned_cleaner_id is not None


@dataclass
class DispatchAttempt:
    id: str
    job_id: str
    cleaner_id: str
    offer_token: str
    offer_status: OfferStatus
    offer_sent_at: datetime
    responded_at: datetime | None = None
    # Joined for notifications, not persisted on the attempt row
    cleaner_name: str = ""
    cleaner_chat_id: str | None = None


@dataclass
class Review:
    job_id: str
    rating: int
    tags: list[str] = field(default_factory=list)
    comment: str | None = None
    created_at: datetime | None = None


# ============================================================================
# RESULTS
# ============================================================================

class DispatchOutcome(str, Enum):
    OFFERED = "offered"
    NO_ELIGIBLE_CLEANER = "no_eligible_cleaner"


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    attempt: DispatchAttempt | None = None

    @property
    def offered(self) -> bool:
        return self.outcome == DispatchOutcome.OFFERED

    @classmethod
    def no_eligible(cls) -> "DispatchResult":
        return cls(outcome=DispatchOutcome.NO_ELIGIBLE_CLEANER)


class ResolveOutcome(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    ALREADY_ANSWERED = "already_answered"
    JOB_TAKEN = "job_taken"
    EXPIRED = "expired"  # unknown token


class OfferAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


@dataclass
class AcceptResult:
    """Outcome of the atomic accept unit inside the repository."""
    outcome: ResolveOutcome
    job: Job | None = None
    attempt: DispatchAttempt | None = None
    cancelled: list[DispatchAttempt] = field(default_factory=list)


@dataclass
class ResolveResult:
    outcome: ResolveOutcome
    attempt: DispatchAttempt | None = None
    job: Job | None = None
    next_dispatch: DispatchResult | None = None
    cancelled: list[DispatchAttempt] = field(default_factory=list)


@dataclass
class SweepResult:
    timed_out: int = 0
    jobs_checked: int = 0
    dispatched: int = 0


@dataclass
class CancelResult:
    job: Job
    cancelled: list[DispatchAttempt] = field(default_factory=list)
    previous_cleaner_id: str | None = None


@dataclass
class ReminderSweepResult:
    reminders_sent: int = 0
    jobs_checked: int = 0
