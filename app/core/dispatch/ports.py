# app/core/dispatch/ports.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Optional, Iterable

from app.core.dispatch.domain import (
    AcceptResult,
    CancelResult,
    Cleaner,
    DispatchAttempt,
    Job,
    JobStatus,
    Landlord,
    Property,
    PropertyCleanerLink,
    Review,
)


# ============================================================================
# NOTIFICATION CHANNEL
# ============================================================================

@dataclass(frozen=True)
class Action:
    """A button on an outbound message: visible label + opaque callback payload."""
    label: str
    data: str


class NotificationChannel(Protocol):
    """
    Outbound side of the cleaner/landlord messaging transport.

    Every send method raises ``ChannelError`` on transport failure.
    """

    async def send_text(self, address: str, body: str) -> None: ...

    async def send_with_two_actions(self, address: str, body: str, first: Action, second: Action) -> None: ...

    async def send_with_link(self, address: str, body: str, label: str, url: str) -> None: ...

    async def acknowledge(self, callback_id: str, text: str | None = None, show_alert: bool = False) -> None:
        """Dismiss the loading state of a pressed button, optionally with a toast."""
        ...


# ============================================================================
# PERSISTENCE
# ============================================================================

class DispatchRepository(Protocol):
    # --- health ---
    async def ping(self) -> bool: ...

    # --- landlords / properties / cleaners ---
    async def create_landlord(self, name: str, chat_id: str | None = None) -> Landlord: ...
    async def get_landlord(self, landlord_id: str) -> Optional[Landlord]: ...
    async def link_landlord_chat(self, landlord_id: str, chat_id: str) -> Optional[Landlord]: ...

    async def create_property(self, landlord_id: str, name: str, address: str | None = None) -> Property: ...
    async def get_property(self, property_id: str) -> Optional[Property]: ...

    async def create_cleaner(
        self,
        landlord_id: str,
        name: str,
        chat_id: str | None = None,
        active: bool = True,
        notes: str | None = None,
    ) -> Cleaner: ...
    async def get_cleaner(self, cleaner_id: str) -> Optional[Cleaner]: ...
    async def find_cleaner_by_chat(self, chat_id: str) -> Optional[Cleaner]: ...
    async def link_cleaner_chat(self, cleaner_id: str, chat_id: str) -> Optional[Cleaner]: ...

    async def set_property_cleaners(
        self, property_id: str, links: Iterable[tuple[str, int, bool]]
    ) -> list[PropertyCleanerLink]:
        """Replace the ranked links of a property with ``(cleaner_id, priority, is_primary)`` tuples."""
        ...

    async def list_property_cleaners(self, property_id: str) -> list[PropertyCleanerLink]:
        """Links ordered primary first, then ascending priority."""
        ...

    async def first_fallback_cleaner(self, landlord_id: str, exclude: set[str]) -> Optional[Cleaner]:
        """First active, linked cleaner of the landlord not in ``exclude``, alphabetical by name."""
        ...

    # --- jobs ---
    async def create_job(
        self,
        landlord_id: str,
        property_id: str,
        window_start: datetime,
        window_end: datetime,
        booking_id: str | None = None,
    ) -> Job: ...
    async def get_job(self, job_id: str) -> Optional[Job]: ...
    async def mark_job_offered(self, job_id: str) -> Optional[Job]:
        """new/offered -> offered. None if the job has already moved past dispatchable."""
        ...
    async def transition_job(
        self, job_id: str, expected: frozenset[JobStatus], target: JobStatus
    ) -> Optional[Job]:
        """Conditional status change. None if the job was not in one of ``expected``."""
        ...
    async def cancel_job(self, job_id: str, at: datetime) -> CancelResult: ...
    async def complete_with_review(
        self, job_id: str, rating: int, tags: list[str], comment: str | None, at: datetime
    ) -> Optional[Job]: ...
    async def get_review(self, job_id: str) -> Optional[Review]: ...
    async def jobs_due_for_reminder(self, now: datetime, until: datetime) -> list[Job]: ...
    async def mark_reminder_sent(self, job_id: str, at: datetime) -> bool: ...
    async def active_jobs_for_cleaner(self, cleaner_id: str) -> list[Job]: ...

    # --- dispatch attempts ---
    async def list_attempts(self, job_id: str) -> list[DispatchAttempt]: ...
    async def tried_cleaner_ids(self, job_id: str) -> set[str]: ...
    async def create_attempt(
        self, job_id: str, cleaner_id: str, offer_token: str, sent_at: datetime
    ) -> DispatchAttempt:
        """Insert a ``sent`` attempt. Raises DuplicateAttemptError if the pair already exists."""
        ...
    async def get_attempt_by_token(self, offer_token: str) -> Optional[DispatchAttempt]: ...
    async def cancel_attempt(self, attempt_id: str) -> bool:
        """sent -> cancelled after a failed send (no response timestamp)."""
        ...
    async def decline_attempt(self, attempt_id: str, at: datetime) -> bool:
        """sent -> declined. False if the attempt was no longer ``sent``."""
        ...
    async def accept_attempt(self, attempt_id: str, at: datetime) -> AcceptResult:
        """
        Atomic accept unit.

        Inside one transaction: re-check the attempt is ``sent`` and the job is
        unassigned; then assign the job, accept the attempt and cancel every
        sibling ``sent`` attempt. A losing accept cancels its own attempt.
        """
        ...
    async def timeout_sent_attempts(self, cutoff: datetime, at: datetime) -> list[DispatchAttempt]:
        """sent -> timeout for every attempt sent before ``cutoff``; returns the swept attempts."""
        ...
    async def assign_directly(self, job_id: str, cleaner_id: str, at: datetime) -> AcceptResult: ...
