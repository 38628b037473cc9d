# app/infra/memory_dispatch_repo.py
"""
In-memory dispatch repository.

Implements the same port as the PostgreSQL repository. Every write that
must be atomic runs under a single ``asyncio.Lock``, which gives the same
single-writer serialisation the database gets from row locks. Every call
suspends once, like a round-trip to the store, so concurrent callers really
interleave.

Used for ``STORE_BACKEND=memory`` (single process only) and by the tests.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Iterable

from app.core.dispatch.domain import (
    ACTIVE_CLEANER_STATUSES,
    DISPATCHABLE_STATUSES,
    TERMINAL_JOB_STATUSES,
    AcceptResult,
    CancelResult,
    Cleaner,
    DispatchAttempt,
    Job,
    JobStatus,
    Landlord,
    OfferStatus,
    Property,
    PropertyCleanerLink,
    ResolveOutcome,
    Review,
    ensure_transition,
    utcnow,
)
from app.core.dispatch.errors import DuplicateAttemptError, InvalidTransitionError, NotFoundError
from app.core.dispatch.tokens import generate_offer_token
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryDispatchRepository:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._landlords: dict[str, Landlord] = {}
        self._properties: dict[str, Property] = {}
        self._cleaners: dict[str, Cleaner] = {}
        self._links: dict[str, list[tuple[str, int, bool]]] = {}
        self._jobs: dict[str, Job] = {}
        self._attempts: dict[str, DispatchAttempt] = {}
        self._tokens: dict[str, str] = {}  # offer_token -> attempt id
        self._reviews: dict[str, Review] = {}

    # ------------------------------------------------------------------
    # Views (callers never hold references to stored rows)
    # ------------------------------------------------------------------

    def _job_view(self, job: Job) -> Job:
        prop = self._properties.get(job.property_id)
        return replace(job, property_name=prop.name if prop else "")

    def _attempt_view(self, attempt: DispatchAttempt) -> DispatchAttempt:
        cleaner = self._cleaners.get(attempt.cleaner_id)
        return replace(
            attempt,
            cleaner_name=cleaner.name if cleaner else "",
            cleaner_chat_id=cleaner.chat_id if cleaner else None,
        )

    def _sent_siblings(self, job_id: str, exclude_id: str | None) -> list[DispatchAttempt]:
        return [
            a for a in self._attempts.values()
            if a.job_id == job_id and a.id != exclude_id and a.offer_status == OfferStatus.SENT
        ]

    def _cancel_siblings(self, job_id: str, exclude_id: str | None, at: datetime) -> list[DispatchAttempt]:
        cancelled = []
        for sibling in self._sent_siblings(job_id, exclude_id):
            sibling.offer_status = OfferStatus.CANCELLED
            sibling.responded_at = at
            cancelled.append(self._attempt_view(sibling))
        return cancelled

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Landlords / properties / cleaners
    # ------------------------------------------------------------------

    async def create_landlord(self, name: str, chat_id: str | None = None) -> Landlord:
        await asyncio.sleep(0)
        landlord = Landlord(id=_new_id(), name=name, chat_id=chat_id, created_at=utcnow())
        self._landlords[landlord.id] = landlord
        return replace(landlord)

    async def get_landlord(self, landlord_id: str) -> Landlord | None:
        await asyncio.sleep(0)
        landlord = self._landlords.get(landlord_id)
        return replace(landlord) if landlord else None

    async def link_landlord_chat(self, landlord_id: str, chat_id: str) -> Landlord | None:
        async with self._lock:
            landlord = self._landlords.get(landlord_id)
            if landlord is None:
                return None
            landlord.chat_id = chat_id
            return replace(landlord)

    async def create_property(self, landlord_id: str, name: str, address: str | None = None) -> Property:
        await asyncio.sleep(0)
        prop = Property(id=_new_id(), landlord_id=landlord_id, name=name, address=address, created_at=utcnow())
        self._properties[prop.id] = prop
        return replace(prop)

    async def get_property(self, property_id: str) -> Property | None:
        await asyncio.sleep(0)
        prop = self._properties.get(property_id)
        return replace(prop) if prop else None

    async def create_cleaner(
        self,
        landlord_id: str,
        name: str,
        chat_id: str | None = None,
        active: bool = True,
        notes: str | None = None,
    ) -> Cleaner:
        await asyncio.sleep(0)
        cleaner = Cleaner(
            id=_new_id(), landlord_id=landlord_id, name=name, chat_id=chat_id,
            active=active, notes=notes, created_at=utcnow(),
        )
        self._cleaners[cleaner.id] = cleaner
        return replace(cleaner)

    async def get_cleaner(self, cleaner_id: str) -> Cleaner | None:
        await asyncio.sleep(0)
        cleaner = self._cleaners.get(cleaner_id)
        return replace(cleaner) if cleaner else None

    async def find_cleaner_by_chat(self, chat_id: str) -> Cleaner | None:
        await asyncio.sleep(0)
        for cleaner in self._cleaners.values():
            if cleaner.chat_id == chat_id:
                return replace(cleaner)
        return None

    async def link_cleaner_chat(self, cleaner_id: str, chat_id: str) -> Cleaner | None:
        async with self._lock:
            cleaner = self._cleaners.get(cleaner_id)
            if cleaner is None:
                return None
            cleaner.chat_id = chat_id
            return replace(cleaner)

    async def set_property_cleaners(
        self, property_id: str, links: Iterable[tuple[str, int, bool]]
    ) -> list[PropertyCleanerLink]:
        async with self._lock:
            self._links[property_id] = [(cid, priority, primary) for cid, priority, primary in links]
        return await self.list_property_cleaners(property_id)

    async def list_property_cleaners(self, property_id: str) -> list[PropertyCleanerLink]:
        await asyncio.sleep(0)
        result = [
            PropertyCleanerLink(
                property_id=property_id,
                cleaner=replace(self._cleaners[cid]),
                priority=priority,
                is_primary=primary,
            )
            for cid, priority, primary in self._links.get(property_id, [])
            if cid in self._cleaners
        ]
        return sorted(result, key=lambda link: (not link.is_primary, link.priority))

    async def first_fallback_cleaner(self, landlord_id: str, exclude: set[str]) -> Cleaner | None:
        await asyncio.sleep(0)
        candidates = [
            c for c in self._cleaners.values()
            if c.landlord_id == landlord_id and c.is_eligible and c.id not in exclude
        ]
        if not candidates:
            return None
        return replace(min(candidates, key=lambda c: (c.name, c.id)))

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        landlord_id: str,
        property_id: str,
        window_start: datetime,
        window_end: datetime,
        booking_id: str | None = None,
    ) -> Job:
        await asyncio.sleep(0)
        job = Job(
            id=_new_id(),
            landlord_id=landlord_id,
            property_id=property_id,
            window_start=window_start,
            window_end=window_end,
            booking_id=booking_id,
            created_at=utcnow(),
        )
        self._jobs[job.id] = job
        return self._job_view(job)

    async def get_job(self, job_id: str) -> Job | None:
        await asyncio.sleep(0)
        job = self._jobs.get(job_id)
        return self._job_view(job) if job else None

    async def mark_job_offered(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in DISPATCHABLE_STATUSES:
                return None
            job.status = JobStatus.OFFERED
            return self._job_view(job)

    async def transition_job(
        self, job_id: str, expected: frozenset[JobStatus], target: JobStatus
    ) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in expected:
                return None
            ensure_transition(job.status, target)
            job.status = target
            return self._job_view(job)

    async def cancel_job(self, job_id: str, at: datetime) -> CancelResult:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            if job.status in TERMINAL_JOB_STATUSES:
                raise InvalidTransitionError(f"Job is already {job.status.value}")

            previous = job.assigned_cleaner_id
            job.status = JobStatus.CANCELLED
            job.assigned_cleaner_id = None
            cancelled = self._cancel_siblings(job_id, None, at)
            return CancelResult(job=self._job_view(job), cancelled=cancelled, previous_cleaner_id=previous)

    async def complete_with_review(
        self, job_id: str, rating: int, tags: list[str], comment: str | None, at: datetime
    ) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.DONE_AWAITING_REVIEW or job_id in self._reviews:
                return None
            self._reviews[job_id] = Review(job_id=job_id, rating=rating, tags=list(tags), comment=comment, created_at=at)
            job.status = JobStatus.COMPLETED
            return self._job_view(job)

    async def get_review(self, job_id: str) -> Review | None:
        await asyncio.sleep(0)
        review = self._reviews.get(job_id)
        return replace(review) if review else None

    async def jobs_due_for_reminder(self, now: datetime, until: datetime) -> list[Job]:
        await asyncio.sleep(0)
        due = [
            j for j in self._jobs.values()
            if j.status in ACTIVE_CLEANER_STATUSES
            and j.reminder_sent_at is None
            and j.assigned_cleaner_id is not None
            and now < j.window_start <= until
        ]
        return [self._job_view(j) for j in sorted(due, key=lambda j: j.window_start)]

    async def mark_reminder_sent(self, job_id: str, at: datetime) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.reminder_sent_at is not None:
                return False
            job.reminder_sent_at = at
            return True

    async def active_jobs_for_cleaner(self, cleaner_id: str) -> list[Job]:
        await asyncio.sleep(0)
        jobs = [
            j for j in self._jobs.values()
            if j.assigned_cleaner_id == cleaner_id and j.status in ACTIVE_CLEANER_STATUSES
        ]
        return [self._job_view(j) for j in sorted(jobs, key=lambda j: j.window_start)]

    # ------------------------------------------------------------------
    # Dispatch attempts
    # ------------------------------------------------------------------

    async def list_attempts(self, job_id: str) -> list[DispatchAttempt]:
        await asyncio.sleep(0)
        attempts = [a for a in self._attempts.values() if a.job_id == job_id]
        return [self._attempt_view(a) for a in sorted(attempts, key=lambda a: a.offer_sent_at)]

    async def tried_cleaner_ids(self, job_id: str) -> set[str]:
        await asyncio.sleep(0)
        return {a.cleaner_id for a in self._attempts.values() if a.job_id == job_id}

    async def create_attempt(
        self, job_id: str, cleaner_id: str, offer_token: str, sent_at: datetime
    ) -> DispatchAttempt:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            if job.is_assigned or job.status not in DISPATCHABLE_STATUSES:
                raise InvalidTransitionError("Job is no longer open for offers")
            if any(a.job_id == job_id and a.cleaner_id == cleaner_id for a in self._attempts.values()):
                raise DuplicateAttemptError(f"Cleaner {cleaner_id} was already offered job {job_id}")
            if offer_token in self._tokens:
                raise DuplicateAttemptError("Offer token collision")
            attempt = DispatchAttempt(
                id=_new_id(),
                job_id=job_id,
                cleaner_id=cleaner_id,
                offer_token=offer_token,
                offer_status=OfferStatus.SENT,
                offer_sent_at=sent_at,
            )
            self._attempts[attempt.id] = attempt
            self._tokens[offer_token] = attempt.id
            return self._attempt_view(attempt)

    async def get_attempt_by_token(self, offer_token: str) -> DispatchAttempt | None:
        await asyncio.sleep(0)
        attempt_id = self._tokens.get(offer_token)
        if attempt_id is None:
            return None
        return self._attempt_view(self._attempts[attempt_id])

    async def get_attempt(self, attempt_id: str) -> DispatchAttempt | None:
        await asyncio.sleep(0)
        attempt = self._attempts.get(attempt_id)
        return self._attempt_view(attempt) if attempt else None

    async def cancel_attempt(self, attempt_id: str) -> bool:
        async with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None or attempt.offer_status != OfferStatus.SENT:
                return False
            attempt.offer_status = OfferStatus.CANCELLED
            return True

    async def decline_attempt(self, attempt_id: str, at: datetime) -> bool:
        async with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None or attempt.offer_status != OfferStatus.SENT:
                return False
            attempt.offer_status = OfferStatus.DECLINED
            attempt.responded_at = at
            return True

    async def accept_attempt(self, attempt_id: str, at: datetime) -> AcceptResult:
        async with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None:
                return AcceptResult(outcome=ResolveOutcome.EXPIRED)
            if attempt.offer_status != OfferStatus.SENT:
                return AcceptResult(outcome=ResolveOutcome.ALREADY_ANSWERED, attempt=self._attempt_view(attempt))

            job = self._jobs[attempt.job_id]
            await asyncio.sleep(0)  # re-check and writes stay inside the lock
            if job.is_assigned or job.status not in DISPATCHABLE_STATUSES:
                attempt.offer_status = OfferStatus.CANCELLED
                attempt.responded_at = at
                return AcceptResult(
                    outcome=ResolveOutcome.JOB_TAKEN,
                    job=self._job_view(job),
                    attempt=self._attempt_view(attempt),
                )

            job.status = JobStatus.ACCEPTED
            job.assigned_cleaner_id = attempt.cleaner_id
            attempt.offer_status = OfferStatus.ACCEPTED
            attempt.responded_at = at
            cancelled = self._cancel_siblings(job.id, attempt.id, at)
            return AcceptResult(
                outcome=ResolveOutcome.ACCEPTED,
                job=self._job_view(job),
                attempt=self._attempt_view(attempt),
                cancelled=cancelled,
            )

    async def timeout_sent_attempts(self, cutoff: datetime, at: datetime) -> list[DispatchAttempt]:
        async with self._lock:
            swept = []
            for attempt in self._attempts.values():
                if attempt.offer_status == OfferStatus.SENT and attempt.offer_sent_at < cutoff:
                    attempt.offer_status = OfferStatus.TIMEOUT
                    swept.append(self._attempt_view(attempt))
            return swept

    async def assign_directly(self, job_id: str, cleaner_id: str, at: datetime) -> AcceptResult:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return AcceptResult(outcome=ResolveOutcome.EXPIRED)
            if job.is_assigned or job.status not in DISPATCHABLE_STATUSES:
                return AcceptResult(outcome=ResolveOutcome.JOB_TAKEN, job=self._job_view(job))

            own = next(
                (a for a in self._attempts.values() if a.job_id == job_id and a.cleaner_id == cleaner_id),
                None,
            )
            if own is None:
                own = DispatchAttempt(
                    id=_new_id(),
                    job_id=job_id,
                    cleaner_id=cleaner_id,
                    offer_token=generate_offer_token(),
                    offer_status=OfferStatus.ACCEPTED,
                    offer_sent_at=at,
                    responded_at=at,
                )
                self._attempts[own.id] = own
                self._tokens[own.offer_token] = own.id
            else:
                # One row per pair: an earlier declined or timed-out offer becomes the accepted one
                own.offer_status = OfferStatus.ACCEPTED
                own.responded_at = at

            job.status = JobStatus.ACCEPTED
            job.assigned_cleaner_id = cleaner_id
            cancelled = self._cancel_siblings(job_id, own.id, at)
            return AcceptResult(
                outcome=ResolveOutcome.ACCEPTED,
                job=self._job_view(job),
                attempt=self._attempt_view(own),
                cancelled=cancelled,
            )
