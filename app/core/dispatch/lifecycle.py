# app/core/dispatch/lifecycle.py
"""
Job lifecycle outside the offer race: creation, direct assignment,
start / mark-done by the cleaner, review, cancellation and reminders.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from app.core.dispatch import texts
from app.core.dispatch.domain import (
    ACTIVE_CLEANER_STATUSES,
    CancelResult,
    DispatchAttempt,
    DispatchResult,
    Job,
    JobStatus,
    ReminderSweepResult,
    ResolveOutcome,
    Review,
    utcnow,
)
from app.core.dispatch.errors import (
    ChannelError,
    InvalidTokenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.core.dispatch.models import CreateJobRequest, ReviewRequest
from app.core.dispatch.notifications import CleanerLinks, LandlordNotifier, best_effort
from app.core.dispatch.orchestrator import DispatchOrchestrator
from app.core.dispatch.ports import DispatchRepository, NotificationChannel
from app.core.dispatch.resolver import ResponseResolver
from app.core.dispatch.tokens import verify_job_link_token
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


@dataclass
class CreateJobResult:
    job: Job
    dispatch: DispatchResult | None = None
    dispatch_error: str | None = None


class JobService:
    def __init__(
        self,
        repo: DispatchRepository,
        channel: NotificationChannel,
        orchestrator: DispatchOrchestrator,
        resolver: ResponseResolver,
        landlords: LandlordNotifier,
        links: CleanerLinks,
        *,
        reminder_hours_ahead: int = 24,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._repo = repo
        self._channel = channel
        self._orchestrator = orchestrator
        self._resolver = resolver
        self._landlords = landlords
        self._links = links
        self._reminder_ahead = timedelta(hours=reminder_hours_ahead)
        self._now = now_fn

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_job(self, req: CreateJobRequest) -> CreateJobResult:
        """
        Create a job in ``new`` and (optionally) dispatch it right away.

        A failed dispatch does not fail the creation: the job stays ``new``
        and the error is reported next to it.
        """
        prop = await self._repo.get_property(req.property_id)
        if prop is None or prop.landlord_id != req.landlord_id:
            raise NotFoundError("Property not found")
        if req.window_end <= req.window_start:
            raise ValidationError("window_end must be after window_start")

        job = await self._repo.create_job(
            req.landlord_id, req.property_id, req.window_start, req.window_end, req.booking_id
        )
        logger.info(f"Job created for property {prop.id}", extra={"job_id": job.id})

        if not req.auto_dispatch:
            return CreateJobResult(job=job)

        try:
            dispatch = await self._orchestrator.dispatch(job.id)
        except ChannelError as e:
            return CreateJobResult(job=await self.get_job(job.id), dispatch_error=e.detail)
        return CreateJobResult(job=await self.get_job(job.id), dispatch=dispatch)

    async def get_job(self, job_id: str) -> Job:
        job = await self._repo.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def list_attempts(self, job_id: str) -> list[DispatchAttempt]:
        await self.get_job(job_id)
        return await self._repo.list_attempts(job_id)

    async def dispatch(self, job_id: str) -> DispatchResult:
        """Manual (re)dispatch by the landlord."""
        return await self._orchestrator.dispatch(job_id)

    # ------------------------------------------------------------------
    # Direct assignment
    # ------------------------------------------------------------------

    async def assign_directly(self, job_id: str, cleaner_id: str) -> Job:
        """
        Assign a job to a cleaner without an offer round.

        Runs through the same atomic "job still unassigned" check as an
        accept: pending offers are cancelled and their cleaners told.
        """
        job = await self.get_job(job_id)
        cleaner = await self._repo.get_cleaner(cleaner_id)
        if cleaner is None or cleaner.landlord_id != job.landlord_id:
            raise NotFoundError(f"Cleaner {cleaner_id} not found")
        if not cleaner.active:
            raise ValidationError("Cleaner is not active")

        result = await self._repo.assign_directly(job_id, cleaner_id, self._now())
        if result.outcome != ResolveOutcome.ACCEPTED or result.job is None:
            raise InvalidTransitionError("Job is already assigned or no longer open for assignment")

        job = result.job
        DispatchMetrics.assigned_directly()
        LogContext(logger, job_id=job.id, cleaner_id=cleaner_id).info(
            f"Job assigned directly, {len(result.cancelled)} pending offer(s) cancelled"
        )

        if cleaner.is_linked:
            await best_effort(
                "cleaner_assigned",
                self._channel.send_text(
                    cleaner.chat_id,
                    texts.direct_assignment_text(job.property_name, job.window_start, job.window_end),
                ),
                job_id=job.id,
            )
            url = self._links.job_url(job.id, cleaner_id)
            if url:
                await best_effort(
                    "cleaner_job_link",
                    self._channel.send_with_link(cleaner.chat_id, texts.CLEANER_JOB_LINK, texts.JOB_LINK_BUTTON, url),
                    job_id=job.id,
                )
        await self._resolver.notify_taken_by_other(result.cancelled)
        return job

    # ------------------------------------------------------------------
    # Cleaner actions (signed job link)
    # ------------------------------------------------------------------

    async def start_job(self, job_id: str, token: str) -> Job:
        job = await self._job_for_link(job_id, token)
        updated = await self._repo.transition_job(
            job.id, frozenset({JobStatus.ACCEPTED}), JobStatus.IN_PROGRESS
        )
        if updated is None:
            raise InvalidTransitionError("Job can only be started when accepted")
        logger.info("Job started", extra={"job_id": job.id})
        return updated

    async def mark_done(self, job_id: str, token: str) -> Job:
        job = await self._job_for_link(job_id, token)
        updated = await self._repo.transition_job(
            job.id, ACTIVE_CLEANER_STATUSES, JobStatus.DONE_AWAITING_REVIEW
        )
        if updated is None:
            raise InvalidTransitionError("Job can only be marked done when accepted or in progress")
        logger.info("Job marked done", extra={"job_id": job.id})
        await self._landlords.job_done(updated)
        return updated

    async def view_for_cleaner(self, job_id: str, token: str) -> Job:
        """Job as seen through the cleaner's signed link."""
        return await self._job_for_link(job_id, token)

    async def get_review(self, job_id: str) -> Review | None:
        await self.get_job(job_id)
        return await self._repo.get_review(job_id)

    async def _job_for_link(self, job_id: str, token: str) -> Job:
        claims = verify_job_link_token(token, self._links.secret or "")
        if claims is None or claims[0] != job_id:
            raise InvalidTokenError("Invalid or expired token")
        job = await self._repo.get_job(job_id)
        if job is None or job.assigned_cleaner_id != claims[1]:
            raise NotFoundError("Job not found or not assigned to you")
        return job

    # ------------------------------------------------------------------
    # Landlord actions
    # ------------------------------------------------------------------

    async def review_job(self, job_id: str, req: ReviewRequest) -> Job:
        job = await self.get_job(job_id)
        if job.status != JobStatus.DONE_AWAITING_REVIEW:
            raise InvalidTransitionError("Only jobs awaiting review can be reviewed")

        completed = await self._repo.complete_with_review(
            job_id, req.rating, req.tags, req.comment, self._now()
        )
        if completed is None:
            raise InvalidTransitionError("This job was already reviewed")
        logger.info(f"Job reviewed (rating={req.rating})", extra={"job_id": job_id})
        return completed

    async def cancel_job(self, job_id: str) -> CancelResult:
        result = await self._repo.cancel_job(job_id, self._now())
        logger.info(
            f"Job cancelled, {len(result.cancelled)} pending offer(s) withdrawn",
            extra={"job_id": job_id},
        )

        addresses = [a.cleaner_chat_id for a in result.cancelled if a.cleaner_chat_id]
        if result.previous_cleaner_id:
            previous = await self._repo.get_cleaner(result.previous_cleaner_id)
            if previous is not None and previous.is_linked:
                addresses.append(previous.chat_id)
        for address in addresses:
            await best_effort("cleaner_job_cancelled", self._channel.send_text(address, texts.CLEANER_JOB_CANCELLED),
                              job_id=job_id)
        return result

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def send_reminder(self, job_id: str) -> Job:
        """Manual, one-shot reminder. ChannelError propagates to the caller."""
        job = await self.get_job(job_id)
        if job.reminder_sent_at is not None:
            raise InvalidTransitionError("Reminder already sent for this job")
        if job.status not in ACTIVE_CLEANER_STATUSES:
            raise InvalidTransitionError("Reminder can only be sent for accepted or in-progress jobs")

        cleaner = await self._repo.get_cleaner(job.assigned_cleaner_id) if job.assigned_cleaner_id else None
        if cleaner is None or not cleaner.is_linked:
            raise ValidationError("Assigned cleaner has no linked chat")

        await self._send_reminder(job, cleaner.chat_id)
        return await self.get_job(job_id)

    async def send_due_reminders(self, now: datetime | None = None) -> ReminderSweepResult:
        """Remind assigned cleaners of jobs starting within the look-ahead window."""
        now = now or self._now()
        jobs = await self._repo.jobs_due_for_reminder(now, now + self._reminder_ahead)

        sent = 0
        for job in jobs:
            cleaner = await self._repo.get_cleaner(job.assigned_cleaner_id) if job.assigned_cleaner_id else None
            if cleaner is None or not cleaner.is_linked:
                continue
            try:
                if await self._send_reminder(job, cleaner.chat_id):
                    sent += 1
            except ChannelError as e:
                logger.warning(f"Reminder failed: {e.detail}", extra={"job_id": job.id})
                DispatchMetrics.notification_failed("reminder")

        logger.info(f"Reminder sweep: sent={sent} checked={len(jobs)}")
        return ReminderSweepResult(reminders_sent=sent, jobs_checked=len(jobs))

    async def _send_reminder(self, job: Job, address: str) -> bool:
        await self._channel.send_text(
            address, texts.reminder_text(job.property_name, job.window_start, job.window_end)
        )
        marked = await self._repo.mark_reminder_sent(job.id, self._now())
        if marked:
            DispatchMetrics.reminder_sent()
        return marked
