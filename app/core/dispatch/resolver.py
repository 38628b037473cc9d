# app/core/dispatch/resolver.py
"""
Response resolver: explicit accept/decline and the timeout sweep.

All three paths race against each other on the same attempt rows. Each one
performs a *conditional* write (``... WHERE offer_status = 'sent'``) or, for
accept, a locked re-check inside one transaction. Whichever lands first wins
the attempt; the others observe a non-``sent`` status and do nothing.

Everything after the commit (cleaner confirmations, landlord updates,
fallback dispatch) is best-effort.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from app.core.dispatch import texts
from app.core.dispatch.domain import (
    DISPATCHABLE_STATUSES,
    DispatchAttempt,
    DispatchResult,
    Job,
    OfferAction,
    OfferStatus,
    ResolveOutcome,
    ResolveResult,
    SweepResult,
    utcnow,
)
from app.core.dispatch.errors import (
    DispatchError,
    InvalidTransitionError,
    NotFoundError,
    OfferDeliveryError,
)
from app.core.dispatch.notifications import CleanerLinks, LandlordNotifier, best_effort
from app.core.dispatch.orchestrator import DispatchOrchestrator
from app.core.dispatch.ports import DispatchRepository, NotificationChannel
from app.infra.logging_config import LogContext, get_logger, mask_token
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


@dataclass
class Fallback:
    """What the re-dispatch after a decline or timeout did."""

    dispatch: DispatchResult | None = None
    unreachable_name: str | None = None
    # The job was taken or cancelled meanwhile; the landlord already heard about that
    closed: bool = False

    @property
    def offered_name(self) -> str | None:
        if self.dispatch is not None and self.dispatch.offered and self.dispatch.attempt is not None:
            return self.dispatch.attempt.cleaner_name or None
        return None


class ResponseResolver:
    def __init__(
        self,
        repo: DispatchRepository,
        channel: NotificationChannel,
        orchestrator: DispatchOrchestrator,
        landlords: LandlordNotifier,
        links: CleanerLinks,
        *,
        response_minutes: int,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._repo = repo
        self._channel = channel
        self._orchestrator = orchestrator
        self._landlords = landlords
        self._links = links
        self._response_window = timedelta(minutes=response_minutes)
        self._now = now_fn

    # ------------------------------------------------------------------
    # Explicit response
    # ------------------------------------------------------------------

    async def resolve(
        self,
        token: str,
        action: OfferAction,
        *,
        callback_id: str | None = None,
        reply_address: str | None = None,
    ) -> ResolveResult:
        """
        Apply an accept/decline for the attempt identified by ``token``.

        When ``callback_id`` is given the button press is acknowledged right
        after the state change, before any follow-up message is sent.
        ``reply_address`` overrides the cleaner's stored chat for replies.
        """
        action = OfferAction(action)
        attempt = await self._repo.get_attempt_by_token(token)
        if attempt is None:
            logger.info(f"Unknown offer token {mask_token(token)}")
            await self._ack(callback_id, texts.ACK_EXPIRED, show_alert=True)
            return ResolveResult(outcome=ResolveOutcome.EXPIRED)

        log = LogContext(logger, job_id=attempt.job_id, attempt_id=attempt.id, cleaner_id=attempt.cleaner_id)
        if attempt.offer_status != OfferStatus.SENT:
            log.info(f"Late {action.value}: attempt already {attempt.offer_status.value}")
            await self._ack(callback_id, texts.ACK_ALREADY_ANSWERED)
            return ResolveResult(outcome=ResolveOutcome.ALREADY_ANSWERED, attempt=attempt)

        address = reply_address or attempt.cleaner_chat_id
        if action == OfferAction.DECLINE:
            return await self._decline(attempt, address, callback_id, log)
        return await self._accept(attempt, address, callback_id, log)

    async def _decline(
        self, attempt: DispatchAttempt, address: str | None, callback_id: str | None, log: LogContext
    ) -> ResolveResult:
        if not await self._repo.decline_attempt(attempt.id, self._now()):
            # A sweep or a sibling accept got there between the read and the write
            log.info("Decline lost the race, attempt no longer sent")
            await self._ack(callback_id, texts.ACK_ALREADY_ANSWERED)
            return ResolveResult(outcome=ResolveOutcome.ALREADY_ANSWERED, attempt=attempt)

        attempt.offer_status = OfferStatus.DECLINED
        DispatchMetrics.offer_declined()
        log.info("Offer declined")

        await self._ack(callback_id, texts.ACK_DECLINED)
        if address:
            await best_effort("cleaner_declined", self._channel.send_text(address, texts.CLEANER_DECLINED),
                              job_id=attempt.job_id)

        fallback = await self._fallback(attempt.job_id)
        job = await self._repo.get_job(attempt.job_id)
        if _still_open(job, fallback):
            await self._landlords.job_declined(
                job, attempt.cleaner_name, fallback.offered_name, fallback.unreachable_name
            )

        return ResolveResult(
            outcome=ResolveOutcome.DECLINED, attempt=attempt, job=job, next_dispatch=fallback.dispatch
        )

    async def _accept(
        self, attempt: DispatchAttempt, address: str | None, callback_id: str | None, log: LogContext
    ) -> ResolveResult:
        result = await self._repo.accept_attempt(attempt.id, self._now())

        if result.outcome == ResolveOutcome.EXPIRED:
            await self._ack(callback_id, texts.ACK_EXPIRED, show_alert=True)
            return ResolveResult(outcome=ResolveOutcome.EXPIRED)

        if result.outcome == ResolveOutcome.ALREADY_ANSWERED:
            log.info("Accept lost the race, attempt no longer sent")
            await self._ack(callback_id, texts.ACK_ALREADY_ANSWERED)
            return ResolveResult(outcome=ResolveOutcome.ALREADY_ANSWERED, attempt=result.attempt or attempt)

        if result.outcome == ResolveOutcome.JOB_TAKEN:
            DispatchMetrics.offer_race_lost()
            log.info("Accept arrived after the job was taken")
            await self._ack(callback_id, texts.ACK_JOB_TAKEN, show_alert=True)
            if address:
                await best_effort("cleaner_late_accept", self._channel.send_text(address, texts.CLEANER_LATE_ACCEPT),
                                  job_id=attempt.job_id)
            return ResolveResult(outcome=ResolveOutcome.JOB_TAKEN, attempt=result.attempt or attempt, job=result.job)

        won = result.attempt or attempt
        won.cleaner_name = won.cleaner_name or attempt.cleaner_name
        job = result.job
        DispatchMetrics.offer_accepted()
        log.info(f"Offer accepted, {len(result.cancelled)} sibling offer(s) cancelled")

        await self._ack(callback_id, texts.ACK_ACCEPTED)
        if address:
            await best_effort("cleaner_accepted", self._channel.send_text(address, texts.CLEANER_ACCEPTED),
                              job_id=won.job_id)
            url = self._links.job_url(won.job_id, won.cleaner_id)
            if url:
                await best_effort(
                    "cleaner_job_link",
                    self._channel.send_with_link(address, texts.CLEANER_JOB_LINK, texts.JOB_LINK_BUTTON, url),
                    job_id=won.job_id,
                )

        await self.notify_taken_by_other(result.cancelled)
        if job is not None:
            await self._landlords.job_accepted(job, won.cleaner_name)

        return ResolveResult(outcome=ResolveOutcome.ACCEPTED, attempt=won, job=job, cancelled=result.cancelled)

    async def notify_taken_by_other(self, cancelled: list[DispatchAttempt]) -> None:
        for other in cancelled:
            if other.cleaner_chat_id:
                await best_effort(
                    "cleaner_taken_by_other",
                    self._channel.send_text(other.cleaner_chat_id, texts.CLEANER_TAKEN_BY_OTHER),
                    job_id=other.job_id, cleaner_id=other.cleaner_id,
                )

    # ------------------------------------------------------------------
    # Timeout sweep
    # ------------------------------------------------------------------

    async def sweep_timeouts(self, now: datetime | None = None) -> SweepResult:
        """
        Time out every ``sent`` attempt older than the response window and
        re-dispatch each affected job once.
        """
        now = now or self._now()
        cutoff = now - self._response_window
        swept = await self._repo.timeout_sent_attempts(cutoff, now)
        DispatchMetrics.offers_timed_out(len(swept))
        if not swept:
            return SweepResult()

        by_job: dict[str, list[DispatchAttempt]] = {}
        for attempt in swept:
            by_job.setdefault(attempt.job_id, []).append(attempt)

        dispatched = 0
        for job_id, attempts in by_job.items():
            try:
                fallback = await self._fallback(job_id)
                if fallback.offered_name is not None:
                    dispatched += 1

                job = await self._repo.get_job(job_id)
                if _still_open(job, fallback):
                    names = ", ".join(a.cleaner_name for a in attempts if a.cleaner_name)
                    await self._landlords.job_timed_out(job, names, fallback.offered_name, fallback.unreachable_name)
            except Exception as e:
                # One broken job must not stall the rest of the sweep
                logger.error(f"Timeout fallback failed: {e}", extra={"job_id": job_id}, exc_info=True)

        logger.info(f"Timeout sweep: timed_out={len(swept)} jobs={len(by_job)} dispatched={dispatched}")
        return SweepResult(timed_out=len(swept), jobs_checked=len(by_job), dispatched=dispatched)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fallback(self, job_id: str) -> Fallback:
        """Re-dispatch after decline/timeout. Domain errors are logged, not raised."""
        try:
            return Fallback(dispatch=await self._orchestrator.dispatch(job_id))
        except OfferDeliveryError as e:
            logger.warning(f"Fallback offer to {e.cleaner_name} failed: {e.detail}", extra={"job_id": job_id})
            return Fallback(unreachable_name=e.cleaner_name)
        except (InvalidTransitionError, NotFoundError) as e:
            logger.info(f"Fallback skipped, job left dispatch: {e.detail}", extra={"job_id": job_id})
            return Fallback(closed=True)
        except DispatchError as e:
            logger.warning(f"Fallback dispatch failed: {e.detail}", extra={"job_id": job_id})
            return Fallback()

    async def _ack(self, callback_id: str | None, text: str, show_alert: bool = False) -> None:
        if callback_id:
            await best_effort("callback_ack", self._channel.acknowledge(callback_id, text, show_alert))


def _still_open(job: Job | None, fallback: Fallback) -> bool:
    return job is not None and not fallback.closed and job.status in DISPATCHABLE_STATUSES
