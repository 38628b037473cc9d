# app/core/dispatch/offers.py
from __future__ import annotations

from datetime import datetime
from typing import Callable

from app.core.dispatch import texts
from app.core.dispatch.domain import (
    Cleaner,
    DispatchAttempt,
    Job,
    OfferAction,
    OfferStatus,
    utcnow,
)
from app.core.dispatch.errors import ChannelError, InvalidTransitionError, OfferDeliveryError, ValidationError
from app.core.dispatch.notifications import best_effort
from app.core.dispatch.ports import Action, DispatchRepository, NotificationChannel
from app.core.dispatch.tokens import build_callback_data, generate_offer_token
from app.infra.logging_config import LogContext, get_logger, mask_token
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


class OfferManager:
    """
    Sends one time-boxed offer to one cleaner.

    The attempt row is written *before* the send, so the token is reserved
    and a crash between the two leaves a detectable ``sent`` row. A failed
    send cancels the row; it still counts as "tried" for the job.
    """

    def __init__(
        self,
        repo: DispatchRepository,
        channel: NotificationChannel,
        *,
        response_minutes: int,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._repo = repo
        self._channel = channel
        self._response_minutes = response_minutes
        self._now = now_fn

    async def send_offer(self, job: Job, cleaner: Cleaner) -> DispatchAttempt:
        if not cleaner.is_linked:
            raise ValidationError(f"Cleaner {cleaner.id} has no linked chat")

        log = LogContext(logger, job_id=job.id, cleaner_id=cleaner.id)

        token = generate_offer_token()
        accept = Action(texts.ACCEPT_BUTTON, build_callback_data(OfferAction.ACCEPT, token))
        decline = Action(texts.DECLINE_BUTTON, build_callback_data(OfferAction.DECLINE, token))

        attempt = await self._repo.create_attempt(job.id, cleaner.id, token, self._now())
        attempt.cleaner_name = cleaner.name
        attempt.cleaner_chat_id = cleaner.chat_id
        log = log.bind(attempt_id=attempt.id)

        body = texts.offer_text(
            job.property_name, job.window_start, job.window_end, self._response_minutes
        )
        try:
            await self._channel.send_with_two_actions(cleaner.chat_id, body, accept, decline)
        except Exception as e:
            detail = e.detail if isinstance(e, ChannelError) else f"Offer send failed: {e}"
            retryable = e.retryable if isinstance(e, ChannelError) else False
            log.warning(f"Offer send failed, cancelling attempt (token={mask_token(token)}): {detail}")
            DispatchMetrics.offer_send_failed(retryable)
            await self._repo.cancel_attempt(attempt.id)
            attempt.offer_status = OfferStatus.CANCELLED
            raise OfferDeliveryError(detail, cleaner_name=cleaner.name, retryable=retryable) from e

        updated = await self._repo.mark_job_offered(job.id)
        if updated is None:
            # Job was taken or cancelled while the message was in flight
            log.warning("Job left dispatch while the offer was in flight, withdrawing it")
            attempt.offer_status = OfferStatus.CANCELLED
            if await self._repo.cancel_attempt(attempt.id):
                await best_effort(
                    "cleaner_taken_by_other",
                    self._channel.send_text(cleaner.chat_id, texts.CLEANER_TAKEN_BY_OTHER),
                    job_id=job.id, cleaner_id=cleaner.id,
                )
            raise InvalidTransitionError("Job is no longer open for offers")

        DispatchMetrics.offer_sent()
        log.info(f"Offer sent to cleaner (token={mask_token(token)})")
        return attempt
