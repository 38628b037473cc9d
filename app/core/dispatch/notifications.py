# app/core/dispatch/notifications.py
"""
Post-commit notifications.

Everything here runs after the state change it reports has been committed,
so delivery is best-effort: a failed send is logged and counted and never
undoes the committed state.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable

from app.core.dispatch import texts
from app.core.dispatch.domain import Job
from app.core.dispatch.errors import ChannelError
from app.core.dispatch.ports import DispatchRepository, NotificationChannel
from app.core.dispatch.tokens import create_job_link_token
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


async def best_effort(kind: str, send: Awaitable[None], **log_extra) -> bool:
    """Await a channel send; swallow and record ChannelError."""
    try:
        await send
        return True
    except ChannelError as e:
        logger.warning(
            f"Notification '{kind}' failed (retryable={e.retryable}): {e.detail}",
            extra=log_extra,
        )
        DispatchMetrics.notification_failed(kind)
        return False


@dataclass(frozen=True)
class CleanerLinks:
    """Builds signed job page URLs for cleaners ("" when not configured)."""
    base_url: str
    secret: str | None
    ttl_seconds: int

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.secret)

    def token_for(self, job_id: str, cleaner_id: str) -> str:
        return create_job_link_token(job_id, cleaner_id, self.secret or "", self.ttl_seconds)

    def job_url(self, job_id: str, cleaner_id: str) -> str:
        if not self.enabled:
            return ""
        return texts.cleaner_job_url(self.base_url, job_id, self.token_for(job_id, cleaner_id))


class LandlordNotifier:
    """Job accepted / declined / timed out / done messages to the owning landlord."""

    def __init__(self, repo: DispatchRepository, channel: NotificationChannel, base_url: str = ""):
        self._repo = repo
        self._channel = channel
        self._base_url = base_url

    async def job_accepted(self, job: Job, cleaner_name: str) -> bool:
        text = texts.landlord_accepted_text(job.property_name, cleaner_name)
        return await self._send(job, "landlord_accepted", text, texts.VIEW_JOB_BUTTON)

    async def job_declined(
        self, job: Job, cleaner_name: str, next_cleaner_name: str | None, unreachable_name: str | None = None
    ) -> bool:
        text = texts.landlord_declined_text(job.property_name, cleaner_name, next_cleaner_name, unreachable_name)
        return await self._send(job, "landlord_declined", text, texts.VIEW_JOB_BUTTON)

    async def job_timed_out(
        self, job: Job, cleaner_name: str, next_cleaner_name: str | None, unreachable_name: str | None = None
    ) -> bool:
        text = texts.landlord_timed_out_text(job.property_name, cleaner_name, next_cleaner_name, unreachable_name)
        return await self._send(job, "landlord_timed_out", text, texts.VIEW_JOB_BUTTON)

    async def job_done(self, job: Job) -> bool:
        text = texts.landlord_done_text(job.property_name)
        return await self._send(job, "landlord_done", text, texts.REVIEW_BUTTON)

    async def _send(self, job: Job, kind: str, text: str, button: str) -> bool:
        landlord = await self._repo.get_landlord(job.landlord_id)
        if landlord is None or not landlord.chat_id:
            return False

        url = texts.dashboard_job_url(self._base_url, job.id)
        if url:
            send = self._channel.send_with_link(landlord.chat_id, text, button, url)
        else:
            send = self._channel.send_text(landlord.chat_id, text)
        return await best_effort(kind, send, job_id=job.id)
