# app/core/dispatch/commands.py
"""
Inbound chat commands.

- ``/start cleaner_<id>``  link the chat to a cleaner
- ``/start landlord_<id>`` link the chat to a landlord
- ``/done``                send a job link for each active job of the cleaner
"""
from __future__ import annotations

from app.core.dispatch import texts
from app.core.dispatch.notifications import CleanerLinks, best_effort
from app.core.dispatch.ports import DispatchRepository, NotificationChannel
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

PREFIX_CLEANER = "cleaner_"
PREFIX_LANDLORD = "landlord_"


def parse_command(text: str | None) -> tuple[str, str | None] | None:
    """
    Split ``/cmd[@BotName] [payload]`` into ``("/cmd", payload)``.

    Returns None for anything that is not a command.
    """
    if not text:
        return None
    parts = text.strip().split(maxsplit=1)
    if not parts or not parts[0].startswith("/"):
        return None
    command = parts[0].split("@", 1)[0].lower()
    payload = parts[1].strip() if len(parts) > 1 else None
    return command, payload or None


class ChatCommands:
    def __init__(self, repo: DispatchRepository, channel: NotificationChannel, links: CleanerLinks):
        self._repo = repo
        self._channel = channel
        self._links = links

    async def handle(self, chat_id: str, text: str | None) -> bool:
        """Route a message. True if it was a known command."""
        parsed = parse_command(text)
        if parsed is None:
            return False

        command, payload = parsed
        if command == "/start":
            await self.start(chat_id, payload)
            return True
        if command == "/done":
            await self.done(chat_id)
            return True
        return False

    async def start(self, chat_id: str, payload: str | None) -> None:
        if payload and payload.startswith(PREFIX_LANDLORD):
            landlord_id = payload[len(PREFIX_LANDLORD):]
            landlord = await self._repo.link_landlord_chat(landlord_id, chat_id) if landlord_id else None
            if landlord is None:
                logger.info(f"Landlord link with unknown id: {landlord_id!r}", extra={"chat_id": chat_id})
                await self._reply(chat_id, texts.LINK_INVALID)
                return
            logger.info(f"Landlord {landlord.id} linked", extra={"chat_id": chat_id})
            await self._reply(chat_id, texts.LANDLORD_LINKED)
            return

        if payload and payload.startswith(PREFIX_CLEANER):
            cleaner_id = payload[len(PREFIX_CLEANER):]
            cleaner = await self._repo.link_cleaner_chat(cleaner_id, chat_id) if cleaner_id else None
            if cleaner is None:
                logger.info(f"Cleaner link with unknown id: {cleaner_id!r}", extra={"chat_id": chat_id})
                await self._reply(chat_id, texts.LINK_INVALID)
                return
            logger.info("Cleaner linked", extra={"chat_id": chat_id, "cleaner_id": cleaner.id})
            await self._reply(chat_id, texts.cleaner_linked_text(cleaner.name))
            return

        await self._reply(chat_id, texts.LINK_USAGE)

    async def done(self, chat_id: str) -> None:
        cleaner = await self._repo.find_cleaner_by_chat(chat_id)
        if cleaner is None:
            await self._reply(chat_id, texts.DONE_NOT_LINKED)
            return

        jobs = await self._repo.active_jobs_for_cleaner(cleaner.id)
        if not jobs:
            await self._reply(chat_id, texts.DONE_NO_JOBS)
            return

        if not self._links.enabled:
            await self._reply(chat_id, texts.DONE_NOT_CONFIGURED)
            return

        for job in jobs:
            await best_effort(
                "cleaner_job_link",
                self._channel.send_with_link(
                    chat_id,
                    texts.active_job_text(job.property_name, job.window_start, job.window_end),
                    texts.JOB_LINK_BUTTON,
                    self._links.job_url(job.id, cleaner.id),
                ),
                job_id=job.id,
            )

    async def _reply(self, chat_id: str, text: str) -> None:
        await best_effort("command_reply", self._channel.send_text(chat_id, text), chat_id=chat_id)
