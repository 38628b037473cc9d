# app/infra/notification_channels.py
"""
Notification channels for cleaners and landlords.

Implements ``app.core.dispatch.ports.NotificationChannel``:
- TelegramChannel  - Bot API (inline buttons, URL buttons, callback answers)
- DisabledChannel  - bot token not configured; logs and drops every message

Usage:
    channel = get_notification_channel()
    await channel.send_text(chat_id, "hello")
"""
from __future__ import annotations

from app.config import settings
from app.core.dispatch.errors import ChannelError
from app.core.dispatch.ports import Action
from app.infra.logging_config import get_logger, mask_chat_id
from app.transport import telegram_sender
from app.transport.telegram_sender import TelegramSendError

logger = get_logger(__name__)


class TelegramChannel:
    """
    Telegram notification channel.

    Every TelegramSendError is re-raised as ChannelError so the core never
    sees transport exception types.
    """

    name = "telegram"

    def __init__(self, token: str | None = None) -> None:
        self._token = token or settings.telegram_bot_token

    async def send_text(self, address: str, body: str) -> None:
        try:
            await telegram_sender.send_text_message(address, body, token=self._token)
        except TelegramSendError as exc:
            raise self._wrap(exc, address) from exc

    async def send_with_two_actions(self, address: str, body: str, first: Action, second: Action) -> None:
        buttons = [(first.label, first.data), (second.label, second.data)]
        try:
            await telegram_sender.send_inline_keyboard(address, body, buttons, token=self._token)
        except TelegramSendError as exc:
            raise self._wrap(exc, address) from exc

    async def send_with_link(self, address: str, body: str, label: str, url: str) -> None:
        try:
            await telegram_sender.send_url_button(address, body, label, url, token=self._token)
        except TelegramSendError as exc:
            raise self._wrap(exc, address) from exc

    async def acknowledge(self, callback_id: str, text: str | None = None, show_alert: bool = False) -> None:
        try:
            await telegram_sender.answer_callback_query(
                callback_id, text=text, show_alert=show_alert, token=self._token
            )
        except TelegramSendError as exc:
            raise self._wrap(exc, "callback") from exc

    @staticmethod
    def _wrap(exc: TelegramSendError, address: str) -> ChannelError:
        logger.warning(
            f"Telegram delivery failed: to={mask_chat_id(address)}, status={exc.status}, "
            f"retryable={exc.retryable}"
        )
        return ChannelError(str(exc), retryable=exc.retryable)


class DisabledChannel:
    """Channel used when no bot token is configured (local dev, tests of the HTTP layer)"""

    name = "disabled"

    async def send_text(self, address: str, body: str) -> None:
        logger.debug(f"Notifications disabled, dropping text to {mask_chat_id(address)}")

    async def send_with_two_actions(self, address: str, body: str, first: Action, second: Action) -> None:
        logger.debug(
            f"Notifications disabled, dropping offer to {mask_chat_id(address)} "
            f"({first.label} / {second.label})"
        )

    async def send_with_link(self, address: str, body: str, label: str, url: str) -> None:
        logger.debug(f"Notifications disabled, dropping link message to {mask_chat_id(address)}")

    async def acknowledge(self, callback_id: str, text: str | None = None, show_alert: bool = False) -> None:
        logger.debug("Notifications disabled, skipping callback answer")


def get_notification_channel() -> TelegramChannel | DisabledChannel:
    """
    Get the configured notification channel.

    Returns DisabledChannel if no bot token is configured.
    """
    if not settings.telegram_enabled:
        logger.warning("TELEGRAM_BOT_TOKEN not set, outbound messages are disabled")
        return DisabledChannel()
    return TelegramChannel()
