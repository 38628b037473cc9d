# app/transport/telegram_sender.py
"""
Telegram Bot API outbound sender.

Uses the Bot API to:
- Send text messages (HTML parse mode)
- Send messages with inline keyboards (offer buttons, URL buttons)
- Answer callback queries (button toasts)
- Register the webhook

Error classification (TelegramSendError.retryable):
- Token invalid / bot blocked  → NOT retryable (needs human intervention)
- Chat not found               → NOT retryable
- Rate limiting (429)          → retryable
- Network / timeout            → retryable
- Unknown server error         → retryable

HTTP session lifecycle:
- Uses the shared sender session from app.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import asyncio

import aiohttp

from app.config import settings
from app.infra.http_client import get_sender_session
from app.infra.logging_config import get_logger, mask_chat_id
from app.infra.metrics import inc_counter

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# Bot API limit for answerCallbackQuery text
CALLBACK_ANSWER_MAX = 200


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _bot_url(method: str, token: str | None = None) -> str:
    """Build Telegram Bot API URL."""
    bot_token = token or settings.telegram_bot_token
    return f"{TELEGRAM_API_BASE}/bot{bot_token}/{method}"


# ---------------------------------------------------------------------------
# Error type
# ---------------------------------------------------------------------------

class TelegramSendError(Exception):
    """Error sending message via Telegram Bot API.

    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        error_code: Telegram-specific error code from the response body.
        retryable:  Whether the caller could retry later.
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(f"Telegram API error {status} (code={error_code}): {message}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def send_text_message(
    chat_id: str,
    text: str,
    token: str | None = None,
) -> dict:
    """
    Send a text message via Telegram Bot API.

    Raises:
        TelegramSendError: On API errors (check .retryable)
    """
    payload = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
    }
    return await _send_request(_bot_url("sendMessage", token), payload, chat_id)


async def send_inline_keyboard(
    chat_id: str,
    text: str,
    buttons: list[tuple[str, str]],
    token: str | None = None,
) -> dict:
    """
    Send a message with one row of callback buttons.

    Args:
        buttons: (label, callback_data) pairs, rendered left to right
    """
    payload = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
        "reply_markup": {
            "inline_keyboard": [
                [{"text": label, "callback_data": data} for label, data in buttons]
            ]
        },
    }
    return await _send_request(_bot_url("sendMessage", token), payload, chat_id)


async def send_url_button(
    chat_id: str,
    text: str,
    label: str,
    url: str,
    token: str | None = None,
) -> dict:
    """Send a message with a single URL button."""
    payload = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
        "reply_markup": {"inline_keyboard": [[{"text": label, "url": url}]]},
    }
    return await _send_request(_bot_url("sendMessage", token), payload, chat_id)


async def answer_callback_query(
    callback_query_id: str,
    text: str | None = None,
    show_alert: bool = False,
    token: str | None = None,
) -> dict:
    """Acknowledge a button press so the client stops its spinner."""
    payload: dict = {"callback_query_id": callback_query_id}
    if text:
        payload["text"] = text[:CALLBACK_ANSWER_MAX]
    if show_alert:
        payload["show_alert"] = True
    return await _send_request(_bot_url("answerCallbackQuery", token), payload, "callback")


async def set_webhook(
    webhook_url: str,
    secret_token: str | None = None,
    token: str | None = None,
) -> dict:
    """
    Set webhook URL for the bot.

    Args:
        webhook_url: Public HTTPS URL for receiving updates
        secret_token: Value Telegram echoes in X-Telegram-Bot-Api-Secret-Token
    """
    payload: dict = {
        "url": webhook_url,
        "allowed_updates": ["message", "callback_query"],
    }
    if secret_token:
        payload["secret_token"] = secret_token
    return await _send_request(_bot_url("setWebhook", token), payload, "system")


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json()
    except (aiohttp.ContentTypeError, ValueError):
        logger.warning(f"Telegram API returned non-JSON body: status={resp.status}")
        return None


async def _send_request(url: str, payload: dict, chat_id: str) -> dict:
    """
    Execute a Telegram Bot API request with error handling.
    """
    try:
        session = get_sender_session()
        async with session.post(url, json=payload) as resp:
            body = await _safe_response_json(resp)

            if resp.status == 200 and body and body.get("ok"):
                result = body.get("result", {})
                msg_id = result.get("message_id", "ok") if isinstance(result, dict) else "ok"
                logger.info(
                    f"Telegram request ok: to={mask_chat_id(chat_id)}, msg_id={msg_id}",
                    extra={"chat_id": chat_id},
                )
                inc_counter("telegram_outbound_sent")
                return body

            # --- Error path ------------------------------------------------
            error_desc = (body or {}).get("description", "Unknown error")
            error_code = (body or {}).get("error_code")

            if resp.status == 401 or error_code == 401:
                logger.error(f"Telegram API auth error (token invalid): {error_desc}")
                inc_counter("telegram_outbound_auth_error")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            # Bot blocked by the user
            if resp.status == 403:
                logger.warning(f"Telegram API forbidden: {error_desc}")
                inc_counter("telegram_outbound_forbidden")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            # Chat not found, message too long, stale callback query
            if resp.status == 400:
                logger.warning(f"Telegram API bad request: {error_desc}")
                inc_counter("telegram_outbound_bad_request")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            if resp.status == 429:
                retry_after = (body or {}).get("parameters", {}).get("retry_after", 30)
                logger.warning(f"Telegram API rate limit, retry_after={retry_after}s")
                inc_counter("telegram_outbound_rate_limited")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=True)

            logger.error(f"Telegram API error: status={resp.status}, code={error_code}, msg={error_desc}")
            inc_counter("telegram_outbound_error")
            raise TelegramSendError(resp.status, error_code, error_desc, retryable=True)

    except TelegramSendError:
        raise
    except aiohttp.ClientError as exc:
        logger.error(f"Telegram API connection error: {exc}", exc_info=True)
        inc_counter("telegram_outbound_connection_error")
        raise TelegramSendError(0, None, str(exc), retryable=True) from exc
    except asyncio.TimeoutError as exc:
        logger.error("Telegram API timeout", exc_info=True)
        inc_counter("telegram_outbound_connection_error")
        raise TelegramSendError(0, None, "timeout", retryable=True) from exc
