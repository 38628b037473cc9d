# app/transport/telegram_webhook.py
"""
Telegram Bot API webhook handler.

Handles:
- POST /webhooks/telegram — inbound Updates from Telegram
  - callback_query: Accept / Decline offer buttons
  - message: /start linking and /done commands

Security features:
- X-Telegram-Bot-Api-Secret-Token header validation (if configured)
- Fast 200 response once authenticated, so Telegram never retries an update
"""
from __future__ import annotations

import hmac
import time
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.core.dispatch.notifications import best_effort
from app.core.dispatch.services import DispatchServices
from app.core.dispatch.tokens import parse_callback_data
from app.infra.logging_config import LogContext, get_logger, mask_chat_id
from app.infra.metrics import DispatchMetrics, inc_counter

logger = get_logger(__name__)


# -------------------------------------------------------------------------
# Secret Token Verification
# -------------------------------------------------------------------------

def _verify_secret_token(request: Request) -> bool:
    """
    Verify X-Telegram-Bot-Api-Secret-Token header.
    Returns True if valid or if secret token verification is disabled.
    """
    if not settings.telegram_webhook_secret:
        return True

    header_token = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
    if not header_token:
        logger.warning("Telegram webhook: missing X-Telegram-Bot-Api-Secret-Token header")
        return False

    return hmac.compare_digest(header_token, settings.telegram_webhook_secret)


# -------------------------------------------------------------------------
# Update parsing
# -------------------------------------------------------------------------

def _chat_id_of(obj: dict[str, Any] | None) -> str | None:
    chat = (obj or {}).get("chat") or {}
    chat_id = chat.get("id")
    return str(chat_id) if chat_id is not None else None


async def _handle_callback(services: DispatchServices, callback: dict[str, Any], log_ctx: LogContext) -> str:
    callback_id = callback.get("id")
    reply_address = _chat_id_of(callback.get("message"))
    if reply_address is None and (callback.get("from") or {}).get("id") is not None:
        reply_address = str(callback["from"]["id"])

    parsed = parse_callback_data(callback.get("data"))
    if parsed is None:
        log_ctx.info("Telegram callback with unknown data ignored")
        inc_counter("telegram_callback_unknown")
        if callback_id:
            await best_effort("callback_ack", services.channel.acknowledge(callback_id))
        return "ignored"

    action, token = parsed
    result = await services.resolver.resolve(
        token, action, callback_id=callback_id, reply_address=reply_address
    )
    log_ctx.info(f"Offer {action.value} resolved: {result.outcome.value}")
    return result.outcome.value


async def _handle_message(services: DispatchServices, message: dict[str, Any], log_ctx: LogContext) -> str:
    chat_id = _chat_id_of(message)
    if chat_id is None:
        return "ignored"
    handled = await services.commands.handle(chat_id, message.get("text"))
    log_ctx.bind(chat_id=chat_id).info(
        f"Telegram message from {mask_chat_id(chat_id)}: command={'yes' if handled else 'no'}"
    )
    return "command" if handled else "ignored"


# -------------------------------------------------------------------------
# POST: Inbound Updates
# -------------------------------------------------------------------------

async def telegram_webhook_handler(request: Request, services: DispatchServices) -> JSONResponse:
    """
    Handle Telegram Bot API webhook Updates (POST).

    Returns 200 for every authenticated update, including malformed and
    unsupported ones, so Telegram does not re-deliver them.
    """
    if not settings.telegram_enabled:
        raise HTTPException(status_code=503, detail="Telegram bot is not configured")

    if not _verify_secret_token(request):
        logger.error("Telegram webhook: secret token verification failed")
        DispatchMetrics.webhook_validation_failed("telegram")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    start_time = time.time()

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Telegram webhook: invalid JSON payload, returning 200 to suppress retries")
        inc_counter("telegram_webhook_malformed_payload")
        return JSONResponse({"ok": True}, status_code=200)

    if not isinstance(payload, dict):
        inc_counter("telegram_webhook_malformed_payload")
        return JSONResponse({"ok": True}, status_code=200)

    request_id = getattr(request.state, "request_id", None)
    log_ctx = LogContext(logger, request_id=request_id)
    inc_counter("inbound_updates_total", provider="telegram")

    status = "ignored"
    try:
        if isinstance(payload.get("callback_query"), dict):
            status = await _handle_callback(services, payload["callback_query"], log_ctx)
        elif isinstance(payload.get("message"), dict):
            status = await _handle_message(services, payload["message"], log_ctx)
    except Exception as exc:
        # Committed state is never rolled back here; the update is dropped
        log_ctx.error(
            f"Telegram webhook processing failed: {exc.__class__.__name__}",
            exc_info=True,
        )
        inc_counter("telegram_webhook_errors")
        status = "error"

    elapsed_ms = (time.time() - start_time) * 1000
    log_ctx.debug(f"Telegram update handled: status={status}, elapsed={elapsed_ms:.0f}ms")

    # Always 200 to prevent Telegram retries
    return JSONResponse({"ok": True}, status_code=200)
