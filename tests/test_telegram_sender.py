# tests/test_telegram_sender.py
"""Tests for the Bot API sender and the Telegram notification channel"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from app.core.dispatch.errors import ChannelError
from app.core.dispatch.ports import Action


def _response(status: int, body: dict | None) -> MagicMock:
    resp = MagicMock()
    resp.status = status
    if body is None:
        resp.json = AsyncMock(side_effect=ValueError("not json"))
    else:
        resp.json = AsyncMock(return_value=body)
    return resp


def _session(resp: MagicMock | None = None, error: Exception | None = None) -> MagicMock:
    session = MagicMock()
    session.calls = []

    @asynccontextmanager
    async def post(url, json=None):
        session.calls.append((url, json))
        if error is not None:
            raise error
        yield resp

    session.post = post
    return session


OK = {"ok": True, "result": {"message_id": 42}}


class TestSendRequests:
    @pytest.mark.asyncio
    async def test_send_text_payload(self):
        session = _session(_response(200, OK))
        with patch("app.transport.telegram_sender.get_sender_session", return_value=session):
            from app.transport.telegram_sender import send_text_message

            body = await send_text_message("123", "<b>hi</b>", token="T0K")

        url, payload = session.calls[0]
        assert url == "https://api.telegram.org/botT0K/sendMessage"
        assert payload == {"chat_id": "123", "text": "<b>hi</b>", "parse_mode": "HTML"}
        assert body["result"]["message_id"] == 42

    @pytest.mark.asyncio
    async def test_inline_keyboard_one_row(self):
        session = _session(_response(200, OK))
        with patch("app.transport.telegram_sender.get_sender_session", return_value=session):
            from app.transport.telegram_sender import send_inline_keyboard

            await send_inline_keyboard("123", "offer", [("Accept", "accept:t"), ("Decline", "decline:t")], token="T")

        keyboard = session.calls[0][1]["reply_markup"]["inline_keyboard"]
        assert keyboard == [[
            {"text": "Accept", "callback_data": "accept:t"},
            {"text": "Decline", "callback_data": "decline:t"},
        ]]

    @pytest.mark.asyncio
    async def test_url_button(self):
        session = _session(_response(200, OK))
        with patch("app.transport.telegram_sender.get_sender_session", return_value=session):
            from app.transport.telegram_sender import send_url_button

            await send_url_button("123", "done?", "Open job", "https://x.test/job/1?token=a", token="T")

        assert session.calls[0][1]["reply_markup"] == {
            "inline_keyboard": [[{"text": "Open job", "url": "https://x.test/job/1?token=a"}]]
        }

    @pytest.mark.asyncio
    async def test_answer_callback_truncates_and_alerts(self):
        session = _session(_response(200, {"ok": True, "result": True}))
        with patch("app.transport.telegram_sender.get_sender_session", return_value=session):
            from app.transport.telegram_sender import answer_callback_query

            await answer_callback_query("cb-1", text="x" * 300, show_alert=True, token="T")

        url, payload = session.calls[0]
        assert url.endswith("/answerCallbackQuery")
        assert payload["callback_query_id"] == "cb-1"
        assert len(payload["text"]) == 200
        assert payload["show_alert"] is True

    @pytest.mark.asyncio
    async def test_set_webhook_with_secret(self):
        session = _session(_response(200, {"ok": True, "result": True}))
        with patch("app.transport.telegram_sender.get_sender_session", return_value=session):
            from app.transport.telegram_sender import set_webhook

            await set_webhook("https://x.test/webhooks/telegram", secret_token="s3cret", token="T")

        payload = session.calls[0][1]
        assert payload["secret_token"] == "s3cret"
        assert payload["allowed_updates"] == ["message", "callback_query"]


class TestErrorClassification:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [
        (400, False),
        (401, False),
        (403, False),
        (429, True),
        (500, True),
        (502, True),
    ])
    async def test_status_codes(self, status, retryable):
        body = {"ok": False, "error_code": status, "description": "nope"}
        session = _session(_response(status, body))
        with patch("app.transport.telegram_sender.get_sender_session", return_value=session):
            from app.transport.telegram_sender import TelegramSendError, send_text_message

            with pytest.raises(TelegramSendError) as exc_info:
                await send_text_message("123", "hi", token="T")

        assert exc_info.value.status == status
        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        session = _session(_response(502, None))
        with patch("app.transport.telegram_sender.get_sender_session", return_value=session):
            from app.transport.telegram_sender import TelegramSendError, send_text_message

            with pytest.raises(TelegramSendError) as exc_info:
                await send_text_message("123", "hi", token="T")

        assert exc_info.value.retryable is True
        assert exc_info.value.error_code is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()])
    async def test_network_errors_retryable(self, error):
        session = _session(error=error)
        with patch("app.transport.telegram_sender.get_sender_session", return_value=session):
            from app.transport.telegram_sender import TelegramSendError, send_text_message

            with pytest.raises(TelegramSendError) as exc_info:
                await send_text_message("123", "hi", token="T")

        assert exc_info.value.status == 0
        assert exc_info.value.retryable is True


class TestTelegramChannel:
    @pytest.mark.asyncio
    async def test_offer_buttons_mapped(self):
        from app.infra.notification_channels import TelegramChannel

        with patch("app.transport.telegram_sender.send_inline_keyboard", new_callable=AsyncMock) as mock_send:
            channel = TelegramChannel(token="T")
            await channel.send_with_two_actions(
                "123", "offer", Action("Accept", "accept:t"), Action("Decline", "decline:t")
            )

        mock_send.assert_awaited_once_with(
            "123", "offer", [("Accept", "accept:t"), ("Decline", "decline:t")], token="T"
        )

    @pytest.mark.asyncio
    async def test_send_error_becomes_channel_error(self):
        from app.infra.notification_channels import TelegramChannel
        from app.transport.telegram_sender import TelegramSendError

        error = TelegramSendError(429, 429, "Too Many Requests", retryable=True)
        with patch("app.transport.telegram_sender.send_text_message", new_callable=AsyncMock, side_effect=error):
            channel = TelegramChannel(token="T")
            with pytest.raises(ChannelError) as exc_info:
                await channel.send_text("123", "hi")

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_disabled_channel_drops_silently(self):
        from app.infra.notification_channels import DisabledChannel

        channel = DisabledChannel()
        await channel.send_text("123", "hi")
        await channel.acknowledge("cb-1", "ok")

    @patch("app.infra.notification_channels.settings")
    def test_factory_without_token(self, mock_settings):
        mock_settings.telegram_enabled = False
        from app.infra.notification_channels import DisabledChannel, get_notification_channel

        assert isinstance(get_notification_channel(), DisabledChannel)
