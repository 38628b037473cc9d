# tests/test_webhooks.py
"""Tests for the Telegram webhook: secret validation and update routing"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException

from app.core.dispatch import texts
from app.core.dispatch.domain import JobStatus


def _make_request(payload=None, secret: str | None = None, bad_json: bool = False) -> MagicMock:
    request = MagicMock()
    request.headers = {}
    if secret is not None:
        request.headers["X-Telegram-Bot-Api-Secret-Token"] = secret
    if bad_json:
        request.json = AsyncMock(side_effect=json.JSONDecodeError("bad", "x", 0))
    else:
        request.json = AsyncMock(return_value=payload)
    request.state.request_id = "req-1"
    return request


def _callback(data: str, chat_id: str = "chat-alice", callback_id: str = "cb-1") -> dict:
    return {
        "update_id": 1,
        "callback_query": {
            "id": callback_id,
            "from": {"id": 999},
            "data": data,
            "message": {"message_id": 5, "chat": {"id": chat_id}},
        },
    }


def _message(text: str, chat_id: int | str = 555) -> dict:
    return {"update_id": 2, "message": {"message_id": 9, "chat": {"id": chat_id}, "text": text}}


@pytest.fixture
def tg_settings():
    with patch("app.transport.telegram_webhook.settings") as mock_settings:
        mock_settings.telegram_enabled = True
        mock_settings.telegram_webhook_secret = "hook-secret"
        yield mock_settings


class TestSecretToken:
    def test_valid(self, tg_settings):
        from app.transport.telegram_webhook import _verify_secret_token

        assert _verify_secret_token(_make_request(secret="hook-secret")) is True

    def test_wrong(self, tg_settings):
        from app.transport.telegram_webhook import _verify_secret_token

        assert _verify_secret_token(_make_request(secret="guess")) is False

    def test_missing_header(self, tg_settings):
        from app.transport.telegram_webhook import _verify_secret_token

        assert _verify_secret_token(_make_request()) is False

    def test_no_secret_configured_skips(self, tg_settings):
        tg_settings.telegram_webhook_secret = None
        from app.transport.telegram_webhook import _verify_secret_token

        assert _verify_secret_token(_make_request()) is True


class TestWebhookHandler:
    @pytest.mark.asyncio
    async def test_rejects_bad_secret(self, tg_settings, services):
        from app.transport.telegram_webhook import telegram_webhook_handler

        with pytest.raises(HTTPException) as exc_info:
            await telegram_webhook_handler(_make_request({}, secret="guess"), services)
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_disabled_bot(self, tg_settings, services):
        tg_settings.telegram_enabled = False
        from app.transport.telegram_webhook import telegram_webhook_handler

        with pytest.raises(HTTPException) as exc_info:
            await telegram_webhook_handler(_make_request({}, secret="hook-secret"), services)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_malformed_json_still_200(self, tg_settings, services):
        from app.transport.telegram_webhook import telegram_webhook_handler

        response = await telegram_webhook_handler(_make_request(secret="hook-secret", bad_json=True), services)
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_accept_button(self, tg_settings, services, repo, channel, world, job):
        from app.transport.telegram_webhook import telegram_webhook_handler

        await services.orchestrator.dispatch(job.id)
        token = channel.offer_token("chat-alice")

        response = await telegram_webhook_handler(
            _make_request(_callback(f"accept:{token}"), secret="hook-secret"), services
        )

        assert response.status_code == 200
        assert json.loads(response.body) == {"ok": True}
        stored = await repo.get_job(job.id)
        assert stored.status == JobStatus.ACCEPTED
        assert stored.assigned_cleaner_id == world.alice.id
        assert channel.acks[0]["text"] == texts.ACK_ACCEPTED

    @pytest.mark.asyncio
    async def test_decline_button(self, tg_settings, services, repo, channel, world, job):
        from app.transport.telegram_webhook import telegram_webhook_handler

        await services.orchestrator.dispatch(job.id)
        token = channel.offer_token("chat-alice")

        await telegram_webhook_handler(
            _make_request(_callback(f"decline:{token}"), secret="hook-secret"), services
        )

        assert channel.offer_token("chat-bob")
        assert channel.acks[0]["text"] == texts.ACK_DECLINED

    @pytest.mark.asyncio
    async def test_unknown_callback_data_acknowledged(self, tg_settings, services, channel):
        from app.transport.telegram_webhook import telegram_webhook_handler

        response = await telegram_webhook_handler(
            _make_request(_callback("something-else"), secret="hook-secret"), services
        )

        assert response.status_code == 200
        assert channel.acks == [{"callback_id": "cb-1", "text": None, "show_alert": False}]

    @pytest.mark.asyncio
    async def test_start_command_links_cleaner(self, tg_settings, services, repo, channel, world):
        from app.transport.telegram_webhook import telegram_webhook_handler

        cleaner = await repo.create_cleaner(world.landlord.id, "Eve")
        await telegram_webhook_handler(
            _make_request(_message(f"/start cleaner_{cleaner.id}", chat_id=555), secret="hook-secret"),
            services,
        )

        assert (await repo.get_cleaner(cleaner.id)).chat_id == "555"
        assert "Eve" in channel.to("555")[0]["body"]

    @pytest.mark.asyncio
    async def test_unsupported_update_ignored(self, tg_settings, services, channel):
        from app.transport.telegram_webhook import telegram_webhook_handler

        response = await telegram_webhook_handler(
            _make_request({"update_id": 3, "edited_message": {}}, secret="hook-secret"), services
        )
        assert response.status_code == 200
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_processing_error_still_200(self, tg_settings, services, monkeypatch):
        from app.transport.telegram_webhook import telegram_webhook_handler

        monkeypatch.setattr(services.resolver, "resolve", AsyncMock(side_effect=RuntimeError("db down")))
        response = await telegram_webhook_handler(
            _make_request(_callback("accept:tok"), secret="hook-secret"), services
        )
        assert response.status_code == 200
