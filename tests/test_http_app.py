# tests/test_http_app.py
"""End-to-end tests for the HTTP API on the in-memory store"""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.transport.http_app import app

ADMIN = "adm-9f2c4e7b1d8a6f3e5c0b9a7d2e4f6a8c"
CRON = "crn-1b3d5f7a9c2e4f6a8b0d1c3e5f7a9b2d"
HOOK = "hook-7c9e1a3b5d7f9b1c3e5a7c9e1b3d5f7a"

ADMIN_HEADERS = {"Authorization": f"Bearer {ADMIN}"}


@pytest.fixture
def client(monkeypatch, services):
    monkeypatch.setattr(settings, "admin_token", ADMIN)
    monkeypatch.setattr(settings, "cron_secret", CRON)
    monkeypatch.setattr(settings, "telegram_bot_token", "123456:test-bot-token")
    monkeypatch.setattr(settings, "telegram_webhook_secret", HOOK)
    app.state.services = services
    return TestClient(app)


def _update(client: TestClient, update: dict):
    return client.post(
        "/webhooks/telegram",
        json=update,
        headers={"X-Telegram-Bot-Api-Secret-Token": HOOK},
    )


def _start(client: TestClient, chat_id: int, payload: str):
    return _update(client, {"update_id": 1, "message": {"message_id": 1, "chat": {"id": chat_id}, "text": f"/start {payload}"}})


def _press(client: TestClient, chat_id: int, data: str):
    return _update(client, {
        "update_id": 2,
        "callback_query": {
            "id": "cb-1",
            "from": {"id": chat_id},
            "data": data,
            "message": {"message_id": 7, "chat": {"id": chat_id}},
        },
    })


def _seed(client: TestClient, clock) -> dict:
    """Landlord, property, two linked cleaners (Alice primary) and one job."""
    resp = client.post("/api/landlords", json={"name": "Lena"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 201
    landlord = resp.json()["landlord"]
    assert resp.json()["start_payload"] == f"landlord_{landlord['id']}"

    prop = client.post(
        "/api/properties",
        json={"landlord_id": landlord["id"], "name": "Sea View 4B"},
        headers=ADMIN_HEADERS,
    ).json()["property"]

    ids = {}
    for name, chat in (("Alice", 111), ("Bob", 222)):
        resp = client.post("/api/cleaners", json={"landlord_id": landlord["id"], "name": name}, headers=ADMIN_HEADERS)
        assert resp.status_code == 201
        ids[name] = resp.json()["cleaner"]["id"]
        assert _start(client, chat, resp.json()["start_payload"]).status_code == 200
    assert _start(client, 333, f"landlord_{landlord['id']}").status_code == 200

    resp = client.put(
        f"/api/properties/{prop['id']}/cleaners",
        json={"cleaners": [
            {"cleaner_id": ids["Bob"], "priority": 1},
            {"cleaner_id": ids["Alice"], "priority": 2, "is_primary": True},
        ]},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 200
    assert [c["cleaner_name"] for c in resp.json()["cleaners"]] == ["Alice", "Bob"]

    start = clock.now + timedelta(hours=6)
    resp = client.post(
        "/api/jobs",
        json={
            "landlord_id": landlord["id"],
            "property_id": prop["id"],
            "window_start": start.isoformat(),
            "window_end": (start + timedelta(hours=3)).isoformat(),
        },
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 201
    return {"landlord": landlord, "property": prop, "cleaners": ids, "job": resp.json()}


class TestPublicEndpoints:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "X-Request-ID" in resp.headers

    def test_ready(self, client):
        assert client.get("/ready").status_code == 200

    def test_ready_store_down(self, client, services, monkeypatch):
        monkeypatch.setattr(services.repo, "ping", AsyncMock(side_effect=ConnectionError("down")))
        assert client.get("/ready").status_code == 503

    def test_unknown_route(self, client):
        resp = client.get("/wp-admin")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not found"}

    def test_webhook_bad_secret(self, client):
        resp = client.post("/webhooks/telegram", json={}, headers={"X-Telegram-Bot-Api-Secret-Token": "x"})
        assert resp.status_code == 403


class TestAdminAuth:
    def test_missing_token(self, client):
        assert client.post("/api/landlords", json={"name": "x"}).status_code == 401

    def test_wrong_token(self, client):
        resp = client.post("/api/landlords", json={"name": "x"}, headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_token", None)
        assert client.post("/api/landlords", json={"name": "x"}, headers=ADMIN_HEADERS).status_code == 503


class TestDispatchFlow:
    def test_offer_accept_done_review(self, client, channel, clock):
        world = _seed(client, clock)
        created = world["job"]
        job_id = created["job"]["id"]
        alice = world["cleaners"]["Alice"]

        assert created["job"]["status"] == "offered"
        assert created["dispatch"]["outcome"] == "offered"
        assert created["dispatch"]["attempt"]["cleaner_id"] == alice
        assert "offer_token" not in created["dispatch"]["attempt"]

        token = channel.offer_token("111")
        assert _press(client, 111, f"accept:{token}").json() == {"ok": True}

        job = client.get(f"/api/jobs/{job_id}", headers=ADMIN_HEADERS).json()
        assert job["job"]["status"] == "accepted"
        assert job["job"]["assigned_cleaner_id"] == alice
        assert job["review"] is None

        # the cleaner's job link carries the signed token
        link = [m for m in channel.to("111") if m["kind"] == "link"][-1]["url"]
        link_token = parse_qs(urlparse(link).query)["token"][0]

        assert client.get(f"/job/{job_id}", params={"token": link_token}).status_code == 200
        resp = client.post(f"/api/jobs/{job_id}/mark-done", json={"token": link_token})
        assert resp.status_code == 200
        assert resp.json()["job"]["status"] == "done_awaiting_review"

        resp = client.post(
            f"/api/jobs/{job_id}/review",
            json={"rating": 5, "tags": ["excellent"], "comment": "Spotless"},
            headers=ADMIN_HEADERS,
        )
        assert resp.json()["job"]["status"] == "completed"

        review = client.get(f"/api/jobs/{job_id}", headers=ADMIN_HEADERS).json()["review"]
        assert review["rating"] == 5
        assert review["tags"] == ["excellent"]

    def test_decline_moves_to_next_cleaner(self, client, channel, clock):
        world = _seed(client, clock)
        job_id = world["job"]["job"]["id"]

        _press(client, 111, f"decline:{channel.offer_token('111')}")

        attempts = client.get(f"/api/jobs/{job_id}/attempts", headers=ADMIN_HEADERS).json()["attempts"]
        assert [(a["cleaner_name"], a["offer_status"]) for a in attempts] == [
            ("Alice", "declined"),
            ("Bob", "sent"),
        ]

    def test_direct_assign_and_cancel(self, client, channel, clock):
        world = _seed(client, clock)
        job_id = world["job"]["job"]["id"]

        resp = client.post(
            f"/api/jobs/{job_id}/assign",
            json={"cleaner_id": world["cleaners"]["Bob"]},
            headers=ADMIN_HEADERS,
        )
        assert resp.status_code == 200
        assert resp.json()["job"]["assigned_cleaner_id"] == world["cleaners"]["Bob"]

        # Alice's pending offer was withdrawn; her accept changes nothing
        _press(client, 111, f"accept:{channel.offer_token('111')}")
        job = client.get(f"/api/jobs/{job_id}", headers=ADMIN_HEADERS).json()["job"]
        assert job["assigned_cleaner_id"] == world["cleaners"]["Bob"]

        resp = client.post(f"/api/jobs/{job_id}/cancel", headers=ADMIN_HEADERS)
        assert resp.json()["job"]["status"] == "cancelled"
        assert client.post(f"/api/jobs/{job_id}/cancel", headers=ADMIN_HEADERS).status_code == 409

    def test_manual_reminder(self, client, channel, clock):
        world = _seed(client, clock)
        job_id = world["job"]["job"]["id"]
        _press(client, 111, f"accept:{channel.offer_token('111')}")

        resp = client.post(f"/api/jobs/{job_id}/send-reminder", headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["job"]["reminder_sent_at"] is not None
        assert client.post(f"/api/jobs/{job_id}/send-reminder", headers=ADMIN_HEADERS).status_code == 409


class TestErrorMapping:
    def test_unknown_job_404(self, client):
        resp = client.post("/api/jobs/missing/dispatch", headers=ADMIN_HEADERS)
        assert resp.status_code == 404
        assert resp.json() == {"error": "Job missing not found"}

    def test_validation_error_400(self, client):
        resp = client.post(
            "/api/jobs",
            json={
                "landlord_id": "l",
                "property_id": "p",
                "window_start": "2026-03-05T12:00:00Z",
                "window_end": "2026-03-05T10:00:00Z",
            },
            headers=ADMIN_HEADERS,
        )
        assert resp.status_code == 400
        assert "window_end must be after window_start" in resp.json()["error"]

    def test_bad_job_link_401(self, client):
        resp = client.post("/api/jobs/some-job/start", json={"token": "forged"})
        assert resp.status_code == 401

    def test_missing_field_400(self, client):
        resp = client.post("/api/cleaners", json={"name": "x"}, headers=ADMIN_HEADERS)
        assert resp.status_code == 400
        assert "landlord_id" in resp.json()["error"]


class TestCron:
    def test_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", None)
        assert client.post("/cron/dispatch-timeout").status_code == 503

    def test_wrong_secret(self, client):
        resp = client.post("/cron/dispatch-timeout", headers={"Authorization": "Bearer wrong"})
        assert resp.status_code == 401

    def test_timeout_sweep_with_bearer(self, client, channel, clock):
        _seed(client, clock)
        clock.advance(minutes=11)

        resp = client.post("/cron/dispatch-timeout", headers={"Authorization": f"Bearer {CRON}"})

        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "timed_out": 1, "jobs_checked": 1, "dispatched": 1}
        assert channel.offer_token("222")

    def test_reminders_with_query_secret(self, client, channel, clock):
        _seed(client, clock)
        _press(client, 111, f"accept:{channel.offer_token('111')}")

        resp = client.get("/cron/send-reminders", params={"secret": CRON})

        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "reminders_sent": 1, "jobs_checked": 1}


class TestAdminTelegram:
    def test_set_webhook(self, client):
        with patch("app.transport.telegram_sender.set_webhook", new_callable=AsyncMock) as mock_set:
            resp = client.post(
                "/admin/telegram/set-webhook",
                json={"url": "https://dispatch.test/webhooks/telegram"},
                headers=ADMIN_HEADERS,
            )
        assert resp.status_code == 200
        mock_set.assert_awaited_once_with("https://dispatch.test/webhooks/telegram", secret_token=HOOK)

    def test_set_webhook_rejected_by_telegram(self, client):
        from app.transport.telegram_sender import TelegramSendError

        error = TelegramSendError(400, 400, "bad webhook")
        with patch("app.transport.telegram_sender.set_webhook", new_callable=AsyncMock, side_effect=error):
            resp = client.post(
                "/admin/telegram/set-webhook",
                json={"url": "https://dispatch.test/webhooks/telegram"},
                headers=ADMIN_HEADERS,
            )
        assert resp.status_code == 502

    def test_http_url_rejected(self, client):
        resp = client.post("/admin/telegram/set-webhook", json={"url": "http://x"}, headers=ADMIN_HEADERS)
        assert resp.status_code == 400

    def test_metrics(self, client):
        resp = client.get("/metrics", headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        assert "counters" in resp.json()
