# tests/test_tokens.py
"""Tests for offer tokens, callback data and signed job links"""
import pytest

from app.core.dispatch.domain import OfferAction
from app.core.dispatch.tokens import (
    CALLBACK_DATA_MAX_BYTES,
    OFFER_TOKEN_LENGTH,
    build_callback_data,
    create_job_link_token,
    generate_offer_token,
    parse_callback_data,
    verify_job_link_token,
)


class TestOfferToken:
    def test_length_and_charset(self):
        token = generate_offer_token()
        assert len(token) == OFFER_TOKEN_LENGTH
        assert all(c.isalnum() or c in "-_" for c in token)

    def test_uniqueness(self):
        tokens = {generate_offer_token() for _ in range(200)}
        assert len(tokens) == 200


class TestCallbackData:
    def test_build(self):
        assert build_callback_data(OfferAction.ACCEPT, "abc") == "accept:abc"
        assert build_callback_data("decline", "abc") == "decline:abc"

    def test_fits_telegram_limit(self):
        data = build_callback_data(OfferAction.DECLINE, generate_offer_token())
        assert len(data.encode("utf-8")) <= CALLBACK_DATA_MAX_BYTES

    def test_too_long_raises(self):
        with pytest.raises(ValueError):
            build_callback_data(OfferAction.ACCEPT, "x" * 80)

    def test_parse(self):
        assert parse_callback_data("accept:tok123") == (OfferAction.ACCEPT, "tok123")
        assert parse_callback_data(" decline:tok123 ") == (OfferAction.DECLINE, "tok123")

    @pytest.mark.parametrize("data", [None, "", "accept", "accept:", "maybe:tok", "tok123"])
    def test_parse_rejects_garbage(self, data):
        assert parse_callback_data(data) is None


class TestJobLinkToken:
    def test_valid_token(self):
        token = create_job_link_token("job-1", "cleaner-1", "secret", 3600, now=1_000_000)
        assert verify_job_link_token(token, "secret", now=1_000_100) == ("job-1", "cleaner-1")

    def test_expired(self):
        token = create_job_link_token("job-1", "cleaner-1", "secret", 60, now=1_000_000)
        assert verify_job_link_token(token, "secret", now=1_000_061) is None

    def test_wrong_secret(self):
        token = create_job_link_token("job-1", "cleaner-1", "secret", 3600)
        assert verify_job_link_token(token, "other") is None

    def test_tampered_payload(self):
        token = create_job_link_token("job-1", "cleaner-1", "secret", 3600)
        assert verify_job_link_token(token.replace("job-1", "job-2"), "secret") is None

    @pytest.mark.parametrize("token", ["", "no-signature", ".sig", "a:b.c"])
    def test_malformed(self, token):
        assert verify_job_link_token(token, "secret") is None

    def test_missing_secret_on_create(self):
        with pytest.raises(ValueError):
            create_job_link_token("job-1", "cleaner-1", "", 3600)
