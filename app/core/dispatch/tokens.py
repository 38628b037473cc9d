# app/core/dispatch/tokens.py
"""
Offer tokens and signed cleaner job links.

Offer tokens are the only credential embedded in an offer message:
possession of the token is the whole authorisation to accept or decline
on behalf of a cleaner, so they come from ``secrets``.

Job link tokens (``<job_id>:<cleaner_id>:<exp>.<sig>``) let a cleaner open
their job page and mark it done without logging in.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time

from app.core.dispatch.domain import OfferAction

OFFER_TOKEN_BYTES = 18  # 144 bits
OFFER_TOKEN_LENGTH = 24
CALLBACK_DATA_MAX_BYTES = 64  # Telegram callback_data limit

_SIG_SEPARATOR = "."


def generate_offer_token() -> str:
    """Random URL-safe token, 24 chars."""
    return secrets.token_urlsafe(OFFER_TOKEN_BYTES)[:OFFER_TOKEN_LENGTH]


def build_callback_data(action: OfferAction, token: str) -> str:
    """
    ``accept:<token>`` / ``decline:<token>``.

    Raises ValueError if the encoded payload does not fit the channel limit.
    """
    data = f"{OfferAction(action).value}:{token}"
    if len(data.encode("utf-8")) > CALLBACK_DATA_MAX_BYTES:
        raise ValueError(
            f"callback data too long ({len(data.encode('utf-8'))} > {CALLBACK_DATA_MAX_BYTES} bytes)"
        )
    return data


def parse_callback_data(data: str | None) -> tuple[OfferAction, str] | None:
    """Inverse of build_callback_data. None for anything that is not an offer action."""
    if not data:
        return None
    action_str, sep, token = data.strip().partition(":")
    if not sep:
        return None
    try:
        action = OfferAction(action_str)
    except ValueError:
        return None
    token = token.strip()
    if not token:
        return None
    return action, token


# ---------------------------------------------------------------------------
# Signed job links
# ---------------------------------------------------------------------------

def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _sign(payload: str, secret: str) -> str:
    return _b64url(hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest())


def create_job_link_token(
    job_id: str,
    cleaner_id: str,
    secret: str,
    ttl_seconds: int,
    now: float | None = None,
) -> str:
    if not secret:
        raise ValueError("job link secret is not configured")
    issued = time.time() if now is None else now
    exp = int(issued) + ttl_seconds
    payload = f"{job_id}:{cleaner_id}:{exp}"
    return f"{payload}{_SIG_SEPARATOR}{_sign(payload, secret)}"


def verify_job_link_token(token: str, secret: str, now: float | None = None) -> tuple[str, str] | None:
    """Return ``(job_id, cleaner_id)`` for a valid, unexpired token, else None."""
    if not token or not secret:
        return None

    payload, sep, sig = token.rpartition(_SIG_SEPARATOR)
    if not sep or not payload or not sig:
        return None

    if not hmac.compare_digest(sig, _sign(payload, secret)):
        return None

    parts = payload.split(":")
    if len(parts) != 3:
        return None
    job_id, cleaner_id, exp_str = parts
    try:
        exp = int(exp_str)
    except ValueError:
        return None

    current = time.time() if now is None else now
    if not job_id or not cleaner_id or current > exp:
        return None
    return job_id, cleaner_id
