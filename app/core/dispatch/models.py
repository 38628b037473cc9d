# app/core/dispatch/models.py
"""
Pydantic request/response models for the dispatch API.

These live *outside* the transport layer so the services can
validate payloads without depending on FastAPI.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from app.core.dispatch.domain import (
    Cleaner,
    DispatchAttempt,
    DispatchResult,
    Job,
    Landlord,
    Property,
    PropertyCleanerLink,
    Review,
)

REVIEW_TAGS = frozenset({"late", "low_quality", "missing_photos", "communication", "excellent"})
MAX_REVIEW_COMMENT = 2000


def _aware(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateLandlordRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)


class CreatePropertyRequest(BaseModel):
    landlord_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=256)
    address: str | None = Field(default=None, max_length=512)


class CreateCleanerRequest(BaseModel):
    landlord_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=256)
    active: bool = True
    notes: str | None = Field(default=None, max_length=2000)


class PropertyCleanerLinkIn(BaseModel):
    cleaner_id: str = Field(..., min_length=1)
    priority: int = Field(default=0, ge=0)
    is_primary: bool = False


class SetPropertyCleanersRequest(BaseModel):
    """Replace the ranked cleaner list of a property."""

    cleaners: list[PropertyCleanerLinkIn] = Field(default_factory=list)

    @field_validator("cleaners")
    @classmethod
    def one_primary_no_duplicates(cls, v: list[PropertyCleanerLinkIn]) -> list[PropertyCleanerLinkIn]:
        ids = [link.cleaner_id for link in v]
        if len(ids) != len(set(ids)):
            raise ValueError("cleaners must not contain duplicates")
        if sum(1 for link in v if link.is_primary) > 1:
            raise ValueError("at most one cleaner can be primary")
        return v


class CreateJobRequest(BaseModel):
    landlord_id: str = Field(..., min_length=1)
    property_id: str = Field(..., min_length=1)
    window_start: datetime
    window_end: datetime
    booking_id: str | None = Field(default=None, max_length=256)
    auto_dispatch: bool = True

    @field_validator("window_start", "window_end")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _aware(v)

    @model_validator(mode="after")
    def end_after_start(self) -> "CreateJobRequest":
        if self.window_end <= self.window_start:
            raise ValueError("window_end must be after window_start")
        return self


class AssignRequest(BaseModel):
    cleaner_id: str = Field(..., min_length=1)


class JobTokenRequest(BaseModel):
    """Signed job link token, as carried in the cleaner's job URL."""

    token: str = Field(..., min_length=1)


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    tags: list[str] = Field(default_factory=list)
    comment: str | None = Field(default=None, max_length=MAX_REVIEW_COMMENT)

    @field_validator("tags")
    @classmethod
    def tags_must_be_known(cls, v: list[str]) -> list[str]:
        unknown = sorted(set(v) - REVIEW_TAGS)
        if unknown:
            raise ValueError(f"unknown tags: {unknown}; allowed: {sorted(REVIEW_TAGS)}")
        # de-duplicate, keep order
        return list(dict.fromkeys(v))

    @field_validator("comment")
    @classmethod
    def blank_comment_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class SetWebhookRequest(BaseModel):
    url: str = Field(..., min_length=1, description="Public HTTPS URL of /webhooks/telegram")

    @field_validator("url")
    @classmethod
    def must_be_https(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("webhook url must use https")
        return v


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def landlord_to_dict(landlord: Landlord) -> dict[str, Any]:
    return {"id": landlord.id, "name": landlord.name, "linked": bool(landlord.chat_id)}


def property_to_dict(prop: Property) -> dict[str, Any]:
    return {"id": prop.id, "landlord_id": prop.landlord_id, "name": prop.name, "address": prop.address}


def cleaner_to_dict(cleaner: Cleaner) -> dict[str, Any]:
    return {
        "id": cleaner.id,
        "landlord_id": cleaner.landlord_id,
        "name": cleaner.name,
        "active": cleaner.active,
        "linked": cleaner.is_linked,
        "notes": cleaner.notes,
    }


def link_to_dict(link: PropertyCleanerLink) -> dict[str, Any]:
    return {
        "cleaner_id": link.cleaner.id,
        "cleaner_name": link.cleaner.name,
        "priority": link.priority,
        "is_primary": link.is_primary,
    }


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "landlord_id": job.landlord_id,
        "property_id": job.property_id,
        "property_name": job.property_name,
        "window_start": _iso(job.window_start),
        "window_end": _iso(job.window_end),
        "status": job.status.value,
        "assigned_cleaner_id": job.assigned_cleaner_id,
        "reminder_sent_at": _iso(job.reminder_sent_at),
        "booking_id": job.booking_id,
    }


def attempt_to_dict(attempt: DispatchAttempt) -> dict[str, Any]:
    # offer_token is a credential and never leaves the service
    return {
        "id": attempt.id,
        "job_id": attempt.job_id,
        "cleaner_id": attempt.cleaner_id,
        "cleaner_name": attempt.cleaner_name,
        "offer_status": attempt.offer_status.value,
        "offer_sent_at": _iso(attempt.offer_sent_at),
        "responded_at": _iso(attempt.responded_at),
    }


def dispatch_to_dict(result: DispatchResult | None) -> dict[str, Any] | None:
    if result is None:
        return None
    return {
        "outcome": result.outcome.value,
        "attempt": attempt_to_dict(result.attempt) if result.attempt else None,
    }


def review_to_dict(review: Review | None) -> dict[str, Any] | None:
    if review is None:
        return None
    return {
        "rating": review.rating,
        "tags": list(review.tags),
        "comment": review.comment,
        "created_at": _iso(review.created_at),
    }
