# app/core/dispatch/services.py
"""
Wiring for the dispatch core.

``build_services`` assembles the components around one repository and one
notification channel. The HTTP app builds a single instance at startup;
tests build their own around the in-memory repository.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from app.core.dispatch.commands import ChatCommands
from app.core.dispatch.directory import DirectoryService
from app.core.dispatch.domain import utcnow
from app.core.dispatch.eligibility import EligibilityResolver
from app.core.dispatch.lifecycle import JobService
from app.core.dispatch.notifications import CleanerLinks, LandlordNotifier
from app.core.dispatch.offers import OfferManager
from app.core.dispatch.orchestrator import DispatchOrchestrator
from app.core.dispatch.ports import DispatchRepository, NotificationChannel
from app.core.dispatch.resolver import ResponseResolver


@dataclass
class DispatchServices:
    repo: DispatchRepository
    channel: NotificationChannel
    orchestrator: DispatchOrchestrator
    resolver: ResponseResolver
    jobs: JobService
    directory: DirectoryService
    commands: ChatCommands
    links: CleanerLinks


def build_services(
    repo: DispatchRepository,
    channel: NotificationChannel,
    *,
    response_minutes: int = 10,
    reminder_hours_ahead: int = 24,
    base_url: str = "",
    link_secret: str | None = None,
    link_ttl_seconds: int = 7 * 24 * 3600,
    now_fn: Callable[[], datetime] = utcnow,
) -> DispatchServices:
    links = CleanerLinks(base_url=base_url.rstrip("/"), secret=link_secret, ttl_seconds=link_ttl_seconds)
    landlords = LandlordNotifier(repo, channel, base_url=links.base_url)

    eligibility = EligibilityResolver(repo)
    offers = OfferManager(repo, channel, response_minutes=response_minutes, now_fn=now_fn)
    orchestrator = DispatchOrchestrator(repo, eligibility, offers)
    resolver = ResponseResolver(
        repo, channel, orchestrator, landlords, links,
        response_minutes=response_minutes, now_fn=now_fn,
    )
    jobs = JobService(
        repo, channel, orchestrator, resolver, landlords, links,
        reminder_hours_ahead=reminder_hours_ahead, now_fn=now_fn,
    )
    return DispatchServices(
        repo=repo,
        channel=channel,
        orchestrator=orchestrator,
        resolver=resolver,
        jobs=jobs,
        directory=DirectoryService(repo),
        commands=ChatCommands(repo, channel, links),
        links=links,
    )


def build_from_settings(repo: DispatchRepository, channel: NotificationChannel) -> DispatchServices:
    from app.config import settings

    return build_services(
        repo,
        channel,
        response_minutes=settings.response_window_minutes,
        reminder_hours_ahead=settings.reminder_hours_ahead,
        base_url=settings.base_url,
        link_secret=settings.job_link_secret,
        link_ttl_seconds=settings.upload_token_ttl_seconds,
    )
