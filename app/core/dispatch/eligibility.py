# app/core/dispatch/eligibility.py
"""
Eligibility resolver: picks the next cleaner to offer a job to.

Two tiers:
1. the property's ranked links (primary first, then ascending priority);
2. any active, linked cleaner of the landlord, alphabetical by name.

Cleaners already tried for the job (any attempt status) are excluded in
both tiers, so repeated rounds always shrink the candidate set.
"""
from __future__ import annotations

from typing import Iterable

from app.core.dispatch.domain import Cleaner, Job, PropertyCleanerLink
from app.core.dispatch.ports import DispatchRepository
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def rank_property_links(links: Iterable[PropertyCleanerLink]) -> list[PropertyCleanerLink]:
    """Primary first, then ascending priority. Stable for equal keys."""
    return sorted(links, key=lambda link: (not link.is_primary, link.priority))


def pick_from_links(links: Iterable[PropertyCleanerLink], already_tried: set[str]) -> Cleaner | None:
    for link in rank_property_links(links):
        cleaner = link.cleaner
        if cleaner.is_eligible and cleaner.id not in already_tried:
            return cleaner
    return None


class EligibilityResolver:
    def __init__(self, repo: DispatchRepository):
        self._repo = repo

    async def next_candidate(self, job: Job, already_tried: set[str]) -> Cleaner | None:
        links = await self._repo.list_property_cleaners(job.property_id)
        cleaner = pick_from_links(links, already_tried)
        if cleaner is not None:
            logger.debug(
                f"Candidate from property ranking: {cleaner.id}",
                extra={"job_id": job.id, "cleaner_id": cleaner.id},
            )
            return cleaner

        cleaner = await self._repo.first_fallback_cleaner(job.landlord_id, set(already_tried))
        if cleaner is not None:
            logger.debug(
                f"Candidate from landlord fallback: {cleaner.id}",
                extra={"job_id": job.id, "cleaner_id": cleaner.id},
            )
        return cleaner
