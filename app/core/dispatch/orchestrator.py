# app/core/dispatch/orchestrator.py
"""
Dispatch orchestrator: the single entry point for offering a job.

Invoked on job creation, manual redispatch, decline and timeout sweep.
Stateless between calls: the "already tried" set is re-read from the
attempts of the job every time.
"""
from __future__ import annotations

from app.core.dispatch.domain import DISPATCHABLE_STATUSES, DispatchOutcome, DispatchResult
from app.core.dispatch.eligibility import EligibilityResolver
from app.core.dispatch.errors import DuplicateAttemptError, InvalidTransitionError, NotFoundError
from app.core.dispatch.offers import OfferManager
from app.core.dispatch.ports import DispatchRepository
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

# A concurrent dispatch of the same job can claim the chosen cleaner first;
# re-reading the tried set and picking again is bounded by this.
MAX_CANDIDATE_ROUNDS = 3


class DispatchOrchestrator:
    def __init__(self, repo: DispatchRepository, eligibility: EligibilityResolver, offers: OfferManager):
        self._repo = repo
        self._eligibility = eligibility
        self._offers = offers

    async def dispatch(self, job_id: str) -> DispatchResult:
        """
        Offer the job to the next eligible cleaner.

        Returns:
            DispatchResult: ``offered`` with the new attempt, or
            ``no_eligible_cleaner`` (job status untouched).

        Raises:
            NotFoundError: unknown job
            InvalidTransitionError: job is not new/offered, or was taken while
                the offer was being sent (attempt withdrawn)
            OfferDeliveryError: the offer could not be delivered (attempt cancelled)
        """
        with DispatchMetrics.track_dispatch_time():
            for _ in range(MAX_CANDIDATE_ROUNDS):
                job = await self._repo.get_job(job_id)
                if job is None:
                    raise NotFoundError(f"Job {job_id} not found")
                if job.status not in DISPATCHABLE_STATUSES:
                    raise InvalidTransitionError(
                        f"Job can only be offered when status is new or offered (is {job.status.value})"
                    )

                already_tried = await self._repo.tried_cleaner_ids(job.id)
                cleaner = await self._eligibility.next_candidate(job, already_tried)
                if cleaner is None:
                    DispatchMetrics.no_eligible_cleaner()
                    logger.info(
                        f"No eligible cleaner left (tried={len(already_tried)})",
                        extra={"job_id": job.id},
                    )
                    return DispatchResult.no_eligible()

                try:
                    attempt = await self._offers.send_offer(job, cleaner)
                except DuplicateAttemptError:
                    logger.info(
                        "Cleaner was claimed by a concurrent dispatch, picking again",
                        extra={"job_id": job.id, "cleaner_id": cleaner.id},
                    )
                    continue

                return DispatchResult(outcome=DispatchOutcome.OFFERED, attempt=attempt)

        logger.warning("Gave up picking a candidate after concurrent dispatches", extra={"job_id": job_id})
        return DispatchResult.no_eligible()
