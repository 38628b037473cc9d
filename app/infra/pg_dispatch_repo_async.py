# app/infra/pg_dispatch_repo_async.py
"""
Async PostgreSQL dispatch repository (asyncpg).

Store-level guards backing the dispatch invariants:
- UNIQUE (job_id, cleaner_id)        a cleaner is never offered a job twice
- partial UNIQUE on accepted attempts at most one winner per job
- CHECK on jobs.assigned_cleaner_id   set iff the job is in an assigned status

Multi-row units (accept, direct assign, cancel, review) run in one
transaction. Row lock order is always job -> attempt(s). Decline and the
timeout sweep are single conditional UPDATEs on attempt rows; a deadlock
between a sweep and an accept is retried as a transient error.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

import asyncpg

from app.core.dispatch.domain import (
    ACTIVE_CLEANER_STATUSES,
    DISPATCHABLE_STATUSES,
    TERMINAL_JOB_STATUSES,
    AcceptResult,
    CancelResult,
    Cleaner,
    DispatchAttempt,
    Job,
    JobStatus,
    Landlord,
    OfferStatus,
    Property,
    PropertyCleanerLink,
    ResolveOutcome,
    Review,
    ensure_transition,
)
from app.core.dispatch.errors import DuplicateAttemptError, InvalidTransitionError, NotFoundError
from app.core.dispatch.tokens import generate_offer_token
from app.infra.db_async import db_conn
from app.infra.db_resilience_async import retry_on_transient_error
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_JOB_SELECT = """
    SELECT j.*, p.name AS property_name
    FROM jobs j
    JOIN properties p ON p.id = j.property_id
"""

_ATTEMPT_SELECT = """
    SELECT a.*, c.name AS cleaner_name, c.chat_id AS cleaner_chat_id
    FROM dispatch_attempts a
    JOIN cleaners c ON c.id = a.cleaner_id
"""

# Cancels every still-sent attempt of a job except one; $1 job, $2 excluded id (nullable), $3 timestamp
_CANCEL_SENT_SIBLINGS = """
    WITH cancelled AS (
        UPDATE dispatch_attempts
        SET offer_status = 'cancelled', responded_at = $3
        WHERE job_id = $1
          AND offer_status = 'sent'
          AND ($2::text IS NULL OR id <> $2::text)
        RETURNING *
    )
    SELECT cancelled.*, c.name AS cleaner_name, c.chat_id AS cleaner_chat_id
    FROM cancelled
    JOIN cleaners c ON c.id = cancelled.cleaner_id
"""

_DISPATCHABLE = [s.value for s in DISPATCHABLE_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_JOB_STATUSES]
_ACTIVE_CLEANER = [s.value for s in ACTIVE_CLEANER_STATUSES]


def _rowcount(result: str | None) -> int:
    return int(result.split()[-1]) if result else 0


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def _row_to_landlord(row) -> Landlord:
    return Landlord(
        id=str(row["id"]),
        name=row["name"],
        chat_id=row["chat_id"],
        created_at=row.get("created_at"),
    )


def _row_to_property(row) -> Property:
    return Property(
        id=str(row["id"]),
        landlord_id=str(row["landlord_id"]),
        name=row["name"],
        address=row["address"],
        created_at=row.get("created_at"),
    )


def _row_to_cleaner(row) -> Cleaner:
    return Cleaner(
        id=str(row["id"]),
        landlord_id=str(row["landlord_id"]),
        name=row["name"],
        chat_id=row["chat_id"],
        active=row["is_active"],
        notes=row["notes"],
        created_at=row.get("created_at"),
    )


def _row_to_job(row) -> Job:
    assigned = row["assigned_cleaner_id"]
    return Job(
        id=str(row["id"]),
        landlord_id=str(row["landlord_id"]),
        property_id=str(row["property_id"]),
        window_start=row["window_start"],
        window_end=row["window_end"],
        status=JobStatus(row["status"]),
        assigned_cleaner_id=str(assigned) if assigned is not None else None,
        reminder_sent_at=row["reminder_sent_at"],
        booking_id=row["booking_id"],
        property_name=row.get("property_name") or "",
        created_at=row.get("created_at"),
    )


def _row_to_attempt(row) -> DispatchAttempt:
    return DispatchAttempt(
        id=str(row["id"]),
        job_id=str(row["job_id"]),
        cleaner_id=str(row["cleaner_id"]),
        offer_token=row["offer_token"],
        offer_status=OfferStatus(row["offer_status"]),
        offer_sent_at=row["offer_sent_at"],
        responded_at=row["responded_at"],
        cleaner_name=row.get("cleaner_name") or "",
        cleaner_chat_id=row.get("cleaner_chat_id"),
    )


class AsyncPostgresDispatchRepository:
    """Dispatch persistence on asyncpg. Every public method is one unit of work."""

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        async with db_conn() as conn:
            return await conn.fetchval("SELECT 1") == 1

    # ------------------------------------------------------------------
    # Landlords / properties / cleaners
    # ------------------------------------------------------------------

    @retry_on_transient_error()
    async def create_landlord(self, name: str, chat_id: str | None = None) -> Landlord:
        async with db_conn() as conn:
            row = await conn.fetchrow(
                "INSERT INTO landlords (name, chat_id) VALUES ($1, $2) RETURNING *",
                name, chat_id,
            )
            return _row_to_landlord(row)

    @retry_on_transient_error()
    async def get_landlord(self, landlord_id: str) -> Landlord | None:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM landlords WHERE id = $1", landlord_id)
            return _row_to_landlord(row) if row else None

    @retry_on_transient_error()
    async def link_landlord_chat(self, landlord_id: str, chat_id: str) -> Landlord | None:
        async with db_conn() as conn:
            row = await conn.fetchrow(
                "UPDATE landlords SET chat_id = $2 WHERE id = $1 RETURNING *",
                landlord_id, chat_id,
            )
            return _row_to_landlord(row) if row else None

    @retry_on_transient_error()
    async def create_property(self, landlord_id: str, name: str, address: str | None = None) -> Property:
        async with db_conn() as conn:
            row = await conn.fetchrow(
                "INSERT INTO properties (landlord_id, name, address) VALUES ($1, $2, $3) RETURNING *",
                landlord_id, name, address,
            )
            return _row_to_property(row)

    @retry_on_transient_error()
    async def get_property(self, property_id: str) -> Property | None:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM properties WHERE id = $1", property_id)
            return _row_to_property(row) if row else None

    @retry_on_transient_error()
    async def create_cleaner(
        self,
        landlord_id: str,
        name: str,
        chat_id: str | None = None,
        active: bool = True,
        notes: str | None = None,
    ) -> Cleaner:
        async with db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO cleaners (landlord_id, name, chat_id, is_active, notes)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                landlord_id, name, chat_id, active, notes,
            )
            return _row_to_cleaner(row)

    @retry_on_transient_error()
    async def get_cleaner(self, cleaner_id: str) -> Cleaner | None:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM cleaners WHERE id = $1", cleaner_id)
            return _row_to_cleaner(row) if row else None

    @retry_on_transient_error()
    async def find_cleaner_by_chat(self, chat_id: str) -> Cleaner | None:
        async with db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM cleaners WHERE chat_id = $1 ORDER BY created_at LIMIT 1",
                chat_id,
            )
            return _row_to_cleaner(row) if row else None

    @retry_on_transient_error()
    async def link_cleaner_chat(self, cleaner_id: str, chat_id: str) -> Cleaner | None:
        async with db_conn() as conn:
            row = await conn.fetchrow(
                "UPDATE cleaners SET chat_id = $2 WHERE id = $1 RETURNING *",
                cleaner_id, chat_id,
            )
            return _row_to_cleaner(row) if row else None

    @retry_on_transient_error()
    async def set_property_cleaners(
        self, property_id: str, links: Iterable[tuple[str, int, bool]]
    ) -> list[PropertyCleanerLink]:
        links = list(links)
        async with db_conn(autocommit=False) as conn:
            await conn.execute("DELETE FROM property_cleaners WHERE property_id = $1", property_id)
            if links:
                await conn.executemany(
                    """
                    INSERT INTO property_cleaners (property_id, cleaner_id, priority, is_primary)
                    VALUES ($1, $2, $3, $4)
                    """,
                    [(property_id, cid, priority, primary) for cid, priority, primary in links],
                )
        return await self.list_property_cleaners(property_id)

    @retry_on_transient_error()
    async def list_property_cleaners(self, property_id: str) -> list[PropertyCleanerLink]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT pc.property_id, pc.priority, pc.is_primary, c.*
                FROM property_cleaners pc
                JOIN cleaners c ON c.id = pc.cleaner_id
                WHERE pc.property_id = $1
                ORDER BY pc.is_primary DESC, pc.priority ASC, c.name ASC
                """,
                property_id,
            )
            return [
                PropertyCleanerLink(
                    property_id=str(row["property_id"]),
                    cleaner=_row_to_cleaner(row),
                    priority=row["priority"],
                    is_primary=row["is_primary"],
                )
                for row in rows
            ]

    @retry_on_transient_error()
    async def first_fallback_cleaner(self, landlord_id: str, exclude: set[str]) -> Cleaner | None:
        async with db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM cleaners
                WHERE landlord_id = $1
                  AND is_active
                  AND chat_id IS NOT NULL
                  AND btrim(chat_id) <> ''
                  AND NOT (id = ANY($2::text[]))
                ORDER BY name ASC, id ASC
                LIMIT 1
                """,
                landlord_id,
                sorted(exclude),
            )
            return _row_to_cleaner(row) if row else None

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @retry_on_transient_error()
    async def create_job(
        self,
        landlord_id: str,
        property_id: str,
        window_start: datetime,
        window_end: datetime,
        booking_id: str | None = None,
    ) -> Job:
        async with db_conn() as conn:
            row = await conn.fetchrow(
                """
                WITH ins AS (
                    INSERT INTO jobs (landlord_id, property_id, window_start, window_end, booking_id)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING *
                )
                SELECT ins.*, p.name AS property_name
                FROM ins JOIN properties p ON p.id = ins.property_id
                """,
                landlord_id, property_id, window_start, window_end, booking_id,
            )
            return _row_to_job(row)

    @retry_on_transient_error()
    async def get_job(self, job_id: str) -> Job | None:
        async with db_conn() as conn:
            row = await conn.fetchrow(_JOB_SELECT + " WHERE j.id = $1", job_id)
            return _row_to_job(row) if row else None

    @retry_on_transient_error()
    async def mark_job_offered(self, job_id: str) -> Job | None:
        return await self._update_status(job_id, _DISPATCHABLE, JobStatus.OFFERED)

    @retry_on_transient_error()
    async def transition_job(
        self, job_id: str, expected: frozenset[JobStatus], target: JobStatus
    ) -> Job | None:
        for current in expected:
            ensure_transition(current, target)
        return await self._update_status(job_id, [s.value for s in expected], target)

    async def _update_status(self, job_id: str, expected: list[str], target: JobStatus) -> Job | None:
        async with db_conn() as conn:
            row = await conn.fetchrow(
                """
                WITH upd AS (
                    UPDATE jobs
                    SET status = $3, updated_at = now()
                    WHERE id = $1 AND status = ANY($2::text[])
                    RETURNING *
                )
                SELECT upd.*, p.name AS property_name
                FROM upd JOIN properties p ON p.id = upd.property_id
                """,
                job_id, expected, target.value,
            )
            return _row_to_job(row) if row else None

    @retry_on_transient_error()
    async def cancel_job(self, job_id: str, at: datetime) -> CancelResult:
        async with db_conn(autocommit=False) as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1 FOR UPDATE", job_id)
            if row is None:
                raise NotFoundError(f"Job {job_id} not found")
            if row["status"] in _TERMINAL:
                raise InvalidTransitionError(f"Job is already {row['status']}")

            previous = row["assigned_cleaner_id"]
            await conn.execute(
                """
                UPDATE jobs
                SET status = 'cancelled', assigned_cleaner_id = NULL, updated_at = now()
                WHERE id = $1
                """,
                job_id,
            )
            cancelled = await conn.fetch(_CANCEL_SENT_SIBLINGS, job_id, None, at)
            job_row = await conn.fetchrow(_JOB_SELECT + " WHERE j.id = $1", job_id)

        return CancelResult(
            job=_row_to_job(job_row),
            cancelled=[_row_to_attempt(r) for r in cancelled],
            previous_cleaner_id=str(previous) if previous is not None else None,
        )

    @retry_on_transient_error()
    async def complete_with_review(
        self, job_id: str, rating: int, tags: list[str], comment: str | None, at: datetime
    ) -> Job | None:
        async with db_conn(autocommit=False) as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1 FOR UPDATE", job_id)
            if row is None or row["status"] != JobStatus.DONE_AWAITING_REVIEW.value:
                return None

            inserted = await conn.fetchval(
                """
                INSERT INTO reviews (job_id, cleaner_id, rating, tags, comment, created_at)
                VALUES ($1, $2, $3, $4::text[], $5, $6)
                ON CONFLICT (job_id) DO NOTHING
                RETURNING job_id
                """,
                job_id, row["assigned_cleaner_id"], rating, list(tags), comment, at,
            )
            if inserted is None:
                return None

            await conn.execute(
                "UPDATE jobs SET status = 'completed', updated_at = now() WHERE id = $1",
                job_id,
            )
            job_row = await conn.fetchrow(_JOB_SELECT + " WHERE j.id = $1", job_id)
            return _row_to_job(job_row)

    @retry_on_transient_error()
    async def get_review(self, job_id: str) -> Review | None:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM reviews WHERE job_id = $1", job_id)
            if row is None:
                return None
            return Review(
                job_id=str(row["job_id"]),
                rating=row["rating"],
                tags=list(row["tags"] or []),
                comment=row["comment"],
                created_at=row["created_at"],
            )

    @retry_on_transient_error()
    async def jobs_due_for_reminder(self, now: datetime, until: datetime) -> list[Job]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                _JOB_SELECT
                + """
                WHERE j.status = ANY($1::text[])
                  AND j.reminder_sent_at IS NULL
                  AND j.assigned_cleaner_id IS NOT NULL
                  AND j.window_start > $2
                  AND j.window_start <= $3
                ORDER BY j.window_start
                """,
                _ACTIVE_CLEANER, now, until,
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error()
    async def mark_reminder_sent(self, job_id: str, at: datetime) -> bool:
        async with db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET reminder_sent_at = $2, updated_at = now()
                WHERE id = $1 AND reminder_sent_at IS NULL
                """,
                job_id, at,
            )
            return _rowcount(result) == 1

    @retry_on_transient_error()
    async def active_jobs_for_cleaner(self, cleaner_id: str) -> list[Job]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                _JOB_SELECT
                + """
                WHERE j.assigned_cleaner_id = $1 AND j.status = ANY($2::text[])
                ORDER BY j.window_start
                """,
                cleaner_id, _ACTIVE_CLEANER,
            )
            return [_row_to_job(row) for row in rows]

    # ------------------------------------------------------------------
    # Dispatch attempts
    # ------------------------------------------------------------------

    @retry_on_transient_error()
    async def list_attempts(self, job_id: str) -> list[DispatchAttempt]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                _ATTEMPT_SELECT + " WHERE a.job_id = $1 ORDER BY a.offer_sent_at",
                job_id,
            )
            return [_row_to_attempt(row) for row in rows]

    @retry_on_transient_error()
    async def tried_cleaner_ids(self, job_id: str) -> set[str]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                "SELECT cleaner_id FROM dispatch_attempts WHERE job_id = $1",
                job_id,
            )
            return {str(row["cleaner_id"]) for row in rows}

    @retry_on_transient_error()
    async def create_attempt(
        self, job_id: str, cleaner_id: str, offer_token: str, sent_at: datetime
    ) -> DispatchAttempt:
        try:
            async with db_conn(autocommit=False) as conn:
                # Shared lock: an accept or direct assignment holds the job FOR UPDATE
                job_row = await conn.fetchrow(
                    "SELECT status, assigned_cleaner_id FROM jobs WHERE id = $1 FOR SHARE", job_id
                )
                if job_row is None:
                    raise NotFoundError(f"Job {job_id} not found")
                if job_row["assigned_cleaner_id"] is not None or job_row["status"] not in _DISPATCHABLE:
                    raise InvalidTransitionError("Job is no longer open for offers")

                row = await conn.fetchrow(
                    """
                    WITH ins AS (
                        INSERT INTO dispatch_attempts (job_id, cleaner_id, offer_token, offer_status, offer_sent_at)
                        VALUES ($1, $2, $3, 'sent', $4)
                        RETURNING *
                    )
                    SELECT ins.*, c.name AS cleaner_name, c.chat_id AS cleaner_chat_id
                    FROM ins JOIN cleaners c ON c.id = ins.cleaner_id
                    """,
                    job_id, cleaner_id, offer_token, sent_at,
                )
        except asyncpg.UniqueViolationError as e:
            if e.constraint_name == "uq_dispatch_attempts_token":
                raise DuplicateAttemptError("Offer token collision") from e
            raise DuplicateAttemptError(f"Cleaner {cleaner_id} was already offered job {job_id}") from e
        return _row_to_attempt(row)

    @retry_on_transient_error()
    async def get_attempt_by_token(self, offer_token: str) -> DispatchAttempt | None:
        async with db_conn() as conn:
            row = await conn.fetchrow(_ATTEMPT_SELECT + " WHERE a.offer_token = $1", offer_token)
            return _row_to_attempt(row) if row else None

    @retry_on_transient_error()
    async def cancel_attempt(self, attempt_id: str) -> bool:
        async with db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE dispatch_attempts
                SET offer_status = 'cancelled'
                WHERE id = $1 AND offer_status = 'sent'
                """,
                attempt_id,
            )
            return _rowcount(result) == 1

    @retry_on_transient_error()
    async def decline_attempt(self, attempt_id: str, at: datetime) -> bool:
        async with db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE dispatch_attempts
                SET offer_status = 'declined', responded_at = $2
                WHERE id = $1 AND offer_status = 'sent'
                """,
                attempt_id, at,
            )
            return _rowcount(result) == 1

    @retry_on_transient_error()
    async def accept_attempt(self, attempt_id: str, at: datetime) -> AcceptResult:
        async with db_conn(autocommit=False) as conn:
            job_id = await conn.fetchval("SELECT job_id FROM dispatch_attempts WHERE id = $1", attempt_id)
            if job_id is None:
                return AcceptResult(outcome=ResolveOutcome.EXPIRED)

            # Lock order: job, then attempt
            job_row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1 FOR UPDATE", job_id)
            attempt_row = await conn.fetchrow(
                "SELECT * FROM dispatch_attempts WHERE id = $1 FOR UPDATE", attempt_id
            )

            if attempt_row["offer_status"] != OfferStatus.SENT.value:
                return AcceptResult(
                    outcome=ResolveOutcome.ALREADY_ANSWERED, attempt=_row_to_attempt(attempt_row)
                )

            if job_row["assigned_cleaner_id"] is not None or job_row["status"] not in _DISPATCHABLE:
                await conn.execute(
                    """
                    UPDATE dispatch_attempts
                    SET offer_status = 'cancelled', responded_at = $2
                    WHERE id = $1
                    """,
                    attempt_id, at,
                )
                return AcceptResult(
                    outcome=ResolveOutcome.JOB_TAKEN,
                    job=_row_to_job(job_row),
                    attempt=await self._attempt_in_tx(conn, attempt_id),
                )

            await conn.execute(
                """
                UPDATE jobs
                SET status = 'accepted', assigned_cleaner_id = $2, updated_at = now()
                WHERE id = $1
                """,
                job_id, attempt_row["cleaner_id"],
            )
            await conn.execute(
                """
                UPDATE dispatch_attempts
                SET offer_status = 'accepted', responded_at = $2
                WHERE id = $1
                """,
                attempt_id, at,
            )
            cancelled = await conn.fetch(_CANCEL_SENT_SIBLINGS, job_id, attempt_id, at)

            job = _row_to_job(await conn.fetchrow(_JOB_SELECT + " WHERE j.id = $1", job_id))
            attempt = await self._attempt_in_tx(conn, attempt_id)

        return AcceptResult(
            outcome=ResolveOutcome.ACCEPTED,
            job=job,
            attempt=attempt,
            cancelled=[_row_to_attempt(r) for r in cancelled],
        )

    @retry_on_transient_error()
    async def timeout_sent_attempts(self, cutoff: datetime, at: datetime) -> list[DispatchAttempt]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH swept AS (
                    UPDATE dispatch_attempts
                    SET offer_status = 'timeout'
                    WHERE offer_status = 'sent' AND offer_sent_at < $1
                    RETURNING *
                )
                SELECT swept.*, c.name AS cleaner_name, c.chat_id AS cleaner_chat_id
                FROM swept JOIN cleaners c ON c.id = swept.cleaner_id
                """,
                cutoff,
            )
            if rows:
                logger.info(f"Timed out {len(rows)} offer(s) sent before {cutoff.isoformat()}")
            return [_row_to_attempt(row) for row in rows]

    @retry_on_transient_error()
    async def assign_directly(self, job_id: str, cleaner_id: str, at: datetime) -> AcceptResult:
        async with db_conn(autocommit=False) as conn:
            job_row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1 FOR UPDATE", job_id)
            if job_row is None:
                return AcceptResult(outcome=ResolveOutcome.EXPIRED)
            if job_row["assigned_cleaner_id"] is not None or job_row["status"] not in _DISPATCHABLE:
                return AcceptResult(outcome=ResolveOutcome.JOB_TAKEN, job=_row_to_job(job_row))

            own = await conn.fetchrow(
                "SELECT * FROM dispatch_attempts WHERE job_id = $1 AND cleaner_id = $2 FOR UPDATE",
                job_id, cleaner_id,
            )
            if own is None:
                own_id = await conn.fetchval(
                    """
                    INSERT INTO dispatch_attempts
                        (job_id, cleaner_id, offer_token, offer_status, offer_sent_at, responded_at)
                    VALUES ($1, $2, $3, 'accepted', $4, $4)
                    RETURNING id
                    """,
                    job_id, cleaner_id, generate_offer_token(), at,
                )
            else:
                own_id = own["id"]
                # One row per pair: an earlier declined or timed-out offer becomes the accepted one
                await conn.execute(
                    """
                    UPDATE dispatch_attempts
                    SET offer_status = 'accepted', responded_at = $2
                    WHERE id = $1
                    """,
                    own_id, at,
                )

            await conn.execute(
                """
                UPDATE jobs
                SET status = 'accepted', assigned_cleaner_id = $2, updated_at = now()
                WHERE id = $1
                """,
                job_id, cleaner_id,
            )
            cancelled = await conn.fetch(_CANCEL_SENT_SIBLINGS, job_id, str(own_id), at)

            job = _row_to_job(await conn.fetchrow(_JOB_SELECT + " WHERE j.id = $1", job_id))
            attempt = await self._attempt_in_tx(conn, str(own_id))

        return AcceptResult(
            outcome=ResolveOutcome.ACCEPTED,
            job=job,
            attempt=attempt,
            cancelled=[_row_to_attempt(r) for r in cancelled],
        )

    @staticmethod
    async def _attempt_in_tx(conn, attempt_id: str) -> DispatchAttempt:
        row = await conn.fetchrow(_ATTEMPT_SELECT + " WHERE a.id = $1", attempt_id)
        return _row_to_attempt(row)


# Global singleton
_dispatch_repo: AsyncPostgresDispatchRepository | None = None


def get_dispatch_repo() -> AsyncPostgresDispatchRepository:
    """Get the global dispatch repository instance."""
    global _dispatch_repo
    if _dispatch_repo is None:
        _dispatch_repo = AsyncPostgresDispatchRepository()
    return _dispatch_repo
