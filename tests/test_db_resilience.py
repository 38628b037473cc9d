# tests/test_db_resilience.py
"""Tests for transient-error classification and the retry decorator"""
import asyncio
from unittest.mock import AsyncMock, patch

import asyncpg
import pytest

from app.core.dispatch.errors import NotFoundError
from app.infra.db_resilience_async import is_transient_error, retry_on_transient_error


class TestIsTransient:
    @pytest.mark.parametrize("exc", [
        asyncpg.DeadlockDetectedError("deadlock detected"),
        asyncpg.SerializationError("could not serialize access"),
        ConnectionError("reset"),
        asyncio.TimeoutError(),
        RuntimeError("server closed the connection unexpectedly"),
    ])
    def test_transient(self, exc):
        assert is_transient_error(exc) is True

    @pytest.mark.parametrize("exc", [
        asyncpg.UniqueViolationError("duplicate key"),
        NotFoundError("gone"),
        ValueError("bad input"),
    ])
    def test_not_transient(self, exc):
        assert is_transient_error(exc) is False


class TestRetryDecorator:
    @pytest.mark.asyncio
    @patch("app.infra.db_resilience_async.asyncio.sleep", new_callable=AsyncMock)
    async def test_retries_deadlock_then_succeeds(self, mock_sleep):
        calls = []

        @retry_on_transient_error(max_retries=3)
        async def op():
            calls.append(1)
            if len(calls) < 3:
                raise asyncpg.DeadlockDetectedError("deadlock detected")
            return "ok"

        assert await op() == "ok"
        assert len(calls) == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.1, 0.2]

    @pytest.mark.asyncio
    @patch("app.infra.db_resilience_async.asyncio.sleep", new_callable=AsyncMock)
    async def test_gives_up_after_max_retries(self, mock_sleep):
        op = AsyncMock(side_effect=ConnectionError("connection refused"))
        op.__name__ = "op"
        wrapped = retry_on_transient_error(max_retries=2)(op)

        with pytest.raises(ConnectionError):
            await wrapped()
        assert op.await_count == 3

    @pytest.mark.asyncio
    async def test_domain_error_not_retried(self):
        op = AsyncMock(side_effect=NotFoundError("Job x not found"))
        op.__name__ = "op"
        wrapped = retry_on_transient_error()(op)

        with pytest.raises(NotFoundError):
            await wrapped()
        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_constraint_violation_not_retried(self):
        op = AsyncMock(side_effect=asyncpg.CheckViolationError("check failed"))
        op.__name__ = "op"
        wrapped = retry_on_transient_error()(op)

        with pytest.raises(asyncpg.CheckViolationError):
            await wrapped()
        assert op.await_count == 1
