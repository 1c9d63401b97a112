"""Tests for storage retry and error wrapping."""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from tenacity import wait_none

from courier.exceptions import NotFoundError, StorageError
from courier.storage import storage_operation, storage_retry


def operational_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


def flaky(failures):
    """Async function raising each of ``failures`` in turn, then returning "ok"."""
    calls = []

    async def query():
        calls.append(1)
        if len(calls) <= len(failures):
            raise failures[len(calls) - 1]
        return "ok"

    return query, calls


class TestStorageRetry:
    """Tests for the tenacity retry policy."""

    @pytest.mark.asyncio
    async def test_retries_operational_error(self):
        """Connection-level errors should be retried until success."""
        query, calls = flaky([operational_error(), operational_error()])
        retried = storage_retry(query).retry_with(wait=wait_none())

        assert await retried() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self):
        query, calls = flaky([operational_error() for _ in range(5)])
        retried = storage_retry(query).retry_with(wait=wait_none())

        with pytest.raises(OperationalError):
            await retried()
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_integrity_error_not_retried(self):
        query, calls = flaky([IntegrityError("INSERT", {}, Exception("duplicate"))])
        retried = storage_retry(query).retry_with(wait=wait_none())

        with pytest.raises(IntegrityError):
            await retried()
        assert len(calls) == 1


class TestStorageOperation:
    """Tests for the storage_operation decorator."""

    @pytest.mark.asyncio
    async def test_wraps_database_errors(self):
        @storage_operation
        async def insert_row():
            raise IntegrityError("INSERT", {}, Exception("duplicate"))

        with pytest.raises(StorageError) as exc_info:
            await insert_row()

        assert "insert_row failed" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, IntegrityError)

    @pytest.mark.asyncio
    async def test_courier_errors_pass_through(self):
        @storage_operation
        async def load_row():
            raise NotFoundError("delivery", "dlv_1")

        with pytest.raises(NotFoundError):
            await load_row()

    @pytest.mark.asyncio
    async def test_returns_value(self):
        @storage_operation
        async def load_row():
            return 42

        assert await load_row() == 42
        assert load_row.__name__ == "load_row"
