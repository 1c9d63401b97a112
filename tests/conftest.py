"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Iterable

import pytest
import pytest_asyncio
from helpers import ScriptedExecutor

from courier.config import Settings
from courier.delivery import Outcome, RetryScheduler
from courier.models import Subscription, Tenant
from courier.queue import InMemoryQueue
from courier.storage import InMemoryStore


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: in-memory backends, short delays."""
    return Settings(
        _env_file=None,
        env="test",
        database_url=None,
        queue_backend="memory",
        retry_min_delay_ms=1,
        queue_redelivery_delay_seconds=0.01,
        log_level="WARNING",
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def queue() -> InMemoryQueue:
    return InMemoryQueue()


@pytest_asyncio.fixture
async def tenant(store: InMemoryStore) -> Tenant:
    return await store.create_tenant(Tenant(name="Acme", api_key="key_acme"))


@pytest_asyncio.fixture
async def subscription(store: InMemoryStore, tenant: Tenant) -> Subscription:
    return await store.create_subscription(
        Subscription(
            tenant_id=tenant.id,
            url="https://receiver.example.com/hooks",
            event_types=["order.created"],
            secret="whsec_test",
            max_retries=5,
            retry_delay_ms=1000,
        )
    )


@pytest.fixture
def make_scheduler(store: InMemoryStore, queue: InMemoryQueue):
    """Factory building a RetryScheduler around a ScriptedExecutor."""

    def _make(
        outcomes: Iterable[Outcome], *, retry_client_errors: bool = True
    ) -> tuple[RetryScheduler, ScriptedExecutor]:
        executor = ScriptedExecutor(outcomes)
        scheduler = RetryScheduler(
            store,
            queue,
            executor,
            retry_client_errors=retry_client_errors,
        )
        return scheduler, executor

    return _make
