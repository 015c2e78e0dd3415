"""Pytest configuration and fixtures."""

import copy
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from db import StaleResourceError
from models import SentryProject


class InMemoryStore:
    """Resource store double with resource-version checks."""

    def __init__(self):
        self.records = {}
        self.status_writes = []
        self.finalizer_writes = []
        self.fail_status_writes = False

    def put(self, name, spec, status=None, finalizers=None, deleting=False):
        self.records[name] = {
            "name": name,
            "spec": dict(spec),
            "status": dict(status or {}),
            "finalizers": list(finalizers or []),
            "generation": 1,
            "resource_version": 1,
            "deletion_timestamp": (
                datetime.now(timezone.utc) if deleting else None
            ),
        }
        return self.records[name]

    async def get_project(self, name):
        record = self.records.get(name)
        if record is None:
            return None
        return SentryProject.from_record(copy.deepcopy(record))

    def _check(self, name, resource_version):
        record = self.records.get(name)
        if record is None or record["resource_version"] != resource_version:
            raise StaleResourceError(name, resource_version)
        return record

    async def update_project_status(self, name, status, resource_version):
        if self.fail_status_writes:
            raise StaleResourceError(name, resource_version)
        record = self._check(name, resource_version)
        record["status"] = dict(status)
        record["resource_version"] += 1
        self.status_writes.append(dict(status))
        return record["resource_version"]

    async def update_project_finalizers(self, name, finalizers, resource_version):
        record = self._check(name, resource_version)
        record["finalizers"] = list(finalizers)
        record["resource_version"] += 1
        self.finalizer_writes.append(list(finalizers))
        return record["resource_version"]


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sample_spec():
    """Declared spec in its stored form."""
    return {
        "name": "Payments Backend",
        "slug": "payments-backend",
        "team": "backend",
        "organization": "acme",
        "platform": "python",
    }


@pytest.fixture
def mock_client():
    """Remote Sentry client whose calls all succeed."""
    client = MagicMock()
    client.create_project = AsyncMock(return_value={"slug": "payments-backend"})
    client.update_project = AsyncMock(return_value={"slug": "payments-backend"})
    client.delete_project = AsyncMock(return_value=None)
    return client


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    return AsyncMock()


@pytest.fixture
def sample_record(sample_spec):
    """A parsed sentry_projects row."""
    now = datetime.now(timezone.utc)
    return {
        "id": 1,
        "name": "payments",
        "spec": sample_spec,
        "status": {},
        "finalizers": [],
        "generation": 1,
        "resource_version": 1,
        "deletion_timestamp": None,
        "retry_count": 0,
        "last_reconcile_time": None,
        "next_reconcile_time": None,
        "created_at": now,
        "updated_at": now,
    }
