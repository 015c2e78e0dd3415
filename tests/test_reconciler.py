"""Unit tests for reconciler.py - One reconciliation pass."""

import json
from contextlib import asynccontextmanager

import pytest
from unittest.mock import AsyncMock, MagicMock

from models import FINALIZER, Phase
from reconciler import ReconcileResult, SentryProjectReconciler
from sentry_client import SentryAPIError, SentryClient, SentryConnectionError


class TestReconcileResult:
    def test_default_values(self):
        result = ReconcileResult()
        assert result.success is False
        assert result.message == ""
        assert result.action is None
        assert result.phase is None
        assert result.finalized is False


@pytest.mark.asyncio
class TestReconcilerCreate:
    """Passes for live projects."""

    @pytest.fixture
    def reconciler(self, mock_client, store):
        return SentryProjectReconciler(client=mock_client, store=store)

    @pytest.fixture
    def spec(self):
        return {
            "slug": "my-proj",
            "team": "core",
            "organization": "acme",
            "conflictPolicy": "Update",
        }

    async def test_missing_project_is_noop(self, reconciler, mock_client):
        result = await reconciler.reconcile_once("ghost")

        assert result.success is True
        assert result.message == "Project not found"
        mock_client.create_project.assert_not_called()
        mock_client.update_project.assert_not_called()
        mock_client.delete_project.assert_not_called()

    async def test_first_pass_creates(self, reconciler, mock_client, store, spec):
        store.put("my-proj", spec)

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is True
        assert result.phase == "Created"
        mock_client.create_project.assert_awaited_once_with(
            "acme",
            "core",
            {"name": "my-proj", "slug": "my-proj", "platform": ""},
        )
        record = store.records["my-proj"]
        assert record["status"]["phase"] == "Created"
        assert record["status"]["confirmedSlug"] == "my-proj"
        assert record["finalizers"] == [FINALIZER]

    async def test_finalizer_written_before_remote_call(
        self, reconciler, mock_client, store, spec
    ):
        store.put("my-proj", spec)

        async def create(*args):
            assert store.records["my-proj"]["finalizers"] == [FINALIZER]
            return {}

        mock_client.create_project = AsyncMock(side_effect=create)

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is True
        mock_client.create_project.assert_awaited_once()

    async def test_forbidden_is_recorded(self, reconciler, mock_client, store, spec):
        store.put("my-proj", spec)
        mock_client.create_project.side_effect = SentryAPIError(
            403, "You do not have permission to perform this action."
        )

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is True
        status = store.records["my-proj"]["status"]
        assert status["phase"] == "Forbidden"
        assert "permission" in status["message"]
        assert store.records["my-proj"]["finalizers"] == [FINALIZER]

        # Next pass retries the create
        mock_client.create_project.side_effect = None
        await reconciler.reconcile_once("my-proj")
        assert mock_client.create_project.await_count == 2
        assert store.records["my-proj"]["status"]["phase"] == "Created"

    async def test_missing_team(self, reconciler, mock_client, store, spec):
        store.put("my-proj", spec)
        mock_client.create_project.side_effect = SentryAPIError(404, "Not found")

        await reconciler.reconcile_once("my-proj")

        assert store.records["my-proj"]["status"]["phase"] == "NoTeam"

    async def test_created_reapplies_with_update(
        self, reconciler, mock_client, store, spec
    ):
        store.put("my-proj", spec)

        for _ in range(3):
            result = await reconciler.reconcile_once("my-proj")
            assert result.success is True

        assert mock_client.create_project.await_count == 1
        assert mock_client.update_project.await_count == 2
        mock_client.update_project.assert_awaited_with(
            "acme",
            "my-proj",
            {"name": "my-proj", "slug": "my-proj", "platform": ""},
        )
        assert store.records["my-proj"]["status"]["confirmedSlug"] == "my-proj"
        assert store.finalizer_writes == [[FINALIZER]]

    async def test_slug_change_updates_confirmed_slug(
        self, reconciler, mock_client, store, spec
    ):
        store.put(
            "my-proj",
            dict(spec, slug="new-slug"),
            status={"phase": "Created", "confirmedSlug": "my-proj"},
            finalizers=[FINALIZER],
        )

        await reconciler.reconcile_once("my-proj")

        assert mock_client.update_project.await_args.args[1] == "my-proj"
        assert store.records["my-proj"]["status"]["confirmedSlug"] == "new-slug"

    async def test_update_not_found_recreates(
        self, reconciler, mock_client, store, spec
    ):
        store.put(
            "my-proj",
            spec,
            status={"phase": "Created", "confirmedSlug": "my-proj"},
            finalizers=[FINALIZER],
        )
        mock_client.update_project.side_effect = SentryAPIError(404)

        await reconciler.reconcile_once("my-proj")

        status = store.records["my-proj"]["status"]
        assert status["phase"] == "Failed"
        assert status["confirmedSlug"] is None

        mock_client.update_project.side_effect = None
        await reconciler.reconcile_once("my-proj")
        mock_client.create_project.assert_awaited_once()
        assert store.records["my-proj"]["status"]["phase"] == "Created"

    async def test_conflict_ignore(self, reconciler, mock_client, store, spec):
        store.put("my-proj", dict(spec, conflictPolicy="Ignore"))
        mock_client.create_project.side_effect = SentryAPIError(409)

        await reconciler.reconcile_once("my-proj")

        mock_client.update_project.assert_not_called()
        assert store.records["my-proj"]["status"]["phase"] == "Created"

    async def test_conflict_update(self, reconciler, mock_client, store, spec):
        store.put("my-proj", spec)
        mock_client.create_project.side_effect = SentryAPIError(409)

        await reconciler.reconcile_once("my-proj")

        mock_client.update_project.assert_awaited_once()
        status = store.records["my-proj"]["status"]
        assert status["phase"] == "Created"
        assert status["confirmedSlug"] == "my-proj"
        assert len(store.status_writes) == 1

    async def test_conflict_update_failure(self, reconciler, mock_client, store, spec):
        store.put("my-proj", spec)
        mock_client.create_project.side_effect = SentryAPIError(409)
        mock_client.update_project.side_effect = SentryAPIError(403)

        await reconciler.reconcile_once("my-proj")

        assert store.records["my-proj"]["status"]["phase"] == "Forbidden"

    async def test_conflict_fail(self, reconciler, mock_client, store, spec):
        store.put("my-proj", dict(spec, conflictPolicy="Fail"))
        mock_client.create_project.side_effect = SentryAPIError(409)

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is True
        mock_client.update_project.assert_not_called()
        assert store.records["my-proj"]["status"]["phase"] == "Failed"

    async def test_transport_error_leaves_status(
        self, reconciler, mock_client, store, spec
    ):
        store.put("my-proj", spec)
        mock_client.create_project.side_effect = SentryConnectionError("timeout")

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is False
        assert "unreachable" in result.message
        assert store.status_writes == []

    async def test_status_write_conflict_fails_pass(
        self, reconciler, mock_client, store, spec
    ):
        store.put("my-proj", spec)
        store.fail_status_writes = True

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is False
        mock_client.create_project.assert_awaited_once()

    async def test_stale_finalizer_write_skips_remote(
        self, reconciler, mock_client, store, spec
    ):
        store.put("my-proj", spec)
        original_get = store.get_project

        async def get_then_race(name):
            project = await original_get(name)
            store.records[name]["resource_version"] += 1
            return project

        store.get_project = get_then_race

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is False
        mock_client.create_project.assert_not_called()
        assert store.records["my-proj"]["finalizers"] == []

    async def test_observed_generation(self, reconciler, store, spec):
        store.put("my-proj", spec)
        store.records["my-proj"]["generation"] = 4

        await reconciler.reconcile_once("my-proj")

        assert store.records["my-proj"]["status"]["observedGeneration"] == 4


@pytest.mark.asyncio
class TestReconcilerDelete:
    """Passes for projects whose deletion was requested."""

    @pytest.fixture
    def reconciler(self, mock_client, store):
        return SentryProjectReconciler(client=mock_client, store=store)

    @pytest.fixture
    def created(self):
        return {"phase": "Created", "confirmedSlug": "my-proj"}

    async def test_delete_not_found_counts_as_deleted(
        self, reconciler, mock_client, store, sample_spec, created
    ):
        store.put(
            "my-proj", sample_spec, status=created, finalizers=[FINALIZER],
            deleting=True,
        )
        mock_client.delete_project.side_effect = SentryAPIError(404)

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is True
        assert result.finalized is True
        mock_client.delete_project.assert_awaited_once_with("acme", "my-proj")
        record = store.records["my-proj"]
        assert record["status"]["phase"] == "Deleted"
        assert record["finalizers"] == []

    async def test_delete_success(
        self, reconciler, mock_client, store, sample_spec, created
    ):
        store.put(
            "my-proj", sample_spec, status=created, finalizers=["backup", FINALIZER],
            deleting=True,
        )

        result = await reconciler.reconcile_once("my-proj")

        assert result.finalized is True
        assert result.phase == "Deleted"
        assert store.records["my-proj"]["finalizers"] == ["backup"]

    async def test_delete_failure_keeps_finalizer(
        self, reconciler, mock_client, store, sample_spec, created
    ):
        store.put(
            "my-proj", sample_spec, status=created, finalizers=[FINALIZER],
            deleting=True,
        )
        mock_client.delete_project.side_effect = SentryAPIError(500, "boom")

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is False
        assert result.finalized is False
        record = store.records["my-proj"]
        assert record["finalizers"] == [FINALIZER]
        assert record["status"]["phase"] == "Created"
        assert "boom" in record["status"]["message"]

    async def test_delete_uses_spec_slug_without_confirmation(
        self, reconciler, mock_client, store, sample_spec
    ):
        store.put(
            "my-proj", sample_spec, status={"phase": "Forbidden"},
            finalizers=[FINALIZER], deleting=True,
        )

        await reconciler.reconcile_once("my-proj")

        mock_client.delete_project.assert_awaited_once_with(
            "acme", "payments-backend"
        )

    async def test_no_finalizer_skips_remote(
        self, reconciler, mock_client, store, sample_spec
    ):
        store.put("my-proj", sample_spec, deleting=True)

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is True
        assert result.finalized is True
        mock_client.delete_project.assert_not_called()
        assert store.finalizer_writes == []

    async def test_already_deleted_only_removes_finalizer(
        self, reconciler, mock_client, store, sample_spec
    ):
        store.put(
            "my-proj", sample_spec, status={"phase": "Deleted"},
            finalizers=[FINALIZER], deleting=True,
        )

        result = await reconciler.reconcile_once("my-proj")

        assert result.finalized is True
        mock_client.delete_project.assert_not_called()
        assert store.records["my-proj"]["finalizers"] == []

    async def test_transport_error_keeps_everything(
        self, reconciler, mock_client, store, sample_spec, created
    ):
        store.put(
            "my-proj", sample_spec, status=created, finalizers=[FINALIZER],
            deleting=True,
        )
        mock_client.delete_project.side_effect = SentryConnectionError("reset")

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is False
        assert store.records["my-proj"]["finalizers"] == [FINALIZER]
        assert store.status_writes == []

    async def test_finalizer_present_iff_not_confirmed_deleted(
        self, reconciler, mock_client, store, sample_spec
    ):
        store.put("my-proj", sample_spec)
        await reconciler.reconcile_once("my-proj")
        assert store.records["my-proj"]["finalizers"] == [FINALIZER]

        store.records["my-proj"]["deletion_timestamp"] = "2024-01-01T00:00:00Z"
        mock_client.delete_project.side_effect = SentryAPIError(503)
        await reconciler.reconcile_once("my-proj")
        assert store.records["my-proj"]["finalizers"] == [FINALIZER]

        mock_client.delete_project.side_effect = None
        await reconciler.reconcile_once("my-proj")
        assert store.records["my-proj"]["finalizers"] == []
        assert store.records["my-proj"]["status"]["phase"] == Phase.DELETED.value


class FakeSentry:
    """Remote projects keyed by (organization, slug)."""

    def __init__(self):
        self.projects = {}

    async def create_project(self, organization, team, params):
        key = (organization, params["slug"])
        if key in self.projects:
            raise SentryAPIError(409, "A project with this slug already exists.")
        self.projects[key] = dict(params, team=team)
        return {}

    async def update_project(self, organization, slug, params):
        if (organization, slug) not in self.projects:
            raise SentryAPIError(404, "The requested resource does not exist")
        self.projects[(organization, params["slug"])] = self.projects.pop(
            (organization, slug)
        )
        return {}

    async def delete_project(self, organization, slug):
        if self.projects.pop((organization, slug), None) is None:
            raise SentryAPIError(404, "The requested resource does not exist")


@pytest.mark.asyncio
class TestReconcilerOwnership:
    """The record keeps addressing the project it created."""

    @pytest.fixture
    def sentry(self):
        return FakeSentry()

    @pytest.fixture
    def reconciler(self, sentry, store):
        return SentryProjectReconciler(client=sentry, store=store)

    @pytest.fixture
    def spec(self):
        return {"slug": "my-proj", "team": "core", "organization": "acme"}

    async def test_organization_change_keeps_original_project(
        self, reconciler, sentry, store, spec
    ):
        store.put("my-proj", spec)
        await reconciler.reconcile_once("my-proj")
        assert store.records["my-proj"]["status"]["confirmedOrganization"] == "acme"

        store.records["my-proj"]["spec"]["organization"] = "other"
        await reconciler.reconcile_once("my-proj")
        await reconciler.reconcile_once("my-proj")

        assert set(sentry.projects) == {("acme", "my-proj")}
        assert store.records["my-proj"]["status"]["confirmedSlug"] == "my-proj"

        store.records["my-proj"]["deletion_timestamp"] = "2024-01-01T00:00:00Z"
        result = await reconciler.reconcile_once("my-proj")

        assert result.finalized is True
        assert sentry.projects == {}
        assert store.records["my-proj"]["finalizers"] == []

    async def test_slug_change_renames_in_place(
        self, reconciler, sentry, store, spec
    ):
        store.put("my-proj", spec)
        await reconciler.reconcile_once("my-proj")

        store.records["my-proj"]["spec"]["slug"] = "my-proj-renamed"
        await reconciler.reconcile_once("my-proj")

        assert set(sentry.projects) == {("acme", "my-proj-renamed")}
        assert store.records["my-proj"]["status"]["confirmedSlug"] == "my-proj-renamed"

    async def test_conflict_fail_never_deletes_foreign_project(
        self, reconciler, sentry, store, spec
    ):
        sentry.projects[("acme", "my-proj")] = {"slug": "my-proj", "team": "web"}
        store.put("my-proj", dict(spec, conflictPolicy="Fail"))

        await reconciler.reconcile_once("my-proj")
        status = store.records["my-proj"]["status"]
        assert status["phase"] == "Failed"
        assert status["conflict"] is True

        store.records["my-proj"]["deletion_timestamp"] = "2024-01-01T00:00:00Z"
        result = await reconciler.reconcile_once("my-proj")

        assert result.success is True
        assert result.finalized is True
        assert ("acme", "my-proj") in sentry.projects
        assert store.records["my-proj"]["finalizers"] == []

    async def test_create_with_unreadable_body_is_recorded(self, store, spec):
        response = MagicMock()
        response.status = 201
        response.json = AsyncMock(
            side_effect=json.JSONDecodeError("Expecting value", "<html>", 0)
        )

        @asynccontextmanager
        async def request(*args, **kwargs):
            yield response

        client = SentryClient(token="secret")
        client._session = MagicMock()
        client._session.request = MagicMock(side_effect=request)
        reconciler = SentryProjectReconciler(client=client, store=store)
        store.put("my-proj", dict(spec, conflictPolicy="Fail"))

        result = await reconciler.reconcile_once("my-proj")

        assert result.success is True
        status = store.records["my-proj"]["status"]
        assert status["phase"] == "Created"
        assert status["confirmedSlug"] == "my-proj"
