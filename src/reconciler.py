"""
Sentry Project Reconciler - One reconciliation pass for one project.

Fetches the declared project, asks the convergence engine what to do,
guards remote mutations with the finalizer, calls Sentry and persists the
resulting status. Retries are the caller's business: a pass only reports
success or failure.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from convergence import (
    Action,
    RemoteCall,
    Transition,
    after_create,
    after_delete,
    after_update,
    decide,
    delete_succeeded,
    remote_call_for,
    target_organization,
    target_slug,
)
from finalizers import FinalizerManager
from models import FINALIZER, ProjectStatus, SentryProject
from sentry_client import ProjectClient, SentryAPIError, SentryConnectionError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of a single reconcile_once() call."""

    success: bool = False
    message: str = ""
    action: Optional[str] = None
    phase: Optional[str] = None
    # The finalizer is gone and the record may be erased
    finalized: bool = False


class SentryProjectReconciler:
    """
    Drives a declared Sentry project towards its spec.

    Args:
        client: Remote project client, shared across concurrent passes.
        store: Resource store providing get_project, update_project_status
            and update_project_finalizers.
    """

    def __init__(self, client: ProjectClient, store, finalizer: str = FINALIZER):
        self.client = client
        self.store = store
        self.finalizers = FinalizerManager(store, finalizer)

    async def reconcile_once(self, key: str) -> ReconcileResult:
        """
        Run one pass for the project stored under ``key``.

        Remote rejections are recorded in the status and count as success.
        Anything that leaves the outcome unrecorded (Sentry unreachable,
        store write conflict, store outage) fails the pass.
        """
        try:
            return await self._reconcile(key)
        except SentryConnectionError as e:
            logger.error(f"Sentry unreachable while reconciling {key}: {e}")
            return ReconcileResult(success=False, message=f"Sentry unreachable: {e}")
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            return ReconcileResult(
                success=False, message=f"Reconciliation error: {str(e)}"
            )

    async def _reconcile(self, key: str) -> ReconcileResult:
        project = await self.store.get_project(key)
        if project is None:
            logger.debug(f"Project {key} not found, nothing to reconcile")
            return ReconcileResult(success=True, message="Project not found")

        action = decide(project.spec, project.status, project.deletion_requested)
        logger.info(
            f"Reconciling {key}: phase={project.status.phase.value}, "
            f"action={action.value}"
        )

        if project.deletion_requested:
            return await self._finalize(project, action)

        if action is Action.NOOP:
            return self._result(project, action, success=True)

        # The finalizer must be durable before Sentry is touched
        await self.finalizers.ensure_present(project)

        transition = await self._converge(project, action)
        await self._commit_status(project, transition.status)

        status = transition.status
        if status.phase.is_failure:
            logger.warning(f"Project {key} is {status.phase.value}: {status.message}")
        else:
            logger.info(f"Successfully reconciled {key}")
        return self._result(project, action, success=True)

    async def _converge(self, project: SentryProject, action: Action) -> Transition:
        if remote_call_for(action, project.status) is RemoteCall.UPDATE:
            return await self._update(project)

        transition = await self._create(project)
        if transition.follow_up is RemoteCall.UPDATE:
            logger.info(
                f"Project slug {project.spec.slug} already exists, "
                f"updating it to match {project.name}"
            )
            transition = await self._update(project)
        return transition

    async def _create(self, project: SentryProject) -> Transition:
        spec = project.spec
        logger.info(f"Creating Sentry project {spec.organization}/{spec.slug}")
        try:
            await self.client.create_project(
                spec.organization, spec.team, spec.project_params()
            )
        except SentryAPIError as e:
            return after_create(spec, project.status, e, project.generation)
        return after_create(spec, project.status, generation=project.generation)

    async def _update(self, project: SentryProject) -> Transition:
        spec = project.spec
        organization = target_organization(spec, project.status)
        slug = target_slug(spec, project.status)
        logger.info(f"Updating Sentry project {organization}/{slug}")
        try:
            await self.client.update_project(
                organization, slug, spec.project_params()
            )
        except SentryAPIError as e:
            return after_update(spec, project.status, e, project.generation)
        return after_update(spec, project.status, generation=project.generation)

    async def _finalize(self, project: SentryProject, action: Action) -> ReconcileResult:
        """Handle a project whose deletion has been requested."""
        if not self.finalizers.is_present(project):
            # No remote mutation was ever attempted for this record
            logger.info(f"Project {project.name} has no finalizer, nothing to delete")
            return self._result(project, action, success=True, finalized=True)

        if action is Action.DELETE_REMOTE:
            transition = await self._delete(project)
            await self._commit_status(project, transition.status)
            if not delete_succeeded(transition):
                logger.warning(
                    f"Deleting {project.name} failed: {transition.status.message}"
                )
                return self._result(project, action, success=False)
            logger.info(f"Deleted Sentry project for {project.name}")
        elif project.status.conflict:
            logger.info(
                f"Slug {project.spec.slug} of {project.name} belongs to another "
                f"project, leaving it in Sentry"
            )

        await self.finalizers.ensure_absent(project)
        return self._result(project, action, success=True, finalized=True)

    async def _delete(self, project: SentryProject) -> Transition:
        spec = project.spec
        organization = target_organization(spec, project.status)
        slug = target_slug(spec, project.status)
        logger.info(f"Deleting Sentry project {organization}/{slug}")
        try:
            await self.client.delete_project(organization, slug)
        except SentryAPIError as e:
            return after_delete(project.status, e)
        return after_delete(project.status)

    async def _commit_status(self, project: SentryProject, status: ProjectStatus) -> None:
        project.resource_version = await self.store.update_project_status(
            project.name, status.to_dict(), project.resource_version
        )
        project.status = status

    @staticmethod
    def _result(
        project: SentryProject,
        action: Action,
        success: bool,
        finalized: bool = False,
    ) -> ReconcileResult:
        status = project.status
        return ReconcileResult(
            success=success,
            message=status.message or f"Project is {status.phase.value}",
            action=action.value,
            phase=status.phase.value,
            finalized=finalized,
        )
