"""
Convergence Engine - Decides the next action for a Sentry project.

Everything here is a pure function of the declared spec, the last recorded
status and the deletion intent. The reconciler executes the decision and
feeds remote results back in to get the status to persist.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from models import ConflictPolicy, Phase, ProjectSpec, ProjectStatus
from sentry_client import SentryAPIError


class Action(Enum):
    """What a reconciliation pass should do."""

    NOOP = "noop"
    CREATE_OR_RECONCILE = "create_or_reconcile"
    DELETE_REMOTE = "delete_remote"


class RemoteCall(Enum):
    """The concrete Sentry call behind an action."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Create/update failures recorded as their own phase; anything else is FAILED
PHASE_BY_STATUS_CODE = {
    400: Phase.BAD_REQUEST,
    403: Phase.FORBIDDEN,
    404: Phase.NO_TEAM,
}

CONFLICT = 409
NOT_FOUND = 404


@dataclass(frozen=True)
class Transition:
    """Status to persist after a remote call, plus an optional follow-up call."""

    status: ProjectStatus
    follow_up: Optional[RemoteCall] = None


def decide(
    spec: ProjectSpec, status: ProjectStatus, deletion_requested: bool
) -> Action:
    """
    Pick the action for this pass.

    Created projects get the full desired state re-applied on every pass;
    there is no diffing against the previous spec. A deletion never touches
    a slug that a failed create found already taken by someone else.
    """
    if deletion_requested:
        if status.phase is Phase.DELETED or owned_by_other(status):
            return Action.NOOP
        return Action.DELETE_REMOTE
    if status.phase is Phase.UNINITIALIZED or status.phase.is_failure:
        return Action.CREATE_OR_RECONCILE
    if status.phase is Phase.CREATED:
        return Action.CREATE_OR_RECONCILE
    return Action.NOOP


def remote_call_for(action: Action, status: ProjectStatus) -> Optional[RemoteCall]:
    """Map an action onto a Sentry call; update once a slug is confirmed."""
    if action is Action.DELETE_REMOTE:
        return RemoteCall.DELETE
    if action is Action.CREATE_OR_RECONCILE:
        return RemoteCall.UPDATE if status.confirmed_slug else RemoteCall.CREATE
    return None


def target_slug(spec: ProjectSpec, status: ProjectStatus) -> str:
    """Slug currently addressing the remote project for update and delete."""
    return status.confirmed_slug or spec.slug


def target_organization(spec: ProjectSpec, status: ProjectStatus) -> str:
    """Organization the remote project was confirmed in, else the declared one."""
    return status.confirmed_organization or spec.organization


def owned_by_other(status: ProjectStatus) -> bool:
    return status.conflict and not status.confirmed_slug


def classify_status_code(status_code: int) -> Phase:
    return PHASE_BY_STATUS_CODE.get(status_code, Phase.FAILED)


def after_create(
    spec: ProjectSpec,
    status: ProjectStatus,
    error: Optional[SentryAPIError] = None,
    generation: int = 0,
) -> Transition:
    """Status after a create call; a 409 is resolved by the conflict policy."""
    if error is None:
        return Transition(_created(spec, status, generation, spec.organization))

    if error.status_code == CONFLICT:
        policy = spec.conflict_policy
        if policy is ConflictPolicy.IGNORE:
            return Transition(_created(spec, status, generation, spec.organization))
        if policy is ConflictPolicy.UPDATE:
            return Transition(status, follow_up=RemoteCall.UPDATE)
        return Transition(
            _move(
                status,
                Phase.FAILED,
                f"Project slug '{spec.slug}' already exists: {error}",
                generation,
                conflict=True,
            )
        )

    return Transition(
        _move(
            status,
            classify_status_code(error.status_code),
            f"Failed to create project: {error}",
            generation,
        )
    )


def after_update(
    spec: ProjectSpec,
    status: ProjectStatus,
    error: Optional[SentryAPIError] = None,
    generation: int = 0,
) -> Transition:
    """
    Status after an update call.

    A 404 means the confirmed project is gone; the slug is forgotten so the
    next pass creates it again. The organization stays whatever the update
    addressed, since an update cannot move a project between organizations.
    """
    if error is None:
        organization = target_organization(spec, status)
        return Transition(_created(spec, status, generation, organization))

    if error.status_code == NOT_FOUND:
        return Transition(
            _move(
                status,
                Phase.FAILED,
                f"Project not found, will recreate: {error}",
                generation,
                confirmed_slug=None,
                confirmed_organization=None,
            )
        )

    return Transition(
        _move(
            status,
            classify_status_code(error.status_code),
            f"Failed to update project: {error}",
            generation,
        )
    )


def after_delete(
    status: ProjectStatus, error: Optional[SentryAPIError] = None
) -> Transition:
    """
    Status after a delete call. Not-found counts as deleted.

    Any other failure keeps the phase and only records the message; the
    caller must fail the pass so it is retried.
    """
    if error is None or error.status_code == NOT_FOUND:
        return Transition(
            _move(
                status,
                Phase.DELETED,
                "",
                status.observed_generation,
                confirmed_slug=None,
                confirmed_organization=None,
            )
        )
    return Transition(replace(status, message=f"Failed to delete project: {error}"))


def delete_succeeded(transition: Transition) -> bool:
    return transition.status.phase is Phase.DELETED


def _created(
    spec: ProjectSpec, status: ProjectStatus, generation: int, organization: str
) -> ProjectStatus:
    return _move(
        status,
        Phase.CREATED,
        "",
        generation,
        confirmed_slug=spec.slug,
        confirmed_organization=organization,
    )


_KEEP = object()


def _move(
    status: ProjectStatus,
    phase: Phase,
    message: str,
    generation: int,
    confirmed_slug=_KEEP,
    confirmed_organization=_KEEP,
    conflict: bool = False,
) -> ProjectStatus:
    """
    Next status; the transition time only moves when the phase changes.

    ``conflict`` only describes the latest create attempt and is reset by
    every other transition.
    """
    transition_time = status.last_transition_time
    if phase is not status.phase or transition_time is None:
        transition_time = datetime.now(timezone.utc).isoformat()

    return ProjectStatus(
        phase=phase,
        message=message,
        confirmed_slug=(
            status.confirmed_slug if confirmed_slug is _KEEP else confirmed_slug
        ),
        confirmed_organization=(
            status.confirmed_organization
            if confirmed_organization is _KEEP
            else confirmed_organization
        ),
        conflict=conflict,
        last_transition_time=transition_time,
        observed_generation=generation,
    )
