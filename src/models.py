"""
Sentry Project Models - Declared spec, observed status and stored record.

The spec is written by external actors and read-only to the reconciler.
The status is owned by the reconciler and persisted after every pass.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

FINALIZER = "sentry.io.x42r/finalizer"


class Phase(Enum):
    """Observed phase of a Sentry project."""

    UNINITIALIZED = "Uninitialized"
    CREATED = "Created"
    FAILED = "Failed"
    NO_TEAM = "NoTeam"
    FORBIDDEN = "Forbidden"
    BAD_REQUEST = "BadRequest"
    DELETED = "Deleted"

    @property
    def is_failure(self) -> bool:
        """Whether the last create/update attempt was rejected."""
        return self in FAILURE_PHASES


FAILURE_PHASES = frozenset(
    {Phase.FAILED, Phase.NO_TEAM, Phase.FORBIDDEN, Phase.BAD_REQUEST}
)


class ConflictPolicy(Enum):
    """What to do when Sentry reports the slug already exists."""

    IGNORE = "Ignore"
    UPDATE = "Update"
    FAIL = "Fail"


DEFAULT_CONFLICT_POLICY = ConflictPolicy.UPDATE


@dataclass(frozen=True)
class ProjectSpec:
    """Desired state of a Sentry project."""

    slug: str
    team: str
    organization: str
    name: str = ""
    platform: str = ""
    conflict_policy: ConflictPolicy = DEFAULT_CONFLICT_POLICY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectSpec":
        """
        Build a spec from its stored (camelCase) form.

        Raises:
            ValueError: If a required field is missing or the conflict
                policy is unknown.
        """
        missing = [f for f in ("slug", "team", "organization") if not data.get(f)]
        if missing:
            raise ValueError(f"Spec is missing required fields: {', '.join(missing)}")

        policy = data.get("conflictPolicy") or DEFAULT_CONFLICT_POLICY.value
        return cls(
            slug=data["slug"],
            team=data["team"],
            organization=data["organization"],
            name=data.get("name") or "",
            platform=data.get("platform") or "",
            conflict_policy=ConflictPolicy(policy),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "slug": self.slug,
            "team": self.team,
            "organization": self.organization,
            "platform": self.platform,
            "conflictPolicy": self.conflict_policy.value,
        }

    def project_params(self) -> Dict[str, str]:
        """Body sent to Sentry on create and update."""
        return {
            "name": self.name or self.slug,
            "slug": self.slug,
            "platform": self.platform,
        }


@dataclass(frozen=True)
class ProjectStatus:
    """Observed state of a Sentry project, as last recorded."""

    phase: Phase = Phase.UNINITIALIZED
    message: str = ""
    confirmed_slug: Optional[str] = None
    confirmed_organization: Optional[str] = None
    # Create hit a slug owned by someone else under conflictPolicy Fail
    conflict: bool = False
    last_transition_time: Optional[str] = None
    observed_generation: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProjectStatus":
        if not data:
            return cls()
        return cls(
            phase=Phase(data.get("phase") or Phase.UNINITIALIZED.value),
            message=data.get("message") or "",
            confirmed_slug=data.get("confirmedSlug") or None,
            confirmed_organization=data.get("confirmedOrganization") or None,
            conflict=bool(data.get("conflict")),
            last_transition_time=data.get("lastTransitionTime"),
            observed_generation=data.get("observedGeneration") or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "confirmedSlug": self.confirmed_slug,
            "confirmedOrganization": self.confirmed_organization,
            "conflict": self.conflict,
            "lastTransitionTime": self.last_transition_time,
            "observedGeneration": self.observed_generation,
        }

    @property
    def ready(self) -> bool:
        return self.phase is Phase.CREATED


@dataclass
class SentryProject:
    """
    A declared Sentry project as held by the resource store.

    ``resource_version`` is bumped by the store on every write and must be
    passed back on status and finalizer updates.
    """

    name: str
    spec: ProjectSpec
    status: ProjectStatus = field(default_factory=ProjectStatus)
    finalizers: List[str] = field(default_factory=list)
    generation: int = 1
    resource_version: int = 1
    deletion_timestamp: Optional[datetime] = None

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SentryProject":
        """Build a project from a parsed ``sentry_projects`` row."""
        return cls(
            name=record["name"],
            spec=ProjectSpec.from_dict(record.get("spec") or {}),
            status=ProjectStatus.from_dict(record.get("status")),
            finalizers=list(record.get("finalizers") or []),
            generation=record.get("generation", 1),
            resource_version=record.get("resource_version", 1),
            deletion_timestamp=record.get("deletion_timestamp"),
        )
