"""Runtime state records.

Settings are rebuilt from AWS by every ``Reconciler.setup()`` call and are
never persisted. Instance state is re-derived from scratch on every query.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field, fields
from typing import Any

type Instance = dict[str, Any]
type Remediation = Callable[[], Awaitable[Any]]


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True, slots=True)
class Settings:
    """Resolved identifiers of the supporting resources that are present.

    A field is None when the matching resource was absent during the last
    setup pass.
    """

    fleet_role_arn: str | None = None
    ssm_role_arn: str | None = None
    ssm_instance_profile_arn: str | None = None
    image_id: str | None = None
    security_group_id: str | None = None
    key_name: str | None = None

    def missing(self) -> tuple[str, ...]:
        """Names of the fields that are still unresolved."""
        return tuple(f.name for f in fields(self) if getattr(self, f.name) is None)

    @property
    def complete(self) -> bool:
        return not self.missing()

    @property
    def empty(self) -> bool:
        return len(self.missing()) == len(fields(self))

    def to_dict(self) -> dict[str, str | None]:
        """Serialize to dictionary."""
        return asdict(self)


# =============================================================================
# Reconciliation Output
# =============================================================================


@dataclass(frozen=True, slots=True)
class Question:
    """A missing resource, phrased for the user, with its deferred fix.

    ``remediation`` is never awaited by the reconciler; the caller runs it
    once the user confirms.
    """

    resource: str
    prompt: str
    remediation: Remediation = field(repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class SSMRole:
    """Command-execution role and its instance profile, as found in IAM."""

    role: dict[str, Any] | None = None
    instance_profile: dict[str, Any] | None = None

    @property
    def bound(self) -> bool:
        """Role exists, profile exists, and the profile carries the role."""
        if self.role is None or self.instance_profile is None:
            return False
        role_name = self.role.get("RoleName")
        return any(r.get("RoleName") == role_name for r in self.instance_profile.get("Roles", []))


# =============================================================================
# Instance State
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceState:
    """Owned instances grouped by state, from one concurrent query."""

    active: tuple[Instance, ...] = ()
    pending: tuple[Instance, ...] = ()
    shutting_down: tuple[Instance, ...] = ()

    @property
    def idle(self) -> bool:
        """No active, pending or shutting-down instance."""
        return not (self.active or self.pending or self.shutting_down)

    @property
    def active_instance(self) -> Instance | None:
        return self.active[0] if self.active else None
