"""Capability checks applied before touching tenant-scoped state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from agent_relay.errors import AuthenticationError


class PrincipalKind(str, Enum):
    """Who is calling."""

    ADMIN = "admin"
    MACHINE = "machine"
    USER = "user"


@dataclass(slots=True)
class AuthContext:
    """Verified identity handed over by the token verification layer."""

    principal_id: str
    kind: PrincipalKind
    cluster_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "principalId": self.principal_id,
            "kind": self.kind.value,
            "clusterId": self.cluster_id,
        }


class AuthorizationGuard(Protocol):
    """Raises ``AuthenticationError`` when the caller lacks the capability."""

    def can_access(self, *, cluster_id: str, run_owner_id: str | None = None) -> None: ...

    def can_manage(self, *, cluster_id: str, run_owner_id: str | None = None) -> None: ...

    def can_create(self, *, cluster_id: str, kind: str) -> None: ...


class ClusterScopedGuard:
    """Grants access to one cluster according to the principal kind.

    Admins may do anything in their cluster. Machines may read the cluster,
    register tools and create calls but not runs. Users may create runs and
    calls, and may only see runs they own. Approval decisions and
    cancellation are for admins and for users on jobs of their own runs.
    """

    def __init__(self, auth: AuthContext) -> None:
        self.auth = auth

    def can_access(self, *, cluster_id: str, run_owner_id: str | None = None) -> None:
        self._same_cluster(cluster_id)
        if (
            self.auth.kind is PrincipalKind.USER
            and run_owner_id is not None
            and run_owner_id != self.auth.principal_id
        ):
            raise AuthenticationError("Run belongs to another user.")

    def can_manage(self, *, cluster_id: str, run_owner_id: str | None = None) -> None:
        self._same_cluster(cluster_id)
        if self.auth.kind is PrincipalKind.ADMIN:
            return
        if (
            self.auth.kind is PrincipalKind.USER
            and run_owner_id is not None
            and run_owner_id == self.auth.principal_id
        ):
            return
        raise AuthenticationError(f"{self.auth.kind.value} principals cannot manage this job.")

    def can_create(self, *, cluster_id: str, kind: str) -> None:
        self._same_cluster(cluster_id)
        if kind not in {"run", "call", "tool"}:
            raise ValueError(f"Unsupported create capability: {kind}")
        if kind == "run" and self.auth.kind is PrincipalKind.MACHINE:
            raise AuthenticationError("Machines cannot create runs.")
        if kind == "tool" and self.auth.kind is PrincipalKind.USER:
            raise AuthenticationError("Users cannot register tools.")

    def _same_cluster(self, cluster_id: str) -> None:
        if cluster_id != self.auth.cluster_id:
            raise AuthenticationError(f"No access to cluster {cluster_id}.")
