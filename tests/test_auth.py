from __future__ import annotations

import allure
import pytest

from agent_relay.auth import AuthContext, ClusterScopedGuard, PrincipalKind
from agent_relay.errors import AuthenticationError

pytestmark = [
    allure.epic("Access"),
    allure.feature("Authorization Guard"),
]


def _guard(kind: PrincipalKind, principal_id: str = "p-1") -> ClusterScopedGuard:
    return ClusterScopedGuard(AuthContext(principal_id=principal_id, kind=kind, cluster_id="c1"))


@pytest.mark.parametrize("kind", list(PrincipalKind))
def test_other_cluster_is_always_refused(kind: PrincipalKind) -> None:
    with pytest.raises(AuthenticationError, match="c2"):
        _guard(kind).can_access(cluster_id="c2")


@pytest.mark.parametrize(
    ("kind", "capability", "allowed"),
    [
        (PrincipalKind.ADMIN, "run", True),
        (PrincipalKind.ADMIN, "tool", True),
        (PrincipalKind.MACHINE, "run", False),
        (PrincipalKind.MACHINE, "call", True),
        (PrincipalKind.MACHINE, "tool", True),
        (PrincipalKind.USER, "run", True),
        (PrincipalKind.USER, "call", True),
        (PrincipalKind.USER, "tool", False),
    ],
)
def test_create_capabilities(kind: PrincipalKind, capability: str, allowed: bool) -> None:
    guard = _guard(kind)

    if allowed:
        guard.can_create(cluster_id="c1", kind=capability)
    else:
        with pytest.raises(AuthenticationError):
            guard.can_create(cluster_id="c1", kind=capability)


def test_unknown_capability_is_a_programming_error() -> None:
    with pytest.raises(ValueError, match="cluster"):
        _guard(PrincipalKind.ADMIN).can_create(cluster_id="c1", kind="cluster")


def test_users_only_reach_their_own_runs() -> None:
    guard = _guard(PrincipalKind.USER, principal_id="alice")

    guard.can_access(cluster_id="c1", run_owner_id="alice")
    guard.can_access(cluster_id="c1", run_owner_id=None)
    with pytest.raises(AuthenticationError):
        guard.can_access(cluster_id="c1", run_owner_id="bob")
    _guard(PrincipalKind.ADMIN).can_access(cluster_id="c1", run_owner_id="bob")


def test_manage_is_for_admins_and_run_owners() -> None:
    _guard(PrincipalKind.ADMIN).can_manage(cluster_id="c1")
    _guard(PrincipalKind.ADMIN).can_manage(cluster_id="c1", run_owner_id="bob")
    _guard(PrincipalKind.USER, principal_id="alice").can_manage(
        cluster_id="c1",
        run_owner_id="alice",
    )
    for guard, owner in (
        (_guard(PrincipalKind.USER, principal_id="alice"), "bob"),
        (_guard(PrincipalKind.USER, principal_id="alice"), None),
        (_guard(PrincipalKind.MACHINE), None),
        (_guard(PrincipalKind.MACHINE), "p-1"),
    ):
        with pytest.raises(AuthenticationError):
            guard.can_manage(cluster_id="c1", run_owner_id=owner)
