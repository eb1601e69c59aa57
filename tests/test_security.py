from __future__ import annotations

import pytest

from mailadmin.errors import Forbidden, Unauthenticated
from mailadmin.models import Role
from mailadmin.security import (
    ensure_can_modify,
    require_admin_or_above,
    require_authenticated,
    require_super_admin,
)


@pytest.fixture()
def users(make_user):
    return {
        "super": make_user("root", Role.SUPER_ADMIN),
        "admin": make_user("admin", Role.ADMIN),
        "client": make_user("client", Role.CLIENT),
        "inactive": make_user("sleeper", Role.SUPER_ADMIN, is_active=False),
    }


@pytest.mark.parametrize("gate", [require_authenticated, require_admin_or_above, require_super_admin])
def test_anonymous_is_rejected_before_any_role_check(gate) -> None:
    with pytest.raises(Unauthenticated):
        gate(None)


@pytest.mark.parametrize("gate", [require_authenticated, require_admin_or_above, require_super_admin])
def test_inactive_principal_counts_as_anonymous(users, gate) -> None:
    with pytest.raises(Unauthenticated):
        gate(users["inactive"])


def test_role_hierarchy(users) -> None:
    assert require_authenticated(users["client"]) is users["client"]
    assert require_admin_or_above(users["admin"]) is users["admin"]
    assert require_admin_or_above(users["super"]) is users["super"]
    assert require_super_admin(users["super"]) is users["super"]

    with pytest.raises(Forbidden):
        require_admin_or_above(users["client"])
    with pytest.raises(Forbidden) as excinfo:
        require_super_admin(users["admin"])
    assert excinfo.value.message == "Super admin access required"


def test_admin_cannot_touch_super_admin_privilege(users) -> None:
    ensure_can_modify(users["admin"], users["client"], Role.ADMIN)
    ensure_can_modify(users["super"], users["super"], Role.CLIENT)

    with pytest.raises(Forbidden):
        ensure_can_modify(users["admin"], users["super"])
    with pytest.raises(Forbidden):
        ensure_can_modify(users["admin"], users["client"], Role.SUPER_ADMIN)
    with pytest.raises(Forbidden):
        ensure_can_modify(users["client"], users["client"])


def test_role_rank_ordering() -> None:
    assert Role.SUPER_ADMIN.at_least(Role.ADMIN)
    assert Role.ADMIN.at_least(Role.ADMIN)
    assert not Role.CLIENT.at_least(Role.ADMIN)
    assert Role.SUPER_ADMIN.rank > Role.ADMIN.rank > Role.CLIENT.rank
