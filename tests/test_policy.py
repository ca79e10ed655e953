from types import SimpleNamespace

from fastapi import HTTPException
import pytest

from etf_tracker.database import Etf
from etf_tracker.models.user import Role
from etf_tracker.policy import (
    Actor,
    Decision,
    can_delete_user,
    can_read,
    can_write,
    enforce,
    scope_clause,
)

OWNER = Actor(id=1, role=Role.USER)
OTHER = Actor(id=2, role=Role.USER)
ADMIN = Actor(id=3, role=Role.ADMIN)


def record(is_public: bool):
    return SimpleNamespace(user_id=OWNER.id, is_public=is_public)


def test_absent_resource_is_not_found():
    assert can_read(OWNER, None) is Decision.NOT_FOUND
    assert can_write(ADMIN, None) is Decision.NOT_FOUND


def test_private_record_readable_by_owner_and_admin_only():
    private = record(is_public=False)
    assert can_read(OWNER, private) is Decision.ALLOW
    assert can_read(ADMIN, private) is Decision.ALLOW
    assert can_read(OTHER, private) is Decision.FORBIDDEN


def test_public_record_readable_but_not_writable_by_others():
    public = record(is_public=True)
    assert can_read(OTHER, public) is Decision.ALLOW
    assert can_write(OTHER, public) is Decision.FORBIDDEN
    assert can_write(OWNER, public) is Decision.ALLOW
    assert can_write(ADMIN, public) is Decision.ALLOW


def test_self_deletion_rejected_even_for_admin():
    assert can_delete_user(ADMIN, SimpleNamespace(id=ADMIN.id)) is Decision.BAD_REQUEST
    assert can_delete_user(ADMIN, SimpleNamespace(id=OWNER.id)) is Decision.ALLOW
    assert can_delete_user(ADMIN, None) is Decision.NOT_FOUND


def test_admin_scope_is_unrestricted():
    assert scope_clause(Etf, ADMIN) is None
    assert scope_clause(Etf, OWNER) is not None


def test_actor_from_user_parses_role():
    actor = Actor.from_user(SimpleNamespace(id=7, role="ADMIN"))
    assert actor.is_admin
    assert actor.role is Role.ADMIN


@pytest.mark.parametrize(
    "decision, status_code, detail",
    [
        (Decision.NOT_FOUND, 404, "ETF not found"),
        (Decision.FORBIDDEN, 403, "Access denied"),
        (Decision.BAD_REQUEST, 400, "Cannot delete your own account"),
    ],
)
def test_enforce_maps_decisions_to_http_errors(decision, status_code, detail):
    with pytest.raises(HTTPException) as exc_info:
        enforce(decision, "ETF")
    assert exc_info.value.status_code == status_code
    assert exc_info.value.detail == detail


def test_enforce_allows():
    assert enforce(Decision.ALLOW, "ETF") is None
