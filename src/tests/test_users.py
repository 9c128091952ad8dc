import pytest

from libris import users
from libris.errors import Conflict, InvalidState, NotFound, ValidationFailed
from libris.models import UserRole, UserStatus

pytestmark = pytest.mark.asyncio

async def _register(session, dispatcher, email="rosario@example.com", **kw):
    return await users.register_user(session, dispatcher, email=email, first_name="Rosario", last_name="Castellanos", **kw)

async def test_admin_starts_active_without_request(session, dispatcher):
    user, request = await _register(session, dispatcher, role=UserRole.ADMIN)
    assert user.status == UserStatus.ACTIVE
    assert request is None

async def test_duplicate_email(session, dispatcher):
    await _register(session, dispatcher)
    with pytest.raises(Conflict) as exc:
        await _register(session, dispatcher, email=" ROSARIO@example.com")
    assert exc.value.code == "EMAIL_EXISTS"

async def test_missing_fields(session, dispatcher):
    with pytest.raises(ValidationFailed):
        await users.register_user(session, dispatcher, email="", first_name="A", last_name="B")

async def test_activate_and_suspend(session, dispatcher):
    user, _ = await _register(session, dispatcher)
    active = await users.activate_user(session, dispatcher, user.id, admin_notes="ok")
    assert active.status == UserStatus.ACTIVE
    with pytest.raises(InvalidState) as exc:
        await users.activate_user(session, dispatcher, user.id)
    assert exc.value.code == "USER_ALREADY_ACTIVE"
    suspended = await users.suspend_user(session, dispatcher, user.id, reason="morosidad")
    assert suspended.status == UserStatus.SUSPENDED
    last = dispatcher.sent[-1]
    assert last.kind == "account-status"
    assert last.data.status == "suspended"
    assert last.data.reason == "morosidad"

async def test_unknown_user(session, dispatcher):
    with pytest.raises(NotFound):
        await users.suspend_user(session, dispatcher, 999)

async def test_welcome_failure_does_not_block_registration(session, broken_dispatcher):
    user, request = await _register(session, broken_dispatcher)
    assert user.id is not None
    assert request is not None
