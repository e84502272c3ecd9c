import asyncio

import pytest

from conftest import FakeGateway
from src.errors import NotAdminError
from src.models import Profile
from src.session_guard import AdminContext, UserContext, with_preserved_session


@pytest.fixture
def signup_only_admin(database, backend):
    """Admin context on a gateway without a service-role key."""
    gateway = FakeGateway(backend, privileged=False)
    account_id = backend.add_account("admin@pnl.ac.id", "admin123")
    profile = database.create_profile(Profile(
        account_id=account_id, email="admin@pnl.ac.id", id_number="ADM001",
        display_name="Bagian Akademik", role="admin", level_user=1,
    ))
    session = gateway.sign_in("admin@pnl.ac.id", "admin123")
    return AdminContext(gateway=gateway, session=session, profile=profile)


def test_session_is_identical_after_operation_fails(admin_context):
    before = admin_context.gateway.session

    async def operation(guard):
        admin_context.gateway.sign_up("other@student.pnl.ac.id", "123456")
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        asyncio.run(with_preserved_session(admin_context, operation))

    assert admin_context.gateway.session is before
    assert admin_context.session is before


def test_checkpoint_restores_after_signup_rotation(signup_only_admin):
    gateway = signup_only_admin.gateway
    admin_session = gateway.session
    seen = []

    async def operation(guard):
        for email in ("a@student.pnl.ac.id", "b@student.pnl.ac.id"):
            gateway.create_account_privileged(email, "123456")
            seen.append(gateway.session is admin_session)
            assert guard.checkpoint() is True
            seen.append(gateway.session is admin_session)
        return "done"

    assert asyncio.run(with_preserved_session(signup_only_admin, operation)) == "done"
    # sign-up rotated the session each time; the checkpoint put the admin back
    assert seen == [False, True, False, True]
    assert gateway.session is admin_session


def test_checkpoint_without_drift(admin_context):
    def operation(guard):
        return guard.checkpoint()

    assert asyncio.run(with_preserved_session(admin_context, operation)) is False


def test_requires_admin(database, gateway, backend, make_student):
    student = make_student("2023001")
    backend.add_account(student.email, "2023001", account_id=student.account_id)
    session = gateway.sign_in(student.email, "2023001")
    context = UserContext(gateway=gateway, session=session, profile=student)

    with pytest.raises(NotAdminError):
        asyncio.run(with_preserved_session(context, lambda guard: None))


def test_requires_live_admin_session(admin_context):
    admin_context.gateway.restore_session(None)

    with pytest.raises(NotAdminError):
        asyncio.run(with_preserved_session(admin_context, lambda guard: None))


def test_context_round_trip(admin_context, gateway):
    data = admin_context.to_dict()
    gateway.restore_session(None)

    restored = UserContext.from_dict(gateway, data)

    assert isinstance(restored, AdminContext)
    assert restored.is_admin
    assert gateway.session == admin_context.session

    restored.clear()
    assert gateway.session is None
    assert not restored.is_authenticated
