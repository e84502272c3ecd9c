import pytest

from src.accounts import AccountService, needs_profile_completion, validate_contacts, validate_password_change
from src.errors import InvalidCredentialsError, NotAdminError, RecordNotFoundError, ValidationError
from src.models import Profile
from src.session_guard import AdminContext, UserContext


@pytest.fixture
def service(database):
    return AccountService(database)


@pytest.fixture
def student(make_student, backend):
    profile = make_student("2023001", "Budi Santoso", email="budi_santoso001@student.pnl.ac.id")
    backend.add_account(profile.email, "2023001", account_id=profile.account_id)
    return profile


def test_login_by_id_number(service, gateway, student):
    context = service.login(gateway, " 2023001 ", "2023001")

    assert type(context) is UserContext
    assert context.profile.account_id == student.account_id
    assert gateway.session is context.session


def test_admin_login_gets_admin_context(service, gateway, admin_context):
    context = service.login(gateway, "ADM001", "admin123")
    assert isinstance(context, AdminContext)


@pytest.mark.parametrize("id_number, password", [("2023001", "wrong-password"), ("2029999", "2023001")])
def test_login_failures_look_the_same(service, gateway, student, id_number, password):
    with pytest.raises(InvalidCredentialsError) as excinfo:
        service.login(gateway, id_number, password)
    assert str(excinfo.value) == "Invalid login credentials"


def test_login_requires_both_fields(service, gateway):
    with pytest.raises(ValidationError):
        service.login(gateway, "2023001", "  ")


def test_first_login_links_placeholder_profile(service, gateway, backend, database, make_student, batch):
    make_student("2023002", "Ani Wijaya", account_linked=False, account_id="placeholder-2",
                 email="ani_wijaya002@student.pnl.ac.id")
    database.execute_non_query(
        "INSERT INTO hasil_clustering (id, id_user, id_batch, nim) VALUES (%s, %s, %s, %s)",
        ("r1", "placeholder-2", batch.id, "2023002")
    )

    context = service.login(gateway, "2023002", "2023002")

    account_id = backend.accounts["ani_wijaya002@student.pnl.ac.id"]["id"]
    assert context.profile.account_id == account_id
    assert context.profile.account_linked
    assert context.session.account_id == account_id
    assert database.execute_scalar("SELECT id_user FROM hasil_clustering WHERE id = %s", ("r1",)) == account_id


def test_check_auth_and_logout(service, gateway, student):
    context = service.login(gateway, "2023001", "2023001")

    assert service.check_auth(context) is context

    service.logout(context)
    assert gateway.session is None
    assert service.check_auth(context) is None


def test_change_password(service, gateway, backend, student):
    context = service.login(gateway, "2023001", "2023001")

    service.change_password(context, "rahasia123", "rahasia123")

    assert backend.accounts[student.email]["password"] == "rahasia123"


@pytest.mark.parametrize("new, confirm", [("", ""), ("abc", "abc"), ("rahasia123", "rahasia124")])
def test_password_rules(new, confirm):
    with pytest.raises(ValidationError):
        validate_password_change(new, confirm)


def test_complete_profile(service, gateway, student):
    context = service.login(gateway, "2023001", "2023001")
    assert needs_profile_completion(context.profile)

    profile = service.complete_profile(context, "Slamet", "0812-3456 789", "Dr. Rina", "+62 813 000")

    assert profile.guardian_contact == "0812-3456 789"
    assert context.profile is profile
    assert not needs_profile_completion(profile)


def test_contact_numbers_are_validated():
    with pytest.raises(ValidationError) as excinfo:
        validate_contacts("Slamet", "nomor-wa", "Dr. Rina", "0813")
    assert excinfo.value.field == "no_wa_wali"

    with pytest.raises(ValidationError):
        validate_contacts("", "0812", "Dr. Rina", "0813")


def test_admins_never_need_profile_completion():
    admin = Profile(account_id="a", email="a@pnl.ac.id", id_number="ADM001", display_name="Admin", role="admin")
    assert not needs_profile_completion(admin)
    assert not needs_profile_completion(None)


def test_student_management_requires_admin(service, gateway, student):
    context = service.login(gateway, "2023001", "2023001")

    with pytest.raises(NotAdminError):
        service.list_students(context)
    with pytest.raises(NotAdminError):
        service.delete_student(context, student.account_id)


def test_update_student(service, admin_context, student):
    updated = service.update_student(admin_context, student.account_id, {"section": "B", "guardian_contact": "0812"})
    assert updated.section == "B"
    assert updated.guardian_contact == "0812"

    with pytest.raises(ValidationError):
        service.update_student(admin_context, student.account_id, {"role": "admin"})
    with pytest.raises(ValidationError):
        service.update_student(admin_context, student.account_id, {"advisor_contact": "abc"})


def test_delete_student_removes_account_and_profile(service, admin_context, backend, database, student):
    service.delete_student(admin_context, student.account_id)

    assert student.email not in backend.accounts
    assert database.get_profile(student.account_id) is None


def test_delete_student_tolerates_missing_auth_account(service, admin_context, backend, database, student):
    del backend.accounts[student.email]

    service.delete_student(admin_context, student.account_id)

    assert database.get_profile(student.account_id) is None


def test_admin_cannot_delete_self(service, admin_context):
    with pytest.raises(ValidationError):
        service.delete_student(admin_context, admin_context.profile.account_id)
    with pytest.raises(RecordNotFoundError):
        service.delete_student(admin_context, "missing")
