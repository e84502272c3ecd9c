"""Sign-in by student ID number, session checks, passwords and profile maintenance."""

import re
from typing import Any, Dict, List, Optional

from src.credentials import MIN_PASSWORD_LENGTH
from src.errors import (
    AccountExistsError,
    AuthError,
    InvalidCredentialsError,
    NotAdminError,
    PolicyDeniedError,
    RecordNotFoundError,
    ValidationError,
)
from src.logger import app_logger as logger, audit_logger
from src.models import Profile
from src.services.identity_client import IdentityGateway
from src.session_guard import AdminContext, UserContext

PHONE_PATTERN = re.compile(r"^[0-9+\-\s()]+$")

# Fields an admin may edit on a student, keyed by request name
ADMIN_EDITABLE = {
    "display_name": "nama",
    "email": "email",
    "id_number": "nim",
    "guardian_name": "nama_wali",
    "guardian_contact": "no_wa_wali",
    "advisor_name": "nama_dosen_pembimbing",
    "advisor_contact": "no_wa_dosen_pembimbing",
    "track_level": "tingkat",
    "section": "kelas",
}


def require_admin(context: Optional[UserContext]) -> AdminContext:
    if not isinstance(context, AdminContext) or not context.is_admin:
        raise NotAdminError()
    return context


def require_user(context: Optional[UserContext]) -> UserContext:
    if context is None or not context.is_authenticated:
        raise AuthError("Silakan login terlebih dahulu", status_code=401)
    return context


def needs_profile_completion(profile: Optional[Profile]) -> bool:
    """Students are sent to the profile form until identity and contacts are filled in."""
    if profile is None or profile.is_admin:
        return False
    required = (
        profile.display_name,
        profile.id_number,
        profile.guardian_name,
        profile.guardian_contact,
        profile.advisor_name,
        profile.advisor_contact,
    )
    return not all(value and str(value).strip() for value in required)


def validate_password_change(new_password: str, confirmation: str) -> None:
    if not new_password:
        raise ValidationError("Password baru harus diisi", field="new_password")
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password baru minimal {MIN_PASSWORD_LENGTH} karakter", field="new_password")
    if new_password != confirmation:
        raise ValidationError("Password baru dan konfirmasi password tidak sesuai", field="confirm_password")


def validate_contacts(
    guardian_name: str,
    guardian_contact: str,
    advisor_name: str,
    advisor_contact: str
) -> Dict[str, str]:
    """Check the profile-completion form and return the cleaned ``users`` columns."""
    values = {
        "nama_wali": (guardian_name or "").strip(),
        "no_wa_wali": (guardian_contact or "").strip(),
        "nama_dosen_pembimbing": (advisor_name or "").strip(),
        "no_wa_dosen_pembimbing": (advisor_contact or "").strip(),
    }
    required = (
        ("nama_wali", "Nama wali harus diisi"),
        ("no_wa_wali", "Nomor WA wali harus diisi"),
        ("nama_dosen_pembimbing", "Nama dosen pembimbing harus diisi"),
        ("no_wa_dosen_pembimbing", "Nomor WA dosen pembimbing harus diisi"),
    )
    for column, message in required:
        if not values[column]:
            raise ValidationError(message, field=column)

    if not PHONE_PATTERN.match(values["no_wa_wali"]):
        raise ValidationError("Format nomor WA wali tidak valid", field="no_wa_wali")
    if not PHONE_PATTERN.match(values["no_wa_dosen_pembimbing"]):
        raise ValidationError("Format nomor WA dosen pembimbing tidak valid", field="no_wa_dosen_pembimbing")
    return values


class AccountService:
    """Account operations for the signed-in user and for admins managing students."""

    def __init__(self, database):
        self.db = database

    def login(self, gateway: IdentityGateway, id_number: str, password: str) -> UserContext:
        """Sign in with an ID number.

        The profile gives the login email. A placeholder profile whose account
        was never created gets its account on first login and is linked to it.
        Every failure surfaces as the same InvalidCredentialsError.
        """
        id_number = (id_number or "").strip()
        password = (password or "").strip()
        if not id_number or not password:
            raise ValidationError("NIM dan password harus diisi")

        profile = self.db.get_profile_by_id_number(id_number)
        if profile is None:
            logger.info("Login attempt for an unknown ID number")
            raise InvalidCredentialsError()

        try:
            session = gateway.sign_in(profile.email, password)
        except InvalidCredentialsError:
            if profile.account_linked:
                raise
            session, profile = self._activate_placeholder(gateway, profile, password)

        context_cls = AdminContext if profile.is_admin else UserContext
        logger.info(f"User {profile.id_number} signed in", extra={"account_id": profile.account_id})
        return context_cls(gateway=gateway, session=session, profile=profile)

    def _activate_placeholder(self, gateway: IdentityGateway, profile: Profile, password: str):
        try:
            account_id = gateway.sign_up(profile.email, password)
        except AccountExistsError as exc:
            raise InvalidCredentialsError() from exc

        linked = self.db.link_profile_account(profile.id_number, account_id)
        audit_logger.log_account_provisioning(profile.id_number, "linked")

        session = gateway.session
        if session is None or session.account_id != account_id:
            # Backend requires a separate sign-in after sign-up
            session = gateway.sign_in(profile.email, password)
        return session, linked

    def check_auth(self, context: Optional[UserContext]) -> Optional[UserContext]:
        """Confirm the session with the backend and refresh the cached profile."""
        if context is None or context.session is None:
            return None
        try:
            user = context.gateway.get_user()
        except AuthError:
            context.clear()
            return None

        profile = self.db.get_profile(user.get("id") or context.session.account_id)
        if profile is None:
            context.clear()
            return None
        context.profile = profile
        if profile.is_admin and not isinstance(context, AdminContext):
            return AdminContext(gateway=context.gateway, session=context.session, profile=profile)
        return context

    def logout(self, context: Optional[UserContext]) -> None:
        if context is None:
            return
        try:
            context.gateway.sign_out()
        except Exception as exc:
            logger.warning(f"Sign-out at the auth backend failed: {exc}")
        finally:
            context.clear()

    def change_password(self, context: UserContext, new_password: str, confirmation: str) -> None:
        validate_password_change(new_password, confirmation)
        require_user(context).gateway.update_password(new_password)
        audit_logger.log_security_event(
            "password_changed", "info", {"account_id": context.profile.account_id}
        )

    def complete_profile(
        self,
        context: UserContext,
        guardian_name: str,
        guardian_contact: str,
        advisor_name: str,
        advisor_contact: str
    ) -> Profile:
        values = validate_contacts(guardian_name, guardian_contact, advisor_name, advisor_contact)
        context = require_user(context)
        profile = self.db.update_profile(context.profile.account_id, values)
        context.profile = profile
        return profile

    def list_students(self, context: UserContext) -> List[Profile]:
        require_admin(context)
        return self.db.list_students()

    def update_student(self, context: UserContext, account_id: str, fields: Dict[str, Any]) -> Profile:
        require_admin(context)
        unknown = set(fields) - set(ADMIN_EDITABLE)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        columns = {ADMIN_EDITABLE[key]: value for key, value in fields.items()}
        for phone_column in ("no_wa_wali", "no_wa_dosen_pembimbing"):
            value = columns.get(phone_column)
            if value and not PHONE_PATTERN.match(str(value).strip()):
                raise ValidationError("Format nomor WA tidak valid", field=phone_column)
        if "nim" in columns and not str(columns["nim"] or "").strip():
            raise ValidationError("NIM harus diisi", field="nim")
        return self.db.update_profile(account_id, columns)

    def delete_student(self, context: UserContext, account_id: str) -> None:
        """Delete the auth account, then the profile and its results."""
        admin = require_admin(context)
        profile = self.db.get_profile(account_id)
        if profile is None:
            raise RecordNotFoundError(f"Profile {account_id} not found")
        if profile.account_id == admin.profile.account_id:
            raise ValidationError("Admin tidak dapat menghapus akunnya sendiri")

        if profile.account_linked:
            try:
                admin.gateway.delete_account_privileged(account_id)
            except AuthError as exc:
                if exc.status_code != 404 or isinstance(exc, PolicyDeniedError):
                    raise
                logger.info(f"Auth account {account_id} was already gone")

        removed = self.db.delete_profile(account_id)
        audit_logger.log_security_event(
            "student_deleted", "warning",
            {"account_id": account_id, "id_number": profile.id_number, "results_removed": removed}
        )
