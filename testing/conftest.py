import os

# Keep test runs from writing log files or reaching Key Vault
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("AUDIT_LOG_FILE", "")
os.environ.setdefault("AZURE_KEY_VAULT_DISABLED", "1")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")

import itertools
import uuid

import pytest

from src.database import Database
from src.errors import AccountExistsError, AuthError, NotificationDeliveryError
from src.models import Profile, Role
from src.services.identity_client import IdentityGateway
from src.session_guard import AdminContext


class FakeAuthBackend:
    """In-memory stand-in for the auth REST API, keyed by (method, path)."""

    def __init__(self, autoconfirm_signup=True):
        self.autoconfirm_signup = autoconfirm_signup
        self.accounts = {}          # email -> {"id", "password"}
        self.tokens = {}            # access token -> account id
        self.calls = []             # (method, path, email)
        self.creation_failures = {}  # email -> exception raised on account creation
        self._counter = itertools.count(1)

    def add_account(self, email, password, account_id=None):
        account_id = account_id or str(uuid.uuid4())
        self.accounts[email] = {"id": account_id, "password": password}
        return account_id

    def _email_for(self, account_id):
        for email, account in self.accounts.items():
            if account["id"] == account_id:
                return email
        return None

    def _session_body(self, email):
        account_id = self.accounts[email]["id"]
        token = f"access-{account_id}-{next(self._counter)}"
        self.tokens[token] = account_id
        return {
            "access_token": token,
            "refresh_token": f"refresh-{token}",
            "expires_in": 3600,
            "user": {"id": account_id, "email": email},
        }

    def _create(self, email, password):
        failure = self.creation_failures.get(email)
        if failure is not None:
            raise failure
        if email in self.accounts:
            raise AccountExistsError("User already registered", 422, "user_already_exists")
        self.add_account(email, password)

    def handle(self, method, path, access_token=None, privileged=False, json=None, params=None):
        json = json or {}
        self.calls.append((method, path, json.get("email")))

        if method == "POST" and path == "/auth/v1/token":
            account = self.accounts.get(json.get("email"))
            if account is None or account["password"] != json.get("password"):
                raise AuthError("Invalid login credentials", 400, "invalid_credentials")
            return self._session_body(json["email"])

        if method == "POST" and path == "/auth/v1/signup":
            self._create(json["email"], json["password"])
            if self.autoconfirm_signup:
                return self._session_body(json["email"])
            return {"id": self.accounts[json["email"]]["id"], "email": json["email"]}

        if method == "POST" and path == "/auth/v1/admin/users":
            if not privileged:
                raise AuthError("User not allowed", 403, "not_admin")
            self._create(json["email"], json["password"])
            return {"id": self.accounts[json["email"]]["id"], "email": json["email"]}

        if method == "GET" and path == "/auth/v1/admin/users":
            if not privileged:
                raise AuthError("User not allowed", 403, "not_admin")
            page, per_page = int(params["page"]), int(params["per_page"])
            users = [{"id": account["id"], "email": email} for email, account in self.accounts.items()]
            return {"users": users[(page - 1) * per_page:page * per_page]}

        if method == "DELETE" and path.startswith("/auth/v1/admin/users/"):
            account_id = path.rsplit("/", 1)[-1]
            email = self._email_for(account_id)
            if email is None:
                raise AuthError("User not found", 404, "user_not_found")
            del self.accounts[email]
            return {}

        account_id = self.tokens.get(access_token)
        if path == "/auth/v1/user":
            if account_id is None:
                raise AuthError("invalid JWT", 401, "bad_jwt")
            email = self._email_for(account_id)
            if method == "PUT":
                self.accounts[email]["password"] = json["password"]
            return {"id": account_id, "email": email}

        if method == "POST" and path == "/auth/v1/logout":
            self.tokens.pop(access_token, None)
            return {}

        raise AssertionError(f"Unexpected auth call {method} {path}")

    def creation_calls(self):
        return [c for c in self.calls if c[0] == "POST" and c[1] in ("/auth/v1/signup", "/auth/v1/admin/users")]


class FakeGateway(IdentityGateway):
    """IdentityGateway whose HTTP layer is the in-memory backend."""

    def __init__(self, backend, privileged=True):
        super().__init__("https://auth.test", "anon-key", "service-key" if privileged else None)
        self.backend = backend

    def _request(self, method, path, access_token=None, privileged=False, json=None, params=None):
        return self.backend.handle(method, path, access_token, privileged, json, params)


class FakeWhatsApp:
    def __init__(self, configured=True, failing_targets=()):
        self.is_configured = configured
        self.failing_targets = set(failing_targets)
        self.sent = []

    def send(self, target, message):
        self.sent.append((target, message))
        if target in self.failing_targets:
            raise NotificationDeliveryError("invalid target")
        return {"status": True}


class FakeClusteringClient:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.calls = []

    def process_file(self, file, filename, sheet_name):
        self.calls.append((filename, sheet_name))
        return list(self.rows)


@pytest.fixture
def database():
    database = Database("sqlite:///:memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def backend():
    return FakeAuthBackend()


@pytest.fixture
def gateway(backend):
    return FakeGateway(backend, privileged=True)


@pytest.fixture
def make_student(database):
    def _make(id_number, name="Budi Santoso", account_linked=True, **fields):
        profile = Profile(
            account_id=fields.pop("account_id", str(uuid.uuid4())),
            email=fields.pop("email", f"{id_number}@student.pnl.ac.id"),
            id_number=id_number,
            display_name=name,
            role=Role.STUDENT.value,
            account_linked=account_linked,
            **fields,
        )
        return database.create_profile(profile)
    return _make


@pytest.fixture
def admin_context(database, backend, gateway):
    account_id = backend.add_account("admin@pnl.ac.id", "admin123")
    profile = database.create_profile(Profile(
        account_id=account_id,
        email="admin@pnl.ac.id",
        id_number="ADM001",
        display_name="Bagian Akademik",
        role=Role.ADMIN.value,
        level_user=1,
    ))
    session = gateway.sign_in("admin@pnl.ac.id", "admin123")
    return AdminContext(gateway=gateway, session=session, profile=profile)


@pytest.fixture
def batch(database):
    period = database.create_period("Ganjil 2024/2025", "2024/2025", "Ganjil")
    return database.create_batch("Batch 1", period.id)


@pytest.fixture
def no_delay():
    return {"delay_ms": 0, "pause_ms": 0}
