import pytest
import requests

from src.errors import (
    AccountExistsError,
    AuthError,
    ConfigurationError,
    InvalidCredentialsError,
    PolicyDeniedError,
    RateLimitedError,
    ServiceUnreachableError,
)
from src.models import Session
from src.services.identity_client import IdentityGateway, classify_auth_error


class DummyResponse:
    def __init__(self, status_code=200, json_dict=None, text=None):
        self.status_code = status_code
        self._json = json_dict if json_dict is not None else {}
        self.text = text if text is not None else ("{}" if json_dict is not None else "")

    def json(self):
        return self._json


def _session_body(account_id="acc-1", email="a@x.test"):
    return {
        "access_token": "access-token",
        "refresh_token": "refresh-token",
        "expires_at": 1700000000,
        "user": {"id": account_id, "email": email},
    }


@pytest.fixture
def gateway():
    return IdentityGateway("https://auth.test/", "anon", "service")


def test_sign_in_sets_session(monkeypatch, gateway):
    sent = {}

    def fake_request(method, url, headers=None, json=None, params=None, timeout=None):
        sent.update(method=method, url=url, params=params, json=json, headers=headers)
        return DummyResponse(200, _session_body())

    monkeypatch.setattr("src.services.identity_client.requests.request", fake_request)
    session = gateway.sign_in("a@x.test", "secret1")

    assert sent["url"] == "https://auth.test/auth/v1/token"
    assert sent["params"] == {"grant_type": "password"}
    assert sent["headers"]["apikey"] == "anon"
    assert session.account_id == "acc-1"
    assert gateway.session is session


def test_sign_in_rejection_is_uniform(monkeypatch, gateway):
    def fake_request(method, url, **kwargs):
        return DummyResponse(400, {"error": "invalid_grant", "error_description": "Invalid login credentials"})

    monkeypatch.setattr("src.services.identity_client.requests.request", fake_request)
    with pytest.raises(InvalidCredentialsError) as excinfo:
        gateway.sign_in("a@x.test", "wrong")
    assert str(excinfo.value) == "Invalid login credentials"
    assert gateway.session is None


def test_network_failure_is_unreachable_not_invalid_credentials(monkeypatch, gateway):
    def fake_request(method, url, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr("src.services.identity_client.requests.request", fake_request)
    with pytest.raises(ServiceUnreachableError):
        gateway.sign_in("a@x.test", "secret1")


def test_privileged_creation_uses_service_key_and_keeps_session(monkeypatch, gateway):
    admin_session = Session("admin-token", "admin-refresh", "admin-id")
    gateway.restore_session(admin_session)
    sent = {}

    def fake_request(method, url, headers=None, json=None, params=None, timeout=None):
        sent.update(url=url, headers=headers, json=json)
        return DummyResponse(200, {"id": "new-id", "email": json["email"]})

    monkeypatch.setattr("src.services.identity_client.requests.request", fake_request)
    account_id = gateway.create_account_privileged("s@x.test", "2023001")

    assert account_id == "new-id"
    assert sent["url"] == "https://auth.test/auth/v1/admin/users"
    assert sent["headers"]["Authorization"] == "Bearer service"
    assert sent["json"]["email_confirm"] is True
    assert gateway.session is admin_session


def test_creation_without_service_key_falls_back_to_signup(monkeypatch):
    gateway = IdentityGateway("https://auth.test", "anon")
    admin_session = Session("admin-token", "admin-refresh", "admin-id")
    gateway.restore_session(admin_session)
    urls = []

    def fake_request(method, url, **kwargs):
        urls.append(url)
        return DummyResponse(200, _session_body("student-id", "s@x.test"))

    monkeypatch.setattr("src.services.identity_client.requests.request", fake_request)
    assert not gateway.supports_privileged_creation
    assert gateway.create_account_privileged("s@x.test", "2023001") == "student-id"
    assert urls == ["https://auth.test/auth/v1/signup"]
    # public sign-up rotates the ambient session
    assert gateway.session.account_id == "student-id"


def test_missing_configuration():
    gateway = IdentityGateway(None, None)
    with pytest.raises(ConfigurationError):
        gateway.sign_in("a@x.test", "secret1")


def test_update_password_requires_session(gateway):
    with pytest.raises(AuthError):
        gateway.update_password("newpass")


def test_sign_out_clears_session_even_on_failure(monkeypatch, gateway):
    gateway.restore_session(Session("t", "r", "id"))

    def fake_request(method, url, **kwargs):
        raise requests.Timeout("timed out")

    monkeypatch.setattr("src.services.identity_client.requests.request", fake_request)
    with pytest.raises(ServiceUnreachableError):
        gateway.sign_out()
    assert gateway.session is None


@pytest.mark.parametrize("status, payload, expected", [
    (422, {"msg": "User already registered", "error_code": "user_already_exists"}, AccountExistsError),
    (400, {"msg": "duplicate key value"}, AccountExistsError),
    (429, {"msg": "Too many requests"}, RateLimitedError),
    (400, {"msg": "For security purposes, request rate limit reached"}, RateLimitedError),
    (403, {"msg": "User not allowed", "error_code": "not_admin"}, PolicyDeniedError),
    (400, {"message": "new row violates row-level security policy"}, PolicyDeniedError),
    (500, {"msg": "Database error saving new user"}, AuthError),
])
def test_classify_auth_error(status, payload, expected):
    error = classify_auth_error(status, payload)
    assert type(error) is expected
    assert error.status_code == status


def test_find_account_id_pages_through_admin_listing(monkeypatch, gateway):
    pages = {
        "1": {"users": [{"id": "acc-1", "email": "a@x.test"}, {"id": "acc-2", "email": "b@x.test"}]},
        "2": {"users": [{"id": "acc-3", "email": "Budi@X.test"}]},
    }
    seen = []

    def fake_request(method, url, headers=None, json=None, params=None, timeout=None):
        seen.append((method, params["page"], headers["apikey"]))
        return DummyResponse(200, pages.get(params["page"], {"users": []}))

    monkeypatch.setattr("src.services.identity_client.requests.request", fake_request)

    assert gateway.find_account_id("budi@x.test", per_page=2) == "acc-3"
    assert seen == [("GET", "1", "service"), ("GET", "2", "service")]
    assert gateway.find_account_id("nobody@x.test", per_page=2) is None

    with pytest.raises(PolicyDeniedError):
        IdentityGateway("https://auth.test", "anon").find_account_id("a@x.test")
