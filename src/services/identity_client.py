"""Client for a GoTrue-compatible authentication REST API (Supabase Auth)."""

import time
from typing import Any, Dict, Optional

import requests

from src.config import config
from src.errors import (
    AccountExistsError,
    AuthError,
    ConfigurationError,
    InvalidCredentialsError,
    PolicyDeniedError,
    RateLimitedError,
    ServiceUnreachableError,
)
from src.logger import app_logger as logger
from src.models import Session

DUPLICATE_MARKERS = ("already registered", "duplicate", "already exists", "email_exists", "user_already_exists")
RATE_MARKERS = ("rate", "too many", "429", "over_request_rate_limit", "over_email_send_rate_limit")
POLICY_MARKERS = ("not allowed", "not authorized", "not_admin", "forbidden", "permission", "row-level security")
INVALID_CREDENTIAL_CODES = ("invalid_credentials", "invalid_grant")


def classify_auth_error(status_code: Optional[int], payload: Any) -> AuthError:
    """Map an error response from the auth backend onto the AuthError family."""
    if isinstance(payload, dict):
        message = (
            payload.get("msg")
            or payload.get("error_description")
            or payload.get("message")
            or payload.get("error")
            or f"HTTP {status_code}"
        )
        error_code = payload.get("error_code") or payload.get("code")
    else:
        message = str(payload or f"HTTP {status_code}")
        error_code = None
    error_code = str(error_code) if error_code is not None else None

    haystack = f"{message} {error_code or ''}".lower()
    if any(marker in haystack for marker in DUPLICATE_MARKERS) or status_code == 422 and "exist" in haystack:
        return AccountExistsError(message, status_code, error_code)
    if status_code == 429 or any(marker in haystack for marker in RATE_MARKERS):
        return RateLimitedError(message, status_code, error_code)
    if status_code in (401, 403) or any(marker in haystack for marker in POLICY_MARKERS):
        return PolicyDeniedError(message, status_code, error_code)
    return AuthError(message, status_code, error_code)


class IdentityGateway:
    """Holds the ambient session and talks to the auth backend on its behalf."""

    def __init__(
        self,
        base_url: Optional[str],
        anon_key: Optional[str],
        service_role_key: Optional[str] = None,
        timeout: int = 30
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.anon_key = anon_key
        self.service_role_key = service_role_key
        self.timeout = timeout
        self.session: Optional[Session] = None

    @classmethod
    def from_config(cls, cfg=config) -> "IdentityGateway":
        return cls(
            base_url=cfg.supabase_url,
            anon_key=cfg.supabase_anon_key,
            service_role_key=cfg.supabase_service_role_key,
            timeout=cfg.auth_timeout,
        )

    @property
    def supports_privileged_creation(self) -> bool:
        """True when accounts can be created without touching the ambient session."""
        return bool(self.service_role_key)

    def _headers(self, access_token: Optional[str] = None, privileged: bool = False) -> Dict[str, str]:
        key = self.service_role_key if privileged else self.anon_key
        return {
            "apikey": key,
            "Authorization": f"Bearer {access_token or key}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        access_token: Optional[str] = None,
        privileged: bool = False,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        if not self.base_url or not self.anon_key:
            raise ConfigurationError("SUPABASE_URL", "Auth backend URL/key is not configured")

        url = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                headers=self._headers(access_token, privileged),
                json=json,
                params=params,
                timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.error(f"Auth backend unreachable: {exc}")
            raise ServiceUnreachableError("auth") from exc
        except requests.RequestException as exc:
            raise AuthError(str(exc)) from exc

        try:
            body = response.json() if response.text else {}
        except ValueError:
            body = {"msg": response.text}

        if response.status_code >= 400:
            raise classify_auth_error(response.status_code, body)
        return body if isinstance(body, dict) else {"data": body}

    @staticmethod
    def _session_from_body(body: Dict[str, Any]) -> Optional[Session]:
        if not body.get("access_token"):
            return None
        user = body.get("user") or {}
        expires_at = body.get("expires_at")
        if expires_at is None and body.get("expires_in"):
            expires_at = int(time.time()) + int(body["expires_in"])
        return Session(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            account_id=user.get("id"),
            email=user.get("email"),
            expires_at=expires_at,
        )

    def sign_in(self, email: str, password: str) -> Session:
        """Password sign-in. Rejections never say which credential was wrong."""
        try:
            body = self._request(
                "POST",
                "/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password}
            )
        except (RateLimitedError, ServiceUnreachableError, ConfigurationError):
            raise
        except AuthError as exc:
            if exc.status_code in (400, 401) or exc.error_code in INVALID_CREDENTIAL_CODES:
                raise InvalidCredentialsError(exc.status_code, exc.error_code) from exc
            raise

        session = self._session_from_body(body)
        if session is None:
            raise AuthError("Sign-in response did not include a session")
        self.session = session
        return session

    def sign_up(self, email: str, password: str) -> str:
        """Public sign-up. Replaces the ambient session when the backend issues one."""
        body = self._request("POST", "/auth/v1/signup", json={"email": email, "password": password})
        user = body.get("user") or body
        account_id = user.get("id")
        if not account_id:
            raise AuthError("Sign-up response did not include an account id")

        session = self._session_from_body(body)
        if session is not None:
            self.session = session
        return account_id

    def create_account_privileged(self, email: str, password: str) -> str:
        """Create a confirmed account; falls back to sign-up without a service-role key."""
        if not self.supports_privileged_creation:
            return self.sign_up(email, password)

        body = self._request(
            "POST",
            "/auth/v1/admin/users",
            privileged=True,
            json={"email": email, "password": password, "email_confirm": True}
        )
        account_id = (body.get("user") or body).get("id")
        if not account_id:
            raise AuthError("Account creation response did not include an account id")
        return account_id

    def find_account_id(self, email: str, per_page: int = 200) -> Optional[str]:
        """Look an account up by email through the admin user listing."""
        if not self.supports_privileged_creation:
            raise PolicyDeniedError("Looking up accounts requires the service-role key")

        wanted = (email or "").strip().lower()
        page = 1
        while True:
            body = self._request(
                "GET",
                "/auth/v1/admin/users",
                privileged=True,
                params={"page": str(page), "per_page": str(per_page)}
            )
            users = body.get("users") or []
            for user in users:
                if (user.get("email") or "").lower() == wanted:
                    return user.get("id")
            if len(users) < per_page:
                return None
            page += 1

    def delete_account_privileged(self, account_id: str) -> None:
        if not self.supports_privileged_creation:
            raise PolicyDeniedError("Deleting accounts requires the service-role key")
        self._request("DELETE", f"/auth/v1/admin/users/{account_id}", privileged=True)

    def _require_session(self) -> Session:
        if self.session is None:
            raise AuthError("No active session", status_code=401)
        return self.session

    def update_password(self, new_password: str) -> None:
        session = self._require_session()
        self._request(
            "PUT",
            "/auth/v1/user",
            access_token=session.access_token,
            json={"password": new_password}
        )

    def get_user(self) -> Dict[str, Any]:
        session = self._require_session()
        return self._request("GET", "/auth/v1/user", access_token=session.access_token)

    def sign_out(self) -> None:
        """Revoke the session at the backend; the local session is cleared either way."""
        session = self.session
        try:
            if session is not None:
                self._request("POST", "/auth/v1/logout", access_token=session.access_token)
        finally:
            self.session = None

    def save_session(self) -> Optional[Session]:
        return self.session

    def restore_session(self, session: Optional[Session]) -> None:
        self.session = session
