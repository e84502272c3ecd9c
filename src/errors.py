"""Exception types raised by the dashboard services."""

from typing import Optional


class DashboardError(Exception):
    """Base class for all dashboard errors."""


class ConfigurationError(DashboardError):
    """A required external URL or token is not configured."""

    def __init__(self, setting: str, message: Optional[str] = None):
        self.setting = setting
        super().__init__(message or f"{setting} is not configured")


class ValidationError(DashboardError):
    """Input rejected before any network call."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class ServiceUnreachableError(DashboardError):
    """An external service could not be reached (network failure or timeout)."""

    def __init__(self, service: str, message: Optional[str] = None):
        self.service = service
        super().__init__(message or f"Cannot connect to {service} service")


class ClusteringServiceError(DashboardError):
    """The clustering service answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Clustering API error ({status_code}): {body or 'Unknown error'}")


class AuthError(DashboardError):
    """Failure reported by the identity backend."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class InvalidCredentialsError(AuthError):
    """Sign-in rejected. Never says whether the email or the password was wrong."""

    def __init__(self, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__("Invalid login credentials", status_code, error_code)


class AccountExistsError(AuthError):
    """An account with this email is already registered."""


class RateLimitedError(AuthError):
    """The identity backend is throttling requests."""


class PolicyDeniedError(AuthError):
    """The acting session lacks the privilege for the requested operation."""


class NotAdminError(DashboardError):
    """A privileged operation was requested without an admin session."""

    def __init__(self, message: str = "An admin session is required for this operation"):
        super().__init__(message)


class RegistrationHaltedError(DashboardError):
    """Bulk registration stopped because the backend denied the acting session."""

    def __init__(self, report, cause: Optional[Exception] = None):
        self.report = report
        self.cause = cause
        super().__init__(
            "Registration halted: the backend rejected the admin session "
            f"after {len(report.outcomes)} record(s)"
        )


class NoValidRowsError(DashboardError):
    """None of the clustering rows could be matched to a registered student."""

    def __init__(self, skipped: int = 0):
        self.skipped = skipped
        super().__init__("Tidak ada data valid untuk disimpan")


class NotificationDeliveryError(DashboardError):
    """The WhatsApp provider rejected a single message."""


class RecordNotFoundError(DashboardError):
    """A referenced period, batch or profile does not exist."""
