"""Configuration management for the discipline clustering dashboard using Azure Key Vault."""

import os
import sys
import logging
import signal
from typing import Optional, Dict
from dotenv import load_dotenv
from pathlib import Path

# Suppress Azure SDK warnings for local development
logging.getLogger('azure').setLevel(logging.ERROR)

REGISTRATION_MODES = ("self_service", "bulk_profile")


# Timeout handler for Key Vault initialization
def _timeout_handler(signum, frame):
    raise TimeoutError("Key Vault initialization timeout")


# Load environment variables from .env file (fallback for local development)
# Try .env.local first for local dev, then .env
env_local = Path(".env.local")
if env_local.exists():
    load_dotenv(env_local)
else:
    load_dotenv()


def _int_setting(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


class Config:
    """Configuration for the clustering dashboard with Azure Key Vault integration."""

    def __init__(self, key_vault_name: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            key_vault_name: Name of the Azure Key Vault (without .vault.azure.net).
                           If None, will try to get from AZURE_KEY_VAULT_NAME env var.
                           If still None, falls back to .env file (local dev mode).
        """
        self._secrets_cache: Dict[str, str] = {}
        self._secret_client = None
        self._key_vault_enabled = True
        self._key_vault_error_logged = False

        # Determine Key Vault name - skip if using local dev env file
        env_local_path = Path(".env.local")
        if env_local_path.exists() or os.getenv("AZURE_KEY_VAULT_DISABLED") == "1":
            # Local development mode - use environment variables only
            self.key_vault_name = None
            self._key_vault_enabled = False
        else:
            self.key_vault_name = key_vault_name or os.getenv("AZURE_KEY_VAULT_NAME")
            if self.key_vault_name:
                self._connect_key_vault()
            else:
                self._key_vault_enabled = False

        # External clustering service (DBSCAN runs there)
        self.clustering_api_url: Optional[str] = self._get_secret("clustering-api-url", "CLUSTERING_API_URL")
        self.clustering_api_timeout: int = _int_setting(
            self._get_secret("clustering-api-timeout", "CLUSTERING_API_TIMEOUT"), 120
        )

        # WhatsApp delivery (Fonnte)
        self.fonnte_token: Optional[str] = self._get_secret("fonnte-token", "FONNTE_TOKEN")
        self.fonnte_api_url: str = (
            self._get_secret("fonnte-api-url", "FONNTE_API_URL") or "https://api.fonnte.com/send"
        )
        self.fonnte_country_code: str = self._get_secret("fonnte-country-code", "FONNTE_COUNTRY_CODE") or "62"

        # Identity backend (GoTrue / Supabase Auth)
        self.supabase_url: Optional[str] = self._get_secret("supabase-url", "SUPABASE_URL")
        self.supabase_anon_key: Optional[str] = self._get_secret("supabase-anon-key", "SUPABASE_ANON_KEY")
        self.supabase_service_role_key: Optional[str] = self._get_secret(
            "supabase-service-role-key",
            "SUPABASE_SERVICE_ROLE_KEY"
        )
        self.auth_timeout: int = _int_setting(os.getenv("AUTH_TIMEOUT"), 30)

        # PostgreSQL Database configuration
        self.postgres_url: Optional[str] = self._get_secret("postgres-connection-string", "DATABASE_URL")
        self.postgres_host: Optional[str] = self._get_secret("postgres-host", "POSTGRES_HOST")
        self.postgres_port: str = self._get_secret("postgres-port", "POSTGRES_PORT") or "5432"
        self.postgres_database: Optional[str] = self._get_secret("postgres-database", "POSTGRES_DB")
        self.postgres_username: Optional[str] = self._get_secret("postgres-username", "POSTGRES_USER")
        self.postgres_password: Optional[str] = self._get_secret("postgres-password", "POSTGRES_PASSWORD")

        # Student provisioning
        self.student_email_domain: str = os.getenv("STUDENT_EMAIL_DOMAIN") or "student.pnl.ac.id"
        mode = (os.getenv("REGISTRATION_MODE") or "self_service").strip().lower()
        self.registration_mode: str = mode if mode in REGISTRATION_MODES else "self_service"
        self.registration_delay_ms: int = _int_setting(os.getenv("REGISTRATION_DELAY_MS"), 500)
        self.registration_pause_every: int = _int_setting(os.getenv("REGISTRATION_PAUSE_EVERY"), 5)
        self.registration_pause_ms: int = _int_setting(os.getenv("REGISTRATION_PAUSE_MS"), 2000)

        # Flask configuration
        self.flask_secret_key: Optional[str] = self._get_secret("flask-secret-key", "FLASK_SECRET_KEY")

        # App metadata
        self.app_version: str = self._read_version_file() or os.getenv("APP_VERSION") or "0.1"

    def _connect_key_vault(self) -> None:
        try:
            from azure.identity import DefaultAzureCredential
            from azure.keyvault.secrets import SecretClient

            # Redirect stderr to suppress credential error output
            old_stderr = sys.stderr
            sys.stderr = open(os.devnull, 'w')

            # Set a timeout for Key Vault initialization (10 seconds max)
            signal.signal(signal.SIGALRM, _timeout_handler)
            signal.alarm(10)

            try:
                credential = DefaultAzureCredential()
                vault_url = f"https://{self.key_vault_name}.vault.azure.net/"
                self._secret_client = SecretClient(vault_url=vault_url, credential=credential)
                signal.alarm(0)
            except TimeoutError:
                signal.alarm(0)
                self._secret_client = None
                self._key_vault_enabled = False
            finally:
                sys.stderr.close()
                sys.stderr = old_stderr
        except Exception:
            # Silently fall back to env variables in local dev
            self._secret_client = None
            self._key_vault_enabled = False

    def _get_secret(self, key_vault_secret_name: str, env_var_name: str) -> Optional[str]:
        """
        Get a secret from Key Vault or fall back to environment variable.

        Args:
            key_vault_secret_name: Name of the secret in Key Vault (using hyphens)
            env_var_name: Name of the environment variable (using underscores)

        Returns:
            The secret value or None if not found
        """
        if key_vault_secret_name in self._secrets_cache:
            return self._secrets_cache[key_vault_secret_name]

        if self._secret_client and self._key_vault_enabled:
            try:
                secret = self._secret_client.get_secret(key_vault_secret_name)
                value = secret.value
                self._secrets_cache[key_vault_secret_name] = value
                return value
            except Exception as e:
                # If the secret is missing, keep Key Vault enabled for other secrets.
                error_code = getattr(e, "error_code", "")
                is_not_found = error_code == "SecretNotFound" or "SecretNotFound" in str(e)
                if not is_not_found:
                    # Disable Key Vault after connection/auth failures to avoid repeated log spam.
                    self._key_vault_enabled = False
                    self._secret_client = None
                    if not self._key_vault_error_logged:
                        logging.warning(
                            "Key Vault access failed; falling back to environment variables.",
                            exc_info=True
                        )
                        self._key_vault_error_logged = True

        value = os.getenv(env_var_name)
        if value:
            self._secrets_cache[key_vault_secret_name] = value
        return value

    def _read_version_file(self) -> Optional[str]:
        try:
            version_path = Path("VERSION")
            if version_path.exists():
                return version_path.read_text(encoding="utf-8").strip()
            repo_root = Path(__file__).resolve().parents[1]
            repo_version = repo_root / "VERSION"
            if repo_version.exists():
                return repo_version.read_text(encoding="utf-8").strip()
        except Exception:
            return None
        return None

    def is_clustering_configured(self) -> bool:
        return bool(self.clustering_api_url)

    def is_notification_configured(self) -> bool:
        return bool(self.fonnte_token)

    def is_identity_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    def validate(self) -> bool:
        """Validate that the configuration needed to sign users in is present."""
        return self.is_identity_configured() and bool(self.postgres_url or self.postgres_host)

    def get_missing_config(self) -> list[str]:
        """Return list of missing configuration items."""
        missing = []

        if not self.supabase_url:
            missing.append("supabase-url (Key Vault) or SUPABASE_URL (env)")
        if not self.supabase_anon_key:
            missing.append("supabase-anon-key (Key Vault) or SUPABASE_ANON_KEY (env)")
        if not self.clustering_api_url:
            missing.append("clustering-api-url (Key Vault) or CLUSTERING_API_URL (env)")
        if not self.fonnte_token:
            missing.append("fonnte-token (Key Vault) or FONNTE_TOKEN (env)")

        if not self.postgres_url and not self.postgres_host:
            missing.append("postgres-connection-string (Key Vault) or DATABASE_URL (env) OR postgres-host + credentials")
        if self.postgres_host and not self.postgres_database:
            missing.append("postgres-database (Key Vault) or POSTGRES_DB (env)")
        if self.postgres_host and not self.postgres_username:
            missing.append("postgres-username (Key Vault) or POSTGRES_USER (env)")
        if self.postgres_host and not self.postgres_password:
            missing.append("postgres-password (Key Vault) or POSTGRES_PASSWORD (env)")

        return missing

    def get(self, key: str, default: str = None) -> Optional[str]:
        """Get a configuration value by environment variable name."""
        return os.getenv(key, default)

    def get_config_summary(self) -> str:
        """Get a summary of configuration (without exposing sensitive values)."""
        return f"""Configuration Summary:
  Source: {'Azure Key Vault (' + self.key_vault_name + ')' if self._secret_client else 'Environment Variables (.env)'}
  Clustering API: {self.clustering_api_url or 'Not set'}
  WhatsApp Token: {'Set' if self.fonnte_token else 'Not set'}
  Auth Backend: {self.supabase_url or 'Not set'}
  Privileged Account Creation: {'Enabled' if self.supabase_service_role_key else 'Disabled (sign-up fallback)'}
  Registration Mode: {self.registration_mode}
  Postgres Host: {self.postgres_host or 'Not set'}
  Postgres URL: {'Set' if self.postgres_url else 'Not set'}
"""


# Global config instance - resolves Key Vault name from environment
config = Config()
