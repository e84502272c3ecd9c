"""WhatsApp delivery through a Fonnte-compatible notify endpoint."""

from typing import Any, Dict, Optional

import requests

from src.config import config
from src.errors import ConfigurationError, NotificationDeliveryError, ServiceUnreachableError
from src.logger import app_logger as logger


class WhatsAppClient:
    """Single-attempt sender; callers decide how failures are counted."""

    def __init__(
        self,
        token: Optional[str],
        api_url: str = "https://api.fonnte.com/send",
        country_code: str = "62",
        timeout: int = 30
    ) -> None:
        self.token = token
        self.api_url = api_url
        self.country_code = country_code
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg=config) -> "WhatsAppClient":
        return cls(cfg.fonnte_token, api_url=cfg.fonnte_api_url, country_code=cfg.fonnte_country_code)

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    def send(self, target: str, message: str) -> Dict[str, Any]:
        if not self.token:
            raise ConfigurationError("FONNTE_TOKEN", "Token Fonnte belum dikonfigurasi")

        try:
            response = requests.post(
                self.api_url,
                headers={"Authorization": self.token, "Content-Type": "application/json"},
                json={"target": target, "message": message, "countryCode": self.country_code},
                timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise ServiceUnreachableError("whatsapp") from exc

        try:
            body = response.json()
        except ValueError:
            body = {"status": False, "reason": response.text}

        if response.status_code >= 400:
            raise NotificationDeliveryError(f"HTTP {response.status_code}: {body}")
        if isinstance(body, dict) and body.get("status") is False:
            raise NotificationDeliveryError(str(body.get("reason") or body.get("detail") or "rejected"))

        logger.debug("WhatsApp message accepted by provider")
        return body if isinstance(body, dict) else {"data": body}
