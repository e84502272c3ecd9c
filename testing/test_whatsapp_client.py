import pytest

from src.errors import ConfigurationError, NotificationDeliveryError
from src.services.whatsapp_client import WhatsAppClient


class DummyResponse:
    def __init__(self, status_code=200, json_dict=None):
        self.status_code = status_code
        self._json = json_dict or {}
        self.text = ""

    def json(self):
        return self._json


def test_send_posts_target_message_and_country_code(monkeypatch):
    sent = {}

    def fake_post(url, headers=None, json=None, timeout=None):
        sent.update(url=url, headers=headers, json=json)
        return DummyResponse(200, {"status": True, "detail": "success! message in queue"})

    monkeypatch.setattr("src.services.whatsapp_client.requests.post", fake_post)
    WhatsAppClient("tok").send("08123456789", "Halo")

    assert sent["url"] == "https://api.fonnte.com/send"
    assert sent["headers"]["Authorization"] == "tok"
    assert sent["json"] == {"target": "08123456789", "message": "Halo", "countryCode": "62"}


def test_provider_rejection_raises(monkeypatch):
    monkeypatch.setattr(
        "src.services.whatsapp_client.requests.post",
        lambda *a, **k: DummyResponse(200, {"status": False, "reason": "invalid token"})
    )
    with pytest.raises(NotificationDeliveryError):
        WhatsAppClient("tok").send("0812", "Halo")


def test_missing_token():
    client = WhatsAppClient(None)
    assert not client.is_configured
    with pytest.raises(ConfigurationError):
        client.send("0812", "Halo")
