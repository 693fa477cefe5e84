from __future__ import annotations

from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from referral_relay.app.main import create_app
from referral_relay.app.models import Contact, CustomFieldUpdate
from referral_relay.app.services.crm import CrmError
from referral_relay.app.settings import load_settings


class FakeCrmClient:
    def __init__(self) -> None:
        self.contacts: dict[str, dict[str, Any]] = {}
        self.fetch_error: Optional[CrmError] = None
        self.update_error: Optional[CrmError] = None
        self.fetch_calls: list[tuple[str, str]] = []
        self.updates: list[tuple[str, str, list[CustomFieldUpdate]]] = []

    def add_contact(self, contact_id: str, custom_fields: list[dict[str, Any]]) -> None:
        self.contacts[contact_id] = {"id": contact_id, "customFields": custom_fields}

    def fetch_contact(self, location_id: str, contact_id: str) -> Optional[Contact]:
        self.fetch_calls.append((location_id, contact_id))
        if self.fetch_error is not None:
            raise self.fetch_error
        data = self.contacts.get(contact_id)
        if data is None:
            return None
        return Contact.model_validate(data)

    def update_contact(
        self,
        location_id: str,
        contact_id: str,
        fields: list[CustomFieldUpdate],
    ) -> dict[str, Any]:
        if self.update_error is not None:
            raise self.update_error
        self.updates.append((location_id, contact_id, fields))
        return {"contact": {"id": contact_id}}


@pytest.fixture()
def configured_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GHL_API_KEY", "test-api-key")
    monkeypatch.setenv("GHL_LOCATION_ID", "loc_123")
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.delenv("RATE_LIMIT_WINDOW_MS", raising=False)
    monkeypatch.delenv("RATE_LIMIT_MAX_REQUESTS", raising=False)


@pytest.fixture()
def fake_crm() -> FakeCrmClient:
    return FakeCrmClient()


@pytest.fixture()
def client(configured_env: None, fake_crm: FakeCrmClient) -> TestClient:
    app = create_app(settings=load_settings(), crm_client=fake_crm)
    return TestClient(app)
