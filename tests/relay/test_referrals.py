from __future__ import annotations

from dataclasses import replace

import pytest

from referral_relay.app.models import Contact
from referral_relay.app.services.crm import CrmHttpError, CrmResponseError, CrmTransportError
from referral_relay.app.services.rate_limiter import SlidingWindowRateLimiter
from referral_relay.app.services.referrals import (
    ReferralIncrementHandler,
    current_referral_count,
    outcome_for_upstream_status,
    parse_count,
)
from referral_relay.app.settings import load_settings


@pytest.fixture()
def handler(configured_env: None, fake_crm) -> ReferralIncrementHandler:
    return ReferralIncrementHandler(
        settings=load_settings(),
        crm_client=fake_crm,
        rate_limiter=SlidingWindowRateLimiter(),
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("5", 5),
        (" 7 ", 7),
        ("3.9", 3),
        ("12abc", 12),
        ("-2", -2),
        ("", 0),
        ("abc", 0),
        (None, 0),
        (9, 9),
        ("\u0665", 0),
        ("1\u0665", 1),
    ],
)
def test_parse_count(raw, expected: int) -> None:
    assert parse_count(raw) == expected


def test_first_matching_field_wins_on_key_or_id() -> None:
    contact = Contact.model_validate(
        {
            "customFields": [
                {"id": "other", "value": "100"},
                {"id": "referral_count", "value": "3"},
                {"key": "referral_count", "value": "8"},
            ]
        }
    )
    assert current_referral_count(contact) == 3


def test_field_match_is_case_sensitive() -> None:
    contact = Contact.model_validate(
        {"customFields": [{"key": "Referral_Count", "value": "4"}]}
    )
    assert current_referral_count(contact) == 0


def test_contact_without_referral_field_starts_at_one(handler, fake_crm) -> None:
    fake_crm.add_contact("abc", [])

    outcome = handler.handle("abc", "1.2.3.4")

    assert outcome.status_code == 200
    assert outcome.body["data"]["previousCount"] == 0
    assert outcome.body["data"]["newCount"] == 1


def test_existing_count_is_incremented_and_written_as_string(handler, fake_crm) -> None:
    fake_crm.add_contact("abc", [{"key": "referral_count", "value": "5"}])

    outcome = handler.handle("abc", "1.2.3.4")

    assert outcome.status_code == 200
    assert outcome.body["success"] is True
    assert outcome.body["message"] == "Referral count updated successfully"
    data = outcome.body["data"]
    assert data["contactId"] == "abc"
    assert (data["previousCount"], data["newCount"]) == (5, 6)
    assert isinstance(data["processingTimeMs"], int)
    location_id, contact_id, fields = fake_crm.updates[0]
    assert (location_id, contact_id) == ("loc_123", "abc")
    assert [(field.key, field.field_value) for field in fields] == [("referral_count", "6")]
    assert "error" not in outcome.body


def test_missing_configuration_fails_without_naming_variable(fake_crm) -> None:
    settings = replace(load_settings(), ghl_api_key="", ghl_location_id="")
    handler = ReferralIncrementHandler(
        settings=settings,
        crm_client=fake_crm,
        rate_limiter=SlidingWindowRateLimiter(),
    )

    outcome = handler.handle("abc", "ip")

    assert outcome.status_code == 500
    assert outcome.body == {"success": False, "error": "Server configuration error"}
    assert fake_crm.fetch_calls == []


def test_rate_limit_runs_before_validation(configured_env, fake_crm) -> None:
    handler = ReferralIncrementHandler(
        settings=load_settings(),
        crm_client=fake_crm,
        rate_limiter=SlidingWindowRateLimiter(max_requests=1),
    )
    assert handler.handle("", "ip").status_code == 400

    outcome = handler.handle("", "ip")

    assert outcome.status_code == 429
    assert outcome.body["retryAfter"] == "1 minute"
    assert outcome.body["success"] is False


def test_validation_failure_returns_details(handler, fake_crm) -> None:
    outcome = handler.handle("bad id", "ip")

    assert outcome.status_code == 400
    assert outcome.body["error"] == "Invalid request parameters"
    assert outcome.body["details"] == [
        {"msg": "contactId contains invalid characters", "param": "contactId", "location": "query"}
    ]
    assert fake_crm.fetch_calls == []


def test_absent_contact_is_not_found(handler) -> None:
    outcome = handler.handle("ghost", "ip")

    assert outcome.status_code == 404
    assert outcome.body == {"success": False, "error": "Contact not found"}


@pytest.mark.parametrize(
    ("upstream", "local_status", "message"),
    [
        (401, 500, "Authentication failed with CRM API"),
        (403, 500, "Access denied to CRM API"),
        (404, 404, "Contact not found"),
        (429, 429, "Rate limit exceeded, please try again later"),
        (500, 500, "Internal server error occurred while updating referral count"),
        (502, 500, "Internal server error occurred while updating referral count"),
        (None, 500, "Internal server error occurred while updating referral count"),
    ],
)
def test_upstream_status_table(upstream, local_status: int, message: str) -> None:
    outcome = outcome_for_upstream_status(upstream)
    assert (outcome.status_code, outcome.error) == (local_status, message)


def test_write_auth_failure_is_sanitized(handler, fake_crm) -> None:
    fake_crm.add_contact("abc", [{"key": "referral_count", "value": "1"}])
    fake_crm.update_error = CrmHttpError(401, "upstream said: invalid JWT token xyz")

    outcome = handler.handle("abc", "ip")

    assert outcome.status_code == 500
    assert outcome.body == {"success": False, "error": "Authentication failed with CRM API"}
    assert "xyz" not in str(outcome.body)


def test_read_rate_limited_upstream_maps_to_429(handler, fake_crm) -> None:
    fake_crm.fetch_error = CrmHttpError(429, "slow down")

    outcome = handler.handle("abc", "ip")

    assert outcome.status_code == 429
    assert "retryAfter" not in outcome.body


@pytest.mark.parametrize(
    "error",
    [CrmTransportError("connection refused"), CrmResponseError("not json")],
)
def test_failures_without_status_are_generic(handler, fake_crm, error) -> None:
    fake_crm.fetch_error = error

    outcome = handler.handle("abc", "ip")

    assert outcome.status_code == 500
    assert outcome.body["error"] == "Internal server error occurred while updating referral count"
    assert fake_crm.updates == []


def test_non_string_identifiers_do_not_break_lookup(handler, fake_crm) -> None:
    fake_crm.add_contact(
        "abc",
        [{"id": 12345, "value": "x"}, {"key": "referral_count", "value": "5"}],
    )

    outcome = handler.handle("abc", "ip")

    assert outcome.status_code == 200
    assert outcome.body["data"]["previousCount"] == 5
    assert outcome.body["data"]["newCount"] == 6
