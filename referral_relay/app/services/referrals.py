from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from referral_relay.app.models import (
    REFERRAL_COUNT_FIELD,
    Contact,
    CustomField,
    CustomFieldUpdate,
    ErrorResponse,
    ReferralSuccessResponse,
    ReferralUpdateData,
    to_body,
)
from referral_relay.app.observability import RelayMetrics
from referral_relay.app.services.crm import CrmError
from referral_relay.app.services.rate_limiter import SlidingWindowRateLimiter
from referral_relay.app.services.validation import CONTACT_ID_PARAM, validate_increment_params
from referral_relay.app.settings import Settings

logger = logging.getLogger("referral_relay.referrals")

_LEADING_INT = re.compile(r"\s*([+-]?[0-9]+)", re.ASCII)

CONTACT_NOT_FOUND = "Contact not found"
GENERIC_UPDATE_FAILURE = "Internal server error occurred while updating referral count"


class ContactGateway(Protocol):
    def fetch_contact(self, location_id: str, contact_id: str) -> Optional[Contact]: ...

    def update_contact(
        self,
        location_id: str,
        contact_id: str,
        fields: list[CustomFieldUpdate],
    ) -> dict[str, Any]: ...


@dataclass(frozen=True)
class UpstreamOutcome:
    status_code: int
    error: str
    label: str


UPSTREAM_STATUS_OUTCOMES: dict[int, UpstreamOutcome] = {
    401: UpstreamOutcome(500, "Authentication failed with CRM API", "upstream_auth_failed"),
    403: UpstreamOutcome(500, "Access denied to CRM API", "upstream_access_denied"),
    404: UpstreamOutcome(404, CONTACT_NOT_FOUND, "upstream_not_found"),
    429: UpstreamOutcome(
        429, "Rate limit exceeded, please try again later", "upstream_rate_limited"
    ),
}
DEFAULT_UPSTREAM_OUTCOME = UpstreamOutcome(500, GENERIC_UPDATE_FAILURE, "upstream_failed")


def outcome_for_upstream_status(status_code: Optional[int]) -> UpstreamOutcome:
    if status_code is None:
        return DEFAULT_UPSTREAM_OUTCOME
    return UPSTREAM_STATUS_OUTCOMES.get(status_code, DEFAULT_UPSTREAM_OUTCOME)


def find_referral_field(custom_fields: list[CustomField]) -> Optional[CustomField]:
    # First match wins when several fields carry the name as key or id.
    for field in custom_fields:
        if field.key == REFERRAL_COUNT_FIELD or field.id == REFERRAL_COUNT_FIELD:
            return field
    return None


def parse_count(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    match = _LEADING_INT.match(str(value))
    if not match:
        return 0
    return int(match.group(1))


def current_referral_count(contact: Contact) -> int:
    field = find_referral_field(contact.custom_fields)
    if field is None:
        return 0
    return parse_count(field.value)


@dataclass(frozen=True)
class ReferralOutcome:
    status_code: int
    body: dict[str, Any]


class ReferralIncrementHandler:
    def __init__(
        self,
        *,
        settings: Settings,
        crm_client: ContactGateway,
        rate_limiter: SlidingWindowRateLimiter,
        metrics: Optional[RelayMetrics] = None,
    ) -> None:
        self.settings = settings
        self.crm_client = crm_client
        self.rate_limiter = rate_limiter
        self.metrics = metrics or RelayMetrics()

    def _reject(self, label: str, status_code: int, error: str, **extra: Any) -> ReferralOutcome:
        self.metrics.observe_referral(label)
        return ReferralOutcome(status_code, to_body(ErrorResponse(error=error, **extra)))

    def handle(self, contact_id: Optional[str], client_key: str) -> ReferralOutcome:
        missing = self.settings.missing_required()
        if missing:
            logger.error("configuration_missing variables=%s", ",".join(missing))
            return self._reject("misconfigured", 500, "Server configuration error")

        start = time.perf_counter()
        if not self.rate_limiter.admit(client_key):
            logger.warning("rate_limited client=%s", client_key)
            return self._reject(
                "rate_limited",
                429,
                "Too many requests from this IP, please try again later.",
                retry_after="1 minute",
            )

        errors = validate_increment_params({CONTACT_ID_PARAM: contact_id})
        if errors:
            logger.info(
                "validation_failed contact_id=%r errors=%s",
                contact_id,
                [error.msg for error in errors],
            )
            return self._reject(
                "invalid_request", 400, "Invalid request parameters", details=errors
            )

        location_id = self.settings.ghl_location_id
        logger.info("referral_increment_started contact_id=%s", contact_id)
        try:
            contact = self.crm_client.fetch_contact(location_id, contact_id)
            if contact is None:
                logger.info("contact_not_found contact_id=%s", contact_id)
                return self._reject("contact_not_found", 404, CONTACT_NOT_FOUND)

            previous_count = current_referral_count(contact)
            new_count = previous_count + 1
            logger.info(
                "referral_count_computed contact_id=%s previous=%s new=%s",
                contact_id,
                previous_count,
                new_count,
            )
            self.crm_client.update_contact(
                location_id,
                contact_id,
                [CustomFieldUpdate(key=REFERRAL_COUNT_FIELD, field_value=str(new_count))],
            )
        except CrmError as exc:
            elapsed_ms = _elapsed_ms(start)
            logger.error(
                "referral_increment_failed contact_id=%s upstream_status=%s "
                "error=%s processing_time_ms=%s",
                contact_id,
                exc.status_code,
                exc,
                elapsed_ms,
            )
            outcome = outcome_for_upstream_status(exc.status_code)
            return self._reject(outcome.label, outcome.status_code, outcome.error)

        elapsed_ms = _elapsed_ms(start)
        logger.info(
            "referral_increment_succeeded contact_id=%s previous=%s new=%s processing_time_ms=%s",
            contact_id,
            previous_count,
            new_count,
            elapsed_ms,
        )
        response = ReferralSuccessResponse(
            message="Referral count updated successfully",
            data=ReferralUpdateData(
                contact_id=contact_id,
                previous_count=previous_count,
                new_count=new_count,
                processing_time_ms=elapsed_ms,
            ),
        )
        self.metrics.observe_referral("succeeded")
        return ReferralOutcome(200, to_body(response))


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
