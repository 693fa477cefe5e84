from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from referral_relay.app.models import FieldError

CONTACT_ID_PARAM = "contactId"
CONTACT_ID_MIN_LENGTH = 1
CONTACT_ID_MAX_LENGTH = 50
CONTACT_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


def validate_increment_params(raw_params: Mapping[str, Any]) -> list[FieldError]:
    value = raw_params.get(CONTACT_ID_PARAM)
    contact_id = value if isinstance(value, str) else ""

    errors: list[FieldError] = []
    if not contact_id:
        errors.append(FieldError(msg="contactId is required", param=CONTACT_ID_PARAM))
    if not CONTACT_ID_MIN_LENGTH <= len(contact_id) <= CONTACT_ID_MAX_LENGTH:
        errors.append(
            FieldError(
                msg=(
                    f"contactId must be between {CONTACT_ID_MIN_LENGTH} and "
                    f"{CONTACT_ID_MAX_LENGTH} characters"
                ),
                param=CONTACT_ID_PARAM,
            )
        )
    if not CONTACT_ID_PATTERN.fullmatch(contact_id):
        errors.append(
            FieldError(msg="contactId contains invalid characters", param=CONTACT_ID_PARAM)
        )
    return errors
