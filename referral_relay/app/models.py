from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

REFERRAL_COUNT_FIELD = "referral_count"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CustomField(BaseModel):
    model_config = ConfigDict(extra="allow")

    # CRM identifiers are not always strings; compared as-is.
    id: Any = None
    key: Any = None
    value: Any = None


class Contact(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Any = None
    location_id: Any = Field(default=None, alias="locationId")
    custom_fields: list[CustomField] = Field(default_factory=list, alias="customFields")

    @field_validator("custom_fields", mode="before")
    @classmethod
    def drop_malformed_fields(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]


class CustomFieldUpdate(BaseModel):
    key: str
    field_value: str


class FieldError(BaseModel):
    msg: str
    param: str
    location: str = "query"


class ReferralUpdateData(BaseModel):
    contact_id: str = Field(serialization_alias="contactId")
    previous_count: int = Field(serialization_alias="previousCount")
    new_count: int = Field(serialization_alias="newCount")
    processing_time_ms: int = Field(serialization_alias="processingTimeMs")


class ReferralSuccessResponse(BaseModel):
    success: bool = True
    message: str
    data: ReferralUpdateData


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[list[FieldError]] = None
    retry_after: Optional[str] = Field(default=None, serialization_alias="retryAfter")


class EndpointNotFoundResponse(BaseModel):
    error: str = "Endpoint not found"
    available_endpoints: list[str] = Field(serialization_alias="availableEndpoints")


class HealthResponse(BaseModel):
    status: str = "healthy"
    timestamp: datetime
    uptime_seconds: float = Field(serialization_alias="uptimeSeconds")
    environment: str


def to_body(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
