from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib import parse, request
from urllib.error import HTTPError

from pydantic import ValidationError

from referral_relay.app.models import Contact, CustomFieldUpdate

logger = logging.getLogger("referral_relay.crm")


class CrmError(Exception):
    status_code: Optional[int] = None


class CrmHttpError(CrmError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class CrmTransportError(CrmError):
    pass


class CrmResponseError(CrmError):
    pass


class GoHighLevelClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        api_version: str,
        timeout: Optional[float] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout

    def _contact_path(self, location_id: str, contact_id: str) -> str:
        return (
            f"/locations/{parse.quote(location_id, safe='')}"
            f"/contacts/{parse.quote(contact_id, safe='')}"
        )

    def _request(
        self, method: str, path: str, payload: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = request.Request(
            f"{self.base_url}{path}",
            data=data,
            method=method,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "Version": self.api_version,
            },
        )
        kwargs: dict[str, Any] = {}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        try:
            with request.urlopen(req, **kwargs) as response:
                raw_body = response.read()
        except HTTPError as exc:
            upstream_body = exc.read().decode("utf-8", errors="replace")
            logger.error(
                "crm_request_failed method=%s path=%s status=%s reason=%s body=%s",
                method,
                path,
                exc.code,
                exc.reason,
                upstream_body[:500],
            )
            raise CrmHttpError(exc.code, f"crm responded with status {exc.code}") from exc
        except OSError as exc:  # URLError, timeouts, connection resets
            logger.error(
                "crm_request_unreachable method=%s path=%s error=%s",
                method,
                path,
                exc,
            )
            raise CrmTransportError("crm request failed without a response") from exc

        try:
            body = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CrmResponseError("crm response was not valid utf-8") from exc
        if not body.strip():
            return {}
        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as exc:
            raise CrmResponseError("crm response was not valid json") from exc
        if not isinstance(decoded, dict):
            raise CrmResponseError("crm response was not a json object")
        return decoded

    def fetch_contact(self, location_id: str, contact_id: str) -> Optional[Contact]:
        decoded = self._request("GET", self._contact_path(location_id, contact_id))
        contact_data = decoded.get("contact")
        if not isinstance(contact_data, dict):
            return None
        try:
            return Contact.model_validate(contact_data)
        except ValidationError as exc:
            raise CrmResponseError("crm contact payload was malformed") from exc

    def update_contact(
        self,
        location_id: str,
        contact_id: str,
        fields: list[CustomFieldUpdate],
    ) -> dict[str, Any]:
        payload = {"customFields": [field.model_dump() for field in fields]}
        return self._request("PUT", self._contact_path(location_id, contact_id), payload)
