"""Eloqua REST client.

Thin async client over the Eloqua endpoints the bridge writes to:
custom object records, and the cloud action/decision/feeder instance
updates that push a record definition back to the platform.

The stored platform token is already the base64 "company\\user:session"
credential, so it is sent verbatim as a Basic authorization header.
"""

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_POD = "p03"


class PlatformError(Exception):
    """Raised when an Eloqua call fails."""

    def __init__(self, message: str, status_code: int = 0, body: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


def pod_for_site(site_id: Optional[str]) -> str:
    """Derive the Eloqua pod from a site id.

    Site ids of three or more digits carry the pod in their first digit;
    shorter ids are the pod number itself.

    >>> pod_for_site("3456789")
    'p03'
    >>> pod_for_site("12")
    'p12'
    """
    if not site_id:
        logger.warning("No site id provided, defaulting to %s", DEFAULT_POD)
        return DEFAULT_POD
    site = str(site_id).strip()
    digits = site[0] if len(site) >= 3 else site
    if not digits.isdigit():
        return DEFAULT_POD
    return f"p{int(digits):02d}"


class EloquaClient:
    """Eloqua client bound to one tenant."""

    CUSTOM_OBJECT_DATA = "/api/REST/2.0/data/customObject/{id}"
    CUSTOM_OBJECT_ASSET = "/api/REST/2.0/assets/customObject/{id}"
    ACTION_INSTANCE = "/api/cloud/1.0/actions/instances/{id}"
    DECISION_INSTANCE = "/api/cloud/1.0/decisions/instances/{id}"
    FEEDER_INSTANCE = "/api/cloud/1.0/content/instances/{id}"

    def __init__(
        self,
        token: str,
        site_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.site_id = site_id
        self.base_url = (base_url or f"https://secure.{pod_for_site(site_id)}.eloqua.com").rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict[str, Any]:
        headers = {
            "Authorization": f"Basic {self.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise PlatformError(f"Eloqua request failed: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = response.text[:500]
            logger.error(
                "Eloqua API error %s %s: %s",
                method, path, response.status_code,
            )
            raise PlatformError(
                f"Eloqua API Error ({response.status_code})",
                status_code=response.status_code,
                body=body,
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}

    async def create_custom_object_record(
        self,
        custom_object_id: str,
        field_values: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Create a custom object record.

        Args:
            custom_object_id: Target custom object.
            field_values: List of {"id": field_id, "value": value}.
        """
        path = self.CUSTOM_OBJECT_DATA.format(id=custom_object_id)
        data = await self._request("POST", path, {"fieldValues": field_values})
        logger.debug("Custom object record created in %s: %s", custom_object_id, data.get("id"))
        return data

    async def get_custom_object(self, custom_object_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", self.CUSTOM_OBJECT_ASSET.format(id=custom_object_id)
        )

    async def update_action_instance(self, instance_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Push a record definition for an action instance.

        Args:
            instance_id: Cloud action instance id.
            payload: {"recordDefinition": {...}, "requiresConfiguration": bool}
        """
        return await self._request("PUT", self.ACTION_INSTANCE.format(id=instance_id), payload)

    async def update_decision_instance(self, instance_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", self.DECISION_INSTANCE.format(id=instance_id), payload)

    async def update_feeder_instance(self, instance_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", self.FEEDER_INSTANCE.format(id=instance_id), payload)
