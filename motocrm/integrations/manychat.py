"""
ManyChat integration - REST API over /fb/*.

Auth: Bearer token via API key.
Responses are wrapped as {"status": "success"|"error", "data": ...}.
"""
import logging
from typing import Optional

import httpx

from motocrm.integrations.platform_base import ChatPlatformClient, PlatformError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.manychat.com"
TIMEOUT = 10.0

# ManyChat answers "not found" lookups with a 400 and a validation message
_NOT_FOUND_STATUSES = (400, 404)


class ManyChatClient(ChatPlatformClient):
    """ManyChat API integration."""

    name = "manychat"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request to the ManyChat API."""
        if not self.api_key:
            raise PlatformError("ManyChat API key not configured", transient=False)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=self._headers,
                    json=json,
                    params=params,
                )
        except httpx.HTTPError as e:
            raise PlatformError(f"ManyChat request {path} failed: {e}") from e

        if response.status_code >= 400:
            transient = response.status_code == 429 or response.status_code >= 500
            raise PlatformError(
                f"ManyChat {path} returned {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
                transient=transient,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PlatformError(f"ManyChat {path} returned invalid JSON") from e

        if data.get("status") != "success":
            raise PlatformError(
                f"ManyChat {path} error: {data.get('message') or data.get('error') or 'unknown'}",
                status_code=response.status_code,
                transient=False,
            )
        return data

    async def get_subscriber(self, subscriber_id: str) -> Optional[dict]:
        try:
            data = await self._request(
                "GET", "/fb/subscriber/getInfo", params={"subscriber_id": subscriber_id}
            )
        except PlatformError as e:
            if e.status_code in _NOT_FOUND_STATUSES:
                return None
            raise
        return data.get("data") or None

    async def find_subscriber_by_phone(self, phone: str) -> Optional[dict]:
        try:
            data = await self._request(
                "GET",
                "/fb/subscriber/findBySystemField",
                params={"field_name": "phone", "field_value": phone},
            )
        except PlatformError as e:
            if e.status_code in _NOT_FOUND_STATUSES:
                return None
            raise
        found = data.get("data")
        # findBySystemField may return a single subscriber or a list
        if isinstance(found, list):
            return found[0] if found else None
        return found or None

    async def add_tag(self, subscriber_id: str, tag: str) -> None:
        await self._request(
            "POST", "/fb/subscriber/addTag",
            json={"subscriber_id": subscriber_id, "tag_name": tag},
        )
        logger.info("ManyChat tag added: %s", tag, extra={"subscriber_id": subscriber_id})

    async def remove_tag(self, subscriber_id: str, tag: str) -> None:
        await self._request(
            "POST", "/fb/subscriber/removeTag",
            json={"subscriber_id": subscriber_id, "tag_name": tag},
        )
        logger.info("ManyChat tag removed: %s", tag, extra={"subscriber_id": subscriber_id})

    async def set_custom_field(self, subscriber_id: str, field_name: str, value) -> None:
        await self._request(
            "POST", "/fb/subscriber/setCustomFieldByName",
            json={"subscriber_id": subscriber_id, "field_name": field_name, "field_value": value},
        )

    async def update_subscriber(self, subscriber_id: str, fields: dict) -> None:
        payload = {"subscriber_id": subscriber_id}
        payload.update(fields)
        await self._request("POST", "/fb/subscriber/updateSubscriber", json=payload)

    async def send_text(self, subscriber_id: str, text: str) -> None:
        await self._request(
            "POST", "/fb/sending/sendContent",
            json={
                "subscriber_id": subscriber_id,
                "data": {
                    "version": "v2",
                    "content": {"messages": [{"type": "text", "text": text}]},
                },
            },
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:200]
    return str(body)[:200]
