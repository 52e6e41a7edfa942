"""
Mail and calendar data client.

Talks to the bridge service that holds users' mail/calendar credentials.
Every request is a POST to ``/api/decrypt`` keyed by
``(contact address, action, subAction, params)`` and answers
``{"success": bool, <payload>}``.
"""

from typing import Any

import httpx

from dailybrief.config import get_config, get_settings
from dailybrief.core.exceptions import UpstreamError
from dailybrief.core.logging import get_logger

logger = get_logger(__name__)

DECRYPT_PATH = "/api/decrypt"


class DataSourceClient:
    """Async client for the mail/calendar bridge.

    A transport failure or non-2xx status raises ``UpstreamError`` so callers
    can retry. A well-formed ``success: false`` answer is not retried: it
    yields an empty payload.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else get_settings().data_source_url).rstrip("/")
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else get_config().generation.request_timeout_seconds
        )
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def call(
        self,
        contact_address: str,
        action: str,
        sub_action: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """
        Perform one bridge request.

        Returns:
            The response body when ``success`` is true, otherwise None

        Raises:
            UpstreamError: On transport errors, timeouts or HTTP error status
        """
        if not self.is_configured():
            raise UpstreamError("Data source URL not configured", source="data_source")

        payload = {
            "email": contact_address,
            "action": action,
            "subAction": sub_action,
            "params": params or {},
        }
        log = logger.bind(action=action, sub_action=sub_action, contact=contact_address)

        try:
            response = await self._post(f"{self.base_url}{DECRYPT_PATH}", payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            log.bind(status=e.response.status_code).error("data_source_http_error")
            raise UpstreamError(
                f"{action}.{sub_action} returned HTTP {e.response.status_code}",
                source="data_source",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            log.bind(error=str(e)).error("data_source_request_failed")
            raise UpstreamError(f"{action}.{sub_action} failed: {e}", source="data_source") from e

        if isinstance(data, dict) and data.get("success"):
            return data

        log.bind(response=str(data)[:200]).warning("data_source_unsuccessful")
        return None

    async def get_recent_emails(
        self, contact_address: str, limit: int = 20, query: str = ""
    ) -> list[dict]:
        data = await self.call(
            contact_address, "gmail", "getRecentEmails", {"limit": limit, "query": query}
        )
        emails = (data or {}).get("emails") or []
        logger.bind(count=len(emails), query=query).debug("emails_retrieved")
        return emails

    async def get_todays_events(self, contact_address: str) -> list[dict]:
        data = await self.call(contact_address, "calendar", "getTodaysEvents")
        return (data or {}).get("events") or []

    async def get_upcoming_events(self, contact_address: str, limit: int = 10) -> list[dict]:
        data = await self.call(
            contact_address, "calendar", "getUpcomingEvents", {"maxResults": limit}
        )
        return (data or {}).get("events") or []

    async def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, json=payload)
