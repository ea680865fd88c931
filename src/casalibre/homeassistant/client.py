"""
Minimal Home Assistant REST client.

Uses the documented REST API (https://developers.home-assistant.io/docs/api/rest/)
with a long-lived access token:

- ``GET  /api/states``                       - all entity states
- ``GET  /api/states/<entity_id>``           - one entity state
- ``POST /api/services/<domain>/<service>``  - call a service

Each call opens its own ``httpx.AsyncClient``; pass *transport* to route
requests elsewhere (``httpx.MockTransport`` in tests).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class HomeAssistantError(Exception):
    """Raised when Home Assistant cannot be reached or answers with an error.

    Attributes:
        status_code: HTTP status code, or ``None`` for transport failures.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HomeAssistantClient:
    """Async client for the Home Assistant REST API.

    Attributes:
        base_url: Home Assistant URL, e.g. ``http://homeassistant.local:8123``.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
        )

    async def _request(
        self, method: str, path: str, what: str, json: Any = None
    ) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.error("Home Assistant timed out: %s", what)
            raise HomeAssistantError(f"Failed to {what}: request timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("Home Assistant unreachable while trying to %s: %s", what, exc)
            raise HomeAssistantError(f"Failed to {what}: {exc}") from exc

        if response.is_error:
            raise HomeAssistantError(
                f"Failed to {what}: {response.status_code} "
                f"{response.reason_phrase} - {response.text}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_entity_state(self, entity_id: str) -> dict[str, Any]:
        """Return the state object for *entity_id*."""
        logger.debug("Fetching state for %s", entity_id)
        return await self._request(
            "GET", f"/api/states/{entity_id}", f"get state for {entity_id}"
        )

    async def call_service(
        self,
        domain: str,
        service: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call ``<domain>.<service>`` with *data*.

        Returns:
            ``{"success": True, "result": <states changed by the call>}``.
        """
        logger.info("Calling service %s.%s with %s", domain, service, data)
        result = await self._request(
            "POST",
            f"/api/services/{domain}/{service}",
            f"call service {domain}.{service}",
            json=data or {},
        )
        return {"success": True, "result": result}

    async def list_all_entities(self) -> list[dict[str, Any]]:
        """Return every entity state known to Home Assistant."""
        states = await self._request("GET", "/api/states", "list entities")
        return list(states or [])
