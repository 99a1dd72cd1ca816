"""Outbound calls to the admin portal that provisions and bills instances."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..config import settings
from ..exceptions import UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class UpstreamResponse:
    """A non-5xx response from the admin portal."""

    status_code: int
    body: Any

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


class AdminPortalClient:
    """
    Thin httpx wrapper for admin-portal requests made on behalf of a user.

    Every call carries the caller's bearer token and is bounded by
    ``settings.upstream_timeout_seconds``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.upstream_timeout_seconds
        self._transport = transport

    async def get(
        self,
        path: str,
        token: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> UpstreamResponse:
        """
        GET ``path`` on the admin portal.

        Returns:
            The upstream response for 2xx-4xx statuses

        Raises:
            UpstreamTimeout: If the deadline is exceeded
            UpstreamUnavailable: On connection failure or a 5xx response
        """
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        query = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=query, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Admin portal request timed out after {self.timeout}s: {url}")
            raise UpstreamTimeout() from e
        except httpx.HTTPError as e:
            logger.error(f"Admin portal request failed: {url}: {e}")
            raise UpstreamUnavailable() from e

        if response.status_code >= 500:
            logger.error(f"Admin portal returned {response.status_code} for {url}")
            raise UpstreamUnavailable()

        try:
            body = response.json()
        except ValueError:
            body = {"error": response.text[:200]}
        return UpstreamResponse(status_code=response.status_code, body=body)


async def fetch_billing_history(
    portal_url: str,
    instance_id: Optional[str],
    token: Optional[str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> UpstreamResponse:
    """Billing history of this instance as recorded by the admin portal."""
    client = AdminPortalClient(portal_url, transport=transport)
    return await client.get(
        "/api/instance-portal/billing-history",
        token=token,
        params={"instanceId": instance_id},
    )
