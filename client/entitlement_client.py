"""
HTTP client for the entitlement endpoint.
"""
import logging
from typing import Optional

import httpx

from config.settings import settings
from models.entitlement import EntitlementSnapshot
from services.errors import AuthenticationError, ProviderUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class EntitlementClient:
    """
    Fetches entitlement snapshots from the API with a bearer credential.

    Raises AuthenticationError on 401 and ProviderUnavailable for any other
    transport or server failure.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.entitlement_api_url).rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def fetch(self, token: str) -> EntitlementSnapshot:
        try:
            response = await self._http.get(
                f"{self.base_url}/api/entitlement",
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Entitlement request failed: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError("Entitlement request rejected: invalid credential")
        if response.status_code >= 400:
            raise ProviderUnavailable(f"Entitlement request failed with HTTP {response.status_code}")

        try:
            return EntitlementSnapshot.from_response(response.json())
        except (ValueError, TypeError, AttributeError) as e:
            # Unparseable body or fields; treated like an unreachable service
            raise ProviderUnavailable(f"Entitlement response malformed: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
