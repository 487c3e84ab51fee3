import logging
from typing import Any, Optional

import httpx

from .config import settings

logger = logging.getLogger("adrelay")


class StoreClient:
    """
    Long-lived HTTP client for the workflow service's room history endpoints.
    Authenticates with the shared service token.
    """

    def __init__(
            self,
            base_url: str = settings.STORE_API_URL,
            service_token: str = settings.SERVICE_TOKEN,
            timeout: float = settings.STORE_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url
        self.service_token = service_token
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"X-Service-Token": self.service_token},
                timeout=self.timeout,
            )

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Store client is not started")
        return self._client

    async def fetch_history(self, room_id: str) -> list[dict[str, Any]]:
        response = await self.client.get(f"/chat/rooms/{room_id}/messages")
        response.raise_for_status()
        return response.json()

    async def persist_message(self, room_id: str, message: dict[str, Any]) -> dict[str, Any]:
        response = await self.client.post(f"/chat/rooms/{room_id}/messages", json=message)
        response.raise_for_status()
        return response.json()
