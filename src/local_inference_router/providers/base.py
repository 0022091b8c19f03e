"""Base interface for local inference backends."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

import httpx

logger = logging.getLogger(__name__)


class BackendError(RuntimeError):
    """The backend was unreachable or answered with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InferenceBackend(ABC):
    """Abstract base class for local inference server integrations.

    ``transport`` lets callers (and tests) substitute the HTTP transport,
    e.g. ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.api_key = api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @abstractmethod
    async def list_loaded_models(self, timeout: float | None = None) -> list[dict[str, Any]]:
        """Return the raw descriptors of models resident in backend memory."""
        ...

    @abstractmethod
    def chat_stream(self, request_body: dict[str, Any]) -> AsyncIterator[bytes]:
        """Stream a chat completion as raw response bytes.

        Raises ``BackendError`` before yielding anything if the backend
        rejects the request.
        """
        ...

    @abstractmethod
    async def generate(
        self, request_body: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        """Run a non-streaming generate call."""
        ...

    async def health_check(self) -> bool:
        """Check if the backend is reachable."""
        try:
            await self.list_loaded_models(timeout=5.0)
            return True
        except BackendError:
            return False

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
