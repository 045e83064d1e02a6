"""
Async client for the remote response API.

Wraps httpx.AsyncClient with bearer authentication, a per-call timeout and a
longer timeout for multipart uploads. Every failure surfaces as ApiError, so
callers only need one except clause.

Example:
    >>> async with ResponsesApiClient(settings.api) as client:
    ...     response = await client.create_response({"model": "gpt-4o-mini", "input": "hi"})
"""

from pathlib import Path
from typing import Any

import httpx

from responsekit.api.errors import ApiError
from responsekit.config.logging import get_logger
from responsekit.config.settings import ApiSettings

logger = get_logger(__name__)


class ResponsesApiClient:
    """
    Client for the responses, conversations, files and vector store endpoints.

    Args:
        settings: API configuration (base URL, key, timeouts)
        transport: Optional httpx transport, mainly for tests
    """

    def __init__(
        self,
        settings: ApiSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._settings.base_url

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.base_url,
                timeout=self._settings.timeout,
                headers={"Authorization": f"Bearer {self._settings.api_key}"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # ------------------------------------------------------------------
    # Generic request
    # ------------------------------------------------------------------

    async def request(self, method: str, endpoint: str, **options: Any) -> dict[str, Any]:
        """
        Send a request and decode its JSON body.

        Args:
            method: HTTP method
            endpoint: Path relative to the base URL (e.g. "vector_stores/vs_1")
            **options: Passed through to httpx (json=, params=, files=, timeout=...)

        Returns:
            Decoded JSON object (empty dict for empty bodies)

        Raises:
            ApiError: On transport failure, HTTP error status or undecodable body
        """
        client = self._ensure_client()
        logger.debug(f"{method} {endpoint}")

        try:
            response = await client.request(method, endpoint, **options)
        except httpx.HTTPError as e:
            logger.error(f"{method} {endpoint} failed: {e}")
            raise ApiError(f"Request to '{endpoint}' failed: {e}", cause=e) from e

        if response.is_error:
            error = ApiError.from_response(response)
            logger.warning(f"{method} {endpoint} returned {response.status_code}: {error}")
            raise error

        if not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as e:
            logger.error(f"{method} {endpoint} returned undecodable JSON")
            raise ApiError(
                f"Invalid JSON from '{endpoint}': {e}",
                status_code=response.status_code,
                code="invalid_json",
                body=response.text,
                cause=e,
            ) from e

        if not isinstance(payload, dict):
            raise ApiError(
                f"Unexpected payload from '{endpoint}'",
                status_code=response.status_code,
                code="invalid_json",
                body=response.text,
            )
        return payload

    # ------------------------------------------------------------------
    # Responses and conversations
    # ------------------------------------------------------------------

    async def create_response(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a response request and return the decoded response."""
        return await self.request("POST", "responses", json=payload)

    async def create_conversation(self, instructions: str | None = None) -> str:
        """
        Create a remote conversation context.

        The context is seeded with the system instructions (if any) and an
        opening user turn.

        Returns:
            The remote conversation id

        Raises:
            ApiError: If the call fails or the response carries no id
        """
        items: list[dict[str, Any]] = []
        if instructions:
            items.append({"type": "message", "role": "system", "content": instructions})
        items.append({"type": "message", "role": "user", "content": "Start conversation"})

        result = await self.request("POST", "conversations", json={"items": items})
        conversation_id = result.get("id")
        if not conversation_id:
            raise ApiError("Conversation API returned no id", body=str(result))

        logger.debug(f"Created conversation {conversation_id}")
        return conversation_id

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def upload_file(self, path: Path | str, purpose: str = "user_data") -> dict[str, Any]:
        """
        Upload a local file.

        Args:
            path: File to upload
            purpose: Upload purpose ("user_data" for attachments, "assistants"
                     for vector index documents)

        Returns:
            File object with at least an "id"

        Raises:
            ApiError: If the file is missing/empty or the upload fails
        """
        path = Path(path)
        if not path.is_file():
            raise ApiError(f"File not found: {path}")
        size = path.stat().st_size
        if size == 0:
            raise ApiError(f"Empty file: {path}")

        logger.debug(f"Uploading {path} ({size} bytes, purpose={purpose})")
        with path.open("rb") as handle:
            result = await self.request(
                "POST",
                "files",
                data={"purpose": purpose},
                files={"file": (path.name, handle)},
                timeout=self._settings.upload_timeout,
            )

        if not result.get("id"):
            raise ApiError(f"Upload of '{path.name}' returned no id", body=str(result))
        logger.debug(f"Uploaded {path.name} as {result['id']}")
        return result

    # ------------------------------------------------------------------
    # Vector stores
    # ------------------------------------------------------------------

    async def create_vector_store(self, name: str) -> dict[str, Any]:
        return await self.request("POST", "vector_stores", json={"name": name})

    async def get_vector_store(self, vector_store_id: str) -> dict[str, Any]:
        return await self.request("GET", f"vector_stores/{vector_store_id}")

    async def list_vector_store_files(self, vector_store_id: str) -> list[dict[str, Any]]:
        """Return every file attached to a vector store, following pagination."""
        files: list[dict[str, Any]] = []
        params: dict[str, Any] = {"limit": 100}

        while True:
            page = await self.request(
                "GET", f"vector_stores/{vector_store_id}/files", params=params
            )
            data = page.get("data") or []
            files.extend(data)
            if not page.get("has_more") or not data:
                break
            params = {"limit": 100, "after": page.get("last_id") or data[-1]["id"]}

        return files

    async def add_file_to_vector_store(self, vector_store_id: str, file_id: str) -> dict[str, Any]:
        return await self.request(
            "POST", f"vector_stores/{vector_store_id}/files", json={"file_id": file_id}
        )

    async def remove_file_from_vector_store(
        self, vector_store_id: str, file_id: str
    ) -> dict[str, Any]:
        return await self.request("DELETE", f"vector_stores/{vector_store_id}/files/{file_id}")
