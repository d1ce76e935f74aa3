"""HttpSaveProvider — upload images to an HTTP(S) endpoint with httpx."""

import logging
from typing import Any

import httpx

from imgflow.core.artifacts import ImageArtifact, SaveResult
from imgflow.core.errors import NetworkError, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class HttpSaveProvider:
    """Send the image bytes as the request body (``PUT`` by default).

    Registered under ``https`` and ``http``; a destination
    ``https://bucket.example.com/out.png`` arrives here as path
    ``bucket.example.com/out.png`` with ``scheme="https"``.
    """

    name = "http"

    def __init__(
        self,
        *,
        method: str = "PUT",
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.method = method.upper()
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def save(self, artifact: ImageArtifact, path: str, **options: Any) -> SaveResult:
        scheme = options.get("scheme", "https")
        url = f"{scheme}://{path}"
        headers = {"Content-Type": artifact.mime, **self.headers}
        try:
            response = await self._get_client().request(self.method, url, content=artifact.bytes, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ProviderError(
                f"Upload to {url} failed with HTTP {status}",
                code="UPLOAD_FAILED",
                retryable=status == 429 or status >= 500,
                provider=self.name,
                operation="save",
                cause=e,
            ) from e
        except httpx.RequestError as e:
            raise NetworkError(f"Upload to {url} failed: {e}", provider=self.name, operation="save", cause=e) from e

        logger.info("Uploaded %d bytes to %s", artifact.size, url)
        return SaveResult(
            provider=self.name,
            location=response.headers.get("location", url),
            size=artifact.size,
            mime=artifact.mime,
            metadata={"status": response.status_code},
        )
