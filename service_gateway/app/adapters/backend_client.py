"""
imgproxy backend client for the gateway.

The gateway only ever needs two things from the backend: convert a locally
staged file, and report whether it is healthy. There are no retries: one
failed call fails the request.
"""

import base64
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from shared.errors import BackendError, BackendUnreachableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector


def local_reference(filename: str) -> str:
    """Address a file in the backend's local filesystem root."""
    return "local:///" + filename


@dataclass(frozen=True)
class TransformParams:
    """Processing options sent with every conversion."""

    quality: int = 85
    resize: str = "fit"
    width: int = 0
    height: int = 0
    output_format: str = "webp"

    @property
    def media_type(self) -> str:
        return f"image/{self.output_format}"

    def path_for(self, source_url: str) -> str:
        """Build the unsigned processing path for ``source_url``."""
        encoded = base64.urlsafe_b64encode(source_url.encode("utf-8")).rstrip(b"=").decode("ascii")
        return (
            f"/insecure/q:{self.quality}"
            f"/rs:{self.resize}:{self.width}:{self.height}"
            f"/f:{self.output_format}/{encoded}"
        )


DEFAULT_PARAMS = TransformParams()


class BackendImage:
    """A successful, still-open backend response."""

    def __init__(self, response: httpx.Response, media_type: str):
        self._response = response
        self.media_type = media_type

    @property
    def content_length(self) -> Optional[int]:
        """Declared body length, when it describes the bytes we relay."""
        encoding = self._response.headers.get("Content-Encoding", "identity").strip().lower()
        if encoding not in ("", "identity"):
            return None
        value = self._response.headers.get("Content-Length")
        if value is None or not value.isdigit():
            return None
        return int(value)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        async for chunk in self._response.aiter_bytes():
            yield chunk

    async def aclose(self) -> None:
        await self._response.aclose()


class BackendClient:
    """Pooled HTTP client for the image backend."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        *,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
        keepalive_expiry: float = 90.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.logger = get_logger("gateway.backend_client")
        self.metrics = metrics
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_keepalive_connections,
                keepalive_expiry=keepalive_expiry,
            ),
            # Images are already compressed
            headers={"Accept-Encoding": "identity"},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def transform(self, reference: str, params: TransformParams = DEFAULT_PARAMS) -> BackendImage:
        """Convert the image at ``reference``.

        The caller owns the returned BackendImage and must ``aclose`` it.
        """
        request = self._client.build_request("GET", params.path_for(reference))
        try:
            if self.metrics is not None:
                with self.metrics.time_operation("backend_request_duration_seconds", operation="transform"):
                    response = await self._client.send(request, stream=True)
            else:
                response = await self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            self.logger.error("Backend request failed", url=str(request.url), error=str(exc))
            raise BackendUnreachableError(details={"error": str(exc)}) from exc

        if response.status_code != 200:
            await response.aclose()
            self.logger.error(
                "Backend conversion failed",
                url=str(request.url),
                status_code=response.status_code,
            )
            raise BackendError(response.status_code)

        return BackendImage(response, params.media_type)

    async def health(self) -> bool:
        """Return True if the backend answers its health probe with 200."""
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError as exc:
            self.logger.warning("Backend health probe failed", error=str(exc))
            return False

        if response.status_code != 200:
            self.logger.warning("Backend reported unhealthy", status_code=response.status_code)
            return False
        return True
