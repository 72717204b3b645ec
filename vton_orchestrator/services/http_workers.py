"""JSON-over-HTTP adapters for detection, segmentation and generation workers.

Images are resolved through the artifact store and sent base64-encoded, so
remote workers never need access to the orchestrator's storage.
"""

import base64
from typing import Any

import httpx
import structlog

from ..errors import WorkerFailure
from ..imaging import decode_base64_image
from .contracts import ArtifactStore

logger = structlog.get_logger(__name__)


class _JsonWorkerClient:
    """Shared plumbing: lazy client, image encoding, error mapping."""

    worker_name = "worker"

    def __init__(self, url: str, artifacts: ArtifactStore, timeout: float = 120.0):
        self.url = url
        self.artifacts = artifacts
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _encode(self, ref: str) -> str:
        return base64.b64encode(await self.artifacts.load(ref)).decode("ascii")

    async def _post(self, payload: dict[str, Any]) -> Any:
        try:
            response = await self.client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise WorkerFailure(self.worker_name, f"request failed: {e}") from e

        if response.status_code != 200:
            raise WorkerFailure(
                self.worker_name,
                f"HTTP {response.status_code}: {response.text[:500]}",
            )
        try:
            return response.json()
        except ValueError as e:
            raise WorkerFailure(self.worker_name, "response is not JSON") from e

    async def close(self):
        if self._client:
            await self._client.aclose()


class HttpDetectionWorker(_JsonWorkerClient):
    worker_name = "detector"

    async def detect(self, image_ref: str) -> dict[str, Any]:
        return await self._post({"image": await self._encode(image_ref)})


class HttpSegmentationWorker(_JsonWorkerClient):
    worker_name = "segmenter"

    async def segment(self, image_ref: str, reference_ref: str | None = None) -> dict[str, Any]:
        payload = {"image": await self._encode(image_ref)}
        if reference_ref:
            payload["reference_image"] = await self._encode(reference_ref)
        return await self._post(payload)


class HttpGenerationEngine(_JsonWorkerClient):
    """One engine tier behind an HTTP endpoint.

    Context keys ending in ``_ref`` are resolved and sent as ``<name>_image``;
    everything else is passed through. The endpoint answers with
    ``{"images": [<base64>, ...]}``.
    """

    def __init__(self, name: str, url: str, artifacts: ArtifactStore, timeout: float = 300.0):
        super().__init__(url, artifacts, timeout)
        self.name = name
        self.worker_name = f"engine-{name}"

    async def generate(self, context: dict[str, Any], count: int) -> list[bytes]:
        payload: dict[str, Any] = {"count": count}
        for key, value in context.items():
            if key.endswith("_ref") and isinstance(value, str):
                payload[f"{key[:-4]}_image"] = await self._encode(value)
            else:
                payload[key] = value

        data = await self._post(payload)
        images = data.get("images") if isinstance(data, dict) else None
        if not images:
            raise WorkerFailure(self.worker_name, "no images returned")

        logger.info("Engine produced candidates", engine=self.name, requested=count, produced=len(images))
        return [decode_base64_image(image) for image in images[:count]]
