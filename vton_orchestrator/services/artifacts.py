"""Artifact storage: job inputs and stage outputs as opaque string refs."""

from pathlib import Path

import httpx
import structlog

from ..errors import InputError
from ..imaging import decode_base64_image

logger = structlog.get_logger(__name__)


class LocalArtifactStore:
    """Keeps artifacts under ``root/<job_id>/<name>``.

    Refs returned by ``save`` are paths relative to ``root``. ``load`` also
    accepts ``http(s)://`` URLs, ``data:`` URLs and absolute paths, so job
    payloads can point at images wherever they already live.
    """

    def __init__(self, root: Path, timeout: float = 60.0):
        self.root = Path(root)
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    def path_for(self, ref: str) -> Path:
        path = Path(ref)
        if not path.is_absolute():
            path = self.root / path
        resolved = path.resolve()
        if not Path(ref).is_absolute() and self.root.resolve() not in resolved.parents:
            raise InputError(f"Artifact ref escapes the artifact root: {ref}")
        return resolved

    async def load(self, ref: str) -> bytes:
        if not ref:
            raise InputError("Empty artifact ref")
        if ref.startswith(("http://", "https://")):
            try:
                response = await self.client.get(ref)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise InputError(f"Cannot fetch {ref}: {e}") from e
            return response.content
        if ref.startswith("data:"):
            return decode_base64_image(ref)

        path = self.path_for(ref)
        if not path.is_file():
            raise InputError(f"Artifact not found: {ref}")
        return path.read_bytes()

    async def save(self, job_id: str, name: str, data: bytes) -> str:
        directory = self.root / job_id
        directory.mkdir(parents=True, exist_ok=True)
        (directory / name).write_bytes(data)
        ref = f"{job_id}/{name}"
        logger.debug("Artifact saved", job_id=job_id, ref=ref, size=len(data))
        return ref

    async def close(self):
        if self._client:
            await self._client.aclose()
