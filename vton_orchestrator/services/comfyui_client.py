"""ComfyUI-backed generation engine tier."""

import asyncio
import copy
import json
import random
import time
import uuid
from pathlib import Path
from typing import Any

import httpx
import structlog

from ..config import ComfyUIConfig
from ..errors import WorkerFailure
from .contracts import ArtifactStore

logger = structlog.get_logger(__name__)

# Placeholders substituted into the API-format workflow template.
PERSON_IMAGE = "{{person_image}}"
GARMENT_IMAGE = "{{garment_image}}"
PROMPT = "{{prompt}}"
SEED = "{{seed}}"


def fill_workflow(template: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
    """Replace placeholder strings anywhere in the workflow with ``values``."""
    def substitute(node):
        if isinstance(node, dict):
            return {key: substitute(value) for key, value in node.items()}
        if isinstance(node, list):
            return [substitute(value) for value in node]
        if isinstance(node, str) and node in values:
            return values[node]
        return node

    return substitute(copy.deepcopy(template))


class ComfyUIEngine:
    """Generation engine that runs a try-on workflow on a ComfyUI server.

    The workflow is an API-format JSON export with ``{{person_image}}``,
    ``{{garment_image}}``, ``{{prompt}}`` and ``{{seed}}`` placeholders. Each
    candidate is a separate queued prompt with its own random seed. All of a
    batch's prompts are queued up front and awaited together, so one call
    lasts at most ``config.timeout``.
    """

    def __init__(self, name: str, config: ComfyUIConfig, artifacts: ArtifactStore):
        self.name = name
        self.config = config
        self.artifacts = artifacts
        self._client: httpx.AsyncClient | None = None
        self._workflow: dict[str, Any] | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    @property
    def workflow(self) -> dict[str, Any]:
        if self._workflow is None:
            self._workflow = json.loads(Path(self.config.workflow_path).read_text())
        return self._workflow

    async def check_connection(self) -> bool:
        """Verify ComfyUI is running and accessible."""
        try:
            response = await self.client.get(f"{self.config.base_url}/system_stats")
            return response.status_code == 200
        except httpx.ConnectError:
            return False

    async def generate(self, context: dict[str, Any], count: int) -> list[bytes]:
        person = await self._upload(await self.artifacts.load(context["person_ref"]), "person")
        garment = await self._upload(await self.artifacts.load(context["garment_ref"]), "garment")

        # Queue the whole batch before polling; it shares one timeout window.
        prompt_ids = []
        for _ in range(count):
            workflow = fill_workflow(self.workflow, {
                PERSON_IMAGE: person,
                GARMENT_IMAGE: garment,
                PROMPT: context.get("prompt", ""),
                SEED: self._random_seed(),
            })
            prompt_ids.append(await self._queue_prompt(workflow))

        deadline = time.monotonic() + self.config.timeout
        images = await asyncio.gather(*(self._collect(prompt_id, deadline) for prompt_id in prompt_ids))

        logger.info("ComfyUI produced candidates", engine=self.name, count=len(images))
        return list(images)

    async def _collect(self, prompt_id: str, deadline: float) -> bytes:
        outputs = await self._wait_for_completion(prompt_id, deadline)
        if not outputs:
            raise WorkerFailure(f"comfyui-{self.name}", "no images generated")
        return await self._get_image(outputs[0])

    async def _upload(self, data: bytes, role: str) -> str:
        """Upload an input image; returns the name to reference in the workflow."""
        filename = f"tryon_{role}_{uuid.uuid4().hex[:8]}.png"
        response = await self.client.post(
            f"{self.config.base_url}/upload/image",
            files={"image": (filename, data, "image/png")},
            data={"overwrite": "true"},
        )
        response.raise_for_status()
        result = response.json()
        subfolder = result.get("subfolder")
        return f"{subfolder}/{result['name']}" if subfolder else result["name"]

    async def _queue_prompt(self, workflow: dict[str, Any]) -> str:
        payload = {
            "prompt": workflow,
            "client_id": uuid.uuid4().hex,
        }
        response = await self.client.post(f"{self.config.base_url}/prompt", json=payload)
        if response.status_code != 200:
            raise WorkerFailure(f"comfyui-{self.name}", f"rejected workflow: {response.text[:500]}")
        return response.json()["prompt_id"]

    async def _wait_for_completion(self, prompt_id: str, deadline: float) -> list[dict[str, Any]]:
        while time.monotonic() < deadline:
            response = await self.client.get(f"{self.config.base_url}/history/{prompt_id}")
            if response.status_code == 200:
                history = response.json()
                if prompt_id in history:
                    for node_output in history[prompt_id].get("outputs", {}).values():
                        if "images" in node_output:
                            return node_output["images"]
            await asyncio.sleep(self.config.poll_interval)

        raise WorkerFailure(f"comfyui-{self.name}", f"generation timed out after {self.config.timeout}s")

    async def _get_image(self, image_info: dict[str, Any]) -> bytes:
        params = {
            "filename": image_info["filename"],
            "subfolder": image_info.get("subfolder", ""),
            "type": image_info.get("type", "output"),
        }
        response = await self.client.get(f"{self.config.base_url}/view", params=params)
        response.raise_for_status()
        return response.content

    def _random_seed(self) -> int:
        return random.randint(0, 2**32 - 1)

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
