"""Tests for artifact storage, HTTP adapters, dispatchers and the ComfyUI engine."""

import asyncio
import base64
import json
from pathlib import Path

import httpx
import pytest

from conftest import MemoryArtifacts, png_bytes
from vton_orchestrator.config import ComfyUIConfig
from vton_orchestrator.errors import InputError, WorkerFailure
from vton_orchestrator.imaging import composite_patch, crop_image, decode_base64_image, image_dimensions
from vton_orchestrator.models.geometry import AbsoluteBox
from vton_orchestrator.services.artifacts import LocalArtifactStore
from vton_orchestrator.services.comfyui_client import ComfyUIEngine, fill_workflow
from vton_orchestrator.services.dispatcher import HttpDispatcher, InProcessDispatcher
from vton_orchestrator.services.http_workers import (
    HttpDetectionWorker,
    HttpGenerationEngine,
    HttpSegmentationWorker,
)

WORKFLOW_PATH = Path(__file__).parent.parent / "workflows" / "tryon_api.json"


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def inputs():
    return MemoryArtifacts({"person.png": png_bytes(20, 10), "garment.png": png_bytes(5, 5)})


class TestImaging:
    def test_decode_data_url(self):
        raw = png_bytes(3, 3)
        assert decode_base64_image("data:image/png;base64," + base64.b64encode(raw).decode()) == raw

    def test_undecodable_image(self):
        with pytest.raises(InputError):
            image_dimensions(b"not an image")

    def test_crop(self):
        cropped = crop_image(png_bytes(20, 10), AbsoluteBox(x=2, y=1, width=6, height=4))
        assert image_dimensions(cropped).width == 6
        assert image_dimensions(cropped).height == 4

    def test_composite_keeps_source_size(self):
        output = composite_patch(png_bytes(20, 10), png_bytes(3, 3), AbsoluteBox(x=0, y=0, width=8, height=8))
        assert image_dimensions(output).width == 20
        assert image_dimensions(output).height == 10


class TestLocalArtifactStore:
    """Tests for file-backed artifacts."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        store = LocalArtifactStore(tmp_path)
        ref = await store.save("job1", "mask.png", b"bytes")

        assert ref == "job1/mask.png"
        assert (tmp_path / "job1" / "mask.png").read_bytes() == b"bytes"
        assert await store.load(ref) == b"bytes"

    @pytest.mark.asyncio
    async def test_absolute_path_and_data_url(self, tmp_path):
        image = tmp_path / "photo.png"
        image.write_bytes(b"abc")
        store = LocalArtifactStore(tmp_path / "artifacts")

        assert await store.load(str(image)) == b"abc"
        assert await store.load("data:image/png;base64," + base64.b64encode(b"xyz").decode()) == b"xyz"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ref", ["", "missing/file.png", "../outside.png"])
    async def test_bad_refs(self, tmp_path, ref):
        with pytest.raises(InputError):
            await LocalArtifactStore(tmp_path / "artifacts").load(ref)

    @pytest.mark.asyncio
    async def test_http_refs(self, tmp_path):
        def handler(request):
            if request.url.path == "/ok.png":
                return httpx.Response(200, content=b"remote")
            return httpx.Response(404)

        store = LocalArtifactStore(tmp_path)
        store._client = mock_client(handler)

        assert await store.load("https://cdn.example.com/ok.png") == b"remote"
        with pytest.raises(InputError, match="Cannot fetch"):
            await store.load("https://cdn.example.com/gone.png")
        await store.close()


class TestHttpWorkers:
    """Tests for the JSON worker adapters."""

    @pytest.mark.asyncio
    async def test_detection_sends_base64_image(self, inputs):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"normalized_box": [1, 2, 3, 4]})

        worker = HttpDetectionWorker("http://detector/detect", inputs)
        worker._client = mock_client(handler)

        assert await worker.detect("person.png") == {"normalized_box": [1, 2, 3, 4]}
        assert base64.b64decode(seen["image"]) == inputs.items["person.png"]

    @pytest.mark.asyncio
    async def test_segmentation_includes_reference(self, inputs):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"box_2d": [0, 0, 1, 1], "mask": "", "label": "x"})

        worker = HttpSegmentationWorker("http://segmenter/segment", inputs)
        worker._client = mock_client(handler)
        await worker.segment("person.png", "garment.png")

        assert set(seen) == {"image", "reference_image"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(503, text="overloaded"),
        httpx.Response(200, text="<html>"),
    ])
    async def test_bad_responses_are_worker_failures(self, inputs, response):
        worker = HttpDetectionWorker("http://detector/detect", inputs)
        worker._client = mock_client(lambda request: response)

        with pytest.raises(WorkerFailure, match="detector"):
            await worker.detect("person.png")

    @pytest.mark.asyncio
    async def test_connection_error_is_worker_failure(self, inputs):
        def handler(request):
            raise httpx.ConnectError("refused")

        worker = HttpSegmentationWorker("http://segmenter/segment", inputs)
        worker._client = mock_client(handler)
        with pytest.raises(WorkerFailure, match="request failed"):
            await worker.segment("person.png")

    @pytest.mark.asyncio
    async def test_generation_engine(self, inputs):
        seen = {}
        image = png_bytes(4, 4)

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"images": [base64.b64encode(image).decode()] * 5})

        engine = HttpGenerationEngine("standard", "http://engine/generate", inputs)
        engine._client = mock_client(handler)
        images = await engine.generate(
            {"person_ref": "person.png", "garment_ref": "garment.png", "prompt": "red dress"}, 3
        )

        assert images == [image] * 3
        assert seen["count"] == 3
        assert seen["prompt"] == "red dress"
        assert {"person_image", "garment_image"} <= set(seen)

    @pytest.mark.asyncio
    async def test_generation_without_images_fails(self, inputs):
        engine = HttpGenerationEngine("pro", "http://engine/generate", inputs)
        engine._client = mock_client(lambda request: httpx.Response(200, json={"images": []}))
        with pytest.raises(WorkerFailure, match="engine-pro"):
            await engine.generate({"person_ref": "person.png"}, 2)


class TestDispatchers:
    @pytest.mark.asyncio
    async def test_in_process_runs_chained_work(self):
        dispatcher = InProcessDispatcher()
        seen = []

        async def first(body):
            seen.append(("first", body["job_id"]))
            await dispatcher.dispatch("second", body)

        async def second(body):
            await asyncio.sleep(0)
            seen.append(("second", body["job_id"]))

        dispatcher.register("first", first)
        dispatcher.register("second", second)
        await dispatcher.dispatch("first", {"job_id": "j1"})
        await dispatcher.drain()

        assert seen == [("first", "j1"), ("second", "j1")]

    @pytest.mark.asyncio
    async def test_in_process_survives_crashing_worker(self):
        dispatcher = InProcessDispatcher()

        async def crash(body):
            raise RuntimeError("boom")

        dispatcher.register("crash", crash)
        await dispatcher.dispatch("crash", {"job_id": "j1"})
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_in_process_unknown_worker(self):
        with pytest.raises(KeyError):
            await InProcessDispatcher().dispatch("nobody", {})

    @pytest.mark.asyncio
    async def test_http_dispatch(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(202, json={"accepted": True})

        dispatcher = HttpDispatcher("http://orchestrator:8000/")
        dispatcher._client = mock_client(handler)
        await dispatcher.dispatch("generation", {"job_id": "j1"})
        await dispatcher.close()

        assert seen == [("/workers/generation", {"job_id": "j1"})]


class TestComfyUIEngine:
    """Tests for the ComfyUI workflow engine with a mocked server."""

    def test_fill_workflow(self):
        template = json.loads(WORKFLOW_PATH.read_text())
        filled = fill_workflow(template, {"{{prompt}}": "red dress", "{{seed}}": 7})

        assert filled["4"]["inputs"]["text"] == "red dress"
        assert filled["7"]["inputs"]["seed"] == 7
        assert filled["2"]["inputs"]["image"] == "{{person_image}}"
        assert template["4"]["inputs"]["text"] == "{{prompt}}"

    @pytest.fixture
    def server(self):
        """Fake ComfyUI: records queued workflows and serves one output image."""
        state = {"queued": [], "uploads": 0, "image": png_bytes(6, 6), "requests": []}

        def handler(request):
            path = request.url.path
            state["requests"].append(path)
            if path == "/upload/image":
                state["uploads"] += 1
                return httpx.Response(200, json={"name": f"upload{state['uploads']}.png", "subfolder": ""})
            if path == "/prompt":
                state["queued"].append(json.loads(request.content)["prompt"])
                return httpx.Response(200, json={"prompt_id": f"p{len(state['queued'])}"})
            if path.startswith("/history/"):
                prompt_id = path.rsplit("/", 1)[-1]
                return httpx.Response(200, json={
                    prompt_id: {"outputs": {"9": {"images": [{"filename": "out.png", "type": "output"}]}}}
                })
            if path == "/view":
                return httpx.Response(200, content=state["image"])
            if path == "/system_stats":
                return httpx.Response(200, json={})
            return httpx.Response(404)

        state["handler"] = handler
        return state

    @pytest.mark.asyncio
    async def test_generates_one_prompt_per_candidate(self, server, inputs):
        engine = ComfyUIEngine("pro", ComfyUIConfig(workflow_path=WORKFLOW_PATH, poll_interval=0), inputs)
        engine._client = mock_client(server["handler"])

        images = await engine.generate(
            {"person_ref": "person.png", "garment_ref": "garment.png", "prompt": "red dress"}, 2
        )

        assert images == [server["image"]] * 2
        assert server["uploads"] == 2
        assert len(server["queued"]) == 2
        workflow = server["queued"][0]
        assert workflow["2"]["inputs"]["image"] == "upload1.png"
        assert workflow["3"]["inputs"]["image"] == "upload2.png"
        assert workflow["4"]["inputs"]["text"] == "red dress"
        assert isinstance(workflow["7"]["inputs"]["seed"], int)
        assert await engine.check_connection()
        await engine.close()

    @pytest.mark.asyncio
    async def test_queues_whole_batch_before_polling(self, server, inputs):
        engine = ComfyUIEngine("pro", ComfyUIConfig(workflow_path=WORKFLOW_PATH, poll_interval=0), inputs)
        engine._client = mock_client(server["handler"])

        await engine.generate({"person_ref": "person.png", "garment_ref": "garment.png"}, 3)

        requests = server["requests"]
        first_poll = next(i for i, path in enumerate(requests) if path.startswith("/history/"))
        assert requests.count("/prompt") == 3
        assert all(i < first_poll for i, path in enumerate(requests) if path == "/prompt")
        polled = {path for path in requests if path.startswith("/history/")}
        assert polled == {"/history/p1", "/history/p2", "/history/p3"}

    @pytest.mark.asyncio
    async def test_batch_shares_one_timeout(self, inputs):
        queued = []

        def handler(request):
            if request.url.path == "/upload/image":
                return httpx.Response(200, json={"name": "in.png"})
            if request.url.path == "/prompt":
                queued.append(f"p{len(queued) + 1}")
                return httpx.Response(200, json={"prompt_id": queued[-1]})
            return httpx.Response(200, json={})

        config = ComfyUIConfig(workflow_path=WORKFLOW_PATH, poll_interval=0.01, timeout=0.2)
        engine = ComfyUIEngine("pro", config, inputs)
        engine._client = mock_client(handler)

        started = asyncio.get_running_loop().time()
        with pytest.raises(WorkerFailure, match="timed out"):
            await engine.generate({"person_ref": "person.png", "garment_ref": "garment.png"}, 3)

        assert queued == ["p1", "p2", "p3"]
        assert asyncio.get_running_loop().time() - started < 0.5

    @pytest.mark.asyncio
    async def test_times_out_waiting_for_history(self, inputs):
        def handler(request):
            if request.url.path == "/upload/image":
                return httpx.Response(200, json={"name": "in.png"})
            if request.url.path == "/prompt":
                return httpx.Response(200, json={"prompt_id": "p1"})
            return httpx.Response(200, json={})

        config = ComfyUIConfig(workflow_path=WORKFLOW_PATH, poll_interval=0, timeout=0.05)
        engine = ComfyUIEngine("pro", config, inputs)
        engine._client = mock_client(handler)

        with pytest.raises(WorkerFailure, match="timed out"):
            await engine.generate({"person_ref": "person.png", "garment_ref": "garment.png"}, 1)

    @pytest.mark.asyncio
    async def test_rejected_workflow(self, inputs):
        def handler(request):
            if request.url.path == "/upload/image":
                return httpx.Response(200, json={"name": "in.png"})
            return httpx.Response(400, text="invalid prompt")

        engine = ComfyUIEngine("pro", ComfyUIConfig(workflow_path=WORKFLOW_PATH), inputs)
        engine._client = mock_client(handler)

        with pytest.raises(WorkerFailure, match="rejected workflow"):
            await engine.generate({"person_ref": "person.png", "garment_ref": "garment.png"}, 1)
