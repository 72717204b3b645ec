"""FastAPI server for the try-on job orchestrator.

Clients submit garment-fit jobs with:
- person_photo: Base64 data URL (or an existing artifact ref / URL) of the person
- garment_photo: Base64 data URL (or ref / URL) of the garment
- description: Optional product description used for the generation prompt

Stage workers are invoked through ``POST /workers/{worker}``; this is where the
HTTP dispatcher delivers re-dispatches when the service runs with
``VTON_DISPATCH_MODE=http``.
"""

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from vton_orchestrator.config import load_config
from vton_orchestrator.errors import InputError, JobNotFound
from vton_orchestrator.imaging import decode_base64_image
from vton_orchestrator.log import configure_logging
from vton_orchestrator.models.geometry import CropMode
from vton_orchestrator.models.job import Job
from vton_orchestrator.pipeline import AdvanceResult, Orchestrator, WatchdogReport, build_orchestrator
from vton_orchestrator.services.comfyui_client import ComfyUIEngine

logger = structlog.get_logger(__name__)


class GarmentFitRequest(BaseModel):
    """Request body for a garment-fit job."""
    person_photo: str
    garment_photo: str
    description: str | None = None
    person_description: str | None = None
    crop_mode: CropMode | None = None
    expansion_percent: float | None = None


class JobCreated(BaseModel):
    job_id: str
    status: str


class WorkerRequest(BaseModel):
    job_id: str


class WorkerAccepted(BaseModel):
    accepted: bool
    worker: str
    job_id: str


class ResumeRequest(BaseModel):
    status: str | None = None


# Initialize orchestrator (will be done on first request)
_orchestrator: Orchestrator | None = None


def get_orchestrator() -> Orchestrator:
    """Get or create the orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        config = load_config()  # Loads from .env automatically via pydantic-settings
        configure_logging(config.log_level, config.log_json)
        _orchestrator = build_orchestrator(config)
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.close()
        _orchestrator = None


app = FastAPI(
    title="VTON Orchestrator API",
    description="Job orchestration for consensus-based virtual try-on",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def store_input(orchestrator: Orchestrator, upload_id: str, name: str, value: str) -> str:
    """Persist a base64 data URL as an artifact; refs and URLs pass through."""
    if not value.startswith("data:"):
        return value
    data = decode_base64_image(value)
    return await orchestrator.artifacts.save(upload_id, name, data)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "VTON Orchestrator API", "version": "0.1.0"}


@app.get("/health")
async def health():
    """Detailed health check."""
    orchestrator = get_orchestrator()
    engines = {}
    for tier, engine in orchestrator.generation.engines.items():
        if isinstance(engine, ComfyUIEngine):
            engines[tier] = "connected" if await engine.check_connection() else "disconnected"
        else:
            engines[tier] = "configured"

    degraded = any(state == "disconnected" for state in engines.values())
    return {
        "status": "degraded" if degraded else "ok",
        "store": orchestrator.config.store_backend,
        "dispatch": orchestrator.config.dispatch_mode,
        "engines": engines,
    }


@app.post("/jobs/garment-fit", response_model=JobCreated, status_code=201)
async def create_garment_fit(request: GarmentFitRequest):
    """Create a garment-fit job and start it. Returns as soon as the job is persisted."""
    orchestrator = get_orchestrator()
    upload_id = f"upload-{uuid.uuid4().hex}"
    try:
        payload = {
            "person_image": await store_input(orchestrator, upload_id, "person.png", request.person_photo),
            "garment_image": await store_input(orchestrator, upload_id, "garment.png", request.garment_photo),
            "garment_description": request.description or "",
            "person_description": request.person_description or "person",
        }
        if request.crop_mode is not None:
            payload["crop_mode"] = request.crop_mode.value
        if request.expansion_percent is not None:
            payload["expansion_percent"] = request.expansion_percent

        job_id = await orchestrator.submit_garment_fit(payload)
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    job = await orchestrator.get_job(job_id)
    return JobCreated(job_id=job_id, status=job.status)


@app.get("/jobs/{job_id}", response_model=Job)
async def get_job(job_id: str):
    try:
        return await get_orchestrator().get_job(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/workers/{worker}", response_model=WorkerAccepted, status_code=202)
async def invoke_worker(worker: str, request: WorkerRequest, background_tasks: BackgroundTasks):
    """Receive a dispatched invocation and run the stage after responding."""
    orchestrator = get_orchestrator()
    if worker not in orchestrator.workers:
        raise HTTPException(status_code=404, detail=f"Unknown worker '{worker}'")
    if await orchestrator.store.get(request.job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job {request.job_id} not found")

    background_tasks.add_task(run_worker, orchestrator, worker, request.job_id)
    return WorkerAccepted(accepted=True, worker=worker, job_id=request.job_id)


async def run_worker(orchestrator: Orchestrator, worker: str, job_id: str) -> None:
    try:
        await orchestrator.advance(worker, job_id)
    except InputError as e:
        logger.warning("Worker invocation rejected", worker=worker, job_id=job_id, error=str(e))


@app.post("/jobs/{job_id}/resume", response_model=AdvanceResult)
async def resume_job(job_id: str, request: ResumeRequest | None = None):
    """Manually resume a failed job at the stage where it failed (or ``status``)."""
    try:
        return await get_orchestrator().resume(job_id, request.status if request else None)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/watchdog/run", response_model=WatchdogReport)
async def run_watchdog():
    """Run one watchdog sweep over stalled jobs."""
    return await get_orchestrator().run_watchdog()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
