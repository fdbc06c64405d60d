from contextlib import asynccontextmanager
from typing import Dict

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from media_jobs import telemetry
from media_jobs.exceptions import ConflictError, InvalidRequestError
from media_jobs.log import configure_logging
from media_jobs.models import Settings, SystemConfig
from media_jobs.queue.models import JobCommandDto, JobCreateDto, JobStatusDto
from media_jobs.runtime import JobsRuntime


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    runtime = JobsRuntime(settings)
    app.state.runtime = runtime
    await runtime.start()
    yield
    await runtime.stop()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_runtime(request: Request) -> JobsRuntime:
    return request.app.state.runtime


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# --- API ENDPOINTS ---


@app.get("/health")
async def health_check(runtime: JobsRuntime = Depends(get_runtime)):
    return {
        "status": "ok",
        "worker": runtime.settings.worker_role.value,
        "nightlyLeader": runtime.nightly.holds_lock,
    }


@app.get("/metrics")
async def metrics():
    body, content_type = telemetry.render_latest()
    return Response(content=body, media_type=content_type)


# --- CONFIG ENDPOINTS ---


@app.get("/config")
async def get_config(runtime: JobsRuntime = Depends(get_runtime)):
    return runtime.config_store.get().model_dump()


@app.put("/config")
async def update_config(config: SystemConfig, runtime: JobsRuntime = Depends(get_runtime)):
    """Replace the system config and notify every listener."""
    updated = await runtime.update_config(config)
    return updated.model_dump()


# --- JOB ENDPOINTS ---


@app.get("/jobs", response_model=Dict[str, JobStatusDto])
async def get_all_jobs_status(runtime: JobsRuntime = Depends(get_runtime)):
    return await runtime.jobs.get_all_jobs_status()


@app.get("/jobs/{queue_name}", response_model=JobStatusDto)
async def get_job_status(queue_name: str, runtime: JobsRuntime = Depends(get_runtime)):
    try:
        return await runtime.jobs.get_job_status(queue_name)
    except InvalidRequestError as e:
        raise _http_error(e)


@app.put("/jobs/{queue_name}", response_model=JobStatusDto)
async def send_job_command(
    queue_name: str, dto: JobCommandDto, runtime: JobsRuntime = Depends(get_runtime)
):
    try:
        return await runtime.jobs.handle_command(queue_name, dto)
    except (ConflictError, InvalidRequestError) as e:
        logger.debug(f"Rejected {dto.command.value} on {queue_name}: {e}")
        raise _http_error(e)


@app.post("/jobs", status_code=status.HTTP_204_NO_CONTENT)
async def create_job(dto: JobCreateDto, runtime: JobsRuntime = Depends(get_runtime)):
    try:
        await runtime.jobs.create(dto)
    except InvalidRequestError as e:
        raise _http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
