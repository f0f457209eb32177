"""
Program manager FastAPI application.

Provides the REST API for managing programs: catalog CRUD, start/stop
(single and batch), reconciled status views, memory usage, captured output
and the per-program operation history.

Endpoints are plain functions so FastAPI runs each request on its own
worker thread; start and stop block for the launch grace period and the
stop escalation respectively.
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import Config
from .errors import ProgramManagerError
from .history import EventLog
from .logsink import LogSink
from .models import NO_PORT, Program
from .runner import ProcessRunner
from .store import CatalogStore
from .supervisor import Supervisor

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(config: Config):
    """Log to a rotating supervisor log file and the console."""
    log_formatter = logging.Formatter(LOG_FORMAT)

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        config.supervisor_log,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        handlers=[file_handler, console_handler],
        force=True,
    )


def build_supervisor(config: Config) -> Supervisor:
    """Wire one store, runner, sink and event log together."""
    store = CatalogStore(config.data_file)
    runner = ProcessRunner(
        start_grace=config.start_grace,
        term_timeout=config.stop_term_timeout,
        kill_timeout=config.stop_kill_timeout,
    )
    sink = LogSink(config.logs_dir)
    events = EventLog(config.history_db)
    return Supervisor(store, runner, sink, events)


# Pydantic models for API
class ProgramCreate(BaseModel):
    name: str = Field(..., description="Unique program name (2-50 characters)")
    command: str = Field(..., description="Command to run, split on whitespace")
    working_dir: Optional[str] = Field("", description="Absolute working directory")
    description: Optional[str] = Field("", description="Free text")
    port: Optional[int] = Field(0, description="Advertised port, 0 for none")
    auto_start: bool = Field(False, description="Reserved")
    restart_policy: Optional[str] = Field("", description="Reserved")


class ProgramUpdate(BaseModel):
    name: str
    command: str
    working_dir: Optional[str] = ""
    description: Optional[str] = ""
    port: Optional[int] = None


class BatchRequest(BaseModel):
    ids: list[str] = Field(default_factory=list, description="Program ids")


class ProgramResponse(BaseModel):
    id: str
    name: str
    command: str
    working_dir: str = ""
    description: str = ""
    port: int = NO_PORT
    status: str
    pid: int
    created_at: Optional[str]
    updated_at: Optional[str]
    auto_start: bool = False
    restart_policy: str = ""


def create_app(config: Config = None) -> FastAPI:
    """Build the application around a freshly wired supervisor."""
    config = config or Config()
    config.ensure_directories()
    supervisor = build_supervisor(config)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        logger.info(f"Starting program manager, catalog at {config.data_file}")
        programs = supervisor.reconcile_all()
        running = sum(1 for p in programs if p.is_running)
        logger.info(f"Loaded {len(programs)} programs, {running} running")

        yield

        logger.info("Shutting down program manager...")
        supervisor.shutdown()

    app = FastAPI(
        title="Program Manager",
        description="Local supervisor for user-defined programs",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.supervisor = supervisor
    app.state.started_at = started_at

    @app.exception_handler(ProgramManagerError)
    async def program_manager_error_handler(request: Request, exc: ProgramManagerError):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = [f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()]
        return JSONResponse(status_code=400, content={"detail": "; ".join(messages)})

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        message = f"HTTP {request.method} {request.url.path} - {response.status_code} ({duration_ms:.1f}ms)"
        if response.status_code >= 400:
            logger.warning(message)
        else:
            logger.info(message)
        return response

    app.include_router(router)
    return app


def get_supervisor(request: Request) -> Supervisor:
    return request.app.state.supervisor


router = APIRouter(prefix="/api")


@router.get("/health")
def health(request: Request):
    """Liveness of the API itself."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "uptime": round(time.monotonic() - request.app.state.started_at, 1),
    }


# Program CRUD
@router.get("/programs")
def list_programs(supervisor: Supervisor = Depends(get_supervisor)):
    """List all programs as recorded."""
    return [p.to_dict() for p in supervisor.get_all()]


@router.post("/programs", status_code=201, response_model=ProgramResponse)
def create_program(data: ProgramCreate, supervisor: Supervisor = Depends(get_supervisor)):
    """Register a new program. It starts out stopped."""
    program = Program(
        id="",
        name=data.name,
        command=data.command,
        working_dir=data.working_dir or "",
        description=data.description or "",
        port=data.port if data.port is not None else 0,
        auto_start=data.auto_start,
        restart_policy=data.restart_policy or "",
    )
    return supervisor.add(program).to_dict()


@router.get("/programs/memory")
def list_programs_memory(supervisor: Supervisor = Depends(get_supervisor)):
    """Programs with the resident memory of the running ones."""
    return supervisor.get_with_memory()


@router.post("/programs/refresh")
def refresh_programs(supervisor: Supervisor = Depends(get_supervisor)):
    """Reconcile every program against the OS."""
    return [p.to_dict() for p in supervisor.refresh_all()]


@router.post("/programs/start")
def batch_start(data: BatchRequest, supervisor: Supervisor = Depends(get_supervisor)):
    """Start several programs, reporting each outcome."""
    if not data.ids:
        raise HTTPException(status_code=400, detail="Program IDs are required")
    return supervisor.batch_start(data.ids)


@router.post("/programs/stop")
def batch_stop(data: BatchRequest, supervisor: Supervisor = Depends(get_supervisor)):
    """Stop several programs, reporting each outcome."""
    if not data.ids:
        raise HTTPException(status_code=400, detail="Program IDs are required")
    return supervisor.batch_stop(data.ids)


@router.get("/programs/{program_id}", response_model=ProgramResponse)
def get_program(program_id: str, supervisor: Supervisor = Depends(get_supervisor)):
    return supervisor.get(program_id).to_dict()


@router.put("/programs/{program_id}", response_model=ProgramResponse)
def update_program(program_id: str, data: ProgramUpdate, supervisor: Supervisor = Depends(get_supervisor)):
    """Replace the editable fields of a program."""
    program = supervisor.update(
        program_id,
        name=data.name,
        command=data.command,
        working_dir=data.working_dir or "",
        description=data.description or "",
        port=data.port,
    )
    return program.to_dict()


@router.delete("/programs/{program_id}", status_code=204)
def delete_program(program_id: str, supervisor: Supervisor = Depends(get_supervisor)):
    """Unregister a program (stops it first)."""
    supervisor.delete(program_id)
    return Response(status_code=204)


# Program control
@router.post("/programs/{program_id}/start", response_model=ProgramResponse)
def start_program(program_id: str, supervisor: Supervisor = Depends(get_supervisor)):
    return supervisor.start(program_id).to_dict()


@router.post("/programs/{program_id}/stop", response_model=ProgramResponse)
def stop_program(program_id: str, supervisor: Supervisor = Depends(get_supervisor)):
    return supervisor.stop(program_id, strict=True).to_dict()


@router.get("/programs/{program_id}/output")
def get_program_output(
    program_id: str,
    lines: int = Query(100, ge=1, le=5000),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Tail of the newest captured stdout/stderr."""
    return supervisor.output(program_id, lines)


# Status
@router.get("/status")
def get_all_status(supervisor: Supervisor = Depends(get_supervisor)):
    """All programs, reconciled against the OS."""
    return [p.to_dict() for p in supervisor.reconcile_all()]


@router.get("/status/running")
def get_running(supervisor: Supervisor = Depends(get_supervisor)):
    return [p.to_dict() for p in supervisor.get_running()]


@router.get("/status/stopped")
def get_stopped(supervisor: Supervisor = Depends(get_supervisor)):
    return [p.to_dict() for p in supervisor.get_stopped()]


@router.get("/status/{program_id}", response_model=ProgramResponse)
def get_program_status(program_id: str, supervisor: Supervisor = Depends(get_supervisor)):
    return supervisor.get_status(program_id).to_dict()


@router.get("/system/memory")
def get_system_memory(supervisor: Supervisor = Depends(get_supervisor)):
    return supervisor.system_memory()


@router.get("/processes/{pid}/info")
def get_process_info(pid: int, supervisor: Supervisor = Depends(get_supervisor)):
    """Liveness and memory of an arbitrary pid."""
    return supervisor.process_info(pid)


# Operation history
@router.get("/logs")
def get_all_logs(
    limit: int = Query(100, ge=1, le=1000),
    supervisor: Supervisor = Depends(get_supervisor),
):
    return supervisor.events.all(limit)


@router.get("/logs/{program_id}")
def get_program_logs(
    program_id: str,
    limit: int = Query(50, ge=1, le=1000),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Recent events for a program, newest first."""
    return supervisor.events.for_program(program_id, limit)


@router.delete("/logs/{program_id}")
def clear_program_logs(program_id: str, supervisor: Supervisor = Depends(get_supervisor)):
    deleted = supervisor.events.clear(program_id)
    return {"message": "Logs cleared successfully", "deleted": deleted}


@router.delete("/logs")
def clear_all_logs(supervisor: Supervisor = Depends(get_supervisor)):
    deleted = supervisor.events.clear_all()
    return {"message": "All logs cleared successfully", "deleted": deleted}
