"""
Infra Reconciler - FastAPI Application

Main entry point for the reconciliation API.
Provides endpoints for planning and applying declarations, monitoring
runs and inspecting remembered state.
"""

from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse

from infra_reconciler.adapters import AdapterError, AdapterFactory, AdapterRegistry
from infra_reconciler.config import Settings, get_settings
from infra_reconciler.engine import (
    DeclarationParser,
    GraphError,
    ParserError,
    PlanExecutor,
    Reconciler,
)
from infra_reconciler.engine.graph import CycleError
from infra_reconciler.engine.reconciler import generate_run_id
from infra_reconciler.models import (
    ArtifactsResponse,
    Plan,
    ResourceIdentity,
    RunCreateRequest,
    RunCreateResponse,
    RunStatus,
    RunStatusResponse,
    StateRecord,
    StateResponse,
)
from infra_reconciler.state import StateStoreError, create_state_store
from infra_reconciler.storage import StorageManager

logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION SETUP
# =============================================================================

def build_reconciler(settings: Settings) -> Reconciler:
    """
    Wire adapters, state store and storage from settings.

    The adapter only persists its objects when the state store does,
    so remembered state and remote objects survive a restart together.
    """
    adapter_options: Dict[str, Any] = {
        "simulate_latency": settings.adapter.simulate_latency,
        "failure_rate": settings.adapter.failure_rate,
    }
    if settings.storage.state_backend == "file" and settings.adapter.state_path:
        adapter_options["state_path"] = str(settings.adapter.state_path)
    adapter = AdapterFactory.create(settings.adapter.backend, **adapter_options)
    return Reconciler(
        registry=AdapterRegistry(default=adapter),
        state_store=create_state_store(
            settings.storage.state_backend, str(settings.storage.state_path)
        ),
        storage=StorageManager(str(settings.storage.artifacts_path)),
        max_workers=settings.executor.max_workers,
        retry_policy=settings.executor.retry,
    )


_reconciler: Optional[Reconciler] = None


def get_reconciler() -> Reconciler:
    """Get the application-wide reconciler."""
    global _reconciler
    if _reconciler is None:
        _reconciler = build_reconciler(get_settings())
    return _reconciler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logging.basicConfig(
        level=get_settings().server.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Infra Reconciler starting...")
    yield
    logger.info("Infra Reconciler shutting down...")


app = FastAPI(
    title="Infra Reconciler",
    description="""
    ## Declarative Resource Reconciliation Engine

    This API provides endpoints for:
    - **Planning and applying** YAML resource declarations
    - **Monitoring runs** and cancelling them
    - **Inspecting remembered state** of managed resources

    ### Execution Flow
    1. Submit a declaration via POST /runs (dry_run for plan only)
    2. Engine builds the dependency graph, plans, applies in parallel
    3. Monitor progress via GET /runs/{run_id}
    4. Inspect state via GET /state
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Global state for tracking active runs
active_runs: Dict[str, Dict[str, Any]] = {}
_executors: Dict[str, PlanExecutor] = {}


def _is_applying() -> bool:
    return any(
        run["status"] in (RunStatus.CREATED, RunStatus.APPLYING)
        for run in active_runs.values()
    )


async def execute_run_async(run_id: str, plan: Plan, reconciler: Reconciler) -> None:
    """
    Apply a plan in a background task.

    The executor runs in a thread pool so the event loop is not blocked.
    """
    executor = _executors.get(run_id) or reconciler.create_executor()
    active_runs[run_id]["status"] = RunStatus.APPLYING
    active_runs[run_id]["message"] = "Applying plan..."

    def progress_callback(rid: str, percent: int, current: str):
        if rid in active_runs:
            active_runs[rid]["progress_percent"] = percent
            active_runs[rid]["current_resource"] = current

    executor.set_progress_callback(progress_callback)

    try:
        loop = asyncio.get_running_loop()
        summary = await loop.run_in_executor(
            None,
            lambda: reconciler.apply(plan, executor=executor),
        )
        active_runs[run_id]["status"] = summary.status
        active_runs[run_id]["summary"] = summary
        active_runs[run_id]["message"] = "Execution completed"
        logger.info(f"Run {run_id} finished: {summary.status.value}")

    except StateStoreError as e:
        logger.error(f"Run {run_id} aborted: {e.message}")
        active_runs[run_id]["status"] = RunStatus.FAILED
        active_runs[run_id]["summary"] = executor.last_summary
        active_runs[run_id]["message"] = f"State store error: {e.message}"

    except Exception as e:
        logger.exception(f"Run {run_id} failed: {str(e)}")
        active_runs[run_id]["status"] = RunStatus.FAILED
        active_runs[run_id]["message"] = f"Execution error: {str(e)}"
        if reconciler.storage:
            reconciler.storage.update_summary_status(run_id, RunStatus.FAILED, str(e))

    finally:
        active_runs[run_id]["progress_percent"] = 100
        _executors.pop(run_id, None)


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Infra Reconciler",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "create_run": "POST /runs",
            "get_status": "GET /runs/{run_id}",
            "get_plan": "GET /runs/{run_id}/plan",
            "cancel_run": "POST /runs/{run_id}/cancel",
            "list_runs": "GET /runs",
            "state": "GET /state",
        },
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "active_runs": len(
            [r for r in active_runs.values() if r["status"] == RunStatus.APPLYING]
        ),
    }


@app.post(
    "/runs",
    response_model=RunCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Runs"],
    summary="Plan and (optionally) apply a declaration",
)
async def create_run(
    request: RunCreateRequest,
    background_tasks: BackgroundTasks,
    reconciler: Reconciler = Depends(get_reconciler),
) -> RunCreateResponse:
    """
    Create a reconciliation run.

    **Request Body:**
    - `declaration_yaml`: YAML declaration
    - `dry_run`: Only return the plan
    - `destroy`: Plan deletion of every managed resource
    - `refresh`: Read remote state before planning

    Parser and graph errors return 400 before anything is applied.
    """
    run_id = generate_run_id()

    declaration = None
    if not request.destroy or request.declaration_yaml.strip():
        try:
            declaration = DeclarationParser().parse(request.declaration_yaml)
        except ParserError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error": "Declaration validation failed",
                    "message": e.message,
                    "errors": e.errors,
                },
            )

    if not request.dry_run and _is_applying():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Another run is currently applying",
        )

    try:
        plan = reconciler.plan(
            declaration,
            run_id=run_id,
            refresh=request.refresh,
            destroy=request.destroy,
        )
    except GraphError as e:
        detail: Dict[str, Any] = {
            "error": "Dependency graph is invalid",
            "message": e.message,
            "resource": e.identity,
        }
        if isinstance(e, CycleError):
            detail["cycle"] = e.cycle
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    except AdapterError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Refresh failed", "message": e.message, "resource": e.identity},
        )

    if request.dry_run:
        return RunCreateResponse(
            run_id=run_id,
            status=RunStatus.CREATED,
            message=f"Dry run - {plan.total_operations} operations planned",
            plan=plan,
        )

    if reconciler.storage:
        reconciler.storage.create_run(run_id, destroy=request.destroy)
        reconciler.storage.save_plan(run_id, plan)

    active_runs[run_id] = {
        "status": RunStatus.CREATED,
        "message": "Run created, starting execution...",
        "progress_percent": 0,
        "current_resource": None,
        "created_at": datetime.utcnow().isoformat(),
    }
    _executors[run_id] = reconciler.create_executor()

    background_tasks.add_task(execute_run_async, run_id, plan, reconciler)

    logger.info(f"Run created: {run_id} with {plan.total_operations} operations")

    return RunCreateResponse(
        run_id=run_id,
        status=RunStatus.CREATED,
        message=f"Run created with {plan.total_operations} operations",
        plan=plan,
    )


@app.get(
    "/runs/{run_id}",
    response_model=RunStatusResponse,
    tags=["Runs"],
    summary="Get run status and progress",
)
async def get_run_status(
    run_id: str,
    reconciler: Reconciler = Depends(get_reconciler),
) -> RunStatusResponse:
    """Get the current status of a run."""
    if run_id in active_runs:
        run_state = active_runs[run_id]
        return RunStatusResponse(
            run_id=run_id,
            status=run_state["status"],
            progress_percent=run_state.get("progress_percent", 0),
            current_resource=run_state.get("current_resource"),
            message=run_state.get("message"),
            summary=run_state.get("summary"),
        )

    summary = reconciler.storage.load_summary(run_id) if reconciler.storage else None
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run not found: {run_id}",
        )

    terminal = summary.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)
    return RunStatusResponse(
        run_id=run_id,
        status=summary.status,
        progress_percent=100 if terminal else 0,
        summary=summary,
    )


@app.get(
    "/runs/{run_id}/plan",
    response_model=Plan,
    tags=["Runs"],
    summary="Get the plan of a run",
)
async def get_run_plan(
    run_id: str,
    reconciler: Reconciler = Depends(get_reconciler),
) -> Plan:
    plan = reconciler.storage.load_plan(run_id) if reconciler.storage else None
    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Plan not found for run: {run_id}",
        )
    return plan


@app.post(
    "/runs/{run_id}/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Runs"],
    summary="Cancel a running apply",
)
async def cancel_run(run_id: str):
    """
    Cancel a run.

    Operations not yet started are aborted; in-flight ones finish.
    """
    if run_id not in active_runs:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run not found: {run_id}",
        )
    executor = _executors.get(run_id)
    if executor is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run is not active: {run_id}",
        )
    executor.cancel()
    return {"message": f"Cancellation requested for run {run_id}"}


@app.get(
    "/runs/{run_id}/artifacts",
    response_model=ArtifactsResponse,
    tags=["Runs"],
    summary="List artifacts stored for a run",
)
async def get_artifacts(
    run_id: str,
    reconciler: Reconciler = Depends(get_reconciler),
) -> ArtifactsResponse:
    """
    Artifacts include:
    - `plan.json`: Reconciliation plan
    - `resources/*.json`: Per-resource results
    - `summary.json`: Final run summary
    """
    storage = reconciler.storage
    if storage is None or not storage.run_exists(run_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run not found: {run_id}",
        )
    return ArtifactsResponse(run_id=run_id, artifacts=storage.list_artifacts(run_id))


@app.get(
    "/runs/{run_id}/artifacts/{artifact_path:path}",
    tags=["Runs"],
    summary="Get specific artifact content",
)
async def get_artifact_content(
    run_id: str,
    artifact_path: str,
    reconciler: Reconciler = Depends(get_reconciler),
):
    storage = reconciler.storage
    if storage is None or not storage.run_exists(run_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run not found: {run_id}",
        )

    content = storage.get_artifact_content(run_id, artifact_path)
    if content is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Artifact not found: {artifact_path}",
        )
    return content


@app.get("/runs", tags=["Runs"], summary="List all runs")
async def list_runs(reconciler: Reconciler = Depends(get_reconciler)):
    """List runs with their current status."""
    run_ids = set(active_runs)
    if reconciler.storage:
        run_ids.update(reconciler.storage.get_all_runs())

    runs = []
    for run_id in sorted(run_ids):
        if run_id in active_runs:
            runs.append({
                "run_id": run_id,
                "status": active_runs[run_id]["status"],
                "progress_percent": active_runs[run_id].get("progress_percent", 0),
            })
            continue
        summary = reconciler.storage.load_summary(run_id)
        if summary:
            runs.append({
                "run_id": run_id,
                "status": summary.status,
                "destroy": summary.destroy,
                "completed_at": summary.completed_at.isoformat() if summary.completed_at else None,
            })

    return {"runs": runs, "total": len(runs)}


@app.delete("/runs/{run_id}", tags=["Runs"], summary="Delete a run and its artifacts")
async def delete_run(run_id: str, reconciler: Reconciler = Depends(get_reconciler)):
    """Delete a run's artifacts. Remembered state is not touched."""
    if run_id in active_runs:
        if active_runs[run_id]["status"] in (RunStatus.CREATED, RunStatus.APPLYING):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot delete a running execution",
            )
        del active_runs[run_id]

    if reconciler.storage and reconciler.storage.delete_run(run_id):
        return {"message": f"Run {run_id} deleted successfully"}
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Run not found: {run_id}",
    )


@app.get("/state", response_model=StateResponse, tags=["State"], summary="List remembered state")
async def get_state(reconciler: Reconciler = Depends(get_reconciler)) -> StateResponse:
    records = reconciler.state_store.list_records()
    return StateResponse(total=len(records), records=records)


@app.get(
    "/state/{resource_type}/{name}",
    response_model=StateRecord,
    tags=["State"],
    summary="Get the remembered state of one resource",
)
async def get_state_record(
    resource_type: str,
    name: str,
    reconciler: Reconciler = Depends(get_reconciler),
) -> StateRecord:
    record = reconciler.state_store.get(ResourceIdentity(type=resource_type, name=name))
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No state for resource: {resource_type}.{name}",
        )
    return record


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(StateStoreError)
async def state_store_exception_handler(request, exc: StateStoreError):
    logger.error(f"State store error: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "State store error", "detail": exc.message, "resource": exc.identity},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc: Exception):
    """Global exception handler."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        },
    )


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    server = get_settings().server
    uvicorn.run(
        "infra_reconciler.main:app",
        host=server.host,
        port=server.port,
        reload=False,
        log_level=server.log_level,
    )
