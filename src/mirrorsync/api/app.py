"""
Main FastAPI application for MirrorSync.
"""

import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Dict, List, Any, Optional
from fastapi import FastAPI, HTTPException, Depends, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from ..models.config import Synchronization
from ..models.mapping import Mapping
from ..models.sync import SynchronizationContract, SynchronizationLog, SynchronizationContractLog
from ..services.store import SynchronizationStore, create_store
from ..engine.sync import SyncEngine
from ..engine.transforms import FieldTransformer
from ..connectors import CONNECTOR_REGISTRY
from ..version import __version__
from ..exceptions import MirrorSyncException, ConfigurationError, NotFoundError, TransformError

logger = logging.getLogger(__name__)

# Global services (initialized in lifespan)
store: Optional[SynchronizationStore] = None
sync_engine: Optional[SyncEngine] = None

# Cancellation flags of in-flight runs, by synchronization id
running: Dict[str, threading.Event] = {}
running_lock = threading.Lock()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global store, sync_engine

    try:
        store = create_store()
        sync_engine = SyncEngine(store)
        logger.info("Application startup complete")
    except Exception as e:
        logger.error(f"Failed to initialize application services: {e}")
        # Don't raise - let the app start but services will be None

    yield

    # Cleanup on shutdown
    with running_lock:
        for event in running.values():
            event.set()
    logger.info("Application shutdown")


app = FastAPI(
    title="MirrorSync API",
    description="API for triggering and inspecting source to target synchronizations",
    version=__version__,
    lifespan=lifespan
)

# Get allowed origins from environment variable
allowed_origins_str = os.getenv("ALLOWED_ORIGINS", "")
allowed_origins = [origin.strip() for origin in allowed_origins_str.split(",") if origin.strip()]

if not allowed_origins:
    # Default to allowing all for local dev if not set
    allowed_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependency injection
def get_store() -> SynchronizationStore:
    if store is None:
        raise HTTPException(status_code=500, detail="Store not initialized")
    return store


def get_sync_engine() -> SyncEngine:
    if sync_engine is None:
        raise HTTPException(status_code=500, detail="Sync engine not initialized")
    return sync_engine


def register_run(synchronization_id: str) -> threading.Event:
    """
    Claim the run slot of a synchronization.

    Returns:
        The cancellation flag of the new run

    Raises:
        HTTPException: 409 if the synchronization is already running
    """
    with running_lock:
        if synchronization_id in running:
            raise HTTPException(status_code=409, detail=f"Synchronization {synchronization_id} is already running")
        cancel_event = threading.Event()
        running[synchronization_id] = cancel_event
        return cancel_event


def release_run(synchronization_id: str) -> None:
    with running_lock:
        running.pop(synchronization_id, None)


def to_http_exception(e: Exception, action: str) -> HTTPException:
    """Translate an application error into the matching HTTP error."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (ConfigurationError, TransformError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, MirrorSyncException):
        logger.error(f"Failed to {action}: {e}")
        return HTTPException(status_code=500, detail=str(e))
    logger.error(f"An unexpected error occurred while trying to {action}: {e}")
    return HTTPException(status_code=500, detail="An unexpected error occurred.")


# Request models

class MappingTestRequest(BaseModel):
    """A mapping to try out against one input document."""
    mapping: Dict[str, Any] = Field(..., description="Mapping definition, as stored")
    input: Any = Field(default_factory=dict, description="Document to transform")
    as_list: bool = Field(False, description="Map every entry of the input")


# Health check endpoint
@app.get("/health")
async def health_check():
    """Check the health of the application and its services."""
    return {
        "status": "healthy",
        "version": __version__,
        "services": {
            "store": type(store).__name__ if store is not None else None,
            "sync_engine": sync_engine is not None,
        }
    }


# Connector information endpoints
@app.get("/api/v1/connectors")
async def list_connectors():
    """List available connectors."""
    return {
        "connectors": list(CONNECTOR_REGISTRY.keys()),
        "details": {
            name: {
                "class": connector_class.__name__,
                "module": connector_class.__module__,
                "capabilities": connector_class().get_capabilities().model_dump()
            }
            for name, connector_class in CONNECTOR_REGISTRY.items()
        }
    }


# =============================================================================
# SYNCHRONIZATION ENDPOINTS
# =============================================================================

@app.get("/api/v1/synchronizations", response_model=List[Synchronization])
def list_synchronizations(active_only: bool = False, store: SynchronizationStore = Depends(get_store)):
    """List all synchronizations."""
    try:
        return store.list_synchronizations(active_only=active_only)
    except Exception as e:
        raise to_http_exception(e, "list synchronizations")


@app.put("/api/v1/synchronizations/{synchronization_id}", response_model=Synchronization)
def save_synchronization(
    synchronization_id: str,
    synchronization: Synchronization,
    store: SynchronizationStore = Depends(get_store)
):
    """Create or replace a synchronization."""
    try:
        if synchronization.id != synchronization_id:
            raise ConfigurationError("Synchronization id in the body does not match the URL")
        return store.save_synchronization(synchronization)
    except Exception as e:
        raise to_http_exception(e, f"save synchronization {synchronization_id}")


@app.get("/api/v1/synchronizations/{synchronization_id}", response_model=Synchronization)
def get_synchronization(synchronization_id: str, store: SynchronizationStore = Depends(get_store)):
    """Get a specific synchronization by ID."""
    try:
        synchronization = store.get_synchronization(synchronization_id)
        if synchronization is None:
            raise NotFoundError("Synchronization", synchronization_id)
        return synchronization
    except Exception as e:
        raise to_http_exception(e, f"get synchronization {synchronization_id}")


@app.delete("/api/v1/synchronizations/{synchronization_id}")
def delete_synchronization(synchronization_id: str, store: SynchronizationStore = Depends(get_store)):
    """Delete a synchronization and its contracts."""
    try:
        if not store.delete_synchronization(synchronization_id):
            raise NotFoundError("Synchronization", synchronization_id)
        return {"message": f"Synchronization {synchronization_id} deleted successfully"}
    except Exception as e:
        raise to_http_exception(e, f"delete synchronization {synchronization_id}")


@app.post("/api/v1/synchronizations/{synchronization_id}/run")
def run_synchronization(
    synchronization_id: str,
    test: bool = False,
    force: bool = False,
    engine: SyncEngine = Depends(get_sync_engine)
):
    """Run a synchronization and wait for its result."""
    try:
        cancel_event = register_run(synchronization_id)
        try:
            result = engine.run(synchronization_id, test=test, force=force, cancel_event=cancel_event)
        finally:
            release_run(synchronization_id)
        return result.model_dump(mode="json")
    except Exception as e:
        raise to_http_exception(e, f"run synchronization {synchronization_id}")


@app.post("/api/v1/synchronizations/{synchronization_id}/trigger", status_code=202)
def trigger_synchronization(
    synchronization_id: str,
    background_tasks: BackgroundTasks,
    test: bool = False,
    force: bool = False,
    store: SynchronizationStore = Depends(get_store),
    engine: SyncEngine = Depends(get_sync_engine)
):
    """
    Run a synchronization in the background.
    The run log can be followed through the logs endpoint.
    """
    try:
        if store.get_synchronization(synchronization_id) is None:
            raise NotFoundError("Synchronization", synchronization_id)
        cancel_event = register_run(synchronization_id)

        def run_in_background():
            try:
                engine.run(synchronization_id, test=test, force=force, cancel_event=cancel_event)
            except Exception as e:
                logger.error(f"Background run of {synchronization_id} failed: {e}")
            finally:
                release_run(synchronization_id)

        background_tasks.add_task(run_in_background)
        return {"synchronization_id": synchronization_id, "status": "accepted"}
    except Exception as e:
        raise to_http_exception(e, f"trigger synchronization {synchronization_id}")


@app.post("/api/v1/synchronizations/{synchronization_id}/cancel")
def cancel_synchronization(synchronization_id: str):
    """Ask a running synchronization to stop between pages or objects."""
    with running_lock:
        cancel_event = running.get(synchronization_id)
    if cancel_event is None:
        raise HTTPException(status_code=404, detail=f"No running synchronization: {synchronization_id}")
    cancel_event.set()
    return {"synchronization_id": synchronization_id, "status": "cancelling"}


@app.get("/api/v1/synchronizations/{synchronization_id}/contracts", response_model=List[SynchronizationContract])
def list_contracts(synchronization_id: str, limit: int = 100, store: SynchronizationStore = Depends(get_store)):
    """List contracts for a specific synchronization."""
    try:
        return store.list_contracts(synchronization_id, limit=limit)
    except Exception as e:
        raise to_http_exception(e, f"list contracts for {synchronization_id}")


@app.get("/api/v1/synchronizations/{synchronization_id}/logs", response_model=List[SynchronizationLog])
def list_logs(synchronization_id: str, limit: int = 50, store: SynchronizationStore = Depends(get_store)):
    """List run logs for a specific synchronization, newest first."""
    try:
        return store.list_logs(synchronization_id=synchronization_id, limit=limit)
    except Exception as e:
        raise to_http_exception(e, f"list logs for {synchronization_id}")


@app.get("/api/v1/logs/{log_id}/contract-logs", response_model=List[SynchronizationContractLog])
def list_contract_logs(log_id: str, limit: int = 100, store: SynchronizationStore = Depends(get_store)):
    """List the contract log entries written by one run."""
    try:
        if store.get_log(log_id) is None:
            raise NotFoundError("Synchronization log", log_id)
        return store.list_contract_logs(log_id=log_id, limit=limit)
    except Exception as e:
        raise to_http_exception(e, f"list contract logs for run {log_id}")


# =============================================================================
# MAPPING ENDPOINTS
# =============================================================================

@app.put("/api/v1/mappings/{mapping_id}", response_model=Mapping)
def save_mapping(mapping_id: str, definition: Dict[str, Any], store: SynchronizationStore = Depends(get_store)):
    """Create or replace a mapping."""
    try:
        mapping = Mapping(**{**definition, "id": mapping_id})
        return store.save_mapping(mapping)
    except Exception as e:
        raise to_http_exception(e, f"save mapping {mapping_id}")


@app.get("/api/v1/mappings/{mapping_id}", response_model=Mapping)
def get_mapping(mapping_id: str, store: SynchronizationStore = Depends(get_store)):
    """Get a specific mapping by ID."""
    try:
        mapping = store.get_mapping(mapping_id)
        if mapping is None:
            raise NotFoundError("Mapping", mapping_id)
        return mapping
    except Exception as e:
        raise to_http_exception(e, f"get mapping {mapping_id}")


@app.post("/api/v1/mappings/test")
def test_mapping(request: MappingTestRequest):
    """Apply a mapping to an input document without storing anything."""
    try:
        mapping = Mapping(**{"id": "test", **request.mapping})
        result = FieldTransformer().transform(mapping, request.input, as_list=request.as_list)
        return {"result": result}
    except Exception as e:
        raise to_http_exception(e, "test mapping")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
