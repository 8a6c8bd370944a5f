"""FastAPI backend for the extraction queue."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Body, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import EngineConfig
from .engine import ExtractionEngine
from .errors import (
    InvalidTransition,
    ItemNotFound,
    PartialEnqueueError,
    ProviderConfigError,
    QueueError,
    StorageError,
    SyncFailureNotFound,
)
from .models import ProviderStatus, ProviderUpdate, QueueStats, RawInput, SyncStatus
from .storage import STATUSES

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ItemNotFound: 404,
    InvalidTransition: 409,
    ProviderConfigError: 400,
    StorageError: 503,
    SyncFailureNotFound: 404,
}


def create_app(engine: Optional[ExtractionEngine] = None, start_workers: bool = True) -> FastAPI:
    """Build the API around an engine.

    Args:
        engine: Engine to serve; built from the environment when omitted
        start_workers: Start the engine's background workers on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = engine or ExtractionEngine(EngineConfig.from_env())
        app.state.engine.init(start_workers=start_workers)
        try:
            yield
        finally:
            app.state.engine.shutdown()

    app = FastAPI(
        title="Extraction Queue API",
        description="API for queueing document images for data extraction",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError):
        status_code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            500,
        )
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    def get_engine() -> ExtractionEngine:
        return app.state.engine

    @app.get("/")
    def root():
        """Root endpoint."""
        return {
            "message": "Extraction Queue API",
            "version": "1.0.0",
            "endpoints": {
                "stats": "/api/stats",
                "items": "/api/items",
                "item": "/api/items/{id}",
                "confirm": "/api/items/{id}/confirm",
                "provider": "/api/provider",
                "sync": "/api/sync",
            },
        }

    @app.get("/api/stats", response_model=QueueStats)
    def get_stats():
        """Get queue statistics."""
        return get_engine().get_counts()

    @app.get("/api/items")
    def get_items(status: Optional[str] = None):
        """Get queue items, oldest first.

        Args:
            status: Filter by status (pending, processing, completed, failed)
        """
        if status and status not in STATUSES:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid status. Must be one of: {', '.join(STATUSES)}",
            )

        items = get_engine().list_queue(status=status)
        return {
            "items": [item.to_dict() for item in items],
            "count": len(items),
        }

    @app.post("/api/items")
    async def add_items(files: list[UploadFile] = File(...)):
        """Upload document images to queue for extraction."""
        inputs = []
        for upload in files:
            data = await upload.read()
            if not data:
                raise HTTPException(status_code=400, detail=f"{upload.filename} is empty")
            inputs.append(RawInput(
                data=data,
                name=upload.filename or "upload",
                mime_type=upload.content_type or "application/octet-stream",
            ))

        try:
            ids = await asyncio.to_thread(get_engine().enqueue, inputs)
            errors = []
        except PartialEnqueueError as e:
            ids = e.enqueued_ids
            errors = [f"{name}: {reason}" for name, reason in e.failures]

        logger.info(f"Upload queued {len(ids)} items, {len(errors)} errors")
        return {
            "ids": ids,
            "added": len(ids),
            "errors": errors,
        }

    @app.delete("/api/items/completed")
    def clear_completed():
        """Remove completed and failed items."""
        removed = get_engine().clear_completed()
        return {"removed": removed}

    @app.delete("/api/items")
    def clear_all():
        """Remove every item from the queue."""
        removed = get_engine().clear_all()
        return {"removed": removed}

    @app.get("/api/items/{item_id}")
    def get_item(item_id: str):
        return get_engine().get_item(item_id).to_dict()

    @app.delete("/api/items/{item_id}")
    def remove_item(item_id: str):
        get_engine().remove(item_id)
        return {"id": item_id, "message": "Item removed from queue"}

    @app.post("/api/items/{item_id}/confirm")
    def confirm_item(item_id: str, record: Optional[dict[str, Any]] = Body(default=None)):
        """Accept a completed item's (possibly edited) record and back it up."""
        synced = get_engine().confirm(item_id, record)
        return {"id": item_id, "backed_up": synced}

    @app.get("/api/provider", response_model=ProviderStatus)
    def get_provider():
        return get_engine().provider_status()

    @app.put("/api/provider", response_model=ProviderStatus)
    def set_provider(update: ProviderUpdate):
        engine = get_engine()
        engine.set_provider(update.use_remote, update.credential)
        return engine.provider_status()

    @app.get("/api/sync", response_model=SyncStatus)
    def get_sync_status():
        return get_engine().sync_status()

    @app.delete("/api/sync/failures")
    def clear_sync_failures():
        cleared = get_engine().clear_sync_failures()
        return {"cleared": cleared}

    @app.delete("/api/sync/failures/{failure_id}")
    def acknowledge_sync_failure(failure_id: int):
        get_engine().acknowledge_sync_failure(failure_id)
        return {"id": failure_id, "message": "Sync failure acknowledged"}

    return app


app = create_app()


def main():
    """Run the API server."""
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
