"""Operations API: health probes, manual sync triggers and attachment records."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from .errors import AccountBusyError, MailboxConnectionError, StorageError

if TYPE_CHECKING:
    from .service import HarvesterService

logger = structlog.get_logger()


def create_app(service: HarvesterService) -> FastAPI:
    """Build the FastAPI app served next to the scheduler.

    *service* supplies the orchestrator (and through it the stores) and the
    scheduler whose state the probes report.
    """
    app = FastAPI(title="pdf-harvester", docs_url=None, redoc_url=None)
    orchestrator = service.orchestrator
    scheduler = service.scheduler

    async def _profile_or_404(account_id: str):
        profile = await orchestrator.configs.get(account_id)
        if profile is None:
            raise HTTPException(status_code=404, detail=f"unknown account {account_id}")
        return profile

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({
            "service": "pdf-harvester",
            "status": "running" if scheduler.is_running else "stopped",
            "uptime_seconds": time.monotonic() - service.start_time,
            "scheduler": {
                "running": scheduler.is_running,
                "ticks": scheduler.ticks,
                "in_flight": scheduler.in_flight,
            },
        })

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = scheduler.is_running
        return JSONResponse({"ready": is_ready}, status_code=200 if is_ready else 503)

    # ------------------------------------------------------------------
    # Sync triggers
    # ------------------------------------------------------------------

    @app.post("/accounts/{account_id}/sync")
    async def sync_account(account_id: str) -> JSONResponse:
        profile = await _profile_or_404(account_id)
        try:
            report = await orchestrator.sync_account(profile)
        except AccountBusyError as exc:
            return JSONResponse({"error": str(exc)}, status_code=409)
        except MailboxConnectionError as exc:
            return JSONResponse(
                {"error": str(exc), "error_type": type(exc).__name__},
                status_code=502,
            )
        return JSONResponse(report.model_dump(mode="json"))

    @app.post("/accounts/{account_id}/test-connection")
    async def test_connection(account_id: str) -> JSONResponse:
        profile = await _profile_or_404(account_id)
        return JSONResponse({"success": await orchestrator.test_connection(profile)})

    @app.post("/sync")
    async def sync_all() -> JSONResponse:
        results = await orchestrator.sync_all()
        return JSONResponse([result.model_dump(mode="json") for result in results])

    # ------------------------------------------------------------------
    # Attachment records
    # ------------------------------------------------------------------

    @app.get("/attachments")
    async def list_attachments(profile_id: str | None = None) -> JSONResponse:
        records = await orchestrator.records.list(profile_id)
        return JSONResponse([record.model_dump(mode="json") for record in records])

    @app.get("/attachments/{record_id}")
    async def get_attachment(record_id: str) -> JSONResponse:
        record = await orchestrator.records.get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"unknown attachment {record_id}")
        return JSONResponse(record.model_dump(mode="json"))

    @app.delete("/attachments/{record_id}")
    async def delete_attachment(record_id: str) -> JSONResponse:
        record = await orchestrator.records.get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"unknown attachment {record_id}")
        try:
            file_removed = await orchestrator.storage.delete(record.local_path)
        except StorageError as exc:
            logger.error("attachment_delete_failed", record_id=record_id, error=str(exc))
            return JSONResponse({"error": str(exc)}, status_code=500)
        await orchestrator.records.delete(record_id)
        logger.info("attachment_deleted", record_id=record_id, file_removed=file_removed)
        return JSONResponse({"id": record_id, "deleted": True, "file_removed": file_removed})

    return app
