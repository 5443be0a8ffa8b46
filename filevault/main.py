"""FastAPI process shell: lifecycle and health endpoints"""

import time
from typing import Any, Dict, Optional

import psutil
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from filevault.config import settings
from filevault.database import database
from filevault.exceptions import FileVaultError
from filevault.jobs.folder_sweep import schedule_storage_jobs
from filevault.scheduler import scheduler
from filevault.services.file_service import FileService, create_file_service
from filevault.utils.logger import get_logger, log_storage_config

logger = get_logger(__name__)

ERROR_STATUS = {
    "validation_error": 400,
    "authorization_error": 401,
    "not_found": 404,
    "compression_error": 500,
    "storage_error": 500,
}

app = FastAPI(
    title="FileVault",
    description="File storage with background image compression",
    version="0.1.0",
)

_app_start_time: Optional[float] = None
file_service: Optional[FileService] = None


@app.exception_handler(FileVaultError)
async def file_vault_error_handler(request: Request, exc: FileVaultError) -> JSONResponse:
    return JSONResponse(status_code=ERROR_STATUS.get(exc.kind, 500), content=exc.to_dict())


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    global _app_start_time, file_service
    _app_start_time = time.time()
    logger.debug("Starting FileVault application")

    log_storage_config(logger, settings)

    database.initialize()
    settings.storage_root.mkdir(parents=True, exist_ok=True)
    settings.archive_root.mkdir(parents=True, exist_ok=True)

    file_service = create_file_service(settings, database)

    # Jobs from a previous process never finish; release their records
    normalized = file_service.normalize_stuck_records()
    logger.debug(f"Normalized {normalized} stuck compression records")

    scheduler.initialize()
    scheduler.start()
    schedule_storage_jobs(scheduler, file_service.cleanup_service, settings)

    logger.info("FileVault started")


@app.on_event("shutdown")
async def shutdown_event():
    """Drain background work and close resources"""
    logger.info("Shutting down FileVault")

    if file_service:
        await file_service.compression_queue.stop(timeout=settings.shutdown_drain_timeout)

    scheduler.stop()
    database.close()


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint with minimal logging"""
    process = psutil.Process()
    memory_info = process.memory_info()

    current_time = time.time()
    uptime = (current_time - _app_start_time) if _app_start_time else 0

    checks: Dict[str, Any] = {
        "status": "ok",
        "timestamp": current_time,
        "uptime": uptime,
        "memory": {
            "rss": memory_info.rss,
            "vms": memory_info.vms,
            "usage_percent": process.memory_percent(),
            "usage_mb": round(memory_info.rss / 1024 / 1024, 2),
        },
    }

    try:
        checks["database"] = await database.health_check()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = False

    checks["scheduler"] = {"running": scheduler.running, "jobs": scheduler.describe_jobs()}
    checks["storage"] = settings.storage_root.is_dir()

    if file_service:
        checks["compression_queue"] = file_service.compression_queue.get_queue_status()

    critical_services = ["database", "storage"]
    is_healthy = all(checks.get(service, False) for service in critical_services)

    if not is_healthy:
        checks["status"] = "error"
        logger.warning("Health check failed", checks=checks)
        return JSONResponse(status_code=503, content=checks)

    logger.debug("Health check passed")
    return checks


@app.get("/metrics")
async def metrics() -> Dict[str, Any]:
    """Process and storage metrics"""
    process = psutil.Process()
    memory_info = process.memory_info()

    current_time = time.time()
    metrics_data: Dict[str, Any] = {
        "memory_rss_bytes": memory_info.rss,
        "memory_vms_bytes": memory_info.vms,
        "cpu_percent": process.cpu_percent(interval=0.1),
        "uptime_seconds": (current_time - _app_start_time) if _app_start_time else 0,
    }

    try:
        metrics_data.update(await database.get_metrics())
    except Exception as e:
        logger.error(f"Failed to get database metrics: {e}")

    db_file = settings.database_file()
    if db_file is not None and db_file.exists():
        metrics_data["database_size_bytes"] = db_file.stat().st_size

    if file_service:
        metrics_data["storage_bytes"] = await file_service.cleanup_service.get_storage_size()
        metrics_data["compressions_in_flight"] = file_service.compression_queue.get_queue_status()["in_flight"]

    return metrics_data
