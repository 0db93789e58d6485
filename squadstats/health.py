"""
Health checks for liveness and readiness probes.
"""
from datetime import datetime, timezone
from typing import Dict, Any
import time
import psutil
from .logging import get_logger
from .services.pipeline import Pipeline

logger = get_logger()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthChecker:
    """
    Health checker for the squadstats service.

    Provides:
    - Liveness checks (is the service running?)
    - Readiness checks (can the pipeline persist events?)
    """

    def __init__(self, pipeline: Pipeline, service_name: str = "squadstats", version: str = "0.1.0"):
        self.pipeline = pipeline
        self.service_name = service_name
        self.version = version

    def liveness(self) -> Dict[str, Any]:
        """
        Liveness check - basic health check.

        Returns:
            dict: Health status with service info and timestamp
        """
        return {
            "status": "ok",
            "service": self.service_name,
            "version": self.version,
            "timestamp": _timestamp(),
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness check - comprehensive health check.

        Checks:
        - Database connectivity
        - Dead-letter sink writability
        - Game server connections (pending servers only warn)
        - Disk space and memory availability

        Returns:
            dict: Readiness status with detailed check results
        """
        checks = {
            "database": await self._check_database(),
            "dead_letter": await self._check_dead_letter(),
            "servers": self._check_servers(),
            "disk_space": self._check_disk_space(),
            "memory": self._check_memory(),
        }
        overall_status = "ready"
        if any(check["status"] == "error" for check in checks.values()):
            overall_status = "not_ready"

        return {
            "status": overall_status,
            "service": self.service_name,
            "version": self.version,
            "timestamp": _timestamp(),
            "buffers": self.pipeline.buffer.buffer_sizes(),
            "checks": checks,
        }

    async def _check_database(self) -> Dict[str, Any]:
        start = time.time()
        if not await self.pipeline.database_ok():
            return {"status": "error", "error": "database unreachable"}
        return {"status": "ok", "latency_ms": round((time.time() - start) * 1000, 2)}

    async def _check_dead_letter(self) -> Dict[str, Any]:
        try:
            healthy = await self.pipeline.sink.health_check()
        except Exception as e:
            logger.warning("dead_letter_health_check_failed", error=str(e))
            return {"status": "error", "error": str(e)}
        return {
            "status": "ok" if healthy else "error",
            "adapter": type(self.pipeline.sink).__name__,
        }

    def _check_servers(self) -> Dict[str, Any]:
        status = self.pipeline.connections.status()
        if status["pending"]:
            state = "warning"
        else:
            state = "ok"
        return {
            "status": state,
            "total": status["total"],
            "connected": status["connected"],
            "pending": status["pending"],
        }

    def _check_disk_space(self, min_free_gb: float = 1.0) -> Dict[str, Any]:
        """
        Check free space where dead-letter files land (the root filesystem otherwise).

        Args:
            min_free_gb: Below this the service is not ready; below twice this it warns
        """
        path = str(getattr(self.pipeline.sink, "directory", None) or "/")
        try:
            disk = psutil.disk_usage(path)
        except OSError as e:
            logger.warning("disk_health_check_failed", path=path, error=str(e))
            return {"status": "error", "error": str(e)}

        free_gb = disk.free / (1024**3)
        return {
            "status": _against_floor(free_gb, min_free_gb),
            "path": path,
            "available_gb": round(free_gb, 2),
            "used_percent": disk.percent,
        }

    def _check_memory(self, min_available_mb: float = 50.0) -> Dict[str, Any]:
        try:
            memory = psutil.virtual_memory()
        except OSError as e:
            logger.warning("memory_health_check_failed", error=str(e))
            return {"status": "error", "error": str(e)}

        available_mb = memory.available / (1024**2)
        return {
            "status": _against_floor(available_mb, min_available_mb),
            "available_mb": round(available_mb, 2),
            "used_percent": memory.percent,
        }


def _against_floor(value: float, floor: float) -> str:
    if value < floor:
        return "error"
    if value < floor * 2:
        return "warning"
    return "ok"
