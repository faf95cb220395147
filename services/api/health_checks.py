#!/usr/bin/env python3
"""
Health check endpoints and system monitoring
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psutil

from services.api.logging_config import get_logger
from services.rpc.executor import RateLimitedExecutor

logger = get_logger("health")

API_START_TIME = time.time()

OK_STATUSES = ("healthy", "disabled", "not_configured")


async def check_database_health(enabled: bool) -> Dict[str, Any]:
    if not enabled:
        return {"status": "disabled"}
    try:
        from services.database.config import test_connection_async

        start = time.time()
        await test_connection_async()
        return {"status": "healthy", "response_time_ms": round((time.time() - start) * 1000, 2)}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


async def check_rpc_health(executor: RateLimitedExecutor) -> Dict[str, Any]:
    """
    getHealth on every endpoint that is not cooling down.

    Healthy when at least one endpoint answers; endpoints in cooldown are
    reported but not queried.
    """
    endpoints: List[Dict[str, Any]] = []
    for entry in executor.health_status():
        row = dict(entry)
        if entry["available"]:
            start = time.time()
            try:
                await executor.client(entry["url"]).get_health()
                row.update(status="healthy", response_time_ms=round((time.time() - start) * 1000, 2))
            except Exception as e:
                logger.warning(f"RPC health check failed for {entry['url']}: {e}")
                row.update(status="unhealthy", error=str(e))
        else:
            row["status"] = "cooldown"
        endpoints.append(row)

    healthy = any(e["status"] == "healthy" for e in endpoints)
    return {"status": "healthy" if healthy else "unhealthy", "endpoints": endpoints}


async def check_service_health(client: Optional[Any], name: str) -> Dict[str, Any]:
    """Recovery / relay reachability. Both expose GET /health."""
    if client is None:
        return {"status": "not_configured"}
    start = time.time()
    try:
        if hasattr(client, "info"):
            info = await client.info(refresh=True)
            status = "healthy" if info.ok else "unhealthy"
            detail = {"network": info.network, "mode": info.mode}
        else:
            body = await client.health()
            status = "healthy" if body.get("status") in ("ok", "healthy") else "unhealthy"
            detail = {}
    except Exception as e:
        logger.error(f"{name} health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
    return {"status": status, "response_time_ms": round((time.time() - start) * 1000, 2), **detail}


def get_system_metrics() -> Dict[str, Any]:
    try:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage("/")
        return {
            "cpu": {"usage_percent": round(psutil.cpu_percent(interval=0.1), 2)},
            "memory": {
                "usage_percent": round(memory.percent, 2),
                "used_mb": round(memory.used / (1024 * 1024), 2),
                "total_mb": round(memory.total / (1024 * 1024), 2),
            },
            "disk": {
                "usage_percent": round(disk.percent, 2),
                "used_gb": round(disk.used / (1024 ** 3), 2),
                "total_gb": round(disk.total / (1024 ** 3), 2),
            },
        }
    except Exception as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {"error": str(e)}


def get_uptime() -> Dict[str, Any]:
    uptime_seconds = time.time() - API_START_TIME
    minutes = uptime_seconds / 60
    hours = minutes / 60
    days = hours / 24

    if days >= 1:
        formatted = f"{int(days)}d {int(hours % 24)}h"
    elif hours >= 1:
        formatted = f"{int(hours)}h {int(minutes % 60)}m"
    else:
        formatted = f"{int(minutes)}m {int(uptime_seconds % 60)}s"

    return {"uptime_seconds": round(uptime_seconds, 2), "uptime_formatted": formatted}


async def comprehensive_health_check(runtime) -> Dict[str, Any]:
    """
    Every dependency of the settlement service.

    Recovery and relay are optional: they degrade withdrawals but do not make
    the service unhealthy.
    """
    checks = {
        "database": await check_database_health(runtime.note_store is not None),
        "rpc": await check_rpc_health(runtime.executor),
        "recovery": await check_service_health(runtime.recovery, "Recovery"),
        "relay": await check_service_health(runtime.relay, "Relay"),
        "system": get_system_metrics(),
        "uptime": get_uptime(),
    }
    critical = [checks["database"]["status"], checks["rpc"]["status"]]
    optional = [checks["recovery"]["status"], checks["relay"]["status"]]

    if not all(s in OK_STATUSES for s in critical):
        overall = "unhealthy"
    elif not all(s in OK_STATUSES for s in optional):
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "status": overall,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "pools": runtime.pools.ids(),
        "disabled": list(runtime.disabled),
        "checks": checks,
    }


async def readiness_check(runtime) -> bool:
    try:
        db = await check_database_health(runtime.note_store is not None)
        rpc = await check_rpc_health(runtime.executor)
        return db["status"] in OK_STATUSES and rpc["status"] == "healthy"
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return False
