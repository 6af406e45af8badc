"""Liveness and readiness routes."""
import redis
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from nodeflow import __version__
from nodeflow.bootstrap import Services, get_services
from nodeflow.observability import get_logger
from nodeflow.storage.session import session_scope

logger = get_logger(__name__)
router = APIRouter()


def database_ready(services: Services) -> bool:
    try:
        with session_scope(services.workflows.session_factory) as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Database readiness check failed", extra={"error": str(e)})
        return False
    return True


def redis_ready(services: Services) -> bool:
    if services.redis_client is None:
        return True
    try:
        return bool(services.redis_client.ping())
    except redis.RedisError as e:
        logger.warning("Redis readiness check failed", extra={"error": str(e)})
        return False


@router.get("/health")
def health_check() -> dict:
    """Liveness: the process is serving requests."""
    return {"status": "healthy", "service": "nodeflow", "version": __version__}


@router.get("/health/ready")
def readiness_check(services: Services = Depends(get_services)) -> JSONResponse:
    """Readiness: the database and Redis answer. 503 otherwise."""
    checks = {"database": database_ready(services), "redis": redis_ready(services)}
    ready = all(checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "unavailable", "checks": checks},
    )
