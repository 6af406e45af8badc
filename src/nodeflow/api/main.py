"""FastAPI application."""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from nodeflow import __version__
from nodeflow.api.routes import health, workflows
from nodeflow.errors import ConfigurationError, NotFoundError, UnauthorizedError, WorkflowError
from nodeflow.observability import get_logger, setup_logging

logger = get_logger(__name__)

ERROR_STATUS_CODES: dict[type[WorkflowError], int] = {
    NotFoundError: 404,
    UnauthorizedError: 403,
    ConfigurationError: 400,
}


async def workflow_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map business errors escaping a route to a status code."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        500,
    )
    logger.warning(
        "Request failed",
        extra={"path": request.url.path, "status_code": status_code, "error": str(exc)},
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


def create_app() -> FastAPI:
    """Build the API application with logging configured."""
    setup_logging()
    application = FastAPI(
        title="nodeflow",
        description="Workflow execution engine",
        version=__version__,
    )
    application.add_exception_handler(WorkflowError, workflow_error_handler)
    application.include_router(health.router, tags=["health"])
    application.include_router(workflows.router, tags=["workflows"])

    @application.get("/")
    def root() -> dict:
        return {"service": "nodeflow", "version": __version__, "docs": "/docs"}

    return application


app = create_app()
