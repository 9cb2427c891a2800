import logging
import traceback

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chexplorer.coordinator import PlacementCoordinator
from chexplorer.errors import ConfigurationError, InvalidInputError, NodeUnreachableError

from .routers.cluster import router as cluster_router

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s"
)
logger = logging.getLogger("chexplorer.api")


def create_app(coordinator: PlacementCoordinator) -> FastAPI:
    """
    Build a FastAPI app exposing the sharding and replication demos.

    Args:
        coordinator: Coordinator wired to the node registry and query backend. Built once
            at startup and shared by every request.

    Raises:
        ValueError: When coordinator is not provided.
    """
    if coordinator is None:
        raise ValueError("coordinator is required")

    app = FastAPI(title="ClickHouse Explorer Cluster API")

    # Add CORS middleware for the dashboard
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvalidInputError)
    async def invalid_input_handler(request: Request, exc: InvalidInputError):
        logger.info(f"Rejected input at {request.method} {request.url}: {exc}")
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NodeUnreachableError)
    async def node_unreachable_handler(request: Request, exc: NodeUnreachableError):
        logger.error(f"Node unreachable at {request.method} {request.url}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc), "node": exc.node_name},
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error(f"Configuration error at {request.method} {request.url}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": "ConfigurationError"},
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception at {request.method} {request.url}: {exc}")
        logger.error(f"Exception details: {traceback.format_exc()}")

        if isinstance(exc, HTTPException):
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error": str(exc),
                "type": type(exc).__name__,
            },
        )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(f"Request: {request.method} {request.url}")
        try:
            response = await call_next(request)
            logger.info(f"Response: {request.method} {request.url} - {response.status_code}")
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url} - {e}")
            raise

    app.state.coordinator = coordinator
    app.include_router(cluster_router)

    logger.info("FastAPI app created successfully")
    return app
