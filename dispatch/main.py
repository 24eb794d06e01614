"""FastAPI application entry point."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dispatch.config import Settings, get_settings
from dispatch.errors import ConflictError, DispatchError, DispatchValidationError, NotFoundError
from dispatch.services.engine import DispatchEngine
from dispatch.services.notifier import WebSocketNotifier
from dispatch.state.manager import StateManager
from dispatch.state.memory import (
    InMemoryAssignmentStore,
    InMemoryDriverStore,
    InMemoryOrderStore,
    InMemoryTrackingStore,
)
from dispatch.state.redis_store import (
    RedisAssignmentStore,
    RedisDriverStore,
    RedisOrderStore,
    RedisTrackingStore,
)
from dispatch.utils.logging import get_logger, setup_logging

# Setup logging first
setup_logging()
logger = get_logger(__name__)


def build_engine(settings: Settings, state_manager: StateManager | None = None) -> DispatchEngine:
    """Create the engine on the configured store backend."""
    notifier = WebSocketNotifier(manager)

    if settings.store_backend == "memory":
        return DispatchEngine(
            InMemoryOrderStore(),
            InMemoryDriverStore(),
            InMemoryAssignmentStore(),
            InMemoryTrackingStore(),
            settings=settings,
            notifier=notifier,
        )

    state_manager = state_manager or StateManager(settings.redis_url)
    return DispatchEngine(
        RedisOrderStore(state_manager),
        RedisDriverStore(state_manager),
        RedisAssignmentStore(state_manager),
        RedisTrackingStore(state_manager),
        settings=settings,
        notifier=notifier,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # Startup
    logger.info("application_starting")
    settings = get_settings()

    state_manager = None
    if settings.store_backend == "redis":
        state_manager = StateManager(settings.redis_url)
        await state_manager.connect()
        logger.info("state_manager_initialized")

    engine = build_engine(settings, state_manager)
    app.state.engine = engine

    stop = asyncio.Event()
    sweeper = asyncio.create_task(engine.run_sweeper(stop))

    yield

    # Shutdown
    logger.info("application_shutting_down")
    stop.set()
    await sweeper
    await engine.drain_notifications()
    if state_manager is not None:
        await state_manager.disconnect()


# Create FastAPI app
app = FastAPI(
    title="Delivery Dispatch Engine",
    description="Driver matching, routing, ETA and live tracking for restaurant deliveries",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping


@app.exception_handler(DispatchValidationError)
async def validation_error_handler(request: Request, exc: DispatchValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "DispatchValidationError",
            "message": "Invalid request",
            "error_code": "VALIDATION_ERROR",
            "context": {"errors": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=exc.to_dict())


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=exc.to_dict())


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    logger.error("unhandled_dispatch_error", error=exc.message, error_code=exc.error_code)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "InternalError", "message": "Internal server error"},
    )


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "delivery-dispatch"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": "Delivery Dispatch Engine API",
        "docs": "/docs",
        "health": "/health",
    }


# Import and include routers
from dispatch.api.routes import router
from dispatch.api.websocket import handle_subscription, manager

app.include_router(router, prefix="/api/v1", tags=["api"])


# WebSocket endpoint
@app.websocket("/ws/{recipient_type}/{recipient_id}")
async def websocket_endpoint(websocket: WebSocket, recipient_type: str, recipient_id: str) -> None:
    """Push notifications for one driver or customer."""
    await handle_subscription(websocket, recipient_type, recipient_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dispatch.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )
