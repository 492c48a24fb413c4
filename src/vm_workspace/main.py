"""ASGI entrypoint wiring the reconciler, the event consumer and the status API."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis
from fastapi import FastAPI

from .api.routes import router as api_router
from .config import AppConfig, get_settings
from .events.consumer import EventConsumer
from .events.publisher import AuditEventPublisher, RabbitMQPublisher
from .orchestration.main import WorkspaceOrchestrator, build_reconciler
from .services.state_manager import WorkspaceStateManager

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    state = app.state
    LOGGER.info(
        "Starting VM workspace service",
        extra={"service": state.settings.service_name, "namespace": state.settings.kubernetes.namespace},
    )
    state.event_consumer.start()
    try:
        yield
    finally:
        LOGGER.info("Stopping VM workspace service")
        # Readiness waits are cancelled first so the consumer thread can finish its message.
        state.orchestrator.shutdown()
        state.event_consumer.stop()
        state.redis.close()


def configure_logging(settings: AppConfig) -> None:
    logging.basicConfig(level=settings.logging.level, format=LOG_FORMAT)
    logging.getLogger("pika").setLevel(logging.WARNING)


def create_app(settings: Optional[AppConfig] = None) -> FastAPI:
    """Build the service. ``settings`` defaults to the environment configuration."""

    settings = settings if settings is not None else get_settings()
    configure_logging(settings)

    redis_client = redis.from_url(settings.redis.url, decode_responses=settings.redis.decode_responses)
    state_manager = WorkspaceStateManager(redis_client)
    event_publisher = RabbitMQPublisher(settings)
    orchestrator = WorkspaceOrchestrator(
        settings,
        build_reconciler(settings, state_manager),
        event_publisher,
        AuditEventPublisher(event_publisher, settings.service_name),
    )

    app = FastAPI(title="VM Workspace Service", version="1.0.0", lifespan=lifespan)
    app.include_router(api_router, prefix=settings.api_prefix)

    app.state.settings = settings
    app.state.redis = redis_client
    app.state.state_manager = state_manager
    app.state.orchestrator = orchestrator
    app.state.event_consumer = EventConsumer(settings, orchestrator.handle_event)
    return app


def run() -> None:
    import uvicorn

    uvicorn.run("vm_workspace.main:create_app", factory=True, host="0.0.0.0", port=8000)


if __name__ == "__main__":  # pragma: no cover
    run()
