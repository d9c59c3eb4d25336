"""
FastAPI Application Entry Point.

Composition root of the Taskbox dispatcher: builds provider clients,
installs the process's single DispatcherController and seeds recurring
tasks.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from taskbox.app.core.config import settings
from taskbox.app.api.v1.router import router as api_v1_router
from taskbox.app.core.observability import ObservabilityMiddleware, configure_logging
from taskbox.app.core.redis_client import redis_client, ping_redis
from taskbox.app.db.session import engine, Base, AsyncSessionLocal
from taskbox.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from taskbox.app.services.dispatcher import DispatcherController, TaskDispatcher, install_dispatcher
from taskbox.app.services.providers.factory import build_http_client, build_providers
from taskbox.app.services.scheduler import seed_recurring_tasks

# Import models to ensure they are registered with Base
from taskbox.app.models.task import Task
from taskbox.app.models.trainer import Trainer
from taskbox.app.models.client import Client
from taskbox.app.models.notification import Notification
from taskbox.app.models.sms import Sms
from taskbox.app.models.mail import Mail
from taskbox.app.models.appointment import Appointment
from taskbox.app.models.payment_plan import PaymentPlan, PaymentPlanPayment
from taskbox.app.models.app_store_receipt import AppStoreReceipt

logger = logging.getLogger("taskbox.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables and provider clients on startup.
    2. Starts the dispatcher loop (unless disabled) and seeds recurring tasks.
    3. Stops the loop and closes the HTTP client on shutdown.
    """
    configure_logging(settings.log_level)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    http = build_http_client(settings)
    app.state.providers = build_providers(settings, http)
    controller = None

    if settings.outbox_dispatcher_enabled:
        dispatcher = TaskDispatcher(AsyncSessionLocal, app.state.providers, settings)
        controller = install_dispatcher(app, DispatcherController(
            dispatcher,
            redis=redis_client if settings.outbox_wake_enabled else None,
        ))
        await seed_recurring_tasks(AsyncSessionLocal)
        controller.start()
    else:
        logger.info("Outbox dispatcher disabled by configuration")

    yield

    if controller is not None:
        await controller.stop()
        app.state.dispatcher = None
    await http.aclose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Durable outbox task dispatcher",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and dispatcher state
    """
    controller = getattr(app.state, "dispatcher", None)
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "dispatcher": {
            "running": bool(controller and controller.running),
            "enabled": bool(controller and controller.dispatcher.enabled),
        },
        "redis": await ping_redis() if settings.outbox_wake_enabled else None,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")
