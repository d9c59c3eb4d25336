"""
Standalone dispatcher process.

Runs the outbox dispatcher without the HTTP API:

    python -m taskbox.app.worker

Seeds recurring tasks, then polls until SIGINT/SIGTERM.
"""

import signal
import asyncio
import logging

from taskbox.app.core.config import settings
from taskbox.app.core.observability import configure_logging
from taskbox.app.core.redis_client import redis_client
from taskbox.app.db.session import engine, Base, AsyncSessionLocal
from taskbox.app.services.dispatcher import DispatcherController, TaskDispatcher
from taskbox.app.services.providers.factory import build_http_client, build_providers
from taskbox.app.services.scheduler import seed_recurring_tasks

# Import models to ensure they are registered with Base
from taskbox.app.models.task import Task  # noqa: F401
from taskbox.app.models.trainer import Trainer  # noqa: F401
from taskbox.app.models.client import Client  # noqa: F401
from taskbox.app.models.notification import Notification  # noqa: F401
from taskbox.app.models.sms import Sms  # noqa: F401
from taskbox.app.models.mail import Mail  # noqa: F401
from taskbox.app.models.appointment import Appointment  # noqa: F401
from taskbox.app.models.payment_plan import PaymentPlan, PaymentPlanPayment  # noqa: F401
from taskbox.app.models.app_store_receipt import AppStoreReceipt  # noqa: F401

logger = logging.getLogger("taskbox.worker")


async def run_worker() -> None:
    configure_logging(settings.log_level)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with build_http_client(settings) as http:
        dispatcher = TaskDispatcher(AsyncSessionLocal, build_providers(settings, http), settings)
        controller = DispatcherController(
            dispatcher,
            redis=redis_client if settings.outbox_wake_enabled else None,
        )

        await seed_recurring_tasks(AsyncSessionLocal)
        controller.start()
        logger.info("Worker running", extra={"worker_id": dispatcher.worker_id})

        await stop.wait()
        logger.info("Shutdown signal received", extra={"worker_id": dispatcher.worker_id})
        await controller.stop()

    await engine.dispose()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
