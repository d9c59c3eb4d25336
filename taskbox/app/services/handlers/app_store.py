"""
`refreshAppStoreReceipts` handler.
"""

import logging
from datetime import timedelta

from sqlalchemy import or_, select, update

from taskbox.app.core.exceptions import FatalTaskError
from taskbox.app.core.timeutils import utcnow
from taskbox.app.models.app_store_receipt import AppStoreReceipt
from taskbox.app.schemas.task_payloads import ScheduledTaskPayload
from taskbox.app.services.providers.app_store import latest_expiry
from taskbox.app.services.task_context import TaskContext

logger = logging.getLogger("taskbox.handlers.app_store")

# Receipts that expired longer ago than this are no longer refreshed.
REFRESH_HORIZON = timedelta(days=60)


async def handle_refresh_app_store_receipts(payload: ScheduledTaskPayload, ctx: TaskContext) -> None:
    """
    Re-verify recent receipts with Apple and store their latest expiry.

    Receipts are loaded up front; each result is written in its own short
    transaction, never across an Apple call. A retry re-verifies
    everything, which is harmless.
    """
    app_store = ctx.providers.app_store
    if not app_store.configured:
        raise FatalTaskError("APP_STORE_SHARED_SECRET is not configured")

    now = utcnow()
    refreshed = 0

    async with ctx.session_factory() as db:
        result = await db.execute(
            select(AppStoreReceipt.id, AppStoreReceipt.encoded_receipt, AppStoreReceipt.original_transaction_id)
            .where(or_(
                AppStoreReceipt.expires_at.is_(None),
                AppStoreReceipt.expires_at > now - REFRESH_HORIZON,
            ))
            .order_by(AppStoreReceipt.id)
        )
        receipts = result.all()

    for receipt in receipts:
        verified = await app_store.verify_receipt(receipt.encoded_receipt)
        status = verified.get("status")

        values = {"last_status": status, "refreshed_at": utcnow()}
        if status == 0:
            expires_at = latest_expiry(verified, receipt.original_transaction_id)
            if expires_at:
                values["expires_at"] = expires_at
            refreshed += 1
        else:
            logger.warning(
                "Receipt verification returned status %s", status,
                extra={**ctx.log_extra, "receipt_id": receipt.id},
            )

        async with ctx.session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(AppStoreReceipt)
                    .where(AppStoreReceipt.id == receipt.id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

    logger.info("Refreshed %d of %d receipt(s)", refreshed, len(receipts), extra=ctx.log_extra)
