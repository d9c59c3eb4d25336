"""
`tagTrialledDidntSub` handler.
"""

import logging

from sqlalchemy import update

from taskbox.app.core.redis_client import wake_dispatchers
from taskbox.app.core.timeutils import utcnow
from taskbox.app.models.task_enums import TaskType
from taskbox.app.models.trainer import Trainer
from taskbox.app.schemas.task_payloads import (
    MailchimpTag,
    ScheduledTaskPayload,
    UpdateMailchimpListMemberTagsPayload,
)
from taskbox.app.services.outbox import enqueue
from taskbox.app.services.task_context import TaskContext

logger = logging.getLogger("taskbox.handlers.trials")

TRIALLED_DIDNT_SUB_TAG = "Trialled didn't sub"


async def handle_tag_trialled_didnt_sub(payload: ScheduledTaskPayload, ctx: TaskContext) -> None:
    """Flag trainers whose trial ended without a subscription and tag them in Mailchimp."""
    now = utcnow()

    async with ctx.session_factory() as db:
        async with db.begin():
            result = await db.execute(
                update(Trainer)
                .where(
                    Trainer.subscribed.is_(False),
                    Trainer.trialled_didnt_sub_tag_applied.is_(False),
                    Trainer.trial_ends_at.isnot(None),
                    Trainer.trial_ends_at <= now,
                )
                .values(trialled_didnt_sub_tag_applied=True)
                .returning(Trainer.id)
                .execution_options(synchronize_session=False)
            )
            trainer_ids = result.scalars().all()

            for trainer_id in trainer_ids:
                await enqueue(
                    db,
                    TaskType.UPDATE_MAILCHIMP_LIST_MEMBER_TAGS,
                    UpdateMailchimpListMemberTagsPayload(
                        trainer_id=trainer_id,
                        tags=[MailchimpTag(name=TRIALLED_DIDNT_SUB_TAG, status="active")],
                    ),
                )

    if trainer_ids:
        logger.info("Tagged %d trialled-didn't-sub trainer(s)", len(trainer_ids), extra=ctx.log_extra)
        await wake_dispatchers(ctx.task_type.value, ctx.settings)
