"""
Mailchimp list sync handlers.

All three are no-ops when Mailchimp is not configured or the trainer no
longer exists.
"""

import logging
from typing import Dict, Optional

from taskbox.app.core.exceptions import ProviderError
from taskbox.app.models.trainer import Trainer
from taskbox.app.schemas.task_payloads import (
    MailchimpSubscribePayload,
    MailchimpRefreshUserPropertiesPayload,
    UpdateMailchimpListMemberTagsPayload,
)
from taskbox.app.services.providers.mailchimp import ALREADY_MEMBER_DETAIL, FAKE_EMAIL_DETAIL
from taskbox.app.services.task_context import TaskContext

logger = logging.getLogger("taskbox.handlers.mailchimp")


async def _load_trainer(ctx: TaskContext, trainer_id: int) -> Optional[Trainer]:
    if not ctx.providers.mailchimp.configured:
        logger.debug("Mailchimp not configured, skipping", extra=ctx.log_extra)
        return None
    async with ctx.session_factory() as db:
        return await db.get(Trainer, trainer_id)


def _merge_fields(trainer: Trainer) -> Dict[str, str]:
    fields = {"FNAME": trainer.first_name}
    if trainer.last_name:
        fields["LNAME"] = trainer.last_name
    return fields


async def handle_mailchimp_subscribe(payload: MailchimpSubscribePayload, ctx: TaskContext) -> None:
    trainer = await _load_trainer(ctx, payload.trainer_id)
    if trainer is None:
        return

    try:
        await ctx.providers.mailchimp.add_list_member(trainer.email, _merge_fields(trainer))
    except ProviderError as exc:
        detail = exc.detail or ""
        if FAKE_EMAIL_DETAIL in detail:
            logger.debug("Mailchimp skipped fake email", extra=ctx.log_extra)
            return
        if ALREADY_MEMBER_DETAIL in detail:
            logger.debug("Mailchimp member already exists", extra=ctx.log_extra)
            return
        raise


async def handle_mailchimp_refresh_user_properties(
    payload: MailchimpRefreshUserPropertiesPayload,
    ctx: TaskContext,
) -> None:
    trainer = await _load_trainer(ctx, payload.trainer_id)
    if trainer is None:
        return

    try:
        await ctx.providers.mailchimp.update_list_member(payload.email, _merge_fields(trainer))
    except ProviderError as exc:
        if exc.provider_status == 404:
            logger.debug("Mailchimp member not found for refresh", extra=ctx.log_extra)
            return
        raise


async def handle_update_mailchimp_list_member_tags(
    payload: UpdateMailchimpListMemberTagsPayload,
    ctx: TaskContext,
) -> None:
    trainer = await _load_trainer(ctx, payload.trainer_id)
    if trainer is None:
        return

    tags = [tag.model_dump() for tag in payload.tags]
    try:
        await ctx.providers.mailchimp.update_list_member_tags(trainer.email, tags)
    except ProviderError as exc:
        if exc.provider_status == 404:
            logger.debug("Mailchimp member not found for tag update", extra=ctx.log_extra)
            return
        raise
