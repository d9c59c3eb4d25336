"""
Task payload schemas.

One payload model per TaskType. Payloads are validated on enqueue (fail
fast on programmer error) and again by the dispatcher before the handler
runs, since stored rows may predate a schema change.
"""

from pydantic import BaseModel, Field, ValidationError
from typing import Dict, List, Literal, Optional, Type, Union, Any
from datetime import datetime

from taskbox.app.core.exceptions import TaskValidationError, UnknownTaskTypeError
from taskbox.app.models.notification import MessageType, NotificationCategory
from taskbox.app.models.task_enums import TaskType


class TaskPayload(BaseModel):
    """Base for all payloads: strict keys, trimmed strings."""

    class Config:
        extra = "forbid"
        str_strip_whitespace = True


class UserNotifyPayload(TaskPayload):
    user_id: int
    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
    message_type: MessageType = MessageType.DEFAULT
    category: NotificationCategory = NotificationCategory.GENERAL
    client_id: Optional[int] = None
    payment_plan_id: Optional[int] = None


class ChargeOutstandingPayload(TaskPayload):
    payment_plan_id: int
    for_scheduled_task: bool = False


class SendMailPayload(TaskPayload):
    id: int


class SendSmsPayload(TaskPayload):
    id: int


class MailchimpSubscribePayload(TaskPayload):
    trainer_id: int


class MailchimpRefreshUserPropertiesPayload(TaskPayload):
    trainer_id: int
    email: str = Field(min_length=1)


class MailchimpTag(TaskPayload):
    name: str = Field(min_length=1)
    status: Literal["active", "inactive"]


class UpdateMailchimpListMemberTagsPayload(TaskPayload):
    trainer_id: int
    tags: List[MailchimpTag] = Field(min_length=1)


class ScheduledTaskPayload(TaskPayload):
    """Payload of every recurring task: the slot this occurrence was scheduled for."""
    scheduled_at: Optional[datetime] = None


TASK_PAYLOAD_SCHEMAS: Dict[TaskType, Type[TaskPayload]] = {
    TaskType.USER_NOTIFY: UserNotifyPayload,
    TaskType.CHARGE_OUTSTANDING: ChargeOutstandingPayload,
    TaskType.SEND_MAIL: SendMailPayload,
    TaskType.SEND_SMS: SendSmsPayload,
    TaskType.MAILCHIMP_SUBSCRIBE: MailchimpSubscribePayload,
    TaskType.MAILCHIMP_REFRESH_USER_PROPERTIES: MailchimpRefreshUserPropertiesPayload,
    TaskType.UPDATE_MAILCHIMP_LIST_MEMBER_TAGS: UpdateMailchimpListMemberTagsPayload,
    TaskType.REFRESH_APP_STORE_RECEIPTS: ScheduledTaskPayload,
    TaskType.CHARGE_PAYMENT_PLANS: ScheduledTaskPayload,
    TaskType.SEND_PAYMENT_REMINDERS: ScheduledTaskPayload,
    TaskType.SEND_APPOINTMENT_REMINDERS: ScheduledTaskPayload,
    TaskType.TAG_TRIALLED_DIDNT_SUB: ScheduledTaskPayload,
}

_missing_schemas = set(TaskType) - set(TASK_PAYLOAD_SCHEMAS)
if _missing_schemas:
    raise RuntimeError(f"Task types without payload schema: {sorted(t.value for t in _missing_schemas)}")


def resolve_task_type(task_type: Union[TaskType, str]) -> TaskType:
    """
    Map a tag to its TaskType.

    Raises:
        UnknownTaskTypeError: If the tag is not a known task type
    """
    if isinstance(task_type, TaskType):
        return task_type
    try:
        return TaskType(task_type)
    except ValueError:
        raise UnknownTaskTypeError(str(task_type)) from None


def parse_task_payload(
    task_type: TaskType,
    payload: Any,
    schema: Optional[Type[TaskPayload]] = None,
) -> TaskPayload:
    """
    Validate a raw or typed payload against `schema` (default: the
    registered schema of `task_type`).

    Raises:
        TaskValidationError: If the payload does not match
    """
    schema = schema or TASK_PAYLOAD_SCHEMAS[task_type]

    if isinstance(payload, TaskPayload):
        if not isinstance(payload, schema):
            raise TaskValidationError(
                task_type.value,
                f"expected {schema.__name__}, got {type(payload).__name__}",
            )
        return payload

    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise TaskValidationError(
            task_type.value,
            f"{exc.error_count()} validation error(s)",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


def serialize_task_payload(payload: TaskPayload) -> Dict[str, Any]:
    """JSON-ready dict stored in `tasks.payload`."""
    return payload.model_dump(mode="json", exclude_none=True)
