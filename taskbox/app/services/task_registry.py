"""
Task Handler Registry.

Maps every TaskType to its payload model and handler. The dispatcher
validates stored payloads against the definition's payload model.
Checked for exhaustiveness at import: adding a TaskType without a
definition fails loudly at startup instead of at dispatch time.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Type, Union

from taskbox.app.models.task_enums import TaskType
from taskbox.app.schemas.task_payloads import TASK_PAYLOAD_SCHEMAS, TaskPayload, resolve_task_type
from taskbox.app.services.handlers.app_store import handle_refresh_app_store_receipts
from taskbox.app.services.handlers.mail import handle_send_mail
from taskbox.app.services.handlers.mailchimp import (
    handle_mailchimp_subscribe,
    handle_mailchimp_refresh_user_properties,
    handle_update_mailchimp_list_member_tags,
)
from taskbox.app.services.handlers.notify import handle_user_notify
from taskbox.app.services.handlers.payment_plans import handle_charge_outstanding, handle_charge_payment_plans
from taskbox.app.services.handlers.reminders import (
    handle_send_payment_reminders,
    handle_send_appointment_reminders,
)
from taskbox.app.services.handlers.sms import handle_send_sms
from taskbox.app.services.handlers.trials import handle_tag_trialled_didnt_sub
from taskbox.app.services.task_context import TaskContext

TaskHandler = Callable[[Any, TaskContext], Awaitable[None]]


@dataclass(frozen=True)
class TaskDefinition:
    task_type: TaskType
    payload_model: Type[TaskPayload]
    handler: TaskHandler


_HANDLERS: Dict[TaskType, TaskHandler] = {
    TaskType.USER_NOTIFY: handle_user_notify,
    TaskType.CHARGE_OUTSTANDING: handle_charge_outstanding,
    TaskType.SEND_MAIL: handle_send_mail,
    TaskType.SEND_SMS: handle_send_sms,
    TaskType.MAILCHIMP_SUBSCRIBE: handle_mailchimp_subscribe,
    TaskType.MAILCHIMP_REFRESH_USER_PROPERTIES: handle_mailchimp_refresh_user_properties,
    TaskType.UPDATE_MAILCHIMP_LIST_MEMBER_TAGS: handle_update_mailchimp_list_member_tags,
    TaskType.REFRESH_APP_STORE_RECEIPTS: handle_refresh_app_store_receipts,
    TaskType.CHARGE_PAYMENT_PLANS: handle_charge_payment_plans,
    TaskType.SEND_PAYMENT_REMINDERS: handle_send_payment_reminders,
    TaskType.SEND_APPOINTMENT_REMINDERS: handle_send_appointment_reminders,
    TaskType.TAG_TRIALLED_DIDNT_SUB: handle_tag_trialled_didnt_sub,
}

_missing_handlers = set(TaskType) - set(_HANDLERS)
if _missing_handlers:
    raise RuntimeError(f"Task types without handler: {sorted(t.value for t in _missing_handlers)}")

TASK_DEFINITIONS: Dict[TaskType, TaskDefinition] = {
    task_type: TaskDefinition(
        task_type=task_type,
        payload_model=TASK_PAYLOAD_SCHEMAS[task_type],
        handler=handler,
    )
    for task_type, handler in _HANDLERS.items()
}


def get_task_definition(task_type: Union[TaskType, str]) -> TaskDefinition:
    """
    Raises:
        UnknownTaskTypeError: If the tag is not a known task type
    """
    return TASK_DEFINITIONS[resolve_task_type(task_type)]
