"""
Task-related enumerations.
"""

import enum


class TaskStatus(str, enum.Enum):
    """Outbox row status enumeration."""
    PENDING = "pending"  # Waiting for available_at, claimable
    CLAIMED = "claimed"  # Held by exactly one dispatcher
    DONE = "done"  # Handler succeeded
    FAILED = "failed"  # Terminal, kept for operator inspection


# Rows that still represent outstanding work. Dedupe keys are unique only
# among these.
ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.CLAIMED)


class TaskType(str, enum.Enum):
    """
    Closed set of task types.

    Every member must have a payload schema and a handler in the registry.
    """
    USER_NOTIFY = "user.notify"
    CHARGE_OUTSTANDING = "payment-plan.charge-outstanding"
    SEND_MAIL = "sendMail"
    SEND_SMS = "sendSms"
    MAILCHIMP_SUBSCRIBE = "mailchimp.subscribe"
    MAILCHIMP_REFRESH_USER_PROPERTIES = "mailchimp.refresh_user_properties"
    UPDATE_MAILCHIMP_LIST_MEMBER_TAGS = "updateMailchimpListMemberTags"
    REFRESH_APP_STORE_RECEIPTS = "refreshAppStoreReceipts"
    CHARGE_PAYMENT_PLANS = "chargePaymentPlans"
    SEND_PAYMENT_REMINDERS = "sendPaymentReminders"
    SEND_APPOINTMENT_REMINDERS = "sendAppointmentReminders"
    TAG_TRIALLED_DIDNT_SUB = "tagTrialledDidntSub"
