"""
Payment plan enumerations.
"""

import enum


class PaymentPlanStatus(str, enum.Enum):
    """Payment plan (subscription) status enumeration."""
    ACTIVE = "ACTIVE"  # Charging on schedule
    PAUSED = "PAUSED"  # Temporarily not charging
    CANCELLED = "CANCELLED"  # Cancelled by trainer or client
    ENDED = "ENDED"  # End date passed


class PaymentPlanPaymentStatus(str, enum.Enum):
    """Scheduled payment status enumeration."""
    PENDING = "PENDING"  # Due, not yet attempted
    PAID = "PAID"  # Charged successfully
    REJECTED = "REJECTED"  # Last charge attempt failed, retried daily
    CANCELLED = "CANCELLED"  # Will not be charged


# Daily retries of a rejected payment stop after this many failures.
MAX_PAYMENT_RETRIES = 10
