from __future__ import annotations

import enum


class JobStatus(enum.StrEnum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class JobType(enum.StrEnum):
    notification_init = "notification_init"
    notification_delivery = "notification_delivery"


class NotificationEventType(enum.StrEnum):
    """Kinds recorded on `notification_events.type`."""

    TICKET_CREATED = "TICKET_CREATED"
    TICKET_THREAD_NEW = "TICKET_THREAD_NEW"
    TICKET_ASSIGNMENT_CHANGED = "TICKET_ASSIGNMENT_CHANGED"
    TICKET_PRIORITY_CHANGED = "TICKET_PRIORITY_CHANGED"
    TICKET_STATUS_CHANGED = "TICKET_STATUS_CHANGED"
    TICKET_CATEGORY_CHANGED = "TICKET_CATEGORY_CHANGED"


class RuleEventType(enum.StrEnum):
    """Names users select in their notification rules."""

    TICKET_CREATED = "TICKET_CREATED"
    NEW_THREAD = "NEW_THREAD"
    ASSIGNMENT_CHANGED = "ASSIGNMENT_CHANGED"
    PRIORITY_CHANGED = "PRIORITY_CHANGED"
    STATUS_CHANGED = "STATUS_CHANGED"
    CATEGORY_CHANGED = "CATEGORY_CHANGED"


class NotificationChannel(enum.StrEnum):
    email = "email"
    sms = "sms"


class ChangeField(enum.StrEnum):
    assignment = "assigned"
    category = "category"
    priority = "priority"
    status = "status"
