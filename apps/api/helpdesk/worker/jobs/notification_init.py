from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from helpdesk.core.errors import NotFoundError
from helpdesk.core.middleware import log_json
from helpdesk.db.inserts import insert_or_skip
from helpdesk.models.notifications import NotificationEvent, NotificationRecipient
from helpdesk.services.notification_events import EventLinkageError, load_event_subject
from helpdesk.services.ticket_access import who_can_access
from helpdesk.worker.errors import PermanentJobError
from helpdesk.worker.payloads import EventJobPayload
from helpdesk.worker.queue import enqueue_notification_delivery

logger = logging.getLogger("helpdesk.worker")


def notification_init(*, session: Session, payload: dict) -> None:
    """Materialize one recipient row per user who can access the event's ticket."""
    event_id = EventJobPayload.from_payload(payload).event_id

    event = session.get(NotificationEvent, event_id)
    if event is None:
        log_json(logger, logging.WARNING, "notification.init.event_missing", event_id=event_id)
        raise PermanentJobError(f"notification event {event_id} is missing")

    try:
        subject = load_event_subject(session, event)
        audience = who_can_access(session, subject.ticket_id)
    except (EventLinkageError, NotFoundError) as e:
        log_json(
            logger, logging.WARNING, "notification.init.unlinked", event_id=event_id, error=str(e)
        )
        raise PermanentJobError(str(e)) from e

    if audience.users:
        now = datetime.now(UTC)
        session.execute(
            insert_or_skip(session, NotificationRecipient)
            .values(
                [
                    {
                        "event_id": event.id,
                        "user_id": user_id,
                        "email_notified": False,
                        "sms_notified": False,
                        "created_at": now,
                    }
                    for user_id in audience.user_ids
                ]
            )
            .on_conflict_do_nothing()
        )

    enqueue_notification_delivery(session=session, event_id=event.id)
    log_json(
        logger,
        logging.INFO,
        "notification.init.completed",
        event_id=event.id,
        ticket_id=subject.ticket_id,
        recipients=len(audience.users),
    )
