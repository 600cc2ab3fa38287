from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.core.http import build_http_client
from helpdesk.core.metrics import observe_notification_sent
from helpdesk.core.middleware import log_json
from helpdesk.models.enums import NotificationChannel
from helpdesk.models.identity import Team, User, UserTeam
from helpdesk.models.notifications import NotificationEvent, NotificationRecipient
from helpdesk.models.tickets import Ticket
from helpdesk.services.entities import load_ownerships
from helpdesk.services.notification_events import (
    EventLinkageError,
    build_event_context,
    load_event_subject,
    recipient_context,
)
from helpdesk.services.notification_rules import matching_rule, rule_event_type
from helpdesk.services.notification_senders import NotificationSender, build_notification_sender
from helpdesk.services.notification_templates import render_notification
from helpdesk.services.threads import is_first_thread
from helpdesk.worker.errors import PermanentJobError
from helpdesk.worker.payloads import EventJobPayload

logger = logging.getLogger("helpdesk.worker")


def notification_delivery(*, session: Session, payload: dict) -> None:
    event_id = EventJobPayload.from_payload(payload).event_id
    with build_http_client() as http_client:
        deliver_event(
            session=session,
            event_id=event_id,
            sender=build_notification_sender(http_client),
        )


def _memberships_by_user(session: Session, user_ids: list[int]) -> dict[int, list[tuple]]:
    rows = session.execute(
        select(UserTeam.user_id, UserTeam.id, Team.id, Team.name)
        .join(Team, Team.id == UserTeam.team_id)
        .where(
            UserTeam.user_id.in_(user_ids),
            UserTeam.is_active.is_(True),
            Team.is_active.is_(True),
        )
        .order_by(UserTeam.id)
    ).all()
    by_user: dict[int, list[tuple]] = {}
    for user_id, user_team_id, team_id, team_name in rows:
        by_user.setdefault(user_id, []).append((user_team_id, team_id, team_name))
    return by_user


def deliver_event(*, session: Session, event_id: int, sender: NotificationSender) -> int:
    """Send every pending channel of every recipient of `event_id`; returns sends performed.

    A channel flag is set only after its send returned, so a retried job resends nothing that
    already went out. A transport error propagates and the queue retries the job.
    """
    event = session.get(NotificationEvent, event_id)
    if event is None:
        log_json(logger, logging.WARNING, "notification.delivery.event_missing", event_id=event_id)
        raise PermanentJobError(f"notification event {event_id} is missing")
    try:
        subject = load_event_subject(session, event)
    except EventLinkageError as e:
        log_json(
            logger,
            logging.WARNING,
            "notification.delivery.unlinked",
            event_id=event_id,
            error=str(e),
        )
        raise PermanentJobError(str(e)) from e
    ticket = session.get(Ticket, subject.ticket_id)
    if ticket is None:
        raise PermanentJobError(f"ticket {subject.ticket_id} for event {event_id} is missing")

    first_thread = subject.thread is not None and is_first_thread(session, subject.thread)
    rule_type = rule_event_type(event.type, first_thread=first_thread)

    pending = session.execute(
        select(NotificationRecipient, User)
        .join(User, User.id == NotificationRecipient.user_id)
        .where(
            NotificationRecipient.event_id == event.id,
            (NotificationRecipient.email_notified.is_(False))
            | (NotificationRecipient.sms_notified.is_(False)),
        )
        .order_by(NotificationRecipient.id)
        .with_for_update(of=NotificationRecipient)
    ).all()
    if not pending:
        return 0

    base = build_event_context(
        session, event=event, subject=subject, ticket=ticket, rule_type=rule_type.value
    )
    ownerships = load_ownerships(session, [ticket.current_assigned_to_id, ticket.created_by_id])
    assigned = ownerships.get(ticket.current_assigned_to_id)
    created = ownerships.get(ticket.created_by_id)
    memberships = _memberships_by_user(session, [user.id for _, user in pending])

    sent = 0
    for recipient, user in pending:
        mine = memberships.get(user.id, [])
        context = recipient_context(
            base,
            user=user,
            team_names=[name for _, _, name in mine],
            user_team_ids={user_team_id for user_team_id, _, _ in mine},
            team_ids={team_id for _, team_id, _ in mine},
            assigned=assigned,
            created=created,
        )

        if not recipient.email_notified and user.email:
            if matching_rule(user.email_notification_preferences, rule_type, context) is not None:
                rendered = render_notification(NotificationChannel.email, rule_type, context)
                sender.send_email(user.email, rendered.subject, rendered.body)
                recipient.email_notified = True
                session.flush()
                observe_notification_sent(channel="email", event_type=rule_type.value)
                sent += 1

        if not recipient.sms_notified and user.mobile:
            if matching_rule(user.sms_notification_preferences, rule_type, context) is not None:
                rendered = render_notification(NotificationChannel.sms, rule_type, context)
                sender.send_sms(user.mobile, rendered.body)
                recipient.sms_notified = True
                session.flush()
                observe_notification_sent(channel="sms", event_type=rule_type.value)
                sent += 1

    log_json(
        logger,
        logging.INFO,
        "notification.delivery.completed",
        event_id=event.id,
        rule_event_type=rule_type.value,
        recipients=len(pending),
        sent=sent,
    )
    return sent
