from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.core.crypto import DecryptionError
from helpdesk.core.middleware import log_json
from helpdesk.models.enums import ChangeField
from helpdesk.models.identity import ApiKey, Entity, Team, User, UserTeam
from helpdesk.models.notifications import NotificationEvent
from helpdesk.models.tickets import (
    Ticket,
    TicketCategory,
    TicketChangeAssignment,
    TicketChangeCategory,
    TicketChangePriority,
    TicketChangeStatus,
    TicketPriority,
    TicketStatus,
    TicketThread,
)
from helpdesk.services.entities import Ownership
from helpdesk.services.notification_senders import html_to_text
from helpdesk.services.threads import read_thread_body

logger = logging.getLogger("helpdesk.worker")

_LINKS: tuple[tuple[str, type, ChangeField | None], ...] = (
    ("on_thread_id", TicketThread, None),
    ("on_assignment_change_id", TicketChangeAssignment, ChangeField.assignment),
    ("on_priority_change_id", TicketChangePriority, ChangeField.priority),
    ("on_status_change_id", TicketChangeStatus, ChangeField.status),
    ("on_category_change_id", TicketChangeCategory, ChangeField.category),
)

_FIELD_LOOKUPS: dict[ChangeField, type] = {
    ChangeField.priority: TicketPriority,
    ChangeField.status: TicketStatus,
    ChangeField.category: TicketCategory,
}


class EventLinkageError(LookupError):
    """The event does not resolve to exactly one thread or change record."""


@dataclass(frozen=True)
class EventSubject:
    ticket_id: int
    thread: TicketThread | None = None
    change: Any | None = None
    change_field: ChangeField | None = None


def load_event_subject(session: Session, event: NotificationEvent) -> EventSubject:
    populated = [
        (column, model, change_field)
        for column, model, change_field in _LINKS
        if getattr(event, column) is not None
    ]
    if len(populated) != 1:
        raise EventLinkageError(
            f"notification event {event.id} has {len(populated)} populated links"
        )
    column, model, change_field = populated[0]
    row = session.get(model, getattr(event, column))
    if row is None:
        raise EventLinkageError(f"notification event {event.id} points at a missing {column}")
    if change_field is None:
        return EventSubject(ticket_id=row.ticket_id, thread=row)
    return EventSubject(ticket_id=row.ticket_id, change=row, change_field=change_field)


def entity_label(session: Session, entity_id: int | None) -> str:
    if entity_id is None:
        return "Unassigned"
    entity = session.get(Entity, entity_id)
    if entity is None:
        return ""
    if entity.user_team_id is not None:
        row = session.execute(
            select(User.display_name, User.email, Team.name)
            .join(UserTeam, UserTeam.user_id == User.id)
            .join(Team, Team.id == UserTeam.team_id)
            .where(UserTeam.id == entity.user_team_id)
        ).one_or_none()
        if row is None:
            return ""
        return f"{row.display_name or row.email} ({row.name})"
    if entity.team_id is not None:
        team = session.get(Team, entity.team_id)
        return team.name if team is not None else ""
    if entity.api_key_id is not None:
        key = session.get(ApiKey, entity.api_key_id)
        return key.name if key is not None else ""
    return ""


def _name_of(session: Session, model: type, row_id: int | None) -> str:
    if row_id is None:
        return ""
    row = session.get(model, row_id)
    return row.name if row is not None else ""


def _thread_text(thread: TicketThread) -> str:
    try:
        return html_to_text(read_thread_body(thread))
    except DecryptionError:
        log_json(logger, logging.WARNING, "notification.thread.undecryptable", thread_id=thread.id)
        return ""


def build_event_context(
    session: Session,
    *,
    event: NotificationEvent,
    subject: EventSubject,
    ticket: Ticket,
    rule_type: str,
) -> dict[str, Any]:
    """Recipient-independent part of the context rules and templates see."""
    context: dict[str, Any] = {
        "priority": ticket.current_priority_id,
        "status": ticket.current_status_id,
        "category": ticket.current_category_id,
        "event": {"id": event.id, "type": rule_type, "recordedType": event.type.value},
        "ticket": {
            "id": ticket.id,
            "title": ticket.title,
            "statusId": ticket.current_status_id,
            "priorityId": ticket.current_priority_id,
            "categoryId": ticket.current_category_id,
            "status": _name_of(session, TicketStatus, ticket.current_status_id),
            "priority": _name_of(session, TicketPriority, ticket.current_priority_id),
            "category": _name_of(session, TicketCategory, ticket.current_category_id),
            "assignedTo": entity_label(session, ticket.current_assigned_to_id),
        },
    }
    if subject.thread is not None:
        context["thread"] = {"id": subject.thread.id, "body": _thread_text(subject.thread)}
        context["actor"] = {"name": entity_label(session, subject.thread.created_by_id)}
    elif subject.change is not None:
        change = subject.change
        if subject.change_field == ChangeField.assignment:
            from_id, to_id = change.assigned_from_id, change.assigned_to_id
            from_label = entity_label(session, from_id)
            to_label = entity_label(session, to_id)
        else:
            lookup = _FIELD_LOOKUPS[subject.change_field]
            from_id, to_id = change.from_id, change.to_id
            from_label = _name_of(session, lookup, from_id)
            to_label = _name_of(session, lookup, to_id)
        context["change"] = {
            "id": change.id,
            "field": subject.change_field.value,
            "fromId": from_id,
            "toId": to_id,
            "from": from_label,
            "to": to_label,
        }
        context["actor"] = {"name": entity_label(session, change.changed_by_id)}
    return context


def recipient_context(
    base: dict[str, Any],
    *,
    user: User,
    team_names: list[str],
    user_team_ids: set[int],
    team_ids: set[int],
    assigned: Ownership | None,
    created: Ownership | None,
) -> dict[str, Any]:
    return {
        **base,
        "assignedToMe": assigned is not None and assigned.user_team_id in user_team_ids,
        "assignedToMyTeams": assigned is not None and assigned.team_id in team_ids,
        "createdByMe": created is not None and created.user_team_id in user_team_ids,
        "user": {
            "id": user.id,
            "displayName": user.display_name or user.email,
            "email": user.email,
            "mobile": user.mobile,
            "teams": team_names,
        },
    }
