from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.core.errors import InvalidPayloadError, NotFoundError, PermissionDeniedError
from helpdesk.core.middleware import log_json
from helpdesk.models.enums import ChangeField, NotificationEventType
from helpdesk.models.identity import Entity, User
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
from helpdesk.services.categories import require_category_access
from helpdesk.services.entities import (
    Ownership,
    UserTeamOwner,
    load_ownerships,
    resolve_entity_for,
)
from helpdesk.services.permissions import TICKET_CREATE, MembershipGrants, PermissionBundle
from helpdesk.services.threads import seal_thread_body
from helpdesk.services.ticket_access import TicketOwnership, ticket_access_for_user
from helpdesk.services.ticket_changes import (
    require_change,
    require_claim,
    require_thread_create,
)
from helpdesk.worker.queue import enqueue_notification_init

logger = logging.getLogger("helpdesk.api")


@dataclass(frozen=True)
class CommandResult:
    ticket: Ticket
    event_id: int
    change_id: int | None = None
    thread_id: int | None = None


@dataclass(frozen=True)
class _FieldSpec:
    change_model: type
    lookup_model: type
    ticket_attr: str
    event_type: NotificationEventType
    event_link: str


_FIELD_SPECS: dict[ChangeField, _FieldSpec] = {
    ChangeField.status: _FieldSpec(
        change_model=TicketChangeStatus,
        lookup_model=TicketStatus,
        ticket_attr="current_status_id",
        event_type=NotificationEventType.TICKET_STATUS_CHANGED,
        event_link="on_status_change_id",
    ),
    ChangeField.priority: _FieldSpec(
        change_model=TicketChangePriority,
        lookup_model=TicketPriority,
        ticket_attr="current_priority_id",
        event_type=NotificationEventType.TICKET_PRIORITY_CHANGED,
        event_link="on_priority_change_id",
    ),
    ChangeField.category: _FieldSpec(
        change_model=TicketChangeCategory,
        lookup_model=TicketCategory,
        ticket_attr="current_category_id",
        event_type=NotificationEventType.TICKET_CATEGORY_CHANGED,
        event_link="on_category_change_id",
    ),
}


def acting_membership(session: Session, bundle: PermissionBundle) -> MembershipGrants:
    """The membership the actor acts through: their saved preference, else the first active one."""
    user = session.get(User, bundle.user_id)
    preferred = user.acting_user_team_id if user is not None else None
    membership = bundle.membership(preferred)
    if membership is None and bundle.memberships:
        membership = bundle.memberships[0]
    if membership is None:
        raise InvalidPayloadError("Actor has no active team membership to act through")
    return membership


def set_acting_membership(*, session: Session, bundle: PermissionBundle, user_team_id: int) -> None:
    if bundle.membership(user_team_id) is None:
        raise InvalidPayloadError(f"user_team_id={user_team_id} is not an active membership")
    user = session.get(User, bundle.user_id)
    if user is None:
        raise NotFoundError("user", bundle.user_id)
    user.acting_user_team_id = user_team_id
    session.flush()


def _actor_entity(session: Session, bundle: PermissionBundle) -> Ownership:
    membership = acting_membership(session, bundle)
    entity_id = resolve_entity_for(session, UserTeamOwner(membership.user_team_id))
    return Ownership(
        entity_id=entity_id, team_id=membership.team_id, user_team_id=membership.user_team_id
    )


def _load_ticket_for_update(*, session: Session, ticket_id: int) -> Ticket:
    ticket = (
        session.execute(select(Ticket).where(Ticket.id == ticket_id).with_for_update())
        .scalars()
        .first()
    )
    if ticket is None:
        raise NotFoundError("ticket", ticket_id)
    return ticket


def _require_row(session: Session, model: type, row_id: int, label: str) -> None:
    if session.get(model, row_id) is None:
        raise InvalidPayloadError(f"{label}={row_id} does not exist")


def _record_event(
    session: Session, *, event_type: NotificationEventType, **link: int
) -> NotificationEvent:
    event = NotificationEvent(type=event_type, **link)
    session.add(event)
    session.flush()
    enqueue_notification_init(session=session, event_id=event.id)
    log_json(logger, logging.INFO, "notification.event.recorded", event_id=event.id, **link)
    return event


def _touch(ticket: Ticket) -> None:
    ticket.updated_at = datetime.now(UTC)


def _default_status_id(session: Session) -> int:
    status_id = session.execute(
        select(TicketStatus.id)
        .where(TicketStatus.is_closed.is_(False))
        .order_by(TicketStatus.sort_order.asc(), TicketStatus.id.asc())
        .limit(1)
    ).scalar_one_or_none()
    if status_id is None:
        raise InvalidPayloadError("No open ticket status is configured")
    return status_id


def create_ticket(
    *,
    session: Session,
    bundle: PermissionBundle,
    title: str,
    body_html: str,
    category_id: int,
    priority_id: int,
    status_id: int | None = None,
    assigned_to_entity_id: int | None = None,
) -> CommandResult:
    """Open a ticket with its first thread; the event links that thread as TICKET_CREATED."""
    if not bundle.has(TICKET_CREATE):
        raise PermissionDeniedError(
            TICKET_CREATE, resource_type="ticket", context={"user_id": bundle.user_id}
        )
    title = (title or "").strip()
    if not title:
        raise InvalidPayloadError("title cannot be empty")
    require_category_access(session, bundle, category_id)
    _require_row(session, TicketPriority, priority_id, "priority")
    if status_id is None:
        status_id = _default_status_id(session)
    else:
        _require_row(session, TicketStatus, status_id, "status")
    if assigned_to_entity_id is not None:
        _require_row(session, Entity, assigned_to_entity_id, "assigned_to_entity_id")

    actor = _actor_entity(session, bundle)
    now = datetime.now(UTC)
    ticket = Ticket(
        title=title,
        current_status_id=status_id,
        current_priority_id=priority_id,
        current_category_id=category_id,
        current_assigned_to_id=assigned_to_entity_id,
        created_by_id=actor.entity_id,
        created_at=now,
        updated_at=now,
    )
    session.add(ticket)
    session.flush()

    thread = TicketThread(
        ticket_id=ticket.id,
        body_encrypted=seal_thread_body(ticket_id=ticket.id, html=body_html),
        created_by_id=actor.entity_id,
        created_at=now,
    )
    session.add(thread)
    session.flush()

    event = _record_event(
        session, event_type=NotificationEventType.TICKET_CREATED, on_thread_id=thread.id
    )
    return CommandResult(ticket=ticket, event_id=event.id, thread_id=thread.id)


def create_thread(
    *,
    session: Session,
    bundle: PermissionBundle,
    ticket_id: int,
    body_html: str,
) -> CommandResult:
    ticket = _load_ticket_for_update(session=session, ticket_id=ticket_id)
    access = ticket_access_for_user(session, bundle, ticket_id)
    require_thread_create(access, ticket_id, bundle)

    status_row = session.get(TicketStatus, ticket.current_status_id)
    if status_row is not None and status_row.is_closed:
        raise InvalidPayloadError("Closed tickets do not accept new threads")

    actor = _actor_entity(session, bundle)
    thread = TicketThread(
        ticket_id=ticket.id,
        body_encrypted=seal_thread_body(ticket_id=ticket.id, html=body_html),
        created_by_id=actor.entity_id,
        created_at=datetime.now(UTC),
    )
    session.add(thread)
    _touch(ticket)
    session.flush()

    event = _record_event(
        session, event_type=NotificationEventType.TICKET_THREAD_NEW, on_thread_id=thread.id
    )
    return CommandResult(ticket=ticket, event_id=event.id, thread_id=thread.id)


def _apply_assignment(
    session: Session,
    *,
    ticket: Ticket,
    to_entity_id: int | None,
    actor: Ownership,
) -> CommandResult:
    change = TicketChangeAssignment(
        ticket_id=ticket.id,
        assigned_from_id=ticket.current_assigned_to_id,
        assigned_to_id=to_entity_id,
        changed_by_id=actor.entity_id,
        changed_at=datetime.now(UTC),
    )
    session.add(change)
    ticket.current_assigned_to_id = to_entity_id
    _touch(ticket)
    session.flush()

    event = _record_event(
        session,
        event_type=NotificationEventType.TICKET_ASSIGNMENT_CHANGED,
        on_assignment_change_id=change.id,
    )
    return CommandResult(ticket=ticket, event_id=event.id, change_id=change.id)


def change_assignment(
    *,
    session: Session,
    bundle: PermissionBundle,
    ticket_id: int,
    to_entity_id: int | None,
) -> CommandResult:
    ticket = _load_ticket_for_update(session=session, ticket_id=ticket_id)
    ownerships = load_ownerships(session, [ticket.current_assigned_to_id, to_entity_id])
    from_value = ownerships.get(ticket.current_assigned_to_id)
    to_value = ownerships.get(to_entity_id) if to_entity_id is not None else None

    access = ticket_access_for_user(session, bundle, ticket_id)
    owner_view = TicketOwnership(
        ticket_id=ticket.id,
        assigned=from_value,
        created=access.ownership.created if access is not None else None,
    )
    if to_entity_id is not None and to_value is None:
        # Unknown or ownerless assignees are refused like any other denied transition.
        raise PermissionDeniedError(
            f"ticket:action:change:{ChangeField.assignment.value}",
            resource_type="ticket",
            context={
                "ticket_id": ticket.id,
                "user_id": bundle.user_id,
                "to_entity_id": to_entity_id,
            },
        )
    require_change(access, owner_view, ChangeField.assignment, from_value, to_value, bundle)
    if to_entity_id == ticket.current_assigned_to_id:
        raise InvalidPayloadError("Ticket is already assigned to that entity")

    actor = _actor_entity(session, bundle)
    return _apply_assignment(session, ticket=ticket, to_entity_id=to_entity_id, actor=actor)


def claim_ticket(*, session: Session, bundle: PermissionBundle, ticket_id: int) -> CommandResult:
    """Assign the ticket to the actor's acting membership."""
    ticket = _load_ticket_for_update(session=session, ticket_id=ticket_id)
    actor = _actor_entity(session, bundle)
    if ticket.current_assigned_to_id == actor.entity_id:
        raise InvalidPayloadError("Ticket is already claimed by this membership")

    current = load_ownerships(session, [ticket.current_assigned_to_id]).get(
        ticket.current_assigned_to_id
    )
    owner_view = TicketOwnership(ticket_id=ticket.id, assigned=current, created=None)
    require_claim(owner_view, actor, bundle)
    return _apply_assignment(session, ticket=ticket, to_entity_id=actor.entity_id, actor=actor)


def change_field(
    *,
    session: Session,
    bundle: PermissionBundle,
    ticket_id: int,
    field: ChangeField,
    to_id: int,
) -> CommandResult:
    """Status, priority or category transition."""
    spec = _FIELD_SPECS.get(field)
    if spec is None:
        raise InvalidPayloadError(f"Unsupported field: {field}")

    ticket = _load_ticket_for_update(session=session, ticket_id=ticket_id)
    from_id = getattr(ticket, spec.ticket_attr)
    access = ticket_access_for_user(session, bundle, ticket_id)
    ownership = (
        access.ownership
        if access is not None
        else TicketOwnership(ticket_id=ticket.id, assigned=None, created=None)
    )
    require_change(access, ownership, field, from_id, to_id, bundle)

    _require_row(session, spec.lookup_model, to_id, field.value)
    if from_id == to_id:
        raise InvalidPayloadError(f"Ticket {field.value} is already {to_id}")
    if field == ChangeField.category:
        require_category_access(session, bundle, to_id)

    actor = _actor_entity(session, bundle)
    change = spec.change_model(
        ticket_id=ticket.id,
        from_id=from_id,
        to_id=to_id,
        changed_by_id=actor.entity_id,
        changed_at=datetime.now(UTC),
    )
    session.add(change)
    setattr(ticket, spec.ticket_attr, to_id)
    _touch(ticket)
    session.flush()

    event = _record_event(session, event_type=spec.event_type, **{spec.event_link: change.id})
    return CommandResult(ticket=ticket, event_id=event.id, change_id=change.id)
