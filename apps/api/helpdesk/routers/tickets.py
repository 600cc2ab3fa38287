from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from helpdesk.core.config import get_settings
from helpdesk.core.deps import get_permission_bundle
from helpdesk.core.errors import PermissionDeniedError
from helpdesk.db.session import get_session
from helpdesk.models.enums import ChangeField
from helpdesk.schemas.tickets import (
    AccessibleTicketOut,
    AccessibleTicketsResponse,
    AccessViaOut,
    AssignmentChangeRequest,
    FieldChangeRequest,
    ThreadCreateRequest,
    TicketAccessResponse,
    TicketAudienceResponse,
    TicketCommandResponse,
    TicketCreateRequest,
    TicketOut,
)
from helpdesk.services.permissions import PermissionBundle
from helpdesk.services.ticket_access import (
    TicketAccess,
    accessible_tickets,
    ticket_access_for_user,
    who_can_access,
)
from helpdesk.services.ticket_commands import (
    CommandResult,
    change_assignment,
    change_field,
    claim_ticket,
    create_thread,
    create_ticket,
)

router = APIRouter(prefix="/tickets", tags=["tickets"])


def _command_response(result: CommandResult) -> TicketCommandResponse:
    return TicketCommandResponse(
        ticket=TicketOut.model_validate(result.ticket),
        event_id=result.event_id,
        change_id=result.change_id,
        thread_id=result.thread_id,
    )


def _require_access(session: Session, bundle: PermissionBundle, ticket_id: int) -> TicketAccess:
    access = ticket_access_for_user(session, bundle, ticket_id)
    if access is None:
        raise PermissionDeniedError(
            "ticket:read", resource_type="ticket", context={"ticket_id": ticket_id}
        )
    return access


@router.get("/accessible", response_model=AccessibleTicketsResponse)
def tickets_accessible(
    limit: int | None = Query(default=None, ge=1, le=1000),
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> AccessibleTicketsResponse:
    items = accessible_tickets(
        session,
        bundle,
        limit=limit or get_settings().ACCESSIBLE_TICKETS_DEFAULT_LIMIT,
    )
    return AccessibleTicketsResponse(
        items=[AccessibleTicketOut.model_validate(item) for item in items]
    )


@router.get("/{ticket_id}/access", response_model=TicketAccessResponse)
def ticket_access(
    ticket_id: int,
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> TicketAccessResponse:
    access = _require_access(session, bundle, ticket_id)
    return TicketAccessResponse(
        ticket_id=access.ticket_id,
        access_via=[AccessViaOut.model_validate(via) for via in access.access_via],
    )


@router.get("/{ticket_id}/audience", response_model=TicketAudienceResponse)
def ticket_audience(
    ticket_id: int,
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> TicketAudienceResponse:
    _require_access(session, bundle, ticket_id)
    return TicketAudienceResponse.model_validate(who_can_access(session, ticket_id))


@router.post("", response_model=TicketCommandResponse, status_code=status.HTTP_201_CREATED)
def ticket_create(
    payload: TicketCreateRequest,
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> TicketCommandResponse:
    result = create_ticket(
        session=session,
        bundle=bundle,
        title=payload.title,
        body_html=payload.body_html,
        category_id=payload.category_id,
        priority_id=payload.priority_id,
        status_id=payload.status_id,
        assigned_to_entity_id=payload.assigned_to_entity_id,
    )
    session.commit()
    return _command_response(result)


@router.post(
    "/{ticket_id}/threads",
    response_model=TicketCommandResponse,
    status_code=status.HTTP_201_CREATED,
)
def ticket_thread_create(
    ticket_id: int,
    payload: ThreadCreateRequest,
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> TicketCommandResponse:
    result = create_thread(
        session=session, bundle=bundle, ticket_id=ticket_id, body_html=payload.body_html
    )
    session.commit()
    return _command_response(result)


@router.post("/{ticket_id}/claim", response_model=TicketCommandResponse)
def ticket_claim(
    ticket_id: int,
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> TicketCommandResponse:
    result = claim_ticket(session=session, bundle=bundle, ticket_id=ticket_id)
    session.commit()
    return _command_response(result)


@router.post("/{ticket_id}/assignment", response_model=TicketCommandResponse)
def ticket_assignment(
    ticket_id: int,
    payload: AssignmentChangeRequest,
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> TicketCommandResponse:
    result = change_assignment(
        session=session, bundle=bundle, ticket_id=ticket_id, to_entity_id=payload.to_entity_id
    )
    session.commit()
    return _command_response(result)


def _field_route(field: ChangeField):
    def _route(
        ticket_id: int,
        payload: FieldChangeRequest,
        bundle: PermissionBundle = Depends(get_permission_bundle),
        session: Session = Depends(get_session),
    ) -> TicketCommandResponse:
        result = change_field(
            session=session, bundle=bundle, ticket_id=ticket_id, field=field, to_id=payload.to_id
        )
        session.commit()
        return _command_response(result)

    _route.__name__ = f"ticket_{field.value}_change"
    return _route


for _field in (ChangeField.status, ChangeField.priority, ChangeField.category):
    router.add_api_route(
        f"/{{ticket_id}}/{_field.value}",
        _field_route(_field),
        methods=["POST"],
        response_model=TicketCommandResponse,
    )
