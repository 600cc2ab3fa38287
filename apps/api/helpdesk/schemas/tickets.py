from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class AccessViaOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    scope: str
    permission: str
    source: str
    team_id: int | None
    user_team_id: int | None


class AccessibleTicketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: int
    access_via: list[AccessViaOut]


class AccessibleTicketsResponse(BaseModel):
    items: list[AccessibleTicketOut]


class TicketAccessResponse(BaseModel):
    ticket_id: int
    access_via: list[AccessViaOut]


class MembershipAccessOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_team_id: int
    team_id: int
    user_team_entity_id: int | None
    team_entity_id: int | None
    granting_permissions: list[str]


class UserAccessOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    granting_permissions: list[str]
    user_teams: list[MembershipAccessOut]


class TicketAudienceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: int
    users: list[UserAccessOut]


class TicketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    current_status_id: int
    current_priority_id: int
    current_category_id: int
    current_assigned_to_id: int | None
    created_by_id: int
    created_at: datetime
    updated_at: datetime


class TicketCommandResponse(BaseModel):
    ticket: TicketOut
    event_id: int
    change_id: int | None = None
    thread_id: int | None = None


class TicketCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    body_html: str = Field(min_length=1)
    category_id: int
    priority_id: int
    status_id: int | None = None
    assigned_to_entity_id: int | None = None


class ThreadCreateRequest(BaseModel):
    body_html: str = Field(min_length=1)


class AssignmentChangeRequest(BaseModel):
    to_entity_id: int | None


class FieldChangeRequest(BaseModel):
    to_id: int
