from __future__ import annotations

from pydantic import BaseModel


class MembershipOut(BaseModel):
    user_team_id: int
    team_id: int
    team_permissions: list[str]
    user_team_permissions: list[str]


class MePermissionsResponse(BaseModel):
    user_id: int
    permissions: list[str]
    user_permissions: list[str]
    memberships: list[MembershipOut]
    acting_user_team_id: int | None


class ActingTeamUpdateRequest(BaseModel):
    user_team_id: int


class NotificationPreferencesOut(BaseModel):
    email: dict | None
    sms: dict | None
