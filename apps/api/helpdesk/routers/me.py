from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from helpdesk.core.deps import get_permission_bundle
from helpdesk.db.session import get_session
from helpdesk.schemas.me import (
    ActingTeamUpdateRequest,
    MembershipOut,
    MePermissionsResponse,
    NotificationPreferencesOut,
)
from helpdesk.schemas.notifications import NotificationPreferencesUpdateRequest
from helpdesk.services.permissions import PermissionBundle
from helpdesk.services.ticket_commands import set_acting_membership
from helpdesk.services.users import get_user, set_notification_preferences

router = APIRouter(prefix="/me", tags=["me"])


@router.get("/permissions", response_model=MePermissionsResponse)
def me_permissions(
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> MePermissionsResponse:
    user = get_user(session, bundle.user_id)
    return MePermissionsResponse(
        user_id=bundle.user_id,
        permissions=sorted(bundle.all_permissions()),
        user_permissions=sorted(bundle.user_permissions.raw),
        memberships=[
            MembershipOut(
                user_team_id=m.user_team_id,
                team_id=m.team_id,
                team_permissions=sorted(m.team_permissions.raw),
                user_team_permissions=sorted(m.user_team_permissions.raw),
            )
            for m in bundle.memberships
        ],
        acting_user_team_id=user.acting_user_team_id,
    )


@router.put("/acting-team", response_model=MePermissionsResponse)
def me_acting_team(
    payload: ActingTeamUpdateRequest,
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> MePermissionsResponse:
    set_acting_membership(session=session, bundle=bundle, user_team_id=payload.user_team_id)
    session.commit()
    return me_permissions(bundle=bundle, session=session)


@router.put("/notification-preferences", response_model=NotificationPreferencesOut)
def me_notification_preferences(
    payload: NotificationPreferencesUpdateRequest,
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> NotificationPreferencesOut:
    user = set_notification_preferences(
        session=session,
        user_id=bundle.user_id,
        channel=payload.channel,
        preferences=payload.preferences.to_stored(),
    )
    session.commit()
    return NotificationPreferencesOut(
        email=user.email_notification_preferences,
        sms=user.sms_notification_preferences,
    )
