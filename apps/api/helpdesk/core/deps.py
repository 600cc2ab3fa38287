from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from helpdesk.core.config import get_settings
from helpdesk.core.errors import NotFoundError
from helpdesk.db.session import get_session
from helpdesk.services.permissions import PermissionBundle, load_permission_bundle


def get_actor_user_id(request: Request) -> int:
    """Authenticated user id.

    The session layer in front of this service overrides this dependency. The header fallback
    is only honoured when explicitly trusted (dev/test).
    """
    settings = get_settings()
    if not settings.TRUST_ACTOR_HEADER:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    raw = (request.headers.get(settings.ACTOR_HEADER_NAME) or "").strip()
    if not raw.isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return int(raw)


def get_permission_bundle(
    user_id: int = Depends(get_actor_user_id),
    session: Session = Depends(get_session),
) -> PermissionBundle:
    # Built per request; permission edits apply on the next call.
    try:
        return load_permission_bundle(session, user_id)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user"
        ) from e
