from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.core.deps import get_permission_bundle
from helpdesk.db.session import get_session
from helpdesk.models.tickets import TicketCategory
from helpdesk.schemas.categories import CategoryOut
from helpdesk.services.categories import accessible_category_ids
from helpdesk.services.permissions import PermissionBundle

router = APIRouter(prefix="/categories", tags=["categories"])


@router.get("/accessible", response_model=list[CategoryOut])
def categories_accessible(
    bundle: PermissionBundle = Depends(get_permission_bundle),
    session: Session = Depends(get_session),
) -> list[CategoryOut]:
    ids = accessible_category_ids(session, bundle)
    if not ids:
        return []
    rows = session.execute(
        select(TicketCategory)
        .where(TicketCategory.id.in_(ids))
        .order_by(TicketCategory.priority.asc(), TicketCategory.id.asc())
    ).scalars()
    return [CategoryOut.model_validate(row) for row in rows]
