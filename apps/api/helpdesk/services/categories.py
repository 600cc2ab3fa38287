from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.core.errors import PermissionDeniedError
from helpdesk.models.tickets import TicketCategory, TicketCategoryTeamAccess
from helpdesk.services.permissions import CATEGORY_VIEW_ANY, CATEGORY_VIEW_OWN, PermissionBundle


def _children_map(session: Session) -> dict[int | None, list[int]]:
    children: dict[int | None, list[int]] = {}
    for category_id, parent_id in session.execute(
        select(TicketCategory.id, TicketCategory.parent_id).order_by(TicketCategory.id)
    ):
        children.setdefault(parent_id, []).append(category_id)
    return children


def expand_descendants(roots: set[int], children: dict[int | None, list[int]]) -> set[int]:
    """Iterative DFS; every granted node contributes itself and all of its descendants."""
    closure: set[int] = set()
    stack = list(roots)
    while stack:
        node = stack.pop()
        if node in closure:
            continue
        closure.add(node)
        stack.extend(children.get(node, ()))
    return closure


def accessible_category_ids(session: Session, bundle: PermissionBundle) -> set[int]:
    if bundle.has(CATEGORY_VIEW_ANY):
        return set(session.execute(select(TicketCategory.id)).scalars())
    if not bundle.has(CATEGORY_VIEW_OWN) or not bundle.team_ids:
        return set()

    granted = set(
        session.execute(
            select(TicketCategoryTeamAccess.category_id).where(
                TicketCategoryTeamAccess.team_id.in_(bundle.team_ids)
            )
        ).scalars()
    )
    if not granted:
        return set()
    return expand_descendants(granted, _children_map(session))


def ancestor_chain(session: Session, category_id: int) -> set[int]:
    """`category_id` plus every ancestor up to its root; empty when the id does not exist."""
    parents = dict(session.execute(select(TicketCategory.id, TicketCategory.parent_id)).all())
    chain: set[int] = set()
    node: int | None = category_id
    while node is not None and node in parents and node not in chain:
        chain.add(node)
        node = parents[node]
    return chain


def require_category_access(session: Session, bundle: PermissionBundle, category_id: int) -> None:
    # Unknown ids are reported as forbidden too.
    if category_id not in accessible_category_ids(session, bundle):
        raise PermissionDeniedError(
            CATEGORY_VIEW_OWN,
            resource_type="ticket_category",
            context={"category_id": category_id, "user_id": bundle.user_id},
        )
