"""Transition policy for assignment, category, priority and status changes.

Nothing here writes to the database; commands call `require_*` before touching any row.
"""

from __future__ import annotations

from collections.abc import Iterator

from helpdesk.core.errors import PermissionDeniedError
from helpdesk.models.enums import ChangeField
from helpdesk.services.entities import Ownership
from helpdesk.services.permissions import (
    AssignGrant,
    ClaimGrant,
    ParsedPermissions,
    PermissionBundle,
    ReadScope,
)
from helpdesk.services.ticket_access import (
    RELATION_ACCESS_TYPES,
    AccessType,
    TicketAccess,
    TicketOwnership,
)

def _all_sources(bundle: PermissionBundle) -> Iterator[tuple[ParsedPermissions, frozenset[int]]]:
    """Yield each permission set with the memberships its `own` scopes refer to."""
    yield bundle.user_permissions, bundle.user_team_ids
    for m in bundle.memberships:
        own = frozenset({m.user_team_id})
        yield m.team_permissions, own
        yield m.user_team_permissions, own


def _is_own(target: Ownership | None, own: frozenset[int]) -> bool:
    return target is not None and target.user_team_id in own


def _assign_grant_allows(
    grant: AssignGrant,
    own: frozenset[int],
    from_value: Ownership | None,
    to_value: Ownership | None,
) -> bool:
    if grant.unrestricted:
        return True
    if grant.from_scope == "own" and not _is_own(from_value, own):
        return False
    if grant.to_scope == "own" and not _is_own(to_value, own):
        return False
    return True


def _claim_grant_allows(
    grant: ClaimGrant, from_value: Ownership | None, destination: Ownership
) -> bool:
    unclaimed = from_value is None or from_value.unclaimed
    in_team = from_value is not None and from_value.team_id == destination.team_id
    if grant.target == "any":
        return grant.mode == "force" or unclaimed
    return in_team and (grant.mode == "force" or unclaimed)


def claim_permission(
    bundle: PermissionBundle,
    from_value: Ownership | None,
    destination: Ownership,
) -> str | None:
    """Claim grant that lets the actor move the ticket onto one of their own memberships."""
    membership = bundle.membership(destination.user_team_id)
    if membership is None:
        return None
    for perms in (
        bundle.user_permissions,
        membership.team_permissions,
        membership.user_team_permissions,
    ):
        for grant in perms.claims:
            if _claim_grant_allows(grant, from_value, destination):
                return grant.permission
    return None


def assignment_permission(
    bundle: PermissionBundle,
    from_value: Ownership | None,
    to_value: Ownership | None,
) -> str | None:
    for perms, own in _all_sources(bundle):
        for grant in perms.assigns:
            if _assign_grant_allows(grant, own, from_value, to_value):
                return grant.permission
    if to_value is not None and to_value.user_team_id is not None:
        return claim_permission(bundle, from_value, to_value)
    return None


def _access_satisfies(access: TicketAccess | None, access_type: AccessType, scope: str) -> bool:
    if access is None:
        return False
    if scope == "any":
        return access.has(access_type) or access.has(AccessType.action)
    if scope == "team":
        return access.has(access_type, {ReadScope.team_any.value})
    if scope == "team:unclaimed":
        return access.has(access_type, {ReadScope.team_unclaimed.value})
    return access.has(access_type, {ReadScope.self.value})


def field_change_permission(
    access: TicketAccess | None,
    bundle: PermissionBundle,
    change_field: ChangeField,
    from_value: int | None,
    to_value: int | None,
) -> str | None:
    for perms, _ in _all_sources(bundle):
        for grant in perms.changes:
            if grant.field != change_field or not grant.allows_values(from_value, to_value):
                continue
            if _access_satisfies(access, RELATION_ACCESS_TYPES[grant.relation], grant.scope):
                return grant.permission
    return None


def can_change(
    access: TicketAccess | None,
    ticket: TicketOwnership,
    change_field: ChangeField,
    from_value,
    to_value,
    bundle: PermissionBundle,
) -> bool:
    """Whether the actor may move `change_field` of `ticket` from `from_value` to `to_value`.

    For assignments the values are `Ownership | None`; for the other fields they are row ids.
    """
    if change_field == ChangeField.assignment:
        return assignment_permission(bundle, from_value, to_value) is not None
    return field_change_permission(access, bundle, change_field, from_value, to_value) is not None


def require_change(
    access: TicketAccess | None,
    ticket: TicketOwnership,
    change_field: ChangeField,
    from_value,
    to_value,
    bundle: PermissionBundle,
) -> None:
    if can_change(access, ticket, change_field, from_value, to_value, bundle):
        return
    if change_field == ChangeField.assignment:
        context = {
            "from_entity_id": from_value.entity_id if from_value is not None else None,
            "to_entity_id": to_value.entity_id if to_value is not None else None,
        }
    else:
        context = {"from": from_value, "to": to_value}
    raise PermissionDeniedError(
        f"ticket:action:change:{change_field.value}",
        resource_type="ticket",
        context={"ticket_id": ticket.ticket_id, "user_id": bundle.user_id, **context},
    )


def require_claim(
    ticket: TicketOwnership, destination: Ownership, bundle: PermissionBundle
) -> str:
    permission = claim_permission(bundle, ticket.assigned, destination)
    if permission is None:
        raise PermissionDeniedError(
            "ticket:action:claim",
            resource_type="ticket",
            context={
                "ticket_id": ticket.ticket_id,
                "user_id": bundle.user_id,
                "user_team_id": destination.user_team_id,
            },
        )
    return permission


def can_create_thread(access: TicketAccess | None, bundle: PermissionBundle) -> bool:
    if access is None:
        return False
    for perms, _ in _all_sources(bundle):
        for grant in perms.threads:
            # `any` only needs the ticket to be readable at all.
            if grant.scope == "any" or _access_satisfies(
                access, AccessType.assignment, grant.scope
            ):
                return True
    return False


def require_thread_create(
    access: TicketAccess | None, ticket_id: int, bundle: PermissionBundle
) -> None:
    if not can_create_thread(access, bundle):
        raise PermissionDeniedError(
            "ticket:action:thread:create",
            resource_type="ticket",
            context={"ticket_id": ticket_id, "user_id": bundle.user_id},
        )
