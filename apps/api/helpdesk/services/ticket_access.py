from __future__ import annotations

import enum
from dataclasses import dataclass, field

from sqlalchemy import ColumnElement, and_, false, func, or_, select, true
from sqlalchemy.orm import Session, aliased

from helpdesk.core.errors import NotFoundError
from helpdesk.models.identity import Entity, UserTeam
from helpdesk.models.tickets import Ticket
from helpdesk.services.entities import Ownership, find_entity_ids, load_ownerships
from helpdesk.services.permissions import (
    GrantSource,
    ParsedPermissions,
    PermissionBundle,
    ReadScope,
    Relation,
    load_all_bundles,
)


class AccessType(enum.StrEnum):
    assignment = "assignment"
    creation = "creation"
    action = "action"


RELATION_ACCESS_TYPES = {
    Relation.assigned: AccessType.assignment,
    Relation.createdby: AccessType.creation,
}


@dataclass(frozen=True)
class AccessVia:
    """One read rule of an actor; doubles as the provenance entry when it matches a ticket."""

    type: AccessType
    scope: str
    permission: str
    source: GrantSource
    team_id: int | None = None
    user_team_id: int | None = None


@dataclass(frozen=True)
class TicketOwnership:
    ticket_id: int
    assigned: Ownership | None
    created: Ownership | None


@dataclass(frozen=True)
class AccessibleTicket:
    ticket_id: int
    access_via: tuple[AccessVia, ...]


@dataclass(frozen=True)
class TicketAccess:
    ticket_id: int
    ownership: TicketOwnership
    access_via: tuple[AccessVia, ...]

    def has(self, access_type: AccessType, scopes: set[str] | None = None) -> bool:
        return any(
            via.type == access_type and (scopes is None or via.scope in scopes)
            for via in self.access_via
        )


@dataclass(frozen=True)
class MembershipAccess:
    user_team_id: int
    team_id: int
    user_team_entity_id: int | None
    team_entity_id: int | None
    granting_permissions: tuple[str, ...]


@dataclass(frozen=True)
class UserAccess:
    user_id: int
    granting_permissions: tuple[str, ...]
    user_teams: tuple[MembershipAccess, ...] = ()


@dataclass(frozen=True)
class TicketAudience:
    ticket_id: int
    users: list[UserAccess] = field(default_factory=list)

    @property
    def user_ids(self) -> list[int]:
        return [u.user_id for u in self.users]


def _rules_from(
    perms: ParsedPermissions,
    *,
    source: GrantSource,
    team_id: int | None = None,
    user_team_id: int | None = None,
) -> list[AccessVia]:
    rules = [
        AccessVia(
            type=RELATION_ACCESS_TYPES[grant.relation],
            scope=grant.scope.value,
            permission=grant.permission,
            source=source,
            team_id=team_id,
            user_team_id=user_team_id,
        )
        for grant in perms.reads
    ]
    rules.extend(
        AccessVia(
            type=AccessType.action,
            scope=ReadScope.any.value,
            permission=permission,
            source=source,
            team_id=team_id,
            user_team_id=user_team_id,
        )
        for permission in perms.synthetic_reads
    )
    return rules


def access_rules(bundle: PermissionBundle) -> list[AccessVia]:
    rules = _rules_from(bundle.user_permissions, source=GrantSource.user)
    for membership in bundle.memberships:
        for source, perms in membership.sources():
            rules.extend(
                _rules_from(
                    perms,
                    source=source,
                    team_id=membership.team_id,
                    user_team_id=membership.user_team_id,
                )
            )
    return rules


def rule_matches(rule: AccessVia, ticket: TicketOwnership) -> bool:
    if rule.scope == ReadScope.any:
        return True
    target = ticket.assigned if rule.type == AccessType.assignment else ticket.created
    if target is None:
        return False
    if rule.scope == ReadScope.self:
        return rule.user_team_id is not None and target.user_team_id == rule.user_team_id
    if rule.team_id is None or target.team_id != rule.team_id:
        return False
    if rule.scope == ReadScope.team_unclaimed:
        return target.unclaimed
    return rule.scope == ReadScope.team_any


def matching_rules(rules: list[AccessVia], ticket: TicketOwnership) -> tuple[AccessVia, ...]:
    return tuple(rule for rule in rules if rule_matches(rule, ticket))


class _OwnershipColumns:
    """Outer-joined aliases exposing the effective team/membership of one entity reference."""

    def __init__(self, reference) -> None:
        self.entity = aliased(Entity)
        self.member = aliased(UserTeam)
        self.reference = reference
        self.team_id = func.coalesce(self.entity.team_id, self.member.team_id)
        self.user_team_id = self.entity.user_team_id

    def join(self, stmt):
        return stmt.outerjoin(self.entity, self.entity.id == self.reference).outerjoin(
            self.member, self.member.id == self.entity.user_team_id
        )


def _rule_predicate(rule: AccessVia, target: _OwnershipColumns) -> ColumnElement[bool]:
    if rule.scope == ReadScope.any:
        return true()
    if rule.scope == ReadScope.self:
        if rule.user_team_id is None:
            return false()
        return target.user_team_id == rule.user_team_id
    if rule.team_id is None:
        return false()
    if rule.scope == ReadScope.team_unclaimed:
        return and_(target.team_id == rule.team_id, target.user_team_id.is_(None))
    return target.team_id == rule.team_id


def accessible_tickets(
    session: Session,
    bundle: PermissionBundle,
    *,
    limit: int | None = None,
) -> list[AccessibleTicket]:
    """Tickets visible to the actor, newest first, each with every rule that grants it."""
    rules = access_rules(bundle)
    if not rules:
        return []

    assigned = _OwnershipColumns(Ticket.current_assigned_to_id)
    created = _OwnershipColumns(Ticket.created_by_id)

    stmt = select(Ticket.id, Ticket.current_assigned_to_id, Ticket.created_by_id)
    if not any(rule.scope == ReadScope.any for rule in rules):
        stmt = created.join(assigned.join(stmt))
        stmt = stmt.where(
            or_(
                *(
                    _rule_predicate(
                        rule, assigned if rule.type == AccessType.assignment else created
                    )
                    for rule in rules
                )
            )
        )
    stmt = stmt.order_by(Ticket.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)

    rows = session.execute(stmt).all()
    ownerships = load_ownerships(
        session, [r.current_assigned_to_id for r in rows] + [r.created_by_id for r in rows]
    )

    result: list[AccessibleTicket] = []
    for row in rows:
        ticket = TicketOwnership(
            ticket_id=row.id,
            assigned=ownerships.get(row.current_assigned_to_id),
            created=ownerships.get(row.created_by_id),
        )
        via = matching_rules(rules, ticket)
        if via:
            result.append(AccessibleTicket(ticket_id=row.id, access_via=via))
    return result


def load_ticket_ownership(session: Session, ticket_id: int) -> TicketOwnership:
    row = session.execute(
        select(Ticket.id, Ticket.current_assigned_to_id, Ticket.created_by_id).where(
            Ticket.id == ticket_id
        )
    ).one_or_none()
    if row is None:
        raise NotFoundError("ticket", ticket_id)
    ownerships = load_ownerships(session, [row.current_assigned_to_id, row.created_by_id])
    return TicketOwnership(
        ticket_id=row.id,
        assigned=ownerships.get(row.current_assigned_to_id),
        created=ownerships.get(row.created_by_id),
    )


def ticket_access_for_user(
    session: Session, bundle: PermissionBundle, ticket_id: int
) -> TicketAccess | None:
    """Access of one actor to one ticket; None when no rule grants it."""
    ownership = load_ticket_ownership(session, ticket_id)
    via = matching_rules(access_rules(bundle), ownership)
    if not via:
        return None
    return TicketAccess(ticket_id=ticket_id, ownership=ownership, access_via=via)


def _unique(values) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def who_can_access(session: Session, ticket_id: int) -> TicketAudience:
    """Every active user whose fresh bundle reaches the ticket, with per-membership provenance.

    Uses the same rule matcher as `accessible_tickets`, so the two stay dual to each other.
    """
    ownership = load_ticket_ownership(session, ticket_id)

    matched: list[tuple[PermissionBundle, tuple[AccessVia, ...]]] = []
    for bundle in load_all_bundles(session):
        via = matching_rules(access_rules(bundle), ownership)
        if via:
            matched.append((bundle, via))

    team_ids = {m.team_id for bundle, _ in matched for m in bundle.memberships}
    user_team_ids = {m.user_team_id for bundle, _ in matched for m in bundle.memberships}
    team_entities, user_team_entities = find_entity_ids(
        session, team_ids=team_ids, user_team_ids=user_team_ids
    )

    users: list[UserAccess] = []
    for bundle, via in matched:
        memberships = []
        for m in bundle.memberships:
            granting = _unique(
                v.permission
                for v in via
                if v.source != GrantSource.user and v.user_team_id == m.user_team_id
            )
            if not granting:
                continue
            memberships.append(
                MembershipAccess(
                    user_team_id=m.user_team_id,
                    team_id=m.team_id,
                    user_team_entity_id=user_team_entities.get(m.user_team_id),
                    team_entity_id=team_entities.get(m.team_id),
                    granting_permissions=granting,
                )
            )
        users.append(
            UserAccess(
                user_id=bundle.user_id,
                granting_permissions=_unique(
                    v.permission for v in via if v.source == GrantSource.user
                ),
                user_teams=tuple(memberships),
            )
        )
    return TicketAudience(ticket_id=ticket_id, users=users)
