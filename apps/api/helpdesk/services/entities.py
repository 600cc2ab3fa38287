from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from helpdesk.core.errors import NotFoundError
from helpdesk.core.middleware import log_json
from helpdesk.models.identity import ApiKey, Entity, Team, UserTeam
from helpdesk.models.tickets import (
    Ticket,
    TicketChangeAssignment,
    TicketChangeCategory,
    TicketChangePriority,
    TicketChangeStatus,
    TicketThread,
)

logger = logging.getLogger("helpdesk.api")


@dataclass(frozen=True)
class TeamOwner:
    team_id: int


@dataclass(frozen=True)
class UserTeamOwner:
    user_team_id: int


@dataclass(frozen=True)
class ApiKeyOwner:
    api_key_id: int


OwnerRef = TeamOwner | UserTeamOwner | ApiKeyOwner


@dataclass(frozen=True)
class Ownership:
    """Effective ownership of an entity as seen by the access resolvers.

    A team entity owns `(team_id, None)`, a membership entity owns `(membership.team_id,
    membership.id)` and an API-key entity owns nothing.
    """

    entity_id: int
    team_id: int | None
    user_team_id: int | None

    @property
    def unclaimed(self) -> bool:
        return self.user_team_id is None


# Every column that points at entities.id; duplicates are re-pointed before deletion.
_ENTITY_REFERENCES = (
    (Ticket, Ticket.current_assigned_to_id),
    (Ticket, Ticket.created_by_id),
    (TicketThread, TicketThread.created_by_id),
    (TicketChangeAssignment, TicketChangeAssignment.assigned_from_id),
    (TicketChangeAssignment, TicketChangeAssignment.assigned_to_id),
    (TicketChangeAssignment, TicketChangeAssignment.changed_by_id),
    (TicketChangeCategory, TicketChangeCategory.changed_by_id),
    (TicketChangePriority, TicketChangePriority.changed_by_id),
    (TicketChangeStatus, TicketChangeStatus.changed_by_id),
)


def owner_from_row(row: Entity) -> OwnerRef | None:
    """Decode an entity row; None when zero or several owner columns are set."""
    set_columns = [
        owner
        for owner in (
            TeamOwner(row.team_id) if row.team_id is not None else None,
            UserTeamOwner(row.user_team_id) if row.user_team_id is not None else None,
            ApiKeyOwner(row.api_key_id) if row.api_key_id is not None else None,
        )
        if owner is not None
    ]
    if len(set_columns) != 1:
        return None
    return set_columns[0]


def owner_of(session: Session, entity_id: int) -> OwnerRef | None:
    row = session.get(Entity, entity_id)
    if row is None:
        raise NotFoundError("entity", entity_id)
    return owner_from_row(row)


def _owner_target(owner: OwnerRef):
    if isinstance(owner, TeamOwner):
        return Team, Entity.team_id, owner.team_id
    if isinstance(owner, UserTeamOwner):
        return UserTeam, Entity.user_team_id, owner.user_team_id
    if isinstance(owner, ApiKeyOwner):
        return ApiKey, Entity.api_key_id, owner.api_key_id
    raise TypeError(f"Unsupported owner: {owner!r}")


def _repoint_references(session: Session, *, old_id: int, new_id: int) -> None:
    for model, column in _ENTITY_REFERENCES:
        session.execute(update(model).where(column == old_id).values({column.key: new_id}))


def _discard_entity(session: Session, row: Entity, *, keep_id: int | None, reason: str) -> None:
    log_json(
        logger,
        logging.WARNING,
        "entity.discarded",
        entity_id=row.id,
        keep_entity_id=keep_id,
        reason=reason,
        team_id=row.team_id,
        user_team_id=row.user_team_id,
        api_key_id=row.api_key_id,
    )
    if keep_id is not None:
        _repoint_references(session, old_id=row.id, new_id=keep_id)
    session.execute(delete(Entity).where(Entity.id == row.id))


def resolve_entity_for(session: Session, owner: OwnerRef) -> int:
    """Return the single entity id for `owner`, creating it when missing.

    The owner row is locked first so concurrent callers for the same owner serialize here.
    Invalid rows touching the owner and duplicate rows are folded into the kept entity.
    """
    model, column, owner_id = _owner_target(owner)
    locked = session.execute(
        select(model.id).where(model.id == owner_id).with_for_update()
    ).scalar_one_or_none()
    if locked is None:
        raise NotFoundError(model.__tablename__, owner_id)

    rows = list(
        session.execute(select(Entity).where(column == owner_id).order_by(Entity.id)).scalars()
    )
    valid = [row for row in rows if owner_from_row(row) == owner]
    invalid = [row for row in rows if owner_from_row(row) != owner]

    if valid:
        keep_id = valid[0].id
    else:
        entity = Entity(**{column.key: owner_id})
        session.add(entity)
        session.flush()
        keep_id = entity.id

    for row in invalid:
        _discard_entity(session, row, keep_id=keep_id, reason="invalid_owner_columns")
    for row in valid[1:]:
        _discard_entity(session, row, keep_id=keep_id, reason="duplicate_owner")
    if invalid or len(valid) > 1:
        session.flush()
        session.expire_all()
    return keep_id


def find_entity_ids(
    session: Session,
    *,
    team_ids: Iterable[int] = (),
    user_team_ids: Iterable[int] = (),
) -> tuple[dict[int, int], dict[int, int]]:
    """Read-only lookup of existing valid entities: `({team_id: id}, {user_team_id: id})`."""
    team_ids = set(team_ids)
    user_team_ids = set(user_team_ids)
    by_team: dict[int, int] = {}
    by_user_team: dict[int, int] = {}
    if not team_ids and not user_team_ids:
        return by_team, by_user_team

    rows = session.execute(
        select(Entity)
        .where(or_(Entity.team_id.in_(team_ids), Entity.user_team_id.in_(user_team_ids)))
        .order_by(Entity.id)
    ).scalars()
    for row in rows:
        owner = owner_from_row(row)
        if isinstance(owner, TeamOwner):
            by_team.setdefault(owner.team_id, row.id)
        elif isinstance(owner, UserTeamOwner):
            by_user_team.setdefault(owner.user_team_id, row.id)
    return by_team, by_user_team


def load_ownerships(session: Session, entity_ids: Iterable[int | None]) -> dict[int, Ownership]:
    ids = {entity_id for entity_id in entity_ids if entity_id is not None}
    if not ids:
        return {}
    rows = session.execute(
        select(Entity, UserTeam.team_id)
        .outerjoin(UserTeam, UserTeam.id == Entity.user_team_id)
        .where(Entity.id.in_(ids))
    ).all()

    result: dict[int, Ownership] = {}
    for row, membership_team_id in rows:
        owner = owner_from_row(row)
        if isinstance(owner, TeamOwner):
            result[row.id] = Ownership(entity_id=row.id, team_id=owner.team_id, user_team_id=None)
        elif isinstance(owner, UserTeamOwner):
            result[row.id] = Ownership(
                entity_id=row.id, team_id=membership_team_id, user_team_id=owner.user_team_id
            )
        elif isinstance(owner, ApiKeyOwner):
            result[row.id] = Ownership(entity_id=row.id, team_id=None, user_team_id=None)
        else:
            log_json(logger, logging.WARNING, "entity.invalid_skipped", entity_id=row.id)
    return result


def purge_invalid_entities(session: Session) -> int:
    """Delete every entity that does not carry exactly one owner.

    Rows with several owners are folded into the entity of their most specific owner
    (membership, then team, then API key); rows with no owner are dropped outright.
    """
    invalid_ids = [
        row.id
        for row in session.execute(select(Entity).order_by(Entity.id)).scalars()
        if owner_from_row(row) is None
    ]
    purged = 0
    for entity_id in invalid_ids:
        row = session.get(Entity, entity_id)
        if row is None:
            # Already folded while resolving an earlier row's owner.
            purged += 1
            continue
        owner: OwnerRef | None = None
        if row.user_team_id is not None:
            owner = UserTeamOwner(row.user_team_id)
        elif row.team_id is not None:
            owner = TeamOwner(row.team_id)
        purged += 1
        if owner is not None:
            try:
                resolve_entity_for(session, owner)
                continue
            except NotFoundError:
                pass
        _discard_entity(session, row, keep_id=None, reason="no_owner")
    session.flush()
    return purged


def ensure_entity_records(session: Session) -> int:
    """Sweep all teams, memberships and API keys so each has exactly one entity.

    Returns the number of entities created.
    """
    purge_invalid_entities(session)
    created = 0
    owners: list[OwnerRef] = []
    for model, make_owner in ((Team, TeamOwner), (UserTeam, UserTeamOwner), (ApiKey, ApiKeyOwner)):
        ids = session.execute(select(model.id).order_by(model.id)).scalars()
        owners.extend(make_owner(i) for i in ids)
    for owner in owners:
        _, column, owner_id = _owner_target(owner)
        existed = session.execute(
            select(Entity.id).where(column == owner_id).limit(1)
        ).scalar_one_or_none()
        resolve_entity_for(session, owner)
        if existed is None:
            created += 1
    return created
