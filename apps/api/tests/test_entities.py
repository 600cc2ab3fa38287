from __future__ import annotations

import pytest
from sqlalchemy import select

from helpdesk.core.errors import NotFoundError
from helpdesk.models.identity import ApiKey, Entity
from helpdesk.models.tickets import Ticket
from helpdesk.services.entities import (
    ApiKeyOwner,
    Ownership,
    TeamOwner,
    UserTeamOwner,
    ensure_entity_records,
    load_ownerships,
    owner_from_row,
    owner_of,
    purge_invalid_entities,
    resolve_entity_for,
)


def _entity_ids(db_session) -> list[int]:
    return list(db_session.execute(select(Entity.id).order_by(Entity.id)).scalars())


def test_resolve_entity_is_idempotent(db_session, seed) -> None:
    team = seed.team("Support")
    first = resolve_entity_for(db_session, TeamOwner(team.id))
    second = resolve_entity_for(db_session, TeamOwner(team.id))
    assert first == second
    assert _entity_ids(db_session) == [first]
    assert owner_of(db_session, first) == TeamOwner(team.id)


def test_resolve_entity_for_missing_owner_raises(db_session) -> None:
    with pytest.raises(NotFoundError):
        resolve_entity_for(db_session, UserTeamOwner(424242))


def test_duplicates_fold_into_lowest_id(db_session, seed) -> None:
    team = seed.team("Support")
    db_session.add_all([Entity(team_id=team.id), Entity(team_id=team.id)])
    db_session.flush()
    keep, duplicate = _entity_ids(db_session)
    ticket = seed.ticket(seed.lookups(), created_by=duplicate, assigned_to=duplicate)
    db_session.commit()

    assert resolve_entity_for(db_session, TeamOwner(team.id)) == keep
    db_session.commit()

    assert _entity_ids(db_session) == [keep]
    refreshed = db_session.get(Ticket, ticket.id)
    assert refreshed.created_by_id == keep
    assert refreshed.current_assigned_to_id == keep


def test_owner_from_row_rejects_zero_or_many_owners() -> None:
    assert owner_from_row(Entity()) is None
    assert owner_from_row(Entity(team_id=1, user_team_id=2)) is None
    assert owner_from_row(Entity(api_key_id=5)) == ApiKeyOwner(5)


def test_purge_folds_multi_owner_row_into_membership(db_session, seed) -> None:
    user = seed.user("agent@example.com")
    team = seed.team("Support")
    ut = seed.membership(user, team)
    bad = Entity(team_id=team.id, user_team_id=ut.id)
    db_session.add(bad)
    db_session.flush()
    bad_id = bad.id
    ticket = seed.ticket(seed.lookups(), created_by=bad_id)
    db_session.commit()

    assert purge_invalid_entities(db_session) == 1
    db_session.commit()

    assert db_session.get(Entity, bad_id) is None
    rows = list(db_session.execute(select(Entity)).scalars())
    assert [owner_from_row(r) for r in rows] == [UserTeamOwner(ut.id)]
    assert db_session.get(Ticket, ticket.id).created_by_id == rows[0].id


def test_purge_drops_ownerless_rows(db_session) -> None:
    db_session.add(Entity())
    db_session.commit()

    assert purge_invalid_entities(db_session) == 1
    assert _entity_ids(db_session) == []


def test_ensure_entity_records_creates_one_per_owner(db_session, seed) -> None:
    user = seed.user("agent@example.com")
    team = seed.team("Support")
    seed.membership(user, team)
    db_session.add(ApiKey(name="ci", permissions=[]))
    db_session.flush()
    resolve_entity_for(db_session, TeamOwner(team.id))
    db_session.commit()

    assert ensure_entity_records(db_session) == 2
    assert ensure_entity_records(db_session) == 0
    assert len(_entity_ids(db_session)) == 3


def test_load_ownerships_resolves_membership_team(db_session, seed) -> None:
    user = seed.user("agent@example.com")
    team = seed.team("Support")
    ut = seed.membership(user, team)
    team_entity = seed.team_entity(team)
    member_entity = seed.membership_entity(ut)
    db_session.add(Entity())
    db_session.flush()
    broken = _entity_ids(db_session)[-1]

    ownerships = load_ownerships(db_session, [team_entity, member_entity, broken, None])

    assert ownerships[team_entity] == Ownership(
        entity_id=team_entity, team_id=team.id, user_team_id=None
    )
    assert ownerships[team_entity].unclaimed
    assert ownerships[member_entity] == Ownership(
        entity_id=member_entity, team_id=team.id, user_team_id=ut.id
    )
    assert broken not in ownerships
