"""Permission grammar and per-request permission bundles.

Permission strings are colon-delimited and parsed exactly once, when a bundle is built. The
resolvers in `ticket_access`, `categories` and `ticket_changes` only ever look at the structured
grants produced here.

Recognised shapes::

    ticket:read:<assigned|createdby>:<any|team:any|team:unclaimed|self>
    ticket:action:claim:<any|team>:<force|unclaimed>
    ticket:action:change:assigned:any
    ticket:action:change:assigned:from:<own|any>:to:<own|any>[:assigned:<own|any>]
    ticket:action:change:<status|priority|category>:<from>:<to>:<assigned|createdby>:<any|team|self>
    ticket:action:thread:create:<any|team|team:unclaimed|self>

Any ``ticket:action:*:any`` string also grants read access to every ticket.
"""

from __future__ import annotations

import enum
import fnmatch
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.core.errors import InvalidPayloadError, NotFoundError
from helpdesk.models.enums import ChangeField
from helpdesk.models.identity import Team, User, UserTeam

SYNTHETIC_READ_PATTERN = "ticket:action:*:any"

CATEGORY_VIEW_ANY = "ticketcategory:view:any"
CATEGORY_VIEW_OWN = "ticketcategory:view:own"
TICKET_CREATE = "ticket:create"


class Relation(enum.StrEnum):
    assigned = "assigned"
    createdby = "createdby"


class ReadScope(enum.StrEnum):
    any = "any"
    team_any = "team:any"
    team_unclaimed = "team:unclaimed"
    self = "self"


class GrantSource(enum.StrEnum):
    user = "user"
    team = "team"
    user_team = "userTeam"


@dataclass(frozen=True)
class ReadGrant:
    relation: Relation
    scope: ReadScope
    permission: str


@dataclass(frozen=True)
class ClaimGrant:
    target: str  # any|team
    mode: str  # force|unclaimed
    permission: str


@dataclass(frozen=True)
class AssignGrant:
    from_scope: str  # own|any
    to_scope: str  # own|any
    permission: str

    @property
    def unrestricted(self) -> bool:
        return self.from_scope == "any" and self.to_scope == "any"


@dataclass(frozen=True)
class ChangeGrant:
    field: ChangeField
    from_value: int | None  # None means any
    to_value: int | None
    relation: Relation
    scope: str  # any|team|self
    permission: str

    def allows_values(self, from_value: int | None, to_value: int | None) -> bool:
        if self.from_value is not None and self.from_value != from_value:
            return False
        if self.to_value is not None and self.to_value != to_value:
            return False
        return True


@dataclass(frozen=True)
class ThreadGrant:
    scope: str  # any|team|team:unclaimed|self
    permission: str


Grant = ReadGrant | ClaimGrant | AssignGrant | ChangeGrant | ThreadGrant


def _parse_value_segment(segment: str) -> int | None:
    if segment == "any":
        return None
    return int(segment)


def parse_permission(value: str) -> Grant | None:
    """Return the structured grant for `value`, or None for flags and unknown strings."""
    parts = value.split(":")
    if len(parts) < 3 or parts[0] != "ticket":
        return None

    if parts[1] == "read":
        try:
            relation = Relation(parts[2])
            scope = ReadScope(":".join(parts[3:]))
        except ValueError:
            return None
        if relation == Relation.createdby and scope == ReadScope.team_unclaimed:
            return None
        return ReadGrant(relation=relation, scope=scope, permission=value)

    if parts[1] != "action":
        return None
    verb = parts[2]
    rest = parts[3:]

    if verb == "claim":
        if len(rest) == 2 and rest[0] in {"any", "team"} and rest[1] in {"force", "unclaimed"}:
            return ClaimGrant(target=rest[0], mode=rest[1], permission=value)
        return None

    if verb == "thread":
        if len(rest) >= 2 and rest[0] == "create":
            scope = ":".join(rest[1:])
            if scope in {"any", "team", "team:unclaimed", "self"}:
                return ThreadGrant(scope=scope, permission=value)
        return None

    if verb != "change" or not rest:
        return None

    if rest[0] == ChangeField.assignment.value:
        if rest[1:] == ["any"]:
            return AssignGrant(from_scope="any", to_scope="any", permission=value)
        tail = rest[1:]
        if (
            len(tail) == 6
            and tail[0] == "from"
            and tail[2] == "to"
            and tail[1] in {"own", "any"}
            and tail[3] in {"own", "any"}
            and tail[4] == "assigned"
            and tail[5] in {"own", "any"}
        ):
            return AssignGrant(from_scope=tail[1], to_scope=tail[3], permission=value)
        return None

    try:
        change_field = ChangeField(rest[0])
    except ValueError:
        return None
    if len(rest) != 5:
        return None
    try:
        from_value = _parse_value_segment(rest[1])
        to_value = _parse_value_segment(rest[2])
        relation = Relation(rest[3])
    except ValueError:
        return None
    if rest[4] not in {"any", "team", "self"}:
        return None
    return ChangeGrant(
        field=change_field,
        from_value=from_value,
        to_value=to_value,
        relation=relation,
        scope=rest[4],
        permission=value,
    )


@dataclass(frozen=True)
class ParsedPermissions:
    raw: frozenset[str] = frozenset()
    reads: tuple[ReadGrant, ...] = ()
    claims: tuple[ClaimGrant, ...] = ()
    assigns: tuple[AssignGrant, ...] = ()
    changes: tuple[ChangeGrant, ...] = ()
    threads: tuple[ThreadGrant, ...] = ()
    synthetic_reads: tuple[str, ...] = ()

    def has(self, permission: str) -> bool:
        return permission in self.raw


def parse_permissions(values: Iterable[str] | None) -> ParsedPermissions:
    raw: list[str] = []
    buckets: dict[type, list] = {
        ReadGrant: [],
        ClaimGrant: [],
        AssignGrant: [],
        ChangeGrant: [],
        ThreadGrant: [],
    }
    synthetic: list[str] = []
    for value in values or ():
        if not isinstance(value, str) or value in raw:
            continue
        raw.append(value)
        grant = parse_permission(value)
        if grant is not None:
            buckets[type(grant)].append(grant)
        if fnmatch.fnmatchcase(value, SYNTHETIC_READ_PATTERN):
            synthetic.append(value)
    return ParsedPermissions(
        raw=frozenset(raw),
        reads=tuple(buckets[ReadGrant]),
        claims=tuple(buckets[ClaimGrant]),
        assigns=tuple(buckets[AssignGrant]),
        changes=tuple(buckets[ChangeGrant]),
        threads=tuple(buckets[ThreadGrant]),
        synthetic_reads=tuple(synthetic),
    )


@dataclass(frozen=True)
class MembershipGrants:
    user_team_id: int
    team_id: int
    team_permissions: ParsedPermissions
    user_team_permissions: ParsedPermissions

    def sources(self) -> tuple[tuple[GrantSource, ParsedPermissions], ...]:
        return (
            (GrantSource.user_team, self.user_team_permissions),
            (GrantSource.team, self.team_permissions),
        )

    def has(self, permission: str) -> bool:
        return self.team_permissions.has(permission) or self.user_team_permissions.has(permission)


@dataclass(frozen=True)
class PermissionBundle:
    user_id: int
    user_permissions: ParsedPermissions = field(default_factory=ParsedPermissions)
    memberships: tuple[MembershipGrants, ...] = ()

    @property
    def team_ids(self) -> frozenset[int]:
        return frozenset(m.team_id for m in self.memberships)

    @property
    def user_team_ids(self) -> frozenset[int]:
        return frozenset(m.user_team_id for m in self.memberships)

    def membership(self, user_team_id: int | None) -> MembershipGrants | None:
        for m in self.memberships:
            if m.user_team_id == user_team_id:
                return m
        return None

    def has(self, permission: str) -> bool:
        return self.user_permissions.has(permission) or any(
            m.has(permission) for m in self.memberships
        )

    def all_permissions(self) -> frozenset[str]:
        combined = set(self.user_permissions.raw)
        for m in self.memberships:
            combined |= m.team_permissions.raw
            combined |= m.user_team_permissions.raw
        return frozenset(combined)


def _build_bundles(
    *,
    users: Iterable[User],
    memberships: Iterable[tuple[UserTeam, Team]],
) -> dict[int, PermissionBundle]:
    team_cache: dict[int, ParsedPermissions] = {}
    per_user: dict[int, list[MembershipGrants]] = {}
    for ut, team in memberships:
        team_perms = team_cache.get(team.id)
        if team_perms is None:
            team_perms = parse_permissions(team.permissions)
            team_cache[team.id] = team_perms
        per_user.setdefault(ut.user_id, []).append(
            MembershipGrants(
                user_team_id=ut.id,
                team_id=team.id,
                team_permissions=team_perms,
                user_team_permissions=parse_permissions(ut.permissions),
            )
        )
    return {
        user.id: PermissionBundle(
            user_id=user.id,
            user_permissions=parse_permissions(user.permissions),
            memberships=tuple(sorted(per_user.get(user.id, []), key=lambda m: m.user_team_id)),
        )
        for user in users
    }


def _active_memberships_query():
    return (
        select(UserTeam, Team)
        .join(Team, Team.id == UserTeam.team_id)
        .where(UserTeam.is_active.is_(True), Team.is_active.is_(True))
        .order_by(UserTeam.id)
    )


def load_permission_bundle(session: Session, user_id: int) -> PermissionBundle:
    """Build the bundle fresh from current user, team and membership rows.

    Inactive users get an empty bundle; inactive teams and memberships are left out.
    """
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("user", user_id)
    if not user.is_active:
        return PermissionBundle(user_id=user.id)

    rows = session.execute(_active_memberships_query().where(UserTeam.user_id == user.id)).all()
    return _build_bundles(users=[user], memberships=[(ut, team) for ut, team in rows])[user.id]


def load_all_bundles(session: Session) -> list[PermissionBundle]:
    users = session.execute(
        select(User).where(User.is_active.is_(True)).order_by(User.id)
    ).scalars()
    rows = session.execute(_active_memberships_query()).all()
    bundles = _build_bundles(users=list(users), memberships=[(ut, team) for ut, team in rows])
    return list(bundles.values())


def bundle_from_session_payload(payload: dict) -> PermissionBundle:
    """Build a bundle from the session layer's `{userId, permissions, teams}` shape."""
    try:
        user_id = int(payload["userId"])
        memberships = tuple(
            MembershipGrants(
                user_team_id=int(t["userTeamId"]),
                team_id=int(t["teamId"]),
                team_permissions=parse_permissions(t.get("permissions") or []),
                user_team_permissions=parse_permissions(t.get("userTeamPermissions") or []),
            )
            for t in payload.get("teams") or []
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidPayloadError("Malformed session permission payload") from e
    return PermissionBundle(
        user_id=user_id,
        user_permissions=parse_permissions(payload.get("permissions") or []),
        memberships=memberships,
    )
