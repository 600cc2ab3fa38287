from __future__ import annotations

from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from helpdesk.core.config import get_settings
from helpdesk.main import create_app
from helpdesk.models.identity import User
from helpdesk.models.jobs import BgJob

AGENT_PERMISSIONS = [
    "ticket:read:assigned:team:any",
    "ticket:read:createdby:team:any",
    "ticket:action:claim:team:unclaimed",
    "ticket:action:change:status:any:any:assigned:team",
    "ticket:action:thread:create:team",
    "ticketcategory:view:own",
]


@dataclass
class Api:
    client: TestClient
    lookups: object
    agent: int
    outsider: int
    agent_ut: int
    support_entity: int


@pytest.fixture()
def api(db_session, seed) -> Api:
    lookups = seed.lookups()
    support = seed.team("Support", permissions=AGENT_PERMISSIONS)
    seed.grant_category(lookups.root_category_id, support)
    agent = seed.user("agent@example.com", permissions=["ticket:create"])
    outsider = seed.user("outsider@example.com", permissions=["ticket:create"])
    agent_ut = seed.membership(agent, support)
    support_entity = seed.team_entity(support)
    fixture = Api(
        client=TestClient(create_app()),
        lookups=lookups,
        agent=agent.id,
        outsider=outsider.id,
        agent_ut=agent_ut.id,
        support_entity=support_entity,
    )
    db_session.commit()
    return fixture


def _as(user_id: int) -> dict[str, str]:
    return {get_settings().ACTOR_HEADER_NAME: str(user_id)}


def _open_ticket(api: Api, **overrides) -> dict:
    body = {
        "title": "Laptop will not boot",
        "body_html": "<p>Black screen</p>",
        "category_id": api.lookups.child_category_id,
        "priority_id": api.lookups.low_priority_id,
        "assigned_to_entity_id": api.support_entity,
        **overrides,
    }
    res = api.client.post("/tickets", json=body, headers=_as(api.agent))
    assert res.status_code == 201, res.text
    return res.json()


def test_requests_without_actor_are_rejected(api: Api) -> None:
    assert api.client.get("/tickets/accessible").status_code == 401
    assert api.client.get("/tickets/accessible", headers=_as(999_999)).status_code == 401


def test_create_ticket_and_list_accessible(db_session, api: Api) -> None:
    created = _open_ticket(api)
    ticket_id = created["ticket"]["id"]
    assert created["thread_id"] is not None

    res = api.client.get("/tickets/accessible", headers=_as(api.agent))
    assert res.status_code == 200
    (item,) = res.json()["items"]
    assert item["ticket_id"] == ticket_id
    scopes = {(v["type"], v["scope"], v["source"]) for v in item["access_via"]}
    assert scopes == {("assignment", "team:any", "team"), ("creation", "team:any", "team")}

    jobs = list(db_session.execute(select(BgJob)).scalars())
    assert [job.payload for job in jobs] == [{"eventId": created["event_id"]}]


def test_forbidden_responses_do_not_leak_scope(api: Api) -> None:
    ticket_id = _open_ticket(api)["ticket"]["id"]

    res = api.client.get(f"/tickets/{ticket_id}/access", headers=_as(api.outsider))
    assert res.status_code == 403
    assert res.json() == {"detail": "Forbidden"}

    res = api.client.post(
        f"/tickets/{ticket_id}/priority",
        json={"to_id": api.lookups.high_priority_id},
        headers=_as(api.agent),
    )
    assert res.status_code == 403
    assert res.json() == {"detail": "Forbidden"}


def test_missing_ticket_is_404(api: Api) -> None:
    res = api.client.get("/tickets/424242/access", headers=_as(api.agent))
    assert res.status_code == 404


def test_claim_status_and_thread_flow(api: Api) -> None:
    ticket_id = _open_ticket(api)["ticket"]["id"]

    res = api.client.post(f"/tickets/{ticket_id}/claim", headers=_as(api.agent))
    assert res.status_code == 200, res.text
    claimed_by = res.json()["ticket"]["current_assigned_to_id"]
    assert claimed_by not in {None, api.support_entity}

    res = api.client.post(
        f"/tickets/{ticket_id}/threads",
        json={"body_html": "<p>Looking into it</p>"},
        headers=_as(api.agent),
    )
    assert res.status_code == 201, res.text

    res = api.client.post(
        f"/tickets/{ticket_id}/status",
        json={"to_id": api.lookups.closed_status_id},
        headers=_as(api.agent),
    )
    assert res.status_code == 200, res.text
    assert res.json()["ticket"]["current_status_id"] == api.lookups.closed_status_id

    res = api.client.post(
        f"/tickets/{ticket_id}/threads",
        json={"body_html": "<p>One more thing</p>"},
        headers=_as(api.agent),
    )
    assert res.status_code == 422


def test_audience_lists_members(api: Api) -> None:
    ticket_id = _open_ticket(api)["ticket"]["id"]
    res = api.client.get(f"/tickets/{ticket_id}/audience", headers=_as(api.agent))
    assert res.status_code == 200
    (user,) = res.json()["users"]
    assert user["user_id"] == api.agent
    (membership,) = user["user_teams"]
    assert membership["user_team_id"] == api.agent_ut
    assert membership["team_entity_id"] == api.support_entity


def test_categories_accessible(api: Api) -> None:
    res = api.client.get("/categories/accessible", headers=_as(api.agent))
    assert res.status_code == 200
    assert {c["id"] for c in res.json()} == {
        api.lookups.root_category_id,
        api.lookups.child_category_id,
    }
    assert api.client.get("/categories/accessible", headers=_as(api.outsider)).json() == []


def test_me_permissions_and_acting_team(api: Api) -> None:
    res = api.client.get("/me/permissions", headers=_as(api.agent))
    assert res.status_code == 200
    body = res.json()
    assert "ticket:create" in body["permissions"]
    assert body["memberships"][0]["user_team_id"] == api.agent_ut
    assert body["acting_user_team_id"] is None

    res = api.client.put(
        "/me/acting-team", json={"user_team_id": api.agent_ut}, headers=_as(api.agent)
    )
    assert res.status_code == 200
    assert res.json()["acting_user_team_id"] == api.agent_ut

    res = api.client.put("/me/acting-team", json={"user_team_id": 0}, headers=_as(api.agent))
    assert res.status_code == 422


def test_notification_preferences_are_validated(db_session, api: Api) -> None:
    rules = {
        "rules": [
            {
                "id": "urgent",
                "eventTypes": ["PRIORITY_CHANGED"],
                "conditions": {"field": "priority", "operator": "in", "value": [2]},
            }
        ]
    }
    res = api.client.put(
        "/me/notification-preferences",
        json={"channel": "email", "preferences": rules},
        headers=_as(api.agent),
    )
    assert res.status_code == 200, res.text
    stored = {"rules": [{**rules["rules"][0], "enabled": True}]}
    assert res.json()["email"] == stored

    db_session.expire_all()
    assert db_session.get(User, api.agent).email_notification_preferences == stored

    bad = {"rules": [{"id": "x", "eventTypes": ["NOPE"], "conditions": {"operator": "any"}}]}
    res = api.client.put(
        "/me/notification-preferences",
        json={"channel": "sms", "preferences": bad},
        headers=_as(api.agent),
    )
    assert res.status_code == 422
