from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from helpdesk.models.enums import ChangeField, JobStatus, JobType, NotificationEventType
from helpdesk.models.jobs import BgJob
from helpdesk.models.notifications import NotificationEvent, NotificationRecipient
from helpdesk.models.tickets import TicketThread
from helpdesk.services.notification_senders import NotificationTransportError
from helpdesk.services.permissions import load_permission_bundle
from helpdesk.services.threads import seal_thread_body
from helpdesk.services.ticket_commands import change_field, create_ticket
from helpdesk.worker.errors import PermanentJobError
from helpdesk.worker.jobs import notification_delivery as delivery_module
from helpdesk.worker.jobs.notification_delivery import deliver_event
from helpdesk.worker.jobs.notification_init import notification_init
from helpdesk.worker.runner import WorkerConfig, run_one_job

TEAM_PERMISSIONS = [
    "ticket:read:assigned:team:any",
    "ticket:read:createdby:team:any",
    "ticket:action:change:status:any:any:assigned:team",
    "ticketcategory:view:own",
]


def _always(*event_types: str) -> dict:
    return {
        "rules": [
            {
                "id": "always",
                "eventTypes": list(event_types),
                "enabled": True,
                "conditions": {"operator": "any"},
            }
        ]
    }


@dataclass
class FakeSender:
    fail_sms: bool = False
    emails: list[tuple[str, str, str]] = field(default_factory=list)
    sms: list[tuple[str, str]] = field(default_factory=list)

    def send_email(self, to: str, subject: str, html: str) -> None:
        self.emails.append((to, subject, html))

    def send_sms(self, to: str, text: str) -> None:
        if self.fail_sms:
            raise NotificationTransportError("sms gateway down")
        self.sms.append((to, text))


@dataclass
class Pipeline:
    lookups: object
    alice: int
    bob: int
    carol: int
    ticket_id: int
    event_id: int


@pytest.fixture()
def pipeline(db_session, seed) -> Pipeline:
    lookups = seed.lookups()
    support = seed.team("Support", permissions=TEAM_PERMISSIONS)
    seed.grant_category(lookups.root_category_id, support)
    alice = seed.user(
        "alice@example.com",
        permissions=["ticket:create"],
        display_name="Alice",
        mobile="+15550001",
        email_notification_preferences=_always("TICKET_CREATED", "STATUS_CHANGED"),
        sms_notification_preferences=_always("TICKET_CREATED"),
    )
    bob = seed.user(
        "bob@example.com",
        email_notification_preferences={
            "rules": [
                {
                    "id": "mine",
                    "eventTypes": ["STATUS_CHANGED"],
                    "enabled": True,
                    "conditions": {"field": "assignedToMe", "operator": "isTrue"},
                }
            ]
        },
    )
    carol = seed.user("carol@example.com", email_notification_preferences=_always("TICKET_CREATED"))
    seed.membership(alice, support)
    seed.membership(bob, support)
    db_session.commit()

    bundle = load_permission_bundle(db_session, alice.id)
    result = create_ticket(
        session=db_session,
        bundle=bundle,
        title="Printer <on fire>",
        body_html="<p>Smoke everywhere</p>",
        category_id=lookups.root_category_id,
        priority_id=lookups.high_priority_id,
    )
    db_session.commit()
    return Pipeline(
        lookups=lookups,
        alice=alice.id,
        bob=bob.id,
        carol=carol.id,
        ticket_id=result.ticket.id,
        event_id=result.event_id,
    )


def _recipients(db_session, event_id: int) -> list[NotificationRecipient]:
    return list(
        db_session.execute(
            select(NotificationRecipient)
            .where(NotificationRecipient.event_id == event_id)
            .order_by(NotificationRecipient.user_id)
        ).scalars()
    )


def _jobs(db_session, job_type: JobType) -> list[BgJob]:
    return list(
        db_session.execute(select(BgJob).where(BgJob.type == job_type).order_by(BgJob.id)).scalars()
    )


def test_init_materializes_audience_once(db_session, pipeline: Pipeline) -> None:
    payload = {"eventId": pipeline.event_id}
    notification_init(session=db_session, payload=payload)
    notification_init(session=db_session, payload=payload)
    db_session.commit()

    recipients = _recipients(db_session, pipeline.event_id)
    assert [r.user_id for r in recipients] == [pipeline.alice, pipeline.bob]
    assert not any(r.email_notified or r.sms_notified for r in recipients)
    (delivery,) = _jobs(db_session, JobType.notification_delivery)
    assert delivery.payload == payload


def test_delivery_sends_matching_channels_once(db_session, pipeline: Pipeline) -> None:
    notification_init(session=db_session, payload={"eventId": pipeline.event_id})
    sender = FakeSender()

    assert deliver_event(session=db_session, event_id=pipeline.event_id, sender=sender) == 2
    db_session.commit()

    ((to, subject, html),) = sender.emails
    assert to == "alice@example.com"
    assert subject == f"[Ticket #{pipeline.ticket_id}] Printer <on fire>"
    assert "Printer &lt;on fire&gt;" in html
    assert "Smoke everywhere" in html
    expected_sms = f"New ticket #{pipeline.ticket_id}: Printer <on fire> (High)"
    assert sender.sms == [("+15550001", expected_sms)]

    recipients = {r.user_id: r for r in _recipients(db_session, pipeline.event_id)}
    assert recipients[pipeline.alice].email_notified and recipients[pipeline.alice].sms_notified
    assert not recipients[pipeline.bob].email_notified

    again = FakeSender()
    assert deliver_event(session=db_session, event_id=pipeline.event_id, sender=again) == 0
    assert again.emails == [] and again.sms == []


def test_first_thread_event_is_delivered_as_ticket_created(db_session, seed, pipeline) -> None:
    from helpdesk.models.identity import UserTeam

    alice_ut = db_session.execute(
        select(UserTeam).where(UserTeam.user_id == pipeline.alice)
    ).scalar_one()
    author = seed.membership_entity(alice_ut)
    ticket = seed.ticket(pipeline.lookups, created_by=author, title="Imported ticket")
    thread = TicketThread(
        ticket_id=ticket.id,
        body_encrypted=seal_thread_body(ticket_id=ticket.id, html="<p>Imported body</p>"),
        created_by_id=author,
        created_at=datetime.now(UTC),
    )
    db_session.add(thread)
    db_session.flush()
    # The opening thread recorded as a plain new-thread event.
    event = NotificationEvent(type=NotificationEventType.TICKET_THREAD_NEW, on_thread_id=thread.id)
    db_session.add(event)
    db_session.commit()

    notification_init(session=db_session, payload={"eventId": event.id})
    sender = FakeSender()
    deliver_event(session=db_session, event_id=event.id, sender=sender)

    assert [to for to, _, _ in sender.emails] == ["alice@example.com"]
    assert "A new ticket was opened" in sender.emails[0][2]
    assert db_session.get(NotificationEvent, event.id).type == (
        NotificationEventType.TICKET_THREAD_NEW
    )


def test_later_thread_stays_new_thread(db_session, pipeline: Pipeline) -> None:
    thread = TicketThread(
        ticket_id=pipeline.ticket_id,
        body_encrypted=seal_thread_body(ticket_id=pipeline.ticket_id, html="<p>follow-up</p>"),
        created_by_id=db_session.execute(
            select(TicketThread.created_by_id).where(TicketThread.ticket_id == pipeline.ticket_id)
        ).scalar_one(),
        created_at=datetime.now(UTC),
    )
    db_session.add(thread)
    db_session.flush()
    event = NotificationEvent(type=NotificationEventType.TICKET_THREAD_NEW, on_thread_id=thread.id)
    db_session.add(event)
    db_session.commit()

    notification_init(session=db_session, payload={"eventId": event.id})
    sender = FakeSender()
    assert deliver_event(session=db_session, event_id=event.id, sender=sender) == 0


def test_status_change_context_uses_recipient_view(db_session, seed, pipeline: Pipeline) -> None:
    from helpdesk.models.identity import UserTeam
    from helpdesk.services.ticket_commands import claim_ticket

    bob_ut = db_session.execute(
        select(UserTeam.id).where(UserTeam.user_id == pipeline.bob)
    ).scalar_one()
    db_session.get(UserTeam, bob_ut).permissions = ["ticket:action:claim:any:force"]
    db_session.commit()
    claim_ticket(
        session=db_session,
        bundle=load_permission_bundle(db_session, pipeline.bob),
        ticket_id=pipeline.ticket_id,
    )
    db_session.commit()

    result = change_field(
        session=db_session,
        bundle=load_permission_bundle(db_session, pipeline.bob),
        ticket_id=pipeline.ticket_id,
        field=ChangeField.status,
        to_id=pipeline.lookups.closed_status_id,
    )
    db_session.commit()

    notification_init(session=db_session, payload={"eventId": result.event_id})
    sender = FakeSender()
    deliver_event(session=db_session, event_id=result.event_id, sender=sender)

    sent_to = sorted(to for to, _, _ in sender.emails)
    assert sent_to == ["alice@example.com", "bob@example.com"]
    bob_html = next(h for to, _, h in sender.emails if to == "bob@example.com")
    assert "Open" in bob_html and "Closed" in bob_html


def test_transport_failure_keeps_sent_channels(db_session, pipeline: Pipeline) -> None:
    notification_init(session=db_session, payload={"eventId": pipeline.event_id})
    failing = FakeSender(fail_sms=True)
    with pytest.raises(NotificationTransportError):
        deliver_event(session=db_session, event_id=pipeline.event_id, sender=failing)
    db_session.commit()

    recipients = {r.user_id: r for r in _recipients(db_session, pipeline.event_id)}
    alice = recipients[pipeline.alice]
    assert alice.email_notified and not alice.sms_notified

    retry = FakeSender()
    assert deliver_event(session=db_session, event_id=pipeline.event_id, sender=retry) == 1
    assert retry.emails == []
    assert len(retry.sms) == 1


def test_missing_event_is_permanent(db_session) -> None:
    with pytest.raises(PermanentJobError):
        notification_init(session=db_session, payload={"eventId": 987_654})
    with pytest.raises(PermanentJobError):
        deliver_event(session=db_session, event_id=987_654, sender=FakeSender())
    with pytest.raises(PermanentJobError):
        notification_init(session=db_session, payload={"eventId": "7"})


def test_runner_drives_both_stages(db_session, pipeline: Pipeline, monkeypatch) -> None:
    sender = FakeSender()
    monkeypatch.setattr(delivery_module, "build_notification_sender", lambda *_a, **_k: sender)
    config = WorkerConfig(poll_interval_seconds=0.0)

    assert run_one_job(config=config) is True
    assert run_one_job(config=config) is True
    assert run_one_job(config=config) is False

    db_session.expire_all()
    statuses = {job.type: job.status for job in db_session.execute(select(BgJob)).scalars()}
    assert statuses == {
        JobType.notification_init: JobStatus.succeeded,
        JobType.notification_delivery: JobStatus.succeeded,
    }
    assert [to for to, _, _ in sender.emails] == ["alice@example.com"]


def test_runner_retries_transport_failures(db_session, pipeline: Pipeline, monkeypatch) -> None:
    sender = FakeSender(fail_sms=True)
    monkeypatch.setattr(delivery_module, "build_notification_sender", lambda *_a, **_k: sender)
    init_only = WorkerConfig.for_stage("init")
    delivery_only = WorkerConfig.for_stage("delivery")

    assert run_one_job(config=delivery_only) is False
    assert run_one_job(config=init_only) is True
    assert run_one_job(config=delivery_only) is True

    db_session.expire_all()
    (job,) = _jobs(db_session, JobType.notification_delivery)
    assert job.status == JobStatus.queued
    assert job.attempts == 1
    assert "sms gateway down" in job.last_error
    assert job.locked_by is None

    recipients = {r.user_id: r for r in _recipients(db_session, pipeline.event_id)}
    assert recipients[pipeline.alice].email_notified
    assert not recipients[pipeline.alice].sms_notified


def test_runner_fails_permanent_jobs_immediately(db_session) -> None:
    from helpdesk.worker.queue import enqueue_notification_init

    enqueue_notification_init(session=db_session, event_id=123_456)
    db_session.commit()

    assert run_one_job(config=WorkerConfig(poll_interval_seconds=0.0)) is True

    db_session.expire_all()
    (job,) = _jobs(db_session, JobType.notification_init)
    assert job.status == JobStatus.failed
    assert job.attempts == 1
