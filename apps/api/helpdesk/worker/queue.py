from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy.orm import Session

from helpdesk.db.inserts import insert_or_skip
from helpdesk.models.enums import JobStatus, JobType
from helpdesk.models.jobs import BgJob
from helpdesk.worker.payloads import EventJobPayload


def enqueue_job(
    *,
    session: Session,
    job_type: JobType,
    payload: dict,
    dedupe_key: str | None,
    run_at: datetime | None = None,
) -> int | None:
    """Insert a queued job; returns None when a job with the same dedupe key already exists."""
    now = datetime.now(UTC)
    stmt = (
        insert_or_skip(session, BgJob)
        .values(
            type=job_type,
            status=JobStatus.queued,
            run_at=run_at or now,
            attempts=0,
            max_attempts=25,
            dedupe_key=dedupe_key,
            payload=payload,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing()
        .returning(BgJob.id)
    )
    return session.execute(stmt).scalar_one_or_none()


def enqueue_notification_init(*, session: Session, event_id: int) -> int | None:
    return enqueue_job(
        session=session,
        job_type=JobType.notification_init,
        payload=EventJobPayload(event_id=event_id).to_payload(),
        dedupe_key=f"{JobType.notification_init.value}:{event_id}",
    )


def enqueue_notification_delivery(*, session: Session, event_id: int) -> int | None:
    return enqueue_job(
        session=session,
        job_type=JobType.notification_delivery,
        payload=EventJobPayload(event_id=event_id).to_payload(),
        dedupe_key=f"{JobType.notification_delivery.value}:{event_id}",
    )
