from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from helpdesk.core.config import get_settings
from helpdesk.core.metrics import observe_job
from helpdesk.core.middleware import log_json
from helpdesk.db.session import get_sessionmaker
from helpdesk.models.enums import JobStatus, JobType
from helpdesk.models.jobs import BgJob
from helpdesk.worker.errors import PermanentJobError
from helpdesk.worker.handlers import handle_job

logger = logging.getLogger("helpdesk.worker")

STAGE_JOB_TYPES: dict[str, frozenset[JobType]] = {
    "init": frozenset({JobType.notification_init}),
    "delivery": frozenset({JobType.notification_delivery}),
    "all": frozenset(JobType),
}


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_seconds: float = 0.5
    max_backoff_seconds: float = 60.0
    job_types: frozenset[JobType] = field(default_factory=lambda: STAGE_JOB_TYPES["all"])
    worker_id: str = socket.gethostname()

    @classmethod
    def for_stage(cls, stage: str) -> WorkerConfig:
        settings = get_settings()
        return cls(
            poll_interval_seconds=settings.WORKER_POLL_INTERVAL_SECONDS,
            max_backoff_seconds=settings.WORKER_MAX_BACKOFF_SECONDS,
            job_types=STAGE_JOB_TYPES[stage],
        )


def run_worker_forever(config: WorkerConfig) -> None:
    log_json(
        logger,
        logging.INFO,
        "worker.started",
        worker_id=config.worker_id,
        job_types=sorted(t.value for t in config.job_types),
    )
    while True:
        ran = run_one_job(config=config)
        if not ran:
            time.sleep(config.poll_interval_seconds)


def run_one_job(*, config: WorkerConfig) -> bool:
    session = get_sessionmaker()()
    try:
        job = _claim_next_job(session=session, config=config)
        if job is None:
            session.commit()
            return False

        job_id, job_type, payload = job.id, job.type, dict(job.payload or {})
        started = time.perf_counter()
        try:
            handle_job(session=session, job_id=job_id, job_type=job_type, payload=payload)
        except PermanentJobError as e:
            outcome = _mark_failed(
                session=session, config=config, job_id=job_id, error=str(e), permanent=True
            )
        except SQLAlchemyError as e:
            # The transaction is unusable; drop the handler's writes before recording failure.
            session.rollback()
            outcome = _mark_failed(
                session=session, config=config, job_id=job_id, error=str(e), permanent=False
            )
        except Exception as e:
            outcome = _mark_failed(
                session=session, config=config, job_id=job_id, error=str(e), permanent=False
            )
        else:
            _mark_succeeded(session=session, job_id=job_id)
            outcome = "succeeded"

        session.commit()
        observe_job(job_type=job_type.value, outcome=outcome)
        log_json(
            logger,
            logging.INFO if outcome == "succeeded" else logging.WARNING,
            "worker.job.finished",
            job_id=job_id,
            job_type=job_type.value,
            outcome=outcome,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return True
    finally:
        session.close()


def _claim_next_job(*, session: Session, config: WorkerConfig) -> BgJob | None:
    now = datetime.now(UTC)
    job = (
        session.execute(
            select(BgJob)
            .where(
                BgJob.status == JobStatus.queued,
                BgJob.run_at <= now,
                BgJob.type.in_(config.job_types),
            )
            .order_by(BgJob.run_at.asc(), BgJob.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .first()
    )
    if job is None:
        return None
    job.status = JobStatus.running
    job.locked_at = now
    job.locked_by = config.worker_id
    job.updated_at = now
    session.flush()
    return job


def _mark_succeeded(*, session: Session, job_id: int) -> None:
    session.execute(
        update(BgJob)
        .where(BgJob.id == job_id)
        .values(status=JobStatus.succeeded, updated_at=datetime.now(UTC))
    )


def backoff_seconds(attempts: int, *, max_backoff_seconds: float = 60.0) -> float:
    return min(max_backoff_seconds, 0.5 * (2 ** min(attempts, 8)))


def _mark_failed(
    *,
    session: Session,
    config: WorkerConfig,
    job_id: int,
    error: str,
    permanent: bool,
) -> str:
    row = session.execute(
        select(BgJob.attempts, BgJob.max_attempts).where(BgJob.id == job_id).with_for_update()
    ).one_or_none()
    if row is None:
        return "missing"
    attempts = int(row.attempts) + 1
    now = datetime.now(UTC)

    if permanent or attempts >= int(row.max_attempts):
        session.execute(
            update(BgJob)
            .where(BgJob.id == job_id)
            .values(status=JobStatus.failed, attempts=attempts, last_error=error, updated_at=now)
        )
        return "failed"

    delay = backoff_seconds(attempts, max_backoff_seconds=config.max_backoff_seconds)
    session.execute(
        update(BgJob)
        .where(BgJob.id == job_id)
        .values(
            status=JobStatus.queued,
            attempts=attempts,
            last_error=error,
            run_at=now + timedelta(seconds=delay),
            locked_at=None,
            locked_by=None,
            updated_at=now,
        )
    )
    return "retried"
