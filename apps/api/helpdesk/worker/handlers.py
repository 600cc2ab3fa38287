from __future__ import annotations

from sqlalchemy.orm import Session

from helpdesk.models.enums import JobType
from helpdesk.worker.jobs.notification_delivery import notification_delivery
from helpdesk.worker.jobs.notification_init import notification_init


def handle_job(*, session: Session, job_id: int, job_type: JobType, payload: dict) -> None:
    _ = job_id
    if job_type == JobType.notification_init:
        notification_init(session=session, payload=payload)
        return
    if job_type == JobType.notification_delivery:
        notification_delivery(session=session, payload=payload)
        return

    raise NotImplementedError(f"Job type not implemented: {job_type.value}")
