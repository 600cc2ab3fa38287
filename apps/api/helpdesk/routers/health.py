from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from helpdesk.core.middleware import log_json
from helpdesk.db.session import get_session
from helpdesk.models.jobs import BgJob

router = APIRouter(tags=["health"])
logger = logging.getLogger("helpdesk.api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
def readyz(session: Session = Depends(get_session)) -> dict[str, str]:
    """Ready once the database answers and the job queue table is migrated."""
    try:
        session.execute(select(BgJob.id).limit(1)).first()
    except SQLAlchemyError as e:
        log_json(logger, logging.WARNING, "readyz.unavailable", error=type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="job queue not ready",
        ) from e
    return {"status": "ready"}
