from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from helpdesk.core.errors import NotFoundError
from helpdesk.core.middleware import log_json
from helpdesk.models.enums import NotificationChannel
from helpdesk.models.identity import User

logger = logging.getLogger("helpdesk.api")

_PREFERENCE_COLUMNS = {
    NotificationChannel.email: "email_notification_preferences",
    NotificationChannel.sms: "sms_notification_preferences",
}


def get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("user", user_id)
    return user


def set_notification_preferences(
    *,
    session: Session,
    user_id: int,
    channel: NotificationChannel,
    preferences: dict,
) -> User:
    """Replace the user's rule set for one channel; the tree must already be validated."""
    user = get_user(session, user_id)
    setattr(user, _PREFERENCE_COLUMNS[channel], preferences)
    session.flush()
    log_json(
        logger,
        logging.INFO,
        "user.notification_preferences.updated",
        user_id=user.id,
        channel=channel.value,
        rules=len(preferences.get("rules") or []),
    )
    return user
