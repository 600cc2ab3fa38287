from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk.models.base import Base
from helpdesk.models.enums import NotificationEventType


class NotificationEvent(Base):
    """Tagged union: exactly one `on_*` column is populated."""

    __tablename__ = "notification_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[NotificationEventType] = mapped_column(
        Enum(NotificationEventType, name="notification_event_type", native_enum=False, length=64),
        nullable=False,
    )
    on_thread_id: Mapped[int | None] = mapped_column(
        ForeignKey("ticket_threads.id", ondelete="CASCADE"), nullable=True, unique=True
    )
    on_assignment_change_id: Mapped[int | None] = mapped_column(
        ForeignKey("ticket_change_assignments.id", ondelete="CASCADE"), nullable=True, unique=True
    )
    on_priority_change_id: Mapped[int | None] = mapped_column(
        ForeignKey("ticket_change_priorities.id", ondelete="CASCADE"), nullable=True, unique=True
    )
    on_status_change_id: Mapped[int | None] = mapped_column(
        ForeignKey("ticket_change_statuses.id", ondelete="CASCADE"), nullable=True, unique=True
    )
    on_category_change_id: Mapped[int | None] = mapped_column(
        ForeignKey("ticket_change_categories.id", ondelete="CASCADE"), nullable=True, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class NotificationRecipient(Base):
    __tablename__ = "notification_recipients"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_notification_recipients_event_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        ForeignKey("notification_events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    email_notified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    sms_notified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
