from __future__ import annotations

from helpdesk.models.base import Base as Base  # noqa: F401
from helpdesk.models.enums import (  # noqa: F401
    ChangeField,
    JobStatus,
    JobType,
    NotificationChannel,
    NotificationEventType,
    RuleEventType,
)
from helpdesk.models.identity import ApiKey, Entity, Team, User, UserTeam  # noqa: F401
from helpdesk.models.jobs import BgJob  # noqa: F401
from helpdesk.models.notifications import NotificationEvent, NotificationRecipient  # noqa: F401
from helpdesk.models.tickets import (  # noqa: F401
    Ticket,
    TicketCategory,
    TicketCategoryTeamAccess,
    TicketChangeAssignment,
    TicketChangeCategory,
    TicketChangePriority,
    TicketChangeStatus,
    TicketPriority,
    TicketStatus,
    TicketThread,
)
