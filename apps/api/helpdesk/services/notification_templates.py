from __future__ import annotations

import html
import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from helpdesk.core.config import get_settings
from helpdesk.models.enums import NotificationChannel, RuleEventType
from helpdesk.services.notification_rules import resolve_path

_PLACEHOLDER = re.compile(r"\{\{(.*?)\}\}")
_EXTENSIONS = {NotificationChannel.email: "html", NotificationChannel.sms: "txt"}
_SUBJECT_TEMPLATE = "[Ticket #{{ticket.id}}] {{ticket.title}}"


@dataclass(frozen=True)
class RenderedNotification:
    subject: str
    body: str


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_placeholders(
    template: str, context: Mapping[str, Any], *, escape: bool = False
) -> str:
    """Replace `{{dotted.path}}` with values from `context`; unknown paths become ''."""

    def _replace(match: re.Match[str]) -> str:
        value = _stringify(resolve_path(context, match.group(1), default=None))
        return html.escape(value) if escape else value

    return _PLACEHOLDER.sub(_replace, template)


@lru_cache(maxsize=64)
def _read_template(template_dir: str, channel: str, name: str, ext: str) -> str:
    base = Path(template_dir) / channel
    path = base / f"{name}.{ext}"
    if not path.is_file():
        path = base / f"default.{ext}"
    return path.read_text(encoding="utf-8")


def load_template(channel: NotificationChannel, event_type: RuleEventType) -> str:
    return _read_template(
        get_settings().NOTIFICATION_TEMPLATE_DIR,
        channel.value,
        event_type.value,
        _EXTENSIONS[channel],
    )


def render_notification(
    channel: NotificationChannel,
    event_type: RuleEventType,
    context: Mapping[str, Any],
) -> RenderedNotification:
    body = resolve_placeholders(
        load_template(channel, event_type),
        context,
        escape=channel == NotificationChannel.email,
    )
    return RenderedNotification(
        subject=resolve_placeholders(_SUBJECT_TEMPLATE, context),
        body=body.strip() if channel == NotificationChannel.sms else body,
    )
