from __future__ import annotations

from collections.abc import Callable

import bleach
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from helpdesk.core.crypto import decrypt_text, encrypt_text
from helpdesk.core.errors import InvalidPayloadError
from helpdesk.models.tickets import TicketThread

_ALLOWED_TAGS = [
    "a",
    "p",
    "br",
    "div",
    "span",
    "strong",
    "em",
    "b",
    "i",
    "u",
    "ul",
    "ol",
    "li",
    "blockquote",
    "code",
    "pre",
    "h1",
    "h2",
    "h3",
    "table",
    "thead",
    "tbody",
    "tr",
    "td",
    "th",
    "hr",
]


def _attr_filter(tag: str, name: str, value: str) -> str | None:
    if tag == "a" and name == "href":
        v = (value or "").strip()
        if v.startswith(("http://", "https://", "mailto:")):
            return v
        return None
    if name == "title":
        return value
    return None


def sanitize_thread_html(html: str) -> str:
    allowed_attrs: dict[str, Callable[[str, str, str], str | None] | list[str]] = {
        "*": _attr_filter,
    }
    cleaned = bleach.clean(html, tags=_ALLOWED_TAGS, attributes=allowed_attrs, strip=True)
    return bleach.linkify(cleaned).strip()


def _aad(ticket_id: int) -> str:
    return f"ticket_thread:{ticket_id}"


def seal_thread_body(*, ticket_id: int, html: str) -> bytes:
    """Sanitize and encrypt a thread body; empty bodies after sanitizing are rejected."""
    cleaned = sanitize_thread_html(html or "")
    if not cleaned:
        raise InvalidPayloadError("Thread body cannot be empty")
    return encrypt_text(cleaned, aad=_aad(ticket_id))


def read_thread_body(thread: TicketThread) -> str:
    return decrypt_text(thread.body_encrypted, aad=_aad(thread.ticket_id))


def is_first_thread(session: Session, thread: TicketThread) -> bool:
    first_id = session.execute(
        select(func.min(TicketThread.id)).where(TicketThread.ticket_id == thread.ticket_id)
    ).scalar_one()
    return first_id == thread.id
