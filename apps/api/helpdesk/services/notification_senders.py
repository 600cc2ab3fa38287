from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

import bleach
import httpx

from helpdesk.core.config import Settings, get_settings
from helpdesk.core.errors import HelpdeskError
from helpdesk.core.http import build_http_client
from helpdesk.core.middleware import log_json

logger = logging.getLogger("helpdesk.worker")


class NotificationTransportError(HelpdeskError):
    """Delivery failed in the transport; the job is retried."""


class NotificationSender(Protocol):
    def send_email(self, to: str, subject: str, html: str) -> None: ...

    def send_sms(self, to: str, text: str) -> None: ...


def html_to_text(html: str) -> str:
    return " ".join(bleach.clean(html, tags=[], strip=True).split())


class TransportNotificationSender:
    """Email over SMTP or a Postal-style HTTP API; SMS over an HTTP API."""

    def __init__(self, *, settings: Settings, http_client: httpx.Client) -> None:
        self._settings = settings
        self._http = http_client

    def send_email(self, to: str, subject: str, html: str) -> None:
        if not self._settings.EMAIL_FROM:
            raise NotificationTransportError("EMAIL_FROM is not configured")
        text = html_to_text(html)
        if self._settings.EMAIL_PROTOCOL == "api":
            self._send_email_api(to=to, subject=subject, html=html, text=text)
        else:
            self._send_email_smtp(to=to, subject=subject, html=html, text=text)
        log_json(logger, logging.INFO, "notification.email.sent", to=to, subject=subject)

    def _send_email_smtp(self, *, to: str, subject: str, html: str, text: str) -> None:
        msg = EmailMessage()
        msg["From"] = self._settings.EMAIL_FROM
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")
        try:
            with smtplib.SMTP(
                self._settings.SMTP_HOST,
                self._settings.SMTP_PORT,
                timeout=self._settings.SEND_TIMEOUT_SECONDS,
            ) as smtp:
                if self._settings.SMTP_STARTTLS:
                    smtp.starttls()
                if self._settings.SMTP_USER:
                    smtp.login(self._settings.SMTP_USER, self._settings.SMTP_PASSWORD)
                smtp.send_message(msg)
        except (OSError, smtplib.SMTPException) as e:
            raise NotificationTransportError(f"SMTP send failed: {e}") from e

    def _send_email_api(self, *, to: str, subject: str, html: str, text: str) -> None:
        payload = {
            "from": self._settings.EMAIL_FROM,
            "to": [to],
            "subject": subject,
            "html_body": html,
            "plain_body": text,
        }
        body = self._post(
            self._settings.EMAIL_API_ENDPOINT,
            json=payload,
            headers={"X-Server-API-Key": self._settings.EMAIL_API_KEY},
            label="email",
        )
        if body.get("status") != "success":
            raise NotificationTransportError(f"Email API rejected message: {body!r}")

    def send_sms(self, to: str, text: str) -> None:
        payload = {"from": self._settings.SMS_FROM, "to": to, "text": text}
        self._post(
            self._settings.SMS_API_ENDPOINT,
            json=payload,
            headers={"Authorization": f"Bearer {self._settings.SMS_API_KEY}"},
            label="sms",
        )
        log_json(logger, logging.INFO, "notification.sms.sent", to=to)

    def _post(self, url: str, *, json: dict, headers: dict[str, str], label: str) -> dict:
        if not url:
            raise NotificationTransportError(f"{label} API endpoint is not configured")
        try:
            res = self._http.post(url, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationTransportError(f"{label} API request failed: {e}") from e
        if res.status_code >= 400:
            raise NotificationTransportError(
                f"{label} API returned HTTP {res.status_code}: {res.text[:200]}"
            )
        try:
            body = res.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


def build_notification_sender(http_client: httpx.Client | None = None) -> NotificationSender:
    return TransportNotificationSender(
        settings=get_settings(),
        http_client=http_client or build_http_client(),
    )
