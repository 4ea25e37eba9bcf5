from __future__ import annotations

import hashlib
import hmac
import json
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Iterable, Optional, Protocol

import requests
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from branchops.models import DashboardNotification, Webhook

logger = logging.getLogger(__name__)

RECONCILIATION_COMPLETED = "finance.reconciliation.completed"


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    success: bool
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {"channel": self.channel, "success": self.success, "detail": self.detail}


class NotificationChannel(Protocol):
    name: str

    def send(self, event: str, payload: dict) -> ChannelResult:
        ...


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def sign_payload(body: dict, secret: str) -> str:
    message = json.dumps(body, default=_json_default, separators=(",", ":"), sort_keys=True)
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def _summary_text(event: str, payload: dict) -> str:
    status = payload.get("status", "unknown")
    period = payload.get("period") or {}
    discrepancies = payload.get("discrepancies") or []
    return (
        f"[{event}] status={status} "
        f"period={period.get('startDate', '?')}..{period.get('endDate', '?')} "
        f"discrepancies={len(discrepancies)}"
    )


class WebhookChannel:
    def __init__(
        self,
        webhook_id: int,
        url: str,
        tenant_id: int,
        branch_id: Optional[int] = None,
        secret: Optional[str] = None,
        headers: Optional[dict] = None,
        timeout: float = 10,
        triggered_by: Optional[str] = None,
    ) -> None:
        self.name = f"webhook:{webhook_id}"
        self.url = url
        self.tenant_id = tenant_id
        self.branch_id = branch_id
        self.secret = secret
        self.headers = headers or {}
        self.timeout = timeout
        self.triggered_by = triggered_by

    def build_body(self, event: str, payload: dict) -> dict:
        body = {
            "event": event,
            "tenantId": self.tenant_id,
            "branchId": self.branch_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": payload,
            "triggeredBy": self.triggered_by,
        }
        if self.secret:
            body["signature"] = sign_payload(body, self.secret)
        return body

    def send(self, event: str, payload: dict) -> ChannelResult:
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event,
            "X-Webhook-Tenant": str(self.tenant_id),
            **self.headers,
        }
        if self.branch_id is not None:
            headers["X-Webhook-Branch"] = str(self.branch_id)
        body = self.build_body(event, payload)
        response = requests.post(
            self.url,
            data=json.dumps(body, default=_json_default),
            headers=headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return ChannelResult(self.name, True, f"HTTP {response.status_code}")


class EmailChannel:
    name = "email"

    def __init__(self, host: str, port: int, sender: str, recipients: list[str], timeout: float = 5) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.recipients = recipients
        self.timeout = timeout

    def send(self, event: str, payload: dict) -> ChannelResult:
        message = EmailMessage()
        message["Subject"] = f"Finance reconciliation: {payload.get('status', 'unknown')}"
        message["From"] = self.sender
        message["To"] = ", ".join(self.recipients)
        message.set_content(
            _summary_text(event, payload)
            + "\n\n"
            + json.dumps(payload, default=_json_default, indent=2)
        )
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
            client.send_message(message)
        return ChannelResult(self.name, True, f"sent to {len(self.recipients)} recipient(s)")


class WhatsAppChannel:
    name = "whatsapp"

    def __init__(self, api_url: str, token: Optional[str], recipients: list[str], timeout: float = 5) -> None:
        self.api_url = api_url
        self.token = token
        self.recipients = recipients
        self.timeout = timeout

    def send(self, event: str, payload: dict) -> ChannelResult:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        text = _summary_text(event, payload)
        for recipient in self.recipients:
            response = requests.post(
                self.api_url,
                json={"to": recipient, "message": text},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        return ChannelResult(self.name, True, f"sent to {len(self.recipients)} recipient(s)")


class DashboardChannel:
    name = "dashboard"

    def __init__(self, session: Session, tenant_id: int, branch_id: Optional[int] = None) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.branch_id = branch_id

    def send(self, event: str, payload: dict) -> ChannelResult:
        # Savepoint so a failed insert leaves the caller's transaction usable.
        with self.session.begin_nested():
            notification = DashboardNotification(
                tenant_id=self.tenant_id,
                branch_id=self.branch_id,
                event=event,
                title=f"Reconciliation {payload.get('status', 'completed')}",
                payload=json.loads(json.dumps(payload, default=_json_default)),
                created_at=datetime.now(timezone.utc),
            )
            self.session.add(notification)
        return ChannelResult(self.name, True, f"notification {notification.id}")


def webhooks_for_event(
    session: Session, tenant_id: int, event: str, branch_id: Optional[int]
) -> list[Webhook]:
    stmt = select(Webhook).where(
        Webhook.tenant_id == tenant_id,
        Webhook.event == event,
        Webhook.is_active.is_(True),
    )
    if branch_id is None:
        stmt = stmt.where(Webhook.branch_id.is_(None))
    else:
        stmt = stmt.where(or_(Webhook.branch_id == branch_id, Webhook.branch_id.is_(None)))
    return list(session.scalars(stmt.order_by(Webhook.id)))


def build_channels(
    session: Session,
    settings,
    tenant_id: int,
    branch_id: Optional[int],
    event: str,
    triggered_by: Optional[str] = None,
) -> list[NotificationChannel]:
    channels: list[NotificationChannel] = [
        WebhookChannel(
            webhook_id=webhook.id,
            url=webhook.url,
            tenant_id=tenant_id,
            branch_id=branch_id,
            secret=webhook.secret_key,
            headers=webhook.headers,
            timeout=webhook.timeout_seconds,
            triggered_by=triggered_by,
        )
        for webhook in webhooks_for_event(session, tenant_id, event, branch_id)
    ]
    if settings.smtp_host and settings.email_recipients:
        channels.append(
            EmailChannel(
                settings.smtp_host,
                settings.smtp_port,
                settings.smtp_sender,
                settings.email_recipients,
                settings.notification_timeout_seconds,
            )
        )
    if settings.whatsapp_api_url and settings.whatsapp_recipients:
        channels.append(
            WhatsAppChannel(
                settings.whatsapp_api_url,
                settings.whatsapp_api_token,
                settings.whatsapp_recipients,
                settings.notification_timeout_seconds,
            )
        )
    if settings.dashboard_notifications:
        channels.append(DashboardChannel(session, tenant_id, branch_id))
    return channels


def dispatch(channels: Iterable[NotificationChannel], event: str, payload: dict) -> list[ChannelResult]:
    results = []
    for channel in channels:
        try:
            result = channel.send(event, payload)
        except Exception as exc:
            logger.warning("notification channel %s failed: %s", channel.name, exc)
            result = ChannelResult(channel.name, False, str(exc) or exc.__class__.__name__)
        results.append(result)
    return results
