"""
Budget Alert Notifications.

Sends budget alerts by email (SMTP, HTML + plain text) and by webhook
(Slack-compatible JSON POST). Delivery is best-effort: failures are logged
and reported as False, never raised to the evaluator.
"""

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import httpx

from .models import AlertLevel, BudgetAlert, BudgetAlertRecord

logger = logging.getLogger("sonar.notifications")


@dataclass
class EmailConfig:
    """Email configuration for the notifier."""
    host: str
    port: int
    username: str
    password: str
    use_tls: bool
    email_from: str


def _headline(alert: BudgetAlert, record: BudgetAlertRecord) -> str:
    if record.level == AlertLevel.EXCEEDED:
        return f"Budget exceeded: {alert.name}"
    return f"Budget warning: {alert.name}"


def _details(alert: BudgetAlert, record: BudgetAlertRecord) -> list[tuple[str, str]]:
    return [
        ("Spend", f"${record.spend_usd:,.2f}"),
        ("Threshold", f"${record.threshold_usd:,.2f}"),
        ("Used", f"{record.percent:.1f}%"),
        ("Period", f"{alert.period.value} ({record.period_start:%Y-%m-%d %H:%M} to {record.period_end:%Y-%m-%d %H:%M})"),
    ]


class EmailNotifier:
    """Sends budget alert emails over SMTP."""

    def __init__(self, config: EmailConfig, timeout: float = 30.0):
        self.config = config
        self.timeout = timeout
        logger.info(f"EmailNotifier initialized for {config.host}:{config.port}")

    def _generate_html(self, alert: BudgetAlert, record: BudgetAlertRecord) -> str:
        color = "#c0392b" if record.level == AlertLevel.EXCEEDED else "#d68910"
        rows = "\n".join(
            f'<tr><td style="padding:4px 12px 4px 0;color:#666;">{label}</td>'
            f'<td style="padding:4px 0;"><strong>{value}</strong></td></tr>'
            for label, value in _details(alert, record)
        )
        return f"""<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, Helvetica, Arial, sans-serif; color:#222; max-width:560px;">
  <h2 style="color:{color}; margin-bottom:8px;">{_headline(alert, record)}</h2>
  <p>AI usage spend has reached {record.percent:.0f}% of the configured threshold.</p>
  <table style="border-collapse:collapse;">
{rows}
  </table>
  <p style="color:#888; font-size:12px; margin-top:24px;">Sent by Sonar budget alerts.</p>
</body>
</html>"""

    def _generate_plain_text(self, alert: BudgetAlert, record: BudgetAlertRecord) -> str:
        lines = [_headline(alert, record), ""]
        lines.extend(f"{label}: {value}" for label, value in _details(alert, record))
        return "\n".join(lines)

    def send(self, to: list[str], alert: BudgetAlert, record: BudgetAlertRecord) -> bool:
        """
        Send one alert email.

        Returns:
            True if the email was sent successfully.
        """
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"[Sonar] {_headline(alert, record)}"
        msg["From"] = self.config.email_from
        msg["To"] = ", ".join(to)
        msg.attach(MIMEText(self._generate_plain_text(alert, record), "plain"))
        msg.attach(MIMEText(self._generate_html(alert, record), "html"))

        logger.info(f"Sending budget alert {alert.id} email to {len(to)} recipient(s)")
        try:
            if self.config.use_tls:
                server = smtplib.SMTP(self.config.host, self.config.port, timeout=self.timeout)
                server.starttls()
            else:
                server = smtplib.SMTP_SSL(self.config.host, self.config.port, timeout=self.timeout)

            if self.config.username:
                server.login(self.config.username, self.config.password)
            server.sendmail(self.config.email_from, to, msg.as_string())
            server.quit()
            logger.info(f"Budget alert {alert.id} email sent")
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
            logger.error("  Check SMTP_USERNAME and SMTP_PASSWORD in .env")
            return False
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e} ({type(e).__name__})")
            return False
        except OSError as e:
            logger.error(f"SMTP connection to {self.config.host}:{self.config.port} failed: {e}")
            return False

    async def notify(self, to: list[str], alert: BudgetAlert, record: BudgetAlertRecord) -> bool:
        # smtplib blocks; keep it off the event loop
        return await asyncio.to_thread(self.send, to, alert, record)


class WebhookNotifier:
    """POSTs budget alerts as Slack-compatible JSON."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self._client = client
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def build_payload(self, alert: BudgetAlert, record: BudgetAlertRecord) -> dict[str, Any]:
        return {
            "text": f"{_headline(alert, record)} ({record.percent:.0f}% of ${record.threshold_usd:,.2f})",
            "attachments": [
                {
                    "color": "danger" if record.level == AlertLevel.EXCEEDED else "warning",
                    "fields": [
                        {"title": label, "value": value, "short": True}
                        for label, value in _details(alert, record)
                    ],
                }
            ],
            "alert": {
                "id": alert.id,
                "name": alert.name,
                "level": record.level.value,
                "spendUsd": record.spend_usd,
                "thresholdUsd": record.threshold_usd,
                "percent": record.percent,
                "periodStart": record.period_start.isoformat(),
                "periodEnd": record.period_end.isoformat(),
            },
        }

    async def notify(self, url: str, alert: BudgetAlert, record: BudgetAlertRecord) -> bool:
        try:
            response = await self._get_client().post(url, json=self.build_payload(alert, record))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook for budget alert {alert.id} failed: {e}")
            return False
        logger.info(f"Budget alert {alert.id} webhook delivered ({response.status_code})")
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class NotificationDispatcher:
    """Fans an alert out to every channel it is configured for."""

    def __init__(self, email: EmailNotifier | None = None, webhook: WebhookNotifier | None = None):
        self.email = email
        self.webhook = webhook

    async def notify(self, alert: BudgetAlert, record: BudgetAlertRecord) -> bool:
        """
        Deliver to all configured channels concurrently.

        Returns:
            True if at least one channel delivered.
        """
        tasks = []
        if alert.notify_email and self.email is not None:
            tasks.append(self.email.notify([alert.notify_email], alert, record))
        if alert.notify_webhook and self.webhook is not None:
            tasks.append(self.webhook.notify(alert.notify_webhook, alert, record))
        if not tasks:
            logger.debug(f"Budget alert {alert.id} has no deliverable channels")
            return False

        results = await asyncio.gather(*tasks, return_exceptions=True)
        delivered = False
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Notification for budget alert {alert.id} failed: {result}")
            elif result:
                delivered = True
        return delivered

    async def close(self) -> None:
        if self.webhook is not None:
            await self.webhook.close()
