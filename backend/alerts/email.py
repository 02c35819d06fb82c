"""
Email delivery for alert digests.

The digest job only depends on ``DigestNotifier``; SendGrid is the
production implementation.

Agent: full-stack-engineer
Skill: alert-systems (email delivery pattern)
"""

import asyncio
from abc import ABC, abstractmethod
from html import escape

import sendgrid
import structlog
from sendgrid.helpers.mail import Mail

from alerts.digest import DigestAlert, DigestPayload

logger = structlog.get_logger()

KIND_LABELS = {
    "out_of_stock": "Out of stock",
    "low_stock": "Low stock",
    "low_velocity": "Running out",
}


class DigestNotifier(ABC):
    @abstractmethod
    async def send_digest(self, recipient: str, tenant_name: str, payload: DigestPayload) -> bool:
        """Deliver one digest. Returns True only when the provider accepted it."""
        ...


def digest_subject(tenant_name: str, payload: DigestPayload) -> str:
    open_count = payload.alert_counts.total
    if open_count == 0:
        return f"StockWatch: stock recovered at {tenant_name}"
    noun = "alert" if open_count == 1 else "alerts"
    return f"StockWatch: {open_count} stock {noun} at {tenant_name}"


def _alert_row(alert: DigestAlert) -> str:
    label = KIND_LABELS.get(alert.kind, alert.kind)
    if not alert.is_open:
        label = f"Recovered ({label.lower()})"
    if alert.threshold_days is not None:
        days = "∞" if alert.days_left is None else f"{alert.days_left:.1f}"
        bound = f"{days} days left (min {alert.threshold_days})"
    else:
        bound = f"min {alert.threshold_quantity}"
    name = escape(alert.product_name or alert.sku or f"Variant {alert.variant_id}")
    sku = escape(alert.sku or "")
    return (
        "<tr>"
        f'<td style="padding: 8px; color: #1e293b;">{name}</td>'
        f'<td style="padding: 8px; color: #64748b;">{sku}</td>'
        f'<td style="padding: 8px;">{escape(label)}</td>'
        f'<td style="padding: 8px; text-align: right;">{alert.current_quantity}</td>'
        f'<td style="padding: 8px; color: #64748b;">{escape(bound)}</td>'
        "</tr>"
    )


def render_digest_html(tenant_name: str, payload: DigestPayload) -> str:
    counts = payload.alert_counts
    rows = "".join(_alert_row(a) for a in payload.alerts)

    skipped = ""
    if payload.skipped_threshold_count > 0:
        upgrade = ""
        if payload.upgrade_url:
            upgrade = (
                f' <a href="{escape(payload.upgrade_url, quote=True)}" '
                'style="color: #4f46e5; font-weight: 500;">Upgrade to Pro</a>'
            )
        skipped = (
            '<p style="background: #fff7ed; border-left: 4px solid #f59e0b; padding: 12px;">'
            f"{payload.skipped_threshold_count} threshold(s) were not checked because your plan limit "
            f"was reached.{upgrade}</p>"
        )

    return f"""
    <div style="font-family: Inter, sans-serif; max-width: 640px; margin: 0 auto;">
      <div style="background: #1e1b4b; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">Stock digest for {escape(tenant_name)}</h1>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        <p style="color: #334155;">
          Out of stock: <strong>{counts.out_of_stock}</strong> &middot;
          Low stock: <strong>{counts.low_stock}</strong> &middot;
          Running out: <strong>{counts.low_velocity}</strong>
        </p>
        <table style="width: 100%; border-collapse: collapse; font-size: 14px;">
          <tr style="text-align: left; color: #64748b;">
            <th style="padding: 8px;">Product</th><th style="padding: 8px;">SKU</th>
            <th style="padding: 8px;">Status</th><th style="padding: 8px; text-align: right;">Stock</th>
            <th style="padding: 8px;">Threshold</th>
          </tr>
          {rows}
        </table>
        {skipped}
      </div>
    </div>
    """


class SendGridDigestNotifier(DigestNotifier):
    def __init__(self, api_key: str, from_email: str):
        self.api_key = api_key
        self.from_email = from_email

    def _send(self, recipient: str, subject: str, html_content: str) -> int:
        sg = sendgrid.SendGridAPIClient(api_key=self.api_key)
        email = Mail(
            from_email=self.from_email,
            to_emails=recipient,
            subject=subject,
            html_content=html_content,
        )
        return sg.send(email).status_code

    async def send_digest(self, recipient: str, tenant_name: str, payload: DigestPayload) -> bool:
        if not self.api_key:
            logger.warning("digest.email_not_configured", recipient=recipient)
            return False

        subject = digest_subject(tenant_name, payload)
        html_content = render_digest_html(tenant_name, payload)
        try:
            status_code = await asyncio.to_thread(self._send, recipient, subject, html_content)
        except Exception:
            logger.error("digest.email_failed", recipient=recipient, tenant_id=payload.tenant_id, exc_info=True)
            return False

        sent = status_code in (200, 201, 202)
        if not sent:
            logger.warning("digest.email_rejected", recipient=recipient, status_code=status_code)
        return sent
