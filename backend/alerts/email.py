"""
Email Delivery for low stock alerts.

SendGrid implementation of the AlertDelivery capability. One email per
instant alert; one summary email per daily/weekly batch.
"""

import asyncio
from html import escape

import sendgrid
import structlog
from python_http_client.exceptions import HTTPError
from sendgrid.helpers.mail import Mail

from alerts.payloads import AlertPayload
from core.config import get_settings
from core.errors import DeliveryError
from integrations.base import AlertDelivery

logger = structlog.get_logger()


def _row(line, index: int) -> str:
    background = "#ffffff" if index % 2 == 0 else "#f8fafc"
    short = line.current_quantity <= 0
    return f"""
        <tr style="background: {background};">
          <td style="padding: 10px 12px; color: #1e293b;">{escape(line.display_name)}</td>
          <td style="padding: 10px 12px; text-align: right; font-weight: 600;
                     color: {'#dc2626' if short else '#b45309'};">{line.current_quantity}</td>
          <td style="padding: 10px 12px; text-align: right; color: #64748b;">{line.threshold_quantity}</td>
        </tr>"""


def _table(rows: str) -> str:
    return f"""
        <table style="width: 100%; border-collapse: collapse; font-size: 14px;">
          <thead>
            <tr style="text-align: left; color: #64748b;">
              <th style="padding: 8px 12px;">Product</th>
              <th style="padding: 8px 12px; text-align: right;">In stock</th>
              <th style="padding: 8px 12px; text-align: right;">Threshold</th>
            </tr>
          </thead>
          <tbody>{rows}
          </tbody>
        </table>"""


def render_alert_html(payload: AlertPayload, dashboard_url: str = "") -> str:
    count = len(payload.lines)
    if payload.is_test:
        intro = (
            f"This is a test email from StockPulse. {payload.cadence.value.capitalize()} low stock alerts "
            "for this shop will be delivered to this address."
        )
    elif payload.is_batch:
        intro = f"{count} product{'s are' if count != 1 else ' is'} below the alert threshold you set."
    else:
        intro = "A product just dropped below the alert threshold you set."
    rows = "".join(_row(line, i) for i, line in enumerate(payload.lines))
    link = (
        f"""<a href="{escape(dashboard_url)}"
           style="display: inline-block; background: #4f46e5; color: white;
                  padding: 10px 20px; border-radius: 8px; text-decoration: none;
                  margin-top: 16px; font-weight: 500;">
          Review inventory
        </a>"""
        if dashboard_url
        else ""
    )

    return f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #1e1b4b; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">{escape(payload.subject)}</h1>
        <p style="margin: 4px 0 0; color: #c7d2fe;">{escape(payload.shop)}</p>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        <p style="color: #334155; line-height: 1.6;">{intro}</p>
        {_table(rows) if payload.lines else ""}
        {link}
      </div>
      <div style="text-align: center; padding: 16px; color: #94a3b8; font-size: 12px;">
        StockPulse low stock alerts
      </div>
    </div>
    """


class SendGridDelivery(AlertDelivery):
    def __init__(
        self,
        api_key: str | None = None,
        from_email: str | None = None,
        dashboard_url: str | None = None,
        http_timeout: float | None = None,
    ):
        settings = get_settings()
        self.http_timeout = http_timeout or settings.delivery_http_timeout_seconds
        self.api_key = api_key if api_key is not None else settings.sendgrid_api_key
        self.from_email = from_email or settings.alert_from_email
        self.dashboard_url = dashboard_url if dashboard_url is not None else settings.dashboard_url

    def build_message(self, recipient: str, payload: AlertPayload) -> Mail:
        return Mail(
            from_email=self.from_email,
            to_emails=recipient,
            subject=payload.subject,
            html_content=render_alert_html(payload, self.dashboard_url),
        )

    async def deliver(self, recipient: str, payload: AlertPayload) -> None:
        if not self.api_key:
            raise DeliveryError("SendGrid API key is not configured")

        message = self.build_message(recipient, payload)
        client = sendgrid.SendGridAPIClient(api_key=self.api_key)
        # Bounded below the dispatcher's wait_for so an abandoned attempt
        # cannot still deliver after it was audited as failed.
        client.client.timeout = self.http_timeout
        try:
            # The SendGrid SDK is synchronous; keep it off the event loop.
            response = await asyncio.to_thread(client.send, message)
        except HTTPError as exc:
            raise DeliveryError(f"SendGrid rejected the message ({exc.status_code})") from exc
        except OSError as exc:
            raise DeliveryError(f"SendGrid request failed: {exc.__class__.__name__}") from exc

        if response.status_code not in (200, 201, 202):
            raise DeliveryError(f"SendGrid returned HTTP {response.status_code}")
        logger.info(
            "email.sent",
            shop=payload.shop,
            alert_type=payload.cadence.audit_type,
            lines=len(payload.lines),
        )
