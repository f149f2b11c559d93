#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Transactional order emails.

`NotificationDispatcher` renders the confirmation, cancellation, dispatch and
delivery emails for an order and hands them to an `EmailSender`. Sending is
fire-and-forget: every dispatcher method logs failures and never raises, so a
mail problem cannot undo an order update that has already been committed.
"""

import asyncio
from email.message import EmailMessage
import html
import logging
import smtplib
from typing import Any, Dict, List, Optional

from storefront import db
from storefront.models import Settings

logger = logging.getLogger(__name__)


class EmailSender:
  """Delivers one rendered email."""

  async def send(self, to: str, subject: str, body_html: str) -> None:
    raise NotImplementedError


class LoggingEmailSender(EmailSender):
  """Sender used when no SMTP server is configured."""

  async def send(self, to: str, subject: str, body_html: str) -> None:
    logger.info("SMTP not configured, not sending %r to %s", subject, to)


class SmtpEmailSender(EmailSender):
  """Sends HTML mail through an SMTP server with STARTTLS."""

  def __init__(self, settings: Settings):
    self.host = settings.smtp_host
    self.port = settings.smtp_port
    self.username = settings.smtp_username
    self.password = settings.smtp_password
    self.mail_from = settings.mail_from

  async def send(self, to: str, subject: str, body_html: str) -> None:
    message = EmailMessage()
    message["From"] = self.mail_from
    message["To"] = to
    message["Subject"] = subject
    message.set_content("This message requires an HTML capable mail client.")
    message.add_alternative(body_html, subtype="html")
    await asyncio.to_thread(self._send_blocking, message)

  def _send_blocking(self, message: EmailMessage) -> None:
    with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
      smtp.starttls()
      if self.username:
        smtp.login(self.username, self.password or "")
      smtp.send_message(message)


def build_email_sender(settings: Settings) -> EmailSender:
  if settings.smtp_host:
    return SmtpEmailSender(settings)
  return LoggingEmailSender()


class NotificationDispatcher:
  """Renders and sends the order emails."""

  def __init__(self, sender: EmailSender):
    self.sender = sender

  async def send_order_confirmation(self, order: db.Order) -> None:
    await self._dispatch(
        order,
        f"Order Confirmation for Order #{order.order_number}",
        "Thank you for your order!",
        "We have received your payment and placed your order with our"
        " supplier. We will let you know when it ships.",
    )

  async def send_order_cancelled(self, order: db.Order) -> None:
    await self._dispatch(
        order,
        f"Cancellation Confirmation for Order #{order.order_number}",
        "Your order has been cancelled",
        "Your order has been cancelled. If you were charged, the refund will"
        " be issued to your original payment method.",
    )

  async def send_order_dispatched(self, order: db.Order) -> None:
    tracking = ""
    if order.tracking_number:
      tracking = f" Your tracking number is {order.tracking_number}."
    await self._dispatch(
        order,
        f"Your Order #{order.order_number} Has Been Dispatched!",
        "Your order is on its way",
        "Your order has left our warehouse." + tracking,
    )

  async def send_order_delivered(self, order: db.Order) -> None:
    await self._dispatch(
        order,
        f"Your Order #{order.order_number} Has Been Delivered!",
        "Your order has been delivered",
        "Your order has been delivered. We hope you enjoy it!",
    )

  async def _dispatch(
      self, order: db.Order, subject: str, heading: str, intro: str
  ) -> None:
    recipient = (order.shipping_address or {}).get("email")
    if not recipient:
      logger.warning(
          "Order %s has no email address, skipping %r",
          order.order_number,
          subject,
      )
      return
    try:
      await self.sender.send(
          recipient, subject, render_order_email(order, heading, intro)
      )
      logger.info("Sent %r to %s", subject, recipient)
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error(
          "Failed to send %r for order %s: %s", subject, order.order_number, e
      )


def render_order_email(order: db.Order, heading: str, intro: str) -> str:
  """Renders the HTML body shared by all order emails."""
  address: Dict[str, Any] = order.shipping_address or {}
  name = " ".join(
      filter(None, [address.get("first_name"), address.get("last_name")])
  )
  rows: List[str] = []
  for item in order.items or []:
    rows.append(
        "<tr><td>{}</td><td>{}</td><td>{:.2f}</td><td>{:.2f}</td></tr>".format(
            _e(item.get("name") or item.get("gtin")),
            int(item.get("quantity") or 0),
            float(item.get("unit_price") or 0),
            float(item.get("subtotal") or 0),
        )
    )
  address_lines = [
      name,
      address.get("company_name"),
      address.get("street_address"),
      " ".join(filter(None, [address.get("town_city"), address.get("state")])),
      " ".join(
          filter(None, [address.get("zip"), address.get("country_region")])
      ),
  ]
  greeting = _e(name or "there")
  table_rows = "".join(rows)
  shipping_to = "<br>".join(_e(line) for line in address_lines if line)
  return f"""<html><body>
<h2>{_e(heading)}</h2>
<p>Hi {greeting},</p>
<p>{_e(intro)}</p>
<p><strong>Order number:</strong> {_e(order.order_number)}<br>
<strong>Status:</strong> {_e(order.status)}</p>
<table>
<tr><th>Item</th><th>Qty</th><th>Unit price</th><th>Subtotal</th></tr>
{table_rows}
</table>
<p>Subtotal: {order.subtotal:.2f} {_e(order.currency)}<br>
Tax: {order.tax:.2f}<br>
Shipping: {order.shipping:.2f}<br>
Discount: {order.discount:.2f}<br>
<strong>Total: {order.total_amount:.2f} {_e(order.currency)}</strong></p>
<p><strong>Shipping to:</strong><br>{shipping_to}</p>
</body></html>"""


def _e(value: Optional[Any]) -> str:
  return html.escape(str(value)) if value is not None else ""
