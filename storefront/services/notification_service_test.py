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

"""Tests for the order email dispatcher."""

import asyncio

from absl.testing import absltest
from storefront import db
from storefront.services.notification_service import NotificationDispatcher
from storefront.services.notification_service import render_order_email
from storefront.testing import fakes


def _order(**overrides) -> db.Order:
  fields = {
      "id": "order-1",
      "order_number": "ORD-20260101-00042",
      "user_id": "user-1",
      "items": [fakes.sample_line("111", "offer-1", 2, 12.5)],
      "subtotal": 25.0,
      "tax": 2.0,
      "shipping": 5.0,
      "discount": 0.0,
      "total_amount": 32.0,
      "currency": "USD",
      "status": "accepted",
      "shipping_address": dict(fakes.SAMPLE_ADDRESS),
  }
  fields.update(overrides)
  return db.Order(**fields)


class NotificationDispatcherTest(absltest.TestCase):

  def test_confirmation_goes_to_shipping_email(self):
    sender = fakes.RecordingEmailSender()
    dispatcher = NotificationDispatcher(sender)
    asyncio.run(dispatcher.send_order_confirmation(_order()))

    self.assertLen(sender.sent, 1)
    to, subject, body = sender.sent[0]
    self.assertEqual(to, "ada@example.com")
    self.assertEqual(
        subject, "Order Confirmation for Order #ORD-20260101-00042"
    )
    self.assertIn("Hi Ada Lovelace,", body)
    self.assertIn("<td>Product 111</td><td>2</td><td>12.50</td>", body)
    self.assertIn("Total: 32.00 USD", body)

  def test_dispatch_email_includes_tracking_number(self):
    sender = fakes.RecordingEmailSender()
    order = _order(status="dispatched", tracking_number="TRACK-9")
    asyncio.run(NotificationDispatcher(sender).send_order_dispatched(order))

    _, subject, body = sender.sent[0]
    self.assertEqual(
        subject, "Your Order #ORD-20260101-00042 Has Been Dispatched!"
    )
    self.assertIn("TRACK-9", body)

  def test_missing_email_is_skipped(self):
    sender = fakes.RecordingEmailSender()
    address = dict(fakes.SAMPLE_ADDRESS, email=None)
    order = _order(shipping_address=address)
    asyncio.run(NotificationDispatcher(sender).send_order_delivered(order))
    self.assertEmpty(sender.sent)

  def test_send_failure_is_not_raised(self):
    sender = fakes.RecordingEmailSender(fail=True)
    asyncio.run(NotificationDispatcher(sender).send_order_cancelled(_order()))
    self.assertEmpty(sender.sent)

  def test_render_escapes_customer_input(self):
    address = dict(fakes.SAMPLE_ADDRESS, first_name="<script>")
    body = render_order_email(
        _order(shipping_address=address), "Heading", "Intro"
    )
    self.assertNotIn("<script>", body)
    self.assertIn("&lt;script&gt;", body)


if __name__ == "__main__":
  absltest.main()
