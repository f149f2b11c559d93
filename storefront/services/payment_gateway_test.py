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

"""Tests for the Stripe payment gateway."""

import asyncio
from unittest import mock

from absl.testing import absltest
from storefront import db
from storefront.exceptions import PaymentGatewayError
from storefront.exceptions import WebhookSignatureError
from storefront.models import Settings
from storefront.services import payment_gateway
from storefront.testing import fakes
import stripe

SECRET = "whsec_unit"


def _order(**overrides) -> db.Order:
  fields = dict(
      id="order-1",
      order_number="ORD-20260101-00001",
      user_id="user-1",
      items=[
          fakes.sample_line("111", "offer-1", 2, 19.99),
          fakes.sample_line("222", "offer-2", 1, 5.0),
      ],
      subtotal=44.98,
      tax=3.6,
      shipping=0.0,
      discount=0.0,
      total_amount=48.58,
      currency="USD",
      shipping_address=dict(fakes.SAMPLE_ADDRESS),
  )
  fields.update(overrides)
  return db.Order(**fields)


class LineItemsTest(absltest.TestCase):

  def test_amounts_are_in_cents_with_tax_line(self):
    items = payment_gateway.build_line_items(_order())

    self.assertEqual(
        [(i["price_data"]["unit_amount"], i["quantity"]) for i in items],
        [(1999, 2), (500, 1), (360, 1)],
    )
    self.assertEqual(items[2]["price_data"]["product_data"]["name"], "Tax")
    self.assertEqual(items[0]["price_data"]["currency"], "usd")


class StripeGatewayTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.gateway = payment_gateway.StripeGateway(
        Settings(stripe_secret_key="sk_test", frontend_url="https://shop.test/")
    )

  def test_create_session_carries_order_metadata(self):
    session = {
        "id": "cs_1",
        "url": "https://checkout.stripe.test/cs_1",
        "payment_status": "unpaid",
        "payment_intent": None,
        "metadata": {"orderId": "order-1"},
    }
    with mock.patch.object(
        stripe.checkout.Session, "create", return_value=session
    ) as create, mock.patch.object(stripe.Coupon, "create") as coupon:
      info = asyncio.run(self.gateway.create_checkout_session(_order()))

    self.assertEqual(info.id, "cs_1")
    coupon.assert_not_called()
    self.assertNotIn("discounts", create.call_args.kwargs)
    kwargs = create.call_args.kwargs
    self.assertEqual(kwargs["metadata"]["orderNumber"], "ORD-20260101-00001")
    self.assertEqual(
        kwargs["payment_intent_data"]["metadata"], kwargs["metadata"]
    )
    self.assertEqual(kwargs["idempotency_key"], "checkout_order-1")
    self.assertEqual(kwargs["api_key"], "sk_test")
    self.assertEqual(kwargs["customer_email"], "ada@example.com")
    self.assertTrue(
        kwargs["success_url"].startswith("https://shop.test/order-success?")
    )

  def test_discount_is_applied_as_single_use_coupon(self):
    order = _order(discount=4.58, total_amount=44.0)
    with mock.patch.object(
        stripe.checkout.Session, "create", return_value={"id": "cs_2"}
    ) as create, mock.patch.object(
        stripe.Coupon, "create", return_value={"id": "co_1"}
    ) as coupon:
      asyncio.run(self.gateway.create_checkout_session(order))

    coupon_kwargs = coupon.call_args.kwargs
    self.assertEqual(coupon_kwargs["amount_off"], 458)
    self.assertEqual(coupon_kwargs["currency"], "usd")
    self.assertEqual(coupon_kwargs["duration"], "once")
    self.assertEqual(create.call_args.kwargs["discounts"], [{"coupon": "co_1"}])

  def test_retrieve_expands_payment_intent(self):
    session = {
        "id": "cs_1",
        "payment_status": "paid",
        "payment_intent": {"id": "pi_1"},
        "metadata": {},
    }
    with mock.patch.object(
        stripe.checkout.Session, "retrieve", return_value=session
    ):
      info = asyncio.run(self.gateway.retrieve_checkout_session("cs_1"))
    self.assertEqual(info.payment_status, "paid")
    self.assertEqual(info.payment_intent, "pi_1")

  def test_stripe_errors_are_wrapped(self):
    with mock.patch.object(
        stripe.checkout.Session,
        "retrieve",
        side_effect=stripe.InvalidRequestError("No such session", "id"),
    ):
      with self.assertRaises(PaymentGatewayError):
        asyncio.run(self.gateway.retrieve_checkout_session("cs_missing"))


class ParseWebhookEventTest(absltest.TestCase):

  def test_valid_signature(self):
    payload = fakes.gateway_event(
        "evt_1", "checkout.session.completed", {"id": "cs_1", "metadata": {}}
    )
    event = payment_gateway.parse_webhook_event(
        payload, fakes.sign_payload(payload, SECRET), SECRET
    )
    self.assertEqual(event.id, "evt_1")
    self.assertEqual(event.type, "checkout.session.completed")
    self.assertEqual(event.data.object_["id"], "cs_1")

  def test_tampered_payload_is_rejected(self):
    payload = fakes.gateway_event("evt_1", "charge.succeeded", {"id": "ch_1"})
    signature = fakes.sign_payload(payload, SECRET)
    tampered = payload.replace(b"ch_1", b"ch_2")
    with self.assertRaises(WebhookSignatureError):
      payment_gateway.parse_webhook_event(tampered, signature, SECRET)

  def test_missing_signature_or_secret(self):
    payload = fakes.gateway_event("evt_1", "charge.succeeded", {})
    with self.assertRaises(WebhookSignatureError):
      payment_gateway.parse_webhook_event(payload, None, SECRET)
    with self.assertRaises(WebhookSignatureError):
      payment_gateway.parse_webhook_event(
          payload, fakes.sign_payload(payload, SECRET), None
      )


if __name__ == "__main__":
  absltest.main()
