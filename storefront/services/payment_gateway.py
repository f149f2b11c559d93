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

"""Payment gateway integration (Stripe hosted checkout).

`StripeGateway` creates and looks up hosted checkout sessions for orders;
`parse_webhook_event` verifies and decodes inbound gateway events. The blocking
SDK calls run in a worker thread so they do not stall the event loop.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

import pydantic
from storefront import db
from storefront.exceptions import PaymentGatewayError
from storefront.exceptions import WebhookSignatureError
from storefront.models import CheckoutSessionInfo
from storefront.models import Settings
from storefront.models import WebhookEvent
import stripe

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 30 * 60


class PaymentGateway:
  """Interface of the hosted-checkout gateway used by the order flow."""

  async def create_checkout_session(
      self, order: db.Order
  ) -> CheckoutSessionInfo:
    raise NotImplementedError

  async def retrieve_checkout_session(
      self, session_id: str
  ) -> CheckoutSessionInfo:
    raise NotImplementedError


class StripeGateway(PaymentGateway):
  """Stripe Checkout implementation of PaymentGateway."""

  def __init__(self, settings: Settings):
    self.api_key = settings.stripe_secret_key
    self.frontend_url = settings.frontend_url.rstrip("/")

  async def create_checkout_session(
      self, order: db.Order
  ) -> CheckoutSessionInfo:
    """Creates a hosted checkout session that expires in 30 minutes.

    The order id and number travel in the session and payment intent metadata
    so webhook events can be matched back to the order. A non-zero order
    discount is applied through a single-use coupon, so the amount charged
    matches the order total.
    """
    metadata = order_metadata(order)
    address = order.shipping_address or {}
    params: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": build_line_items(order),
        "success_url": (
            f"{self.frontend_url}/order-success"
            f"?session_id={{CHECKOUT_SESSION_ID}}&order_id={order.id}"
        ),
        "cancel_url": (
            f"{self.frontend_url}/checkout?cancelled=true&order_id={order.id}"
        ),
        "expires_at": int(time.time()) + SESSION_TTL_SECONDS,
        "metadata": metadata,
        "payment_intent_data": {"metadata": metadata},
        "idempotency_key": f"checkout_{order.id}",
        "api_key": self.api_key,
    }
    if address.get("email"):
      params["customer_email"] = address["email"]

    try:
      discount_cents = to_cents(order.discount)
      if discount_cents > 0:
        coupon = await asyncio.to_thread(
            stripe.Coupon.create,
            amount_off=discount_cents,
            currency=(order.currency or "USD").lower(),
            duration="once",
            name=f"Order {order.order_number} discount",
            idempotency_key=f"coupon_{order.id}",
            api_key=self.api_key,
        )
        params["discounts"] = [{"coupon": coupon.get("id")}]
      session = await asyncio.to_thread(
          stripe.checkout.Session.create, **params
      )
    except stripe.StripeError as e:
      logger.error(
          "Creating checkout session for order %s failed: %s",
          order.order_number,
          e,
      )
      raise PaymentGatewayError(f"Payment gateway error: {e}") from e

    logger.info(
        "Created checkout session %s for order %s",
        session.get("id"),
        order.order_number,
    )
    return _session_info(session)

  async def retrieve_checkout_session(
      self, session_id: str
  ) -> CheckoutSessionInfo:
    try:
      session = await asyncio.to_thread(
          stripe.checkout.Session.retrieve, session_id, api_key=self.api_key
      )
    except stripe.StripeError as e:
      logger.error("Retrieving checkout session %s failed: %s", session_id, e)
      raise PaymentGatewayError(f"Payment gateway error: {e}") from e
    return _session_info(session)


def order_metadata(order: db.Order) -> Dict[str, str]:
  return {
      "orderId": order.id,
      "orderNumber": order.order_number,
      "userId": order.user_id,
  }


def build_line_items(order: db.Order) -> List[Dict[str, Any]]:
  """Builds gateway line items in cents, with tax and shipping as lines."""
  line_items = []
  for item in order.items or []:
    line_items.append({
        "price_data": {
            "currency": (order.currency or "USD").lower(),
            "product_data": {"name": item.get("name") or item.get("gtin")},
            "unit_amount": to_cents(item.get("unit_price")),
        },
        "quantity": int(item.get("quantity") or 1),
    })
  for label, amount in (("Tax", order.tax), ("Shipping", order.shipping)):
    if amount:
      line_items.append({
          "price_data": {
              "currency": (order.currency or "USD").lower(),
              "product_data": {"name": label},
              "unit_amount": to_cents(amount),
          },
          "quantity": 1,
      })
  return line_items


def to_cents(amount: Any) -> int:
  return int(round(float(amount or 0) * 100))


def _session_info(session: Any) -> CheckoutSessionInfo:
  payment_intent = session.get("payment_intent")
  if payment_intent is not None and not isinstance(payment_intent, str):
    payment_intent = payment_intent.get("id")
  return CheckoutSessionInfo(
      id=session.get("id"),
      url=session.get("url"),
      payment_status=session.get("payment_status"),
      payment_intent=payment_intent,
      metadata=dict(session.get("metadata") or {}),
  )


def parse_webhook_event(
    payload: bytes, signature: Optional[str], secret: Optional[str]
) -> WebhookEvent:
  """Verifies a gateway webhook and decodes it.

  Args:
    payload: The raw request body, exactly as received.
    signature: The `Stripe-Signature` header.
    secret: The endpoint's signing secret.

  Returns:
    The decoded event.

  Raises:
    WebhookSignatureError: If the signature is missing or does not verify, or
      the payload is not a well-formed event.
  """
  if not signature or not secret:
    raise WebhookSignatureError("Missing webhook signature")
  try:
    stripe.Webhook.construct_event(payload, signature, secret)
  except stripe.SignatureVerificationError as e:
    logger.warning("Webhook signature verification failed: %s", e)
    raise WebhookSignatureError(f"Webhook Error: {e}") from e
  except ValueError as e:
    raise WebhookSignatureError(f"Webhook Error: invalid payload: {e}") from e

  try:
    return WebhookEvent.model_validate(json.loads(payload))
  except (ValueError, pydantic.ValidationError) as e:
    raise WebhookSignatureError(f"Webhook Error: malformed event: {e}") from e
