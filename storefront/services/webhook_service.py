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

"""Reconciles payment gateway webhook events with local orders.

Each verified event is matched to an order through the order number (or id)
the server put into the gateway metadata, and mapped to a payment/status
update. Processed event ids are stored, so a redelivered event is acknowledged
without being applied again. A completed checkout triggers the upstream
fulfillment of the order; the orchestrator's own guard keeps two different
events for the same order from placing two upstream orders.
"""

import logging
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from storefront import db
from storefront.enums import OrderStatus
from storefront.enums import PaymentStatus
from storefront.models import WebhookEvent
from storefront.services.checkout_orchestrator import CheckoutOrchestrator
from storefront.services.order_service import apply_status
from storefront.services.order_service import mark_paid

logger = logging.getLogger(__name__)

# Payment failures no longer cancel orders that reached these statuses.
_SETTLED_STATUSES = {
    OrderStatus.ACCEPTED.value,
    OrderStatus.DISPATCHED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.REFUNDED.value,
}


def _start_processing(order: db.Order) -> None:
  if order.status == OrderStatus.PENDING.value:
    apply_status(order, OrderStatus.PROCESSING)


def _cancel_unpaid(
    order: db.Order, payment_status: PaymentStatus, reason: str
) -> None:
  order.payment_status = payment_status.value
  if order.status in _SETTLED_STATUSES:
    logger.warning(
        "Not cancelling order %s in status %s: %s",
        order.order_number,
        order.status,
        reason,
    )
    return
  apply_status(order, OrderStatus.CANCELLED, reason)


def on_checkout_completed(order: db.Order, obj: Dict[str, Any]) -> bool:
  mark_paid(order, obj.get("payment_intent"))
  order.payment_method = "stripe"
  method_types = obj.get("payment_method_types") or []
  if method_types:
    order.payment_method_type = method_types[0]
  _start_processing(order)
  return (
      order.status == OrderStatus.PROCESSING.value
      and not order.upstream_order_id
  )


def on_async_payment_succeeded(order: db.Order, obj: Dict[str, Any]) -> bool:
  mark_paid(order, obj.get("payment_intent"))
  _start_processing(order)
  return False


def on_async_payment_failed(order: db.Order, obj: Dict[str, Any]) -> bool:
  del obj  # Unused.
  _cancel_unpaid(
      order, PaymentStatus.FAILED, "Async payment failed or was declined."
  )
  return False


def on_checkout_expired(order: db.Order, obj: Dict[str, Any]) -> bool:
  del obj  # Unused.
  _cancel_unpaid(
      order,
      PaymentStatus.EXPIRED,
      "Checkout session expired before completion from user payment.",
  )
  return False


def on_payment_intent_succeeded(order: db.Order, obj: Dict[str, Any]) -> bool:
  mark_paid(order, obj.get("id"))
  _start_processing(order)
  return False


def on_payment_intent_failed(order: db.Order, obj: Dict[str, Any]) -> bool:
  error = obj.get("last_payment_error") or {}
  message = error.get("message") or "Unknown error"
  _cancel_unpaid(order, PaymentStatus.FAILED, f"Payment failed: {message}")
  return False


def on_charge_succeeded(order: db.Order, obj: Dict[str, Any]) -> bool:
  mark_paid(order, obj.get("id"))
  return False


# Each handler updates the order in memory and returns whether the order
# should now be fulfilled upstream.
EVENT_HANDLERS: Dict[str, Callable[[db.Order, Dict[str, Any]], bool]] = {
    "checkout.session.completed": on_checkout_completed,
    "checkout.session.async_payment_succeeded": on_async_payment_succeeded,
    "checkout.session.async_payment_failed": on_async_payment_failed,
    "checkout.session.expired": on_checkout_expired,
    "payment_intent.succeeded": on_payment_intent_succeeded,
    "payment_intent.payment_failed": on_payment_intent_failed,
    "charge.succeeded": on_charge_succeeded,
}


class WebhookService:
  """Applies verified gateway events to orders."""

  def __init__(
      self, session: AsyncSession, orchestrator: CheckoutOrchestrator
  ):
    self.session = session
    self.orchestrator = orchestrator

  async def handle_event(
      self,
      event: WebhookEvent,
      background_tasks: Optional[BackgroundTasks] = None,
  ) -> Dict[str, Any]:
    """Applies one event and returns the acknowledgement body.

    Unknown event types, events for unknown orders and redelivered events are
    acknowledged without changes so the gateway stops retrying them.

    Args:
      event: The verified gateway event.
      background_tasks: When given, a triggered fulfillment runs after the
        response is sent instead of before it.
    """
    if await db.get_webhook_event(self.session, event.id):
      logger.info("Webhook event %s already processed", event.id)
      return {"received": True}

    obj = event.data.object_
    metadata = obj.get("metadata") or {}
    reference = metadata.get("orderNumber") or metadata.get("orderId")
    order: Optional[db.Order] = None
    fulfill = False

    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
      logger.info("Unhandled webhook event type %s", event.type)
      outcome = "ignored"
    else:
      order = await db.find_order_by_reference(
          self.session, metadata.get("orderNumber"), metadata.get("orderId")
      )
      if order is None:
        logger.warning(
            "No order matches webhook event %s (%s) for %s",
            event.id,
            event.type,
            reference,
        )
        outcome = "order_not_found"
      else:
        fulfill = handler(order, obj)
        await db.save_order(self.session, order)
        logger.info(
            "Applied %s to order %s: status=%s payment_status=%s",
            event.type,
            order.order_number,
            order.status,
            order.payment_status,
        )
        outcome = "applied"

    await db.record_webhook_event(
        self.session,
        event.id,
        event.type,
        reference,
        outcome,
        event.model_dump(mode="json", by_alias=True),
    )
    try:
      await self.session.commit()
    except IntegrityError:
      # A concurrent delivery of the same event committed first.
      await self.session.rollback()
      logger.info("Webhook event %s already processed", event.id)
      return {"received": True}
    except Exception as e:
      await self.session.rollback()
      raise e

    if fulfill and order is not None:
      if background_tasks is not None:
        background_tasks.add_task(self.orchestrator.fulfill_quietly, order.id)
      else:
        await self.orchestrator.fulfill_quietly(order.id)
    return {"received": True}
