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

"""Order placement, queries and status management.

This module provides `OrderService`, which turns a user's cart into a pending
order with a hosted payment session, serves paginated order listings for users
and administrators, syncs payment state from the gateway, and applies status
changes with their first-transition timestamps and customer emails.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from storefront import db
from storefront.enums import normalize_order_status
from storefront.enums import OrderStatus
from storefront.enums import PaymentMethod
from storefront.enums import PaymentStatus
from storefront.enums import ShippingMethod
from storefront.exceptions import EmptyCartError
from storefront.exceptions import InvalidRequestError
from storefront.exceptions import InvalidStatusTransitionError
from storefront.exceptions import OrderNotCancellableError
from storefront.exceptions import OrderNotFoundError
from storefront.models import AdminOrderPage
from storefront.models import CheckoutSessionInfo
from storefront.models import CreateOrderRequest
from storefront.models import InvalidCartLine
from storefront.models import OrderPage
from storefront.models import OrderResponse
from storefront.models import Pagination
from storefront.models import Settings
from storefront.services.notification_service import NotificationDispatcher
from storefront.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

SHIPPING_RATES = {
    ShippingMethod.STANDARD: 5.0,
    ShippingMethod.EXPRESS: 15.0,
    ShippingMethod.OVERNIGHT: 25.0,
    ShippingMethod.PICKUP: 0.0,
}

# Target statuses an order may not move to from a given status.
BLOCKED_TRANSITIONS = {
    OrderStatus.DELIVERED: {
        OrderStatus.PENDING,
        OrderStatus.ACCEPTED,
        OrderStatus.DISPATCHED,
    },
    OrderStatus.CANCELLED: {
        OrderStatus.ACCEPTED,
        OrderStatus.DISPATCHED,
        OrderStatus.DELIVERED,
    },
    OrderStatus.REFUNDED: {
        OrderStatus.PENDING,
        OrderStatus.ACCEPTED,
        OrderStatus.DISPATCHED,
    },
}

# Statuses from which a customer can no longer cancel.
NOT_CANCELLABLE = {
    OrderStatus.ACCEPTED,
    OrderStatus.DISPATCHED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
}

_FIRST_TRANSITION_FIELDS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.DISPATCHED: "dispatched_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def apply_status(
    order: db.Order, status: OrderStatus, notes: Optional[str] = None
) -> None:
  """Sets an order's status in memory.

  Appends `notes` to the admin notes and stamps the status timestamp the first
  time the order enters that status; an existing timestamp is never
  overwritten.
  """
  order.status = status.value
  if notes:
    order.admin_notes = (
        f"{order.admin_notes}\n{notes}" if order.admin_notes else notes
    )
  field = _FIRST_TRANSITION_FIELDS.get(status)
  if field and getattr(order, field) is None:
    setattr(order, field, db.utcnow_iso())


def mark_paid(order: db.Order, payment_id: Optional[str] = None) -> None:
  order.payment_status = PaymentStatus.PAID.value
  if payment_id:
    order.payment_id = payment_id
  if order.paid_at is None:
    order.paid_at = db.utcnow_iso()


def to_response(order: db.Order) -> OrderResponse:
  return OrderResponse.model_validate(order)


def _pagination(page: int, limit: int, total: int) -> Pagination:
  return Pagination(
      page=page, limit=limit, total=total, pages=math.ceil(total / limit)
  )


class OrderService:
  """Service for creating, reading and updating orders."""

  def __init__(
      self,
      session: AsyncSession,
      settings: Settings,
      gateway: PaymentGateway,
      notifier: NotificationDispatcher,
  ):
    self.session = session
    self.settings = settings
    self.gateway = gateway
    self.notifier = notifier

  async def create_order(self, draft: Dict[str, Any]) -> db.Order:
    """Persists a pending order with a new order number and derived totals."""
    try:
      order = await db.insert_order(self.session, draft)
      await self.session.commit()
    except Exception as e:
      await self.session.rollback()
      raise e
    logger.info("Created order %s (%s)", order.order_number, order.id)
    return order

  async def place_order(
      self, user_id: str, request: CreateOrderRequest
  ) -> Tuple[db.Order, List[InvalidCartLine], Optional[CheckoutSessionInfo]]:
    """Places an order from the user's cart and opens a payment session.

    Every seller offer in the cart becomes one order line. Offers with a bad
    price, a non-positive quantity or too little inventory are left out and
    reported back. The cart itself is left untouched.

    Args:
      user_id: The ordering user.
      request: Address snapshot, shipping and payment choices.

    Returns:
      The new order, the cart lines that were left out, and the hosted payment
      session (None for non-gateway payment methods).

    Raises:
      EmptyCartError: If the cart yields no valid order lines.
    """
    cart = await db.get_cart(self.session, user_id)
    if cart is None or not cart.items:
      raise EmptyCartError()

    lines, invalid = build_order_lines(cart)
    if not lines:
      raise EmptyCartError("No valid items in cart")

    subtotal = round(sum(line["subtotal"] for line in lines), 2)
    draft = {
        "user_id": user_id,
        "items": lines,
        "subtotal": subtotal,
        "tax": round(subtotal * self.settings.tax_rate, 2),
        "shipping": SHIPPING_RATES[request.shipping_method],
        "discount": 0.0,
        "payment_method": request.payment_method.value,
        "shipping_address": request.shipping_address.model_dump(),
        "shipping_method": request.shipping_method.value,
        "notes": request.notes,
    }
    order = await self.create_order(draft)

    if request.payment_method != PaymentMethod.STRIPE:
      return order, invalid, None

    checkout_session = await self.gateway.create_checkout_session(order)
    order.gateway_session_id = checkout_session.id
    await self._commit(order)
    return order, invalid, checkout_session

  async def get_order(self, order_id: str) -> db.Order:
    order = await db.get_order(self.session, order_id)
    if order is None:
      raise OrderNotFoundError()
    return order

  async def get_order_for_user(self, user_id: str, order_id: str) -> db.Order:
    order = await self.get_order(order_id)
    if order.user_id != user_id:
      raise OrderNotFoundError()
    return order

  async def get_orders_by_user(
      self, user_id: str, page: int, limit: int
  ) -> OrderPage:
    """Returns one page of a user's orders, newest first."""
    orders, total = await db.list_orders(
        self.session, page, limit, user_id=user_id
    )
    return OrderPage(
        orders=[to_response(o) for o in orders],
        pagination=_pagination(page, limit, total),
    )

  async def get_orders_of_all_users(
      self, page: int, limit: int
  ) -> AdminOrderPage:
    """Returns one page of all orders plus a count per status."""
    orders, total = await db.list_orders(self.session, page, limit)
    counts = {status.value: 0 for status in OrderStatus}
    counts.update(await db.count_orders_by_status(self.session))
    return AdminOrderPage(
        orders=[to_response(o) for o in orders],
        pagination=_pagination(page, limit, total),
        status_counts=counts,
    )

  async def sync_payment(self, order: db.Order, session_id: str) -> bool:
    """Copies the payment state of a gateway session onto the order.

    Returns:
      True if this call moved a pending order to processing, meaning the
      order is now ready to be fulfilled upstream.
    """
    checkout_session = await self.gateway.retrieve_checkout_session(session_id)
    if checkout_session.metadata.get("orderId") not in (None, order.id):
      raise InvalidRequestError("Checkout session belongs to another order")

    if checkout_session.payment_status != "paid":
      return False

    became_processing = False
    mark_paid(order, checkout_session.payment_intent)
    order.payment_method = "stripe"
    if order.status == OrderStatus.PENDING.value:
      apply_status(order, OrderStatus.PROCESSING)
      became_processing = True
    await self._commit(order)
    if became_processing:
      logger.info(
          "Order %s paid via session %s", order.order_number, session_id
      )
    return became_processing

  async def update_status(
      self,
      order: db.Order,
      status: OrderStatus,
      notes: Optional[str] = None,
  ) -> db.Order:
    """Sets the status, appends notes, stamps timestamps and persists."""
    apply_status(order, status, notes)
    await self._commit(order)
    return order

  async def cancel_by_user(self, user_id: str, order_id: str) -> db.Order:
    """Cancels a user's own order before it has been accepted upstream.

    Raises:
      OrderNotFoundError: If the order does not exist or is someone else's.
      OrderNotCancellableError: If the order is accepted or later.
    """
    order = await self.get_order_for_user(user_id, order_id)
    if OrderStatus(order.status) in NOT_CANCELLABLE:
      raise OrderNotCancellableError(
          f"Order cannot be cancelled in status {order.status}"
      )
    await self.update_status(
        order, OrderStatus.CANCELLED, "Order cancelled by customer"
    )
    logger.info("Order %s cancelled by customer", order.order_number)
    await self.notifier.send_order_cancelled(order)
    return order

  async def change_status(
      self,
      order_id: str,
      raw_status: str,
      notes: Optional[str] = None,
      tracking_number: Optional[str] = None,
  ) -> db.Order:
    """Applies an administrative status change.

    Accepts the legacy aliases "shipped" and "completed". A tracking number is
    stored when the order is dispatched. The matching customer email is sent
    for cancellation, dispatch and delivery.

    Raises:
      InvalidRequestError: If the status is unknown.
      InvalidStatusTransitionError: If the change is not allowed.
    """
    status = normalize_order_status(raw_status)
    if status is None:
      raise InvalidRequestError(f"Invalid status: {raw_status}")

    order = await self.get_order(order_id)
    current = OrderStatus(order.status)
    if current == status:
      raise InvalidStatusTransitionError(f"Order is already {status.value}")
    if status in BLOCKED_TRANSITIONS.get(current, set()):
      raise InvalidStatusTransitionError(
          f"Cannot change status from {current.value} to {status.value}"
      )

    if status == OrderStatus.DISPATCHED and tracking_number:
      order.tracking_number = tracking_number
    await self.update_status(order, status, notes)
    logger.info(
        "Order %s moved from %s to %s",
        order.order_number,
        current.value,
        status.value,
    )

    if status == OrderStatus.CANCELLED:
      await self.notifier.send_order_cancelled(order)
    elif status == OrderStatus.DISPATCHED:
      await self.notifier.send_order_dispatched(order)
    elif status == OrderStatus.DELIVERED:
      await self.notifier.send_order_delivered(order)
    return order

  async def _commit(self, order: db.Order) -> None:
    try:
      await db.save_order(self.session, order)
      await self.session.commit()
    except Exception as e:
      await self.session.rollback()
      raise e


def build_order_lines(
    cart: db.Cart,
) -> Tuple[List[Dict[str, Any]], List[InvalidCartLine]]:
  """Turns each seller offer of a cart into an order line.

  Returns:
    The valid order lines and the offers that were left out, with reasons.
  """
  lines: List[Dict[str, Any]] = []
  invalid: List[InvalidCartLine] = []
  for item in cart.items:
    for offer in item.seller_offers or []:
      seller = offer.get("seller")
      try:
        price = float(offer.get("price"))
      except (TypeError, ValueError):
        price = float("nan")
      quantity = int(offer.get("quantity_purchase") or 0)
      inventory = int(offer.get("inventory") or 0)

      reason = None
      if math.isnan(price) or price <= 0:
        reason = "Invalid price"
      elif quantity <= 0:
        reason = "Invalid quantity"
      elif inventory < quantity:
        reason = "Insufficient inventory"
      if reason:
        invalid.append(
            InvalidCartLine(gtin=item.gtin, seller=seller, reason=reason)
        )
        continue

      lines.append({
          "gtin": item.gtin,
          "name": item.name,
          "image_url": item.image_url,
          "category": item.category,
          "brand": item.brand,
          "seller": seller,
          "quantity": quantity,
          "unit_price": round(price, 2),
          "subtotal": round(price * quantity, 2),
          "seller_data": {
              "price": price,
              "mov": offer.get("mov"),
              "mov_currency": offer.get("mov_currency"),
              "inventory": inventory,
              "is_traceable": bool(offer.get("is_traceable")),
              "qid": offer.get("qid"),
              "final_order_value": offer.get("final_order_value"),
          },
          "product_snapshot": {
              "added_at": db.utcnow_iso(),
              "is_in_stock": inventory > 0,
          },
      })
  return lines, invalid
