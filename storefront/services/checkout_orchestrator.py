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

"""Replays paid orders onto the upstream marketplace.

`CheckoutOrchestrator.fulfill_order` takes a locally paid order, adds each of
its lines to the integration account's active upstream cart, validates and
completes the upstream checkout, and records the upstream order on the local
order. Any failure before completion empties the upstream cart again (best
effort) and leaves the local order status as it was, so the run can be retried.

At most one run per order is in flight: concurrent callers in the same process
share the running attempt, and across processes an atomic claim on the order
row turns a second attempt away. An order that already has an upstream order
is never replayed again.
"""

import asyncio
import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker
from storefront import db
from storefront.enums import LineStatus
from storefront.enums import OrderStatus
from storefront.enums import PaymentStatus
from storefront.exceptions import FulfillmentInProgressError
from storefront.exceptions import NoShippingAddressError
from storefront.exceptions import NoTokenError
from storefront.exceptions import OrderNotFoundError
from storefront.exceptions import OrderNotFulfillableError
from storefront.exceptions import PartialFulfillmentError
from storefront.exceptions import StorefrontError
from storefront.exceptions import UpstreamAuthError
from storefront.exceptions import UpstreamCheckoutError
from storefront.models import FulfillmentResult
from storefront.models import LineResult
from storefront.services.marketplace_client import MarketplaceClient
from storefront.services.notification_service import NotificationDispatcher
from storefront.services.order_service import apply_status

logger = logging.getLogger(__name__)

PAYMENT_METHOD_SELECTOR = {"code": "BANK_TRANSFER"}


class CheckoutOrchestrator:
  """Drives the upstream cart and checkout for paid local orders."""

  def __init__(
      self,
      session_factory: sessionmaker,
      marketplace: MarketplaceClient,
      notifier: NotificationDispatcher,
      claim_ttl_seconds: int = 900,
  ):
    """Initializes the orchestrator.

    Args:
      session_factory: Factory for the sessions used to read and update orders.
      marketplace: Authenticated upstream client.
      notifier: Sends the confirmation email after a successful run.
      claim_ttl_seconds: Age after which another worker's claim on an order is
        considered abandoned.
    """
    self.session_factory = session_factory
    self.marketplace = marketplace
    self.notifier = notifier
    self.claim_ttl_seconds = claim_ttl_seconds
    self._in_flight: Dict[str, asyncio.Future] = {}

  async def fulfill_order(self, order_id: str) -> FulfillmentResult:
    """Places the upstream order for a local order.

    Args:
      order_id: The local order to fulfill.

    Returns:
      The upstream order id and the outcome of every line. For an order that
      was already fulfilled, the stored outcome is returned without contacting
      the upstream.

    Raises:
      OrderNotFoundError: If the order does not exist.
      OrderNotFulfillableError: If the order is unpaid, cancelled or refunded.
      FulfillmentInProgressError: If another process is fulfilling the order.
      UpstreamAuthError: If no valid upstream token can be obtained.
      PartialFulfillmentError: If any line could not be added upstream.
      NoShippingAddressError: If the upstream account has no address.
      UpstreamCheckoutError: If validating, patching or completing the
        upstream checkout fails.
    """
    running = self._in_flight.get(order_id)
    if running is not None:
      logger.info("Order %s is already being fulfilled, waiting", order_id)
      return await asyncio.shield(running)

    future = asyncio.get_running_loop().create_future()
    self._in_flight[order_id] = future
    try:
      result = await self._fulfill(order_id)
    except asyncio.CancelledError:
      future.cancel()
      raise
    except Exception as e:
      future.set_exception(e)
      # Mark the exception as retrieved when nobody else is waiting.
      future.exception()
      raise
    else:
      future.set_result(result)
      return result
    finally:
      del self._in_flight[order_id]

  async def fulfill_quietly(self, order_id: str) -> Optional[FulfillmentResult]:
    """Runs `fulfill_order`, logging failures instead of raising them."""
    try:
      return await self.fulfill_order(order_id)
    except StorefrontError as e:
      logger.error(
          "Fulfillment of order %s failed (%s): %s", order_id, e.code, e.message
      )
      return None

  async def _fulfill(self, order_id: str) -> FulfillmentResult:
    order = await self._load(order_id)
    if order.upstream_order_id:
      logger.info(
          "Order %s already has upstream order %s",
          order.order_number,
          order.upstream_order_id,
      )
      return _existing_result(order)
    _check_fulfillable(order)

    if not await self._claim(order_id):
      order = await self._load(order_id)
      if order.upstream_order_id:
        return _existing_result(order)
      _check_fulfillable(order)
      raise FulfillmentInProgressError(
          f"Order {order.order_number} is being fulfilled by another worker"
      )

    logger.info("Fulfilling order %s upstream", order.order_number)
    results: List[LineResult] = []
    try:
      try:
        await self.marketplace.get_valid_access_token()
      except NoTokenError as e:
        raise UpstreamAuthError(
            f"No upstream access token: {e.message}"
        ) from e

      results = await self._add_lines(order)
      completion = await self._checkout(order, results)
    except Exception as e:
      if isinstance(e, PartialFulfillmentError):
        recorded = e.results
      else:
        recorded = [r.model_dump(mode="json") for r in results]
      await self._release(order_id, recorded)
      raise

    upstream_order_id = str(completion["qid"])
    order = await self._record_success(order_id, completion, results)
    if order.status == OrderStatus.ACCEPTED.value:
      await self.notifier.send_order_confirmation(order)
    return FulfillmentResult(
        upstream_order_id=upstream_order_id, results=results
    )

  async def _add_lines(self, order: db.Order) -> List[LineResult]:
    """Adds the order lines to the upstream cart one at a time.

    Per-line failures are recorded and do not stop the remaining lines.

    Raises:
      PartialFulfillmentError: If any line was not added.
    """
    results: List[LineResult] = []
    for index, item in enumerate(order.items or []):
      seller_data = item.get("seller_data") or {}
      qid = seller_data.get("qid")
      result = LineResult(
          index=index,
          gtin=item.get("gtin"),
          seller=item.get("seller"),
          qid=qid,
          quantity=int(item.get("quantity") or 0),
          status=LineStatus.SKIPPED,
      )
      results.append(result)

      if not seller_data:
        result.reason = "No seller data available"
        continue
      if not qid:
        result.reason = "Invalid offer QID"
        continue

      try:
        response = await self.marketplace.make_authenticated_request(
            "POST",
            "/carts/active/lines/",
            {"quantity": result.quantity, "offerQid": qid},
        )
      except StorefrontError as e:
        logger.warning(
            "Adding line %d (offer %s) of order %s failed: %s",
            index,
            qid,
            order.order_number,
            e.message,
        )
        result.status = LineStatus.FAILED
        result.reason = e.message
        result.details = getattr(e, "body", None)
        continue

      result.status = LineStatus.ADDED
      result.upstream_line_id = (response or {}).get("qid")

    problems = [r for r in results if r.status != LineStatus.ADDED]
    if problems or not results:
      await self._cleanup(order, results)
      raise PartialFulfillmentError(
          f"{len(problems)} of {len(results)} order lines could not be added"
          " upstream",
          results=[r.model_dump(mode="json") for r in results],
      )
    return results

  async def _checkout(
      self, order: db.Order, results: List[LineResult]
  ) -> Dict[str, Any]:
    """Validates, patches and completes the upstream checkout.

    Returns:
      The upstream completion payload, which carries the order `qid`.
    """
    try:
      addresses = await self.marketplace.make_authenticated_request(
          "GET", "/addresses"
      )
    except StorefrontError:
      await self._cleanup(order, results)
      raise
    address_list = (addresses or {}).get("results") or []
    if not address_list:
      await self._cleanup(order, results)
      raise NoShippingAddressError()
    address_qid = address_list[0].get("qid")

    steps = (
        ("validate", "POST", "/checkouts/active/validate/", {}),
        (
            "update",
            "PATCH",
            "/checkouts/active/",
            {
                "shippingAddressQid": address_qid,
                "billingAddressQid": address_qid,
                "selectedPaymentMethod": PAYMENT_METHOD_SELECTOR,
            },
        ),
        ("complete", "POST", "/checkouts/active/complete/", {}),
    )
    response = None
    for step, method, path, body in steps:
      try:
        response = await self.marketplace.make_authenticated_request(
            method, path, body
        )
      except StorefrontError as e:
        await self._cleanup(order, results)
        raise UpstreamCheckoutError(
            f"Upstream checkout {step} failed: {e.message}"
        ) from e

    if not isinstance(response, dict) or not response.get("qid"):
      await self._cleanup(order, results)
      raise UpstreamCheckoutError(
          "Upstream checkout completed without an order id"
      )
    return response

  async def _cleanup(self, order: db.Order, results: List[LineResult]) -> None:
    """Empties the upstream cart if anything was added; never raises."""
    if not any(r.status == LineStatus.ADDED for r in results):
      return
    logger.info(
        "Emptying upstream cart after failed order %s", order.order_number
    )
    try:
      await self.marketplace.make_authenticated_request(
          "POST", "/carts/active/empty", {}
      )
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error(
          "Failed to empty upstream cart for order %s: %s",
          order.order_number,
          e,
      )

  async def _load(self, order_id: str) -> db.Order:
    async with self.session_factory() as session:
      order = await db.get_order(session, order_id)
    if order is None:
      raise OrderNotFoundError(f"Order {order_id} not found")
    return order

  async def _claim(self, order_id: str) -> bool:
    stale_before = (
        db.utcnow() - datetime.timedelta(seconds=self.claim_ttl_seconds)
    ).isoformat()
    async with self.session_factory() as session:
      claimed = await db.claim_fulfillment(session, order_id, stale_before)
      await session.commit()
    return claimed

  async def _release(
      self, order_id: str, results: List[Dict[str, Any]]
  ) -> None:
    async with self.session_factory() as session:
      await db.release_fulfillment(session, order_id, results)
      await session.commit()

  async def _record_success(
      self,
      order_id: str,
      completion: Dict[str, Any],
      results: List[LineResult],
  ) -> db.Order:
    """Links the local order to the upstream order and accepts it.

    An order that was cancelled, refunded or unpaid while the run was in
    flight is linked but keeps its status, for an operator to resolve. On
    failure the claim stays in place since the upstream order exists.
    """
    async with self.session_factory() as session:
      order = await db.get_order(session, order_id)
      order.upstream_order_id = str(completion["qid"])
      order.upstream_order_data = completion
      order.fulfillment_results = [r.model_dump(mode="json") for r in results]
      reason = _unfulfillable_reason(order)
      if reason:
        logger.critical(
            "Upstream order %s placed but order %s %s, not accepting it",
            order.upstream_order_id,
            order.order_number,
            reason,
        )
      else:
        apply_status(order, OrderStatus.ACCEPTED)
      try:
        await db.save_order(session, order)
        await session.commit()
      except Exception:
        logger.critical(
            "Upstream order %s placed but order %s could not be updated",
            order.upstream_order_id,
            order.order_number,
        )
        await session.rollback()
        raise
    if not reason:
      logger.info(
          "Order %s accepted, upstream order %s",
          order.order_number,
          order.upstream_order_id,
      )
    return order


def _existing_result(order: db.Order) -> FulfillmentResult:
  return FulfillmentResult(
      upstream_order_id=order.upstream_order_id,
      results=[LineResult(**r) for r in (order.fulfillment_results or [])],
  )


_CLOSED_STATUSES = (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value)


def _unfulfillable_reason(order: db.Order) -> Optional[str]:
  if order.payment_status != PaymentStatus.PAID.value:
    return f"is not paid (payment status {order.payment_status})"
  if order.status in _CLOSED_STATUSES:
    return f"is {order.status}"
  return None


def _check_fulfillable(order: db.Order) -> None:
  reason = _unfulfillable_reason(order)
  if reason:
    raise OrderNotFulfillableError(
        f"Order {order.order_number} {reason} and cannot be fulfilled"
    )
