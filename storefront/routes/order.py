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

"""Order routes for the storefront server."""

from typing import Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from storefront import dependencies
from storefront.models import CreateOrderRequest
from storefront.models import OrderPage
from storefront.models import OrderPlacedResponse
from storefront.models import OrderResponse
from storefront.services.checkout_orchestrator import CheckoutOrchestrator
from storefront.services.order_service import OrderService
from storefront.services.order_service import to_response

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post(
    "",
    response_model=OrderPlacedResponse,
    status_code=201,
    operation_id="create_order",
)
async def create_order(
    request: CreateOrderRequest = Body(...),
    user_id: str = Depends(dependencies.get_user_id),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderPlacedResponse:
  """Place an order from the cart and open a hosted payment session."""
  order, invalid, checkout_session = await order_service.place_order(
      user_id, request
  )
  return OrderPlacedResponse(
      order=to_response(order),
      invalid_items=invalid,
      checkout_session_id=checkout_session.id if checkout_session else None,
      checkout_url=checkout_session.url if checkout_session else None,
  )


@router.get("", response_model=OrderPage, operation_id="list_orders")
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(dependencies.get_user_id),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderPage:
  """List the caller's orders, newest first."""
  return await order_service.get_orders_by_user(user_id, page, limit)


@router.get(
    "/{order_id}", response_model=OrderResponse, operation_id="get_order"
)
async def get_order(
    order_id: str = Path(...),
    session_id: Optional[str] = Query(None),
    user_id: str = Depends(dependencies.get_user_id),
    order_service: OrderService = Depends(dependencies.get_order_service),
    orchestrator: CheckoutOrchestrator = Depends(
        dependencies.get_orchestrator
    ),
) -> OrderResponse:
  """Get an order, syncing its payment state when `session_id` is given."""
  order = await order_service.get_order_for_user(user_id, order_id)
  if session_id and await order_service.sync_payment(order, session_id):
    await orchestrator.fulfill_quietly(order.id)
    await order_service.session.refresh(order)
  return to_response(order)


@router.put(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    operation_id="cancel_order",
)
async def cancel_order(
    order_id: str = Path(...),
    user_id: str = Depends(dependencies.get_user_id),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderResponse:
  """Cancel one of the caller's orders."""
  order = await order_service.cancel_by_user(user_id, order_id)
  return to_response(order)
