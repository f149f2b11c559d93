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

"""Administrative order routes for the storefront server.

All routes here require the Admin-Secret header.
"""

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from storefront import dependencies
from storefront.enums import OrderStatus
from storefront.models import AdminActionRequest
from storefront.models import AdminOrderPage
from storefront.models import FulfillmentResult
from storefront.models import OrderResponse
from storefront.models import StatusUpdateRequest
from storefront.services.checkout_orchestrator import CheckoutOrchestrator
from storefront.services.order_service import OrderService
from storefront.services.order_service import to_response

router = APIRouter(
    prefix="/admin/orders",
    tags=["admin"],
    dependencies=[Depends(dependencies.verify_admin_secret)],
)


@router.get("", response_model=AdminOrderPage, operation_id="admin_list_orders")
async def list_all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> AdminOrderPage:
  """List every user's orders with a count per status."""
  return await order_service.get_orders_of_all_users(page, limit)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    operation_id="admin_get_order",
)
async def get_any_order(
    order_id: str = Path(...),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderResponse:
  """Get any order by ID."""
  return to_response(await order_service.get_order(order_id))


@router.put(
    "/{order_id}/status",
    response_model=OrderResponse,
    operation_id="admin_update_order_status",
)
async def update_order_status(
    order_id: str = Path(...),
    request: StatusUpdateRequest = Body(...),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderResponse:
  """Change an order's status."""
  order = await order_service.change_status(
      order_id, request.status, request.notes, request.tracking_number
  )
  return to_response(order)


@router.post(
    "/{order_id}/fulfill",
    response_model=FulfillmentResult,
    operation_id="admin_fulfill_order",
)
async def fulfill_order(
    order_id: str = Path(...),
    orchestrator: CheckoutOrchestrator = Depends(
        dependencies.get_orchestrator
    ),
) -> FulfillmentResult:
  """Place (or retry placing) the upstream order for a paid order."""
  return await orchestrator.fulfill_order(order_id)


@router.put(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    operation_id="admin_cancel_order",
)
async def cancel_order(
    order_id: str = Path(...),
    request: AdminActionRequest = Body(AdminActionRequest()),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderResponse:
  """Cancel an order and email the customer."""
  order = await order_service.change_status(
      order_id,
      OrderStatus.CANCELLED.value,
      request.notes or "Order cancelled by admin",
  )
  return to_response(order)


@router.put(
    "/{order_id}/dispatch",
    response_model=OrderResponse,
    operation_id="admin_dispatch_order",
)
async def dispatch_order(
    order_id: str = Path(...),
    request: AdminActionRequest = Body(AdminActionRequest()),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderResponse:
  """Mark an order as dispatched and email the customer."""
  order = await order_service.change_status(
      order_id,
      OrderStatus.DISPATCHED.value,
      request.notes or "Order dispatched by admin",
      request.tracking_number,
  )
  return to_response(order)


@router.put(
    "/{order_id}/deliver",
    response_model=OrderResponse,
    operation_id="admin_deliver_order",
)
async def deliver_order(
    order_id: str = Path(...),
    request: AdminActionRequest = Body(AdminActionRequest()),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderResponse:
  """Mark an order as delivered and email the customer."""
  order = await order_service.change_status(
      order_id,
      OrderStatus.DELIVERED.value,
      request.notes or "Order marked as delivered by admin",
  )
  return to_response(order)
