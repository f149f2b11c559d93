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

"""Shopping cart routes for the storefront server."""

from typing import Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from storefront import dependencies
from storefront.models import AddCartItemRequest
from storefront.models import CartResponse
from storefront.models import UpdateCartItemRequest
from storefront.services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=CartResponse, operation_id="get_cart")
async def get_cart(
    user_id: str = Depends(dependencies.get_user_id),
    cart_service: CartService = Depends(dependencies.get_cart_service),
) -> CartResponse:
  """Get the caller's cart, creating it on first access."""
  cart = await cart_service.find_or_create_for_user(user_id)
  return CartResponse.model_validate(cart)


@router.post(
    "/items",
    response_model=CartResponse,
    status_code=201,
    operation_id="add_cart_item",
)
async def add_cart_item(
    request: AddCartItemRequest = Body(...),
    user_id: str = Depends(dependencies.get_user_id),
    cart_service: CartService = Depends(dependencies.get_cart_service),
) -> CartResponse:
  """Add seller offers for a product to the cart."""
  cart = await cart_service.add_item(user_id, request)
  return CartResponse.model_validate(cart)


@router.put(
    "/items/{item_id}",
    response_model=CartResponse,
    operation_id="update_cart_item",
)
async def update_cart_item(
    item_id: str = Path(...),
    request: UpdateCartItemRequest = Body(...),
    user_id: str = Depends(dependencies.get_user_id),
    cart_service: CartService = Depends(dependencies.get_cart_service),
) -> CartResponse:
  """Set the quantity of one seller offer."""
  cart = await cart_service.update_item_quantity(
      user_id, item_id, request.seller, request.quantity
  )
  return CartResponse.model_validate(cart)


@router.delete(
    "/items/{item_id}",
    response_model=CartResponse,
    operation_id="remove_cart_item",
)
async def remove_cart_item(
    item_id: str = Path(...),
    seller: Optional[str] = Query(None),
    user_id: str = Depends(dependencies.get_user_id),
    cart_service: CartService = Depends(dependencies.get_cart_service),
) -> CartResponse:
  """Remove one seller offer, or the whole line without `seller`."""
  cart = await cart_service.remove_item(user_id, item_id, seller)
  return CartResponse.model_validate(cart)


@router.delete("", response_model=CartResponse, operation_id="clear_cart")
async def clear_cart(
    user_id: str = Depends(dependencies.get_user_id),
    cart_service: CartService = Depends(dependencies.get_cart_service),
) -> CartResponse:
  """Remove every line from the cart."""
  cart = await cart_service.clear_cart(user_id)
  return CartResponse.model_validate(cart)
