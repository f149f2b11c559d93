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

"""Per-user shopping cart persistence.

A cart holds one line per GTIN; each line carries one offer per seller with
its own purchase quantity. Line quantities and the cart's `total_items` are
recomputed from the offers on every save rather than adjusted incrementally.
"""

import logging
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from storefront import db
from storefront.exceptions import ItemNotFoundError
from storefront.exceptions import OfferNotFoundError
from storefront.models import AddCartItemRequest

logger = logging.getLogger(__name__)


class CartService:
  """Service for reading and mutating a user's cart."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def find_or_create_for_user(self, user_id: str) -> db.Cart:
    """Returns the user's cart, creating an empty one on first access."""
    cart = await db.get_cart(self.session, user_id)
    if cart is not None:
      return cart

    now = db.utcnow_iso()
    cart = db.Cart(
        id=str(uuid.uuid4()),
        user_id=user_id,
        total_items=0,
        created_at=now,
        updated_at=now,
        items=[],
    )
    self.session.add(cart)
    try:
      await self.session.commit()
    except Exception as e:
      await self.session.rollback()
      raise e
    logger.info("Created cart %s for user %s", cart.id, user_id)
    return cart

  async def add_item(
      self, user_id: str, request: AddCartItemRequest
  ) -> db.Cart:
    """Adds seller offers for a product, merging with existing ones.

    An offer for a seller already on the line has its purchase quantity
    increased by the incoming quantity; its other fields take the incoming
    values. Offers for new sellers are appended. A product not yet in the cart
    gets a new line.

    Args:
      user_id: Owner of the cart.
      request: The product and the offers to add.

    Returns:
      The updated cart.
    """
    cart = await self.find_or_create_for_user(user_id)
    incoming = [offer.model_dump() for offer in request.seller_offers]

    item = next((i for i in cart.items if i.gtin == request.gtin), None)
    if item is None:
      item = db.CartItem(
          id=str(uuid.uuid4()),
          position=len(cart.items),
          gtin=request.gtin,
          name=request.name,
          image_url=request.image_url,
          category=request.category,
          brand=request.brand,
          slug=request.slug,
          fid=request.fid,
          seller_offers=[],
      )
      cart.items.append(item)

    item.seller_offers = _merge_offers(item.seller_offers or [], incoming)
    await self._save(cart)
    return cart

  async def update_item_quantity(
      self, user_id: str, item_id: str, seller: str, quantity: int
  ) -> db.Cart:
    """Sets the purchase quantity of one seller offer.

    Raises:
      ItemNotFoundError: If the cart has no line with `item_id`.
      OfferNotFoundError: If the line has no offer from `seller`.
    """
    cart = await self.find_or_create_for_user(user_id)
    item = _find_item(cart, item_id)

    offers = [dict(offer) for offer in (item.seller_offers or [])]
    offer = next((o for o in offers if o.get("seller") == seller), None)
    if offer is None:
      raise OfferNotFoundError()
    offer["quantity_purchase"] = quantity
    item.seller_offers = offers

    await self._save(cart)
    return cart

  async def remove_item(
      self, user_id: str, item_id: str, seller: Optional[str] = None
  ) -> db.Cart:
    """Removes one seller offer, or the whole line if no seller is given.

    Removing the last offer of a line removes the line.
    """
    cart = await self.find_or_create_for_user(user_id)
    item = _find_item(cart, item_id)

    if seller is not None:
      offers = [
          o for o in (item.seller_offers or []) if o.get("seller") != seller
      ]
      if len(offers) == len(item.seller_offers or []):
        raise OfferNotFoundError()
      item.seller_offers = offers
      if not offers:
        cart.items.remove(item)
    else:
      cart.items.remove(item)

    await self._save(cart)
    return cart

  async def clear_cart(self, user_id: str) -> db.Cart:
    """Deletes every line from the user's cart."""
    cart = await self.find_or_create_for_user(user_id)
    cart.items.clear()
    await self._save(cart)
    logger.info("Cleared cart %s", cart.id)
    return cart

  async def _save(self, cart: db.Cart) -> None:
    cart.recompute_total_items()
    cart.updated_at = db.utcnow_iso()
    try:
      await self.session.commit()
    except Exception as e:
      await self.session.rollback()
      raise e


def _find_item(cart: db.Cart, item_id: str) -> db.CartItem:
  item = next((i for i in cart.items if i.id == item_id), None)
  if item is None:
    raise ItemNotFoundError()
  return item


def _merge_offers(
    existing: List[Dict[str, Any]], incoming: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
  """Merges offers by seller, summing purchase quantities."""
  merged = [dict(offer) for offer in existing]
  for offer in incoming:
    current = next(
        (o for o in merged if o.get("seller") == offer["seller"]), None
    )
    if current is None:
      merged.append(dict(offer))
      continue
    quantity = int(current.get("quantity_purchase") or 0) + int(
        offer["quantity_purchase"]
    )
    current.update(offer)
    current["quantity_purchase"] = quantity
  return merged
