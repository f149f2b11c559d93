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

"""Database management and persistence layer for the storefront server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy with
SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup.
- WAL Mode: Enables SQLite Write-Ahead Logging so the server and operator
  tools can share the database file.
- Declarative Models: Tables for orders, carts and cart items, upstream
  marketplace tokens and received payment webhook events. Upstream payloads
  are stored as opaque JSON next to typed known fields.
- Data Access Helpers: Asynchronous query and update functions, including the
  atomic fulfillment claim used to keep one order from being replayed upstream
  twice.
"""

import datetime
import math
import random
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple
import uuid

from sqlalchemy import Column
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import func
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import text
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.orm import sessionmaker

Base = declarative_base()


def utcnow() -> datetime.datetime:
  return datetime.datetime.now(datetime.timezone.utc)


def utcnow_iso() -> str:
  return utcnow().isoformat()


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, database_path: str) -> None:
    """Initializes the database engine and creates tables."""
    url = f"sqlite+aiosqlite:///{database_path}"
    self.engine = create_async_engine(url, echo=False)

    # Enable WAL mode
    async with self.engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


class Order(Base):
  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  order_number = Column(String, unique=True, index=True)
  user_id = Column(String, index=True)
  # Line items with their sellerData block; the upstream offer qid lives there.
  items = Column(JSON, default=list)
  subtotal = Column(Float, default=0.0)
  tax = Column(Float, default=0.0)
  shipping = Column(Float, default=0.0)
  discount = Column(Float, default=0.0)
  total_amount = Column(Float, default=0.0)
  currency = Column(String, default="USD")
  status = Column(String, index=True)
  payment_status = Column(String)
  payment_method = Column(String, nullable=True)
  payment_method_type = Column(String, nullable=True)
  payment_id = Column(String, nullable=True)
  gateway_session_id = Column(String, nullable=True)
  # Denormalized copy of the address at order time, never a live reference.
  shipping_address = Column(JSON)
  shipping_method = Column(String)
  tracking_number = Column(String, nullable=True)
  notes = Column(Text, nullable=True)
  admin_notes = Column(Text, nullable=True)
  upstream_order_id = Column(String, nullable=True)
  upstream_order_data = Column(JSON, nullable=True)
  fulfillment_started_at = Column(String, nullable=True)
  # Per-line outcome of the latest upstream replay.
  fulfillment_results = Column(JSON, nullable=True)
  created_at = Column(String, index=True)
  updated_at = Column(String)
  paid_at = Column(String, nullable=True)
  accepted_at = Column(String, nullable=True)
  dispatched_at = Column(String, nullable=True)
  delivered_at = Column(String, nullable=True)
  cancelled_at = Column(String, nullable=True)

  def recompute_totals(self) -> None:
    """Recomputes derived totals before a save.

    The subtotal is only rebuilt from the line subtotals when it is missing,
    zero or NaN; an explicitly set subtotal is kept as is. The total is always
    derived from the other amounts.
    """
    if not self.subtotal or _is_nan(self.subtotal):
      self.subtotal = sum(
          _money(item.get("subtotal")) for item in (self.items or [])
      )
    self.subtotal = _money(self.subtotal)
    self.tax = _money(self.tax)
    self.shipping = _money(self.shipping)
    self.discount = _money(self.discount)
    self.total_amount = round(
        self.subtotal + self.tax + self.shipping - self.discount, 2
    )

  def to_dict(self) -> Dict[str, Any]:
    return {c.name: getattr(self, c.name) for c in self.__table__.columns}


def _is_nan(value: Any) -> bool:
  return isinstance(value, float) and math.isnan(value)


def _money(value: Any) -> float:
  """Coerces an amount to a 2-decimal float, mapping None and NaN to 0."""
  try:
    amount = float(value)
  except (TypeError, ValueError):
    return 0.0
  if math.isnan(amount):
    return 0.0
  return round(amount, 2)


class Cart(Base):
  __tablename__ = "carts"

  id = Column(String, primary_key=True)
  user_id = Column(String, unique=True, index=True)
  total_items = Column(Integer, default=0)
  created_at = Column(String)
  updated_at = Column(String)

  items = relationship(
      "CartItem",
      back_populates="cart",
      order_by="CartItem.position",
      cascade="all, delete-orphan",
      lazy="selectin",
  )

  def recompute_total_items(self) -> None:
    """Recomputes line quantities and the cart total from the offers."""
    total = 0
    for item in self.items:
      item.recompute_quantity()
      total += item.quantity
    self.total_items = total


class CartItem(Base):
  __tablename__ = "cart_items"

  id = Column(String, primary_key=True)
  cart_id = Column(String, ForeignKey("carts.id"), index=True)
  position = Column(Integer, default=0)
  gtin = Column(String, index=True)
  name = Column(String)
  image_url = Column(String, nullable=True)
  category = Column(String, nullable=True)
  brand = Column(String, nullable=True)
  slug = Column(String, nullable=True)
  fid = Column(String, nullable=True)
  # List of seller offer dicts; always reassigned, never mutated in place.
  seller_offers = Column(JSON, default=list)
  quantity = Column(Integer, default=0)

  cart = relationship("Cart", back_populates="items")

  def recompute_quantity(self) -> None:
    self.quantity = sum(
        int(offer.get("quantity_purchase") or 0)
        for offer in (self.seller_offers or [])
    )


class UpstreamToken(Base):
  __tablename__ = "upstream_tokens"

  id = Column(Integer, primary_key=True, autoincrement=True)
  access_token = Column(Text)
  access_exp = Column(Integer)  # Epoch seconds
  account_info = Column(JSON, nullable=True)
  signature = Column(Text, nullable=True)
  created_at = Column(String)


class WebhookEvent(Base):
  __tablename__ = "webhook_events"

  id = Column(String, primary_key=True)  # Gateway event id
  type = Column(String)
  order_reference = Column(String, nullable=True, index=True)
  outcome = Column(String)
  payload = Column(JSON, nullable=True)
  received_at = Column(String)


# --- Data Access Helpers ---


def generate_order_number(now: Optional[datetime.datetime] = None) -> str:
  """Generates an `ORD-YYYYMMDD-NNNNN` number with a random suffix."""
  now = now or utcnow()
  return f"ORD-{now.strftime('%Y%m%d')}-{random.randint(0, 99999):05d}"


async def order_number_exists(session: AsyncSession, order_number: str) -> bool:
  result = await session.execute(
      select(Order.id).where(Order.order_number == order_number)
  )
  return result.scalar_one_or_none() is not None


async def insert_order(
    session: AsyncSession, fields: Dict[str, Any], max_attempts: int = 10
) -> Order:
  """Creates a pending order with a fresh order number and computed totals.

  Args:
    session: The database session to use.
    fields: Column values for the new order. `status`, `order_number` and the
      derived total are assigned here.
    max_attempts: How many random order numbers to try before giving up.

  Returns:
    The added (flushed, not committed) Order.
  """
  order_number = None
  for _ in range(max_attempts):
    candidate = generate_order_number()
    if not await order_number_exists(session, candidate):
      order_number = candidate
      break
  if order_number is None:
    raise RuntimeError("Could not allocate a unique order number")

  now = utcnow_iso()
  order = Order(
      id=str(uuid.uuid4()),
      currency="USD",
      payment_status="pending",
      **fields,
  )
  order.order_number = order_number
  order.status = "pending"
  order.created_at = now
  order.updated_at = now
  order.recompute_totals()
  session.add(order)
  await session.flush()
  return order


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID."""
  return await session.get(Order, order_id)


async def find_order_by_reference(
    session: AsyncSession,
    order_number: Optional[str],
    order_id: Optional[str] = None,
) -> Optional[Order]:
  """Finds an order by its order number, falling back to its ID.

  Args:
    session: The database session to use.
    order_number: The human-readable order number, if known.
    order_id: The internal order ID, if known.

  Returns:
    The matching Order or None.
  """
  if order_number:
    result = await session.execute(
        select(Order).where(Order.order_number == order_number)
    )
    order = result.scalar_one_or_none()
    if order:
      return order
  if order_id:
    return await session.get(Order, order_id)
  return None


async def save_order(session: AsyncSession, order: Order) -> None:
  """Applies the save-time rules to an order and flushes it."""
  order.recompute_totals()
  order.updated_at = utcnow_iso()
  session.add(order)
  await session.flush()


async def list_orders(
    session: AsyncSession,
    page: int,
    limit: int,
    user_id: Optional[str] = None,
) -> Tuple[List[Order], int]:
  """Returns one page of orders, newest first, and the total count.

  Args:
    session: The database session to use.
    page: 1-based page number.
    limit: Page size.
    user_id: Restricts the listing to one user when given.

  Returns:
    A tuple of (orders on the page, total matching orders).
  """
  query = select(Order)
  count_query = select(func.count(Order.id))
  if user_id is not None:
    query = query.where(Order.user_id == user_id)
    count_query = count_query.where(Order.user_id == user_id)
  query = (
      query.order_by(Order.created_at.desc(), Order.order_number.desc())
      .offset((page - 1) * limit)
      .limit(limit)
  )
  result = await session.execute(query)
  total = (await session.execute(count_query)).scalar_one()
  return list(result.scalars().all()), total


async def count_orders_by_status(session: AsyncSession) -> Dict[str, int]:
  """Groups all orders by status and counts them."""
  result = await session.execute(
      select(Order.status, func.count(Order.id)).group_by(Order.status)
  )
  return {status: count for status, count in result.all()}


async def claim_fulfillment(
    session: AsyncSession, order_id: str, stale_before: str
) -> bool:
  """Atomically marks an order as being replayed upstream.

  The claim is only taken if the order has no upstream order yet and either
  nobody holds the claim or the holder started before `stale_before`.

  Returns:
    True if this caller now holds the claim.
  """
  stmt = (
      update(Order)
      .where(Order.id == order_id)
      .where(Order.upstream_order_id.is_(None))
      .where(
          or_(
              Order.fulfillment_started_at.is_(None),
              Order.fulfillment_started_at < stale_before,
          )
      )
      .values(fulfillment_started_at=utcnow_iso())
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def release_fulfillment(
    session: AsyncSession,
    order_id: str,
    results: Optional[List[Dict[str, Any]]] = None,
) -> None:
  """Clears the fulfillment claim so the order can be retried.

  Args:
    session: The database session to use.
    order_id: The order whose claim is released.
    results: Per-line outcome of the failed run, kept for operators.
  """
  values: Dict[str, Any] = {"fulfillment_started_at": None}
  if results is not None:
    values["fulfillment_results"] = results
  await session.execute(
      update(Order)
      .where(Order.id == order_id)
      .where(Order.upstream_order_id.is_(None))
      .values(**values)
  )


async def list_stuck_orders(
    session: AsyncSession, older_than: str
) -> List[Order]:
  """Lists paid orders still waiting for an upstream order.

  Args:
    session: The database session to use.
    older_than: ISO timestamp; only orders last updated before it are listed.

  Returns:
    Orders in `processing` without upstream linkage, oldest first.
  """
  result = await session.execute(
      select(Order)
      .where(Order.status == "processing")
      .where(Order.upstream_order_id.is_(None))
      .where(Order.updated_at < older_than)
      .order_by(Order.updated_at)
  )
  return list(result.scalars().all())


async def get_cart(session: AsyncSession, user_id: str) -> Optional[Cart]:
  """Retrieves a user's cart with its items."""
  result = await session.execute(select(Cart).where(Cart.user_id == user_id))
  return result.scalar_one_or_none()


async def get_latest_token(session: AsyncSession) -> Optional[UpstreamToken]:
  """Retrieves the most recently stored upstream token."""
  result = await session.execute(
      select(UpstreamToken).order_by(UpstreamToken.id.desc()).limit(1)
  )
  return result.scalar_one_or_none()


async def append_token(
    session: AsyncSession, token_data: Dict[str, Any]
) -> UpstreamToken:
  """Stores a new upstream token row; older rows are kept."""
  token = UpstreamToken(
      access_token=token_data["access_token"],
      access_exp=int(token_data["access_exp"]),
      account_info=token_data.get("account_info"),
      signature=token_data.get("signature"),
      created_at=utcnow_iso(),
  )
  session.add(token)
  await session.flush()
  return token


async def get_webhook_event(
    session: AsyncSession, event_id: str
) -> Optional[WebhookEvent]:
  """Retrieves a previously processed webhook event by gateway event ID."""
  return await session.get(WebhookEvent, event_id)


async def record_webhook_event(
    session: AsyncSession,
    event_id: str,
    event_type: str,
    order_reference: Optional[str],
    outcome: str,
    payload: Optional[Dict[str, Any]],
) -> None:
  """Adds a webhook event record to the session."""
  session.add(
      WebhookEvent(
          id=event_id,
          type=event_type,
          order_reference=order_reference,
          outcome=outcome,
          payload=payload,
          received_at=utcnow_iso(),
      )
  )
