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

"""Pydantic models for the storefront server.

Request bodies, response shapes and the small value objects passed between
services. Order lines and address snapshots are stored as JSON on the order
row, so the same models validate both what clients send and what the
database returns.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from storefront.enums import LineStatus
from storefront.enums import PaymentMethod
from storefront.enums import ShippingMethod


class Settings(BaseModel):
  """Runtime configuration snapshot, built once from flags."""

  model_config = ConfigDict(frozen=True)

  marketplace_base_url: str = "https://api.qogita.com"
  marketplace_email: Optional[str] = None
  marketplace_password: Optional[str] = None
  upstream_timeout_seconds: float = 30.0
  stripe_secret_key: Optional[str] = None
  stripe_webhook_secret: Optional[str] = None
  frontend_url: str = "http://localhost:3000"
  admin_secret: Optional[str] = None
  smtp_host: Optional[str] = None
  smtp_port: int = 587
  smtp_username: Optional[str] = None
  smtp_password: Optional[str] = None
  mail_from: str = "Storefront <no-reply@localhost>"
  fulfillment_claim_ttl_seconds: int = 900
  tax_rate: float = 0.08


# --- Cart ---


class SellerOffer(BaseModel):
  """One seller's listing for a product inside a cart line."""

  seller: str
  price: float = 0.0
  inventory: int = 0
  mov: Optional[float] = None
  mov_currency: Optional[str] = None
  mov_progress: Optional[float] = None
  final_order_value: Optional[float] = None
  min_quantity: Optional[int] = None
  unit: Optional[str] = None
  price_currency: Optional[str] = None
  qid: Optional[str] = None
  is_traceable: bool = False
  quantity_purchase: int = Field(1, ge=1)


class AddCartItemRequest(BaseModel):
  gtin: str
  name: str
  image_url: Optional[str] = None
  category: Optional[str] = None
  brand: Optional[str] = None
  slug: Optional[str] = None
  fid: Optional[str] = None
  seller_offers: List[SellerOffer] = Field(..., min_length=1)


class UpdateCartItemRequest(BaseModel):
  seller: str
  quantity: int = Field(..., ge=1)


class CartItemResponse(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  id: str
  gtin: str
  name: Optional[str] = None
  image_url: Optional[str] = None
  category: Optional[str] = None
  brand: Optional[str] = None
  slug: Optional[str] = None
  fid: Optional[str] = None
  seller_offers: List[SellerOffer] = []
  quantity: int = 0


class CartResponse(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  id: str
  user_id: str
  items: List[CartItemResponse] = []
  total_items: int = 0


# --- Orders ---


class SellerData(BaseModel):
  price: Optional[float] = None
  mov: Optional[float] = None
  mov_currency: Optional[str] = None
  inventory: Optional[int] = None
  is_traceable: bool = False
  qid: Optional[str] = None
  final_order_value: Optional[float] = None


class ProductSnapshot(BaseModel):
  added_at: Optional[str] = None
  is_in_stock: bool = True


class OrderLine(BaseModel):
  gtin: str
  name: Optional[str] = None
  image_url: Optional[str] = None
  category: Optional[str] = None
  brand: Optional[str] = None
  seller: Optional[str] = None
  quantity: int
  unit_price: float
  subtotal: float
  seller_data: SellerData = SellerData()
  product_snapshot: ProductSnapshot = ProductSnapshot()


class AddressSnapshot(BaseModel):
  """Copy of the shipping address taken when the order is placed."""

  address_id: Optional[str] = None
  first_name: str
  last_name: str
  company_name: Optional[str] = None
  street_address: str
  town_city: str
  state: Optional[str] = None
  zip: str
  country_region: str
  phone: Optional[str] = None
  email: Optional[str] = None
  address_type: Optional[str] = None


class CreateOrderRequest(BaseModel):
  shipping_address: AddressSnapshot
  shipping_method: ShippingMethod = ShippingMethod.STANDARD
  payment_method: PaymentMethod = PaymentMethod.STRIPE
  notes: Optional[str] = None


class OrderResponse(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  id: str
  order_number: str
  user_id: str
  items: List[OrderLine] = []
  subtotal: float
  tax: float
  shipping: float
  discount: float
  total_amount: float
  currency: str
  status: str
  payment_status: str
  payment_method: Optional[str] = None
  payment_id: Optional[str] = None
  shipping_address: Optional[AddressSnapshot] = None
  shipping_method: Optional[str] = None
  tracking_number: Optional[str] = None
  notes: Optional[str] = None
  admin_notes: Optional[str] = None
  upstream_order_id: Optional[str] = None
  created_at: str
  updated_at: str
  paid_at: Optional[str] = None
  accepted_at: Optional[str] = None
  dispatched_at: Optional[str] = None
  delivered_at: Optional[str] = None
  cancelled_at: Optional[str] = None


class InvalidCartLine(BaseModel):
  gtin: str
  seller: Optional[str] = None
  reason: str


class OrderPlacedResponse(BaseModel):
  order: OrderResponse
  invalid_items: List[InvalidCartLine] = []
  checkout_session_id: Optional[str] = None
  checkout_url: Optional[str] = None


class Pagination(BaseModel):
  page: int
  limit: int
  total: int
  pages: int


class OrderPage(BaseModel):
  orders: List[OrderResponse]
  pagination: Pagination


class AdminOrderPage(OrderPage):
  status_counts: Dict[str, int]


class StatusUpdateRequest(BaseModel):
  status: str
  notes: Optional[str] = None
  tracking_number: Optional[str] = None


class AdminActionRequest(BaseModel):
  notes: Optional[str] = None
  tracking_number: Optional[str] = None


# --- Fulfillment ---


class LineResult(BaseModel):
  """What happened to one order line on the upstream cart."""

  index: int
  gtin: Optional[str] = None
  seller: Optional[str] = None
  qid: Optional[str] = None
  quantity: int = 0
  status: LineStatus
  upstream_line_id: Optional[str] = None
  reason: Optional[str] = None
  details: Any = None


class FulfillmentResult(BaseModel):
  upstream_order_id: str
  results: List[LineResult] = []


# --- Payment gateway ---


class CheckoutSessionInfo(BaseModel):
  """The parts of a hosted gateway checkout session the server uses."""

  id: str
  url: Optional[str] = None
  payment_status: Optional[str] = None
  payment_intent: Optional[str] = None
  metadata: Dict[str, Any] = {}


class WebhookEventData(BaseModel):
  model_config = ConfigDict(populate_by_name=True)

  object_: Dict[str, Any] = Field(..., alias="object")


class WebhookEvent(BaseModel):
  """A verified gateway event; unknown fields are ignored."""

  id: str
  type: str
  data: WebhookEventData
