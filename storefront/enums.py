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

"""Enumerations for the storefront server.

This module defines the canonical order, payment and fulfillment states used
throughout the server. Historical aliases ("shipped", "completed") are accepted
on input and mapped onto the canonical set by `normalize_order_status`.
"""

import enum
from typing import Optional


class OrderStatus(str, enum.Enum):
  PENDING = "pending"
  PROCESSING = "processing"
  ACCEPTED = "accepted"
  DISPATCHED = "dispatched"
  DELIVERED = "delivered"
  CANCELLED = "cancelled"
  REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
  PENDING = "pending"
  PAID = "paid"
  FAILED = "failed"
  REFUNDED = "refunded"
  EXPIRED = "expired"


class LineStatus(str, enum.Enum):
  """Outcome of replaying one order line onto the upstream cart."""

  ADDED = "added"
  SKIPPED = "skipped"
  FAILED = "failed"


class ShippingMethod(str, enum.Enum):
  STANDARD = "standard"
  EXPRESS = "express"
  OVERNIGHT = "overnight"
  PICKUP = "pickup"


class PaymentMethod(str, enum.Enum):
  STRIPE = "stripe"
  BANK_TRANSFER = "bank_transfer"


_ORDER_STATUS_ALIASES = {
    "shipped": OrderStatus.DISPATCHED,
    "completed": OrderStatus.DELIVERED,
    "canceled": OrderStatus.CANCELLED,
}


def normalize_order_status(value: str) -> Optional[OrderStatus]:
  """Maps a raw status string, including legacy aliases, to OrderStatus.

  Returns None if the value names no known state.
  """
  if value is None:
    return None
  raw = value.strip().lower()
  if raw in _ORDER_STATUS_ALIASES:
    return _ORDER_STATUS_ALIASES[raw]
  try:
    return OrderStatus(raw)
  except ValueError:
    return None
