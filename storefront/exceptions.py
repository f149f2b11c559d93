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

"""Custom exceptions for the storefront server."""

from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
  """Base class for all storefront exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)

  def to_content(self) -> Dict[str, Any]:
    """Returns the JSON body sent to clients for this error."""
    return {"detail": self.message, "code": self.code}


class InvalidRequestError(StorefrontError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)


# --- Upstream marketplace ---


class AuthInitError(StorefrontError):
  """Raised when the upstream login call fails.

  Credentials are assumed invalid or the upstream is down; callers must not
  retry in a loop.
  """

  def __init__(self, message: str):
    super().__init__(message, code="UPSTREAM_AUTH_INIT_FAILED", status_code=502)


class NoTokenError(StorefrontError):
  """Raised when no upstream token has ever been stored."""

  def __init__(self, message: str = "No upstream access token available"):
    super().__init__(message, code="UPSTREAM_NO_TOKEN", status_code=503)


class UpstreamAuthError(StorefrontError):
  """Raised when the upstream keeps answering 401 after re-authenticating."""

  def __init__(self, message: str):
    super().__init__(message, code="UPSTREAM_AUTH_FAILED", status_code=502)


class UpstreamApiError(StorefrontError):
  """Raised on any other non-2xx upstream response or transport failure."""

  def __init__(
      self, message: str, status: Optional[int] = None, body: Any = None
  ):
    super().__init__(message, code="UPSTREAM_API_ERROR", status_code=502)
    self.status = status
    self.body = body


# --- Orders and fulfillment ---


class OrderNotFoundError(StorefrontError):
  """Raised when an order does not exist or is not visible to the caller."""

  def __init__(self, message: str = "Order not found"):
    super().__init__(message, code="ORDER_NOT_FOUND", status_code=404)


class PartialFulfillmentError(StorefrontError):
  """Raised when at least one order line could not be added upstream."""

  def __init__(self, message: str, results: List[Dict[str, Any]]):
    super().__init__(message, code="PARTIAL_FULFILLMENT", status_code=502)
    self.results = results

  def to_content(self) -> Dict[str, Any]:
    content = super().to_content()
    content["results"] = self.results
    return content


class NoShippingAddressError(StorefrontError):
  """Raised when the upstream account has no address on file."""

  def __init__(self, message: str = "No shipping address found upstream"):
    super().__init__(message, code="NO_SHIPPING_ADDRESS", status_code=502)


class UpstreamCheckoutError(StorefrontError):
  """Raised when a step of the upstream checkout fails."""

  def __init__(self, message: str):
    super().__init__(message, code="UPSTREAM_CHECKOUT_FAILED", status_code=502)


class FulfillmentInProgressError(StorefrontError):
  """Raised when another worker currently holds the fulfillment claim."""

  def __init__(self, message: str):
    super().__init__(message, code="FULFILLMENT_IN_PROGRESS", status_code=409)


class OrderNotFulfillableError(StorefrontError):
  """Raised when an unpaid, cancelled or refunded order is sent upstream."""

  def __init__(self, message: str):
    super().__init__(message, code="ORDER_NOT_FULFILLABLE", status_code=409)


class InvalidStatusTransitionError(StorefrontError):
  """Raised when an order status change is not allowed."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_STATUS_TRANSITION", status_code=400)


class OrderNotCancellableError(StorefrontError):
  """Raised when cancelling an order that is past the point of cancellation."""

  def __init__(self, message: str):
    super().__init__(message, code="ORDER_NOT_CANCELLABLE", status_code=400)


# --- Cart ---


class CartNotFoundError(StorefrontError):
  """Raised when a user has no cart."""

  def __init__(self, message: str = "Cart not found"):
    super().__init__(message, code="CART_NOT_FOUND", status_code=404)


class EmptyCartError(StorefrontError):
  """Raised when placing an order from a cart without usable lines."""

  def __init__(self, message: str = "Cart is empty"):
    super().__init__(message, code="EMPTY_CART", status_code=400)


class ItemNotFoundError(StorefrontError):
  """Raised when a cart line does not exist."""

  def __init__(self, message: str = "Item not found in cart"):
    super().__init__(message, code="ITEM_NOT_FOUND", status_code=404)


class OfferNotFoundError(StorefrontError):
  """Raised when a seller offer does not exist on a cart line."""

  def __init__(self, message: str = "Seller offer not found"):
    super().__init__(message, code="OFFER_NOT_FOUND", status_code=404)


# --- Payment gateway ---


class WebhookSignatureError(StorefrontError):
  """Raised when a webhook payload fails verification or parsing."""

  def __init__(self, message: str):
    super().__init__(message, code="WEBHOOK_SIGNATURE_INVALID", status_code=400)


class PaymentGatewayError(StorefrontError):
  """Raised when the payment gateway rejects a request."""

  def __init__(self, message: str):
    super().__init__(message, code="PAYMENT_GATEWAY_ERROR", status_code=502)
