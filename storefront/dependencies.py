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

"""FastAPI dependencies for the storefront server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Caller identity and admin secret headers.
- Database session management.
- Service instantiation (cart, order, webhook services) from the shared
  objects created at startup.
"""

from typing import AsyncGenerator, Optional

from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from storefront import db
from storefront.models import Settings
from storefront.services.cart_service import CartService
from storefront.services.checkout_orchestrator import CheckoutOrchestrator
from storefront.services.notification_service import NotificationDispatcher
from storefront.services.order_service import OrderService
from storefront.services.payment_gateway import PaymentGateway
from storefront.services.webhook_service import WebhookService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for a database session."""
  async with db.manager.session_factory() as session:
    yield session


def get_settings(request: Request) -> Settings:
  return request.app.state.settings


def get_gateway(request: Request) -> PaymentGateway:
  return request.app.state.gateway


def get_notifier(request: Request) -> NotificationDispatcher:
  return request.app.state.notifier


def get_orchestrator(request: Request) -> CheckoutOrchestrator:
  return request.app.state.orchestrator


async def get_user_id(user_id: str = Header(..., alias="User-Id")) -> str:
  """Extracts the authenticated caller from the User-Id header."""
  if not user_id.strip():
    raise HTTPException(status_code=401, detail="Missing user")
  return user_id


async def verify_admin_secret(
    admin_secret: Optional[str] = Header(None, alias="Admin-Secret"),
    settings: Settings = Depends(get_settings),
) -> None:
  """Verifies the secret for admin endpoints."""
  expected_secret = settings.admin_secret
  if not expected_secret:
    raise HTTPException(status_code=500, detail="Admin secret not configured")

  if not admin_secret or admin_secret != expected_secret:
    raise HTTPException(status_code=403, detail="Invalid Admin Secret")


def get_cart_service(session: AsyncSession = Depends(get_db)) -> CartService:
  """Dependency provider for CartService."""
  return CartService(session)


def get_order_service(
    session: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> OrderService:
  """Dependency provider for OrderService."""
  return OrderService(session, settings, gateway, notifier)


def get_webhook_service(
    session: AsyncSession = Depends(get_db),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
) -> WebhookService:
  """Dependency provider for WebhookService."""
  return WebhookService(session, orchestrator)
