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

"""Payment gateway webhook route for the storefront server."""

from typing import Any, Dict, Optional

from fastapi import APIRouter
from fastapi import BackgroundTasks
from fastapi import Depends
from fastapi import Header
from fastapi import Request
from storefront import dependencies
from storefront.models import Settings
from storefront.services.payment_gateway import parse_webhook_event
from storefront.services.webhook_service import WebhookService

router = APIRouter(tags=["webhooks"])


@router.post(
    "/webhooks/stripe",
    response_model=Dict[str, Any],
    operation_id="stripe_webhook",
)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    settings: Settings = Depends(dependencies.get_settings),
    webhook_service: WebhookService = Depends(
        dependencies.get_webhook_service
    ),
) -> Dict[str, Any]:
  """Receive a payment gateway event.

  The raw body is verified against the signing secret before anything in it
  is used. A triggered upstream fulfillment runs after the acknowledgement
  is sent.
  """
  payload = await request.body()
  event = parse_webhook_event(
      payload, stripe_signature, settings.stripe_webhook_secret
  )
  return await webhook_service.handle_event(event, background_tasks)
