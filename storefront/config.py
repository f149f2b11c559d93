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

"""Shared configuration and startup logic for the storefront server."""

import contextlib
import logging
import os

from absl import flags
from fastapi import FastAPI
import httpx
from storefront import db
from storefront.exceptions import AuthInitError
from storefront.models import Settings
from storefront.services.checkout_orchestrator import CheckoutOrchestrator
from storefront.services.marketplace_client import MarketplaceClient
from storefront.services.notification_service import build_email_sender
from storefront.services.notification_service import NotificationDispatcher
from storefront.services.payment_gateway import StripeGateway

FLAGS = flags.FLAGS

logger = logging.getLogger(__name__)

# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string("database_path", None, "Path to the SQLite database")
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string(
      "marketplace_base_url",
      os.environ.get("MARKETPLACE_BASE_URL", "https://api.qogita.com"),
      "Base URL of the upstream wholesale marketplace API",
  )
  flags.DEFINE_string(
      "marketplace_email",
      os.environ.get("MARKETPLACE_EMAIL"),
      "Login of the marketplace integration account",
  )
  flags.DEFINE_string(
      "marketplace_password",
      os.environ.get("MARKETPLACE_PASSWORD"),
      "Password of the marketplace integration account",
  )
  flags.DEFINE_float(
      "upstream_timeout_seconds",
      30.0,
      "Timeout for each upstream marketplace call",
  )
  flags.DEFINE_string(
      "stripe_secret_key",
      os.environ.get("STRIPE_SECRET_KEY"),
      "Stripe API secret key",
  )
  flags.DEFINE_string(
      "stripe_webhook_secret",
      os.environ.get("STRIPE_WEBHOOK_SECRET"),
      "Signing secret of the Stripe webhook endpoint",
  )
  flags.DEFINE_string(
      "frontend_url",
      os.environ.get("FRONTEND_URL", "http://localhost:3000"),
      "Storefront URL used for payment success and cancel redirects",
  )
  flags.DEFINE_string(
      "admin_secret",
      os.environ.get("ADMIN_SECRET"),
      "Secret expected in the Admin-Secret header of admin endpoints",
  )
  flags.DEFINE_string(
      "smtp_host", os.environ.get("SMTP_HOST"), "SMTP server for order emails"
  )
  flags.DEFINE_integer(
      "smtp_port", int(os.environ.get("SMTP_PORT", "587")), "SMTP port"
  )
  flags.DEFINE_string(
      "smtp_username", os.environ.get("SMTP_USERNAME"), "SMTP login"
  )
  flags.DEFINE_string(
      "smtp_password", os.environ.get("SMTP_PASSWORD"), "SMTP password"
  )
  flags.DEFINE_string(
      "mail_from",
      os.environ.get("MAIL_FROM", "Storefront <no-reply@localhost>"),
      "From header of order emails",
  )
  flags.DEFINE_integer(
      "fulfillment_claim_ttl_seconds",
      900,
      "Age after which an unfinished fulfillment claim may be taken over",
  )
except flags.DuplicateFlagError:
  pass


def build_settings() -> Settings:
  """Snapshots the parsed flags into a Settings object."""
  return Settings(
      marketplace_base_url=FLAGS.marketplace_base_url,
      marketplace_email=FLAGS.marketplace_email,
      marketplace_password=FLAGS.marketplace_password,
      upstream_timeout_seconds=FLAGS.upstream_timeout_seconds,
      stripe_secret_key=FLAGS.stripe_secret_key,
      stripe_webhook_secret=FLAGS.stripe_webhook_secret,
      frontend_url=FLAGS.frontend_url,
      admin_secret=FLAGS.admin_secret,
      smtp_host=FLAGS.smtp_host,
      smtp_port=FLAGS.smtp_port,
      smtp_username=FLAGS.smtp_username,
      smtp_password=FLAGS.smtp_password,
      mail_from=FLAGS.mail_from,
      fulfillment_claim_ttl_seconds=FLAGS.fulfillment_claim_ttl_seconds,
  )


def build_marketplace_http_client(settings: Settings) -> httpx.AsyncClient:
  return httpx.AsyncClient(
      base_url=settings.marketplace_base_url,
      timeout=settings.upstream_timeout_seconds,
      headers={"Accept": "application/json"},
  )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Initializes the database and the shared upstream services."""
  # In tests flags aren't parsed; routes then rely on dependency overrides.
  if not FLAGS.is_parsed() or not FLAGS.database_path:
    yield
    return

  settings = build_settings()
  await db.manager.init_db(FLAGS.database_path)
  http_client = build_marketplace_http_client(settings)
  marketplace = MarketplaceClient(
      http_client,
      db.manager.session_factory,
      settings.marketplace_email,
      settings.marketplace_password,
  )
  notifier = NotificationDispatcher(build_email_sender(settings))

  app.state.settings = settings
  app.state.notifier = notifier
  app.state.gateway = StripeGateway(settings)
  app.state.orchestrator = CheckoutOrchestrator(
      db.manager.session_factory,
      marketplace,
      notifier,
      claim_ttl_seconds=settings.fulfillment_claim_ttl_seconds,
  )

  if marketplace.has_credentials:
    try:
      await marketplace.initialize()
    except AuthInitError as e:
      logger.error("Marketplace authentication failed: %s", e.message)
  else:
    logger.warning("Marketplace credentials not set, fulfillment is disabled")

  yield
  await http_client.aclose()
  await db.manager.close()
