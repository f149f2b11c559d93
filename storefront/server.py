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

"""Storefront order server (Python/FastAPI)."""

import logging
import sys
from typing import Sequence

from absl import app as absl_app
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from storefront import config
from storefront.exceptions import StorefrontError
from storefront.routes.admin import router as admin_router
from storefront.routes.cart import router as cart_router
from storefront.routes.order import router as order_router
from storefront.routes.webhook import router as webhook_router
import uvicorn

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Storefront Order Service",
    version="0.1.0",
    description=(
        "Cart, order and payment backend that fulfills paid orders on an"
        " upstream wholesale marketplace"
    ),
    lifespan=config.lifespan,
)


@app.exception_handler(StorefrontError)
async def storefront_exception_handler(
    request: Request, exc: StorefrontError
):
  """Handles storefront exceptions and converts them to JSON responses."""
  del request  # Unused.
  return JSONResponse(status_code=exc.status_code, content=exc.to_content())


@app.get("/health", operation_id="health")
async def health() -> dict:
  return {"status": "ok"}


app.include_router(cart_router)
app.include_router(order_router)
app.include_router(admin_router)
app.include_router(webhook_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the storefront server."""
  del argv  # Unused.

  if config.FLAGS.database_path is None or config.FLAGS.port is None:
    logger.error("Both --database_path and --port must be provided.")
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
