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

"""Utility script to list orders that are stuck before upstream fulfillment.

A paid order sits in `processing` until the upstream marketplace order is
placed. This script prints every such order older than a threshold, with the
per-line outcome of its last fulfillment attempt, so an operator can retry it
through the admin fulfill endpoint. It can also print the webhook events
received for each order.

Usage:
  storefront-dump-orders --database_path=... [--stuck_minutes=30]
      [--show_events]
"""

import asyncio
import datetime
import json
import sys

from absl import app as absl_app
from absl import flags
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from storefront import config  # pylint: disable=unused-import
from storefront import db

FLAGS = flags.FLAGS

try:
  flags.DEFINE_integer(
      "stuck_minutes", 30, "Only list orders not updated for this long"
  )
  flags.DEFINE_bool("show_events", False, "Show received webhook events")
except flags.DuplicateFlagError:
  pass


async def dump_stuck_orders() -> int:
  """Queries the database and prints stuck orders; returns how many."""
  if not FLAGS.database_path:
    print("Error: --database_path is required.")
    sys.exit(1)

  engine = create_async_engine(
      f"sqlite+aiosqlite:///{FLAGS.database_path}", echo=False
  )
  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )
  older_than = (
      db.utcnow() - datetime.timedelta(minutes=FLAGS.stuck_minutes)
  ).isoformat()

  try:
    async with session_factory() as session:
      print("=== ORDERS AWAITING UPSTREAM FULFILLMENT ===")
      orders = await db.list_stuck_orders(session, older_than)
      if not orders:
        print("No stuck orders found.")
        return 0

      for order in orders:
        print(
            f"[{order.updated_at}] {order.order_number} ({order.id})"
            f" payment={order.payment_status} total={order.total_amount:.2f}"
        )
        if order.fulfillment_started_at:
          print(f"  Claimed since: {order.fulfillment_started_at}")
        for line in order.fulfillment_results or []:
          print(
              f"  Line {line.get('index')}: {line.get('gtin')}"
              f" -> {line.get('status')} {line.get('reason') or ''}"
          )

        if FLAGS.show_events:
          result = await session.execute(
              select(db.WebhookEvent)
              .where(
                  db.WebhookEvent.order_reference.in_(
                      [order.order_number, order.id]
                  )
              )
              .order_by(db.WebhookEvent.received_at)
          )
          for event in result.scalars().all():
            print(f"  Event {event.id} {event.type}: {event.outcome}")
            if event.payload:
              print(f"    {json.dumps(event.payload)[:200]}")
        print("-" * 40)
      return len(orders)
  finally:
    await engine.dispose()


def main(argv):
  """Main entry point for the order dump script."""
  del argv
  asyncio.run(dump_stuck_orders())


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
