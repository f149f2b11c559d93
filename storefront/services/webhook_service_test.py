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

"""Tests for the payment webhook reconciler."""

import asyncio
import shutil
import tempfile
from typing import List

from absl.testing import absltest
from fastapi import BackgroundTasks
from storefront import db
from storefront.models import WebhookEvent
from storefront.services.webhook_service import WebhookService
from storefront.testing import fakes


class RecordingOrchestrator:
  """Records fulfillment triggers instead of running them."""

  def __init__(self) -> None:
    self.fulfilled: List[str] = []

  async def fulfill_quietly(self, order_id: str) -> None:
    self.fulfilled.append(order_id)


class WebhookServiceTest(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.engine, self.session_factory = fakes.make_engine(self.test_dir)
    asyncio.run(fakes.create_schema(self.engine))
    self.orchestrator = RecordingOrchestrator()
    self.order = asyncio.run(self._create_order())

  def tearDown(self) -> None:
    asyncio.run(self.engine.dispose())
    shutil.rmtree(self.test_dir)
    super().tearDown()

  async def _create_order(self) -> db.Order:
    async with self.session_factory() as session:
      order = await db.insert_order(
          session,
          {
              "user_id": "user-1",
              "items": [fakes.sample_line("111", "offer-1")],
              "shipping_address": fakes.SAMPLE_ADDRESS,
              "shipping_method": "standard",
          },
      )
      await session.commit()
      return order

  def _event(self, event_id: str) -> WebhookEvent:
    return WebhookEvent.model_validate({
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "payment_intent": "pi_test_1",
                "metadata": {"orderNumber": self.order.order_number},
            }
        },
    })

  def _handle(self, event: WebhookEvent, background_tasks=None):
    async def run():
      async with self.session_factory() as session:
        service = WebhookService(session, self.orchestrator)
        return await service.handle_event(event, background_tasks)

    return asyncio.run(run())

  def _load(self) -> db.Order:
    async def load():
      async with self.session_factory() as session:
        return await db.get_order(session, self.order.id)

    return asyncio.run(load())

  def test_completed_checkout_schedules_fulfillment(self):
    background_tasks = BackgroundTasks()

    ack = self._handle(self._event("evt_1"), background_tasks)

    self.assertEqual(ack, {"received": True})
    self.assertEmpty(self.orchestrator.fulfilled)
    self.assertLen(background_tasks.tasks, 1)
    order = self._load()
    self.assertEqual(order.status, "processing")
    self.assertEqual(order.payment_status, "paid")

    asyncio.run(background_tasks())
    self.assertEqual(self.orchestrator.fulfilled, [self.order.id])

  def test_fulfillment_runs_inline_without_background_tasks(self):
    self._handle(self._event("evt_1"))
    self.assertEqual(self.orchestrator.fulfilled, [self.order.id])

  def test_redelivered_event_is_not_applied_again(self):
    self._handle(self._event("evt_1"))
    background_tasks = BackgroundTasks()

    ack = self._handle(self._event("evt_1"), background_tasks)

    self.assertEqual(ack, {"received": True})
    self.assertEmpty(background_tasks.tasks)
    self.assertEqual(self.orchestrator.fulfilled, [self.order.id])


if __name__ == "__main__":
  absltest.main()
