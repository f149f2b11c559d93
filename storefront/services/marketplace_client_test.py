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

"""Tests for the upstream marketplace client."""

import asyncio
import shutil
import tempfile

from absl.testing import absltest
from storefront import db
from storefront.exceptions import AuthInitError
from storefront.exceptions import NoTokenError
from storefront.exceptions import UpstreamApiError
from storefront.exceptions import UpstreamAuthError
from storefront.services.marketplace_client import MarketplaceClient
from storefront.testing import fakes

_LINES = "/carts/active/lines/"


class MarketplaceClientTest(absltest.TestCase):
  """Tests for token handling and authenticated requests."""

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.engine, self.session_factory = fakes.make_engine(self.test_dir)
    asyncio.run(fakes.create_schema(self.engine))
    self.upstream = fakes.FakeMarketplace()

  def tearDown(self) -> None:
    asyncio.run(self.engine.dispose())
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def _run(self, scenario):
    """Runs `scenario(client)` with a client bound to the fake upstream."""

    async def run():
      async with self.upstream.client() as http_client:
        client = MarketplaceClient(
            http_client, self.session_factory, "buyer@example.com", "secret"
        )
        return await scenario(client)

    return asyncio.run(run())

  def test_initialize_stores_token(self):
    async def scenario(client):
      await client.initialize()
      async with self.session_factory() as session:
        return await db.get_latest_token(session)

    token = self._run(scenario)
    self.assertEqual(token.access_token, "token-1")
    self.assertEqual(token.account_info, {"email": "buyer@example.com"})
    self.assertEqual(
        self.upstream.requests[0][2],
        {"email": "buyer@example.com", "password": "secret"},
    )

  def test_failed_login_raises_auth_init_error(self):
    self.upstream.login_status = 401

    async def scenario(client):
      with self.assertRaises(AuthInitError):
        await client.initialize()

    self._run(scenario)

  def test_no_token_before_initialize(self):
    async def scenario(client):
      with self.assertRaises(NoTokenError):
        await client.get_valid_access_token()

    self._run(scenario)

  def test_token_close_to_expiry_is_refreshed(self):
    self.upstream.access_ttl = 120

    async def scenario(client):
      await client.initialize()
      return await client.get_valid_access_token()

    self.assertEqual(self._run(scenario), "refreshed-1")
    self.assertEqual(self.upstream.refresh_count, 1)

  def test_fresh_token_is_reused(self):
    async def scenario(client):
      await client.initialize()
      first = await client.get_valid_access_token()
      second = await client.get_valid_access_token()
      return first, second

    self.assertEqual(self._run(scenario), ("token-1", "token-1"))
    self.assertEqual(self.upstream.refresh_count, 0)

  def test_unauthorized_call_is_retried_once_after_relogin(self):
    self.upstream.reject_tokens.add("token-1")

    async def scenario(client):
      await client.initialize()
      return await client.make_authenticated_request(
          "POST", _LINES, {"quantity": 1, "offerQid": "offer-1"}
      )

    response = self._run(scenario)
    self.assertEqual(response, {"qid": "line-1"})
    self.assertEqual(self.upstream.login_count, 2)
    self.assertEqual(self.upstream.count("POST", _LINES), 2)

  def test_persistent_unauthorized_raises_after_one_retry(self):
    self.upstream.reject_all_tokens = True

    async def scenario(client):
      await client.initialize()
      with self.assertRaises(UpstreamAuthError):
        await client.make_authenticated_request("GET", "/addresses")

    self._run(scenario)
    self.assertEqual(self.upstream.count("GET", "/addresses"), 2)
    self.assertEqual(self.upstream.login_count, 2)

  def test_error_status_raises_upstream_api_error(self):
    self.upstream.failing_offers.add("offer-9")

    async def scenario(client):
      await client.initialize()
      with self.assertRaises(UpstreamApiError) as cm:
        await client.make_authenticated_request(
            "POST", _LINES, {"quantity": 1, "offerQid": "offer-9"}
        )
      return cm.exception

    error = self._run(scenario)
    self.assertEqual(error.status, 400)
    self.assertEqual(error.body, {"detail": "Offer offer-9 unavailable"})

  def test_timeout_raises_upstream_api_error(self):
    self.upstream.timeout_offers.add("offer-slow")

    async def scenario(client):
      await client.initialize()
      with self.assertRaises(UpstreamApiError) as cm:
        await client.make_authenticated_request(
            "POST", _LINES, {"quantity": 1, "offerQid": "offer-slow"}
        )
      return cm.exception

    self.assertIsNone(self._run(scenario).status)

  def test_body_is_not_sent_with_get(self):
    async def scenario(client):
      await client.initialize()
      return await client.make_authenticated_request(
          "GET", "/addresses", {"ignored": True}
      )

    self.assertEqual(self._run(scenario), {"results": [{"qid": "addr-1"}]})
    self.assertIsNone(self.upstream.requests[-1][2])


if __name__ == "__main__":
  absltest.main()
