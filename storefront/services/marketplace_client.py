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

"""Client for the upstream wholesale marketplace API.

The marketplace is used with a single integration account per deployment. The
client logs in with that account's credentials, keeps its bearer token in the
database (so it survives restarts and is shared by every worker), refreshes it
shortly before it expires and retries a call exactly once after
re-authenticating when the upstream answers 401.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from sqlalchemy.orm import sessionmaker
from storefront import db
from storefront.exceptions import AuthInitError
from storefront.exceptions import NoTokenError
from storefront.exceptions import UpstreamApiError
from storefront.exceptions import UpstreamAuthError

logger = logging.getLogger(__name__)

# Refresh the token when it expires within this many seconds.
REFRESH_MARGIN_SECONDS = 300

_BODY_METHODS = ("POST", "PUT", "PATCH")


class MarketplaceClient:
  """Authenticated access to the upstream marketplace."""

  def __init__(
      self,
      http_client: httpx.AsyncClient,
      session_factory: sessionmaker,
      email: Optional[str] = None,
      password: Optional[str] = None,
  ):
    """Initializes the client.

    Args:
      http_client: Client with the marketplace base URL and timeouts set.
      session_factory: Factory for sessions used to read and store tokens.
      email: Integration account login.
      password: Integration account password.
    """
    self.http_client = http_client
    self.session_factory = session_factory
    self._credentials: Optional[Dict[str, str]] = None
    if email and password:
      self._credentials = {"email": email, "password": password}
    self._refresh_lock = asyncio.Lock()

  @property
  def has_credentials(self) -> bool:
    return self._credentials is not None

  async def initialize(
      self, credentials: Optional[Dict[str, str]] = None
  ) -> Dict[str, Any]:
    """Logs in upstream and stores the resulting token.

    Args:
      credentials: `{"email", "password"}`; defaults to the stored ones. When
        given they replace the stored credentials for later re-logins.

    Returns:
      The raw login response.

    Raises:
      AuthInitError: If there are no credentials or the login call fails.
    """
    if credentials:
      self._credentials = dict(credentials)
    if not self._credentials:
      raise AuthInitError("No marketplace credentials configured")

    logger.info("Logging in to the marketplace")
    try:
      response = await self.http_client.post(
          "/auth/login/", json=self._credentials
      )
    except httpx.HTTPError as e:
      raise AuthInitError(f"Marketplace login failed: {e}") from e
    if not response.is_success:
      raise AuthInitError(
          f"Marketplace login failed with status {response.status_code}"
      )

    try:
      data = response.json()
      await self._store_token(data)
    except (KeyError, TypeError, ValueError) as e:
      raise AuthInitError(f"Unexpected marketplace login response: {e}") from e
    logger.info("Marketplace authentication initialized")
    return data

  async def get_valid_access_token(self) -> str:
    """Returns the latest token, refreshing it first if it is about to expire.

    Raises:
      NoTokenError: If no token was ever stored.
      UpstreamAuthError: If a needed refresh fails.
    """
    token = await self._latest_token()
    if not _expiring(token):
      return token.access_token

    async with self._refresh_lock:
      # Another caller may have refreshed while we waited.
      token = await self._latest_token()
      if _expiring(token):
        logger.info("Marketplace token is about to expire, refreshing")
        await self.refresh_token()
        token = await self._latest_token()
    return token.access_token

  async def refresh_token(self) -> Dict[str, Any]:
    """Exchanges the current token for a new one and stores it.

    The previous token row is kept; lookups always use the newest row.
    """
    token = await self._latest_token()
    try:
      response = await self.http_client.post(
          "/auth/refresh/",
          json={},
          headers={"Authorization": f"Bearer {token.access_token}"},
      )
    except httpx.HTTPError as e:
      raise UpstreamAuthError(f"Marketplace token refresh failed: {e}") from e
    if not response.is_success:
      raise UpstreamAuthError(
          "Marketplace token refresh failed with status"
          f" {response.status_code}"
      )
    data = response.json()
    await self._store_token(data)
    return data

  async def call_with_reauth(
      self, call: Callable[[str], Awaitable[httpx.Response]]
  ) -> httpx.Response:
    """Runs `call` with a valid token, re-logging in once on a 401.

    Args:
      call: Coroutine function taking a bearer token and performing a request.

    Returns:
      The response of the first call, or of the single retry.

    Raises:
      UpstreamAuthError: If re-login fails or the retry is also rejected.
    """
    token = await self.get_valid_access_token()
    response = await call(token)
    if response.status_code != 401:
      return response

    logger.warning("Marketplace rejected the token, re-authenticating once")
    try:
      await self.initialize()
    except AuthInitError as e:
      raise UpstreamAuthError(f"Re-authentication failed: {e.message}") from e
    token = (await self._latest_token()).access_token
    response = await call(token)
    if response.status_code == 401:
      raise UpstreamAuthError("Marketplace rejected the token after re-login")
    return response

  async def make_authenticated_request(
      self, method: str, path: str, body: Optional[Any] = None
  ) -> Any:
    """Performs an authenticated call and returns the decoded JSON body.

    Args:
      method: HTTP method.
      path: Path relative to the marketplace base URL.
      body: JSON body, sent for POST, PUT and PATCH only.

    Returns:
      The decoded response body, or None if it is empty.

    Raises:
      UpstreamAuthError: On a persistent 401.
      UpstreamApiError: On any other non-2xx status or a transport failure,
        timeouts included.
    """
    method = method.upper()

    async def call(token: str) -> httpx.Response:
      kwargs: Dict[str, Any] = {
          "headers": {"Authorization": f"Bearer {token}"}
      }
      if body is not None and method in _BODY_METHODS:
        kwargs["json"] = body
      return await self.http_client.request(method, path, **kwargs)

    try:
      response = await self.call_with_reauth(call)
    except httpx.HTTPError as e:
      logger.error("Marketplace request %s %s failed: %s", method, path, e)
      raise UpstreamApiError(
          f"Marketplace request {method} {path} failed: {e!r}"
      ) from e

    if not response.is_success:
      response_body = _decode(response)
      logger.error(
          "Marketplace request %s %s returned %s: %s",
          method,
          path,
          response.status_code,
          response_body,
      )
      raise UpstreamApiError(
          f"Marketplace request {method} {path} returned"
          f" {response.status_code}: {response_body}",
          status=response.status_code,
          body=response_body,
      )
    return _decode(response)

  async def _latest_token(self) -> db.UpstreamToken:
    async with self.session_factory() as session:
      token = await db.get_latest_token(session)
    if token is None:
      raise NoTokenError(
          "No marketplace token found, initialize the client first"
      )
    return token

  async def _store_token(self, data: Dict[str, Any]) -> None:
    async with self.session_factory() as session:
      await db.append_token(
          session,
          {
              "access_token": data["accessToken"],
              "access_exp": data["accessExp"],
              "account_info": data.get("user"),
              "signature": data.get("signature"),
          },
      )
      await session.commit()


def _expiring(token: db.UpstreamToken) -> bool:
  return (token.access_exp or 0) - int(time.time()) < REFRESH_MARGIN_SECONDS


def _decode(response: httpx.Response) -> Any:
  if not response.content:
    return None
  try:
    return response.json()
  except ValueError:
    return response.text
