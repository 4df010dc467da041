"""Keeps a user's WHOOP access token valid across expiry.

WHOOP rotates refresh tokens: using one invalidates it. Two concurrent
refreshes for the same user would therefore leave one of them holding a dead
token, so refreshes are serialized per (user, provider) through an in-flight
registry. Callers that find a refresh already running await that same task.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import httpx

import config
from credentials import WHOOP, CredentialRecord, CredentialStore
from errors import NotLinked, RefreshFailed

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


class TokenRefreshCoordinator:
    def __init__(
        self,
        store: CredentialStore,
        http: httpx.AsyncClient,
        client_id: str = config.WHOOP_CLIENT_ID,
        client_secret: str = config.WHOOP_CLIENT_SECRET,
        token_url: str = config.WHOOP_TOKEN_URL,
        scope: Optional[str] = config.WHOOP_REFRESH_SCOPE,
        provider: str = WHOOP,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.scope = scope
        self.provider = provider
        self.timeout = timeout
        self.clock = clock
        self._inflight: Dict[Tuple[str, str], asyncio.Task] = {}

    def _load(self, user_id: str) -> CredentialRecord:
        record = self.store.get(user_id, self.provider)
        if record is None:
            raise NotLinked(user_id, self.provider)
        return record

    async def ensure_valid_access_token(self, user_id: str) -> str:
        record = self._load(user_id)
        if record.is_fresh(self.clock()):
            return record.access_token
        return await self._join(user_id, forced=False)

    async def force_refresh(self, user_id: str, rejected_token: Optional[str] = None) -> str:
        """Refresh regardless of expiry, e.g. after a 401 on a resource call.

        When the stored token no longer matches rejected_token someone else
        already rotated it and the stored token is returned as-is.
        """
        record = self._load(user_id)
        if rejected_token is not None and record.access_token != rejected_token:
            return record.access_token
        return await self._join(user_id, forced=True, rejected_token=rejected_token)

    async def _join(self, user_id: str, forced: bool, rejected_token: Optional[str] = None) -> str:
        key = (user_id, self.provider)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(user_id, forced, rejected_token))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._settle(key, t))
        else:
            logger.debug("joining in-flight refresh for user %s", user_id)
        # shield: a cancelled waiter must not cancel the refresh the others await
        return await asyncio.shield(task)

    def _settle(self, key, task):
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            # marks the exception retrieved when every waiter was cancelled
            logger.debug("refresh for user %s settled with %s", key[0], type(task.exception()).__name__)

    async def _refresh(self, user_id: str, forced: bool, rejected_token: Optional[str]) -> str:
        record = self._load(user_id)
        if not forced and record.is_fresh(self.clock()):
            return record.access_token
        if forced and rejected_token is not None and record.access_token != rejected_token:
            return record.access_token
        if not record.refresh_token:
            raise RefreshFailed(f"No refresh token stored for {self.provider}")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": record.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.scope:
            data["scope"] = self.scope

        logger.info("refreshing %s token for user %s", self.provider, user_id)
        try:
            r = await self.http.post(self.token_url, data=data, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("%s refresh for user %s failed: %s", self.provider, user_id, type(e).__name__)
            raise RefreshFailed(f"{self.provider} refresh failed: {type(e).__name__}", None, str(e)) from e

        if r.status_code < 200 or r.status_code >= 300:
            logger.warning("%s refresh for user %s rejected: %s", self.provider, user_id, r.status_code)
            raise RefreshFailed(f"{self.provider} refresh failed: {r.status_code}", r.status_code, r.text)

        try:
            tok = r.json()
            access_token = tok["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise RefreshFailed(f"{self.provider} refresh returned an unusable body",
                                r.status_code, r.text) from e

        expires_in = tok.get("expires_in")
        if expires_in is None:
            expires_in = DEFAULT_EXPIRES_IN
        rotated = record.rotated(
            access_token=access_token,
            refresh_token=tok.get("refresh_token"),
            expires_at=int(self.clock()) + int(expires_in),
            token_type=tok.get("token_type"),
            scope=tok.get("scope"),
        )
        try:
            self.store.update_tokens(rotated)
        except LookupError as e:
            raise NotLinked(user_id, self.provider) from e
        logger.info("%s token refreshed for user %s, expires at %s", self.provider, user_id, rotated.expires_at)
        return rotated.access_token
