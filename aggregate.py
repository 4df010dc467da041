import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import config
from errors import MalformedResponse, RefreshFailed, UpstreamError, UpstreamUnauthorized, UpstreamUnavailable
from metrics import SignalSnapshot, compute_snapshot
from records import normalize
from token_refresh import TokenRefreshCoordinator
from whoop_client import RecordEnvelope, TimeWindow, WhoopClient

logger = logging.getLogger(__name__)

SNAPSHOT_RESOURCES = ("cycles", "recovery", "sleep")


@dataclass
class FetchResult:
    envelopes: Dict[str, Optional[RecordEnvelope]] = field(default_factory=dict)
    unavailable: List[str] = field(default_factory=list)

    def records(self, resource: str):
        env = self.envelopes.get(resource)
        return env.records if env is not None else None


@dataclass
class _Attempt:
    """Token in use for one resource fetch, and whether it was already force-refreshed."""

    token: str
    refreshed: bool = False


class CoachDataService:
    """Token validation, resource fetching and retry policy for one user at a time."""

    def __init__(self, tokens: TokenRefreshCoordinator, client: WhoopClient,
                 retry_delay: float = config.RETRY_DELAY_SECONDS,
                 history_days: int = config.HISTORY_DAYS,
                 max_pages: int = config.MAX_PAGES):
        self.tokens = tokens
        self.client = client
        self.retry_delay = retry_delay
        self.history_days = history_days
        self.max_pages = max_pages

    async def _get(self, token: str, resource: str, window: Optional[TimeWindow], paged: bool):
        if paged:
            return await self.client.fetch_all_pages(token, resource, window, self.max_pages)
        return await self.client.fetch_records(token, resource, window)

    async def _fetch_authorized(self, user_id: str, attempt: _Attempt, resource: str,
                                window: Optional[TimeWindow], paged: bool) -> RecordEnvelope:
        try:
            return await self._get(attempt.token, resource, window, paged)
        except UpstreamUnauthorized as e:
            if attempt.refreshed:
                raise RefreshFailed(f"WHOOP still rejects the token for {resource}", e.status, e.body) from e
            logger.info("WHOOP %s returned %s for user %s, forcing refresh", resource, e.status, user_id)
            attempt.token = await self.tokens.force_refresh(user_id, rejected_token=attempt.token)
            attempt.refreshed = True
        try:
            return await self._get(attempt.token, resource, window, paged)
        except UpstreamUnauthorized as e:
            raise RefreshFailed(f"WHOOP still rejects the token for {resource}", e.status, e.body) from e

    async def _fetch_with_retry(self, user_id: str, token: str, resource: str,
                                window: Optional[TimeWindow] = None, paged: bool = False) -> RecordEnvelope:
        # the delayed retry reuses whatever token a forced refresh left behind
        attempt = _Attempt(token)
        try:
            return await self._fetch_authorized(user_id, attempt, resource, window, paged)
        except UpstreamUnavailable as e:
            logger.warning("WHOOP %s unavailable (%s), retrying once", resource, e.status or e.message)
        await asyncio.sleep(self.retry_delay)
        return await self._fetch_authorized(user_id, attempt, resource, window, paged)

    async def fetch_resource(self, user_id: str, resource: str,
                             window: Optional[TimeWindow] = None) -> RecordEnvelope:
        """One resource for the proxy routes. The final failure propagates."""
        token = await self.tokens.ensure_valid_access_token(user_id)
        return await self._fetch_with_retry(user_id, token, resource, window)

    async def _fetch_or_omit(self, user_id: str, token: str, resource: str,
                             window: Optional[TimeWindow], paged: bool) -> Optional[RecordEnvelope]:
        try:
            return await self._fetch_with_retry(user_id, token, resource, window, paged)
        except MalformedResponse as e:
            logger.warning("WHOOP %s returned a malformed body, treating as empty: %s", resource, e.message)
            return RecordEnvelope()
        except UpstreamUnavailable as e:
            logger.warning("WHOOP %s still unavailable after retry, omitting: %s", resource, e.message)
            return None
        except UpstreamError as e:
            logger.warning("WHOOP %s failed with status %s, omitting", resource, e.status)
            return None

    async def fetch_many(self, user_id: str, resources: Iterable[str],
                         window: Optional[TimeWindow] = None, paged: bool = True) -> FetchResult:
        """Fetch several resources concurrently after the token is confirmed valid.

        A resource that cannot be fetched is None in the result instead of
        failing the others. NotLinked and RefreshFailed abort the whole call.
        """
        resources = list(resources)
        token = await self.tokens.ensure_valid_access_token(user_id)
        envelopes = await asyncio.gather(
            *(self._fetch_or_omit(user_id, token, name, window, paged) for name in resources)
        )
        result = FetchResult(envelopes=dict(zip(resources, envelopes)))
        result.unavailable = [name for name, env in result.envelopes.items() if env is None]
        return result

    async def snapshot(self, user_id: str, now: Optional[dt.datetime] = None) -> SignalSnapshot:
        now = now or dt.datetime.now(dt.timezone.utc)
        window = TimeWindow(start=now - dt.timedelta(days=self.history_days), end=now, limit=25)
        fetched = await self.fetch_many(user_id, SNAPSHOT_RESOURCES, window)

        def norm(resource):
            raw = fetched.records(resource)
            return normalize(resource, raw) if raw is not None else None

        return compute_snapshot(
            now,
            cycles=norm("cycles"),
            recoveries=norm("recovery"),
            sleeps=norm("sleep"),
            unavailable=fetched.unavailable,
        )
