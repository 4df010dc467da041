import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

import config
from errors import MalformedResponse, UpstreamError, UpstreamUnauthorized, UpstreamUnavailable

logger = logging.getLogger(__name__)

RESOURCE_PATHS = {
    "cycles": "/cycle",
    "recovery": "/recovery",
    "sleep": "/activity/sleep",
    "workouts": "/activity/workout",
    "profile": "/user/profile/basic",
}

# Time-series resources; profile is a single object
SERIES = ("cycles", "recovery", "sleep", "workouts")


def _iso(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class TimeWindow:
    start: Optional[dt.datetime] = None
    end: Optional[dt.datetime] = None
    limit: Optional[int] = None
    next_token: Optional[str] = None

    def to_params(self) -> Dict[str, str]:
        params = {}
        if self.limit is not None:
            params["limit"] = str(self.limit)
        if self.start is not None:
            params["start"] = _iso(self.start)
        if self.end is not None:
            params["end"] = _iso(self.end)
        if self.next_token:
            params["nextToken"] = self.next_token
        return params


@dataclass
class RecordEnvelope:
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"records": self.records, "next_token": self.next_token}


def _classify(resource: str, r: httpx.Response) -> UpstreamError:
    status = r.status_code
    if status in (401, 403):
        return UpstreamUnauthorized(resource, status, r.text)
    if status in (408, 429) or status >= 500:
        return UpstreamUnavailable(resource, status, r.text)
    return UpstreamError(resource, status, r.text)


class WhoopClient:
    """Bearer-authenticated GETs against the WHOOP developer API.

    Never retries and never caches; failures are raised with the upstream
    status and body so the caller decides what to do with them.
    """

    def __init__(self, http: httpx.AsyncClient, base_url: str = config.WHOOP_API_BASE,
                 timeout: float = config.HTTP_TIMEOUT_SECONDS):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def fetch_records(self, access_token: str, resource: str,
                            window: Optional[TimeWindow] = None) -> RecordEnvelope:
        if resource not in RESOURCE_PATHS:
            raise ValueError(f"unknown WHOOP resource: {resource}")

        headers = {
            "Authorization": f"Bearer {access_token}",
            "Cache-Control": "no-store",
        }
        params = window.to_params() if window and resource in SERIES else {}
        try:
            r = await self.http.get(
                self.base_url + RESOURCE_PATHS[resource],
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(resource, None, "", f"WHOOP {resource} timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(resource, None, "", f"WHOOP {resource} unreachable: {type(e).__name__}") from e

        if not r.is_success:
            raise _classify(resource, r)

        try:
            body = r.json()
        except ValueError as e:
            raise MalformedResponse(resource, r.status_code, r.text, f"WHOOP {resource} returned non-JSON") from e

        if resource == "profile":
            if not isinstance(body, dict):
                raise MalformedResponse(resource, r.status_code, r.text, "WHOOP profile is not an object")
            return RecordEnvelope(records=[body])

        if not isinstance(body, dict) or not isinstance(body.get("records"), list):
            raise MalformedResponse(resource, r.status_code, r.text, f"WHOOP {resource} lacks a records list")
        next_token = body.get("next_token") or body.get("nextToken")
        return RecordEnvelope(records=body["records"], next_token=next_token)

    async def fetch_all_pages(self, access_token: str, resource: str,
                              window: Optional[TimeWindow] = None,
                              max_pages: int = config.MAX_PAGES) -> RecordEnvelope:
        """Follow nextToken until exhausted or max_pages is hit."""
        window = window or TimeWindow()
        records: List[Dict[str, Any]] = []
        token = window.next_token
        for _ in range(max_pages):
            page = await self.fetch_records(
                access_token, resource,
                TimeWindow(start=window.start, end=window.end, limit=window.limit, next_token=token),
            )
            records.extend(page.records)
            token = page.next_token
            if not token:
                break
        else:
            logger.info("stopped paging %s after %s pages", resource, max_pages)
        return RecordEnvelope(records=records, next_token=token)
