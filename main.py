import time
import datetime as dt
import logging
import secrets
from contextlib import asynccontextmanager
from urllib.parse import urlencode

import httpx
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

import config
from db import engine
from models import Base
from aggregate import CoachDataService
from credentials import WHOOP, CredentialRecord, CredentialStore
from errors import CoachError
from recommender import OpenAIRecommendationGenerator, recommend
from rules import LONG_RIDE_DAYS, WEEKLY_FOCUS, Goal, build_week_plan
from token_refresh import TokenRefreshCoordinator
from whoop_client import RESOURCE_PATHS, TimeWindow, WhoopClient

logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as http:
        store = CredentialStore()
        tokens = TokenRefreshCoordinator(store, http)
        app.state.http = http
        app.state.store = store
        app.state.service = CoachDataService(tokens, WhoopClient(http))
        app.state.generator = OpenAIRecommendationGenerator(http) if config.OPENAI_API_KEY else None
        yield


app = FastAPI(lifespan=lifespan)


@app.exception_handler(CoachError)
async def coach_error_handler(request: Request, exc: CoachError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message, "details": exc.details}},
    )


def get_service(request: Request) -> CoachDataService:
    return request.app.state.service


def get_store(request: Request) -> CredentialStore:
    return request.app.state.store


def get_http(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def get_generator(request: Request):
    return getattr(request.app.state, "generator", None)


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    return x_user_id


# state -> (user_id, expiry)
STATE_STORE = {}


def make_state(user_id: str):
    s = secrets.token_urlsafe(16)
    STATE_STORE[s] = (user_id, int(time.time()) + 600)
    return s


def consume_state(s: str):
    """Single use: returns the bound user id, or None if unknown or expired."""
    entry = STATE_STORE.pop(s, None)
    if not entry:
        return None
    user_id, exp = entry
    if time.time() > exp:
        return None
    return user_id


@app.get("/auth/whoop/start")
def whoop_start(user_id: str = Depends(current_user)):
    params = {
        "client_id": config.WHOOP_CLIENT_ID,
        "redirect_uri": config.WHOOP_REDIRECT_URI,
        "response_type": "code",
        "scope": config.WHOOP_SCOPES,
        "state": make_state(user_id),
    }
    return RedirectResponse(config.WHOOP_AUTH_URL + "?" + urlencode(params))


@app.get("/auth/whoop/callback")
async def whoop_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    store: CredentialStore = Depends(get_store),
    http: httpx.AsyncClient = Depends(get_http),
):
    if error:
        return JSONResponse(
            status_code=400,
            content={"status": "error", "error": error, "error_description": error_description},
        )
    if not code or not state:
        raise HTTPException(422, "Missing 'code' or 'state' parameter")
    user_id = consume_state(state)
    if not user_id:
        raise HTTPException(400, "Invalid or expired state")

    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": config.WHOOP_REDIRECT_URI,
        "client_id": config.WHOOP_CLIENT_ID,
        "client_secret": config.WHOOP_CLIENT_SECRET,
    }
    try:
        r = await http.post(config.WHOOP_TOKEN_URL, data=data)
        r.raise_for_status()
        tok = r.json()
        access_token = tok["access_token"]
    except (httpx.HTTPError, ValueError, KeyError) as e:
        logger.warning("WHOOP code exchange failed for user %s: %s", user_id, type(e).__name__)
        raise HTTPException(502, "WHOOP authorization failed") from e

    expires_in = tok.get("expires_in")
    store.upsert(CredentialRecord(
        user_id=user_id,
        provider=WHOOP,
        access_token=access_token,
        refresh_token=tok.get("refresh_token"),
        expires_at=int(time.time()) + int(expires_in) if expires_in else None,
        token_type=tok.get("token_type", "bearer"),
        scope=tok.get("scope"),
    ))
    logger.info("WHOOP linked for user %s", user_id)
    return JSONResponse({"status": "whoop connected"})


@app.get("/whoop/health")
async def whoop_health(
    user_id: str = Depends(current_user),
    service: CoachDataService = Depends(get_service),
):
    env = await service.fetch_resource(user_id, "profile")
    return {"ok": True, "status": 200, "profile": env.records[0] if env.records else None}


def _parse_time(value: str | None, name: str):
    if not value:
        return None
    try:
        return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(422, f"'{name}' must be ISO-8601")


@app.get("/whoop/{resource}")
async def whoop_resource(
    resource: str,
    limit: int = Query(default=10, ge=1, le=25),
    start: str | None = Query(default=None),
    end: str | None = Query(default=None),
    next_token: str | None = Query(default=None, alias="nextToken"),
    user_id: str = Depends(current_user),
    service: CoachDataService = Depends(get_service),
):
    if resource not in RESOURCE_PATHS:
        raise HTTPException(404, f"Unknown resource '{resource}'")
    window = TimeWindow(
        start=_parse_time(start, "start"),
        end=_parse_time(end, "end"),
        limit=limit,
        next_token=next_token,
    )
    env = await service.fetch_resource(user_id, resource, window)
    return env.to_dict()


def parse_goal(payload: dict) -> Goal:
    """Lenient: an invalid goal is ignored as a whole rather than rejected."""
    raw = payload.get("goal", payload) if isinstance(payload, dict) else {}
    if not isinstance(raw, dict):
        return Goal()
    goal_text = raw.get("goalText", raw.get("goal_text"))
    event_date = raw.get("eventDate", raw.get("event_date"))
    focus = raw.get("weeklyFocus", raw.get("weekly_focus"))
    long_day = raw.get("longRideDay", raw.get("long_ride_day"))
    try:
        if goal_text is not None and not isinstance(goal_text, str):
            raise ValueError("goalText")
        if focus is not None and focus not in WEEKLY_FOCUS:
            raise ValueError("weeklyFocus")
        if long_day is not None and long_day not in LONG_RIDE_DAYS:
            raise ValueError("longRideDay")
        parsed_date = dt.date.fromisoformat(event_date[:10]) if event_date else None
    except (ValueError, TypeError):
        return Goal()
    return Goal(goal_text=goal_text or None, event_date=parsed_date,
                weekly_focus=focus, long_ride_day=long_day)


async def _coach(user_id, goal, service, generator):
    summary = await service.snapshot(user_id)
    plan = await recommend(summary, goal, generator)
    return {"summary": summary.to_dict(), "plan": plan.to_dict()}


@app.get("/coach")
async def coach(
    user_id: str = Depends(current_user),
    service: CoachDataService = Depends(get_service),
    generator=Depends(get_generator),
):
    return await _coach(user_id, None, service, generator)


@app.post("/coach")
async def coach_with_goal(
    payload: dict = Body(default={}),
    user_id: str = Depends(current_user),
    service: CoachDataService = Depends(get_service),
    generator=Depends(get_generator),
):
    return await _coach(user_id, parse_goal(payload), service, generator)


@app.post("/coach/week")
def coach_week(payload: dict = Body(default={})):
    return {"week": build_week_plan(parse_goal(payload))}
