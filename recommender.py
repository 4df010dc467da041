"""Workout and fueling recommendation from a signal snapshot.

The language model is an optional collaborator. Whatever it returns is
validated here, and anything missing or malformed falls back to the
deterministic rules in rules.py.
"""

import json
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional, Protocol

import httpx

import config
from metrics import SignalSnapshot
from rules import (
    FuelingPlan,
    FuelingTargets,
    Goal,
    Recommendation,
    WorkoutPrescription,
    generate_plan,
)

logger = logging.getLogger(__name__)

_TARGETS = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "carbs_g": {"type": "number"},
        "fluids_L": {"type": "number"},
        "sodium_mg": {"type": "number"},
    },
    "required": ["carbs_g", "fluids_L", "sodium_mg"],
}

PLAN_SCHEMA = {
    "name": "coach_plan",
    "strict": True,
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "workout": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "label": {"type": "string"},
                    "duration_min": {"type": "number"},
                    "zones": {"type": "string"},
                    "intervals": {"type": "string"},
                    "notes": {"type": "string"},
                },
                "required": ["label", "duration_min", "zones", "intervals", "notes"],
            },
            "fueling": {
                "type": "object",
                "additionalProperties": False,
                "properties": {**_TARGETS["properties"], "per_hour": _TARGETS},
                "required": ["carbs_g", "fluids_L", "sodium_mg", "per_hour"],
            },
            "rationale": {"type": "string"},
            "flags": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["workout", "fueling", "rationale", "flags"],
    },
}

SYSTEM_PROMPT = """You are a cycling training and fueling coach.
Use WHOOP metrics to gate intensity:
- 80-100 recovery & HRV not down & sleep_debt < 1h & (acute - chronic) <= 2: intervals/tempo.
- 60-79: endurance, short tempo optional.
- 40-59: recovery spin only.
- <40: rest/mobility.
Fueling per hour: 60-90g carbs, 0.4-0.8L fluids, 300-1000mg sodium.
Return a concise plan and a brief rationale referencing the inputs."""


class RecommendationGenerator(Protocol):
    async def generate(self, snapshot: SignalSnapshot, goal: Optional[Goal]) -> Any: ...


def _goal_dict(goal: Optional[Goal]) -> Dict[str, Any]:
    if goal is None:
        return {}
    data = asdict(goal)
    if goal.event_date is not None:
        data["event_date"] = goal.event_date.isoformat()
    return {k: v for k, v in data.items() if v is not None}


class OpenAIRecommendationGenerator:
    def __init__(self, http: httpx.AsyncClient, api_key: str = config.OPENAI_API_KEY,
                 model: str = config.OPENAI_MODEL, url: str = config.OPENAI_URL,
                 timeout: float = config.HTTP_TIMEOUT_SECONDS):
        self.http = http
        self.api_key = api_key
        self.model = model
        self.url = url
        self.timeout = timeout

    async def generate(self, snapshot: SignalSnapshot, goal: Optional[Goal]) -> Any:
        payload = {
            "model": self.model,
            "response_format": {"type": "json_schema", "json_schema": PLAN_SCHEMA},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"WHOOP summary for today: {json.dumps(snapshot.to_dict())}. "
                               f"Goal: {json.dumps(_goal_dict(goal))}. Assume moderate heat unless stated otherwise.",
                },
            ],
        }
        r = await self.http.post(
            self.url,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json=payload,
            timeout=self.timeout,
        )
        r.raise_for_status()
        data = r.json()
        content = data["choices"][0]["message"]["content"]
        return json.loads(content)


def _num(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected a number, got {value!r}")
    return value


def _str(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


def parse_recommendation(data: Any) -> Recommendation:
    """Validate a generator payload. Raises ValueError on any shape mismatch."""
    if not isinstance(data, dict):
        raise ValueError("recommendation is not an object")
    try:
        w = data["workout"]
        f = data["fueling"]
        ph = f["per_hour"]
        flags = data.get("flags") or []
        if not isinstance(flags, list):
            raise ValueError("flags is not a list")
        return Recommendation(
            workout=WorkoutPrescription(
                label=_str(w["label"]),
                duration_min=_num(w["duration_min"]),
                zones=_str(w["zones"]),
                intervals=_str(w["intervals"]),
                notes=_str(w["notes"]),
            ),
            fueling=FuelingPlan(
                carbs_g=_num(f["carbs_g"]),
                fluids_L=_num(f["fluids_L"]),
                sodium_mg=_num(f["sodium_mg"]),
                per_hour=FuelingTargets(
                    carbs_g=_num(ph["carbs_g"]),
                    fluids_L=_num(ph["fluids_L"]),
                    sodium_mg=_num(ph["sodium_mg"]),
                ),
            ),
            rationale=_str(data.get("rationale", "")),
            flags=[str(x) for x in flags],
            source="llm",
        )
    except (KeyError, TypeError) as e:
        raise ValueError(f"recommendation missing field: {e}") from e


async def recommend(snapshot: SignalSnapshot, goal: Optional[Goal] = None,
                    generator: Optional[RecommendationGenerator] = None) -> Recommendation:
    if generator is None:
        return generate_plan(snapshot, goal)
    try:
        raw = await generator.generate(snapshot, goal)
        return parse_recommendation(raw)
    except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
        logger.warning("recommendation generator failed (%s), using rules", type(e).__name__)
        return generate_plan(snapshot, goal)
