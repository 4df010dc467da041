# rules.py
import datetime as dt
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from metrics import DOWN, SignalSnapshot

WEEKLY_FOCUS = ("endurance", "climbing", "speed", "balanced")
LONG_RIDE_DAYS = ("Sat", "Sun", "Either")
WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


@dataclass
class Goal:
    goal_text: Optional[str] = None
    event_date: Optional[dt.date] = None
    weekly_focus: Optional[str] = None   # one of WEEKLY_FOCUS
    long_ride_day: Optional[str] = None  # one of LONG_RIDE_DAYS


@dataclass
class WorkoutPrescription:
    label: str
    duration_min: float
    zones: str
    intervals: str
    notes: str


@dataclass
class FuelingTargets:
    carbs_g: float
    fluids_L: float
    sodium_mg: float


@dataclass
class FuelingPlan:
    carbs_g: float
    fluids_L: float
    sodium_mg: float
    per_hour: FuelingTargets


@dataclass
class Recommendation:
    workout: WorkoutPrescription
    fueling: FuelingPlan
    rationale: str = ""
    flags: List[str] = field(default_factory=list)
    source: str = "rules"  # "llm" | "rules"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_flags(s: SignalSnapshot) -> Dict[str, bool]:
    load = s.load
    return {
        "no_recovery_data": s.recovery_score is None,
        "low_recovery": s.recovery_score is not None and s.recovery_score < 40,
        "hrv_down": s.hrv_trend == DOWN,
        # one hour short of the 8h baseline
        "sleep_debt": s.sleep_debt_hours is not None and s.sleep_debt_hours >= 1,
        "high_load": load.balance is not None and load.balance > 2,
        # Foster's monotony warning line
        "high_monotony": load.monotony is not None and load.monotony > 2,
    }


def _pick_tier(s: SignalSnapshot, flags: Dict[str, bool]) -> str:
    score = s.recovery_score
    if score is None:
        return "endurance"
    if score >= 80:
        if flags["hrv_down"] or flags["sleep_debt"] or flags["high_load"]:
            return "endurance"
        return "intensity"
    if score >= 60:
        return "endurance"
    if score >= 40:
        return "recovery"
    return "rest"


# tier -> (label, minutes, zones, intervals, per-hour carbs g, fluids L, sodium mg)
TIERS = {
    "intensity": ("Intervals / Tempo", 75, "Z2 warm-up, Z4-Z5 work, Z1 cool-down",
                  "4 x 8 min @ Z4 with 4 min Z2 recoveries", 90, 0.75, 800),
    "endurance": ("Endurance", 90, "Z2, optional short Z3 tempo",
                  "Optional 3 x 5 min tempo in the second hour", 70, 0.6, 600),
    "recovery": ("Recovery spin", 45, "Z1 only, cadence 90+",
                 "None", 30, 0.5, 400),
    "rest": ("Rest / mobility", 20, "Off the bike",
             "20 min mobility: hips, t-spine, calves", 0, 0.0, 0),
}


def _fueling(minutes: float, carbs: float, fluids: float, sodium: float) -> FuelingPlan:
    hours = minutes / 60
    return FuelingPlan(
        carbs_g=round(carbs * hours),
        fluids_L=round(fluids * hours, 2),
        sodium_mg=round(sodium * hours),
        per_hour=FuelingTargets(carbs_g=carbs, fluids_L=fluids, sodium_mg=sodium),
    )


def generate_plan(s: SignalSnapshot, goal: Optional[Goal] = None, today: Optional[dt.date] = None) -> Recommendation:
    """Rule-based workout and fueling call from the readiness snapshot."""
    flags = compute_flags(s)
    tier = _pick_tier(s, flags)
    label, minutes, zones, intervals, carbs, fluids, sodium = TIERS[tier]

    notes = []
    if tier == "intensity" and goal and goal.weekly_focus == "climbing":
        intervals = "4 x 8 min seated climbing @ Z4, low cadence, 4 min Z2 recoveries"
    elif tier == "intensity" and goal and goal.weekly_focus == "speed":
        intervals = "6 x 3 min @ Z5 with 3 min Z1 recoveries"

    today = today or dt.date.today()
    if goal and goal.event_date and 0 <= (goal.event_date - today).days <= 7 and tier != "rest":
        minutes = min(minutes, 60)
        notes.append("Event within a week: keep it short and sharp.")
    if flags["sleep_debt"]:
        notes.append("Aim for 8h sleep tonight.")
    if flags["high_monotony"]:
        notes.append("Recent load is monotonous; vary session intensity.")
    if goal and goal.goal_text:
        notes.append(f"Goal: {goal.goal_text}")

    rationale = (
        f"Recovery {s.recovery_score if s.recovery_score is not None else 'n/a'}, "
        f"HRV {s.hrv_trend}, sleep debt {s.sleep_debt_hours if s.sleep_debt_hours is not None else 'n/a'}h, "
        f"load balance {s.load.balance if s.load.balance is not None else 'n/a'}."
    )
    return Recommendation(
        workout=WorkoutPrescription(
            label=label,
            duration_min=minutes,
            zones=zones,
            intervals=intervals,
            notes=" ".join(notes) or "Steady aerobic; avoid stacking two hard days.",
        ),
        fueling=_fueling(minutes, carbs, fluids, sodium),
        rationale=rationale,
        flags=[name for name, on in flags.items() if on],
        source="rules",
    )


def _half_up(x: float, step: float = 1.0) -> float:
    return math.floor(x / step + 0.5) * step


def build_week_plan(goal: Optional[Goal] = None) -> List[Dict[str, Any]]:
    """Seven-day mileage split with the long ride on the chosen weekend day."""
    goal = goal or Goal()
    focus = goal.weekly_focus or "balanced"
    # "Either" lands on Saturday
    long_day = "Sun" if goal.long_ride_day == "Sun" else "Sat"
    base = {"climbing": 55, "endurance": 60, "speed": 45}.get(focus, 50)

    weights = {
        "Mon": 0.10, "Tue": 0.18, "Wed": 0.14, "Thu": 0.18, "Fri": 0.10,
        "Sat": 0.14 if long_day == "Sun" else 0.24,
        "Sun": 0.26 if long_day == "Sun" else 0.06,
    }

    week = []
    for d in WEEKDAYS:
        miles = _half_up(base * weights[d], 0.5)
        tone = "moderate"
        if d in ("Mon", "Fri"):
            tone = "easy"
        if d == long_day:
            tone = "hard"
        if focus == "speed" and d in ("Tue", "Thu"):
            tone = "hard"
        if focus == "climbing" and d == "Wed":
            tone = "hard"

        elev = int(_half_up(miles * (110 if focus == "climbing" else 80)))
        if goal.goal_text:
            note = f"Goal-aware: {goal.goal_text}"
        elif tone == "hard":
            note = "Quality session; fuel 60-90g/h."
        else:
            note = "Steady aerobic."
        week.append({"day": d, "miles": miles, "elev": elev, "tone": tone, "note": note})
    return week
