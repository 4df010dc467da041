"""Derived readiness and load signals from normalized WHOOP records.

Pure functions: no I/O, deterministic for the same records and `now`.
The constants below feed straight into workout gating, so changing any of
them changes recommendations.
"""

import datetime as dt
import math
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from records import CycleRecord, RecoveryRecord, SleepRecord

HRV_MIN_SAMPLES = 10
HRV_WINDOW = 7
HRV_FLAT_BAND = 2.0
SLEEP_BASELINE_HOURS = 8.0
ACUTE_DAYS = 7
CHRONIC_DAYS = 28
MS_PER_HOUR = 3_600_000

UP, DOWN, FLAT, UNKNOWN = "up", "down", "flat", "unknown"


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _pstdev(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    m = _mean(values)
    return math.sqrt(_mean([(v - m) ** 2 for v in values]))


def chronological(records: Iterable):
    """Drop records without a usable timestamp, then sort oldest first."""
    usable = [r for r in records if r.timestamp is not None]
    return sorted(usable, key=lambda r: r.timestamp)


def latest_recovery(recoveries: Iterable[RecoveryRecord]) -> Optional[RecoveryRecord]:
    ordered = chronological(recoveries)
    return ordered[-1] if ordered else None


def hrv_trend(recoveries: Iterable[RecoveryRecord]) -> str:
    samples = [r.hrv_rmssd_ms for r in chronological(recoveries) if r.hrv_rmssd_ms is not None]
    if len(samples) < HRV_MIN_SAMPLES:
        return UNKNOWN
    recent = samples[-HRV_WINDOW:]
    prior = samples[-2 * HRV_WINDOW:-HRV_WINDOW]
    delta = _mean(recent) - _mean(prior)
    if abs(delta) < HRV_FLAT_BAND:
        return FLAT
    return UP if delta > 0 else DOWN


def sleep_hours(sleeps: Iterable[SleepRecord]) -> Optional[float]:
    ordered = chronological(sleeps)
    if not ordered:
        return None
    last = ordered[-1]
    if last.performance_percentage is not None:
        return SLEEP_BASELINE_HOURS * last.performance_percentage / 100
    if last.in_bed_ms is not None:
        return last.in_bed_ms / MS_PER_HOUR
    return None


def sleep_debt_hours(sleeps: Iterable[SleepRecord]) -> float:
    # No measurable sleep counts as no debt.
    hours = sleep_hours(sleeps)
    if hours is None:
        return 0.0
    return max(0.0, SLEEP_BASELINE_HOURS - hours)


def daily_strain(cycles: Iterable[CycleRecord]) -> Dict[dt.date, float]:
    """Peak strain per UTC calendar day of the cycle start, oldest day first."""
    peaks: Dict[dt.date, float] = {}
    for c in cycles:
        if c.start is None:
            continue
        day = c.start.astimezone(dt.timezone.utc).date()
        strain = c.strain if c.strain is not None else 0.0
        peaks[day] = max(peaks.get(day, 0.0), strain)
    return dict(sorted(peaks.items()))


def daily_strain_series(cycles: Iterable[CycleRecord]) -> List[float]:
    return list(daily_strain(cycles).values())


def strain_today(cycles: Iterable[CycleRecord], now: dt.datetime) -> Optional[float]:
    # TODO: key days on the user's local midnight once profiles carry a timezone;
    # a late-night ride west of UTC currently lands on the next day.
    peaks = daily_strain(cycles)
    if not peaks:
        return None
    today = now.astimezone(dt.timezone.utc).date()
    if today in peaks:
        return peaks[today]
    return list(peaks.values())[-1]


@dataclass
class TrainingLoad:
    acute: Optional[float] = None
    chronic: Optional[float] = None
    balance: Optional[float] = None
    monotony: Optional[float] = None


def training_load(series: Sequence[float]) -> TrainingLoad:
    acute_window = list(series[-ACUTE_DAYS:])
    chronic_window = list(series[-CHRONIC_DAYS:])
    acute = round(_mean(acute_window), 2) if acute_window else None
    chronic = round(_mean(chronic_window), 2) if chronic_window else None
    balance = round(acute - chronic, 2) if acute is not None and chronic is not None else None
    monotony = None
    if acute_window:
        monotony = round(_mean(acute_window) / (_pstdev(acute_window) or 1), 2)
    return TrainingLoad(acute=acute, chronic=chronic, balance=balance, monotony=monotony)


@dataclass
class SignalSnapshot:
    date: str
    recovery_score: Optional[float] = None
    resting_heart_rate: Optional[float] = None
    hrv_trend: str = UNKNOWN
    sleep_hours: Optional[float] = None
    sleep_debt_hours: Optional[float] = None
    daily_strain_series: List[float] = field(default_factory=list)
    strain_today: Optional[float] = None
    load: TrainingLoad = field(default_factory=TrainingLoad)
    unavailable: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def compute_snapshot(
    now: dt.datetime,
    cycles: Optional[Sequence[CycleRecord]] = None,
    recoveries: Optional[Sequence[RecoveryRecord]] = None,
    sleeps: Optional[Sequence[SleepRecord]] = None,
    unavailable: Sequence[str] = (),
) -> SignalSnapshot:
    """Build the snapshot from whatever record sets exist.

    None means the resource could not be fetched and its fields stay null;
    an empty list is real data and gets the usual defaults.
    """
    snap = SignalSnapshot(date=now.astimezone(dt.timezone.utc).isoformat(), unavailable=list(unavailable))

    if recoveries is not None:
        last = latest_recovery(recoveries)
        snap.recovery_score = last.recovery_score if last else None
        snap.resting_heart_rate = last.resting_heart_rate if last else None
        snap.hrv_trend = hrv_trend(recoveries)

    if sleeps is not None:
        snap.sleep_hours = sleep_hours(sleeps)
        snap.sleep_debt_hours = sleep_debt_hours(sleeps)

    if cycles is not None:
        snap.daily_strain_series = daily_strain_series(cycles)
        snap.strain_today = strain_today(cycles, now)
        snap.load = training_load(snap.daily_strain_series)

    return snap
