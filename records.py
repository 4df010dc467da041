"""Canonical record shapes for WHOOP documents.

WHOOP payloads vary between API versions (HRV in particular shows up under
several names). Everything downstream of the client works on these
dataclasses only, so the variants are resolved here and nowhere else.
"""

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

HRV_FIELDS = (
    "hrv_rmssd_milli",
    "hrv_rmssd_millis",
    "heart_rate_variability_rmssd_milliseconds",
)


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """ISO-8601 string to an aware UTC datetime, None if unparseable."""
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return ts.astimezone(dt.timezone.utc)


def _number(value: Any) -> Optional[float]:
    # bool is an int subclass but never a metric
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _score(raw: Dict[str, Any]) -> Dict[str, Any]:
    score = raw.get("score")
    return score if isinstance(score, dict) else {}


@dataclass(frozen=True)
class CycleRecord:
    id: Any
    start: Optional[dt.datetime]
    end: Optional[dt.datetime]
    created_at: Optional[dt.datetime]
    strain: Optional[float]
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def timestamp(self):
        return self.created_at or self.start


@dataclass(frozen=True)
class RecoveryRecord:
    cycle_id: Any
    sleep_id: Any
    created_at: Optional[dt.datetime]
    recovery_score: Optional[float]
    hrv_rmssd_ms: Optional[float]
    resting_heart_rate: Optional[float]
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def timestamp(self):
        return self.created_at


@dataclass(frozen=True)
class SleepRecord:
    id: Any
    start: Optional[dt.datetime]
    end: Optional[dt.datetime]
    created_at: Optional[dt.datetime]
    performance_percentage: Optional[float]
    in_bed_ms: Optional[float]
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def timestamp(self):
        return self.created_at or self.start


def normalize_cycle(raw: Dict[str, Any]) -> CycleRecord:
    return CycleRecord(
        id=raw.get("id"),
        start=parse_timestamp(raw.get("start")),
        end=parse_timestamp(raw.get("end")),
        created_at=parse_timestamp(raw.get("created_at")),
        strain=_number(_score(raw).get("strain")),
        raw=raw,
    )


def normalize_recovery(raw: Dict[str, Any]) -> RecoveryRecord:
    score = _score(raw)
    hrv = None
    for name in HRV_FIELDS:
        hrv = _number(score.get(name))
        if hrv is not None:
            break
    return RecoveryRecord(
        cycle_id=raw.get("cycle_id"),
        sleep_id=raw.get("sleep_id"),
        created_at=parse_timestamp(raw.get("created_at")),
        recovery_score=_number(score.get("recovery_score")),
        hrv_rmssd_ms=hrv,
        resting_heart_rate=_number(score.get("resting_heart_rate")),
        raw=raw,
    )


def normalize_sleep(raw: Dict[str, Any]) -> SleepRecord:
    score = _score(raw)
    stages = score.get("stage_summary")
    stages = stages if isinstance(stages, dict) else {}
    return SleepRecord(
        id=raw.get("id"),
        start=parse_timestamp(raw.get("start")),
        end=parse_timestamp(raw.get("end")),
        created_at=parse_timestamp(raw.get("created_at")),
        performance_percentage=_number(score.get("sleep_performance_percentage")),
        in_bed_ms=_number(stages.get("total_in_bed_time_milli")),
        raw=raw,
    )


NORMALIZERS = {
    "cycles": normalize_cycle,
    "recovery": normalize_recovery,
    "sleep": normalize_sleep,
}


def normalize(resource: str, records: List[Dict[str, Any]]) -> list:
    """Normalize a page of raw documents. Non-dict entries are skipped."""
    fn = NORMALIZERS[resource]
    return [fn(r) for r in records if isinstance(r, dict)]
