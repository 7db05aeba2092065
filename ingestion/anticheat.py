"""
Walk grading and anti-cheat metrics.

Grades use a penalty policy: start at 100, take 5 points per stop, 20 for a
walk under 15 minutes and 15 for one under 500 metres, then clamp to 0..100.

The collar reports anti-cheat conditions as a bitmask:

    bit 0  carried (dog was carried rather than walked)
    bit 1  vehicle (speed profile of a car or bike)
    bit 2  excessive stops
    bit 3  leash only (collar moved without the dog)
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel

MIN_WALK_SECONDS = 900
MIN_WALK_METERS = 500
STOP_PENALTY = 5
SHORT_WALK_PENALTY = 20
SHORT_DISTANCE_PENALTY = 15

FLAG_CARRIED = 1 << 0
FLAG_VEHICLE = 1 << 1
FLAG_EXCESSIVE_STOPS = 1 << 2
FLAG_LEASH_ONLY = 1 << 3

CHEAT_LABELS = (
    (FLAG_CARRIED, "carried"),
    (FLAG_VEHICLE, "vehicle"),
    (FLAG_EXCESSIVE_STOPS, "excessive stops"),
    (FLAG_LEASH_ONLY, "leash only"),
)


@dataclass
class WalkCounters:
    """Raw walk counters as accumulated by the collar."""
    duration_seconds: int = 0
    distance_meters: float = 0.0
    stops: int = 0
    carried_seconds: int = 0
    vehicle_seconds: int = 0
    actual_walk_seconds: int = 0
    cheat_flags: int = 0


class WalkGrade(BaseModel):
    grade: str
    score: int
    carried_percent: float
    vehicle_percent: float
    actual_walk_percent: float
    cheat_flags: int
    cheat_summary: Optional[str] = None
    vehicle_detected: bool
    carried_detected: bool
    excessive_stops_detected: bool
    leash_only_detected: bool


def grade_letter(score: int) -> str:
    if score >= 90:
        return "A"
    if score >= 70:
        return "B"
    if score >= 50:
        return "C"
    return "F"


def penalty_score(duration_seconds: int, distance_meters: float, stops: int) -> int:
    score = 100 - STOP_PENALTY * max(0, stops)
    if duration_seconds < MIN_WALK_SECONDS:
        score -= SHORT_WALK_PENALTY
    if distance_meters < MIN_WALK_METERS:
        score -= SHORT_DISTANCE_PENALTY
    return max(0, min(100, score))


def round_half_up(value: float, ndigits: int = 0):
    """
    Round halves up on the exact binary value of ``value``, as the companion
    app's ``Math.round`` and ``toFixed`` do: 150 s is 3 minutes, not 2.
    Returns an int when ``ndigits`` is 0.
    """
    rounded = Decimal(value).quantize(Decimal(1).scaleb(-ndigits), rounding=ROUND_HALF_UP)
    return int(rounded) if ndigits == 0 else float(rounded)


def percent_of(seconds: int, total_seconds: int) -> float:
    """
    Share of the walk as a percentage, rounded to one decimal.

    A zero-length walk counts as one second and the result is not capped,
    so 30 carried seconds on a 0-second walk reports 3000.0.
    """
    return round_half_up(100 * seconds / max(1, total_seconds), 1)


def cheat_summary(flags: int) -> Optional[str]:
    """Comma-joined labels for the set bits, or None when no bit is set."""
    labels = [label for bit, label in CHEAT_LABELS if flags & bit]
    return ", ".join(labels) if labels else None


def grade_walk(counters: WalkCounters) -> WalkGrade:
    """
    Grade one walk from its counters.

    Args:
        counters: Duration, distance, stops and anti-cheat counters

    Returns:
        WalkGrade with the letter, score, percentages and cheat breakdown
    """
    score = penalty_score(counters.duration_seconds, counters.distance_meters, counters.stops)
    flags = counters.cheat_flags
    return WalkGrade(
        grade=grade_letter(score),
        score=score,
        carried_percent=percent_of(counters.carried_seconds, counters.duration_seconds),
        vehicle_percent=percent_of(counters.vehicle_seconds, counters.duration_seconds),
        actual_walk_percent=percent_of(counters.actual_walk_seconds, counters.duration_seconds),
        cheat_flags=flags,
        cheat_summary=cheat_summary(flags),
        vehicle_detected=bool(flags & FLAG_VEHICLE),
        carried_detected=bool(flags & FLAG_CARRIED),
        excessive_stops_detected=bool(flags & FLAG_EXCESSIVE_STOPS),
        leash_only_detected=bool(flags & FLAG_LEASH_ONLY),
    )
