"""
Verification rules for WiFiTrack.

Everything here is pure: no database, no network, no clock reads. The
scheduler and the schedule refresher pass in `now` and a random source so
the same inputs always produce the same decision.

  - VerificationStatus:  unknown / confirmed / negative
  - transition():        the only place a status changes
  - plan_update():       folds one check outcome into an aircraft row
  - priority_score():    discovery queue ordering
  - needs_flight_refresh(): schedule refresh cadence
"""

import enum
import hashlib
import random
import re
from dataclasses import dataclass
from typing import Optional

HOUR = 3600
DAY = 24 * HOUR

# Re-verification cadence
CONFIRMED_RECHECK = 7 * DAY
NEGATIVE_RECHECK = 14 * DAY
RECHECK_JITTER = 0.10
SHORT_RECHECK_WINDOW = (2 * HOUR, 4 * HOUR)   # no flights / wrong aircraft
ERROR_BACKOFF_BASE = HOUR
ERROR_BACKOFF_CAP = 24 * HOUR

# Discovery priority
BASE_PRIORITY = 0.5
UNKNOWN_BONUS = 0.3
LIKELY_TYPE_BONUS = 0.1
TAIL_OFFSET_SPAN = 0.05

# Types seen with the target service most often (regional two-cabin jets)
LIKELY_TYPE_PATTERN = re.compile(r"E-?17\d|ERJ.?17\d|CRJ.?[57]50|CRJ.?700|CR[57]", re.I)


class VerificationStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    CONFIRMED = "confirmed"
    NEGATIVE = "negative"

    @property
    def rank(self) -> int:
        """Queue rank: lower is checked sooner."""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    VerificationStatus.UNKNOWN: 0,
    VerificationStatus.NEGATIVE: 1,
    VerificationStatus.CONFIRMED: 2,
}


class OutcomeKind(str, enum.Enum):
    FEATURE_FOUND = "feature_found"
    FEATURE_ABSENT = "feature_absent"
    ERROR = "error"
    NO_FLIGHTS = "no_flights"
    TAIL_MISMATCH = "tail_mismatch"

    @property
    def is_error(self) -> bool:
        return self is OutcomeKind.ERROR


@dataclass
class Outcome:
    """Result of one verification attempt for one aircraft."""
    kind: OutcomeKind
    provider: Optional[str] = None
    aircraft_type: Optional[str] = None
    flight_number: Optional[str] = None
    observed_tail: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Aircraft:
    """One fleet registry row."""
    tail_number: str
    aircraft_type: Optional[str] = None
    fleet: str = "unknown"
    operated_by: str = ""
    first_seen: int = 0
    last_seen: int = 0
    discovery_source: str = ""
    verification_status: VerificationStatus = VerificationStatus.UNKNOWN
    verified_wifi: Optional[str] = None
    verified_at: Optional[int] = None
    discovery_priority: float = BASE_PRIORITY
    next_check_after: int = 0
    check_attempts: int = 0
    last_error: Optional[str] = None
    last_flight_check: int = 0
    flight_check_ok: bool = False
    flight_check_failures: int = 0

    @classmethod
    def from_row(cls, row) -> "Aircraft":
        return cls(
            tail_number=row["tail_number"],
            aircraft_type=row["aircraft_type"],
            fleet=row["fleet"] or "unknown",
            operated_by=row["operated_by"] or "",
            first_seen=row["first_seen"] or 0,
            last_seen=row["last_seen"] or 0,
            discovery_source=row["discovery_source"] or "",
            verification_status=VerificationStatus(row["verification_status"]),
            verified_wifi=row["verified_wifi"],
            verified_at=row["verified_at"],
            discovery_priority=row["discovery_priority"],
            next_check_after=row["next_check_after"] or 0,
            check_attempts=row["check_attempts"] or 0,
            last_error=row["last_error"],
            last_flight_check=row["last_flight_check"] or 0,
            flight_check_ok=bool(row["flight_check_ok"]),
            flight_check_failures=row["flight_check_failures"] or 0,
        )


@dataclass
class AircraftUpdate:
    """Verification columns to write back after a check."""
    verification_status: VerificationStatus
    verified_wifi: Optional[str]
    verified_at: Optional[int]
    discovery_priority: float
    next_check_after: int
    check_attempts: int
    last_error: Optional[str]


class IllegalTransition(ValueError):
    pass


# ─── State Machine ───

def transition(current: VerificationStatus, outcome: OutcomeKind) -> VerificationStatus:
    """Return the status after `outcome`.

    Only a clean ground-truth answer moves the status. There is no edge back
    to UNKNOWN: once an aircraft has been seen it stays confirmed or negative.
    """
    if outcome is OutcomeKind.FEATURE_FOUND:
        return VerificationStatus.CONFIRMED
    if outcome is OutcomeKind.FEATURE_ABSENT:
        return VerificationStatus.NEGATIVE
    if outcome in (OutcomeKind.ERROR, OutcomeKind.NO_FLIGHTS, OutcomeKind.TAIL_MISMATCH):
        return current
    raise IllegalTransition(f"unhandled outcome {outcome!r} from {current.value}")


# ─── Cadence ───

def error_backoff(attempts: int) -> int:
    """Seconds to wait after the `attempts`-th consecutive error (1-based)."""
    attempts = max(1, attempts)
    return int(min(ERROR_BACKOFF_CAP, ERROR_BACKOFF_BASE * 2 ** (attempts - 1)))


def _jittered(base: int, rng: random.Random) -> int:
    return int(base * (1 + rng.uniform(-RECHECK_JITTER, RECHECK_JITTER)))


def next_check_delay(kind: OutcomeKind, attempts: int, rng: random.Random) -> int:
    if kind is OutcomeKind.ERROR:
        return error_backoff(attempts)
    if kind is OutcomeKind.FEATURE_FOUND:
        return _jittered(CONFIRMED_RECHECK, rng)
    if kind is OutcomeKind.FEATURE_ABSENT:
        return _jittered(NEGATIVE_RECHECK, rng)
    low, high = SHORT_RECHECK_WINDOW
    return int(rng.uniform(low, high))


# ─── Priority ───

def tail_fraction(tail_number: str) -> float:
    """Stable pseudo-random fraction in [0, 1) derived from the tail number."""
    digest = hashlib.sha1(tail_number.strip().upper().encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / 2 ** 64


def is_likely_type(aircraft_type: Optional[str]) -> bool:
    return bool(aircraft_type) and LIKELY_TYPE_PATTERN.search(aircraft_type) is not None


def priority_score(tail_number: str, status: VerificationStatus,
                   aircraft_type: Optional[str] = None) -> float:
    score = BASE_PRIORITY
    if status is VerificationStatus.UNKNOWN:
        score += UNKNOWN_BONUS
    if is_likely_type(aircraft_type):
        score += LIKELY_TYPE_BONUS
    score += tail_fraction(tail_number) * TAIL_OFFSET_SPAN
    return round(min(1.0, max(0.0, score)), 6)


def queue_key(aircraft: Aircraft) -> tuple:
    """Sort key matching the store's candidate ordering."""
    return (
        aircraft.verification_status.rank,
        -aircraft.discovery_priority,
        -aircraft.last_seen,
        aircraft.tail_number,
    )


# ─── Folding an Outcome ───

def plan_update(aircraft: Aircraft, outcome: Outcome, now: int,
                rng: Optional[random.Random] = None) -> AircraftUpdate:
    """Compute the new verification columns for `aircraft` after `outcome`."""
    rng = rng or random.Random()
    status = transition(aircraft.verification_status, outcome.kind)

    if outcome.kind.is_error:
        attempts = aircraft.check_attempts + 1
        last_error = outcome.error or "unknown error"
    else:
        attempts = 0
        last_error = None
        if outcome.kind is OutcomeKind.TAIL_MISMATCH:
            last_error = outcome.error

    verified_wifi = aircraft.verified_wifi
    verified_at = aircraft.verified_at
    if outcome.kind in (OutcomeKind.FEATURE_FOUND, OutcomeKind.FEATURE_ABSENT):
        verified_wifi = outcome.provider
        verified_at = now
    if status is VerificationStatus.UNKNOWN:
        verified_wifi = None

    delay = next_check_delay(outcome.kind, attempts, rng)
    next_check = max(now + delay, aircraft.next_check_after + 1)

    return AircraftUpdate(
        verification_status=status,
        verified_wifi=verified_wifi,
        verified_at=verified_at,
        discovery_priority=priority_score(aircraft.tail_number, status,
                                          outcome.aircraft_type or aircraft.aircraft_type),
        next_check_after=next_check,
        check_attempts=attempts,
        last_error=last_error,
    )


# ─── Schedule Refresh Cadence ───

def needs_flight_refresh(aircraft: Aircraft, next_departure: Optional[int],
                         latest_departure: Optional[int], now: int,
                         rng: Optional[random.Random] = None) -> bool:
    """Decide whether an aircraft's upcoming flights should be re-fetched.

    Flights close to departure get refreshed more often since gate and
    aircraft swaps happen late. Failed fetches back off 0.5h, 1h, 2h, 4h.
    """
    rng = rng or random.Random()
    if not aircraft.last_flight_check:
        return True

    hours_since = (now - aircraft.last_flight_check) / HOUR

    if not aircraft.flight_check_ok and aircraft.flight_check_failures > 0:
        backoff = min(4.0, 0.5 * 2 ** (aircraft.flight_check_failures - 1))
        return hours_since > backoff

    if next_departure is None:
        return hours_since > rng.uniform(2, 4)

    hours_to_next = (next_departure - now) / HOUR
    hours_to_latest = (latest_departure - now) / HOUR if latest_departure else 999

    if hours_to_next <= 6:
        return hours_since > rng.uniform(1, 1.5)
    if hours_to_latest <= 24:
        return hours_since > rng.uniform(2, 4)
    return hours_since > rng.uniform(4, 8)
