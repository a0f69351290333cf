"""
Flight schedule sources for WiFiTrack.

Supported sources:
  - flightaware:   FlightAware AeroAPI (paid, requires an API key)
  - flightradar24: FlightRadar24 public flight list by registration (free, strict rate limits)
  - mock:          Built-in schedule data (no network needed)

Each source implements get_upcoming_flights(tail_number) -> list[FlightUpdate].
Vendors are treated as unreliable: every request is spaced out, rate-limit
responses are retried with exponential backoff, and anything else that fails
is retried a few times before surfacing as a VendorError.
"""

import logging
import os
import random
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

# Same floor the store enforces: 2000-01-01 in epoch seconds
MIN_VALID_TIMESTAMP = 946684800


# ─── Flight Data Model ───

@dataclass
class FlightUpdate:
    """One upcoming flight for a tail number, as returned by a vendor."""
    flight_number: str
    departure_airport: str
    arrival_airport: str
    departure_time: int        # epoch seconds
    arrival_time: int = 0      # epoch seconds


# ─── Errors ───

class VendorError(Exception):
    """A schedule vendor returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimited(VendorError):
    """The vendor kept rate limiting us after every retry."""


class SourceConfigError(Exception):
    """A source cannot be created from the given configuration."""


# ─── Flight Number Normalization ───

# Regional and codeshare operators flying under the marketing carrier.
# ICAO and IATA designators both show up depending on the vendor.
REGIONAL_CARRIERS = {
    "UAL": "UA",
    "SKW": "UA", "OO": "UA",     # SkyWest
    "GJS": "UA", "G7": "UA",     # GoJet
    "ASH": "UA", "YV": "UA",     # Mesa
    "RPA": "UA", "YX": "UA",     # Republic
    "UCA": "UA", "C5": "UA",     # CommuteAir
    "AWI": "UA", "ZW": "UA",     # Air Wisconsin
}

_FLIGHT_RE = re.compile(r"^([A-Z]{3}|[A-Z][A-Z0-9]|[A-Z0-9][A-Z])\s*0*(\d{1,5})[A-Z]?$")


def normalize_flight_number(raw: str, marketing_carrier: str = "UA",
                            carriers: Optional[dict[str, str]] = None) -> str:
    """Map an operating-carrier flight id onto the marketing carrier.

      SKW5882 -> UA5882
      G7 4467 -> UA4467
      UAL123  -> UA123
      DL100   -> DL100  (not ours, left alone)
    """
    carriers = REGIONAL_CARRIERS if carriers is None else carriers
    value = (raw or "").strip().upper().replace(" ", "")
    if not value:
        return ""
    if value.isdigit():
        return f"{marketing_carrier}{int(value)}"

    m = _FLIGHT_RE.match(value)
    if not m:
        return value
    prefix, number = m.group(1), str(int(m.group(2)))
    if prefix == marketing_carrier or carriers.get(prefix) == marketing_carrier:
        return f"{marketing_carrier}{number}"
    return f"{prefix}{number}"


# ─── Utilities ───

def _safe_int(val, default=0) -> int:
    try:
        return int(float(val)) if val is not None else default
    except (ValueError, TypeError):
        return default


def _safe_str(val) -> str:
    if val is None:
        return ""
    return str(val).strip()


def _iso_to_epoch(value) -> int:
    """'2026-01-01T15:30:00Z' -> epoch seconds. 0 when missing or unparseable."""
    text = _safe_str(value)
    if not text:
        return 0
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


# ─── Base Class ───

class ScheduleSource(ABC):
    """Abstract base for all flight schedule sources.

    Subclasses implement _request() and _parse(); the base class owns
    request spacing, retries and output filtering.
    """

    min_request_interval = 1.0     # seconds between requests
    max_attempts = 4               # first try + retries
    backoff_base = 10.0            # rate-limit backoff, doubles per attempt
    backoff_cap = 60.0
    error_backoff_base = 2.0       # other failures, doubles per attempt
    error_backoff_cap = 30.0
    jitter_ratio = 0.25            # up to 25% of the delay added at random
    max_flights = 50
    rate_limit_statuses = (429,)
    request_timeout = 15

    def __init__(self, marketing_carrier: str = "UA",
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None,
                 **overrides):
        self.marketing_carrier = marketing_carrier
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._last_request_time = 0.0
        self._rate_lock = threading.Lock()
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise SourceConfigError(f"{self.name}: unknown option '{key}'")
            setattr(self, key, value)

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    def _request(self, tail_number: str) -> requests.Response:
        """Issue the HTTP request for one tail number."""
        ...

    @abstractmethod
    def _parse(self, data) -> list[FlightUpdate]:
        """Turn a decoded JSON body into flights (unfiltered)."""
        ...

    def _wait_for_rate_limit(self):
        # Held across the sleep: batch threads share one source
        with self._rate_lock:
            elapsed = self._clock() - self._last_request_time
            if elapsed < self.min_request_interval:
                self._sleep(self.min_request_interval - elapsed)
            self._last_request_time = self._clock()

    def _backoff_delay(self, attempt: int, rate_limited: bool) -> float:
        if rate_limited:
            delay = min(self.backoff_cap, self.backoff_base * 2 ** attempt)
        else:
            delay = min(self.error_backoff_cap, self.error_backoff_base * 2 ** attempt)
        return delay + self._rng.uniform(0, delay * self.jitter_ratio)

    def get_upcoming_flights(self, tail_number: str) -> list[FlightUpdate]:
        """Future flights for a tail, soonest first.

        Returns [] when the vendor has no record of the aircraft.
        Raises RateLimited or VendorError once retries are exhausted.
        """
        tail_number = tail_number.strip().upper()
        last_error: Optional[VendorError] = None

        for attempt in range(self.max_attempts):
            self._wait_for_rate_limit()
            try:
                r = self._request(tail_number)
            except requests.RequestException as e:
                last_error = VendorError(f"{self.name} request failed: {e}")
            else:
                if r.status_code == 404:
                    logger.info(f"{self.name}: no flights found for {tail_number}")
                    return []
                if r.status_code in self.rate_limit_statuses:
                    last_error = RateLimited(
                        f"{self.name} rate limited ({r.status_code})", r.status_code
                    )
                elif not r.ok:
                    last_error = VendorError(
                        f"{self.name} API error: {r.status_code} {r.reason}", r.status_code
                    )
                else:
                    try:
                        data = r.json()
                    except ValueError as e:
                        last_error = VendorError(f"{self.name} returned invalid JSON: {e}",
                                                 r.status_code)
                    else:
                        return self._filter(self._parse(data), tail_number)

            if attempt + 1 >= self.max_attempts:
                break
            delay = self._backoff_delay(attempt, isinstance(last_error, RateLimited))
            logger.warning(f"{last_error} - waiting {delay:.1f}s before retry "
                           f"{attempt + 1}/{self.max_attempts - 1}")
            self._sleep(delay)

        raise last_error

    def _filter(self, flights: list[FlightUpdate], tail_number: str) -> list[FlightUpdate]:
        now = self._clock()
        kept = []
        for f in flights:
            if f.departure_time < MIN_VALID_TIMESTAMP:
                if f.departure_time:
                    logger.warning(f"{self.name}: dropping {f.flight_number} for {tail_number}, "
                                   f"corrupted departure {f.departure_time}")
                continue
            if f.departure_time <= now:
                continue
            if not f.departure_airport or not f.arrival_airport:
                continue
            kept.append(f)
        kept.sort(key=lambda f: f.departure_time)
        kept = kept[:self.max_flights]
        logger.info(f"{self.name}: {len(kept)} upcoming flights for {tail_number}")
        return kept

    def close(self):
        self.session.close()


# ─── FlightAware AeroAPI ───

class FlightAwareSource(ScheduleSource):
    """FlightAware AeroAPI (paid, API key required).

    GET /flights/{registration} returns recent and scheduled flights.
    """

    API_BASE = "https://aeroapi.flightaware.com/aeroapi"
    min_request_interval = 1.0
    max_flights = 50

    def __init__(self, api_key: str, **kwargs):
        if not api_key:
            raise SourceConfigError("FlightAware source requires an API key (AEROAPI_KEY)")
        super().__init__(**kwargs)
        self.session.headers.update({
            "x-apikey": api_key,
            "Accept": "application/json",
        })

    def _request(self, tail_number: str) -> requests.Response:
        return self.session.get(f"{self.API_BASE}/flights/{tail_number}",
                                timeout=self.request_timeout)

    def _parse(self, data) -> list[FlightUpdate]:
        items = data.get("flights", []) if isinstance(data, dict) else []
        flights = []
        for item in items:
            if not isinstance(item, dict):
                continue
            origin = item.get("origin") or {}
            dest = item.get("destination") or {}
            flights.append(FlightUpdate(
                flight_number=normalize_flight_number(
                    _safe_str(item.get("ident")), self.marketing_carrier
                ),
                departure_airport=_safe_str(origin.get("code_iata") or origin.get("code")),
                arrival_airport=_safe_str(dest.get("code_iata") or dest.get("code")),
                departure_time=_iso_to_epoch(item.get("scheduled_out")),
                arrival_time=_iso_to_epoch(item.get("scheduled_in")),
            ))
        return flights


# ─── FlightRadar24 ───

class FR24Source(ScheduleSource):
    """FlightRadar24 flight list by registration (free, no key).

    Answers 402 instead of 429 when it wants us to slow down, so both count
    as rate limiting. Requests are spaced 2s apart.
    """

    API_BASE = "https://api.flightradar24.com/common/v1"
    min_request_interval = 2.0
    backoff_base = 30.0
    backoff_cap = 120.0
    max_flights = 10
    rate_limit_statuses = (402, 429)

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.session.headers.update({
            "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
                          "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Accept": "application/json",
        })

    def _request(self, tail_number: str) -> requests.Response:
        return self.session.get(
            f"{self.API_BASE}/flight/list.json",
            params={"query": tail_number, "fetchBy": "reg", "page": 1, "limit": 20},
            timeout=self.request_timeout,
        )

    def _parse(self, data) -> list[FlightUpdate]:
        try:
            items = data["result"]["response"]["data"] or []
        except (KeyError, TypeError):
            return []

        flights = []
        for item in items:
            if not isinstance(item, dict):
                continue
            ident = item.get("identification") or {}
            number = ident.get("number") or {}
            airport = item.get("airport") or {}
            times = item.get("time") or {}
            scheduled = times.get("scheduled") or {}
            estimated = times.get("estimated") or {}

            def _code(side):
                code = (airport.get(side) or {}).get("code") or {}
                return _safe_str(code.get("iata") or code.get("icao"))

            flights.append(FlightUpdate(
                flight_number=normalize_flight_number(
                    _safe_str(number.get("default")), self.marketing_carrier
                ),
                departure_airport=_code("origin"),
                arrival_airport=_code("destination"),
                departure_time=_safe_int(scheduled.get("departure") or estimated.get("departure")),
                arrival_time=_safe_int(scheduled.get("arrival") or estimated.get("arrival")),
            ))
        return flights


# ─── Mock Source ───

class _MockResponse:
    status_code = 200
    ok = True
    reason = "OK"

    def __init__(self, data):
        self._data = data

    def json(self):
        return self._data


class MockSource(ScheduleSource):
    """Built-in schedule data for development without any API."""

    MOCK_ROUTES = [
        ("SKW5882", "ORD", "MSP"),
        ("GJS4467", "DEN", "AUS"),
        ("ASH3991", "IAH", "MAF"),
        ("RPA3540", "EWR", "BOS"),
        ("UA1021", "SFO", "ORD"),
    ]
    min_request_interval = 0.0
    max_flights = 10

    def _request(self, tail_number: str):
        now = int(self._clock())
        # Stable per-tail schedule so repeated runs show the same flights
        seed = sum(ord(c) for c in tail_number)
        flights = []
        for i in range(3):
            ident, origin, dest = self.MOCK_ROUTES[(seed + i) % len(self.MOCK_ROUTES)]
            dep = now + (i + 1) * 3 * 3600 + (seed % 60) * 60
            flights.append({
                "ident": ident, "origin": origin, "destination": dest,
                "departure": dep, "arrival": dep + 2 * 3600,
            })
        return _MockResponse({"flights": flights})

    def _parse(self, data) -> list[FlightUpdate]:
        return [
            FlightUpdate(
                flight_number=normalize_flight_number(f["ident"], self.marketing_carrier),
                departure_airport=f["origin"],
                arrival_airport=f["destination"],
                departure_time=f["departure"],
                arrival_time=f["arrival"],
            )
            for f in data["flights"]
        ]


# ─── Factory ───

def create_source(config: dict, **kwargs) -> ScheduleSource:
    """Create a schedule source from configuration.

    Config format:
        source:
          type: flightradar24 | flightaware | mock
          api_key: ...            # flightaware only, or AEROAPI_KEY env var
          marketing_carrier: UA

    Raises SourceConfigError when the source cannot be used.
    """
    source_cfg = dict(config.get("source", {}) or {})
    source_type = str(source_cfg.pop("type", "flightradar24")).lower()
    if config.get("_use_mock"):
        source_type = "mock"

    api_key = source_cfg.pop("api_key", "") or os.environ.get("AEROAPI_KEY", "")
    kwargs.setdefault("marketing_carrier", source_cfg.pop("marketing_carrier", "UA"))
    kwargs.update(source_cfg)

    logger.info(f"Schedule source: {source_type}")

    if source_type in ("flightradar24", "fr24"):
        return FR24Source(**kwargs)
    if source_type == "flightaware":
        return FlightAwareSource(api_key=api_key, **kwargs)
    if source_type == "mock":
        return MockSource(**kwargs)

    raise SourceConfigError(f"Unknown source type: '{source_type}'. "
                            "Valid types: flightradar24, flightaware, mock")
