"""
Discovery / verification scheduler.

Picks the aircraft most in need of a ground-truth check, runs the checks
in small staggered batches and folds every result back into the store.

  - CircuitBreaker: stops all checks for a while after repeated failures
  - FleetScheduler.run_batch(): one batch, checks run on threads
  - FleetScheduler.run_checks(): several batches with a cooldown between
  - FleetScheduler.run_forever(): daemon loop (discovery or maintenance)

Only failures of the pipeline itself (vendor errors, worker timeouts and
crashes) count against the circuit breaker. A page that shows no flight or
no provider is an error for that aircraft but a working check.

A failure in one aircraft's check is logged and folded into that aircraft's
backoff; it never stops the batch. Database errors abort the current run
and are retried on the next tick.
"""

import logging
import random
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from data_sources import ScheduleSource, VendorError
from fleet import Aircraft, Outcome, OutcomeKind, plan_update
from fleet_db import SOURCE_VENDOR_SCHEDULE, FleetDatabase, LogEntry
from verifier import PAGE_ERRORS, GroundTruthExecutor

logger = logging.getLogger(__name__)

MODE_INTERVALS = {
    "discovery": 30,      # fast sweeps of a mostly unverified fleet
    "maintenance": 90,    # steady-state re-verification
}
HEARTBEAT_INTERVAL = 10 * 60
FLIGHT_REFRESH_INTERVAL = 8 * 3600


# ─── Circuit Breaker ───

class CircuitBreaker:
    """Opens after `threshold` consecutive failures, for `cooldown` seconds."""

    def __init__(self, threshold: int = 5, cooldown: float = 30 * 60,
                 clock: Callable[[], float] = time.time, name: str = "verification"):
        self.threshold = threshold
        self.cooldown = cooldown
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self.failures = 0
        self.opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self.opened_at is not None and self._clock() - self.opened_at < self.cooldown

    def remaining(self) -> float:
        with self._lock:
            if self.opened_at is None:
                return 0.0
            return max(0.0, self.cooldown - (self._clock() - self.opened_at))

    def allow(self) -> bool:
        """True if a run may start. Closes the breaker once the cooldown is over."""
        with self._lock:
            if self.opened_at is None:
                return True
            if self._clock() - self.opened_at < self.cooldown:
                return False
            logger.info(f"{self.name} circuit breaker reset after cooldown")
            self.opened_at = None
            self.failures = 0
            return True

    def record_success(self):
        with self._lock:
            self.failures = 0

    def record_failure(self):
        with self._lock:
            self.failures += 1
            if self.failures >= self.threshold and self.opened_at is None:
                self.opened_at = self._clock()
                logger.error(f"{self.name} circuit breaker OPEN after {self.failures} "
                             f"consecutive failures, pausing for {self.cooldown / 60:.0f} min")


# ─── Batch Results ───

@dataclass
class BatchStats:
    checked: int = 0
    confirmed: int = 0
    negative: int = 0
    errors: int = 0
    no_flights: int = 0
    mismatches: int = 0
    outcomes: dict = field(default_factory=dict)   # tail -> OutcomeKind

    def add(self, tail_number: str, outcome: Outcome):
        self.checked += 1
        self.outcomes[tail_number] = outcome.kind
        if outcome.kind is OutcomeKind.FEATURE_FOUND:
            self.confirmed += 1
        elif outcome.kind is OutcomeKind.FEATURE_ABSENT:
            self.negative += 1
        elif outcome.kind is OutcomeKind.NO_FLIGHTS:
            self.no_flights += 1
        elif outcome.kind is OutcomeKind.TAIL_MISMATCH:
            self.mismatches += 1
        else:
            self.errors += 1

    def merge(self, other: "BatchStats"):
        self.checked += other.checked
        self.confirmed += other.confirmed
        self.negative += other.negative
        self.errors += other.errors
        self.no_flights += other.no_flights
        self.mismatches += other.mismatches
        self.outcomes.update(other.outcomes)

    def summary(self) -> str:
        return (f"checked={self.checked} confirmed={self.confirmed} negative={self.negative} "
                f"errors={self.errors} no_flights={self.no_flights} mismatches={self.mismatches}")


# ─── Scheduler ───

class FleetScheduler:
    """Chooses aircraft to verify and runs the checks."""

    def __init__(self, db: FleetDatabase, source: ScheduleSource,
                 executor: GroundTruthExecutor, batch_size: int = 3,
                 breaker: Optional[CircuitBreaker] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None,
                 stagger: float = 2.0, stagger_jitter: float = 0.5,
                 cooldown: float = 5.0, cooldown_jitter: float = 3.0):
        self.db = db
        self.source = source
        self.executor = executor
        self.batch_size = batch_size
        self._clock = clock
        self.breaker = breaker or CircuitBreaker(clock=clock)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.stagger = stagger
        self.stagger_jitter = stagger_jitter
        self.cooldown = cooldown
        self.cooldown_jitter = cooldown_jitter

        self._busy = False
        self._busy_lock = threading.Lock()
        self._stop = threading.Event()

    def _now(self) -> int:
        return int(self._clock())

    @property
    def busy(self) -> bool:
        return self._busy

    def _acquire(self) -> bool:
        with self._busy_lock:
            if self._busy:
                return False
            self._busy = True
            return True

    def _release(self):
        with self._busy_lock:
            self._busy = False

    # ─── Single Aircraft ───

    def _record(self, aircraft: Aircraft, outcome: Outcome, entry: LogEntry, now: int):
        update = plan_update(aircraft, outcome, now, self._rng)
        self.db.record_result(aircraft.tail_number, update, entry)

    def check_aircraft(self, aircraft: Aircraft) -> Outcome:
        """Refresh the schedule for one aircraft and verify it on its next flight.

        Writes exactly one log entry and one aircraft update. Raises only
        sqlite3.Error.
        """
        tail = aircraft.tail_number
        now = self._now()

        try:
            flights = self.source.get_upcoming_flights(tail)
        except VendorError as e:
            logger.warning(f"{tail}: schedule lookup failed: {e}")
            self.db.mark_flight_check(tail, False, now)
            outcome = Outcome(OutcomeKind.ERROR, error=str(e))
            entry = LogEntry(tail_number=tail, source=SOURCE_VENDOR_SCHEDULE,
                             error=str(e), checked_at=now)
            self._record(aircraft, outcome, entry, now)
            return outcome

        self.db.replace_flights(tail, flights, now)
        self.db.mark_flight_check(tail, True, now)

        upcoming = self.db.get_upcoming_flights(tail, now=now, limit=1)
        if not upcoming:
            logger.info(f"{tail}: no upcoming flights, will retry in a few hours")
            outcome = Outcome(OutcomeKind.NO_FLIGHTS)
            entry = LogEntry(tail_number=tail, source=SOURCE_VENDOR_SCHEDULE,
                             error="no upcoming flights", checked_at=now)
            self._record(aircraft, outcome, entry, now)
            return outcome

        outcome, entry = self.executor.verify(tail, upcoming[0], now=now)
        self._record(aircraft, outcome, entry, now)
        return outcome

    def _check_and_count(self, aircraft: Aircraft) -> Outcome:
        """check_aircraft() with unexpected failures folded into an error result."""
        try:
            outcome = self.check_aircraft(aircraft)
        except sqlite3.Error:
            raise
        except Exception as e:
            logger.error(f"Check of {aircraft.tail_number} failed: {e}")
            outcome = Outcome(OutcomeKind.ERROR, error=str(e) or e.__class__.__name__)
            now = self._now()
            entry = LogEntry(tail_number=aircraft.tail_number, source=SOURCE_VENDOR_SCHEDULE,
                             error=outcome.error, checked_at=now)
            self._record(aircraft, outcome, entry, now)

        if outcome.kind.is_error and outcome.error not in PAGE_ERRORS:
            self.breaker.record_failure()
        else:
            self.breaker.record_success()
        return outcome

    # ─── Batches ───

    def _run_staggered(self, candidates: list[Aircraft]) -> BatchStats:
        stats = BatchStats()
        stats_lock = threading.Lock()
        store_errors: list[sqlite3.Error] = []

        def worker(index: int, aircraft: Aircraft):
            delay = index * self.stagger + self._rng.uniform(0, self.stagger_jitter)
            if delay > 0:
                self._sleep(delay)
            if self.breaker.is_open:
                logger.info(f"Skipping {aircraft.tail_number}: circuit breaker open")
                return
            try:
                outcome = self._check_and_count(aircraft)
            except sqlite3.Error as e:
                logger.error(f"Database error while checking {aircraft.tail_number}: {e}")
                store_errors.append(e)
                return
            with stats_lock:
                stats.add(aircraft.tail_number, outcome)

        threads = [
            threading.Thread(target=worker, args=(i, a), name=f"check-{a.tail_number}",
                             daemon=True)
            for i, a in enumerate(candidates)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        if store_errors:
            raise store_errors[0]
        return stats

    def run_batch(self, limit: Optional[int] = None) -> BatchStats:
        """Check up to `limit` due aircraft (default batch_size) concurrently.

        Returns empty stats without checking anything when the circuit
        breaker is open or another run is in progress.
        """
        if not self.breaker.allow():
            logger.warning(f"Circuit breaker open, skipping batch "
                           f"({self.breaker.remaining() / 60:.1f} min remaining)")
            return BatchStats()
        if not self._acquire():
            logger.info("Previous run still in progress, skipping")
            return BatchStats()

        try:
            limit = limit or self.batch_size
            candidates = self.db.get_next_candidates(limit=limit, now=self._now())
            if not candidates:
                logger.debug("No aircraft due for verification")
                return BatchStats()

            logger.info(f"Verifying {len(candidates)} aircraft: "
                        f"{', '.join(a.tail_number for a in candidates)}")
            stats = self._run_staggered(candidates)
            logger.info(f"Batch complete: {stats.summary()}")
            return stats
        finally:
            self._release()

    def run_checks(self, total: int) -> BatchStats:
        """Check up to `total` aircraft in batches, cooling down between batches."""
        overall = BatchStats()
        remaining = total
        while remaining > 0:
            stats = self.run_batch(min(self.batch_size, remaining))
            overall.merge(stats)
            remaining -= stats.checked
            if stats.checked == 0 or remaining <= 0:
                break
            pause = self.cooldown + self._rng.uniform(0, self.cooldown_jitter)
            logger.debug(f"Cooling down {pause:.1f}s before next batch")
            self._sleep(pause)
        return overall

    def verify_tail(self, tail_number: str) -> Outcome:
        """Check a single aircraft now, whatever its schedule says."""
        tail_number = tail_number.strip().upper()
        if self.db.upsert_aircraft(tail_number, source="manual", now=self._now()):
            logger.info(f"Added {tail_number} to the fleet")
        aircraft = self.db.get_aircraft(tail_number)
        return self.check_aircraft(aircraft)

    # ─── Daemon ───

    def tick(self) -> Optional[BatchStats]:
        """One scheduled run. Never raises."""
        try:
            return self.run_batch(1)
        except sqlite3.Error as e:
            logger.error(f"Database error, will retry next tick: {e}")
        except Exception as e:
            logger.error(f"Scheduler tick failed: {e}")
        return None

    def heartbeat(self):
        counts = self.db.status_counts()
        stats = self.db.get_stats(self._now())
        logger.info(
            f"Heartbeat: {stats['aircraft']:,} aircraft "
            f"(confirmed={counts['confirmed']}, negative={counts['negative']}, "
            f"unknown={counts['unknown']}), {stats['due_for_check']} due, "
            f"breaker={'open' if self.breaker.is_open else 'closed'}"
        )

    def stop(self):
        self._stop.set()

    def run_forever(self, mode: str = "discovery", flight_updater=None,
                    refresh_interval: float = FLIGHT_REFRESH_INTERVAL):
        """Tick every interval of `mode` until stop() is called."""
        if mode not in MODE_INTERVALS:
            raise ValueError(f"Unknown mode '{mode}'. Valid modes: {', '.join(MODE_INTERVALS)}")
        interval = MODE_INTERVALS[mode]
        logger.info(f"Scheduler running in {mode} mode (every {interval}s)")

        last_tick = 0.0
        last_heartbeat = self._clock()
        last_refresh = 0.0

        while not self._stop.is_set():
            now = self._clock()
            if now - last_tick >= interval:
                last_tick = now
                # Run in a thread so a slow check never delays the heartbeat
                threading.Thread(target=self.tick, daemon=True).start()

            if flight_updater is not None and now - last_refresh >= refresh_interval:
                last_refresh = now
                threading.Thread(target=flight_updater.tick, daemon=True).start()

            if now - last_heartbeat >= HEARTBEAT_INTERVAL:
                last_heartbeat = now
                try:
                    self.heartbeat()
                except sqlite3.Error as e:
                    logger.error(f"Heartbeat failed: {e}")

            self._stop.wait(1.0)

        logger.info("Scheduler stopped")
