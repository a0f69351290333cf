"""
Upcoming-flight refresher for confirmed aircraft.

Downstream readers show the next flights of every aircraft known to carry
the service, so their schedules are kept fresh independently of the
verification cadence. How often a tail is refreshed depends on how close
its next departure is (see fleet.needs_flight_refresh).
"""

import logging
import random
import sqlite3
import threading
import time
from typing import Callable, Optional

from data_sources import ScheduleSource, VendorError
from fleet import Aircraft, VerificationStatus, needs_flight_refresh
from fleet_db import FleetDatabase
from scheduler import CircuitBreaker

logger = logging.getLogger(__name__)


class FlightUpdater:
    """Refreshes upcoming_flights for confirmed aircraft in staggered batches."""

    def __init__(self, db: FleetDatabase, source: ScheduleSource, batch_size: int = 5,
                 breaker: Optional[CircuitBreaker] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None,
                 stagger: float = 2.0, stagger_jitter: float = 0.5,
                 cooldown: float = 5.0, cooldown_jitter: float = 3.0):
        self.db = db
        self.source = source
        self.batch_size = batch_size
        self._clock = clock
        self.breaker = breaker or CircuitBreaker(clock=clock, name="flight refresh")
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.stagger = stagger
        self.stagger_jitter = stagger_jitter
        self.cooldown = cooldown
        self.cooldown_jitter = cooldown_jitter
        self._busy_lock = threading.Lock()

    def due_aircraft(self, aircraft: Optional[list[Aircraft]] = None,
                     force: bool = False) -> list[Aircraft]:
        """Confirmed aircraft whose schedule should be fetched now."""
        if aircraft is None:
            aircraft = self.db.list_aircraft(VerificationStatus.CONFIRMED)
        if force:
            return list(aircraft)
        now = int(self._clock())
        due = []
        for a in aircraft:
            next_dep, latest_dep = self.db.get_departure_window(a.tail_number, now)
            if needs_flight_refresh(a, next_dep, latest_dep, now, self._rng):
                due.append(a)
        return due

    def update_tail(self, tail_number: str) -> bool:
        """Fetch and store flights for one tail. Returns False on a vendor failure."""
        now = int(self._clock())
        try:
            flights = self.source.get_upcoming_flights(tail_number)
        except VendorError as e:
            logger.warning(f"Flight refresh failed for {tail_number}: {e}")
            self.db.mark_flight_check(tail_number, False, now)
            return False

        stored = self.db.replace_flights(tail_number, flights, now)
        self.db.mark_flight_check(tail_number, True, now)
        logger.debug(f"{tail_number}: stored {stored} upcoming flights")
        return True

    def _run_batch(self, batch: list[Aircraft]) -> int:
        updated = []
        lock = threading.Lock()

        def worker(index: int, aircraft: Aircraft):
            self._sleep(index * self.stagger + self._rng.uniform(0, self.stagger_jitter))
            if self.breaker.is_open:
                return
            try:
                ok = self.update_tail(aircraft.tail_number)
            except sqlite3.Error as e:
                logger.error(f"Database error while refreshing {aircraft.tail_number}: {e}")
                return
            if ok:
                self.breaker.record_success()
                with lock:
                    updated.append(aircraft.tail_number)
            else:
                self.breaker.record_failure()

        threads = [threading.Thread(target=worker, args=(i, a), daemon=True)
                   for i, a in enumerate(batch)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return len(updated)

    def run(self, force: bool = False) -> int:
        """Refresh every due aircraft. Returns how many were updated."""
        if not self.breaker.allow():
            logger.info(f"Flight refresh circuit breaker open, retry in "
                        f"{self.breaker.remaining():.0f}s")
            return 0
        if not self._busy_lock.acquire(blocking=False):
            logger.info("Flight refresh already running, skipping")
            return 0

        try:
            due = self.due_aircraft(force=force)
            logger.info(f"{len(due)} confirmed aircraft need flight updates")
            updated = 0
            for start in range(0, len(due), self.batch_size):
                if self.breaker.is_open:
                    break
                updated += self._run_batch(due[start:start + self.batch_size])
                if start + self.batch_size < len(due):
                    pause = self.cooldown + self._rng.uniform(0, self.cooldown_jitter)
                    logger.info(f"Batch completed, waiting {pause:.0f}s before next batch")
                    self._sleep(pause)
            logger.info(f"Flight updates completed: {updated} aircraft updated")
            return updated
        finally:
            self._busy_lock.release()

    def tick(self):
        """Scheduled refresh. Never raises."""
        try:
            self.run()
        except sqlite3.Error as e:
            logger.error(f"Database error during flight refresh, will retry: {e}")
        except Exception as e:
            logger.error(f"Unhandled error in flight updater: {e}")
