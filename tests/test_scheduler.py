import random
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(ROOT / "tests"))

from data_sources import FlightUpdate, RateLimited, VendorError
from fakes import FakeClock, FakeRunner, FakeSource, worker_result
from fleet import CONFIRMED_RECHECK, HOUR, OutcomeKind, VerificationStatus
from fleet_db import SOURCE_GROUND_TRUTH, SOURCE_VENDOR_SCHEDULE, FleetDatabase
from scheduler import CircuitBreaker, FleetScheduler
from verifier import ERROR_NO_PROVIDER, ERROR_TIMEOUT, GroundTruthExecutor

NOW = 1_800_000_000


def _flights(number="UA5882", hours_ahead=6):
    departure = NOW + hours_ahead * HOUR
    return [FlightUpdate(number, "ORD", "MSP", departure, departure + 2 * HOUR)]


class CircuitBreakerTests(unittest.TestCase):
    def test_opens_after_threshold_and_resets_after_cooldown(self):
        clock = FakeClock(NOW)
        breaker = CircuitBreaker(threshold=3, cooldown=600, clock=clock)
        for _ in range(2):
            breaker.record_failure()
        self.assertTrue(breaker.allow())
        breaker.record_failure()
        self.assertTrue(breaker.is_open)
        self.assertFalse(breaker.allow())

        clock.advance(599)
        self.assertFalse(breaker.allow())
        clock.advance(1)
        self.assertTrue(breaker.allow())
        self.assertEqual(breaker.failures, 0)
        self.assertFalse(breaker.is_open)

    def test_success_resets_counter(self):
        breaker = CircuitBreaker(threshold=2, clock=FakeClock(NOW))
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        self.assertFalse(breaker.is_open)


class SchedulerTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = FleetDatabase(str(Path(self.tmp.name) / "fleet.db"))
        self.db.setup()
        self.clock = FakeClock(NOW)
        self.source = FakeSource()
        self.runner = FakeRunner()
        self.scheduler = FleetScheduler(
            db=self.db,
            source=self.source,
            executor=GroundTruthExecutor(runner=self.runner),
            batch_size=3,
            sleep=self.clock.sleep,
            clock=self.clock,
            rng=random.Random(0),
        )

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def add(self, tail, flights=None, flight_number="5882", result=None):
        self.db.upsert_aircraft(tail, source="test", now=NOW)
        if flights is not None:
            self.source.flights[tail] = flights
        if result is not None:
            self.runner.results[flight_number] = result


class VerificationScenarioTests(SchedulerTestCase):
    def test_found_then_timeout(self):
        self.add("N101SY", _flights(), result=worker_result(provider="Starlink", tail="N101SY"))

        stats = self.scheduler.run_batch()
        self.assertEqual((stats.checked, stats.confirmed), (1, 1))

        aircraft = self.db.get_aircraft("N101SY")
        self.assertIs(aircraft.verification_status, VerificationStatus.CONFIRMED)
        self.assertEqual(aircraft.verified_wifi, "Starlink")
        delay = aircraft.next_check_after - aircraft.verified_at
        self.assertGreaterEqual(delay, int(CONFIRMED_RECHECK * 0.9))
        self.assertLessEqual(delay, int(CONFIRMED_RECHECK * 1.1))

        history = self.db.get_history("N101SY")
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].source, SOURCE_GROUND_TRUTH)
        self.assertTrue(history[0].has_feature)

        # Due again a week later; this time the worker hangs
        self.clock.now = aircraft.next_check_after
        self.source.flights["N101SY"] = [
            FlightUpdate("UA77", "ORD", "MSP", int(self.clock.now) + HOUR,
                         int(self.clock.now) + 3 * HOUR)
        ]
        self.runner.results["77"] = subprocess.TimeoutExpired("worker", 60)
        checked_at = int(self.clock.now)

        stats = self.scheduler.run_batch()
        self.assertEqual(stats.errors, 1)

        aircraft = self.db.get_aircraft("N101SY")
        self.assertIs(aircraft.verification_status, VerificationStatus.CONFIRMED)
        self.assertEqual(aircraft.verified_wifi, "Starlink")
        self.assertEqual(aircraft.check_attempts, 1)
        self.assertEqual(aircraft.last_error, ERROR_TIMEOUT)
        self.assertLessEqual(abs(aircraft.next_check_after - (checked_at + HOUR)), 1)
        self.assertEqual(len(self.db.get_history("N101SY")), 2)

    def test_vendor_failure_is_logged_error(self):
        self.add("N102SY", RateLimited("FR24Source rate limited (429)", 429))
        stats = self.scheduler.run_batch()
        self.assertEqual(stats.errors, 1)

        aircraft = self.db.get_aircraft("N102SY")
        self.assertIs(aircraft.verification_status, VerificationStatus.UNKNOWN)
        self.assertEqual(aircraft.check_attempts, 1)
        self.assertEqual(aircraft.flight_check_failures, 1)
        entry = self.db.get_history("N102SY")[0]
        self.assertEqual(entry.source, SOURCE_VENDOR_SCHEDULE)
        self.assertIn("429", entry.error)
        self.assertEqual(self.runner.calls, [])

    def test_no_flights(self):
        self.add("N103SY", [])
        stats = self.scheduler.run_batch()
        self.assertEqual(stats.no_flights, 1)

        aircraft = self.db.get_aircraft("N103SY")
        self.assertEqual(aircraft.check_attempts, 0)
        self.assertGreaterEqual(aircraft.next_check_after, NOW + 2 * HOUR)
        self.assertLessEqual(aircraft.next_check_after, NOW + 4 * HOUR + 10)
        self.assertEqual(len(self.db.get_history("N103SY")), 1)
        self.assertEqual(self.runner.calls, [])

    def test_tail_mismatch_keeps_state(self):
        self.add("N104SY", _flights(), result=worker_result(provider="Starlink", tail="N104SY"))
        self.scheduler.run_batch()
        before = self.db.get_aircraft("N104SY")

        self.clock.now = before.next_check_after
        self.source.flights["N104SY"] = [
            FlightUpdate("UA88", "ORD", "MSP", int(self.clock.now) + HOUR,
                         int(self.clock.now) + 2 * HOUR)
        ]
        self.runner.results["88"] = worker_result(provider="Viasat", tail="N555XX")
        stats = self.scheduler.run_batch()
        self.assertEqual(stats.mismatches, 1)

        after = self.db.get_aircraft("N104SY")
        self.assertIs(after.verification_status, VerificationStatus.CONFIRMED)
        self.assertEqual(after.verified_wifi, "Starlink")
        self.assertEqual(after.verified_at, before.verified_at)
        entry = self.db.get_history("N104SY")[0]
        self.assertIsNone(entry.has_feature)
        self.assertIsNone(entry.provider)
        self.assertEqual(entry.error, "Aircraft mismatch: flight has N555XX")

    def test_unexpected_failure_does_not_stop_batch(self):
        self.add("N105SY", RuntimeError("parser exploded"))
        self.add("N106SY", _flights(), result=worker_result(provider="Gogo", tail="N106SY"))
        stats = self.scheduler.run_batch()
        self.assertEqual(stats.checked, 2)
        self.assertEqual(stats.errors, 1)
        self.assertEqual(stats.negative, 1)
        self.assertEqual(self.db.get_aircraft("N105SY").last_error, "parser exploded")
        self.assertIs(self.db.get_aircraft("N106SY").verification_status,
                      VerificationStatus.NEGATIVE)

    def test_verify_tail_creates_and_ignores_schedule(self):
        self.source.flights["N107SY"] = _flights()
        self.runner.results["5882"] = worker_result(provider="Starlink", tail="N107SY")
        outcome = self.scheduler.verify_tail("n107sy")
        self.assertIs(outcome.kind, OutcomeKind.FEATURE_FOUND)

        # Not due for a week, but a manual check still runs
        outcome = self.scheduler.verify_tail("N107SY")
        self.assertIs(outcome.kind, OutcomeKind.FEATURE_FOUND)
        self.assertEqual(len(self.db.get_history("N107SY")), 2)


class BatchControlTests(SchedulerTestCase):
    def test_stagger_within_batch(self):
        for i in range(3):
            self.add(f"N20{i}SY", [])
        self.scheduler.run_batch()
        sleeps = sorted(self.clock.sleeps)
        self.assertEqual(len(sleeps), 3)
        for index, delay in enumerate(sleeps):
            self.assertGreaterEqual(delay, index * 2.0)
            self.assertLessEqual(delay, index * 2.0 + 0.5)

    def test_cooldown_between_batches(self):
        for i in range(4):
            self.add(f"N21{i}SY", [])
        self.scheduler.batch_size = 2
        stats = self.scheduler.run_checks(4)
        self.assertEqual(stats.checked, 4)
        self.assertTrue(any(5.0 <= s <= 8.0 for s in self.clock.sleeps))

    def test_breaker_opens_and_blocks_batches(self):
        self.scheduler.batch_size = 5
        for i in range(5):
            self.add(f"N30{i}SY", VendorError("boom", 500))

        stats = self.scheduler.run_batch()
        self.assertEqual(stats.errors, 5)
        self.assertTrue(self.scheduler.breaker.is_open)

        self.add("N310SY", _flights(), result=worker_result(provider="Starlink", tail="N310SY"))
        calls = len(self.source.calls)
        stats = self.scheduler.run_batch()
        self.assertEqual(stats.checked, 0)
        self.assertEqual(len(self.source.calls), calls)

        self.clock.advance(30 * 60)
        stats = self.scheduler.run_batch(1)
        self.assertEqual(stats.checked, 1)
        self.assertEqual(self.scheduler.breaker.failures, 0)
        self.assertFalse(self.scheduler.breaker.is_open)

    def test_mismatch_and_no_flights_count_as_success(self):
        self.scheduler.breaker = CircuitBreaker(threshold=2, clock=self.clock)
        self.add("N401SY", VendorError("boom", 500))
        self.scheduler.run_batch(1)
        self.assertEqual(self.scheduler.breaker.failures, 1)
        self.add("N402SY", [])
        self.scheduler.run_batch(1)
        self.assertEqual(self.scheduler.breaker.failures, 0)

    def test_page_level_errors_do_not_trip_breaker(self):
        self.scheduler.breaker = CircuitBreaker(threshold=2, clock=self.clock)
        self.add("N451SY", _flights("UA451"), flight_number="451",
                 result=worker_result(error="Flight not found"))
        self.add("N452SY", _flights("UA452"), flight_number="452",
                 result=worker_result(tail="N452SY"))
        stats = self.scheduler.run_batch()
        self.assertEqual(stats.errors, 2)
        self.assertEqual(self.scheduler.breaker.failures, 0)
        self.assertEqual(self.db.get_aircraft("N452SY").last_error, ERROR_NO_PROVIDER)

        self.add("N453SY", _flights("UA453"), flight_number="453",
                 result=subprocess.TimeoutExpired("worker", 60))
        self.scheduler.run_batch(1)
        self.assertEqual(self.scheduler.breaker.failures, 1)

    def test_busy_flag_refuses_overlap(self):
        self.add("N501SY", [])
        self.assertTrue(self.scheduler._acquire())
        try:
            stats = self.scheduler.run_batch()
            self.assertEqual(stats.checked, 0)
            self.assertEqual(self.source.calls, [])
        finally:
            self.scheduler._release()
        self.assertEqual(self.scheduler.run_batch().checked, 1)
        self.assertFalse(self.scheduler.busy)

    def test_tick_survives_database_failure(self):
        self.add("N601SY", [])
        self.db.close()
        self.assertIsNone(self.scheduler.tick())
        self.assertFalse(self.scheduler.busy)


if __name__ == "__main__":
    unittest.main()
