import sqlite3
import sys
import tempfile
import threading
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from data_sources import FlightUpdate
from fleet import AircraftUpdate, VerificationStatus
from fleet_db import (
    MIN_VALID_TIMESTAMP,
    SOURCE_GROUND_TRUTH,
    SOURCE_VENDOR_SCHEDULE,
    CuratedEntry,
    FleetDatabase,
    LogEntry,
)

NOW = 1_800_000_000


def _flight(number, departure, origin="ORD", dest="MSP"):
    return FlightUpdate(number, origin, dest, departure, departure + 7200)


class FleetDatabaseTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = str(Path(self.tmp.name) / "fleet.db")
        self.db = FleetDatabase(self.path, busy_timeout=5)
        self.db.setup()

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()


class SchemaTests(FleetDatabaseTestCase):
    def test_setup_is_idempotent(self):
        self.db.upsert_aircraft("N100SY", "E175", source="test", now=NOW)
        again = FleetDatabase(self.path)
        again.setup()
        again.setup()
        self.assertIsNotNone(again.get_aircraft("N100SY"))
        again.close()

    def test_wal_mode(self):
        mode = self.db.conn.execute("PRAGMA journal_mode").fetchone()[0]
        self.assertEqual(mode.lower(), "wal")

    def test_migrates_old_schema_without_losing_rows(self):
        path = str(Path(self.tmp.name) / "old.db")
        conn = sqlite3.connect(path)
        conn.executescript("""
            CREATE TABLE fleet_aircraft (
                tail_number TEXT PRIMARY KEY,
                aircraft_type TEXT,
                fleet TEXT DEFAULT 'unknown',
                operated_by TEXT DEFAULT '',
                first_seen INTEGER DEFAULT 0,
                last_seen INTEGER DEFAULT 0,
                discovery_source TEXT DEFAULT '',
                verification_status TEXT NOT NULL DEFAULT 'unknown',
                verified_wifi TEXT,
                verified_at INTEGER
            );
            INSERT INTO fleet_aircraft (tail_number, aircraft_type, verification_status)
                VALUES ('N200SY', 'Embraer E175', 'unknown');
        """)
        conn.commit()
        conn.close()

        db = FleetDatabase(path)
        db.setup()
        aircraft = db.get_aircraft("N200SY")
        self.assertEqual(aircraft.aircraft_type, "Embraer E175")
        self.assertEqual(aircraft.check_attempts, 0)
        self.assertGreater(aircraft.discovery_priority, 0.85)
        self.assertEqual(len(db.get_next_candidates(limit=5, now=NOW)), 1)
        db.close()

    def test_unknown_with_provider_is_rejected(self):
        self.db.upsert_aircraft("N300SY", now=NOW)
        with self.assertRaises(sqlite3.IntegrityError):
            with self.db.conn:
                self.db.conn.execute(
                    "UPDATE fleet_aircraft SET verified_wifi = 'Starlink' WHERE tail_number = ?",
                    ("N300SY",),
                )


class AircraftTests(FleetDatabaseTestCase):
    def test_upsert_creates_then_enriches(self):
        self.assertTrue(self.db.upsert_aircraft("n400sy", source="fr24", now=NOW))
        self.assertFalse(self.db.upsert_aircraft("N400SY", "CRJ-550", source="other",
                                                 fleet="express", now=NOW + 10))
        aircraft = self.db.get_aircraft("N400SY")
        self.assertEqual(aircraft.aircraft_type, "CRJ-550")
        self.assertEqual(aircraft.fleet, "express")
        self.assertEqual(aircraft.discovery_source, "fr24")
        self.assertEqual(aircraft.first_seen, NOW)
        self.assertEqual(aircraft.last_seen, NOW + 10)
        self.assertIs(aircraft.verification_status, VerificationStatus.UNKNOWN)

    def _set_status(self, tail, status, priority, wifi=None):
        self.db.record_result(tail, AircraftUpdate(
            verification_status=status, verified_wifi=wifi, verified_at=NOW,
            discovery_priority=priority, next_check_after=0, check_attempts=0,
            last_error=None,
        ), LogEntry(tail_number=tail, source=SOURCE_GROUND_TRUTH, checked_at=NOW))

    def test_candidates_ordered_by_status_then_priority(self):
        for tail in ("N1", "N2", "N3", "N4"):
            self.db.upsert_aircraft(tail, now=NOW)
        self._set_status("N1", VerificationStatus.CONFIRMED, 0.99, "Starlink")
        self._set_status("N2", VerificationStatus.NEGATIVE, 0.2, "Viasat")
        self._set_status("N3", VerificationStatus.UNKNOWN, 0.1)
        self._set_status("N4", VerificationStatus.UNKNOWN, 0.9)

        order = [a.tail_number for a in self.db.get_next_candidates(limit=10, now=NOW)]
        self.assertEqual(order, ["N4", "N3", "N2", "N1"])

    def test_candidates_respect_next_check_after(self):
        self.db.upsert_aircraft("N5", now=NOW)
        self.db.record_result("N5", AircraftUpdate(
            VerificationStatus.UNKNOWN, None, None, 0.8, NOW + 100, 1, "boom",
        ), LogEntry(tail_number="N5", source=SOURCE_GROUND_TRUTH, error="boom", checked_at=NOW))
        self.assertEqual(self.db.get_next_candidates(limit=5, now=NOW), [])
        self.assertEqual(len(self.db.get_next_candidates(limit=5, now=NOW + 100)), 1)
        self.assertEqual(self.db.schedule_recheck(["N5"], NOW), 1)
        self.assertEqual(len(self.db.get_next_candidates(limit=5, now=NOW)), 1)


class FlightTests(FleetDatabaseTestCase):
    def test_replace_discards_corrupted_rows(self):
        self.db.upsert_aircraft("N600SY", now=NOW)
        stored = self.db.replace_flights("N600SY", [
            _flight("UA1", NOW + 3600),
            _flight("UA2", 1234),
        ], now=NOW)
        self.assertEqual(stored, 1)
        flights = self.db.get_upcoming_flights("N600SY", now=NOW)
        self.assertEqual([f.flight_number for f in flights], ["UA1"])

    def test_replace_is_wholesale(self):
        self.db.upsert_aircraft("N601SY", now=NOW)
        self.db.replace_flights("N601SY", [_flight("UA1", NOW + 10), _flight("UA2", NOW + 20)],
                                now=NOW)
        self.db.replace_flights("N601SY", [_flight("UA3", NOW + 30)], now=NOW)
        self.assertEqual([f.flight_number for f in self.db.get_upcoming_flights("N601SY", NOW)],
                         ["UA3"])

    def test_corrupted_rows_purged_and_refresh_reset(self):
        self.db.upsert_aircraft("N602SY", now=NOW)
        self.db.mark_flight_check("N602SY", True, NOW)
        with self.db.conn:
            self.db.conn.execute(
                """INSERT INTO upcoming_flights (tail_number, flight_number, departure_time)
                   VALUES ('N602SY', 'UA9', 5)"""
            )
        self.assertEqual(self.db.get_upcoming_flights("N602SY", now=0), [])
        remaining = self.db.conn.execute(
            "SELECT COUNT(*) FROM upcoming_flights WHERE departure_time < ?",
            (MIN_VALID_TIMESTAMP,),
        ).fetchone()[0]
        self.assertEqual(remaining, 0)
        self.assertEqual(self.db.get_aircraft("N602SY").last_flight_check, 0)

    def test_replace_is_atomic_for_readers(self):
        self.db.upsert_aircraft("N603SY", now=NOW)
        batch_a = [_flight(f"UA{i}", NOW + 100 + i) for i in range(5)]
        batch_b = [_flight(f"UA{i}", NOW + 200 + i) for i in range(10, 13)]
        self.db.replace_flights("N603SY", batch_a, now=NOW)

        reader = FleetDatabase(self.path, busy_timeout=5)
        reader.setup()
        seen = []
        stop = threading.Event()

        def read():
            while not stop.is_set():
                seen.append(len(reader.get_upcoming_flights("N603SY", now=NOW)))

        t = threading.Thread(target=read)
        t.start()
        for i in range(50):
            self.db.replace_flights("N603SY", batch_a if i % 2 else batch_b, now=NOW)
        stop.set()
        t.join()
        reader.close()

        self.assertTrue(seen)
        self.assertTrue(set(seen) <= {3, 5})

    def test_departure_window_and_flight_checks(self):
        self.db.upsert_aircraft("N604SY", now=NOW)
        self.db.replace_flights("N604SY", [_flight("UA1", NOW + 10), _flight("UA2", NOW + 50)],
                                now=NOW)
        self.assertEqual(self.db.get_departure_window("N604SY", NOW), (NOW + 10, NOW + 50))
        self.assertEqual(self.db.get_departure_window("N999", NOW), (None, None))

        self.db.mark_flight_check("N604SY", False, NOW)
        self.db.mark_flight_check("N604SY", False, NOW)
        aircraft = self.db.get_aircraft("N604SY")
        self.assertEqual(aircraft.flight_check_failures, 2)
        self.assertFalse(aircraft.flight_check_ok)
        self.db.mark_flight_check("N604SY", True, NOW)
        self.assertEqual(self.db.get_aircraft("N604SY").flight_check_failures, 0)
        self.assertEqual(self.db.reset_flight_checks(), 1)
        self.assertEqual(self.db.get_aircraft("N604SY").last_flight_check, 0)


class LogTests(FleetDatabaseTestCase):
    def test_log_is_append_only(self):
        self.db.log_verification(LogEntry("N700SY", SOURCE_GROUND_TRUTH, has_feature=True,
                                          provider="Starlink", checked_at=NOW))
        with self.assertRaises(sqlite3.DatabaseError):
            with self.db.conn:
                self.db.conn.execute("UPDATE verification_log SET provider = 'Viasat'")
        self.assertEqual(self.db.get_history("N700SY")[0].provider, "Starlink")

    def test_rejects_unknown_source(self):
        with self.assertRaises(ValueError):
            self.db.log_verification(LogEntry("N701SY", "spreadsheet", checked_at=NOW))

    def test_record_result_is_one_transaction(self):
        self.db.upsert_aircraft("N702SY", now=NOW)
        bad = AircraftUpdate(VerificationStatus.UNKNOWN, "Starlink", NOW, 0.5, NOW, 0, None)
        with self.assertRaises(sqlite3.IntegrityError):
            self.db.record_result("N702SY", bad, LogEntry("N702SY", SOURCE_GROUND_TRUTH,
                                                          checked_at=NOW))
        self.assertEqual(self.db.get_history("N702SY"), [])

    def test_latest_ground_truth_ignores_errors_and_other_sources(self):
        self.db.log_verification(LogEntry("N703SY", SOURCE_GROUND_TRUTH, True, "Starlink",
                                          checked_at=NOW))
        self.db.log_verification(LogEntry("N703SY", SOURCE_GROUND_TRUTH, error="timeout",
                                          checked_at=NOW + 1))
        self.db.log_verification(LogEntry("N703SY", SOURCE_VENDOR_SCHEDULE, error="429",
                                          checked_at=NOW + 2))
        self.db.log_verification(LogEntry("N704SY", SOURCE_GROUND_TRUTH, False, "Viasat",
                                          checked_at=NOW))
        self.db.log_verification(LogEntry("N704SY", SOURCE_GROUND_TRUTH, True, "Starlink",
                                          checked_at=NOW + 5))

        latest = self.db.latest_ground_truth()
        self.assertEqual(latest["N703SY"].provider, "Starlink")
        self.assertEqual(latest["N704SY"].provider, "Starlink")
        self.assertTrue(latest["N704SY"].has_feature)

        self.assertEqual(self.db.checks_since(NOW - 1), 4)
        self.assertEqual(self.db.checks_since(NOW - 1, source=None), 5)
        self.assertEqual(self.db.log_counts_by_source(),
                         {SOURCE_GROUND_TRUTH: 4, SOURCE_VENDOR_SCHEDULE: 1})

        self.assertEqual(self.db.prune_log(NOW + 1), 2)
        self.assertEqual(len(self.db.get_history("N703SY")), 2)

    def test_history_newest_first(self):
        for i in range(3):
            self.db.log_verification(LogEntry("N705SY", SOURCE_GROUND_TRUTH,
                                              error=f"e{i}", checked_at=NOW + i))
        self.assertEqual([e.error for e in self.db.get_history("N705SY")], ["e2", "e1", "e0"])


class CuratedAndStatsTests(FleetDatabaseTestCase):
    def test_curated_list_replaced(self):
        self.db.replace_curated_list([CuratedEntry("n1", "Starlink"), CuratedEntry("N2", "Viasat")])
        self.db.replace_curated_list([CuratedEntry("N3", "Starlink", "2025-01-01")])
        curated = self.db.get_curated_list()
        self.assertEqual([(c.tail_number, c.declared_provider) for c in curated],
                         [("N3", "Starlink")])
        self.assertEqual(curated[0].installed_on, "2025-01-01")

    def test_status_counts_and_stats(self):
        self.db.upsert_aircraft("N1", now=NOW)
        self.db.upsert_aircraft("N2", now=NOW)
        self.assertEqual(self.db.status_counts(), {"unknown": 2, "confirmed": 0, "negative": 0})
        stats = self.db.get_stats(NOW)
        self.assertEqual(stats["aircraft"], 2)
        self.assertEqual(stats["due_for_check"], 2)


if __name__ == "__main__":
    unittest.main()
