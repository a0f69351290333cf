"""
Persistent store for WiFiTrack.

A single SQLite file holds all cross-run state:

  fleet_aircraft     one row per tail number, verification state + schedule
  upcoming_flights   next flights per tail, replaced wholesale on refresh
  verification_log   append-only audit trail of every check
  curated_aircraft   the manually curated list, written by ingestion only

The database runs in WAL mode with a busy timeout so the background
scheduler and a foreground reader can share it. One connection is shared
between threads; an internal lock serializes access to it.

Usage:
    db = FleetDatabase("fleet.db")
    db.setup()          # Creates tables, runs additive migrations
    db.get_next_candidates(limit=3)
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Optional

from fleet import (
    Aircraft,
    AircraftUpdate,
    VerificationStatus,
    priority_score,
)

logger = logging.getLogger(__name__)

# Anything departing before 2000-01-01 (epoch seconds) is a corrupted timestamp
MIN_VALID_TIMESTAMP = 946684800

SOURCE_GROUND_TRUTH = "ground_truth"
SOURCE_VENDOR_SCHEDULE = "vendor_schedule"
SOURCE_CURATED_LIST = "curated_list"
LOG_SOURCES = (SOURCE_GROUND_TRUTH, SOURCE_VENDOR_SCHEDULE, SOURCE_CURATED_LIST)

# Columns added after the first release. Checked against PRAGMA table_info
# on every start; only missing ones are added.
COLUMN_MIGRATIONS = [
    ("fleet_aircraft", "discovery_priority", "REAL DEFAULT 0.5"),
    ("fleet_aircraft", "next_check_after", "INTEGER DEFAULT 0"),
    ("fleet_aircraft", "check_attempts", "INTEGER DEFAULT 0"),
    ("fleet_aircraft", "last_error", "TEXT"),
    ("fleet_aircraft", "last_flight_check", "INTEGER DEFAULT 0"),
    ("fleet_aircraft", "flight_check_ok", "INTEGER DEFAULT 0"),
    ("fleet_aircraft", "flight_check_failures", "INTEGER DEFAULT 0"),
    ("verification_log", "aircraft_type", "TEXT"),
    ("verification_log", "flight_number", "TEXT"),
    ("curated_aircraft", "fleet", "TEXT DEFAULT 'unknown'"),
]


@dataclass
class ScheduledFlight:
    tail_number: str
    flight_number: str
    departure_airport: str
    arrival_airport: str
    departure_time: int
    arrival_time: int
    last_updated: int = 0


@dataclass
class LogEntry:
    """One verification_log row."""
    tail_number: str
    source: str
    has_feature: Optional[bool] = None
    provider: Optional[str] = None
    aircraft_type: Optional[str] = None
    flight_number: Optional[str] = None
    error: Optional[str] = None
    checked_at: Optional[int] = None
    id: Optional[int] = None


@dataclass
class CuratedEntry:
    tail_number: str
    declared_provider: str
    installed_on: str = ""
    aircraft_type: Optional[str] = None
    fleet: str = "unknown"


def _now() -> int:
    return int(time.time())


def _bool_or_none(value) -> Optional[bool]:
    return None if value is None else bool(value)


class FleetDatabase:
    """SQLite-backed fleet registry, flight schedule and audit log."""

    def __init__(self, db_path: str = "fleet.db", busy_timeout: float = 30.0):
        """
        Args:
            db_path: Path to SQLite database file (":memory:" for tests).
            busy_timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def setup(self):
        """Open the database, create tables and apply pending migrations."""
        self._conn = sqlite3.connect(
            self.db_path, timeout=self.busy_timeout, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        mode = self._conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]
        self._conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout * 1000)}")
        logger.debug(f"Opened {self.db_path} (journal_mode={mode})")

        with self._lock:
            self._create_tables()
            self._migrate()
            self._create_indexes()

        purged = self.purge_corrupted_flights()
        if purged:
            logger.warning(f"Startup: purged {purged} flights with corrupted timestamps")

        count = self._conn.execute("SELECT COUNT(*) FROM fleet_aircraft").fetchone()[0]
        logger.info(f"Fleet database: {count:,} aircraft")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("FleetDatabase.setup() has not been called")
        return self._conn

    def _create_tables(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS fleet_aircraft (
                tail_number TEXT PRIMARY KEY,
                aircraft_type TEXT,
                fleet TEXT DEFAULT 'unknown',
                operated_by TEXT DEFAULT '',
                first_seen INTEGER DEFAULT 0,
                last_seen INTEGER DEFAULT 0,
                discovery_source TEXT DEFAULT '',
                verification_status TEXT NOT NULL DEFAULT 'unknown',
                verified_wifi TEXT,
                verified_at INTEGER,
                discovery_priority REAL DEFAULT 0.5,
                next_check_after INTEGER DEFAULT 0,
                check_attempts INTEGER DEFAULT 0,
                last_error TEXT,
                last_flight_check INTEGER DEFAULT 0,
                flight_check_ok INTEGER DEFAULT 0,
                flight_check_failures INTEGER DEFAULT 0,
                CHECK (verification_status IN ('unknown', 'confirmed', 'negative')),
                CHECK (verification_status != 'unknown' OR verified_wifi IS NULL)
            );
            CREATE TABLE IF NOT EXISTS upcoming_flights (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tail_number TEXT NOT NULL,
                flight_number TEXT NOT NULL,
                departure_airport TEXT DEFAULT '',
                arrival_airport TEXT DEFAULT '',
                departure_time INTEGER NOT NULL,
                arrival_time INTEGER DEFAULT 0,
                last_updated INTEGER DEFAULT 0,
                FOREIGN KEY (tail_number) REFERENCES fleet_aircraft(tail_number)
            );
            -- Audit trail. Rows are never updated; see trg_log_append_only.
            CREATE TABLE IF NOT EXISTS verification_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tail_number TEXT NOT NULL,
                source TEXT NOT NULL,
                checked_at INTEGER NOT NULL,
                has_feature INTEGER,
                provider TEXT,
                aircraft_type TEXT,
                flight_number TEXT,
                error TEXT
            );
            CREATE TRIGGER IF NOT EXISTS trg_log_append_only
                BEFORE UPDATE ON verification_log
                BEGIN
                    SELECT RAISE(ABORT, 'verification_log is append-only');
                END;

            CREATE TABLE IF NOT EXISTS curated_aircraft (
                tail_number TEXT PRIMARY KEY,
                declared_provider TEXT DEFAULT '',
                installed_on TEXT DEFAULT '',
                aircraft_type TEXT,
                fleet TEXT DEFAULT 'unknown',
                updated_at INTEGER DEFAULT 0
            );
        """)

    def _create_indexes(self):
        # After migrations: some indexed columns may have just been added
        self._conn.executescript("""
            CREATE INDEX IF NOT EXISTS idx_fleet_queue
                ON fleet_aircraft(verification_status, discovery_priority DESC);
            CREATE INDEX IF NOT EXISTS idx_fleet_next_check
                ON fleet_aircraft(next_check_after);
            CREATE INDEX IF NOT EXISTS idx_flights_tail
                ON upcoming_flights(tail_number, departure_time);
            CREATE INDEX IF NOT EXISTS idx_log_tail ON verification_log(tail_number, id);
            CREATE INDEX IF NOT EXISTS idx_log_checked ON verification_log(checked_at);
        """)

    def _columns(self, table: str) -> set[str]:
        return {row["name"] for row in self._conn.execute(f"PRAGMA table_info({table})")}

    def _migrate(self):
        applied = []
        for table, column, ddl in COLUMN_MIGRATIONS:
            if column in self._columns(table):
                continue
            self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            applied.append(f"{table}.{column}")

        if "fleet_aircraft.discovery_priority" in applied:
            # Rows that predate priorities get a real score instead of the default
            rows = self._conn.execute(
                "SELECT tail_number, verification_status, aircraft_type FROM fleet_aircraft"
            ).fetchall()
            for row in rows:
                score = priority_score(row["tail_number"],
                                       VerificationStatus(row["verification_status"]),
                                       row["aircraft_type"])
                self._conn.execute(
                    "UPDATE fleet_aircraft SET discovery_priority = ? WHERE tail_number = ?",
                    (score, row["tail_number"]),
                )

        self._conn.commit()
        if applied:
            logger.info(f"Database migrations completed: {', '.join(applied)}")

    # ─── Aircraft ───

    def upsert_aircraft(self, tail_number: str, aircraft_type: Optional[str] = None,
                        source: str = "", fleet: Optional[str] = None,
                        operated_by: Optional[str] = None,
                        now: Optional[int] = None) -> bool:
        """Record a sighting of `tail_number`. Returns True if it was new.

        Existing rows only have empty fields filled in and last_seen bumped;
        verification state is never touched here.
        """
        tail_number = tail_number.strip().upper()
        now = now if now is not None else _now()
        with self._lock, self.conn:
            existing = self.conn.execute(
                "SELECT * FROM fleet_aircraft WHERE tail_number = ?", (tail_number,)
            ).fetchone()

            if existing is None:
                self.conn.execute(
                    """INSERT INTO fleet_aircraft
                       (tail_number, aircraft_type, fleet, operated_by, first_seen,
                        last_seen, discovery_source, verification_status,
                        discovery_priority, next_check_after)
                       VALUES (?,?,?,?,?,?,?,?,?,?)""",
                    (
                        tail_number,
                        aircraft_type or None,
                        fleet or "unknown",
                        operated_by or "",
                        now,
                        now,
                        source,
                        VerificationStatus.UNKNOWN.value,
                        priority_score(tail_number, VerificationStatus.UNKNOWN, aircraft_type),
                        0,
                    ),
                )
                return True

            new_type = aircraft_type or existing["aircraft_type"]
            new_fleet = existing["fleet"]
            if fleet and fleet != "unknown":
                new_fleet = fleet
            status = VerificationStatus(existing["verification_status"])
            self.conn.execute(
                """UPDATE fleet_aircraft
                   SET aircraft_type = ?, fleet = ?, operated_by = ?, last_seen = ?,
                       discovery_priority = ?
                   WHERE tail_number = ?""",
                (
                    new_type,
                    new_fleet,
                    operated_by or existing["operated_by"],
                    max(now, existing["last_seen"] or 0),
                    priority_score(tail_number, status, new_type),
                    tail_number,
                ),
            )
            return False

    def get_aircraft(self, tail_number: str) -> Optional[Aircraft]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM fleet_aircraft WHERE tail_number = ?",
                (tail_number.strip().upper(),),
            ).fetchone()
        return Aircraft.from_row(row) if row else None

    def list_aircraft(self, status: Optional[VerificationStatus] = None) -> list[Aircraft]:
        query = "SELECT * FROM fleet_aircraft"
        params: tuple = ()
        if status is not None:
            query += " WHERE verification_status = ?"
            params = (VerificationStatus(status).value,)
        query += " ORDER BY tail_number"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [Aircraft.from_row(r) for r in rows]

    def get_next_candidates(self, limit: int = 1, now: Optional[int] = None) -> list[Aircraft]:
        """Aircraft due for verification, best candidates first.

        Order: unknown, then negative, then confirmed; within a status by
        discovery priority, then most recently seen.
        """
        now = now if now is not None else _now()
        with self._lock:
            rows = self.conn.execute(
                """SELECT * FROM fleet_aircraft
                   WHERE next_check_after <= ?
                   ORDER BY CASE verification_status
                                WHEN 'unknown' THEN 0
                                WHEN 'negative' THEN 1
                                ELSE 2
                            END,
                            discovery_priority DESC,
                            last_seen DESC,
                            tail_number ASC
                   LIMIT ?""",
                (now, limit),
            ).fetchall()
        return [Aircraft.from_row(r) for r in rows]

    def record_result(self, tail_number: str, update: AircraftUpdate, entry: LogEntry):
        """Write a check's audit entry and the aircraft's new state atomically."""
        with self._lock, self.conn:
            self._insert_log(entry)
            self.conn.execute(
                """UPDATE fleet_aircraft
                   SET verification_status = ?, verified_wifi = ?, verified_at = ?,
                       discovery_priority = ?, next_check_after = ?,
                       check_attempts = ?, last_error = ?
                   WHERE tail_number = ?""",
                (
                    update.verification_status.value,
                    update.verified_wifi,
                    update.verified_at,
                    update.discovery_priority,
                    update.next_check_after,
                    update.check_attempts,
                    update.last_error,
                    tail_number,
                ),
            )

    def schedule_recheck(self, tail_numbers: Iterable[str], now: Optional[int] = None) -> int:
        """Make aircraft eligible for verification immediately."""
        now = now if now is not None else _now()
        changed = 0
        with self._lock, self.conn:
            for tail in tail_numbers:
                cur = self.conn.execute(
                    "UPDATE fleet_aircraft SET next_check_after = ? WHERE tail_number = ?",
                    (now, tail),
                )
                changed += cur.rowcount
        return changed

    # ─── Upcoming Flights ───

    def replace_flights(self, tail_number: str, flights: Iterable,
                        now: Optional[int] = None) -> int:
        """Replace all stored flights for a tail in a single transaction.

        `flights` are objects with flight_number, departure_airport,
        arrival_airport, departure_time and arrival_time attributes. Entries
        with a departure below MIN_VALID_TIMESTAMP are dropped.
        """
        now = now if now is not None else _now()
        rows = []
        for f in flights:
            if not f.departure_time or f.departure_time < MIN_VALID_TIMESTAMP:
                logger.warning(f"Discarding {f.flight_number} for {tail_number}: "
                               f"corrupted departure time {f.departure_time}")
                continue
            rows.append((
                tail_number,
                f.flight_number,
                f.departure_airport,
                f.arrival_airport,
                int(f.departure_time),
                int(f.arrival_time or 0),
                now,
            ))

        with self._lock, self.conn:
            self.conn.execute("DELETE FROM upcoming_flights WHERE tail_number = ?", (tail_number,))
            self.conn.executemany(
                """INSERT INTO upcoming_flights
                   (tail_number, flight_number, departure_airport, arrival_airport,
                    departure_time, arrival_time, last_updated)
                   VALUES (?,?,?,?,?,?,?)""",
                rows,
            )
        return len(rows)

    def purge_corrupted_flights(self) -> int:
        """Delete flights with impossible departure times.

        Affected aircraft get their flight check reset so fresh schedules are
        fetched on the next refresh.
        """
        with self._lock, self.conn:
            tails = [r[0] for r in self.conn.execute(
                "SELECT DISTINCT tail_number FROM upcoming_flights WHERE departure_time < ?",
                (MIN_VALID_TIMESTAMP,),
            )]
            if not tails:
                return 0
            deleted = self.conn.execute(
                "DELETE FROM upcoming_flights WHERE departure_time < ?",
                (MIN_VALID_TIMESTAMP,),
            ).rowcount
            self.conn.executemany(
                "UPDATE fleet_aircraft SET last_flight_check = 0 WHERE tail_number = ?",
                [(t,) for t in tails],
            )
        logger.warning(f"Purged {deleted} corrupted flights for {len(tails)} aircraft")
        return deleted

    def get_upcoming_flights(self, tail_number: Optional[str] = None,
                             now: Optional[int] = None,
                             limit: Optional[int] = None) -> list[ScheduledFlight]:
        now = now if now is not None else _now()
        self.purge_corrupted_flights()

        query = "SELECT * FROM upcoming_flights WHERE departure_time > ? AND departure_time > ?"
        params: list = [now, MIN_VALID_TIMESTAMP]
        if tail_number:
            query += " AND tail_number = ?"
            params.append(tail_number)
        query += " ORDER BY departure_time ASC, id ASC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            ScheduledFlight(
                tail_number=r["tail_number"],
                flight_number=r["flight_number"],
                departure_airport=r["departure_airport"],
                arrival_airport=r["arrival_airport"],
                departure_time=r["departure_time"],
                arrival_time=r["arrival_time"],
                last_updated=r["last_updated"],
            )
            for r in rows
        ]

    def get_departure_window(self, tail_number: str,
                             now: Optional[int] = None) -> tuple[Optional[int], Optional[int]]:
        """(next departure, latest departure) among future flights, or Nones."""
        now = now if now is not None else _now()
        with self._lock:
            row = self.conn.execute(
                """SELECT MIN(departure_time), MAX(departure_time) FROM upcoming_flights
                   WHERE tail_number = ? AND departure_time > ? AND departure_time > ?""",
                (tail_number, now, MIN_VALID_TIMESTAMP),
            ).fetchone()
        return row[0], row[1]

    def mark_flight_check(self, tail_number: str, ok: bool, now: Optional[int] = None):
        now = now if now is not None else _now()
        with self._lock, self.conn:
            if ok:
                self.conn.execute(
                    """UPDATE fleet_aircraft SET last_flight_check = ?, flight_check_ok = 1,
                       flight_check_failures = 0 WHERE tail_number = ?""",
                    (now, tail_number),
                )
            else:
                self.conn.execute(
                    """UPDATE fleet_aircraft SET last_flight_check = ?, flight_check_ok = 0,
                       flight_check_failures = flight_check_failures + 1
                       WHERE tail_number = ?""",
                    (now, tail_number),
                )

    def reset_flight_checks(self) -> int:
        """Force every aircraft's schedule to be re-fetched. Flights are kept."""
        with self._lock, self.conn:
            return self.conn.execute("UPDATE fleet_aircraft SET last_flight_check = 0").rowcount

    # ─── Verification Log ───

    def _insert_log(self, entry: LogEntry) -> int:
        if entry.source not in LOG_SOURCES:
            raise ValueError(f"unknown verification source {entry.source!r}")
        cur = self.conn.execute(
            """INSERT INTO verification_log
               (tail_number, source, checked_at, has_feature, provider,
                aircraft_type, flight_number, error)
               VALUES (?,?,?,?,?,?,?,?)""",
            (
                entry.tail_number,
                entry.source,
                entry.checked_at if entry.checked_at is not None else _now(),
                None if entry.has_feature is None else int(entry.has_feature),
                entry.provider,
                entry.aircraft_type,
                entry.flight_number,
                entry.error,
            ),
        )
        return cur.lastrowid

    def log_verification(self, entry: LogEntry) -> int:
        with self._lock, self.conn:
            return self._insert_log(entry)

    @staticmethod
    def _entry_from_row(row) -> LogEntry:
        return LogEntry(
            id=row["id"],
            tail_number=row["tail_number"],
            source=row["source"],
            checked_at=row["checked_at"],
            has_feature=_bool_or_none(row["has_feature"]),
            provider=row["provider"],
            aircraft_type=row["aircraft_type"],
            flight_number=row["flight_number"],
            error=row["error"],
        )

    def get_history(self, tail_number: str, limit: int = 50) -> list[LogEntry]:
        """Most recent log entries for one tail, newest first."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT * FROM verification_log WHERE tail_number = ?
                   ORDER BY id DESC LIMIT ?""",
                (tail_number.strip().upper(), limit),
            ).fetchall()
        return [self._entry_from_row(r) for r in rows]

    def recent_log(self, source: Optional[str] = None, limit: int = 5) -> list[LogEntry]:
        query = "SELECT * FROM verification_log"
        params: list = []
        if source:
            query += " WHERE source = ?"
            params.append(source)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._entry_from_row(r) for r in rows]

    def latest_ground_truth(self) -> dict[str, LogEntry]:
        """Latest clean ground-truth answer with a provider, keyed by tail."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT v.* FROM verification_log v
                   JOIN (
                       SELECT MAX(id) AS max_id FROM verification_log
                       WHERE source = ? AND error IS NULL AND provider IS NOT NULL
                       GROUP BY tail_number
                   ) latest ON v.id = latest.max_id""",
                (SOURCE_GROUND_TRUTH,),
            ).fetchall()
        return {r["tail_number"]: self._entry_from_row(r) for r in rows}

    def checks_since(self, since: int, source: Optional[str] = SOURCE_GROUND_TRUTH) -> int:
        query = "SELECT COUNT(*) FROM verification_log WHERE checked_at > ?"
        params: list = [since]
        if source:
            query += " AND source = ?"
            params.append(source)
        with self._lock:
            return self.conn.execute(query, params).fetchone()[0]

    def log_counts_by_source(self) -> dict[str, int]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT source, COUNT(*) AS n FROM verification_log GROUP BY source"
            ).fetchall()
        return {r["source"]: r["n"] for r in rows}

    def prune_log(self, before: int) -> int:
        """Maintenance only: drop audit entries older than `before`."""
        with self._lock, self.conn:
            deleted = self.conn.execute(
                "DELETE FROM verification_log WHERE checked_at < ?", (before,)
            ).rowcount
        logger.info(f"Pruned {deleted} verification log entries")
        return deleted

    # ─── Curated List ───

    def replace_curated_list(self, entries: Iterable[CuratedEntry],
                             now: Optional[int] = None) -> int:
        now = now if now is not None else _now()
        rows = [
            (e.tail_number.strip().upper(), e.declared_provider, e.installed_on,
             e.aircraft_type, e.fleet or "unknown", now)
            for e in entries
            if e.tail_number
        ]
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM curated_aircraft")
            self.conn.executemany(
                """INSERT OR REPLACE INTO curated_aircraft
                   (tail_number, declared_provider, installed_on, aircraft_type, fleet, updated_at)
                   VALUES (?,?,?,?,?,?)""",
                rows,
            )
        return len(rows)

    def get_curated_list(self) -> list[CuratedEntry]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM curated_aircraft ORDER BY tail_number"
            ).fetchall()
        return [
            CuratedEntry(
                tail_number=r["tail_number"],
                declared_provider=r["declared_provider"] or "",
                installed_on=r["installed_on"] or "",
                aircraft_type=r["aircraft_type"],
                fleet=r["fleet"] or "unknown",
            )
            for r in rows
        ]

    # ─── Stats ───

    def status_counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in VerificationStatus}
        with self._lock:
            for row in self.conn.execute(
                "SELECT verification_status, COUNT(*) AS n FROM fleet_aircraft "
                "GROUP BY verification_status"
            ):
                counts[row["verification_status"]] = row["n"]
        return counts

    def get_stats(self, now: Optional[int] = None) -> dict:
        """Return database statistics."""
        if not self._conn:
            return {"aircraft": 0}
        now = now if now is not None else _now()
        with self._lock:
            aircraft = self.conn.execute("SELECT COUNT(*) FROM fleet_aircraft").fetchone()[0]
            due = self.conn.execute(
                "SELECT COUNT(*) FROM fleet_aircraft WHERE next_check_after <= ?", (now,)
            ).fetchone()[0]
            flights = self.conn.execute("SELECT COUNT(*) FROM upcoming_flights").fetchone()[0]
            future = self.conn.execute(
                "SELECT COUNT(*) FROM upcoming_flights WHERE departure_time > ?", (now,)
            ).fetchone()[0]
            with_flights = self.conn.execute(
                "SELECT COUNT(DISTINCT tail_number) FROM upcoming_flights WHERE departure_time > ?",
                (now,),
            ).fetchone()[0]
            log_entries = self.conn.execute("SELECT COUNT(*) FROM verification_log").fetchone()[0]
            curated = self.conn.execute("SELECT COUNT(*) FROM curated_aircraft").fetchone()[0]
        return {
            "aircraft": aircraft,
            "due_for_check": due,
            "flights": flights,
            "future_flights": future,
            "aircraft_with_flights": with_flights,
            "log_entries": log_entries,
            "curated": curated,
        }

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None
