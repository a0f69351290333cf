#!/usr/bin/env python3
"""
WiFiTrack - Fleet WiFi Verification Engine

Keeps track of which aircraft in a fleet carry a given satellite WiFi
service by checking each aircraft's upcoming flights against the airline's
public flight status page. Flight schedules come from one of:

  FR24:        FlightRadar24 (free, rate-limited)
  FlightAware: FlightAware AeroAPI (paid, needs AEROAPI_KEY)
  Mock:        Built-in test data (no network needed)

Usage:
    python main.py                          # Daemon, mode from config.yaml
    python main.py --mode maintenance       # Daemon, slow re-verification cadence
    python main.py --batch 10               # Verify 10 due aircraft and exit
    python main.py --tail N123SY            # Verify one aircraft now
    python main.py --stats                  # Print the fleet report
    python main.py --refresh-flights        # Refresh schedules of confirmed aircraft
    python main.py --requeue-mismatches     # Re-check aircraft disagreeing with the curated list
    python main.py --reset-flight-checks    # Re-fetch every aircraft's schedule on the next refresh
    python main.py --import-fleet fleet.yaml
    python main.py --mock --batch 3         # Mock schedules (no API)

Exit codes:
    0  completed
    1  run failed
    2  setup failed (bad config, missing API key, unreadable database)
"""

import os
import sys
import time
import signal
import logging
import argparse
import sqlite3
from pathlib import Path

import yaml

from data_sources import SourceConfigError, create_source
from fleet_db import FleetDatabase
from fleet_sync import load_fleet_file, sync_curated_list, sync_vendor_fleet
from flight_updater import FlightUpdater
from reconcile import build_report, format_report, requeue_mismatches
from scheduler import CircuitBreaker, FleetScheduler, MODE_INTERVALS
from verifier import GroundTruthExecutor

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("wifitrack")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_SETUP = 2


def load_config(path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    config_path = Path(path)

    # Fall back to example config if default not found
    if not config_path.exists() and path == "config.yaml":
        example = Path(__file__).resolve().parent / "config.example.yaml"
        if example.exists():
            logger.info("No config.yaml found, using config.example.yaml")
            logger.info("  Copy and edit: cp config.example.yaml config.yaml")
            config_path = example

    if not config_path.exists():
        logger.warning(f"Config file '{path}' not found, using defaults")
        return {}

    with open(config_path) as f:
        config = yaml.safe_load(f)

    logger.info(f"Loaded config from {config_path}")
    return config or {}


def setup_logging(config: dict, verbose: bool = False):
    """Apply log level and optional log file from the `logging` section."""
    log_cfg = config.get("logging", {}) or {}
    level_name = "DEBUG" if verbose else str(log_cfg.get("level", "INFO")).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    log_file = log_cfg.get("file")
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        logger.info(f"Logging to {log_file}")


class WiFiTrack:
    """Wires the store, schedule source, executor and schedulers together."""

    def __init__(self, config: dict):
        self.config = config

        db_path = os.environ.get("WIFITRACK_DB") or config.get("database", {}).get("path", "fleet.db")
        self.db = FleetDatabase(
            db_path=db_path,
            busy_timeout=config.get("database", {}).get("busy_timeout_seconds", 30),
        )
        self.db.setup()

        # Create schedule source (flightradar24, flightaware, or mock)
        self.source = create_source(config)

        verify_cfg = config.get("verification", {}) or {}
        self.target = verify_cfg.get("target_provider", "Starlink")
        self.executor = GroundTruthExecutor(
            target=self.target,
            timeout=verify_cfg.get("timeout_seconds", 60),
            marketing_carrier=config.get("source", {}).get("marketing_carrier", "UA"),
        )

        breaker_cfg = config.get("circuit_breaker", {}) or {}
        self.scheduler = FleetScheduler(
            db=self.db,
            source=self.source,
            executor=self.executor,
            batch_size=verify_cfg.get("batch_size", 3),
            breaker=CircuitBreaker(
                threshold=breaker_cfg.get("failure_threshold", 5),
                cooldown=breaker_cfg.get("cooldown_minutes", 30) * 60,
            ),
        )

        refresh_cfg = config.get("flight_refresh", {}) or {}
        self.refresh_enabled = refresh_cfg.get("enabled", True)
        self.refresh_interval = refresh_cfg.get("interval_hours", 8) * 3600
        self.updater = FlightUpdater(
            db=self.db,
            source=self.source,
            batch_size=refresh_cfg.get("batch_size", 5),
            breaker=CircuitBreaker(
                threshold=breaker_cfg.get("failure_threshold", 5),
                cooldown=breaker_cfg.get("cooldown_minutes", 30) * 60,
                name="flight refresh",
            ),
        )

    def run(self, mode: str):
        """Run the scheduler until interrupted."""
        def _stop(signum, frame):
            logger.info(f"Received signal {signum}, stopping")
            self.scheduler.stop()

        signal.signal(signal.SIGTERM, _stop)
        self.scheduler.run_forever(
            mode=mode,
            flight_updater=self.updater if self.refresh_enabled else None,
            refresh_interval=self.refresh_interval,
        )

    def cleanup(self):
        """Clean up resources."""
        logger.info("Shutting down...")
        self.scheduler.stop()
        self.source.close()
        self.db.close()


def print_batch(stats):
    print(f"Checked:       {stats.checked}")
    print(f"  Confirmed:   {stats.confirmed}")
    print(f"  Negative:    {stats.negative}")
    print(f"  Errors:      {stats.errors}")
    print(f"  No flights:  {stats.no_flights}")
    if stats.mismatches:
        print(f"  Mismatches:  {stats.mismatches}")


def import_fleet(app: WiFiTrack, path: str, min_expected: int):
    records, curated = load_fleet_file(path)
    if records:
        result = sync_vendor_fleet(app.db, records, source="import", min_expected=min_expected)
        if result.error:
            print(f"Fleet list rejected: {result.error}")
        else:
            print(f"Fleet list:   {result.total:,} aircraft ({result.new:,} new)")
    if curated:
        result = sync_curated_list(app.db, curated, target=app.target)
        print(f"Curated list: {result.total:,} entries ({result.updated:,} new or changed)")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="WiFiTrack - Fleet WiFi Verification Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", "-c", default="config.yaml",
                        help="Path to config file (default: config.yaml)")
    parser.add_argument("--mode", choices=sorted(MODE_INTERVALS),
                        help="Daemon cadence (overrides config)")
    parser.add_argument("--batch", "-b", type=int, metavar="N",
                        help="Verify up to N due aircraft and exit")
    parser.add_argument("--tail", "-t", metavar="TAIL",
                        help="Verify one aircraft now and exit")
    parser.add_argument("--stats", action="store_true",
                        help="Print the fleet report and exit")
    parser.add_argument("--refresh-flights", action="store_true",
                        help="Refresh upcoming flights of confirmed aircraft and exit")
    parser.add_argument("--requeue-mismatches", action="store_true",
                        help="Make aircraft that disagree with the curated list due now")
    parser.add_argument("--reset-flight-checks", action="store_true",
                        help="Make every aircraft's schedule due for a refresh")
    parser.add_argument("--import-fleet", metavar="FILE",
                        help="Import a fleet YAML file (aircraft and curated lists)")
    parser.add_argument("--min-expected", type=int, default=None,
                        help="Minimum size of an imported fleet list")
    parser.add_argument("--prune-log", type=int, metavar="DAYS",
                        help="Delete verification log entries older than DAYS")
    parser.add_argument("--mock", "-m", action="store_true",
                        help="Use mock schedule data (no API needed)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Could not read config: {e}")
        sys.exit(EXIT_SETUP)
    setup_logging(config, args.verbose)

    # CLI overrides
    if args.mock:
        config["_use_mock"] = True

    try:
        app = WiFiTrack(config)
    except SourceConfigError as e:
        logger.error(f"Setup failed: {e}")
        sys.exit(EXIT_SETUP)
    except sqlite3.Error as e:
        logger.error(f"Could not open database: {e}")
        sys.exit(EXIT_SETUP)

    code = EXIT_OK
    try:
        if args.import_fleet:
            min_expected = args.min_expected
            if min_expected is None:
                min_expected = config.get("fleet_sync", {}).get("min_expected_aircraft", 100)
            import_fleet(app, args.import_fleet, min_expected)
        if args.prune_log is not None:
            before = int(time.time()) - args.prune_log * 86400
            print(f"Pruned {app.db.prune_log(before):,} log entries")
        if args.requeue_mismatches:
            print(f"Requeued {requeue_mismatches(app.db)} mismatched aircraft")
        if args.reset_flight_checks:
            print(f"Reset flight checks on {app.db.reset_flight_checks():,} aircraft")
        if args.refresh_flights:
            print(f"Refreshed {app.updater.run(force=True)} aircraft")
        if args.tail:
            outcome = app.scheduler.verify_tail(args.tail)
            print(f"{args.tail.upper()}: {outcome.kind.value}"
                  + (f" ({outcome.provider})" if outcome.provider else "")
                  + (f" - {outcome.error}" if outcome.error else ""))
        if args.batch:
            print_batch(app.scheduler.run_checks(args.batch))
        if args.stats:
            print(format_report(build_report(app.db)))

        one_shot = (args.import_fleet or args.prune_log is not None or args.requeue_mismatches
                    or args.reset_flight_checks or args.refresh_flights or args.tail
                    or args.batch or args.stats)
        if not one_shot:
            mode = args.mode or config.get("scheduler", {}).get("mode", "discovery")
            app.run(mode)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Failed: {e}")
        code = EXIT_FAILED
    except sqlite3.Error as e:
        logger.error(f"Database error: {e}")
        code = EXIT_FAILED
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        code = EXIT_FAILED
    finally:
        app.cleanup()
    sys.exit(code)


if __name__ == "__main__":
    main()
