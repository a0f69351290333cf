"""
Ground-truth verification executor.

Runs checker_worker.py in a child Python process for every check so a
hung or crashing browser can never take the scheduler down with it:

  - hard wall-clock timeout; the child runs in its own process group and
    the whole group (browser driver and Chromium included) is killed
    when it expires
  - the result is the last stdout line that decodes to a result object
  - child stderr is forwarded to this module's logger at debug level

Failures never raise out of check(); they come back as CheckResult.error
("timeout", "process_terminated", "malformed_result" or the worker's own
message).
"""

import json
import logging
import os
import re
import signal
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from checker_worker import ERROR_NOT_FOUND
from fleet import Outcome, OutcomeKind
from fleet_db import SOURCE_GROUND_TRUTH, LogEntry, ScheduledFlight

logger = logging.getLogger(__name__)

WORKER_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "checker_worker.py")
DEFAULT_TIMEOUT = 60

RESULT_KEYS = ("has_target_feature", "observed_tail_number", "aircraft_type",
               "provider_name", "error")

ERROR_TIMEOUT = "timeout"
ERROR_TERMINATED = "process_terminated"
ERROR_MALFORMED = "malformed_result"
ERROR_NO_PROVIDER = "no WiFi provider shown"

# The worker loaded and read the page; the flight just had nothing to report
PAGE_ERRORS = frozenset({ERROR_NOT_FOUND, ERROR_NO_PROVIDER})


@dataclass
class CheckResult:
    has_target_feature: bool = False
    observed_tail_number: Optional[str] = None
    aircraft_type: Optional[str] = None
    provider_name: Optional[str] = None
    error: Optional[str] = None


class ExecutorTimeout(Exception):
    """The worker did not finish within the timeout and was killed."""


class ExecutorCrashed(Exception):
    """The worker died (signal or non-zero exit) without reporting a result."""


# ─── Lookup Helpers ───

def icao_to_iata(code: str) -> str:
    """KORD -> ORD, CYYZ -> YYZ. Other codes pass through unchanged."""
    code = (code or "").strip().upper()
    if len(code) == 4 and code[0] in ("K", "C"):
        return code[1:]
    return code


def extract_flight_number(flight_number: str) -> str:
    """'UA4680' -> '4680'. Returned unchanged when there are no trailing digits."""
    m = re.search(r"(\d+)$", flight_number or "")
    return m.group(1) if m else flight_number


def departure_date(departure_time: int) -> str:
    """UTC calendar date of an epoch timestamp, as YYYY-MM-DD."""
    return datetime.fromtimestamp(departure_time, tz=timezone.utc).strftime("%Y-%m-%d")


def parse_worker_output(stdout: str) -> Optional[CheckResult]:
    """Return the last line of `stdout` that is a complete result object."""
    for line in reversed((stdout or "").splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except ValueError:
            continue
        if isinstance(data, dict) and all(k in data for k in RESULT_KEYS):
            return CheckResult(
                has_target_feature=bool(data["has_target_feature"]),
                observed_tail_number=data["observed_tail_number"] or None,
                aircraft_type=data["aircraft_type"] or None,
                provider_name=data["provider_name"] or None,
                error=data["error"] or None,
            )
    return None


# ─── Worker Process ───

def run_worker(cmd: list[str], capture_output: bool = True, text: bool = True,
               timeout: Optional[float] = None, popen: Callable = subprocess.Popen,
               killpg: Callable = os.killpg) -> subprocess.CompletedProcess:
    """subprocess.run for the worker, killing its whole process group on timeout.

    The worker is started in a new session, so the Playwright driver and the
    browsers it launches share its process group and die with it.
    """
    pipe = subprocess.PIPE if capture_output else None
    with popen(cmd, stdout=pipe, stderr=pipe, text=text, start_new_session=True) as proc:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            try:
                killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                logger.debug(f"Worker group {proc.pid} already gone")
            proc.communicate()
            raise
    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


# ─── Executor ───

class GroundTruthExecutor:
    """Runs ground-truth checks in an isolated child process."""

    def __init__(self, target: str = "Starlink", timeout: float = DEFAULT_TIMEOUT,
                 runner: Callable = run_worker, python: str = sys.executable,
                 worker_path: str = WORKER_PATH, marketing_carrier: str = "UA"):
        """
        Args:
            target: Provider name that counts as "has the feature".
            timeout: Seconds before the worker is killed.
            runner: subprocess.run compatible callable (replaced in tests).
        """
        self.target = target
        self.timeout = timeout
        self.runner = runner
        self.python = python
        self.worker_path = worker_path
        self.marketing_carrier = marketing_carrier

    def _run_worker(self, args: list[str]) -> CheckResult:
        cmd = [self.python, self.worker_path, *args, self.target]
        try:
            proc = self.runner(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise ExecutorTimeout(f"worker exceeded {self.timeout}s") from e
        except OSError as e:
            raise ExecutorCrashed(f"worker could not start: {e}") from e

        for line in (proc.stderr or "").splitlines():
            if line.strip():
                logger.debug(f"[worker] {line}")

        result = parse_worker_output(proc.stdout)
        if result is not None:
            return result
        if proc.returncode != 0:
            raise ExecutorCrashed(f"worker exited with code {proc.returncode}")
        return CheckResult(error=ERROR_MALFORMED)

    def check(self, flight_number: str, date: str, origin: str,
              destination: str) -> CheckResult:
        """Look up one flight on the status page. Never raises."""
        try:
            return self._run_worker([flight_number, date, origin, destination])
        except ExecutorTimeout as e:
            logger.warning(f"Check of {flight_number} on {date} timed out: {e}")
            return CheckResult(error=ERROR_TIMEOUT)
        except ExecutorCrashed as e:
            logger.warning(f"Check of {flight_number} on {date} terminated: {e}")
            return CheckResult(error=ERROR_TERMINATED)

    def verify(self, tail_number: str, flight: ScheduledFlight,
               now: Optional[int] = None) -> tuple[Outcome, LogEntry]:
        """Check `tail_number` via one of its scheduled flights.

        Returns the outcome to fold into the aircraft and the audit entry
        to write with it.
        """
        tail_number = tail_number.strip().upper()
        number = extract_flight_number(flight.flight_number)
        date = departure_date(flight.departure_time)
        origin = icao_to_iata(flight.departure_airport)
        destination = icao_to_iata(flight.arrival_airport)
        flight_label = f"{self.marketing_carrier}{number}"

        logger.info(f"Checking {tail_number} via {flight_label} {origin}-{destination} on {date}")
        result = self.check(number, date, origin, destination)

        observed = (result.observed_tail_number or "").upper()
        if observed and observed != tail_number:
            logger.warning(f"Aircraft mismatch: expected {tail_number} but {flight_label} "
                           f"has {observed}, not updating")
            error = f"Aircraft mismatch: flight has {observed}"
            # The reported type belongs to the other aircraft
            outcome = Outcome(OutcomeKind.TAIL_MISMATCH, flight_number=flight_label,
                              observed_tail=observed, error=error)
            entry = LogEntry(tail_number=tail_number, source=SOURCE_GROUND_TRUTH,
                             has_feature=None, provider=None,
                             aircraft_type=result.aircraft_type, flight_number=flight_label,
                             error=error, checked_at=now)
            return outcome, entry

        error = result.error
        if not error and not result.provider_name:
            error = ERROR_NO_PROVIDER

        if error:
            logger.warning(f"{tail_number} error: {error}")
            outcome = Outcome(OutcomeKind.ERROR, aircraft_type=result.aircraft_type,
                              flight_number=flight_label, error=error)
            entry = LogEntry(tail_number=tail_number, source=SOURCE_GROUND_TRUTH,
                             has_feature=None, provider=None,
                             aircraft_type=result.aircraft_type, flight_number=flight_label,
                             error=error, checked_at=now)
            return outcome, entry

        if result.has_target_feature:
            logger.info(f"{tail_number} confirmed {self.target} ({result.provider_name})")
            kind = OutcomeKind.FEATURE_FOUND
        else:
            logger.info(f"{tail_number} no {self.target} ({result.provider_name})")
            kind = OutcomeKind.FEATURE_ABSENT

        outcome = Outcome(kind, provider=result.provider_name,
                          aircraft_type=result.aircraft_type, flight_number=flight_label,
                          observed_tail=observed or None)
        entry = LogEntry(tail_number=tail_number, source=SOURCE_GROUND_TRUTH,
                         has_feature=result.has_target_feature,
                         provider=result.provider_name, aircraft_type=result.aircraft_type,
                         flight_number=flight_label, checked_at=now)
        return outcome, entry
