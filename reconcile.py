"""
Fleet reconciliation report.

Compares what the ground-truth checks have seen against the curated list
and summarizes verification activity. Everything here is read-only except
requeue_mismatches(), which only moves scheduling floors.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from fleet import VerificationStatus
from fleet_db import SOURCE_GROUND_TRUTH, FleetDatabase, LogEntry

logger = logging.getLogger(__name__)

DAY = 24 * 3600


@dataclass
class Mismatch:
    """The curated list and the latest ground-truth check disagree."""
    tail_number: str
    declared_provider: str
    verified_provider: str
    checked_at: int


@dataclass
class FleetReport:
    generated_at: int
    status_counts: dict[str, int]
    mismatches: list[Mismatch] = field(default_factory=list)
    checks_last_24h: int = 0
    log_counts: dict[str, int] = field(default_factory=dict)
    new_discoveries: list[str] = field(default_factory=list)
    recent_checks: list[LogEntry] = field(default_factory=list)
    stats: dict = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.status_counts.values())


def find_mismatches(db: FleetDatabase) -> list[Mismatch]:
    """Curated declarations that the latest clean ground-truth check contradicts.

    Providers are compared case-insensitively. Tails never checked are not
    mismatches.
    """
    latest = db.latest_ground_truth()
    mismatches = []
    for entry in db.get_curated_list():
        check = latest.get(entry.tail_number)
        if check is None or not check.provider:
            continue
        declared = (entry.declared_provider or "").strip()
        if declared.lower() != check.provider.strip().lower():
            mismatches.append(Mismatch(
                tail_number=entry.tail_number,
                declared_provider=declared,
                verified_provider=check.provider,
                checked_at=check.checked_at or 0,
            ))
    return mismatches


def find_new_discoveries(db: FleetDatabase) -> list[str]:
    """Confirmed aircraft that the curated list does not know about yet."""
    curated = {e.tail_number for e in db.get_curated_list()}
    return [
        a.tail_number
        for a in db.list_aircraft(VerificationStatus.CONFIRMED)
        if a.tail_number not in curated
    ]


def build_report(db: FleetDatabase, now: Optional[int] = None) -> FleetReport:
    now = now if now is not None else int(time.time())
    return FleetReport(
        generated_at=now,
        status_counts=db.status_counts(),
        mismatches=find_mismatches(db),
        checks_last_24h=db.checks_since(now - DAY),
        log_counts=db.log_counts_by_source(),
        new_discoveries=find_new_discoveries(db),
        recent_checks=db.recent_log(SOURCE_GROUND_TRUTH, limit=5),
        stats=db.get_stats(now),
    )


def _format_time(ts: int) -> str:
    if not ts:
        return "never"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def format_report(report: FleetReport, max_rows: int = 20) -> str:
    counts = report.status_counts
    lines = [
        f"Aircraft:             {report.total:,}",
        f"  Confirmed:          {counts.get('confirmed', 0):,}",
        f"  Negative:           {counts.get('negative', 0):,}",
        f"  Unknown:            {counts.get('unknown', 0):,}",
        f"Due for check:        {report.stats.get('due_for_check', 0):,}",
        f"Future flights:       {report.stats.get('future_flights', 0):,}",
        f"  Aircraft covered:   {report.stats.get('aircraft_with_flights', 0):,}",
        f"Checks (last 24h):    {report.checks_last_24h:,}",
        "Log entries by source:",
    ]
    for source, n in sorted(report.log_counts.items()):
        lines.append(f"  {source:<19} {n:,}")

    lines.append(f"Mismatches:           {len(report.mismatches)}")
    for m in report.mismatches[:max_rows]:
        lines.append(f"  {m.tail_number}: curated={m.declared_provider}, "
                     f"verified={m.verified_provider} ({_format_time(m.checked_at)})")
    if len(report.mismatches) > max_rows:
        lines.append(f"  ... and {len(report.mismatches) - max_rows} more")

    lines.append(f"New discoveries:      {len(report.new_discoveries)}")
    for tail in report.new_discoveries[:max_rows]:
        lines.append(f"  {tail}")
    if len(report.new_discoveries) > max_rows:
        lines.append(f"  ... and {len(report.new_discoveries) - max_rows} more")

    lines.append("Recent checks:")
    for e in report.recent_checks:
        if e.error:
            result = f"error: {e.error}"
        else:
            result = e.provider or "-"
        lines.append(f"  {e.tail_number:<9} {_format_time(e.checked_at)}  "
                     f"{e.flight_number or '':<8} {result}")
    if not report.recent_checks:
        lines.append("  none")
    return "\n".join(lines)


def requeue_mismatches(db: FleetDatabase, now: Optional[int] = None) -> int:
    """Make every mismatched aircraft due for another check right away.

    The audit log is left as it is; the next check adds to it.
    """
    now = now if now is not None else int(time.time())
    mismatches = find_mismatches(db)
    for m in mismatches:
        logger.info(f"Requeueing {m.tail_number}: curated={m.declared_provider}, "
                    f"verified={m.verified_provider}")
    count = db.schedule_recheck([m.tail_number for m in mismatches], now)
    logger.info(f"Requeued {count} mismatched aircraft")
    return count
