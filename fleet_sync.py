"""
Inbound fleet updates.

Two feeds add aircraft to the registry:

  - vendor fleet lists (every registration the vendor associates with the
    airline), which seed discovery
  - the curated list of aircraft declared to carry a WiFi provider, which
    is stored as-is for reconciliation

Both only insert or enrich aircraft rows; verification state is owned by
the scheduler.

Fleet file format (YAML):
    aircraft:
      - tail_number: N123SY
        aircraft_type: Embraer E175
        operated_by: SkyWest
    curated:
      - tail_number: N123SY
        provider: Starlink
        installed_on: 2025-03-01
"""

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import yaml

from fleet_db import SOURCE_CURATED_LIST, CuratedEntry, FleetDatabase, LogEntry

logger = logging.getLogger(__name__)

MIN_EXPECTED_AIRCRAFT = 100

EXPRESS_TYPES = re.compile(r"E175|ERJ.?175|CRJ|CR[27]|EMB", re.I)
MAINLINE_TYPES = re.compile(r"737|757|767|777|787|A3[12][09]|A350", re.I)


@dataclass
class SyncResult:
    total: int = 0
    new: int = 0
    updated: int = 0
    error: Optional[str] = None


def determine_fleet_type(aircraft_type: Optional[str]) -> str:
    """'Embraer E175' -> express, 'Boeing 737-900' -> mainline."""
    if not aircraft_type:
        return "unknown"
    if EXPRESS_TYPES.search(aircraft_type):
        return "express"
    if MAINLINE_TYPES.search(aircraft_type):
        return "mainline"
    return "unknown"


def _tail(value) -> str:
    return str(value or "").strip().upper()


def sync_vendor_fleet(db: FleetDatabase, records: Iterable[dict], source: str,
                      min_expected: int = MIN_EXPECTED_AIRCRAFT,
                      now: Optional[int] = None) -> SyncResult:
    """Upsert every aircraft of a vendor fleet list.

    A list shorter than `min_expected` usually means the vendor answered
    with a partial page, so nothing is written.
    """
    now = now if now is not None else int(time.time())
    records = [r for r in records if _tail(r.get("tail_number"))]
    result = SyncResult(total=len(records))

    if len(records) < min_expected:
        result.error = (f"Suspiciously low aircraft count: {len(records)} "
                        f"(expected {min_expected}+)")
        logger.error(f"Fleet sync from {source} aborted: {result.error}")
        return result

    for r in records:
        aircraft_type = r.get("aircraft_type") or None
        is_new = db.upsert_aircraft(
            _tail(r["tail_number"]),
            aircraft_type=aircraft_type,
            source=source,
            fleet=r.get("fleet") or determine_fleet_type(aircraft_type),
            operated_by=r.get("operated_by") or "",
            now=now,
        )
        if is_new:
            result.new += 1
        else:
            result.updated += 1

    logger.info(f"Fleet sync from {source} complete: {result.total} aircraft "
                f"({result.new} new, {result.updated} updated)")
    return result


def sync_curated_list(db: FleetDatabase, entries: Iterable[CuratedEntry],
                      target: str = "Starlink", now: Optional[int] = None) -> SyncResult:
    """Replace the curated list and register every tail on it.

    New or changed declarations are also appended to the verification log
    as curated_list entries.
    """
    now = now if now is not None else int(time.time())
    entries = [e for e in entries if _tail(e.tail_number)]
    for e in entries:
        e.tail_number = _tail(e.tail_number)
        if not e.fleet or e.fleet == "unknown":
            e.fleet = determine_fleet_type(e.aircraft_type)

    previous = {e.tail_number: e for e in db.get_curated_list()}
    db.replace_curated_list(entries, now)

    result = SyncResult(total=len(entries))
    for e in entries:
        if db.upsert_aircraft(e.tail_number, aircraft_type=e.aircraft_type,
                              source=SOURCE_CURATED_LIST, fleet=e.fleet, now=now):
            result.new += 1

        old = previous.get(e.tail_number)
        if old is not None and old.declared_provider == e.declared_provider:
            continue
        result.updated += 1
        db.log_verification(LogEntry(
            tail_number=e.tail_number,
            source=SOURCE_CURATED_LIST,
            has_feature=e.declared_provider.strip().lower() == target.lower(),
            provider=e.declared_provider or None,
            aircraft_type=e.aircraft_type,
            checked_at=now,
        ))

    logger.info(f"Curated list sync complete: {result.total} entries, {result.new} new aircraft, "
                f"{result.updated} new or changed declarations")
    return result


def load_fleet_file(path: str) -> tuple[list[dict], list[CuratedEntry]]:
    """Read a fleet YAML file into (vendor records, curated entries)."""
    with open(Path(path)) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping with 'aircraft' and/or 'curated'")

    records = []
    for item in data.get("aircraft", []) or []:
        if not isinstance(item, dict):
            raise ValueError(f"{path}: aircraft entries must be mappings, got {item!r}")
        records.append({
            "tail_number": _tail(item.get("tail_number")),
            "aircraft_type": item.get("aircraft_type"),
            "operated_by": item.get("operated_by", ""),
            "fleet": item.get("fleet"),
        })

    curated = []
    for item in data.get("curated", []) or []:
        if not isinstance(item, dict):
            raise ValueError(f"{path}: curated entries must be mappings, got {item!r}")
        curated.append(CuratedEntry(
            tail_number=_tail(item.get("tail_number")),
            declared_provider=str(item.get("provider") or ""),
            installed_on=str(item.get("installed_on") or ""),
            aircraft_type=item.get("aircraft_type"),
            fleet=item.get("fleet") or "unknown",
        ))

    logger.info(f"Loaded {len(records)} aircraft and {len(curated)} curated entries from {path}")
    return records, curated
