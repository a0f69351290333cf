"""
Ground-truth WiFi check, run in its own process.

Loads the airline's public flight status page in headless Chromium and
reports which WiFi provider and which aircraft are shown for the flight.

Output protocol:
  - file descriptor 1 is re-pointed at stderr before the browser starts, so
    anything Playwright or Chromium prints ends up in the parent's debug log
  - exactly one JSON object is written, as a single line, to a private
    duplicate of the original stdout

Usage:
    python checker_worker.py <flight_number> <YYYY-MM-DD> <origin> <destination> [target]
    python checker_worker.py 4680 2026-01-01 AUS DEN Starlink
"""

import json
import logging
import os
import re
import sys
from typing import Optional

logger = logging.getLogger(__name__)

STATUS_URL = "https://www.united.com/en/us/flightstatus/details/{flight}/{date}/{origin}/{dest}/UA"
USER_AGENT = ("Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
              "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36")
NAVIGATION_TIMEOUT_MS = 30000
SELECTOR_TIMEOUT_MS = 15000

RESULT_KEYS = ("has_target_feature", "observed_tail_number", "aircraft_type",
               "provider_name", "error")

# Checked in order; the first provider whose markers appear wins
PROVIDER_MARKERS = [
    ("Starlink", ("Internet by Starlink", "Starlink")),
    ("Panasonic", ("Internet by Panasonic", "by Panasonic")),
    ("Viasat", ("Internet by Viasat", "by Viasat")),
    ("Gogo", ("by Gogo", "Gogo Wi-Fi")),
]

NOT_FOUND_MARKERS = ("We couldn't find", "No flights found")
ERROR_NOT_FOUND = "Flight not found"

TAIL_RE = re.compile(r"\|\s*#([A-Z0-9]+)")
TYPE_PATTERNS = [
    re.compile(r"Boeing \d{3}-\d+", re.I),
    re.compile(r"Embraer E-?\d+", re.I),
    re.compile(r"Airbus A\d+", re.I),
    re.compile(r"Boeing \d{3}", re.I),
]


def empty_result(error: Optional[str] = None) -> dict:
    return {
        "has_target_feature": False,
        "observed_tail_number": None,
        "aircraft_type": None,
        "provider_name": None,
        "error": error,
    }


# ─── Page Parsing ───

def detect_provider(text: str) -> Optional[str]:
    for provider, markers in PROVIDER_MARKERS:
        if any(m in text for m in markers):
            return provider
    return None


def extract_tail_number(text: str) -> Optional[str]:
    """'... | #N164SY' -> 'N164SY'. Bare ship numbers get an N prefix."""
    m = TAIL_RE.search(text)
    if not m:
        return None
    tail = m.group(1)
    if not tail.startswith("N"):
        tail = f"N{tail}"
    return tail


def extract_aircraft_type(text: str) -> Optional[str]:
    for pattern in TYPE_PATTERNS:
        m = pattern.search(text)
        if m:
            return m.group(0)
    return None


def parse_status_page(text: str, target: str = "Starlink",
                      has_target_component: bool = False) -> dict:
    """Extract the check result from the visible text of a status page."""
    if any(m in text for m in NOT_FOUND_MARKERS):
        return empty_result(ERROR_NOT_FOUND)

    provider = detect_provider(text)
    if has_target_component and provider is None:
        provider = target

    result = empty_result()
    result["provider_name"] = provider
    result["has_target_feature"] = provider is not None and provider.lower() == target.lower()
    result["observed_tail_number"] = extract_tail_number(text)
    result["aircraft_type"] = extract_aircraft_type(text)
    return result


# ─── Browser ───

def fetch_page_text(flight_number: str, date: str, origin: str, destination: str,
                    target: str) -> tuple[str, bool]:
    """Return (body text, whether a `target`-named page component exists)."""
    from playwright.sync_api import Error as PlaywrightError
    from playwright.sync_api import sync_playwright

    url = STATUS_URL.format(flight=flight_number, date=date, origin=origin, dest=destination)
    logger.info(f"Fetching: {url}")

    with sync_playwright() as p:
        browser = p.chromium.launch(
            headless=True,
            args=[
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-blink-features=AutomationControlled",
            ],
        )
        try:
            context = browser.new_context(
                user_agent=USER_AGENT,
                viewport={"width": 1920, "height": 1080},
                locale="en-US",
                timezone_id="America/Chicago",
                extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
            )
            page = context.new_page()
            page.goto(url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)

            try:
                page.wait_for_selector('[class*="Aircraft"], [class*="error"], .atm-c-alert',
                                       timeout=SELECTOR_TIMEOUT_MS)
            except PlaywrightError:
                logger.debug("Aircraft section did not appear, reading page as is")

            # Amenities are lazy-loaded below the fold
            page.mouse.wheel(0, 1000)
            page.wait_for_timeout(2000)

            amenities = page.locator("text=Inflight amenities").first
            try:
                if amenities.is_visible():
                    amenities.click(timeout=3000)
                    page.wait_for_timeout(1000)
            except PlaywrightError:
                logger.debug("Amenities section not expandable")

            has_component = page.locator(f'[class*="{target}"]').count() > 0
            return page.inner_text("body"), has_component
        finally:
            browser.close()


def run_check(flight_number: str, date: str, origin: str, destination: str,
              target: str = "Starlink") -> dict:
    try:
        text, has_component = fetch_page_text(flight_number, date, origin, destination, target)
    except Exception as e:
        logger.error(f"Status page check failed for {flight_number} on {date}: {e}")
        return empty_result(str(e) or e.__class__.__name__)
    return parse_status_page(text, target, has_component)


# ─── Entry Point ───

def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv

    # Keep a private handle on the real stdout, then send fd 1 to stderr
    result_stream = os.fdopen(os.dup(1), "w")
    os.dup2(2, 1)
    sys.stdout = sys.stderr

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    if len(argv) < 4:
        print(__doc__, file=sys.stderr)
        result = empty_result("usage: flight_number date origin destination [target]")
    else:
        flight_number, date, origin, destination = argv[:4]
        target = argv[4] if len(argv) > 4 else "Starlink"
        result = run_check(flight_number, date, origin, destination, target)

    result_stream.write(json.dumps(result) + "\n")
    result_stream.flush()
    result_stream.close()
    return 1 if result["error"] else 0


if __name__ == "__main__":
    sys.exit(main())
