#!/usr/bin/env python3
"""tentmap invariant checks against the configured database.

Checks:
- config/tentmap.json loads and validates (timezone, crontab, log level).
- Every non-removed marker's counters equal its ledger entries.
- No ledger entries point at markers that do not exist.
"""

import sys
from pathlib import Path

from tentmap.config import Settings
from tentmap.service import TentMapService


ROOT = Path(__file__).resolve().parents[1]


def check(config_dir: Path = ROOT / "config") -> int:
    errors: list[str] = []
    try:
        settings = Settings.from_config_dir(config_dir)
    except ValueError as e:
        print(f"Config invalid: {e}", file=sys.stderr)
        return 1

    if not settings.db_path.exists():
        print(f"No database at {settings.db_path}; nothing to check")
        return 0

    service = TentMapService.from_settings(settings)
    try:
        errors.extend(service.check_consistency())
    except ValueError as e:
        errors.append(f"Corrupt marker data: {e}")

    if errors:
        for error in errors:
            print(f"  {error}", file=sys.stderr)
        print(f"Invariant check FAILED ({len(errors)} problems)", file=sys.stderr)
        return 1

    stats = service.stats()
    print(
        f"Invariant check passed: {stats['markers']['total']} markers, "
        f"{stats['votes']} pending votes"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(check())
