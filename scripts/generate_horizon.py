from __future__ import annotations

import argparse
import asyncio
import json

from taxcalendar.core.logging import configure_logging
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.services.calendar.horizon import extend_generation_horizon


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sweep overdue events and materialize the calendar horizon for entitled organizations"
    )
    parser.add_argument("--horizon-days", type=int, default=None, help="Override GENERATION_HORIZON_DAYS")
    return parser


async def run(horizon_days: int | None) -> int:
    summary = await extend_generation_horizon(session_factory=SessionLocal, horizon_days=horizon_days)
    print(json.dumps(summary.as_dict(), sort_keys=True))
    # Non-zero exit lets cron wrappers alert on partial runs.
    return 1 if summary.failed else 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    return asyncio.run(run(args.horizon_days))


if __name__ == "__main__":
    raise SystemExit(main())
