#!/usr/bin/env python3
"""
Run one alert batch pass outside the Celery worker.

Usage (from the project root):
    python scripts/run_alert_batch.py
    python scripts/run_alert_batch.py --today 2025-03-01 --json
"""
import sys
import asyncio
import argparse
import json
from datetime import date
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from opsboard.core.config import settings  # noqa: E402
from opsboard.core.logging import setup_logging, set_correlation_id  # noqa: E402
from opsboard.core.redis_client import close_redis  # noqa: E402
from opsboard.db.database import get_task_session  # noqa: E402
from opsboard.domain.services.alert_batch_runner import run_alert_batch  # noqa: E402


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got '{value}'")


async def _run(today: date | None) -> dict:
    try:
        async with get_task_session() as db:
            result = await run_alert_batch(db, today=today)
            return result.to_dict()
    finally:
        await close_redis()


def _print_summary(summary: dict) -> None:
    print("=" * 50)
    print("Alert batch run")
    print("=" * 50)
    print(f"  Started:    {summary['started_at']}")
    print(f"  Finished:   {summary['finished_at']}")
    print(f"  Evaluators: {', '.join(summary['evaluators_run']) or '-'}")
    if summary["evaluator_failures"]:
        print(f"  Failed:     {', '.join(summary['evaluator_failures'])}")
    print(f"  Created:    {summary['alerts_created']}")
    print(f"  Processed:  {summary['alerts_processed']}")
    print(f"  Sent:       {summary['sent']}")
    print(f"  Failed:     {summary['failed']}")
    print(f"  Skipped:    {summary['skipped']}")
    if summary["store_write_failures"]:
        print(f"  Unrecorded: {', '.join(summary['store_write_failures'])}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Evaluate alert rules and dispatch new alerts")
    parser.add_argument("--today", type=_parse_date, default=None,
                        help="Business date for the evaluators (YYYY-MM-DD)")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    args = parser.parse_args(argv)

    setup_logging(level="DEBUG" if settings.DEBUG else "INFO", json_format=args.json)
    set_correlation_id()

    summary = asyncio.run(_run(args.today))

    if args.json:
        print(json.dumps(summary, ensure_ascii=False))
    else:
        _print_summary(summary)

    failures = (
        summary["failed"] or summary["evaluator_failures"] or summary["store_write_failures"]
    )
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
