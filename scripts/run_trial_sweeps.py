"""Run the trial lifecycle sweeps (schedule daily).

Run from repo root:
    python -m scripts.run_trial_sweeps expire [--dry-run]
    python -m scripts.run_trial_sweeps warn --days 2 [--dry-run]
"""

import argparse
import asyncio

from planguard.core.cache import get_cache
from planguard.core.config import get_settings
from planguard.core.logging import configure_structlog
from planguard.db import close_db, close_redis, get_session_factory, init_db, init_redis
from planguard.services.trials import TrialSweeper


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trial lifecycle sweeps")
    sub = parser.add_subparsers(dest="command", required=True)

    expire = sub.add_parser("expire", help="Expire plans whose trial has ended")
    expire.add_argument("--dry-run", action="store_true")

    warn = sub.add_parser("warn", help="Warn owners whose trial ends in N days")
    warn.add_argument("--days", type=int, default=None)
    warn.add_argument("--dry-run", action="store_true")

    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()
    configure_structlog(settings.log_level, settings.json_logs, service=settings.app_name)

    await init_db(create_tables=False)
    if settings.cache_enabled:
        await init_redis()

    try:
        sweeper = TrialSweeper(get_session_factory(), get_cache())
        if args.command == "expire":
            expired = await sweeper.expire_trial_plans(dry_run=args.dry_run)
            print(f"{'Would expire' if args.dry_run else 'Expired'} {len(expired)} trial plan(s).")
        else:
            warnings = await sweeper.send_trial_expiration_warnings(days=args.days, dry_run=args.dry_run)
            print(f"{'Would send' if args.dry_run else 'Sent'} {len(warnings)} trial warning(s).")
    finally:
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
