"""
AgriMarket CLI - marketplace maintenance from the command line.

Usage:
    agrimarket expire-offers [--max-age-days N] [--dry-run] [--json]
    agrimarket match JOB_ID ORG_ID [--json]
    agrimarket history JOB_ID [--json]

Storage defaults to the SQLite database under the data directory; pass
``--db PATH`` for another file or ``--supabase`` to use the hosted database
(AGRIMARKET_SUPABASE_URL / AGRIMARKET_SUPABASE_KEY).
"""

import argparse
import json
import logging
import sys
from datetime import timedelta

from agrimarket.config import MarketplaceConfig
from agrimarket.errors import MarketplaceError
from agrimarket.logging_config import get_agrimarket_home, setup_agrimarket_logging
from agrimarket.marketplace.service import MarketplaceService

logger = logging.getLogger(__name__)


def build_storage(args, config: MarketplaceConfig):
    """Pick the storage backend from the command-line flags."""
    if args.supabase:
        if not config.supabase_url or not config.supabase_key:
            raise ValueError("--supabase needs AGRIMARKET_SUPABASE_URL and AGRIMARKET_SUPABASE_KEY")
        from supabase import create_client

        from agrimarket.storage.supabase_storage import SupabaseMarketplaceStorage

        return SupabaseMarketplaceStorage(create_client(config.supabase_url, config.supabase_key))

    from agrimarket.storage.sqlite import SQLiteMarketplaceStorage

    db_path = args.db or config.database_path or str(get_agrimarket_home() / "marketplace.db")
    return SQLiteMarketplaceStorage(db_path)


def cmd_expire_offers(args, service: MarketplaceService):
    """Expire pending offers older than the cutoff."""
    max_age = timedelta(days=args.max_age_days) if args.max_age_days else None
    result = service.expire_stale_offers(max_age=max_age, dry_run=args.dry_run)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    verb = "Would expire" if result.dry_run else "Expired"
    print(f"{verb} {len(result.expired_offer_ids)} of {result.checked} stale offers")
    print(f"  cutoff: {result.cutoff.isoformat()}")
    for offer_id in result.expired_offer_ids:
        print(f"  - {offer_id}")


def cmd_match(args, service: MarketplaceService):
    """Show whether a job matches an operator's service configuration."""
    result = service.evaluate_job_for_operator(args.job_id, args.org_id)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    print(f"Job {args.job_id} for {args.org_id}: {'eligible' if result.eligible else 'not eligible'}")
    for reason in result.reasons:
        print(f"  ✗ {reason}")
    for skipped in result.skipped:
        print(f"  ~ {skipped}")


def cmd_history(args, service: MarketplaceService):
    """Print a job's status transitions."""
    transitions = service.get_job_history(args.job_id)

    if args.json:
        print(json.dumps([t.to_dict() for t in transitions], indent=2))
        return

    if not transitions:
        print(f"No transitions recorded for job {args.job_id}")
        return
    for t in transitions:
        when = t.created_at.strftime("%Y-%m-%d %H:%M:%S") if t.created_at else "?"
        line = f"{when}  {t.from_status or '-'} -> {t.to_status}  by {t.actor_id} ({t.actor_role})"
        if t.reason:
            line += f"  reason: {t.reason}"
        print(line)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agrimarket",
        description="Agricultural drone-service marketplace maintenance",
    )
    backend = parser.add_mutually_exclusive_group()
    backend.add_argument("--db", help="SQLite database path")
    backend.add_argument("--supabase", action="store_true", help="Use the Supabase database")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default WARNING)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # expire-offers
    p_expire = subparsers.add_parser("expire-offers", help="Expire stale pending offers")
    p_expire.add_argument(
        "--max-age-days", type=int, help="Age cutoff in days (default: configured expiry)"
    )
    p_expire.add_argument("--dry-run", action="store_true", help="Report without changing anything")
    p_expire.add_argument("--json", "-j", action="store_true")

    # match
    p_match = subparsers.add_parser("match", help="Evaluate a job against an operator's filters")
    p_match.add_argument("job_id", help="Job ID")
    p_match.add_argument("org_id", help="Operator organization ID")
    p_match.add_argument("--json", "-j", action="store_true")

    # history
    p_history = subparsers.add_parser("history", help="Show a job's status history")
    p_history.add_argument("job_id", help="Job ID")
    p_history.add_argument("--json", "-j", action="store_true")

    return parser


COMMANDS = {
    "expire-offers": cmd_expire_offers,
    "match": cmd_match,
    "history": cmd_history,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        setup_agrimarket_logging(level=args.log_level)
        config = MarketplaceConfig.from_env()
        service = MarketplaceService(build_storage(args, config), config=config)
        COMMANDS[args.command](args, service)
    except MarketplaceError as e:
        logger.error(f"{e.code}: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
