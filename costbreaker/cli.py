"""
Command-line interface for costbreaker.

Provides commands for:
- Showing current spend against every layer
- Checking whether a user would be admitted
- Recording a cost by hand
"""

import argparse
import json
import os
import sys
from decimal import Decimal
from typing import Optional, Sequence

from costbreaker.breaker import CostCircuitBreaker
from costbreaker.config import ConfigError, load_config
from costbreaker.ledger import LedgerUnavailableError, SQLiteLedger
from costbreaker.models import InvalidCostError


EXIT_DENIED = 2


def _open_ledger(args):
    redis_url = args.redis_url or os.getenv("COSTBREAKER_REDIS_URL")
    if redis_url:
        from costbreaker.redis_ledger import RedisLedger
        return RedisLedger(url=redis_url)
    db_path = args.db_path or os.getenv("COSTBREAKER_DB_PATH", "costbreaker.db")
    return SQLiteLedger(db_path=db_path)


def _breaker(args) -> CostCircuitBreaker:
    return CostCircuitBreaker(_open_ledger(args), load_config())


def _money(value: Decimal) -> str:
    return f"${value:.4f}"


def cmd_status(args) -> int:
    """Show spend for global layers and the top users."""
    with _breaker(args) as breaker:
        snapshot = breaker.snapshot(top_n=args.top)

    if args.json:
        print(json.dumps(snapshot.to_dict(), indent=2))
        return 0

    print("\n" + "=" * 60)
    print("COST CIRCUIT BREAKER STATUS")
    print("=" * 60)
    print(f"Taken at: {snapshot.taken_at.isoformat()}")
    print()
    for status in snapshot.layers:
        print(
            f"  {status.layer.name:<16} {_money(status.current):>12} / "
            f"{_money(status.layer.ceiling):<12} ({status.percentage}%)"
        )
    if snapshot.top_users:
        print()
        print("-" * 60)
        print("TOP USERS")
        print("-" * 60)
        for user in snapshot.top_users:
            print(f"  {user.user_id:<30} {_money(user.cost)}")
    print("=" * 60)
    return 0


def cmd_check(args) -> int:
    """Run an admission check for a user."""
    with _breaker(args) as breaker:
        verdict = breaker.check(args.user_id)

    for name, spend in verdict.layer_spend.items():
        layer = breaker.config.layer(name)
        print(f"  {name:<16} {_money(spend):>12} / {_money(layer.ceiling)}")
    for name in verdict.failed_layers:
        print(f"  {name:<16} {'unavailable':>12} (failed open)")

    if verdict.allowed:
        print("Result: ALLOWED")
        return 0
    print(f"Result: BLOCKED at {verdict.violated_layer.name} ({_money(verdict.current_spend)})")
    return EXIT_DENIED


def cmd_record(args) -> int:
    """Record a cost for a user."""
    with _breaker(args) as breaker:
        breaker.record(args.user_id, args.cost)
    print(f"Tracked ${args.cost} for user {args.user_id}")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="costbreaker",
        description="Cost circuit breaker for metered APIs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show current spend
  costbreaker status --top 5

  # Would this user be admitted?
  costbreaker check user-123

  # Record a cost by hand
  costbreaker record user-123 0.02 --redis-url redis://localhost:6379/0
""",
    )
    parser.add_argument("--redis-url", help="Redis URL (or COSTBREAKER_REDIS_URL)")
    parser.add_argument("--db-path", help="SQLite ledger path (or COSTBREAKER_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    status_parser = subparsers.add_parser("status", help="Show current spend")
    status_parser.add_argument("--top", "-n", type=int, default=10,
                               help="Number of top users to show")
    status_parser.add_argument("--json", action="store_true",
                               help="Print the snapshot as JSON")

    check_parser = subparsers.add_parser("check", help="Check a user's budget")
    check_parser.add_argument("user_id", help="User identifier")

    record_parser = subparsers.add_parser("record", help="Record a cost")
    record_parser.add_argument("user_id", help="User identifier")
    record_parser.add_argument("cost", help="Cost in USD, e.g. 0.02")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    commands = {
        "status": cmd_status,
        "check": cmd_check,
        "record": cmd_record,
    }

    try:
        return commands[args.command](args)
    except (ConfigError, InvalidCostError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except LedgerUnavailableError as exc:
        print(f"Ledger unavailable: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
