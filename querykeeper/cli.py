"""
Command-line interface for querykeeper.

Provides commands for:
- Sending a query through the full quota and conversation pipeline
- Viewing a user's usage
- Staff overrides (reset, whitelist, blacklist)
- Usage statistics
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone

from querykeeper.admin import AdminActionError, UsageAdmin
from querykeeper.config import Settings
from querykeeper.logs import configure_logging
from querykeeper.orchestrator import BusyNotice, ErrorNotice, RequestOrchestrator
from querykeeper.provider import MockAssistantProvider, OpenAIAssistantProvider
from querykeeper.storage import SQLiteStorage, StorageError


def _format_ms(timestamp_ms):
    if timestamp_ms is None:
        return "N/A"
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC")


def cmd_ask(args, settings, store):
    """Run one query through the orchestrator."""
    if args.dry_run:
        provider = MockAssistantProvider(answer=lambda query: f"[Dry run answer to: {query}]")
        settings.poll_interval = 0.01
    else:
        if not settings.assistant_id:
            print("QUERYKEEPER_ASSISTANT_ID is not set", file=sys.stderr)
            return 1
        provider = OpenAIAssistantProvider(settings.assistant_id, settings.openai_api_key)

    orchestrator = RequestOrchestrator.build(store, provider, settings)
    result = asyncio.run(orchestrator.handle(args.user, args.query, args.image))

    if isinstance(result, BusyNotice):
        print(result.message)
    elif isinstance(result, ErrorNotice):
        print(result.message)
        print(f"Detail: {result.detail}", file=sys.stderr)
        return 1
    elif isinstance(result, list):
        for page in result:
            print(page)
            print("-" * 60)
    else:
        print(result)
    return 0


def cmd_usage(args, settings, store):
    """Show a user's usage."""
    admin = UsageAdmin(store, settings)
    summary = asyncio.run(admin.get_usage(args.user))
    if summary is None:
        print(f"No data available for {args.user}.")
        return 0

    print("\n" + "=" * 60)
    print(f"USAGE FOR {args.user}")
    print("=" * 60)
    print(f"Total Queries: {summary.total_queries:,}")
    if summary.blacklisted:
        print("Status: Blacklisted")
    elif summary.whitelisted:
        print("Status: Whitelisted")
    else:
        print(f"Queries Used: {summary.used_display}")
        print(f"Query Reset: {_format_ms(summary.reset_at)}")
    print("=" * 60)
    return 0


def cmd_reset(args, settings, store):
    """Reset a user's allowance."""
    admin = UsageAdmin(store, settings)
    asyncio.run(admin.reset_usage(args.user))
    print(f"{args.user} has had their usage reset.")
    return 0


def cmd_whitelist(args, settings, store):
    """Add or remove a user from the whitelist."""
    admin = UsageAdmin(store, settings)
    asyncio.run(admin.set_whitelisted(args.user, args.action == "add"))
    print(f"Whitelist updated for {args.user}.")
    return 0


def cmd_blacklist(args, settings, store):
    """Add, remove or check a user on the blacklist."""
    admin = UsageAdmin(store, settings)
    if args.action == "check":
        summary = asyncio.run(admin.get_usage(args.user))
        listed = summary is not None and summary.blacklisted
        print(f"{args.user} is {'blacklisted' if listed else 'not blacklisted'}.")
        return 0
    asyncio.run(admin.set_blacklisted(args.user, args.action == "add"))
    print(f"Blacklist updated for {args.user}.")
    return 0


def cmd_stats(args, settings, store):
    """Print total queries and the heaviest users."""
    admin = UsageAdmin(store, settings)
    stats = asyncio.run(admin.stats(top_n=args.top))

    if not stats.top_users:
        print("No data was found.")
        return 0

    print("\n" + "=" * 60)
    print("USAGE STATS")
    print("=" * 60)
    print(f"Total Queries: {stats.total_queries_sum:,} across {stats.user_count} users")
    print()
    for rank, (user_id, total) in enumerate(stats.top_users, start=1):
        print(f"  {rank:>2}. {user_id:<24} {total:>8,}")
    print("=" * 60)
    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="querykeeper: assistant quota and conversation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ask without contacting OpenAI
  querykeeper ask 1234 "How do I pair my earbuds?" --dry-run

  # Show a user's usage
  querykeeper usage 1234

  # Staff overrides
  querykeeper reset 1234
  querykeeper whitelist add 1234
  querykeeper blacklist check 1234

  # Top 10 users
  querykeeper stats --top 10
""",
    )
    parser.add_argument("--db", help="Path to the SQLite record store")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ask_parser = subparsers.add_parser("ask", help="Send a query as a user")
    ask_parser.add_argument("user", help="User id")
    ask_parser.add_argument("query", help="Query text")
    ask_parser.add_argument("--image", help="Optional image URL")
    ask_parser.add_argument("--dry-run", action="store_true",
                            help="Use a mock assistant instead of OpenAI")

    usage_parser = subparsers.add_parser("usage", help="Show a user's usage")
    usage_parser.add_argument("user", help="User id")

    reset_parser = subparsers.add_parser("reset", help="Reset a user's allowance")
    reset_parser.add_argument("user", help="User id")

    wl_parser = subparsers.add_parser("whitelist", help="Manage the whitelist")
    wl_parser.add_argument("action", choices=["add", "remove"])
    wl_parser.add_argument("user", help="User id")

    bl_parser = subparsers.add_parser("blacklist", help="Manage the blacklist")
    bl_parser.add_argument("action", choices=["add", "remove", "check"])
    bl_parser.add_argument("user", help="User id")

    stats_parser = subparsers.add_parser("stats", help="Show usage statistics")
    stats_parser.add_argument("--top", type=int, default=10, help="Number of users to list")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    settings = Settings.from_env()
    if args.db:
        settings.db_path = args.db
    configure_logging(settings.log_level)

    commands = {
        "ask": cmd_ask,
        "usage": cmd_usage,
        "reset": cmd_reset,
        "whitelist": cmd_whitelist,
        "blacklist": cmd_blacklist,
        "stats": cmd_stats,
    }

    try:
        store = SQLiteStorage(settings.db_path)
    except StorageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        code = commands[args.command](args, settings, store)
    except (AdminActionError, StorageError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = 1
    finally:
        store.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
