"""
Sonar command line entry point.

    sonar run                 scan workers, cron and budget alerts
    sonar serve               HTTP API plus everything `run` does
    sonar scan <monitor_id>   scan one monitor now and print the summary
    sonar evaluate-budgets    evaluate budget alerts once
    sonar add-user <id>       create or update a user and plan
    sonar add-monitor ...     create a monitor
    sonar add-twitter-account <username> <cookies.json>
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .config import config
from .matcher import validate_search_query
from .models import ScanTrigger, ScheduleWindow
from .plans import PlanTier, StorePlanProvider, get_plan_limits
from .service import SonarService
from .store import ResultStore

logger = logging.getLogger("sonar.main")


async def run_service() -> None:
    """Run workers, cron and budget evaluation until interrupted."""
    service = SonarService.from_config(config)
    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.shutdown()


def serve() -> None:
    import uvicorn

    from .api import create_app

    service = SonarService.from_config(config)
    app = create_app(service, manage_lifecycle=True)
    # Keep the logging set up by Config.setup_logging
    uvicorn.run(app, host=config.api.host, port=config.api.port, log_config=None)


async def scan_once(monitor_id: int, trigger: str) -> bool:
    """Scan one monitor inline. Returns True if the scan ran."""
    service = SonarService.from_config(config)
    try:
        outcome = await service.scheduler.request_scan(monitor_id, ScanTrigger(trigger), wait=True)
    finally:
        await service.shutdown()

    if outcome.error is not None:
        print(f"Scan rejected: {outcome.error}")
        return False
    if outcome.report is None:
        print(f"Scan skipped: {outcome.reason}")
        return False
    print(outcome.report.format_summary())
    return not outcome.report.aborted


async def evaluate_budgets() -> None:
    service = SonarService.from_config(config)
    try:
        evaluations = await service.evaluator.evaluate_all()
    finally:
        await service.shutdown()
    for evaluation in evaluations:
        status = evaluation.level.value if evaluation.level else "ok"
        if evaluation.suppressed:
            status += " (suppressed)"
        print(f"Alert {evaluation.alert_id}: ${evaluation.spend:.2f} ({evaluation.percent:.1f}%) {status}")


def add_monitor(args: argparse.Namespace) -> int:
    store = ResultStore(config.database.path)
    plans = StorePlanProvider(config.database.path)
    limits = get_plan_limits(plans.get_user_plan(args.user))

    keywords = [k.strip() for k in args.keywords.split(",") if k.strip()] if args.keywords else []
    platforms = [p.strip() for p in args.platforms.split(",") if p.strip()]

    problems = []
    if len(keywords) > limits.keywords_per_monitor:
        problems.append(f"{limits.display_name} plan allows {limits.keywords_per_monitor} keywords per monitor")
    denied = [p for p in platforms if not limits.can_access_platform(p)]
    if denied:
        problems.append(f"{limits.display_name} plan does not include: {', '.join(denied)}")
    owned = [m for m in store.list_active_monitors() if m.user_id == args.user]
    if len(owned) >= limits.monitors:
        problems.append(f"{limits.display_name} plan allows {limits.monitors} monitors")
    if args.query:
        error = validate_search_query(args.query)
        if error:
            problems.append(f"Invalid search query: {error}")
    if not (keywords or args.company or args.query):
        problems.append("Give at least one of --keywords, --company or --query")

    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        return 1

    schedule = ScheduleWindow()
    if args.hours:
        start, end = (int(h) for h in args.hours.split("-", 1))
        schedule = ScheduleWindow(
            enabled=True,
            start_hour=start,
            end_hour=end,
            days=[int(d) for d in args.days.split(",")] if args.days else [],
            timezone=args.timezone,
        )

    monitor = store.create_monitor(
        user_id=args.user,
        name=args.name,
        keywords=keywords,
        platforms=platforms,
        company_name=args.company,
        search_query=args.query,
        schedule=schedule,
    )
    print(f"Created monitor {monitor.id} '{monitor.name}'")
    return 0


async def add_twitter_account(username: str, cookies_file: str) -> None:
    from .platforms.twitter import add_cookie_account, parse_cookies

    with open(cookies_file, "r", encoding="utf-8") as f:
        cookies = parse_cookies(json.load(f))
    print(f"Found {len(cookies)} cookies")
    await add_cookie_account(username, cookies, config.twitter.db_path)
    print(f"Account '{username}' added. Run 'twscrape accounts' to verify.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sonar", description="Social listening scan pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run scan workers, cron and budget alerts")
    sub.add_parser("serve", help="Run the HTTP API with background workers")

    scan = sub.add_parser("scan", help="Scan one monitor now")
    scan.add_argument("monitor_id", type=int)
    scan.add_argument("--trigger", choices=[t.value for t in ScanTrigger], default="manual")

    sub.add_parser("evaluate-budgets", help="Evaluate budget alerts once")

    user = sub.add_parser("add-user", help="Create or update a user")
    user.add_argument("user_id")
    user.add_argument("--plan", choices=[t.value for t in PlanTier], default="free")
    user.add_argument("--email")

    monitor = sub.add_parser("add-monitor", help="Create a monitor")
    monitor.add_argument("--user", required=True)
    monitor.add_argument("--name", required=True)
    monitor.add_argument("--keywords", help="Comma-separated keywords")
    monitor.add_argument("--company")
    monitor.add_argument("--query", help="Boolean search query")
    monitor.add_argument("--platforms", default="reddit", help="Comma-separated platforms")
    monitor.add_argument("--hours", help="Active hours, e.g. 9-17 or 22-6")
    monitor.add_argument("--days", help="Active days, 0=Sunday, e.g. 1,2,3,4,5")
    monitor.add_argument("--timezone", default="America/New_York")

    account = sub.add_parser("add-twitter-account", help="Add a cookie-based twscrape account")
    account.add_argument("username")
    account.add_argument("cookies_file")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point for the application."""
    args = build_parser().parse_args(argv)
    config.setup_logging()

    problems = config.validate()
    for problem in problems:
        logger.warning(f"Config: {problem}")

    try:
        if args.command == "run":
            asyncio.run(run_service())
        elif args.command == "serve":
            serve()
        elif args.command == "scan":
            sys.exit(0 if asyncio.run(scan_once(args.monitor_id, args.trigger)) else 1)
        elif args.command == "evaluate-budgets":
            asyncio.run(evaluate_budgets())
        elif args.command == "add-user":
            ResultStore(config.database.path).upsert_user(args.user_id, args.plan, args.email)
            print(f"User {args.user_id} saved ({args.plan})")
        elif args.command == "add-monitor":
            sys.exit(add_monitor(args))
        elif args.command == "add-twitter-account":
            if not Path(args.cookies_file).exists():
                print(f"Error: File not found: {args.cookies_file}")
                sys.exit(1)
            asyncio.run(add_twitter_account(args.username, args.cookies_file))
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(130)
    except ValueError as e:
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
