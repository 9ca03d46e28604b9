"""
CLI commands for SmartAlerts.
"""

import argparse
import json
import sys
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from smartalerts.app import SmartAlertsApp
from smartalerts.config import AppConfig, load_config
from smartalerts.database.connection import Database
from smartalerts.database.models import CHANNELS, Alert, User
from smartalerts.database.repository import UserRepository
from smartalerts.errors import SmartAlertsError
from smartalerts.healthcheck import run_healthcheck
from smartalerts.rules.types import ALERT_TYPES, CONDITIONS, TECHNICAL_INDICATORS


def add_user(
    db: Database,
    email: Optional[str] = None,
    name: Optional[str] = None,
    phone: Optional[str] = None,
) -> User:
    """Add a new user."""
    repo = UserRepository(db)
    return repo.create(User(email=email, name=name, phone=phone))


def parse_methods(value: str) -> list[str]:
    """Split a comma-separated channel list."""
    return [m.strip().lower() for m in value.split(",") if m.strip()]


def format_alert(alert: Alert) -> str:
    status = "Triggered" if alert.is_triggered else "Active" if alert.is_active else "Inactive"
    indicator = ""
    if alert.type == "technical":
        indicator = f" {alert.metadata.get('technicalIndicator')}"
    current = "-" if alert.current_value is None else f"{alert.current_value:,g}"
    return (
        f"[{alert.id}] {alert.cryptocurrency} {alert.type}{indicator} "
        f"{alert.condition} {alert.threshold:,g} via {','.join(alert.notification_method)} "
        f"- {status}, current {current}"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SmartAlerts CLI")
    parser.add_argument("--config", help="Path to config file")
    parser.add_argument("--db", help="Database path (overrides config)")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--email", help="User email")
    add_user_parser.add_argument("--name", help="Display name")
    add_user_parser.add_argument("--phone", help="Phone number for SMS")

    user_subparsers.add_parser("list", help="List users")

    # Alert commands
    alerts_parser = subparsers.add_parser("alerts", help="Alert management")
    alerts_subparsers = alerts_parser.add_subparsers(dest="action")

    add_alert_parser = alerts_subparsers.add_parser("add", help="Create alert")
    add_alert_parser.add_argument("--user", type=int, required=True, help="User ID")
    add_alert_parser.add_argument("--type", required=True, choices=ALERT_TYPES)
    add_alert_parser.add_argument("--crypto", required=True, help="Asset id, e.g. bitcoin")
    add_alert_parser.add_argument("--condition", required=True, choices=CONDITIONS)
    add_alert_parser.add_argument("--threshold", type=float, required=True)
    add_alert_parser.add_argument(
        "--methods", default="email", help=f"Comma-separated: {', '.join(CHANNELS)}"
    )
    add_alert_parser.add_argument("--indicator", choices=TECHNICAL_INDICATORS)

    list_alerts_parser = alerts_subparsers.add_parser("list", help="List alerts")
    list_alerts_parser.add_argument("--user", type=int, required=True, help="User ID")
    list_alerts_parser.add_argument("--type", help="Alert type filter")

    for action, help_text in (
        ("toggle", "Activate or deactivate alert"),
        ("clear", "Clear triggered flag"),
        ("delete", "Delete alert"),
        ("test", "Send a test notification"),
    ):
        action_parser = alerts_subparsers.add_parser(action, help=help_text)
        action_parser.add_argument("--user", type=int, required=True, help="User ID")
        action_parser.add_argument("--id", type=int, required=True, help="Alert ID")

    # Preference commands
    prefs_parser = subparsers.add_parser("prefs", help="Notification preferences")
    prefs_subparsers = prefs_parser.add_subparsers(dest="action")

    show_prefs_parser = prefs_subparsers.add_parser("show", help="Show preferences")
    show_prefs_parser.add_argument("--user", type=int, required=True, help="User ID")

    set_prefs_parser = prefs_subparsers.add_parser("set", help="Update preferences")
    set_prefs_parser.add_argument("--user", type=int, required=True, help="User ID")
    set_prefs_parser.add_argument("--json", required=True, help="JSON partial update")

    # Reporting commands
    stats_parser = subparsers.add_parser("stats", help="Alert statistics")
    stats_parser.add_argument("--user", type=int, required=True, help="User ID")

    history_parser = subparsers.add_parser("history", help="Notification history")
    history_parser.add_argument("--user", type=int, required=True, help="User ID")
    history_parser.add_argument("--type", help="Alert type filter")
    history_parser.add_argument("--page", type=int, default=1)
    history_parser.add_argument("--limit", type=int, default=20)

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("status", help="Check database status")
    db_subparsers.add_parser("migrate", help="Create missing tables")

    subparsers.add_parser("health", help="Report engine health")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config) if args.config else AppConfig()
    if args.db:
        config.database.path = args.db

    # Initialize database
    db = Database(config.database.path)
    db.initialize()
    app = SmartAlertsApp(db=db, config=config)

    try:
        run_command(args, app)
    except SmartAlertsError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON: {e}", file=sys.stderr)
        return 1
    finally:
        app.close()
    return 0


def run_command(args: argparse.Namespace, app: SmartAlertsApp) -> None:
    service = app.service

    if args.command == "user":
        if args.action == "add":
            user = add_user(app.db, email=args.email, name=args.name, phone=args.phone)
            print(f"Created user with ID: {user.id}")
        elif args.action == "list":
            for user in app.user_repo.list_all():
                print(f"ID: {user.id}, Email: {user.email}, Name: {user.name}")

    elif args.command == "alerts":
        if args.action == "add":
            metadata = {}
            if args.indicator:
                metadata["technicalIndicator"] = args.indicator
            alert = service.create_alert(
                args.user,
                type=args.type,
                cryptocurrency=args.crypto,
                condition=args.condition,
                threshold=args.threshold,
                notification_method=parse_methods(args.methods),
                metadata=metadata,
            )
            print(f"Created alert with ID: {alert.id}")
        elif args.action == "list":
            for alert in service.list_alerts(args.user, args.type):
                print(format_alert(alert))
        elif args.action == "toggle":
            alert = service.toggle_alert(args.user, args.id)
            print(f"Alert {alert.id} {'activated' if alert.is_active else 'deactivated'}")
        elif args.action == "clear":
            service.clear_trigger(args.user, args.id)
            print(f"Alert {args.id} cleared")
        elif args.action == "delete":
            service.delete_alert(args.user, args.id)
            print(f"Alert {args.id} deleted")
        elif args.action == "test":
            for record in service.test_fire(args.user, args.id):
                suffix = " (simulated)" if record.simulated else ""
                error = f": {record.error}" if record.error else ""
                print(f"{record.channel}: {record.status}{suffix}{error}")

    elif args.command == "prefs":
        if args.action == "show":
            print(json.dumps(service.get_preferences(args.user).to_dict(), indent=2))
        elif args.action == "set":
            updated = service.update_preferences(args.user, json.loads(args.json))
            print(json.dumps(updated.to_dict(), indent=2))

    elif args.command == "stats":
        stats = service.statistics(args.user)
        print(f"Total: {stats.total}, Active: {stats.active}, Triggered: {stats.triggered}")
        print(f"Last 24h: {stats.recent_24h}, Success rate: {stats.success_rate}%")
        for alert_type, counts in sorted(stats.by_type.items()):
            print(
                f"  {alert_type}: {counts['total']} total, {counts['active']} active, "
                f"{counts['triggered']} triggered"
            )

    elif args.command == "history":
        page = service.notification_history(
            args.user, args.type, page=args.page, limit=args.limit
        )
        for alert in page.items:
            print(f"{alert.triggered_at:%Y-%m-%d %H:%M} {alert.message}")
        print(f"Page {page.page} of {max(page.pages, 1)} ({page.total} total)")

    elif args.command == "db":
        if args.action == "status":
            print(f"Database initialized at {app.config.database.path}")
        elif args.action == "migrate":
            app.db.initialize()
            print("Migrations applied")

    elif args.command == "health":
        report = run_healthcheck(app.db, app.config.scheduler.interval_seconds)
        print(report.summary())


if __name__ == "__main__":
    sys.exit(main())
