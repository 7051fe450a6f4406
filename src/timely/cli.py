#!/usr/bin/env python3
"""
Command line interface for timely.
"""

import argparse
import json
import sys
from typing import Any, List, Optional

from .categories import CategoryStore
from .config import Config, configure_logging, get_config, load_config_from_env
from .daemon import LOG_FILENAME, ActivityDaemon
from .db import get_connection
from .devices import DeviceRegistry
from .errors import ConfigError, TimelyError, failure, success
from .export import (
    EXPORT_FORMATS,
    export_events,
    import_events,
    load_import_file,
    parse_time,
    write_csv,
)
from .hub import serve
from .models import RuleField
from .sync import SyncManager

EXAMPLES = """
Examples:
  # Capture in the foreground, or start/stop the background daemon
  timely daemon run
  timely daemon start
  timely daemon status

  # Point this machine at a hub and push unsynced events
  timely sync setup --hub http://hub.local:7890 --key s3cret
  timely sync push

  # Run a hub on this machine
  timely hub serve --port 7890

  # Categorize an app and fix up past events
  timely categorize set "Obsidian" work/writing --retroactive
  timely categorize set "*.atlassian.net" work --field url_domain
  timely categorize list
  timely categorize delete 42

  # Export this week as CSV, then load a JSON export on another machine
  timely export --format csv --from 7d > week.csv
  timely export --from 2024-01-01 --to 2024-02-01 > january.json
  timely import january.json

  # Inspect and change settings
  timely config list
  timely config set sync_interval 600
"""


def print_json(data: Any) -> None:
    print(json.dumps(success(data), indent=2, ensure_ascii=False))


def load_config(config_dir: Optional[str]) -> Config:
    if config_dir is None:
        return get_config()
    config = Config(config_dir)
    env_config = load_config_from_env()
    if env_config:
        config.update(env_config)
    return config


# daemon


def cmd_daemon(args, config: Config) -> None:
    daemon = ActivityDaemon(config)

    if args.action == "run":
        daemon.run_foreground()
    elif args.action == "start":
        daemon.start()
        status = daemon.wait_for_start()
        if args.json:
            print_json(status.to_dict())
        elif status.running:
            print(f"Daemon started (pid {status.pid})")
        else:
            print(f"Daemon starting, see {config.data_dir / LOG_FILENAME} if it does not come up")
    elif args.action == "stop":
        pid = daemon.stop()
        if args.json:
            print_json({"stopped": True, "pid": pid})
        else:
            print(f"Daemon stopped (pid {pid})")
    elif args.action == "status":
        status = daemon.status()
        if args.json:
            print_json(status.to_dict())
        elif status.running:
            print(f"Daemon is running (pid {status.pid})")
        else:
            print("Daemon is not running")


# sync


def cmd_sync(args, config: Config) -> None:
    with get_connection(config.db_path) as conn:
        manager = SyncManager(conn, config)

        if args.action == "setup":
            result = manager.setup(args.hub, args.key)
            if args.json:
                print_json(result)
            else:
                print("Sync configured")
                print(f"  Hub:    {result['hub_url']}")
                print(f"  Device: {result['device_name']} ({result['device_id']})")
                print(f"  Auth:   {'yes' if result['auth'] else 'no'}")

        elif args.action == "push":
            result = manager.push_events()
            if args.json:
                print_json(result.to_dict())
            else:
                print(
                    f"Push complete: {result.accepted} accepted, "
                    f"{result.duplicates} duplicates ({result.batches} batches)"
                )

        elif args.action == "status":
            status = manager.get_sync_status()
            if args.json:
                print_json(status)
                return
            print("Sync Status")
            print("-" * 40)
            print(f"Enabled:    {status['sync_enabled']}")
            print(f"Hub URL:    {status['hub_url'] or '(not set)'}")
            print(f"Reachable:  {status['hub_reachable']}")
            print(f"Last sync:  {status['last_sync_at'] or 'never'}")
            print(f"Pending:    {status['pending_events']} events")

            remote = status.get("remote") or {}
            if remote.get("devices"):
                print("\nRegistered Devices:")
                for device in remote["devices"]:
                    print(
                        f"  {device.get('name', '?')} ({device.get('platform', '?')}): "
                        f"{device.get('event_count', 0)} events, "
                        f"last sync: {device.get('last_sync') or '?'}"
                    )


# hub


def cmd_hub(args, config: Config) -> None:
    if args.action == "serve":
        serve(
            db_path=args.db or config.hub_db_path,
            host=args.host or config.get("hub_host", "127.0.0.1"),
            port=args.port or int(config.get("hub_port", 7890)),
            api_key=args.key or config.hub_api_key,
        )


# categorize


def cmd_categorize(args, config: Config) -> None:
    with get_connection(config.db_path) as conn:
        store = CategoryStore(conn)
        store.seed_builtin_categories()

        if args.action == "set":
            field = RuleField.parse(args.field)
            category, rule_id, updated = store.add_user_rule(
                args.pattern, args.category, field, retroactive=args.retroactive
            )
            if args.json:
                print_json({
                    "rule_id": rule_id,
                    "field": field.value,
                    "pattern": args.pattern,
                    "category": category.name,
                    "category_id": category.id,
                    "retroactive_updates": updated,
                })
            else:
                print(f"Rule added: {field.value} '{args.pattern}' -> {category.name}")
                if args.retroactive:
                    print(f"Retroactively updated {updated} events")

        elif args.action == "list":
            rules = store.list_rules()
            if args.json:
                print_json([rule.to_dict() for rule in rules])
                return
            print(f"{'ID':<6} {'Builtin':<8} {'Pattern':<25} {'Category':<25} {'Field':<10} Priority")
            print("-" * 90)
            for rule in rules:
                print(
                    f"{rule.id:<6} {'yes' if rule.is_builtin else 'no':<8} "
                    f"{rule.pattern:<25} {rule.category_name or '-':<25} "
                    f"{rule.field.value:<10} {rule.priority}"
                )

        elif args.action == "delete":
            recategorized = store.delete_rule(args.rule_id)
            if args.json:
                print_json({
                    "deleted": True,
                    "rule_id": args.rule_id,
                    "recategorized": recategorized,
                })
            else:
                print(f"Rule {args.rule_id} deleted ({recategorized} events recategorized)")


# devices


def cmd_devices(args, config: Config) -> None:
    with get_connection(config.db_path) as conn:
        devices = DeviceRegistry(conn).list_devices()

    if args.json:
        print_json([device.to_dict() for device in devices])
        return
    if not devices:
        print("No devices registered")
        return
    print(f"{'ID':<40} {'Name':<20} {'Platform':<10} Last Sync")
    print("-" * 90)
    for device in devices:
        data = device.to_dict()
        print(f"{data['id']:<40} {data['name']:<20} {data['platform']:<10} {data['last_sync']}")


# export / import


def cmd_export(args, config: Config) -> None:
    start = parse_time(args.start)
    end = parse_time(args.end)
    with get_connection(config.db_path) as conn:
        events = export_events(conn, start, end)

    if args.format == "csv":
        write_csv(events, sys.stdout)
    else:
        print_json([event.to_dict() for event in events])


def cmd_import(args, config: Config) -> None:
    records = load_import_file(args.file)
    with get_connection(config.db_path) as conn:
        CategoryStore(conn).seed_builtin_categories()
        device = DeviceRegistry(conn).get_or_create()
        count = import_events(conn, device, records)

    if args.json:
        print_json({"imported": count, "device_id": device.id})
    else:
        print(f"Imported {count} events")


# config


def cmd_config(args, config: Config) -> None:
    # Environment overrides must not end up in settings.json
    stored = Config(config.config_dir)

    if args.action == "get":
        if args.key not in stored.get_all():
            raise ConfigError(f"Unknown config key: {args.key}")
        value = stored.get(args.key)
        if args.json:
            print_json({args.key: value})
        else:
            print(f"{args.key} = {value}")

    elif args.action == "set":
        value = stored.set_from_string(args.key, args.value)
        stored.save()
        if args.json:
            print_json({args.key: value})
        else:
            print(f"{args.key} = {value}")

    elif args.action == "list":
        values = stored.get_all()
        if args.json:
            print_json(values)
            return
        for key in sorted(values):
            print(f"{key} = {values[key]}")

    elif args.action == "reset":
        stored.reset_to_defaults()
        stored.save()
        if args.json:
            print_json(stored.get_all())
        else:
            print(f"Configuration reset to defaults ({stored.config_file})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="timely",
        description="Activity tracker with multi-device sync",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--json", action="store_true", help="Print JSON envelopes")
    parser.add_argument("--config-dir", help="Configuration directory (default ~/.timely)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    daemon_parser = subparsers.add_parser("daemon", help="Control the capture daemon")
    daemon_sub = daemon_parser.add_subparsers(dest="action")
    daemon_sub.add_parser("run", help="Capture in the foreground")
    daemon_sub.add_parser("start", help="Start the daemon in the background")
    daemon_sub.add_parser("stop", help="Stop the background daemon")
    daemon_sub.add_parser("status", help="Show daemon status")

    sync_parser = subparsers.add_parser("sync", help="Multi-device sync")
    sync_sub = sync_parser.add_subparsers(dest="action")
    setup = sync_sub.add_parser("setup", help="Configure the hub and register this device")
    setup.add_argument("--hub", required=True, help="Hub base URL")
    setup.add_argument("--key", help="API key sent as X-API-Key")
    sync_sub.add_parser("push", help="Push unsynced events to the hub")
    sync_sub.add_parser("status", help="Show sync status")

    hub_parser = subparsers.add_parser("hub", help="Run a sync hub")
    hub_sub = hub_parser.add_subparsers(dest="action")
    hub_serve = hub_sub.add_parser("serve", help="Serve the sync API")
    hub_serve.add_argument("--host", help="Bind address")
    hub_serve.add_argument("--port", type=int, help="Port")
    hub_serve.add_argument("--db", help="Hub database path")
    hub_serve.add_argument("--key", help="Require this X-API-Key from clients")

    cat_parser = subparsers.add_parser("categorize", help="Manage category rules")
    cat_sub = cat_parser.add_subparsers(dest="action")
    cat_set = cat_sub.add_parser("set", help="Add a rule (priority above builtins)")
    cat_set.add_argument("pattern", help="Exact value or glob (* and ?)")
    cat_set.add_argument("category", help="Category name, e.g. work/coding")
    cat_set.add_argument(
        "--field",
        default=RuleField.APP.value,
        choices=[member.value for member in RuleField],
        help="Snapshot field to match (default: app)",
    )
    cat_set.add_argument(
        "--retroactive", action="store_true", help="Recategorize matching past events"
    )
    cat_sub.add_parser("list", help="List rules in evaluation order")
    cat_delete = cat_sub.add_parser("delete", help="Delete a user rule")
    cat_delete.add_argument("rule_id", type=int)

    devices_parser = subparsers.add_parser("devices", help="Known devices")
    devices_sub = devices_parser.add_subparsers(dest="action")
    devices_sub.add_parser("list", help="List devices")

    export_parser = subparsers.add_parser("export", help="Export events over a time range")
    export_parser.add_argument("--format", choices=EXPORT_FORMATS, default="json")
    export_parser.add_argument(
        "--from", dest="start", default="today",
        help="Range start: now, today, yesterday, Nd, Nh, Nm, YYYY-MM-DD or RFC 3339",
    )
    export_parser.add_argument("--to", dest="end", default="now", help="Range end")

    import_parser = subparsers.add_parser("import", help="Import events from a JSON export")
    import_parser.add_argument("file", help="Path to the JSON export")

    config_parser = subparsers.add_parser("config", help="Read and change settings")
    config_sub = config_parser.add_subparsers(dest="action")
    config_get = config_sub.add_parser("get", help="Show one setting")
    config_get.add_argument("key")
    config_set = config_sub.add_parser("set", help="Change one setting")
    config_set.add_argument("key")
    config_set.add_argument("value")
    config_sub.add_parser("list", help="Show all settings")
    config_sub.add_parser("reset", help="Restore the default settings")

    return parser


COMMANDS = {
    "daemon": cmd_daemon,
    "sync": cmd_sync,
    "hub": cmd_hub,
    "categorize": cmd_categorize,
    "devices": cmd_devices,
    "export": cmd_export,
    "import": cmd_import,
    "config": cmd_config,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1
    if hasattr(args, "action") and args.action is None:
        if args.command != "devices":
            parser.parse_args([args.command, "--help"])
        args.action = "list"

    config = load_config(args.config_dir)
    configure_logging(args.verbose)

    try:
        COMMANDS[args.command](args, config)
    except TimelyError as e:
        if args.json:
            print(json.dumps(failure(e), indent=2), file=sys.stderr)
        else:
            print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
