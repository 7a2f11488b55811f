"""
Admin CLI for operating sheetstore on the PostgreSQL backend.

Usage:
    sheetstore-admin init-schema
    sheetstore-admin validate-config --config <form.yaml>
    sheetstore-admin inspect --config <form.yaml>
    sheetstore-admin rebuild-index --config <form.yaml>
    sheetstore-admin reconcile --config <form.yaml> --start-row <n> --num-rows <n>
    sheetstore-admin invalidate-cache [--reason <text>]
    sheetstore-admin get --config <form.yaml> (--record-id <id> | --row <n>)
    sheetstore-admin list --config <form.yaml> [--page-size <n>] [--page-token <t>]

Database options default to the DB_* environment variables.
"""

import argparse
import json
import sys
from contextlib import contextmanager
from typing import Any, Iterator

from sheetstore.config import StoreSettings
from sheetstore.core.errors import RuleConfigError, SheetStoreError
from sheetstore.core.models import DedupRule, FormConfig
from sheetstore.core.rules import RuleConfigLoader
from sheetstore.observability.logger import get_logger, setup_logger
from sheetstore.storage.connection import DatabaseConnectionPool
from sheetstore.storage.record_index import index_table_name
from sheetstore.storage.record_schema import ensure_destination
from sheetstore.storage.schema_mgmt import SchemaManager
from sheetstore.storage.services import StoreServices
from sheetstore.utils.validation import ValidationError

logger = get_logger(__name__)


def load_settings(args) -> StoreSettings:
    """Settings from the environment, with command line database overrides."""
    settings = StoreSettings.from_env(args.env_file)
    overrides = {
        "host": args.db_host,
        "port": args.db_port,
        "database": args.db_name,
        "user": args.db_user,
        "password": args.db_password,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        settings.database = settings.database.model_copy(update=overrides)
    return settings


def load_form(args) -> tuple[FormConfig, list[DedupRule]]:
    loader = RuleConfigLoader(args.config)
    form = loader.load_form()
    return form, loader.load_rules(form)


@contextmanager
def open_services(args) -> Iterator[tuple[StoreServices, DatabaseConnectionPool]]:
    settings = load_settings(args)
    pool = DatabaseConnectionPool(settings.database)
    pool.open()
    try:
        SchemaManager(pool).ensure_schema()
        yield StoreServices.postgres(pool, settings), pool
    finally:
        pool.close()


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def init_schema_command(args):
    """Create the backend tables."""
    settings = load_settings(args)
    with DatabaseConnectionPool(settings.database) as pool:
        SchemaManager(pool).ensure_schema()
    print("Schema ready.")


def validate_config_command(args):
    """Load and validate a form configuration without touching the database."""
    form, rules = load_form(args)
    print(f"Form '{form.form_key}' -> table '{form.table_name}'")
    print(f"  Questions: {len(form.questions)}")
    print(f"  Terminal statuses: {', '.join(form.terminal_statuses) or '-'}")
    print(f"  Dedup rules: {len(rules)}")
    for rule in rules:
        mode = "indexed" if rule.is_indexed else rule.on_conflict
        print(f"    - {rule.id}: keys={','.join(rule.keys)} match={rule.match_mode} ({mode})")


def inspect_command(args):
    """Show table shape, etag metadata and index health for a form."""
    form, rules = load_form(args)
    with open_services(args) as (services, pool):
        destination = ensure_destination(services.workbook, form)
        handle = services.record_index.ensure(destination.name, rules, destination.table.row_count())
        etag_meta = services.cache_store.read_etag_metadata(destination.name)
        schema = SchemaManager(pool)
        print_json({
            "table": schema.describe_table(destination.name),
            "index_table": schema.describe_table(index_table_name(destination.name, services.settings.index_prefix)),
            "index_built": services.record_index.is_built_for(
                handle, destination.table, destination.columns.record_id
            ),
            "pending_rules": sorted(handle.pending_rules),
            "dedup_columns": handle.dedup_columns,
            "etag": etag_meta.model_dump(mode="json") if etag_meta else None,
            "cache_version": services.cache_store.cache_version(),
        })


def rebuild_index_command(args):
    """Rewrite the record index of a form's table."""
    form, rules = load_form(args)
    with open_services(args) as (services, _):
        summary = services.reconciler.rebuild_index(form, rules)
    print_json(summary)


def reconcile_command(args):
    """Re-derive ids, versions and index rows for directly edited rows."""
    form, rules = load_form(args)
    with open_services(args) as (services, _):
        summary = services.reconciler.reconcile_rows(form, rules, args.start_row, args.num_rows)
    print_json(summary)


def invalidate_cache_command(args):
    """Rotate the cache version."""
    with open_services(args) as (services, _):
        version = services.cache_store.invalidate_all(args.reason)
    print(f"Cache invalidated (version {version}).")


def get_command(args):
    """Print one record."""
    form, rules = load_form(args)
    with open_services(args) as (services, _):
        if args.record_id:
            record = services.listing.fetch_by_id(form, args.record_id)
        else:
            record = services.listing.fetch_by_row_number(form, args.row, rules)
    if record is None:
        print("Record not found.")
        sys.exit(1)
    print_json(record.model_dump(mode="json"))


def list_command(args):
    """Print one page of records."""
    form, _ = load_form(args)
    projection = [p.strip() for p in (args.projection or "").split(",") if p.strip()]
    with open_services(args) as (services, _):
        page = services.listing.fetch_page(form, projection, args.page_size, args.page_token)
    print_json(page.model_dump(mode="json", exclude={"records"}))


COMMANDS = {
    "init-schema": init_schema_command,
    "validate-config": validate_config_command,
    "inspect": inspect_command,
    "rebuild-index": rebuild_index_command,
    "reconcile": reconcile_command,
    "invalidate-cache": invalidate_cache_command,
    "get": get_command,
    "list": list_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sheetstore-admin",
        description="Admin CLI for sheetstore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--env-file", default=".env", help="dotenv file to load (default: .env)")
    parser.add_argument("--db-host", help="Database host (default: $DB_HOST)")
    parser.add_argument("--db-port", type=int, help="Database port (default: $DB_PORT)")
    parser.add_argument("--db-name", help="Database name (default: $DB_NAME)")
    parser.add_argument("--db-user", help="Database user (default: $DB_USER)")
    parser.add_argument("--db-password", help="Database password (default: $DB_PASSWORD)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-schema", help="Create the backend tables")

    for name, help_text in (
        ("validate-config", "Validate a form configuration file"),
        ("inspect", "Show table, etag and index status"),
        ("rebuild-index", "Rebuild the record index from the destination table"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--config", required=True, help="Form configuration YAML")

    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile directly edited rows")
    reconcile_parser.add_argument("--config", required=True, help="Form configuration YAML")
    reconcile_parser.add_argument("--start-row", type=int, required=True, help="First edited row (>= 2)")
    reconcile_parser.add_argument("--num-rows", type=int, default=1, help="Number of edited rows (default: 1)")

    invalidate_parser = subparsers.add_parser("invalidate-cache", help="Invalidate every cached entry")
    invalidate_parser.add_argument("--reason", default="manual", help="Reason recorded in the logs")

    get_parser = subparsers.add_parser("get", help="Show one record")
    get_parser.add_argument("--config", required=True, help="Form configuration YAML")
    target = get_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--record-id", help="Record id")
    target.add_argument(
        "--row", type=int,
        help="Physical row number (>= 2). A row without id is given one and indexed "
             "with the dedup rules of --config",
    )

    list_parser = subparsers.add_parser("list", help="Show one page of records")
    list_parser.add_argument("--config", required=True, help="Form configuration YAML")
    list_parser.add_argument("--page-size", type=int, default=10, help="Page size (default: 10)")
    list_parser.add_argument("--page-token", help="Token from a previous page")
    list_parser.add_argument("--projection", help="Comma separated field ids")

    return parser


def main(argv: list[str] | None = None):
    """Main entry point for admin CLI."""
    setup_logger()
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        COMMANDS[args.command](args)
    except (RuleConfigError, ValidationError, FileNotFoundError) as e:
        print(f"\nError: {e}")
        sys.exit(2)
    except SheetStoreError as e:
        logger.error(f"Command failed: {e}", exc_info=True)
        print(f"\nError: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
