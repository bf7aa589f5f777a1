from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from dotenv import load_dotenv

from trade_journal.config.settings import get_settings
from trade_journal.db.repository import Database
from trade_journal.ingest.errors import IngestError


def _service(database: Database):
    from trade_journal.ingest.pipeline import CsvIngestionService

    return CsvIngestionService.from_settings(database, get_settings())


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _parse_overrides(pairs: list[str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for pair in pairs:
        header, sep, field_name = pair.partition("=")
        if not sep or not header.strip() or not field_name.strip():
            raise SystemExit(f"--map expects HEADER=FIELD, got '{pair}'")
        overrides[header.strip()] = field_name.strip()
    return overrides


def _cmd_init_db(_: argparse.Namespace) -> int:
    from trade_journal.db.migrate import migrate

    migrate()
    print("Initialized database schema.")
    return 0


def _cmd_import(args: argparse.Namespace) -> int:
    path = Path(args.file).expanduser()
    database = Database.from_url()
    try:
        result = _service(database).ingest_csv(
            path.read_bytes(), path.name, args.user, account_tags=args.tag
        )
    finally:
        database.dispose()
    _print_json(result.to_payload())
    return 0 if result.status != "failed" else 1


def _cmd_finalize(args: argparse.Namespace) -> int:
    database = Database.from_url()
    try:
        result = _service(database).finalize_mappings(
            args.batch,
            args.user,
            corrected_mappings=_parse_overrides(args.map),
            user_approved=not args.reject,
            report_error=args.report_error,
            broker_name=args.broker,
        )
    finally:
        database.dispose()
    _print_json(result.to_payload())
    return 0 if result.status == "completed" else 1


def _cmd_status(args: argparse.Namespace) -> int:
    database = Database.from_url()
    try:
        status = _service(database).get_import_status(args.batch, args.user)
    finally:
        database.dispose()
    _print_json(status.to_payload())
    return 0


def _cmd_delete_trades(args: argparse.Namespace) -> int:
    from trade_journal.analytics.trade_deletion import delete_trades

    trade_ids = [int(item) for item in args.ids.split(",") if item.strip()]
    database = Database.from_url()
    try:
        with database.unit_of_work() as session:
            result = delete_trades(session, args.user, trade_ids)
    finally:
        database.dispose()
    _print_json(result.to_payload())
    return 0


def _cmd_template(_: argparse.Namespace) -> int:
    from trade_journal.ingest.csv_import import csv_template

    sys.stdout.write(csv_template())
    return 0


def _cmd_brokers(args: argparse.Namespace) -> int:
    from trade_journal.ingest.broker_formats import BrokerFormatRegistry

    registry = BrokerFormatRegistry()
    database = Database.from_url()
    try:
        with database.unit_of_work() as session:
            brokers = registry.search_brokers(session, args.query or "", limit=args.limit)
            for broker in brokers:
                aliases = ", ".join(registry.broker_aliases(session, broker.id))
                print(f"{broker.name}  [{aliases}]")
    finally:
        database.dispose()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trade Journal developer CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sp_init_db = subparsers.add_parser("init-db", help="Create/update local database schema")
    sp_init_db.set_defaults(func=_cmd_init_db)

    sp_import = subparsers.add_parser("import", help="Import a broker CSV export")
    sp_import.add_argument("file", help="Path to the CSV file.")
    sp_import.add_argument("--user", required=True, help="Owner of the imported orders.")
    sp_import.add_argument(
        "--tag", action="append", default=[], help="Account tag applied to every order (repeatable)."
    )
    sp_import.set_defaults(func=_cmd_import)

    sp_finalize = subparsers.add_parser("finalize", help="Approve or reject a pending mapping")
    sp_finalize.add_argument("batch", help="Import batch id awaiting review.")
    sp_finalize.add_argument("--user", required=True)
    sp_finalize.add_argument("--reject", action="store_true", help="Cancel the import.")
    sp_finalize.add_argument(
        "--report-error", action="store_true", help="Reject and flag the proposed mapping as wrong."
    )
    sp_finalize.add_argument(
        "--map", action="append", default=[], metavar="HEADER=FIELD", help="Override one column mapping."
    )
    sp_finalize.add_argument("--broker", default=None, help="Broker name for the new format.")
    sp_finalize.set_defaults(func=_cmd_finalize)

    sp_status = subparsers.add_parser("status", help="Show an import batch")
    sp_status.add_argument("batch")
    sp_status.add_argument("--user", required=True)
    sp_status.set_defaults(func=_cmd_status)

    sp_delete = subparsers.add_parser("delete-trades", help="Delete trades and their orders")
    sp_delete.add_argument("ids", help="Comma-separated trade ids.")
    sp_delete.add_argument("--user", required=True)
    sp_delete.set_defaults(func=_cmd_delete_trades)

    sp_template = subparsers.add_parser("template", help="Print the example CSV")
    sp_template.set_defaults(func=_cmd_template)

    sp_brokers = subparsers.add_parser("brokers", help="List or search known brokers")
    sp_brokers.add_argument("--query", default="")
    sp_brokers.add_argument("--limit", type=int, default=20)
    sp_brokers.set_defaults(func=_cmd_brokers)

    return parser


def main() -> int:
    load_dotenv(dotenv_path=REPO_ROOT / ".env")
    parser = build_parser()
    args = parser.parse_args()
    try:
        return args.func(args)
    except IngestError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
