"""
Settlement Rail CLI

Commands:
  serve   - Run the settlement server
  report  - Record a usage rollup as the configured reporter
  show    - Show an entity's ledger record
  facts   - List and verify the persisted fact journal

report/show/facts operate on DATABASE_URL (default sqlite:///settlement_rail.db).
"""

import argparse
import json
import os
import sys

from .config import RailConfig
from .core.errors import LedgerError


def _load_config(args) -> RailConfig:
    config = RailConfig.from_env()
    config.database_url = args.database or config.database_url or "sqlite:///settlement_rail.db"
    return config


def cmd_serve(args):
    """Run the settlement server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Settlement Rail on {host}:{port}")

    uvicorn.run(
        "settlement_rail.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_report(args):
    """Record one usage rollup."""
    from .operator import LedgerOperator

    config = _load_config(args)
    operator = LedgerOperator.from_config(config)

    try:
        record = operator.record_usage(
            operator.access.reporter,
            args.entity,
            args.epoch,
            args.primary,
            args.secondary,
        )
    except LedgerError as e:
        print(f"Report rejected: {e}")
        sys.exit(1)

    print(f"Recorded epoch {args.epoch} for {args.entity}")
    print(f"  Primary accumulated: {record.primary_accumulated}")
    print(f"  Secondary accumulated: {record.secondary_accumulated}")


def cmd_show(args):
    """Show an entity's ledger record."""
    from .persistence import Database, UsageRecordRepository
    from .core.ledger import UsageRecord

    config = _load_config(args)
    db = Database(config.database_url)
    db.initialize()

    record = UsageRecordRepository(db).get(args.entity) or UsageRecord(entity_id=args.entity)
    if args.json:
        print(json.dumps(record.to_dict(), indent=2))
        return

    print(f"Entity: {record.entity_id}")
    print("=" * 40)
    print(f"Max Reported Epoch: {record.max_reported_epoch}")
    print(f"Primary Accumulated: {record.primary_accumulated}")
    print(f"Secondary Accumulated: {record.secondary_accumulated}")
    print(f"Last Primary Settled Epoch: {record.last_primary_settled_epoch}")
    print(f"Last Secondary Settled Epoch: {record.last_secondary_settled_epoch}")


def cmd_facts(args):
    """List and verify persisted facts."""
    from .persistence import Database, FactRepository

    config = _load_config(args)
    db = Database(config.database_url)
    db.initialize()
    repo = FactRepository(db)

    facts = repo.query(entity_id=args.entity, limit=args.limit)
    for fact in facts:
        print(f"{fact.sequence:>6}  {fact.fact_type.value:<26} {json.dumps(fact.payload, sort_keys=True)}")

    is_valid, error, length = repo.verify_chain_integrity()
    print(f"Chain: {length} facts, {'valid' if is_valid else 'INVALID: ' + str(error)}")
    if not is_valid:
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Settlement Rail - Usage Accounting and Settlement Ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database", help="Database URL (overrides DATABASE_URL)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # report
    report_parser = subparsers.add_parser("report", help="Record a usage rollup")
    report_parser.add_argument("entity", help="Entity ID")
    report_parser.add_argument("epoch", type=int, help="Rollup epoch")
    report_parser.add_argument("primary", type=int, help="Primary units")
    report_parser.add_argument("secondary", type=int, help="Secondary units")

    # show
    show_parser = subparsers.add_parser("show", help="Show an entity's ledger record")
    show_parser.add_argument("entity", help="Entity ID")
    show_parser.add_argument("--json", action="store_true")

    # facts
    facts_parser = subparsers.add_parser("facts", help="List and verify facts")
    facts_parser.add_argument("--entity", help="Only facts for this entity")
    facts_parser.add_argument("--limit", type=int, default=50)

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "report":
        cmd_report(args)
    elif args.command == "show":
        cmd_show(args)
    elif args.command == "facts":
        cmd_facts(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
