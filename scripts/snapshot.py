#!/usr/bin/env python3
"""
Command-line snapshot utility for the inventory store.

Exports and imports the versioned record envelope, exports a record's audit
history as CSV, and runs the maintenance checks.
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from slabtrack.core.audit import AuditTrail
from slabtrack.core.config import get_storage, validate_store_config
from slabtrack.core.maintenance import MaintenanceError, check_envelope_integrity, check_rule_compliance
from slabtrack.core.rules import RuleConfigService
from slabtrack.core.storage import SqliteStorage, StorageError
from slabtrack.core.store import RecordStore


def build_parser():
    parser = argparse.ArgumentParser(
        description="Export, import and check the inventory record store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s export inventory.json            # Write the record envelope to a file
  %(prog)s import inventory.json            # Replace all records from a file
  %(prog)s audit-export REC-1 -o rec1.csv   # Audit history of one record as CSV
  %(prog)s compliance                       # Re-check records against business rules
  %(prog)s integrity                        # Verify the stored envelope

Environment variables:
- DB_PATH=./data/slabtrack.db (used unless --db-path is given)
- STORAGE_BACKEND=sqlite|memory
        """
    )

    parser.add_argument(
        "--db-path",
        help="SQLite database path (default: DB_PATH)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    export_parser = subparsers.add_parser("export", help="Export all records to a JSON file")
    export_parser.add_argument("output", help="Destination file ('-' for stdout)")

    import_parser = subparsers.add_parser("import", help="Import records from a JSON file, replacing the current set")
    import_parser.add_argument("input", help="Source file")
    import_parser.add_argument(
        "--yes", "-y",
        action="store_true",
        help="Confirm replacing existing records"
    )

    audit_parser = subparsers.add_parser("audit-export", help="Export one record's audit history as CSV")
    audit_parser.add_argument("record_id", help="Record identifier")
    audit_parser.add_argument("--output", "-o", help="Destination file (default: stdout)")

    subparsers.add_parser("compliance", help="Re-check stored records against the business rules")
    subparsers.add_parser("integrity", help="Verify the persisted record envelope")

    return parser


def _open_storage(db_path):
    if db_path:
        return SqliteStorage(db_path)
    return get_storage()


def _print_report(report):
    print(f"Operation: {report.operation}")
    print(f"Issues found: {report.issues_found}")
    for error in report.errors:
        print(f"  ERROR: {error}")
    for recommendation in report.recommendations:
        print(f"  NOTE: {recommendation}")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    issues = validate_store_config()
    if issues:
        for issue in issues:
            print(f"ERROR: {issue}")
        return 1

    try:
        storage = _open_storage(args.db_path)

        if args.command == "integrity":
            report = check_envelope_integrity(storage)
            _print_report(report)
            return 0 if report.healthy else 1

        if args.command == "audit-export":
            csv_text = AuditTrail(storage).export_history(args.record_id)
            if args.output:
                Path(args.output).write_text(csv_text, encoding="utf-8")
                print(f"Audit history written to {args.output}")
            else:
                sys.stdout.write(csv_text)
            return 0

        rules = RuleConfigService(storage)
        with RecordStore(storage=storage, rules=rules.get_rules) as store:
            if args.command == "export":
                result = store.export_snapshot()
                if not result.success:
                    print(f"ERROR: Export failed: {result.error}")
                    return 1
                text = json.dumps(result.data, indent=2)
                if args.output == "-":
                    sys.stdout.write(text + "\n")
                else:
                    Path(args.output).write_text(text, encoding="utf-8")
                    print(f"Exported {result.data['metadata']['recordCount']} records to {args.output}")
                return 0

            if args.command == "import":
                existing = len(store.get_all().data)
                if existing and not args.yes:
                    print(f"ERROR: Import would replace {existing} existing records; pass --yes to confirm")
                    return 1
                result = store.import_snapshot(Path(args.input).read_text(encoding="utf-8"))
                if not result.success:
                    print(f"ERROR: Import failed: {result.error}")
                    return 1
                print(f"Imported {result.data} records from {args.input}")
                return 0

            if args.command == "compliance":
                report = check_rule_compliance(store)
                _print_report(report)
                for record_id, messages in report.metadata.get("violations", {}).items():
                    print(f"  {record_id}: {'; '.join(messages)}")
                return 0 if report.healthy else 1

        return 1

    except (StorageError, MaintenanceError, OSError) as e:
        print(f"ERROR: {e}")
        return 1
    except Exception as e:
        print(f"ERROR: Unexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
