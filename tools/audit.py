#!/usr/bin/env python3
"""
Electra Audit CLI

Commands for inspecting an election ledger:
- status: Block height, phase, cache and monitor state
- integrity: Cross-check vote totals, turnout and the declared winner
- export: Write a fingerprinted audit document to JSON
- verify-export: Re-check an exported document offline

The ledger is selected from the environment (see electra.config).

Usage:
    python -m tools.audit <command> [options]

Examples:
    python -m tools.audit integrity
    python -m tools.audit export -o audit.json
    python -m tools.audit verify-export audit.json

Exit codes:
    0 - OK / VERIFIED
    1 - Integrity issues found / TAMPERED
    2 - Ledger unavailable
    3 - INVALID_FORMAT: export file unreadable
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pydantic import ValidationError as SchemaError

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from electra.config import ClientConfig  # noqa: E402
from electra.core import ElectionClient, LedgerReadError, verify_export  # noqa: E402
from electra.gateway import LedgerGatewayError, create_gateway  # noqa: E402
from electra.schemas import AuditExport  # noqa: E402

EXIT_OK = 0
EXIT_ISSUES = 1
EXIT_UNAVAILABLE = 2
EXIT_INVALID_FORMAT = 3


async def _with_client(action):
    client = ElectionClient(create_gateway(), config=ClientConfig.from_env())
    await client.start(watch_events=False)
    try:
        return await action(client)
    finally:
        await client.close()


def _run(action) -> int:
    try:
        return asyncio.run(_with_client(action))
    except (LedgerReadError, LedgerGatewayError) as e:
        print(f"ERROR: ledger unavailable: {e}", file=sys.stderr)
        return EXIT_UNAVAILABLE


def cmd_status(args):
    """Print client and ledger status."""
    async def action(client):
        await client.get_phase()
        print(json.dumps(await client.system_status(), indent=2, default=str))
        return EXIT_OK

    return _run(action)


def cmd_integrity(args):
    """Run the integrity checks against a fresh snapshot."""
    async def action(client):
        report = await client.validate_integrity()
        if args.json:
            print(report.model_dump_json(indent=2))
        elif report.is_valid:
            print("OK: no integrity issues")
        else:
            print(f"FAILED: {len(report.issues)} issue(s)")
            for issue in report.issues:
                print(f"  [{issue.type.value}] {issue.message} "
                      f"(expected {issue.expected}, got {issue.actual})")
        return EXIT_OK if report.is_valid else EXIT_ISSUES

    return _run(action)


def cmd_export(args):
    """Export snapshot, integrity report and event history to JSON."""
    output = Path(args.output or "electra_audit.json")

    async def action(client):
        export = await client.export_audit(exported_by=args.exported_by)
        output.write_text(export.model_dump_json(indent=2), encoding="utf-8")
        print(f"Exported {len(export.events)} events to {output}")
        print(f"  Fingerprint: {export.fingerprint}")
        print(f"  Integrity: {'OK' if export.integrity.is_valid else 'ISSUES FOUND'}")
        return EXIT_OK

    return _run(action)


def cmd_verify_export(args):
    """Verify an exported audit document without a ledger connection."""
    path = Path(args.file)
    try:
        export = AuditExport.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, SchemaError) as e:
        print(f"INVALID_FORMAT: {e}", file=sys.stderr)
        return EXIT_INVALID_FORMAT

    if not verify_export(export):
        print("TAMPERED: fingerprint or event chain mismatch")
        return EXIT_ISSUES

    print("VERIFIED")
    print(f"  Events: {len(export.events)}")
    print(f"  Fingerprint: {export.fingerprint}")
    if not export.integrity.is_valid:
        print(f"  Note: export records {len(export.integrity.issues)} integrity issue(s)")
    return EXIT_OK


def main():
    parser = argparse.ArgumentParser(
        description="Electra audit tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # status
    subparsers.add_parser("status", help="Show ledger and client status")

    # integrity
    p_integrity = subparsers.add_parser("integrity", help="Run integrity checks")
    p_integrity.add_argument("--json", action="store_true", help="Print the report as JSON")

    # export
    p_export = subparsers.add_parser("export", help="Export a fingerprinted audit document")
    p_export.add_argument("--output", "-o", help="Output file (default: electra_audit.json)")
    p_export.add_argument("--exported-by", help="Name recorded in the export")

    # verify-export
    p_verify = subparsers.add_parser("verify-export", help="Verify an exported audit document")
    p_verify.add_argument("file", help="Path to the exported JSON")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "status": cmd_status,
        "integrity": cmd_integrity,
        "export": cmd_export,
        "verify-export": cmd_verify_export,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
