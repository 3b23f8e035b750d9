#!/usr/bin/env python3
"""Owner command line: initialise keys, insert records, run range queries
and export a searcher credential.

Settings come from CHRONOSEAL_* environment variables (or .env); pass
--config to use an owner JSON config file instead.

    chronoseal-owner.py init
    chronoseal-owner.py insert records.jsonl
    chronoseal-owner.py find --set Admin --dim A --value alice \
        --from 2024-01-01T00:00:00 --to 2024-02-01T00:00:00
    chronoseal-owner.py export-searcher --set Admin -o searcher.json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime

from chronoseal.config import get_settings
from chronoseal.errors import ChronosealError
from chronoseal.models.credential import OwnerConfig
from chronoseal.models.record import FIELD_USER_ID, RECORD_FIELDS, Record
from chronoseal.services.abe_engine import CharmCPABEEngine
from chronoseal.services.owner import Owner


def _read_records(stream) -> list[Record]:
    records: list[Record] = []
    for lineno, line in enumerate(stream, 1):
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
            records.append(
                Record(
                    user_id=str(item["user_id"]),
                    location=str(item["location"]),
                    set=str(item["set"]),
                    time=datetime.fromisoformat(item["time"]),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"line {lineno}: {e}") from e
    return records


def _cmd_init(owner: Owner, args: argparse.Namespace) -> int:
    print(f"Key store ready at {owner.config.store_path}", file=sys.stderr)
    return 0


def _cmd_insert(owner: Owner, args: argparse.Namespace) -> int:
    if args.input == "-":
        records = _read_records(sys.stdin)
    else:
        with open(args.input, encoding="utf-8") as f:
            records = _read_records(f)
    doc_ids = owner.insert(records, deadline=args.deadline)
    for doc_id in doc_ids:
        print(doc_id)
    return 0


def _cmd_find(owner: Owner, args: argparse.Namespace) -> int:
    results = owner.find_range(
        args.set,
        args.dim,
        args.value,
        datetime.fromisoformat(args.time_from),
        datetime.fromisoformat(args.time_to),
        args.fields or [FIELD_USER_ID],
        deadline=args.deadline,
    )
    failed = 0
    for result in results:
        if result.ok:
            print(json.dumps({"_id": result.doc_id, **result.fields}))
        else:
            failed += 1
            print(f"{result.doc_id}: {result.error}", file=sys.stderr)
    return 2 if failed else 0


def _cmd_export(owner: Owner, args: argparse.Namespace) -> int:
    text = owner.export_searcher_credential(args.set)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(text + "\n")
        print(f"Searcher config written to {args.output}", file=sys.stderr)
    else:
        print(text)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Chronoseal data owner tool.")
    parser.add_argument("--config", "-c", default=None, help="Owner JSON config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Seconds allowed for the whole operation (default: no deadline)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create (or load) the owner key store")

    p_insert = sub.add_parser("insert", help="Insert JSON-lines records")
    p_insert.add_argument("input", nargs="?", default="-", help="File path, or - for stdin")

    p_find = sub.add_parser("find", help="Range query over one partition")
    p_find.add_argument("--set", required=True, help="Partition label")
    p_find.add_argument("--dim", choices=["A", "B"], default="A", help="A: UserId, B: Location")
    p_find.add_argument("--value", required=True, help="UserId or Location to match")
    p_find.add_argument("--from", dest="time_from", required=True, help="ISO-8601 start")
    p_find.add_argument("--to", dest="time_to", required=True, help="ISO-8601 end")
    p_find.add_argument(
        "--field", dest="fields", action="append", choices=RECORD_FIELDS,
        help="Field to return (repeatable; default: UserId)",
    )

    p_export = sub.add_parser("export-searcher", help="Export a one-partition searcher config")
    p_export.add_argument("--set", required=True, help="Partition label")
    p_export.add_argument("--output", "-o", default=None, help="Output file (default: stdout)")

    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    handlers = {
        "init": _cmd_init,
        "insert": _cmd_insert,
        "find": _cmd_find,
        "export-searcher": _cmd_export,
    }
    try:
        config = (
            OwnerConfig.from_file(args.config) if args.config else OwnerConfig.from_settings(settings)
        )
        engine = CharmCPABEEngine(curve=settings.abe_curve)
        with Owner.open(
            config,
            engine=engine,
            passphrase=settings.keystore_passphrase or None,
            timeout=settings.request_timeout_seconds,
        ) as owner:
            return handlers[args.command](owner, args)
    except (ChronosealError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
