#!/usr/bin/env python3
"""
CLI entry point for batch compliance reporting.

Loads NDJSON or JSON array-formatted records, applies a label filter given
either as a filter document file or as a text expression, and prints
compliance-over-time reports, status histograms, latest-per-stream search
results, or the compiled queries as JSON.
"""

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List

from compliance_engine import (
    ComplianceService,
    MemoryRecordStore,
    Record,
    compile_filter,
    compile_sql,
    parse_filter,
)
from compliance_engine.config import load_settings, setup_logging
from compliance_engine.errors import ComplianceEngineError
from compliance_engine.models import Filter, parse_timestamp
from compliance_engine.serializer import encode_filter, loads_filter

logger = logging.getLogger("run_report")

MODES = ("compliance", "status", "search", "compile")


def load_records(input_file: str) -> List[Record]:
    """Load records from an NDJSON or JSON array file.

    Args:
        input_file: Path to input file (NDJSON or JSON)

    Returns:
        List of records

    Raises:
        ValueError: If the file or one of its records is invalid
    """
    path = Path(input_file)
    if not path.exists():
        raise ValueError(f"Input file not found: {input_file}")

    content = path.read_text().strip()
    if not content:
        return []

    documents: List[Dict[str, Any]] = []
    if content.startswith('['):
        try:
            documents = json.loads(content)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON array: {e}")
        if not isinstance(documents, list):
            raise ValueError("JSON must be an array of objects")
    else:
        for line_num, line in enumerate(content.split('\n'), 1):
            line = line.strip()
            if not line:
                continue
            try:
                documents.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise ValueError(f"Line {line_num}: Invalid JSON: {e}")

    records = []
    for index, document in enumerate(documents):
        if not isinstance(document, dict):
            raise ValueError(f"Record {index}: must be a JSON object")
        try:
            records.append(Record.from_dict(document))
        except ValueError as e:
            raise ValueError(f"Record {index}: {e}")
    return records


def load_filter(filter_file: str | None, expression: str | None) -> Filter:
    """Build the label filter from a document file or a text expression."""
    if filter_file and expression:
        raise ValueError("Use either --filter-file or --expression, not both")
    if filter_file:
        return loads_filter(Path(filter_file).read_text())
    if expression:
        return parse_filter(expression)
    return Filter()


def run(args: argparse.Namespace) -> Dict[str, Any]:
    """Execute the requested mode and return the JSON-ready output."""
    settings = load_settings(args.config)
    overrides: Dict[str, Any] = {}
    if args.interval:
        overrides["results_interval"] = args.interval
        overrides["findings_interval"] = args.interval
    if args.anchor:
        overrides["bucket_anchor"] = args.anchor
    if args.timeout:
        overrides["store_timeout"] = args.timeout
    if args.strict:
        overrides["strict_filters"] = True
    settings = replace(settings, **overrides)

    label_filter = load_filter(args.filter_file, args.expression)

    if args.mode == "compile":
        sql = compile_sql(label_filter, settings.strict_filters)
        return {
            "filter": encode_filter(label_filter),
            "query": compile_filter(label_filter, settings.strict_filters),
            "sql": {"clause": sql.clause, "params": sql.params},
        }

    records = load_records(args.records)
    logger.info(f"Loaded {len(records)} records from {args.records}")

    store = MemoryRecordStore(strict=settings.strict_filters)
    store.add(settings.results_collection, records)
    if settings.findings_collection != settings.results_collection:
        store.add(settings.findings_collection, records)

    service = ComplianceService(store, settings)
    if args.now:
        now = parse_timestamp(args.now)
        service.clock = lambda: now

    if args.mode == "search":
        return {"data": [record.to_dict() for record in service.search(label_filter)]}

    if args.mode == "status":
        if args.stream:
            groups = service.status_over_time_by_stream(args.stream)
        else:
            groups = service.status_over_time_by_filter(label_filter)
        return {"data": [group.to_dict() for group in groups]}

    if args.stream:
        reports = service.compliance_by_stream(args.stream)
    else:
        reports = service.compliance_by_filter(label_filter)
    return {"data": [report.to_dict() for report in reports]}


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Compliance Engine - Build compliance-over-time reports from labeled records"
    )

    parser.add_argument(
        "records",
        nargs="?",
        help="Path to records file (NDJSON or JSON array format)",
    )
    parser.add_argument(
        "-m", "--mode",
        choices=MODES,
        default="compliance",
        help="Report to produce (default: compliance)",
    )
    parser.add_argument(
        "-f", "--filter-file",
        help="Path to a label filter document (JSON)",
    )
    parser.add_argument(
        "-e", "--expression",
        help="Label filter expression, e.g. 'env=prod AND (tier=web OR tier=api)'",
    )
    parser.add_argument(
        "-s", "--stream",
        help="Report on a single stream instead of a filter",
    )
    parser.add_argument(
        "-i", "--interval",
        type=int,
        help="Bucket interval in seconds",
    )
    parser.add_argument(
        "--anchor",
        choices=("now", "epoch"),
        help="Anchor bucket boundaries to the current time or to the Unix epoch",
    )
    parser.add_argument(
        "--now",
        help="ISO 8601 timestamp to use as the current time",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds a store query may run before failing",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail on unsupported filter operators instead of matching everything",
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to a YAML configuration file",
    )
    parser.add_argument(
        "-o", "--output",
        help="Output file path",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    args = parser.parse_args()

    if args.mode != "compile" and not args.records:
        parser.error("A records file is required unless --mode compile is used")

    setup_logging("INFO" if args.verbose else "WARNING", stream=sys.stderr)

    try:
        output = json.dumps(run(args), indent=2)
    except (ValueError, SyntaxError, OSError, ComplianceEngineError) as e:
        print(json.dumps({"error": str(e)}, indent=2), file=sys.stderr)
        sys.exit(1)

    if args.output:
        Path(args.output).write_text(output)
        logger.info(f"Results saved to {args.output}")
    else:
        print(output)


if __name__ == "__main__":
    main()
