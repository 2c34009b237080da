#!/usr/bin/env python3
"""
Bulk territory resolution from a CSV or plain ZIP list.

Usage:
    python bulk_resolve.py input.csv output.csv
    python bulk_resolve.py zips.txt output.csv --batch-size 25 --concurrency 8
    python bulk_resolve.py input.csv output.csv --force-refresh

Input:
    A CSV with a 'zip' column (or 'zip_code', 'zipcode', 'postal_code'),
    or a text file with one ZIP code per line.

Output CSV:
    One row per input, in input order: zip_code, status, city_slug,
    city, utility_id, utility, market_type, confidence, source, error_code
"""

import argparse
import csv
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from logging_config import get_logger
from resolution import EngineConfig, ResolveOptions, TerritoryResolutionEngine

logger = get_logger("bulk_resolve")

ZIP_COLUMNS = ['zip', 'zip_code', 'zipcode', 'postal_code', 'postal', 'zip5']

OUTPUT_HEADERS = [
    'zip_code', 'status', 'city_slug', 'city', 'utility_id', 'utility',
    'market_type', 'confidence', 'source', 'error_code', 'message',
]


def find_zip_column(headers: List[str]) -> Optional[str]:
    """Find the ZIP column in the CSV headers."""
    headers_lower = [h.lower().strip() for h in headers]
    for col in ZIP_COLUMNS:
        if col in headers_lower:
            return headers[headers_lower.index(col)]
    return None


def read_zip_codes(input_file: str) -> List[str]:
    """Read ZIP codes from a CSV with a ZIP column, or a one-per-line list."""
    input_path = Path(input_file)
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_file}")

    with open(input_path, 'r', encoding='utf-8-sig') as f:
        lines = [line.strip() for line in f if line.strip()]
    if not lines:
        raise ValueError("Input file is empty")

    headers = next(csv.reader([lines[0]]))
    zip_col = find_zip_column(headers)
    if zip_col is None:
        return lines

    reader = csv.DictReader(lines)
    return [(row.get(zip_col) or '').strip() for row in reader]


def outcome_to_row(outcome) -> dict:
    if outcome.ok:
        result = outcome.result
        return {
            'zip_code': result.zip_code,
            'status': 'cached' if outcome.cached else 'success',
            'city_slug': result.city_slug,
            'city': result.city_display_name,
            'utility_id': result.utility_id,
            'utility': result.utility_name,
            'market_type': result.market_type.value,
            'confidence': result.confidence,
            'source': result.data_source,
        }
    return {
        'zip_code': outcome.zip_code,
        'status': 'error',
        'error_code': outcome.error_code,
        'message': outcome.message,
    }


def process_file(
    input_file: str,
    output_file: str,
    force_refresh: bool = False,
    batch_size: Optional[int] = None,
    concurrency: Optional[int] = None,
    delay: Optional[float] = None,
    engine: Optional[TerritoryResolutionEngine] = None,
    cancel_event: Optional[threading.Event] = None,
):
    """
    Resolve every ZIP in input_file and write the results to output_file.

    Returns:
        BulkResult from the engine
    """
    zip_codes = read_zip_codes(input_file)
    engine = engine or TerritoryResolutionEngine(EngineConfig.from_env())

    print(f"Input file: {input_file}")
    print(f"ZIP codes to resolve: {len(zip_codes)}")
    print()

    def progress(completed, total):
        print(f"Processed {completed}/{total}")

    bulk = engine.resolve_bulk(
        zip_codes,
        ResolveOptions(force_refresh=force_refresh),
        cancel_event=cancel_event,
        batch_size=batch_size,
        concurrency=concurrency,
        batch_delay=delay,
        progress_callback=progress,
    )

    with open(output_file, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=OUTPUT_HEADERS, extrasaction='ignore')
        writer.writeheader()
        writer.writerows(outcome_to_row(o) for o in bulk.results)

    summary = bulk.summary
    print()
    print("=== Complete ===" + (" (cancelled)" if bulk.cancelled else ""))
    print(f"Output file: {output_file}")
    print(f"Total time: {summary.total_processing_time_ms / 1000:.1f}s")
    print(f"Success: {summary.success_count}")
    print(f"Failed: {summary.failure_count}")
    print(f"Average confidence: {summary.average_confidence}")

    return bulk


def main():
    parser = argparse.ArgumentParser(
        description="Bulk ZIP to service territory resolution",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python bulk_resolve.py zips.csv results.csv
    python bulk_resolve.py zips.txt results.csv --batch-size 25 --concurrency 8
    python bulk_resolve.py zips.csv results.csv --force-refresh --delay 0
        """
    )

    parser.add_argument('input', help='Input CSV or text file with ZIP codes')
    parser.add_argument('output', help='Output CSV file for results')
    parser.add_argument('--force-refresh', '-f', action='store_true',
                        help='Skip both cache tiers and re-query providers')
    parser.add_argument('--batch-size', '-b', type=int, default=None,
                        help='ZIP codes per batch (default: BULK_BATCH_SIZE or 10)')
    parser.add_argument('--concurrency', '-c', type=int, default=None,
                        help='Parallel workers per batch (default: BULK_CONCURRENCY or 10)')
    parser.add_argument('--delay', '-d', type=float, default=None,
                        help='Seconds between batches (default: BULK_BATCH_DELAY_SECONDS or 1.0)')

    args = parser.parse_args()

    cancel_event = threading.Event()

    def handle_interrupt(signum, frame):
        logger.warning("Interrupted, finishing current batch")
        cancel_event.set()

    signal.signal(signal.SIGINT, handle_interrupt)

    try:
        process_file(
            args.input,
            args.output,
            force_refresh=args.force_refresh,
            batch_size=args.batch_size,
            concurrency=args.concurrency,
            delay=args.delay,
            cancel_event=cancel_event,
        )
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
