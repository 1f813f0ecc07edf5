"""Command-line interface for receipt scanning and CSV export.

Provides subcommands for scanning a single receipt, scanning a folder of
receipts into a CSV file, and parsing already-recognized receipt text.
"""

import argparse
import asyncio
import csv
import json
import sys
import time
from pathlib import Path

from src.extraction.receipt_extractor import ExtractedReceipt, extract_receipt_fields
from src.pipeline.errors import FileReadError
from src.pipeline.image_source import load_image_source
from src.pipeline.orchestrator import (
    PipelineEvent,
    PipelineState,
    ScanCompleted,
    ScanOutcome,
    ScanPipeline,
)
from src.utils.config import AppConfig, load_config
from src.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

_SUPPORTED_EXTENSIONS = ("*.png", "*.jpg", "*.jpeg", "*.gif", "*.bmp", "*.webp", "*.tiff", "*.tif")
_CSV_COLUMNS = [
    "filename",
    "status",
    "organization",
    "amount",
    "tip",
    "confidence",
    "processing_time_s",
    "error",
]


def _find_images(input_dir: Path) -> list[Path]:
    """Find all supported receipt images in a directory.

    Args:
        input_dir: Directory to scan for images.

    Returns:
        Sorted list of image file paths.
    """
    files: list[Path] = []
    for ext in _SUPPORTED_EXTENSIONS:
        files.extend(input_dir.glob(ext))
        files.extend(input_dir.glob(ext.upper()))
    return sorted(set(files))


def _print_progress(event: PipelineEvent) -> None:
    if event.state is PipelineState.RECOGNIZING:
        label = "initializing OCR engine" if event.initializing else f"{event.progress}%"
        print(f"  recognizing: {label}", file=sys.stderr)
    else:
        print(f"  {event.state.value}", file=sys.stderr)


def _receipt_to_dict(receipt: ExtractedReceipt) -> dict[str, object]:
    data = receipt.to_dict()
    data["diagnostics"] = [vars(d) for d in receipt.diagnostics]
    return data


def outcome_to_dict(outcome: ScanOutcome, filename: str) -> dict[str, object]:
    """Convert a scan outcome into a JSON-serializable dictionary."""
    if isinstance(outcome, ScanCompleted):
        return {
            "filename": filename,
            "status": "success",
            "fields": _receipt_to_dict(outcome.receipt),
            "confidence": outcome.confidence,
            "raw_text": outcome.raw_text,
            "record": outcome.record.to_dict(),
        }
    fallback = outcome.fallback_record
    return {
        "filename": filename,
        "status": "failed",
        "error": {"code": outcome.reason, "message": outcome.message},
        "fallback_record": fallback.to_dict() if fallback else None,
    }


async def scan_file(
    file_path: Path, pipeline: ScanPipeline
) -> ScanOutcome:
    """Validate an image file and run it through the scan pipeline.

    Raises:
        FileReadError: If the file is unreadable or not an acceptable image.
    """
    limits = pipeline.config.pipeline
    source = load_image_source(
        file_path,
        min_bytes=limits.min_file_bytes,
        max_bytes=limits.max_file_bytes,
    )
    return await pipeline.scan(source)


def scan_single(
    file_path: Path, config: AppConfig, verbose: bool = False
) -> dict[str, object]:
    """Scan one receipt image and return structured results.

    Args:
        file_path: Path to the receipt image.
        config: Application configuration.
        verbose: Whether to print pipeline progress to stderr.

    Returns:
        Dictionary describing the scan outcome.
    """
    pipeline = ScanPipeline(config)
    if verbose:
        pipeline.subscribe(_print_progress)
    outcome = asyncio.run(scan_file(file_path, pipeline))
    return outcome_to_dict(outcome, file_path.name)


def process_folder(
    input_dir: Path,
    output_csv: Path,
    config: AppConfig,
    verbose: bool = False,
) -> dict[str, int]:
    """Scan all receipt images in a folder and export results to CSV.

    Args:
        input_dir: Directory containing receipt images.
        output_csv: Path for the output CSV file.
        config: Application configuration.
        verbose: Whether to print per-file progress.

    Returns:
        Summary dict with total, successful, and failed counts.
    """
    files = _find_images(input_dir)
    if not files:
        logger.warning("No images found in %s", input_dir)
        return {"total": 0, "successful": 0, "failed": 0}

    logger.info("Found %d images to process", len(files))
    results = asyncio.run(_scan_all(files, ScanPipeline(config), verbose))

    successful = sum(1 for r in results if r["status"] == "success")
    _write_csv(results, output_csv)
    logger.info("Results written to %s", output_csv)

    summary = {"total": len(files), "successful": successful, "failed": len(files) - successful}
    _print_summary(summary, output_csv)
    return summary


async def _scan_all(
    files: list[Path], pipeline: ScanPipeline, verbose: bool
) -> list[dict[str, object]]:
    results: list[dict[str, object]] = []
    for i, file_path in enumerate(files, 1):
        if verbose:
            print(f"Processing [{i}/{len(files)}]: {file_path.name}")

        start_time = time.time()
        row: dict[str, object] = {"filename": file_path.name}
        try:
            outcome = await scan_file(file_path, pipeline)
        except FileReadError as exc:
            logger.error("Skipping %s: %s", file_path.name, exc)
            row.update(status="failed", error=str(exc))
        else:
            if isinstance(outcome, ScanCompleted):
                row.update(
                    status="success",
                    organization=outcome.receipt.organization,
                    amount=f"{outcome.receipt.amount:.2f}",
                    tip=f"{outcome.receipt.tip:.2f}",
                    confidence=outcome.confidence,
                )
            else:
                row.update(status="failed", error=outcome.message)
        row["processing_time_s"] = round(time.time() - start_time, 2)
        results.append(row)
    return results


def _write_csv(results: list[dict[str, object]], output_path: Path) -> None:
    """Write scan results to a CSV file.

    Args:
        results: List of result dictionaries.
        output_path: Path for the output CSV file.
    """
    if not results:
        return

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=_CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(results)


def _print_summary(summary: dict[str, int], output_csv: Path) -> None:
    """Print batch processing summary to stdout.

    Args:
        summary: Counts of total, successful, and failed receipts.
        output_csv: Path to the output CSV.
    """
    print(f"\n{'=' * 50}")
    print("Batch Scan Complete")
    print(f"{'=' * 50}")
    print(f"Total:      {summary['total']}")
    print(f"Successful: {summary['successful']}")
    print(f"Failed:     {summary['failed']}")
    print(f"Output:     {output_csv}")


def parse_text(text: str) -> dict[str, object]:
    """Extract receipt fields from already-recognized text."""
    return _receipt_to_dict(extract_receipt_fields(text))


def _emit(result: dict[str, object], output: Path | None) -> None:
    output_str = json.dumps(result, indent=2)
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(output_str)
        print(f"Output written to {output}")
    else:
        print(output_str)


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="Receipt Scanner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", type=Path, help="YAML configuration file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    scan_parser = subparsers.add_parser("scan", help="Scan a single receipt image")
    scan_parser.add_argument("file", type=Path, help="Receipt image to scan")
    scan_parser.add_argument("-o", "--output", type=Path, help="Output JSON file")
    scan_parser.add_argument(
        "--remote", action="store_true", help="Use the remote vision model instead of local OCR"
    )
    scan_parser.add_argument(
        "--skip-normalization", action="store_true", help="Skip image normalization"
    )
    scan_parser.add_argument("-v", "--verbose", action="store_true", help="Show progress")

    batch_parser = subparsers.add_parser("batch", help="Scan a folder of receipt images")
    batch_parser.add_argument("input_dir", type=Path, help="Input directory with images")
    batch_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("results.csv"),
        help="Output CSV file (default: results.csv)",
    )
    batch_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    parse_parser = subparsers.add_parser("parse", help="Extract fields from receipt text")
    parse_parser.add_argument("file", type=Path, help="Text file with OCR output ('-' for stdin)")
    parse_parser.add_argument("-o", "--output", type=Path, help="Output JSON file")

    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.log_level)

    if args.command == "scan":
        if not args.file.exists():
            print(f"Error: {args.file} does not exist", file=sys.stderr)
            sys.exit(1)
        if args.remote:
            config.pipeline.use_local_ocr = False
        if args.skip_normalization:
            config.pipeline.skip_normalization = True
        try:
            result = scan_single(args.file, config, args.verbose)
        except FileReadError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
        _emit(result, args.output)
    elif args.command == "batch":
        if not args.input_dir.is_dir():
            print(f"Error: {args.input_dir} is not a directory", file=sys.stderr)
            sys.exit(1)
        process_folder(args.input_dir, args.output, config, args.verbose)
    elif args.command == "parse":
        if str(args.file) == "-":
            text = sys.stdin.read()
        elif args.file.exists():
            text = args.file.read_text()
        else:
            print(f"Error: {args.file} does not exist", file=sys.stderr)
            sys.exit(1)
        _emit(parse_text(text), args.output)
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
