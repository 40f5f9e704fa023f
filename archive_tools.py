"""
Group Archive Repair - command line entry point

Takes an archive folder written by a groups exporter and turns it into
individual repaired .eml files, a consolidated mbox file, per-message PDFs
and one merged PDF.

Usage:
    group-archive-repair --source <folder-with-archive> --destination <destination-folder>
"""

import argparse
import shlex
import sys
from typing import List, Optional

from archive_orchestrator import ArchiveOrchestrator
from repair_engine import ArchivePreflightError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="group-archive-repair",
        description=(
            "Repair an exported group archive into individual emails, "
            "a consolidated mbox file and a merged PDF."
        ),
    )
    parser.add_argument("--source", required=True, help="Archive folder containing email/ and about/")
    parser.add_argument("--destination", required=True, help="Folder for the repaired output")
    parser.add_argument("--verbose", action="store_true", help="Print progress for every message")
    parser.add_argument("--no-pdf", action="store_true", help="Skip PDF rendering and merging")
    parser.add_argument("--no-merge", action="store_true", help="Render PDFs but do not merge them")
    parser.add_argument("--no-mbox", action="store_true", help="Do not write the consolidated mbox file")
    parser.add_argument("--force-render", action="store_true", help="Re-render PDFs even for unchanged messages")
    parser.add_argument(
        "--render-command",
        help="Renderer command line using {input} and {output} placeholders",
    )
    parser.add_argument("--render-timeout", type=int, default=180, help="Seconds before a render is killed")
    parser.add_argument("--workers", type=int, default=8, help="Maximum parallel render workers")
    parser.add_argument("--merge-command", help="External PDF merge command (inputs and output are appended)")
    parser.add_argument("--merge-batch-size", type=int, default=1000, help="PDFs per external merge batch")
    parser.add_argument(
        "--external-merge-threshold",
        type=int,
        default=1000,
        help="Use the external merge tool above this many PDFs",
    )
    parser.add_argument("--match-threshold", type=float, default=0.8, help="Maximum normalized filename distance")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="Minimum level written to the run log",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    orchestrator = ArchiveOrchestrator(
        render_pdfs=not args.no_pdf,
        merge_pdfs=not (args.no_pdf or args.no_merge),
        write_mbox=not args.no_mbox,
        force_render=args.force_render,
        verbose=args.verbose,
        render_command=shlex.split(args.render_command) if args.render_command else None,
        render_timeout_seconds=args.render_timeout,
        max_render_workers=args.workers,
        merge_command=shlex.split(args.merge_command) if args.merge_command else None,
        merge_batch_size=args.merge_batch_size,
        external_merge_threshold=args.external_merge_threshold,
        match_threshold=args.match_threshold,
        log_level=args.log_level,
    )

    try:
        result = orchestrator.run(args.source, args.destination)
    except ArchivePreflightError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    summary = result["summary"]
    print(
        f"\nDone: {summary['messages_total']} of {summary['records_total']} messages rebuilt, "
        f"{summary['pdfs_total']} PDFs, {summary['warnings_total']} warnings, {summary['errors_total']} errors"
    )
    if result.get("consolidated_pdf"):
        print(f"Merged PDF: {result['consolidated_pdf']}")
    print(f"Run log: {result['logs']['text_log']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
