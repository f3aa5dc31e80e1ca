#!/usr/bin/env python3
"""
Command-line interface for scanpipeline.

Usage:
    # Classify photos without storing anything
    scanpipeline analyze spread.jpg page.jpg

    # Add photos (files or URLs) to a book, splitting spreads
    scanpipeline ingest my-book ./photos/*.jpg --title "De re metallica"

    # Drive the processing pipeline
    scanpipeline pipeline start my-book
    scanpipeline pipeline run my-book
    scanpipeline pipeline status my-book

    # Process pages with your own API key and a spend limit
    scanpipeline contribute my-book --type ocr --limit-usd 0.50 --name "Ada"
"""

import argparse
import json
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    # Third-party request and image logs drown out progress
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("PIL").setLevel(logging.WARNING)


def _services(args: argparse.Namespace):
    from .config import LibraryConfig
    from .services import build_services

    config = LibraryConfig.from_env(args.library)
    if getattr(args, "model", None):
        config.model = args.model
    if getattr(args, "budget", None) is not None:
        config.budget_usd = args.budget
    if getattr(args, "split_method", None):
        config.ingest.split_method = args.split_method
    return build_services(config)


def cmd_analyze(args: argparse.Namespace) -> int:
    """Print the split analysis of each image."""
    from .errors import ImageDecodeError
    from .split_detector import SplitDetector

    detector = SplitDetector()
    failures = 0

    for image in args.images:
        path = Path(image)
        try:
            analysis = detector.analyze_bytes(path.read_bytes())
        except (OSError, ImageDecodeError) as e:
            print(f"✗ {path.name}: {e}", file=sys.stderr)
            failures += 1
            continue

        if args.json:
            print(json.dumps({"image": str(path), **analysis.to_dict()}))
            continue

        verdict = "spread" if analysis.is_spread else "single page"
        print(
            f"{path.name}: {verdict} ({analysis.confidence.value} confidence, "
            f"score {analysis.score}, cut at {analysis.cut_percent:.1f}%)"
        )
        for reason in analysis.reasons:
            print(f"  - {reason}")
        if analysis.text_warning:
            print(f"  ⚠ {analysis.text_warning}")

    return 1 if failures else 0


def cmd_ingest(args: argparse.Namespace) -> int:
    """Ingest photos into a book."""
    from .ingest import IngestItem
    from .models import Book

    services = _services(args)
    book = services.store.find_book(args.book)
    if book is None:
        book = Book(id=args.book, title=args.title or args.book, language=args.language)
        services.store.save_book(book)
        logger.info(f"Created book {book.id}")

    items = [IngestItem(source=source, filename=Path(source).name) for source in args.sources]
    report = services.ingestor.ingest(book.id, items)

    print(
        f"✓ Created {report.pages_created} pages from {len(items) - len(report.skipped)} photos "
        f"({report.spreads} spreads split)"
    )
    for source, reason in report.skipped:
        print(f"  ⚠ skipped {source}: {reason}")
    return 0 if report.pages_created or not items else 1


def _print_state(book_id: str, state) -> None:
    print(f"{book_id}: {state.status.value}")
    if state.spent_usd:
        print(f"  spent ${state.spent_usd:.4f}")
    for step, step_state in state.steps.items():
        progress = step_state.progress
        line = f"  {step.value:<12} {step_state.status.value:<10}"
        if progress.total:
            line += f" {progress.completed}/{progress.total}"
            if progress.failed:
                line += f" ({progress.failed} failed)"
        if step_state.error:
            line += f" - {step_state.error}"
        print(line)


def cmd_pipeline(args: argparse.Namespace) -> int:
    """Run a pipeline action for a book."""
    from .models import PipelineStatus
    from .pipeline import PipelineRunner

    services = _services(args)
    machine = services.machine

    if args.action == "start":
        settings = services.pipeline_settings()
        settings.language = services.store.get_book(args.book).language
        state = machine.start(args.book, settings)
    elif args.action == "pause":
        state = machine.pause(args.book)
    elif args.action == "resume":
        state = machine.resume(args.book)
    elif args.action == "reset":
        state = machine.reset(args.book)
    elif args.action == "run":
        runner = PipelineRunner(machine, services.processor, show_progress=not args.quiet)
        state = runner.run(args.book)
    else:
        state = machine.state(args.book)

    _print_state(args.book, state)
    return 1 if state.status == PipelineStatus.FAILED else 0


def cmd_resync(args: argparse.Namespace) -> int:
    """Recount (and optionally renumber) a book's pages."""
    services = _services(args)

    if args.renumber:
        changed = services.ingestor.renumber_pages(args.book)
        print(f"✓ Renumbered {changed} pages")

    count = services.ingestor.resync_page_count(args.book)
    print(f"✓ {args.book} has {count} pages")
    return 0


def cmd_contribute(args: argparse.Namespace) -> int:
    """Process pages with your own inference key."""
    from .contribute import ContributionSession

    services = _services(args)
    config = services.config

    session = ContributionSession(
        services.store,
        services.inference,
        services.images,
        ceiling_usd=args.limit_usd,
        contributor=args.name,
        settings=services.pipeline_settings(),
        job_settings=config.jobs,
        max_pages=args.max_pages,
    )
    result = session.run(args.book, process_type=args.type)

    print(
        f"✓ Processed {result.pages_completed}/{result.pages_total} pages "
        f"({result.total_tokens} tokens, ${result.spent_usd:.4f})"
    )
    if result.limit_reached:
        print("  Spend limit reached; run again with a higher --limit-usd to continue")
    if result.failed_page_ids:
        print(f"  ⚠ {len(result.failed_page_ids)} pages failed")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the HTTP API."""
    import uvicorn

    from .config import LibraryConfig
    from .server import create_app

    app = create_app(LibraryConfig.from_env(args.library))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="scanpipeline",
        description="Ingest, split and process photographed books",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--library", help="Library directory (default: $SCANPIPELINE_LIBRARY or ./library)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # analyze command
    p_analyze = subparsers.add_parser("analyze", help="Classify photos as single pages or spreads")
    p_analyze.add_argument("images", nargs="+", help="Image files")
    p_analyze.add_argument("--json", action="store_true", help="Print full analysis as JSON lines")
    p_analyze.set_defaults(func=cmd_analyze)

    # ingest command
    p_ingest = subparsers.add_parser("ingest", help="Add photos to a book, splitting spreads")
    p_ingest.add_argument("book", help="Book id (created if missing)")
    p_ingest.add_argument("sources", nargs="+", help="Image files or URLs, in page order")
    p_ingest.add_argument("-t", "--title", help="Title for a new book")
    p_ingest.add_argument("-l", "--language", default="Latin", help="Language of a new book")
    p_ingest.add_argument(
        "--split-method",
        choices=["heuristic", "vision", "cascade"],
        help="Spread detection method (default: cascade)",
    )
    p_ingest.set_defaults(func=cmd_ingest)

    # pipeline command
    p_pipeline = subparsers.add_parser("pipeline", help="Control a book's processing pipeline")
    p_pipeline.add_argument(
        "action", choices=["start", "pause", "resume", "reset", "status", "run"], help="Action"
    )
    p_pipeline.add_argument("book", help="Book id")
    p_pipeline.add_argument("--model", help="Inference model")
    p_pipeline.add_argument("--budget", type=float, help="Spend ceiling in USD for this run")
    p_pipeline.add_argument("-q", "--quiet", action="store_true", help="No progress output")
    p_pipeline.set_defaults(func=cmd_pipeline)

    # resync command
    p_resync = subparsers.add_parser("resync", help="Recount a book's pages")
    p_resync.add_argument("book", help="Book id")
    p_resync.add_argument("--renumber", action="store_true", help="Compact page numbers to 1..N")
    p_resync.set_defaults(func=cmd_resync)

    # contribute command
    p_contribute = subparsers.add_parser("contribute", help="Process pages with your own API key")
    p_contribute.add_argument("book", help="Book id")
    p_contribute.add_argument("--type", choices=["ocr", "translate"], default="ocr", help="Work to do")
    p_contribute.add_argument("--limit-usd", type=float, required=True, help="Spend limit in USD")
    p_contribute.add_argument("--name", default="Anonymous", help="Contributor name")
    p_contribute.add_argument("--max-pages", type=int, default=100, help="Pages per session")
    p_contribute.add_argument("--model", help="Inference model")
    p_contribute.set_defaults(func=cmd_contribute)

    # serve command
    p_serve = subparsers.add_parser("serve", help="Serve the HTTP API")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    p_serve.add_argument("--port", type=int, default=8000, help="Port")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    from .errors import ScanPipelineError

    try:
        return args.func(args)
    except ScanPipelineError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
