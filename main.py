"""
main.py — Command-line entry point for the sales-tool detection pipeline.

Single-shot (default): process every due search term once and exit.
    python main.py
    python main.py --term "SDR" --max-items 100
    python main.py --no-retry-pending
    python main.py --deactivate "Head of RevOps"
Continuous: repeat every N minutes until SIGINT/SIGTERM.
    python main.py --continuous --interval 5
"""

import argparse
import json
import signal
import sys
import threading
from datetime import datetime

import database
from analyzer import AnalysisEngine
from config import MAX_ITEMS_PER_TERM, SCHEDULE, SEARCH_TERMS, validate_config
from deduplication import Deduplicator
from errors import StorageFailure, ValidationError
from monitoring import get_logger, setup_logging
from pipeline import PipelineOrchestrator
from scheduler import SearchTermScheduler
from scrapers.linkedin_api import LinkedInAPIScraper

EXIT_OK = 0
EXIT_WITH_ERRORS = 1
EXIT_ABORTED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Detect Outreach.io / SalesLoft usage from job postings.")
    parser.add_argument("--term", help="Process only this search term, whether or not it is due")
    parser.add_argument(
        "--max-items", type=int, default=MAX_ITEMS_PER_TERM,
        help=f"Maximum postings to scrape per term (default {MAX_ITEMS_PER_TERM})",
    )
    parser.add_argument(
        "--no-retry-pending", dest="retry_pending", action="store_false",
        help="Skip the pass that re-analyzes postings left unprocessed by earlier failures",
    )
    parser.add_argument("--continuous", action="store_true", help="Keep running on an interval")
    parser.add_argument(
        "--interval", type=float, default=float(SCHEDULE.get("continuous_interval_minutes", 5)),
        help="Minutes between cycles in continuous mode",
    )
    parser.add_argument("--seed-only", action="store_true", help="Register configured search terms and exit")
    parser.add_argument("--activate", metavar="TERM", help="Mark a search term active and exit")
    parser.add_argument("--deactivate", metavar="TERM", help="Stop scheduling a search term and exit")
    return parser


def install_signal_handlers(stop_event: threading.Event):
    def _handle(signum, frame):
        get_logger("main").warning(f"Received signal {signum}; stopping after the current posting")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run(argv=None) -> int:
    """Execute the pipeline. Returns a process exit code."""
    args = build_parser().parse_args(argv)

    setup_logging()
    logger = get_logger("main")

    logger.info("=" * 60)
    logger.info("SALES TOOL DETECTOR — Starting run")
    logger.info(f"Timestamp: {datetime.now().isoformat()}")
    logger.info("=" * 60)

    for warning in validate_config():
        logger.warning(f"Config: {warning}")

    if args.max_items <= 0:
        logger.error("--max-items must be positive")
        return EXIT_WITH_ERRORS

    scheduler = SearchTermScheduler()
    try:
        database.init_db()
        scheduler.seed(SEARCH_TERMS)
        if args.activate:
            scheduler.set_active(args.activate, True)
        if args.deactivate:
            scheduler.set_active(args.deactivate, False)
    except StorageFailure as e:
        logger.error(f"Database unavailable: {e}")
        return EXIT_ABORTED
    except ValidationError as e:
        logger.error(f"Invalid input: {e}")
        return EXIT_WITH_ERRORS

    if args.seed_only or args.activate or args.deactivate:
        return EXIT_OK

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    with LinkedInAPIScraper() as scraper:
        orchestrator = PipelineOrchestrator(
            scraper=scraper,
            analyzer=AnalysisEngine(),
            deduplicator=Deduplicator(),
            scheduler=scheduler,
            max_items_per_term=args.max_items,
            stop_event=stop_event,
        )
        try:
            if args.continuous:
                orchestrator.run_forever(
                    args.interval * 60,
                    search_term=args.term,
                    retry_pending=args.retry_pending,
                )
            else:
                orchestrator.run(search_term=args.term, retry_pending=args.retry_pending)
        except StorageFailure:
            _print_summary(orchestrator)
            return EXIT_ABORTED
        except ValidationError as e:
            logger.error(f"Invalid input: {e}")
            return EXIT_WITH_ERRORS

    summary = _print_summary(orchestrator)
    logger.info("SALES TOOL DETECTOR — Run complete")
    return EXIT_WITH_ERRORS if summary and summary.total_errors else EXIT_OK


def _print_summary(orchestrator: PipelineOrchestrator):
    summary = orchestrator.last_summary
    if summary is not None:
        print(json.dumps(summary.as_dict(), indent=2))
    return summary


if __name__ == "__main__":
    sys.exit(run())
