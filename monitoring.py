"""
monitoring.py — Logging setup and run reporting for the detection pipeline.
"""

import logging
import sys

from config import LOG_DIR, LOG_FILE
from models import RunSummary

ROOT_LOGGER_NAME = "tool_detector"


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Set up structured logging to both file and stdout.
    Returns the root logger for the application.
    """
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    # Prevent duplicate handlers on re-init
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = logging.FileHandler(str(LOG_FILE), mode="a", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger for a specific module."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_scraper_success(logger: logging.Logger, search_term: str, count: int):
    logger.info(f"[{search_term}] Scraped {count} postings successfully")


def log_scraper_failure(logger: logging.Logger, search_term: str, error: Exception):
    logger.error(f"[{search_term}] Scrape failed: {type(error).__name__}: {str(error)}")


def log_pipeline_step(logger: logging.Logger, step: str, input_count: int, output_count: int):
    """Log a pipeline step with input/output counts."""
    filtered = input_count - output_count
    logger.info(f"[{step}] {input_count} in → {output_count} out ({filtered} filtered)")


def log_run_summary(logger: logging.Logger, summary: RunSummary):
    """Log a complete run summary."""
    logger.info("=" * 60)
    logger.info("RUN SUMMARY")
    logger.info(f"  Terms processed:        {summary.terms_processed}")
    logger.info(f"  Postings fetched:       {summary.postings_fetched}")
    logger.info(f"  New postings:           {summary.postings_new}")
    logger.info(f"  Analyzed (valid):       {summary.postings_analyzed}")
    logger.info(f"  Skipped (known co.):    {summary.postings_skipped_known_company}")
    logger.info(f"  Left pending:           {summary.postings_pending}")
    logger.info(f"  Companies identified:   {summary.companies_identified}")
    logger.info(
        f"  Errors:                 scrape={summary.errors.get('scrape', 0)} "
        f"analysis={summary.errors.get('analysis', 0)} "
        f"storage={summary.errors.get('storage', 0)}"
    )
    logger.info(f"  Duration:               {summary.duration_seconds:.1f}s")
    if summary.cancelled:
        logger.warning("  Run was cancelled before completion")
    if summary.aborted:
        logger.error("  Run was ABORTED on storage failure")

    if summary.error_messages:
        logger.warning("ERRORS:")
        for err in summary.error_messages:
            logger.warning(f"  - {err}")

    logger.info("=" * 60)
