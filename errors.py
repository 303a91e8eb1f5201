"""
errors.py — Failure taxonomy for the pipeline.

Job-level and term-level failures are caught and counted by the orchestrator.
StorageFailure is never recovered locally: it aborts the run.
"""

from typing import Optional


class DetectorError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(DetectorError):
    """Malformed input to a component (empty search term, non-positive max_items)."""


class ScrapeFailure(DetectorError):
    """The external scraper was unreachable or errored for a search term."""

    def __init__(self, search_term: str, message: str):
        super().__init__(f"Scrape failed for '{search_term}': {message}")
        self.search_term = search_term


class AnalysisFailure(DetectorError):
    """No valid verdict could be obtained for a posting."""

    TRANSIENT = "transient"
    INVALID = "invalid"
    PROVIDER = "provider"

    def __init__(self, message: str, reason: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.job_id = job_id


class StorageFailure(DetectorError):
    """The persistence layer was unreachable or rejected an operation."""
