"""
pipeline.py — Orchestrates scheduling, scraping, deduplication, analysis and
recording, one search term and one posting at a time.

Failure policy:
  - ScrapeFailure: counted, schedule still stamped, next term continues.
  - AnalysisFailure: counted, posting left unprocessed for a later pass.
  - StorageFailure: run is aborted and the error re-raised.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import database
from analyzer import AnalysisEngine
from config import ANALYSIS, MAX_ITEMS_PER_TERM
from deduplication import Deduplicator
from errors import AnalysisFailure, ScrapeFailure, StorageFailure
from models import IdentifiedCompany, JobPosting, RunSummary, SearchTermState
from monitoring import get_logger, log_pipeline_step, log_run_summary, log_scraper_failure, log_scraper_success
from scheduler import SearchTermScheduler
from scrapers.base import BaseScraper

logger = get_logger("pipeline")


class PipelineState(str, Enum):
    IDLE = "idle"
    SELECTING_TERM = "selecting_term"
    SCRAPING = "scraping"
    DEDUPLICATING = "deduplicating"
    ANALYZING_BATCH = "analyzing_batch"
    RECORDING = "recording"
    UPDATING_SCHEDULE = "updating_schedule"
    ABORTED = "aborted"


@dataclass
class BatchResult:
    analyzed: int = 0
    skipped_known_company: int = 0
    pending: int = 0
    companies_identified: int = 0


class PipelineOrchestrator:
    def __init__(
        self,
        scraper: BaseScraper,
        analyzer: AnalysisEngine,
        deduplicator: Optional[Deduplicator] = None,
        scheduler: Optional[SearchTermScheduler] = None,
        max_items_per_term: int = MAX_ITEMS_PER_TERM,
        max_attempts_per_posting: int = int(ANALYSIS.get("max_attempts_per_posting", 3)),
        stop_event: Optional[threading.Event] = None,
    ):
        self.scraper = scraper
        self.analyzer = analyzer
        self.deduplicator = deduplicator or Deduplicator()
        self.scheduler = scheduler or SearchTermScheduler()
        self.max_items_per_term = max_items_per_term
        self.max_attempts_per_posting = max_attempts_per_posting
        self.stop_event = stop_event or threading.Event()
        self.state = PipelineState.IDLE
        self.last_summary: Optional[RunSummary] = None
        self._attempted: set[str] = set()

    # --- Public API ---------------------------------------------------------

    def stop(self):
        """Request a cooperative stop; honoured between postings and between terms."""
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def run(
        self,
        search_term: Optional[str] = None,
        max_items: Optional[int] = None,
        retry_pending: bool = True,
    ) -> RunSummary:
        """
        Process one named term (regardless of schedule) or every due term,
        then a retry pass over postings left unprocessed by earlier failures
        or cancellations unless retry_pending is False.
        """
        summary = RunSummary()
        self.last_summary = summary
        self._attempted = set()
        run_start = time.time()
        max_items = max_items or self.max_items_per_term

        try:
            self._transition(PipelineState.SELECTING_TERM)
            if search_term:
                state = self.scheduler.get_term(search_term)
                if not self.scheduler.is_due(state):
                    logger.info(f"'{state.search_term}' is not due; running it on request")
                terms = [state]
            else:
                terms = self.scheduler.get_due_terms()

            if not terms:
                logger.info("No search terms due; nothing to scrape")

            for term in terms:
                if self.stopping:
                    summary.cancelled = True
                    logger.warning("Stop requested; not starting further search terms")
                    break
                self.process_term(term, max_items, summary)

            if retry_pending and not self.stopping:
                self.retry_pending(summary)
            elif retry_pending:
                summary.cancelled = True

            summary.duration_seconds = time.time() - run_start
            database.log_run(summary)

        except StorageFailure as e:
            self._transition(PipelineState.ABORTED)
            summary.aborted = True
            summary.add_error("storage", str(e))
            summary.duration_seconds = time.time() - run_start
            logger.error(f"Storage failure, aborting run: {e}")
            log_run_summary(logger, summary)
            raise
        except Exception:
            summary.duration_seconds = time.time() - run_start
            self._transition(PipelineState.IDLE)
            logger.exception("Run failed")
            raise

        self._transition(PipelineState.IDLE)
        log_run_summary(logger, summary)
        return summary

    def run_forever(self, interval_seconds: float, **run_kwargs):
        """Continuous mode: run a cycle, then wait for the interval or a stop request."""
        logger.info(f"Continuous mode: cycle every {interval_seconds:.0f}s")
        cycles = 0
        while not self.stopping:
            self.run(**run_kwargs)
            cycles += 1
            if self.stop_event.wait(interval_seconds):
                break
        logger.info(f"Continuous mode stopped after {cycles} cycles")
        return cycles

    def process_term(self, term: SearchTermState, max_items: int, summary: RunSummary) -> BatchResult:
        """Scrape → dedupe → analyze → schedule-update for a single term."""
        name = term.search_term
        summary.terms_processed += 1
        logger.info(f"--- Search term: '{name}' ---")

        self._transition(PipelineState.SCRAPING)
        try:
            postings = self.scraper.fetch_postings(name, max_items)
        except ScrapeFailure as e:
            log_scraper_failure(logger, name, e)
            summary.add_error("scrape", str(e))
            self._transition(PipelineState.UPDATING_SCHEDULE)
            self.scheduler.record_scrape_result(name, jobs_found=0, success=False, error=str(e))
            self._transition(PipelineState.SELECTING_TERM)
            return BatchResult()

        log_scraper_success(logger, name, len(postings))
        summary.postings_fetched += len(postings)

        self._transition(PipelineState.DEDUPLICATING)
        new_postings = self.deduplicator.filter_new_postings(postings)
        # Keep every fetched posting for history; duplicates are ignored by job_id
        stored = database.insert_postings(postings)
        logger.info(f"Stored {stored} new postings for '{name}'")
        log_pipeline_step(logger, "Deduplication", len(postings), len(new_postings))
        summary.postings_new += len(new_postings)

        result = self._analyze_batch(new_postings, summary)

        self._transition(PipelineState.UPDATING_SCHEDULE)
        self.scheduler.record_scrape_result(
            name,
            jobs_found=len(postings),
            success=True,
            jobs_analyzed=result.analyzed,
            companies_found=result.companies_identified,
        )
        self._transition(PipelineState.SELECTING_TERM)
        return result

    def retry_pending(self, summary: RunSummary, limit: int = 500) -> BatchResult:
        """Re-analyze stored postings that are still unprocessed after earlier failures."""
        pending = [
            p for p in database.get_unprocessed_postings(limit=limit, max_attempts=self.max_attempts_per_posting)
            if p.job_id not in self._attempted
        ]
        logger.info(f"--- Retry pass: {len(pending)} unprocessed postings ---")
        return self._analyze_batch(pending, summary)

    # --- Internals ------------------------------------------------------------

    def _analyze_batch(self, postings: list[JobPosting], summary: RunSummary) -> BatchResult:
        result = BatchResult()
        self._transition(PipelineState.ANALYZING_BATCH)

        for i, posting in enumerate(postings):
            if self.stopping:
                remaining = len(postings) - i
                result.pending += remaining
                summary.postings_pending += remaining
                summary.cancelled = True
                logger.warning(f"Stop requested; leaving {remaining} postings unprocessed")
                break

            logger.info(f"Analyzing {i + 1}/{len(postings)}: {posting.company} — {posting.job_title}")

            if self.deduplicator.is_company_already_identified(posting.company):
                database.mark_processed(posting.job_id)
                result.skipped_known_company += 1
                summary.postings_skipped_known_company += 1
                logger.info(f"Skipped {posting.job_id}: {posting.company} already identified")
                continue

            self._attempted.add(posting.job_id)
            try:
                verdict = self.analyzer.analyze(posting)
            except AnalysisFailure as e:
                database.record_analysis_error(posting.job_id, str(e))
                result.pending += 1
                summary.postings_pending += 1
                summary.add_error("analysis", str(e))
                logger.error(f"Analysis failed for {posting.job_id} ({e.reason}); left unprocessed")
                continue

            result.analyzed += 1
            summary.postings_analyzed += 1

            if not verdict.uses_tool:
                database.mark_processed(posting.job_id)
                continue

            self._transition(PipelineState.RECORDING)
            company = IdentifiedCompany.from_verdict(posting, verdict)
            created = database.record_identification(posting.job_id, company)
            if created:
                result.companies_identified += 1
                summary.companies_identified += 1
                self.deduplicator.remember(posting.company)
                logger.info(
                    f"IDENTIFIED: {company.company_name} uses {company.tool_detected} "
                    f"({company.signal_type})"
                )
            else:
                logger.info(f"{company.company_name} / {company.tool_detected} already recorded")
            self._transition(PipelineState.ANALYZING_BATCH)

        log_pipeline_step(logger, "Analysis", len(postings), result.analyzed)
        return result

    def _transition(self, state: PipelineState):
        if state != self.state:
            logger.debug(f"State: {self.state.value} → {state.value}")
            self.state = state
