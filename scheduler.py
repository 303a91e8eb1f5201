"""
scheduler.py — Per-search-term scheduling state.

A term is due when it has never been scraped or was last scraped more than
`refresh_days` ago. Scrape attempts are recorded even when they fail so a
broken query is not hammered again until its next window.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import database
from config import REFRESH_DAYS
from errors import ValidationError
from models import SearchTermState, utc_now
from monitoring import get_logger

logger = get_logger("scheduler")


class SearchTermScheduler:
    def __init__(self, refresh_days: int = REFRESH_DAYS, clock: Callable[[], datetime] = utc_now):
        self.refresh_days = refresh_days
        self._clock = clock

    def seed(self, terms: Iterable[str]) -> int:
        """Register configured terms without touching existing state."""
        cleaned = [t.strip() for t in terms if t and t.strip()]
        added = database.seed_search_terms(cleaned)
        if added:
            logger.info(f"Seeded {added} new search terms")
        return added

    def get_due_terms(self) -> list[SearchTermState]:
        """Active terms that are due, oldest last_scraped_at first (never-scraped first)."""
        cutoff = self._clock() - timedelta(days=self.refresh_days)
        terms = database.list_due_terms(cutoff)
        logger.info(f"{len(terms)} search terms due for scraping")
        return terms

    def is_due(self, state: SearchTermState) -> bool:
        if not state.is_active:
            return False
        if state.last_scraped_at is None:
            return True
        return state.last_scraped_at < self._clock() - timedelta(days=self.refresh_days)

    def get_term(self, term: str) -> SearchTermState:
        """Look up (creating if needed) a single term for a manual trigger."""
        if not term or not term.strip():
            raise ValidationError("search_term must be non-empty")
        return database.ensure_search_term(term.strip())

    def set_active(self, term: str, is_active: bool) -> SearchTermState:
        """Include or exclude a term from scheduling. Its history is kept either way."""
        state = self.get_term(term)
        database.set_term_active(state.search_term, is_active)
        logger.info(f"[{state.search_term}] {'activated' if is_active else 'deactivated'}")
        return database.get_search_term(state.search_term)

    def record_scrape_result(
        self,
        term: str,
        jobs_found: int,
        success: bool,
        error: Optional[str] = None,
        jobs_analyzed: int = 0,
        companies_found: int = 0,
    ):
        """
        Stamp last_scraped_at = now and jobs_found_count, on success and failure alike.
        Storage errors propagate to the caller.
        """
        if not success:
            logger.warning(
                f"[{term}] Recording failed scrape attempt; next attempt in "
                f"{self.refresh_days} days. Reason: {error or 'unknown'}"
            )
            jobs_found = 0
        database.update_term(
            term,
            last_scraped_at=self._clock(),
            jobs_found_count=jobs_found,
            last_error=None if success else (error or "scrape failed"),
            jobs_analyzed=jobs_analyzed,
            companies_found=companies_found,
        )
