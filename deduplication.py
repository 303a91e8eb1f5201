"""
deduplication.py — Job-level and company-level duplicate checks.

Job-level: drop postings whose job_id is already stored (one batched lookup).
Company-level: a cache of already-identified company names, used only to skip
LLM calls. The cache has an explicit staleness window and is owned by the
Deduplicator instance rather than living at module level.
"""

import time
from typing import Callable, Iterable, Optional

import database
from config import DEDUPLICATION
from models import JobPosting, normalize_company
from monitoring import get_logger

logger = get_logger("deduplication")

DEFAULT_CACHE_TTL_SECONDS = float(DEDUPLICATION.get("company_cache_ttl_minutes", 30)) * 60


class Deduplicator:
    def __init__(
        self,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._identified: Optional[set[str]] = None
        self._loaded_at: Optional[float] = None

    def filter_new_postings(self, candidates: Iterable[JobPosting]) -> list[JobPosting]:
        """
        Return candidates whose job_id is not in the store, in their original order.
        Repeated job_ids within the batch keep only the first occurrence.
        Storage errors propagate; nothing is guessed.
        """
        candidates = list(candidates)
        existing = database.existing_job_ids(p.job_id for p in candidates)

        new_postings = []
        seen_in_batch: set[str] = set()
        for posting in candidates:
            if posting.job_id in existing or posting.job_id in seen_in_batch:
                continue
            seen_in_batch.add(posting.job_id)
            new_postings.append(posting)

        logger.info(
            f"Already-seen filter: {len(candidates)} → {len(new_postings)} "
            f"({len(candidates) - len(new_postings)} duplicates)"
        )
        return new_postings

    def is_company_already_identified(self, company_name: str) -> bool:
        """Case-insensitive, trimmed membership check across all tools."""
        key = normalize_company(company_name)
        if not key:
            return False
        return key in self._identified_names()

    def remember(self, company_name: str):
        """Add a freshly identified company to the cache."""
        key = normalize_company(company_name)
        if key and self._identified is not None:
            self._identified.add(key)

    def invalidate(self):
        self._identified = None
        self._loaded_at = None

    def _identified_names(self) -> set[str]:
        now = self._clock()
        stale = self._loaded_at is None or now - self._loaded_at >= self.cache_ttl_seconds
        if self._identified is None or stale:
            self._identified = database.identified_company_names()
            self._loaded_at = now
            logger.info(f"Loaded {len(self._identified)} identified companies into cache")
        return self._identified
