"""
base.py — Base scraper: input validation, retry pacing and normalization of
raw upstream items into JobPosting records.
"""

import hashlib
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from bs4 import BeautifulSoup

from errors import ValidationError
from models import JobPosting
from monitoring import get_logger

logger = get_logger("scrapers.base")

DEFAULT_MAX_ITEMS = 500

# Upstream field names vary between actor versions; first non-empty wins
FIELD_ALIASES = {
    "job_id": ("jobId", "id", "job_id"),
    "job_title": ("title", "jobTitle", "job_title"),
    "company": ("company", "companyName", "company_name"),
    "location": ("location", "jobLocation"),
    "description": ("description", "jobDescription", "descriptionText", "descriptionHtml"),
    "job_url": ("url", "jobUrl", "link", "applyUrl"),
}


class BaseScraper(ABC):
    def __init__(self, name, platform="LinkedIn", max_retries=2, retry_delay=5.0, sleep=time.sleep):
        self.name = name
        self.platform = platform
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def fetch_postings(self, search_term: str, max_items: int = DEFAULT_MAX_ITEMS) -> list[JobPosting]:
        """
        Fetch up to max_items postings for a search term, normalized and in
        upstream order. Zero results is a valid outcome; upstream errors raise
        ScrapeFailure.
        """
        if not search_term or not search_term.strip():
            raise ValidationError("search_term must be non-empty")
        if not isinstance(max_items, int) or max_items <= 0:
            raise ValidationError(f"max_items must be a positive integer, got {max_items!r}")

        search_term = search_term.strip()
        raw_items = self._fetch_raw(search_term, max_items)

        postings = []
        dropped = 0
        for raw in raw_items:
            posting = self._normalize(raw, search_term)
            if posting is None:
                dropped += 1
                continue
            postings.append(posting)
            if len(postings) >= max_items:
                break

        if dropped:
            logger.info(f"[{self.name}] Dropped {dropped} items missing company, title or description")
        return postings

    @abstractmethod
    def _fetch_raw(self, search_term: str, max_items: int) -> list[dict]:
        pass

    def _pause_before_retry(self, attempt: int):
        logger.info(f"[{self.name}] Retrying in {self.retry_delay:.0f}s (attempt {attempt + 1})")
        self._sleep(self.retry_delay)

    def _normalize(self, raw: dict, search_term: str) -> Optional[JobPosting]:
        if not isinstance(raw, dict):
            return None

        title = _first(raw, "job_title")
        company = _first(raw, "company")
        if isinstance(company, dict):
            company = company.get("name", "")
        description = _clean_description(_first(raw, "description"))
        if not title or not company or not description:
            return None

        location = _first(raw, "location") or None
        url = _first(raw, "job_url")
        job_id = _first(raw, "job_id")
        if not job_id:
            job_id = generate_job_id(company, title, location or "", url)

        return JobPosting(
            job_id=str(job_id),
            platform=self.platform,
            company=company.strip(),
            job_title=title.strip(),
            location=location.strip() if isinstance(location, str) else None,
            description=description,
            job_url=url.strip(),
            search_term=search_term,
        )

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def generate_job_id(company: str, title: str, location: str, url: str) -> str:
    """Stable id for upstream items that lack one."""
    identifier = "|".join(s.strip().lower() for s in (company, title, location, url))
    return "gen-" + hashlib.sha1(identifier.encode("utf-8")).hexdigest()[:20]


def _first(raw: dict, field: str) -> Any:
    for key in FIELD_ALIASES[field]:
        value = raw.get(key)
        if value not in (None, ""):
            return value if not isinstance(value, (int, float)) else str(value)
    return ""


def _clean_description(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    if "<" in value and ">" in value:
        value = BeautifulSoup(value, "html.parser").get_text(separator="\n")
    lines = [line.strip() for line in value.splitlines()]
    return "\n".join(line for line in lines if line).strip()
