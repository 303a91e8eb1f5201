"""
linkedin_api.py — LinkedIn job search via the Apify LinkedIn jobs actor.
No direct scraping — the actor's synchronous dataset endpoint returns the
items for one search term in a single request.
"""

from typing import Optional

import httpx

from config import APIFY_TOKEN, PLATFORM, SCRAPER
from errors import ScrapeFailure
from monitoring import get_logger
from scrapers.base import BaseScraper

logger = get_logger("scrapers.linkedin_api")

ACTOR_URL = SCRAPER["actor_url"]

# Worth retrying: the actor is overloaded or the network hiccuped
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class LinkedInAPIScraper(BaseScraper):
    """LinkedIn postings via Apify's run-sync-get-dataset-items endpoint."""

    def __init__(
        self,
        token: str = APIFY_TOKEN,
        actor_url: str = ACTOR_URL,
        timeout: float = float(SCRAPER.get("timeout_seconds", 60)),
        max_retries: int = int(SCRAPER.get("max_retries", 2)),
        retry_delay: float = float(SCRAPER.get("retry_delay_seconds", 5)),
        transport: Optional[httpx.BaseTransport] = None,
        **kwargs,
    ):
        super().__init__(
            name="LinkedIn (via Apify)",
            platform=PLATFORM,
            max_retries=max_retries,
            retry_delay=retry_delay,
            **kwargs,
        )
        self.token = token
        self.actor_url = actor_url
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _fetch_raw(self, search_term: str, max_items: int) -> list[dict]:
        if not self.token:
            raise ScrapeFailure(search_term, "APIFY_TOKEN is not set")

        body = {
            "title": search_term,
            "rows": max_items,
            "proxy": {"useApifyProxy": True, "apifyProxyGroups": []},
        }

        last_error = ""
        for attempt in range(self.max_retries + 1):
            if attempt:
                self._pause_before_retry(attempt)
            try:
                response = self._client.post(self.actor_url, params={"token": self.token}, json=body)
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
                logger.warning(f"[{search_term}] Apify request timed out")
                continue
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"[{search_term}] Apify request failed: {last_error}")
                continue

            if response.status_code in RETRYABLE_STATUS:
                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.warning(f"[{search_term}] Apify returned {response.status_code}")
                continue
            if response.status_code >= 400:
                raise ScrapeFailure(search_term, f"HTTP {response.status_code}: {response.text[:200]}")

            try:
                data = response.json()
            except ValueError as e:
                raise ScrapeFailure(search_term, f"response is not JSON: {e}") from e
            if not isinstance(data, list):
                raise ScrapeFailure(search_term, f"expected a list of items, got {type(data).__name__}")

            logger.info(f"[{search_term}] Apify returned {len(data)} raw items")
            return data

        raise ScrapeFailure(search_term, f"gave up after {self.max_retries + 1} attempts ({last_error})")

    def close(self):
        self._client.close()
