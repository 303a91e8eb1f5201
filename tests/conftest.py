# tests/conftest.py
import json
import os
import tempfile
from types import SimpleNamespace

# Keep logs and the default database out of the working tree before any
# project module reads its config.
os.environ.setdefault("DETECTOR_LOG_DIR", tempfile.mkdtemp(prefix="detector-pytest-logs-"))
os.environ.setdefault("DETECTOR_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="detector-pytest-db-"), "d.db"))

import httpx
import pytest

import database
from analyzer import AnalysisEngine
from models import JobPosting
from rate_limiter import RateLimiter
from scrapers.base import BaseScraper


# ---------------------------------------------------------------------
# Fresh SQLite database per test
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    db_path = tmp_path / "detector.db"
    monkeypatch.setattr(database, "DB_PATH", db_path)
    database.init_db()
    yield db_path


# ---------------------------------------------------------------------
# Fake anthropic client
# ---------------------------------------------------------------------
class FakeMessages:
    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        result = self.responder(kwargs)
        if isinstance(result, Exception):
            raise result
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=result)])


class FakeAnthropic:
    def __init__(self, responder):
        self.messages = FakeMessages(responder)

    @property
    def calls(self):
        return self.messages.calls


def verdict_json(uses_tool, tool="none", signal="none", context=""):
    return json.dumps(
        {"uses_tool": uses_tool, "tool_detected": tool, "signal_type": signal, "context": context}
    )


def scripted(*replies):
    """Responder returning each reply in turn (strings or exceptions)."""
    queue = list(replies)

    def _respond(kwargs):
        if not queue:
            raise AssertionError("fake LLM called more times than scripted")
        return queue.pop(0)

    return _respond


def keyword_responder(kwargs):
    """Answers like a well-behaved model, based on what the description names."""
    text = kwargs["messages"][0]["content"]
    has_outreach = "Outreach.io" in text
    has_salesloft = "SalesLoft" in text
    if has_outreach and has_salesloft:
        return verdict_json(True, "Both", "stack_mention", "SalesLoft and Outreach.io both used daily")
    if has_outreach:
        return verdict_json(True, "Outreach.io", "required", "Experience with Outreach.io required")
    if has_salesloft:
        return verdict_json(True, "SalesLoft", "preferred", "SalesLoft experience a plus")
    return verdict_json(False)


def make_request():
    return httpx.Request("POST", "https://api.anthropic.com/v1/messages")


@pytest.fixture
def no_wait_limiter():
    return RateLimiter(min_delay=0)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_engine(no_wait_limiter, sleeps):
    def _make(responder=keyword_responder, **kwargs):
        client = FakeAnthropic(responder)
        kwargs.setdefault("rate_limiter", no_wait_limiter)
        kwargs.setdefault("sleep", sleeps.append)
        engine = AnalysisEngine(client=client, **kwargs)
        return engine, client

    return _make


# ---------------------------------------------------------------------
# Fake scraper and posting builders
# ---------------------------------------------------------------------
class FakeScraper(BaseScraper):
    """Serves canned raw items (or raises) per search term."""

    def __init__(self, items_by_term=None, error=None):
        super().__init__(name="fake", max_retries=0, sleep=lambda s: None)
        self.items_by_term = items_by_term or {}
        self.error = error
        self.requested = []

    def _fetch_raw(self, search_term, max_items):
        self.requested.append((search_term, max_items))
        if self.error is not None:
            raise self.error
        return list(self.items_by_term.get(search_term, []))


def raw_item(job_id, company, description, title="Sales Development Representative"):
    return {
        "jobId": job_id,
        "title": title,
        "companyName": company,
        "location": "Remote",
        "description": description,
        "jobUrl": f"https://www.linkedin.com/jobs/view/{job_id}",
    }


def make_posting(job_id="1", company="Acme Corp", description="We sell things.", **kwargs):
    kwargs.setdefault("job_title", "SDR")
    kwargs.setdefault("job_url", f"https://www.linkedin.com/jobs/view/{job_id}")
    kwargs.setdefault("search_term", "SDR")
    return JobPosting(job_id=job_id, company=company, description=description, **kwargs)
