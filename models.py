"""
models.py — Data models for the sales-tool detection pipeline.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

# Allowed values for the structured analysis verdict
TOOL_OUTREACH = "Outreach.io"
TOOL_SALESLOFT = "SalesLoft"
TOOL_BOTH = "Both"
TOOL_NONE = "none"
TOOLS = (TOOL_OUTREACH, TOOL_SALESLOFT, TOOL_BOTH, TOOL_NONE)

SIGNAL_REQUIRED = "required"
SIGNAL_PREFERRED = "preferred"
SIGNAL_STACK_MENTION = "stack_mention"
SIGNAL_NONE = "none"
SIGNAL_TYPES = (SIGNAL_REQUIRED, SIGNAL_PREFERRED, SIGNAL_STACK_MENTION, SIGNAL_NONE)

CONTEXT_MAX_CHARS = 200


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO timestamp so stored values sort lexicographically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class JobPosting:
    """A scraped job advertisement."""
    job_id: str
    company: str
    job_title: str
    description: str
    job_url: str
    search_term: str
    platform: str = "LinkedIn"
    location: Optional[str] = None
    scraped_at: str = field(default_factory=lambda: to_iso(utc_now()))
    processed: bool = False
    processed_at: Optional[str] = None


@dataclass
class AnalysisVerdict:
    """Structured LLM output for one posting. Never persisted on its own."""
    uses_tool: bool
    tool_detected: str
    signal_type: str = SIGNAL_NONE
    context: str = ""

    @classmethod
    def negative(cls) -> "AnalysisVerdict":
        return cls(uses_tool=False, tool_detected=TOOL_NONE, signal_type=SIGNAL_NONE, context="")


@dataclass
class IdentifiedCompany:
    """A company confirmed by at least one posting to use a target tool."""
    company_name: str
    tool_detected: str
    signal_type: str
    context: str = ""
    job_title: Optional[str] = None
    job_url: Optional[str] = None
    platform: str = "LinkedIn"
    identified_at: str = field(default_factory=lambda: to_iso(utc_now()))

    @classmethod
    def from_verdict(cls, posting: JobPosting, verdict: AnalysisVerdict) -> "IdentifiedCompany":
        return cls(
            company_name=posting.company.strip(),
            tool_detected=verdict.tool_detected,
            signal_type=verdict.signal_type,
            context=verdict.context,
            job_title=posting.job_title,
            job_url=posting.job_url,
            platform=posting.platform,
        )


@dataclass
class SearchTermState:
    """Per-query scheduling bookkeeping."""
    search_term: str
    last_scraped_at: Optional[datetime] = None
    jobs_found_count: int = 0
    is_active: bool = True
    total_jobs_analyzed: int = 0
    total_companies_found: int = 0
    last_error: Optional[str] = None


@dataclass
class RunSummary:
    """Counters for a single pipeline run."""
    started_at: str = field(default_factory=lambda: to_iso(utc_now()))
    terms_processed: int = 0
    postings_fetched: int = 0
    postings_new: int = 0
    postings_analyzed: int = 0
    postings_skipped_known_company: int = 0
    postings_pending: int = 0
    companies_identified: int = 0
    errors: dict[str, int] = field(default_factory=lambda: {"scrape": 0, "analysis": 0, "storage": 0})
    error_messages: list[str] = field(default_factory=list)
    cancelled: bool = False
    aborted: bool = False
    duration_seconds: float = 0.0

    def add_error(self, category: str, message: str):
        self.errors[category] = self.errors.get(category, 0) + 1
        self.error_messages.append(f"[{category}] {message}")

    @property
    def total_errors(self) -> int:
        return sum(self.errors.values())

    def as_dict(self) -> dict:
        return asdict(self)


def normalize_company(name: str) -> str:
    """Case-insensitive, whitespace-trimmed company key."""
    return " ".join((name or "").lower().split())
