"""
analyzer.py — Claude-backed detection of Outreach.io / SalesLoft mentions in
job descriptions.

One posting per call, one call in flight per engine, every call paced by a
RateLimiter. A response that cannot be validated is an AnalysisFailure and is
never turned into a negative verdict.
"""

import json
import re
import threading
import time
from typing import Any, Callable, Optional

import anthropic
from rapidfuzz import fuzz

from config import ANALYSIS, ANTHROPIC_API_KEY, ANTHROPIC_MODEL, RATE_LIMITS
from errors import AnalysisFailure
from models import (
    CONTEXT_MAX_CHARS, SIGNAL_NONE, SIGNAL_STACK_MENTION, SIGNAL_TYPES,
    TOOL_BOTH, TOOL_NONE, TOOL_OUTREACH, TOOL_SALESLOFT, TOOLS,
    AnalysisVerdict, JobPosting,
)
from monitoring import get_logger
from rate_limiter import RateLimiter, backoff_delays

logger = get_logger("analyzer")


SYSTEM_PROMPT = """You are an expert at analyzing job descriptions to identify whether the hiring company uses the sales engagement platforms Outreach.io or SalesLoft.

IMPORTANT: Distinguish between "Outreach" (the tool) and "outreach" (general sales activity).

Count a mention ONLY when it names the actual platform:
- "Outreach.io"
- "Outreach platform", "Outreach sequences"
- "experience with Outreach"
- Capitalized "Outreach" listed alongside other named tools (e.g. "Salesforce, Outreach, Gong")
- "SalesLoft", "Salesloft", "SalesLoft sequences", "SalesLoft cadences"

NOT valid (generic sales language, never a tool mention):
- "sales outreach"
- "cold outreach"
- "customer outreach"
- "outreach efforts"
- "proactive outreach to prospects"
- "email outreach", "outbound outreach"

signal_type:
- "required": the tool is listed as a requirement or must-have
- "preferred": the tool is listed as nice-to-have, preferred or a plus
- "stack_mention": the tool is mentioned as part of the team's stack without being a requirement
- "none": no tool mentioned

If both platforms are named, use "Both".

Analyze the job description and return ONLY this JSON, with no markdown and no other text:
{
  "uses_tool": true or false,
  "tool_detected": "Outreach.io" or "SalesLoft" or "Both" or "none",
  "signal_type": "required" or "preferred" or "stack_mention" or "none",
  "context": "exact quote from the description mentioning the tool (max 200 characters), or empty string"
}"""

USER_PROMPT = """Company: {company}
Job Title: {title}
Job Description:
{description}"""

STRICT_SUFFIX = "\n\nCRITICAL: Respond ONLY with a single JSON object matching the schema. No other text whatsoever."


# --- Platform-mention guard ---------------------------------------------------

_SALESLOFT_RE = re.compile(r"\bsales\s?loft\b", re.IGNORECASE)
_OUTREACH_IO_RE = re.compile(r"\boutreach\.io\b", re.IGNORECASE)
_OUTREACH_CAP_RE = re.compile(r"\b(?:Outreach|OUTREACH)\b")
_GENERIC_QUALIFIER_RE = re.compile(
    r"(?:sales|cold|customer|client|email|e-mail|outbound|inbound|prospect|proactive|"
    r"community|marketing|partner|direct|phone|social|donor|public)\s*$",
    re.IGNORECASE,
)


def _platform_matches(description: str, tool: str) -> list[re.Match]:
    """Spans in the description that name the platform itself, not the activity."""
    if tool == TOOL_SALESLOFT:
        return list(_SALESLOFT_RE.finditer(description))

    matches = list(_OUTREACH_IO_RE.finditer(description))
    for match in _OUTREACH_CAP_RE.finditer(description):
        preceding = description[max(0, match.start() - 20):match.start()]
        if _GENERIC_QUALIFIER_RE.search(preceding):
            continue
        matches.append(match)
    return sorted(matches, key=lambda m: m.start())


def _snippet(description: str, match: re.Match) -> str:
    half = (CONTEXT_MAX_CHARS - (match.end() - match.start())) // 2
    start = max(0, match.start() - half)
    end = min(len(description), match.end() + half)
    return " ".join(description[start:end].split())[:CONTEXT_MAX_CHARS]


def apply_platform_guard(verdict: AnalysisVerdict, description: str) -> AnalysisVerdict:
    """
    Re-check a positive verdict against the description. Claimed platforms
    that are never actually named are removed, and the context quote is
    replaced with a verbatim snippet when it cannot be found in the text.
    """
    if not verdict.uses_tool:
        return verdict

    claimed = [TOOL_OUTREACH, TOOL_SALESLOFT] if verdict.tool_detected == TOOL_BOTH else [verdict.tool_detected]
    found = {tool: _platform_matches(description, tool) for tool in claimed}
    confirmed = [tool for tool in claimed if found[tool]]

    if not confirmed:
        logger.warning(
            f"Model claimed {verdict.tool_detected} but the description never names the platform; "
            f"treating as no tool mention"
        )
        return AnalysisVerdict.negative()

    if len(confirmed) < len(claimed):
        logger.warning(f"Model claimed Both but only {confirmed[0]} is named; narrowing verdict")
        tool = confirmed[0]
    else:
        tool = verdict.tool_detected

    context = verdict.context
    if not context or fuzz.partial_ratio(context.lower(), description.lower()) < 85:
        context = _snippet(description, found[confirmed[0]][0])

    return AnalysisVerdict(
        uses_tool=True,
        tool_detected=tool,
        signal_type=verdict.signal_type,
        context=context[:CONTEXT_MAX_CHARS],
    )


# --- Response parsing ---------------------------------------------------------

class InvalidResponse(ValueError):
    """The model's output does not match the verdict schema."""


# "salesloft", "SALESLOFT", "None" ... map onto the stored spellings
_CANONICAL_TOOLS = {tool.lower(): tool for tool in TOOLS}


def extract_json(text: str) -> Any:
    text = (text or "").strip()

    # Clean up response — remove markdown code fences if present
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    if text.startswith("json"):
        text = text[4:].strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", text)
        if not match:
            raise InvalidResponse(f"no JSON object in response: {text[:200]!r}")
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise InvalidResponse(f"unparseable JSON: {e}") from e


def parse_verdict(text: str) -> AnalysisVerdict:
    """Parse and validate model output. Raises InvalidResponse; never defaults to negative."""
    data = extract_json(text)
    if not isinstance(data, dict):
        raise InvalidResponse(f"expected a JSON object, got {type(data).__name__}")

    uses_tool = data.get("uses_tool")
    if not isinstance(uses_tool, bool):
        raise InvalidResponse(f"'uses_tool' missing or not a boolean: {uses_tool!r}")

    tool = data.get("tool_detected")
    if isinstance(tool, str):
        tool = _CANONICAL_TOOLS.get(tool.strip().lower(), tool)
    if tool not in TOOLS:
        raise InvalidResponse(f"'tool_detected' not one of {TOOLS}: {tool!r}")

    if uses_tool != (tool != TOOL_NONE):
        raise InvalidResponse(f"inconsistent verdict: uses_tool={uses_tool} tool_detected={tool!r}")

    signal = data.get("signal_type")
    if isinstance(signal, str):
        signal = signal.strip().lower()
    if signal is None:
        signal = SIGNAL_STACK_MENTION if uses_tool else SIGNAL_NONE
    if signal not in SIGNAL_TYPES:
        raise InvalidResponse(f"'signal_type' not one of {SIGNAL_TYPES}: {signal!r}")
    if uses_tool and signal == SIGNAL_NONE:
        signal = SIGNAL_STACK_MENTION
    if not uses_tool:
        signal = SIGNAL_NONE

    context = data.get("context") or ""
    if not isinstance(context, str):
        context = str(context)

    return AnalysisVerdict(
        uses_tool=uses_tool,
        tool_detected=tool,
        signal_type=signal,
        context=context.strip()[:CONTEXT_MAX_CHARS] if uses_tool else "",
    )


# --- Engine -------------------------------------------------------------------

def _is_transient(error: anthropic.APIError) -> bool:
    if isinstance(error, (anthropic.APITimeoutError, anthropic.APIConnectionError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code == 429 or error.status_code >= 500
    return False


class AnalysisEngine:
    def __init__(
        self,
        client: Optional[Any] = None,
        rate_limiter: Optional[RateLimiter] = None,
        model: str = ANTHROPIC_MODEL,
        max_tokens: int = int(ANALYSIS.get("max_tokens", 500)),
        max_description_chars: int = int(ANALYSIS.get("max_description_chars", 8000)),
        transient_retries: int = int(ANALYSIS.get("transient_retries", 3)),
        backoff_base: float = float(ANALYSIS.get("backoff_base_seconds", 1.0)),
        invalid_retries: int = int(ANALYSIS.get("invalid_response_retries", 1)),
        sleep: Callable[[float], None] = time.sleep,
    ):
        if client is None:
            client = anthropic.Anthropic(
                api_key=ANTHROPIC_API_KEY,
                timeout=float(ANALYSIS.get("timeout_seconds", 60)),
                max_retries=0,
            )
        self.client = client
        self.rate_limiter = rate_limiter or RateLimiter(
            min_delay=float(RATE_LIMITS.get("min_delay_seconds", 1.0)),
            max_per_minute=RATE_LIMITS.get("max_per_minute"),
        )
        self.model = model
        self.max_tokens = max_tokens
        self.max_description_chars = max_description_chars
        self.transient_retries = transient_retries
        self.backoff_base = backoff_base
        self.invalid_retries = invalid_retries
        self._sleep = sleep
        self._in_flight = threading.Lock()
        self.calls_made = 0

    def analyze(self, posting: JobPosting) -> AnalysisVerdict:
        """Return a validated verdict for one posting or raise AnalysisFailure."""
        user_prompt = USER_PROMPT.format(
            company=posting.company,
            title=posting.job_title,
            description=(posting.description or "")[:self.max_description_chars],
        )

        with self._in_flight:
            last_error: Optional[InvalidResponse] = None
            for attempt in range(self.invalid_retries + 1):
                prompt = user_prompt if attempt == 0 else user_prompt + STRICT_SUFFIX
                if attempt:
                    logger.warning(f"Retrying analysis for {posting.job_id} with stricter instructions")
                try:
                    verdict = parse_verdict(self._call_with_backoff(prompt, posting.job_id))
                except InvalidResponse as e:
                    last_error = e
                    logger.warning(f"Invalid model response for {posting.job_id}: {e}")
                    continue
                return apply_platform_guard(verdict, posting.description or "")

        raise AnalysisFailure(
            f"Invalid response for {posting.job_id} after {self.invalid_retries + 1} attempts: {last_error}",
            reason=AnalysisFailure.INVALID,
            job_id=posting.job_id,
        )

    def _call_with_backoff(self, user_prompt: str, job_id: str) -> str:
        delays = backoff_delays(self.transient_retries, self.backoff_base)
        attempt = 0
        while True:
            try:
                return self._call_model(user_prompt)
            except anthropic.APIError as e:
                if not _is_transient(e):
                    raise AnalysisFailure(
                        f"Provider rejected request for {job_id}: {type(e).__name__}: {e}",
                        reason=AnalysisFailure.PROVIDER,
                        job_id=job_id,
                    ) from e
                if attempt == len(delays):
                    raise AnalysisFailure(
                        f"Provider unavailable for {job_id} after {attempt + 1} attempts: {type(e).__name__}: {e}",
                        reason=AnalysisFailure.TRANSIENT,
                        job_id=job_id,
                    ) from e
                logger.warning(
                    f"Transient provider error for {job_id} ({type(e).__name__}); "
                    f"retrying in {delays[attempt]:.0f}s"
                )
                self._sleep(delays[attempt])
                attempt += 1

    def _call_model(self, user_prompt: str) -> str:
        self.rate_limiter.wait()
        self.calls_made += 1
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": user_prompt}],
        )
        parts = [getattr(block, "text", "") for block in (response.content or [])]
        text = "".join(parts).strip()
        if not text:
            raise InvalidResponse("empty response from model")
        return text
