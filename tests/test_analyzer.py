# tests/test_analyzer.py
import anthropic
import httpx
import pytest

from analyzer import (
    STRICT_SUFFIX, SYSTEM_PROMPT, InvalidResponse, apply_platform_guard, parse_verdict,
)
from conftest import make_posting, make_request, scripted, verdict_json
from errors import AnalysisFailure
from models import AnalysisVerdict
from rate_limiter import RateLimiter


def _server_error(status=529):
    req = make_request()
    return anthropic.InternalServerError("overloaded", response=httpx.Response(status, request=req), body=None)


# ---------------------------------------------------------------------
# Golden descriptions
# ---------------------------------------------------------------------
def test_required_outreach_mention(make_engine):
    engine, _ = make_engine()

    verdict = engine.analyze(make_posting(description="Experience with Outreach.io required"))

    assert verdict.uses_tool is True
    assert verdict.tool_detected == "Outreach.io"
    assert verdict.signal_type == "required"
    assert "Outreach.io" in verdict.context


def test_generic_outreach_is_not_a_tool_even_if_model_says_so(make_engine):
    engine, _ = make_engine(
        scripted(verdict_json(True, "Outreach.io", "required", "proactive outreach to prospects"))
    )

    verdict = engine.analyze(make_posting(description="Own proactive outreach to prospects across EMEA."))

    assert verdict == AnalysisVerdict.negative()


def test_both_platforms(make_engine):
    engine, _ = make_engine()

    verdict = engine.analyze(make_posting(description="SalesLoft and Outreach.io both used daily"))

    assert verdict.tool_detected == "Both"
    assert verdict.uses_tool is True


def test_no_mention_is_negative(make_engine):
    engine, _ = make_engine()

    verdict = engine.analyze(make_posting(description="Cold outreach and HubSpot experience."))

    assert verdict.uses_tool is False
    assert verdict.tool_detected == "none"
    assert verdict.signal_type == "none"
    assert verdict.context == ""


# ---------------------------------------------------------------------
# Invalid responses
# ---------------------------------------------------------------------
def test_invalid_json_is_retried_once_with_stricter_prompt(make_engine):
    engine, client = make_engine(
        scripted("Sure! Here is my analysis.", verdict_json(True, "SalesLoft", "preferred", "SalesLoft a plus"))
    )

    verdict = engine.analyze(make_posting(description="SalesLoft a plus"))

    assert verdict.tool_detected == "SalesLoft"
    assert len(client.calls) == 2
    assert not client.calls[0]["messages"][0]["content"].endswith(STRICT_SUFFIX)
    assert client.calls[1]["messages"][0]["content"].endswith(STRICT_SUFFIX)


def test_repeated_invalid_response_is_a_failure_not_a_negative(make_engine):
    engine, client = make_engine(scripted("not json", "still not json"))

    with pytest.raises(AnalysisFailure) as exc:
        engine.analyze(make_posting(job_id="42"))

    assert exc.value.reason == AnalysisFailure.INVALID
    assert exc.value.job_id == "42"
    assert len(client.calls) == 2


def test_missing_uses_tool_is_invalid(make_engine):
    engine, _ = make_engine(scripted('{"tool_detected": "none"}', '{"tool_detected": "none"}'))

    with pytest.raises(AnalysisFailure):
        engine.analyze(make_posting())


def test_empty_reply_is_invalid(make_engine):
    engine, _ = make_engine(scripted("", "   "))

    with pytest.raises(AnalysisFailure) as exc:
        engine.analyze(make_posting())

    assert exc.value.reason == AnalysisFailure.INVALID


def test_fenced_json_is_accepted(make_engine):
    fenced = "```json\n" + verdict_json(True, "Outreach.io", "stack_mention", "we run Outreach.io") + "\n```"
    engine, client = make_engine(scripted(fenced))

    verdict = engine.analyze(make_posting(description="Our stack: Salesforce, we run Outreach.io"))

    assert verdict.tool_detected == "Outreach.io"
    assert len(client.calls) == 1


# ---------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------
def test_transient_errors_back_off_then_fail(make_engine, sleeps):
    timeout = anthropic.APITimeoutError(request=make_request())
    engine, client = make_engine(scripted(timeout, _server_error(), timeout, _server_error(503)))

    with pytest.raises(AnalysisFailure) as exc:
        engine.analyze(make_posting())

    assert exc.value.reason == AnalysisFailure.TRANSIENT
    assert sleeps == [1.0, 2.0, 4.0]
    assert len(client.calls) == 4


def test_transient_error_then_success(make_engine, sleeps):
    engine, _ = make_engine(scripted(_server_error(500), verdict_json(False)))

    verdict = engine.analyze(make_posting())

    assert verdict.uses_tool is False
    assert sleeps == [1.0]


def test_rejected_request_fails_without_retry(make_engine, sleeps):
    req = make_request()
    bad = anthropic.BadRequestError("bad", response=httpx.Response(400, request=req), body=None)
    engine, client = make_engine(scripted(bad))

    with pytest.raises(AnalysisFailure) as exc:
        engine.analyze(make_posting())

    assert exc.value.reason == AnalysisFailure.PROVIDER
    assert sleeps == []
    assert len(client.calls) == 1


# ---------------------------------------------------------------------
# Request shape and pacing
# ---------------------------------------------------------------------
def test_request_carries_system_prompt_and_truncated_description(make_engine):
    engine, client = make_engine(max_description_chars=20)

    engine.analyze(make_posting(company="Initech", description="x" * 50 + " Outreach.io"))

    call = client.calls[0]
    assert call["system"] == SYSTEM_PROMPT
    content = call["messages"][0]["content"]
    assert "Company: Initech" in content
    assert "x" * 21 not in content
    assert "Outreach.io" not in content


def test_calls_are_paced_by_rate_limiter(make_engine):
    now = [0.0]

    def sleep(seconds):
        now[0] += seconds

    limiter = RateLimiter(min_delay=1.0, clock=lambda: now[0], sleep=sleep)
    engine, client = make_engine(rate_limiter=limiter)

    for i in range(4):
        engine.analyze(make_posting(job_id=str(i)))

    assert len(client.calls) == 4
    assert engine.calls_made == 4
    assert now[0] >= 3.0


# ---------------------------------------------------------------------
# Parsing and guard units
# ---------------------------------------------------------------------
def test_parse_verdict_rejects_inconsistent_flags():
    with pytest.raises(InvalidResponse):
        parse_verdict(verdict_json(True, "none"))
    with pytest.raises(InvalidResponse):
        parse_verdict(verdict_json(False, "SalesLoft", "required"))


def test_parse_verdict_rejects_unknown_tool_and_signal():
    with pytest.raises(InvalidResponse):
        parse_verdict(verdict_json(True, "HubSpot", "required"))
    with pytest.raises(InvalidResponse):
        parse_verdict(verdict_json(True, "SalesLoft", "mandatory"))


def test_parse_verdict_normalizes_loose_fields():
    verdict = parse_verdict('{"uses_tool": false, "tool_detected": "None", "context": "ignored"}')
    assert verdict == AnalysisVerdict.negative()

    positive = parse_verdict(verdict_json(True, "SalesLoft", "none", "y" * 300))
    assert positive.signal_type == "stack_mention"
    assert len(positive.context) == 200


def test_parse_verdict_finds_object_inside_prose():
    verdict = parse_verdict("Result: " + verdict_json(False) + " Hope that helps.")
    assert verdict.uses_tool is False


def test_guard_narrows_both_to_the_named_platform():
    claimed = AnalysisVerdict(True, "Both", "required", "Outreach.io required")

    verdict = apply_platform_guard(claimed, "Outreach.io required, plus great cold outreach.")

    assert verdict.tool_detected == "Outreach.io"
    assert verdict.signal_type == "required"


def test_guard_replaces_ungrounded_context_with_quote():
    description = "You will build sequences in Salesloft every day with the team."
    claimed = AnalysisVerdict(True, "SalesLoft", "stack_mention", "Candidates must be certified gurus")

    verdict = apply_platform_guard(claimed, description)

    assert "Salesloft" in verdict.context
    assert verdict.context in description


def test_guard_accepts_capitalized_outreach_in_tool_list():
    claimed = AnalysisVerdict(True, "Outreach.io", "stack_mention", "Salesforce, Outreach, Gong")

    verdict = apply_platform_guard(claimed, "Tools: Salesforce, Outreach, Gong")

    assert verdict.tool_detected == "Outreach.io"


def test_guard_accepts_upper_case_tool_list():
    description = "Our stack: SALESFORCE, OUTREACH, GONG. Must have used OUTREACH."
    claimed = AnalysisVerdict(True, "Outreach.io", "required", "Must have used OUTREACH")

    verdict = apply_platform_guard(claimed, description)

    assert verdict.uses_tool is True
    assert verdict.tool_detected == "Outreach.io"


def test_guard_rejects_upper_case_generic_outreach():
    claimed = AnalysisVerdict(True, "Outreach.io", "required", "COLD OUTREACH")

    assert apply_platform_guard(claimed, "DAILY COLD OUTREACH TO PROSPECTS") == AnalysisVerdict.negative()


def test_parse_verdict_accepts_vendor_casing():
    verdict = parse_verdict(verdict_json(True, "Salesloft", "Preferred", "Salesloft a plus"))

    assert verdict.tool_detected == "SalesLoft"
    assert verdict.signal_type == "preferred"
    assert parse_verdict(verdict_json(True, "outreach.io", "required")).tool_detected == "Outreach.io"
    assert parse_verdict(verdict_json(True, "BOTH", "stack_mention")).tool_detected == "Both"


def test_upper_case_mention_is_recorded_end_to_end(make_engine):
    engine, _ = make_engine(
        scripted(verdict_json(True, "Outreach.io", "required", "Must have used OUTREACH"))
    )

    verdict = engine.analyze(make_posting(description="Our stack: SALESFORCE, OUTREACH, GONG. Must have used OUTREACH."))

    assert verdict.tool_detected == "Outreach.io"
