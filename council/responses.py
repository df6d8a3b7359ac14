"""Turn finished agent states into stage results."""

import json
import logging
import re

from council.models import AgentState, AgentStatus, Stage1Result, Stage2Result
from council.ranking import parse_ranking

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_HEADER_SUMMARY_RE = re.compile(
    r"##\s*Executive\s+Summary\s*\n(.*?)(?=\n##\s|\n---|\n\*\*\*|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_BOLD_SUMMARY_RE = re.compile(
    r"\*\*Executive\s+Summary[:*]*\*\*\s*\n?(.*?)(?=\n\*\*[A-Z]|\n##|\n---|\n\*\*\*|\Z)",
    re.IGNORECASE | re.DOTALL,
)


def _summary_from_json(text: str) -> str | None:
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        summary = parsed.get("executive_summary")
        if isinstance(summary, str) and summary:
            return summary
    return None


def extract_summary(response: str) -> str | None:
    """Best-effort executive summary from a Stage-1 response.

    Tries, in order: the whole response as JSON, JSON in a code fence, a
    ``## Executive Summary`` header, and a ``**Executive Summary**`` label.
    """
    summary = _summary_from_json(response)
    if summary:
        return summary

    fenced = _FENCED_JSON_RE.search(response)
    if fenced:
        summary = _summary_from_json(fenced.group(1).strip())
        if summary:
            return summary

    for pattern in (_HEADER_SUMMARY_RE, _BOLD_SUMMARY_RE):
        match = pattern.search(response)
        if match and match.group(1).strip():
            return match.group(1).strip()

    return None


def extract_stage1(states: list[AgentState]) -> list[Stage1Result]:
    """Completed agents only; partial output of killed/timed-out agents is dropped."""
    results = []
    for state in states:
        if state.status is not AgentStatus.COMPLETED:
            continue
        response = state.output.strip()
        results.append(Stage1Result(agent=state.config.name, response=response, summary=extract_summary(response)))
    return results


def extract_stage2(states: list[AgentState]) -> list[Stage2Result]:
    results = []
    for state in states:
        if state.status is not AgentStatus.COMPLETED:
            continue
        raw = state.output.strip()
        parsed = parse_ranking(raw)
        if not parsed:
            logger.warning("Could not parse a ranking from %s", state.config.name)
        results.append(Stage2Result(agent=state.config.name, ranking_raw=raw, parsed_ranking=parsed))
    return results
