"""Peer-ranking parsing and aggregation over anonymized response labels."""

import logging
import re

from council.models import AggregateRanking, Stage1Result, Stage2Result

logger = logging.getLogger(__name__)

FINAL_RANKING_MARKER = "FINAL RANKING:"

_LABEL_RE = re.compile(r"Response [A-Z]")
_NUMBERED_LABEL_RE = re.compile(r"\d+\.\s*(Response [A-Z])")


def label_for(index: int) -> str:
    """0 -> 'Response A', 1 -> 'Response B', ..."""
    return f"Response {chr(ord('A') + index)}"


def build_label_map(stage1: list[Stage1Result]) -> dict[str, str]:
    """Positional label -> agent name mapping over Stage-1 results."""
    return {label_for(idx): result.agent for idx, result in enumerate(stage1)}


def parse_ranking(text: str | None) -> list[str]:
    """Extract the ordered label list from an evaluator's free-text ranking.

    Prefers the numbered list after ``FINAL RANKING:``, then any bare labels
    after the marker, then bare labels anywhere. Returns [] when nothing
    matches; never raises.
    """
    if not isinstance(text, str) or not text:
        return []

    if FINAL_RANKING_MARKER in text:
        tail = text.split(FINAL_RANKING_MARKER, 1)[1]
        numbered = _NUMBERED_LABEL_RE.findall(tail)
        if numbered:
            return numbered
        bare = _LABEL_RE.findall(tail)
        if bare:
            return bare

    return _LABEL_RE.findall(text)


def aggregate_rankings(
    stage2: list[Stage2Result],
    label_map: dict[str, str],
) -> list[AggregateRanking]:
    """Average 1-based rank per agent across all evaluators, best first.

    Labels missing from ``label_map`` are dropped. Agents nobody ranked do not
    appear in the result.
    """
    positions: dict[str, list[int]] = {}
    for result in stage2:
        for idx, label in enumerate(result.parsed_ranking):
            agent = label_map.get(label)
            if agent is None:
                logger.debug("Evaluator %s used unknown label %r", result.agent, label)
                continue
            positions.setdefault(agent, []).append(idx + 1)

    aggregate = [
        AggregateRanking(
            agent=agent,
            average_rank=round(sum(ranks) / len(ranks), 2),
            rankings_count=len(ranks),
        )
        for agent, ranks in positions.items()
    ]
    # Name as tie-breaker keeps the order independent of evaluator order.
    aggregate.sort(key=lambda entry: (entry.average_rank, entry.agent))
    return aggregate
