"""Prompt assembly. Wording lives in settings.yaml; the structure (labels,
ranking marker, section delimiters, summary substitution) lives here."""

from dataclasses import dataclass

from config.config_loader import PromptsConfig
from council.models import Stage1Result, Stage2Result
from council.ranking import FINAL_RANKING_MARKER, label_for
from council.sections import (
    MERGE_PASS1_SECTION_DESCRIPTIONS,
    MERGE_PASS1_SECTIONS,
    PASS1_SECTION_DESCRIPTIONS,
    PASS1_SECTIONS,
    PASS2_SECTION_DESCRIPTIONS,
    PASS2_SECTIONS,
    build_format_instructions,
)


PASS2_REFERENCE_CHARS = 2000
MERGE_REFERENCE_CHARS = 1500

RANKING_FORMAT_INSTRUCTIONS = f"""IMPORTANT: Your final ranking MUST be formatted EXACTLY as follows:
- Start with the line "{FINAL_RANKING_MARKER}" (all caps, with colon)
- Then list the responses from best to worst as a numbered list
- Each line should be: number, period, space, then ONLY the response label (e.g., "1. Response A")
- Do not add any other text or explanations in the ranking section

Example:

{FINAL_RANKING_MARKER}
1. Response C
2. Response A
3. Response B"""

_SUMMARY_NOTE = (
    "\nNote: You are seeing executive summaries from each agent, not their full responses.\n"
    "These summaries capture the key decisions, risks, and recommendations."
)


@dataclass
class ChairmanOptions:
    output_format: str | None = None
    use_summaries: bool = False

    @classmethod
    def coerce(cls, value: "ChairmanOptions | str | None") -> "ChairmanOptions":
        """Accept the older bare-string form (an output format) as well."""
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(output_format=value)
        return value


def _content(result: Stage1Result, use_summaries: bool) -> tuple[str, bool]:
    if use_summaries and result.summary:
        return result.summary, True
    return result.response, False


def format_stage1(stage1: list[Stage1Result], use_summaries: bool = False) -> str:
    parts = []
    for result in stage1:
        content, is_summary = _content(result, use_summaries)
        label = "(Executive Summary)" if is_summary else "(Full Response)"
        parts.append(f"Agent: {result.agent} {label}\n{content}")
    return "\n\n".join(parts)


def format_stage2(stage2: list[Stage2Result]) -> str:
    return "\n\n".join(f"Agent: {r.agent}\nRanking: {r.ranking_raw}" for r in stage2)


def format_anonymized(stage1: list[Stage1Result]) -> str:
    """Stage-1 responses under positional labels, without agent names."""
    return "\n\n".join(f"{label_for(idx)}:\n{r.response}" for idx, r in enumerate(stage1))


def format_merge_responses(stage1: list[Stage1Result], use_summaries: bool = False) -> str:
    """Every response with explicit source attribution, for merge mode."""
    parts = []
    for idx, result in enumerate(stage1):
        content, is_summary = _content(result, use_summaries)
        parts.append(
            f"===RESPONSE FROM: {result.agent}===\n"
            f"MODEL: {result.agent}\n"
            f"RESPONSE_INDEX: {idx + 1}\n"
            f"CONTENT_TYPE: {'(Summary)' if is_summary else '(Full)'}\n\n"
            f"{content}\n\n"
            f"===END RESPONSE FROM: {result.agent}==="
        )
    return "\n\n".join(parts)


def format_references(stage1: list[Stage1Result], limit: int, use_summaries: bool = False) -> str:
    parts = []
    for result in stage1:
        content, _ = _content(result, use_summaries)
        clipped = content[:limit] + ("..." if len(content) > limit else "")
        parts.append(f"[{result.agent}]: {clipped}")
    return "\n\n".join(parts)


def _output_format_block(output_format: str | None) -> str:
    if not output_format:
        return ""
    return (
        f"\nOUTPUT FORMAT REQUIREMENTS:\n{output_format}\n\n"
        "You MUST follow the output format exactly as specified above."
    )


class PromptBuilder:
    """Fills the configured templates for every stage and chairman pass."""

    def __init__(self, prompts: PromptsConfig) -> None:
        self._prompts = prompts

    def ranking(self, question: str, stage1: list[Stage1Result]) -> str:
        return self._prompts.ranking.format(
            question=question,
            responses=format_anonymized(stage1),
            format_instructions=RANKING_FORMAT_INSTRUCTIONS,
        ).strip()

    def chairman(
        self,
        question: str,
        stage1: list[Stage1Result],
        stage2: list[Stage2Result],
        options: ChairmanOptions,
    ) -> str:
        return self._prompts.chairman.format(
            question=question,
            stage1=format_stage1(stage1, options.use_summaries),
            stage2=format_stage2(stage2),
            summary_note=_SUMMARY_NOTE if options.use_summaries else "",
            output_format=_output_format_block(options.output_format),
        ).strip()

    def merge_chairman(self, question: str, stage1: list[Stage1Result], options: ChairmanOptions) -> str:
        return self._prompts.merge_chairman.format(
            question=question,
            responses=format_merge_responses(stage1, options.use_summaries),
            output_format=_output_format_block(options.output_format),
        ).strip()

    def pass1(
        self,
        question: str,
        stage1: list[Stage1Result],
        stage2: list[Stage2Result],
        options: ChairmanOptions,
    ) -> str:
        return self._prompts.pass1.format(
            question=question,
            stage1=format_stage1(stage1, options.use_summaries),
            stage2=format_stage2(stage2),
            summary_note=_SUMMARY_NOTE if options.use_summaries else "",
            format_instructions=build_format_instructions(PASS1_SECTIONS, PASS1_SECTION_DESCRIPTIONS),
        ).strip()

    def pass2(self, question: str, pass1_output: str, stage1: list[Stage1Result], options: ChairmanOptions) -> str:
        return self._prompts.pass2.format(
            question=question,
            pass1_output=pass1_output,
            references=format_references(stage1, PASS2_REFERENCE_CHARS, options.use_summaries),
            format_instructions=build_format_instructions(PASS2_SECTIONS, PASS2_SECTION_DESCRIPTIONS),
        ).strip()

    def merge_pass1(self, question: str, stage1: list[Stage1Result], options: ChairmanOptions) -> str:
        return self._prompts.merge_pass1.format(
            question=question,
            responses=format_merge_responses(stage1, options.use_summaries),
            format_instructions=build_format_instructions(MERGE_PASS1_SECTIONS, MERGE_PASS1_SECTION_DESCRIPTIONS),
        ).strip()

    def merge_pass2(
        self,
        question: str,
        pass1_output: str,
        stage1: list[Stage1Result],
        options: ChairmanOptions,
    ) -> str:
        return self._prompts.merge_pass2.format(
            question=question,
            pass1_output=pass1_output,
            references=format_references(stage1, MERGE_REFERENCE_CHARS, options.use_summaries),
            output_format=_output_format_block(options.output_format),
        ).strip()
