"""Stage 3: chairman synthesis (single-pass, two-pass, merge) with one fallback retry."""

import json
import logging
import re
from dataclasses import dataclass

from config.config_loader import PromptsConfig
from council.agents import AgentFactory
from council.executor import AgentExecutor
from council.models import (
    AgentConfig,
    AgentStatus,
    ParsedSection,
    Stage1Result,
    Stage2Result,
    Stage3Result,
    TwoPassResult,
)
from council.prompts import ChairmanOptions, PromptBuilder
from council.sections import (
    MERGE_PASS1_SECTIONS,
    PASS1_SECTIONS,
    PASS2_SECTIONS,
    complete_sections,
    format_sections,
    get_section,
    missing_sections,
    parse_sections,
    truncated_sections,
)

logger = logging.getLogger(__name__)

CHAIRMAN_FAILURE_PREFIX = "Error from chairman"

OUTLINE_FALLBACK_NOTE = (
    "*Note: Pass 2 did not produce a detailed specification for this section. "
    "The Pass 1 outline is shown instead and should be expanded manually.*"
)

MERGE_FINAL_SECTION = "final_output"

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
_OUTLINE_LINE_RE = re.compile(r'^\s*[-*]?\s*["\']?([A-Za-z0-9_]+)["\']?\s*:\s*(.+?)\s*,?\s*$')


def is_chairman_failure(response: str) -> bool:
    return response.startswith(CHAIRMAN_FAILURE_PREFIX)


@dataclass
class TwoPassConfig:
    pass1: AgentConfig
    pass2: AgentConfig
    fallback: AgentConfig | None = None

    @classmethod
    def from_factory(
        cls,
        factory: AgentFactory,
        provider: str,
        tier: str,
        pass2_tier: str | None = None,
        fallback: AgentConfig | None = None,
    ) -> "TwoPassConfig":
        """Pass 2 runs one tier below Pass 1 unless ``pass2_tier`` is given."""
        return cls(
            pass1=factory.create(provider, tier),
            pass2=factory.create(provider, pass2_tier or factory.lower_tier(tier)),
            fallback=fallback,
        )


def parse_outlines(text: str) -> dict[str, str]:
    """Section outlines as name -> outline.

    Expects a JSON object (optionally inside a code fence). Falls back to
    ``name: outline`` lines when the JSON does not parse.
    """
    body = text.strip()
    fenced = _CODE_FENCE_RE.match(body)
    if fenced:
        body = fenced.group(1)

    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return {
            str(key): value if isinstance(value, str) else json.dumps(value)
            for key, value in parsed.items()
        }

    outlines: dict[str, str] = {}
    for line in body.splitlines():
        match = _OUTLINE_LINE_RE.match(line)
        if match:
            outlines[match.group(1)] = match.group(2).strip().strip("\"'")
    return outlines


def build_outline_fallback(pass1_sections: list[ParsedSection]) -> list[ParsedSection]:
    """Placeholder Pass-2 sections built from Pass 1's section_outlines."""
    outlines_section = get_section(pass1_sections, "section_outlines") or get_section(
        pass1_sections, "section_outlines", complete_only=False
    )
    if outlines_section is None:
        return []
    outlines = parse_outlines(outlines_section.content)
    return [
        ParsedSection(name=name, content=f"{outline}\n\n{OUTLINE_FALLBACK_NOTE}", complete=True)
        for name, outline in outlines.items()
    ]


def _log_section_health(label: str, parsed: list[ParsedSection], expected: tuple[str, ...]) -> None:
    truncated = truncated_sections(parsed)
    if truncated:
        logger.warning("%s output truncated in section(s): %s", label, ", ".join(truncated))
    missing = missing_sections(parsed, expected)
    if missing:
        logger.info("%s missing section(s): %s", label, ", ".join(missing))


class ChairmanSynthesizer:
    """Runs the chairman agent(s) for Stage 3.

    A chairman that does not complete produces the ``Error from chairman``
    sentinel instead of raising; when a fallback agent is configured the whole
    synthesis is retried exactly once with it.
    """

    def __init__(self, prompts: PromptsConfig, executor: AgentExecutor | None = None) -> None:
        self._builder = PromptBuilder(prompts)
        self._executor = executor or AgentExecutor()

    async def run_chairman(
        self,
        chairman: AgentConfig,
        prompt: str,
        timeout_sec: float | None = None,
    ) -> Stage3Result:
        logger.info("Running chairman %s (%d chars of prompt)", chairman.name, len(prompt))
        state = await self._executor.execute(chairman, prompt, timeout_sec)
        if state.status is AgentStatus.COMPLETED:
            return Stage3Result(agent=chairman.name, response=state.output.strip())
        logger.warning(
            "Chairman %s ended %s%s",
            chairman.name,
            state.status.value,
            f": {state.error_message}" if state.error_message else "",
        )
        return Stage3Result(agent=chairman.name, response=f"{CHAIRMAN_FAILURE_PREFIX} ({state.status.value})")

    async def synthesize(
        self,
        query: str,
        stage1: list[Stage1Result],
        stage2: list[Stage2Result] | None,
        chairman: AgentConfig,
        timeout_sec: float | None = None,
        fallback: AgentConfig | None = None,
        options: ChairmanOptions | str | None = None,
    ) -> Stage3Result:
        """Single-pass synthesis. ``stage2=None`` selects the merge prompt."""
        opts = ChairmanOptions.coerce(options)
        if stage2 is None:
            prompt = self._builder.merge_chairman(query, stage1, opts)
        else:
            prompt = self._builder.chairman(query, stage1, stage2, opts)

        result = await self.run_chairman(chairman, prompt, timeout_sec)
        if is_chairman_failure(result.response) and fallback is not None:
            logger.warning("Primary chairman (%s) failed, trying fallback (%s)", chairman.name, fallback.name)
            result = await self.run_chairman(fallback, prompt, timeout_sec)
        return result

    async def synthesize_two_pass(
        self,
        query: str,
        stage1: list[Stage1Result],
        stage2: list[Stage2Result] | None,
        two_pass: TwoPassConfig,
        timeout_sec: float | None = None,
        options: ChairmanOptions | str | None = None,
    ) -> TwoPassResult:
        """Pass 1 (synthesis) then Pass 2 (detail). ``stage2=None`` selects merge mode.

        A Pass-1 failure fails the attempt; with ``two_pass.fallback`` both passes
        are re-run once with the fallback agent.
        """
        opts = ChairmanOptions.coerce(options)
        result = await self._two_pass_attempt(query, stage1, stage2, two_pass.pass1, two_pass.pass2, timeout_sec, opts)
        if is_chairman_failure(result.combined.response) and two_pass.fallback is not None:
            logger.warning(
                "Two-pass chairman (%s) failed, restarting both passes with fallback (%s)",
                two_pass.pass1.name,
                two_pass.fallback.name,
            )
            result = await self._two_pass_attempt(
                query, stage1, stage2, two_pass.fallback, two_pass.fallback, timeout_sec, opts
            )
        return result

    async def _two_pass_attempt(
        self,
        query: str,
        stage1: list[Stage1Result],
        stage2: list[Stage2Result] | None,
        pass1_agent: AgentConfig,
        pass2_agent: AgentConfig,
        timeout_sec: float | None,
        opts: ChairmanOptions,
    ) -> TwoPassResult:
        merge = stage2 is None
        if merge:
            pass1_prompt = self._builder.merge_pass1(query, stage1, opts)
        else:
            pass1_prompt = self._builder.pass1(query, stage1, stage2, opts)

        pass1 = await self.run_chairman(pass1_agent, pass1_prompt, timeout_sec)
        if is_chairman_failure(pass1.response):
            return TwoPassResult(
                pass1=pass1,
                pass2=None,
                pass1_sections=[],
                pass2_sections=[],
                combined=Stage3Result(agent=pass1.agent, response=pass1.response),
            )

        pass1_sections = parse_sections(pass1.response)
        _log_section_health("Pass 1", pass1_sections, MERGE_PASS1_SECTIONS if merge else PASS1_SECTIONS)

        if merge:
            pass2_prompt = self._builder.merge_pass2(query, pass1.response, stage1, opts)
        else:
            pass2_prompt = self._builder.pass2(query, pass1.response, stage1, opts)
        pass2 = await self.run_chairman(pass2_agent, pass2_prompt, timeout_sec)
        pass2_failed = is_chairman_failure(pass2.response)
        pass2_sections = [] if pass2_failed else parse_sections(pass2.response)

        detail = complete_sections(pass2_sections)
        used_outline_fallback = False
        if merge:
            if not detail and not pass2_failed and pass2.response:
                # Merge Pass 2 may answer free-form when no output format was requested.
                detail = [ParsedSection(MERGE_FINAL_SECTION, pass2.response, True)]
        else:
            _log_section_health("Pass 2", pass2_sections, PASS2_SECTIONS)
            if not detail:
                detail = build_outline_fallback(pass1_sections)
                used_outline_fallback = True
                logger.warning(
                    "Pass 2 produced no complete sections; using %d outline placeholder(s) from Pass 1",
                    len(detail),
                )

        combined_sections = complete_sections(pass1_sections) + detail
        combined_text = format_sections(combined_sections) if combined_sections else pass1.response
        return TwoPassResult(
            pass1=pass1,
            pass2=pass2,
            pass1_sections=pass1_sections,
            pass2_sections=pass2_sections,
            combined=Stage3Result(agent=f"{pass1.agent}+{pass2.agent}", response=combined_text),
            used_outline_fallback=used_outline_fallback,
        )
