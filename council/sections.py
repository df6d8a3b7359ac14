"""Sectioned output format: ``===SECTION:name===`` ... ``===END:name===``.

Chairman passes are asked to answer in this format so that a response cut off
mid-way can be detected (an opener with no closer) and partially salvaged.
"""

import re
from collections.abc import Iterable

from council.models import ParsedSection

_NAME = r"[A-Za-z0-9_]+"
_START_RE = re.compile(rf"===SECTION:({_NAME})===")
_SECTION_RE = re.compile(rf"===SECTION:({_NAME})===(.*?)===END:\1===", re.DOTALL)

PASS1_SECTIONS = (
    "executive_summary",
    "ambiguities",
    "consensus_notes",
    "implementation_phases",
    "section_outlines",
)

PASS1_SECTION_DESCRIPTIONS = {
    "executive_summary": "2-3 paragraph synthesis of key findings, recommendations, and confidence level",
    "ambiguities": "JSON array of questions requiring human decision, with priority, options, and recommendations",
    "consensus_notes": "Summary of where agents agreed/disagreed and how conflicts were resolved",
    "implementation_phases": "JSON array of implementation phases with deliverables",
    "section_outlines": "JSON object: brief outline (2-3 sentences) for each detailed section expanded in Pass 2",
}

PASS2_SECTIONS = (
    "architecture",
    "data_model",
    "api_contracts",
    "user_flows",
    "security",
    "deployment",
)

PASS2_SECTION_DESCRIPTIONS = {
    "architecture": "Detailed system architecture: components, interactions, technology choices",
    "data_model": "Complete data model: entities, relationships, storage, data flow",
    "api_contracts": "API specifications: endpoints, request/response formats, authentication",
    "user_flows": "Critical user journeys: steps, happy paths, error cases",
    "security": "Security design: authentication, authorization, data protection, threat model",
    "deployment": "Infrastructure and deployment: scaling, monitoring, CI/CD",
}

MERGE_PASS1_SECTIONS = (
    "merged_content",
    "unique_insights",
    "conflicts",
    "coverage_gaps",
)

MERGE_PASS1_SECTION_DESCRIPTIONS = {
    "merged_content": "Primary merged output combining all responses",
    "unique_insights": "JSON array of insights that appeared in only one response, with attribution",
    "conflicts": "JSON array of contradictions between responses, with both perspectives",
    "coverage_gaps": "Areas that no response adequately covered, requiring follow-up",
}


def section_start(name: str) -> str:
    return f"===SECTION:{name}==="


def section_end(name: str) -> str:
    return f"===END:{name}==="


def format_section(name: str, content: str) -> str:
    return f"{section_start(name)}\n{content}\n{section_end(name)}"


def format_sections(sections: Iterable[ParsedSection]) -> str:
    return "\n\n".join(format_section(s.name, s.content) for s in sections)


def parse_sections(text: str | None) -> list[ParsedSection]:
    """Split sectioned text into sections, in order of appearance.

    Every complete pair becomes ``complete=True``. An opener with no closer
    later in the text becomes ``complete=False`` with everything after the
    opener, verbatim, as content. Text outside sections is ignored. Never raises.
    """
    if not isinstance(text, str) or not text:
        return []

    found: list[tuple[int, ParsedSection]] = []
    spans: list[tuple[int, int]] = []
    for match in _SECTION_RE.finditer(text):
        spans.append(match.span())
        found.append((match.start(), ParsedSection(match.group(1), match.group(2).strip(), True)))

    for match in _START_RE.finditer(text):
        pos = match.start()
        if any(start <= pos < end for start, end in spans):
            continue
        name = match.group(1)
        if section_end(name) in text[match.end():]:
            continue
        found.append((pos, ParsedSection(name, text[match.end():], False)))

    found.sort(key=lambda item: item[0])
    return [section for _, section in found]


def complete_sections(parsed: list[ParsedSection]) -> list[ParsedSection]:
    return [s for s in parsed if s.complete]


def missing_sections(parsed: list[ParsedSection], expected: Iterable[str]) -> list[str]:
    """Expected names without a complete section."""
    done = {s.name for s in parsed if s.complete}
    return [name for name in expected if name not in done]


def truncated_sections(parsed: list[ParsedSection]) -> list[str]:
    return [s.name for s in parsed if not s.complete]


def get_section(parsed: list[ParsedSection], name: str, complete_only: bool = True) -> ParsedSection | None:
    for section in parsed:
        if section.name == name and (section.complete or not complete_only):
            return section
    return None


def build_format_instructions(
    sections: Iterable[str],
    descriptions: dict[str, str] | None = None,
) -> str:
    """Instruction block asking a model to answer in sectioned format."""
    descriptions = descriptions or {}
    section_list = "\n".join(
        f"- {name}: {descriptions.get(name) or name.replace('_', ' ')}" for name in sections
    )
    return (
        "You MUST output your response using sectioned format with explicit delimiters.\n\n"
        "For EACH section, use this exact format:\n"
        f"{section_start('section_name')}\n"
        "{section content here}\n"
        f"{section_end('section_name')}\n\n"
        "REQUIRED SECTIONS (in this order):\n"
        f"{section_list}\n\n"
        "CRITICAL REQUIREMENTS:\n"
        "1. Every section MUST start with ===SECTION:name=== and end with ===END:name===\n"
        "2. Output sections in the order listed above\n"
        "3. Do not add any text outside of sections\n"
        "4. Each section's content should be valid JSON or markdown as appropriate\n"
        "5. Complete all sections - do not stop mid-section"
    )
