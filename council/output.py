"""Rich console output and markdown file save for council results."""

import json
import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from council.models import PipelineMode, PipelineResult, Stage1Result

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _response_preview(result: Stage1Result, words: int = 50) -> str:
    """Return first N words of a response."""
    all_words = result.response.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def print_stage1_summary(stage1: list[Stage1Result]) -> None:
    console.print(Rule("[bold cyan]Stage 1 Responses[/bold cyan]"))
    for result in stage1:
        console.print(Panel(_response_preview(result), title=f"[bold]{result.agent}[/bold]", border_style="dim"))


def print_aggregate(result: PipelineResult) -> None:
    if not result.aggregate:
        return
    table = Table(title="Aggregate ranking (lower is better)")
    table.add_column("Agent")
    table.add_column("Avg rank", justify="right")
    table.add_column("Rankings", justify="right")
    for entry in result.aggregate:
        table.add_row(entry.agent, f"{entry.average_rank:.2f}", str(entry.rankings_count))
    console.print(table)


def print_final(result: PipelineResult) -> None:
    """Print stage summaries and the chairman synthesis."""
    print_stage1_summary(result.stage1)

    if result.mode is PipelineMode.COMPETE:
        console.print(Rule("[bold cyan]Stage 2 Rankings[/bold cyan]"))
        for ranking in result.stage2:
            parsed = ", ".join(ranking.parsed_ranking) or "(unparsed)"
            console.print(Text(f"{ranking.agent}: {parsed}", style="dim"))
        print_aggregate(result)

    console.print(Rule("[bold green]Chairman Synthesis[/bold green]"))
    console.print(Text(f"Synthesized by: {result.stage3.agent} | Mode: {result.mode.value}", style="dim"))
    console.print(Markdown(result.stage3.response))


def print_json(result: PipelineResult) -> None:
    console.print_json(json.dumps(result.to_dict(), ensure_ascii=False))


def save_to_file(result: PipelineResult, question: str, output_dir: Path) -> Path:
    """Save the full council transcript as a markdown file.

    Args:
        result: The completed PipelineResult.
        question: The question the council answered.
        output_dir: Directory to save the file in.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{_slug(question)}.md"

    lines: list[str] = [
        f"# Agent Council: {question[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Agents:** {', '.join(r.agent for r in result.stage1)}",
        f"**Chairman:** {result.stage3.agent}",
        f"**Mode:** {result.mode.value}",
        "",
        "---",
        "",
        "## Stage 1: Individual Responses",
        "",
    ]

    for resp in result.stage1:
        lines += [f"### {resp.agent}", "", resp.response, ""]

    if result.mode is PipelineMode.COMPETE:
        lines += ["## Stage 2: Peer Rankings", ""]
        for ranking in result.stage2:
            lines += [f"### {ranking.agent}", "", ranking.ranking_raw, ""]
        if result.aggregate:
            lines += ["| Agent | Avg rank | Rankings |", "|---|---|---|"]
            lines += [f"| {a.agent} | {a.average_rank:.2f} | {a.rankings_count} |" for a in result.aggregate]
            lines.append("")

    lines += [
        f"## Stage 3: Synthesis (by {result.stage3.agent})",
        "",
        result.stage3.response,
        "",
    ]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Council transcript saved to: %s", filepath)
    return filepath
