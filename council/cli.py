"""Click CLI: build the council from settings.yaml, run it, print and save the result."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from config.config_loader import AppConfig, load_config
from council.agents import AgentConfigError, AgentFactory, parse_agent_spec
from council.checkpoint import CheckpointOptions
from council.healthcheck import available_providers
from council.models import PipelineMode, Stage1Result, Stage2Result, Stage3Result
from council.output import print_final, print_json, save_to_file
from council.pipeline import PipelineCallbacks, PipelineConfig, run_pipeline
from council.prompts import ChairmanOptions
from council.synthesis import TwoPassConfig, is_chairman_failure

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_pipeline_config(
    config: AppConfig,
    factory: AgentFactory,
    providers: list[str],
    *,
    mode: str,
    preset_name: str,
    stage1_spec: str | None,
    stage2_spec: str | None,
    chairman_spec: str,
    fallback_spec: str | None,
    two_pass: bool,
    pass2_tier: str | None,
    use_summaries: bool,
    output_format: str | None,
    timeout_sec: float | None,
    interactive: bool,
    checkpoint_dir: Path | None,
    checkpoint_name: str,
) -> PipelineConfig:
    """Translate CLI/config choices into a PipelineConfig. Raises AgentConfigError."""
    preset = factory.preset(preset_name)
    stage1_agents, stage2_agents = factory.build_stage_agents(preset, providers)
    if stage1_spec:
        stage1_agents = factory.parse_stage_spec(stage1_spec, providers)
    if stage2_spec:
        stage2_agents = factory.parse_stage_spec(stage2_spec, providers)

    chairman = factory.chairman(chairman_spec, providers, default_tier=preset.stage3.tier)
    fallback = factory.from_spec(fallback_spec) if fallback_spec else None

    two_pass_config = None
    if two_pass:
        provider, tier = parse_agent_spec(chairman.name)
        two_pass_config = TwoPassConfig.from_factory(factory, provider, tier, pass2_tier, fallback)

    return PipelineConfig(
        stage1_agents=stage1_agents,
        stage2_agents=stage2_agents,
        chairman=chairman,
        fallback=fallback,
        mode=PipelineMode(mode),
        two_pass=two_pass_config,
        chairman_options=ChairmanOptions(output_format=output_format, use_summaries=use_summaries),
        timeout_sec=timeout_sec,
        interactive=interactive,
        checkpoint=CheckpointOptions(checkpoint_dir, checkpoint_name) if checkpoint_dir else None,
    )


def _progress_callbacks(quiet: bool) -> PipelineCallbacks:
    if quiet:
        return PipelineCallbacks()

    def on_stage1(stage1: list[Stage1Result]) -> None:
        console.print(f"[green]OK[/green] Stage 1 complete ({len(stage1)} responses)")

    def on_stage2(stage2: list[Stage2Result], aggregate) -> None:
        console.print(f"[green]OK[/green] Stage 2 complete ({len(stage2)} rankings)")

    def on_stage3(stage3: Stage3Result) -> None:
        if is_chairman_failure(stage3.response):
            console.print(f"[red]FAIL[/red] Stage 3: {stage3.response}")
        else:
            console.print(f"[green]OK[/green] Stage 3 complete ({stage3.agent})")

    return PipelineCallbacks(on_stage1, on_stage2, on_stage3)


@click.command()
@click.argument("question", required=False)
@click.option("--file", "question_file", type=click.Path(exists=True, dir_okay=False), help="Read question from a file")
@click.option("--mode", type=click.Choice([m.value for m in PipelineMode]), default=None,
              help="compete (rank, then synthesize) or merge (synthesize all responses)")
@click.option("--preset", default=None, help="Tier/count preset from settings.yaml")
@click.option("--stage1", "stage1_spec", default=None, help="Stage 1 agents: '6:fast', 'fast' or 'claude:fast,gemini'")
@click.option("--stage2", "stage2_spec", default=None, help="Stage 2 agents, same format as --stage1")
@click.option("--chairman", default=None, help="Chairman agent spec, e.g. 'claude:heavy'")
@click.option("--fallback", default=None, help="Fallback chairman spec, tried once if the chairman fails")
@click.option("--two-pass/--single-pass", "two_pass", default=None, help="Two-pass chairman synthesis")
@click.option("--pass2-tier", default=None, help="Tier for chairman Pass 2 (default: one below Pass 1)")
@click.option("--summaries", "use_summaries", is_flag=True, default=None,
              help="Give the chairman executive summaries instead of full responses")
@click.option("--output-format", default=None, help="Extra output-format instructions for the chairman")
@click.option("--timeout", "timeout_sec", type=float, default=None, help="Per-agent timeout in seconds (0 = none)")
@click.option("--checkpoint-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory for resumable checkpoints")
@click.option("--checkpoint-name", default=None, help="Checkpoint file stem")
@click.option("--interactive/--no-interactive", default=None,
              help="Live status table with per-agent cancel (default: on when attached to a terminal)")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.option("--output", "output_path", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory for the markdown transcript (default: defaults.output_dir)")
@click.option("--no-save", is_flag=True, help="Don't save a markdown transcript")
@click.option("--settings", "settings_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Alternate settings.yaml")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    question: str | None,
    question_file: str | None,
    mode: str | None,
    preset: str | None,
    stage1_spec: str | None,
    stage2_spec: str | None,
    chairman: str | None,
    fallback: str | None,
    two_pass: bool | None,
    pass2_tier: str | None,
    use_summaries: bool | None,
    output_format: str | None,
    timeout_sec: float | None,
    checkpoint_dir: Path | None,
    checkpoint_name: str | None,
    interactive: bool | None,
    as_json: bool,
    output_path: Path | None,
    no_save: bool,
    settings_path: Path | None,
    verbose: bool,
) -> None:
    """Agent Council -- ask several AI CLI agents, have them rank each other, synthesize one answer.

    \b
    Examples:
      agent-council "Should we use REST or GraphQL?"
      agent-council "Design a URL shortener" --two-pass --checkpoint-dir ./.council
      agent-council --file question.md --mode merge --stage1 "claude:default,gemini:default"
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config(settings_path)
    except (FileNotFoundError, KeyError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if question_file:
        question_text = Path(question_file).read_text(encoding="utf-8").strip()
    elif question:
        question_text = question
    else:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument or --file.")
        sys.exit(1)

    defaults = config.defaults
    providers = available_providers(config)
    if not providers:
        console.print(
            "[bold red]Error:[/bold red] No agents available. Install at least one of: "
            + ", ".join(config.providers)
        )
        sys.exit(1)
    if len(providers) < 2:
        console.print(f"[yellow]Warning:[/yellow] Only {len(providers)} provider available. "
                      "The council works best with several.")

    effective_timeout = timeout_sec if timeout_sec is not None else defaults.timeout_sec
    use_tty = sys.stdin.isatty() and sys.stdout.isatty()

    factory = AgentFactory(config)
    try:
        pipeline_config = _build_pipeline_config(
            config,
            factory,
            providers,
            mode=mode or defaults.mode,
            preset_name=preset or defaults.preset,
            stage1_spec=stage1_spec,
            stage2_spec=stage2_spec,
            chairman_spec=chairman or defaults.chairman,
            fallback_spec=fallback if fallback is not None else defaults.fallback,
            two_pass=two_pass if two_pass is not None else defaults.two_pass,
            pass2_tier=pass2_tier,
            use_summaries=use_summaries if use_summaries is not None else defaults.use_summaries,
            output_format=output_format,
            timeout_sec=effective_timeout or None,
            interactive=interactive if interactive is not None else (use_tty and not as_json),
            checkpoint_dir=checkpoint_dir or defaults.checkpoint_dir,
            checkpoint_name=checkpoint_name or defaults.checkpoint_name,
        )
    except (AgentConfigError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    console.print(
        f"\n[bold cyan]Agent Council[/bold cyan] | {len(pipeline_config.stage1_agents)} agents "
        f"[{pipeline_config.mode.value}]"
    )
    console.print(f"Agents: {', '.join(a.name for a in pipeline_config.stage1_agents)}")
    console.print(f"Chairman: {pipeline_config.chairman.name}")
    console.print(f"Question: [italic]{question_text[:80]}{'...' if len(question_text) > 80 else ''}[/italic]\n")

    try:
        result = asyncio.run(
            run_pipeline(question_text, pipeline_config, config.prompts, _progress_callbacks(as_json))
        )
    except KeyboardInterrupt:
        # asyncio.run has already cancelled the run, so every agent process is gone.
        console.print("\n[red]Interrupted.[/red]")
        sys.exit(130)
    if result is None:
        sys.exit(1)

    if as_json:
        print_json(result)
    else:
        print_final(result)

    if not no_save:
        saved = save_to_file(result, question_text, output_path or defaults.output_dir)
        console.print(f"\n[dim]Saved to: {saved}[/dim]")


if __name__ == "__main__":
    main()
