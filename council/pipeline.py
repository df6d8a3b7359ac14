"""Pipeline orchestration as an explicit state machine.

compete: STAGE1_PENDING -> STAGE1_DONE -> STAGE2_PENDING -> STAGE2_DONE -> STAGE3_PENDING -> COMPLETE
merge:   STAGE1_PENDING -> STAGE1_DONE -> STAGE3_PENDING -> COMPLETE

Zero completed Stage-1 responses moves STAGE1_PENDING -> ABORTED. A checkpoint
can start the machine at STAGE1_DONE or STAGE2_DONE.
"""

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from config.config_loader import PromptsConfig
from council.checkpoint import CheckpointOptions, CheckpointStore
from council.executor import AgentExecutor
from council.models import (
    AgentConfig,
    AggregateRanking,
    CheckpointData,
    PipelineMode,
    PipelineResult,
    Stage1Result,
    Stage2Result,
    Stage3Result,
    TwoPassResult,
)
from council.prompts import ChairmanOptions, PromptBuilder
from council.ranking import aggregate_rankings, build_label_map
from council.responses import extract_stage1, extract_stage2
from council.runner import ParallelStageRunner
from council.synthesis import ChairmanSynthesizer, TwoPassConfig, is_chairman_failure

logger = logging.getLogger(__name__)

# Quality gate: warn when fewer than this many agents answer in Stage 1
_MIN_QUALITY_RESPONSES = 3

STAGE1_NAME = "Stage 1 - Individual Responses"
STAGE2_NAME = "Stage 2 - Peer Rankings"


class PipelineState(str, Enum):
    STAGE1_PENDING = "stage1_pending"
    STAGE1_DONE = "stage1_done"
    STAGE2_PENDING = "stage2_pending"
    STAGE2_DONE = "stage2_done"
    STAGE3_PENDING = "stage3_pending"
    COMPLETE = "complete"
    ABORTED = "aborted"


_TRANSITIONS: dict[PipelineMode, dict[PipelineState, set[PipelineState]]] = {
    PipelineMode.COMPETE: {
        PipelineState.STAGE1_PENDING: {PipelineState.STAGE1_DONE, PipelineState.ABORTED},
        PipelineState.STAGE1_DONE: {PipelineState.STAGE2_PENDING},
        PipelineState.STAGE2_PENDING: {PipelineState.STAGE2_DONE},
        PipelineState.STAGE2_DONE: {PipelineState.STAGE3_PENDING},
        PipelineState.STAGE3_PENDING: {PipelineState.COMPLETE},
    },
    PipelineMode.MERGE: {
        PipelineState.STAGE1_PENDING: {PipelineState.STAGE1_DONE, PipelineState.ABORTED},
        PipelineState.STAGE1_DONE: {PipelineState.STAGE3_PENDING},
        PipelineState.STAGE3_PENDING: {PipelineState.COMPLETE},
    },
}

# States a checkpoint may resume into.
_RESUME_STATES = {PipelineState.STAGE1_DONE, PipelineState.STAGE2_DONE}


class IllegalTransitionError(RuntimeError):
    """Raised when the orchestrator is asked to make a move its mode does not allow."""


@dataclass
class PipelineCallbacks:
    """Stage-completion hooks. Each may be a plain function or a coroutine function."""

    on_stage1_complete: Callable[[list[Stage1Result]], Any] | None = None
    on_stage2_complete: Callable[[list[Stage2Result], list[AggregateRanking]], Any] | None = None
    on_stage3_complete: Callable[[Stage3Result], Any] | None = None


async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


@dataclass
class PipelineConfig:
    stage1_agents: list[AgentConfig]
    chairman: AgentConfig
    stage2_agents: list[AgentConfig] | None = None    # None: reuse the Stage-1 agents
    fallback: AgentConfig | None = None
    mode: PipelineMode = PipelineMode.COMPETE
    two_pass: TwoPassConfig | None = None
    chairman_options: ChairmanOptions = field(default_factory=ChairmanOptions)
    timeout_sec: float | None = None
    interactive: bool = False
    checkpoint: CheckpointOptions | None = None


class PipelineOrchestrator:
    """Runs one question through the council, end to end. Single use."""

    def __init__(
        self,
        question: str,
        config: PipelineConfig,
        prompts: PromptsConfig,
        callbacks: PipelineCallbacks | None = None,
        runner: ParallelStageRunner | None = None,
        synthesizer: ChairmanSynthesizer | None = None,
        executor: AgentExecutor | None = None,
    ) -> None:
        executor = executor or AgentExecutor()
        self.question = question
        self.config = config
        self.callbacks = callbacks or PipelineCallbacks()
        self._runner = runner or ParallelStageRunner(executor)
        self._synthesizer = synthesizer or ChairmanSynthesizer(prompts, executor)
        self._builder = PromptBuilder(prompts)
        self._store = CheckpointStore(config.checkpoint) if config.checkpoint else None
        self._started = False

        self.state = PipelineState.STAGE1_PENDING
        self.resumed_from: str | None = None
        self.stage1: list[Stage1Result] = []
        self.stage2: list[Stage2Result] = []
        self.aggregate: list[AggregateRanking] = []
        self.label_to_agent: dict[str, str] = {}
        self.stage3: Stage3Result | None = None
        self.two_pass_result: TwoPassResult | None = None
        self.aborted_stages: list[str] = []

    @property
    def mode(self) -> PipelineMode:
        return self.config.mode

    def _transition(self, target: PipelineState) -> None:
        allowed = _TRANSITIONS[self.mode].get(self.state, set())
        if target not in allowed:
            raise IllegalTransitionError(f"{self.mode.value}: cannot go from {self.state.value} to {target.value}")
        logger.debug("Pipeline state %s -> %s", self.state.value, target.value)
        self.state = target

    def _resume_at(self, target: PipelineState) -> None:
        if self.state is not PipelineState.STAGE1_PENDING or target not in _RESUME_STATES:
            raise IllegalTransitionError(f"cannot resume into {target.value} from {self.state.value}")
        if target not in _TRANSITIONS[self.mode]:
            raise IllegalTransitionError(f"{self.mode.value} mode has no {target.value} state")
        self.state = target

    async def run(self) -> PipelineResult | None:
        """Drive the state machine to COMPLETE (result) or ABORTED (None)."""
        if self._started:
            raise RuntimeError("PipelineOrchestrator.run() can only be called once")
        self._started = True

        await self._restore_checkpoint()

        handlers = {
            PipelineState.STAGE1_PENDING: self._run_stage1,
            PipelineState.STAGE1_DONE: self._leave_stage1,
            PipelineState.STAGE2_PENDING: self._run_stage2,
            PipelineState.STAGE2_DONE: self._leave_stage2,
            PipelineState.STAGE3_PENDING: self._run_stage3,
        }
        while self.state not in (PipelineState.COMPLETE, PipelineState.ABORTED):
            await handlers[self.state]()

        if self.state is PipelineState.ABORTED:
            return None

        return PipelineResult(
            stage1=self.stage1,
            stage2=self.stage2,
            stage3=self.stage3,
            aggregate=self.aggregate,
            label_to_agent=self.label_to_agent,
            mode=self.mode,
            two_pass=self.two_pass_result,
        )

    async def _restore_checkpoint(self) -> None:
        if self._store is None:
            return
        data = self._store.load(self.question)
        if data is None:
            return
        if data.completed_stage not in ("stage1", "stage2"):
            logger.info("Checkpoint marks a finished run (%s); starting fresh", data.completed_stage)
            return
        if not data.stage1:
            logger.warning("Checkpoint has no Stage 1 results; starting fresh")
            return

        self.stage1 = data.stage1
        self.label_to_agent = build_label_map(self.stage1)
        if data.label_to_agent is not None and data.label_to_agent != self.label_to_agent:
            logger.warning("Checkpoint label map disagrees with Stage 1 order; using the rebuilt map")

        resume_stage2 = (
            data.completed_stage == "stage2"
            and self.mode is PipelineMode.COMPETE
            and data.stage2 is not None
        )
        self.resumed_from = "stage2" if resume_stage2 else "stage1"
        logger.info("Resuming from checkpoint (completed: %s)", self.resumed_from)

        if resume_stage2:
            self._resume_at(PipelineState.STAGE2_DONE)
        else:
            self._resume_at(PipelineState.STAGE1_DONE)
        await _invoke(self.callbacks.on_stage1_complete, self.stage1)

        if resume_stage2:
            self.stage2 = data.stage2
            self.aggregate = (
                data.aggregate if data.aggregate is not None
                else aggregate_rankings(self.stage2, self.label_to_agent)
            )
            await _invoke(self.callbacks.on_stage2_complete, self.stage2, self.aggregate)

    async def _run_stage1(self) -> None:
        agents = self.config.stage1_agents
        states = await self._runner.run_stage(
            STAGE1_NAME,
            self.question,
            agents,
            self.config.timeout_sec,
            interactive=self.config.interactive,
        )
        self.stage1 = extract_stage1(states)
        self._note_abort(STAGE1_NAME, len(self.stage1), len(agents))

        if not self.stage1:
            logger.error("No agent responses were completed; aborting.")
            self._transition(PipelineState.ABORTED)
            return

        if len(agents) >= _MIN_QUALITY_RESPONSES and len(self.stage1) < _MIN_QUALITY_RESPONSES:
            logger.warning(
                "Only %d/%d agents responded in Stage 1. Council quality is degraded.",
                len(self.stage1),
                len(agents),
            )

        self.label_to_agent = build_label_map(self.stage1)
        logger.debug("Label map: %s", self.label_to_agent)

        await _invoke(self.callbacks.on_stage1_complete, self.stage1)
        self._save("stage1")
        self._transition(PipelineState.STAGE1_DONE)

    def _note_abort(self, stage: str, kept: int, total: int) -> None:
        if not self._runner.last_stage_aborted:
            return
        self.aborted_stages.append(stage)
        logger.warning("%s was cut short by the operator; continuing with %d/%d results", stage, kept, total)

    async def _leave_stage1(self) -> None:
        if self.mode is PipelineMode.MERGE:
            self._transition(PipelineState.STAGE3_PENDING)
        else:
            self._transition(PipelineState.STAGE2_PENDING)

    async def _run_stage2(self) -> None:
        prompt = self._builder.ranking(self.question, self.stage1)
        states = await self._runner.run_stage(
            STAGE2_NAME,
            prompt,
            self.config.stage2_agents or self.config.stage1_agents,
            self.config.timeout_sec,
            interactive=self.config.interactive,
        )
        self.stage2 = extract_stage2(states)
        self._note_abort(STAGE2_NAME, len(self.stage2), len(states))
        self.aggregate = aggregate_rankings(self.stage2, self.label_to_agent)

        await _invoke(self.callbacks.on_stage2_complete, self.stage2, self.aggregate)
        self._save("stage2")
        self._transition(PipelineState.STAGE2_DONE)

    async def _leave_stage2(self) -> None:
        self._transition(PipelineState.STAGE3_PENDING)

    async def _run_stage3(self) -> None:
        rankings = None if self.mode is PipelineMode.MERGE else self.stage2
        if self.config.two_pass is not None:
            self.two_pass_result = await self._synthesizer.synthesize_two_pass(
                self.question,
                self.stage1,
                rankings,
                self.config.two_pass,
                self.config.timeout_sec,
                self.config.chairman_options,
            )
            self.stage3 = self.two_pass_result.combined
        else:
            self.stage3 = await self._synthesizer.synthesize(
                self.question,
                self.stage1,
                rankings,
                self.config.chairman,
                self.config.timeout_sec,
                fallback=self.config.fallback,
                options=self.config.chairman_options,
            )

        await _invoke(self.callbacks.on_stage3_complete, self.stage3)

        if self._store is not None:
            if is_chairman_failure(self.stage3.response):
                logger.warning("Chairman failed; keeping checkpoint for a retry")
            else:
                self._store.clear()
        self._transition(PipelineState.COMPLETE)

    def _save(self, completed_stage: str) -> None:
        if self._store is None:
            return
        self._store.save(
            CheckpointData(
                question=self.question,
                completed_stage=completed_stage,
                stage1=self.stage1,
                stage2=self.stage2 if completed_stage == "stage2" else None,
                label_to_agent=self.label_to_agent,
                aggregate=self.aggregate if completed_stage == "stage2" else None,
            )
        )


async def run_pipeline(
    question: str,
    config: PipelineConfig,
    prompts: PromptsConfig,
    callbacks: PipelineCallbacks | None = None,
    **kwargs: Any,
) -> PipelineResult | None:
    """Run one question through a fresh orchestrator."""
    orchestrator = PipelineOrchestrator(question, config, prompts, callbacks, **kwargs)
    return await orchestrator.run()
