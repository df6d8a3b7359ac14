"""Tests for council/pipeline.py: the stage state machine end to end with a scripted executor."""

import json

import pytest

from council.checkpoint import CheckpointOptions, save_checkpoint
from council.models import AgentStatus, CheckpointData, PipelineMode, Stage1Result, Stage2Result
from council.pipeline import (
    STAGE1_NAME,
    IllegalTransitionError,
    PipelineCallbacks,
    PipelineConfig,
    PipelineOrchestrator,
    PipelineState,
    run_pipeline,
)
from council.runner import ParallelStageRunner
from council.sections import format_section
from council.synthesis import TwoPassConfig
from tests.conftest import MockExecutor, fake_agent

RANKINGS = {
    "alpha": "FINAL RANKING:\n1. Response B\n2. Response A\n3. Response C",
    "beta": "FINAL RANKING:\n1. Response B\n2. Response C\n3. Response A",
    "gamma": "FINAL RANKING:\n1. Response A\n2. Response B\n3. Response C",
}


def _agent_reply(name: str, answer: str | None = None):
    def reply(prompt: str) -> str:
        if prompt.startswith("Question:") and "FINAL RANKING:" in prompt:
            return RANKINGS[name]
        return answer or f"{name} answer"
    return reply


def _executor(**overrides) -> MockExecutor:
    replies = {name: _agent_reply(name) for name in ("alpha", "beta", "gamma")}
    replies["chair"] = "Chairman synthesis"
    replies.update(overrides)
    return MockExecutor(replies)


def _config(three_agents, **kwargs) -> PipelineConfig:
    return PipelineConfig(stage1_agents=three_agents, chairman=fake_agent("chair"), **kwargs)


class Recorder:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def callbacks(self) -> PipelineCallbacks:
        return PipelineCallbacks(
            on_stage1_complete=lambda s1: self.events.append(("stage1", [r.agent for r in s1])),
            on_stage2_complete=lambda s2, agg: self.events.append(("stage2", [a.agent for a in agg])),
            on_stage3_complete=lambda s3: self.events.append(("stage3", s3.agent)),
        )


async def test_compete_runs_all_stages_in_order(sample_prompts_config, three_agents):
    executor = _executor()
    recorder = Recorder()
    orchestrator = PipelineOrchestrator(
        "Q?", _config(three_agents), sample_prompts_config, recorder.callbacks(), executor=executor
    )
    result = await orchestrator.run()

    assert orchestrator.state is PipelineState.COMPLETE
    assert [r.agent for r in result.stage1] == ["alpha", "beta", "gamma"]
    assert len(result.stage2) == 3
    assert [(a.agent, a.average_rank) for a in result.aggregate] == [("beta", 1.33), ("alpha", 2.0), ("gamma", 2.67)]
    assert result.label_to_agent == {"Response A": "alpha", "Response B": "beta", "Response C": "gamma"}
    assert result.stage3.response == "Chairman synthesis"
    assert result.mode is PipelineMode.COMPETE
    assert recorder.events == [
        ("stage1", ["alpha", "beta", "gamma"]),
        ("stage2", ["beta", "alpha", "gamma"]),
        ("stage3", "chair"),
    ]
    # 3 answers + 3 rankings + 1 chairman
    assert len(executor.calls) == 7


async def test_async_callbacks_are_awaited(sample_prompts_config, three_agents):
    seen = []

    async def on_stage1(stage1):
        seen.append(len(stage1))

    await run_pipeline(
        "Q?", _config(three_agents), sample_prompts_config,
        PipelineCallbacks(on_stage1_complete=on_stage1), executor=_executor(),
    )
    assert seen == [3]


async def test_ranking_prompt_hides_agent_names(sample_prompts_config, three_agents):
    executor = _executor()
    await run_pipeline("Q?", _config(three_agents), sample_prompts_config, executor=executor)

    ranking_prompt = executor.prompts_for("alpha")[1]
    assert "Response A:\nalpha answer" in ranking_prompt
    assert "Agent:" not in ranking_prompt


async def test_aborts_when_no_stage1_responses(sample_prompts_config, three_agents, caplog):
    failed = (AgentStatus.ERROR, "")
    executor = _executor(alpha=failed, beta=failed, gamma=failed)
    recorder = Recorder()
    orchestrator = PipelineOrchestrator(
        "Q?", _config(three_agents), sample_prompts_config, recorder.callbacks(), executor=executor
    )

    assert await orchestrator.run() is None
    assert orchestrator.state is PipelineState.ABORTED
    assert recorder.events == []
    assert "chair" not in [name for name, _ in executor.calls]
    assert "No agent responses" in caplog.text


async def test_quality_warning_when_few_agents_answer(sample_prompts_config, caplog):
    agents = [fake_agent(n) for n in ("alpha", "beta", "gamma", "delta")]
    failed = (AgentStatus.TIMEOUT, "")
    executor = _executor(beta=failed, gamma=failed, delta=failed)

    result = await run_pipeline("Q?", _config(agents), sample_prompts_config, executor=executor)

    assert [r.agent for r in result.stage1] == ["alpha"]
    assert "Only 1/4 agents responded" in caplog.text


async def test_partial_failure_relabels_survivors(sample_prompts_config, three_agents):
    executor = _executor(alpha=(AgentStatus.KILLED, "partial text"))
    result = await run_pipeline("Q?", _config(three_agents), sample_prompts_config, executor=executor)

    assert result.label_to_agent == {"Response A": "beta", "Response B": "gamma"}
    assert "partial text" not in executor.prompts_for("chair")[0]


class AbortingRunner(ParallelStageRunner):
    """Reports the first stage as aborted from the console."""

    async def run_stage(self, name, *args, **kwargs):
        states = await super().run_stage(name, *args, **kwargs)
        self.last_stage_aborted = name == STAGE1_NAME
        return states


async def test_operator_abort_is_recorded_and_run_continues(sample_prompts_config, three_agents, caplog):
    executor = _executor(gamma=(AgentStatus.KILLED, ""))
    orchestrator = PipelineOrchestrator(
        "Q?", _config(three_agents), sample_prompts_config,
        runner=AbortingRunner(executor), executor=executor,
    )
    result = await orchestrator.run()

    assert orchestrator.state is PipelineState.COMPLETE
    assert orchestrator.aborted_stages == [STAGE1_NAME]
    assert [r.agent for r in result.stage1] == ["alpha", "beta"]
    assert f"{STAGE1_NAME} was cut short by the operator; continuing with 2/3 results" in caplog.text


async def test_merge_mode_skips_stage2(sample_prompts_config, three_agents):
    executor = _executor()
    recorder = Recorder()
    result = await run_pipeline(
        "Q?", _config(three_agents, mode=PipelineMode.MERGE), sample_prompts_config,
        recorder.callbacks(), executor=executor,
    )

    assert result.stage2 == []
    assert result.aggregate == []
    assert [e[0] for e in recorder.events] == ["stage1", "stage3"]
    assert executor.prompts_for("chair")[0].startswith("MERGE Question")
    assert len(executor.calls) == 4


async def test_separate_stage2_agents(sample_prompts_config, three_agents):
    executor = _executor(judge=RANKINGS["alpha"])
    config = _config(three_agents, stage2_agents=[fake_agent("judge")])
    result = await run_pipeline("Q?", config, sample_prompts_config, executor=executor)

    assert [r.agent for r in result.stage2] == ["judge"]
    assert len(executor.prompts_for("alpha")) == 1


async def test_chairman_fallback_used(sample_prompts_config, three_agents):
    executor = _executor(chair=(AgentStatus.ERROR, ""), backup="Backup synthesis")
    config = _config(three_agents, fallback=fake_agent("backup"))
    result = await run_pipeline("Q?", config, sample_prompts_config, executor=executor)

    assert result.stage3.agent == "backup"
    assert result.stage3.response == "Backup synthesis"


async def test_two_pass_pipeline(sample_prompts_config, three_agents):
    pass1 = format_section("executive_summary", "Summary.")
    pass2 = format_section("architecture", "Boxes and arrows.")
    executor = _executor(**{"chair:heavy": pass1, "chair:default": pass2})
    config = _config(
        three_agents,
        two_pass=TwoPassConfig(fake_agent("chair:heavy"), fake_agent("chair:default")),
    )
    orchestrator = PipelineOrchestrator("Q?", config, sample_prompts_config, executor=executor)
    result = await orchestrator.run()

    assert result.stage3.agent == "chair:heavy+chair:default"
    assert "Boxes and arrows." in result.stage3.response
    assert result.two_pass is orchestrator.two_pass_result
    assert "chair" not in [name for name, _ in executor.calls]


@pytest.fixture
def checkpoint(tmp_path) -> CheckpointOptions:
    return CheckpointOptions(tmp_path / "ckpt", "run")


async def test_checkpoint_cleared_after_success(sample_prompts_config, three_agents, checkpoint):
    await run_pipeline("Q?", _config(three_agents, checkpoint=checkpoint), sample_prompts_config, executor=_executor())
    assert not checkpoint.path.exists()


async def test_checkpoint_kept_when_chairman_fails(sample_prompts_config, three_agents, checkpoint):
    executor = _executor(chair=(AgentStatus.TIMEOUT, ""))
    result = await run_pipeline(
        "Q?", _config(three_agents, checkpoint=checkpoint), sample_prompts_config, executor=executor
    )

    assert result.stage3.response == "Error from chairman (timeout)"
    raw = json.loads(checkpoint.path.read_text(encoding="utf-8"))
    assert raw["completedStage"] == "stage2"
    assert raw["question"] == "Q?"
    assert len(raw["stage2"]) == 3


async def test_resume_from_stage1_checkpoint(sample_prompts_config, three_agents, checkpoint):
    save_checkpoint(
        CheckpointData(
            question="Q?",
            completed_stage="stage1",
            stage1=[Stage1Result("alpha", "saved A"), Stage1Result("beta", "saved B"), Stage1Result("gamma", "saved C")],
        ),
        checkpoint,
    )
    executor = _executor()
    recorder = Recorder()
    orchestrator = PipelineOrchestrator(
        "Q?", _config(three_agents, checkpoint=checkpoint), sample_prompts_config,
        recorder.callbacks(), executor=executor,
    )
    result = await orchestrator.run()

    assert orchestrator.resumed_from == "stage1"
    assert [r.response for r in result.stage1] == ["saved A", "saved B", "saved C"]
    # Stage 1 is not re-run: each agent only ranks
    assert [len(executor.prompts_for(n)) for n in ("alpha", "beta", "gamma")] == [1, 1, 1]
    assert "FINAL RANKING:" in executor.prompts_for("alpha")[0]
    assert recorder.events[0] == ("stage1", ["alpha", "beta", "gamma"])
    assert [e[0] for e in recorder.events] == ["stage1", "stage2", "stage3"]


async def test_resume_from_stage2_checkpoint(sample_prompts_config, three_agents, checkpoint):
    save_checkpoint(
        CheckpointData(
            question="Q?",
            completed_stage="stage2",
            stage1=[Stage1Result("alpha", "saved A"), Stage1Result("beta", "saved B")],
            stage2=[Stage2Result("alpha", "FINAL RANKING:\n1. Response B\n2. Response A", ["Response B", "Response A"])],
            label_to_agent={"Response A": "alpha", "Response B": "beta"},
        ),
        checkpoint,
    )
    executor = _executor()
    recorder = Recorder()
    orchestrator = PipelineOrchestrator(
        "Q?", _config(three_agents, checkpoint=checkpoint), sample_prompts_config,
        recorder.callbacks(), executor=executor,
    )
    result = await orchestrator.run()

    assert orchestrator.resumed_from == "stage2"
    assert [name for name, _ in executor.calls] == ["chair"]
    assert [(a.agent, a.average_rank) for a in result.aggregate] == [("beta", 1.0), ("alpha", 2.0)]
    assert [e[0] for e in recorder.events] == ["stage1", "stage2", "stage3"]
    assert not checkpoint.path.exists()


async def test_stage2_checkpoint_in_merge_mode_resumes_after_stage1(sample_prompts_config, three_agents, checkpoint):
    save_checkpoint(
        CheckpointData(
            question="Q?",
            completed_stage="stage2",
            stage1=[Stage1Result("alpha", "saved A")],
            stage2=[],
        ),
        checkpoint,
    )
    executor = _executor()
    orchestrator = PipelineOrchestrator(
        "Q?", _config(three_agents, mode=PipelineMode.MERGE, checkpoint=checkpoint),
        sample_prompts_config, executor=executor,
    )
    result = await orchestrator.run()

    assert orchestrator.resumed_from == "stage1"
    assert [name for name, _ in executor.calls] == ["chair"]
    assert result.stage2 == []


async def test_checkpoint_for_other_question_is_ignored(sample_prompts_config, three_agents, checkpoint):
    save_checkpoint(
        CheckpointData(question="Other?", completed_stage="stage1", stage1=[Stage1Result("alpha", "old")]),
        checkpoint,
    )
    executor = _executor()
    orchestrator = PipelineOrchestrator(
        "Q?", _config(three_agents, checkpoint=checkpoint), sample_prompts_config, executor=executor
    )
    await orchestrator.run()

    assert orchestrator.resumed_from is None
    assert len(executor.calls) == 7


async def test_run_is_single_use(sample_prompts_config, three_agents):
    orchestrator = PipelineOrchestrator("Q?", _config(three_agents), sample_prompts_config, executor=_executor())
    await orchestrator.run()
    with pytest.raises(RuntimeError):
        await orchestrator.run()


def test_merge_mode_has_no_stage2_transition(sample_prompts_config, three_agents):
    orchestrator = PipelineOrchestrator(
        "Q?", _config(three_agents, mode=PipelineMode.MERGE), sample_prompts_config, executor=_executor()
    )
    orchestrator.state = PipelineState.STAGE1_DONE
    with pytest.raises(IllegalTransitionError):
        orchestrator._transition(PipelineState.STAGE2_PENDING)


def test_cannot_skip_stages(sample_prompts_config, three_agents):
    orchestrator = PipelineOrchestrator("Q?", _config(three_agents), sample_prompts_config, executor=_executor())
    with pytest.raises(IllegalTransitionError):
        orchestrator._transition(PipelineState.STAGE3_PENDING)
