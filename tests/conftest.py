"""Shared pytest fixtures."""

import sys
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from config.config_loader import AppConfig, DefaultsConfig, PromptsConfig, load_config
from council.executor import AgentExecutor, CancelToken
from council.models import AgentConfig, AgentState, AgentStatus, Stage1Result, Stage2Result


def python_agent(name: str, script: str, prompt_via_stdin: bool = True) -> AgentConfig:
    """An agent whose CLI is a short Python script run by the current interpreter."""
    return AgentConfig(name=name, command=(sys.executable, "-c", script), prompt_via_stdin=prompt_via_stdin)


def fake_agent(name: str) -> AgentConfig:
    return AgentConfig(name=name, command=("fake-cli", "--model", name))


# A scripted reply: plain text (completes), (status, text), or prompt -> either.
Reply = str | tuple[AgentStatus, str] | Callable[[str], "str | tuple[AgentStatus, str]"]


class MockExecutor(AgentExecutor):
    """Test double AgentExecutor: no processes, replies scripted per agent name."""

    def __init__(self, replies: dict[str, Reply] | None = None, default: Reply = "Mock response") -> None:
        super().__init__(kill_grace_sec=0.1)
        self.replies = dict(replies or {})
        self.default = default
        self.calls: list[tuple[str, str]] = []   # (agent name, prompt)

    def prompts_for(self, name: str) -> list[str]:
        return [prompt for agent, prompt in self.calls if agent == name]

    async def execute(
        self,
        config: AgentConfig,
        prompt: str,
        timeout_sec: float | None = None,
        cancel: CancelToken | None = None,
        state: AgentState | None = None,
    ) -> AgentState:
        self.calls.append((config.name, prompt))
        state = state or AgentState(config=config)
        state.start()

        reply = self.replies.get(config.name, self.default)
        if callable(reply):
            reply = reply(prompt)
        status, text = reply if isinstance(reply, tuple) else (AgentStatus.COMPLETED, reply)

        state.stdout.append(text)
        if status is AgentStatus.COMPLETED:
            state.finish(status, exit_code=0)
        else:
            state.finish(status, exit_code=1, error_message=f"scripted {status.value}")
        return state


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        ranking="Question: {question}\n\n{responses}\n\n{format_instructions}",
        chairman="Question: {question}\n{summary_note}\nStage 1:\n{stage1}\n\nStage 2:\n{stage2}\n{output_format}",
        merge_chairman="MERGE Question: {question}\n\n{responses}\n{output_format}",
        pass1="PASS1 Question: {question}\n{summary_note}\n{stage1}\n\n{stage2}\n\n{format_instructions}",
        pass2="PASS2 Question: {question}\n\n{pass1_output}\n\nReferences:\n{references}\n\n{format_instructions}",
        merge_pass1="MERGE PASS1 Question: {question}\n\n{responses}\n\n{format_instructions}",
        merge_pass2="MERGE PASS2 Question: {question}\n\n{pass1_output}\n\n{references}\n{output_format}",
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        preset="balanced",
        chairman="claude:heavy",
        fallback="gemini:default",
        output_dir=tmp_path / "output",
    )


@pytest.fixture
def settings_dict() -> dict:
    return {
        "defaults": {
            "preset": "balanced",
            "chairman": "claude:heavy",
            "fallback": "gemini:default",
            "mode": "compete",
            "timeout_sec": 120,
            "two_pass": False,
            "use_summaries": False,
            "checkpoint_name": "council-checkpoint",
            "output_dir": "./output",
        },
        "providers": {
            "claude": {
                "command": ["claude", "-p"],
                "prompt_via_stdin": True,
                "model_flag": "--model",
                "tiers": {
                    "fast": {"model": "haiku"},
                    "default": {"model": "sonnet"},
                    "heavy": {"model": "opus"},
                },
            },
            "codex": {
                "command": ["codex", "exec"],
                "prompt_via_stdin": False,
                "model_flag": "-m",
                "tiers": {
                    "fast": {"model": "gpt-5-mini"},
                    "default": {"model": "gpt-5"},
                    "heavy": {"model": "gpt-5", "reasoning": {"flag": "-c", "value": "model_reasoning_effort=high"}},
                },
            },
            "gemini": {
                "command": ["gemini"],
                "prompt_via_stdin": True,
                "model_flag": "-m",
                "tiers": {
                    "fast": {"model": "gemini-flash"},
                    "default": {"model": "gemini-pro"},
                    "heavy": {"model": "gemini-pro"},
                },
            },
        },
        "presets": {
            "fast": {
                "description": "Quick answers",
                "stage1": {"tier": "fast", "count": 3},
                "stage2": {"tier": "fast", "count": 3},
                "stage3": {"tier": "default"},
            },
            "balanced": {
                "description": "Default council",
                "stage1": {"tier": "default", "count": 3},
                "stage2": {"tier": "fast", "count": 3},
                "stage3": {"tier": "heavy"},
            },
        },
        "prompts": {
            "ranking": "{question}\n{responses}\n{format_instructions}",
            "chairman": "{question}\n{summary_note}\n{stage1}\n{stage2}\n{output_format}",
            "merge_chairman": "{question}\n{responses}\n{output_format}",
            "pass1": "{question}\n{summary_note}\n{stage1}\n{stage2}\n{format_instructions}",
            "pass2": "{question}\n{pass1_output}\n{references}\n{format_instructions}",
            "merge_pass1": "{question}\n{responses}\n{format_instructions}",
            "merge_pass2": "{question}\n{pass1_output}\n{references}\n{output_format}",
        },
    }


@pytest.fixture
def settings_file(tmp_path: Path, settings_dict: dict) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(settings_dict), encoding="utf-8")
    return path


@pytest.fixture
def sample_app_config(settings_file: Path) -> AppConfig:
    return load_config(settings_file)


@pytest.fixture
def three_agents() -> list[AgentConfig]:
    return [fake_agent("alpha"), fake_agent("beta"), fake_agent("gamma")]


@pytest.fixture
def sample_stage1() -> list[Stage1Result]:
    return [
        Stage1Result(agent="alpha", response="Use YAML for config.", summary="YAML wins."),
        Stage1Result(agent="beta", response="Use JSON for config."),
        Stage1Result(agent="gamma", response="Use TOML for config.", summary="TOML wins."),
    ]


@pytest.fixture
def sample_stage2() -> list[Stage2Result]:
    return [
        Stage2Result("alpha", "FINAL RANKING:\n1. Response B\n2. Response A\n3. Response C",
                     ["Response B", "Response A", "Response C"]),
        Stage2Result("beta", "FINAL RANKING:\n1. Response B\n2. Response C\n3. Response A",
                     ["Response B", "Response C", "Response A"]),
        Stage2Result("gamma", "FINAL RANKING:\n1. Response A\n2. Response B\n3. Response C",
                     ["Response A", "Response B", "Response C"]),
    ]


@pytest.fixture
def mock_executor() -> MockExecutor:
    return MockExecutor()
