"""Dataclasses for the agent council pipeline. No I/O, no deps."""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class AgentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self not in (AgentStatus.PENDING, AgentStatus.RUNNING)


class PipelineMode(str, Enum):
    COMPETE = "compete"   # rank, then refine
    MERGE = "merge"       # synthesize everything, no ranking


@dataclass(frozen=True)
class AgentConfig:
    name: str
    command: tuple[str, ...]
    prompt_via_stdin: bool = True

    def __post_init__(self) -> None:
        # Accept lists from YAML/JSON callers but keep the config hashable.
        object.__setattr__(self, "command", tuple(self.command))


@dataclass
class AgentState:
    """Mutable run state of one agent for one stage invocation.

    Only the owning executor mutates it. Terminal states are final: ``finish``
    is a no-op once the agent has left ``running``.
    """

    config: AgentConfig
    status: AgentStatus = AgentStatus.PENDING
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    start_time: float | None = None
    end_time: float | None = None
    exit_code: int | None = None
    error_message: str | None = None

    def start(self) -> None:
        if self.status is AgentStatus.PENDING:
            self.status = AgentStatus.RUNNING
            self.start_time = time.monotonic()

    def finish(
        self,
        status: AgentStatus,
        *,
        exit_code: int | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Commit a terminal status. Returns False if another one already won."""
        if not status.is_terminal:
            raise ValueError(f"{status.value!r} is not a terminal status")
        if self.status.is_terminal:
            return False
        self.status = status
        self.end_time = time.monotonic()
        if exit_code is not None:
            self.exit_code = exit_code
        if error_message is not None:
            self.error_message = error_message
        return True

    @property
    def output(self) -> str:
        return "".join(self.stdout)

    @property
    def duration_sec(self) -> float | None:
        if self.start_time is None:
            return None
        end = self.end_time if self.end_time is not None else time.monotonic()
        return max(0.0, end - self.start_time)


@dataclass
class Stage1Result:
    agent: str
    response: str
    summary: str | None = None


@dataclass
class Stage2Result:
    agent: str
    ranking_raw: str
    parsed_ranking: list[str] = field(default_factory=list)


@dataclass
class AggregateRanking:
    agent: str
    average_rank: float     # 2 decimal places, lower is better
    rankings_count: int


@dataclass
class Stage3Result:
    agent: str              # may be "pass1_agent+pass2_agent"
    response: str


@dataclass
class ParsedSection:
    name: str
    content: str
    complete: bool          # False: opener found, closer missing (truncated)


@dataclass
class TwoPassResult:
    pass1: Stage3Result
    pass2: Stage3Result | None
    pass1_sections: list[ParsedSection]
    pass2_sections: list[ParsedSection]
    combined: Stage3Result
    used_outline_fallback: bool = False


# JSON key names of the on-disk checkpoint shape.
_STAGE1_KEYS = {"agent": "agent", "response": "response", "summary": "summary"}
_STAGE2_KEYS = {"agent": "agent", "ranking_raw": "rankingRaw", "parsed_ranking": "parsedRanking"}
_AGGREGATE_KEYS = {"agent": "agent", "average_rank": "averageRank", "rankings_count": "rankingsCount"}


def _rename(obj: Any, keys: dict[str, str]) -> dict[str, Any]:
    raw = asdict(obj)
    return {keys[k]: v for k, v in raw.items() if not (k == "summary" and v is None)}


def _unrename(raw: dict[str, Any], keys: dict[str, str]) -> dict[str, Any]:
    return {attr: raw[key] for attr, key in keys.items() if key in raw}


@dataclass
class CheckpointData:
    question: str
    completed_stage: str                      # "stage1" | "stage2" | "complete"
    version: int = 1
    timestamp: str = ""
    stage1: list[Stage1Result] | None = None
    stage2: list[Stage2Result] | None = None
    label_to_agent: dict[str, str] | None = None
    aggregate: list[AggregateRanking] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "timestamp": self.timestamp,
            "question": self.question,
            "completedStage": self.completed_stage,
        }
        if self.stage1 is not None:
            data["stage1"] = [_rename(r, _STAGE1_KEYS) for r in self.stage1]
        if self.stage2 is not None:
            data["stage2"] = [_rename(r, _STAGE2_KEYS) for r in self.stage2]
        if self.label_to_agent is not None:
            data["labelToAgent"] = dict(self.label_to_agent)
        if self.aggregate is not None:
            data["aggregate"] = [_rename(r, _AGGREGATE_KEYS) for r in self.aggregate]
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CheckpointData":
        """Build from the JSON shape. Raises KeyError/TypeError on a bad shape."""
        stage1 = raw.get("stage1")
        stage2 = raw.get("stage2")
        aggregate = raw.get("aggregate")
        return cls(
            version=raw["version"],
            timestamp=raw.get("timestamp", ""),
            question=raw["question"],
            completed_stage=raw["completedStage"],
            stage1=[Stage1Result(**_unrename(r, _STAGE1_KEYS)) for r in stage1] if stage1 is not None else None,
            stage2=[Stage2Result(**_unrename(r, _STAGE2_KEYS)) for r in stage2] if stage2 is not None else None,
            label_to_agent=dict(raw["labelToAgent"]) if raw.get("labelToAgent") is not None else None,
            aggregate=(
                [AggregateRanking(**_unrename(r, _AGGREGATE_KEYS)) for r in aggregate]
                if aggregate is not None else None
            ),
        )


@dataclass
class PipelineResult:
    stage1: list[Stage1Result]
    stage2: list[Stage2Result]
    stage3: Stage3Result
    aggregate: list[AggregateRanking]
    label_to_agent: dict[str, str] = field(default_factory=dict)
    mode: PipelineMode = PipelineMode.COMPETE
    two_pass: TwoPassResult | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data
