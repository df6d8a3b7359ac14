"""Load settings.yaml into typed dataclasses. No module-level cache: callers hold the AppConfig."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"
_USER_SETTINGS_PATH = Path.home() / ".agent-council" / "settings.yaml"
_SETTINGS_ENV = "AGENT_COUNCIL_SETTINGS"

TIERS = ("fast", "default", "heavy")   # lowest to highest


@dataclass
class TierConfig:
    model: str
    reasoning_flag: str | None = None
    reasoning_value: str | bool | None = None


@dataclass
class ProviderConfig:
    name: str
    command: list[str]
    prompt_via_stdin: bool
    model_flag: str
    tiers: dict[str, TierConfig] = field(default_factory=dict)


@dataclass
class StageConfig:
    tier: str
    count: int
    reasoning: bool = False


@dataclass
class PresetConfig:
    name: str
    description: str
    stage1: StageConfig
    stage2: StageConfig
    stage3: StageConfig


@dataclass
class PromptsConfig:
    ranking: str
    chairman: str
    merge_chairman: str
    pass1: str
    pass2: str
    merge_pass1: str
    merge_pass2: str


@dataclass
class DefaultsConfig:
    preset: str
    chairman: str                      # "provider" or "provider:tier"
    fallback: str | None = None
    mode: str = "compete"
    timeout_sec: float | None = None
    two_pass: bool = False
    use_summaries: bool = False
    checkpoint_dir: Path | None = None
    checkpoint_name: str = "council-checkpoint"
    output_dir: Path = Path("./output")


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    providers: dict[str, ProviderConfig]
    presets: dict[str, PresetConfig]
    prompts: PromptsConfig
    source_path: Path | None = None

    def reload(self) -> "AppConfig":
        """Re-read the file this config came from and return a new AppConfig."""
        return load_config(self.source_path)


def _parse_tier(raw: dict) -> TierConfig:
    reasoning = raw.get("reasoning") or {}
    return TierConfig(
        model=str(raw["model"]),
        reasoning_flag=reasoning.get("flag"),
        reasoning_value=reasoning.get("value"),
    )


def _parse_stage(raw: dict) -> StageConfig:
    return StageConfig(
        tier=str(raw["tier"]),
        count=int(raw.get("count", 1)),
        reasoning=bool(raw.get("reasoning", False)),
    )


def _optional_path(value: str | None) -> Path | None:
    return Path(value).expanduser() if value else None


def resolve_settings_path(settings_path: Path | None = None) -> Path:
    """Explicit path > $AGENT_COUNCIL_SETTINGS > ~/.agent-council/settings.yaml > packaged file."""
    if settings_path is not None:
        return settings_path
    env_path = os.environ.get(_SETTINGS_ENV, "").strip()
    if env_path:
        return Path(env_path).expanduser()
    if _USER_SETTINGS_PATH.exists():
        return _USER_SETTINGS_PATH
    return _SETTINGS_PATH


def load_config(settings_path: Path | None = None) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if the settings file is missing, KeyError if a
    required key is absent.
    """
    path = resolve_settings_path(settings_path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    timeout = defaults_raw.get("timeout_sec")
    defaults = DefaultsConfig(
        preset=str(defaults_raw["preset"]),
        chairman=str(defaults_raw["chairman"]),
        fallback=defaults_raw.get("fallback"),
        mode=str(defaults_raw.get("mode", "compete")),
        timeout_sec=float(timeout) if timeout else None,
        two_pass=bool(defaults_raw.get("two_pass", False)),
        use_summaries=bool(defaults_raw.get("use_summaries", False)),
        checkpoint_dir=_optional_path(defaults_raw.get("checkpoint_dir")),
        checkpoint_name=str(defaults_raw.get("checkpoint_name", "council-checkpoint")),
        output_dir=Path(defaults_raw.get("output_dir", "./output")),
    )

    providers: dict[str, ProviderConfig] = {}
    for name, provider_raw in raw["providers"].items():
        providers[name] = ProviderConfig(
            name=name,
            command=[str(part) for part in provider_raw["command"]],
            prompt_via_stdin=bool(provider_raw.get("prompt_via_stdin", True)),
            model_flag=str(provider_raw["model_flag"]),
            tiers={tier: _parse_tier(t) for tier, t in provider_raw["tiers"].items()},
        )
        unknown = set(providers[name].tiers) - set(TIERS)
        if unknown:
            logger.warning("Provider %s declares unknown tiers: %s", name, ", ".join(sorted(unknown)))

    presets: dict[str, PresetConfig] = {}
    for name, preset_raw in raw.get("presets", {}).items():
        presets[name] = PresetConfig(
            name=name,
            description=str(preset_raw.get("description", "")),
            stage1=_parse_stage(preset_raw["stage1"]),
            stage2=_parse_stage(preset_raw["stage2"]),
            stage3=_parse_stage(preset_raw["stage3"]),
        )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        ranking=prompts_raw["ranking"],
        chairman=prompts_raw["chairman"],
        merge_chairman=prompts_raw["merge_chairman"],
        pass1=prompts_raw["pass1"],
        pass2=prompts_raw["pass2"],
        merge_pass1=prompts_raw["merge_pass1"],
        merge_pass2=prompts_raw["merge_pass2"],
    )

    logger.debug("Loaded settings from %s (%d providers, %d presets)", path, len(providers), len(presets))

    return AppConfig(
        defaults=defaults,
        providers=providers,
        presets=presets,
        prompts=prompts,
        source_path=path,
    )
