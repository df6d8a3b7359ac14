"""Agent factory: provider + tier -> AgentConfig, backed by an explicit AppConfig."""

import logging
import re

from config.config_loader import TIERS, AppConfig, PresetConfig
from council.models import AgentConfig

logger = logging.getLogger(__name__)

_COUNT_TIER_RE = re.compile(rf"^(\d+):({'|'.join(TIERS)})$")


class AgentConfigError(ValueError):
    """Raised when an agent cannot be built from the configuration."""


class UnknownProviderError(AgentConfigError):
    def __init__(self, provider: str, known: list[str]) -> None:
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}. Available: {', '.join(known)}")


class UnknownTierError(AgentConfigError):
    def __init__(self, tier: str, provider: str | None = None) -> None:
        self.tier = tier
        where = f" for provider '{provider}'" if provider else ""
        super().__init__(f"Unknown tier '{tier}'{where}. Must be one of: {', '.join(TIERS)}")


def lower_tier(tier: str) -> str:
    """One capability step down, floored at the lowest tier."""
    if tier not in TIERS:
        raise UnknownTierError(tier)
    return TIERS[max(0, TIERS.index(tier) - 1)]


def parse_agent_spec(spec: str, default_tier: str = "default") -> tuple[str, str]:
    """'claude:heavy' -> ('claude', 'heavy'); 'gemini' -> ('gemini', default_tier)."""
    provider, _, tier = spec.strip().partition(":")
    tier = tier or default_tier
    if tier not in TIERS:
        raise UnknownTierError(tier, provider)
    return provider, tier


def _dedupe_names(agents: list[AgentConfig]) -> list[AgentConfig]:
    """Suffix repeated names (#2, #3, ...) so names stay unique within a stage."""
    seen: dict[str, int] = {}
    unique = []
    for agent in agents:
        seen[agent.name] = seen.get(agent.name, 0) + 1
        if seen[agent.name] > 1:
            agent = AgentConfig(f"{agent.name}#{seen[agent.name]}", agent.command, agent.prompt_via_stdin)
        unique.append(agent)
    return unique


class AgentFactory:
    """Builds AgentConfigs for the providers and tiers in an AppConfig."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def list_providers(self) -> list[str]:
        return list(self._config.providers)

    @staticmethod
    def list_tiers() -> list[str]:
        return list(TIERS)

    @staticmethod
    def lower_tier(tier: str) -> str:
        return lower_tier(tier)

    def create(self, provider: str, tier: str = "default") -> AgentConfig:
        provider_cfg = self._config.providers.get(provider)
        if provider_cfg is None:
            raise UnknownProviderError(provider, self.list_providers())
        tier_cfg = provider_cfg.tiers.get(tier)
        if tier_cfg is None:
            raise UnknownTierError(tier, provider)

        command = [*provider_cfg.command, provider_cfg.model_flag, tier_cfg.model]
        if tier_cfg.reasoning_flag:
            if isinstance(tier_cfg.reasoning_value, bool):
                if tier_cfg.reasoning_value:
                    command.append(tier_cfg.reasoning_flag)
            elif tier_cfg.reasoning_value is not None:
                command.extend([tier_cfg.reasoning_flag, str(tier_cfg.reasoning_value)])

        return AgentConfig(
            name=f"{provider}:{tier}",
            command=tuple(command),
            prompt_via_stdin=provider_cfg.prompt_via_stdin,
        )

    def from_spec(self, spec: str, default_tier: str = "default") -> AgentConfig:
        provider, tier = parse_agent_spec(spec, default_tier)
        return self.create(provider, tier)

    def distribute(self, count: int, tier: str, providers: list[str]) -> list[AgentConfig]:
        """``count`` agents at ``tier``, round-robin over ``providers``."""
        if not providers:
            raise AgentConfigError("No providers available")
        agents = [self.create(providers[i % len(providers)], tier) for i in range(count)]
        return _dedupe_names(agents)

    def parse_stage_spec(self, spec: str, providers: list[str]) -> list[AgentConfig]:
        """Stage spec: '6:fast' (count:tier), 'fast' (tier, one per provider),
        or 'claude:fast,gemini' (explicit agents)."""
        trimmed = spec.strip()
        match = _COUNT_TIER_RE.match(trimmed)
        if match:
            return self.distribute(int(match.group(1)), match.group(2), providers)
        if trimmed in TIERS:
            return [self.create(p, trimmed) for p in providers]
        return _dedupe_names([self.from_spec(part) for part in trimmed.split(",") if part.strip()])

    def build_stage_agents(
        self,
        preset: PresetConfig,
        providers: list[str],
    ) -> tuple[list[AgentConfig], list[AgentConfig]]:
        """Stage-1 and Stage-2 agents for a preset."""
        return (
            self.distribute(preset.stage1.count, preset.stage1.tier, providers),
            self.distribute(preset.stage2.count, preset.stage2.tier, providers),
        )

    def chairman(self, spec: str, providers: list[str], default_tier: str = "heavy") -> AgentConfig:
        """Chairman from a spec, falling back to the first available provider
        when the requested one is not installed."""
        provider, tier = parse_agent_spec(spec, default_tier)
        if providers and provider not in providers:
            logger.warning("Chairman provider %s unavailable, using %s", provider, providers[0])
            provider = providers[0]
        return self.create(provider, tier)

    def preset(self, name: str) -> PresetConfig:
        preset = self._config.presets.get(name)
        if preset is None:
            raise AgentConfigError(f"Unknown preset: {name}. Available: {', '.join(self._config.presets)}")
        return preset


def pick_chairman(agents: list[AgentConfig], name: str | None = None, default: str | None = None) -> AgentConfig:
    """Agent called ``name``, else ``default``, else the first agent."""
    if not agents:
        raise AgentConfigError("No agents to pick a chairman from")
    for wanted in (name, default):
        if wanted:
            for agent in agents:
                if agent.name == wanted:
                    return agent
    return agents[0]
