"""Agent availability checks: is each agent's executable installed?"""

import logging
import shutil
from dataclasses import dataclass, field

from config.config_loader import AppConfig
from council.models import AgentConfig

logger = logging.getLogger(__name__)


@dataclass
class FilterResult:
    available: list[AgentConfig] = field(default_factory=list)
    unavailable: list[tuple[str, str]] = field(default_factory=list)   # (agent name, command)


def command_exists(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def filter_available_agents(agents: list[AgentConfig]) -> FilterResult:
    """Split agents by whether their executable is on PATH."""
    result = FilterResult()
    for agent in agents:
        cmd = agent.command[0] if agent.command else ""
        if cmd and command_exists(cmd):
            result.available.append(agent)
        else:
            result.unavailable.append((agent.name, cmd))
            logger.info("Agent %s unavailable: command '%s' not found", agent.name, cmd)
    return result


def available_providers(config: AppConfig) -> list[str]:
    """Configured providers whose CLI is installed, in config order."""
    found = []
    for name, provider in config.providers.items():
        if provider.command and command_exists(provider.command[0]):
            found.append(name)
        else:
            logger.info("Provider skipped (CLI not installed): %s", name)
    return found
