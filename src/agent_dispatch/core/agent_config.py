"""Agent definitions and complexity routing, loaded from a YAML file."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from agent_dispatch.db.models import COMPLEXITIES
from agent_dispatch.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 2
DEFAULT_MAX_ATTEMPTS = 3

DEFAULT_CONFIG_YAML = """\
# Agent dispatch configuration

# Map task complexity levels to agents
complexity:
  trivial: claude-sonnet
  simple: claude-sonnet
  moderate: claude-opus
  complex: claude-opus

agents:
  claude-sonnet:
    command: claude
    prompt_args: ["-p"]
    model: sonnet
    args: ["--output-format", "json"]
    max_concurrent: 2
    max_attempts: 3

  claude-opus:
    command: claude
    prompt_args: ["-p"]
    model: opus
    args: ["--output-format", "json"]
    max_concurrent: 3
    max_attempts: 5
"""


@dataclass(frozen=True)
class AgentDefinition:
    name: str
    command: str
    prompt_args: tuple[str, ...] = ("-p",)
    model: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


class AgentConfig:
    """Immutable view over agent definitions and complexity routing."""

    def __init__(
        self,
        agents: dict[str, AgentDefinition],
        complexity_map: dict[str, str],
    ):
        self._agents = dict(agents)
        self._complexity_map = dict(complexity_map)
        for complexity, agent_name in self._complexity_map.items():
            if agent_name not in self._agents:
                raise ConfigurationError(
                    f"Complexity '{complexity}' routes to unknown agent '{agent_name}'"
                )

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("Agent config must be a mapping")

        raw_agents = data.get("agents") or {}
        if not isinstance(raw_agents, dict) or not raw_agents:
            raise ConfigurationError("Agent config must define at least one agent under 'agents'")

        agents = {}
        for name, raw in raw_agents.items():
            agents[name] = _parse_agent(name, raw or {})

        complexity_map = data.get("complexity") or {}
        if not isinstance(complexity_map, dict):
            raise ConfigurationError("'complexity' must map complexity levels to agent names")
        for complexity in complexity_map:
            if complexity not in COMPLEXITIES:
                raise ConfigurationError(f"Unknown complexity level: {complexity}")

        return cls(agents, complexity_map)

    def get_agent_names(self) -> list[str]:
        return list(self._agents)

    def has_agent(self, agent_name: str) -> bool:
        return agent_name in self._agents

    def get_agent_definition(self, agent_name: str) -> AgentDefinition:
        try:
            return self._agents[agent_name]
        except KeyError:
            raise ConfigurationError(f"Unknown agent: {agent_name}") from None

    def get_agent_for_complexity(self, complexity: str) -> str:
        """Resolve the agent that handles tasks of ``complexity``."""
        if complexity not in COMPLEXITIES:
            raise ConfigurationError(f"Invalid complexity: {complexity}")
        agent_name = self._complexity_map.get(complexity)
        if agent_name is None:
            raise ConfigurationError(f"No agent configured for complexity '{complexity}'")
        return agent_name

    def get_agent_limit(self, agent_name: str) -> int:
        agent = self._agents.get(agent_name)
        return agent.max_concurrent if agent else DEFAULT_MAX_CONCURRENT

    def get_agent_max_attempts(self, agent_name: str) -> int:
        agent = self._agents.get(agent_name)
        return agent.max_attempts if agent else DEFAULT_MAX_ATTEMPTS

    def get_agent_limits(self) -> dict[str, int]:
        return {name: agent.max_concurrent for name, agent in self._agents.items()}

    def build_command(self, agent_name: str, prompt: str) -> list[str]:
        """Assemble argv: command, prompt args, prompt, ``--model``, extra args."""
        agent = self.get_agent_definition(agent_name)
        cmd = [agent.command, *agent.prompt_args, prompt]
        if agent.model:
            cmd += ["--model", agent.model]
        cmd += list(agent.args)
        return cmd


def _parse_agent(name: str, raw: dict) -> AgentDefinition:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Agent '{name}' must be a mapping")
    command = raw.get("command")
    if not command or not isinstance(command, str):
        raise ConfigurationError(f"Agent '{name}' is missing 'command'")

    max_concurrent = raw.get("max_concurrent", DEFAULT_MAX_CONCURRENT)
    max_attempts = raw.get("max_attempts", DEFAULT_MAX_ATTEMPTS)
    for key, value in (("max_concurrent", max_concurrent), ("max_attempts", max_attempts)):
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ConfigurationError(f"Agent '{name}': {key} must be a positive integer")

    env = raw.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigurationError(f"Agent '{name}': env must be a mapping")

    return AgentDefinition(
        name=name,
        command=command,
        prompt_args=tuple(str(a) for a in raw.get("prompt_args", ["-p"])),
        model=raw.get("model"),
        args=tuple(str(a) for a in raw.get("args", [])),
        env={str(k): str(v) for k, v in env.items()},
        max_concurrent=max_concurrent,
        max_attempts=max_attempts,
    )


def load_agent_config(path: Path) -> AgentConfig:
    """Load and validate the agent config file."""
    if not path.exists():
        raise ConfigurationError(
            f"Agent config not found: {path}. Run 'dispatch init' to create one."
        )
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    config = AgentConfig.from_dict(data or {})
    logger.debug("Loaded %d agent(s) from %s", len(config.get_agent_names()), path)
    return config


def write_default_config(path: Path) -> bool:
    """Write the default config. Returns False if the file already exists."""
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML)
    return True
