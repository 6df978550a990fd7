"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agent_dispatch" / "dispatch.db")
    project_path: Path = field(default_factory=lambda: Path.cwd())
    agents_config: Path | None = None
    output_dir: Path | None = None
    poll_interval: float = 0.1
    shutdown_grace: float = 30.0
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("DISPATCH_DB_PATH"):
            config.db_path = Path(db)

        if project := os.environ.get("DISPATCH_PROJECT_PATH"):
            config.project_path = Path(project)

        if agents := os.environ.get("DISPATCH_AGENTS_CONFIG"):
            config.agents_config = Path(agents)

        if out_dir := os.environ.get("DISPATCH_OUTPUT_DIR"):
            config.output_dir = Path(out_dir)

        if interval := os.environ.get("DISPATCH_POLL_INTERVAL"):
            config.poll_interval = float(interval)

        if grace := os.environ.get("DISPATCH_SHUTDOWN_GRACE"):
            config.shutdown_grace = float(grace)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("DISPATCH_SLACK_CHANNEL")

        return config

    @property
    def agents_config_path(self) -> Path:
        return self.agents_config or self.project_path / ".dispatch" / "agents.yaml"

    @property
    def output_path(self) -> Path:
        return self.output_dir or self.project_path / ".dispatch" / "runs"


def get_config() -> Config:
    return Config.from_env()
