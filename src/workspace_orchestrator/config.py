"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ALLOWED_COMMANDS = (
    "npm", "npx", "pnpm", "yarn", "node", "tsc",
    "pip", "python", "python3", "pytest", "uv", "poetry",
    "make", "cargo", "go",
    "git", "ls", "cat", "mkdir", "touch", "cp", "mv",
)


def _state_dir() -> Path:
    return Path.home() / ".workspace_orchestrator"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: _state_dir() / "wso.db")
    repos_root: Path = field(default_factory=lambda: _state_dir() / "repos")
    main_branch: str = "main"
    remote: str = "origin"
    git_timeout: float = 60.0
    command_timeout: float = 300.0
    test_command: str = "npm test"
    test_timeout: float = 120.0
    preview_command: str = "npm run dev"
    preview_timeout: float = 30.0
    sync_interval: float = 300.0
    background_services: bool = True
    ai_command: str = "claude"
    ai_model: str = "sonnet"
    ai_timeout: float = 600.0
    allowed_commands: tuple[str, ...] = DEFAULT_ALLOWED_COMMANDS
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("WSO_DB_PATH"):
            config.db_path = Path(db)

        if root := os.environ.get("WSO_REPOS_ROOT"):
            config.repos_root = Path(root)

        if branch := os.environ.get("WSO_MAIN_BRANCH"):
            config.main_branch = branch

        if remote := os.environ.get("WSO_REMOTE"):
            config.remote = remote

        if timeout := os.environ.get("WSO_GIT_TIMEOUT"):
            config.git_timeout = float(timeout)

        if timeout := os.environ.get("WSO_COMMAND_TIMEOUT"):
            config.command_timeout = float(timeout)

        if cmd := os.environ.get("WSO_TEST_COMMAND"):
            config.test_command = cmd

        if timeout := os.environ.get("WSO_TEST_TIMEOUT"):
            config.test_timeout = float(timeout)

        if cmd := os.environ.get("WSO_PREVIEW_COMMAND"):
            config.preview_command = cmd

        if timeout := os.environ.get("WSO_PREVIEW_TIMEOUT"):
            config.preview_timeout = float(timeout)

        if interval := os.environ.get("WSO_SYNC_INTERVAL"):
            config.sync_interval = float(interval)

        if os.environ.get("WSO_DISABLE_BACKGROUND_SERVICES"):
            config.background_services = False

        if cmd := os.environ.get("WSO_AI_COMMAND"):
            config.ai_command = cmd

        if model := os.environ.get("WSO_AI_MODEL"):
            config.ai_model = model

        if timeout := os.environ.get("WSO_AI_TIMEOUT"):
            config.ai_timeout = float(timeout)

        if allowed := os.environ.get("WSO_ALLOWED_COMMANDS"):
            config.allowed_commands = tuple(c.strip() for c in allowed.split(",") if c.strip())

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("WSO_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
