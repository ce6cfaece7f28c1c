"""Configuration loading from environment variables and an optional dotenv file."""

import logging
import os
import shlex
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

ENV_PREFIX = "IORCH_"


class ConfigError(Exception):
    """Raised when the configuration cannot be used to start the orchestrator."""


def _csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass
class ProviderConfig:
    """Settings for one worker class (e.g. ``claude``)."""

    name: str
    max_concurrent: int = 1
    cli_path: str | None = None
    cli_args: list[str] = field(default_factory=list)
    model: str | None = None


@dataclass
class StatusMap:
    """Maps remote status labels onto the categories the orchestrator acts on.

    Nothing in the core compares against literal board column names; every
    remote label flows through here.
    """

    evaluate: list[str] = field(default_factory=lambda: ["Evaluate"])
    ready: list[str] = field(default_factory=lambda: ["Ready", "Todo", "Evaluated"])
    evaluated: str = "Evaluated"
    in_progress: str = "In Progress"
    dev_complete: str = "Dev Complete"
    needs_info: str = "Needs More Info"
    blocked: str | None = "Blocked"
    failed: str | None = None
    release: str | None = None

    @property
    def pre_claim(self) -> list[str]:
        """Statuses in which an item must never carry a claim."""
        values = list(self.evaluate) + list(self.ready)
        if self.needs_info:
            values.append(self.needs_info)
        return list(dict.fromkeys(values))

    @property
    def release_value(self) -> str | None:
        """Status written when an item is handed back to the pool."""
        if self.release:
            return self.release
        return self.ready[0] if self.ready else None

    def is_active(self, status: str | None) -> bool:
        return status == self.in_progress

    def is_ready(self, status: str | None) -> bool:
        return status in self.ready


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".issue_orchestrator" / "ledger.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    env_file: Path | None = None
    data_dir: str = ".autonomous"
    worktree_dir: str = ".worktrees"
    base_branch: str = "main"
    branch_prefix: str = "feature/issue-"
    providers: dict[str, ProviderConfig] = field(
        default_factory=lambda: {"claude": ProviderConfig("claude")}
    )
    statuses: StatusMap = field(default_factory=StatusMap)
    exclusive_label: str = "BLOCK_ALL"
    coordinator_label: str = "coordinator"
    tick_interval: float = 60.0
    resurrect_every: int = 3
    reconcile_every: int = 5
    assign_every: int = 10
    github_repo: str | None = None
    project_id: str | None = None
    status_field: str = "Status"
    claim_field: str = "Assigned Instance"
    review_enabled: bool = True
    evaluate_enabled: bool = False
    review_cli_path: str = "claude"
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "INFO"

    @property
    def data_path(self) -> Path:
        path = Path(self.data_dir)
        return path if path.is_absolute() else self.repo_path / path

    @property
    def output_dir(self) -> Path:
        return self.data_path / "logs"

    def max_concurrent(self, provider: str) -> int:
        cfg = self.providers.get(provider)
        return cfg.max_concurrent if cfg else 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        """Build a config from ``IORCH_*`` variables.

        Values in the dotenv file (``IORCH_ENV_FILE``, default
        ``<repo>/.iorch.env``) are used only where the process environment
        does not set the same key.
        """
        env = dict(os.environ if environ is None else environ)
        config = cls()

        if repo := env.get("IORCH_REPO_PATH"):
            config.repo_path = Path(repo)

        env_file = Path(env.get("IORCH_ENV_FILE") or config.repo_path / ".iorch.env")
        config.env_file = env_file
        if env_file.is_file():
            file_values = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
            env = {**file_values, **env}

        if db := env.get("IORCH_DB_PATH"):
            config.db_path = Path(db)

        if data_dir := env.get("IORCH_DATA_DIR"):
            config.data_dir = data_dir

        if wt_dir := env.get("IORCH_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if base := env.get("IORCH_BASE_BRANCH"):
            config.base_branch = base

        if prefix := env.get("IORCH_BRANCH_PREFIX"):
            config.branch_prefix = prefix

        if providers := env.get("IORCH_PROVIDERS"):
            config.providers = {
                name: _provider_from_env(name, env) for name in _csv(providers)
            }
        else:
            config.providers = {
                name: _provider_from_env(name, env) for name in config.providers
            }

        config.statuses = _statuses_from_env(env)

        if label := env.get("IORCH_EXCLUSIVE_LABEL"):
            config.exclusive_label = label

        if label := env.get("IORCH_COORDINATOR_LABEL"):
            config.coordinator_label = label

        try:
            if interval := env.get("IORCH_TICK_INTERVAL"):
                config.tick_interval = float(interval)
            if every := env.get("IORCH_RESURRECT_EVERY"):
                config.resurrect_every = int(every)
            if every := env.get("IORCH_RECONCILE_EVERY"):
                config.reconcile_every = int(every)
            if every := env.get("IORCH_ASSIGN_EVERY"):
                config.assign_every = int(every)
        except ValueError as e:
            raise ConfigError(f"Invalid tick setting: {e}") from e

        config.github_repo = env.get("IORCH_GITHUB_REPO") or None
        config.project_id = env.get("IORCH_PROJECT_ID") or None

        if name := env.get("IORCH_STATUS_FIELD"):
            config.status_field = name

        if name := env.get("IORCH_CLAIM_FIELD"):
            config.claim_field = name

        if flag := env.get("IORCH_REVIEW_ENABLED"):
            config.review_enabled = _flag(flag)

        if flag := env.get("IORCH_EVALUATE_ENABLED"):
            config.evaluate_enabled = _flag(flag)

        if cli := env.get("IORCH_REVIEW_CLI_PATH"):
            config.review_cli_path = cli

        config.slack_bot_token = env.get("SLACK_BOT_TOKEN") or None
        config.slack_channel = env.get("IORCH_SLACK_CHANNEL") or None

        if level := env.get("IORCH_LOG_LEVEL"):
            config.log_level = level

        config.validate()
        return config

    def validate(self):
        if not self.providers:
            raise ConfigError("At least one worker provider must be configured")
        for provider in self.providers.values():
            if provider.max_concurrent < 0:
                raise ConfigError(
                    f"max_concurrent for '{provider.name}' must be >= 0"
                )
        for name in ("resurrect_every", "reconcile_every", "assign_every"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1")
        if self.tick_interval <= 0:
            raise ConfigError("tick_interval must be positive")
        if not self.statuses.ready:
            raise ConfigError("At least one ready status must be configured")


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _provider_from_env(name: str, env: Mapping[str, str]) -> ProviderConfig:
    key = f"{ENV_PREFIX}{name.upper()}_"
    provider = ProviderConfig(name)
    if limit := env.get(key + "MAX_CONCURRENT"):
        try:
            provider.max_concurrent = int(limit)
        except ValueError as e:
            raise ConfigError(f"Invalid {key}MAX_CONCURRENT: {limit!r}") from e
    provider.cli_path = env.get(key + "CLI_PATH") or None
    if args := env.get(key + "CLI_ARGS"):
        provider.cli_args = shlex.split(args)
    provider.model = env.get(key + "MODEL") or None
    return provider


def _statuses_from_env(env: Mapping[str, str]) -> StatusMap:
    statuses = StatusMap()
    if values := env.get("IORCH_STATUS_EVALUATE"):
        statuses.evaluate = _csv(values)
    if values := env.get("IORCH_STATUS_READY"):
        statuses.ready = _csv(values)
    if value := env.get("IORCH_STATUS_EVALUATED"):
        statuses.evaluated = value
    if value := env.get("IORCH_STATUS_IN_PROGRESS"):
        statuses.in_progress = value
    if value := env.get("IORCH_STATUS_DEV_COMPLETE"):
        statuses.dev_complete = value
    if value := env.get("IORCH_STATUS_NEEDS_INFO"):
        statuses.needs_info = value
    # Empty string means "leave the remote status alone".
    if "IORCH_STATUS_BLOCKED" in env:
        statuses.blocked = env["IORCH_STATUS_BLOCKED"] or None
    if "IORCH_STATUS_FAILED" in env:
        statuses.failed = env["IORCH_STATUS_FAILED"] or None
    if value := env.get("IORCH_STATUS_RELEASE"):
        statuses.release = value
    return statuses


def get_config() -> Config:
    return Config.from_env()


class ConfigWatcher:
    """Polls the dotenv file and hands a freshly loaded config to a callback."""

    def __init__(
        self,
        path: Path,
        on_change: Callable[[Config], None],
        poll_interval: float = 5.0,
        loader: Callable[[], Config] = Config.from_env,
    ):
        self.path = path
        self.on_change = on_change
        self.loader = loader
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_mtime = self._mtime()

    def _mtime(self) -> float | None:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="config-watcher", daemon=True
        )
        self._thread.start()
        logger.info("Watching %s for configuration changes", self.path)

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Config watcher stopped")

    def _run(self):
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.check()
            except Exception:
                logger.exception("Error reloading configuration")

    def check(self) -> bool:
        """Reload if the file changed since the last check. Returns True on reload."""
        mtime = self._mtime()
        if mtime == self._last_mtime:
            return False
        self._last_mtime = mtime
        config = self.loader()
        logger.info("Configuration file changed, reloading")
        self.on_change(config)
        return True
