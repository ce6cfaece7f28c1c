"""Builds a fully wired orchestrator from configuration."""

import sqlite3

from issue_orchestrator.config import Config, ConfigError, ConfigWatcher
from issue_orchestrator.core.review import CliClassifier, CliReviewer
from issue_orchestrator.core.scheduler import Orchestrator
from issue_orchestrator.core.supervisor import SupervisorRegistry
from issue_orchestrator.core.workspaces import WorktreeWorkspaces
from issue_orchestrator.integrations.github import GitHubProjectSource
from issue_orchestrator.integrations.slack import SlackNotifier


def build_source(config: Config) -> GitHubProjectSource:
    if not config.github_repo or not config.project_id:
        raise ConfigError(
            "IORCH_GITHUB_REPO and IORCH_PROJECT_ID must be set to reach the project board"
        )
    return GitHubProjectSource(
        config.github_repo,
        config.project_id,
        status_field=config.status_field,
        claim_field=config.claim_field,
    )


def build_orchestrator(
    config: Config,
    db: sqlite3.Connection,
    watch_config: bool = True,
) -> Orchestrator:
    """Raises ConfigError for unusable settings, e.g. an unimplemented worker class."""
    registry = SupervisorRegistry.from_config(config)
    source = build_source(config)
    workspaces = WorktreeWorkspaces(config.repo_path, config.worktree_dir, config.base_branch)

    reviewer = None
    if config.review_enabled:
        reviewer = CliReviewer(config.repo_path, config.base_branch, config.review_cli_path)

    classifier = None
    if config.evaluate_enabled:
        classifier = CliClassifier(config.repo_path, config.review_cli_path)

    notifier = None
    if config.slack_bot_token and config.slack_channel:
        notifier = SlackNotifier(config.slack_bot_token, config.slack_channel)

    orchestrator = Orchestrator(
        db,
        config,
        source,
        registry,
        reviewer=reviewer,
        classifier=classifier,
        workspaces=workspaces,
        notifier=notifier,
    )
    if watch_config and config.env_file is not None:
        orchestrator.watcher = ConfigWatcher(config.env_file, orchestrator.reconfigure)
    return orchestrator
