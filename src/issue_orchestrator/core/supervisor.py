"""Worker supervisors: start, stop and probe CLI coding agents.

Each worker class wraps one agent CLI. Supervisors keep their own table of
``Popen`` handles keyed by instance token; the registry that owns them belongs
to the orchestrator, so nothing here is module-global.
"""

import logging
import os
import shutil
import signal
import subprocess
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from issue_orchestrator.config import Config, ConfigError, ProviderConfig
from issue_orchestrator.core.probe import is_process_running

logger = logging.getLogger(__name__)

KNOWN_PROVIDERS = ("claude", "codex", "gemini")


class SupervisorError(Exception):
    """Raised when a worker process cannot be started."""


@dataclass
class WorkerStatus:
    is_running: bool
    process_id: int | None = None


def new_token(provider: str) -> str:
    return f"{provider}-{uuid.uuid4().hex[:8]}"


def provider_from_token(token: str | None) -> str | None:
    if not token or "-" not in token:
        return None
    return token.split("-", 1)[0]


class CliSupervisor:
    """Runs an agent CLI as a detached process with output captured to a file."""

    provider = ""
    default_cli = ""
    default_args: list[str] = []

    def __init__(self, config: ProviderConfig, output_dir: Path):
        self.config = config
        self.output_dir = Path(output_dir)
        self._processes: dict[str, subprocess.Popen] = {}

    @property
    def cli_path(self) -> str:
        return self.config.cli_path or self.default_cli

    def build_command(self, prompt: str) -> list[str]:
        raise NotImplementedError

    def is_installed(self) -> bool:
        return shutil.which(self.cli_path) is not None

    def output_path(self, token: str) -> Path:
        return self.output_dir / f"output-{token}.log"

    def start(self, prompt: str, workdir: str | Path) -> str:
        """Launch a worker in ``workdir`` and return its new instance token."""
        token = new_token(self.provider)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_file = self.output_path(token)
        cmd = self.build_command(prompt)

        try:
            with open(output_file, "w") as f:
                f.write(
                    f"=== {self.provider} worker {token} started "
                    f"{datetime.now().isoformat(timespec='seconds')} in {workdir} ===\n"
                )
                f.flush()
                proc = subprocess.Popen(
                    cmd,
                    cwd=str(workdir),
                    stdout=f,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as e:
            raise SupervisorError(
                f"Failed to start {self.provider} worker in {workdir}: {e}"
            ) from e

        self._processes[token] = proc
        logger.info("Started %s worker %s (PID %s)", self.provider, token, proc.pid)
        return token

    def probe(self, token: str | None, fallback_pid: int | None = None) -> WorkerStatus:
        """Report liveness for a token.

        Tokens started by this supervisor are polled through their ``Popen``
        handle, which also reaps them; the handle is dropped once the process
        has exited. Others, e.g. from before a restart, are checked by process id.
        """
        proc = self._processes.get(token) if token else None
        if proc is not None:
            if proc.poll() is None:
                return WorkerStatus(is_running=True, process_id=proc.pid)
            del self._processes[token]
            return WorkerStatus(is_running=False, process_id=proc.pid)
        if fallback_pid:
            return WorkerStatus(
                is_running=is_process_running(fallback_pid), process_id=fallback_pid
            )
        return WorkerStatus(is_running=False, process_id=None)

    def stop(self, token: str | None, pid: int | None = None):
        """Terminate a worker's process group. Already-exited workers are ignored."""
        proc = self._processes.pop(token, None) if token else None
        target = proc.pid if proc is not None else pid
        if not target:
            return
        try:
            os.killpg(os.getpgid(target), signal.SIGTERM)
        except ProcessLookupError:
            pass  # Already exited
        except PermissionError:
            os.kill(target, signal.SIGTERM)
        if proc is not None:
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warning("Worker %s ignored SIGTERM, killing", token)
                proc.kill()
        logger.info("Stopped %s worker %s (PID %s)", self.provider, token, target)

    def tokens(self) -> list[str]:
        return list(self._processes)


class ClaudeSupervisor(CliSupervisor):
    provider = "claude"
    default_cli = "claude"
    default_args = ["--dangerously-skip-permissions"]

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.cli_path, "-p", prompt, "--output-format", "json"]
        cmd += self.config.cli_args or self.default_args
        if self.config.model:
            cmd += ["--model", self.config.model]
        return cmd


class CodexSupervisor(CliSupervisor):
    provider = "codex"
    default_cli = "codex"
    default_args = ["--dangerously-bypass-approvals-and-sandbox"]

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.cli_path, "exec"]
        cmd += self.config.cli_args or self.default_args
        if self.config.model:
            cmd += ["--model", self.config.model]
        cmd.append(prompt)
        return cmd


SUPERVISOR_CLASSES: dict[str, type[CliSupervisor]] = {
    "claude": ClaudeSupervisor,
    "codex": CodexSupervisor,
}


def create_supervisor(provider: ProviderConfig, output_dir: Path) -> CliSupervisor:
    cls = SUPERVISOR_CLASSES.get(provider.name)
    if cls is None:
        if provider.name in KNOWN_PROVIDERS:
            raise ConfigError(f"Worker class '{provider.name}' is not implemented yet")
        raise ConfigError(
            f"Unknown worker class '{provider.name}'. "
            f"Available: {', '.join(SUPERVISOR_CLASSES)}"
        )
    return cls(provider, output_dir)


class SupervisorRegistry:
    """Provider name -> supervisor, in configured order."""

    def __init__(self, supervisors: list | None = None):
        self._supervisors: dict = {}
        for sup in supervisors or []:
            self.register(sup)

    @classmethod
    def from_config(cls, config: Config) -> "SupervisorRegistry":
        return cls(
            [create_supervisor(p, config.output_dir) for p in config.providers.values()]
        )

    def register(self, supervisor):
        self._supervisors[supervisor.provider] = supervisor

    def get(self, provider: str):
        return self._supervisors.get(provider)

    def providers(self) -> list[str]:
        return list(self._supervisors)

    def __iter__(self):
        return iter(self._supervisors.values())

    def __contains__(self, provider: str) -> bool:
        return provider in self._supervisors

    def check_installed(self) -> list[str]:
        """Log a warning for each worker CLI that is not on PATH."""
        missing = []
        for sup in self:
            if not sup.is_installed():
                logger.warning(
                    "%s CLI '%s' not found on PATH; %s workers will fail to start",
                    sup.provider, sup.cli_path, sup.provider,
                )
                missing.append(sup.provider)
        return missing

    def merge(self, other: "SupervisorRegistry"):
        """Adopt a new provider set, keeping live supervisors for unchanged providers."""
        kept = {}
        for provider in other.providers():
            current = self._supervisors.get(provider)
            if current is not None:
                current.config = other.get(provider).config
                kept[provider] = current
            else:
                kept[provider] = other.get(provider)
        self._supervisors = kept
