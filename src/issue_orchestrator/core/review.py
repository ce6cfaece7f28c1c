"""Reviewer and classifier collaborators.

Both are black boxes to the scheduler. The CLI-backed implementations ask an
agent for a JSON verdict and parse the first JSON object in its answer.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from issue_orchestrator.db.models import WorkItem

logger = logging.getLogger(__name__)

_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)


class ReviewError(Exception):
    """Raised when a reviewer or classifier cannot produce a verdict."""


@dataclass
class ReviewResult:
    passed: bool
    remaining_work: list[str] = field(default_factory=list)


@dataclass
class Classification:
    item_id: int
    ready: bool
    notes: list[str] = field(default_factory=list)


class Reviewer(Protocol):
    def review(self, item_id: int, branch: str) -> ReviewResult: ...


class Classifier(Protocol):
    def classify(self, items: list[WorkItem]) -> list[Classification]: ...


class Handoff(Protocol):
    """Downstream consumer of dev-complete assignments (e.g. a merge worker)."""

    def process_dev_complete(self, assignments: list) -> None: ...


def _ask_json(cli_path: str, prompt: str, cwd: Path, timeout: float) -> dict:
    cmd = [cli_path, "-p", prompt, "--output-format", "json"]
    try:
        result = subprocess.run(
            cmd, cwd=str(cwd), capture_output=True, text=True,
            timeout=timeout, check=True,
        )
    except FileNotFoundError as e:
        raise ReviewError(f"{cli_path} not found on PATH") from e
    except subprocess.TimeoutExpired as e:
        raise ReviewError(f"{cli_path} timed out after {timeout}s") from e
    except subprocess.CalledProcessError as e:
        raise ReviewError(f"{cli_path} exited with {e.returncode}: {e.stderr.strip()[:200]}") from e

    text = result.stdout
    try:
        envelope = json.loads(text)
        if isinstance(envelope, dict) and isinstance(envelope.get("result"), str):
            text = envelope["result"]
    except json.JSONDecodeError:
        pass

    m = _JSON_RE.search(text)
    if not m:
        raise ReviewError("No JSON verdict in reviewer output")
    try:
        return json.loads(m.group(0))
    except json.JSONDecodeError as e:
        raise ReviewError(f"Unparseable verdict: {e}") from e


class CliReviewer:
    """Asks the agent CLI whether a branch satisfies its issue."""

    def __init__(self, repo_path: Path, base_branch: str = "main",
                 cli_path: str = "claude", timeout: float = 600):
        self.repo_path = Path(repo_path)
        self.base_branch = base_branch
        self.cli_path = cli_path
        self.timeout = timeout

    def review(self, item_id: int, branch: str) -> ReviewResult:
        prompt = (
            f"Review branch `{branch}` against `{self.base_branch}` in this repository. "
            f"Fetch issue #{item_id} with `gh issue view {item_id}` and decide whether the "
            "branch fully implements it and has an open pull request.\n"
            'Answer with only a JSON object: {"passed": true|false, '
            '"remaining_work": ["..."]}'
        )
        verdict = _ask_json(self.cli_path, prompt, self.repo_path, self.timeout)
        if "passed" not in verdict:
            raise ReviewError("Verdict is missing 'passed'")
        notes = verdict.get("remaining_work") or []
        if isinstance(notes, str):
            notes = [notes]
        result = ReviewResult(passed=bool(verdict["passed"]), remaining_work=[str(n) for n in notes])
        logger.info("Review of #%s on %s: %s", item_id, branch,
                    "passed" if result.passed else "not passed")
        return result


class CliClassifier:
    """Asks the agent CLI whether items are specified well enough to start."""

    def __init__(self, repo_path: Path, cli_path: str = "claude", timeout: float = 600):
        self.repo_path = Path(repo_path)
        self.cli_path = cli_path
        self.timeout = timeout

    def classify(self, items: list[WorkItem]) -> list[Classification]:
        results = []
        for item in items:
            prompt = (
                f"Issue #{item.id}: {item.title}\n\n{item.body}\n\n"
                "Is this issue specified clearly enough for an autonomous coding agent to "
                "implement without asking questions? Answer with only a JSON object: "
                '{"ready": true|false, "questions": ["..."]}'
            )
            verdict = _ask_json(self.cli_path, prompt, self.repo_path, self.timeout)
            notes = verdict.get("questions") or []
            if isinstance(notes, str):
                notes = [notes]
            results.append(Classification(item.id, bool(verdict.get("ready")), [str(n) for n in notes]))
        return results
