"""Shared fixtures and in-memory fakes for the board, workers and reviewer."""

import copy
import tempfile
from pathlib import Path

import pytest

from issue_orchestrator.config import Config, ProviderConfig
from issue_orchestrator.core.review import ReviewError, ReviewResult
from issue_orchestrator.core.scheduler import Orchestrator
from issue_orchestrator.core.source import SourceError
from issue_orchestrator.core.supervisor import SupervisorError, SupervisorRegistry, WorkerStatus
from issue_orchestrator.db.engine import init_db
from issue_orchestrator.db.models import WorkItem


class FakeSource:
    """A project board held in memory. Records every write."""

    def __init__(self, items: list[WorkItem] | None = None):
        self.items: dict[int, WorkItem] = {}
        self.writes: list[tuple] = []
        self.comments: list[tuple[int, str]] = []
        self.fail = False
        for item in items or []:
            self.add(item)

    def add(self, item: WorkItem) -> WorkItem:
        self.items[item.id] = item
        return item

    def _check(self):
        if self.fail:
            raise SourceError("board unreachable")

    def fetch_eligible(self, statuses):
        self._check()
        return [copy.deepcopy(i) for i in self.items.values() if i.status in statuses]

    def fetch_by_id(self, item_id):
        self._check()
        if item_id not in self.items:
            raise SourceError(f"#{item_id} not found")
        return copy.deepcopy(self.items[item_id])

    def set_status(self, item_id, status):
        self._check()
        self.writes.append(("status", item_id, status))
        self.items[item_id].status = status

    def set_claim(self, item_id, token):
        self._check()
        self.writes.append(("claim", item_id, token))
        self.items[item_id].claimed_by = token

    def get_claim(self, item_id):
        self._check()
        return self.items[item_id].claimed_by

    def post_comment(self, item_id, body):
        self._check()
        self.writes.append(("comment", item_id, body))
        self.comments.append((item_id, body))


class FakeSupervisor:
    """Pretends to run workers; tests decide when they exit and what they printed."""

    def __init__(self, provider: str, output_dir: Path):
        self.provider = provider
        self.output_dir = Path(output_dir)
        self.config = ProviderConfig(provider)
        self.running: dict[str, bool] = {}
        self.pids: dict[str, int] = {}
        self.started: list[tuple[str, str, str]] = []
        self.stopped: list[str | None] = []
        self.live_pids: set[int] = set()
        self.fail_start = False
        self._count = 0

    def is_installed(self):
        return True

    def output_path(self, token):
        return self.output_dir / f"output-{token}.log"

    def start(self, prompt, workdir):
        if self.fail_start:
            raise SupervisorError("binary missing")
        self._count += 1
        token = f"{self.provider}-{self._count:08x}"
        self.running[token] = True
        self.pids[token] = 4000 + self._count
        self.started.append((token, prompt, str(workdir)))
        return token

    def probe(self, token, fallback_pid=None):
        if token in self.running:
            return WorkerStatus(self.running[token], self.pids[token])
        if fallback_pid:
            return WorkerStatus(fallback_pid in self.live_pids, fallback_pid)
        return WorkerStatus(False, None)

    def stop(self, token, pid=None):
        self.stopped.append(token)
        if token in self.running:
            self.running[token] = False

    def finish(self, token, output: str = ""):
        """Make a worker exit after printing ``output``."""
        self.running[token] = False
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.output_path(token).write_text(output)


class FakeReviewer:
    def __init__(self, passed: bool = True, remaining_work=None, error: bool = False):
        self.passed = passed
        self.remaining_work = remaining_work or []
        self.error = error
        self.calls: list[tuple[int, str]] = []

    def review(self, item_id, branch):
        self.calls.append((item_id, branch))
        if self.error:
            raise ReviewError("reviewer unavailable")
        return ReviewResult(self.passed, list(self.remaining_work))


def make_item(item_id: int, title: str = "", status: str | None = "Ready", **kwargs) -> WorkItem:
    return WorkItem(id=item_id, title=title or f"Issue {item_id}", status=status, **kwargs)


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def config(tmp_dir):
    cfg = Config(
        db_path=tmp_dir / "ledger.db",
        repo_path=tmp_dir,
        data_dir=str(tmp_dir / ".autonomous"),
    )
    cfg.providers = {"claude": ProviderConfig("claude", max_concurrent=2)}
    return cfg


@pytest.fixture
def db(config):
    conn = init_db(config.db_path)
    yield conn
    conn.close()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def supervisor(config):
    return FakeSupervisor("claude", config.output_dir)


@pytest.fixture
def registry(supervisor):
    return SupervisorRegistry([supervisor])


@pytest.fixture
def reviewer():
    return FakeReviewer()


@pytest.fixture
def orchestrator(db, config, source, registry, reviewer):
    return Orchestrator(db, config, source, registry, reviewer=reviewer)
