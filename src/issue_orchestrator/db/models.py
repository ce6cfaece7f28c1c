"""Data models for the issue orchestrator."""

import re
from dataclasses import dataclass, field
from datetime import date, datetime

ASSIGNMENT_STATUSES = (
    "assigned",
    "in-progress",
    "dev-complete",
    "blocked",
    "failed",
    "merge-review",
    "stage-ready",
    "merged",
)

ACTIVE_STATUSES = ("assigned", "in-progress")

_MASTER_RE = re.compile(r"\bMASTER\b", re.IGNORECASE)
_PHASE_RE = re.compile(r"\bPhase\s+\d+\b", re.IGNORECASE)


# ── Remote field values ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class TextValue:
    text: str


@dataclass(frozen=True)
class SingleSelectValue:
    name: str
    option_id: str | None = None


@dataclass(frozen=True)
class NumberValue:
    number: float


@dataclass(frozen=True)
class IterationValue:
    title: str
    start_date: date | None = None


FieldValue = TextValue | SingleSelectValue | NumberValue | IterationValue


# ── Remote work items ───────────────────────────────────────────────────────


@dataclass
class WorkItem:
    id: int
    title: str
    body: str = ""
    status: str | None = None
    claimed_by: str | None = None
    labels: list[str] = field(default_factory=list)
    fields: dict[str, FieldValue] = field(default_factory=dict)
    tracker_ref: str | None = None

    def has_label(self, label: str | None) -> bool:
        if not label:
            return False
        return label.lower() in (l.lower() for l in self.labels)

    def is_coordinator(self, label: str | None = None) -> bool:
        """Coordinator items are labelled, or titled like "MASTER ... (Phase 2)"."""
        if self.has_label(label):
            return True
        return bool(_MASTER_RE.search(self.title) and _PHASE_RE.search(self.title))


# ── Local ledger ────────────────────────────────────────────────────────────


@dataclass
class Assignment:
    id: str
    item_id: int
    item_title: str
    provider: str
    branch_name: str
    workdir: str
    item_body: str = ""
    instance_token: str | None = None
    process_id: int | None = None
    status: str = "assigned"
    exclusive: bool = False
    coordinator: bool = False
    tracker_ref: str | None = None
    result_ref: str | None = None
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    last_activity: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass
class WorkSession:
    id: int | None = None
    assignment_id: str = ""
    instance_token: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    summary: str | None = None
    prompt: str | None = None


@dataclass
class AssignmentEvent:
    id: int | None = None
    item_id: int = 0
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None
