"""Process liveness and worker output classification.

A worker that has exited is classified from its captured output, strongest
evidence first:

1. an explicit signal line (``AUTONOMOUS_SIGNAL:COMPLETE``, ``...:BLOCKED: why``,
   ``...:FAILED: why``); the last one in the stream wins,
2. completion phrasing near the end of the output,
3. for coordinator items only, a reference to a created pull request.

The result feeds a decision table that picks what the scheduler does next.
"""

import errno
import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

RUNNING = "running"
ZOMBIE = "zombie"
NOT_FOUND = "not-found"

TAIL_LINES = 1000

SIGNAL_RE = re.compile(
    r"AUTONOMOUS_SIGNAL:(COMPLETE|BLOCKED|FAILED)\b(?:\s*:\s*(.*))?", re.IGNORECASE
)

COMPLETION_INDICATORS = (
    re.compile(r"pull request created", re.IGNORECASE),
    re.compile(r"\bpr created\b", re.IGNORECASE),
    re.compile(r"\bpr #\d+ is (open|ready)", re.IGNORECASE),
    re.compile(r"work.*complete", re.IGNORECASE),
    re.compile(r"task.*complete", re.IGNORECASE),
    re.compile(r"phase.*complete", re.IGNORECASE),
    re.compile(r"documentation.*complete", re.IGNORECASE),
    re.compile(r"implementation.*complete", re.IGNORECASE),
    re.compile(r"all.*requirements.*met", re.IGNORECASE),
    re.compile(r"acceptance criteria.*met", re.IGNORECASE),
    re.compile(r"ready for review", re.IGNORECASE),
    re.compile(r"awaiting.*review", re.IGNORECASE),
    re.compile(r"merged to", re.IGNORECASE),
    re.compile(r"successfully merged", re.IGNORECASE),
)

RESULT_REF_PATTERNS = (
    re.compile(r"github\.com/[^/\s]+/[^/\s]+/pull/(\d+)", re.IGNORECASE),
    re.compile(r"pull request\s+#(\d+)", re.IGNORECASE),
    re.compile(r"\bpr\s*#(\d+)", re.IGNORECASE),
    re.compile(r"\bpr\s*=\s*(\d+)", re.IGNORECASE),
)


# ── Process liveness ─────────────────────────────────────────────────────────


def _ps_stat(pid: int) -> str | None:
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "stat="],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def process_state(pid: int | None) -> str:
    """Return ``running``, ``zombie`` or ``not-found`` for a process id."""
    if not pid or pid <= 0:
        return NOT_FOUND
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return NOT_FOUND
    except PermissionError:
        pass  # Exists but owned by someone else
    except OSError as e:
        if e.errno == errno.ESRCH:
            return NOT_FOUND
        raise

    stat = _ps_stat(pid)
    if stat and stat.upper().startswith("Z"):
        return ZOMBIE
    return RUNNING


def is_process_running(pid: int | None) -> bool:
    """A zombie has exited and is counted as dead."""
    return process_state(pid) == RUNNING


# ── Output analysis ─────────────────────────────────────────────────────────


class SignalKind(str, Enum):
    COMPLETE = "COMPLETE"
    BLOCKED = "BLOCKED"
    FAILED = "FAILED"


@dataclass
class OutputAnalysis:
    signal: SignalKind | None = None
    source: str | None = None  # "marker", "heuristic" or "result-ref"
    reason: str | None = None
    result_ref: str | None = None
    indicators: list[str] = field(default_factory=list)
    summary: str | None = None

    @property
    def marker_found(self) -> bool:
        return self.signal is not None


def read_output(path: str | Path | None) -> str | None:
    """Read a worker's captured output, unwrapping a JSON ``result`` envelope."""
    if not path:
        return None
    path = Path(path)
    if not path.exists():
        return None
    try:
        content = path.read_text(errors="replace")
    except OSError as e:
        logger.warning("Could not read worker output %s: %s", path, e)
        return None
    lines = content.splitlines()
    while lines and lines[0].startswith("=== "):
        lines.pop(0)  # supervisor header
    content = "\n".join(lines)
    stripped = content.strip()
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            return content
        if isinstance(data, dict) and isinstance(data.get("result"), str):
            return data["result"]
    return content


def find_signal(text: str) -> tuple[SignalKind, str | None] | None:
    """Return the last explicit signal in the text and its payload."""
    found = None
    for line in text.splitlines():
        m = SIGNAL_RE.search(line)
        if m:
            payload = (m.group(2) or "").strip() or None
            found = (SignalKind(m.group(1).upper()), payload)
    return found


def completion_indicators(text: str) -> list[str]:
    tail = "\n".join(text.splitlines()[-TAIL_LINES:])
    return [p.pattern for p in COMPLETION_INDICATORS if p.search(tail)]


def extract_result_ref(text: str | None) -> str | None:
    """Find the most recent pull request number mentioned in the text."""
    if not text:
        return None
    for line in reversed(text.splitlines()):
        for pattern in RESULT_REF_PATTERNS:
            m = pattern.search(line)
            if m:
                return m.group(1)
    return None


def _summary(text: str, limit: int = 500) -> str:
    text = text.strip()
    return text[-limit:] if len(text) > limit else text


def analyze_output(text: str | None, coordinator: bool = False) -> OutputAnalysis:
    if not text or not text.strip():
        return OutputAnalysis()

    summary = _summary(text)

    signal = find_signal(text)
    if signal:
        kind, payload = signal
        if kind is SignalKind.COMPLETE:
            return OutputAnalysis(
                signal=kind,
                source="marker",
                result_ref=extract_result_ref(payload) or extract_result_ref(text),
                summary=summary,
            )
        return OutputAnalysis(
            signal=kind, source="marker", reason=payload, summary=summary
        )

    indicators = completion_indicators(text)
    if indicators:
        return OutputAnalysis(
            signal=SignalKind.COMPLETE,
            source="heuristic",
            indicators=indicators,
            result_ref=extract_result_ref(text),
            summary=summary,
        )

    if coordinator:
        ref = extract_result_ref(text)
        if ref:
            return OutputAnalysis(
                signal=SignalKind.COMPLETE,
                source="result-ref",
                result_ref=ref,
                summary=summary,
            )

    return OutputAnalysis(summary=summary)


# ── Decisions ───────────────────────────────────────────────────────────────


class Action(str, Enum):
    WAIT = "wait"
    COMPLETE = "complete"
    BLOCK = "block"
    FAIL = "fail"
    REVIEW_THEN_DECIDE = "review-then-decide"


# (process_running, marker_found, marker_kind) -> action
DECISIONS: dict[tuple[bool, bool, SignalKind | None], Action] = {
    (True, False, None): Action.WAIT,
    (True, True, SignalKind.COMPLETE): Action.WAIT,
    (True, True, SignalKind.BLOCKED): Action.WAIT,
    (True, True, SignalKind.FAILED): Action.WAIT,
    (False, False, None): Action.REVIEW_THEN_DECIDE,
    (False, True, SignalKind.COMPLETE): Action.COMPLETE,
    (False, True, SignalKind.BLOCKED): Action.BLOCK,
    (False, True, SignalKind.FAILED): Action.FAIL,
}


def decide(process_running: bool, analysis: OutputAnalysis) -> Action:
    return DECISIONS[(process_running, analysis.marker_found, analysis.signal)]
