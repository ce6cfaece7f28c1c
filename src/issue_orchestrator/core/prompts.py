"""Prompts handed to worker agents."""

from issue_orchestrator.db.models import Assignment

SIGNAL_INSTRUCTIONS = (
    "\n## Reporting Your Outcome\n"
    "When you stop, print exactly one of these lines on its own as the last thing you output:\n"
    "- `AUTONOMOUS_SIGNAL:COMPLETE: PR #<number>` when the work is done and a pull request is open\n"
    "- `AUTONOMOUS_SIGNAL:BLOCKED: <what you need>` when you cannot continue without a human\n"
    "- `AUTONOMOUS_SIGNAL:FAILED: <what went wrong>` when the task cannot be done\n"
    "If you exit without one of these lines, your work will be reviewed and you may be restarted."
)


def _header(assignment: Assignment) -> list[str]:
    parts = [f"# Issue #{assignment.item_id}: {assignment.item_title}"]
    if assignment.item_body:
        parts.append(f"\n## Description\n{assignment.item_body}")
    parts.append("\n## Workspace")
    parts.append(f"Working directory: {assignment.workdir}")
    parts.append(f"Branch: {assignment.branch_name}")
    return parts


def build_initial_prompt(assignment: Assignment) -> str:
    parts = _header(assignment)
    parts.append(
        "\n## Instructions\n"
        "Implement this issue on the branch above. Commit as you go, push the branch, "
        f"and open a pull request that references #{assignment.item_id}."
    )
    if assignment.coordinator:
        parts.append(
            "This is a coordinating issue: break the work down, track progress in the "
            "pull request description, and link the pull request when you are done."
        )
    parts.append(SIGNAL_INSTRUCTIONS)
    return "\n".join(parts)


def build_continuation_prompt(
    assignment: Assignment,
    last_summary: str | None = None,
    remaining_work: list[str] | None = None,
) -> str:
    """Prompt for a worker that resumes after its predecessor exited early."""
    parts = _header(assignment)
    parts.append(
        "\n## Resuming\n"
        "A previous session on this issue ended before the work was finished. "
        "Inspect the branch (`git log`, `git status`) to see what was already done "
        "and continue from there. Do not start over."
    )
    if last_summary:
        parts.append(f"\n## Last Session Summary\n{last_summary}")
    if remaining_work:
        parts.append("\n## Remaining Work (from review)")
        parts.extend(f"- {note}" for note in remaining_work)
    parts.append(SIGNAL_INSTRUCTIONS)
    return "\n".join(parts)
