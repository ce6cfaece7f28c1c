"""The remote system of record for work items."""

from collections.abc import Sequence
from typing import Protocol

from issue_orchestrator.db.models import WorkItem


class SourceError(Exception):
    """Raised when the remote work item source cannot be read or written.

    Always treated as transient: the caller logs it and retries next tick.
    """


class WorkItemSource(Protocol):
    """Remote board of work items.

    Implementations paginate internally and return each item once, in the
    board's order.
    """

    def fetch_eligible(self, statuses: Sequence[str]) -> list[WorkItem]:
        """Items whose status label is one of ``statuses``."""
        ...

    def fetch_by_id(self, item_id: int) -> WorkItem:
        """Raise ``SourceError`` if the item is not on the board."""
        ...

    def set_status(self, item_id: int, status: str) -> None: ...

    def set_claim(self, item_id: int, token: str | None) -> None:
        """Publish (or clear, with ``None``) the worker instance holding an item."""
        ...

    def get_claim(self, item_id: int) -> str | None: ...

    def post_comment(self, item_id: int, body: str) -> None: ...
