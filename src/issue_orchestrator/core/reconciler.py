"""Reconciliation between the local ledger and the remote board.

The remote board decides intent (whether an item should be worked on); the
local ledger and process probe decide fact (whether a worker is alive).
Running a pass twice with nothing changed in between mutates nothing the
second time.
"""

import logging
import sqlite3
from dataclasses import dataclass, field

from issue_orchestrator.config import Config
from issue_orchestrator.core import ledger
from issue_orchestrator.core.source import SourceError, WorkItemSource
from issue_orchestrator.core.supervisor import SupervisorRegistry, provider_from_token
from issue_orchestrator.core.workspaces import branch_name_for
from issue_orchestrator.db.models import Assignment, WorkItem

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    checked: int = 0
    removed: list[int] = field(default_factory=list)
    adopted: list[int] = field(default_factory=list)
    republished: list[int] = field(default_factory=list)
    cleared: list[int] = field(default_factory=list)
    released: list[int] = field(default_factory=list)
    errors: int = 0

    @property
    def mutations(self) -> int:
        return (len(self.removed) + len(self.adopted) + len(self.republished)
                + len(self.cleared) + len(self.released))


class Reconciler:
    def __init__(
        self,
        db: sqlite3.Connection,
        source: WorkItemSource,
        config: Config,
        registry: SupervisorRegistry | None = None,
        workspaces=None,
    ):
        self.db = db
        self.source = source
        self.config = config
        self.registry = registry
        self.workspaces = workspaces

    @property
    def statuses(self):
        return self.config.statuses

    # ── Remote status -> local ──

    def _still_wanted(self, item: WorkItem) -> bool:
        return self.statuses.is_active(item.status) or self.statuses.is_ready(item.status)

    def _republish(self, assignment: Assignment, item: WorkItem, result: ReconcileResult):
        """A started worker whose item still reads as ready: an earlier write was lost."""
        if assignment.status != "in-progress" or not assignment.instance_token:
            return
        try:
            self.source.set_status(item.id, self.statuses.in_progress)
            if item.claimed_by != assignment.instance_token:
                self.source.set_claim(item.id, assignment.instance_token)
        except SourceError as e:
            logger.warning("Could not republish #%s as in progress: %s", item.id, e)
            result.errors += 1
            return
        logger.info("Republished #%s as in progress (%s)", item.id, assignment.instance_token)
        result.republished.append(item.id)

    def _stop_worker(self, assignment: Assignment):
        if not self.registry or not (assignment.instance_token or assignment.process_id):
            return
        supervisor = self.registry.get(assignment.provider)
        if supervisor is None:
            return
        try:
            supervisor.stop(assignment.instance_token, pid=assignment.process_id)
        except Exception:
            logger.exception(
                "Failed to stop worker %s for #%s",
                assignment.instance_token, assignment.item_id,
            )

    def sync_remote_status(self, result: ReconcileResult | None = None) -> ReconcileResult:
        """Drop local assignments whose item the board no longer wants worked on."""
        result = result or ReconcileResult()
        for assignment in ledger.list_active(self.db):
            result.checked += 1
            try:
                item = self.source.fetch_by_id(assignment.item_id)
            except SourceError as e:
                logger.warning("Could not read #%s from the board: %s", assignment.item_id, e)
                result.errors += 1
                continue

            if self._still_wanted(item):
                if self.statuses.is_ready(item.status):
                    self._republish(assignment, item, result)
                continue

            logger.info(
                "Issue #%s is '%s' on the board; removing local assignment %s",
                item.id, item.status, assignment.instance_token,
            )
            self._stop_worker(assignment)
            ledger.delete_assignment(
                self.db, assignment.id, reason=f"remote status {item.status!r}"
            )
            result.removed.append(item.id)

            if assignment.instance_token and item.claimed_by == assignment.instance_token:
                try:
                    self.source.set_claim(item.id, None)
                except SourceError as e:
                    logger.warning("Could not clear claim on #%s: %s", item.id, e)
                    result.errors += 1
        return result

    # ── Remote claims -> local ──

    def _provider_for(self, token: str) -> str | None:
        """The token's own worker class if it has a free slot, else any class that does."""
        preferred = provider_from_token(token)
        candidates = [preferred] if preferred in self.config.providers else []
        candidates += [p for p in self.config.providers if p != preferred]
        for provider in candidates:
            if ledger.count_active(self.db, provider) < self.config.max_concurrent(provider):
                return provider
        return None

    def _release(self, item: WorkItem, result: ReconcileResult):
        """No slot to adopt into: hand the item back so normal assignment picks it up."""
        try:
            if self.statuses.release_value:
                self.source.set_status(item.id, self.statuses.release_value)
            self.source.set_claim(item.id, None)
        except SourceError as e:
            logger.warning("Could not release #%s: %s", item.id, e)
            result.errors += 1
            return
        logger.info(
            "No free worker slot for orphaned claim %s on #%s; released",
            item.claimed_by, item.id,
        )
        result.released.append(item.id)

    def _adopt(self, item: WorkItem, token: str, provider: str) -> Assignment:
        branch = branch_name_for(item.id, item.title, self.config.branch_prefix)
        if self.workspaces is not None:
            workdir = str(self.workspaces.path_for(item.id))
        else:
            workdir = str(self.config.repo_path)
        assignment = ledger.create_assignment(
            self.db,
            item.id,
            item.title,
            provider,
            branch,
            workdir,
            item_body=item.body,
            status="in-progress",
            exclusive=item.has_label(self.config.exclusive_label),
            coordinator=item.is_coordinator(self.config.coordinator_label),
            tracker_ref=item.tracker_ref,
        )
        assignment = ledger.set_worker(self.db, assignment.id, token, None)
        ledger.log_event(self.db, item.id, "adopted", None, token)
        return assignment

    def adopt_orphaned_claims(self, result: ReconcileResult | None = None) -> ReconcileResult:
        """Rebuild local records for in-progress items claimed by an unknown token."""
        result = result or ReconcileResult()
        try:
            items = self.source.fetch_eligible([self.statuses.in_progress])
        except SourceError as e:
            logger.warning("Could not list in-progress items: %s", e)
            result.errors += 1
            return result

        for item in items:
            token = item.claimed_by
            if not token or ledger.get_assignment_by_token(self.db, token):
                continue

            existing = ledger.get_assignment_by_item(self.db, item.id)
            if existing is not None:
                if existing.is_active and existing.instance_token:
                    try:
                        self.source.set_claim(item.id, existing.instance_token)
                    except SourceError as e:
                        logger.warning("Could not republish claim on #%s: %s", item.id, e)
                        result.errors += 1
                        continue
                    result.republished.append(item.id)
                continue

            provider = self._provider_for(token)
            if provider is None:
                self._release(item, result)
                continue
            assignment = self._adopt(item, token, provider)
            logger.info(
                "Adopted orphaned claim %s on #%s (%s)",
                token, item.id, assignment.provider,
            )
            result.adopted.append(item.id)
        return result

    # ── Stale claims ──

    def clear_stale_claims(self, result: ReconcileResult | None = None) -> ReconcileResult:
        """Items that are not yet claimable must not carry a claim."""
        result = result or ReconcileResult()
        try:
            items = self.source.fetch_eligible(self.statuses.pre_claim)
        except SourceError as e:
            logger.warning("Could not list unclaimed items: %s", e)
            result.errors += 1
            return result

        for item in items:
            if not item.claimed_by:
                continue
            try:
                self.source.set_claim(item.id, None)
            except SourceError as e:
                logger.warning("Could not clear stale claim on #%s: %s", item.id, e)
                result.errors += 1
                continue
            logger.info("Cleared stale claim %s on #%s (%s)", item.claimed_by, item.id, item.status)
            result.cleared.append(item.id)
        return result

    def reconcile(self) -> ReconcileResult:
        result = ReconcileResult()
        self.sync_remote_status(result)
        self.adopt_orphaned_claims(result)
        self.clear_stale_claims(result)
        logger.info(
            "Reconciled %d assignments: %d removed, %d adopted, %d republished, "
            "%d stale claims cleared, %d released, %d errors",
            result.checked, len(result.removed), len(result.adopted),
            len(result.republished), len(result.cleared), len(result.released),
            result.errors,
        )
        return result
