"""The orchestrator control loop.

One thread drives everything. Each tick:

- every active assignment is probed and acted on (complete, block, fail,
  review, or resurrect),
- dev-complete assignments are offered to the hand-off collaborator,
- every ``resurrect_every`` ticks the board's status and claims are pulled
  into the ledger and unsupervisable assignments are abandoned,
- every ``reconcile_every`` ticks a full reconciliation runs,
- every ``assign_every`` ticks (or as soon as a slot frees up) pending items
  are classified and eligible items are assigned up to each provider's limit.

Any exception inside a step is logged and the loop carries on.
"""

import logging
import sqlite3
import threading
from pathlib import Path

from issue_orchestrator.config import Config, ConfigError
from issue_orchestrator.core import ledger
from issue_orchestrator.core.probe import Action, OutputAnalysis, analyze_output, decide, read_output
from issue_orchestrator.core.prompts import build_continuation_prompt, build_initial_prompt
from issue_orchestrator.core.reconciler import ReconcileResult, Reconciler
from issue_orchestrator.core.source import SourceError, WorkItemSource
from issue_orchestrator.core.supervisor import SupervisorError, SupervisorRegistry, WorkerStatus
from issue_orchestrator.core.workspaces import WorkspaceError, branch_name_for
from issue_orchestrator.db.models import Assignment, WorkItem

logger = logging.getLogger(__name__)

STARTED = "started"
ABANDONED = "abandoned"


class Orchestrator:
    def __init__(
        self,
        db: sqlite3.Connection,
        config: Config,
        source: WorkItemSource,
        registry: SupervisorRegistry,
        reviewer=None,
        classifier=None,
        handoff=None,
        workspaces=None,
        notifier=None,
        watcher=None,
    ):
        self.db = db
        self.config = config
        self.source = source
        self.registry = registry
        self.reviewer = reviewer
        self.classifier = classifier
        self.handoff = handoff
        self.workspaces = workspaces
        self.notifier = notifier
        self.watcher = watcher
        self.reconciler = Reconciler(db, source, config, registry, workspaces)
        self.tick_count = 0
        self._capacity_freed = False
        self._pending_config: Config | None = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._stopped = False

    @property
    def statuses(self):
        return self.config.statuses

    # ── Lifecycle ──

    def initialize(self):
        """Startup checks. A missing worker CLI is a warning, not an error."""
        self.registry.check_installed()
        for provider in self.registry.providers():
            logger.info(
                "Worker class %s: up to %d concurrent",
                provider, self.config.max_concurrent(provider),
            )

    def start(self):
        """Run startup passes, then tick until ``request_stop``/``stop``. Blocks."""
        self.initialize()
        if self.watcher is not None:
            self.watcher.start()
        self._run_step("startup resurrection", self.resurrect_dead_assignments)
        self._run_step("startup reconciliation", self.reconcile)
        self._run_step("startup assignment", self.assign_eligible)
        try:
            self.run_forever()
        finally:
            self.stop()

    def run_forever(self):
        logger.info("Orchestrator running (tick every %ss)", self.config.tick_interval)
        while not self._stop_event.wait(self.config.tick_interval):
            self.tick()

    def request_stop(self):
        """Ask the loop to exit after the current tick. Safe from signal handlers."""
        self._stop_event.set()

    def stop(self):
        """Final hand-off, stop the config watcher, stop every worker."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        logger.info("Stopping orchestrator")

        if self.handoff is not None:
            try:
                self.hand_off()
            except Exception:
                logger.exception("Final hand-off failed")

        if self.watcher is not None:
            try:
                self.watcher.stop()
            except Exception:
                logger.exception("Failed to stop config watcher")

        for assignment in ledger.list_active(self.db):
            supervisor = self.registry.get(assignment.provider)
            if supervisor is None or not assignment.instance_token:
                continue
            try:
                supervisor.stop(assignment.instance_token, pid=assignment.process_id)
            except Exception:
                logger.exception(
                    "Failed to stop worker %s for #%s",
                    assignment.instance_token, assignment.item_id,
                )
        logger.info("Orchestrator stopped")

    def reconfigure(self, config: Config):
        """Queue a new config; applied at the start of the next tick."""
        with self._lock:
            self._pending_config = config

    def _apply_pending_config(self):
        with self._lock:
            config, self._pending_config = self._pending_config, None
        if config is None:
            return
        try:
            registry = SupervisorRegistry.from_config(config)
        except ConfigError as e:
            logger.error("Ignoring new configuration: %s", e)
            return
        self.registry.merge(registry)
        self.config = config
        self.reconciler.config = config
        logger.info("Configuration reloaded (providers: %s)", ", ".join(self.registry.providers()))

    # ── Tick ──

    def _run_step(self, name: str, fn, *args):
        try:
            return fn(*args)
        except Exception:
            logger.exception("Error during %s; continuing", name)
            return None

    def tick(self):
        self.tick_count += 1
        n = self.tick_count
        cfg = self.config
        self._apply_pending_config()
        self._capacity_freed = False

        self._run_step("assignment check", self.check_assignments)
        if self.handoff is not None:
            self._run_step("hand-off", self.hand_off)
        if n % cfg.resurrect_every == 0:
            self._run_step("resurrection", self.resurrect_dead_assignments)
        if n % cfg.reconcile_every == 0:
            self._run_step("reconciliation", self.reconcile)
        if n % cfg.assign_every == 0 or self._capacity_freed:
            if self.classifier is not None:
                self._run_step("evaluation", self.evaluate_pending)
            self._run_step("assignment", self.assign_eligible)

    # ── Remote helpers ──

    def _remote(self, description: str, fn, *args) -> bool:
        """Remote writes never roll back local state; failures are retried by reconciliation."""
        try:
            fn(*args)
            return True
        except SourceError as e:
            logger.warning("Could not %s: %s", description, e)
            return False

    def _notify(self, assignment: Assignment, status: str, detail: str | None = None):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(
                assignment.item_id, assignment.item_title, status,
                assignment.provider, detail,
            )
        except Exception:
            logger.exception("Failed to send notification for #%s", assignment.item_id)

    # ── Supervision ──

    def check_assignments(self, abandon_unsupervised: bool = False) -> list[tuple[int, str]]:
        """Probe every active assignment and act on what is found."""
        handled = []
        for assignment in ledger.list_active(self.db):
            try:
                outcome = self._supervise(assignment, abandon_unsupervised)
            except Exception:
                logger.exception(
                    "Error supervising #%s (%s)",
                    assignment.item_id, assignment.instance_token,
                )
                continue
            handled.append((assignment.item_id, outcome))
        return handled

    def _supervise(self, assignment: Assignment, abandon_unsupervised: bool) -> str:
        supervisor = self.registry.get(assignment.provider)
        if supervisor is None:
            if abandon_unsupervised:
                self._abandon(
                    assignment, f"worker class '{assignment.provider}' is not configured"
                )
                return ABANDONED
            logger.warning(
                "No supervisor for '%s'; leaving #%s until the next resurrection pass",
                assignment.provider, assignment.item_id,
            )
            return Action.WAIT.value

        if not assignment.instance_token:
            resumed = bool(ledger.list_work_sessions(self.db, assignment.id))
            prompt = (
                build_continuation_prompt(assignment, ledger.last_summary(self.db, assignment.id))
                if resumed else build_initial_prompt(assignment)
            )
            logger.info("Starting worker for #%s (no live instance)", assignment.item_id)
            if self._launch(assignment, supervisor, prompt):
                return STARTED
            return Action.WAIT.value

        status = supervisor.probe(assignment.instance_token, fallback_pid=assignment.process_id)
        if status.is_running:
            ledger.touch(self.db, assignment.id)
            return Action.WAIT.value

        output_file = supervisor.output_path(assignment.instance_token)
        if status.process_id is None and not Path(output_file).exists():
            # Claimed but never observed running here
            if self._resurrect(assignment, supervisor, summary=None):
                return STARTED
            return Action.WAIT.value

        analysis = analyze_output(read_output(output_file), coordinator=assignment.coordinator)
        action = decide(False, analysis)
        logger.info(
            "Worker %s for #%s exited: %s (%s)",
            assignment.instance_token, assignment.item_id,
            action.value, analysis.source or "no signal",
        )
        if action is Action.COMPLETE:
            self._complete(assignment, analysis, via=analysis.source or "signal")
        elif action is Action.BLOCK:
            self._halt(assignment, "blocked", analysis)
        elif action is Action.FAIL:
            self._halt(assignment, "failed", analysis)
        elif action is Action.REVIEW_THEN_DECIDE:
            self._review_then_decide(assignment, supervisor, analysis)
        return action.value

    def _complete(self, assignment: Assignment, analysis: OutputAnalysis, via: str):
        ledger.end_work_session(
            self.db, assignment.id, summary=analysis.summary or "Work completed"
        )
        if analysis.result_ref:
            ledger.set_result_ref(self.db, assignment.id, analysis.result_ref)
        ledger.update_status(self.db, assignment.id, "dev-complete")
        ledger.log_event(self.db, assignment.item_id, "completed", None, via)
        self._capacity_freed = True
        logger.info("#%s is dev-complete (via %s)", assignment.item_id, via)

        self._remote(
            f"mark #{assignment.item_id} dev-complete",
            self.source.set_status, assignment.item_id, self.statuses.dev_complete,
        )
        self._remote(
            f"clear claim on #{assignment.item_id}",
            self.source.set_claim, assignment.item_id, None,
        )
        detail = f"PR #{analysis.result_ref}" if analysis.result_ref else None
        self._notify(assignment, "dev-complete", detail)

    def _halt(self, assignment: Assignment, status: str, analysis: OutputAnalysis):
        """Blocked or failed: release the claim and leave it for a human."""
        reason = analysis.reason or f"Worker reported {status} without a reason"
        ledger.end_work_session(self.db, assignment.id, summary=reason)
        ledger.update_status(self.db, assignment.id, status)
        self._capacity_freed = True
        logger.info("#%s is %s: %s", assignment.item_id, status, reason)

        remote_status = self.statuses.blocked if status == "blocked" else self.statuses.failed
        if remote_status:
            self._remote(
                f"mark #{assignment.item_id} {status}",
                self.source.set_status, assignment.item_id, remote_status,
            )
        self._remote(
            f"clear claim on #{assignment.item_id}",
            self.source.set_claim, assignment.item_id, None,
        )
        self._remote(
            f"comment on #{assignment.item_id}",
            self.source.post_comment, assignment.item_id,
            f"**Worker {status}** (`{assignment.instance_token}`)\n\n{reason}",
        )
        self._notify(assignment, status, reason)

    def _review_then_decide(self, assignment: Assignment, supervisor, analysis: OutputAnalysis):
        if self.reviewer is None:
            self._resurrect(assignment, supervisor, summary=analysis.summary)
            return
        try:
            result = self.reviewer.review(assignment.item_id, assignment.branch_name)
        except Exception as e:
            logger.warning(
                "Review of #%s unavailable (%s); resurrecting worker", assignment.item_id, e
            )
            self._resurrect(assignment, supervisor, summary=analysis.summary)
            return

        if result.passed:
            self._complete(assignment, analysis, via="review")
            return

        if result.remaining_work:
            notes = "\n".join(f"- {n}" for n in result.remaining_work)
            self._remote(
                f"comment on #{assignment.item_id}",
                self.source.post_comment, assignment.item_id,
                f"**Process Resurrected**\n\nReview found remaining work:\n{notes}",
            )
        self._resurrect(
            assignment, supervisor,
            summary=analysis.summary, remaining_work=result.remaining_work,
        )

    def _resurrect(
        self,
        assignment: Assignment,
        supervisor,
        summary: str | None,
        remaining_work: list[str] | None = None,
    ) -> str | None:
        """Start a fresh worker on the same branch, keeping the session history."""
        ledger.end_work_session(self.db, assignment.id, summary=summary)
        prompt = build_continuation_prompt(
            assignment, ledger.last_summary(self.db, assignment.id), remaining_work
        )
        old_token = assignment.instance_token
        token = self._launch(assignment, supervisor, prompt)
        if token:
            ledger.log_event(self.db, assignment.item_id, "resurrected", old_token, token)
            logger.info("Resurrected #%s: %s -> %s", assignment.item_id, old_token, token)
            self._notify(assignment, "resurrected", f"{old_token} -> {token}")
        return token

    def _launch(self, assignment: Assignment, supervisor, prompt: str) -> str | None:
        """Start a worker for an assignment; on failure leave it for the next tick."""
        workdir = assignment.workdir
        if self.workspaces is not None and not Path(workdir).exists():
            try:
                workdir = self.workspaces.prepare(assignment.item_id, assignment.branch_name)
            except WorkspaceError as e:
                logger.error("No workspace for #%s: %s (will retry)", assignment.item_id, e)
                if assignment.instance_token:
                    ledger.set_worker(self.db, assignment.id, None, None)
                return None

        try:
            token = supervisor.start(prompt, workdir)
        except SupervisorError as e:
            logger.error("Could not start worker for #%s: %s (will retry)", assignment.item_id, e)
            if assignment.instance_token:
                ledger.set_worker(self.db, assignment.id, None, None)
            return None

        status = supervisor.probe(token)
        ledger.set_worker(self.db, assignment.id, token, status.process_id)
        ledger.add_work_session(self.db, assignment.id, token, prompt=prompt)
        if assignment.status != "in-progress":
            ledger.update_status(self.db, assignment.id, "in-progress")
            self._remote(
                f"mark #{assignment.item_id} in progress",
                self.source.set_status, assignment.item_id, self.statuses.in_progress,
            )
        self._remote(
            f"publish claim on #{assignment.item_id}",
            self.source.set_claim, assignment.item_id, token,
        )
        return token

    def _abandon(self, assignment: Assignment, reason: str):
        """Hand the item back to the pool and forget it locally."""
        supervisor = self.registry.get(assignment.provider)
        if supervisor is not None and (assignment.instance_token or assignment.process_id):
            try:
                supervisor.stop(assignment.instance_token, pid=assignment.process_id)
            except Exception:
                logger.exception("Failed to stop worker for #%s", assignment.item_id)
        release = self.statuses.release_value
        if release:
            self._remote(
                f"release #{assignment.item_id}",
                self.source.set_status, assignment.item_id, release,
            )
        self._remote(
            f"clear claim on #{assignment.item_id}",
            self.source.set_claim, assignment.item_id, None,
        )
        ledger.delete_assignment(self.db, assignment.id, reason=reason)
        self._capacity_freed = True
        logger.info("Abandoned #%s: %s", assignment.item_id, reason)

    def unassign(self, item_id: int) -> bool:
        assignment = ledger.get_assignment_by_item(self.db, item_id)
        if assignment is None:
            return False
        self._abandon(assignment, "manually unassigned")
        return True

    # ── Periodic passes ──

    def resurrect_dead_assignments(self) -> list[tuple[int, str]]:
        """Pull board intent and orphaned claims into the ledger, then supervise."""
        self.reconciler.sync_remote_status()
        self.reconciler.adopt_orphaned_claims()
        return self.check_assignments(abandon_unsupervised=True)

    def reconcile(self) -> ReconcileResult:
        return self.reconciler.reconcile()

    def hand_off(self):
        done = ledger.list_assignments(self.db, status="dev-complete")
        if done and self.handoff is not None:
            self.handoff.process_dev_complete(done)

    def evaluate_pending(self) -> list:
        """Send items awaiting classification to the classifier."""
        if self.classifier is None or not self.statuses.evaluate:
            return []
        try:
            items = self.source.fetch_eligible(self.statuses.evaluate)
        except SourceError as e:
            logger.warning("Could not list items awaiting evaluation: %s", e)
            return []
        if not items:
            return []

        results = self.classifier.classify(items)
        for c in results:
            if c.ready:
                self._remote(
                    f"mark #{c.item_id} evaluated",
                    self.source.set_status, c.item_id, self.statuses.evaluated,
                )
                continue
            self._remote(
                f"mark #{c.item_id} as needing info",
                self.source.set_status, c.item_id, self.statuses.needs_info,
            )
            if c.notes:
                questions = "\n".join(f"- {n}" for n in c.notes)
                self._remote(
                    f"comment on #{c.item_id}",
                    self.source.post_comment, c.item_id,
                    f"**Needs more information before work can start**\n\n{questions}",
                )
        logger.info(
            "Evaluated %d items: %d ready", len(results), sum(1 for c in results if c.ready)
        )
        return results

    # ── Assignment ──

    def _worker_status(self, assignment: Assignment) -> WorkerStatus:
        supervisor = self.registry.get(assignment.provider)
        if supervisor is None or not assignment.instance_token:
            return WorkerStatus(is_running=False)
        return supervisor.probe(assignment.instance_token, fallback_pid=assignment.process_id)

    def _capacity(self) -> dict[str, int]:
        return {
            provider: max(
                0,
                self.config.max_concurrent(provider) - ledger.count_active(self.db, provider),
            )
            for provider in self.registry.providers()
        }

    def _exclusive_queue(self, active_exclusive: list[Assignment]) -> list[WorkItem]:
        """An exclusive item with a live worker holds everything; a dead one is redone."""
        for assignment in active_exclusive:
            if self._worker_status(assignment).is_running:
                logger.info(
                    "Exclusive item #%s is running; holding all other assignment",
                    assignment.item_id,
                )
                return []

        assignment = active_exclusive[0]
        try:
            item = self.source.fetch_by_id(assignment.item_id)
        except SourceError as e:
            logger.warning("Could not re-read exclusive item #%s: %s", assignment.item_id, e)
            return []
        logger.info("Exclusive item #%s has no live worker; reassigning", assignment.item_id)
        ledger.delete_assignment(self.db, assignment.id, reason="exclusive worker dead")
        return [item]

    def _eligible(self, items: list[WorkItem], clear_claims: bool = True) -> list[WorkItem]:
        eligible = []
        for item in items:
            existing = ledger.get_assignment_by_item(self.db, item.id)
            if existing is not None and existing.is_active:
                continue
            if item.claimed_by and clear_claims:
                # A claimable item with a claim is held by a dead or unknown worker
                self._remote(
                    f"clear stale claim on #{item.id}",
                    self.source.set_claim, item.id, None,
                )
                item.claimed_by = None
            eligible.append(item)
        return eligible

    def _queue(self, dry_run: bool = False) -> list[WorkItem]:
        active_exclusive = [a for a in ledger.list_active(self.db) if a.exclusive]
        if active_exclusive:
            if dry_run:
                alive = any(self._worker_status(a).is_running for a in active_exclusive)
                if alive:
                    return []
                return [self.source.fetch_by_id(active_exclusive[0].item_id)]
            return self._exclusive_queue(active_exclusive)

        items = self._eligible(
            self.source.fetch_eligible(self.statuses.ready), clear_claims=not dry_run
        )
        exclusive = [i for i in items if i.has_label(self.config.exclusive_label)]
        if exclusive:
            logger.info("Exclusive item #%s is eligible; assigning it alone", exclusive[0].id)
            return exclusive[:1]
        return items

    def assign_eligible(self) -> list[Assignment]:
        """Fill free worker slots from the ready items, in board order."""
        if not any(self._capacity().values()) and not any(
            a.exclusive for a in ledger.list_active(self.db)
        ):
            logger.debug("No free worker slots")
            return []

        try:
            queue = self._queue()
        except SourceError as e:
            logger.warning("Could not fetch eligible items (no new work this tick): %s", e)
            return []

        assigned = []
        for provider, available in self._capacity().items():
            if not queue:
                break
            batch, queue = queue[:available], queue[available:]
            for item in batch:
                try:
                    assignment = self._assign(provider, item)
                except Exception:
                    logger.exception("Failed to assign #%s to %s", item.id, provider)
                    continue
                if assignment is not None:
                    assigned.append(assignment)
        if assigned:
            logger.info("Assigned %d items", len(assigned))
        return assigned

    def _assign(self, provider: str, item: WorkItem) -> Assignment | None:
        supervisor = self.registry.get(provider)
        existing = ledger.get_assignment_by_item(self.db, item.id)
        if existing is not None:
            if existing.is_active:
                return None
            ledger.delete_assignment(self.db, existing.id, reason="reassigned")

        branch = branch_name_for(item.id, item.title, self.config.branch_prefix)
        if self.workspaces is not None:
            try:
                workdir = self.workspaces.prepare(item.id, branch)
            except WorkspaceError as e:
                logger.error("Skipping #%s: %s", item.id, e)
                return None
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
            exclusive=item.has_label(self.config.exclusive_label),
            coordinator=item.is_coordinator(self.config.coordinator_label),
            tracker_ref=item.tracker_ref,
        )
        logger.info("Assigned #%s '%s' to %s", item.id, item.title, provider)
        if self._launch(assignment, supervisor, build_initial_prompt(assignment)):
            self._notify(assignment, "in-progress")
        return ledger.get_assignment(self.db, assignment.id)

    def dry_run(self) -> list[tuple[str, WorkItem]]:
        """What the next assignment pass would do, without doing it."""
        queue = self._queue(dry_run=True)
        plan = []
        for provider, available in self._capacity().items():
            batch, queue = queue[:available], queue[available:]
            plan.extend((provider, item) for item in batch)
        return plan


def capacity_report(db: sqlite3.Connection, config: Config) -> dict:
    """Per-provider slot usage and per-status counts."""
    providers = {}
    for name, provider in config.providers.items():
        active = ledger.count_active(db, name)
        providers[name] = {
            "active": active,
            "limit": provider.max_concurrent,
            "available": max(0, provider.max_concurrent - active),
        }
    return {"providers": providers, "counts": ledger.count_by_status(db)}
