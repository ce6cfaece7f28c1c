"""Tests for the orchestrator loop: assignment, supervision and resurrection."""

from unittest.mock import MagicMock, patch

from conftest import FakeReviewer, FakeSupervisor, make_item

from issue_orchestrator.config import ProviderConfig
from issue_orchestrator.core import ledger
from issue_orchestrator.core.review import Classification
from issue_orchestrator.core.scheduler import Orchestrator, capacity_report
from issue_orchestrator.core.workspaces import WorkspaceError


def _in_progress(db, item_id, token, pid=None, exclusive=False, provider="claude"):
    a = ledger.create_assignment(
        db, item_id, f"Issue {item_id}", provider, f"feature/issue-{item_id}", "/tmp",
        exclusive=exclusive,
    )
    ledger.set_worker(db, a.id, token, pid)
    ledger.add_work_session(db, a.id, token, prompt="initial")
    return ledger.update_status(db, a.id, "in-progress")


class TestAssignment:
    def test_ready_item_is_assigned(self, db, orchestrator, source, supervisor):
        source.add(make_item(42, title="Add search"))

        assigned = orchestrator.assign_eligible()

        assert [a.item_id for a in assigned] == [42]
        a = ledger.get_assignment_by_item(db, 42)
        assert a.status == "in-progress"
        assert a.instance_token == supervisor.started[0][0]
        assert a.process_id is not None
        assert a.branch_name == "feature/issue-42-add-search"
        assert source.items[42].status == "In Progress"
        assert source.items[42].claimed_by == a.instance_token
        events = [e.event_type for e in ledger.get_events(db, 42)]
        assert events[0] == "created"
        assert len(ledger.list_work_sessions(db, a.id)) == 1

    def test_capacity_limits_assignment_in_board_order(self, db, orchestrator, source):
        for i in (3, 1, 2):
            source.add(make_item(i))
        assigned = orchestrator.assign_eligible()
        assert [a.item_id for a in assigned] == [3, 1]
        assert ledger.count_active(db, "claude") == 2
        assert ledger.get_assignment_by_item(db, 2) is None

    def test_capacity_counts_existing_active(self, db, orchestrator, source):
        _in_progress(db, 10, "claude-a", pid=1)
        _in_progress(db, 11, "claude-b", pid=2)
        source.add(make_item(12))
        assert orchestrator.assign_eligible() == []

    def test_held_items_are_skipped(self, db, orchestrator, source):
        _in_progress(db, 10, "claude-a", pid=1)
        source.add(make_item(10))
        source.add(make_item(11))
        assigned = orchestrator.assign_eligible()
        assert [a.item_id for a in assigned] == [11]

    def test_stale_claim_on_ready_item_cleared_then_assigned(self, db, orchestrator, source):
        source.add(make_item(5, claimed_by="claude-deadbeef"))
        assigned = orchestrator.assign_eligible()
        assert [a.item_id for a in assigned] == [5]
        assert ("claim", 5, None) in source.writes
        assert source.items[5].claimed_by == assigned[0].instance_token

    def test_blocked_item_requeued_by_human_is_reassigned(self, db, orchestrator, source):
        a = _in_progress(db, 5, "claude-old")
        ledger.update_status(db, a.id, "blocked")
        source.add(make_item(5))
        assigned = orchestrator.assign_eligible()
        assert [x.item_id for x in assigned] == [5]
        assert assigned[0].instance_token != "claude-old"

    def test_unreachable_board_means_no_new_work(self, db, orchestrator, source):
        source.add(make_item(1))
        source.fail = True
        assert orchestrator.assign_eligible() == []
        assert ledger.list_assignments(db) == []

    def test_start_failure_leaves_item_for_next_tick(self, db, orchestrator, source, supervisor):
        source.add(make_item(1))
        supervisor.fail_start = True
        orchestrator.assign_eligible()
        a = ledger.get_assignment_by_item(db, 1)
        assert a.status == "assigned"
        assert a.instance_token is None
        assert source.items[1].status == "Ready"

        supervisor.fail_start = False
        orchestrator.check_assignments()
        a = ledger.get_assignment_by_item(db, 1)
        assert a.status == "in-progress"
        assert a.instance_token is not None

    def test_providers_share_the_queue(self, db, config, source, registry, reviewer):
        config.providers["claude"].max_concurrent = 1
        config.providers["codex"] = ProviderConfig("codex", max_concurrent=1)
        registry.register(FakeSupervisor("codex", config.output_dir))
        orch = Orchestrator(db, config, source, registry, reviewer=reviewer)
        for i in (1, 2, 3):
            source.add(make_item(i))

        assigned = orch.assign_eligible()

        assert [(a.item_id, a.provider) for a in assigned] == [(1, "claude"), (2, "codex")]


class TestExclusive:
    def test_live_exclusive_item_holds_everything(self, db, orchestrator, source, supervisor):
        supervisor.live_pids.add(3000)
        _in_progress(db, 1, "claude-excl", pid=3000, exclusive=True)
        source.add(make_item(2, labels=["BLOCK_ALL"]))
        source.add(make_item(3))

        assert orchestrator.assign_eligible() == []
        assert [a.item_id for a in ledger.list_active(db)] == [1]

    def test_first_exclusive_item_assigned_alone(self, db, orchestrator, source):
        source.add(make_item(1))
        source.add(make_item(2, labels=["BLOCK_ALL"]))
        source.add(make_item(3, labels=["block_all"]))

        assigned = orchestrator.assign_eligible()

        assert [a.item_id for a in assigned] == [2]
        assert assigned[0].exclusive is True

        # While it runs, nothing else is started
        assert orchestrator.assign_eligible() == []

    def test_dead_exclusive_item_is_reassigned(self, db, orchestrator, source, supervisor):
        _in_progress(db, 1, "claude-excl", pid=3000, exclusive=True)
        source.add(make_item(1, status="In Progress", labels=["BLOCK_ALL"], claimed_by="claude-excl"))
        source.add(make_item(2))

        assigned = orchestrator.assign_eligible()

        assert [a.item_id for a in assigned] == [1]
        assert assigned[0].instance_token != "claude-excl"
        assert ledger.get_assignment_by_item(db, 2) is None


class TestSupervision:
    def test_running_worker_left_alone(self, db, orchestrator, source, supervisor, reviewer):
        source.add(make_item(1))
        orchestrator.assign_eligible()
        handled = orchestrator.check_assignments()
        assert handled == [(1, "wait")]
        assert reviewer.calls == []

    def test_running_worker_records_activity(self, db, orchestrator, source):
        source.add(make_item(1))
        orchestrator.assign_eligible()
        db.execute("UPDATE assignments SET last_activity = NULL")
        db.commit()

        orchestrator.check_assignments()

        assert ledger.get_assignment_by_item(db, 1).last_activity is not None

    def test_missing_workspace_does_not_repeat_review(self, db, config, source, registry, supervisor, tmp_dir):
        reviewer = FakeReviewer(passed=False, remaining_work=["add tests"])
        workspaces = MagicMock()
        workspaces.prepare.side_effect = WorkspaceError("bad base branch")
        orch = Orchestrator(db, config, source, registry, reviewer=reviewer, workspaces=workspaces)
        a = ledger.create_assignment(
            db, 7, "Issue 7", "claude", "feature/issue-7", str(tmp_dir / "gone")
        )
        ledger.set_worker(db, a.id, "claude-dead0001", 5000)
        ledger.add_work_session(db, a.id, "claude-dead0001", prompt="initial")
        ledger.update_status(db, a.id, "in-progress")
        source.add(make_item(7, status="In Progress", claimed_by="claude-dead0001"))

        for _ in range(3):
            orch.check_assignments()

        assert len(reviewer.calls) == 1
        assert len(source.comments) == 1
        assert supervisor.started == []
        a = ledger.get_assignment_by_item(db, 7)
        assert a.status == "in-progress"
        assert a.instance_token is None

        workspaces.prepare.side_effect = None
        workspaces.prepare.return_value = str(tmp_dir)
        orch.check_assignments()
        assert ledger.get_assignment_by_item(db, 7).instance_token == supervisor.started[0][0]
        assert len(reviewer.calls) == 1

    def test_dead_worker_passing_review_is_dev_complete(self, db, orchestrator, source, reviewer):
        _in_progress(db, 7, "claude-dead0001", pid=5000)
        source.add(make_item(7, status="In Progress", claimed_by="claude-dead0001"))

        orchestrator.check_assignments()

        a = ledger.get_assignment_by_item(db, 7)
        assert a.status == "dev-complete"
        assert a.completed_at is not None
        assert reviewer.calls == [(7, "feature/issue-7")]
        assert source.items[7].claimed_by is None
        assert source.items[7].status == "Dev Complete"

    def test_complete_signal_skips_review(self, db, orchestrator, source, supervisor, reviewer):
        source.add(make_item(1))
        token = orchestrator.assign_eligible()[0].instance_token
        supervisor.finish(token, "Opened PR\nAUTONOMOUS_SIGNAL:COMPLETE: PR #88")

        orchestrator.check_assignments()

        a = ledger.get_assignment_by_item(db, 1)
        assert a.status == "dev-complete"
        assert a.result_ref == "88"
        assert reviewer.calls == []
        sessions = ledger.list_work_sessions(db, a.id)
        assert sessions[-1].ended_at is not None

    def test_blocked_signal(self, db, orchestrator, source, supervisor):
        source.add(make_item(1))
        token = orchestrator.assign_eligible()[0].instance_token
        supervisor.finish(token, "AUTONOMOUS_SIGNAL:BLOCKED: need staging credentials")

        orchestrator.check_assignments()

        a = ledger.get_assignment_by_item(db, 1)
        assert a.status == "blocked"
        assert source.items[1].claimed_by is None
        assert source.items[1].status == "Blocked"
        assert "need staging credentials" in source.comments[-1][1]
        assert len(supervisor.started) == 1

    def test_failed_signal_leaves_remote_status(self, db, orchestrator, source, supervisor):
        source.add(make_item(1))
        token = orchestrator.assign_eligible()[0].instance_token
        supervisor.finish(token, "AUTONOMOUS_SIGNAL:FAILED: cannot reproduce")

        orchestrator.check_assignments()

        assert ledger.get_assignment_by_item(db, 1).status == "failed"
        assert source.items[1].status == "In Progress"
        assert source.items[1].claimed_by is None

    def test_failed_review_resurrects(self, db, config, source, registry, supervisor):
        reviewer = FakeReviewer(passed=False, remaining_work=["add tests"])
        orch = Orchestrator(db, config, source, registry, reviewer=reviewer)
        source.add(make_item(1))
        first = orch.assign_eligible()[0].instance_token
        supervisor.finish(first, "wrote half of it")

        orch.check_assignments()

        a = ledger.get_assignment_by_item(db, 1)
        assert a.status == "in-progress"
        assert a.instance_token != first
        assert source.items[1].claimed_by == a.instance_token
        sessions = ledger.list_work_sessions(db, a.id)
        assert [s.instance_token for s in sessions] == [first, a.instance_token]
        assert sessions[0].summary == "wrote half of it"
        prompt = supervisor.started[-1][1]
        assert "add tests" in prompt
        assert "wrote half of it" in prompt
        assert "add tests" in source.comments[-1][1]
        assert "resurrected" in [e.event_type for e in ledger.get_events(db, 1)]

    def test_reviewer_error_resurrects(self, db, config, source, registry, supervisor):
        orch = Orchestrator(db, config, source, registry, reviewer=FakeReviewer(error=True))
        _in_progress(db, 7, "claude-dead0001", pid=5000)
        source.add(make_item(7, status="In Progress", claimed_by="claude-dead0001"))

        orch.check_assignments()

        a = ledger.get_assignment_by_item(db, 7)
        assert a.status == "in-progress"
        assert a.instance_token == supervisor.started[0][0]

    def test_no_reviewer_resurrects(self, db, config, source, registry, supervisor):
        orch = Orchestrator(db, config, source, registry)
        _in_progress(db, 7, "claude-dead0001", pid=5000)
        source.add(make_item(7, status="In Progress", claimed_by="claude-dead0001"))
        orch.check_assignments()
        assert len(supervisor.started) == 1

    def test_adopted_claim_without_process_is_started(self, db, orchestrator, source, supervisor, reviewer):
        source.add(make_item(9, status="In Progress", claimed_by="worker-abc"))
        orchestrator.reconcile()

        orchestrator.check_assignments()

        a = ledger.get_assignment_by_item(db, 9)
        assert a.instance_token == supervisor.started[0][0]
        assert reviewer.calls == []

    def test_one_bad_assignment_does_not_stop_others(self, db, orchestrator, source, supervisor):
        _in_progress(db, 1, "claude-a", pid=5001)
        _in_progress(db, 2, "claude-b", pid=5002)
        source.add(make_item(1, status="In Progress"))
        source.add(make_item(2, status="In Progress"))

        original = orchestrator._supervise

        def flaky(assignment, abandon):
            if assignment.item_id == 1:
                raise RuntimeError("boom")
            return original(assignment, abandon)

        with patch.object(orchestrator, "_supervise", side_effect=flaky):
            handled = orchestrator.check_assignments()

        assert [item for item, _ in handled] == [2]


class TestResurrectionPass:
    def test_remote_done_is_not_resurrected(self, db, orchestrator, source, supervisor):
        _in_progress(db, 5, "claude-gone", pid=5000)
        source.add(make_item(5, status="Done", claimed_by="claude-gone"))

        orchestrator.resurrect_dead_assignments()

        assert ledger.get_assignment_by_item(db, 5) is None
        assert supervisor.started == []

    def test_unsupervised_provider_is_abandoned(self, db, orchestrator, source):
        _in_progress(db, 5, "gemini-00000001", pid=5000, provider="gemini")
        source.add(make_item(5, status="In Progress", claimed_by="gemini-00000001"))

        orchestrator.resurrect_dead_assignments()

        assert ledger.get_assignment_by_item(db, 5) is None
        assert source.items[5].status == "Ready"
        assert source.items[5].claimed_by is None


class TestTick:
    def test_step_errors_do_not_stop_the_tick(self, orchestrator):
        orchestrator.check_assignments = MagicMock(side_effect=RuntimeError("boom"))
        orchestrator.assign_eligible = MagicMock(return_value=[])
        orchestrator.config.assign_every = 1
        orchestrator.tick()
        orchestrator.assign_eligible.assert_called_once()

    def test_schedule(self, orchestrator):
        cfg = orchestrator.config
        cfg.resurrect_every, cfg.reconcile_every, cfg.assign_every = 2, 3, 4
        for name in ("check_assignments", "resurrect_dead_assignments", "reconcile", "assign_eligible"):
            setattr(orchestrator, name, MagicMock(return_value=[]))

        for _ in range(12):
            orchestrator.tick()

        assert orchestrator.check_assignments.call_count == 12
        assert orchestrator.resurrect_dead_assignments.call_count == 6
        assert orchestrator.reconcile.call_count == 4
        assert orchestrator.assign_eligible.call_count == 3

    def test_freed_capacity_triggers_assignment(self, db, orchestrator, source, supervisor):
        orchestrator.config.assign_every = 100
        source.add(make_item(1))
        token = orchestrator.assign_eligible()[0].instance_token
        orchestrator.config.providers["claude"].max_concurrent = 1
        source.add(make_item(2))
        supervisor.finish(token, "AUTONOMOUS_SIGNAL:COMPLETE")

        orchestrator.tick()

        assert ledger.get_assignment_by_item(db, 2).status == "in-progress"

    def test_pending_config_applied_on_tick(self, orchestrator):
        new = orchestrator.config.__class__(
            db_path=orchestrator.config.db_path, repo_path=orchestrator.config.repo_path
        )
        new.providers = {"claude": ProviderConfig("claude", max_concurrent=7)}
        orchestrator.reconfigure(new)
        orchestrator.tick()
        assert orchestrator.config is new
        assert orchestrator.config.max_concurrent("claude") == 7


class TestEvaluation:
    def test_classifier_moves_items(self, db, config, source, registry):
        classifier = MagicMock()
        classifier.classify.return_value = [
            Classification(1, True),
            Classification(2, False, ["Which endpoint?"]),
        ]
        orch = Orchestrator(db, config, source, registry, classifier=classifier)
        source.add(make_item(1, status="Evaluate"))
        source.add(make_item(2, status="Evaluate"))
        source.add(make_item(3, status="Ready"))

        orch.evaluate_pending()

        assert [i.id for i in classifier.classify.call_args.args[0]] == [1, 2]
        assert source.items[1].status == "Evaluated"
        assert source.items[2].status == "Needs More Info"
        assert "Which endpoint?" in source.comments[-1][1]


class TestStopAndUnassign:
    def test_stop(self, db, config, source, registry, supervisor):
        handoff = MagicMock()
        watcher = MagicMock()
        orch = Orchestrator(db, config, source, registry, handoff=handoff, watcher=watcher)
        source.add(make_item(1))
        source.add(make_item(2))
        tokens = [a.instance_token for a in orch.assign_eligible()]
        done = ledger.get_assignment_by_item(db, 1)
        ledger.update_status(db, done.id, "dev-complete")

        orch.stop()

        handoff.process_dev_complete.assert_called_once()
        assert [a.item_id for a in handoff.process_dev_complete.call_args.args[0]] == [1]
        watcher.stop.assert_called_once()
        assert supervisor.stopped == [tokens[1]]

    def test_stop_tolerates_failures(self, db, config, source, registry, supervisor):
        handoff = MagicMock()
        handoff.process_dev_complete.side_effect = RuntimeError("merge broke")
        orch = Orchestrator(db, config, source, registry, handoff=handoff)
        source.add(make_item(1))
        source.add(make_item(2))
        orch.assign_eligible()
        ledger.update_status(db, ledger.get_assignment_by_item(db, 1).id, "dev-complete")
        supervisor.stop = MagicMock(side_effect=OSError("gone"))

        orch.stop()
        orch.stop()

        assert supervisor.stop.call_count == 1

    def test_unassign(self, db, orchestrator, source, supervisor):
        source.add(make_item(1))
        token = orchestrator.assign_eligible()[0].instance_token

        assert orchestrator.unassign(1)

        assert ledger.get_assignment_by_item(db, 1) is None
        assert supervisor.stopped == [token]
        assert source.items[1].status == "Ready"
        assert source.items[1].claimed_by is None
        assert orchestrator.unassign(1) is False


class TestDryRunAndReport:
    def test_dry_run_starts_nothing(self, db, orchestrator, source, supervisor):
        for i in (1, 2, 3):
            source.add(make_item(i, claimed_by="claude-old" if i == 1 else None))
        plan = orchestrator.dry_run()
        assert [(p, item.id) for p, item in plan] == [("claude", 1), ("claude", 2)]
        assert supervisor.started == []
        assert source.writes == []

    def test_capacity_report(self, db, config):
        _in_progress(db, 1, "claude-a")
        report = capacity_report(db, config)
        assert report["providers"]["claude"] == {"active": 1, "limit": 2, "available": 1}
        assert report["counts"]["in-progress"] == 1
