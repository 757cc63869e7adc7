"""
Tests for the SQLite persistence layer.

Covers project/run/iteration round trips, the quality gate upsert, the
close-once agent task rule and per-run event sequencing.
"""

import threading

import pytest

from devrunner.models.domain import (
    ACTIVE_RUN_STATUSES,
    AgentTaskStatus,
    IterationStatus,
    RunEventType,
    RunStatus,
)


# =============================================================================
# Projects and runs
# =============================================================================

class TestProjectsAndRuns:
    def test_project_json_columns_round_trip(self, db, project):
        loaded = db.get_project(project.id)
        assert loaded.business_plan["name"] == "Task Board"
        assert loaded.technical_plan["pages"][0]["path"] == "/"
        assert loaded.status == "DRAFT"
        assert loaded.secrets is None

    def test_missing_rows_raise_key_error(self, db):
        with pytest.raises(KeyError):
            db.get_project("nope")
        with pytest.raises(KeyError):
            db.get_run("nope")
        with pytest.raises(KeyError):
            db.get_iteration("nope")

    def test_update_rejects_unknown_columns(self, db, project):
        with pytest.raises(ValueError):
            db.update_project(project.id, git_url="x")

    def test_run_snapshot_persists(self, db, project):
        run = db.create_run(project.id, status=RunStatus.QUEUED, plans_snapshot={"projectName": "X"})
        assert db.get_run(run.id).plans_snapshot == {"projectName": "X"}
        assert run.current_iteration == 0

    def test_find_active_run_ignores_terminal_runs(self, db, project):
        done = db.create_run(project.id, status=RunStatus.SUCCEEDED)
        assert db.find_active_run(project.id, sorted(ACTIVE_RUN_STATUSES)) is None

        active = db.create_run(project.id, status=RunStatus.WAITING_CHECKPOINT)
        found = db.find_active_run(project.id, sorted(ACTIVE_RUN_STATUSES))
        assert found is not None
        assert found.id == active.id != done.id

    def test_update_run_can_clear_columns(self, db, project):
        run = db.create_run(project.id, status=RunStatus.FAILED)
        db.update_run(run.id, error_summary="boom")
        cleared = db.update_run(run.id, error_summary=None)
        assert cleared.error_summary is None


# =============================================================================
# Iterations and gates
# =============================================================================

class TestIterations:
    def _create(self, db, project):
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        return run, db.create_iterations(
            run.id,
            [
                {"index": 2, "name": "Core", "scope": {"goals": ["b"]}, "branch_name": "iter/x-2-core"},
                {"index": 1, "name": "Foundation", "scope": {"goals": ["a"], "featureTags": ["@iter_f"]}},
            ],
        )

    def test_iterations_are_ordered_by_index(self, db, project):
        _, iterations = self._create(db, project)
        assert [it.index for it in iterations] == [1, 2]
        assert iterations[0].status == IterationStatus.PENDING
        assert iterations[0].scope.feature_tags == ["@iter_f"]
        assert iterations[1].branch_name == "iter/x-2-core"

    def test_get_iteration_by_index(self, db, project):
        run, _ = self._create(db, project)
        assert db.get_iteration_by_index(run.id, 2).name == "Core"
        assert db.get_iteration_by_index(run.id, 9) is None

    def test_quality_gate_upsert_keeps_one_row_per_gate(self, db, project):
        _, iterations = self._create(db, project)
        iteration_id = iterations[0].id
        db.upsert_quality_gate(iteration_id, "BUILD", passed=False, report={"snippet": "x"})
        db.upsert_quality_gate(iteration_id, "BUILD", passed=True, duration_ms=12)

        gates = db.list_quality_gates(iteration_id)
        assert len(gates) == 1
        assert gates[0].passed is True
        assert gates[0].duration_ms == 12
        assert gates[0].report is None


# =============================================================================
# Agent tasks
# =============================================================================

class TestAgentTasks:
    def test_task_is_closed_once(self, db, project):
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        task = db.create_agent_task(run.id, "SpecAgent", "hash")
        assert task.status == AgentTaskStatus.RUNNING

        db.complete_agent_task(task.id, status=AgentTaskStatus.SUCCEEDED, output={"ok": True}, duration_ms=5)
        again = db.complete_agent_task(task.id, status=AgentTaskStatus.FAILED, error_message="late")

        assert again.status == AgentTaskStatus.SUCCEEDED
        assert again.output == {"ok": True}
        assert again.error_message is None
        assert again.finished_at


# =============================================================================
# Run events
# =============================================================================

class TestRunEvents:
    def test_sequences_are_per_run(self, db, project):
        first = db.create_run(project.id, status=RunStatus.RUNNING)
        second = db.create_run(project.id, status=RunStatus.RUNNING)
        db.append_run_event(first.id, RunEventType.INFO, "a")
        db.append_run_event(first.id, RunEventType.INFO, "b")
        event = db.append_run_event(second.id, RunEventType.INFO, "c")

        assert event.sequence == 1
        assert [e.sequence for e in db.list_run_events(first.id)] == [1, 2]

    def test_list_after_cursor_and_filter(self, db, project):
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        db.append_run_event(run.id, RunEventType.INFO, "a")
        db.append_run_event(run.id, RunEventType.RUN_STATUS, "b", {"status": "RUNNING"})
        db.append_run_event(run.id, RunEventType.INFO, "c")

        assert [e.message for e in db.list_run_events(run.id, after_sequence=1)] == ["b", "c"]
        only_status = db.list_run_events(run.id, event_types=[RunEventType.RUN_STATUS])
        assert [e.payload for e in only_status] == [{"status": "RUNNING"}]

    def test_concurrent_appends_never_duplicate_sequences(self, db, project):
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        errors = []

        def _writer():
            for _ in range(10):
                try:
                    db.append_run_event(run.id, RunEventType.INFO, "x")
                except Exception as exc:  # sqlite may refuse a write under contention
                    errors.append(exc)

        threads = [threading.Thread(target=_writer) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        sequences = [e.sequence for e in db.list_run_events(run.id, limit=None)]
        assert len(sequences) == len(set(sequences))
        assert sequences == list(range(1, len(sequences) + 1))
        assert len(sequences) + len(errors) == 40
