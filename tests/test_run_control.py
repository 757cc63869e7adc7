"""
Tests for run control operations.

The orchestrator is never started here; enqueued run ids are recorded.
"""

import pytest

from devrunner.errors import EntityNotFoundError, RunControlError, ValidationError
from devrunner.models.domain import IterationStatus, ProjectStatus, RunStatus
from devrunner.services.run_control import RunControlService


@pytest.fixture
def enqueued():
    return []


@pytest.fixture
def control(context, db, events, registry, enqueued):
    return RunControlService(context, db, events=events, registry=registry, enqueue=enqueued.append)


def parked_run(db, project, *, status=RunStatus.WAITING_CHECKPOINT, attempts=3):
    run = db.create_run(project.id, status=status)
    first, second = db.create_iterations(
        run.id, [{"index": 1, "name": "Foundation"}, {"index": 2, "name": "Core Features"}]
    )
    db.update_iteration(first.id, status=IterationStatus.FAILED, attempt_count=attempts)
    db.update_run(run.id, current_iteration=1, total_iterations=2, error_summary="BUILD")
    return db.get_run(run.id)


# =============================================================================
# Create
# =============================================================================

class TestCreateRun:
    def test_creates_queued_run_with_snapshot(self, control, db, events, project, enqueued):
        result = control.create_run(project.id)

        assert not result.already_active
        assert result.run.status == RunStatus.QUEUED
        assert result.run.plans_snapshot["projectName"] == "Task Board"
        assert result.run.plans_snapshot["technicalPlan"]["pages"][0]["name"] == "Home"
        assert enqueued == [result.run.id]
        assert events.list_events(result.run.id)[0]["payload"] == {"status": "QUEUED"}

    def test_returns_active_run_instead_of_creating(self, control, project, enqueued):
        first = control.create_run(project.id).run
        second = control.create_run(project.id)
        assert second.already_active
        assert second.run.id == first.id
        assert enqueued == [first.id]

    def test_terminal_runs_do_not_block(self, control, db, project):
        old = db.create_run(project.id, status=RunStatus.FAILED)
        assert control.create_run(project.id).run.id != old.id

    def test_missing_plans(self, control, db):
        bare = db.create_project("Bare", business_plan={"name": "x"})
        with pytest.raises(RunControlError) as exc_info:
            control.create_run(bare.id)
        assert str(exc_info.value) == "PLAN_PREREQUISITES_NOT_MET"

    def test_missing_project(self, control):
        with pytest.raises(EntityNotFoundError) as exc_info:
            control.create_run("nope")
        assert str(exc_info.value) == "PROJECT_NOT_FOUND"


# =============================================================================
# Read
# =============================================================================

class TestGetRun:
    def test_details_include_gates_and_tasks(self, control, db, project):
        run = parked_run(db, project)
        first = db.list_iterations(run.id)[0]
        db.upsert_quality_gate(first.id, "UNIT", passed=True)
        db.upsert_quality_gate(first.id, "BUILD", passed=False)
        db.create_agent_task(run.id, "SpecAgent", "h", iteration_id=first.id)

        details = control.get_run(project.id, run.id)

        assert [d.iteration.index for d in details.iterations] == [1, 2]
        assert [g.gate_type for g in details.iterations[0].quality_gates] == ["BUILD", "UNIT"]
        assert len(details.iterations[0].agent_tasks) == 1
        assert details.summary["status"] == RunStatus.WAITING_CHECKPOINT
        assert details.summary["totalIterations"] == 2

    def test_run_of_another_project_is_not_found(self, control, db, project):
        other = db.create_project("Other")
        run = db.create_run(other.id, status=RunStatus.QUEUED)
        with pytest.raises(EntityNotFoundError) as exc_info:
            control.get_run(project.id, run.id)
        assert str(exc_info.value) == "RUN_NOT_FOUND"


# =============================================================================
# Cancel / retry / recover
# =============================================================================

class TestCancelRetryRecover:
    def test_cancel(self, control, db, project):
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        canceled = control.cancel_run(project.id, run.id)

        assert canceled.status == RunStatus.CANCELED
        assert canceled.canceled_at and canceled.finished_at
        assert db.get_project(project.id).status == ProjectStatus.FAILED

    def test_cancel_terminal_is_a_no_op(self, control, db, events, project):
        run = db.create_run(project.id, status=RunStatus.SUCCEEDED)
        assert control.cancel_run(project.id, run.id).status == RunStatus.SUCCEEDED
        assert events.list_events(run.id) == []

    def test_retry_resets_failed_iteration(self, control, db, events, project, enqueued):
        run = parked_run(db, project)
        updated = control.retry_run(project.id, run.id)

        assert updated.status == RunStatus.RUNNING
        assert updated.error_summary is None
        first = db.list_iterations(run.id)[0]
        assert (first.status, first.attempt_count) == (IterationStatus.PENDING, 0)
        assert enqueued == [run.id]
        last = events.list_events(run.id)[-1]
        assert last["payload"]["action"] == "retry"
        assert events.get_retry_boundary(run.id) == last["sequence"]

    @pytest.mark.parametrize("status", [RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.SUCCEEDED])
    def test_retry_rejects_other_statuses(self, control, db, project, status):
        run = db.create_run(project.id, status=status)
        with pytest.raises(RunControlError) as exc_info:
            control.retry_run(project.id, run.id)
        assert str(exc_info.value) == "RUN_NOT_RETRYABLE"

    def test_recover_resets_exhausted_iteration(self, control, db, events, project, enqueued):
        run = parked_run(db, project, status=RunStatus.RUNNING)
        result = control.recover_run(project.id, run.id)

        assert not result.already_processing
        assert result.run.status == RunStatus.RUNNING
        assert db.list_iterations(run.id)[0].attempt_count == 0
        messages = [e["message"] for e in events.list_events(run.id)]
        assert messages[-2:] == ["Iteration retries reset before manual resume", "Run manually resumed by user"]
        assert events.list_events(run.id)[-1]["payload"]["action"] == "manual_resume"
        assert enqueued == [run.id]

    def test_recover_keeps_attempts_left(self, control, db, project):
        run = parked_run(db, project, status=RunStatus.RUNNING, attempts=1)
        control.recover_run(project.id, run.id)
        assert db.list_iterations(run.id)[0].attempt_count == 1

    def test_recover_live_worker(self, control, db, project, registry, enqueued):
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        registry.try_mark_active(run.id)
        assert control.recover_run(project.id, run.id).already_processing
        assert control.is_active_in_worker(run.id)
        assert enqueued == []

    def test_recover_rejects_parked_run(self, control, db, project):
        run = parked_run(db, project)
        with pytest.raises(RunControlError) as exc_info:
            control.recover_run(project.id, run.id)
        assert str(exc_info.value) == "RUN_NOT_RECOVERABLE"


# =============================================================================
# Checkpoint actions
# =============================================================================

class TestCheckpointActions:
    def test_pause(self, control, db, project, enqueued):
        run = parked_run(db, project, status=RunStatus.RUNNING)
        updated = control.checkpoint_action(project.id, run.id, 2, "pause")

        assert updated.status == RunStatus.WAITING_CHECKPOINT
        assert updated.error_summary == "Paused manually at iteration 2"
        assert enqueued == []

    @pytest.mark.parametrize("action", ["resume", "approve"])
    def test_resume_and_approve(self, control, db, events, project, enqueued, action):
        run = parked_run(db, project)
        updated = control.checkpoint_action(project.id, run.id, 1, action)

        assert updated.status == RunStatus.RUNNING
        assert db.list_iterations(run.id)[0].status == IterationStatus.PENDING
        assert enqueued == [run.id]
        last = events.list_events(run.id)[-1]
        assert last["message"] == f"Run resumed from checkpoint ({action})"
        assert events.get_retry_boundary(run.id) == last["sequence"]

    def test_invalid_action(self, control, db, project):
        run = parked_run(db, project)
        with pytest.raises(ValidationError):
            control.checkpoint_action(project.id, run.id, 1, "skip")

    def test_unknown_iteration(self, control, db, project):
        run = parked_run(db, project)
        with pytest.raises(EntityNotFoundError) as exc_info:
            control.checkpoint_action(project.id, run.id, 9, "resume")
        assert str(exc_info.value) == "ITERATION_NOT_FOUND"
