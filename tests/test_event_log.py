"""
Tests for the run event log.

Consumer event mapping, cursor reads, the retry boundary and sequence
monotonicity under arbitrary append mixes.
"""

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from devrunner.config import Config
from devrunner.db.database import SQLiteDatabase
from devrunner.models.domain import RunEventType, RunStatus
from devrunner.services.base import ServiceContext
from devrunner.services.events import (
    RunEventLog,
    get_retry_boundary_sequence,
    map_event_type,
)


def status_event(sequence, status, action=None, message="status"):
    payload = {"status": status}
    if action:
        payload["action"] = action
    return {"eventType": "run_status", "sequence": sequence, "message": message, "payload": payload}


# =============================================================================
# Consumer mapping
# =============================================================================

class TestEventMapping:
    @pytest.mark.parametrize(
        "stored,expected",
        [
            (RunEventType.RUN_STATUS, "run_status"),
            (RunEventType.QUALITY_GATE, "quality_gate"),
            (RunEventType.DEPLOY_STATUS, "deploy_status"),
            (RunEventType.ERROR, "error"),
            (RunEventType.INFO, "info"),
            ("SOMETHING_NEW", "info"),
        ],
    )
    def test_map_event_type(self, stored, expected):
        assert map_event_type(stored) == expected

    def test_append_rejects_unknown_type(self, events, db, project):
        run = db.create_run(project.id, status=RunStatus.QUEUED)
        with pytest.raises(ValueError):
            events.append(run.id, "BOGUS", "x")

    def test_list_events_returns_consumer_dicts(self, events, db, project):
        run = db.create_run(project.id, status=RunStatus.QUEUED)
        events.append(run.id, RunEventType.RUN_STATUS, "Run queued", {"status": RunStatus.QUEUED})
        events.append(run.id, RunEventType.INFO, "hello")

        listed = events.list_events(run.id)
        assert [e["eventType"] for e in listed] == ["run_status", "info"]
        assert listed[0]["payload"] == {"status": "QUEUED"}
        assert events.list_events(run.id, 1)[0]["message"] == "hello"
        assert events.list_events(run.id, 2) == []


# =============================================================================
# Retry boundary
# =============================================================================

class TestRetryBoundary:
    def test_no_events(self):
        assert get_retry_boundary_sequence([]) == 0

    def test_first_start_is_not_a_boundary(self):
        events = [status_event(1, RunStatus.QUEUED), status_event(2, RunStatus.RUNNING)]
        assert get_retry_boundary_sequence(events) == 0

    def test_resume_actions_are_boundaries(self):
        events = [
            status_event(1, RunStatus.RUNNING),
            status_event(4, RunStatus.WAITING_CHECKPOINT),
            status_event(6, RunStatus.RUNNING, action="resume"),
            status_event(9, RunStatus.WAITING_CHECKPOINT),
            status_event(11, RunStatus.RUNNING, action="manual_resume"),
        ]
        assert get_retry_boundary_sequence(events) == 11

    def test_running_after_checkpoint_without_action(self):
        events = [status_event(3, RunStatus.WAITING_CHECKPOINT), status_event(5, RunStatus.RUNNING)]
        assert get_retry_boundary_sequence(events) == 5

    def test_retry_message_counts(self):
        events = [status_event(2, RunStatus.RUNNING, message="Run retry requested")]
        assert get_retry_boundary_sequence(events) == 2

    def test_non_status_events_are_ignored(self):
        events = [
            {"eventType": "info", "sequence": 8, "message": "x", "payload": {"status": "RUNNING", "action": "retry"}},
        ]
        assert get_retry_boundary_sequence(events) == 0

    def test_log_reads_boundary_from_storage(self, events, db, project):
        run = db.create_run(project.id, status=RunStatus.QUEUED)
        events.append(run.id, RunEventType.RUN_STATUS, "Run started", {"status": RunStatus.RUNNING})
        events.append(run.id, RunEventType.INFO, "noise")
        events.append(run.id, RunEventType.RUN_STATUS, "Run waiting checkpoint", {"status": "WAITING_CHECKPOINT"})
        resumed = events.append(
            run.id, RunEventType.RUN_STATUS, "Run resumed", {"status": RunStatus.RUNNING, "action": "approve"}
        )
        assert events.get_retry_boundary(run.id) == resumed.sequence


# =============================================================================
# Properties
# =============================================================================

@settings(max_examples=50, deadline=None)
@given(types=st.lists(st.sampled_from(RunEventType.ALL), min_size=1, max_size=25))
def test_sequences_strictly_increase_from_one(types):
    """
    Property: for any mix of appended events, sequences read back are
    exactly 1..n in order and every cursor read is a suffix.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db = SQLiteDatabase(Path(tmpdir) / "events.sqlite")
        db.init_schema()
        project = db.create_project("p")
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        log = RunEventLog(ServiceContext(config=Config()), db)

        for event_type in types:
            log.append(run.id, event_type, event_type.lower())

        listed = log.list_events(run.id, limit=1000)
        assert [e["sequence"] for e in listed] == list(range(1, len(types) + 1))
        cursor = len(types) // 2
        assert log.list_events(run.id, cursor, limit=1000) == listed[cursor:]


@settings(max_examples=100, deadline=None)
@given(
    statuses=st.lists(
        st.tuples(
            st.sampled_from([RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.WAITING_CHECKPOINT, RunStatus.FAILED]),
            st.sampled_from([None, "resume", "approve", "retry", "baby_step_pause"]),
        ),
        max_size=20,
    )
)
def test_boundary_is_zero_or_a_running_event(statuses):
    """Property: the boundary is 0 or the sequence of some RUNNING status event."""
    events = [status_event(i + 1, status, action) for i, (status, action) in enumerate(statuses)]
    boundary = get_retry_boundary_sequence(events)
    running = {e["sequence"] for e in events if e["payload"]["status"] == RunStatus.RUNNING}
    assert boundary == 0 or boundary in running
