"""
DevRunner Run Event Log

Append-only, per-run event stream. Sequence numbers are assigned by the
database and strictly increase within a run. Consumers read forward from a
cursor and use the retry boundary to discard events from superseded attempts.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional

from devrunner.models.domain import RunEvent, RunEventType, RunStatus
from devrunner.services.base import Service, ServiceContext

DEFAULT_EVENT_PAGE_SIZE = 200

# Actions on a RUNNING status event that start a new attempt.
RETRY_BOUNDARY_ACTIONS = frozenset({"resume", "approve", "retry", "manual_resume", "auto_resume"})

_CONSUMER_EVENT_TYPES = {
    RunEventType.RUN_STATUS: "run_status",
    RunEventType.ITERATION_STATUS: "iteration_status",
    RunEventType.AGENT_TASK: "agent_task",
    RunEventType.QUALITY_GATE: "quality_gate",
    RunEventType.DEPLOY_STATUS: "deploy_status",
    RunEventType.ERROR: "error",
}


def map_event_type(event_type: str) -> str:
    """Render a stored event type the way consumers see it (lowercase, unknown -> info)."""
    return _CONSUMER_EVENT_TYPES.get(event_type, "info")


def event_to_dict(event: RunEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "runId": event.run_id,
        "iterationId": event.iteration_id,
        "sequence": event.sequence,
        "eventType": map_event_type(event.event_type),
        "message": event.message,
        "payload": event.payload,
        "createdAt": event.created_at,
    }


def _field(event: Any, name: str, alt: Optional[str] = None) -> Any:
    if isinstance(event, Mapping):
        value = event.get(name)
        if value is None and alt:
            value = event.get(alt)
        return value
    return getattr(event, alt or name, None)


def get_retry_boundary_sequence(events: Iterable[Any]) -> int:
    """
    Find the sequence of the latest RUN_STATUS event that started a new attempt.

    Accepts RunEvent objects or consumer dicts, in ascending sequence order.
    A RUNNING status counts as a boundary when it carries a resume-like action,
    when it follows WAITING_CHECKPOINT or FAILED without any action, or when
    its message says a retry was requested. Returns 0 when there is none.
    """
    boundary = 0
    previous_status: Optional[str] = None

    for event in events:
        event_type = _field(event, "eventType", "event_type")
        if event_type not in ("run_status", RunEventType.RUN_STATUS):
            continue

        payload = _field(event, "payload") or {}
        status = payload.get("status") if isinstance(payload.get("status"), str) else None
        action = payload.get("action") if isinstance(payload.get("action"), str) else None
        message = _field(event, "message")
        is_retry_message = isinstance(message, str) and "retry requested" in message.lower()
        is_resume_without_action = (
            status == RunStatus.RUNNING
            and not action
            and previous_status in (RunStatus.WAITING_CHECKPOINT, RunStatus.FAILED)
        )

        if status == RunStatus.RUNNING and (
            action in RETRY_BOUNDARY_ACTIONS or is_resume_without_action or is_retry_message
        ):
            boundary = int(_field(event, "sequence"))

        if status:
            previous_status = status

    return boundary


class RunEventLog(Service):
    """
    Service wrapper around the run_events table.

    Every write is mirrored to the structured log so operators can follow a
    run without reading the database.
    """

    def __init__(self, context: ServiceContext, db) -> None:
        super().__init__(context)
        self.db = db

    def append(
        self,
        run_id: str,
        event_type: str,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        *,
        iteration_id: Optional[str] = None,
    ) -> RunEvent:
        if event_type not in RunEventType.ALL:
            raise ValueError(f"Unknown run event type: {event_type}")
        event = self.db.append_run_event(
            run_id,
            event_type,
            message=message,
            payload=payload,
            iteration_id=iteration_id,
        )
        self.logger.debug(
            "run_event_appended",
            extra=self.log_extra(
                run_id=run_id,
                iteration_id=iteration_id,
                event_type=event_type,
                sequence=event.sequence,
                event_message=message,
            ),
        )
        return event

    def list_events(
        self,
        run_id: str,
        after_sequence: int = 0,
        *,
        limit: int = DEFAULT_EVENT_PAGE_SIZE,
    ) -> List[Dict[str, Any]]:
        """Events with sequence > after_sequence, ascending, as consumer dicts."""
        events = self.db.list_run_events(run_id, after_sequence=after_sequence, limit=limit)
        return [event_to_dict(event) for event in events]

    def get_retry_boundary(self, run_id: str) -> int:
        events = self.db.list_run_events(
            run_id,
            limit=None,
            event_types=[RunEventType.RUN_STATUS],
        )
        return get_retry_boundary_sequence(events)
