"""
DevRunner Agent Harness

Wraps every agent call in an AgentTaskRun record and a pair of AGENT_TASK
events. The agent's own exception always propagates unchanged; the harness
only records it.
"""

import time
from typing import Any, Callable, Dict, Optional

from devrunner.agents.runtime import AgentResult
from devrunner.models.domain import AgentTaskStatus, RunEventType
from devrunner.services.base import Service, ServiceContext
from devrunner.utils import hash_input

_RELEASE_ERROR_FIELDS = ("phase", "step", "summary", "details")


def error_output(exc: BaseException) -> Optional[Dict[str, str]]:
    """Release-style diagnostics carried by an exception, if any."""
    output = {
        name: getattr(exc, name)
        for name in _RELEASE_ERROR_FIELDS
        if isinstance(getattr(exc, name, None), str) and getattr(exc, name)
    }
    return output or None


class AgentHarness(Service):
    """Records agent executions. Holds no state between calls."""

    def __init__(self, context: ServiceContext, db, events) -> None:
        super().__init__(context)
        self.db = db
        self.events = events

    def execute_agent(
        self,
        run_id: str,
        agent_name: str,
        payload: Optional[Dict[str, Any]],
        run: Callable[[], AgentResult],
        *,
        iteration_id: Optional[str] = None,
    ) -> AgentResult:
        started = time.monotonic()
        task = self.db.create_agent_task(
            run_id,
            agent_name,
            hash_input(payload),
            iteration_id=iteration_id,
        )
        self.events.append(
            run_id,
            RunEventType.AGENT_TASK,
            f"{agent_name} started",
            {"taskId": task.id, "agentName": agent_name, "status": AgentTaskStatus.RUNNING},
            iteration_id=iteration_id,
        )

        try:
            result = run()
        except Exception as exc:
            message = str(exc) or "Agent failed"
            self._complete(
                run_id,
                iteration_id,
                task.id,
                agent_name,
                started,
                status=AgentTaskStatus.FAILED,
                output=error_output(exc),
                error_message=message,
            )
            self.logger.warning(
                "agent_task_failed",
                extra=self.log_extra(
                    run_id=run_id,
                    iteration_id=iteration_id,
                    agent_name=agent_name,
                    task_id=task.id,
                    error=message,
                ),
            )
            raise

        self._complete(
            run_id,
            iteration_id,
            task.id,
            agent_name,
            started,
            status=AgentTaskStatus.SUCCEEDED,
            output=result.output if isinstance(result.output, dict) else None,
            token_usage=result.token_usage,
            cost=result.cost,
        )
        return result

    def _complete(
        self,
        run_id: str,
        iteration_id: Optional[str],
        task_id: str,
        agent_name: str,
        started: float,
        *,
        status: str,
        output: Optional[Dict[str, Any]] = None,
        token_usage: Optional[int] = None,
        cost: Optional[float] = None,
        error_message: Optional[str] = None,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        self.db.complete_agent_task(
            task_id,
            status=status,
            output=output,
            token_usage=token_usage,
            cost=cost,
            duration_ms=duration_ms,
            error_message=error_message,
        )
        payload: Dict[str, Any] = {
            "taskId": task_id,
            "agentName": agent_name,
            "status": status,
            "durationMs": duration_ms,
        }
        if error_message:
            payload["error"] = error_message
        self.events.append(
            run_id,
            RunEventType.AGENT_TASK,
            f"{agent_name} {status.lower()}",
            payload,
            iteration_id=iteration_id,
        )
