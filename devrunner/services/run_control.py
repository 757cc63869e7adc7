"""
DevRunner Run Control Service

Control operations on development runs: create, read, cancel, retry,
recover and checkpoint actions. These are the only writers of run status
outside the orchestrator loop, and each one that resumes a run hands it
back to the orchestrator through enqueue.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from devrunner.errors import EntityNotFoundError, RunControlError, ValidationError
from devrunner.models.domain import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    AgentTaskRun,
    ApprovedPlan,
    DevelopmentRun,
    IterationRun,
    IterationStatus,
    PlanSnapshot,
    ProjectStatus,
    QualityGateRun,
    RunEventType,
    RunStatus,
)
from devrunner.services.base import Service, ServiceContext
from devrunner.services.events import DEFAULT_EVENT_PAGE_SIZE, RunEventLog
from devrunner.services.retry import MAX_ITERATION_ATTEMPTS, attempts_exhausted
from devrunner.services.worker_registry import WorkerRegistry, get_worker_registry
from devrunner.services.workspace import WorkspaceService
from devrunner.utils import utcnow

CHECKPOINT_ACTIONS = ("pause", "resume", "approve")


@dataclass
class CreateRunResult:
    run: DevelopmentRun
    already_active: bool = False


@dataclass
class RecoverRunResult:
    run: DevelopmentRun
    already_processing: bool = False


@dataclass
class IterationDetails:
    iteration: IterationRun
    quality_gates: List[QualityGateRun] = field(default_factory=list)
    agent_tasks: List[AgentTaskRun] = field(default_factory=list)


@dataclass
class RunDetails:
    run: DevelopmentRun
    iterations: List[IterationDetails] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, Any]:
        """Read model external viewers poll alongside the event stream."""
        return {
            "id": self.run.id,
            "status": self.run.status,
            "currentIteration": self.run.current_iteration,
            "totalIterations": self.run.total_iterations,
            "errorSummary": self.run.error_summary,
            "startedAt": self.run.started_at,
            "finishedAt": self.run.finished_at,
            "canceledAt": self.run.canceled_at,
            "createdAt": self.run.created_at,
            "updatedAt": self.run.updated_at,
        }


class RunControlService(Service):
    """
    Entry points for starting and steering runs.

    Example:
        control = RunControlService(context, db)
        created = control.create_run(project.id)
        control.checkpoint_action(project.id, created.run.id, 1, "pause")
    """

    def __init__(
        self,
        context: ServiceContext,
        db,
        *,
        events: Optional[RunEventLog] = None,
        workspace: Optional[WorkspaceService] = None,
        registry: Optional[WorkerRegistry] = None,
        enqueue: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__(context)
        self.db = db
        self.events = events or RunEventLog(context, db)
        self.workspace = workspace or WorkspaceService(context, db, self.events)
        self.registry = registry or get_worker_registry()
        self._enqueue = enqueue

    def enqueue(self, run_id: str) -> None:
        if self._enqueue is None:
            from devrunner.services.orchestrator import OrchestratorService

            orchestrator = OrchestratorService(
                self.context,
                self.db,
                events=self.events,
                registry=self.registry,
                workspace=self.workspace,
            )
            self._enqueue = orchestrator.enqueue
        self._enqueue(run_id)

    # -- lookups ---------------------------------------------------------------

    def _get_project_run(self, project_id: str, run_id: str) -> DevelopmentRun:
        try:
            run = self.db.get_run(run_id)
        except KeyError:
            raise EntityNotFoundError("RUN_NOT_FOUND", metadata={"run_id": run_id}) from None
        if run.project_id != project_id:
            raise EntityNotFoundError("RUN_NOT_FOUND", metadata={"run_id": run_id, "project_id": project_id})
        return run

    # -- operations ------------------------------------------------------------

    def create_run(self, project_id: str, approved_plan: Optional[ApprovedPlan] = None) -> CreateRunResult:
        """Create and enqueue a run, or return the project's active one."""
        try:
            project = self.db.get_project(project_id)
        except KeyError:
            raise EntityNotFoundError("PROJECT_NOT_FOUND", metadata={"project_id": project_id}) from None

        active = self.db.find_active_run(project_id, sorted(ACTIVE_RUN_STATUSES))
        if active is not None:
            return CreateRunResult(run=active, already_active=True)

        if not project.business_plan or not project.technical_plan or not project.ux_plan:
            raise RunControlError("PLAN_PREREQUISITES_NOT_MET", metadata={"project_id": project_id})

        snapshot = PlanSnapshot(
            project_name=project.name,
            project_description=project.description,
            business_plan=project.business_plan,
            technical_plan=project.technical_plan,
            ux_plan=project.ux_plan,
            approved_assessment=approved_plan.assessment.to_dict() if approved_plan else None,
            approved_iterations=[item.to_dict() for item in approved_plan.iterations] if approved_plan else None,
        )
        run = self.db.create_run(project_id, status=RunStatus.QUEUED, plans_snapshot=snapshot.to_dict())
        self.events.append(run.id, RunEventType.RUN_STATUS, "Run queued", {"status": RunStatus.QUEUED})
        self.logger.info(
            "run_created",
            extra=self.log_extra(project_id=project_id, run_id=run.id, approved_plan=approved_plan is not None),
        )
        self.enqueue(run.id)
        return CreateRunResult(run=run, already_active=False)

    def get_run(self, project_id: str, run_id: str) -> RunDetails:
        run = self._get_project_run(project_id, run_id)
        details = []
        for iteration in self.db.list_iterations(run_id):
            gates = sorted(self.db.list_quality_gates(iteration.id), key=lambda g: g.gate_type)
            details.append(
                IterationDetails(
                    iteration=iteration,
                    quality_gates=gates,
                    agent_tasks=self.db.list_agent_tasks(run_id, iteration_id=iteration.id),
                )
            )
        return RunDetails(run=run, iterations=details)

    def list_events(
        self,
        run_id: str,
        after_sequence: int = 0,
        *,
        limit: int = DEFAULT_EVENT_PAGE_SIZE,
    ) -> List[Dict[str, Any]]:
        return self.events.list_events(run_id, after_sequence, limit=limit)

    def get_retry_boundary(self, run_id: str) -> int:
        return self.events.get_retry_boundary(run_id)

    def is_active_in_worker(self, run_id: str) -> bool:
        return self.registry.is_active(run_id)

    def cancel_run(self, project_id: str, run_id: str) -> DevelopmentRun:
        run = self._get_project_run(project_id, run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            return run

        now = utcnow()
        updated = self.db.update_run(run_id, status=RunStatus.CANCELED, canceled_at=now, finished_at=now)
        self.db.update_project(project_id, status=ProjectStatus.FAILED)
        self.events.append(run_id, RunEventType.RUN_STATUS, "Run canceled", {"status": RunStatus.CANCELED})
        self.logger.info("run_canceled", extra=self.log_extra(project_id=project_id, run_id=run_id))
        return updated

    def retry_run(self, project_id: str, run_id: str) -> DevelopmentRun:
        """Reset the failed (or current) iteration and resume a parked or failed run."""
        run = self._get_project_run(project_id, run_id)
        if run.status not in (RunStatus.WAITING_CHECKPOINT, RunStatus.FAILED):
            raise RunControlError("RUN_NOT_RETRYABLE", metadata={"run_id": run_id, "status": run.status})

        self.workspace.cleanup_sandbox(run_id)

        target = next(
            (
                it for it in self.db.list_iterations(run_id)
                if it.status == IterationStatus.FAILED or it.index == run.current_iteration
            ),
            None,
        )
        if target is not None:
            self._reset_iteration(target)

        updated = self.db.update_run(run_id, status=RunStatus.RUNNING, finished_at=None, error_summary=None)
        self.events.append(
            run_id,
            RunEventType.RUN_STATUS,
            "Run retry requested",
            {
                "status": RunStatus.RUNNING,
                "action": "retry",
                "iterationIndex": target.index if target else None,
            },
            iteration_id=target.id if target else None,
        )
        self.logger.info("run_retry_requested", extra=self.log_extra(project_id=project_id, run_id=run_id))
        self.enqueue(run_id)
        return updated

    def recover_run(self, project_id: str, run_id: str) -> RecoverRunResult:
        """Resume a QUEUED/RUNNING run whose worker is gone (e.g. after a restart)."""
        run = self._get_project_run(project_id, run_id)
        if run.status not in (RunStatus.QUEUED, RunStatus.RUNNING):
            raise RunControlError("RUN_NOT_RECOVERABLE", metadata={"run_id": run_id, "status": run.status})

        if self.registry.is_active(run_id):
            return RecoverRunResult(run=run, already_processing=True)

        if run.current_iteration > 0:
            current = self.db.get_iteration_by_index(run_id, run.current_iteration)
            if current is not None and attempts_exhausted(current.attempt_count, MAX_ITERATION_ATTEMPTS):
                self._reset_iteration(current)
                self.events.append(
                    run_id,
                    RunEventType.INFO,
                    "Iteration retries reset before manual resume",
                    {"iterationIndex": current.index, "previousAttemptCount": current.attempt_count},
                    iteration_id=current.id,
                )

        self.workspace.cleanup_sandbox(run_id)
        updated = self.db.update_run(
            run_id,
            status=RunStatus.RUNNING,
            started_at=run.started_at or utcnow(),
            finished_at=None,
            canceled_at=None,
        )
        self.events.append(
            run_id,
            RunEventType.RUN_STATUS,
            "Run manually resumed by user",
            {"status": RunStatus.RUNNING, "action": "manual_resume"},
        )
        self.logger.info("run_recovered", extra=self.log_extra(project_id=project_id, run_id=run_id))
        self.enqueue(run_id)
        return RecoverRunResult(run=updated, already_processing=False)

    def checkpoint_action(self, project_id: str, run_id: str, iteration_index: int, action: str) -> DevelopmentRun:
        """Apply pause, resume or approve to a run at the given iteration."""
        if action not in CHECKPOINT_ACTIONS:
            raise ValidationError(
                f"Unsupported checkpoint action: {action}",
                metadata={"action": action, "allowed": list(CHECKPOINT_ACTIONS)},
            )
        self._get_project_run(project_id, run_id)
        iteration = self.db.get_iteration_by_index(run_id, iteration_index)
        if iteration is None:
            raise EntityNotFoundError(
                "ITERATION_NOT_FOUND",
                metadata={"run_id": run_id, "iteration_index": iteration_index},
            )

        if action == "pause":
            updated = self.db.update_run(
                run_id,
                status=RunStatus.WAITING_CHECKPOINT,
                error_summary=f"Paused manually at iteration {iteration.index}",
            )
            self.events.append(
                run_id,
                RunEventType.RUN_STATUS,
                "Run paused by checkpoint",
                {"status": RunStatus.WAITING_CHECKPOINT, "iterationIndex": iteration.index},
                iteration_id=iteration.id,
            )
            self.logger.info(
                "run_paused",
                extra=self.log_extra(run_id=run_id, iteration_id=iteration.id),
            )
            return updated

        self.workspace.cleanup_sandbox(run_id)
        self._reset_iteration(iteration)
        updated = self.db.update_run(run_id, status=RunStatus.RUNNING, error_summary=None)
        self.events.append(
            run_id,
            RunEventType.RUN_STATUS,
            f"Run resumed from checkpoint ({action})",
            {"status": RunStatus.RUNNING, "action": action, "iterationIndex": iteration.index},
            iteration_id=iteration.id,
        )
        self.logger.info(
            "run_resumed",
            extra=self.log_extra(run_id=run_id, iteration_id=iteration.id, action=action),
        )
        self.enqueue(run_id)
        return updated

    def _reset_iteration(self, iteration: IterationRun) -> IterationRun:
        return self.db.update_iteration(
            iteration.id,
            status=IterationStatus.PENDING,
            finished_at=None,
            attempt_count=0,
        )
