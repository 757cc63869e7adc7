"""
DevRunner Orchestrator Service

The run loop and the per-iteration state machine.

A run is claimed through the worker registry, its iterations are
materialized once, and each pending iteration goes through
Spec -> Test -> Code -> Review -> quality gates -> release -> deploy agent.
An iteration that does not succeed parks the run at a checkpoint and the
loop returns; only a crash marks the run FAILED. When every iteration is
DEPLOYED the deploy trigger decides between SUCCEEDED and FAILED.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from devrunner.agents.catalog import (
    ASSESSMENT_AGENT,
    CODE_AGENT,
    DEPLOY_AGENT,
    ITERATION_PLANNER_AGENT,
    RECOVERY_AGENT,
    RELEASE_AGENT,
    REVIEW_AGENT,
    SPEC_AGENT,
    TEST_AGENT,
    AgentCatalog,
    AgentExecutionContext,
)
from devrunner.agents.runtime import AgentResult
from devrunner.errors import AgentError
from devrunner.logging import log_context
from devrunner.models.domain import (
    TERMINAL_RUN_STATUSES,
    AssessmentResult,
    IterationPlanItem,
    IterationRun,
    IterationStatus,
    PlanSnapshot,
    ProjectStatus,
    RunEventType,
    RunStatus,
)
from devrunner.plan import get_approved_plan
from devrunner.qa.diagnostics import build_failed_gate_summary
from devrunner.qa.gates.interface import GateContext
from devrunner.services.agent_harness import AgentHarness
from devrunner.services.base import Service, ServiceContext
from devrunner.services.deploy import DeployService
from devrunner.services.events import RunEventLog
from devrunner.services.git_release import RELEASE_PHASE, ReleaseCheckpoint
from devrunner.services.gitops import GitOpsService, IterationReleaseRequest
from devrunner.services.quality import QualityGateRunner
from devrunner.services.retry import (
    MAX_ITERATION_ATTEMPTS,
    attempts_exhausted,
    next_attempts,
    should_pause_for_baby_step_checkpoint,
)
from devrunner.services.worker_registry import WorkerRegistry, get_worker_registry
from devrunner.services.workspace import WorkspaceService, extract_generated_files, merge_workspace_files, sanitize_workspace_path
from devrunner.utils import to_branch_name, utcnow

RunQueue = Callable[[str], None]


@dataclass
class RunContext:
    run_id: str
    project_id: str
    snapshot: PlanSnapshot
    sandbox_path: str


@dataclass
class AttemptResult:
    """Outcome of the generate-and-gate half of one attempt."""
    spec_output: Dict[str, Any] = field(default_factory=dict)
    failed_gates: List[str] = field(default_factory=list)
    failed_gate_summary: str = ""

    @property
    def passed(self) -> bool:
        return not self.failed_gates


def iteration_plan_item(iteration: IterationRun) -> IterationPlanItem:
    """Rebuild the plan item an agent sees from a persisted iteration."""
    slug = "-".join(iteration.name.lower().split())
    return IterationPlanItem(
        index=iteration.index,
        name=iteration.name,
        slug=slug,
        gherkin_path=(
            iteration.gherkin_path
            or f"docs/specifications/generated/iter-{iteration.index}-{slug}.feature"
        ),
        scope=iteration.scope,
    )


class OrchestratorService(Service):
    """
    Drives development runs to completion.

    Collaborators default to the real services built from the same context
    and database; tests inject fakes for the catalog, gates, release and
    deploy.

    Example:
        orchestrator = OrchestratorService(context, db)
        orchestrator.enqueue(run.id)      # background thread
        orchestrator.process_run(run.id)  # inline
    """

    def __init__(
        self,
        context: ServiceContext,
        db,
        *,
        events: Optional[RunEventLog] = None,
        registry: Optional[WorkerRegistry] = None,
        workspace: Optional[WorkspaceService] = None,
        catalog: Optional[AgentCatalog] = None,
        harness: Optional[AgentHarness] = None,
        quality: Optional[QualityGateRunner] = None,
        gitops: Optional[GitOpsService] = None,
        deploy: Optional[DeployService] = None,
        queue: Optional[RunQueue] = None,
    ) -> None:
        super().__init__(context)
        self.db = db
        self.events = events or RunEventLog(context, db)
        self.registry = registry or get_worker_registry()
        self.workspace = workspace or WorkspaceService(context, db, self.events)
        self.catalog = catalog or AgentCatalog(self.config)
        self.harness = harness or AgentHarness(context, db, self.events)
        self.quality = quality or QualityGateRunner(context, db=db, events=self.events)
        self.gitops = gitops or GitOpsService(context, db)
        self.deploy = deploy or DeployService(context, db)
        self._queue = queue or self._start_worker_thread

    # -- scheduling ------------------------------------------------------------

    def enqueue(self, run_id: str) -> None:
        """Schedule process_run without waiting for it."""
        self.logger.info("run_enqueued", extra=self.log_extra(run_id=run_id))
        self._queue(run_id)

    def _start_worker_thread(self, run_id: str) -> None:
        thread = threading.Thread(
            target=self.process_run,
            args=(run_id,),
            name=f"devrunner-run-{run_id[:8]}",
            daemon=True,
        )
        thread.start()

    # -- run loop --------------------------------------------------------------

    def process_run(self, run_id: str) -> None:
        """
        Process a run until it finishes, parks at a checkpoint or is stopped.

        At most one invocation per run is active in this process; a second
        concurrent call returns immediately. Never raises.
        """
        if not self.registry.try_mark_active(run_id):
            self.logger.info("run_already_active", extra=self.log_extra(run_id=run_id))
            return

        try:
            with log_context(run_id=run_id):
                self._process_run(run_id)
        except Exception as exc:
            self.logger.exception("run_failed", extra=self.log_extra(run_id=run_id, error=str(exc)))
            self._fail_run(run_id, str(exc) or exc.__class__.__name__)
        finally:
            self._finalize_run(run_id)

    def _process_run(self, run_id: str) -> None:
        try:
            run = self.db.get_run(run_id)
        except KeyError:
            return
        if run.status in TERMINAL_RUN_STATUSES:
            return

        with log_context(project_id=run.project_id):
            if run.status != RunStatus.RUNNING:
                fields: Dict[str, Any] = {"status": RunStatus.RUNNING}
                if run.status == RunStatus.QUEUED:
                    fields["started_at"] = utcnow()
                self.db.update_run(run_id, **fields)
                self.db.update_project(run.project_id, status=ProjectStatus.GENERATING)
                self.events.append(run_id, RunEventType.RUN_STATUS, "Run started", {"status": RunStatus.RUNNING})
                self.logger.info("run_started", extra=self.log_extra(run_id=run_id, project_id=run.project_id))

            snapshot = PlanSnapshot.from_dict(run.plans_snapshot)
            sandbox_path = self.workspace.ensure_sandbox(run_id)
            context = RunContext(
                run_id=run_id,
                project_id=run.project_id,
                snapshot=snapshot,
                sandbox_path=sandbox_path,
            )
            self.workspace.ensure_bootstrap(run_id, sandbox_path, snapshot)

            iterations = self.ensure_iterations(context)
            for iteration in sorted(iterations, key=lambda it: it.index):
                if iteration.status == IterationStatus.DEPLOYED:
                    continue
                if self.should_stop_run(run_id):
                    return
                if not self.process_iteration(context, iteration.id):
                    return

            if self.should_stop_run(run_id):
                return
            self._finish_run(context)

    def should_stop_run(self, run_id: str) -> bool:
        """True when the run is gone, terminal, or parked at a checkpoint."""
        try:
            run = self.db.get_run(run_id)
        except KeyError:
            return True
        return run.status in TERMINAL_RUN_STATUSES or run.status == RunStatus.WAITING_CHECKPOINT

    def _is_terminal(self, run_id: str) -> bool:
        """True when the run is gone or already SUCCEEDED, FAILED or CANCELED."""
        try:
            return self.db.get_run(run_id).status in TERMINAL_RUN_STATUSES
        except KeyError:
            return True

    def _finish_run(self, context: RunContext) -> None:
        run_id = context.run_id

        def _on_deploy_event(message: str, payload: Dict[str, Any]) -> None:
            self.events.append(run_id, RunEventType.DEPLOY_STATUS, message, payload)

        result = self.deploy.execute_deploy(context.project_id, _on_deploy_event)
        if self._is_terminal(run_id):
            self.logger.info("run_finish_skipped_terminal", extra=self.log_extra(run_id=run_id))
            return

        if result.success:
            self.db.update_run(run_id, status=RunStatus.SUCCEEDED, finished_at=utcnow(), error_summary=None)
            project_fields: Dict[str, Any] = {"status": ProjectStatus.LIVE, "last_deploy_at": utcnow()}
            if result.production_url:
                project_fields["production_url"] = result.production_url
            self.db.update_project(context.project_id, **project_fields)
            self.events.append(run_id, RunEventType.RUN_STATUS, "Run succeeded", {"status": RunStatus.SUCCEEDED})
            self.logger.info(
                "run_succeeded",
                extra=self.log_extra(run_id=run_id, skipped_deploy=result.skipped, url=result.production_url),
            )
            return

        error = result.error or "Deploy failed"
        self.db.update_run(run_id, status=RunStatus.FAILED, finished_at=utcnow(), error_summary=error)
        self.db.update_project(context.project_id, status=ProjectStatus.FAILED)
        self.events.append(run_id, RunEventType.ERROR, "Deploy failed", {"error": error})
        self.events.append(run_id, RunEventType.RUN_STATUS, "Run failed", {"status": RunStatus.FAILED})
        self.logger.warning("run_deploy_failed", extra=self.log_extra(run_id=run_id, error=error))

    def _fail_run(self, run_id: str, message: str) -> None:
        """Best-effort FAILED bookkeeping after a crash. Each write is independent."""
        project_id: Optional[str] = None
        try:
            if self._is_terminal(run_id):
                self.logger.info("run_fail_skipped_terminal", extra=self.log_extra(run_id=run_id, error=message))
                return
        except Exception as exc:
            self.logger.error("run_fail_lookup_failed", extra=self.log_extra(run_id=run_id, error=str(exc)))

        try:
            run = self.db.update_run(
                run_id, status=RunStatus.FAILED, finished_at=utcnow(), error_summary=message
            )
            project_id = run.project_id
        except Exception as exc:
            self.logger.error("run_fail_update_failed", extra=self.log_extra(run_id=run_id, error=str(exc)))

        if project_id:
            try:
                self.db.update_project(project_id, status=ProjectStatus.FAILED)
            except Exception as exc:
                self.logger.error(
                    "project_fail_update_failed",
                    extra=self.log_extra(run_id=run_id, project_id=project_id, error=str(exc)),
                )

        for event_type, payload in (
            (RunEventType.ERROR, {"error": message}),
            (RunEventType.RUN_STATUS, {"status": RunStatus.FAILED}),
        ):
            try:
                self.events.append(run_id, event_type, "Run failed", payload)
            except Exception as exc:
                self.logger.error("run_fail_event_failed", extra=self.log_extra(run_id=run_id, error=str(exc)))

    def _finalize_run(self, run_id: str) -> None:
        try:
            try:
                run = self.db.get_run(run_id)
            except KeyError:
                run = None
            if run and (run.status in TERMINAL_RUN_STATUSES or run.status == RunStatus.WAITING_CHECKPOINT):
                self.workspace.cleanup_sandbox(run_id)
        except Exception as exc:
            self.logger.warning("sandbox_cleanup_failed", extra=self.log_extra(run_id=run_id, error=str(exc)))
        finally:
            self.registry.unmark_active(run_id)

    # -- iteration materialization ---------------------------------------------

    def ensure_iterations(self, context: RunContext) -> List[IterationRun]:
        """Create the run's iterations on first call; later calls return the existing ones."""
        existing = self.db.list_iterations(context.run_id)
        if existing:
            return existing

        approved = get_approved_plan(context.snapshot)
        if approved is not None:
            created = self._create_iterations(context.run_id, approved.iterations)
            self.events.append(
                context.run_id,
                RunEventType.INFO,
                "Using approved iteration plan from complexity assessment",
                {"totalIterations": len(created), "complexityScore": approved.assessment.complexity_score},
            )
            return created

        agent_context = AgentExecutionContext(
            run_id=context.run_id,
            project_id=context.project_id,
            snapshot=context.snapshot,
        )
        assessment_result = self.harness.execute_agent(
            context.run_id,
            ASSESSMENT_AGENT,
            {"projectId": context.project_id, "snapshot": context.snapshot.to_dict()},
            lambda: self.catalog.run_assessment_agent(agent_context),
        )
        assessment = AssessmentResult.from_dict(assessment_result.output)
        plan_result = self.harness.execute_agent(
            context.run_id,
            ITERATION_PLANNER_AGENT,
            {"projectId": context.project_id, "assessment": assessment_result.output},
            lambda: self.catalog.run_iteration_planner_agent(agent_context, assessment),
        )
        items = [IterationPlanItem.from_dict(item) for item in plan_result.output.get("iterations") or []]
        created = self._create_iterations(context.run_id, items)
        self.events.append(
            context.run_id,
            RunEventType.INFO,
            "Iteration plan created",
            {"totalIterations": len(created), "complexityScore": assessment.complexity_score},
        )
        return created

    def _create_iterations(self, run_id: str, items: List[IterationPlanItem]) -> List[IterationRun]:
        created = self.db.create_iterations(
            run_id,
            [
                {
                    "index": item.index,
                    "name": item.name,
                    "scope": item.scope.to_dict(),
                    "gherkin_path": item.gherkin_path,
                    "branch_name": to_branch_name(run_id, item.index, item.name),
                }
                for item in items
            ],
        )
        self.db.update_run(run_id, total_iterations=len(created), current_iteration=1 if created else 0)
        self.logger.info("iterations_created", extra=self.log_extra(run_id=run_id, total=len(created)))
        return created

    # -- per-iteration state machine -------------------------------------------

    def process_iteration(self, context: RunContext, iteration_id: str) -> bool:
        """
        Run the attempt loop for one iteration.

        Returns True only when the iteration reached DEPLOYED; every False
        return leaves the run in a state the loop must not continue from.
        """
        run_id = context.run_id
        iteration = self.db.get_iteration(iteration_id)
        branch_name = iteration.branch_name or to_branch_name(run_id, iteration.index, iteration.name)
        max_attempts = MAX_ITERATION_ATTEMPTS

        self.db.update_iteration(
            iteration.id,
            status=IterationStatus.RUNNING,
            branch_name=branch_name,
            started_at=iteration.started_at or utcnow(),
        )
        self.db.update_run(run_id, current_iteration=iteration.index)
        self.events.append(
            run_id,
            RunEventType.ITERATION_STATUS,
            f"Iteration {iteration.index} running",
            {
                "iterationIndex": iteration.index,
                "iterationName": iteration.name,
                "status": IterationStatus.RUNNING,
                "branchName": branch_name,
            },
            iteration_id=iteration.id,
        )

        item = iteration_plan_item(iteration)

        if attempts_exhausted(iteration.attempt_count, max_attempts):
            self._park_iteration(
                context,
                iteration,
                f"Iteration {iteration.index} exceeded max attempts ({iteration.attempt_count}) "
                "and requires retry reset",
                f"Iteration {iteration.index} blocked: exhausted attempts",
                {"attemptsUsed": iteration.attempt_count, "maxAttempts": max_attempts},
                "Run waiting checkpoint",
                {"status": RunStatus.WAITING_CHECKPOINT, "iterationIndex": iteration.index},
            )
            return False

        for attempt in next_attempts(iteration.attempt_count, max_attempts):
            if self.should_stop_run(run_id):
                return False

            self.db.update_iteration(iteration.id, attempt_count=attempt)
            agent_context = AgentExecutionContext(
                run_id=run_id,
                project_id=context.project_id,
                snapshot=context.snapshot,
                iteration_id=iteration.id,
                iteration_index=iteration.index,
                attempt=attempt,
            )

            try:
                outcome = self._run_attempt(context, iteration, item, agent_context, attempt)
            except AgentError as exc:
                self.events.append(
                    run_id,
                    RunEventType.ERROR,
                    f"Iteration {iteration.index} attempt {attempt} agent error",
                    {"agentName": exc.agent_name, "code": exc.code, "error": str(exc), "attempt": attempt},
                    iteration_id=iteration.id,
                )
                outcome = AttemptResult(failed_gates=["AGENT"], failed_gate_summary=f"AGENT ({exc})")

            if self.should_stop_run(run_id):
                return False
            if outcome.passed:
                return self._release_and_deploy(context, iteration, item, agent_context, branch_name, attempt, outcome)

            self.harness.execute_agent(
                run_id,
                RECOVERY_AGENT,
                {"iteration": item.to_dict(), "attempt": attempt, "failedGates": outcome.failed_gates},
                lambda: self.catalog.run_recovery_agent(agent_context, item, attempt, outcome.failed_gates),
                iteration_id=iteration.id,
            )

            if should_pause_for_baby_step_checkpoint(self.config.baby_steps, attempt, max_attempts):
                self._park_iteration(
                    context,
                    iteration,
                    f"Iteration {iteration.index} paused in baby steps after attempt {attempt}. "
                    f"Failed gates: {outcome.failed_gate_summary}",
                    f"Iteration {iteration.index} paused for baby-step checkpoint",
                    {
                        "failedGates": outcome.failed_gates,
                        "failedGateSummary": outcome.failed_gate_summary,
                        "attempts": attempt,
                        "mode": "baby_steps",
                    },
                    "Run waiting checkpoint (baby steps)",
                    {
                        "status": RunStatus.WAITING_CHECKPOINT,
                        "iterationIndex": iteration.index,
                        "action": "baby_step_pause",
                        "attempt": attempt,
                    },
                )
                return False

            if attempt == max_attempts:
                self._park_iteration(
                    context,
                    iteration,
                    f"Iteration {iteration.index} failed after {max_attempts} attempts. "
                    f"Failed gates: {outcome.failed_gate_summary}",
                    f"Iteration {iteration.index} failed after retries",
                    {
                        "failedGates": outcome.failed_gates,
                        "failedGateSummary": outcome.failed_gate_summary,
                        "attempts": max_attempts,
                    },
                    "Run waiting checkpoint",
                    {"status": RunStatus.WAITING_CHECKPOINT, "iterationIndex": iteration.index},
                )
                return False

            self.logger.info(
                "iteration_attempt_failed",
                extra=self.log_extra(
                    run_id=run_id,
                    iteration_id=iteration.id,
                    attempt=attempt,
                    failed_gates=outcome.failed_gates,
                ),
            )

        return False

    def _run_attempt(
        self,
        context: RunContext,
        iteration: IterationRun,
        item: IterationPlanItem,
        agent_context: AgentExecutionContext,
        attempt: int,
    ) -> AttemptResult:
        run_id = context.run_id
        payload = {"iteration": item.to_dict(), "attempt": attempt}

        spec = self.harness.execute_agent(
            run_id, SPEC_AGENT, payload,
            lambda: self.catalog.run_spec_agent(agent_context, item),
            iteration_id=iteration.id,
        )
        gherkin_path = spec.output.get("gherkinPath")
        self.db.update_iteration(
            iteration.id,
            gherkin_path=gherkin_path if isinstance(gherkin_path, str) else item.gherkin_path,
        )
        tests = self.harness.execute_agent(
            run_id, TEST_AGENT, payload,
            lambda: self.catalog.run_test_agent(agent_context, item),
            iteration_id=iteration.id,
        )
        code = self.harness.execute_agent(
            run_id, CODE_AGENT, payload,
            lambda: self.catalog.run_code_agent(agent_context, item, attempt),
            iteration_id=iteration.id,
        )

        files = merge_workspace_files([
            extract_generated_files(spec.output),
            extract_generated_files(tests.output),
            extract_generated_files(code.output),
        ])
        if files:
            self.workspace.write_files(context.sandbox_path, files)
            self.events.append(
                run_id,
                RunEventType.INFO,
                "Iteration artifacts written to workspace",
                {"attempt": attempt, "files": len(files)},
                iteration_id=iteration.id,
            )

        self.harness.execute_agent(
            run_id, REVIEW_AGENT, payload,
            lambda: self.catalog.run_review_agent(agent_context, item),
            iteration_id=iteration.id,
        )

        gates = self.quality.run_quality_gates(
            GateContext(
                workspace_root=context.sandbox_path,
                run_id=run_id,
                iteration_id=iteration.id,
                iteration_index=iteration.index,
                feature_tags=list(item.scope.feature_tags),
            )
        )
        self.quality.record_results(run_id, iteration.id, iteration.index, gates)

        failed = [gate for gate in gates if not gate.passed]
        failed_types = [gate.gate_type for gate in failed]
        return AttemptResult(
            spec_output=spec.output,
            failed_gates=failed_types,
            failed_gate_summary=build_failed_gate_summary(failed) or ", ".join(failed_types),
        )

    def _release_and_deploy(
        self,
        context: RunContext,
        iteration: IterationRun,
        item: IterationPlanItem,
        agent_context: AgentExecutionContext,
        branch_name: str,
        attempt: int,
        outcome: AttemptResult,
    ) -> bool:
        run_id = context.run_id
        self.db.update_iteration(iteration.id, status=IterationStatus.GATED)
        self.events.append(
            run_id,
            RunEventType.ITERATION_STATUS,
            f"Iteration {iteration.index} gated",
            {"status": IterationStatus.GATED, "iterationIndex": iteration.index},
            iteration_id=iteration.id,
        )

        def _on_checkpoint(checkpoint: ReleaseCheckpoint) -> None:
            self.events.append(
                run_id,
                RunEventType.INFO,
                f"Release {checkpoint.step}: {checkpoint.summary}",
                {**checkpoint.to_dict(), "attempt": attempt},
                iteration_id=iteration.id,
            )

        def _release() -> AgentResult:
            agent_result = self.catalog.run_release_agent(agent_context, item, branch_name)
            spec_path = outcome.spec_output.get("gherkinPath")
            spec_gherkin = outcome.spec_output.get("gherkin")
            artifacts = self.workspace.collect_artifacts(context.sandbox_path)
            release = self.gitops.execute_iteration_git_release(
                IterationReleaseRequest(
                    project_id=context.project_id,
                    iteration_index=iteration.index,
                    iteration_name=iteration.name,
                    branch_name=branch_name,
                    gherkin_path=(
                        sanitize_workspace_path(spec_path) if isinstance(spec_path, str) else item.gherkin_path
                    ),
                    gherkin_content=spec_gherkin if isinstance(spec_gherkin, str) else "",
                    artifacts=artifacts,
                    on_checkpoint=_on_checkpoint,
                )
            )
            return AgentResult(
                output={**agent_result.output, **release.to_dict(), "artifactsCommitted": len(artifacts)},
                token_usage=agent_result.token_usage,
                cost=agent_result.cost,
            )

        try:
            released = self.harness.execute_agent(
                run_id,
                RELEASE_AGENT,
                {"iteration": item.to_dict(), "branchName": branch_name},
                _release,
                iteration_id=iteration.id,
            )
        except Exception as exc:
            step = getattr(exc, "step", None)
            summary = getattr(exc, "summary", None)
            self.move_run_to_release_checkpoint(
                context,
                iteration,
                step=step if isinstance(step, str) and step else "unknown",
                summary=summary if isinstance(summary, str) and summary else (str(exc) or "release_failed"),
                attempt=attempt,
            )
            return False

        self.db.update_iteration(iteration.id, status=IterationStatus.MERGED)
        merged_payload: Dict[str, Any] = {
            "status": IterationStatus.MERGED,
            "iterationIndex": iteration.index,
            "branchName": branch_name,
        }
        for key in ("pullRequestNumber", "pullRequestUrl", "mergeCommitSha"):
            if released.output.get(key) is not None:
                merged_payload[key] = released.output[key]
        self.events.append(
            run_id,
            RunEventType.ITERATION_STATUS,
            f"Iteration {iteration.index} merged",
            merged_payload,
            iteration_id=iteration.id,
        )

        self.db.update_project(context.project_id, status=ProjectStatus.DEPLOYING)
        self.harness.execute_agent(
            run_id,
            DEPLOY_AGENT,
            {"iteration": item.to_dict()},
            lambda: self.catalog.run_deploy_agent(agent_context, item),
            iteration_id=iteration.id,
        )
        self.db.update_iteration(iteration.id, status=IterationStatus.DEPLOYED, finished_at=utcnow())
        self.db.update_project(context.project_id, status=ProjectStatus.GENERATING)
        self.events.append(
            run_id,
            RunEventType.DEPLOY_STATUS,
            f"Iteration {iteration.index} deployed",
            {"status": IterationStatus.DEPLOYED, "iterationIndex": iteration.index},
            iteration_id=iteration.id,
        )
        self.logger.info(
            "iteration_deployed",
            extra=self.log_extra(run_id=run_id, iteration_id=iteration.id, attempt=attempt),
        )
        return True

    # -- checkpoints -----------------------------------------------------------

    def _park_iteration(
        self,
        context: RunContext,
        iteration: IterationRun,
        error_summary: str,
        error_message: str,
        error_payload: Dict[str, Any],
        status_message: str,
        status_payload: Dict[str, Any],
    ) -> None:
        """Fail the iteration and move the run to WAITING_CHECKPOINT unless it already ended."""
        if self._is_terminal(context.run_id):
            self.logger.info(
                "run_park_skipped_terminal",
                extra=self.log_extra(run_id=context.run_id, iteration_id=iteration.id, reason=error_summary),
            )
            return
        self.db.update_iteration(iteration.id, status=IterationStatus.FAILED, finished_at=utcnow())
        self.db.update_run(context.run_id, status=RunStatus.WAITING_CHECKPOINT, error_summary=error_summary)
        self.events.append(
            context.run_id, RunEventType.ERROR, error_message, error_payload, iteration_id=iteration.id
        )
        self.events.append(context.run_id, RunEventType.RUN_STATUS, status_message, status_payload)
        self.logger.warning(
            "run_waiting_checkpoint",
            extra=self.log_extra(run_id=context.run_id, iteration_id=iteration.id, reason=error_summary),
        )

    def move_run_to_release_checkpoint(
        self,
        context: RunContext,
        iteration: IterationRun,
        *,
        step: str,
        summary: str,
        attempt: Optional[int] = None,
    ) -> None:
        """Park the run after a failed release. No retry is consumed."""
        error_payload: Dict[str, Any] = {"phase": RELEASE_PHASE, "step": step, "summary": summary}
        status_payload: Dict[str, Any] = {
            "status": RunStatus.WAITING_CHECKPOINT,
            "iterationIndex": iteration.index,
            "phase": RELEASE_PHASE,
            "step": step,
        }
        if attempt is not None:
            error_payload["attempt"] = attempt
            status_payload["attempt"] = attempt
        self._park_iteration(
            context,
            iteration,
            f"Iteration {iteration.index} paused: phase={RELEASE_PHASE} step={step} summary={summary}",
            f"Release failed at {step}",
            error_payload,
            "Run waiting checkpoint",
            status_payload,
        )
