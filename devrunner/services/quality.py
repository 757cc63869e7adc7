"""
DevRunner Quality Gate Runner

Runs the gate chain for one iteration workspace and records the results.

Order of the returned list is always BUILD, UNIT, BDD, REVIEW, SECURITY.
BUILD -> UNIT -> BDD form a dependency chain; REVIEW and SECURITY always run.
"""

from typing import Callable, List, Optional

from devrunner.models.domain import GateType, RunEventType
from devrunner.qa.diagnostics import extract_primary_gate_failure_detail
from devrunner.qa.gates.commands import CommandExecutor, CommandGate, command_text, make_command_executor
from devrunner.qa.gates.interface import (
    REASON_EXECUTION_DISABLED,
    REASON_WORKSPACE_NOT_PREPARED,
    GateContext,
    GateResult,
)
from devrunner.qa.gates.static import ReviewGate, SecurityGate
from devrunner.qa.preflight import (
    DependencyResult,
    ensure_workspace_dependencies,
    synchronize_workspace_for_gates,
)
from devrunner.services.base import Service, ServiceContext

DependencyEnsurer = Callable[[str, CommandExecutor], DependencyResult]

EXECUTION_DISABLED_DETAIL = (
    "Quality gate execution is disabled in this environment. Set DEVRUNNER_EXECUTE_GATES=true."
)


class QualityGateRunner(Service):
    """
    Service wrapping the gate chain.

    The executor and dependency ensurer are injectable so tests never spawn
    npm. Execution is opt-in through Config.execute_gates.
    """

    def __init__(
        self,
        context: ServiceContext,
        *,
        db=None,
        events=None,
        executor: Optional[CommandExecutor] = None,
        ensure_dependencies: Optional[DependencyEnsurer] = None,
    ) -> None:
        super().__init__(context)
        self.db = db
        self.events = events
        self.executor = executor or make_command_executor(self.config.gate_timeout_seconds)
        self.ensure_dependencies = ensure_dependencies or ensure_workspace_dependencies
        self.build_gate = CommandGate(GateType.BUILD, self.executor)
        self.unit_gate = CommandGate(GateType.UNIT, self.executor)
        self.bdd_gate = CommandGate(GateType.BDD, self.executor)
        self.review_gate = ReviewGate()
        self.security_gate = SecurityGate()

    def _command_gates(self) -> List[CommandGate]:
        return [self.build_gate, self.unit_gate, self.bdd_gate]

    def _policy_pass(self, gate_type: str) -> GateResult:
        return GateResult(
            gate_type=gate_type,
            passed=True,
            duration_ms=0,
            logs_ref="policy",
            report={"mode": "policy", "reason": REASON_EXECUTION_DISABLED},
        )

    def run_quality_gates(self, context: GateContext) -> List[GateResult]:
        """Run every gate against context.workspace_root."""
        workspace = context.workspace_root

        if not self.config.execute_gates:
            results = [
                gate.failure(command_text(gate.gate_type), REASON_EXECUTION_DISABLED, EXECUTION_DISABLED_DETAIL)
                for gate in self._command_gates()
            ]
            results.append(self._policy_pass(GateType.REVIEW))
            results.append(self._policy_pass(GateType.SECURITY))
            self._log_results(context, results)
            return results

        synchronize_workspace_for_gates(workspace)
        dependencies = self.ensure_dependencies(workspace, self.executor)

        if not dependencies.ok:
            detail = dependencies.log or REASON_WORKSPACE_NOT_PREPARED
            results = [
                gate.failure(command_text(gate.gate_type), REASON_WORKSPACE_NOT_PREPARED, detail)
                for gate in self._command_gates()
            ]
        else:
            build = self.build_gate.run(context)
            if not build.passed:
                unit = self.unit_gate.skip(command_text(GateType.UNIT), GateType.BUILD)
                bdd = self.bdd_gate.skip(command_text(GateType.BDD), GateType.BUILD)
            else:
                unit = self.unit_gate.run(context)
                if not unit.passed:
                    bdd = self.bdd_gate.skip(command_text(GateType.BDD), GateType.UNIT)
                else:
                    bdd = self.bdd_gate.run(context)
            results = [build, unit, bdd]

        results.append(self.review_gate.run(context))
        results.append(self.security_gate.run(context))
        self._log_results(context, results)
        return results

    def _log_results(self, context: GateContext, results: List[GateResult]) -> None:
        self.logger.info(
            "quality_gates_completed",
            extra=self.log_extra(
                run_id=context.run_id,
                iteration_id=context.iteration_id,
                passed=[r.gate_type for r in results if r.passed],
                failed=[r.gate_type for r in results if not r.passed],
            ),
        )

    def record_results(
        self,
        run_id: str,
        iteration_id: str,
        iteration_index: int,
        results: List[GateResult],
    ) -> None:
        """Upsert each gate row and emit one QUALITY_GATE event per gate."""
        if self.db is None or self.events is None:
            raise RuntimeError("QualityGateRunner needs db and events to record results")
        for result in results:
            summary = extract_primary_gate_failure_detail(result)
            self.db.upsert_quality_gate(
                iteration_id,
                result.gate_type,
                passed=result.passed,
                duration_ms=result.duration_ms,
                logs_ref=result.logs_ref,
                report=result.report,
            )
            self.events.append(
                run_id,
                RunEventType.QUALITY_GATE,
                self._event_message(result),
                self._event_payload(result, iteration_index, summary),
                iteration_id=iteration_id,
            )

    @staticmethod
    def _event_message(result: GateResult) -> str:
        if result.skipped:
            return f"{result.gate_type} gate skipped"
        return f"{result.gate_type} gate {'passed' if result.passed else 'failed'}"

    @staticmethod
    def _event_payload(result: GateResult, iteration_index: int, summary: Optional[str]) -> dict:
        payload = {
            "gateType": result.gate_type,
            "passed": result.passed,
            "durationMs": result.duration_ms,
            "logsRef": result.logs_ref,
            "iterationIndex": iteration_index,
        }
        if result.skipped:
            payload["skipped"] = True
        if summary:
            payload["summary"] = summary
        return payload
