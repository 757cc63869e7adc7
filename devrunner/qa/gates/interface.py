"""
DevRunner QA Gate Interface

Defines the abstract interface for quality gates.
Each gate evaluates one aspect of an iteration workspace and produces a
GateResult that maps 1:1 onto a persisted QualityGateRun.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from devrunner.logging import get_logger

logger = get_logger(__name__)

SNIPPET_LIMIT = 4000

REASON_EXECUTION_DISABLED = "execution_disabled"
REASON_WORKSPACE_NOT_PREPARED = "workspace_not_prepared"
REASON_SKIPPED = "skipped_due_to_previous_failure"

LOGS_STDOUT = "stdout"
LOGS_STDERR = "stderr"
LOGS_SKIPPED = "skipped"
LOGS_WORKSPACE = "workspace"


@dataclass
class GateResult:
    """Result from running a quality gate."""
    gate_type: str
    passed: bool
    duration_ms: int = 0
    logs_ref: Optional[str] = None
    report: Dict[str, Any] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.report.get("reason") == REASON_SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gateType": self.gate_type,
            "passed": self.passed,
            "durationMs": self.duration_ms,
            "logsRef": self.logs_ref,
            "report": self.report,
        }


@dataclass
class GateContext:
    """Context for running quality gates."""
    workspace_root: str
    run_id: Optional[str] = None
    iteration_id: Optional[str] = None
    iteration_index: Optional[int] = None
    feature_tags: List[str] = field(default_factory=list)


class Gate(ABC):
    """
    Abstract base class for quality gates.

    Concrete gates:
    - CommandGate: runs one allow-listed npm command (BUILD, UNIT, BDD)
    - ReviewGate / SecurityGate: static scans over the workspace sources
    """

    @property
    @abstractmethod
    def gate_type(self) -> str:
        """Gate type (one of GateType.ALL)."""
        ...

    @abstractmethod
    def run(self, context: GateContext) -> GateResult:
        """
        Run the gate.

        Args:
            context: Gate execution context

        Returns:
            GateResult with pass/fail, duration and report
        """
        ...

    def skip(self, command: str, dependency_gate: str) -> GateResult:
        """Return a result for a gate not run because an earlier gate failed."""
        return GateResult(
            gate_type=self.gate_type,
            passed=False,
            duration_ms=0,
            logs_ref=LOGS_SKIPPED,
            report={
                "mode": "executed",
                "command": command,
                "reason": REASON_SKIPPED,
                "dependencyGate": dependency_gate,
            },
        )

    def failure(self, command: str, reason: str, detail: str) -> GateResult:
        """Return a synthetic failure that never ran the gate's command."""
        return GateResult(
            gate_type=self.gate_type,
            passed=False,
            duration_ms=0,
            logs_ref=LOGS_WORKSPACE,
            report={
                "mode": "executed",
                "command": command,
                "reason": reason,
                "snippet": detail[-SNIPPET_LIMIT:],
            },
        )
