"""
DevRunner Static Analysis Gates

REVIEW and SECURITY scan the workspace sources with named line checks.
A gate fails iff at least one fail-severity finding exists.
"""

import time
from typing import List, Sequence

from devrunner.models.domain import GateType
from devrunner.qa.gates.interface import Gate, GateContext, GateResult
from devrunner.qa.scanner import (
    REVIEW_CHECKS,
    SECURITY_CHECKS,
    ScanCheck,
    ScanFinding,
    scan_workspace_files,
    scan_workspace_for_env_files,
    summarize_findings,
)


class StaticAnalysisGate(Gate):
    """Base for scan-driven gates."""

    checks: Sequence[ScanCheck] = ()
    logs_ref = "static-analysis"

    def extra_findings(self, context: GateContext) -> List[ScanFinding]:
        return []

    def run(self, context: GateContext) -> GateResult:
        start = time.monotonic()
        scan = scan_workspace_files(context.workspace_root, self.checks)
        findings: List[ScanFinding] = self.extra_findings(context) + scan["findings"]
        summary = summarize_findings(findings, scan["files_scanned"])
        return GateResult(
            gate_type=self.gate_type,
            passed=summary["failCount"] == 0,
            duration_ms=int((time.monotonic() - start) * 1000),
            logs_ref=self.logs_ref,
            report={
                "mode": "static_analysis",
                "findings": [f.to_dict() for f in findings],
                "summary": summary,
            },
        )


class ReviewGate(StaticAnalysisGate):
    """Dangerous evaluation, raw HTML injection, destructive shell usage."""

    checks = REVIEW_CHECKS
    logs_ref = "review-report"

    @property
    def gate_type(self) -> str:
        return GateType.REVIEW


class SecurityGate(StaticAnalysisGate):
    """Committed env files, hardcoded credentials, DOM XSS sinks."""

    checks = SECURITY_CHECKS
    logs_ref = "security-report"

    @property
    def gate_type(self) -> str:
        return GateType.SECURITY

    def extra_findings(self, context: GateContext) -> List[ScanFinding]:
        return scan_workspace_for_env_files(context.workspace_root)
