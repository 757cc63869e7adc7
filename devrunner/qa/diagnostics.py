"""
DevRunner Gate Diagnostics

Turns raw gate output into a one-line cause for checkpoint messages.
"""

import re
from typing import Any, Iterable, List, Optional

from devrunner.qa.gates.interface import REASON_SKIPPED

DETAIL_LIMIT = 220

# Ordered by priority: the first pattern with any matching line wins.
ROOT_CAUSE_PATTERNS = (
    re.compile(r"failed to resolve import", re.IGNORECASE),
    re.compile(r"cannot find module", re.IGNORECASE),
    re.compile(r"should not be imported outside", re.IGNORECASE),
    re.compile(r"error occurred prerendering page", re.IGNORECASE),
    re.compile(r"next\.js build worker exited", re.IGNORECASE),
    re.compile(r"\berror:", re.IGNORECASE),
    re.compile(r"does not exist", re.IGNORECASE),
    re.compile(r"workspace_not_prepared", re.IGNORECASE),
)

NOISY_LINE_PATTERNS = (
    re.compile(r"^>\s"),
    re.compile(r"^run\s+v", re.IGNORECASE),
    re.compile(r"^test files\s+", re.IGNORECASE),
    re.compile(r"^tests?\s+", re.IGNORECASE),
    re.compile(r"^start at\s+", re.IGNORECASE),
    re.compile(r"^duration\s+", re.IGNORECASE),
    re.compile(r"^⎯+"),
    re.compile(r"^✓\s+"),
    re.compile(r"^⚠\s+"),
    re.compile(r"^\s*at\s+"),
)


def _get(gate: Any, name: str, alt: str) -> Any:
    if isinstance(gate, dict):
        return gate.get(name, gate.get(alt))
    return getattr(gate, name, None)


def _is_noisy(line: str) -> bool:
    return any(p.search(line) for p in NOISY_LINE_PATTERNS)


def extract_primary_gate_failure_detail(gate: Any) -> Optional[str]:
    """
    Pick the most useful line from a failed gate's report.

    An explicit reason wins; otherwise the snippet is searched for a known
    root cause, then for the first non-noise line.
    """
    if _get(gate, "passed", "passed"):
        return None
    report = _get(gate, "report", "report")
    if not isinstance(report, dict):
        return None

    reason = report.get("reason")
    if isinstance(reason, str) and reason:
        return reason

    snippet = report.get("snippet")
    if not isinstance(snippet, str):
        return None
    lines: List[str] = [line.strip() for line in snippet.splitlines()]
    lines = [line for line in lines if line]
    if not lines:
        return None

    for pattern in ROOT_CAUSE_PATTERNS:
        for line in lines:
            if pattern.search(line):
                return line[:DETAIL_LIMIT]

    for line in lines:
        if not _is_noisy(line):
            return line[:DETAIL_LIMIT]

    return lines[0][:DETAIL_LIMIT]


def build_failed_gate_summary(gates: Iterable[Any]) -> str:
    """'BUILD (Cannot find module x), UNIT' style summary of real failures."""
    parts = []
    for gate in gates:
        if _get(gate, "passed", "passed"):
            continue
        report = _get(gate, "report", "report")
        if isinstance(report, dict) and report.get("reason") == REASON_SKIPPED:
            continue
        gate_type = _get(gate, "gate_type", "gateType")
        detail = extract_primary_gate_failure_detail(gate)
        parts.append(f"{gate_type} ({detail})" if detail else str(gate_type))
    return ", ".join(parts)
