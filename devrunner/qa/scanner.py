"""
DevRunner Static Code Scanner

Line-oriented pattern checks over the generated TypeScript/JavaScript
sources. Used by the REVIEW and SECURITY gates.
"""

import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Pattern, Sequence

SCANNABLE_EXTENSIONS = frozenset({".ts", ".tsx", ".js", ".jsx"})
SCAN_EXCLUDED_DIRS = frozenset({"node_modules", ".next", ".git", ".turbo", "coverage", "dist"})

SEVERITY_FAIL = "fail"
SEVERITY_WARN = "warn"


@dataclass(frozen=True)
class ScanCheck:
    name: str
    severity: str
    pattern: Pattern[str]


@dataclass
class ScanFinding:
    file: str
    line: int
    check: str
    severity: str
    match: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


REVIEW_CHECKS: Sequence[ScanCheck] = (
    ScanCheck("eval_usage", SEVERITY_FAIL, re.compile(r"\beval\s*\(")),
    ScanCheck("new_function", SEVERITY_FAIL, re.compile(r"\bnew\s+Function\s*\(")),
    ScanCheck("dangerous_html", SEVERITY_FAIL, re.compile(r"dangerouslySetInnerHTML")),
    ScanCheck("destructive_shell", SEVERITY_FAIL, re.compile(r"\brm\s+-rf\b")),
    ScanCheck("console_debug", SEVERITY_WARN, re.compile(r"\bconsole\.log\s*\(")),
    ScanCheck("ts_ignore", SEVERITY_WARN, re.compile(r"@ts-(?:ignore|nocheck)\b")),
    ScanCheck("any_cast", SEVERITY_WARN, re.compile(r"\bas\s+any\b|:\s*any\b")),
)

SECURITY_CHECKS: Sequence[ScanCheck] = (
    ScanCheck(
        "hardcoded_secret",
        SEVERITY_FAIL,
        re.compile(
            r"(?i)\b(?:api[_-]?key|secret|token|password|passwd|private[_-]?key|access[_-]?key)\w*"
            r"\s*[:=]\s*['\"][^'\"\s]{12,}['\"]"
            r"|['\"](?:sk|pk|ghp|gho|ghs|xox[abprs])[-_][A-Za-z0-9_\-]{16,}['\"]"
        ),
    ),
    ScanCheck(
        "xss_vector",
        SEVERITY_FAIL,
        re.compile(r"\.(?:innerHTML|outerHTML)\s*=(?!=)|\bdocument\.write(?:ln)?\s*\("),
    ),
    ScanCheck(
        "child_process_spawn",
        SEVERITY_WARN,
        re.compile(r"""(?:require\(\s*|from\s+)['"](?:node:)?child_process['"]"""),
    ),
    ScanCheck(
        "sql_interpolation",
        SEVERITY_WARN,
        re.compile(r"(?i)`[^`]*\b(?:SELECT|INSERT\s+INTO|UPDATE|DELETE\s+FROM)\b[^`]*\$\{"),
    ),
)


def _iter_source_files(root: Path) -> List[Path]:
    found: List[Path] = []
    for entry in sorted(root.iterdir(), key=lambda p: p.name):
        if entry.is_dir():
            if entry.name in SCAN_EXCLUDED_DIRS:
                continue
            found.extend(_iter_source_files(entry))
        elif entry.is_file() and entry.suffix in SCANNABLE_EXTENSIONS:
            found.append(entry)
    return found


def scan_workspace_files(workspace_path: str, checks: Sequence[ScanCheck]) -> Dict[str, Any]:
    """
    Run every check against every line of every source file.

    Returns {"findings": [...], "files_scanned": n}. A check contributes at
    most one finding per line (its first match).
    """
    root = Path(workspace_path)
    findings: List[ScanFinding] = []
    files = _iter_source_files(root) if root.is_dir() else []

    for path in files:
        relative = path.relative_to(root).as_posix()
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        for line_number, line in enumerate(text.splitlines(), start=1):
            for check in checks:
                match = check.pattern.search(line)
                if match:
                    findings.append(
                        ScanFinding(
                            file=relative,
                            line=line_number,
                            check=check.name,
                            severity=check.severity,
                            match=match.group(0),
                        )
                    )

    return {"findings": findings, "files_scanned": len(files)}


def scan_workspace_for_env_files(workspace_path: str) -> List[ScanFinding]:
    """Flag committed top-level .env files. .env.example is allowed."""
    root = Path(workspace_path)
    if not root.is_dir():
        return []
    findings = []
    for entry in sorted(root.iterdir(), key=lambda p: p.name):
        if not entry.is_file():
            continue
        name = entry.name
        if name == ".env" or (name.startswith(".env.") and name != ".env.example"):
            findings.append(
                ScanFinding(file=name, line=0, check="env_file_committed", severity=SEVERITY_FAIL, match=name)
            )
    return findings


def summarize_findings(findings: Sequence[ScanFinding], files_scanned: int) -> Dict[str, int]:
    return {
        "failCount": sum(1 for f in findings if f.severity == SEVERITY_FAIL),
        "warnCount": sum(1 for f in findings if f.severity == SEVERITY_WARN),
        "filesScanned": files_scanned,
    }
