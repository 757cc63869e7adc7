"""
DevRunner Gate Preflight

Repairs known-bad workspace states and installs dependencies before the
command gates run.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from devrunner.logging import get_logger
from devrunner.qa.gates.commands import ALLOWED_GATE_COMMANDS, INSTALL, CommandExecutor
from devrunner.services.workspace import PACKAGE_MANIFEST, SAFE_ROOT_LAYOUT

logger = get_logger(__name__)

JEST_DOM_VITEST_IMPORT = "@testing-library/jest-dom/vitest"
JEST_DOM_PACKAGE = "@testing-library/jest-dom"
JEST_DOM_VERSION = "^6.6.0"

TEST_SETUP_PATH = "src/test/setup.ts"
ROOT_LAYOUT_PATH = "src/app/layout.tsx"
DEPENDENCY_DIR = "node_modules"

MISSING_MANIFEST_LOG = "workspace_not_prepared: package.json not found in sandbox."


@dataclass
class DependencyResult:
    ok: bool
    log: Optional[str] = None


@dataclass
class SyncResult:
    fixes: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.fixes)


def ensure_workspace_dependencies(workspace_path: str, executor: CommandExecutor) -> DependencyResult:
    """Install once. An existing node_modules directory is trusted as-is."""
    root = Path(workspace_path)
    if not (root / PACKAGE_MANIFEST).exists():
        return DependencyResult(ok=False, log=MISSING_MANIFEST_LOG)
    if (root / DEPENDENCY_DIR).exists():
        return DependencyResult(ok=True)
    install = executor(ALLOWED_GATE_COMMANDS[INSTALL], workspace_path)
    return DependencyResult(ok=install.passed, log=install.log)


def _ensure_jest_dom_dependency(root: Path, fixes: List[str]) -> None:
    manifest = root / PACKAGE_MANIFEST
    setup = root / TEST_SETUP_PATH
    if not (manifest.exists() and setup.exists()):
        return
    if JEST_DOM_VITEST_IMPORT not in setup.read_text(encoding="utf-8"):
        return
    try:
        parsed = json.loads(manifest.read_text(encoding="utf-8"))
        if not isinstance(parsed, dict):
            raise ValueError("package.json is not an object")
    except ValueError:
        fixes.append("package_json_parse_failed")
        return

    dev_dependencies = parsed.get("devDependencies")
    if not isinstance(dev_dependencies, dict):
        dev_dependencies = {}
    if dev_dependencies.get(JEST_DOM_PACKAGE):
        return

    parsed["devDependencies"] = {**dev_dependencies, JEST_DOM_PACKAGE: JEST_DOM_VERSION}
    manifest.write_text(json.dumps(parsed, indent=2) + "\n", encoding="utf-8")
    fixes.append(f"added_dev_dependency:{JEST_DOM_PACKAGE}")


def _rewrite_document_layout(root: Path, fixes: List[str]) -> None:
    layout = root / ROOT_LAYOUT_PATH
    if not layout.exists():
        return
    content = layout.read_text(encoding="utf-8")
    if "from 'next/document'" in content or 'from "next/document"' in content:
        layout.write_text(SAFE_ROOT_LAYOUT, encoding="utf-8")
        fixes.append("rewrote_layout_without_next_document")


def synchronize_workspace_for_gates(workspace_path: str) -> SyncResult:
    """
    Apply the known workspace repairs.

    - test setup imports jest-dom/vitest but the manifest lacks the package
    - the app-router root layout imports next/document
    """
    root = Path(workspace_path)
    result = SyncResult()
    _ensure_jest_dom_dependency(root, result.fixes)
    _rewrite_document_layout(root, result.fixes)
    if result.changed:
        logger.info("workspace_synchronized", extra={"workspace": workspace_path, "fixes": result.fixes})
    return result
