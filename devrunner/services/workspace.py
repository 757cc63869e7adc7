"""
DevRunner Workspace Service

Per-run sandbox directories: allocation, bootstrap of a buildable skeleton,
sanitized writes of agent-generated files and artifact collection for commit.
"""

import json
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List

from devrunner.codegen.templates import (
    TemplateComponent,
    TemplateContext,
    TemplateEntity,
    TemplateField,
    TemplatePage,
    load_base_templates,
)
from devrunner.errors import InvalidWorkspacePathError, WorkspacePathEscapeError
from devrunner.models.domain import PlanSnapshot, RunEventType
from devrunner.plan import normalize_technical_plan, resolve_project_description, resolve_project_name
from devrunner.services.base import Service, ServiceContext

COMMIT_ARTIFACT_EXCLUDED_DIRS = frozenset({"node_modules", ".next", ".git", ".turbo", "coverage", "dist"})
PACKAGE_MANIFEST = "package.json"

_REPEATED_SLASHES = re.compile(r"/+")


@dataclass
class WorkspaceFile:
    """A file to write into (or collected from) a sandbox, path relative to its root."""
    path: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "content": self.content}


def sanitize_workspace_path(path: str) -> str:
    """
    Normalize a relative workspace path or raise InvalidWorkspacePathError.

    Trims whitespace, collapses repeated slashes and strips a leading "./".
    Empty results, absolute paths, any ".." and NUL bytes are rejected.
    """
    normalized = _REPEATED_SLASHES.sub("/", (path or "").strip())
    if normalized.startswith("./"):
        normalized = normalized[2:]
    if not normalized or normalized.startswith("/") or ".." in normalized or "\0" in normalized:
        raise InvalidWorkspacePathError(path)
    return normalized


def merge_workspace_files(batches: Iterable[Iterable[WorkspaceFile]]) -> List[WorkspaceFile]:
    """Merge file batches; the last writer of a sanitized path wins, first-seen order kept."""
    by_path: Dict[str, WorkspaceFile] = {}
    for batch in batches:
        for item in batch:
            safe_path = sanitize_workspace_path(item.path)
            by_path[safe_path] = WorkspaceFile(path=safe_path, content=item.content)
    return list(by_path.values())


def extract_generated_files(output: Any) -> List[WorkspaceFile]:
    """Pull {path, content} entries out of an agent output's "files" list."""
    if not isinstance(output, dict):
        return []
    files = output.get("files")
    if not isinstance(files, list):
        return []
    extracted = []
    for item in files:
        if not isinstance(item, dict):
            continue
        if not isinstance(item.get("path"), str) or not isinstance(item.get("content"), str):
            continue
        extracted.append(WorkspaceFile(path=sanitize_workspace_path(item["path"]), content=item["content"]))
    return extracted


def write_workspace_files(workspace_path: str, files: Iterable[WorkspaceFile]) -> None:
    root = Path(workspace_path).resolve()
    for item in files:
        safe_path = sanitize_workspace_path(item.path)
        target = (root / safe_path).resolve()
        if target != root and root not in target.parents:
            raise WorkspacePathEscapeError(item.path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(item.content, encoding="utf-8")


def collect_workspace_artifacts(workspace_path: str) -> List[WorkspaceFile]:
    """Every regular file under the sandbox, sorted by name per directory, skipping build/VCS dirs."""
    root = Path(workspace_path).resolve()
    artifacts: List[WorkspaceFile] = []

    def _walk(current: Path, relative: str) -> None:
        for entry in sorted(current.iterdir(), key=lambda p: p.name):
            rel = f"{relative}/{entry.name}" if relative else entry.name
            if entry.is_dir() and not entry.is_symlink():
                if entry.name in COMMIT_ARTIFACT_EXCLUDED_DIRS:
                    continue
                _walk(entry, rel)
                continue
            if not entry.is_file():
                continue
            safe_path = sanitize_workspace_path(rel)
            artifacts.append(
                WorkspaceFile(path=safe_path, content=entry.read_text(encoding="utf-8", errors="replace"))
            )

    _walk(root, "")
    return artifacts


def has_workspace_package(workspace_path: str) -> bool:
    return (Path(workspace_path) / PACKAGE_MANIFEST).is_file()


def _project_slug(name: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", name.strip().lower())
    slug = re.sub(r"[\s_]+", "-", slug)
    return re.sub(r"-+", "-", slug).strip("-")


def build_template_context(snapshot: PlanSnapshot) -> TemplateContext:
    """Template inputs from the technical plan: pages, components, entities, database and auth."""
    technical = normalize_technical_plan(snapshot)

    data_model = technical.get("dataModel") if isinstance(technical.get("dataModel"), dict) else {}
    entities = []
    for entity in data_model.get("entities") or []:
        if not isinstance(entity, dict) or not isinstance(entity.get("name"), str) or not entity["name"]:
            continue
        fields = [
            TemplateField(
                name=f["name"],
                type=f["type"],
                required=bool(f.get("required")),
                unique=bool(f.get("unique")),
                default=f.get("default") if isinstance(f.get("default"), str) else None,
            )
            for f in entity.get("fields") or []
            if isinstance(f, dict) and isinstance(f.get("name"), str) and isinstance(f.get("type"), str)
        ]
        entities.append(TemplateEntity(name=entity["name"], fields=fields))

    pages = [
        TemplatePage(
            path=page["path"],
            name=page["name"],
            components=[str(c) for c in page.get("components") or [] if isinstance(c, str)],
        )
        for page in technical.get("pages") or []
        if isinstance(page, dict) and isinstance(page.get("path"), str) and isinstance(page.get("name"), str)
    ]

    components = [
        TemplateComponent(
            name=component["name"],
            description=component["description"]
            if isinstance(component.get("description"), str)
            else f"Component {component['name']}",
            props=component["props"] if isinstance(component.get("props"), dict) else {},
        )
        for component in technical.get("components") or []
        if isinstance(component, dict) and isinstance(component.get("name"), str)
    ]

    database = technical.get("database") if isinstance(technical.get("database"), dict) else {}
    security = technical.get("security") if isinstance(technical.get("security"), dict) else {}
    authentication = security.get("authentication")

    name = resolve_project_name(snapshot)
    return TemplateContext(
        project_name=name,
        project_slug=_project_slug(name),
        description=resolve_project_description(snapshot),
        features=[page.name for page in pages],
        has_database=bool(database.get("prismaSchema")) or bool(entities),
        has_auth=isinstance(authentication, list) and len(authentication) > 0,
        entities=entities,
        pages=pages,
        components=components,
    )


SAFE_ROOT_LAYOUT = (
    "import type { ReactNode } from 'react'\n"
    "\n"
    "export default function RootLayout({ children }: { children: ReactNode }) {\n"
    "  return (\n"
    '    <html lang="en">\n'
    "      <body>{children}</body>\n"
    "    </html>\n"
    "  )\n"
    "}\n"
)


NEXT_ENV_FILE = WorkspaceFile(
    path="next-env.d.ts",
    content=(
        '/// <reference types="next" />\n'
        '/// <reference types="next/image-types/global" />\n'
        "\n"
        "// Required by the Next.js TypeScript build.\n"
    ),
)


def build_fallback_bootstrap_files(snapshot: PlanSnapshot) -> List[WorkspaceFile]:
    """Minimal skeleton that always builds and tests, used when templating left no manifest."""
    package_json = {
        "name": _project_slug(resolve_project_name(snapshot)) or "devrunner-app",
        "version": "0.1.0",
        "private": True,
        "scripts": {"build": "next build", "test": "vitest run"},
        "dependencies": {"next": "^15.0.0", "react": "^19.0.0", "react-dom": "^19.0.0"},
        "devDependencies": {
            "vitest": "^3.0.0",
            "typescript": "^5.7.0",
            "@types/node": "^22.0.0",
            "@types/react": "^19.0.0",
            "@types/react-dom": "^19.0.0",
            "@testing-library/dom": "^10.0.0",
            "@testing-library/react": "^16.0.0",
            "@testing-library/jest-dom": "^6.6.0",
        },
    }
    tsconfig = {
        "compilerOptions": {
            "target": "ES2020",
            "lib": ["dom", "dom.iterable", "esnext"],
            "strict": True,
            "noEmit": True,
            "module": "esnext",
            "moduleResolution": "bundler",
            "resolveJsonModule": True,
            "isolatedModules": True,
            "jsx": "preserve",
            "incremental": True,
            "plugins": [{"name": "next"}],
        },
        "include": ["next-env.d.ts", "**/*.ts", "**/*.tsx"],
        "exclude": ["node_modules"],
    }
    return [
        WorkspaceFile("package.json", json.dumps(package_json, indent=2)),
        WorkspaceFile("tsconfig.json", json.dumps(tsconfig, indent=2)),
        WorkspaceFile(
            "next.config.ts",
            "import type { NextConfig } from 'next'\n\nconst nextConfig: NextConfig = {}\n\nexport default nextConfig\n",
        ),
        WorkspaceFile(
            "vitest.config.ts",
            "import { defineConfig } from 'vitest/config'\n\n"
            "export default defineConfig({\n  test: {\n    environment: 'node',\n  },\n})\n",
        ),
        WorkspaceFile("src/app/layout.tsx", SAFE_ROOT_LAYOUT),
        WorkspaceFile(
            "src/app/page.tsx",
            "export default function HomePage() {\n"
            "  return (\n"
            "    <main style={{ padding: 24, fontFamily: 'sans-serif' }}>\n"
            "      <h1>Generated application</h1>\n"
            "      <p>Fallback bootstrap applied so the quality gates can run.</p>\n"
            "    </main>\n"
            "  )\n"
            "}\n",
        ),
    ]


class WorkspaceService(Service):
    """
    Owns the sandbox directory of each run.

    The sandbox path is persisted on the run so a restarted worker reuses it.
    Only the run's active loop invocation writes to it.
    """

    def __init__(self, context: ServiceContext, db, events) -> None:
        super().__init__(context)
        self.db = db
        self.events = events

    def ensure_sandbox(self, run_id: str) -> str:
        run = self.db.get_run(run_id)
        if run.worker_sandbox_path and Path(run.worker_sandbox_path).is_dir():
            return run.worker_sandbox_path

        root = self.config.sandbox_root
        if root is not None:
            Path(root).mkdir(parents=True, exist_ok=True)
        sandbox_path = tempfile.mkdtemp(
            prefix=f"devrunner-run-{run_id}-",
            dir=str(root) if root is not None else None,
        )
        self.db.update_run(run_id, worker_sandbox_path=sandbox_path)
        self.events.append(
            run_id,
            RunEventType.INFO,
            "Worker sandbox initialized",
            {"sandboxPath": sandbox_path},
        )
        self.logger.info("sandbox_initialized", extra=self.log_extra(run_id=run_id, sandbox_path=sandbox_path))
        return sandbox_path

    def cleanup_sandbox(self, run_id: str) -> None:
        run = self.db.get_run(run_id)
        if not run.worker_sandbox_path:
            return
        shutil.rmtree(run.worker_sandbox_path, ignore_errors=True)
        self.db.update_run(run_id, worker_sandbox_path=None)
        self.logger.info(
            "sandbox_cleaned",
            extra=self.log_extra(run_id=run_id, sandbox_path=run.worker_sandbox_path),
        )

    def ensure_bootstrap(self, run_id: str, sandbox_path: str, snapshot: PlanSnapshot) -> None:
        """Render the base templates when the sandbox has no manifest; fall back to a skeleton if still missing."""
        if has_workspace_package(sandbox_path):
            return

        base_files = [
            WorkspaceFile(path=f.path, content=f.content)
            for f in load_base_templates(build_template_context(snapshot))
        ]
        write_workspace_files(sandbox_path, [*base_files, NEXT_ENV_FILE])
        self.events.append(
            run_id,
            RunEventType.INFO,
            "Workspace bootstrap generated",
            {"files": len(base_files)},
        )

        if has_workspace_package(sandbox_path):
            return

        fallback = build_fallback_bootstrap_files(snapshot)
        write_workspace_files(sandbox_path, fallback)
        self.events.append(
            run_id,
            RunEventType.INFO,
            "Workspace bootstrap fallback applied",
            {"files": len(fallback), "reason": "package_json_missing_after_template_bootstrap"},
        )
        self.logger.warning(
            "workspace_bootstrap_fallback",
            extra=self.log_extra(run_id=run_id, files=len(fallback)),
        )

    def write_files(self, sandbox_path: str, files: List[WorkspaceFile]) -> None:
        write_workspace_files(sandbox_path, files)

    def collect_artifacts(self, sandbox_path: str) -> List[WorkspaceFile]:
        return collect_workspace_artifacts(sandbox_path)
