"""
Tests for the quality gate chain.

Command gates use a fake executor; static gates scan real files under
tmp_path.
"""

import json
from dataclasses import fields

import pytest

from devrunner.errors import CommandNotAllowedError
from devrunner.models.domain import GateType, RunStatus
from devrunner.qa.diagnostics import build_failed_gate_summary, extract_primary_gate_failure_detail
from devrunner.qa.gates.commands import (
    ALLOWED_GATE_COMMANDS,
    CommandGate,
    is_allowed_command,
    run_allowed_command,
)
from devrunner.qa.gates.interface import (
    REASON_EXECUTION_DISABLED,
    REASON_SKIPPED,
    REASON_WORKSPACE_NOT_PREPARED,
    GateContext,
    GateResult,
)
from devrunner.qa.preflight import (
    DependencyResult,
    ensure_workspace_dependencies,
    synchronize_workspace_for_gates,
)
from devrunner.qa.scanner import SECURITY_CHECKS, scan_workspace_files
from devrunner.services.base import ServiceContext
from devrunner.services.quality import QualityGateRunner

from conftest import FakeGateExecutor, deps_ready


def make_runner(context, executor, ensure=deps_ready, **kwargs):
    return QualityGateRunner(context, executor=executor, ensure_dependencies=ensure, **kwargs)


def gate_types(results):
    return [r.gate_type for r in results]


# =============================================================================
# Command allow-list
# =============================================================================

class TestAllowList:
    def test_exact_argv_only(self):
        assert is_allowed_command(["npm", "run", "build"])
        assert is_allowed_command(["npx", "vitest", "run", "tests/e2e/steps"])
        assert not is_allowed_command(["npm", "run", "build", "--", "--danger"])
        assert not is_allowed_command(["rm", "-rf", "/"])

    def test_disallowed_command_is_refused_before_spawn(self, tmp_path):
        with pytest.raises(CommandNotAllowedError):
            run_allowed_command(["bash", "-c", "echo hi"], str(tmp_path))

    def test_command_gate_rejects_static_types(self):
        with pytest.raises(ValueError):
            CommandGate(GateType.REVIEW)


def test_gate_context_fields():
    assert [f.name for f in fields(GateContext)] == [
        "workspace_root", "run_id", "iteration_id", "iteration_index", "feature_tags",
    ]
    assert GateContext("/ws").feature_tags == []


# =============================================================================
# Gate chain
# =============================================================================

class TestQualityGateRunner:
    def test_all_pass_in_fixed_order(self, context, tmp_path, gate_executor):
        results = make_runner(context, gate_executor).run_quality_gates(GateContext(str(tmp_path)))

        assert gate_types(results) == list(GateType.ALL)
        assert all(r.passed for r in results)
        assert gate_executor.calls == [
            ALLOWED_GATE_COMMANDS[GateType.BUILD],
            ALLOWED_GATE_COMMANDS[GateType.UNIT],
            ALLOWED_GATE_COMMANDS[GateType.BDD],
        ]

    def test_build_failure_skips_unit_and_bdd(self, context, tmp_path):
        executor = FakeGateExecutor({"build": "Module not found: Can't resolve '@/x'\nerror: build failed"})
        results = make_runner(context, executor).run_quality_gates(GateContext(str(tmp_path)))

        build, unit, bdd, review, security = results
        assert not build.passed and build.logs_ref == "stderr"
        assert unit.skipped and unit.report["dependencyGate"] == GateType.BUILD
        assert bdd.skipped
        assert review.passed and security.passed
        assert executor.calls == [ALLOWED_GATE_COMMANDS[GateType.BUILD]]

    def test_unit_failure_skips_bdd_only(self, context, tmp_path):
        executor = FakeGateExecutor({"test": "FAIL src/lib/x.test.ts"})
        results = make_runner(context, executor).run_quality_gates(GateContext(str(tmp_path)))
        assert [r.passed for r in results[:3]] == [True, False, False]
        assert results[2].report["dependencyGate"] == GateType.UNIT

    def test_execution_disabled(self, config, tmp_path, gate_executor):
        context = ServiceContext(config).with_overrides(execute_gates=False)
        results = make_runner(context, gate_executor).run_quality_gates(GateContext(str(tmp_path)))

        assert gate_executor.calls == []
        assert [r.report["reason"] for r in results[:3]] == [REASON_EXECUTION_DISABLED] * 3
        assert all(not r.passed for r in results[:3])
        assert results[3].passed and results[3].report["mode"] == "policy"
        assert results[4].passed

    def test_dependencies_not_ready(self, context, tmp_path, gate_executor):
        def _not_ready(workspace, executor):
            return DependencyResult(ok=False, log="npm ERR! network")

        results = make_runner(context, gate_executor, ensure=_not_ready).run_quality_gates(
            GateContext(str(tmp_path))
        )
        assert gate_executor.calls == []
        assert {r.report["reason"] for r in results[:3]} == {REASON_WORKSPACE_NOT_PREPARED}
        assert results[0].report["snippet"] == "npm ERR! network"

    def test_static_gates_fail_on_findings(self, context, tmp_path, gate_executor):
        src = tmp_path / "src"
        src.mkdir()
        (src / "page.tsx").write_text("const x = eval('1')\nel.innerHTML = html\n")
        (tmp_path / ".env").write_text("SECRET=1\n")
        (tmp_path / ".env.example").write_text("SECRET=\n")

        results = make_runner(context, gate_executor).run_quality_gates(GateContext(str(tmp_path)))
        review, security = results[3], results[4]

        assert not review.passed
        assert review.report["findings"][0]["check"] == "eval_usage"
        assert not security.passed
        checks = {f["check"] for f in security.report["findings"]}
        assert checks == {"env_file_committed", "xss_vector"}
        assert security.report["summary"]["filesScanned"] == 1

    def test_warnings_do_not_fail(self, context, tmp_path, gate_executor):
        (tmp_path / "a.ts").write_text("console.log('hi')\n")
        results = make_runner(context, gate_executor).run_quality_gates(GateContext(str(tmp_path)))
        review = results[3]
        assert review.passed
        assert review.report["summary"] == {"failCount": 0, "warnCount": 1, "filesScanned": 1}


# =============================================================================
# Scanner
# =============================================================================

class TestScanner:
    @pytest.mark.parametrize(
        "line",
        [
            "const apiKey = 'abcdefghijklmnop'",
            "const t = 'ghp_abcdefghijklmnopqrstuv'",
            "document.write(userInput)",
        ],
    )
    def test_security_checks_match(self, tmp_path, line):
        (tmp_path / "x.ts").write_text(line + "\n")
        scan = scan_workspace_files(str(tmp_path), SECURITY_CHECKS)
        assert scan["findings"]

    def test_excluded_dirs_and_extensions(self, tmp_path):
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "node_modules" / "x.js").write_text("document.write(1)\n")
        (tmp_path / "notes.md").write_text("document.write(1)\n")
        scan = scan_workspace_files(str(tmp_path), SECURITY_CHECKS)
        assert scan == {"findings": [], "files_scanned": 0}


# =============================================================================
# Diagnostics
# =============================================================================

class TestDiagnostics:
    def test_root_cause_beats_noise(self):
        gate = GateResult(
            gate_type=GateType.BUILD,
            passed=False,
            report={"snippet": "> next build\n   at foo (x.js:1)\nError: Cannot find module 'zod'\nmore"},
        )
        assert extract_primary_gate_failure_detail(gate) == "Error: Cannot find module 'zod'"

    def test_reason_wins(self):
        gate = {"gateType": "UNIT", "passed": False, "report": {"reason": "execution_disabled", "snippet": "x"}}
        assert extract_primary_gate_failure_detail(gate) == "execution_disabled"

    def test_passed_gate_has_no_detail(self):
        assert extract_primary_gate_failure_detail(GateResult(GateType.BUILD, True)) is None

    def test_summary_skips_skipped_and_passed(self):
        gates = [
            GateResult(GateType.BUILD, False, report={"snippet": "error: boom"}),
            GateResult(GateType.UNIT, False, report={"reason": REASON_SKIPPED}),
            GateResult(GateType.REVIEW, True),
            GateResult(GateType.SECURITY, False, report={}),
        ]
        assert build_failed_gate_summary(gates) == "BUILD (error: boom), SECURITY"


# =============================================================================
# Preflight
# =============================================================================

class TestPreflight:
    def test_missing_manifest(self, tmp_path, gate_executor):
        result = ensure_workspace_dependencies(str(tmp_path), gate_executor)
        assert not result.ok
        assert "package.json not found" in result.log
        assert gate_executor.calls == []

    def test_install_once(self, tmp_path, gate_executor):
        (tmp_path / "package.json").write_text("{}")
        assert ensure_workspace_dependencies(str(tmp_path), gate_executor).ok
        (tmp_path / "node_modules").mkdir()
        assert ensure_workspace_dependencies(str(tmp_path), gate_executor).ok
        assert gate_executor.calls == [["npm", "install", "--no-fund", "--no-audit"]]

    def test_sync_repairs_known_bad_states(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({"name": "x"}))
        (tmp_path / "src" / "test").mkdir(parents=True)
        (tmp_path / "src" / "test" / "setup.ts").write_text("import '@testing-library/jest-dom/vitest'\n")
        (tmp_path / "src" / "app").mkdir()
        (tmp_path / "src" / "app" / "layout.tsx").write_text("import { Html } from 'next/document'\n")

        result = synchronize_workspace_for_gates(str(tmp_path))

        assert result.fixes == [
            "added_dev_dependency:@testing-library/jest-dom",
            "rewrote_layout_without_next_document",
        ]
        manifest = json.loads((tmp_path / "package.json").read_text())
        assert "@testing-library/jest-dom" in manifest["devDependencies"]
        assert "next/document" not in (tmp_path / "src" / "app" / "layout.tsx").read_text()
        assert not synchronize_workspace_for_gates(str(tmp_path)).changed


# =============================================================================
# Recording
# =============================================================================

class TestRecordResults:
    def test_upserts_rows_and_emits_events(self, context, db, events, project, tmp_path):
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        iteration = db.create_iterations(run.id, [{"index": 1, "name": "Foundation"}])[0]
        runner = make_runner(context, FakeGateExecutor({"build": "error: boom"}), db=db, events=events)

        results = runner.run_quality_gates(GateContext(str(tmp_path), run_id=run.id, iteration_id=iteration.id))
        runner.record_results(run.id, iteration.id, 1, results)

        assert {g.gate_type for g in db.list_quality_gates(iteration.id)} == set(GateType.ALL)
        listed = events.list_events(run.id)
        assert [e["message"] for e in listed] == [
            "BUILD gate failed",
            "UNIT gate skipped",
            "BDD gate skipped",
            "REVIEW gate passed",
            "SECURITY gate passed",
        ]
        assert listed[0]["payload"]["summary"] == "error: boom"
        assert listed[1]["payload"]["skipped"] is True

    def test_recording_requires_storage(self, context):
        with pytest.raises(RuntimeError):
            QualityGateRunner(context).record_results("r", "i", 1, [])
