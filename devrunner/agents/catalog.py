"""
DevRunner Agent Catalog

The nine pipeline agents.

- Assessment and IterationPlanner are deterministic and derive the plan from
  the technical plan.
- Spec, Test, Code and Review call the model runtime when it is enabled.
  Otherwise they use a deterministic template when deterministic agents are
  allowed, or raise AgentRuntimeDisabledError.
- Release, Recovery and Deploy are bookkeeping agents.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from devrunner.agents.runtime import AgentResult, AgentRuntime, AnthropicBackend
from devrunner.agents.schemas import (
    CodeAgentOutput,
    ReviewAgentOutput,
    SpecAgentOutput,
    TestAgentOutput,
)
from devrunner.config import Config
from devrunner.errors import AgentRuntimeDisabledError
from devrunner.logging import get_logger
from devrunner.models.domain import (
    AssessmentFactor,
    AssessmentResult,
    IterationPlanItem,
    IterationScope,
    PlanSnapshot,
)
from devrunner.plan import normalize_technical_plan
from devrunner.utils import to_feature_tag

logger = get_logger(__name__)

SPEC_AGENT = "SpecAgent"
TEST_AGENT = "TestAgent"
CODE_AGENT = "CodeAgent"
REVIEW_AGENT = "ReviewAgent"
ASSESSMENT_AGENT = "AssessmentAgent"
ITERATION_PLANNER_AGENT = "IterationPlannerAgent"
RELEASE_AGENT = "ReleaseAgent"
RECOVERY_AGENT = "RecoveryAgent"
DEPLOY_AGENT = "DeployAgent"

PROMPT_SECTION_LIMIT = 16000

SYSTEM_PROMPT = " ".join([
    "You are an expert software development agent.",
    "Return ONLY valid JSON, with no markdown and no extra explanation.",
    "Never include absolute paths, '..' or NUL characters in file paths.",
])

DEFAULT_ITERATIONS = [
    {
        "name": "Foundation",
        "goals": [
            "Base application structure and initial quality baseline",
            "Authentication setup and core data model",
        ],
        "risks": ["High coupling in base components"],
    },
    {
        "name": "Core Features",
        "goals": [
            "Implement the main user flows",
            "Cover critical endpoints with tests",
        ],
        "risks": ["Incomplete business rules in the first cycle"],
    },
    {
        "name": "Stability",
        "goals": [
            "Refine the main UX and error states",
            "Strengthen observability and test robustness",
        ],
        "risks": ["Regressions in edge cases"],
    },
    {
        "name": "Release",
        "goals": [
            "Final hardening for deploy",
            "Performance and security adjustments",
        ],
        "risks": ["Last-minute infrastructure changes"],
    },
]


@dataclass
class AgentExecutionContext:
    """What every agent sees about the run it works for."""
    run_id: str
    project_id: str
    snapshot: PlanSnapshot
    iteration_id: Optional[str] = None
    iteration_index: Optional[int] = None
    attempt: Optional[int] = None


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _endpoint_count(technical: Dict[str, Any]) -> int:
    return sum(len(_list(_dict(group).get("endpoints"))) for group in _list(technical.get("apiEndpoints")))


def calculate_assessment(snapshot: PlanSnapshot) -> AssessmentResult:
    """Score five factors out of 5 each and size the plan from the total."""
    technical = normalize_technical_plan(snapshot)
    pages = len(_list(technical.get("pages")))
    components = len(_list(technical.get("components")))
    endpoints = _endpoint_count(technical)
    has_database = bool(_dict(technical.get("database")).get("prismaSchema"))
    integrations = len(_list(technical.get("integrations")))

    factors = [
        AssessmentFactor("Pages", min(pages, 5), 5, f"{pages} planned pages"),
        AssessmentFactor("Components", min(math.ceil(components / 2), 5), 5, f"{components} components"),
        AssessmentFactor("API", min(math.ceil(endpoints / 2), 5), 5, f"{endpoints} endpoints"),
        AssessmentFactor(
            "Database",
            5 if has_database else 1,
            5,
            "Prisma schema present" if has_database else "No dedicated schema",
        ),
        AssessmentFactor("Integrations", min(integrations, 5), 5, f"{integrations} external integrations"),
    ]

    total = sum(f.score for f in factors)
    # Round half up, as the plan source does.
    score = int(math.floor(total / 25 * 100 + 0.5))
    if score >= 66:
        level, iterations = "complex", 4
    elif score >= 33:
        level, iterations = "medium", 3
    else:
        level, iterations = "simple", 2

    return AssessmentResult(
        complexity_score=score,
        complexity_level=level,
        recommended_iterations=iterations,
        factors=factors,
    )


def build_iteration_plan(snapshot: PlanSnapshot, assessment: AssessmentResult) -> List[IterationPlanItem]:
    """Slice the default iteration templates and spread pages/endpoints across them."""
    technical = normalize_technical_plan(snapshot)
    page_names = [
        _dict(page).get("name") or _dict(page).get("path") or "page"
        for page in _list(technical.get("pages"))
    ]
    endpoint_paths = [
        f"{_dict(endpoint).get('method') or 'GET'} {_dict(endpoint).get('path') or '/api/resource'}"
        for group in _list(technical.get("apiEndpoints"))
        for endpoint in _list(_dict(group).get("endpoints"))
    ]

    items = []
    for i, base in enumerate(DEFAULT_ITERATIONS[: assessment.recommended_iterations]):
        index = i + 1
        goals = list(base["goals"])
        selected_pages = page_names[i * 2: i * 2 + 2]
        selected_endpoints = endpoint_paths[i * 2: i * 2 + 3]
        if selected_pages:
            goals.append(f"Cover pages: {', '.join(selected_pages)}")
        if selected_endpoints:
            goals.append(f"Cover APIs: {', '.join(selected_endpoints)}")

        feature_tag = to_feature_tag(base["name"])
        file_slug = re.sub(r"\s+", "-", base["name"].lower())
        items.append(
            IterationPlanItem(
                index=index,
                name=base["name"],
                slug=feature_tag.replace("@", ""),
                gherkin_path=f"docs/specifications/generated/iter-{index}-{file_slug}.feature",
                scope=IterationScope(goals=goals, feature_tags=[feature_tag], risks=list(base["risks"])),
            )
        )
    return items


def _iteration_slug(name: str) -> str:
    value = re.sub(r"[^\w\s-]", "", name.lower())
    value = re.sub(r"[\s_]+", "-", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-")


def compact_json(value: Any, max_length: int = PROMPT_SECTION_LIMIT) -> str:
    raw = json.dumps(value, indent=2, default=str)
    if raw is None or raw == "null":
        return "{}"
    if len(raw) <= max_length:
        return raw
    return f"{raw[:max_length]}\n... [truncated]"


def _prompt(title: str, contract: List[str], rules: List[str], context: AgentExecutionContext,
            iteration: IterationPlanItem, plans: Dict[str, Any], attempt: Optional[int] = None) -> str:
    lines = [title, "", "REQUIRED JSON CONTRACT:", "{"]
    lines.extend(f"  {field}" for field in contract)
    lines.extend(["}", "", "RULES:"])
    lines.extend(f"- {rule}" for rule in rules)
    lines.append("- Do not return any text outside the JSON.")
    lines.extend(["", f"RunId: {context.run_id}", f"ProjectId: {context.project_id}"])
    if attempt is not None:
        lines.append(f"Attempt: {attempt}")
    lines.append(f"Iteration: {json.dumps(iteration.to_dict(), indent=2)}")
    lines.append("")
    lines.extend(f"{label}: {compact_json(plan)}" for label, plan in plans.items())
    return "\n".join(lines)


class AgentCatalog:
    """
    Entry points for every agent.

    Each method returns an AgentResult and is meant to be wrapped by the
    AgentHarness, which records the task and its events.
    """

    def __init__(self, config: Config, runtime: Optional[AgentRuntime] = None) -> None:
        self.config = config
        if runtime is None and config.llm_runtime_enabled:
            runtime = AgentRuntime(
                AnthropicBackend(
                    api_key=config.anthropic_api_key or "",
                    model=config.anthropic_model,
                    max_tokens=config.anthropic_max_tokens,
                    api_url=config.anthropic_api_url,
                )
            )
        self.runtime = runtime

    # -- helpers ---------------------------------------------------------------

    def _model_enabled(self) -> bool:
        return self.runtime is not None

    def _require_fallback(self, agent_name: str) -> None:
        if not self.config.deterministic_agents:
            raise AgentRuntimeDisabledError(agent_name)

    # -- planning agents -------------------------------------------------------

    def run_assessment_agent(self, context: AgentExecutionContext) -> AgentResult:
        assessment = calculate_assessment(context.snapshot)
        return AgentResult(output=assessment.to_dict(), token_usage=120, cost=0.0009)

    def run_iteration_planner_agent(
        self,
        context: AgentExecutionContext,
        assessment: AssessmentResult,
    ) -> AgentResult:
        iterations = build_iteration_plan(context.snapshot, assessment)
        return AgentResult(
            output={
                "assessment": assessment.to_dict(),
                "iterations": [item.to_dict() for item in iterations],
            },
            token_usage=220,
            cost=0.0017,
        )

    # -- iteration agents ------------------------------------------------------

    def run_spec_agent(self, context: AgentExecutionContext, iteration: IterationPlanItem) -> AgentResult:
        snapshot = context.snapshot
        if self._model_enabled():
            prompt = _prompt(
                "Produce the SpecAgent package for this iteration.",
                ['"gherkinPath": string,', '"featureTags": string[],', '"gherkin": string,',
                 '"files": [{ "path": string, "content": string }]'],
                [
                    "`gherkinPath` must equal the iteration's gherkinPath.",
                    "The gherkin file must include a main scenario and an error scenario.",
                    "Also include a .notes.md file with the iteration goals.",
                ],
                context,
                iteration,
                {
                    "BusinessPlan": snapshot.business_plan,
                    "TechnicalPlan": snapshot.technical_plan,
                    "UxPlan": snapshot.ux_plan,
                },
            )
            return self.runtime.run_agent(SPEC_AGENT, SYSTEM_PROMPT, prompt, SpecAgentOutput)
        self._require_fallback(SPEC_AGENT)

        slug = _iteration_slug(iteration.name) or f"iter-{iteration.index}"
        gherkin = "\n".join([
            f"@autonomous {' '.join(iteration.scope.feature_tags)}",
            f"Feature: Iteration {iteration.index} - {iteration.name}",
            "  As an application user",
            "  I want to run the main flow of this iteration",
            "  So that the increment is validated safely",
            "",
            "  Scenario: Iteration scope",
            "    Given the pipeline is running",
            f"    When iteration {iteration.index} is processed",
            "    Then the acceptance criteria of this iteration pass",
        ])
        notes = "\n".join(
            [
                f"# Iteration {iteration.index} - {iteration.name}",
                "",
                f"Run: {context.run_id}",
                f"Project: {context.project_id}",
                "",
                "## Goals",
            ]
            + [f"- {goal}" for goal in iteration.scope.goals]
        )
        return AgentResult(
            output={
                "gherkinPath": iteration.gherkin_path,
                "featureTags": list(iteration.scope.feature_tags),
                "gherkin": gherkin,
                "files": [
                    {"path": iteration.gherkin_path, "content": gherkin},
                    {
                        "path": f"docs/specifications/generated/iter-{iteration.index}-{slug}.notes.md",
                        "content": notes,
                    },
                ],
            },
            token_usage=260,
            cost=0.0021,
        )

    def run_test_agent(self, context: AgentExecutionContext, iteration: IterationPlanItem) -> AgentResult:
        snapshot = context.snapshot
        if self._model_enabled():
            prompt = _prompt(
                "Produce the TestAgent package for this iteration.",
                ['"redStateConfirmed": boolean,', '"testTargets": string[],', '"command": string,',
                 '"files": [{ "path": string, "content": string }]'],
                [
                    "Generate unit and BDD tests for the iteration scope.",
                    "`redStateConfirmed` may only be true when the tests were written to fail before the code agent runs.",
                    "Use paths under `src/lib/iterations/*.test.ts` and `tests/e2e/steps/*.test.ts`.",
                ],
                context,
                iteration,
                {"TechnicalPlan": snapshot.technical_plan, "UxPlan": snapshot.ux_plan},
            )
            return self.runtime.run_agent(TEST_AGENT, SYSTEM_PROMPT, prompt, TestAgentOutput)
        self._require_fallback(TEST_AGENT)

        tag = to_feature_tag(iteration.name).replace("@", "")
        first_tag = iteration.scope.feature_tags[0] if iteration.scope.feature_tags else "@iter"
        title = f"Iteration {iteration.index} - {iteration.name}"
        unit_test = "\n".join([
            "import { describe, it, expect } from 'vitest'",
            f"import {{ describeIteration }} from './iter-{iteration.index}'",
            "",
            f"describe({json.dumps(title)}, () => {{",
            "  it('returns the iteration summary', () => {",
            "    expect(describeIteration()).toContain('Iteration')",
            f"    expect(describeIteration()).toContain({json.dumps(iteration.name)})",
            "  })",
            "})",
        ])
        bdd_test = "\n".join([
            "import { describe, it, expect } from 'vitest'",
            "",
            f"describe({json.dumps('BDD ' + title)}, () => {{",
            "  it('keeps the acceptance scenario valid', () => {",
            f"    expect({json.dumps(first_tag)}).toMatch(/^@/)",
            "  })",
            "})",
        ])
        return AgentResult(
            output={
                "redStateConfirmed": True,
                "testTargets": list(iteration.scope.goals),
                "command": "npm run test -- tests/e2e/steps",
                "files": [
                    {"path": f"src/lib/iterations/iter-{iteration.index}.test.ts", "content": unit_test},
                    {"path": f"tests/e2e/steps/iter-{iteration.index}-{tag}.test.ts", "content": bdd_test},
                ],
            },
            token_usage=180,
            cost=0.0014,
        )

    def run_code_agent(
        self,
        context: AgentExecutionContext,
        iteration: IterationPlanItem,
        attempt: int,
    ) -> AgentResult:
        snapshot = context.snapshot
        if self._model_enabled():
            prompt = _prompt(
                "Produce the CodeAgent package for this iteration.",
                ['"appliedChanges": string[],', '"branchStrategy": string,', '"commitMessage": string,',
                 '"files": [{ "path": string, "content": string }]'],
                [
                    "Implement only what is needed to satisfy the iteration tests.",
                    "`commitMessage` must follow `feat(iter-<n>): <scope>`.",
                    "Do not touch files outside the iteration scope.",
                ],
                context,
                iteration,
                {"TechnicalPlan": snapshot.technical_plan, "UxPlan": snapshot.ux_plan},
                attempt=attempt,
            )
            return self.runtime.run_agent(CODE_AGENT, SYSTEM_PROMPT, prompt, CodeAgentOutput)
        self._require_fallback(CODE_AGENT)

        title = f"Iteration {iteration.index} - {iteration.name}"
        implementation = "\n".join([
            "export function describeIteration() {",
            f"  return {json.dumps(title)}",
            "}",
            "",
            "export function getIterationGoals() {",
            f"  return {json.dumps(iteration.scope.goals)}",
            "}",
        ])
        return AgentResult(
            output={
                "appliedChanges": [
                    f"Incremental implementation for {iteration.name}",
                    f"Attempt {attempt}",
                ],
                "branchStrategy": "trunk-based-short-branch",
                "commitMessage": f"feat(iter-{iteration.index}): {iteration.name}",
                "files": [{"path": f"src/lib/iterations/iter-{iteration.index}.ts", "content": implementation}],
            },
            token_usage=520,
            cost=0.0062,
        )

    def run_review_agent(self, context: AgentExecutionContext, iteration: IterationPlanItem) -> AgentResult:
        snapshot = context.snapshot
        if self._model_enabled():
            prompt = _prompt(
                "Produce the ReviewAgent package for this iteration.",
                ['"approved": boolean,', '"checks": string[],', '"notes": string'],
                [
                    "Check adherence to the iteration scope and to the technical and UX plans.",
                    "Check security and regression risks.",
                    "On a critical blocker, `approved` must be false and `notes` must explain it.",
                ],
                context,
                iteration,
                {"TechnicalPlan": snapshot.technical_plan, "UxPlan": snapshot.ux_plan},
            )
            return self.runtime.run_agent(REVIEW_AGENT, SYSTEM_PROMPT, prompt, ReviewAgentOutput)
        self._require_fallback(REVIEW_AGENT)

        return AgentResult(
            output={
                "approved": True,
                "checks": ["security-scan", "regression-review", "scope-adherence"],
                "notes": f"Iteration {iteration.index} ({iteration.name}) scope approved for gates",
            },
            token_usage=140,
            cost=0.0011,
        )

    # -- bookkeeping agents ----------------------------------------------------

    def run_release_agent(
        self,
        context: AgentExecutionContext,
        iteration: IterationPlanItem,
        branch_name: str,
    ) -> AgentResult:
        return AgentResult(
            output={
                "branchName": branch_name,
                "pullRequestTitle": f"feat(iter-{iteration.index}): {iteration.name}",
                "mergeStrategy": "squash",
                "merged": True,
            },
            token_usage=90,
            cost=0.0007,
        )

    def run_recovery_agent(
        self,
        context: AgentExecutionContext,
        iteration: IterationPlanItem,
        attempt: int,
        failed_gates: List[str],
    ) -> AgentResult:
        return AgentResult(
            output={
                "nextAttempt": attempt + 1,
                "recommendation": (
                    f"Adjust the iteration {iteration.index} implementation for gates: {', '.join(failed_gates)}"
                ),
                "fallback": "checkpoint",
            },
            token_usage=120,
            cost=0.0009,
        )

    def run_deploy_agent(self, context: AgentExecutionContext, iteration: IterationPlanItem) -> AgentResult:
        return AgentResult(
            output={
                "deployed": True,
                "message": f"Deploy completed for iteration {iteration.index}",
                "environment": "production",
            },
            token_usage=80,
            cost=0.0006,
        )
