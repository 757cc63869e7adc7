"""
DevRunner Domain Models

Data classes representing the core entities of a development run.
These are used for data transfer between storage and services.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# Status Constants

class RunStatus:
    """Development run status values."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    WAITING_CHECKPOINT = "WAITING_CHECKPOINT"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED})
ACTIVE_RUN_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.WAITING_CHECKPOINT})


class IterationStatus:
    """Iteration run status values."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    GATED = "GATED"
    MERGED = "MERGED"
    DEPLOYED = "DEPLOYED"
    FAILED = "FAILED"


class GateType:
    """Quality gate types, in execution order."""
    BUILD = "BUILD"
    UNIT = "UNIT"
    BDD = "BDD"
    REVIEW = "REVIEW"
    SECURITY = "SECURITY"

    ALL = (BUILD, UNIT, BDD, REVIEW, SECURITY)
    COMMAND_GATES = (BUILD, UNIT, BDD)


class AgentTaskStatus:
    """Agent task run status values."""
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class RunEventType:
    """Run event types."""
    RUN_STATUS = "RUN_STATUS"
    ITERATION_STATUS = "ITERATION_STATUS"
    AGENT_TASK = "AGENT_TASK"
    QUALITY_GATE = "QUALITY_GATE"
    DEPLOY_STATUS = "DEPLOY_STATUS"
    ERROR = "ERROR"
    INFO = "INFO"

    ALL = (RUN_STATUS, ITERATION_STATUS, AGENT_TASK, QUALITY_GATE, DEPLOY_STATUS, ERROR, INFO)


class ProjectStatus:
    """Project status values touched by the pipeline."""
    DRAFT = "DRAFT"
    GENERATING = "GENERATING"
    DEPLOYING = "DEPLOYING"
    LIVE = "LIVE"
    FAILED = "FAILED"


# Core Domain Models

@dataclass
class Project:
    """The project a development run builds. Owned by the upstream planning flow."""
    id: str
    name: str
    status: str
    created_at: str
    updated_at: str
    description: Optional[str] = None
    business_plan: Optional[Dict[str, Any]] = None
    technical_plan: Optional[Dict[str, Any]] = None
    ux_plan: Optional[Dict[str, Any]] = None
    github_repo_owner: Optional[str] = None
    github_repo_name: Optional[str] = None
    netlify_site_id: Optional[str] = None
    production_url: Optional[str] = None
    last_deploy_at: Optional[str] = None
    # Access tokens (github_token, netlify_token)
    secrets: Optional[Dict[str, Any]] = None


@dataclass
class DevelopmentRun:
    """
    One execution attempt of the full pipeline for a project.

    plans_snapshot is captured at creation and never rewritten.
    """
    id: str
    project_id: str
    status: str
    created_at: str
    updated_at: str
    current_iteration: int = 0
    total_iterations: int = 0
    plans_snapshot: Optional[Dict[str, Any]] = None
    worker_sandbox_path: Optional[str] = None
    error_summary: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    canceled_at: Optional[str] = None


@dataclass
class IterationScope:
    goals: List[str] = field(default_factory=list)
    feature_tags: List[str] = field(default_factory=list)
    risks: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"goals": list(self.goals), "featureTags": list(self.feature_tags), "risks": list(self.risks)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "IterationScope":
        data = data or {}
        return cls(
            goals=[str(g) for g in data.get("goals") or []],
            feature_tags=[str(t) for t in (data.get("featureTags") or data.get("feature_tags") or [])],
            risks=[str(r) for r in data.get("risks") or []],
        )


@dataclass
class IterationRun:
    """One vertical-slice unit of work within a run. index is 1-based and authoritative."""
    id: str
    run_id: str
    index: int
    name: str
    status: str
    created_at: str
    updated_at: str
    scope: IterationScope = field(default_factory=IterationScope)
    gherkin_path: Optional[str] = None
    branch_name: Optional[str] = None
    attempt_count: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


@dataclass
class QualityGateRun:
    """Latest evaluation of one gate for one iteration, keyed by (iteration_id, gate_type)."""
    id: str
    iteration_id: str
    gate_type: str
    passed: bool
    created_at: str
    updated_at: str
    duration_ms: int = 0
    logs_ref: Optional[str] = None
    report: Optional[Dict[str, Any]] = None


@dataclass
class AgentTaskRun:
    """One agent invocation record. Closed once, never updated afterwards."""
    id: str
    run_id: str
    agent_name: str
    input_hash: str
    status: str
    created_at: str
    iteration_id: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    token_usage: Optional[int] = None
    cost: Optional[float] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


@dataclass
class RunEvent:
    """Append-only run event. sequence is strictly increasing per run."""
    id: int
    run_id: str
    sequence: int
    event_type: str
    created_at: str
    iteration_id: Optional[str] = None
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


# Plan types

@dataclass
class AssessmentFactor:
    name: str
    score: float
    max_score: float
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "score": self.score, "maxScore": self.max_score, "detail": self.detail}


@dataclass
class AssessmentResult:
    """Complexity assessment that sizes the iteration plan."""
    complexity_score: float
    complexity_level: str  # simple | medium | complex
    recommended_iterations: int
    factors: List[AssessmentFactor] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complexityScore": self.complexity_score,
            "complexityLevel": self.complexity_level,
            "recommendedIterations": self.recommended_iterations,
            "factors": [f.to_dict() for f in self.factors],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssessmentResult":
        return cls(
            complexity_score=data["complexityScore"],
            complexity_level=data["complexityLevel"],
            recommended_iterations=data["recommendedIterations"],
            factors=[
                AssessmentFactor(
                    name=f["name"],
                    score=f["score"],
                    max_score=f["maxScore"],
                    detail=f["detail"],
                )
                for f in data.get("factors") or []
            ],
        )


@dataclass
class IterationPlanItem:
    """One planned iteration, as approved by the user or produced by the planner agent."""
    index: int
    name: str
    slug: str
    gherkin_path: str
    scope: IterationScope = field(default_factory=IterationScope)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "slug": self.slug,
            "gherkinPath": self.gherkin_path,
            "scope": self.scope.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IterationPlanItem":
        return cls(
            index=int(data["index"]),
            name=data["name"],
            slug=data["slug"],
            gherkin_path=data["gherkinPath"],
            scope=IterationScope.from_dict(data.get("scope")),
        )


@dataclass
class ApprovedPlan:
    assessment: AssessmentResult
    iterations: List[IterationPlanItem]


@dataclass
class PlanSnapshot:
    """Immutable copy of the plans captured at run creation."""
    project_name: Optional[str] = None
    project_description: Optional[str] = None
    business_plan: Optional[Dict[str, Any]] = None
    technical_plan: Optional[Dict[str, Any]] = None
    ux_plan: Optional[Dict[str, Any]] = None
    approved_assessment: Optional[Any] = None
    approved_iterations: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectName": self.project_name,
            "projectDescription": self.project_description,
            "businessPlan": self.business_plan,
            "technicalPlan": self.technical_plan,
            "uxPlan": self.ux_plan,
            "approvedAssessment": self.approved_assessment,
            "approvedIterations": self.approved_iterations,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PlanSnapshot":
        data = data or {}
        return cls(
            project_name=data.get("projectName"),
            project_description=data.get("projectDescription"),
            business_plan=data.get("businessPlan"),
            technical_plan=data.get("technicalPlan"),
            ux_plan=data.get("uxPlan"),
            approved_assessment=data.get("approvedAssessment"),
            approved_iterations=data.get("approvedIterations"),
        )
