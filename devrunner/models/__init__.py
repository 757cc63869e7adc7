"""
DevRunner Models

Typed domain objects for development runs, iterations, gates, agent tasks
and run events.
"""

from devrunner.models.domain import (
    # Status Constants
    RunStatus,
    IterationStatus,
    GateType,
    AgentTaskStatus,
    RunEventType,
    ProjectStatus,
    TERMINAL_RUN_STATUSES,
    ACTIVE_RUN_STATUSES,
    # Core Models
    Project,
    DevelopmentRun,
    IterationRun,
    IterationScope,
    QualityGateRun,
    AgentTaskRun,
    RunEvent,
    # Plan Models
    AssessmentFactor,
    AssessmentResult,
    IterationPlanItem,
    ApprovedPlan,
    PlanSnapshot,
)

__all__ = [
    "RunStatus",
    "IterationStatus",
    "GateType",
    "AgentTaskStatus",
    "RunEventType",
    "ProjectStatus",
    "TERMINAL_RUN_STATUSES",
    "ACTIVE_RUN_STATUSES",
    "Project",
    "DevelopmentRun",
    "IterationRun",
    "IterationScope",
    "QualityGateRun",
    "AgentTaskRun",
    "RunEvent",
    "AssessmentFactor",
    "AssessmentResult",
    "IterationPlanItem",
    "ApprovedPlan",
    "PlanSnapshot",
]
