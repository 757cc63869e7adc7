"""
DevRunner Plan Snapshot Helpers

Validation and normalization of the plan snapshot captured at run creation.
Snapshot content is JSON produced upstream, so every accessor checks shape
before trusting it.
"""

from typing import Any, Dict, Optional

from devrunner.errors import ValidationError
from devrunner.models.domain import (
    ApprovedPlan,
    AssessmentResult,
    IterationPlanItem,
    PlanSnapshot,
)

DEFAULT_PROJECT_NAME = "DevRunner App"
DEFAULT_PROJECT_DESCRIPTION = "Application generated automatically by the autonomous pipeline."

_COMPLEXITY_LEVELS = ("simple", "medium", "complex")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def is_assessment_result(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    if not _is_number(value.get("complexityScore")):
        return False
    if not _is_number(value.get("recommendedIterations")):
        return False
    if str(value.get("complexityLevel")) not in _COMPLEXITY_LEVELS:
        return False
    factors = value.get("factors")
    if not isinstance(factors, list):
        return False
    return all(
        isinstance(f, dict)
        and isinstance(f.get("name"), str)
        and _is_number(f.get("score"))
        and _is_number(f.get("maxScore"))
        and isinstance(f.get("detail"), str)
        for f in factors
    )


def is_iteration_plan_item(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    if not _is_number(value.get("index")):
        return False
    for key in ("name", "slug", "gherkinPath"):
        if not isinstance(value.get(key), str):
            return False
    scope = value.get("scope")
    if not isinstance(scope, dict):
        return False
    return (
        _is_str_list(scope.get("goals"))
        and _is_str_list(scope.get("featureTags"))
        and _is_str_list(scope.get("risks"))
    )


def get_approved_plan(snapshot: PlanSnapshot) -> Optional[ApprovedPlan]:
    """Return the pre-approved plan only if both parts are present and well-formed."""
    if not is_assessment_result(snapshot.approved_assessment):
        return None
    iterations = snapshot.approved_iterations
    if not isinstance(iterations, list) or not iterations:
        return None
    if not all(is_iteration_plan_item(item) for item in iterations):
        return None
    return ApprovedPlan(
        assessment=AssessmentResult.from_dict(snapshot.approved_assessment),
        iterations=[IterationPlanItem.from_dict(item) for item in iterations],
    )


def normalize_technical_plan(snapshot: PlanSnapshot) -> Dict[str, Any]:
    plan = snapshot.technical_plan
    return plan if isinstance(plan, dict) else {}


def _first_text(*candidates: Any) -> Optional[str]:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def resolve_project_name(snapshot: PlanSnapshot) -> str:
    business = snapshot.business_plan if isinstance(snapshot.business_plan, dict) else {}
    return _first_text(snapshot.project_name, business.get("name")) or DEFAULT_PROJECT_NAME


def resolve_project_description(snapshot: PlanSnapshot) -> str:
    business = snapshot.business_plan if isinstance(snapshot.business_plan, dict) else {}
    return (
        _first_text(snapshot.project_description, business.get("description"))
        or DEFAULT_PROJECT_DESCRIPTION
    )


def parse_approved_plan(data: Any) -> ApprovedPlan:
    """
    Build an ApprovedPlan from a {"assessment": ..., "iterations": [...]} mapping.

    Raises ValidationError when either part is missing or malformed.
    """
    if not isinstance(data, dict):
        raise ValidationError("Approved plan must be a mapping with assessment and iterations")
    plan = get_approved_plan(
        PlanSnapshot(approved_assessment=data.get("assessment"), approved_iterations=data.get("iterations"))
    )
    if plan is None:
        raise ValidationError("Approved plan is missing a valid assessment or iteration list")
    return plan
