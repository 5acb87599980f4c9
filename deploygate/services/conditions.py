"""Deterministic approval condition evaluation.

All functions are pure -- no side effects, no storage access, no network calls.
Each returns a ConditionResult indicating pass/fail with evidence. The
deployment metadata is a plain dict: ``branch``, ``author``, ``size`` (bytes)
and ``test_results`` (``{"coverage": float, "status": str}``).

An operator a condition type does not support passes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from deploygate.models.domain import ApprovalCondition


@dataclass
class ConditionResult:
    passed: bool
    condition_type: str
    evidence: dict = field(default_factory=dict)


@dataclass
class ConditionVerdict:
    passed: bool
    results: list[ConditionResult]

    @property
    def failed(self) -> list[ConditionResult]:
        return [r for r in self.results if not r.passed]


def _as_float(value) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def check_branch(condition: ApprovalCondition, deployment: dict) -> ConditionResult:
    """Match the deployment branch exactly or by substring."""
    branch = deployment.get("branch") or ""
    if condition.operator == "equals":
        passed = branch == condition.value
    elif condition.operator == "contains":
        passed = condition.value in branch
    else:
        passed = True
    return ConditionResult(
        passed=passed,
        condition_type="branch",
        evidence={"branch": branch, "operator": condition.operator, "value": condition.value},
    )


def check_time(condition: ApprovalCondition, now: datetime | None = None) -> ConditionResult:
    """Compare the current UTC hour. ``in_range`` takes an inclusive "start-end"."""
    hour = (now or datetime.now(timezone.utc)).hour
    passed = True
    if condition.operator == "greater_than":
        bound = _as_float(condition.value)
        passed = bound is not None and hour > bound
    elif condition.operator == "less_than":
        bound = _as_float(condition.value)
        passed = bound is not None and hour < bound
    elif condition.operator == "in_range":
        start, _, end = condition.value.partition("-")
        lo, hi = _as_float(start), _as_float(end)
        passed = lo is not None and hi is not None and lo <= hour <= hi
    return ConditionResult(
        passed=passed,
        condition_type="time",
        evidence={"hour": hour, "operator": condition.operator, "value": condition.value},
    )


def check_tests(condition: ApprovalCondition, deployment: dict) -> ConditionResult:
    """Coverage threshold or overall test status. Missing results fail."""
    results = deployment.get("test_results")
    if not results:
        return ConditionResult(
            passed=False,
            condition_type="tests",
            evidence={"reason": "no test results"},
        )

    passed = True
    if condition.operator == "greater_than":
        coverage = _as_float(results.get("coverage"))
        bound = _as_float(condition.value)
        passed = coverage is not None and bound is not None and coverage > bound
    elif condition.operator == "equals":
        passed = results.get("status") == condition.value
    return ConditionResult(
        passed=passed,
        condition_type="tests",
        evidence={"test_results": results, "operator": condition.operator, "value": condition.value},
    )


def check_size(condition: ApprovalCondition, deployment: dict) -> ConditionResult:
    """Compare artifact size in megabytes against the condition value."""
    size_bytes = _as_float(deployment.get("size")) or 0.0
    size_mb = size_bytes / (1024 * 1024)
    bound = _as_float(condition.value)

    passed = True
    if condition.operator == "less_than":
        passed = bound is not None and size_mb < bound
    elif condition.operator == "greater_than":
        passed = bound is not None and size_mb > bound
    return ConditionResult(
        passed=passed,
        condition_type="size",
        evidence={"size_mb": round(size_mb, 3), "operator": condition.operator, "value": condition.value},
    )


def check_author(condition: ApprovalCondition, deployment: dict) -> ConditionResult:
    """Exact author match, or membership in a comma-separated list."""
    author = deployment.get("author") or ""
    if condition.operator == "equals":
        passed = author == condition.value
    elif condition.operator == "contains":
        allowed = [a.strip() for a in condition.value.split(",")]
        passed = author in allowed
    else:
        passed = True
    return ConditionResult(
        passed=passed,
        condition_type="author",
        evidence={"author": author, "operator": condition.operator, "value": condition.value},
    )


def evaluate_condition(
    condition: ApprovalCondition, deployment: dict, now: datetime | None = None
) -> ConditionResult:
    if condition.type == "branch":
        return check_branch(condition, deployment)
    if condition.type == "time":
        return check_time(condition, now)
    if condition.type == "tests":
        return check_tests(condition, deployment)
    if condition.type == "size":
        return check_size(condition, deployment)
    if condition.type == "author":
        return check_author(condition, deployment)
    return ConditionResult(passed=True, condition_type=condition.type)


def evaluate_conditions(
    conditions: list[ApprovalCondition],
    deployment: dict | None = None,
    now: datetime | None = None,
) -> ConditionVerdict:
    """Run every condition and return the aggregate verdict (all must pass)."""
    deployment = deployment or {}
    results = [evaluate_condition(c, deployment, now) for c in conditions]
    return ConditionVerdict(passed=all(r.passed for r in results), results=results)
