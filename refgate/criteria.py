"""
Criterion evaluation for refgate.

A criterion is a named precondition written as a call expression:

    CoverageAtLeast(90)
    CoverageAtLeast(80, branch)
    ArtifactPresent("seam-analysis")
    TestsPassing

Evaluation is a pure function of a ReportSnapshot, so a gate check can be
replayed later against the same report documents and give the same answer.
Anything the evaluator does not understand fails closed.

All numeric thresholds are inclusive: lower bounds use >=, upper bounds <=.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import ast

from refgate.models.phase import EvalResult
from refgate.reports import ReportSnapshot


# Report kinds read by the built-in criteria
COVERAGE = "coverage"
COVERAGE_BASELINE = "coverage-baseline"
TEST_RESULTS = "test-results"
COMPLEXITY = "complexity"
SECURITY_SCAN = "security-scan"
RISK_ASSESSMENT = "risk-assessment"

RISK_LEVELS = ["low", "medium", "high", "critical"]

Check = Callable[..., Tuple[bool, str]]


@dataclass
class CriterionSpec:
    """A registered criterion implementation."""
    name: str
    check: Check
    reads: Callable[..., List[str]] = field(default=lambda *args: [])


_REGISTRY: Dict[str, CriterionSpec] = {}


def register_criterion(name: str, reads: Optional[Callable[..., List[str]]] = None):
    """Decorator registering `check(snapshot, *args) -> (satisfied, detail)`."""
    def decorator(fn: Check) -> Check:
        _REGISTRY[name] = CriterionSpec(name=name, check=fn, reads=reads or (lambda *args: []))
        return fn
    return decorator


def registered_criteria() -> List[str]:
    return sorted(_REGISTRY)


class MalformedCriterion(ValueError):
    pass


def parse_criterion(text: str) -> Tuple[str, List[Any]]:
    """Split a criterion expression into its name and literal arguments.

    Bare identifiers are read as strings, so `CoverageAtLeast(80, branch)`
    and `CoverageAtLeast(80, "branch")` are the same criterion.
    """
    try:
        node = ast.parse(text.strip(), mode="eval").body
    except SyntaxError as e:
        raise MalformedCriterion(f"cannot parse: {e.msg}")

    if isinstance(node, ast.Name):
        return node.id, []
    if not isinstance(node, ast.Call) or not isinstance(node.func, ast.Name):
        raise MalformedCriterion("expected Name or Name(args)")
    if node.keywords:
        raise MalformedCriterion("keyword arguments are not supported")

    args = []
    for arg in node.args:
        if isinstance(arg, ast.Name):
            args.append(arg.id)
        elif isinstance(arg, ast.Constant) and isinstance(arg.value, (int, float, str)):
            args.append(arg.value)
        elif (isinstance(arg, ast.UnaryOp) and isinstance(arg.op, ast.USub)
              and isinstance(arg.operand, ast.Constant)):
            args.append(-arg.operand.value)
        else:
            raise MalformedCriterion("arguments must be numbers, strings or names")
    return node.func.id, args


def _fmt(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def _number(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} is not a number: {value!r}")
    return value


def evaluate(criterion: str, snapshot: ReportSnapshot) -> EvalResult:
    """Evaluate one criterion against a snapshot. Never raises."""
    label = criterion.strip()
    try:
        name, args = parse_criterion(label)
    except MalformedCriterion as e:
        return EvalResult(label, False, f"{label}: malformed criterion ({e})")

    spec = _REGISTRY.get(name)
    if spec is None:
        return EvalResult(label, False, "unknown criterion")

    try:
        reads = spec.reads(*args)
    except TypeError:
        reads = []
    for kind in reads:
        if kind in snapshot.unreadable:
            return EvalResult(label, False,
                              f"{label}: report {kind} unreadable ({snapshot.unreadable[kind]})")

    try:
        satisfied, detail = spec.check(snapshot, *args)
    except TypeError as e:
        return EvalResult(label, False, f"{label}: bad arguments ({e})")
    except (KeyError, ValueError, AttributeError) as e:
        return EvalResult(label, False, f"{label}: evaluation error ({e})")
    return EvalResult(label, bool(satisfied), f"{label}: {detail}")


def evaluate_all(criteria: List[str], snapshot: ReportSnapshot) -> List[EvalResult]:
    """Evaluate a criterion set in declaration order."""
    return [evaluate(c, snapshot) for c in criteria]


def report_kinds(criteria: List[str]) -> List[str]:
    """Report kinds a criterion set reads (unknown criteria read nothing)."""
    kinds = []
    for text in criteria:
        try:
            name, args = parse_criterion(text)
        except MalformedCriterion:
            continue
        spec = _REGISTRY.get(name)
        if spec is None:
            continue
        try:
            for kind in spec.reads(*args):
                if kind not in kinds:
                    kinds.append(kind)
        except TypeError:
            continue
    return kinds


# =============================================================================
# Built-in criteria
# =============================================================================

def coverage_value(document: Any, kind: str) -> Optional[float]:
    """Coverage percentage of `kind` from a coverage report.

    Accepts `{"line": 91.2, "branch": 80}`, `{"percent": 91.2}` (line) and
    coverage.py JSON output (`totals.percent_covered`, line).
    """
    if document is None:
        return None
    if kind in document:
        return _number(document[kind], f"{kind} coverage")
    if kind == "line":
        if "percent" in document:
            return _number(document["percent"], "coverage percent")
        totals = document.get("totals")
        if totals is not None and "percent_covered" in totals:
            return _number(totals["percent_covered"], "coverage percent")
    return None


@register_criterion("CoverageAtLeast", reads=lambda *args: [COVERAGE])
def coverage_at_least(snapshot: ReportSnapshot, threshold, kind="line"):
    threshold = _number(threshold, "threshold")
    document = snapshot.get(COVERAGE)
    if document is None:
        return False, "coverage report absent"
    value = coverage_value(document, kind)
    if value is None:
        return False, f"no {kind} coverage in report"
    if value >= threshold:
        return True, f"{_fmt(value)} >= {_fmt(threshold)}"
    return False, f"{_fmt(value)} < {_fmt(threshold)}"


@register_criterion("CoverageNotDecreased", reads=lambda *args: [COVERAGE, COVERAGE_BASELINE])
def coverage_not_decreased(snapshot: ReportSnapshot, kind="line"):
    current = coverage_value(snapshot.get(COVERAGE), kind)
    baseline = coverage_value(snapshot.get(COVERAGE_BASELINE), kind)
    if current is None:
        return False, f"no {kind} coverage report"
    if baseline is None:
        return False, f"no {kind} coverage baseline"
    if current >= baseline:
        return True, f"{_fmt(current)} >= baseline {_fmt(baseline)}"
    return False, f"{_fmt(current)} < baseline {_fmt(baseline)}"


@register_criterion("ArtifactPresent", reads=lambda kind: [kind])
def artifact_present(snapshot: ReportSnapshot, kind):
    if kind in snapshot:
        return True, "present"
    return False, "absent"


@register_criterion("TestsPassing", reads=lambda *args: [TEST_RESULTS])
def tests_passing(snapshot: ReportSnapshot):
    document = snapshot.get(TEST_RESULTS)
    if document is None:
        return False, "test results absent"
    failed = _number(document.get("failed", 0), "failed") + _number(document.get("errors", 0), "errors")
    passed = document.get("passed")
    if failed:
        return False, f"{_fmt(failed)} failing"
    if passed is not None:
        return True, f"0 failing, {_fmt(passed)} passed"
    return True, "0 failing"


@register_criterion("ComplexityAtMost", reads=lambda *args: [COMPLEXITY])
def complexity_at_most(snapshot: ReportSnapshot, limit, measure="max"):
    limit = _number(limit, "limit")
    document = snapshot.get(COMPLEXITY)
    if document is None:
        return False, "complexity report absent"
    if measure not in document:
        return False, f"no {measure} complexity in report"
    value = _number(document[measure], f"{measure} complexity")
    if value <= limit:
        return True, f"{_fmt(value)} <= {_fmt(limit)}"
    return False, f"{_fmt(value)} > {_fmt(limit)}"


def count_findings(document: Any, severity: str) -> int:
    """Count findings of `severity` ("all" for every finding)."""
    counts = document.get("counts")
    if counts is not None:
        if severity == "all":
            return sum(_number(v, "count") for v in counts.values())
        return _number(counts.get(severity, 0), f"{severity} count")
    findings = document.get("findings", [])
    if severity == "all":
        return len(findings)
    return sum(1 for f in findings if str(f.get("severity", "")).lower() == severity)


@register_criterion("SecurityFindingsAtMost", reads=lambda *args: [SECURITY_SCAN])
def security_findings_at_most(snapshot: ReportSnapshot, limit, severity="all"):
    limit = _number(limit, "limit")
    document = snapshot.get(SECURITY_SCAN)
    if document is None:
        return False, "security scan absent"
    found = count_findings(document, str(severity).lower())
    label = "findings" if severity == "all" else f"{severity} findings"
    if found <= limit:
        return True, f"{_fmt(found)} {label} <= {_fmt(limit)}"
    return False, f"{_fmt(found)} {label} > {_fmt(limit)}"


@register_criterion("RiskAtMost", reads=lambda *args: [RISK_ASSESSMENT])
def risk_at_most(snapshot: ReportSnapshot, level):
    level = str(level).lower()
    if level not in RISK_LEVELS:
        raise ValueError(f"unknown risk level {level!r}")
    document = snapshot.get(RISK_ASSESSMENT)
    if document is None:
        return False, "risk assessment absent"
    actual = str(document.get("level", "")).lower()
    if actual not in RISK_LEVELS:
        raise ValueError(f"risk assessment has no valid level: {actual!r}")
    if RISK_LEVELS.index(actual) <= RISK_LEVELS.index(level):
        return True, f"{actual} <= {level}"
    return False, f"{actual} > {level}"
