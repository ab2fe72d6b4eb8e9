"""
Tests for criterion parsing and evaluation.
"""

import pytest

from refgate.criteria import (
    MalformedCriterion,
    evaluate,
    evaluate_all,
    parse_criterion,
    register_criterion,
    registered_criteria,
    report_kinds,
)
from refgate.reports import ReportSnapshot


def snap(**reports):
    return ReportSnapshot({k.replace("_", "-"): v for k, v in reports.items()})


class TestParseCriterion:
    """Tests for the call-expression syntax."""

    def test_bare_name(self):
        assert parse_criterion("TestsPassing") == ("TestsPassing", [])

    def test_numeric_and_bare_word_arguments(self):
        assert parse_criterion("CoverageAtLeast(80, branch)") == ("CoverageAtLeast", [80, "branch"])

    def test_string_argument(self):
        assert parse_criterion('ArtifactPresent("seam-analysis")') == ("ArtifactPresent", ["seam-analysis"])

    def test_negative_number(self):
        assert parse_criterion("ComplexityAtMost(-1)") == ("ComplexityAtMost", [-1])

    @pytest.mark.parametrize("text", ["", "Coverage(", "a.b(1)", "CoverageAtLeast(x + 1)", "1 + 2"])
    def test_malformed(self, text):
        with pytest.raises(MalformedCriterion):
            parse_criterion(text)


class TestCoverageAtLeast:
    """Tests for CoverageAtLeast."""

    def test_below_threshold_detail(self):
        result = evaluate("CoverageAtLeast(90)", snap(coverage={"line": 85}))
        assert result.satisfied is False
        assert result.detail == "CoverageAtLeast(90): 85 < 90"

    def test_above_threshold_detail(self):
        result = evaluate("CoverageAtLeast(90)", snap(coverage={"line": 91}))
        assert result.satisfied is True
        assert result.detail == "CoverageAtLeast(90): 91 >= 90"

    def test_threshold_is_inclusive(self):
        assert evaluate("CoverageAtLeast(90)", snap(coverage={"line": 90.0})).satisfied

    def test_branch_kind(self):
        s = snap(coverage={"line": 95, "branch": 70})
        assert not evaluate("CoverageAtLeast(80, branch)", s).satisfied
        assert evaluate("CoverageAtLeast(80)", s).satisfied

    def test_percent_is_line_coverage(self):
        assert evaluate("CoverageAtLeast(90)", snap(coverage={"percent": 92.5})).satisfied

    def test_coverage_py_totals(self):
        s = snap(coverage={"totals": {"percent_covered": 88.4}})
        assert evaluate("CoverageAtLeast(90)", s).detail == "CoverageAtLeast(90): 88.4 < 90"

    def test_absent_report_fails_closed(self):
        result = evaluate("CoverageAtLeast(90)", snap())
        assert result.satisfied is False
        assert "absent" in result.detail

    def test_wrong_type_fails_closed(self):
        result = evaluate("CoverageAtLeast(90)", snap(coverage={"line": "ninety"}))
        assert result.satisfied is False
        assert "evaluation error" in result.detail


class TestOtherCriteria:
    """Tests for the remaining built-in criteria."""

    def test_artifact_present(self):
        s = snap(seam_analysis={"seams": []})
        assert evaluate('ArtifactPresent("seam-analysis")', s).satisfied
        assert evaluate('ArtifactPresent("risk-assessment")', s).detail == \
            'ArtifactPresent("risk-assessment"): absent'

    def test_tests_passing(self):
        assert evaluate("TestsPassing", snap(test_results={"passed": 3, "failed": 0})).satisfied
        failing = evaluate("TestsPassing", snap(test_results={"failed": 1, "errors": 1}))
        assert failing.detail == "TestsPassing: 2 failing"

    def test_complexity_upper_bound_is_inclusive(self):
        assert evaluate("ComplexityAtMost(15)", snap(complexity={"max": 15})).satisfied
        assert not evaluate("ComplexityAtMost(15)", snap(complexity={"max": 16})).satisfied

    def test_security_findings_by_severity(self):
        s = snap(security_scan={"findings": [{"severity": "HIGH"}, {"severity": "low"}]})
        assert not evaluate("SecurityFindingsAtMost(0, high)", s).satisfied
        assert evaluate("SecurityFindingsAtMost(1, high)", s).satisfied
        assert not evaluate("SecurityFindingsAtMost(1)", s).satisfied

    def test_security_counts(self):
        s = snap(security_scan={"counts": {"high": 0, "medium": 4}})
        assert evaluate("SecurityFindingsAtMost(0, high)", s).satisfied

    def test_coverage_not_decreased(self):
        s = snap(coverage={"line": 88}, coverage_baseline={"line": 91})
        assert evaluate("CoverageNotDecreased", s).detail == "CoverageNotDecreased: 88 < baseline 91"

    def test_risk_at_most(self):
        s = snap(risk_assessment={"level": "high"})
        assert not evaluate("RiskAtMost(medium)", s).satisfied
        assert evaluate("RiskAtMost(critical)", s).satisfied


class TestEvaluator:
    """Tests for the registry and evaluator behaviour."""

    def test_unknown_criterion(self):
        result = evaluate("MutationScoreAtLeast(70)", snap())
        assert result.satisfied is False
        assert result.detail == "unknown criterion"

    def test_malformed_criterion_fails_closed(self):
        result = evaluate("CoverageAtLeast(", snap())
        assert result.satisfied is False
        assert "malformed criterion" in result.detail

    def test_bad_arguments_fail_closed(self):
        result = evaluate("TestsPassing(1, 2, 3)", snap(test_results={}))
        assert result.satisfied is False
        assert "bad arguments" in result.detail

    def test_deterministic_for_same_snapshot(self):
        s = snap(coverage={"line": 85})
        assert evaluate("CoverageAtLeast(90)", s) == evaluate("CoverageAtLeast(90)", s)

    def test_evaluate_all_keeps_order(self):
        results = evaluate_all(["TestsPassing", "CoverageAtLeast(90)"], snap())
        assert [r.criterion for r in results] == ["TestsPassing", "CoverageAtLeast(90)"]

    def test_register_custom_criterion(self):
        @register_criterion("DocsBuilt", reads=lambda: ["docs"])
        def docs_built(snapshot):
            return "docs" in snapshot, "built" if "docs" in snapshot else "missing"

        assert "DocsBuilt" in registered_criteria()
        assert evaluate("DocsBuilt", snap(docs={"ok": True})).detail == "DocsBuilt: built"
        assert report_kinds(["DocsBuilt"]) == ["docs"]

    def test_report_kinds(self):
        kinds = report_kinds(['ArtifactPresent("seam-analysis")', "CoverageAtLeast(90)",
                              "CoverageNotDecreased", "Nope"])
        assert kinds == ["seam-analysis", "coverage", "coverage-baseline"]
