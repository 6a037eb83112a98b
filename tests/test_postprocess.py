"""
Post-Processor Tests — subject name, navigation and same-pattern filters.
"""

from __future__ import annotations

from medcheck.grading import calculate_grade
from medcheck.models import AuditResult, Severity, ViolationCandidate
from medcheck.postprocess import (
    collapse_navigation_repeats,
    collapse_same_pattern,
    filter_navigation_phrases,
    filter_subject_name,
    name_keywords,
    postprocess,
)


def v(pattern_id, text, confidence=0.8, description=""):
    return ViolationCandidate(
        pattern_id=pattern_id,
        category="test",
        severity=Severity.MAJOR,
        original_text=text,
        confidence=confidence,
        description=description,
    )


def result_of(violations):
    return AuditResult(
        id="audit_test",
        final_violations=tuple(violations),
        grade=calculate_grade(violations),
        audit_issues=(),
        proposer_original_count=len(violations),
        final_count=len(violations),
    )


class TestSubjectName:

    def test_keywords(self):
        keywords = name_keywords("Seoul Dermatology Clinic")
        assert "seoul dermatology clinic" in keywords
        assert "dermatology" in keywords
        assert "clinic" in keywords

    def test_name_parts_removed(self):
        kept = filter_subject_name([
            v("P-56-10-002", "Dermatology"),
            v("P-56-10-001", "Seoul"),
            v("P-56-02-003", "Painless"),
        ], "Seoul Dermatology Clinic")
        assert [x.original_text for x in kept] == ["Painless"]

    def test_no_name_keeps_everything(self):
        violations = [v("P-56-10-002", "Dermatology")]
        assert filter_subject_name(violations, None) == violations


class TestNavigation:

    def test_menu_phrase_removed(self):
        kept = filter_navigation_phrases([v("P-56-05-004", "Book now"), v("P-56-02-003", "Painless")])
        assert [x.original_text for x in kept] == ["Painless"]

    def test_repeats_collapsed_on_busy_page(self):
        violations = [v(f"P-56-0{i}-001", "Free consultation") for i in range(1, 6)]
        violations.append(v("P-56-02-003", "Painless"))
        kept = collapse_navigation_repeats(violations)
        assert [x.original_text for x in kept] == ["Free consultation", "Painless"]
        assert kept[0].pattern_id == "P-56-01-001"

    def test_small_page_untouched(self):
        violations = [v(f"P-56-0{i}-001", "Free consultation") for i in range(1, 6)]
        assert collapse_navigation_repeats(violations) == violations


class TestSamePattern:

    def test_collapse_keeps_most_confident(self):
        kept = collapse_same_pattern([
            v("P-56-02-003", "Painless", 0.7, "Claims a procedure is painless."),
            v("P-56-02-003", "pain-free", 0.9, "Claims a procedure is painless."),
            v("P-56-02-003", "no pain", 0.8, "Claims a procedure is painless."),
        ])
        assert len(kept) == 1
        assert kept[0].original_text == "pain-free"
        assert kept[0].description == (
            "Claims a procedure is painless. (found 3 times on page, counted once)"
        )

    def test_single_instance_unannotated(self):
        kept = collapse_same_pattern([v("P-56-02-003", "Painless", description="d")])
        assert kept[0].description == "d"


class TestPostprocess:

    def test_regrades_and_returns_new_result(self):
        original = result_of([
            v("P-56-02-003", "Painless"),
            v("P-56-02-003", "pain-free"),
            v("P-56-05-004", "Book now"),
        ])
        processed = postprocess(original)
        assert processed.final_count == 1
        assert processed.grade == calculate_grade(processed.final_violations)
        assert processed.grade.clean_score > original.grade.clean_score
        assert original.final_count == 3
        assert processed.id == original.id

    def test_subject_name_passed_through(self):
        processed = postprocess(result_of([v("P-56-10-002", "Dermatology")]), "Seoul Dermatology Clinic")
        assert processed.final_count == 0
        assert processed.grade.clean_score == 100
