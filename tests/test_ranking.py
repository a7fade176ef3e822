"""Tests for principle relevance ranking."""

import pytest

from clew.knowledge.ranking import keyword_overlap, rank, relevance_score
from clew.persistence.models import Category, Principle, PrincipleContext


def principle(statement, category, rate=1.0):
    return Principle(
        statement=statement,
        category=category,
        context=PrincipleContext(success_rate=rate, applied_count=3),
    )


class TestRelevanceScore:
    """Tests for the 0.5 / 0.3 / 0.2 score buckets."""

    def test_category_match_keyword_and_rate(self):
        p = principle("When a semicolon is missing, then add it", Category.SYNTAX, rate=1.0)
        score = relevance_score(p, "SyntaxError: missing semicolon", Category.SYNTAX)
        # category 0.5 + one shared token ("semicolon") 0.1 + rate 0.2
        assert score == pytest.approx(0.8)

    def test_no_partial_credit_for_other_category(self):
        p = principle("unrelated words only", Category.LOGIC, rate=0.0)
        assert relevance_score(p, "SyntaxError here", Category.SYNTAX) == 0.0

    def test_keyword_bonus_capped(self):
        p = principle("module react cannot find installed package", Category.OTHER, rate=0.0)
        error = "cannot find module react installed package"
        assert keyword_overlap(p.statement, error) == 6
        assert relevance_score(p, error, Category.DEPENDENCY) == pytest.approx(0.3)

    def test_keyword_overlap_is_case_insensitive_whitespace_split(self):
        assert keyword_overlap("Check The Import", "check the import path") == 3
        assert keyword_overlap("import,", "import") == 0

    def test_missing_success_rate_defaults_to_half(self):
        p = principle("nothing shared", Category.OTHER, rate=None)
        assert relevance_score(p, "TypeError", Category.LOGIC) == pytest.approx(0.1)

    def test_out_of_range_rate_is_clamped(self):
        p = principle("nothing shared", Category.OTHER, rate=1.5)
        assert relevance_score(p, "TypeError", Category.LOGIC) == pytest.approx(0.2)

    def test_score_never_exceeds_one(self):
        p = principle("cannot find module react package", Category.DEPENDENCY, rate=1.0)
        score = relevance_score(p, "cannot find module react package", "dependency")
        assert score == pytest.approx(1.0)
        assert score <= 1.0


class TestRank:
    """Tests for rank()."""

    def test_matching_category_outranks_higher_rate(self):
        p1 = principle("When state mutates, then copy it", Category.LOGIC, rate=0.5)
        p2 = principle("When a token is unexpected, then check brackets", Category.SYNTAX, rate=1.0)

        ranked = rank([p1, p2], "SyntaxError: Unexpected token brackets", Category.SYNTAX)

        assert [r.principle for r in ranked] == [p2, p1]
        assert ranked[0].score > ranked[1].score

    def test_ties_keep_input_order(self):
        first = principle("alpha rule", Category.ASYNC, rate=0.8)
        second = principle("beta rule", Category.ASYNC, rate=0.8)

        ranked = rank([first, second], "timeout", Category.ASYNC)

        assert ranked[0].score == ranked[1].score
        assert [r.principle for r in ranked] == [first, second]

    def test_empty(self):
        assert rank([], "anything", Category.UNKNOWN) == []
