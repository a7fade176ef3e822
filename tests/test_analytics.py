"""Tests for read-only knowledge analytics."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

from clew.exceptions import StoreReadError
from clew.knowledge.analytics import (
    UserPatterns,
    aggregate_stats,
    analyze_user_patterns,
    cross_project_stats,
    error_breakdown,
    is_successful,
    knowledge_base,
    pattern_alert,
)
from clew.persistence.models import Category, Principle


def add_fixes(repo, session_id, project_id, make_fix, error_type, count, start=None):
    start = start or datetime(2024, 1, 1)
    for n in range(count):
        fix = make_fix(f"{error_type.value} {n}", error_type=error_type, timestamp=start + timedelta(minutes=n))
        repo.create_fix(session_id, project_id, fix)


class TestIsSuccessful:
    """Tests for the success rule."""

    def test_rules(self, make_fix):
        fix = make_fix("boom")
        assert is_successful(fix)

        fix.helpful = None
        assert is_successful(fix)

        fix.helpful = False
        assert not is_successful(fix)

        fix.helpful = None
        fix.solution.solution = ""
        assert not is_successful(fix)


class TestAggregateStats:
    """Tests for aggregate_stats."""

    def test_none_without_fixes(self, repo, session_id, project_id):
        assert aggregate_stats(repo, session_id) is None

    def test_counts_unique_principles(self, repo, session_id, project_id, make_fix):
        other = repo.create_project(session_id, "Other")
        add_fixes(repo, session_id, project_id, make_fix, Category.LOGIC, 3)
        add_fixes(repo, session_id, other, make_fix, Category.SYNTAX, 1)
        for pid in (project_id, other):
            repo.create_principle(session_id, pid, Principle(statement="When x, then y"))
        repo.create_principle(session_id, other, Principle(statement="When a, then b"))

        stats = aggregate_stats(repo, session_id)

        assert stats.total_fixes == 4
        assert stats.total_principles == 2
        assert stats.success_rate == 100
        assert stats.total_projects == 2

    def test_read_failure(self):
        store = MagicMock()
        store.get_all_projects_for_session.side_effect = StoreReadError("locked")
        assert aggregate_stats(store, "s") is None
        assert error_breakdown(store, "s") == []
        assert cross_project_stats(store, "s") == []
        assert knowledge_base(store, "s") == []


class TestBreakdowns:
    """Tests for error_breakdown and cross_project_stats."""

    def test_error_breakdown(self, repo, session_id, project_id, make_fix):
        add_fixes(repo, session_id, project_id, make_fix, Category.LOGIC, 3)
        add_fixes(repo, session_id, project_id, make_fix, Category.ASYNC, 1)

        breakdown = error_breakdown(repo, session_id)

        assert [(t.type, t.count, t.percentage) for t in breakdown] == [
            ("logic", 3, 75),
            ("async", 1, 25),
        ]

    def test_cross_project_stats(self, repo, session_id, project_id, make_fix):
        busy = repo.create_project(session_id, "Busy")
        repo.create_project(session_id, "Empty")
        add_fixes(repo, session_id, project_id, make_fix, Category.SYNTAX, 1)
        add_fixes(repo, session_id, busy, make_fix, Category.DEPENDENCY, 2)
        add_fixes(repo, session_id, busy, make_fix, Category.LOGIC, 1, start=datetime(2023, 1, 1))

        stats = cross_project_stats(repo, session_id)

        assert [s.project_name for s in stats] == ["Busy", "Default Project"]
        assert stats[0].fix_count == 3
        assert stats[0].top_error_type == "dependency"
        assert stats[0].top_error_percentage == 67


class TestKnowledgeBase:
    """Tests for knowledge_base."""

    def test_sorted_by_success_rate(self, repo, session_id, project_id):
        weak = repo.create_principle(session_id, project_id, Principle(statement="weak", category=Category.STATE))
        repo.update_principle_success_rate(session_id, project_id, weak, 0.25, 4)
        repo.create_principle(session_id, project_id, Principle(statement="strong", category=Category.LOGIC))

        entries = knowledge_base(repo, session_id)

        assert [(e.principle, e.success_rate, e.applied_count) for e in entries] == [
            ("strong", 100, 1),
            ("weak", 25, 4),
        ]
        assert entries[0].from_project == "Default Project"


class TestUserPatterns:
    """Tests for analyze_user_patterns and pattern_alert."""

    def test_none_without_fixes(self, repo, session_id, project_id):
        assert analyze_user_patterns(repo, session_id, project_id) is None

    def test_growth_building(self, repo, session_id, project_id, make_fix):
        add_fixes(repo, session_id, project_id, make_fix, Category.ASYNC, 3)

        patterns = analyze_user_patterns(repo, session_id, project_id)

        assert patterns.total_errors == 3
        assert patterns.most_common.type == "async"
        assert patterns.most_common.percentage == 100
        assert not patterns.growth.is_improving
        assert "building" in patterns.growth.message

    def test_growth_improving(self, repo, session_id, project_id, make_fix):
        add_fixes(repo, session_id, project_id, make_fix, Category.LOGIC, 6)
        patterns = analyze_user_patterns(repo, session_id, project_id)
        assert patterns.growth.is_improving

    def test_no_growth_below_three(self, repo, session_id, project_id, make_fix):
        add_fixes(repo, session_id, project_id, make_fix, Category.LOGIC, 2)
        assert analyze_user_patterns(repo, session_id, project_id).growth is None

    def test_read_failure(self):
        store = MagicMock()
        store.get_all_fixes_for_project.side_effect = StoreReadError("locked")
        assert analyze_user_patterns(store, "s", "p") is None

    def test_alert_for_familiar_type(self, repo, session_id, project_id, make_fix):
        add_fixes(repo, session_id, project_id, make_fix, Category.LOGIC, 3)
        patterns = analyze_user_patterns(repo, session_id, project_id)

        alert = pattern_alert(patterns, "logic")

        assert "session #4" in alert
        assert pattern_alert(patterns, "syntax") is None

    def test_alert_needs_history(self):
        assert pattern_alert(None, "logic") is None
        assert pattern_alert(UserPatterns(total_errors=2), "logic") is None
