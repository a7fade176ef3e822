"""Tests for DebugPipeline: stage sequencing, fallbacks, déjà vu and feedback."""

import asyncio
import json
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from clew.config import ClewConfig
from clew.exceptions import (
    AlreadyProcessingError,
    AnalyzerConnectionError,
    AnalyzerRateLimitError,
    EmptyErrorTextError,
    ExtractorError,
    NoProjectSelectedError,
    NoProposalError,
    StoreReadError,
    StoreWriteError,
)
from clew.persistence.models import Category, Principle
from clew.pipeline.orchestrator import (
    PAST_FIX_SOURCE,
    PRINCIPLE_SOURCE,
    PROMOTED_FIX_CONFIDENCE,
    DebugPipeline,
    PipelineCallbacks,
    ResultKind,
)
from clew.pipeline.state import PipelineState


TYPE_ERROR = "TypeError: Cannot read property 'name' of undefined"
GUARD_PRINCIPLE = "When a value may be undefined, then guard property reads"


def store_principle(repo, session_id, project_id, statement=GUARD_PRINCIPLE, category=Category.LOGIC):
    return repo.create_principle(
        session_id, project_id, Principle(statement=statement, category=category)
    )


class TestColdStart:
    """A first error with an empty knowledge store."""

    @pytest.mark.asyncio
    async def test_empty_store_gives_empty_proposal(self, pipeline, session_id, project_id, extractor):
        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)

        assert result.kind == ResultKind.PROPOSAL
        assert result.proposal.past_fixes == []
        assert result.proposal.solutions == []
        assert result.proposal.analysis.classification == Category.LOGIC
        assert result.warnings == []
        assert pipeline.state == PipelineState.AWAITING_FEEDBACK
        extractor.extract_principle.assert_not_called()

    @pytest.mark.asyncio
    async def test_helpful_feedback_stores_fix_and_principle(
        self, pipeline, repo, session_id, project_id, extractor
    ):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)

        feedback = await pipeline.record_feedback(True)

        fixes = repo.get_all_fixes_for_project(session_id, project_id)
        assert len(fixes) == 1
        fix = fixes[0]
        assert fix.id == feedback.fix_id
        assert fix.helpful is True
        assert fix.error.message == TYPE_ERROR
        assert fix.error.type == Category.LOGIC
        assert fix.solution.solution == "Root cause: Property read on undefined value. Resolved by user."
        assert fix.usage.tokens_used == 120
        assert fix.linked_principles == [feedback.principle_id]

        principle = repo.get_principle(session_id, project_id, feedback.principle_id)
        assert principle.statement == extractor.extract_principle.return_value.principle
        assert principle.context.success_rate == 1.0
        assert principle.context.applied_count == 1
        assert principle.linked_fixes == [fix.id]
        assert principle.context.error_patterns == ["undefined access"]

        extractor.extract_principle.assert_awaited_once()
        assert feedback.updated_principle_id is None
        assert pipeline.state == PipelineState.IDLE
        assert pipeline.proposal is None

    @pytest.mark.asyncio
    async def test_not_helpful_without_principle_stores_nothing(
        self, pipeline, repo, session_id, project_id
    ):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)

        feedback = await pipeline.record_feedback(False)

        assert feedback.fix_id is None
        assert repo.get_all_fixes_for_project(session_id, project_id) == []
        assert pipeline.state == PipelineState.IDLE


class TestCollaboratorFallbacks:
    """Analyzer and extractor failures degrade a stage, never the run."""

    @pytest.mark.asyncio
    async def test_analyzer_failure(self, repo, analyzer, extractor, config, session_id, project_id):
        warnings = []
        pipeline = DebugPipeline(
            repo, analyzer, extractor, config=config,
            callbacks=PipelineCallbacks(on_warning=warnings.append),
        )
        analyzer.analyze_error.side_effect = AnalyzerConnectionError("gateway down")

        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)

        analysis = result.proposal.analysis
        assert analysis.classification == Category.UNKNOWN
        assert analysis.confidence == 0.3
        assert analysis.used_fallback
        assert len(result.warnings) == 1
        assert warnings == result.warnings
        assert "classify" in warnings[0]
        assert pipeline.state == PipelineState.AWAITING_FEEDBACK

    @pytest.mark.asyncio
    async def test_analyzer_rate_limited(self, pipeline, analyzer, session_id, project_id):
        analyzer.analyze_error.side_effect = AnalyzerRateLimitError("429 quota")

        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)

        assert result.proposal.analysis.used_fallback

    @pytest.mark.asyncio
    async def test_analyzer_timeout(self, repo, analyzer, extractor, make_analysis, tmp_path, session_id, project_id):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return make_analysis()

        analyzer.analyze_error.side_effect = slow
        config = ClewConfig(collaborator_timeout=0.05, db_path=tmp_path / "clew.db")
        pipeline = DebugPipeline(repo, analyzer, extractor, config=config)

        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)

        assert result.proposal.analysis.used_fallback
        assert "timed out" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_fallback_feedback_uses_manual_solution(self, pipeline, repo, analyzer, session_id, project_id):
        analyzer.analyze_error.side_effect = AnalyzerConnectionError("down")
        await pipeline.submit(TYPE_ERROR, session_id, project_id)

        await pipeline.record_feedback(True)

        fix = repo.get_all_fixes_for_project(session_id, project_id)[0]
        assert fix.solution.solution == "Manual fix applied by user"
        # keyword classification stands in for the failed analyzer
        assert fix.error.type == Category.LOGIC

    @pytest.mark.asyncio
    async def test_extraction_failure(
        self, pipeline, repo, extractor, session_id, project_id, make_fix
    ):
        repo.create_fix(session_id, project_id, make_fix("ReferenceError: foo is not defined in handler"))
        extractor.extract_principle.side_effect = ExtractorError("no text")

        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)

        assert result.proposal.principle is None
        assert len(result.proposal.past_fixes) == 1
        assert any("extract" in w for w in result.warnings)

        feedback = await pipeline.record_feedback(True)

        assert feedback.fix_id is not None
        assert feedback.principle_id is None
        assert extractor.extract_principle.await_count == 2


class TestRetrieval:
    """Past fixes from this project, then from the session's other projects."""

    @pytest.mark.asyncio
    async def test_cross_project_fixes_promoted(
        self, pipeline, repo, analyzer, extractor, make_analysis, make_fix, session_id, project_id
    ):
        other = repo.create_project(session_id, "Q")
        base = datetime(2024, 3, 1)
        for n, module in enumerate(["lodash", "react"]):
            fix = make_fix(
                f"Cannot find module '{module}'",
                solution=f"npm install {module}",
                error_type=Category.DEPENDENCY,
                timestamp=base + timedelta(days=n),
            )
            repo.create_fix(session_id, other, fix)
        analyzer.analyze_error.return_value = make_analysis(Category.DEPENDENCY)

        result = await pipeline.submit("Error: Cannot find module 'express'", session_id, project_id)

        proposal = result.proposal
        assert proposal.cross_project
        assert [s.solution for s in proposal.solutions] == ["npm install react", "npm install lodash"]
        assert all(s.source == "Project: Q" for s in proposal.solutions)
        assert all(s.confidence == PROMOTED_FIX_CONFIDENCE for s in proposal.solutions)
        assert proposal.principle is not None
        extractor.extract_principle.assert_awaited_once()
        assert extractor.extract_principle.await_args.args[1] == "npm install react"

    @pytest.mark.asyncio
    async def test_same_project_preferred(self, pipeline, repo, make_fix, session_id, project_id):
        other = repo.create_project(session_id, "Other")
        repo.create_fix(session_id, other, make_fix("elsewhere fix text", solution="theirs"))
        repo.create_fix(
            session_id, project_id, make_fix("ReferenceError: foo is not defined in handler", solution="ours")
        )

        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)

        proposal = result.proposal
        assert not proposal.cross_project
        assert [s.solution for s in proposal.solutions] == ["ours"]
        assert proposal.solutions[0].source == PAST_FIX_SOURCE

    @pytest.mark.asyncio
    async def test_store_read_failure_is_cold_start(self, pipeline, repo, session_id, project_id):
        repo.get_fixes_by_classification = MagicMock(side_effect=StoreReadError("locked"))
        repo.get_all_fixes_for_project = MagicMock(side_effect=StoreReadError("locked"))

        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)

        assert result.kind == ResultKind.PROPOSAL
        assert result.proposal.past_fixes == []
        assert len(result.warnings) == 2


class TestRanking:
    """Stored principles become ranked solutions and receive feedback."""

    @pytest.mark.asyncio
    async def test_principles_become_solutions(self, pipeline, repo, session_id, project_id):
        principle_id = store_principle(repo, session_id, project_id)
        store_principle(repo, session_id, project_id, "When brackets mismatch, then count them", Category.SYNTAX)

        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)

        proposal = result.proposal
        assert len(proposal.solutions) == 1
        top = proposal.top_solution
        assert top.source == PRINCIPLE_SOURCE
        assert top.principle_id == principle_id
        assert top.confidence == proposal.ranked[0].score
        assert proposal.evaluated_principle_id == principle_id

    @pytest.mark.asyncio
    async def test_not_helpful_lowers_success_rate(self, pipeline, repo, session_id, project_id):
        principle_id = store_principle(repo, session_id, project_id)
        await pipeline.submit(TYPE_ERROR, session_id, project_id)

        feedback = await pipeline.record_feedback(False)

        assert feedback.updated_principle_id == principle_id
        assert (feedback.success_rate, feedback.applied_count) == (0.5, 2)
        stored = repo.get_principle(session_id, project_id, principle_id)
        assert stored.context.success_rate == 0.5
        assert stored.context.applied_count == 2
        assert repo.get_all_fixes_for_project(session_id, project_id) == []

    @pytest.mark.asyncio
    async def test_helpful_with_ranked_principle_still_extracts(
        self, pipeline, repo, extractor, session_id, project_id
    ):
        principle_id = store_principle(repo, session_id, project_id)
        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)
        assert result.proposal.principle is None

        feedback = await pipeline.record_feedback(True)

        extractor.extract_principle.assert_awaited_once()
        assert feedback.principle_id is not None
        assert feedback.principle_id != principle_id
        assert feedback.updated_principle_id == principle_id
        assert (feedback.success_rate, feedback.applied_count) == (1.0, 2)
        fix = repo.get_fix(session_id, project_id, feedback.fix_id)
        assert fix.solution.solution == GUARD_PRINCIPLE
        assert fix.linked_principles == [feedback.principle_id]
        stored = repo.get_principle(session_id, project_id, feedback.principle_id)
        assert stored.statement == extractor.extract_principle.return_value.principle
        assert stored.context.applied_count == 1
        assert repo.get_principle(session_id, project_id, principle_id).context.applied_count == 2

    @pytest.mark.asyncio
    async def test_unknown_classification_ranks_every_category(
        self, pipeline, repo, analyzer, make_analysis, session_id, project_id
    ):
        store_principle(repo, session_id, project_id, "When brackets mismatch, then count them", Category.SYNTAX)
        analyzer.analyze_error.return_value = make_analysis(Category.UNKNOWN)

        result = await pipeline.submit("Segmentation fault (core dumped)", session_id, project_id)

        assert len(result.proposal.ranked) == 1


class TestDejaVu:
    """Near-duplicate detection short-circuits the run."""

    @pytest.fixture
    def past_fix_id(self, repo, session_id, project_id, make_fix):
        return repo.create_fix(session_id, project_id, make_fix(TYPE_ERROR, solution="Use optional chaining"))

    @pytest.mark.asyncio
    async def test_match_stops_pipeline(self, pipeline, analyzer, session_id, project_id, past_fix_id):
        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)

        assert result.kind == ResultKind.DEJA_VU
        assert result.deja_vu.fix.id == past_fix_id
        assert result.deja_vu.similarity == 1.0
        assert "Déjà vu" in result.summary()
        assert pipeline.state == PipelineState.DEJA_VU
        analyzer.analyze_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_apply_past_fix(self, pipeline, repo, session_id, project_id, past_fix_id):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)

        result = pipeline.apply_past_fix()

        assert result.proposal.source_fix_id == past_fix_id
        assert result.proposal.top_solution.solution == "Use optional chaining"
        assert pipeline.state == PipelineState.AWAITING_FEEDBACK
        assert pipeline.context.deja_vu is None

        await pipeline.record_feedback(True)

        assert repo.get_fix(session_id, project_id, past_fix_id).times_applied == 1
        assert len(repo.get_all_fixes_for_project(session_id, project_id)) == 2

    @pytest.mark.asyncio
    async def test_apply_past_fix_reinforces_linked_principle(
        self, pipeline, repo, session_id, project_id, past_fix_id
    ):
        principle_id = store_principle(repo, session_id, project_id)
        repo.link_principle_to_fix(session_id, project_id, past_fix_id, principle_id)
        await pipeline.submit(TYPE_ERROR, session_id, project_id)
        pipeline.apply_past_fix()

        feedback = await pipeline.record_feedback(False)

        assert feedback.updated_principle_id == principle_id
        assert feedback.success_rate == 0.5

    @pytest.mark.asyncio
    async def test_match_without_submission_is_rejected(
        self, pipeline, analyzer, session_id, project_id, past_fix_id
    ):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)
        pipeline.context.submission = None

        with pytest.raises(NoProposalError):
            pipeline.apply_past_fix()
        with pytest.raises(NoProposalError):
            await pipeline.continue_analysis()
        analyzer.analyze_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_continue_analysis(self, pipeline, analyzer, session_id, project_id, past_fix_id):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)

        result = await pipeline.continue_analysis()

        assert result.kind == ResultKind.PROPOSAL
        analyzer.analyze_error.assert_awaited_once()
        assert result.proposal.past_fixes[0].id == past_fix_id
        assert pipeline.state == PipelineState.AWAITING_FEEDBACK

    @pytest.mark.asyncio
    async def test_skip_dejavu(self, pipeline, session_id, project_id, past_fix_id):
        result = await pipeline.submit(TYPE_ERROR, session_id, project_id, skip_dejavu=True)
        assert result.kind == ResultKind.PROPOSAL

    @pytest.mark.asyncio
    async def test_discard_match(self, pipeline, session_id, project_id, past_fix_id):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)
        assert pipeline.discard()
        assert pipeline.state == PipelineState.IDLE
        with pytest.raises(NoProposalError):
            pipeline.apply_past_fix()


class TestValidation:
    """Input and state checks before any stage runs."""

    @pytest.mark.asyncio
    async def test_empty_error_text(self, pipeline, session_id, project_id):
        with pytest.raises(EmptyErrorTextError):
            await pipeline.submit("   \n", session_id, project_id)
        assert pipeline.state == PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_missing_project(self, pipeline, session_id, project_id):
        with pytest.raises(NoProjectSelectedError):
            await pipeline.submit(TYPE_ERROR, session_id, "")

    @pytest.mark.asyncio
    async def test_project_not_current(self, pipeline, repo, session_id, project_id):
        other = repo.create_project(session_id, "Other")
        with pytest.raises(NoProjectSelectedError):
            await pipeline.submit(TYPE_ERROR, session_id, other)

    @pytest.mark.asyncio
    async def test_feedback_without_proposal(self, pipeline):
        with pytest.raises(NoProposalError):
            await pipeline.record_feedback(True)

    @pytest.mark.asyncio
    async def test_rejects_concurrent_submit(self, pipeline, analyzer, make_analysis, session_id, project_id):
        gate = asyncio.Event()

        async def gated(*args, **kwargs):
            await gate.wait()
            return make_analysis()

        analyzer.analyze_error.side_effect = gated
        task = asyncio.create_task(pipeline.submit(TYPE_ERROR, session_id, project_id))
        for _ in range(10):
            if pipeline.state == PipelineState.CLASSIFYING:
                break
            await asyncio.sleep(0)

        assert pipeline.state == PipelineState.CLASSIFYING
        with pytest.raises(AlreadyProcessingError):
            await pipeline.submit("another error entirely", session_id, project_id)
        with pytest.raises(AlreadyProcessingError):
            await pipeline.record_feedback(True)

        gate.set()
        result = await task
        assert result.kind == ResultKind.PROPOSAL

    @pytest.mark.asyncio
    async def test_new_submission_replaces_proposal(self, pipeline, session_id, project_id):
        first = await pipeline.submit(TYPE_ERROR, session_id, project_id)
        second = await pipeline.submit("SyntaxError: Unexpected token }", session_id, project_id)

        assert pipeline.proposal is second.proposal
        assert pipeline.proposal is not first.proposal


class TestFeedbackFailures:
    """Store write failures keep the proposal for a retry."""

    @pytest.mark.asyncio
    async def test_write_failure_keeps_proposal(self, pipeline, repo, session_id, project_id):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)
        proposal = pipeline.proposal
        repo.create_fix = MagicMock(side_effect=StoreWriteError("disk full"))

        with pytest.raises(StoreWriteError):
            await pipeline.record_feedback(True)

        assert pipeline.state == PipelineState.AWAITING_FEEDBACK
        assert pipeline.proposal is proposal

        del repo.create_fix
        feedback = await pipeline.record_feedback(True)
        assert feedback.fix_id is not None
        assert pipeline.state == PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_retry_after_principle_write_failure_reuses_fix(
        self, pipeline, repo, extractor, session_id, project_id
    ):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)
        repo.create_principle = MagicMock(side_effect=StoreWriteError("disk full"))

        with pytest.raises(StoreWriteError):
            await pipeline.record_feedback(True)

        assert pipeline.state == PipelineState.AWAITING_FEEDBACK
        first_fix_id = pipeline.proposal.stored_fix_id
        assert first_fix_id is not None

        del repo.create_principle
        feedback = await pipeline.record_feedback(True)

        fixes = repo.get_all_fixes_for_project(session_id, project_id)
        assert [fix.id for fix in fixes] == [first_fix_id]
        assert feedback.fix_id == first_fix_id
        assert fixes[0].linked_principles == [feedback.principle_id]
        extractor.extract_principle.assert_awaited_once()
        assert pipeline.state == PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_error_resets_to_idle(self, pipeline, repo, session_id, project_id):
        repo.get_principles_by_category = MagicMock(side_effect=RuntimeError("bug"))

        with pytest.raises(RuntimeError):
            await pipeline.submit(TYPE_ERROR, session_id, project_id)

        assert pipeline.state == PipelineState.IDLE
        assert pipeline.proposal is None


class TestProgressAndLogging:
    """Callbacks, discard, summaries and pipeline events."""

    @pytest.mark.asyncio
    async def test_step_callbacks(self, repo, analyzer, extractor, config, session_id, project_id):
        steps = []
        pipeline = DebugPipeline(
            repo, analyzer, extractor, config=config,
            callbacks=PipelineCallbacks(on_step=lambda n, msg: steps.append(n)),
        )

        await pipeline.submit(TYPE_ERROR, session_id, project_id)

        assert steps == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_discard_proposal(self, pipeline, session_id, project_id):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)

        assert pipeline.discard()
        assert pipeline.proposal is None
        assert not pipeline.discard()

    @pytest.mark.asyncio
    async def test_summary(self, pipeline, session_id, project_id):
        result = await pipeline.submit(TYPE_ERROR, session_id, project_id)
        assert "Classified as logic" in result.summary()
        assert result.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_feedback_event_logged(self, pipeline, session_id, project_id, isolated_logs):
        await pipeline.submit(TYPE_ERROR, session_id, project_id)
        feedback = await pipeline.record_feedback(True)

        entries = [
            json.loads(line)
            for line in (isolated_logs / "pipeline.jsonl").read_text().splitlines()
        ]
        events = [e for e in entries if e["event_type"] == "feedback"]
        assert len(events) == 1
        assert events[0]["helpful"] is True
        assert events[0]["fix_id"] == feedback.fix_id
        assert events[0]["project_id"] == project_id
