"""
Debug Pipeline - sequences the five stages for one error submission.

Workflow:
1. Déjà vu: offer a near-duplicate past fix and stop (unless skipped)
2. Classify: Error Analyzer names the error type and root cause
3. Retrieve: past fixes in this project, else across the session's projects
4. Extract: distill a principle from the top past fix (only if any)
5. Rank: score stored principles; promote past fixes if none rank

The result is held as the session's live proposal until the user says
whether it helped. Stage failures never abort a run: each one is replaced
by its FallbackPolicy default. Feedback writes are the exception, they
propagate so a user's feedback is never silently lost.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from clew.config import ClewConfig
from clew.exceptions import (
    AlreadyProcessingError,
    CollaboratorTimeoutError,
    EmptyErrorTextError,
    NoProjectSelectedError,
    NoProposalError,
    StoreError,
    StoreReadError,
)
from clew.knowledge.classifier import classify
from clew.knowledge.ranking import RankedPrinciple, rank
from clew.knowledge.retrieval import search_across_projects, search_past_fixes
from clew.knowledge.similarity import DejaVuDetector, DejaVuMatch
from clew.knowledge.success_rate import SuccessRateUpdater
from clew.logging import PipelineLogEntry, now_iso, pipeline_logger, set_session_id
from clew.persistence.models import (
    Category,
    CategoryFilter,
    ErrorDescriptor,
    Fix,
    Principle,
    PrincipleContext,
    SolutionDescriptor,
    UsageMetadata,
)
from clew.pipeline.fallbacks import FallbackPolicy, Stage
from clew.pipeline.protocols import (
    ErrorAnalysis,
    ErrorAnalyzer,
    ExtractedPrinciple,
    KnowledgeStore,
    PrincipleExtractor,
)
from clew.pipeline.state import PipelineContext, PipelineEvent, PipelineState, Submission

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROMOTED_FIX_CONFIDENCE = 0.85
PAST_FIX_SOURCE = "Past Fix"
PRINCIPLE_SOURCE = "Principle"
MANUAL_FIX_SOLUTION = "Manual fix applied by user"

TOTAL_STEPS = 5


@dataclass
class PipelineCallbacks:
    """Callbacks for pipeline progress, used by the CLI to show steps."""

    on_step: Callable[[int, str], None] | None = None
    on_warning: Callable[[str], None] | None = None


@dataclass
class Solution:
    """One candidate answer shown to the user."""

    solution: str
    confidence: float
    source: str  # "Principle", "Past Fix" or "Project: <name>"
    explanation: str = ""
    code_snippet: str = ""
    principle_id: str | None = None
    fix_id: str | None = None


@dataclass
class Proposal:
    """
    The live "current fix" between submit and feedback.

    evaluated_principle_id is the stored principle whose success rate the
    user's feedback reinforces. source_fix_id is set when the proposal
    reapplies a past fix. stored_fix_id and stored_principle_id record
    what helpful feedback already wrote, so a retried feedback call never
    stores the same fix twice.
    """

    submission: Submission
    analysis: ErrorAnalysis
    past_fixes: list[Fix] = field(default_factory=list)
    principle: ExtractedPrinciple | None = None
    ranked: list[RankedPrinciple] = field(default_factory=list)
    solutions: list[Solution] = field(default_factory=list)
    evaluated_principle_id: str | None = None
    source_fix_id: str | None = None
    stored_fix_id: str | None = None
    stored_principle_id: str | None = None

    @property
    def top_solution(self) -> Solution | None:
        return self.solutions[0] if self.solutions else None

    @property
    def cross_project(self) -> bool:
        return any(fix.origin is not None for fix in self.past_fixes)


class ResultKind(str, Enum):
    DEJA_VU = "deja_vu"
    PROPOSAL = "proposal"


@dataclass
class PipelineResult:
    """Outcome of one submit(): either a déjà-vu offer or a full proposal."""

    kind: ResultKind
    proposal: Proposal | None = None
    deja_vu: DejaVuMatch | None = None
    warnings: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def summary(self) -> str:
        """Generate a human-readable summary."""
        if self.kind == ResultKind.DEJA_VU and self.deja_vu:
            return (
                f"Déjà vu: matches a past fix at {self.deja_vu.similarity:.0%} similarity. "
                "Apply it or continue analysis."
            )

        if self.proposal is None:
            return "No result."

        analysis = self.proposal.analysis
        parts = [f"Classified as {analysis.classification.value} ({analysis.confidence:.0%})."]
        if self.proposal.past_fixes:
            where = " across projects" if self.proposal.cross_project else ""
            parts.append(f"{len(self.proposal.past_fixes)} past fixes{where}.")
        parts.append(f"{len(self.proposal.solutions)} solutions.")
        if self.warnings:
            parts.append(f"{len(self.warnings)} stages degraded.")
        return " ".join(parts)


@dataclass
class FeedbackResult:
    """What recording feedback changed in the store."""

    helpful: bool
    fix_id: str | None = None
    principle_id: str | None = None
    updated_principle_id: str | None = None
    success_rate: float | None = None
    applied_count: int | None = None


class DebugPipeline:
    """
    Session-scoped orchestrator for the debugging workflow.

    One instance per session: it owns the PipelineContext holding the busy
    state and the live proposal. Only one submit() may be in flight.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        analyzer: ErrorAnalyzer,
        extractor: PrincipleExtractor,
        config: ClewConfig | None = None,
        callbacks: PipelineCallbacks | None = None,
        fallbacks: FallbackPolicy | None = None,
    ):
        self.store = store
        self.analyzer = analyzer
        self.extractor = extractor
        self.config = config or ClewConfig()
        self.callbacks = callbacks or PipelineCallbacks()
        self.fallbacks = fallbacks or FallbackPolicy()

        self.context = PipelineContext()
        self.detector = DejaVuDetector(store, history_limit=self.config.history_limit)
        self.success_rates = SuccessRateUpdater(store)
        self._warnings: list[str] = []

    @property
    def state(self) -> PipelineState:
        return self.context.state

    @property
    def proposal(self) -> Proposal | None:
        return self.context.proposal

    # ========================================================================
    # Callbacks and fallbacks
    # ========================================================================

    def _step(self, number: int, message: str) -> None:
        logger.info(f"Step {number}/{TOTAL_STEPS}: {message}")
        if self.callbacks.on_step:
            self.callbacks.on_step(number, message)

    def _fallback(self, stage: Stage, error: BaseException) -> Any:
        submission = self.context.submission
        message = f"{stage.value} unavailable: {error}"
        self._warnings.append(message)
        if self.callbacks.on_warning:
            self.callbacks.on_warning(message)
        return self.fallbacks.substitute(
            stage,
            error,
            session_id=submission.session_id if submission else "",
            project_id=submission.project_id if submission else "",
        )

    async def _call_collaborator(self, stage: Stage, call: Awaitable[T]) -> T:
        """Await an LLM call with the per-call timeout; substitute the fallback on failure."""
        timeout = self.config.collaborator_timeout
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            error = CollaboratorTimeoutError(f"{stage.value} timed out after {timeout}s", timeout)
            return self._fallback(stage, error)
        except Exception as e:
            # Any collaborator failure degrades the stage instead of the run
            return self._fallback(stage, e)

    def _read(self, stage: Stage, read: Callable[[], T]) -> T:
        """Run a store read; treat a read failure as no results."""
        try:
            return read()
        except StoreReadError as e:
            return self._fallback(stage, e)

    # ========================================================================
    # Submit
    # ========================================================================

    def _validate(self, error_text: str, session_id: str, project_id: str) -> str:
        if self.context.is_busy:
            raise AlreadyProcessingError("Already processing an error, please wait")

        text = (error_text or "").strip()
        if not text:
            raise EmptyErrorTextError("Error text is empty")

        if not project_id:
            raise NoProjectSelectedError("No project selected")
        current = self.store.get_current_project_id(session_id)
        if current != project_id:
            raise NoProjectSelectedError(
                "Project is not the session's current project",
                {"project_id": project_id, "current_project_id": current},
            )
        return text

    async def submit(
        self,
        error_text: str,
        session_id: str,
        project_id: str,
        skip_dejavu: bool = False,
        stack_text: str = "",
    ) -> PipelineResult:
        """
        Run the pipeline for one error.

        Args:
            error_text: Raw error message (must be non-blank)
            session_id: Owning session
            project_id: Must be the session's current project
            skip_dejavu: Skip the near-duplicate check ("continue analysis")
            stack_text: Optional stack trace for the analyzer

        Returns:
            PipelineResult with a déjà-vu offer or a proposal awaiting feedback

        Raises:
            AlreadyProcessingError: If a run is already in flight
            EmptyErrorTextError: If error_text is blank
            NoProjectSelectedError: If project_id is not the current project
        """
        text = self._validate(error_text, session_id, project_id)

        set_session_id(session_id)
        self.context.session_id = session_id
        event = PipelineEvent.SUBMIT_SKIP_DEJAVU if skip_dejavu else PipelineEvent.SUBMIT
        self.context.require_transition(event)
        self.context.submission = Submission(
            error_text=text,
            session_id=session_id,
            project_id=project_id,
            stack_text=stack_text or "",
        )
        self._warnings = []

        start_time = time.monotonic()
        try:
            result = await self._run(self.context.submission, skip_dejavu)
        except BaseException:
            logger.exception("Pipeline run failed, resetting to idle")
            self.context.reset()
            raise

        result.duration_seconds = time.monotonic() - start_time
        return result

    async def _run(self, submission: Submission, skip_dejavu: bool) -> PipelineResult:
        if not skip_dejavu:
            match = self._read(
                Stage.DEJA_VU,
                lambda: self.detector.detect_similar_error(
                    submission.error_text, submission.session_id, submission.project_id
                ),
            )
            if match is not None:
                self.context.require_transition(PipelineEvent.DEJA_VU_FOUND, match)
                self._log_event("deja_vu", submission, fix_id=match.fix.id)
                return PipelineResult(
                    kind=ResultKind.DEJA_VU, deja_vu=match, warnings=list(self._warnings)
                )
            self.context.require_transition(PipelineEvent.NO_MATCH)

        self._step(1, "Analyzing error")
        analysis = await self._call_collaborator(
            Stage.CLASSIFY,
            self.analyzer.analyze_error(submission.error_text, submission.stack_text),
        )
        self.context.require_transition(PipelineEvent.CLASSIFIED)

        self._step(2, "Searching past fixes")
        past_fixes = self._retrieve(submission, analysis.classification)
        self.context.require_transition(
            PipelineEvent.FIXES_FOUND if past_fixes else PipelineEvent.NO_FIXES
        )

        principle = None
        if past_fixes:
            self._step(3, "Extracting principle")
            principle = await self._call_collaborator(
                Stage.EXTRACT,
                self.extractor.extract_principle(
                    submission.error_text, past_fixes[0].solution.solution, analysis
                ),
            )
            self.context.require_transition(PipelineEvent.EXTRACTED)
        else:
            self._step(3, "No past fixes, skipping principle extraction")

        self._step(4, "Ranking principles")
        ranked = self._rank(submission, analysis.classification)
        solutions = self._solutions(ranked, past_fixes)

        proposal = Proposal(
            submission=submission,
            analysis=analysis,
            past_fixes=past_fixes,
            principle=principle,
            ranked=ranked,
            solutions=solutions,
            evaluated_principle_id=ranked[0].principle.id if ranked else None,
        )
        self.context.require_transition(PipelineEvent.RANKED, proposal)
        self._step(5, "Ready for feedback")

        return PipelineResult(
            kind=ResultKind.PROPOSAL, proposal=proposal, warnings=list(self._warnings)
        )

    def _retrieve(self, submission: Submission, classification: Category) -> list[Fix]:
        fixes = self._read(
            Stage.RETRIEVE,
            lambda: search_past_fixes(
                self.store,
                submission.session_id,
                submission.project_id,
                classification,
                self.config.retrieval_limit,
            ),
        )
        if fixes:
            return fixes

        return self._read(
            Stage.RETRIEVE,
            lambda: search_across_projects(
                self.store,
                submission.session_id,
                classification,
                self.config.cross_project_limit,
                exclude_project_id=submission.project_id,
            ),
        )

    def _rank(self, submission: Submission, classification: Category) -> list[RankedPrinciple]:
        category_filter = (
            CategoryFilter.any()
            if classification == Category.UNKNOWN
            else CategoryFilter.only(classification)
        )
        principles = self._read(
            Stage.RANK,
            lambda: self.store.get_principles_by_category(
                submission.session_id, submission.project_id, category_filter, limit=None
            ),
        )
        return rank(principles, submission.error_text, classification)

    @staticmethod
    def _solutions(ranked: list[RankedPrinciple], past_fixes: list[Fix]) -> list[Solution]:
        if ranked:
            return [
                Solution(
                    solution=r.principle.statement,
                    confidence=r.score,
                    source=PRINCIPLE_SOURCE,
                    principle_id=r.principle.id,
                )
                for r in ranked
            ]

        # Never show an empty result when history exists
        return [
            Solution(
                solution=fix.solution.solution,
                confidence=PROMOTED_FIX_CONFIDENCE,
                source=fix.origin.label if fix.origin else PAST_FIX_SOURCE,
                explanation=fix.solution.explanation,
                code_snippet=fix.solution.code_snippet,
                fix_id=fix.id,
            )
            for fix in past_fixes
        ]

    # ========================================================================
    # Déjà-vu choices
    # ========================================================================

    def _require_deja_vu(self) -> tuple[DejaVuMatch, Submission]:
        match = self.context.deja_vu
        submission = self.context.submission
        if self.context.state != PipelineState.DEJA_VU or match is None or submission is None:
            raise NoProposalError("No déjà-vu match is pending")
        return match, submission

    def apply_past_fix(self) -> PipelineResult:
        """
        Reuse the pending déjà-vu fix as the proposal, skipping analysis.

        Raises:
            NoProposalError: If no déjà-vu match is pending
        """
        match, submission = self._require_deja_vu()
        fix = match.fix

        proposal = Proposal(
            submission=submission,
            analysis=ErrorAnalysis(
                classification=fix.error.type,
                root_cause=fix.solution.explanation,
                confidence=match.similarity,
            ),
            past_fixes=[fix],
            solutions=[
                Solution(
                    solution=fix.solution.solution,
                    confidence=match.similarity,
                    source=PAST_FIX_SOURCE,
                    explanation=fix.solution.explanation,
                    code_snippet=fix.solution.code_snippet,
                    fix_id=fix.id,
                )
            ],
            evaluated_principle_id=fix.linked_principles[0] if fix.linked_principles else None,
            source_fix_id=fix.id,
        )
        self.context.require_transition(PipelineEvent.APPLY_PAST_FIX, proposal)
        logger.info(f"Applying past fix {fix.id[:8]}")
        return PipelineResult(kind=ResultKind.PROPOSAL, proposal=proposal)

    async def continue_analysis(self) -> PipelineResult:
        """
        Ignore the pending déjà-vu match and run the full pipeline.

        Raises:
            NoProposalError: If no déjà-vu match is pending
        """
        _, submission = self._require_deja_vu()
        return await self.submit(
            submission.error_text,
            submission.session_id,
            submission.project_id,
            skip_dejavu=True,
            stack_text=submission.stack_text,
        )

    def discard(self) -> bool:
        """
        Drop the live proposal or pending match ("try another").

        Returns:
            True if something was discarded
        """
        if self.context.is_busy:
            raise AlreadyProcessingError("Cannot discard while processing")
        return self.context.transition(PipelineEvent.DISCARD)

    # ========================================================================
    # Feedback
    # ========================================================================

    async def record_feedback(self, was_helpful: bool) -> FeedbackResult:
        """
        Commit the user's verdict on the live proposal.

        Helpful: store a Fix, extract a principle just in time if none
        exists, store and link it, reinforce the evaluated principle.
        Not helpful: only reinforce (downward) the evaluated principle.

        Raises:
            NoProposalError: If there is no proposal awaiting feedback
            StoreWriteError: If the fix or principle cannot be stored; the
                proposal stays live so feedback can be retried
        """
        if self.context.is_busy:
            raise AlreadyProcessingError("Already processing, please wait")
        proposal = self.context.proposal
        if self.context.state != PipelineState.AWAITING_FEEDBACK or proposal is None:
            raise NoProposalError("No proposal is awaiting feedback")

        self.context.require_transition(PipelineEvent.RECORD_FEEDBACK)
        try:
            if was_helpful:
                result = await self._store_success(proposal)
            else:
                result = FeedbackResult(helpful=False)
            self._reinforce(proposal, was_helpful, result)
        except BaseException:
            self.context.transition(PipelineEvent.FEEDBACK_FAILED)
            raise

        self.context.require_transition(PipelineEvent.FEEDBACK_RECORDED)
        self._log_event(
            "feedback",
            proposal.submission,
            helpful=was_helpful,
            fix_id=result.fix_id,
            principle_id=result.principle_id,
        )
        return result

    @staticmethod
    def _solution_text(proposal: Proposal) -> str:
        top = proposal.top_solution
        if top:
            return top.solution
        analysis = proposal.analysis
        if analysis.root_cause and not analysis.used_fallback:
            return f"Root cause: {analysis.root_cause}. Resolved by user."
        return MANUAL_FIX_SOLUTION

    def _create_fix(self, proposal: Proposal) -> str:
        submission = proposal.submission
        analysis = proposal.analysis
        top = proposal.top_solution

        fix = Fix(
            project_id=submission.project_id,
            error=ErrorDescriptor(
                message=submission.error_text,
                stack=submission.stack_text,
                type=classify(submission.error_text, analysis.classification),
            ),
            solution=SolutionDescriptor(
                solution=self._solution_text(proposal),
                explanation=analysis.root_cause,
                code_snippet=top.code_snippet if top else "",
            ),
            usage=UsageMetadata(
                tokens_used=analysis.tokens_used,
                response_time_ms=analysis.response_time_ms,
            ),
            helpful=True,
        )
        fix_id = self.store.create_fix(submission.session_id, submission.project_id, fix)

        if proposal.source_fix_id:
            try:
                self.store.bump_fix_usage(
                    submission.session_id, submission.project_id, proposal.source_fix_id
                )
            except StoreError as e:
                logger.warning(f"Could not bump usage of fix {proposal.source_fix_id[:8]}: {e}")
        return fix_id

    async def _store_success(self, proposal: Proposal) -> FeedbackResult:
        submission = proposal.submission
        analysis = proposal.analysis

        if proposal.stored_fix_id is None:
            proposal.stored_fix_id = self._create_fix(proposal)
        else:
            logger.info(f"Reusing fix {proposal.stored_fix_id[:8]} from an earlier feedback attempt")
        fix_id = proposal.stored_fix_id
        result = FeedbackResult(helpful=True, fix_id=fix_id)

        if proposal.principle is None:
            proposal.principle = await self._call_collaborator(
                Stage.EXTRACT,
                self.extractor.extract_principle(
                    submission.error_text, self._solution_text(proposal), analysis
                ),
            )
        extracted = proposal.principle

        if extracted is None:
            logger.info(f"Stored fix {fix_id[:8]} without a principle")
            return result

        if proposal.stored_principle_id is None:
            principle = Principle(
                statement=extracted.principle,
                category=Category.for_principle(extracted.category),
                project_id=submission.project_id,
                context=PrincipleContext(error_patterns=list(analysis.patterns)),
            )
            proposal.stored_principle_id = self.store.create_principle(
                submission.session_id, submission.project_id, principle, linked_fix_id=fix_id
            )
        principle_id = proposal.stored_principle_id
        self.store.link_principle_to_fix(
            submission.session_id, submission.project_id, fix_id, principle_id
        )
        result.principle_id = principle_id
        logger.info(f"Stored fix {fix_id[:8]} with principle {principle_id[:8]}")
        return result

    def _reinforce(self, proposal: Proposal, was_helpful: bool, result: FeedbackResult) -> None:
        principle_id = proposal.evaluated_principle_id
        if principle_id is None:
            return
        submission = proposal.submission
        updated = self.success_rates.apply(
            submission.session_id, submission.project_id, principle_id, was_helpful
        )
        if updated is not None:
            result.updated_principle_id = principle_id
            result.success_rate, result.applied_count = updated

    def _log_event(self, event_type: str, submission: Submission, **fields: Any) -> None:
        entry = PipelineLogEntry(
            timestamp=now_iso(),
            session_id=submission.session_id,
            event_type=event_type,
            project_id=submission.project_id,
            **fields,
        )
        pipeline_logger.info(entry.to_json())
