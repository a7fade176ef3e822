"""Shared fixtures: isolated logs, a temp SQLite store, mocked LLM collaborators."""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from clew.config import ClewConfig
from clew.logging import LogConfig, reset_loggers, set_config
from clew.persistence.models import Category, ErrorDescriptor, Fix, SolutionDescriptor
from clew.persistence.repository import KnowledgeRepository
from clew.pipeline.orchestrator import DebugPipeline
from clew.pipeline.protocols import ErrorAnalysis, ExtractedPrinciple

EXTRACTED_STATEMENT = (
    "When reading a property of a value that may be undefined, then guard the access first"
)


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path):
    """Send structured logs to a temp directory for every test."""
    log_dir = tmp_path / "logs"
    set_config(LogConfig(log_dir=log_dir))
    reset_loggers()
    yield log_dir
    reset_loggers()


@pytest.fixture
def repo(tmp_path):
    repository = KnowledgeRepository(tmp_path / "clew.db")
    repository.initialize()
    yield repository
    repository.close()


@pytest.fixture
def session_id(repo):
    return repo.get_or_create_session().id


@pytest.fixture
def project_id(repo, session_id):
    return repo.ensure_default_project(session_id)


@pytest.fixture
def make_analysis():
    """Factory for analyzer results."""

    def _make(classification=Category.LOGIC, root_cause="Property read on undefined value"):
        return ErrorAnalysis(
            classification=classification,
            root_cause=root_cause,
            confidence=0.9,
            patterns=["undefined access"],
            tokens_used=120,
            response_time_ms=400,
        )

    return _make


@pytest.fixture
def make_fix():
    """Factory for unsaved fixes."""

    def _make(message, solution="Guard the access", error_type=Category.LOGIC, timestamp=None):
        return Fix(
            error=ErrorDescriptor(message=message, type=error_type),
            solution=SolutionDescriptor(solution=solution, explanation="It was undefined"),
            helpful=True,
            timestamp=timestamp or datetime.now(),
        )

    return _make


@pytest.fixture
def analyzer(make_analysis):
    mock = AsyncMock()
    mock.analyze_error.return_value = make_analysis()
    return mock


@pytest.fixture
def extractor():
    mock = AsyncMock()
    mock.extract_principle.return_value = ExtractedPrinciple(
        principle=EXTRACTED_STATEMENT,
        category=Category.LOGIC,
        reasoning="Applies to any optional value",
        confidence=0.8,
        tokens_used=90,
    )
    return mock


@pytest.fixture
def config(tmp_path):
    return ClewConfig(
        collaborator_timeout=2.0,
        rate_limit_backoff=0.0,
        db_path=tmp_path / "clew.db",
    )


@pytest.fixture
def pipeline(repo, analyzer, extractor, config):
    return DebugPipeline(repo, analyzer, extractor, config=config)
