"""
Past-fix retrieval.

Searches the current project first. When it has nothing for the
classification, falls back to the session's other projects, queried one
at a time, and tags every hit with the project it came from.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from clew.exceptions import StoreReadError
from clew.persistence.models import Category, Fix, FixOrigin

if TYPE_CHECKING:
    from clew.pipeline.protocols import KnowledgeStore

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_LIMIT = 5
DEFAULT_CROSS_PROJECT_LIMIT = 3


def search_past_fixes(
    store: KnowledgeStore,
    session_id: str,
    project_id: str,
    classification: Category | str,
    limit: int = DEFAULT_PROJECT_LIMIT,
) -> list[Fix]:
    """
    Newest fixes in one project with the given classification.

    Raises:
        StoreReadError: If the query fails
    """
    return store.get_fixes_by_classification(session_id, project_id, classification, limit)


def search_across_projects(
    store: KnowledgeStore,
    session_id: str,
    classification: Category | str,
    per_project_limit: int = DEFAULT_CROSS_PROJECT_LIMIT,
    exclude_project_id: str | None = None,
) -> list[Fix]:
    """
    Search every project in the session, newest first across all of them.

    A project whose query fails is skipped. Listing the projects
    themselves is not guarded.

    Raises:
        StoreReadError: If the session's projects cannot be listed
    """
    results: list[Fix] = []
    for project in store.get_all_projects_for_session(session_id):
        if project.id == exclude_project_id:
            continue
        try:
            fixes = store.get_fixes_by_classification(
                session_id, project.id, classification, per_project_limit
            )
        except StoreReadError as e:
            logger.warning(f"Skipping project {project.name!r} in cross-project search: {e}")
            continue

        for fix in fixes:
            fix.origin = FixOrigin(project_id=project.id, project_name=project.name)
        results.extend(fixes)

    results.sort(key=lambda f: f.timestamp, reverse=True)
    if results:
        logger.info(f"Cross-project search found {len(results)} fixes for {Category.parse(classification).value}")
    return results
