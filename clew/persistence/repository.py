"""
Clew Repository - Knowledge Store access layer

Provides every database operation the debugging pipeline depends on:
sessions, projects, fixes and principles, all scoped by session.
Single connection per repository instance, with context manager support.

Error policy:
- Failed queries raise StoreReadError
- Failed writes raise StoreWriteError

The principle success-rate update is read-then-write and is NOT atomic
across connections. That is fine for one user per session; a multi-writer
backend would need a transaction or a compare-and-set here.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from clew.config import DEFAULT_DB_PATH
from clew.exceptions import (
    ProjectNameError,
    StoreReadError,
    StoreWriteError,
    ValidationError,
)
from clew.persistence.models import (
    Category,
    CategoryFilter,
    Fix,
    Principle,
    Project,
    Session,
    generate_id,
    now_iso,
    parse_json_or_list,
    to_json,
)

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_NAME = "Default Project"
DEFAULT_PROJECT_DESCRIPTION = "Your default debugging workspace"
MAX_PROJECT_NAME_LENGTH = 100

SESSION_COLUMNS = "id, created_at, last_active_at, current_project_id"
PROJECT_COLUMNS = "id, session_id, name, tech_stack, description, created_at"
FIX_COLUMNS = (
    "id, session_id, project_id, timestamp, error_message, error_stack, error_type, "
    "solution, explanation, code_snippet, helpful, tokens_used, response_time_ms, "
    "times_applied, last_applied_at, linked_principles"
)
PRINCIPLE_COLUMNS = (
    "id, session_id, project_id, statement, category, error_patterns, "
    "success_rate, applied_count, created_at, linked_fixes"
)


def validate_project_name(name: str | None) -> str:
    """
    Trim and validate a project name.

    Raises:
        ProjectNameError: If the name is empty or longer than 100 characters
    """
    trimmed = (name or "").strip()
    if not trimmed:
        raise ProjectNameError("Project name is required")
    if len(trimmed) > MAX_PROJECT_NAME_LENGTH:
        raise ProjectNameError(
            f"Project name too long (max {MAX_PROJECT_NAME_LENGTH} characters)",
            {"length": len(trimmed)},
        )
    return trimmed


class KnowledgeRepository:
    """
    SQLite-backed knowledge store.

    Usage:
        repo = KnowledgeRepository()
        repo.initialize()

        session = repo.get_or_create_session()
        project_id = repo.ensure_default_project(session.id)

        # Use in context manager for auto-cleanup
        with KnowledgeRepository(path) as repo:
            ...
    """

    def __init__(self, db_path: Path | str | None = None):
        """
        Initialize repository.

        Args:
            db_path: Path to SQLite database file. If None, uses default location.
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    def __enter__(self) -> KnowledgeRepository:
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        """Get database connection, initializing if needed."""
        if self._conn is None:
            self.initialize()
        return self._conn  # type: ignore

    def initialize(self) -> None:
        """
        Initialize database connection and schema.

        Creates database file and parent directories if they don't exist.
        """
        if self._initialized and self._conn:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode, we use explicit transactions
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._apply_schema()
        except sqlite3.Error as e:
            raise StoreWriteError(f"Could not open knowledge store: {e}", {"path": str(self.db_path)})

        self._initialized = True
        logger.info(f"Initialized knowledge store at {self.db_path}")

    def _apply_schema(self) -> None:
        """Apply the database schema from schema.sql."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path) as f:
            schema_sql = f.read()
        self._conn.executescript(schema_sql)  # type: ignore
        logger.debug("Database schema applied")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._initialized = False

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """
        Execute operations in a transaction.

        Usage:
            with repo.transaction() as cursor:
                cursor.execute(...)
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute("BEGIN")
            yield cursor
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise
        finally:
            cursor.close()

    @contextmanager
    def _reading(self, operation: str) -> Generator[sqlite3.Cursor, None, None]:
        cursor = self.conn.cursor()
        try:
            yield cursor
        except sqlite3.Error as e:
            raise StoreReadError(f"{operation} failed: {e}", {"operation": operation})
        finally:
            cursor.close()

    @contextmanager
    def _writing(self, operation: str) -> Generator[sqlite3.Cursor, None, None]:
        try:
            with self.transaction() as cursor:
                yield cursor
        except sqlite3.Error as e:
            raise StoreWriteError(f"{operation} failed: {e}", {"operation": operation})

    # =========================================================================
    # SESSION OPERATIONS
    # =========================================================================

    def get_or_create_session(self, session_id: str | None = None) -> Session:
        """
        Load a session, refreshing its last-active time, or create it.

        Args:
            session_id: Existing id to resume; a new id is generated if None
        """
        if session_id:
            session = self.get_session(session_id)
            if session:
                self.touch_session(session_id)
                session.last_active_at = datetime.now()
                return session

        session = Session(id=session_id or generate_id())
        with self._writing("create_session") as cursor:
            cursor.execute(
                f"INSERT INTO sessions ({SESSION_COLUMNS}) VALUES (?, ?, ?, ?)",
                session.to_row(),
            )
        logger.info(f"Created session {session.id[:8]}")
        return session

    def get_session(self, session_id: str) -> Session | None:
        """Get session by ID."""
        with self._reading("get_session") as cursor:
            cursor.execute(f"SELECT {SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,))
            row = cursor.fetchone()
        return Session.from_row(row) if row else None

    def touch_session(self, session_id: str) -> None:
        """Refresh the session's last-active timestamp."""
        with self._writing("touch_session") as cursor:
            cursor.execute(
                "UPDATE sessions SET last_active_at = ? WHERE id = ?",
                (now_iso(), session_id),
            )

    # =========================================================================
    # PROJECT OPERATIONS
    # =========================================================================

    def create_project(
        self,
        session_id: str,
        name: str,
        tech_stack: list[str] | None = None,
        description: str = "",
    ) -> str:
        """
        Create a project in a session.

        Returns:
            The new project id

        Raises:
            ProjectNameError: If the name is empty or too long
        """
        project = Project(
            session_id=session_id,
            name=validate_project_name(name),
            tech_stack=tech_stack or [],
            description=description or "",
        )
        with self._writing("create_project") as cursor:
            cursor.execute(
                f"INSERT INTO projects ({PROJECT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                project.to_row(),
            )
        logger.info(f"Created project: {project.name} ({project.id[:8]})")
        return project.id

    def get_project(self, session_id: str, project_id: str) -> Project | None:
        """Get a project, scoped to its session."""
        with self._reading("get_project") as cursor:
            cursor.execute(
                f"SELECT {PROJECT_COLUMNS} FROM projects WHERE session_id = ? AND id = ?",
                (session_id, project_id),
            )
            row = cursor.fetchone()
        return Project.from_row(row) if row else None

    def get_all_projects_for_session(self, session_id: str) -> list[Project]:
        """List all projects in a session, newest first."""
        with self._reading("get_all_projects_for_session") as cursor:
            cursor.execute(
                f"""SELECT {PROJECT_COLUMNS} FROM projects
                    WHERE session_id = ?
                    ORDER BY created_at DESC""",
                (session_id,),
            )
            return [Project.from_row(row) for row in cursor.fetchall()]

    def update_project(
        self,
        session_id: str,
        project_id: str,
        name: str | None = None,
        tech_stack: list[str] | None = None,
        description: str | None = None,
    ) -> None:
        """Update project metadata. Only provided fields change."""
        updates: list[str] = []
        params: list[object] = []
        if name is not None:
            updates.append("name = ?")
            params.append(validate_project_name(name))
        if tech_stack is not None:
            updates.append("tech_stack = ?")
            params.append(to_json(tech_stack))
        if description is not None:
            updates.append("description = ?")
            params.append(description)
        if not updates:
            return

        with self._writing("update_project") as cursor:
            cursor.execute(
                f"UPDATE projects SET {', '.join(updates)} WHERE session_id = ? AND id = ?",
                (*params, session_id, project_id),
            )
        logger.info(f"Updated project: {project_id[:8]}")

    def delete_project(self, session_id: str, project_id: str) -> None:
        """
        Delete a project with its fixes and principles.

        If the project is current, another project becomes current first.

        Raises:
            ValidationError: If it is the only project in the session
        """
        if self.get_current_project_id(session_id) == project_id:
            others = [p for p in self.get_all_projects_for_session(session_id) if p.id != project_id]
            if not others:
                raise ValidationError(
                    "Cannot delete the only project. Create another project first."
                )
            self.set_current_project(session_id, others[0].id)

        with self._writing("delete_project") as cursor:
            cursor.execute(
                "DELETE FROM projects WHERE session_id = ? AND id = ?",
                (session_id, project_id),
            )
        logger.info(f"Deleted project: {project_id[:8]}")

    def set_current_project(self, session_id: str, project_id: str) -> None:
        """Point the session at a project."""
        with self._writing("set_current_project") as cursor:
            cursor.execute(
                "UPDATE sessions SET current_project_id = ?, last_active_at = ? WHERE id = ?",
                (project_id, now_iso(), session_id),
            )
        logger.info(f"Switched to project: {project_id[:8]}")

    def get_current_project_id(self, session_id: str) -> str | None:
        """Return the session's current project id, if any."""
        session = self.get_session(session_id)
        return session.current_project_id if session else None

    def ensure_default_project(self, session_id: str) -> str:
        """
        Make sure the session has a current project.

        Creates "Default Project" on first use, otherwise keeps the stored
        pointer or falls back to the first project.

        Returns:
            The current project id
        """
        projects = self.get_all_projects_for_session(session_id)
        if not projects:
            project_id = self.create_project(
                session_id,
                DEFAULT_PROJECT_NAME,
                description=DEFAULT_PROJECT_DESCRIPTION,
            )
            self.set_current_project(session_id, project_id)
            return project_id

        current_id = self.get_current_project_id(session_id)
        if current_id and any(p.id == current_id for p in projects):
            return current_id

        project_id = projects[-1].id  # oldest
        self.set_current_project(session_id, project_id)
        return project_id

    # =========================================================================
    # FIX OPERATIONS
    # =========================================================================

    def create_fix(self, session_id: str, project_id: str, fix: Fix) -> str:
        """Persist a new fix. Returns its id."""
        fix.project_id = project_id
        with self._writing("create_fix") as cursor:
            cursor.execute(
                f"INSERT INTO fixes ({FIX_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                fix.to_row(session_id),
            )
        logger.info(f"Fix stored: {fix.id[:8]}")
        return fix.id

    def get_fix(self, session_id: str, project_id: str, fix_id: str) -> Fix | None:
        """Get one fix by id."""
        with self._reading("get_fix") as cursor:
            cursor.execute(
                f"""SELECT {FIX_COLUMNS} FROM fixes
                    WHERE session_id = ? AND project_id = ? AND id = ?""",
                (session_id, project_id, fix_id),
            )
            row = cursor.fetchone()
        return Fix.from_row(row) if row else None

    def get_fixes_by_classification(
        self,
        session_id: str,
        project_id: str,
        classification: Category | str,
        limit: int = 5,
    ) -> list[Fix]:
        """Fixes in one project with a matching error type, newest first."""
        category = Category.parse(classification)
        with self._reading("get_fixes_by_classification") as cursor:
            cursor.execute(
                f"""SELECT {FIX_COLUMNS} FROM fixes
                    WHERE session_id = ? AND project_id = ? AND error_type = ?
                    ORDER BY timestamp DESC LIMIT ?""",
                (session_id, project_id, category.value, limit),
            )
            return [Fix.from_row(row) for row in cursor.fetchall()]

    def get_all_fixes_for_project(
        self,
        session_id: str,
        project_id: str,
        limit: int = 50,
    ) -> list[Fix]:
        """All fixes in a project, newest first, capped at limit."""
        with self._reading("get_all_fixes_for_project") as cursor:
            cursor.execute(
                f"""SELECT {FIX_COLUMNS} FROM fixes
                    WHERE session_id = ? AND project_id = ?
                    ORDER BY timestamp DESC LIMIT ?""",
                (session_id, project_id, limit),
            )
            return [Fix.from_row(row) for row in cursor.fetchall()]

    def bump_fix_usage(self, session_id: str, project_id: str, fix_id: str) -> None:
        """Count one more reuse of a fix."""
        with self._writing("bump_fix_usage") as cursor:
            cursor.execute(
                """UPDATE fixes
                   SET times_applied = COALESCE(times_applied, 0) + 1, last_applied_at = ?
                   WHERE session_id = ? AND project_id = ? AND id = ?""",
                (now_iso(), session_id, project_id, fix_id),
            )

    def link_principle_to_fix(
        self,
        session_id: str,
        project_id: str,
        fix_id: str,
        principle_id: str,
    ) -> None:
        """Append a principle id to a fix's linked principles."""
        with self._writing("link_principle_to_fix") as cursor:
            cursor.execute(
                "SELECT linked_principles FROM fixes WHERE session_id = ? AND project_id = ? AND id = ?",
                (session_id, project_id, fix_id),
            )
            row = cursor.fetchone()
            if row is None:
                logger.warning(f"Cannot link principle: fix {fix_id[:8]} not found")
                return
            linked = parse_json_or_list(row[0])
            if principle_id in linked:
                return
            linked.append(principle_id)
            cursor.execute(
                "UPDATE fixes SET linked_principles = ? WHERE id = ?",
                (to_json(linked), fix_id),
            )

    # =========================================================================
    # PRINCIPLE OPERATIONS
    # =========================================================================

    def create_principle(
        self,
        session_id: str,
        project_id: str,
        principle: Principle,
        linked_fix_id: str | None = None,
    ) -> str:
        """
        Persist a new principle at success_rate=1.0, applied_count=1.

        Returns:
            The principle id
        """
        principle.project_id = project_id
        principle.context.success_rate = 1.0
        principle.context.applied_count = 1
        if linked_fix_id and linked_fix_id not in principle.linked_fixes:
            principle.linked_fixes.append(linked_fix_id)

        with self._writing("create_principle") as cursor:
            cursor.execute(
                f"INSERT INTO principles ({PRINCIPLE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                principle.to_row(session_id),
            )
        logger.info(f"Principle stored: {principle.id[:8]}")
        return principle.id

    def get_principle(self, session_id: str, project_id: str, principle_id: str) -> Principle | None:
        """Get one principle by id."""
        with self._reading("get_principle") as cursor:
            cursor.execute(
                f"""SELECT {PRINCIPLE_COLUMNS} FROM principles
                    WHERE session_id = ? AND project_id = ? AND id = ?""",
                (session_id, project_id, principle_id),
            )
            row = cursor.fetchone()
        return Principle.from_row(row) if row else None

    def get_principles_by_category(
        self,
        session_id: str,
        project_id: str,
        category_filter: CategoryFilter,
        limit: int | None = 5,
    ) -> list[Principle]:
        """
        Principles in a project, sorted by success rate descending.

        Args:
            category_filter: CategoryFilter.any() or CategoryFilter.only(...)
            limit: Maximum rows, or None for no cap
        """
        query = f"SELECT {PRINCIPLE_COLUMNS} FROM principles WHERE session_id = ? AND project_id = ?"
        params: list[object] = [session_id, project_id]
        if not category_filter.is_any:
            query += " AND category = ?"
            params.append(category_filter.category.value)  # type: ignore[union-attr]
        query += " ORDER BY success_rate DESC, created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._reading("get_principles_by_category") as cursor:
            cursor.execute(query, params)
            return [Principle.from_row(row) for row in cursor.fetchall()]

    def update_principle_success_rate(
        self,
        session_id: str,
        project_id: str,
        principle_id: str,
        new_rate: float,
        new_count: int,
    ) -> bool:
        """
        Store a new success rate / applied count.

        Returns:
            False if the principle does not exist
        """
        with self._writing("update_principle_success_rate") as cursor:
            cursor.execute(
                """UPDATE principles SET success_rate = ?, applied_count = ?
                   WHERE session_id = ? AND project_id = ? AND id = ?""",
                (new_rate, new_count, session_id, project_id, principle_id),
            )
            return cursor.rowcount > 0
