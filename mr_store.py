"""
SQLite persistence for mirrored GitLab projects and merge requests.

This module defines the SQLAlchemy models and the MergeRequestStore, which
offers upserts keyed on the remote identity, point lookups and the grouped
latency queries used by the statistics layer.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
    text,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker


logger = logging.getLogger(__name__)

Base: Any = declarative_base()


class StoreError(Exception):
    """Raised when a persistence operation fails."""
    pass


class Project(Base):
    """A GitLab project that has been the target of a sync run."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False)
    path_with_namespace = Column(String, nullable=False)
    created_at = Column(String, nullable=False)


class MergeRequest(Base):
    """Mirrored merge request plus the timestamps derived from its notes and approvals."""

    __tablename__ = "merge_requests"

    # GitLab's global MR id, partitioned locally by project
    id = Column(Integer, primary_key=True, autoincrement=False)
    project_id = Column(Integer, ForeignKey("projects.id"), primary_key=True, autoincrement=False)

    title = Column(String, nullable=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
    state = Column(String, nullable=False)
    author_id = Column(Integer, nullable=False)
    author_username = Column(String, nullable=False)

    first_comment_at = Column(String)
    approved_at = Column(String)
    merged_at = Column(String)

    # Assigned by the squad batch, never by sync
    squad = Column(String(30))
    description = Column(Text)


PROJECT_FIELDS = ("id", "name", "path_with_namespace", "created_at")

MERGE_REQUEST_FIELDS = (
    "id", "project_id", "title", "created_at", "updated_at", "state",
    "author_id", "author_username", "first_comment_at", "approved_at",
    "merged_at", "squad", "description",
)

# Nullable columns added after the first schema; (name, DDL type)
MERGE_REQUEST_MIGRATIONS = (
    ("squad", "VARCHAR(30)"),
    ("description", "TEXT"),
)

_MINUTES = "(strftime('%s', {end}) - strftime('%s', created_at)) / 60.0"

_STATS_SQL = f"""
    SELECT
        squad,
        COUNT(*) AS total_mrs,
        SUM(CASE WHEN state = 'merged' THEN 1 ELSE 0 END) AS merged_mrs,
        AVG(CASE WHEN first_comment_at IS NOT NULL
            THEN {_MINUTES.format(end='first_comment_at')} END) AS avg_time_to_first_comment,
        COUNT(first_comment_at) AS commented_mrs,
        AVG(CASE WHEN approved_at IS NOT NULL
            THEN {_MINUTES.format(end='approved_at')} END) AS avg_time_to_approval,
        COUNT(approved_at) AS approved_mrs,
        AVG(CASE WHEN merged_at IS NOT NULL
            THEN {_MINUTES.format(end='merged_at')} END) AS avg_time_to_merge,
        COUNT(merged_at) AS merge_timed_mrs
    FROM merge_requests
    WHERE {{where}}
    GROUP BY squad
    ORDER BY squad
"""

_LATE_COMMENTS_SQL = """
    SELECT squad, COUNT(*) AS count
    FROM merge_requests
    WHERE {where}
    GROUP BY squad
    ORDER BY squad
"""

_HOURLY_SQL = f"""
    SELECT
        squad,
        CAST(strftime('%H', datetime(created_at, :offset)) AS INTEGER) AS hour,
        COUNT(*) AS mr_count,
        AVG(CASE WHEN first_comment_at IS NOT NULL
            THEN {_MINUTES.format(end='first_comment_at')} END) AS avg_minutes_until_comment
    FROM merge_requests
    WHERE project_id = :project_id AND squad IS NOT NULL
    GROUP BY squad, hour
    ORDER BY squad, hour
"""

_AFTER_HOURS_SQL = f"""
    SELECT
        id,
        project_id,
        title,
        created_at,
        datetime(created_at, :offset) AS created_at_local,
        author_username,
        squad,
        first_comment_at,
        CASE WHEN first_comment_at IS NOT NULL
            THEN {_MINUTES.format(end='first_comment_at')} END AS minutes_until_first_comment
    FROM merge_requests
    WHERE project_id = :project_id
      AND CAST(strftime('%H', datetime(created_at, :offset)) AS INTEGER) >= :hour
    ORDER BY created_at_local DESC
"""


def _offset_modifier(utc_offset_hours: int) -> str:
    """SQLite datetime() modifier for a whole-hour UTC offset."""
    return f"{utc_offset_hours:+d} hours"


def _date_filters(project_id: int, start_date: Optional[str],
                  end_date: Optional[str]) -> Tuple[List[str], Dict[str, Any]]:
    """Base WHERE clauses shared by the aggregations: project, not closed, classified, date window."""
    clauses = ["project_id = :project_id", "state != 'closed'", "squad IS NOT NULL"]
    params: Dict[str, Any] = {"project_id": project_id}

    # Bounds are inclusive calendar dates
    if start_date:
        clauses.append("date(created_at) >= :start_date")
        params["start_date"] = start_date
    if end_date:
        clauses.append("date(created_at) <= :end_date")
        params["end_date"] = end_date

    return clauses, params


class MergeRequestStore:
    """SQLite-backed store for projects and merge requests."""

    def __init__(self, db_path: str):
        """
        Open (and create if needed) the store at ``db_path``.

        Raises:
            StoreError: If the database cannot be opened or initialised
        """
        self.db_path = Path(db_path)

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(f"sqlite:///{self.db_path}", connect_args={"timeout": 30})
            self.SessionLocal = sessionmaker(bind=self.engine)

            Base.metadata.create_all(self.engine)
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Failed to initialise database at {self.db_path}: {e}") from e

        self._apply_migrations()
        logger.debug(f"Database initialized at: {self.db_path}")

    def _apply_migrations(self) -> None:
        """
        Add nullable columns introduced after the first schema.

        Each ALTER runs on its own so that a column which already exists
        (or a concurrent creator) never aborts start-up.
        """
        with self.engine.connect() as conn:
            result = conn.execute(text("PRAGMA table_info(merge_requests)"))
            existing_columns = {row[1] for row in result}

        for col_name, col_type in MERGE_REQUEST_MIGRATIONS:
            if col_name in existing_columns:
                continue
            try:
                with self.engine.begin() as conn:
                    conn.execute(text(f"ALTER TABLE merge_requests ADD COLUMN {col_name} {col_type} NULL"))
                logger.info(f"Added {col_name} column to merge_requests table")
            except SQLAlchemyError as e:
                logger.debug(f"Column {col_name} might already exist: {e}")

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    def close(self) -> None:
        self.engine.dispose()

    def upsert_project(self, project: Mapping[str, Any]) -> None:
        """
        Insert or overwrite a project row.

        Raises:
            StoreError: If the write fails
        """
        values = {name: project.get(name) for name in PROJECT_FIELDS}
        stmt = sqlite_insert(Project).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Project.id],
            set_={name: stmt.excluded[name] for name in PROJECT_FIELDS if name != "id"}
        )
        self._execute_write(stmt, f"project {values['id']}")

    def upsert_merge_request(self, merge_request: Mapping[str, Any]) -> None:
        """
        Insert or update a merge request keyed on (id, project_id).

        ``squad`` is owned by the classification batch: an unset incoming
        value keeps whatever is stored.

        Raises:
            StoreError: If the write fails (constraint violation, I/O error)
        """
        values = {name: merge_request.get(name) for name in MERGE_REQUEST_FIELDS}
        stmt = sqlite_insert(MergeRequest).values(**values)

        updates = {
            name: stmt.excluded[name]
            for name in MERGE_REQUEST_FIELDS
            if name not in ("id", "project_id", "squad")
        }
        updates["squad"] = func.coalesce(stmt.excluded.squad, MergeRequest.squad)

        stmt = stmt.on_conflict_do_update(
            index_elements=[MergeRequest.id, MergeRequest.project_id],
            set_=updates
        )
        self._execute_write(stmt, f"merge request {values['id']} in project {values['project_id']}")

    def _execute_write(self, stmt, what: str) -> int:
        try:
            with self.get_session() as session, session.begin():
                result = session.execute(stmt)
                return result.rowcount
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to save {what}: {e}") from e

    def get_merge_request(self, project_id: int, mr_id: int) -> Optional[Dict[str, Any]]:
        """Look up a stored merge request by its composite key; None if absent."""
        stmt = select(MergeRequest.__table__).where(
            MergeRequest.project_id == project_id,
            MergeRequest.id == mr_id
        )
        rows = self._fetch(stmt)
        return rows[0] if rows else None

    def get_merge_requests(self, project_id: int) -> List[Dict[str, Any]]:
        """All stored merge requests of a project, ordered by id."""
        stmt = (
            select(MergeRequest.__table__)
            .where(MergeRequest.project_id == project_id)
            .order_by(MergeRequest.id)
        )
        return self._fetch(stmt)

    def get_project(self, project_id: int) -> Optional[Dict[str, Any]]:
        rows = self._fetch(select(Project.__table__).where(Project.id == project_id))
        return rows[0] if rows else None

    def _fetch(self, stmt, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(stmt, params or {})
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            raise StoreError(f"Query failed: {e}") from e

    def query_stats(self, project_id: int, start_date: Optional[str] = None,
                    end_date: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Latency statistics per squad for non-closed, classified merge requests.

        Averages are in fractional minutes and only cover rows where the
        respective timestamp is set. The ``*_mrs`` sample counts next to
        each average give its denominator.
        """
        clauses, params = _date_filters(project_id, start_date, end_date)
        sql = _STATS_SQL.format(where=" AND ".join(clauses))
        return self._fetch(text(sql), params)

    def query_late_comments(self, project_id: int, threshold_minutes: float,
                            start_date: Optional[str] = None,
                            end_date: Optional[str] = None) -> List[Dict[str, Any]]:
        """Count per squad the merge requests whose first comment came strictly after the threshold."""
        clauses, params = _date_filters(project_id, start_date, end_date)
        clauses.append("first_comment_at IS NOT NULL")
        clauses.append(f"{_MINUTES.format(end='first_comment_at')} > :threshold")
        params["threshold"] = threshold_minutes

        sql = _LATE_COMMENTS_SQL.format(where=" AND ".join(clauses))
        return self._fetch(text(sql), params)

    def query_hourly_distribution(self, project_id: int, utc_offset_hours: int = 7) -> List[Dict[str, Any]]:
        """MR count and average minutes to first comment per (squad, local creation hour)."""
        params = {"project_id": project_id, "offset": _offset_modifier(utc_offset_hours)}
        return self._fetch(text(_HOURLY_SQL), params)

    def query_created_after_hour(self, project_id: int, hour: int = 16,
                                 utc_offset_hours: int = 7) -> List[Dict[str, Any]]:
        """Merge requests created at or after ``hour`` local time, newest first."""
        params = {
            "project_id": project_id,
            "offset": _offset_modifier(utc_offset_hours),
            "hour": hour,
        }
        return self._fetch(text(_AFTER_HOURS_SQL), params)

    def assign_squads(self, squad_members: Mapping[str, Iterable[str]],
                      default_squad: Optional[str] = None,
                      excluded_usernames: Iterable[str] = (),
                      project_id: Optional[int] = None) -> int:
        """
        Classify merge requests into squads by author.

        Listed members are (re)assigned to their squad. When ``default_squad``
        is given, every still unclassified merge request whose author is
        neither a listed member nor excluded gets it.

        Returns:
            Number of rows updated
        """
        members_by_squad = {squad: sorted(set(users)) for squad, users in squad_members.items()}
        all_members = {user for users in members_by_squad.values() for user in users}
        excluded = set(excluded_usernames)

        statements = []
        for squad, users in members_by_squad.items():
            if not users:
                continue
            stmt = (
                update(MergeRequest)
                .where(MergeRequest.author_username.in_(users))
                .values(squad=squad)
            )
            statements.append(stmt)

        if default_squad:
            stmt = (
                update(MergeRequest)
                .where(MergeRequest.squad.is_(None))
                .where(MergeRequest.author_username.not_in(sorted(all_members | excluded)))
                .values(squad=default_squad)
            )
            statements.append(stmt)

        updated = 0
        try:
            with self.get_session() as session, session.begin():
                for stmt in statements:
                    if project_id is not None:
                        stmt = stmt.where(MergeRequest.project_id == project_id)
                    updated += session.execute(stmt).rowcount
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to assign squads: {e}") from e

        logger.info(f"Assigned squads to {updated} merge requests")
        return updated
