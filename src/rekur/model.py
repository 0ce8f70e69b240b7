import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Optional

from rekur.rekur_env import RekurEnvironment

from .errors import (
    AmbiguousIdError,
    CircularDependencyError,
    InvalidInputError,
    NotFoundError,
)
from .models import (
    ExceptionKind,
    Project,
    Series,
    SeriesException,
    SeriesStatistics,
    Task,
    TaskPriority,
    TaskQuery,
    TaskStatus,
)
from .shared import (
    fmt_opt_utc_z,
    fmt_utc_z,
    log_msg,
    new_id,
    parse_opt_utc_z,
    parse_utc_z,
    utc_now,
)

TASK_FIELDS = (
    "name",
    "description",
    "status",
    "priority",
    "due_at",
    "completed_at",
    "project_id",
    "parent_id",
    "series_id",
    "occurrence_dt",
)

SERIES_FIELDS = (
    "rrule",
    "dtstart",
    "timezone",
    "active",
    "last_materialized_until",
    "split_from",
    "dtstart_wall",
)

WALL_FORMAT = "%Y%m%dT%H%M%S"

DATETIME_FIELDS = {
    "due_at",
    "completed_at",
    "occurrence_dt",
    "dtstart",
    "last_materialized_until",
}


def _to_db(key: str, value):
    if value is None:
        return None
    if key in DATETIME_FIELDS:
        return fmt_utc_z(value)
    if key == "dtstart_wall":
        return value.strftime(WALL_FORMAT)
    if key == "active":
        return 1 if value else 0
    if isinstance(value, str):
        return str(value)
    return value


def _row_to_series(row: sqlite3.Row) -> Series:
    return Series(
        id=row["id"],
        template_task_id=row["template_task_id"],
        rrule=row["rrule"],
        dtstart=parse_utc_z(row["dtstart"]),
        timezone=row["timezone"],
        active=bool(row["active"]),
        last_materialized_until=parse_opt_utc_z(row["last_materialized_until"]),
        split_from=row["split_from"],
        created_at=parse_opt_utc_z(row["created_at"]),
        updated_at=parse_opt_utc_z(row["updated_at"]),
        dtstart_wall=(
            datetime.strptime(row["dtstart_wall"], WALL_FORMAT) if row["dtstart_wall"] else None
        ),
    )


def _row_to_exception(row: sqlite3.Row) -> SeriesException:
    return SeriesException(
        series_id=row["series_id"],
        occurrence_dt=parse_utc_z(row["occurrence_dt"]),
        kind=ExceptionKind(row["kind"]),
        task_id=row["task_id"],
        notes=row["notes"],
        created_at=parse_opt_utc_z(row["created_at"]),
        target_at=parse_opt_utc_z(row["target_due"]),
    )


class DatabaseManager:
    def __init__(
        self,
        db_path: str,
        env: Optional[RekurEnvironment] = None,
        reset: bool = False,
    ):
        self.db_path = str(db_path)
        self.env = env

        if reset and os.path.exists(self.db_path):
            os.remove(self.db_path)

        # Autocommit; multi-statement work goes through transaction().
        self.conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.cursor = self.conn.cursor()
        self.cursor.execute("PRAGMA foreign_keys = ON")
        self._depth = 0
        self.setup_database()

    def close(self):
        self.conn.close()

    def setup_database(self):
        """
        Create (if missing) all tables and indexes for rekur.

        Notes:
        - Instants are stored as 'YYYYMMDDTHHMMSSZ' UTC text, so text order
          is time order.
        - A series instance carries both series_id and occurrence_dt, the
          original rule instant; (series_id, occurrence_dt) is unique.
        """
        # ---------------- Projects ----------------
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS Projects (
                id          TEXT PRIMARY KEY,
                name        TEXT NOT NULL UNIQUE,
                description TEXT,
                created_at  TEXT
            );
        """)

        # ---------------- Tasks ----------------
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS Tasks (
                id            TEXT PRIMARY KEY,                 -- UUIDv7
                name          TEXT NOT NULL,
                description   TEXT,
                status        TEXT NOT NULL DEFAULT 'pending'
                              CHECK (status IN ('pending','completed','cancelled')),
                priority      TEXT NOT NULL DEFAULT 'none'
                              CHECK (priority IN ('none','low','medium','high')),
                due_at        TEXT,
                completed_at  TEXT,
                created_at    TEXT,
                updated_at    TEXT,
                project_id    TEXT REFERENCES Projects(id) ON DELETE SET NULL,
                parent_id     TEXT REFERENCES Tasks(id) ON DELETE SET NULL,
                series_id     TEXT REFERENCES Series(id) ON DELETE CASCADE,
                occurrence_dt TEXT                              -- instances only
            );
        """)
        self.cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_due ON Tasks(due_at);
        """)
        self.cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_status ON Tasks(status);
        """)
        self.cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_series ON Tasks(series_id);
        """)
        self.cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_series_occurrence
            ON Tasks(series_id, occurrence_dt)
            WHERE occurrence_dt IS NOT NULL;
        """)

        # ---------------- Series ----------------
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS Series (
                id                      TEXT PRIMARY KEY,       -- UUIDv7
                template_task_id        TEXT NOT NULL UNIQUE
                                        REFERENCES Tasks(id) ON DELETE RESTRICT,
                rrule                   TEXT NOT NULL,          -- canonical text
                dtstart                 TEXT NOT NULL,
                dtstart_wall            TEXT,                   -- naive, series zone
                timezone                TEXT NOT NULL,          -- IANA name
                active                  INTEGER NOT NULL DEFAULT 1,
                last_materialized_until TEXT,                   -- boundary
                split_from              TEXT,                   -- audit only, no FK
                created_at              TEXT,
                updated_at              TEXT
            );
        """)
        # Databases created before dtstart_wall existed
        self.cursor.execute("PRAGMA table_info(Series);")
        existing_columns = {row[1] for row in self.cursor.fetchall()}
        if "dtstart_wall" not in existing_columns:
            self.cursor.execute("ALTER TABLE Series ADD COLUMN dtstart_wall TEXT;")
        self.cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_series_active ON Series(active);
        """)

        # ---------------- SeriesExceptions ----------------
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS SeriesExceptions (
                series_id     TEXT NOT NULL REFERENCES Series(id) ON DELETE CASCADE,
                occurrence_dt TEXT NOT NULL,                    -- original instant
                kind          TEXT NOT NULL CHECK (kind IN ('skip','override','move')),
                task_id       TEXT REFERENCES Tasks(id) ON DELETE CASCADE,
                notes         TEXT,
                created_at    TEXT,
                PRIMARY KEY (series_id, occurrence_dt),
                CHECK ((kind = 'skip') = (task_id IS NULL))
            );
        """)

        # ---------------- Tags & TaskTags ----------------
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS Tags (
                id   INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE
            );
        """)
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS TaskTags (
                task_id TEXT    NOT NULL,
                tag_id  INTEGER NOT NULL,
                FOREIGN KEY (task_id) REFERENCES Tasks(id) ON DELETE CASCADE,
                FOREIGN KEY (tag_id)  REFERENCES Tags(id)  ON DELETE CASCADE,
                PRIMARY KEY (task_id, tag_id)
            );
        """)

        # ---------------- Dependencies ----------------
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS Dependencies (
                task_id       TEXT NOT NULL REFERENCES Tasks(id) ON DELETE CASCADE,
                depends_on_id TEXT NOT NULL REFERENCES Tasks(id) ON DELETE CASCADE,
                PRIMARY KEY (task_id, depends_on_id),
                CHECK (task_id != depends_on_id)
            );
        """)

    # --- Transactions ---------------------------------------------------------
    @contextmanager
    def transaction(self):
        """
        BEGIN IMMEDIATE ... COMMIT, rolled back on any error.

        Nested calls join the outer transaction. IMMEDIATE takes the write
        lock up front, so a second connection waits rather than reading a
        boundary that is about to move.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self.cursor.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            self.cursor.execute("ROLLBACK")
            raise
        self._depth = 0
        self.cursor.execute("COMMIT")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # --- Tasks ----------------------------------------------------------------
    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            status=TaskStatus(row["status"]),
            priority=TaskPriority(row["priority"]),
            due_at=parse_opt_utc_z(row["due_at"]),
            completed_at=parse_opt_utc_z(row["completed_at"]),
            created_at=parse_opt_utc_z(row["created_at"]),
            updated_at=parse_opt_utc_z(row["updated_at"]),
            project_id=row["project_id"],
            parent_id=row["parent_id"],
            series_id=row["series_id"],
            occurrence_dt=parse_opt_utc_z(row["occurrence_dt"]),
            tags=self.get_task_tags(row["id"]),
            depends_on=self.get_task_dependencies(row["id"]),
        )

    def add_task(self, task: Task) -> Task:
        """Insert task with its tags and dependencies; returns the stored row."""
        if not task.name or not task.name.strip():
            raise InvalidInputError("A task needs a name")
        timestamp = utc_now()
        with self.transaction():
            self.cursor.execute(
                """
                INSERT INTO Tasks (
                    id, name, description, status, priority, due_at,
                    completed_at, created_at, updated_at, project_id,
                    parent_id, series_id, occurrence_dt
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.name.strip(),
                    task.description,
                    str(task.status),
                    str(task.priority),
                    fmt_opt_utc_z(task.due_at),
                    fmt_opt_utc_z(task.completed_at),
                    fmt_utc_z(task.created_at or timestamp),
                    fmt_utc_z(task.updated_at or timestamp),
                    task.project_id,
                    task.parent_id,
                    task.series_id,
                    fmt_opt_utc_z(task.occurrence_dt),
                ),
            )
            self.set_task_tags(task.id, task.tags)
            for dep in task.depends_on:
                self.add_dependency(task.id, dep)
        return self.get_task(task.id)

    def get_task(self, task_id: str) -> Task:
        row = self.conn.execute("SELECT * FROM Tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Task {task_id} not found")
        return self._row_to_task(row)

    def _resolve_id(self, table: str, ref: str, label: str) -> str:
        ref = (ref or "").strip().lower()
        if not ref:
            raise NotFoundError(f"No {label} id given")
        row = self.conn.execute(f"SELECT id FROM {table} WHERE id = ?", (ref,)).fetchone()
        if row is not None:
            return row["id"]
        rows = self.conn.execute(
            f"SELECT id FROM {table} WHERE id LIKE ? OR id LIKE ? ORDER BY id",
            (f"{ref}%", f"%{ref}"),
        ).fetchall()
        if not rows:
            raise NotFoundError(f"No {label} matches {ref!r}")
        if len(rows) > 1:
            raise AmbiguousIdError(ref, [r["id"] for r in rows])
        return rows[0]["id"]

    def find_task(self, ref: str) -> Task:
        """Look up a task by full id or by a unique leading/trailing fragment."""
        return self.get_task(self._resolve_id("Tasks", ref, "task"))

    def list_tasks(self, query: TaskQuery | None = None, now: datetime | None = None) -> list[Task]:
        query = query or TaskQuery()
        clauses = []
        params: list = []
        if query.status is not None:
            clauses.append("t.status = ?")
            params.append(str(query.status))
        if query.project:
            clauses.append("t.project_id IN (SELECT id FROM Projects WHERE name = ?)")
            params.append(query.project)
        for tag in query.tags:
            clauses.append(
                "EXISTS (SELECT 1 FROM TaskTags tt JOIN Tags g ON g.id = tt.tag_id"
                " WHERE tt.task_id = t.id AND g.name = ?)"
            )
            params.append(tag)
        for tag in query.exclude_tags:
            clauses.append(
                "NOT EXISTS (SELECT 1 FROM TaskTags tt JOIN Tags g ON g.id = tt.tag_id"
                " WHERE tt.task_id = t.id AND g.name = ?)"
            )
            params.append(tag)
        if query.priority is not None:
            clauses.append("t.priority = ?")
            params.append(str(query.priority))
        if query.due_after is not None:
            clauses.append("t.due_at >= ?")
            params.append(fmt_utc_z(query.due_after))
        if query.due_before is not None:
            clauses.append("t.due_at <= ?")
            params.append(fmt_utc_z(query.due_before))
        if query.overdue:
            clauses.append("t.due_at < ? AND t.status = 'pending'")
            params.append(fmt_utc_z(now or utc_now()))
        if query.series_id is not None:
            clauses.append("t.series_id = ?")
            params.append(query.series_id)
        if not query.include_templates:
            clauses.append("t.id NOT IN (SELECT template_task_id FROM Series)")

        sql = "SELECT t.* FROM Tasks t"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY t.due_at IS NULL, t.due_at, t.created_at, t.id"
        if query.limit:
            sql += " LIMIT ?"
            params.append(query.limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(self, task_id: str, **fields) -> Task:
        unknown = set(fields) - set(TASK_FIELDS) - {"tags"}
        if unknown:
            raise InvalidInputError(f"Cannot update task field(s): {', '.join(sorted(unknown))}")
        tags = fields.pop("tags", None)
        with self.transaction():
            self.get_task(task_id)
            if fields:
                assignments = ", ".join(f"{key} = ?" for key in fields)
                params = [_to_db(key, value) for key, value in fields.items()]
                params += [fmt_utc_z(utc_now()), task_id]
                self.cursor.execute(
                    f"UPDATE Tasks SET {assignments}, updated_at = ? WHERE id = ?",
                    params,
                )
            if tags is not None:
                self.set_task_tags(task_id, tags)
        return self.get_task(task_id)

    def complete_task(self, task_id: str, when: datetime | None = None) -> Task:
        return self.update_task(
            task_id, status=TaskStatus.COMPLETED, completed_at=when or utc_now()
        )

    def cancel_task(self, task_id: str) -> Task:
        return self.update_task(task_id, status=TaskStatus.CANCELLED, completed_at=None)

    def reopen_task(self, task_id: str) -> Task:
        return self.update_task(task_id, status=TaskStatus.PENDING, completed_at=None)

    def delete_task(self, task_id: str):
        task = self.get_task(task_id)
        if self.get_series_by_template(task.id) is not None:
            raise InvalidInputError(
                "This task is the template of a series; delete the series instead"
            )
        self.cursor.execute("DELETE FROM Tasks WHERE id = ?", (task_id,))
        log_msg(f"deleted task {task_id}")

    # --- Tags -----------------------------------------------------------------
    def get_task_tags(self, task_id: str) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT g.name FROM Tags g
            JOIN TaskTags tt ON tt.tag_id = g.id
            WHERE tt.task_id = ?
            ORDER BY g.name
            """,
            (task_id,),
        ).fetchall()
        return [r["name"] for r in rows]

    def set_task_tags(self, task_id: str, tags: Iterable[str]):
        names = sorted({t.strip().lstrip("#") for t in tags if t and t.strip().lstrip("#")})
        with self.transaction():
            self.cursor.execute("DELETE FROM TaskTags WHERE task_id = ?", (task_id,))
            for name in names:
                self.cursor.execute("INSERT OR IGNORE INTO Tags (name) VALUES (?)", (name,))
                self.cursor.execute(
                    """
                    INSERT OR IGNORE INTO TaskTags (task_id, tag_id)
                    SELECT ?, id FROM Tags WHERE name = ?
                    """,
                    (task_id, name),
                )

    def list_tags(self) -> list[tuple[str, int]]:
        rows = self.conn.execute(
            """
            SELECT g.name AS name, COUNT(tt.task_id) AS uses FROM Tags g
            LEFT JOIN TaskTags tt ON tt.tag_id = g.id
            GROUP BY g.id ORDER BY g.name
            """
        ).fetchall()
        return [(r["name"], r["uses"]) for r in rows]

    # --- Dependencies ---------------------------------------------------------
    def get_task_dependencies(self, task_id: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT depends_on_id FROM Dependencies WHERE task_id = ? ORDER BY depends_on_id",
            (task_id,),
        ).fetchall()
        return [r["depends_on_id"] for r in rows]

    def add_dependency(self, task_id: str, depends_on_id: str):
        if task_id == depends_on_id:
            raise CircularDependencyError("A task cannot depend on itself")
        # Walk what depends_on_id already waits for; reaching task_id is a cycle.
        seen = set()
        stack = [depends_on_id]
        while stack:
            current = stack.pop()
            if current == task_id:
                raise CircularDependencyError(
                    f"Task {task_id} is already a prerequisite of {depends_on_id}"
                )
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.get_task_dependencies(current))
        self.get_task(depends_on_id)
        self.cursor.execute(
            "INSERT OR IGNORE INTO Dependencies (task_id, depends_on_id) VALUES (?, ?)",
            (task_id, depends_on_id),
        )

    def remove_dependency(self, task_id: str, depends_on_id: str) -> bool:
        self.cursor.execute(
            "DELETE FROM Dependencies WHERE task_id = ? AND depends_on_id = ?",
            (task_id, depends_on_id),
        )
        return self.cursor.rowcount > 0

    def pending_dependencies(self, task_id: str) -> list[Task]:
        rows = self.conn.execute(
            """
            SELECT t.* FROM Tasks t
            JOIN Dependencies d ON d.depends_on_id = t.id
            WHERE d.task_id = ? AND t.status = 'pending'
            ORDER BY t.name
            """,
            (task_id,),
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    # --- Projects -------------------------------------------------------------
    def add_project(self, name: str, description: str | None = None) -> Project:
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("A project needs a name")
        if self.get_project_by_name(name) is not None:
            raise InvalidInputError(f"Project {name!r} already exists")
        project = Project(id=new_id(), name=name, description=description, created_at=utc_now())
        self.cursor.execute(
            "INSERT INTO Projects (id, name, description, created_at) VALUES (?, ?, ?, ?)",
            (project.id, project.name, project.description, fmt_utc_z(project.created_at)),
        )
        return project

    def get_project_by_name(self, name: str) -> Project | None:
        row = self.conn.execute("SELECT * FROM Projects WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return Project(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            created_at=parse_opt_utc_z(row["created_at"]),
        )

    def find_or_create_project(self, name: str) -> Project:
        return self.get_project_by_name(name.strip()) or self.add_project(name)

    def list_projects(self) -> list[Project]:
        rows = self.conn.execute("SELECT * FROM Projects ORDER BY name").fetchall()
        return [
            Project(
                id=r["id"],
                name=r["name"],
                description=r["description"],
                created_at=parse_opt_utc_z(r["created_at"]),
            )
            for r in rows
        ]

    # --- Series instances -----------------------------------------------------
    def find_instance(self, series_id: str, occurrence_dt: datetime) -> Task | None:
        row = self.conn.execute(
            "SELECT * FROM Tasks WHERE series_id = ? AND occurrence_dt = ?",
            (series_id, fmt_utc_z(occurrence_dt)),
        ).fetchone()
        return self._row_to_task(row) if row is not None else None

    def series_occurrence_keys(self, series_id: str) -> set[datetime]:
        """Original instants that already have an instance row."""
        rows = self.conn.execute(
            "SELECT occurrence_dt FROM Tasks WHERE series_id = ? AND occurrence_dt IS NOT NULL",
            (series_id,),
        ).fetchall()
        return {parse_utc_z(r["occurrence_dt"]) for r in rows}

    def count_upcoming_instances(self, series_id: str, now: datetime) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS n FROM Tasks
            WHERE series_id = ? AND status = 'pending' AND due_at > ?
            """,
            (series_id, fmt_utc_z(now)),
        ).fetchone()
        return row["n"]

    def series_instances(self, series_id: str) -> list[Task]:
        rows = self.conn.execute(
            "SELECT * FROM Tasks WHERE series_id = ? ORDER BY occurrence_dt, due_at",
            (series_id,),
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def relink_instances(self, from_series: str, to_series: str, at_or_after: datetime) -> list[str]:
        """Move instances with occurrence_dt >= at_or_after to another series."""
        cutoff = fmt_utc_z(at_or_after)
        rows = self.conn.execute(
            "SELECT id FROM Tasks WHERE series_id = ? AND occurrence_dt >= ?",
            (from_series, cutoff),
        ).fetchall()
        ids = [r["id"] for r in rows]
        self.cursor.execute(
            """
            UPDATE Tasks SET series_id = ?, updated_at = ?
            WHERE series_id = ? AND occurrence_dt >= ?
            """,
            (to_series, fmt_utc_z(utc_now()), from_series, cutoff),
        )
        return ids

    # --- Series ---------------------------------------------------------------
    def insert_series(self, series: Series) -> Series:
        timestamp = utc_now()
        self.cursor.execute(
            """
            INSERT INTO Series (
                id, template_task_id, rrule, dtstart, timezone, active,
                last_materialized_until, split_from, created_at, updated_at, dtstart_wall
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                series.id,
                series.template_task_id,
                series.rrule,
                fmt_utc_z(series.dtstart),
                series.timezone,
                1 if series.active else 0,
                fmt_opt_utc_z(series.last_materialized_until),
                series.split_from,
                fmt_utc_z(series.created_at or timestamp),
                fmt_utc_z(series.updated_at or timestamp),
                _to_db("dtstart_wall", series.dtstart_wall),
            ),
        )
        return self.get_series(series.id)

    def get_series(self, series_id: str) -> Series:
        row = self.conn.execute("SELECT * FROM Series WHERE id = ?", (series_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Series {series_id} not found")
        return _row_to_series(row)

    def find_series(self, ref: str) -> Series:
        return self.get_series(self._resolve_id("Series", ref, "series"))

    def get_series_by_template(self, template_task_id: str) -> Series | None:
        row = self.conn.execute(
            "SELECT * FROM Series WHERE template_task_id = ?", (template_task_id,)
        ).fetchone()
        return _row_to_series(row) if row is not None else None

    def list_series(self, active_only: bool = False) -> list[Series]:
        sql = "SELECT * FROM Series"
        if active_only:
            sql += " WHERE active = 1"
        sql += " ORDER BY id"
        return [_row_to_series(r) for r in self.conn.execute(sql).fetchall()]

    def active_series(self) -> list[Series]:
        return self.list_series(active_only=True)

    def update_series(self, series_id: str, **fields) -> Series:
        unknown = set(fields) - set(SERIES_FIELDS)
        if unknown:
            raise InvalidInputError(f"Cannot update series field(s): {', '.join(sorted(unknown))}")
        self.get_series(series_id)
        if fields:
            assignments = ", ".join(f"{key} = ?" for key in fields)
            params = [_to_db(key, value) for key, value in fields.items()]
            params += [fmt_utc_z(utc_now()), series_id]
            self.cursor.execute(
                f"UPDATE Series SET {assignments}, updated_at = ? WHERE id = ?",
                params,
            )
        return self.get_series(series_id)

    def delete_series(self, series_id: str) -> int:
        """
        Delete a series, its exceptions, its instances and its template.
        Returns the number of instances removed.
        """
        with self.transaction():
            series = self.get_series(series_id)
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM Tasks WHERE series_id = ?", (series_id,)
            ).fetchone()
            removed = row["n"]
            self.cursor.execute("DELETE FROM SeriesExceptions WHERE series_id = ?", (series_id,))
            self.cursor.execute("DELETE FROM Tasks WHERE series_id = ?", (series_id,))
            self.cursor.execute("DELETE FROM Series WHERE id = ?", (series_id,))
            self.cursor.execute("DELETE FROM Tasks WHERE id = ?", (series.template_task_id,))
        log_msg(f"deleted series {series_id} with {removed} instance(s)")
        return removed

    # --- Exceptions -----------------------------------------------------------
    _EXCEPTION_SELECT = """
        SELECT e.*, t.due_at AS target_due FROM SeriesExceptions e
        LEFT JOIN Tasks t ON t.id = e.task_id
    """

    def upsert_exception(self, exc: SeriesException) -> SeriesException:
        """Insert or replace the exception at (series_id, occurrence_dt)."""
        self.cursor.execute(
            """
            INSERT INTO SeriesExceptions (series_id, occurrence_dt, kind, task_id, notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (series_id, occurrence_dt) DO UPDATE SET
                kind = excluded.kind,
                task_id = excluded.task_id,
                notes = excluded.notes,
                created_at = excluded.created_at
            """,
            (
                exc.series_id,
                fmt_utc_z(exc.occurrence_dt),
                str(exc.kind),
                exc.task_id,
                exc.notes,
                fmt_utc_z(exc.created_at or utc_now()),
            ),
        )
        return self.get_exception(exc.series_id, exc.occurrence_dt)

    def get_exception(self, series_id: str, occurrence_dt: datetime) -> SeriesException | None:
        row = self.conn.execute(
            self._EXCEPTION_SELECT + " WHERE e.series_id = ? AND e.occurrence_dt = ?",
            (series_id, fmt_utc_z(occurrence_dt)),
        ).fetchone()
        return _row_to_exception(row) if row is not None else None

    def list_exceptions(self, series_id: str) -> list[SeriesException]:
        rows = self.conn.execute(
            self._EXCEPTION_SELECT + " WHERE e.series_id = ? ORDER BY e.occurrence_dt",
            (series_id,),
        ).fetchall()
        return [_row_to_exception(r) for r in rows]

    def remove_exception(self, series_id: str, occurrence_dt: datetime) -> bool:
        self.cursor.execute(
            "DELETE FROM SeriesExceptions WHERE series_id = ? AND occurrence_dt = ?",
            (series_id, fmt_utc_z(occurrence_dt)),
        )
        return self.cursor.rowcount > 0

    def remove_exceptions(self, series_id: str, occurrences: Iterable[datetime] | None = None) -> int:
        """Remove the listed exceptions, or all of them when none are listed."""
        if occurrences is None:
            self.cursor.execute("DELETE FROM SeriesExceptions WHERE series_id = ?", (series_id,))
            return self.cursor.rowcount
        removed = 0
        with self.transaction():
            for instant in occurrences:
                removed += int(self.remove_exception(series_id, instant))
        return removed

    def move_exceptions(self, from_series: str, to_series: str, at_or_after: datetime) -> int:
        self.cursor.execute(
            """
            UPDATE SeriesExceptions SET series_id = ?
            WHERE series_id = ? AND occurrence_dt >= ?
            """,
            (to_series, from_series, fmt_utc_z(at_or_after)),
        )
        return self.cursor.rowcount

    # --- Statistics -----------------------------------------------------------
    def series_statistics(self, series_id: str) -> SeriesStatistics:
        series = self.get_series(series_id)
        stats = SeriesStatistics(series_id=series_id, active=series.active)
        for row in self.conn.execute(
            "SELECT status, COUNT(*) AS n FROM Tasks WHERE series_id = ? GROUP BY status",
            (series_id,),
        ).fetchall():
            stats.total_instances += row["n"]
            if row["status"] == "completed":
                stats.completed_instances = row["n"]
            elif row["status"] == "pending":
                stats.pending_instances = row["n"]
            else:
                stats.cancelled_instances = row["n"]
        for row in self.conn.execute(
            "SELECT kind, COUNT(*) AS n FROM SeriesExceptions WHERE series_id = ? GROUP BY kind",
            (series_id,),
        ).fetchall():
            setattr(stats, f"{row['kind']}_count", row["n"])
        row = self.conn.execute(
            "SELECT MIN(due_at) AS first, MAX(due_at) AS last FROM Tasks WHERE series_id = ?",
            (series_id,),
        ).fetchone()
        stats.first_due = parse_opt_utc_z(row["first"])
        stats.last_due = parse_opt_utc_z(row["last"])
        return stats
