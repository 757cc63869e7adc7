"""
DevRunner Database Service

SQLite persistence for projects, development runs, iterations, quality gates,
agent tasks and the append-only run event log.
Uses the Protocol pattern to define the database contract.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from devrunner.models.domain import (
    AgentTaskRun,
    AgentTaskStatus,
    DevelopmentRun,
    IterationRun,
    IterationScope,
    IterationStatus,
    Project,
    ProjectStatus,
    QualityGateRun,
    RunEvent,
)
from devrunner.utils import new_id, utcnow


_PROJECT_COLUMNS = frozenset({
    "name",
    "description",
    "status",
    "business_plan",
    "technical_plan",
    "ux_plan",
    "github_repo_owner",
    "github_repo_name",
    "netlify_site_id",
    "production_url",
    "last_deploy_at",
    "secrets",
})
_RUN_COLUMNS = frozenset({
    "status",
    "current_iteration",
    "total_iterations",
    "worker_sandbox_path",
    "error_summary",
    "started_at",
    "finished_at",
    "canceled_at",
})
_ITERATION_COLUMNS = frozenset({
    "status",
    "gherkin_path",
    "branch_name",
    "attempt_count",
    "started_at",
    "finished_at",
})
_JSON_COLUMNS = frozenset({"business_plan", "technical_plan", "ux_plan", "secrets"})


class DatabaseProtocol(Protocol):
    """Protocol defining the database interface."""

    def init_schema(self) -> None: ...

    # Projects
    def create_project(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        status: str = ProjectStatus.DRAFT,
        business_plan: Optional[Dict[str, Any]] = None,
        technical_plan: Optional[Dict[str, Any]] = None,
        ux_plan: Optional[Dict[str, Any]] = None,
        github_repo_owner: Optional[str] = None,
        github_repo_name: Optional[str] = None,
        netlify_site_id: Optional[str] = None,
        production_url: Optional[str] = None,
        secrets: Optional[Dict[str, Any]] = None,
    ) -> Project: ...

    def get_project(self, project_id: str) -> Project: ...
    def list_projects(self) -> List[Project]: ...
    def update_project(self, project_id: str, **fields: Any) -> Project: ...

    # Development runs
    def create_run(
        self,
        project_id: str,
        *,
        status: str,
        plans_snapshot: Optional[Dict[str, Any]] = None,
    ) -> DevelopmentRun: ...

    def get_run(self, run_id: str) -> DevelopmentRun: ...
    def list_runs(self, project_id: str) -> List[DevelopmentRun]: ...
    def find_active_run(self, project_id: str, statuses: Sequence[str]) -> Optional[DevelopmentRun]: ...
    def update_run(self, run_id: str, **fields: Any) -> DevelopmentRun: ...

    # Iterations
    def create_iterations(self, run_id: str, items: List[Dict[str, Any]]) -> List[IterationRun]: ...
    def get_iteration(self, iteration_id: str) -> IterationRun: ...
    def get_iteration_by_index(self, run_id: str, index: int) -> Optional[IterationRun]: ...
    def list_iterations(self, run_id: str) -> List[IterationRun]: ...
    def update_iteration(self, iteration_id: str, **fields: Any) -> IterationRun: ...

    # Quality gates
    def upsert_quality_gate(
        self,
        iteration_id: str,
        gate_type: str,
        *,
        passed: bool,
        duration_ms: int = 0,
        logs_ref: Optional[str] = None,
        report: Optional[Dict[str, Any]] = None,
    ) -> QualityGateRun: ...

    def list_quality_gates(self, iteration_id: str) -> List[QualityGateRun]: ...

    # Agent tasks
    def create_agent_task(
        self,
        run_id: str,
        agent_name: str,
        input_hash: str,
        *,
        iteration_id: Optional[str] = None,
    ) -> AgentTaskRun: ...

    def complete_agent_task(
        self,
        task_id: str,
        *,
        status: str,
        output: Optional[Dict[str, Any]] = None,
        token_usage: Optional[int] = None,
        cost: Optional[float] = None,
        duration_ms: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> AgentTaskRun: ...

    def get_agent_task(self, task_id: str) -> AgentTaskRun: ...
    def list_agent_tasks(self, run_id: str, *, iteration_id: Optional[str] = None) -> List[AgentTaskRun]: ...

    # Run events
    def append_run_event(
        self,
        run_id: str,
        event_type: str,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        iteration_id: Optional[str] = None,
    ) -> RunEvent: ...

    def list_run_events(
        self,
        run_id: str,
        *,
        after_sequence: int = 0,
        limit: Optional[int] = 200,
        event_types: Optional[List[str]] = None,
    ) -> List[RunEvent]: ...


class SQLiteDatabase:
    """
    SQLite-backed persistence for DevRunner state.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self):
        """Context manager for database transactions."""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _fetchone(self, query: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(query, tuple(params)).fetchone()
        finally:
            conn.close()

    def _fetchall(self, query: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(query, tuple(params)).fetchall()
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Initialize database schema."""
        from devrunner.db.schema import SCHEMA_SQLITE

        with self._transaction() as conn:
            conn.executescript(SCHEMA_SQLITE)

    # Helper methods for JSON and timestamp parsing
    @staticmethod
    def _parse_json(value: Any) -> Optional[Union[dict, list]]:
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _dump_json(value: Any) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, default=str)

    @staticmethod
    def _coerce_ts(value: Any) -> str:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.isoformat()
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return ""
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed.isoformat()
            except ValueError:
                return text
        return str(value) if value else ""

    def _update_row(
        self,
        table: str,
        row_id: str,
        fields: Dict[str, Any],
        allowed: frozenset,
    ) -> None:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unsupported {table} fields: {', '.join(sorted(unknown))}")
        updates = ["updated_at = CURRENT_TIMESTAMP"]
        params: List[Any] = []
        for key, value in fields.items():
            updates.append(f"{key} = ?")
            params.append(self._dump_json(value) if key in _JSON_COLUMNS else value)
        params.append(row_id)
        with self._transaction() as conn:
            conn.execute(f"UPDATE {table} SET {', '.join(updates)} WHERE id = ?", params)

    # Row to model converters
    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            name=row["name"],
            status=row["status"],
            description=row["description"],
            business_plan=self._parse_json(row["business_plan"]),
            technical_plan=self._parse_json(row["technical_plan"]),
            ux_plan=self._parse_json(row["ux_plan"]),
            github_repo_owner=row["github_repo_owner"],
            github_repo_name=row["github_repo_name"],
            netlify_site_id=row["netlify_site_id"],
            production_url=row["production_url"],
            last_deploy_at=row["last_deploy_at"],
            secrets=self._parse_json(row["secrets"]),
            created_at=self._coerce_ts(row["created_at"]),
            updated_at=self._coerce_ts(row["updated_at"]),
        )

    def _row_to_run(self, row: sqlite3.Row) -> DevelopmentRun:
        return DevelopmentRun(
            id=row["id"],
            project_id=row["project_id"],
            status=row["status"],
            current_iteration=row["current_iteration"] or 0,
            total_iterations=row["total_iterations"] or 0,
            plans_snapshot=self._parse_json(row["plans_snapshot"]),
            worker_sandbox_path=row["worker_sandbox_path"],
            error_summary=row["error_summary"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            canceled_at=row["canceled_at"],
            created_at=self._coerce_ts(row["created_at"]),
            updated_at=self._coerce_ts(row["updated_at"]),
        )

    def _row_to_iteration(self, row: sqlite3.Row) -> IterationRun:
        scope = self._parse_json(row["scope"])
        return IterationRun(
            id=row["id"],
            run_id=row["run_id"],
            index=row["iteration_index"],
            name=row["name"],
            status=row["status"],
            scope=IterationScope.from_dict(scope if isinstance(scope, dict) else None),
            gherkin_path=row["gherkin_path"],
            branch_name=row["branch_name"],
            attempt_count=row["attempt_count"] or 0,
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            created_at=self._coerce_ts(row["created_at"]),
            updated_at=self._coerce_ts(row["updated_at"]),
        )

    def _row_to_quality_gate(self, row: sqlite3.Row) -> QualityGateRun:
        return QualityGateRun(
            id=row["id"],
            iteration_id=row["iteration_id"],
            gate_type=row["gate_type"],
            passed=bool(row["passed"]),
            duration_ms=row["duration_ms"] or 0,
            logs_ref=row["logs_ref"],
            report=self._parse_json(row["report"]),
            created_at=self._coerce_ts(row["created_at"]),
            updated_at=self._coerce_ts(row["updated_at"]),
        )

    def _row_to_agent_task(self, row: sqlite3.Row) -> AgentTaskRun:
        return AgentTaskRun(
            id=row["id"],
            run_id=row["run_id"],
            iteration_id=row["iteration_id"],
            agent_name=row["agent_name"],
            input_hash=row["input_hash"],
            status=row["status"],
            output=self._parse_json(row["output"]),
            token_usage=row["token_usage"],
            cost=row["cost"],
            duration_ms=row["duration_ms"],
            error_message=row["error_message"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            created_at=self._coerce_ts(row["created_at"]),
        )

    def _row_to_event(self, row: sqlite3.Row) -> RunEvent:
        payload = self._parse_json(row["payload"])
        return RunEvent(
            id=row["id"],
            run_id=row["run_id"],
            iteration_id=row["iteration_id"],
            sequence=row["sequence"],
            event_type=row["event_type"],
            message=row["message"],
            payload=payload if isinstance(payload, dict) else None,
            created_at=self._coerce_ts(row["created_at"]),
        )

    # Project operations
    def create_project(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        status: str = ProjectStatus.DRAFT,
        business_plan: Optional[Dict[str, Any]] = None,
        technical_plan: Optional[Dict[str, Any]] = None,
        ux_plan: Optional[Dict[str, Any]] = None,
        github_repo_owner: Optional[str] = None,
        github_repo_name: Optional[str] = None,
        netlify_site_id: Optional[str] = None,
        production_url: Optional[str] = None,
        secrets: Optional[Dict[str, Any]] = None,
    ) -> Project:
        project_id = new_id()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO projects (
                    id, name, description, status,
                    business_plan, technical_plan, ux_plan,
                    github_repo_owner, github_repo_name, netlify_site_id,
                    production_url, secrets
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id, name, description, status,
                    self._dump_json(business_plan),
                    self._dump_json(technical_plan),
                    self._dump_json(ux_plan),
                    github_repo_owner, github_repo_name, netlify_site_id,
                    production_url,
                    self._dump_json(secrets),
                ),
            )
        return self.get_project(project_id)

    def get_project(self, project_id: str) -> Project:
        row = self._fetchone("SELECT * FROM projects WHERE id = ?", (project_id,))
        if row is None:
            raise KeyError(f"Project {project_id} not found")
        return self._row_to_project(row)

    def list_projects(self) -> List[Project]:
        rows = self._fetchall("SELECT * FROM projects ORDER BY created_at DESC, name")
        return [self._row_to_project(row) for row in rows]

    def update_project(self, project_id: str, **fields: Any) -> Project:
        """Update project fields. Passing None clears a column."""
        self._update_row("projects", project_id, fields, _PROJECT_COLUMNS)
        return self.get_project(project_id)

    # Development run operations
    def create_run(
        self,
        project_id: str,
        *,
        status: str,
        plans_snapshot: Optional[Dict[str, Any]] = None,
    ) -> DevelopmentRun:
        run_id = new_id()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO development_runs (id, project_id, status, plans_snapshot)
                VALUES (?, ?, ?, ?)
                """,
                (run_id, project_id, status, self._dump_json(plans_snapshot)),
            )
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> DevelopmentRun:
        row = self._fetchone("SELECT * FROM development_runs WHERE id = ?", (run_id,))
        if row is None:
            raise KeyError(f"Development run {run_id} not found")
        return self._row_to_run(row)

    def list_runs(self, project_id: str) -> List[DevelopmentRun]:
        rows = self._fetchall(
            "SELECT * FROM development_runs WHERE project_id = ? ORDER BY created_at DESC, rowid DESC",
            (project_id,),
        )
        return [self._row_to_run(row) for row in rows]

    def find_active_run(self, project_id: str, statuses: Sequence[str]) -> Optional[DevelopmentRun]:
        if not statuses:
            return None
        placeholders = ", ".join("?" for _ in statuses)
        row = self._fetchone(
            f"""
            SELECT * FROM development_runs
            WHERE project_id = ? AND status IN ({placeholders})
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (project_id, *statuses),
        )
        return self._row_to_run(row) if row else None

    def update_run(self, run_id: str, **fields: Any) -> DevelopmentRun:
        """Update mutable run fields. Passing None clears a column."""
        self._update_row("development_runs", run_id, fields, _RUN_COLUMNS)
        return self.get_run(run_id)

    # Iteration operations
    def create_iterations(self, run_id: str, items: List[Dict[str, Any]]) -> List[IterationRun]:
        """
        Create every iteration of a run in a single transaction.

        Each item carries index, name, scope (dict), gherkin_path and branch_name.
        """
        with self._transaction() as conn:
            for item in items:
                conn.execute(
                    """
                    INSERT INTO iteration_runs (
                        id, run_id, iteration_index, name, status,
                        scope, gherkin_path, branch_name, attempt_count
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        new_id(),
                        run_id,
                        int(item["index"]),
                        item["name"],
                        IterationStatus.PENDING,
                        self._dump_json(item.get("scope") or {}),
                        item.get("gherkin_path"),
                        item.get("branch_name"),
                    ),
                )
        return self.list_iterations(run_id)

    def get_iteration(self, iteration_id: str) -> IterationRun:
        row = self._fetchone("SELECT * FROM iteration_runs WHERE id = ?", (iteration_id,))
        if row is None:
            raise KeyError(f"Iteration {iteration_id} not found")
        return self._row_to_iteration(row)

    def get_iteration_by_index(self, run_id: str, index: int) -> Optional[IterationRun]:
        row = self._fetchone(
            "SELECT * FROM iteration_runs WHERE run_id = ? AND iteration_index = ?",
            (run_id, index),
        )
        return self._row_to_iteration(row) if row else None

    def list_iterations(self, run_id: str) -> List[IterationRun]:
        rows = self._fetchall(
            "SELECT * FROM iteration_runs WHERE run_id = ? ORDER BY iteration_index ASC",
            (run_id,),
        )
        return [self._row_to_iteration(row) for row in rows]

    def update_iteration(self, iteration_id: str, **fields: Any) -> IterationRun:
        self._update_row("iteration_runs", iteration_id, fields, _ITERATION_COLUMNS)
        return self.get_iteration(iteration_id)

    # Quality gate operations
    def upsert_quality_gate(
        self,
        iteration_id: str,
        gate_type: str,
        *,
        passed: bool,
        duration_ms: int = 0,
        logs_ref: Optional[str] = None,
        report: Optional[Dict[str, Any]] = None,
    ) -> QualityGateRun:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO quality_gate_runs (
                    id, iteration_id, gate_type, passed, duration_ms, logs_ref, report
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(iteration_id, gate_type) DO UPDATE SET
                    passed = excluded.passed,
                    duration_ms = excluded.duration_ms,
                    logs_ref = excluded.logs_ref,
                    report = excluded.report,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    new_id(),
                    iteration_id,
                    gate_type,
                    1 if passed else 0,
                    int(duration_ms),
                    logs_ref,
                    self._dump_json(report),
                ),
            )
        row = self._fetchone(
            "SELECT * FROM quality_gate_runs WHERE iteration_id = ? AND gate_type = ?",
            (iteration_id, gate_type),
        )
        return self._row_to_quality_gate(row)

    def list_quality_gates(self, iteration_id: str) -> List[QualityGateRun]:
        rows = self._fetchall(
            "SELECT * FROM quality_gate_runs WHERE iteration_id = ? ORDER BY created_at ASC, rowid ASC",
            (iteration_id,),
        )
        return [self._row_to_quality_gate(row) for row in rows]

    # Agent task operations
    def create_agent_task(
        self,
        run_id: str,
        agent_name: str,
        input_hash: str,
        *,
        iteration_id: Optional[str] = None,
    ) -> AgentTaskRun:
        task_id = new_id()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO agent_task_runs (
                    id, run_id, iteration_id, agent_name, input_hash, status, started_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (task_id, run_id, iteration_id, agent_name, input_hash, AgentTaskStatus.RUNNING, utcnow()),
            )
        return self.get_agent_task(task_id)

    def complete_agent_task(
        self,
        task_id: str,
        *,
        status: str,
        output: Optional[Dict[str, Any]] = None,
        token_usage: Optional[int] = None,
        cost: Optional[float] = None,
        duration_ms: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> AgentTaskRun:
        """Close a RUNNING task. A task that is already closed is left untouched."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE agent_task_runs
                SET status = ?, output = ?, token_usage = ?, cost = ?,
                    duration_ms = ?, error_message = ?, finished_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status,
                    self._dump_json(output),
                    token_usage,
                    cost,
                    duration_ms,
                    error_message,
                    utcnow(),
                    task_id,
                    AgentTaskStatus.RUNNING,
                ),
            )
        return self.get_agent_task(task_id)

    def get_agent_task(self, task_id: str) -> AgentTaskRun:
        row = self._fetchone("SELECT * FROM agent_task_runs WHERE id = ?", (task_id,))
        if row is None:
            raise KeyError(f"Agent task {task_id} not found")
        return self._row_to_agent_task(row)

    def list_agent_tasks(self, run_id: str, *, iteration_id: Optional[str] = None) -> List[AgentTaskRun]:
        if iteration_id is None:
            rows = self._fetchall(
                "SELECT * FROM agent_task_runs WHERE run_id = ? ORDER BY created_at ASC, rowid ASC",
                (run_id,),
            )
        else:
            rows = self._fetchall(
                """
                SELECT * FROM agent_task_runs
                WHERE run_id = ? AND iteration_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (run_id, iteration_id),
            )
        return [self._row_to_agent_task(row) for row in rows]

    # Run event operations
    def append_run_event(
        self,
        run_id: str,
        event_type: str,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        iteration_id: Optional[str] = None,
    ) -> RunEvent:
        """
        Append an event with the next per-run sequence number.

        The sequence is computed inside the INSERT itself; UNIQUE(run_id, sequence)
        rejects any duplicate a concurrent writer could produce.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO run_events (run_id, iteration_id, sequence, event_type, message, payload)
                SELECT ?, ?, COALESCE(MAX(sequence), 0) + 1, ?, ?, ?
                FROM run_events WHERE run_id = ?
                """,
                (
                    run_id,
                    iteration_id,
                    event_type,
                    message,
                    self._dump_json(payload),
                    run_id,
                ),
            )
            event_id = cur.lastrowid
        row = self._fetchone("SELECT * FROM run_events WHERE id = ?", (event_id,))
        return self._row_to_event(row)

    def list_run_events(
        self,
        run_id: str,
        *,
        after_sequence: int = 0,
        limit: Optional[int] = 200,
        event_types: Optional[List[str]] = None,
    ) -> List[RunEvent]:
        query = "SELECT * FROM run_events WHERE run_id = ? AND sequence > ?"
        params: List[Any] = [run_id, int(after_sequence)]
        if event_types:
            query += f" AND event_type IN ({', '.join('?' for _ in event_types)})"
            params.extend(event_types)
        query += " ORDER BY sequence ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        return [self._row_to_event(row) for row in self._fetchall(query, params)]


Database = SQLiteDatabase


def get_database(db_path: Optional[Path] = None) -> Database:
    """
    Factory function to create the database instance.

    Args:
        db_path: SQLite database file path

    Returns:
        SQLiteDatabase instance
    """
    if db_path:
        return SQLiteDatabase(db_path)
    return SQLiteDatabase(Path(".devrunner.sqlite"))
