from __future__ import annotations

import csv
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

FAILURE_STATUSES = ("Failed", "TimedOut")

_RESULT_COLUMNS = [
    "run_id",
    "recorded_at",
    "account",
    "name",
    "version",
    "repository",
    "phase",
    "status",
    "detail",
    "elapsed",
]


class InstallHistory:
    """SQLite store of installation runs and the outcome of every planned module.

    A run is one CLI invocation against one automation account. Module results
    carry the phase they ran in and the seconds from the start of that phase
    until the module settled.
    """

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._lock, self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS install_runs (
                    run_id TEXT PRIMARY KEY,
                    account TEXT,
                    resource_group TEXT,
                    root_module TEXT,
                    requested_version TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    outcome TEXT,
                    error TEXT
                );
                CREATE TABLE IF NOT EXISTS module_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    recorded_at TEXT,
                    account TEXT,
                    name TEXT COLLATE NOCASE,
                    version TEXT,
                    repository TEXT,
                    phase INTEGER,
                    status TEXT,
                    detail TEXT,
                    elapsed REAL
                );
                CREATE INDEX IF NOT EXISTS idx_module_results_name_account ON module_results(name, account);
                CREATE INDEX IF NOT EXISTS idx_module_results_run ON module_results(run_id);
                CREATE INDEX IF NOT EXISTS idx_install_runs_account ON install_runs(account);
                """
            )

    # Runs

    def start_run(
        self,
        run_id: str,
        *,
        account: Optional[str],
        resource_group: Optional[str],
        root: str,
        requested_version: Optional[str] = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO install_runs
                    (run_id, account, resource_group, root_module, requested_version, started_at, outcome)
                VALUES (?, ?, ?, ?, ?, ?, 'running')
                """,
                (run_id, account, resource_group, root, requested_version, _now()),
            )

    def finish_run(self, run_id: str, outcome: str, *, error: Optional[str] = None) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                "UPDATE install_runs SET finished_at = ?, outcome = ?, error = ? WHERE run_id = ?",
                (_now(), outcome, error, run_id),
            )

    def runs(self, *, limit: int = 20, account: Optional[str] = None) -> List["InstallRun"]:
        query = "SELECT * FROM install_runs"
        params: List[Any] = []
        if account:
            query += " WHERE account = ?"
            params.append(account)
        query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [InstallRun(**dict(row)) for row in conn.execute(query, params)]

    def outcome_counts(self, *, account: Optional[str] = None) -> Dict[str, int]:
        query = "SELECT outcome, COUNT(*) AS runs FROM install_runs"
        params: List[Any] = []
        if account:
            query += " WHERE account = ?"
            params.append(account)
        query += " GROUP BY outcome"
        with self._connect() as conn:
            return {row["outcome"]: row["runs"] for row in conn.execute(query, params)}

    def phase_durations(self, run_id: str) -> List["PhaseTiming"]:
        """Per phase of a run: how many modules it held and how long its slowest module took."""
        query = """
            SELECT phase, COUNT(*) AS modules, MAX(elapsed) AS seconds
            FROM module_results
            WHERE run_id = ? AND phase IS NOT NULL
            GROUP BY phase
            ORDER BY phase DESC
        """
        with self._connect() as conn:
            return [PhaseTiming(**dict(row)) for row in conn.execute(query, (run_id,))]

    # Module results

    def record_result(
        self,
        *,
        run_id: str,
        name: str,
        version: str,
        status: str,
        account: Optional[str] = None,
        repository: Optional[str] = None,
        phase: Optional[int] = None,
        detail: Optional[str] = None,
        elapsed: Optional[float] = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"INSERT INTO module_results ({', '.join(_RESULT_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _RESULT_COLUMNS)})",
                (run_id, _now(), account, name, version, repository, phase, status, detail, elapsed),
            )

    def recent_results(
        self, *, limit: int = 20, status: Optional[str] = None, module: Optional[str] = None
    ) -> List["ModuleResult"]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if module:
            clauses.append("name = ?")
            params.append(module)
        query = "SELECT * FROM module_results"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [_result(row) for row in conn.execute(query, params)]

    def latest_result(
        self, name: str, version: Optional[str] = None, *, account: Optional[str] = None
    ) -> Optional["ModuleResult"]:
        query = "SELECT * FROM module_results WHERE name = ?"
        params: List[Any] = [name]
        if version:
            query += " AND version = ?"
            params.append(version)
        if account:
            query += " AND account = ?"
            params.append(account)
        query += " ORDER BY id DESC LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return _result(row) if row else None

    def installed_version(self, name: str, account: str) -> Optional[str]:
        """Version of the module most recently installed successfully into an account."""
        result = self._last_success(name, account)
        return result.version if result else None

    def _last_success(self, name: str, account: Optional[str]) -> Optional["ModuleResult"]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM module_results
                WHERE name = ? AND account IS ? AND status = 'Succeeded'
                ORDER BY id DESC LIMIT 1
                """,
                (name, account),
            ).fetchone()
        return _result(row) if row else None

    def failing_modules(
        self,
        *,
        limit: int = 10,
        account: Optional[str] = None,
        statuses: Iterable[str] = FAILURE_STATUSES,
    ) -> List["FailureStat"]:
        statuses = list(statuses)
        query = f"""
            SELECT name, COUNT(*) AS failures, MAX(id) AS last_id, detail AS last_detail
            FROM module_results
            WHERE status IN ({','.join('?' for _ in statuses)})
        """
        params: List[Any] = list(statuses)
        if account:
            query += " AND account = ?"
            params.append(account)
        # SQLite fills the bare detail column from the row holding MAX(id).
        query += " GROUP BY name ORDER BY failures DESC, last_id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [FailureStat(name=row["name"], failures=row["failures"], last_detail=row["last_detail"]) for row in rows]

    def module_summary(self, name: str, *, account: Optional[str] = None) -> "ModuleSummary":
        query = "SELECT status, COUNT(*) AS total FROM module_results WHERE name = ?"
        params: List[Any] = [name]
        if account:
            query += " AND account = ?"
            params.append(account)
        query += " GROUP BY status"
        with self._connect() as conn:
            counts = {row["status"]: row["total"] for row in conn.execute(query, params)}
            installed_rows = conn.execute(
                """
                SELECT account, version FROM module_results
                WHERE name = ? AND status = 'Succeeded'
                ORDER BY id
                """,
                (name,),
            ).fetchall()
        installed = {row["account"] or "": row["version"] for row in installed_rows}
        if account:
            installed = {key: value for key, value in installed.items() if key == account}
        return ModuleSummary(
            name=name,
            status_counts=counts,
            installed_versions=installed,
            latest=self.latest_result(name, account=account),
        )

    def export_csv(self, path: Path, *, run_id: Optional[str] = None) -> int:
        """Write module results (optionally one run's) joined with their run's root and outcome."""
        query = f"""
            SELECT {', '.join('r.' + column for column in _RESULT_COLUMNS)},
                   runs.root_module, runs.outcome AS run_outcome
            FROM module_results r LEFT JOIN install_runs runs ON runs.run_id = r.run_id
        """
        params: List[Any] = []
        if run_id:
            query += " WHERE r.run_id = ?"
            params.append(run_id)
        query += " ORDER BY r.id"
        with self._connect() as conn:
            rows = [dict(row) for row in conn.execute(query, params)]
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as fh:
            writer = csv.DictWriter(fh, fieldnames=_RESULT_COLUMNS + ["root_module", "run_outcome"])
            writer.writeheader()
            writer.writerows(rows)
        return len(rows)


@dataclass
class InstallRun:
    run_id: str
    account: Optional[str]
    resource_group: Optional[str]
    root_module: str
    requested_version: Optional[str]
    started_at: str
    finished_at: Optional[str]
    outcome: str
    error: Optional[str]


@dataclass
class ModuleResult:
    run_id: str
    recorded_at: str
    account: Optional[str]
    name: str
    version: str
    repository: Optional[str]
    phase: Optional[int]
    status: str
    detail: Optional[str]
    elapsed: Optional[float]


@dataclass
class PhaseTiming:
    phase: int
    modules: int
    seconds: Optional[float]


@dataclass
class FailureStat:
    name: str
    failures: int
    last_detail: Optional[str] = None


@dataclass
class ModuleSummary:
    name: str
    status_counts: Dict[str, int]
    installed_versions: Dict[str, str] = field(default_factory=dict)
    latest: Optional[ModuleResult] = None


def _result(row: sqlite3.Row) -> ModuleResult:
    return ModuleResult(**{column: row[column] for column in _RESULT_COLUMNS})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
