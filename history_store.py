"""
History Store
=============
Persistence for synthesized GPA / attendance history.

Two backends share one interface:

- ``SQLiteHistoryStore``: the local ``mentorlink.db`` file, with an ordered
  SQL migration runner.
- ``SupabaseHistoryStore``: a Supabase project via the REST client.

Both insert with "insert-or-ignore" semantics keyed on
``(student_id, period)`` and report an explicit ``InsertResult`` per row.

Usage:
    store = SQLiteHistoryStore("mentorlink.db")
    store.run_migrations("migrations")
    with store.transaction():
        results = store.insert_many_if_absent(records)
"""

from __future__ import annotations

import logging
import sqlite3
import statistics
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

from supabase import Client, create_client

from history_models import (
    InsertResult,
    Metric,
    PeriodRecord,
    Subject,
    coerce_metric,
)

__all__ = [
    "HistoryStore",
    "SQLiteHistoryStore",
    "SupabaseHistoryStore",
    "HistoryStoreError",
    "StoreUnavailableError",
    "PersistenceError",
    "EXPECTED_TABLES",
]

logger = logging.getLogger(__name__)

EXPECTED_TABLES = ("students", "student_gpa_history", "student_attendance_history")

PAGE_SIZE = 1000  # PostgREST default max rows per response


# ──────────────────────────────────────────────────────────────────────────────
# ERRORS
# ──────────────────────────────────────────────────────────────────────────────

class HistoryStoreError(Exception):
    """Base class for store failures."""


class StoreUnavailableError(HistoryStoreError):
    """Storage cannot be opened or prepared. Fatal for a seeding run."""


class PersistenceError(HistoryStoreError):
    """A write failed for a reason other than an ignored duplicate."""


# ──────────────────────────────────────────────────────────────────────────────
# INTERFACE
# ──────────────────────────────────────────────────────────────────────────────

class HistoryStore(ABC):
    """Persistence collaborator for the history synthesizer."""

    @abstractmethod
    def fetch_subjects(self, metric: Metric) -> list[Subject]:
        """Students whose ``metric`` column is not null, in id order."""

    @abstractmethod
    def insert_if_absent(self, record: PeriodRecord) -> InsertResult:
        ...

    def insert_many_if_absent(self, records: Sequence[PeriodRecord]) -> list[InsertResult]:
        return [self.insert_if_absent(r) for r in records]

    @abstractmethod
    def transaction(self):
        """Context manager: commit on normal exit, roll back on any exception."""

    @abstractmethod
    def add_subject(
        self,
        student_number: str,
        gpa: float | None,
        attendance_percentage: float | None,
    ) -> Any:
        """Insert a student row and return its id."""

    def add_subjects(
        self, students: Sequence[tuple[str, float | None, float | None]],
    ) -> list[Any]:
        """Insert ``(student_number, gpa, attendance_percentage)`` rows; ids in order."""
        return [self.add_subject(*student) for student in students]

    @abstractmethod
    def validation_counts(self, metric: Metric) -> dict[str, int]:
        ...

    @abstractmethod
    def period_averages(self, metric: Metric) -> list[tuple[str, float]]:
        """Mean metric value per period, oldest period first."""

    @abstractmethod
    def history_for(self, metric: Metric, student_id: Any) -> list[dict[str, Any]]:
        ...

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def summarize_rows(metric: Metric, rows: Sequence[dict[str, Any]]) -> dict[str, int]:
    """Validation counts computed client-side from fetched history rows."""
    low, high = metric.bounds
    values = [coerce_metric(r.get(metric.value_column)) for r in rows]
    counts = {
        "null_values": sum(1 for v in values if v is None),
        "out_of_range": sum(1 for v in values if v is not None and not low <= v <= high),
        "total_rows": len(rows),
    }
    if metric is Metric.ATTENDANCE:
        counts["invalid_day_counts"] = sum(
            1 for r in rows
            if r["days_present"] + r["days_absent"] != r["total_days"]
        )
    return counts


def average_by_period(metric: Metric, rows: Sequence[dict[str, Any]]) -> list[tuple[str, float]]:
    values: dict[str, list[float]] = defaultdict(list)
    first_seen: dict[str, str] = {}
    for r in rows:
        period = r[metric.period_column]
        value = coerce_metric(r.get(metric.value_column))
        if value is not None:
            values[period].append(value)
        recorded = str(r.get("recorded_at", ""))
        if period not in first_seen or recorded < first_seen[period]:
            first_seen[period] = recorded
    ordered = sorted(values, key=lambda p: (first_seen[p], p))
    return [(p, statistics.mean(values[p])) for p in ordered]


# ──────────────────────────────────────────────────────────────────────────────
# SQLITE
# ──────────────────────────────────────────────────────────────────────────────

class SQLiteHistoryStore(HistoryStore):
    """
    Local SQLite store.

    The connection runs in autocommit mode; ``transaction()`` issues explicit
    BEGIN / COMMIT / ROLLBACK so each subject's batch is all-or-nothing.
    Foreign keys are enforced.
    """

    def __init__(self, path: str | Path, timeout: float = 5.0):
        self.path = str(path)
        try:
            self._conn = sqlite3.connect(self.path, timeout=timeout, isolation_level=None)
            self._conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open database {self.path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._in_transaction = False

    # ── Schema ────────────────────────────────────────────────────────────

    def run_migrations(self, migrations_dir: str | Path) -> list[str]:
        """Execute every ``*.sql`` file in name order. Returns the files run."""
        directory = Path(migrations_dir)
        try:
            files = sorted(p for p in directory.iterdir() if p.suffix == ".sql")
        except OSError as e:
            raise StoreUnavailableError(
                f"Cannot read migrations directory {directory}: {e}"
            ) from e

        logger.info("Found %d migration files in %s", len(files), directory)
        applied = []
        for path in files:
            try:
                self._conn.executescript(path.read_text(encoding="utf-8"))
            except (OSError, sqlite3.Error) as e:
                raise StoreUnavailableError(f"Migration failed: {path.name}: {e}") from e
            logger.info("Migration applied: %s", path.name)
            applied.append(path.name)

        missing = self.missing_tables()
        if missing:
            logger.warning("Tables still missing after migrations: %s", ", ".join(missing))
        return applied

    def missing_tables(self) -> list[str]:
        rows = self.read_aggregate(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        )
        present = {r["name"] for r in rows}
        return [t for t in EXPECTED_TABLES if t not in present]

    # ── Reads ─────────────────────────────────────────────────────────────

    def read_aggregate(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        try:
            return [dict(r) for r in self._conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise HistoryStoreError(f"Query failed: {e}") from e

    def fetch_subjects(self, metric: Metric) -> list[Subject]:
        try:
            rows = self.read_aggregate(
                "SELECT id, gpa, attendance_percentage FROM students "
                f"WHERE {metric.value_column} IS NOT NULL ORDER BY id"
            )
        except HistoryStoreError as e:
            raise StoreUnavailableError(
                f"Cannot read students from {self.path} (run migrations first?): {e}"
            ) from e
        return [Subject.from_row(r) for r in rows]

    def validation_counts(self, metric: Metric) -> dict[str, int]:
        low, high = metric.bounds
        value = metric.value_column
        row = self.read_aggregate(
            f"""
            SELECT
                SUM(CASE WHEN {value} IS NULL THEN 1 ELSE 0 END) AS null_values,
                SUM(CASE WHEN {value} < ? OR {value} > ? THEN 1 ELSE 0 END) AS out_of_range,
                COUNT(*) AS total_rows
            FROM {metric.table}
            """,
            (low, high),
        )[0]
        counts = {k: int(v or 0) for k, v in row.items()}
        if metric is Metric.ATTENDANCE:
            counts["invalid_day_counts"] = int(self.read_aggregate(
                f"SELECT COUNT(*) AS n FROM {metric.table} "
                "WHERE days_present + days_absent != total_days"
            )[0]["n"])
        return counts

    def period_averages(self, metric: Metric) -> list[tuple[str, float]]:
        period = metric.period_column
        rows = self.read_aggregate(
            f"SELECT {period} AS period, AVG({metric.value_column}) AS average "
            f"FROM {metric.table} GROUP BY {period} "
            f"ORDER BY MIN(recorded_at), {period}"
        )
        return [(r["period"], float(r["average"])) for r in rows]

    def history_for(self, metric: Metric, student_id: Any) -> list[dict[str, Any]]:
        return self.read_aggregate(
            f"SELECT * FROM {metric.table} WHERE student_id = ? "
            "ORDER BY recorded_at",
            (student_id,),
        )

    # ── Writes ────────────────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[SQLiteHistoryStore]:
        if self._in_transaction:
            raise HistoryStoreError("Nested transactions are not supported")
        try:
            self._conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot begin transaction: {e}") from e
        self._in_transaction = True
        try:
            yield self
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise PersistenceError(f"Commit failed: {e}") from e
        except BaseException:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise
        finally:
            self._in_transaction = False

    def insert_if_absent(self, record: PeriodRecord) -> InsertResult:
        row = record.to_row()
        metric = record.metric
        cols = list(row)
        # ON CONFLICT (not OR IGNORE) so CHECK and NOT NULL violations still raise
        sql = (
            f"INSERT INTO {metric.table} ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT (student_id, {metric.period_column}) DO NOTHING"
        )
        try:
            cursor = self._conn.execute(sql, [row[c] for c in cols])
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Insert into {metric.table} failed for {record.key}: {e}"
            ) from e
        return InsertResult.INSERTED if cursor.rowcount > 0 else InsertResult.ALREADY_EXISTS

    def add_subject(
        self,
        student_number: str,
        gpa: float | None,
        attendance_percentage: float | None,
    ) -> int:
        try:
            cursor = self._conn.execute(
                "INSERT INTO students (student_id, gpa, attendance_percentage) "
                "VALUES (?, ?, ?)",
                (student_number, gpa, attendance_percentage),
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot insert student {student_number}: {e}") from e
        return cursor.lastrowid

    def close(self):
        self._conn.close()


# ──────────────────────────────────────────────────────────────────────────────
# SUPABASE
# ──────────────────────────────────────────────────────────────────────────────

class SupabaseHistoryStore(HistoryStore):
    """
    Supabase (PostgREST) store.

    Each ``insert_many_if_absent`` call is a single upsert request with
    ``ignore_duplicates``; PostgREST runs one request in one transaction, so a
    subject's batch is all-or-nothing. Only newly created rows come back in
    the response, which is how inserted rows are told from skipped ones.
    """

    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def connect(cls, url: str, key: str) -> SupabaseHistoryStore:
        if not url or not key:
            raise StoreUnavailableError("Supabase URL and key are required")
        try:
            client = create_client(url, key)
        except Exception as e:
            raise StoreUnavailableError(f"Cannot connect to Supabase at {url}: {e}") from e
        return cls(client)

    def _select_all(self, table: str, columns: str, not_null: str | None = None) -> list[dict]:
        rows: list[dict] = []
        start = 0
        while True:
            query = self.client.table(table).select(columns)
            if not_null:
                query = query.not_.is_(not_null, "null")
            page = query.range(start, start + PAGE_SIZE - 1).execute().data or []
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            start += PAGE_SIZE

    def fetch_subjects(self, metric: Metric) -> list[Subject]:
        try:
            rows = self._select_all(
                "students", "id, gpa, attendance_percentage", not_null=metric.value_column,
            )
        except Exception as e:
            raise StoreUnavailableError(f"Cannot read students from Supabase: {e}") from e
        return [Subject.from_row(r) for r in sorted(rows, key=lambda r: r["id"])]

    @contextmanager
    def transaction(self) -> Iterator[SupabaseHistoryStore]:
        yield self

    def insert_many_if_absent(self, records: Sequence[PeriodRecord]) -> list[InsertResult]:
        if not records:
            return []
        metric = records[0].metric
        if any(r.metric is not metric for r in records):
            raise PersistenceError("A batch must hold records of a single metric")

        period = metric.period_column
        try:
            response = self.client.table(metric.table).upsert(
                [r.to_row() for r in records],
                on_conflict=f"student_id,{period}",
                ignore_duplicates=True,
            ).execute()
        except Exception as e:
            raise PersistenceError(f"Upsert into {metric.table} failed: {e}") from e

        created = {(str(row["student_id"]), row[period]) for row in response.data or []}
        return [
            InsertResult.INSERTED if (str(r.student_id), r.period) in created
            else InsertResult.ALREADY_EXISTS
            for r in records
        ]

    def insert_if_absent(self, record: PeriodRecord) -> InsertResult:
        return self.insert_many_if_absent([record])[0]

    def add_subject(
        self,
        student_number: str,
        gpa: float | None,
        attendance_percentage: float | None,
    ) -> Any:
        return self.add_subjects([(student_number, gpa, attendance_percentage)])[0]

    def add_subjects(
        self, students: Sequence[tuple[str, float | None, float | None]],
    ) -> list[Any]:
        """One insert request for the whole list, so it lands all-or-nothing."""
        if not students:
            return []
        rows = [
            {"student_id": number, "gpa": gpa, "attendance_percentage": attendance}
            for number, gpa, attendance in students
        ]
        try:
            response = self.client.table("students").insert(rows).execute()
        except Exception as e:
            raise PersistenceError(f"Cannot insert {len(rows)} students: {e}") from e
        return [row["id"] for row in response.data]

    def _history_rows(self, metric: Metric) -> list[dict]:
        columns = f"student_id, {metric.period_column}, {metric.value_column}, recorded_at"
        if metric is Metric.ATTENDANCE:
            columns += ", total_days, days_present, days_absent"
        try:
            return self._select_all(metric.table, columns)
        except Exception as e:
            raise HistoryStoreError(f"Cannot read {metric.table}: {e}") from e

    def validation_counts(self, metric: Metric) -> dict[str, int]:
        return summarize_rows(metric, self._history_rows(metric))

    def period_averages(self, metric: Metric) -> list[tuple[str, float]]:
        return average_by_period(metric, self._history_rows(metric))

    def history_for(self, metric: Metric, student_id: Any) -> list[dict[str, Any]]:
        try:
            response = (
                self.client.table(metric.table)
                .select("*")
                .eq("student_id", student_id)
                .order("recorded_at")
                .execute()
            )
        except Exception as e:
            raise HistoryStoreError(f"Cannot read {metric.table}: {e}") from e
        return response.data or []
