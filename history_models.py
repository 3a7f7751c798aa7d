"""
Data models shared by the history synthesizer and its stores.

Subjects are read-only snapshots of a student's current metrics; period
records are the rows the synthesizer writes to the history tables.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, ClassVar

__all__ = [
    "Metric",
    "TrendClass",
    "InsertResult",
    "Subject",
    "GpaRecord",
    "AttendanceRecord",
    "PeriodRecord",
    "GPA_MIN",
    "GPA_MAX",
    "ATTENDANCE_MIN",
    "ATTENDANCE_MAX",
]

GPA_MIN = 0.0
GPA_MAX = 4.0
ATTENDANCE_MIN = 0.0
ATTENDANCE_MAX = 100.0


# ──────────────────────────────────────────────────────────────────────────────
# ENUMS
# ──────────────────────────────────────────────────────────────────────────────

class Metric(str, Enum):
    GPA = "gpa"
    ATTENDANCE = "attendance"

    @property
    def table(self) -> str:
        return {
            Metric.GPA: "student_gpa_history",
            Metric.ATTENDANCE: "student_attendance_history",
        }[self]

    @property
    def period_column(self) -> str:
        return "semester" if self is Metric.GPA else "month"

    @property
    def value_column(self) -> str:
        """Column name of the metric, both on ``students`` and the history table."""
        return "gpa" if self is Metric.GPA else "attendance_percentage"

    @property
    def bounds(self) -> tuple[float, float]:
        if self is Metric.GPA:
            return GPA_MIN, GPA_MAX
        return ATTENDANCE_MIN, ATTENDANCE_MAX


class TrendClass(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class InsertResult(str, Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"

    @property
    def inserted(self) -> bool:
        return self is InsertResult.INSERTED


# ──────────────────────────────────────────────────────────────────────────────
# SUBJECTS
# ──────────────────────────────────────────────────────────────────────────────

def coerce_metric(value: Any) -> float | None:
    """Parse a stored metric; None for missing, non-numeric or NaN values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


@dataclass(frozen=True)
class Subject:
    """A student's current snapshot. Never mutated by the synthesizer."""
    id: Any
    gpa: float | None = None
    attendance_percentage: float | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Subject:
        return cls(
            id=row["id"],
            gpa=coerce_metric(row.get("gpa")),
            attendance_percentage=coerce_metric(row.get("attendance_percentage")),
        )

    def metric_value(self, metric: Metric) -> float | None:
        return self.gpa if metric is Metric.GPA else self.attendance_percentage

    def has_valid(self, metric: Metric) -> bool:
        """True when the metric is numeric and inside its domain."""
        value = coerce_metric(self.metric_value(metric))
        if value is None:
            return False
        low, high = metric.bounds
        return low <= value <= high


# ──────────────────────────────────────────────────────────────────────────────
# PERIOD RECORDS
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GpaRecord:
    """One semester of GPA history."""
    metric: ClassVar[Metric] = Metric.GPA

    student_id: Any
    semester: str
    gpa: float
    recorded_at: str

    @property
    def period(self) -> str:
        return self.semester

    @property
    def value(self) -> float:
        return self.gpa

    @property
    def key(self) -> tuple[Any, str]:
        return self.student_id, self.semester

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AttendanceRecord:
    """One month of attendance history with its school-day breakdown."""
    metric: ClassVar[Metric] = Metric.ATTENDANCE

    student_id: Any
    month: str
    attendance_percentage: float
    total_days: int
    days_present: int
    days_absent: int
    recorded_at: str

    @property
    def period(self) -> str:
        return self.month

    @property
    def value(self) -> float:
        return self.attendance_percentage

    @property
    def key(self) -> tuple[Any, str]:
        return self.student_id, self.month

    @property
    def days_consistent(self) -> bool:
        return self.days_present + self.days_absent == self.total_days

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


PeriodRecord = GpaRecord | AttendanceRecord
