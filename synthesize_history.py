#!/usr/bin/env python3
"""
MentorLink History Synthesizer
=====================================================
Back-fills plausible GPA and attendance history for demo databases:

- GPA per semester, walked backward from each student's current GPA with a
  trend class (improving 60% / stable 25% / declining 15%)
- Attendance per month, walked forward from a jittered base level with
  seasonal multipliers and monthly noise
- The current period always equals the student's real current value
- School-day counts that always add up (present + absent == total)
- Idempotent inserts: re-running never duplicates a (student, period) row
- One all-or-nothing transaction per student; failures are reported, not fatal

Usage:
    python synthesize_history.py
    python synthesize_history.py --db ./mentorlink.db --metric gpa
    python synthesize_history.py --demo-students 50 --seed 42
    python synthesize_history.py --backend supabase --url ... --key ...
"""

from __future__ import annotations

import argparse
import calendar
import logging
import math
import os
import re
import sys
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date
from pathlib import Path
from random import Random
from typing import Any, Sequence

from history_models import (
    ATTENDANCE_MAX,
    GPA_MAX,
    GPA_MIN,
    AttendanceRecord,
    GpaRecord,
    Metric,
    PeriodRecord,
    Subject,
    TrendClass,
    coerce_metric,
)
from history_store import (
    HistoryStore,
    HistoryStoreError,
    PersistenceError,
    SQLiteHistoryStore,
    StoreUnavailableError,
    SupabaseHistoryStore,
)

__all__ = [
    "HistorySynthesizer",
    "SynthesisReport",
    "SubjectFailure",
    "HistoryValidationError",
    "build_gpa_history",
    "build_attendance_history",
    "check_history",
    "classify_trend",
    "draw_trend_class",
    "gpa_step_back",
    "period_date",
    "school_day_breakdown",
    "seasonal_factor",
    "seed_demo_students",
]

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# CONFIGURATION
# ──────────────────────────────────────────────────────────────────────────────

TREND_WEIGHTS: dict[TrendClass, int] = {
    TrendClass.IMPROVING: 60,
    TrendClass.STABLE: 25,
    TrendClass.DECLINING: 15,
}

# Uniform range added to GPA when stepping one semester back in time.
# Improving students were lower before, declining students were higher.
GPA_TREND_DELTAS: dict[TrendClass, tuple[float, float]] = {
    TrendClass.IMPROVING: (-0.15, -0.05),
    TrendClass.STABLE: (-0.05, 0.05),
    TrendClass.DECLINING: (0.05, 0.20),
}

DEFAULT_SEMESTERS = [
    "Fall 2022",
    "Spring 2023",
    "Fall 2023",
    "Spring 2024",
    "Fall 2024",
    "Spring 2025",  # current
]

DEFAULT_MONTHS = [
    "2024-06",
    "2024-07",
    "2024-08",
    "2024-09",
    "2024-10",
    "2024-11",  # current
]

# Month label -> multiplier on base attendance. Unlisted months use 1.0.
DEFAULT_SEASONAL_FACTORS: dict[str, float] = {
    "2024-07": 0.95,  # summer vacation
    "2024-08": 0.95,
    "2024-12": 0.90,  # holidays
}

TERM_END_DAYS: dict[str, tuple[int, int]] = {
    "spring": (5, 15),
    "summer": (8, 15),
    "fall": (12, 15),
}

SCHOOL_DAYS_PER_MONTH = (20, 21, 22)
ATTENDANCE_FLOOR = 45.0
BASE_ATTENDANCE_CAP = 95.0
BASE_ATTENDANCE_JITTER = 2.5
MONTHLY_ATTENDANCE_NOISE = 4.0
PROGRESS_EVERY = 10

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_TERM_LABEL = re.compile(r"^(spring|summer|fall)\s+(\d{4})$", re.IGNORECASE)
_MONTH_LABEL = re.compile(r"^(\d{4})-(\d{2})$")


class HistoryValidationError(Exception):
    """A generated history broke an invariant and must not be persisted."""


# ──────────────────────────────────────────────────────────────────────────────
# REPORTING MODELS
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class SubjectFailure:
    student_id: Any
    reason: str


@dataclass
class SynthesisReport:
    """Run-level counters for one metric."""
    metric: Metric
    periods: list[str]
    subjects_seen: int = 0
    subjects_processed: int = 0
    skipped_invalid: int = 0
    inserted: int = 0
    skipped_existing: int = 0
    failures: list[SubjectFailure] = field(default_factory=list)
    trend_counts: dict[str, int] = field(default_factory=dict)
    sample_student_id: Any = None  # first student whose batch was committed
    generation_time_ms: float = 0.0

    @property
    def failed(self) -> int:
        return len(self.failures)

    def trend_share(self, trend: TrendClass) -> float:
        total = sum(self.trend_counts.values())
        return self.trend_counts.get(trend.value, 0) / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["failed"] = self.failed
        return data


# ──────────────────────────────────────────────────────────────────────────────
# BUSINESS RULES
# ──────────────────────────────────────────────────────────────────────────────

def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def draw_trend_class(rng: Random) -> TrendClass:
    return rng.choices(list(TREND_WEIGHTS), weights=list(TREND_WEIGHTS.values()), k=1)[0]


def gpa_step_back(rng: Random, gpa: float, trend: TrendClass) -> float:
    """GPA one semester earlier than ``gpa`` under ``trend``. Unclamped."""
    low, high = GPA_TREND_DELTAS[trend]
    return gpa + rng.uniform(low, high)


def period_date(label: str) -> str:
    """
    Recorded-at date for a period label.

    ``Fall 2024`` -> 2024-12-15, ``Spring 2025`` -> 2025-05-15,
    ``Summer 2024`` -> 2024-08-15, ``2024-06`` -> 2024-06-30.
    Unrecognized labels fall back to today.
    """
    match = _TERM_LABEL.match(label.strip())
    if match:
        month, day = TERM_END_DAYS[match.group(1).lower()]
        return date(int(match.group(2)), month, day).isoformat()

    match = _MONTH_LABEL.match(label.strip())
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if 1 <= month <= 12:
            last_day = calendar.monthrange(year, month)[1]
            return date(year, month, last_day).isoformat()

    logger.debug("Unrecognized period label %r, using today's date", label)
    return date.today().isoformat()


def seasonal_factor(label: str, factors: dict[str, float]) -> float:
    return factors.get(label, 1.0)


def school_day_breakdown(attendance_pct: float, total_days: int) -> tuple[int, int]:
    """
    (days_present, days_absent) for a month; always sums to ``total_days``.
    Present days round half up, so 50% of 21 days is 11 present.
    """
    present = math.floor(attendance_pct / 100 * total_days + 0.5)
    present = int(clamp(present, 0, total_days))
    return present, total_days - present


def classify_trend(values: Sequence[float]) -> str:
    """Label a chronological series by its mean change per period."""
    if len(values) < 2:
        return "stable"
    per_period = (values[-1] - values[0]) / (len(values) - 1)
    if per_period > 0.05:
        return "improving"
    elif per_period > 0.02:
        return "slightly_improving"
    elif per_period < -0.05:
        return "declining"
    elif per_period < -0.02:
        return "slightly_declining"
    return "stable"


def build_gpa_history(
    student_id: Any,
    current_gpa: float,
    periods: Sequence[str],
    trend: TrendClass,
    rng: Random,
) -> list[GpaRecord]:
    """
    Walk ``periods`` newest to oldest starting at ``current_gpa``.
    Returns records oldest first; the last one carries ``current_gpa`` exactly.
    Note: mutates rng state for sampling.
    """
    newest = len(periods) - 1
    records: list[GpaRecord] = []
    gpa = current_gpa

    for i in range(newest, -1, -1):
        label = periods[i]
        gpa = clamp(gpa, GPA_MIN, GPA_MAX)
        value = current_gpa if i == newest else round(gpa, 2)
        records.append(GpaRecord(
            student_id=student_id,
            semester=label,
            gpa=value,
            recorded_at=period_date(label),
        ))
        if i > 0:
            gpa = gpa_step_back(rng, gpa, trend)

    records.reverse()
    return records


def build_attendance_history(
    student_id: Any,
    current_attendance: float,
    periods: Sequence[str],
    rng: Random,
    seasonal_factors: dict[str, float] | None = None,
) -> list[AttendanceRecord]:
    """
    Walk ``periods`` oldest to newest around a jittered base level.
    The last period is forced to ``current_attendance`` exactly.
    Note: mutates rng state for sampling.
    """
    factors = DEFAULT_SEASONAL_FACTORS if seasonal_factors is None else seasonal_factors
    base = min(
        BASE_ATTENDANCE_CAP,
        current_attendance + rng.uniform(-BASE_ATTENDANCE_JITTER, BASE_ATTENDANCE_JITTER),
    )
    newest = len(periods) - 1
    records: list[AttendanceRecord] = []

    for i, label in enumerate(periods):
        if i == newest:
            pct = current_attendance
        else:
            noise = rng.uniform(-MONTHLY_ATTENDANCE_NOISE, MONTHLY_ATTENDANCE_NOISE)
            pct = round(clamp(
                base * seasonal_factor(label, factors) + noise,
                ATTENDANCE_FLOOR, ATTENDANCE_MAX,
            ), 2)

        total_days = rng.choice(SCHOOL_DAYS_PER_MONTH)
        present, absent = school_day_breakdown(pct, total_days)
        records.append(AttendanceRecord(
            student_id=student_id,
            month=label,
            attendance_percentage=pct,
            total_days=total_days,
            days_present=present,
            days_absent=absent,
            recorded_at=period_date(label),
        ))

    return records


def check_history(
    records: Sequence[PeriodRecord],
    periods: Sequence[str],
    current_value: float,
) -> None:
    """Raise HistoryValidationError unless ``records`` is safe to persist."""
    if [r.period for r in records] != list(periods):
        raise HistoryValidationError("records do not cover the requested periods in order")
    if records[-1].value != current_value:
        raise HistoryValidationError(
            f"anchor {records[-1].value} != current value {current_value}"
        )

    metric = records[0].metric
    if metric is Metric.ATTENDANCE:
        low, high = ATTENDANCE_FLOOR, ATTENDANCE_MAX
    else:
        low, high = metric.bounds
    for r in records[:-1]:
        if not low <= r.value <= high:
            raise HistoryValidationError(f"{r.period}: {r.value} outside [{low}, {high}]")

    for r in records:
        if isinstance(r, AttendanceRecord) and not r.days_consistent:
            raise HistoryValidationError(
                f"{r.period}: {r.days_present} + {r.days_absent} != {r.total_days}"
            )


# ──────────────────────────────────────────────────────────────────────────────
# SYNTHESIZER
# ──────────────────────────────────────────────────────────────────────────────

class HistorySynthesizer:
    """
    Builds and persists history for a batch of subjects.

    Each subject's records are validated and inserted inside one store
    transaction. A persistence or validation failure discards that subject's
    batch and the run moves on; ``StoreUnavailableError`` propagates.
    """

    def __init__(
        self,
        store: HistoryStore,
        rng: Random | None = None,
        seed: int | None = None,
        seasonal_factors: dict[str, float] | None = None,
    ):
        self.store = store
        self.rng = rng if rng is not None else Random(seed)
        self.seasonal_factors = dict(
            DEFAULT_SEASONAL_FACTORS if seasonal_factors is None else seasonal_factors
        )

    # ── Public API ────────────────────────────────────────────────────────

    def synthesize_gpa_history(
        self,
        subjects: Sequence[Subject],
        periods: Sequence[str] = DEFAULT_SEMESTERS,
    ) -> SynthesisReport:
        periods = _check_periods(periods)
        report = SynthesisReport(metric=Metric.GPA, periods=periods)
        report.trend_counts = {t.value: 0 for t in TrendClass}
        start = time.perf_counter()

        for subject, current in self._valid_subjects(subjects, Metric.GPA, report):
            trend = draw_trend_class(self.rng)
            report.trend_counts[trend.value] += 1
            records = build_gpa_history(subject.id, current, periods, trend, self.rng)
            logger.debug("Student %s: %s trend", subject.id, trend.value)
            self._persist(subject, records, current, report)

        report.generation_time_ms = (time.perf_counter() - start) * 1000
        return report

    def synthesize_attendance_history(
        self,
        subjects: Sequence[Subject],
        periods: Sequence[str] = DEFAULT_MONTHS,
    ) -> SynthesisReport:
        periods = _check_periods(periods)
        report = SynthesisReport(metric=Metric.ATTENDANCE, periods=periods)
        start = time.perf_counter()

        for subject, current in self._valid_subjects(subjects, Metric.ATTENDANCE, report):
            records = build_attendance_history(
                subject.id, current, periods, self.rng, self.seasonal_factors,
            )
            self._persist(subject, records, current, report)

        report.generation_time_ms = (time.perf_counter() - start) * 1000
        return report

    def synthesize(self, metric: Metric, periods: Sequence[str] | None = None) -> SynthesisReport:
        """Read subjects from the store and synthesize ``metric`` history."""
        subjects = self.store.fetch_subjects(metric)
        logger.info("Found %d students with %s data", len(subjects), metric.value)
        if metric is Metric.GPA:
            return self.synthesize_gpa_history(subjects, periods or DEFAULT_SEMESTERS)
        return self.synthesize_attendance_history(subjects, periods or DEFAULT_MONTHS)

    # ── Internals ─────────────────────────────────────────────────────────

    def _valid_subjects(self, subjects: Sequence[Subject], metric: Metric, report: SynthesisReport):
        """Yield (subject, current value) pairs, counting input defects."""
        report.subjects_seen = len(subjects)
        for index, subject in enumerate(subjects, start=1):
            if subject.has_valid(metric):
                yield subject, coerce_metric(subject.metric_value(metric))
            else:
                report.skipped_invalid += 1
                logger.info(
                    "Skipping student %s: invalid %s %r",
                    subject.id, metric.value, subject.metric_value(metric),
                )
            if index % PROGRESS_EVERY == 0:
                logger.info("Processed %d/%d students", index, len(subjects))

    def _persist(
        self,
        subject: Subject,
        records: list[PeriodRecord],
        current_value: float,
        report: SynthesisReport,
    ):
        try:
            with self.store.transaction():
                check_history(records, report.periods, current_value)
                results = self.store.insert_many_if_absent(records)
        except (PersistenceError, HistoryValidationError) as e:
            report.failures.append(SubjectFailure(student_id=subject.id, reason=str(e)))
            logger.warning("Student %s: batch rejected: %s", subject.id, e)
            return

        created = sum(1 for r in results if r.inserted)
        report.inserted += created
        report.skipped_existing += len(results) - created
        report.subjects_processed += 1
        if report.sample_student_id is None:
            report.sample_student_id = subject.id


def _check_periods(periods: Sequence[str]) -> list[str]:
    labels = list(periods)
    if not labels:
        raise ValueError("periods must contain at least one label")
    if len(set(labels)) != len(labels):
        raise ValueError(f"periods must be unique, got {labels}")
    return labels


def seed_demo_students(store: HistoryStore, count: int, rng: Random) -> list[Any]:
    """Create ``count`` students with a current GPA and attendance percentage."""
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")
    students = [
        (
            f"S-{uuid.uuid4().hex[:8].upper()}",
            round(rng.uniform(2.0, 4.0), 2),
            round(rng.uniform(70.0, 100.0), 2),
        )
        for _ in range(count)
    ]
    with store.transaction():
        ids = store.add_subjects(students)
    logger.info("Created %d demo students", len(ids))
    return ids


# ──────────────────────────────────────────────────────────────────────────────
# REPORT PRINTER
# ──────────────────────────────────────────────────────────────────────────────

def print_report(report: SynthesisReport, store: HistoryStore):
    """Print the run summary and validation results to stdout."""
    metric = report.metric
    title = "GPA HISTORY" if metric is Metric.GPA else "ATTENDANCE HISTORY"

    print(f"\n{'=' * 72}")
    print(f"  {title} — SEEDING REPORT")
    print(f"{'=' * 72}")
    print(f"  Periods: {report.periods[0]} .. {report.periods[-1]} ({len(report.periods)})")
    print(f"  Generated in {report.generation_time_ms:.0f}ms")

    print(f"\n  Students found:     {report.subjects_seen:,}")
    print(f"  Students seeded:    {report.subjects_processed:,}")
    print(f"  Invalid (skipped):  {report.skipped_invalid:,}")
    print(f"  Failed:             {report.failed:,}")
    print(f"  Records inserted:   {report.inserted:,}")
    print(f"  Already present:    {report.skipped_existing:,}")

    if report.trend_counts:
        total = sum(report.trend_counts.values())
        print(f"\n{'─' * 72}")
        print("  TREND DISTRIBUTION")
        print(f"  {'─' * 60}")
        for trend in TrendClass:
            count = report.trend_counts.get(trend.value, 0)
            share = count / total * 100 if total else 0.0
            print(f"  {trend.value:<12}: {count:>6,} students ({share:.1f}%)")

    if report.failures:
        print(f"\n{'─' * 72}")
        print(f"  FAILED STUDENTS ({report.failed})")
        print(f"  {'─' * 60}")
        for failure in report.failures[:10]:
            print(f"  {failure.student_id!s:<10} {failure.reason}")

    print(f"\n{'─' * 72}")
    print("  VALIDATION")
    print(f"  {'─' * 60}")
    sample_id = report.sample_student_id
    try:
        counts = store.validation_counts(metric)
        averages = store.period_averages(metric)
        history = store.history_for(metric, sample_id) if sample_id is not None else []
    except HistoryStoreError as e:
        print(f"  Validation queries failed: {e}")
        print(f"\n{'=' * 72}\n")
        return

    print(f"  NULL values:          {counts['null_values']:,}")
    print(f"  Out of range:         {counts['out_of_range']:,}")
    if "invalid_day_counts" in counts:
        print(f"  Invalid day counts:   {counts['invalid_day_counts']:,}")
    print(f"  Total rows in table:  {counts['total_rows']:,}")

    if averages:
        print(f"\n  {'Period':<16} {'Average':>10}")
        print(f"  {'─' * 28}")
        for period, avg in averages:
            print(f"  {period:<16} {avg:>10.2f}")

    if history:
        values = [row[metric.value_column] for row in history]
        print(f"\n  Sample (student {sample_id}, reads as {classify_trend(values)}):")
        for row in history:
            line = f"    {row[metric.period_column]:<14} {row[metric.value_column]:>7.2f}"
            if metric is Metric.ATTENDANCE:
                line += f"  ({row['days_present']}/{row['total_days']} days)"
            print(f"{line}  {row['recorded_at']}")

    print(f"\n{'=' * 72}\n")


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def open_store(args: argparse.Namespace) -> HistoryStore:
    if args.backend == "supabase":
        return SupabaseHistoryStore.connect(args.url, args.key)
    store = SQLiteHistoryStore(args.db)
    try:
        if not args.skip_migrations:
            store.run_migrations(args.migrations_dir)
        missing = store.missing_tables()
        if missing:
            raise StoreUnavailableError(
                f"Missing tables in {args.db}: {', '.join(missing)} (run migrations first?)"
            )
    except StoreUnavailableError:
        store.close()
        raise
    return store


def log_level(verbosity: int) -> int:
    """WARNING by default, INFO (progress) with -v, DEBUG with -vv."""
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Seed synthetic GPA and attendance history",
    )
    parser.add_argument(
        "--backend", choices=["sqlite", "supabase"], default="sqlite",
        help="Storage backend",
    )
    parser.add_argument(
        "--db", default=os.environ.get("MENTORLINK_DB", "mentorlink.db"),
        help="SQLite database path (or set MENTORLINK_DB env var)",
    )
    parser.add_argument(
        "--url", default=os.environ.get("SUPABASE_URL", ""),
        help="Supabase project URL (or set SUPABASE_URL env var)",
    )
    parser.add_argument(
        "--key",
        default=os.environ.get("SUPABASE_KEY", os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")),
        help="Supabase API key (or set SUPABASE_KEY env var)",
    )
    parser.add_argument(
        "--metric", choices=["gpa", "attendance", "all"], default="all",
        help="Which history to seed",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument(
        "--migrations-dir", default=str(MIGRATIONS_DIR),
        help="Directory of *.sql migrations (SQLite only)",
    )
    parser.add_argument(
        "--skip-migrations", action="store_true",
        help="Do not run migrations before seeding",
    )
    parser.add_argument(
        "--demo-students", type=int, default=0,
        help="Create N demo students before seeding",
    )
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="-v for progress, -vv for debug logging",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=log_level(args.verbose),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    metrics = list(Metric) if args.metric == "all" else [Metric(args.metric)]
    rng = Random(args.seed)

    try:
        store = open_store(args)
    except StoreUnavailableError as e:
        logger.error("Fatal: %s", e)
        print(f"ERROR: {e}")
        return 1

    with store:
        try:
            if args.demo_students:
                seed_demo_students(store, args.demo_students, rng)
            synthesizer = HistorySynthesizer(store, rng=rng)
            reports = [synthesizer.synthesize(metric) for metric in metrics]
        except (StoreUnavailableError, PersistenceError) as e:
            logger.error("Fatal: %s", e)
            print(f"ERROR: {e}")
            return 1

        for report in reports:
            print_report(report, store)

    return 0


if __name__ == "__main__":
    sys.exit(main())
