"""Tests for the GPA / attendance history synthesizer.

Covers pure functions, the deterministic midpoint examples, per-student
transaction semantics, idempotent re-runs, and the CLI entry point.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from pathlib import Path
from random import Random

import pytest

import synthesize_history
from history_models import AttendanceRecord, GpaRecord, Metric, Subject, TrendClass
from history_store import SQLiteHistoryStore, StoreUnavailableError
from synthesize_history import (
    DEFAULT_MONTHS,
    DEFAULT_SEMESTERS,
    HistorySynthesizer,
    HistoryValidationError,
    build_attendance_history,
    build_gpa_history,
    check_history,
    classify_trend,
    draw_trend_class,
    gpa_step_back,
    log_level,
    main,
    period_date,
    school_day_breakdown,
    seasonal_factor,
    seed_demo_students,
)

MIGRATIONS = Path(__file__).resolve().parent.parent / "migrations"


class MidpointRandom(Random):
    """Every uniform draw lands on the middle of its range."""

    def random(self):
        return 0.5

    def choice(self, seq):
        return seq[len(seq) // 2]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def rng() -> Random:
    return Random(42)


@pytest.fixture
def store():
    s = SQLiteHistoryStore(":memory:")
    s.run_migrations(MIGRATIONS)
    yield s
    s.close()


@pytest.fixture
def seeded_store(store):
    seed_demo_students(store, 20, Random(7))
    return store


# ---------------------------------------------------------------------------
# Pure function: period_date
# ---------------------------------------------------------------------------

class TestPeriodDate:
    @pytest.mark.parametrize("label,expected", [
        ("Fall 2022", "2022-12-15"),
        ("Spring 2025", "2025-05-15"),
        ("Summer 2024", "2024-08-15"),
        ("fall 2023", "2023-12-15"),
        ("2024-06", "2024-06-30"),
        ("2024-07", "2024-07-31"),
        ("2024-02", "2024-02-29"),
        ("2023-02", "2023-02-28"),
    ])
    def test_known_labels(self, label, expected):
        assert period_date(label) == expected

    @pytest.mark.parametrize("label", ["Q3 2024", "2024-13", "", "Winter"])
    def test_unknown_label_falls_back_to_today(self, label):
        assert period_date(label) == date.today().isoformat()


# ---------------------------------------------------------------------------
# Pure functions: seasonal_factor / school_day_breakdown
# ---------------------------------------------------------------------------

class TestSeasonalFactor:
    def test_listed_month(self):
        assert seasonal_factor("2024-07", {"2024-07": 0.95}) == 0.95

    def test_unlisted_month_is_neutral(self):
        assert seasonal_factor("2024-09", {"2024-07": 0.95}) == 1.0

    def test_empty_table(self):
        assert seasonal_factor("2024-12", {}) == 1.0


class TestSchoolDayBreakdown:
    @pytest.mark.parametrize("pct,total,expected", [
        (85.5, 21, (18, 3)),
        (100.0, 20, (20, 0)),
        (0.0, 22, (0, 22)),
        (45.0, 22, (10, 12)),
        (90.0, 21, (19, 2)),
        (50.0, 21, (11, 10)),
        (12.5, 20, (3, 17)),
    ])
    def test_breakdown(self, pct, total, expected):
        assert school_day_breakdown(pct, total) == expected

    def test_always_adds_up(self, rng):
        for _ in range(500):
            pct = rng.uniform(0, 100)
            total = rng.choice((20, 21, 22))
            present, absent = school_day_breakdown(pct, total)
            assert present + absent == total
            assert 0 <= present <= total


# ---------------------------------------------------------------------------
# Trend classes
# ---------------------------------------------------------------------------

class TestDrawTrendClass:
    def test_distribution_matches_weights(self):
        rng = Random(2024)
        draws = [draw_trend_class(rng) for _ in range(1000)]
        share = {t: draws.count(t) / len(draws) for t in TrendClass}
        assert abs(share[TrendClass.IMPROVING] - 0.60) <= 0.05
        assert abs(share[TrendClass.STABLE] - 0.25) <= 0.05
        assert abs(share[TrendClass.DECLINING] - 0.15) <= 0.05

    def test_deterministic_with_seed(self):
        a = [draw_trend_class(Random(9)) for _ in range(5)]
        b = [draw_trend_class(Random(9)) for _ in range(5)]
        assert a == b


class TestGpaStepBack:
    @pytest.mark.parametrize("trend,low,high", [
        (TrendClass.IMPROVING, -0.15, -0.05),
        (TrendClass.STABLE, -0.05, 0.05),
        (TrendClass.DECLINING, 0.05, 0.20),
    ])
    def test_delta_within_range(self, rng, trend, low, high):
        for _ in range(200):
            delta = gpa_step_back(rng, 3.0, trend) - 3.0
            assert low - 1e-9 <= delta <= high + 1e-9

    def test_midpoint_deltas(self):
        rng = MidpointRandom()
        assert gpa_step_back(rng, 3.0, TrendClass.IMPROVING) == pytest.approx(2.90)
        assert gpa_step_back(rng, 3.0, TrendClass.STABLE) == pytest.approx(3.0)
        assert gpa_step_back(rng, 3.0, TrendClass.DECLINING) == pytest.approx(3.125)


class TestClassifyTrend:
    @pytest.mark.parametrize("values,expected", [
        ([3.4, 3.5, 3.6], "improving"),
        ([3.0, 3.03, 3.06], "slightly_improving"),
        ([3.0, 3.0, 3.0], "stable"),
        ([3.06, 3.03, 3.0], "slightly_declining"),
        ([3.6, 3.4, 3.2], "declining"),
        ([3.2], "stable"),
        ([], "stable"),
    ])
    def test_classify(self, values, expected):
        assert classify_trend(values) == expected


# ---------------------------------------------------------------------------
# build_gpa_history
# ---------------------------------------------------------------------------

class TestBuildGpaHistory:
    def test_improving_midpoint_example(self):
        records = build_gpa_history(
            1, 3.60, ["P1", "P2", "P3"], TrendClass.IMPROVING, MidpointRandom(),
        )
        gpas = [r.gpa for r in records]
        assert [r.semester for r in records] == ["P1", "P2", "P3"]
        assert gpas == pytest.approx([3.40, 3.50, 3.60])
        assert gpas[0] <= gpas[1] <= gpas[2]

    def test_anchor_is_exact(self, rng):
        records = build_gpa_history(1, 3.456, DEFAULT_SEMESTERS, TrendClass.STABLE, rng)
        assert records[-1].gpa == 3.456
        assert records[-1].semester == "Spring 2025"

    def test_non_anchor_values_rounded(self, rng):
        records = build_gpa_history(1, 3.456, DEFAULT_SEMESTERS, TrendClass.STABLE, rng)
        for r in records[:-1]:
            assert r.gpa == round(r.gpa, 2)

    def test_one_record_per_period_oldest_first(self, rng):
        records = build_gpa_history(7, 2.5, DEFAULT_SEMESTERS, TrendClass.DECLINING, rng)
        assert len(records) == len(DEFAULT_SEMESTERS)
        assert [r.semester for r in records] == DEFAULT_SEMESTERS
        dates = [r.recorded_at for r in records]
        assert dates == sorted(dates)
        assert all(r.student_id == 7 for r in records)

    def test_declining_midpoint_is_monotonic(self):
        records = build_gpa_history(
            1, 2.0, ["P1", "P2", "P3"], TrendClass.DECLINING, MidpointRandom(),
        )
        gpas = [r.gpa for r in records]
        assert gpas[0] >= gpas[1] >= gpas[2]

    @pytest.mark.parametrize("current,trend", [
        (0.05, TrendClass.IMPROVING),
        (3.95, TrendClass.DECLINING),
        (0.0, TrendClass.STABLE),
        (4.0, TrendClass.STABLE),
    ])
    def test_clamped_to_domain(self, current, trend):
        rng = Random(3)
        for _ in range(50):
            periods = [f"P{i}" for i in range(12)]
            for r in build_gpa_history(1, current, periods, trend, rng):
                assert 0.0 <= r.gpa <= 4.0

    def test_single_period(self, rng):
        records = build_gpa_history(1, 3.1, ["Spring 2025"], TrendClass.IMPROVING, rng)
        assert len(records) == 1
        assert records[0].gpa == 3.1
        assert records[0].recorded_at == "2025-05-15"


# ---------------------------------------------------------------------------
# build_attendance_history
# ---------------------------------------------------------------------------

class TestBuildAttendanceHistory:
    def test_seasonal_midpoint_example(self):
        records = build_attendance_history(
            1, 90.0, ["2024-07", "2024-11"], MidpointRandom(),
            {"2024-07": 0.95},
        )
        july = records[0]
        assert july.attendance_percentage == 85.5
        assert july.total_days == 21
        assert july.days_present == 18
        assert july.days_absent == 3

    def test_regular_month_midpoint(self):
        records = build_attendance_history(1, 90.0, ["2024-06", "2024-11"], MidpointRandom())
        assert records[0].attendance_percentage == 90.0
        assert (records[0].days_present, records[0].days_absent) == (19, 2)

    def test_holiday_month(self):
        records = build_attendance_history(1, 90.0, ["2024-12", "2025-01"], MidpointRandom())
        assert records[0].attendance_percentage == 81.0

    def test_empty_seasonal_table(self):
        records = build_attendance_history(1, 90.0, ["2024-07", "2024-11"], MidpointRandom(), {})
        assert records[0].attendance_percentage == 90.0

    def test_base_capped_at_95(self):
        records = build_attendance_history(1, 99.0, ["2024-06", "2024-11"], MidpointRandom())
        assert records[0].attendance_percentage == 95.0
        assert records[-1].attendance_percentage == 99.0

    def test_anchor_is_exact_even_below_floor(self, rng):
        records = build_attendance_history(1, 30.0, DEFAULT_MONTHS, rng)
        assert records[-1].attendance_percentage == 30.0
        assert records[-1].month == "2024-11"
        assert all(r.attendance_percentage >= 45.0 for r in records[:-1])

    def test_bounds_and_additive_invariant(self):
        rng = Random(11)
        for current in (45.0, 60.0, 75.5, 88.0, 100.0):
            for _ in range(40):
                records = build_attendance_history(1, current, DEFAULT_MONTHS, rng)
                for r in records:
                    assert r.days_present + r.days_absent == r.total_days
                    assert r.total_days in (20, 21, 22)
                    assert r.days_present == math.floor(
                        r.attendance_percentage / 100 * r.total_days + 0.5
                    )
                for r in records[:-1]:
                    assert 45.0 <= r.attendance_percentage <= 100.0

    def test_month_end_dates(self, rng):
        records = build_attendance_history(1, 80.0, DEFAULT_MONTHS, rng)
        assert [r.recorded_at for r in records] == [
            "2024-06-30", "2024-07-31", "2024-08-31",
            "2024-09-30", "2024-10-31", "2024-11-30",
        ]


# ---------------------------------------------------------------------------
# check_history
# ---------------------------------------------------------------------------

class TestCheckHistory:
    def test_valid_history_passes(self, rng):
        records = build_attendance_history(1, 80.0, DEFAULT_MONTHS, rng)
        check_history(records, DEFAULT_MONTHS, 80.0)

    def test_wrong_anchor(self):
        records = [GpaRecord(1, "P1", 3.0, "2024-01-01"), GpaRecord(1, "P2", 3.1, "2024-06-01")]
        with pytest.raises(HistoryValidationError, match="anchor"):
            check_history(records, ["P1", "P2"], 3.2)

    def test_out_of_range_value(self):
        records = [GpaRecord(1, "P1", 4.3, "2024-01-01"), GpaRecord(1, "P2", 3.9, "2024-06-01")]
        with pytest.raises(HistoryValidationError, match="outside"):
            check_history(records, ["P1", "P2"], 3.9)

    def test_attendance_below_floor(self):
        records = [
            AttendanceRecord(1, "2024-06", 40.0, 20, 8, 12, "2024-06-30"),
            AttendanceRecord(1, "2024-07", 80.0, 20, 16, 4, "2024-07-31"),
        ]
        with pytest.raises(HistoryValidationError, match="outside"):
            check_history(records, ["2024-06", "2024-07"], 80.0)

    def test_inconsistent_days(self):
        records = [AttendanceRecord(1, "2024-06", 80.0, 20, 16, 5, "2024-06-30")]
        with pytest.raises(HistoryValidationError, match="!="):
            check_history(records, ["2024-06"], 80.0)

    def test_period_mismatch(self):
        records = [GpaRecord(1, "P2", 3.0, "x"), GpaRecord(1, "P1", 3.0, "x")]
        with pytest.raises(HistoryValidationError, match="periods"):
            check_history(records, ["P1", "P2"], 3.0)


# ---------------------------------------------------------------------------
# HistorySynthesizer against a SQLite store
# ---------------------------------------------------------------------------

class TestSynthesizer:
    def test_gpa_run_inserts_every_period(self, seeded_store):
        report = HistorySynthesizer(seeded_store, seed=1).synthesize(Metric.GPA)
        assert report.subjects_seen == 20
        assert report.subjects_processed == 20
        assert report.inserted == 20 * len(DEFAULT_SEMESTERS)
        assert report.skipped_existing == 0
        assert report.failed == 0
        assert sum(report.trend_counts.values()) == 20
        assert seeded_store.validation_counts(Metric.GPA) == {
            "null_values": 0, "out_of_range": 0, "total_rows": 120,
        }

    def test_attendance_run_passes_validation(self, seeded_store):
        report = HistorySynthesizer(seeded_store, seed=1).synthesize(Metric.ATTENDANCE)
        assert report.inserted == 20 * len(DEFAULT_MONTHS)
        assert report.trend_counts == {}
        counts = seeded_store.validation_counts(Metric.ATTENDANCE)
        assert counts["invalid_day_counts"] == 0
        assert counts["out_of_range"] == 0
        assert counts["total_rows"] == 120

    @pytest.mark.parametrize("metric", list(Metric))
    def test_rerun_is_idempotent(self, seeded_store, metric):
        first = HistorySynthesizer(seeded_store, seed=1).synthesize(metric)
        second = HistorySynthesizer(seeded_store, seed=2).synthesize(metric)
        assert second.inserted == 0
        assert second.skipped_existing == first.inserted
        assert seeded_store.validation_counts(metric)["total_rows"] == first.inserted

    def test_persisted_anchor_matches_current(self, seeded_store):
        subjects = seeded_store.fetch_subjects(Metric.GPA)
        HistorySynthesizer(seeded_store, seed=5).synthesize_gpa_history(subjects)
        for subject in subjects:
            history = seeded_store.history_for(Metric.GPA, subject.id)
            assert history[-1]["semester"] == "Spring 2025"
            assert history[-1]["gpa"] == subject.gpa

    def test_invalid_subjects_are_skipped(self, store):
        sid = store.add_subject("S-OK", 3.2, 90.0)
        subjects = [
            Subject(id=sid, gpa=3.2),
            Subject(id=900, gpa=None),
            Subject(id=901, gpa="abc"),
            Subject(id=902, gpa=5.2),
            Subject(id=903, gpa=-0.1),
        ]
        report = HistorySynthesizer(store, seed=1).synthesize_gpa_history(subjects)
        assert report.skipped_invalid == 4
        assert report.subjects_processed == 1
        assert report.failed == 0

    def test_numeric_string_metric_is_accepted(self, store):
        sid = store.add_subject("S-STR", 3.2, 90.0)
        report = HistorySynthesizer(store, seed=1).synthesize_gpa_history(
            [Subject(id=sid, gpa="3.2")], ["Fall 2024", "Spring 2025"],
        )
        assert report.inserted == 2
        assert store.history_for(Metric.GPA, sid)[-1]["gpa"] == 3.2

    def test_persistence_failure_is_isolated(self, store):
        sid = store.add_subject("S-1", 3.0, 85.0)
        subjects = [Subject(id=9999, gpa=3.0), Subject(id=sid, gpa=3.0)]
        report = HistorySynthesizer(store, seed=1).synthesize_gpa_history(subjects)
        assert report.failed == 1
        assert report.failures[0].student_id == 9999
        assert report.subjects_processed == 1
        assert report.inserted == len(DEFAULT_SEMESTERS)
        assert store.history_for(Metric.GPA, 9999) == []

    def test_validation_failure_writes_nothing(self, seeded_store, monkeypatch):
        def reject(records, periods, current):
            raise HistoryValidationError("rejected")

        monkeypatch.setattr(synthesize_history, "check_history", reject)
        report = HistorySynthesizer(seeded_store, seed=1).synthesize(Metric.GPA)
        assert report.failed == 20
        assert report.inserted == 0
        assert seeded_store.validation_counts(Metric.GPA)["total_rows"] == 0

    def test_trend_distribution_over_population(self, store):
        seed_demo_students(store, 1000, Random(1))
        report = HistorySynthesizer(store, seed=123).synthesize(Metric.GPA, ["Spring 2025"])
        assert report.subjects_processed == 1000
        assert abs(report.trend_share(TrendClass.IMPROVING) - 0.60) <= 0.05
        assert abs(report.trend_share(TrendClass.STABLE) - 0.25) <= 0.05
        assert abs(report.trend_share(TrendClass.DECLINING) - 0.15) <= 0.05

    def test_missing_schema_is_fatal(self):
        bare = SQLiteHistoryStore(":memory:")
        with pytest.raises(StoreUnavailableError):
            HistorySynthesizer(bare, seed=1).synthesize(Metric.GPA)
        bare.close()

    @pytest.mark.parametrize("periods", [[], ["Fall 2024", "Fall 2024"]])
    def test_bad_periods_raise(self, store, periods):
        with pytest.raises(ValueError, match="periods"):
            HistorySynthesizer(store, seed=1).synthesize_gpa_history([], periods)

    def test_deterministic_with_seed(self, seeded_store):
        subjects = seeded_store.fetch_subjects(Metric.GPA)
        a = HistorySynthesizer(seeded_store, seed=77)
        b = HistorySynthesizer(seeded_store, seed=77)
        for subject in subjects[:5]:
            trend_a = draw_trend_class(a.rng)
            trend_b = draw_trend_class(b.rng)
            assert trend_a == trend_b
            assert build_gpa_history(subject.id, subject.gpa, DEFAULT_SEMESTERS, trend_a, a.rng) == \
                build_gpa_history(subject.id, subject.gpa, DEFAULT_SEMESTERS, trend_b, b.rng)


class TestSeedDemoStudents:
    def test_creates_students_in_range(self, store):
        ids = seed_demo_students(store, 25, Random(4))
        assert len(ids) == 25
        subjects = store.fetch_subjects(Metric.GPA)
        assert len(subjects) == 25
        assert all(2.0 <= s.gpa <= 4.0 for s in subjects)
        assert all(70.0 <= s.attendance_percentage <= 100.0 for s in subjects)

    def test_zero_count_raises(self, store):
        with pytest.raises(ValueError, match="count"):
            seed_demo_students(store, 0, Random(4))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestMain:
    def test_full_run(self, tmp_path, capsys):
        db = tmp_path / "mentorlink.db"
        code = main(["--db", str(db), "--demo-students", "5", "--seed", "1"])
        out = capsys.readouterr().out
        assert code == 0
        assert "GPA HISTORY" in out
        assert "ATTENDANCE HISTORY" in out
        assert "Records inserted:   30" in out
        assert "Invalid day counts:   0" in out

    def test_rerun_inserts_nothing(self, tmp_path, capsys):
        db = tmp_path / "mentorlink.db"
        main(["--db", str(db), "--demo-students", "3", "--seed", "1", "--metric", "gpa"])
        capsys.readouterr()
        code = main(["--db", str(db), "--metric", "gpa"])
        out = capsys.readouterr().out
        assert code == 0
        assert "Records inserted:   0" in out
        assert "Already present:    18" in out

    def test_unopenable_database_exits_nonzero(self, tmp_path, capsys):
        code = main(["--db", str(tmp_path / "missing" / "dir" / "x.db")])
        out = capsys.readouterr().out
        assert code == 1
        assert "ERROR" in out
        assert "SEEDING REPORT" not in out

    def test_missing_migrations_dir_exits_nonzero(self, tmp_path, capsys):
        code = main([
            "--db", str(tmp_path / "m.db"),
            "--migrations-dir", str(tmp_path / "nope"),
        ])
        assert code == 1
        assert "SEEDING REPORT" not in capsys.readouterr().out

    def test_skip_migrations_on_empty_db_is_fatal(self, tmp_path, capsys):
        code = main(["--db", str(tmp_path / "m.db"), "--skip-migrations"])
        assert code == 1
        assert "run migrations first" in capsys.readouterr().out

    def test_students_without_history_tables_is_fatal(self, tmp_path, capsys):
        students_only = tmp_path / "migrations"
        students_only.mkdir()
        (students_only / "001_create_students.sql").write_text(
            (MIGRATIONS / "001_create_students.sql").read_text()
        )
        db = tmp_path / "m.db"
        with SQLiteHistoryStore(db) as s:
            s.run_migrations(students_only)
            s.add_subject("S-0001", 3.0, 90.0)

        code = main(["--db", str(db), "--skip-migrations"])
        out = capsys.readouterr().out
        assert code == 1
        assert "student_gpa_history" in out
        assert "SEEDING REPORT" not in out

    @pytest.mark.parametrize("verbosity,level", [
        (0, logging.WARNING),
        (1, logging.INFO),
        (2, logging.DEBUG),
        (3, logging.DEBUG),
    ])
    def test_log_level(self, verbosity, level):
        assert log_level(verbosity) == level

    def test_double_verbose_flag_accepted(self, tmp_path):
        assert main(["--db", str(tmp_path / "m.db"), "--demo-students", "1", "-vv"]) == 0

    def test_progress_logged_at_info(self, seeded_store, caplog):
        with caplog.at_level(logging.INFO, logger="synthesize_history"):
            HistorySynthesizer(seeded_store, seed=5).synthesize(Metric.GPA)
        assert "Processed 10/20 students" in caplog.text
        assert "Processed 20/20 students" in caplog.text
