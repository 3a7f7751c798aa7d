#!/usr/bin/env python3
"""
History Charts
=========================================================
Renders charts of seeded GPA / attendance history from the SQLite store.

Usage:
    python visualize_history.py
    python visualize_history.py --db ./mentorlink.db
    python visualize_history.py --output-dir ./charts
"""

from __future__ import annotations

import argparse
import os
import sqlite3
import sys
from contextlib import closing
from pathlib import Path

import matplotlib
matplotlib.use("Agg")  # headless rendering
import matplotlib.pyplot as plt
import pandas as pd
from matplotlib.patches import Patch

from history_models import Metric
from synthesize_history import DEFAULT_SEASONAL_FACTORS, classify_trend


# ── Theme ─────────────────────────────────────────────────────────────────

THEME_COLORS = {
    "primary": "#1B3A5C",      # dark navy
    "secondary": "#2E86AB",    # bright blue
    "accent": "#F18F01",       # orange
    "success": "#2CA58D",      # teal/green
    "danger": "#C1292E",       # red
    "light": "#E8EEF2",        # light gray-blue
    "text": "#2C3E50",         # dark text
}

TREND_COLORS = {
    "improving": THEME_COLORS["success"],
    "slightly_improving": THEME_COLORS["secondary"],
    "stable": THEME_COLORS["primary"],
    "slightly_declining": THEME_COLORS["accent"],
    "declining": THEME_COLORS["danger"],
}


def apply_theme():
    plt.rcParams.update({
        "font.family": "sans-serif",
        "font.sans-serif": ["Helvetica Neue", "Arial", "DejaVu Sans"],
        "font.size": 11,
        "axes.titlesize": 14,
        "axes.titleweight": "bold",
        "axes.labelsize": 12,
        "axes.facecolor": "#FAFBFC",
        "axes.edgecolor": "#DEE2E6",
        "axes.grid": True,
        "grid.alpha": 0.3,
        "grid.color": "#CED4DA",
        "figure.facecolor": "white",
        "figure.dpi": 150,
        "savefig.dpi": 200,
        "savefig.bbox": "tight",
        "savefig.pad_inches": 0.3,
    })


# ── Data Loading ──────────────────────────────────────────────────────────

def load_history(db_path: Path, metric: Metric) -> pd.DataFrame:
    """History rows for ``metric`` with a ``period`` column in calendar order."""
    with closing(sqlite3.connect(db_path)) as conn:
        df = pd.read_sql_query(
            f"SELECT *, {metric.period_column} AS period FROM {metric.table} "
            "ORDER BY recorded_at, student_id",
            conn,
        )
    order = df.drop_duplicates("period")["period"].tolist()
    df["period"] = pd.Categorical(df["period"], categories=order, ordered=True)
    return df


# ── Chart Builders ────────────────────────────────────────────────────────

def chart_gpa_trajectories(gpa: pd.DataFrame, output_dir: Path, max_lines: int = 60):
    """Per-student GPA paths colored by how each path reads as a trend."""
    if gpa.empty:
        return None

    wide = gpa.pivot_table(index="student_id", columns="period", values="gpa", observed=False)
    periods = list(wide.columns)
    labels = wide.apply(lambda row: classify_trend(row.dropna().tolist()), axis=1)

    fig, ax = plt.subplots(figsize=(12, 6))
    x = range(len(periods))

    for student_id, row in wide.head(max_lines).iterrows():
        ax.plot(
            x, row.values,
            color=TREND_COLORS[labels[student_id]], alpha=0.35, linewidth=1,
        )

    mean = wide.mean()
    ax.plot(
        x, mean.values,
        color=THEME_COLORS["text"], marker="s", linewidth=3,
        markersize=8, zorder=5, label="Mean GPA",
    )
    for i, value in enumerate(mean.values):
        ax.annotate(
            f"{value:.2f}", (i, value),
            textcoords="offset points", xytext=(0, 12),
            ha="center", fontsize=9, fontweight="bold",
        )

    ax.axhline(y=2.0, color=THEME_COLORS["danger"], linestyle="--", alpha=0.6)
    ax.set_xticks(list(x))
    ax.set_xticklabels(periods, rotation=30, ha="right")
    ax.set_ylabel("GPA")
    ax.set_ylim(0, 4.1)

    counts = labels.value_counts()
    handles = [
        Patch(color=color, label=f"{name} ({counts.get(name, 0)})")
        for name, color in TREND_COLORS.items()
        if counts.get(name, 0)
    ]
    ax.legend(handles=handles + ax.get_legend_handles_labels()[0], loc="lower left", framealpha=0.9)

    fig.suptitle(
        "GPA History by Trend",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "gpa_trajectories.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def chart_attendance_by_month(attendance: pd.DataFrame, output_dir: Path):
    """Mean monthly attendance; seasonally adjusted months highlighted."""
    if attendance.empty:
        return None

    stats = attendance.groupby("period", observed=True)["attendance_percentage"].agg(["mean", "std"])
    months = list(stats.index)
    colors = [
        THEME_COLORS["accent"] if m in DEFAULT_SEASONAL_FACTORS else THEME_COLORS["secondary"]
        for m in months
    ]

    fig, ax = plt.subplots(figsize=(10, 5))
    bars = ax.bar(
        range(len(months)), stats["mean"],
        yerr=stats["std"].fillna(0), capsize=4,
        color=colors, alpha=0.85, edgecolor="white", linewidth=0.5,
    )
    for bar, val in zip(bars, stats["mean"]):
        ax.text(
            bar.get_x() + bar.get_width() / 2, bar.get_height() + 1,
            f"{val:.1f}%", ha="center", va="bottom",
            fontsize=9, fontweight="bold", color=THEME_COLORS["text"],
        )

    ax.set_xticks(range(len(months)))
    ax.set_xticklabels(months, rotation=30, ha="right")
    ax.set_ylabel("Mean Attendance (%)")
    ax.set_ylim(40, 105)
    ax.legend(
        handles=[
            Patch(color=THEME_COLORS["secondary"], label="Regular month"),
            Patch(color=THEME_COLORS["accent"], label="Seasonal adjustment"),
        ],
        loc="lower left", framealpha=0.9,
    )

    fig.suptitle(
        "Attendance by Month",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "attendance_by_month.png"
    fig.savefig(path)
    plt.close(fig)
    return path


# ── CLI ───────────────────────────────────────────────────────────────────

def seed_hint():
    print("Seed history first:")
    print("  python synthesize_history.py")


def main():
    parser = argparse.ArgumentParser(description="History chart renderer")
    parser.add_argument(
        "--db", default=os.environ.get("MENTORLINK_DB", "mentorlink.db"),
        help="SQLite database path (or set MENTORLINK_DB env var)",
    )
    parser.add_argument(
        "--output-dir",
        default="./output/charts",
        help="Directory to save charts",
    )
    args = parser.parse_args()

    db_path = Path(args.db)
    out = Path(args.output_dir)

    if not db_path.exists():
        print(f"ERROR: {db_path} not found.")
        seed_hint()
        sys.exit(1)

    try:
        gpa = load_history(db_path, Metric.GPA)
        attendance = load_history(db_path, Metric.ATTENDANCE)
    except pd.errors.DatabaseError as e:
        print(f"ERROR: cannot read history from {db_path}: {e}")
        seed_hint()
        sys.exit(1)

    out.mkdir(parents=True, exist_ok=True)
    apply_theme()

    print("Generating charts...")
    charts = [
        ("GPA Trajectories", chart_gpa_trajectories(gpa, out)),
        ("Attendance by Month", chart_attendance_by_month(attendance, out)),
    ]

    generated = [(n, p) for n, p in charts if p]
    print(f"\nGenerated {len(generated)} charts:")
    for name, path in generated:
        print(f"  {name:25s} -> {path}")

    print(f"\nAll charts saved to: {out}/")


if __name__ == "__main__":
    main()
