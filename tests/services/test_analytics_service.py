import csv
import io
from datetime import datetime, timedelta

import pytest

from attendtrack.backend.services.analytics_service import (
    as_records,
    compute_analytics,
    department_breakdown,
    render_analytics_csv,
    top_students,
)

NOW = datetime(2025, 6, 11, 12, 0).astimezone()


def record(barcode_id: str, hours_ago: float, status: str = "Present") -> dict:
    return {"barcodeId": barcode_id, "timestamp": (NOW - timedelta(hours=hours_ago)).isoformat(), "status": status}


class TestComputeAnalytics:

    def test_summary_over_the_window(self):
        records = [
            record("2025CS001", 1),
            record("2025CS001", 25, "Late"),
            record("2025IT001", 2, "Late"),
            record("2025IT002", 3, "Absent"),
            # previous week
            record("2025CS001", 24 * 8),
            record("2025CS002", 24 * 9),
            # outside both windows
            record("2025CS003", 24 * 20),
        ]

        snapshot = compute_analytics(records, "week", now=NOW)

        assert snapshot.summary.total_records == 4
        assert snapshot.summary.unique_students == 3
        assert snapshot.summary.attendance_rate == 25.0
        assert snapshot.summary.late_rate == 50.0
        assert snapshot.summary.trend == 100.0

    def test_no_previous_records_means_flat_trend(self):
        snapshot = compute_analytics([record("2025CS001", 1)], "day", now=NOW)

        assert snapshot.summary.trend == 0.0

    def test_empty_input(self):
        snapshot = compute_analytics([], now=NOW)

        assert snapshot.summary.total_records == 0
        assert snapshot.summary.attendance_rate == 0.0
        assert [item.status for item in snapshot.status_breakdown] == ["Present", "Late", "Absent", "Excused"]
        assert all(item.percentage == 0.0 for item in snapshot.status_breakdown)
        assert snapshot.daily_trends == []

    def test_unknown_window_is_a_week(self):
        records = [record("2025CS001", 24 * 6), record("2025CS002", 24 * 8)]

        assert compute_analytics(records, "fortnight", now=NOW).summary.total_records == 1

    def test_records_without_timestamp_are_ignored(self):
        snapshot = compute_analytics([{"barcodeId": "2025CS001"}, record("2025CS002", 1)], now=NOW)

        assert snapshot.summary.total_records == 1

    def test_same_input_same_snapshot(self):
        records = [record("2025CS001", 1), record("2025IT001", 30, "Late")]

        assert compute_analytics(records, now=NOW) == compute_analytics(records, now=NOW)
        assert compute_analytics(list(reversed(records)), now=NOW).summary == compute_analytics(records, now=NOW).summary

    def test_daily_and_hourly_trends(self):
        records = [record("2025CS001", 1), record("2025CS002", 1, "Late"), record("2025CS001", 24)]

        snapshot = compute_analytics(records, now=NOW)

        assert [day.date for day in snapshot.daily_trends] == ["2025-06-10", "2025-06-11"]
        today = snapshot.daily_trends[-1]
        assert (today.total, today.present, today.late, today.unique_students) == (2, 1, 1, 2)
        assert [(h.hour, h.count) for h in snapshot.hourly_trends] == [(11, 2), (12, 1)]


class TestRankings:

    def test_department_ties_keep_first_seen_order(self):
        records = as_records([record("2025IT001", 1), record("2025CS001", 1), record("2025ME001", 1), record("2025ME002", 1)])

        ranked = department_breakdown(records)

        assert [(d.department, d.count) for d in ranked] == [("ME", 2), ("IT", 1), ("CS", 1)]

    def test_top_students_are_capped(self):
        records = as_records([record(f"2025CS{n:03d}", 1) for n in range(1, 13)] + [record("2025CS012", 2)])

        ranked = top_students(records)

        assert len(ranked) == 10
        assert ranked[0].barcode_id == "2025CS012"
        assert ranked[1].barcode_id == "2025CS001"


class TestAnalyticsCsv:

    def test_report_sections(self):
        snapshot = compute_analytics([record("2025CS001", 1), record("2025CS002", 2, "Late")], now=NOW)

        content = render_analytics_csv(snapshot, "week", generated_at=NOW)

        rows = list(csv.reader(io.StringIO(content)))
        assert rows[0] == ["Attendance Analytics Report"]
        assert rows[1] == ["Generated on:", NOW.isoformat()]
        assert ["Attendance Rate:", "50.0%"] in rows
        assert ["Trend:", "+0.0%"] in rows
        assert ["Late", "1", "50.0%"] in rows
        assert ["CS", "2"] in rows

    @pytest.mark.parametrize("window", ["day", "week", "month", "quarter"])
    def test_window_label(self, window):
        content = render_analytics_csv(compute_analytics([], window, now=NOW), window, generated_at=NOW)

        assert f"Time Range:,{window}" in content.splitlines()
