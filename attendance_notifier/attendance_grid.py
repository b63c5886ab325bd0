"""Per-student monthly attendance grid."""

from __future__ import annotations

import calendar
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

STATUS_CODES = {
    "Hadir": "H",
    "Terlambat": "T",
    "Sakit": "S",
    "Izin": "I",
    "Alfa": "A",
    "Dispen": "D",
}
SUMMARY_CODES = ("H", "T", "S", "I", "A", "D", "L")

MONTH_NAMES = (
    "Januari", "Februari", "Maret", "April", "Mei", "Juni",
    "Juli", "Agustus", "September", "Oktober", "November", "Desember",
)
DAY_NAMES = ("Senin", "Selasa", "Rabu", "Kamis", "Jumat", "Sabtu", "Minggu")


@dataclass
class StudentRecap:
    student: Dict[str, Any]
    days: Dict[int, str] = field(default_factory=dict)
    summary: Dict[str, int] = field(default_factory=lambda: {code: 0 for code in SUMMARY_CODES})

    @property
    def total_present(self) -> int:
        return self.summary["H"] + self.summary["T"]

    @property
    def school_days(self) -> int:
        return sum(value for code, value in self.summary.items() if code != "L")


@dataclass
class MonthlyGrid:
    year: int
    month: int  # 0-11
    days_in_month: int
    off_days: Set[int]
    rows: List[StudentRecap]

    @property
    def label(self) -> str:
        return f"{MONTH_NAMES[self.month]} {self.year}"

    def totals(self) -> Dict[str, int]:
        totals = {code: 0 for code in SUMMARY_CODES}
        for row in self.rows:
            for code, value in row.summary.items():
                totals[code] += value
        return totals


def format_long_date(day: date) -> str:
    return f"{DAY_NAMES[day.weekday()]}, {day.day:02d} {MONTH_NAMES[day.month - 1]} {day.year}"


def holiday_dates(holidays: Iterable[Dict[str, Any]], year: int, month: int) -> Set[date]:
    """Expand holiday ranges into the dates falling inside ``year``/``month`` (0-11)."""
    first = date(year, month + 1, 1)
    last = date(year, month + 1, calendar.monthrange(year, month + 1)[1])
    result: Set[date] = set()
    for holiday in holidays:
        start = date.fromisoformat(str(holiday["start_date"])[:10])
        end = date.fromisoformat(str(holiday["end_date"])[:10])
        day = max(start, first)
        while day <= min(end, last):
            result.add(day)
            day += timedelta(days=1)
    return result


def build_monthly_grid(
    year: int,
    month: int,
    students: Sequence[Dict[str, Any]],
    records: Iterable[Dict[str, Any]],
    holidays: Iterable[Dict[str, Any]],
    *,
    weekend_days: Sequence[int] = (5, 6),
    today: Optional[date] = None,
) -> MonthlyGrid:
    """Build the per-student day grid for one month.

    Weekend and holiday days are marked ``L`` and never counted as absences.
    A school day without a record is ``A``.  Days after ``today`` stay blank.
    """
    days_in_month = calendar.monthrange(year, month + 1)[1]
    closed = holiday_dates(holidays, year, month)
    off_days = {
        day
        for day in range(1, days_in_month + 1)
        if date(year, month + 1, day).weekday() in weekend_days or date(year, month + 1, day) in closed
    }

    by_student: Dict[str, Dict[int, str]] = defaultdict(dict)
    for record in records:
        record_day = date.fromisoformat(str(record["record_date"])[:10])
        if record_day.year != year or record_day.month != month + 1:
            continue
        by_student[record["student_id"]][record_day.day] = record.get("status") or ""

    rows: List[StudentRecap] = []
    for student in students:
        recap = StudentRecap(student=student)
        statuses = by_student.get(student["id"], {})
        for day in range(1, days_in_month + 1):
            if today is not None and date(year, month + 1, day) > today:
                continue
            if day in off_days:
                recap.days[day] = "L"
                recap.summary["L"] += 1
                continue
            if day in statuses:
                code = STATUS_CODES.get(statuses[day])
                if code:
                    recap.days[day] = code
                    recap.summary[code] += 1
                continue
            recap.days[day] = "A"
            recap.summary["A"] += 1
        rows.append(recap)
    return MonthlyGrid(year=year, month=month, days_in_month=days_in_month, off_days=off_days, rows=rows)


