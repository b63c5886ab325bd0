"""Scheduled recap generation feeding the notification queue."""

from __future__ import annotations

import asyncio
import base64
import calendar
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from .attendance_grid import MONTH_NAMES, MonthlyGrid, build_monthly_grid, format_long_date, holiday_dates
from .logger import get_logger
from .persistence import Persistence
from .recap_pdf import render_monthly_recap_pdf

ALL_GRADES = "all-grades"
GRADE_PREFIX = "grade-"
ACTIVE_STUDENT = "Aktif"
RECAP_STATUS_KEY = "monthlyRecapStatus"
CHECKED_IN_STATUSES = ("Hadir", "Terlambat")

DEFAULT_SCHOOL_HOURS = {"jamMasuk": "07:00", "jamPulang": "15:00"}


def parse_hhmm(value: str) -> time:
    hours, minutes = str(value).strip().split(":", 1)
    return time(int(hours), int(minutes))


def resolve_target_classes(classes: Sequence[Dict[str, Any]], target: str) -> List[Dict[str, Any]]:
    """Select the classes addressed by ``grade-X``, ``all-grades`` or a class id."""
    if target == ALL_GRADES:
        return list(classes)
    if target.startswith(GRADE_PREFIX):
        grade = target[len(GRADE_PREFIX):]
        return [cls for cls in classes if str(cls.get("grade")) == grade]
    return [cls for cls in classes if cls.get("id") == target]


class ScheduledReportTrigger:
    """Synthesize recap jobs for the daily deadlines and the month end."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        timezone: str = "Asia/Jakarta",
        grace: timedelta = timedelta(hours=1),
        weekend_days: Sequence[int] = (5, 6),
        recap_hour: int = 20,
        enqueue_delay: float = 0.5,
        renderer: Callable[..., bytes] = render_monthly_recap_pdf,
        metrics=None,
        logger=None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.persistence = persistence
        self.timezone = ZoneInfo(timezone)
        self.grace = grace
        self.weekend_days = tuple(weekend_days)
        self.recap_hour = int(recap_hour)
        self.enqueue_delay = float(enqueue_delay)
        self.renderer = renderer
        self.metrics = metrics
        self.logger = logger or get_logger("Reports")
        self._sleep = sleep or asyncio.sleep
        self._now = now or (lambda: datetime.now(self.timezone))

        self.report_date: Optional[date] = None
        self.sent_checkin_report = False
        self.sent_checkout_report = False

    def now(self) -> datetime:
        return self._now()

    def seconds_until_next_slot(self, interval: float, now: Optional[datetime] = None) -> float:
        """Delay until the next local wall-clock multiple of ``interval`` seconds."""
        now = now or self.now()
        elapsed = now.hour * 3600 + now.minute * 60 + now.second + now.microsecond / 1_000_000
        return interval - (elapsed % interval)

    async def _is_off_day(self, day: date) -> bool:
        if day.weekday() in self.weekend_days:
            return True
        holidays = await self.persistence.list_holidays()
        return day in holiday_dates(holidays, day.year, day.month - 1)

    # ------------------------------------------------------------------- daily
    async def run_daily_check(self, now: Optional[datetime] = None) -> int:
        """Enqueue the check-in/check-out reports whose cutoff has passed today."""
        now = now or self.now()
        today = now.date()
        if self.report_date != today:
            self.report_date = today
            self.sent_checkin_report = False
            self.sent_checkout_report = False
        if self.sent_checkin_report and self.sent_checkout_report:
            return 0
        if await self._is_off_day(today):
            self.sent_checkin_report = True
            self.sent_checkout_report = True
            self.logger.debug("%s is not a school day, daily reports skipped", today)
            return 0

        hours = {**DEFAULT_SCHOOL_HOURS, **(await self.persistence.get_setting("schoolHours") or {})}
        naive_now = now.replace(tzinfo=None)
        queued = 0
        checkin_cutoff = datetime.combine(today, parse_hhmm(hours["jamMasuk"])) + self.grace
        if not self.sent_checkin_report and naive_now >= checkin_cutoff:
            queued += await self._send_daily_report("masuk", today)
            self.sent_checkin_report = True
        checkout_cutoff = datetime.combine(today, parse_hhmm(hours["jamPulang"])) + self.grace
        if not self.sent_checkout_report and naive_now >= checkout_cutoff:
            queued += await self._send_daily_report("pulang", today)
            self.sent_checkout_report = True
        return queued

    async def _send_daily_report(self, kind: str, today: date) -> int:
        classes = {cls["id"]: cls for cls in await self.persistence.list_classes()}
        students = await self.persistence.list_students(status=ACTIVE_STUDENT)
        records = {
            record["student_id"]: record
            for record in await self.persistence.list_attendance(today.isoformat(), today.isoformat())
        }

        missing: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for student in students:
            record = records.get(student["id"])
            if kind == "masuk":
                lacking = record is None
            else:
                lacking = (
                    record is not None
                    and (record.get("status") in CHECKED_IN_STATUSES or bool(record.get("timestamp_masuk")))
                    and not record.get("timestamp_pulang")
                )
            if lacking:
                missing[student.get("class_id")].append(student)

        title = "Belum Absen Masuk" if kind == "masuk" else "Belum Absen Pulang"
        queued = 0
        for class_id, class_students in missing.items():
            cls = classes.get(class_id)
            if not cls or not cls.get("whatsapp_group_name"):
                continue
            lines = [
                f"🏫 *Laporan Siswa {title}*",
                f"*Kelas:* {cls['name']}",
                f"*Tanggal:* {format_long_date(today)}",
                "====================",
            ]
            for idx, student in enumerate(class_students, start=1):
                nisn = f" ({student['nisn']})" if student.get("nisn") else ""
                lines.append(f"{idx}. {student['nama']}{nisn}")
            lines.append("")
            lines.append(f"Total: {len(class_students)} siswa")
            await self.persistence.enqueue_job(
                {"recipient": cls["whatsapp_group_name"], "message": "\n".join(lines)},
                job_type="recap",
                metadata={
                    "report": f"daily_{kind}",
                    "classId": class_id,
                    "className": cls["name"],
                    "date": today.isoformat(),
                },
            )
            queued += 1
        self.logger.info("Daily '%s' report queued for %d classes", title, queued)
        if self.metrics is not None:
            self.metrics.inc_recap_jobs("daily", queued)
        return queued

    # ----------------------------------------------------------------- monthly
    def is_monthly_recap_due(self, now: datetime) -> bool:
        """Last calendar day of the month, during the configured hour."""
        last_day = calendar.monthrange(now.year, now.month)[1]
        return now.day == last_day and now.hour == self.recap_hour

    async def run_monthly_check(self, now: Optional[datetime] = None) -> int:
        now = now or self.now()
        if not self.is_monthly_recap_due(now):
            return 0
        return await self.generate_monthly_recap(now.year, now.month - 1, ALL_GRADES)

    async def generate_monthly_recap(self, year: int, month: int, target: str, *, force: bool = False) -> int:
        """Enqueue the parent summaries and one PDF recap job per class in ``target``.

        ``month`` is 0-11.  Unless ``force`` is set, a period already recorded
        in the ``lastRun_<target>`` marker is skipped.  A forced run only
        records the marker once the month is over, so the month-end recap
        still fires after a partial manual one.  Returns the number of jobs
        enqueued.
        """
        if not 0 <= int(month) <= 11:
            raise ValueError(f"month must be between 0 and 11, got {month}")
        period = f"{year}-{month}"
        marker_key = f"lastRun_{target}"
        status = await self.persistence.get_setting(RECAP_STATUS_KEY) or {}
        if not force and status.get(marker_key) == period:
            self.logger.info("Monthly recap %s for %s already generated", period, target)
            return 0

        classes = resolve_target_classes(await self.persistence.list_classes(), target)
        if not classes:
            self.logger.info("Monthly recap target %s matches no class", target)
            return 0

        first = date(year, month + 1, 1)
        last = date(year, month + 1, calendar.monthrange(year, month + 1)[1])
        students = await self.persistence.list_students(
            class_ids=[cls["id"] for cls in classes], status=ACTIVE_STUDENT
        )
        records = await self.persistence.list_attendance(first.isoformat(), last.isoformat())
        holidays = await self.persistence.list_holidays()
        report_config = await self.persistence.get_setting("reportConfig") or {}
        app_config = await self.persistence.get_setting("appConfig") or {}
        today = self.now().date()

        grids = []
        for cls in classes:
            class_students = [s for s in students if s.get("class_id") == cls["id"]]
            if not class_students:
                continue
            student_ids = {s["id"] for s in class_students}
            grid = build_monthly_grid(
                year,
                month,
                class_students,
                (r for r in records if r["student_id"] in student_ids),
                holidays,
                weekend_days=self.weekend_days,
                today=today,
            )
            grids.append((cls, grid))

        queued = 0
        parents = 0
        for cls, grid in grids:
            for row in grid.rows:
                number = row.student.get("parent_wa_number")
                if not number:
                    continue
                if queued:
                    await self._sleep(self.enqueue_delay)
                await self.persistence.enqueue_job(
                    {"recipient": number, "message": self._parent_message(grid, cls, row, report_config)},
                    job_type="recap",
                    metadata={
                        "report": "monthly_parent",
                        "year": year,
                        "month": month,
                        "studentId": row.student["id"],
                        "classId": cls["id"],
                    },
                )
                queued += 1
                parents += 1

        for cls, grid in grids:
            recipient = cls.get("whatsapp_group_name") or app_config.get("groupWaId")
            if not recipient:
                self.logger.warning("Class %s has no WhatsApp group; monthly recap skipped", cls["name"])
                continue
            pdf_bytes = self.renderer(grid, cls, report_config, generated_on=today)
            if queued:
                await self._sleep(self.enqueue_delay)
            await self.persistence.enqueue_job(
                {
                    "recipient": recipient,
                    "message": self._monthly_caption(grid, cls),
                    "fileData": base64.b64encode(pdf_bytes).decode("ascii"),
                    "fileMimetype": "application/pdf",
                    "fileName": f"Laporan_Bulanan_Kelas_{cls['name'].replace(' ', '_')}_{MONTH_NAMES[month]}_{year}.pdf",
                },
                job_type="recap_pdf",
                metadata={
                    "year": year,
                    "month": month,
                    "target": target,
                    "classId": cls["id"],
                    "className": cls["name"],
                },
            )
            queued += 1

        if not force or last < today:
            await self.persistence.merge_setting(RECAP_STATUS_KEY, {marker_key: period})
        self.logger.info(
            "Monthly recap %s for %s queued %d jobs (%d parents)", period, target, queued, parents
        )
        if self.metrics is not None:
            self.metrics.inc_recap_jobs("monthly_parent", parents)
            self.metrics.inc_recap_jobs("monthly", queued - parents)
        return queued

    @staticmethod
    def _parent_message(grid: MonthlyGrid, cls: Dict[str, Any], row, report_config: Dict[str, Any]) -> str:
        student = row.student
        summary = row.summary
        lines = []
        if report_config.get("schoolName"):
            lines.append(f"🏫 *{report_config['schoolName']}*")
        lines.extend(
            [
                f"*Laporan Bulanan: {grid.label}*",
                "",
                "Yth. Orang Tua/Wali dari:",
                f"👤 *Nama*      : {student['nama']}",
                f"🆔 *NISN*      : {student.get('nisn') or '-'}",
                f"📚 *Kelas*     : {cls['name']}",
                "",
                "Berikut adalah rekapitulasi kehadiran putra/putri Anda:",
                f"✅ *Total Hadir*      : {row.total_present} hari",
                f"⏰ *Terlambat*      : {summary['T']} kali",
                f"🤒 *Sakit*         : {summary['S']} hari",
                f"✉️ *Izin*          : {summary['I']} hari",
                f"✈️ *Dispen*        : {summary['D']} hari",
                f"❌ *Alfa*           : {summary['A']} hari",
                "",
                f"Dari total {row.school_days} hari sekolah efektif pada bulan ini.",
                "",
                "--",
                "_Pesan ini dikirim otomatis oleh sistem. Mohon tidak membalas._",
            ]
        )
        return "\n".join(lines)

    @staticmethod
    def _monthly_caption(grid: MonthlyGrid, cls: Dict[str, Any]) -> str:
        totals = grid.totals()
        grade = f" ({cls['grade']})" if cls.get("grade") else ""
        return "\n".join(
            [
                "🏫 *Laporan Bulanan untuk Wali Kelas*",
                f"*Kelas:* {cls['name']}{grade}",
                f"*Periode:* {grid.label}",
                "",
                f"Rekapitulasi absensi untuk {len(grid.rows)} siswa:",
                f"Total Kehadiran (Hadir+Terlambat): {totals['H'] + totals['T']}",
                f"Total Terlambat: {totals['T']}",
                f"Total Sakit: {totals['S']}",
                f"Total Izin: {totals['I']}",
                f"Total Dispensasi: {totals['D']}",
                f"Total Tanpa Keterangan (Alfa): {totals['A']}",
                "",
                "_Detail harian terlampir dalam PDF._",
            ]
        )
