import base64
from datetime import date, datetime
from typing import List
from zoneinfo import ZoneInfo

import pytest

from attendance_notifier.attendance_grid import build_monthly_grid, format_long_date, holiday_dates
from attendance_notifier.persistence import Persistence
from attendance_notifier.recap_pdf import render_monthly_recap_pdf
from attendance_notifier.reports import ScheduledReportTrigger, parse_hhmm, resolve_target_classes

TZ = ZoneInfo("Asia/Jakarta")

CLASSES = [
    {"id": "c1", "name": "7A", "grade": "7", "whatsapp_group_name": "Kelas 7A"},
    {"id": "c2", "name": "8A", "grade": "8", "whatsapp_group_name": None},
]


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class StubRenderer:
    def __init__(self):
        self.calls = []

    def __call__(self, grid, class_info, report_config, *, generated_on=None):
        self.calls.append((grid, class_info, report_config, generated_on))
        return b"%PDF-stub"


async def make_store(tmp_path) -> Persistence:
    p = Persistence(str(tmp_path / "reports.db"))
    await p.init_db()
    for cls in CLASSES:
        await p.upsert_class(cls)
    await p.upsert_student({"id": "s1", "nisn": "001", "nama": "Budi", "class_id": "c1"})
    await p.upsert_student({"id": "s2", "nisn": "002", "nama": "Citra", "class_id": "c1"})
    await p.upsert_student({"id": "s3", "nisn": "003", "nama": "Dodi", "class_id": "c1", "status": "Lulus"})
    await p.upsert_student({"id": "s4", "nisn": "004", "nama": "Eka", "class_id": "c2"})
    return p


def make_trigger(store, now, **kwargs) -> ScheduledReportTrigger:
    clock = {"now": now}
    trigger = ScheduledReportTrigger(store, sleep=RecordingSleep(), now=lambda: clock["now"], **kwargs)
    trigger.clock = clock
    return trigger


# ------------------------------------------------------------------- helpers
def test_resolve_target_classes():
    assert [c["id"] for c in resolve_target_classes(CLASSES, "all-grades")] == ["c1", "c2"]
    assert [c["id"] for c in resolve_target_classes(CLASSES, "grade-8")] == ["c2"]
    assert [c["id"] for c in resolve_target_classes(CLASSES, "c1")] == ["c1"]
    assert resolve_target_classes(CLASSES, "grade-12") == []
    assert resolve_target_classes(CLASSES, "missing") == []


def test_parse_and_format_helpers():
    assert parse_hhmm("07:00").hour == 7
    assert parse_hhmm(" 15:30 ").minute == 30
    assert format_long_date(date(2024, 10, 1)) == "Selasa, 01 Oktober 2024"


def test_holiday_dates_clipped_to_month():
    holidays = [
        {"start_date": "2024-09-28", "end_date": "2024-10-02"},
        {"start_date": "2024-11-01", "end_date": "2024-11-01"},
    ]
    assert holiday_dates(holidays, 2024, 9) == {date(2024, 10, 1), date(2024, 10, 2)}


def test_monthly_grid_full_month():
    students = [{"id": "s1", "nama": "Budi"}]
    records = [
        {"student_id": "s1", "record_date": "2024-10-01", "status": "Hadir"},
        {"student_id": "s1", "record_date": "2024-10-02", "status": "Terlambat"},
        {"student_id": "s1", "record_date": "2024-10-03", "status": "Sakit"},
        {"student_id": "s1", "record_date": "2024-10-05", "status": "Hadir"},
        {"student_id": "s1", "record_date": "2024-09-30", "status": "Izin"},
    ]
    holidays = [{"start_date": "2024-10-10", "end_date": "2024-10-10"}]

    grid = build_monthly_grid(2024, 9, students, records, holidays)

    assert grid.days_in_month == 31
    assert grid.off_days == {5, 6, 10, 12, 13, 19, 20, 26, 27}
    row = grid.rows[0]
    assert row.days[1] == "H"
    assert row.days[2] == "T"
    assert row.days[3] == "S"
    assert row.days[5] == "L"
    assert row.days[10] == "L"
    assert row.days[4] == "A"
    assert row.summary == {"H": 1, "T": 1, "S": 1, "I": 0, "A": 19, "D": 0, "L": 9}
    assert row.total_present == 2
    assert grid.label == "Oktober 2024"


def test_monthly_grid_leaves_future_days_blank():
    students = [{"id": "s1", "nama": "Budi"}]
    records = [{"student_id": "s1", "record_date": "2024-10-01", "status": "Dispen"}]

    grid = build_monthly_grid(2024, 9, students, records, [], today=date(2024, 10, 2))

    row = grid.rows[0]
    assert row.days == {1: "D", 2: "A"}
    assert row.summary["A"] == 1
    assert row.summary["L"] == 0
    assert grid.totals()["D"] == 1


def test_render_monthly_recap_pdf_returns_pdf_bytes():
    students = [{"id": "s1", "nisn": "001", "nama": "Budi"}, {"id": "s2", "nisn": "002", "nama": "Citra"}]
    records = [{"student_id": "s1", "record_date": "2024-02-01", "status": "Hadir"}]
    grid = build_monthly_grid(2024, 1, students, records, [{"start_date": "2024-02-08", "end_date": "2024-02-08"}])

    pdf = render_monthly_recap_pdf(
        grid,
        {"id": "c1", "name": "7A", "grade": "7"},
        {"reportTitle": "Rekap", "reportLocation": "Bandung", "principalName": "Ibu Sari", "signatoryName": "Pak Ali"},
        generated_on=date(2024, 2, 29),
    )

    assert pdf.startswith(b"%PDF")
    assert len(pdf) > 1000


def test_render_monthly_recap_pdf_accepts_markup_characters():
    students = [{"id": "s1", "nisn": "001", "nama": "Budi <Adi> & Sons"}]
    grid = build_monthly_grid(2024, 1, students, [], [])

    pdf = render_monthly_recap_pdf(
        grid,
        {"id": "c1", "name": "7A & 7B"},
        {
            "reportTitle": "Rekap <Bulanan>",
            "reportLocation": "Bandung & Sekitarnya",
            "principalName": "Ibu Sari <S.Pd>",
            "signatoryName": "Pak Ali & Tim",
            "principalNpa": "<123>",
        },
        generated_on=date(2024, 2, 29),
    )

    assert pdf.startswith(b"%PDF")


# --------------------------------------------------------------------- daily
@pytest.mark.asyncio
async def test_daily_checkin_report_once_per_day(tmp_path):
    store = await make_store(tmp_path)
    await store.upsert_attendance(
        {"student_id": "s1", "class_id": "c1", "record_date": "2024-10-01", "status": "Hadir", "timestamp_masuk": "07:01"}
    )
    trigger = make_trigger(store, datetime(2024, 10, 1, 7, 30, tzinfo=TZ))

    assert await trigger.run_daily_check() == 0

    trigger.clock["now"] = datetime(2024, 10, 1, 8, 30, tzinfo=TZ)
    assert await trigger.run_daily_check() == 1
    jobs = await store.fetch_pending_jobs()
    assert len(jobs) == 1
    job = jobs[0]
    assert job["type"] == "recap"
    assert job["payload"]["recipient"] == "Kelas 7A"
    message = job["payload"]["message"]
    assert "Belum Absen Masuk" in message
    assert "Citra (002)" in message
    assert "Budi" not in message
    assert "Dodi" not in message
    assert "Total: 1 siswa" in message
    assert job["metadata"]["report"] == "daily_masuk"

    trigger.clock["now"] = datetime(2024, 10, 1, 9, 0, tzinfo=TZ)
    assert await trigger.run_daily_check() == 0
    assert trigger.sent_checkin_report is True
    assert trigger.sent_checkout_report is False


@pytest.mark.asyncio
async def test_daily_checkout_report_lists_students_without_checkout(tmp_path):
    store = await make_store(tmp_path)
    await store.set_setting("schoolHours", {"jamMasuk": "07:00", "jamPulang": "14:00"})
    await store.upsert_attendance(
        {"student_id": "s1", "class_id": "c1", "record_date": "2024-10-01", "status": "Terlambat", "timestamp_masuk": "07:20"}
    )
    await store.upsert_attendance(
        {
            "student_id": "s2",
            "class_id": "c1",
            "record_date": "2024-10-01",
            "status": "Hadir",
            "timestamp_masuk": "06:50",
            "timestamp_pulang": "14:05",
        }
    )
    trigger = make_trigger(store, datetime(2024, 10, 1, 15, 1, tzinfo=TZ))

    # both cutoffs have passed; the check-in report has nobody missing
    assert await trigger.run_daily_check() == 1
    jobs = await store.fetch_pending_jobs()
    assert len(jobs) == 1
    assert "Belum Absen Pulang" in jobs[0]["payload"]["message"]
    assert "Budi" in jobs[0]["payload"]["message"]
    assert "Citra" not in jobs[0]["payload"]["message"]
    assert trigger.sent_checkin_report and trigger.sent_checkout_report


@pytest.mark.asyncio
async def test_daily_flags_reset_on_new_day(tmp_path):
    store = await make_store(tmp_path)
    trigger = make_trigger(store, datetime(2024, 10, 1, 8, 30, tzinfo=TZ))
    assert await trigger.run_daily_check() == 1

    trigger.clock["now"] = datetime(2024, 10, 2, 8, 30, tzinfo=TZ)
    assert await trigger.run_daily_check() == 1
    assert trigger.report_date == date(2024, 10, 2)


@pytest.mark.asyncio
async def test_daily_report_skipped_on_weekend_and_holiday(tmp_path):
    store = await make_store(tmp_path)
    await store.upsert_holiday({"name": "Libur", "start_date": "2024-10-01", "end_date": "2024-10-01"})

    trigger = make_trigger(store, datetime(2024, 10, 5, 9, 0, tzinfo=TZ))
    assert await trigger.run_daily_check() == 0

    trigger.clock["now"] = datetime(2024, 10, 1, 16, 0, tzinfo=TZ)
    assert await trigger.run_daily_check() == 0
    assert await store.fetch_pending_jobs() == []


# ------------------------------------------------------------------- monthly
def test_monthly_recap_due_only_last_day_recap_hour(tmp_path):
    trigger = ScheduledReportTrigger(Persistence(str(tmp_path / "x.db")))
    assert trigger.is_monthly_recap_due(datetime(2024, 10, 31, 20, 5, tzinfo=TZ))
    assert not trigger.is_monthly_recap_due(datetime(2024, 10, 31, 19, 59, tzinfo=TZ))
    assert not trigger.is_monthly_recap_due(datetime(2024, 10, 30, 20, 0, tzinfo=TZ))
    assert trigger.is_monthly_recap_due(datetime(2024, 2, 29, 20, 0, tzinfo=TZ))


@pytest.mark.asyncio
async def test_monthly_recap_is_idempotent_per_period(tmp_path):
    store = await make_store(tmp_path)
    renderer = StubRenderer()
    trigger = make_trigger(store, datetime(2024, 10, 31, 20, 5, tzinfo=TZ), renderer=renderer)

    assert await trigger.run_monthly_check() == 1
    status = await store.get_setting("monthlyRecapStatus")
    assert status == {"lastRun_all-grades": "2024-9"}

    jobs = await store.fetch_pending_jobs()
    assert len(jobs) == 1
    payload = jobs[0]["payload"]
    assert jobs[0]["type"] == "recap_pdf"
    assert payload["recipient"] == "Kelas 7A"
    assert base64.b64decode(payload["fileData"]) == b"%PDF-stub"
    assert payload["fileMimetype"] == "application/pdf"
    assert payload["fileName"] == "Laporan_Bulanan_Kelas_7A_Oktober_2024.pdf"
    assert "Oktober 2024" in payload["message"]
    assert jobs[0]["metadata"]["classId"] == "c1"

    grid = renderer.calls[0][0]
    assert [row.student["id"] for row in grid.rows] == ["s1", "s2"]

    assert await trigger.run_monthly_check() == 0
    assert len(await store.fetch_pending_jobs()) == 1


@pytest.mark.asyncio
async def test_forced_recap_ignores_marker_and_uses_advisor_group(tmp_path):
    store = await make_store(tmp_path)
    await store.merge_setting("monthlyRecapStatus", {"lastRun_all-grades": "2024-9"})
    await store.set_setting("appConfig", {"groupWaId": "120363777@g.us"})
    trigger = make_trigger(store, datetime(2024, 11, 2, 9, 0, tzinfo=TZ), renderer=StubRenderer())

    assert await trigger.generate_monthly_recap(2024, 9, "all-grades") == 0
    assert await trigger.generate_monthly_recap(2024, 9, "all-grades", force=True) == 2

    recipients = [job["payload"]["recipient"] for job in await store.fetch_pending_jobs()]
    assert recipients == ["Kelas 7A", "120363777@g.us"]
    assert trigger._sleep.delays == [0.5]


@pytest.mark.asyncio
async def test_recap_target_without_match_is_noop(tmp_path):
    store = await make_store(tmp_path)
    trigger = make_trigger(store, datetime(2024, 11, 2, 9, 0, tzinfo=TZ), renderer=StubRenderer())

    assert await trigger.generate_monthly_recap(2024, 9, "grade-12") == 0
    assert await store.get_setting("monthlyRecapStatus") is None

    # grade-8 has no group and no advisor group configured
    assert await trigger.generate_monthly_recap(2024, 9, "grade-8") == 0
    assert await store.fetch_pending_jobs() == []

    with pytest.raises(ValueError):
        await trigger.generate_monthly_recap(2024, 12, "all-grades")


@pytest.mark.asyncio
async def test_partial_manual_recap_does_not_block_month_end_run(tmp_path):
    store = await make_store(tmp_path)
    trigger = make_trigger(store, datetime(2024, 10, 15, 10, 0, tzinfo=TZ), renderer=StubRenderer())

    assert await trigger.generate_monthly_recap(2024, 9, "all-grades", force=True) == 1
    assert await store.get_setting("monthlyRecapStatus") is None

    trigger.clock["now"] = datetime(2024, 10, 31, 20, 5, tzinfo=TZ)
    assert await trigger.run_monthly_check() == 1
    status = await store.get_setting("monthlyRecapStatus")
    assert status == {"lastRun_all-grades": "2024-9"}
    assert len(await store.fetch_pending_jobs()) == 2


@pytest.mark.asyncio
async def test_monthly_recap_sends_parent_summaries_before_class_pdf(tmp_path):
    store = await make_store(tmp_path)
    await store.upsert_student(
        {"id": "s1", "nisn": "001", "nama": "Budi", "class_id": "c1", "parent_wa_number": "081234567890"}
    )
    await store.set_setting("reportConfig", {"schoolName": "SMA Harapan"})
    await store.upsert_attendance(
        {"id": "a1", "student_id": "s1", "class_id": "c1", "record_date": "2024-10-01", "status": "Hadir"}
    )
    await store.upsert_attendance(
        {"id": "a2", "student_id": "s1", "class_id": "c1", "record_date": "2024-10-02", "status": "Sakit"}
    )
    trigger = make_trigger(store, datetime(2024, 10, 31, 20, 5, tzinfo=TZ), renderer=StubRenderer())

    assert await trigger.run_monthly_check() == 2

    jobs = await store.fetch_pending_jobs()
    assert [job["type"] for job in jobs] == ["recap", "recap_pdf"]
    parent = jobs[0]
    assert parent["payload"]["recipient"] == "081234567890"
    assert parent["metadata"]["report"] == "monthly_parent"
    assert parent["metadata"]["studentId"] == "s1"
    message = parent["payload"]["message"]
    assert message.startswith("🏫 *SMA Harapan*")
    assert "*Laporan Bulanan: Oktober 2024*" in message
    assert "Budi" in message
    assert "✅ *Total Hadir*      : 1 hari" in message
    assert "🤒 *Sakit*         : 1 hari" in message
    # 23 weekdays in October 2024
    assert "Dari total 23 hari sekolah efektif" in message
    assert trigger._sleep.delays == [0.5]


def test_monthly_checks_align_to_the_hour(tmp_path):
    trigger = ScheduledReportTrigger(Persistence(str(tmp_path / "x.db")))

    assert trigger.seconds_until_next_slot(3600, datetime(2024, 10, 31, 19, 59, 59, 800000, tzinfo=TZ)) == pytest.approx(0.2)
    assert trigger.seconds_until_next_slot(3600, datetime(2024, 10, 31, 20, 0, 0, 200000, tzinfo=TZ)) == pytest.approx(3599.8)
    assert trigger.seconds_until_next_slot(3600, datetime(2024, 10, 31, 20, 0, tzinfo=TZ)) == 3600
    assert trigger.seconds_until_next_slot(300, datetime(2024, 10, 31, 7, 58, tzinfo=TZ)) == 120
