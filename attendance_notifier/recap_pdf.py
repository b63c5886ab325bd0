"""Monthly attendance recap rendered as a landscape A4 PDF."""

from __future__ import annotations

import os
from datetime import date
from io import BytesIO
from typing import Any, Dict, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .attendance_grid import MONTH_NAMES, SUMMARY_CODES, MonthlyGrid

OFF_DAY_FILL = colors.Color(0.85, 0.85, 0.85)
LEGEND = "H: Hadir, T: Terlambat, S: Sakit, I: Izin, A: Alfa, D: Dispen, L: Libur"


def _signature_block(report_config: Dict[str, Any], generated_on: date, styles) -> Table:
    location = report_config.get("reportLocation") or ""
    place_date = f"{location}, {generated_on.day} {MONTH_NAMES[generated_on.month - 1]} {generated_on.year}"
    body = styles["BodyText"]
    rows = [
        [Paragraph("Mengetahui,", body), Paragraph(escape(place_date.lstrip(", ")), body)],
        [Paragraph("Kepala Sekolah", body), Paragraph("Wali Kelas", body)],
        ["", ""],
        ["", ""],
        [
            Paragraph(f"<b>{escape(report_config.get('principalName') or '')}</b>", body),
            Paragraph(f"<b>{escape(report_config.get('signatoryName') or '')}</b>", body),
        ],
        [
            Paragraph(f"NPA. {escape(str(report_config.get('principalNpa') or '-'))}", body),
            Paragraph(f"NPA. {escape(str(report_config.get('signatoryNpa') or '-'))}", body),
        ],
    ]
    table = Table(rows, colWidths=[260, 260], rowHeights=[None, None, 18, 18, None, None], hAlign="CENTER")
    table.setStyle(TableStyle([("ALIGN", (0, 0), (-1, -1), "CENTER")]))
    return table


def render_monthly_recap_pdf(
    grid: MonthlyGrid,
    class_info: Dict[str, Any],
    report_config: Optional[Dict[str, Any]] = None,
    *,
    generated_on: Optional[date] = None,
) -> bytes:
    """Render ``grid`` for ``class_info`` and return the PDF document bytes."""
    report_config = report_config or {}
    generated_on = generated_on or date.today()
    styles = getSampleStyleSheet()
    styles["BodyText"].fontSize = 8
    styles["BodyText"].leading = 9.5

    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=landscape(A4),
        leftMargin=18, rightMargin=18, topMargin=24, bottomMargin=18,
        title=f"Rekap Absensi {class_info.get('name', '')} {grid.label}",
    )

    content = []
    header_image = report_config.get("headerImageUrl")
    if header_image and os.path.isfile(header_image):
        content.append(Image(header_image, width=806, height=80, kind="proportional"))
    title = report_config.get("reportTitle") or "Laporan Rekapitulasi Absensi Siswa"
    content.append(Paragraph(escape(title), styles["Title"]))
    content.append(
        Paragraph(
            f"Kelas: {escape(class_info.get('name') or '')} &nbsp;&nbsp; Periode: {grid.label}",
            styles["Heading4"],
        )
    )
    content.append(Spacer(1, 6))

    days = list(range(1, grid.days_in_month + 1))
    header = ["No", "NISN", "Nama"] + [str(day) for day in days] + list(SUMMARY_CODES)
    data = [header]
    for idx, row in enumerate(grid.rows, start=1):
        student = row.student
        data.append(
            [str(idx), student.get("nisn") or "", Paragraph(escape(student.get("nama") or ""), styles["BodyText"])]
            + [row.days.get(day, "") for day in days]
            + [str(row.summary[code]) for code in SUMMARY_CODES]
        )

    total_width = 806.0  # landscape A4 minus margins
    fixed = [20, 58, 130]
    summary_width = 20
    day_width = (total_width - sum(fixed) - summary_width * len(SUMMARY_CODES)) / len(days)
    col_widths = fixed + [day_width] * len(days) + [summary_width] * len(SUMMARY_CODES)

    table = Table(data, repeatRows=1, colWidths=col_widths, hAlign="LEFT")
    style = [
        ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
        ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
        ("FONTSIZE", (0, 0), (-1, -1), 7),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("ALIGN", (3, 0), (-1, -1), "CENTER"),
    ]
    for day in sorted(grid.off_days):
        column = 2 + day
        style.append(("BACKGROUND", (column, 1), (column, -1), OFF_DAY_FILL))
    table.setStyle(TableStyle(style))
    content.append(table)

    content.append(Spacer(1, 6))
    content.append(Paragraph(LEGEND, styles["BodyText"]))
    content.append(Spacer(1, 16))
    content.append(_signature_block(report_config, generated_on, styles))

    doc.build(content)
    return buffer.getvalue()
