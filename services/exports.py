# services/exports.py
import io
import os
import pandas as pd
from datetime import datetime
from reportlab.platypus import (
    SimpleDocTemplate, LongTable, Table, TableStyle,
    Paragraph, Spacer, PageBreak
)
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.enums import TA_LEFT, TA_CENTER
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.lib.units import cm

from config import Config

# Candidate font files (first existing one is used); French accents need a Unicode TTF
FONT_CANDIDATES = [
    os.path.join("static", "fonts", "DejaVuSans.ttf"),
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans.ttf",
]

REGISTERED_FONT_NAME = None  # set after registration

HEADER_COLOR = colors.HexColor("#003366")
ROW_COLORS = (colors.HexColor("#e9ecef"), colors.HexColor("#f8f9fa"))


def _ensure_font_registered() -> str:
    """Register a Unicode TTF if one is installed; return its font name."""
    global REGISTERED_FONT_NAME
    if REGISTERED_FONT_NAME:
        return REGISTERED_FONT_NAME

    for path in FONT_CANDIDATES:
        if path and os.path.exists(path):
            try:
                font_name = os.path.splitext(os.path.basename(path))[0]
                pdfmetrics.registerFont(TTFont(font_name, path))
                REGISTERED_FONT_NAME = font_name
                return font_name
            except Exception:
                continue

    REGISTERED_FONT_NAME = "Helvetica"  # last resort fallback
    return REGISTERED_FONT_NAME


def dataframe_to_excel_bytes(df: pd.DataFrame, sheet_name="Feuille1") -> bytes:
    """Convert a Pandas DataFrame into Excel bytes (XLSX)."""
    output = io.BytesIO()
    with pd.ExcelWriter(output, engine="xlsxwriter") as writer:
        df.to_excel(writer, index=False, sheet_name=sheet_name[:31])
        sheet = writer.sheets[sheet_name[:31]]
        for idx, col in enumerate(df.columns):
            longest = max([len(str(col))] + [len(str(v)) for v in df[col].head(300)])
            sheet.set_column(idx, idx, min(60, longest + 2))
    output.seek(0)
    return output.getvalue()


def dataframe_to_csv_bytes(df: pd.DataFrame) -> bytes:
    # utf-8-sig so Excel opens accented text correctly
    return df.to_csv(index=False, sep=";").encode("utf-8-sig")


def _paragraphize(value, style: ParagraphStyle) -> Paragraph:
    s = str(value) if value is not None else ""
    s = s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    return Paragraph(s.replace("\n", "<br/>"), style)


def _auto_col_widths(data: list[list[str]], font_name: str, font_size: int, avail_width: float,
                     prefer_wide_idx: int | None = None) -> list[float]:
    """Compute column widths based on content, scaled to page width."""
    num_cols = len(data[0])
    max_w = [0.0] * num_cols
    sample_rows = data[:1] + data[1:301]
    pad = 12
    for row in sample_rows:
        for i, cell in enumerate(row):
            text = str(cell or "")
            w = pdfmetrics.stringWidth(text, font_name, font_size) + pad
            if w > max_w[i]:
                max_w[i] = w
    MIN_W, MAX_W = 40, 240
    MAX_WS = [MAX_W] * num_cols
    if prefer_wide_idx is not None and 0 <= prefer_wide_idx < num_cols:
        MAX_WS[prefer_wide_idx] = 320
    raw = [max(MIN_W, min(MAX_WS[i], max_w[i] or MIN_W)) for i in range(num_cols)]
    total = sum(raw) or 1.0
    scale = avail_width / total
    return [w * scale for w in raw]


def _table_style(font_name: str, row_count: int) -> TableStyle:
    style = TableStyle([
        ("FONTNAME", (0, 0), (-1, -1), font_name),
        ("BACKGROUND", (0, 0), (-1, 0), HEADER_COLOR),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("ALIGN", (0, 0), (-1, 0), "CENTER"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("BOTTOMPADDING", (0, 0), (-1, 0), 8),
        ("TOPPADDING", (0, 0), (-1, 0), 8),
        ("LEFTPADDING", (0, 0), (-1, -1), 4),
        ("RIGHTPADDING", (0, 0), (-1, -1), 4),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
    ])
    for row_num in range(1, row_count):
        style.add("BACKGROUND", (0, row_num), (-1, row_num), ROW_COLORS[row_num % 2])
    return style


def _on_page_factory(title: str, font_name: str):
    """Header with library name and title, footer with page number and timestamp."""
    def _on_page(canvas, doc_):
        canvas.saveState()
        top = doc_.height + doc_.topMargin
        canvas.setLineWidth(0.5)
        canvas.line(doc_.leftMargin, top - 15, doc_.width + doc_.leftMargin, top - 15)
        canvas.setFont(font_name, 10)
        canvas.drawCentredString(doc_.width / 2 + doc_.leftMargin, top - 12, title)
        canvas.setFont(font_name, 8)
        canvas.drawString(doc_.leftMargin, top - 12, Config.LIBRARY_NAME)

        canvas.line(doc_.leftMargin, doc_.bottomMargin - 10, doc_.width + doc_.leftMargin, doc_.bottomMargin - 10)
        canvas.drawCentredString(doc_.width / 2 + doc_.leftMargin, doc_.bottomMargin - 22,
                                 f"Page {canvas.getPageNumber()}")
        canvas.drawString(doc_.leftMargin, doc_.bottomMargin - 22, datetime.now().strftime("%d/%m/%Y %H:%M"))
        canvas.restoreState()
    return _on_page


def dataframe_to_pdf_bytes(title: str, df: pd.DataFrame, force_landscape: bool = True) -> bytes:
    """
    Convert a Pandas DataFrame into styled PDF bytes.
    - Smart width scaling
    - Auto splits large data into multiple pages
    - Never crashes with LayoutError
    """
    font_name = _ensure_font_registered()
    safe_df = df.copy() if df is not None else pd.DataFrame()
    if not safe_df.empty:
        safe_df = safe_df.fillna("")

    output = io.BytesIO()
    pagesize = landscape(A4) if force_landscape else A4
    doc = SimpleDocTemplate(
        output,
        pagesize=pagesize,
        leftMargin=2.0 * cm,
        rightMargin=2.0 * cm,
        topMargin=2.5 * cm,
        bottomMargin=2.5 * cm,
        title=title,
    )
    avail_width = doc.width

    styles = getSampleStyleSheet()
    base_cell = ParagraphStyle(
        "Cell", parent=styles["Normal"], fontName=font_name,
        fontSize=9, leading=11, wordWrap="CJK", alignment=TA_LEFT,
    )
    title_style = ParagraphStyle(
        "ReportTitle", parent=styles["Title"], fontName=font_name,
        fontSize=16, alignment=TA_CENTER, spaceAfter=16,
    )
    normal = ParagraphStyle("Plain", parent=styles["Normal"], fontName=font_name)
    on_page = _on_page_factory(title, font_name)

    elements = [Paragraph(title, title_style), Spacer(1, 12)]

    if safe_df.empty:
        elements.append(Paragraph("Aucune donnée disponible", normal))
        doc.build(elements, onFirstPage=on_page, onLaterPages=on_page)
        output.seek(0)
        return output.getvalue()

    headers = [str(c) for c in safe_df.columns]
    rows = safe_df.astype(str).values.tolist()
    data_str = [headers] + rows

    prefer_idx = None
    for i, h in enumerate(headers):
        if h.strip().lower() in ("title", "titre", "document_title"):
            prefer_idx = i
            break

    col_widths = _auto_col_widths(data_str, font_name, 9, avail_width, prefer_wide_idx=prefer_idx)

    def make_table_chunk(chunk_rows):
        data = [[_paragraphize(h, base_cell) for h in headers]]
        for r in chunk_rows:
            data.append([_paragraphize(v, base_cell) for v in r])
        table = LongTable(data, colWidths=col_widths, repeatRows=1, hAlign="LEFT", splitByRow=1)
        table.setStyle(_table_style(font_name, len(data)))
        return table

    chunk_size = 100
    try:
        for i in range(0, len(rows), chunk_size):
            elements.append(make_table_chunk(rows[i:i + chunk_size]))
            elements.append(Spacer(1, 12))
            if i + chunk_size < len(rows):
                elements.append(PageBreak())
    except Exception as e:
        elements = [
            Paragraph("⚠️ Erreur lors de la génération du tableau :", normal),
            Paragraph(str(e), normal),
            Paragraph("Données partielles :", normal),
        ]
        for i in range(min(50, len(rows))):
            elements.append(_paragraphize(" | ".join(map(str, rows[i])), normal))

    try:
        doc.build(elements, onFirstPage=on_page, onLaterPages=on_page)
    except Exception as e:
        output = io.BytesIO()
        doc = SimpleDocTemplate(output, pagesize=pagesize)
        doc.build([
            Paragraph("La génération du rapport a échoué (limites de mise en page).", normal),
            _paragraphize(str(e), normal),
        ])

    output.seek(0)
    return output.getvalue()


def create_sections_report(title: str, sections: list[dict]) -> bytes:
    """
    Multi-section landscape report.

    Each section is a dict with 'title' and 'data' (DataFrame or list of dicts).
    """
    font_name = _ensure_font_registered()
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer, pagesize=landscape(A4),
        leftMargin=2.0 * cm, rightMargin=2.0 * cm, topMargin=2.5 * cm, bottomMargin=2.5 * cm,
        title=title,
    )
    styles = getSampleStyleSheet()
    main_title_style = ParagraphStyle("MainTitle", parent=styles["Title"], fontName=font_name,
                                      fontSize=18, alignment=TA_CENTER, spaceAfter=20)
    section_title_style = ParagraphStyle("SectionTitle", parent=styles["Heading1"], fontName=font_name,
                                         fontSize=14, spaceBefore=20, spaceAfter=10)
    base_cell = ParagraphStyle("Cell", parent=styles["Normal"], fontName=font_name,
                               fontSize=9, leading=11, wordWrap="CJK", alignment=TA_LEFT)
    normal = ParagraphStyle("Plain", parent=styles["Normal"], fontName=font_name)

    elements = [Paragraph(title, main_title_style),
                Paragraph(f"Généré le {datetime.now().strftime('%d/%m/%Y à %H:%M')}", normal),
                Spacer(1, 0.8 * cm)]

    for i, section in enumerate(sections):
        elements.append(Paragraph(section.get("title", f"Section {i + 1}"), section_title_style))
        data = section.get("data")
        df = pd.DataFrame(data) if isinstance(data, list) else data
        if df is None or df.empty:
            elements.append(Paragraph("Aucune donnée disponible", normal))
            continue

        df = df.fillna("")
        headers = [str(c) for c in df.columns]
        rows = df.astype(str).values.tolist()
        col_widths = _auto_col_widths([headers] + rows, font_name, 9, doc.width)
        table_data = [[_paragraphize(h, base_cell) for h in headers]]
        table_data += [[_paragraphize(v, base_cell) for v in row] for row in rows]
        table = Table(table_data, colWidths=col_widths, repeatRows=1)
        table.setStyle(_table_style(font_name, len(table_data)))
        elements.append(table)

    on_page = _on_page_factory(title, font_name)
    doc.build(elements, onFirstPage=on_page, onLaterPages=on_page)
    buffer.seek(0)
    return buffer.getvalue()


def export_response_parts(df: pd.DataFrame, title: str, fmt: str, base_name: str):
    """(bytes, download_name, mimetype) for csv/xlsx/pdf."""
    stamp = datetime.now().strftime("%Y%m%d")
    fmt = (fmt or "xlsx").lower()
    if fmt == "csv":
        return dataframe_to_csv_bytes(df), f"{base_name}_{stamp}.csv", "text/csv"
    if fmt == "pdf":
        return dataframe_to_pdf_bytes(title, df), f"{base_name}_{stamp}.pdf", "application/pdf"
    return (
        dataframe_to_excel_bytes(df, sheet_name=title),
        f"{base_name}_{stamp}.xlsx",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )
