"""PDF rendering for template previews and document verification slips."""

from datetime import datetime
from io import BytesIO
from typing import Dict, List
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle


PAGE_MARGIN = 20 * mm
CONTENT_WIDTH = A4[0] - (PAGE_MARGIN * 2)


styles = getSampleStyleSheet()

TITLE_STYLE = ParagraphStyle(
    name="PreviewTitle",
    parent=styles["Title"],
    fontName="Helvetica-Bold",
    fontSize=16,
    leading=20,
    alignment=0,
    spaceAfter=12,
    textColor=colors.black,
)

NOTICE_STYLE = ParagraphStyle(
    name="Notice",
    fontName="Helvetica-Oblique",
    fontSize=8,
    leading=10,
    textColor=colors.grey,
    wordWrap="CJK",
    splitLongWords=True,
)

BODY_STYLE = ParagraphStyle(
    name="BodyText",
    fontName="Helvetica",
    fontSize=10,
    leading=13,
    textColor=colors.black,
    wordWrap="CJK",
    splitLongWords=True,
    spaceAfter=4,
)

LABEL_STYLE = ParagraphStyle(
    name="LabelText",
    parent=BODY_STYLE,
    fontName="Helvetica-Bold",
)


def _para(value: str, style: ParagraphStyle = BODY_STYLE) -> Paragraph:
    """Create a wrapping paragraph with safe escaping and soft line handling."""
    text = escape(str(value or "").strip())
    text = text.replace("\n", "<br/>")
    return Paragraph(text or "&nbsp;", style)


def _kv_table(rows: List[List[str]]) -> Table:
    table = Table(
        [[_para(label, LABEL_STYLE), _para(value, BODY_STYLE)] for label, value in rows],
        colWidths=[50 * mm, CONTENT_WIDTH - (50 * mm)],
        hAlign="LEFT",
    )
    table.setStyle(
        TableStyle(
            [
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("BACKGROUND", (0, 0), (0, -1), colors.whitesmoke),
                ("LEFTPADDING", (0, 0), (-1, -1), 4),
                ("RIGHTPADDING", (0, 0), (-1, -1), 4),
                ("TOPPADDING", (0, 0), (-1, -1), 4),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
            ]
        )
    )
    return table


def _build(story: List, title: str) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=PAGE_MARGIN,
        rightMargin=PAGE_MARGIN,
        topMargin=PAGE_MARGIN,
        bottomMargin=PAGE_MARGIN,
        title=title,
        allowSplitting=True,
    )
    doc.build(story)
    return buffer.getvalue()


def render_preview_pdf(title: str, lines: List[str]) -> bytes:
    """Plain-text PDF rendering of a template's paragraphs (layout is approximate)."""
    story: List = [
        Paragraph(escape(title or "Template preview"), TITLE_STYLE),
        Paragraph(
            f"Preview generated {datetime.utcnow().strftime('%Y-%m-%d %H:%M')} UTC. Layout is approximate; download the DOCX for the final document.",
            NOTICE_STYLE,
        ),
        Spacer(1, 8),
    ]
    for line in lines:
        story.append(_para(line))
    return _build(story, title or "Template preview")


def render_verification_pdf(details: Dict[str, str]) -> bytes:
    """One-page slip confirming a document's verification result."""
    story: List = [
        Paragraph("Document Verification", TITLE_STYLE),
        _kv_table([[label, value] for label, value in details.items()]),
        Spacer(1, 10),
        Paragraph(
            "This slip reflects the registry state at the time of the check. Re-scan the QR code for the current status.",
            NOTICE_STYLE,
        ),
    ]
    return _build(story, "Document Verification")
