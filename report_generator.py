# report_generator.py
import os
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Tuple
from xml.sax.saxutils import escape

from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer, Image
from reportlab.platypus.flowables import HRFlowable
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib import colors
from reportlab.lib.units import cm
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.lib.fonts import addMapping

from patlog import config
from patlog.data_models import Inspection
from patlog.qr_code import certificate_url

# --- Style & layout constants ---
COLOR_ROW_BG = colors.HexColor('#EEEEEE')
COLOR_ROW_BORDER = colors.HexColor('#DDDDDD')
COLOR_PASS_BG = colors.HexColor('#CCFFCC')
COLOR_FAIL_BG = colors.HexColor('#FFCCCC')
COLOR_PASS_TEXT = colors.HexColor('#009900')
COLOR_FAIL_TEXT = colors.HexColor('#CC0000')
COLOR_FOOTER_LINE = colors.HexColor('#CCCCCC')
LABEL_COLUMN_WIDTH = 150
PAGE_MARGIN = 2*cm
SPACER_LARGE = 20
SPACER_MEDIUM = 10
IMAGE_MAX_WIDTH = 400
IMAGE_MAX_HEIGHT = 300
NOT_SPECIFIED = "Not specified"
DATE_FORMAT = "%d/%m/%Y"


class CertificateError(RuntimeError):
    """The PDF could not be built; no bytes are returned."""


# ==============================================================================
# SECTION DESCRIPTORS
# ==============================================================================

@dataclass
class HeaderSection:
    title: str
    serial: str
    passed: bool

@dataclass
class KeyValueSection:
    title: str
    rows: List[Tuple[str, str]]
    # Background of the last row only (the overall result of a results table)
    last_row_background: Optional[colors.Color] = None

@dataclass
class TextSection:
    title: str
    text: str

@dataclass
class ImageSection:
    title: str
    image_data: Optional[bytes] = None
    fallback_message: Optional[str] = None

@dataclass
class QrSection:
    title: str
    qr_png: bytes
    url: str
    width: int = config.QR_RENDER_WIDTH

@dataclass
class FooterSection:
    generated_at: datetime
    app_name: str = config.APP_NAME
    lines: List[str] = field(default_factory=list)

# ==============================================================================
# FORMATTING HELPERS
# ==============================================================================

def format_number(value) -> str:
    """13.0 -> '13', 0.50 -> '0.5', never scientific notation."""
    if value is None:
        return ""
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        return str(value)
    if d == d.to_integral_value():
        return str(d.quantize(Decimal(1)))
    return format(d.normalize(), 'f')

def format_date(value) -> str:
    return value.strftime(DATE_FORMAT) if value else ""

def pass_fail(flag) -> str:
    return "PASS" if flag else "FAIL"

def _with_unit(value, unit: str, separator: str = " ") -> str:
    return f"{format_number(value)}{separator}{unit}"

# ==============================================================================
# SECTION BUILDERS
# ==============================================================================

def _equipment_details(inspection: Inspection) -> KeyValueSection:
    power = inspection.equipment_power
    return KeyValueSection(
        title="Equipment Details",
        rows=[
            ("Description", inspection.description),
            ("Manufacturer", inspection.manufacturer.strip() if inspection.manufacturer and inspection.manufacturer.strip() else NOT_SPECIFIED),
            ("Location", inspection.location),
            ("Equipment Class", f"Class {inspection.equipment_class} ({inspection.equipment_class_label})"),
            ("Equipment Power", _with_unit(power, "W") if power not in (None, "") else NOT_SPECIFIED),
        ],
    )

def _test_results(inspection: Inspection) -> KeyValueSection:
    rows = [
        ("Inspection Date", format_date(inspection.inspection_date)),
        ("Re-inspection Due", format_date(inspection.reinspection_date)),
        ("Inspector", inspection.inspector),
        ("Visual Inspection", pass_fail(inspection.visual_pass)),
        ("Appliance Plug Check", pass_fail(inspection.appliance_plug_check)),
        ("Fuse Rating", _with_unit(inspection.fuse_rating, "A", separator="")),
        ("Earth Continuity", _with_unit(inspection.earth_ohms, "Ohms")),
        ("Insulation Resistance", _with_unit(inspection.insulation_mohms, "MOhms")),
        ("Leakage Current", _with_unit(inspection.leakage, "mA")),
        ("Load/Operation Test", "Performed" if inspection.load_test else "Not performed"),
    ]
    if inspection.rcd_trip_time is not None:
        rows.append(("RCD Trip Time", _with_unit(inspection.rcd_trip_time, "ms")))

    # Always last: the summary row carries the pass/fail background
    rows.append(("Overall Result", pass_fail(inspection.passed)))
    return KeyValueSection(
        title="Test Results",
        rows=rows,
        last_row_background=COLOR_PASS_BG if inspection.passed else COLOR_FAIL_BG,
    )

def _equipment_image(inspection: Inspection, image_loader: Optional[Callable]) -> ImageSection:
    section = ImageSection(title="Equipment Image")
    try:
        if image_loader is None:
            raise LookupError("no image loader")
        data = image_loader(inspection)
        ImageReader(io.BytesIO(data)).getSize()
        section.image_data = data
    except Exception as e:
        logging.warning(f"Image for inspection {inspection.id} could not be embedded: {e}")
        section.fallback_message = "Image could not be displayed."
    return section

def build_certificate_sections(inspection: Inspection, qr_png: bytes,
                               image_loader: Optional[Callable] = None,
                               generated_at: Optional[datetime] = None,
                               base_url: Optional[str] = None) -> list:
    """Turns one inspection into the ordered list of certificate sections."""
    generated_at = generated_at or datetime.now()
    sections = [
        HeaderSection(title="PAT Inspection Certificate", serial=inspection.serial, passed=inspection.passed),
        _equipment_details(inspection),
        _test_results(inspection),
    ]
    if inspection.comments and inspection.comments.strip():
        sections.append(TextSection(title="Comments", text=inspection.comments))
    if inspection.has_image:
        sections.append(_equipment_image(inspection, image_loader))
    sections.append(QrSection(
        title="Certificate Verification",
        qr_png=qr_png,
        url=certificate_url(inspection.id, base_url),
    ))
    sections.append(FooterSection(
        generated_at=generated_at,
        lines=[f"This certificate was generated on {generated_at.strftime('%d/%m/%Y at %H:%M')}", config.APP_NAME],
    ))
    return sections

# ==============================================================================
# RENDERING
# ==============================================================================

def _resolve_fonts():
    """Uses Noto Sans from FONT_DIR when installed, Helvetica otherwise."""
    regular = os.path.join(config.FONT_DIR, "NotoSans-Regular.ttf")
    bold = os.path.join(config.FONT_DIR, "NotoSans-Bold.ttf")
    if os.path.exists(regular) and os.path.exists(bold):
        try:
            if "NotoSans" not in pdfmetrics.getRegisteredFontNames():
                pdfmetrics.registerFont(TTFont("NotoSans", regular))
                pdfmetrics.registerFont(TTFont("NotoSans-Bold", bold))
                addMapping("NotoSans", 0, 0, "NotoSans")
                addMapping("NotoSans", 1, 0, "NotoSans-Bold")
                addMapping("NotoSans", 0, 1, "NotoSans")
                addMapping("NotoSans", 1, 1, "NotoSans-Bold")
            return "NotoSans", "NotoSans-Bold", "NotoSans"
        except Exception as e:
            logging.error(f"Could not load the Noto Sans fonts: {e}")
    return "Helvetica", "Helvetica-Bold", "Helvetica-Oblique"

def _create_styles(font_normal, font_bold, font_italic):
    styles = getSampleStyleSheet()
    styles['Normal'].fontName = font_normal
    styles['Normal'].fontSize = 10
    styles['Normal'].leading = 13
    styles.add(ParagraphStyle(name='NormalBold', parent=styles['Normal'], fontName=font_bold))
    styles.add(ParagraphStyle(name='ReportTitle', fontName=font_bold, fontSize=20, leading=24, alignment=TA_CENTER, spaceAfter=4))
    styles.add(ParagraphStyle(name='HeaderLine', fontName=font_normal, fontSize=14, leading=18, alignment=TA_CENTER))
    styles.add(ParagraphStyle(name='SectionHeader', fontName=font_bold, fontSize=14, leading=18, spaceAfter=2))
    styles.add(ParagraphStyle(name='Centered', parent=styles['Normal'], alignment=TA_CENTER))
    styles.add(ParagraphStyle(name='CenteredItalic', parent=styles['Normal'], fontName=font_italic, alignment=TA_CENTER))
    styles.add(ParagraphStyle(name='Fallback', parent=styles['Normal'], fontName=font_italic))
    return styles

def _create_styled_paragraph(text, style):
    """Escapes user text for reportlab markup and keeps line breaks."""
    text_str = escape(str(text)) if text is not None else ''
    return Paragraph(text_str.replace('\n', '<br/>'), style)

def _section_title(story, styles, title):
    story.append(_create_styled_paragraph(title, styles['SectionHeader']))
    story.append(HRFlowable(width="100%", thickness=1, color=colors.black, spaceBefore=2, spaceAfter=SPACER_MEDIUM))

def key_value_table_style(section: KeyValueSection) -> list:
    """Bottom borders only, grey rows, optional highlight of the last row."""
    last = len(section.rows) - 1
    commands = [
        ('BACKGROUND', (0, 0), (-1, last), COLOR_ROW_BG),
        ('LINEBELOW', (0, 0), (-1, last), 1, COLOR_ROW_BORDER),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
        ('LEFTPADDING', (0, 0), (-1, -1), 10),
        ('RIGHTPADDING', (0, 0), (-1, -1), 10),
        ('TOPPADDING', (0, 0), (-1, -1), 5),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 5),
    ]
    if section.last_row_background is not None:
        commands.append(('BACKGROUND', (0, last), (-1, last), section.last_row_background))
    return commands

def _render_header(section: HeaderSection, story, styles, doc_width):
    story.append(_create_styled_paragraph(section.title, styles['ReportTitle']))
    story.append(Spacer(1, SPACER_LARGE))
    verdict_style = ParagraphStyle(
        name='Verdict', parent=styles['HeaderLine'], fontName=styles['NormalBold'].fontName,
        textColor=COLOR_PASS_TEXT if section.passed else COLOR_FAIL_TEXT,
    )
    box = Table(
        [[_create_styled_paragraph(f"Serial Number: {section.serial}", styles['HeaderLine'])],
         [_create_styled_paragraph("PASSED" if section.passed else "FAILED", verdict_style)]],
        colWidths=[doc_width],
    )
    box.setStyle(TableStyle([
        ('BOX', (0, 0), (-1, -1), 1, colors.black),
        ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
        ('TOPPADDING', (0, 0), (-1, -1), 4),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
    ]))
    story.append(box)
    story.append(Spacer(1, SPACER_LARGE))

def _render_key_value(section: KeyValueSection, story, styles, doc_width):
    _section_title(story, styles, section.title)
    data = [
        [_create_styled_paragraph(label, styles['NormalBold']), _create_styled_paragraph(value, styles['Normal'])]
        for label, value in section.rows
    ]
    table = Table(data, colWidths=[LABEL_COLUMN_WIDTH, doc_width - LABEL_COLUMN_WIDTH])
    table.setStyle(TableStyle(key_value_table_style(section)))
    story.append(table)
    story.append(Spacer(1, SPACER_LARGE))

def _render_text(section: TextSection, story, styles, doc_width):
    _section_title(story, styles, section.title)
    story.append(_create_styled_paragraph(section.text, styles['Normal']))
    story.append(Spacer(1, SPACER_LARGE))

def _render_image(section: ImageSection, story, styles, doc_width):
    _section_title(story, styles, section.title)
    if section.image_data:
        img = Image(io.BytesIO(section.image_data), width=IMAGE_MAX_WIDTH, height=IMAGE_MAX_HEIGHT, kind='proportional')
        img.hAlign = 'CENTER'
        story.append(img)
    else:
        story.append(_create_styled_paragraph(section.fallback_message or "Image could not be displayed.", styles['Fallback']))
    story.append(Spacer(1, SPACER_LARGE))

def _render_qr(section: QrSection, story, styles, doc_width):
    _section_title(story, styles, section.title)
    img = Image(io.BytesIO(section.qr_png), width=section.width, height=section.width)
    img.hAlign = 'CENTER'
    story.append(img)
    story.append(Spacer(1, 5))
    story.append(_create_styled_paragraph("Scan to verify certificate or visit:", styles['Centered']))
    story.append(_create_styled_paragraph(section.url, styles['CenteredItalic']))

def _render_footer(section: FooterSection, story, styles, doc_width):
    story.append(Spacer(1, 30))
    for line in section.lines:
        story.append(_create_styled_paragraph(line, styles['CenteredItalic']))

_RENDERERS = {
    HeaderSection: _render_header,
    KeyValueSection: _render_key_value,
    TextSection: _render_text,
    ImageSection: _render_image,
    QrSection: _render_qr,
    FooterSection: _render_footer,
}

def _draw_page_footer(canvas, doc, serial, font_normal):
    """Draws the page footer on every page."""
    canvas.saveState()
    canvas.setFont(font_normal, 8)
    canvas.setStrokeColor(COLOR_FOOTER_LINE)
    canvas.line(doc.leftMargin, 1.4*cm, doc.width + doc.leftMargin, 1.4*cm)
    canvas.drawString(doc.leftMargin, 1*cm, f"{config.APP_NAME}   |   S/N: {serial}")
    canvas.drawRightString(doc.width + doc.leftMargin, 1*cm, f"Page {doc.page}")
    canvas.restoreState()

def render_sections(sections: list, serial: str = "") -> bytes:
    """Builds the PDF from a section list; raises CertificateError on any failure."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, rightMargin=PAGE_MARGIN, leftMargin=PAGE_MARGIN,
                            topMargin=PAGE_MARGIN, bottomMargin=PAGE_MARGIN,
                            title="PAT Inspection Certificate", author=config.APP_NAME)

    font_normal, font_bold, font_italic = _resolve_fonts()
    styles = _create_styles(font_normal, font_bold, font_italic)
    story = []
    try:
        for section in sections:
            _RENDERERS[type(section)](section, story, styles, doc.width)
        footer_callback = lambda canvas, doc: _draw_page_footer(canvas, doc, serial, font_normal)
        doc.build(story, onFirstPage=footer_callback, onLaterPages=footer_callback)
    except Exception as e:
        logging.error(f"Error while building the certificate PDF: {e}", exc_info=True)
        raise CertificateError("Certificate could not be generated") from e
    return buffer.getvalue()

def create_certificate(inspection: Inspection, qr_png: bytes,
                       image_loader: Optional[Callable] = None,
                       generated_at: Optional[datetime] = None) -> bytes:
    """Renders the PAT certificate for one inspection and returns the PDF bytes."""
    sections = build_certificate_sections(inspection, qr_png, image_loader, generated_at)
    pdf_bytes = render_sections(sections, serial=inspection.serial)
    logging.info(f"Certificate generated for inspection {inspection.id} ({len(pdf_bytes)} bytes)")
    return pdf_bytes
