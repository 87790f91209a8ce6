"""Calibration probe rendering."""

import io
import logging
from typing import Dict, List

from PyPDF2 import PdfReader, PdfWriter
from reportlab.lib import colors
from reportlab.pdfgen import canvas

from ..models.coordinates import FieldCoordinate, PageDimensions
from ..models.enums import FieldKind


logger = logging.getLogger(__name__)

LABEL_FONT = "Helvetica"
LABEL_FONT_SIZE = 7

KIND_COLORS = {
    FieldKind.SIGNATURE: colors.red,
    FieldKind.INITIALS: colors.orange,
    FieldKind.DATE: colors.blue,
    FieldKind.TEXT: colors.green,
}


def _overlay_page(page: PageDimensions, entries: List[FieldCoordinate]) -> bytes:
    """Draw one overlay page; entries are top-left origin, reportlab is bottom-left."""
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(page.width, page.height))
    pdf.setLineWidth(1)
    for entry in entries:
        color = KIND_COLORS.get(entry.kind, colors.red)
        box = entry.flipped(page.height)
        pdf.setStrokeColor(color)
        pdf.setFillColor(color)
        pdf.rect(box.x, box.y, box.width, box.height, stroke=1, fill=0)
        pdf.setFont(LABEL_FONT, LABEL_FONT_SIZE)
        pdf.drawString(box.x + 2, box.y + box.height + 2, entry.label or entry.field_name)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def render_probe(
    reference_pdf: bytes,
    page_dimensions: List[PageDimensions],
    entries: List[FieldCoordinate],
) -> bytes:
    """
    Draw bordered, labelled boxes for ``entries`` onto a copy of a PDF.

    Entries must already be in the top-left origin frame and fit their
    pages. The reference bytes are never modified.
    """
    by_page: Dict[int, List[FieldCoordinate]] = {}
    for entry in entries:
        by_page.setdefault(entry.page_index, []).append(entry)

    reader = PdfReader(io.BytesIO(reference_pdf))
    writer = PdfWriter()
    for index, page in enumerate(reader.pages):
        if index in by_page:
            overlay = PdfReader(io.BytesIO(_overlay_page(page_dimensions[index], by_page[index])))
            page.merge_page(overlay.pages[0])
        writer.add_page(page)

    output = io.BytesIO()
    writer.write(output)
    logger.debug(f"Rendered probe with {len(entries)} marker(s) on {len(by_page)} page(s)")
    return output.getvalue()
