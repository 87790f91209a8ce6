"""Page geometry measurement for .docx and .pdf documents."""

import io
import logging
import re
import zipfile
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import pdfplumber
from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from ..exceptions import DocumentUnreadable, LayoutDriftError
from ..models.coordinates import GEOMETRY_TOLERANCE, PageDimensions
from ..models.enums import DocumentFormat
from ..rendering.template_renderer import unresolved_tags


logger = logging.getLogger(__name__)

_APP_PAGES = re.compile(rb"<(?:\w+:)?Pages>\s*(\d+)\s*</(?:\w+:)?Pages>")


@dataclass
class DocxGeometry:
    """
    Page layout declared by a .docx.

    ``page_count`` comes from the document's extended properties and is
    None when the producing application did not record it.
    """
    section_sizes: List[PageDimensions] = field(default_factory=list)
    page_count: Optional[int] = None


def measure_pdf(content: bytes) -> List[PageDimensions]:
    """
    Measure each page's visible size in points, honouring /Rotate.

    Raises:
        DocumentUnreadable: If the PDF cannot be parsed.
    """
    try:
        reader = PdfReader(io.BytesIO(content))
        pages = []
        for page in reader.pages:
            width = float(page.mediabox.width)
            height = float(page.mediabox.height)
            if page.rotation % 180 == 90:
                width, height = height, width
            pages.append(PageDimensions(width=round(width, 2), height=round(height, 2)))
    except (PdfReadError, ValueError, KeyError) as e:
        raise DocumentUnreadable(f"PDF is corrupted or encrypted: {e}", doc_format="pdf") from e
    if not pages:
        raise DocumentUnreadable("PDF has no pages", doc_format="pdf")
    return pages


def measure_docx(content: bytes) -> DocxGeometry:
    """
    Read section page sizes and the recorded page count from a .docx.

    Raises:
        DocumentUnreadable: If the document cannot be opened.
    """
    try:
        document = Document(io.BytesIO(content))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
        raise DocumentUnreadable(f"Word document is corrupted: {e}", doc_format="docx") from e

    sizes = []
    for section in document.sections:
        if section.page_width is None or section.page_height is None:
            continue
        size = PageDimensions(
            width=round(section.page_width.pt, 2),
            height=round(section.page_height.pt, 2),
        )
        if size not in sizes:
            sizes.append(size)

    page_count = None
    with zipfile.ZipFile(io.BytesIO(content)) as archive:
        if "docProps/app.xml" in archive.namelist():
            match = _APP_PAGES.search(archive.read("docProps/app.xml"))
            if match:
                page_count = int(match.group(1)) or None

    return DocxGeometry(section_sizes=sizes, page_count=page_count)


def measure_geometry(
    content: bytes,
    doc_format: DocumentFormat,
) -> Tuple[Optional[int], List[PageDimensions]]:
    """
    Page count and page sizes of a document in either format.

    For a PDF every page is listed. For a .docx the distinct section sizes
    are listed and the count is None when the document does not record one.
    """
    if doc_format == DocumentFormat.PDF:
        pages = measure_pdf(content)
        return len(pages), pages
    if doc_format == DocumentFormat.DOCX:
        geometry = measure_docx(content)
        return geometry.page_count, geometry.section_sizes
    raise ValueError(f"Unsupported format: {doc_format.value}")


def check_pdf_geometry(
    expected: List[PageDimensions],
    actual: List[PageDimensions],
    tolerance: float = GEOMETRY_TOLERANCE,
) -> None:
    """
    Require two PDF geometries to match page for page.

    Raises:
        LayoutDriftError: On any page count or page size difference.
    """
    if len(expected) != len(actual):
        raise LayoutDriftError(
            "Page count changed",
            expected_pages=len(expected),
            actual_pages=len(actual),
        )
    for index, (want, got) in enumerate(zip(expected, actual)):
        if not want.matches(got, tolerance):
            raise LayoutDriftError(
                f"Page {index} size changed from {want.width}x{want.height} "
                f"to {got.width}x{got.height}",
                expected_pages=len(expected),
                actual_pages=len(actual),
                details={"page_index": index},
            )


def check_docx_geometry(
    expected: DocxGeometry,
    actual: List[PageDimensions],
    tolerance: float = GEOMETRY_TOLERANCE,
) -> None:
    """
    Require a converted PDF to keep the page layout its .docx declared.

    Every output page must have one of the section page sizes, and the
    page count must equal the recorded count when the .docx has one.

    Raises:
        LayoutDriftError: On a page count or page size difference.
    """
    if expected.page_count is not None and expected.page_count != len(actual):
        raise LayoutDriftError(
            "Conversion changed the page count",
            expected_pages=expected.page_count,
            actual_pages=len(actual),
        )
    if not expected.section_sizes:
        return
    for index, page in enumerate(actual):
        if not any(size.matches(page, tolerance) for size in expected.section_sizes):
            raise LayoutDriftError(
                f"Page {index} is {page.width}x{page.height}, which no section declares",
                expected_pages=expected.page_count,
                actual_pages=len(actual),
                details={
                    "page_index": index,
                    "section_sizes": [s.to_dict() for s in expected.section_sizes],
                },
            )


def find_placeholder_residue(pdf_content: bytes) -> List[str]:
    """
    Scan a PDF's text for leftover {tags} or the literal "undefined".

    Returns:
        Sorted list of offending tokens; empty when the text is clean.
    """
    texts = []
    with pdfplumber.open(io.BytesIO(pdf_content)) as pdf:
        for page in pdf.pages:
            texts.append(page.extract_text() or "")

    residue = {"{" + tag + "}" for tag in unresolved_tags(texts)}
    if any(re.search(r"\bundefined\b", text) for text in texts):
        residue.add("undefined")
    return sorted(residue)
