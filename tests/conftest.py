"""Shared fixtures: documents built on the fly and a SQLite database."""

import io
from typing import List, Optional, Sequence, Union

import pytest
from docx import Document
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from contract_esign.audit.database import DatabaseManager
from contract_esign.models.enums import ContractType
from contract_esign.models.template import Template


LABOR_SCHEMA = (
    "client_name",
    "client_initials",
    "client_intials",
    "total_amount",
    "deposit_amount",
    "balance_amount",
)

POSTPARTUM_SCHEMA = (
    "clientName",
    "clientInitials",
    "totalHours",
    "hourlyRate",
    "overnightFee",
    "deposit",
    "totalAmount",
)

Paragraph = Union[str, Sequence[str]]


def build_docx(
    paragraphs: List[Paragraph],
    header: Optional[str] = None,
    table_cells: Optional[List[str]] = None,
) -> bytes:
    """
    Build a .docx. A paragraph given as a sequence of strings is written
    as one run per string, which splits tags across runs.
    """
    document = Document()
    for paragraph in paragraphs:
        if isinstance(paragraph, str):
            document.add_paragraph(paragraph)
        else:
            p = document.add_paragraph()
            for index, text in enumerate(paragraph):
                run = p.add_run(text)
                run.bold = index == 0
    if table_cells:
        table = document.add_table(rows=1, cols=len(table_cells))
        for cell, text in zip(table.rows[0].cells, table_cells):
            cell.text = text
    if header is not None:
        section = document.sections[0]
        section.header.is_linked_to_previous = False
        section.header.paragraphs[0].text = header
    output = io.BytesIO()
    document.save(output)
    return output.getvalue()


def build_pdf(
    page_count: int = 1,
    texts: Optional[List[List[str]]] = None,
    pagesize=letter,
) -> bytes:
    """Build a PDF with reportlab, one list of text lines per page."""
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=pagesize)
    for index in range(page_count):
        lines = texts[index] if texts and index < len(texts) else [f"Page {index + 1}"]
        y = pagesize[1] - 72
        for line in lines:
            pdf.drawString(72, y, line)
            y -= 14
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


@pytest.fixture
def make_docx():
    return build_docx


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest.fixture
def db_manager(tmp_path):
    """SQLite-backed DatabaseManager with all tables created."""
    manager = DatabaseManager(database_url=f"sqlite:///{tmp_path / 'esign.db'}")
    manager.init_database()
    yield manager
    manager.close()


@pytest.fixture
def labor_template():
    return Template(
        id="labor-support-v1",
        contract_type=ContractType.LABOR_SUPPORT,
        storage_key="labor.docx",
        placeholder_schema=LABOR_SCHEMA,
        reference_page_count=1,
    )


@pytest.fixture
def postpartum_template():
    return Template(
        id="postpartum-doula-v1",
        contract_type=ContractType.POSTPARTUM_DOULA,
        storage_key="postpartum.docx",
        placeholder_schema=POSTPARTUM_SCHEMA,
        reference_page_count=1,
    )


@pytest.fixture
def labor_variables():
    return {
        "client_name": "Jerry Techluminate",
        "client_initials": "JT",
        "client_intials": "JT",
        "total_amount": "$2,500",
        "deposit_amount": "$500",
        "balance_amount": "$2,000",
    }
