"""Template renderer: substitutes {tag} placeholders in .docx templates."""

import io
import logging
import re
import zipfile
from datetime import datetime
from typing import Iterator, List, Mapping, Optional, Set

from docx import Document
from docx.document import Document as DocxDocument
from docx.table import Table
from docx.text.paragraph import Paragraph

from ..exceptions import MissingRequiredField, PlaceholderMismatch
from ..models.template import Template
from ..registry.template_registry import TemplateRegistry


logger = logging.getLogger(__name__)

TAG_PATTERN = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Values that indicate an unset variable leaked through from upstream code.
_SENTINEL_VALUES = {"undefined", "null", "none", "nan"}

# Fixed timestamp for zip members and core properties.
_FIXED_ZIP_TIME = (1980, 1, 1, 0, 0, 0)
_FIXED_CORE_TIME = datetime(2000, 1, 1)


def _iter_table_paragraphs(table: Table) -> Iterator[Paragraph]:
    for row in table.rows:
        for cell in row.cells:
            yield from cell.paragraphs
            for nested in cell.tables:
                yield from _iter_table_paragraphs(nested)


def iter_paragraphs(document: DocxDocument) -> Iterator[Paragraph]:
    """Yield every paragraph in the body, tables, headers and footers."""
    yield from document.paragraphs
    for table in document.tables:
        yield from _iter_table_paragraphs(table)
    for section in document.sections:
        parts = [
            section.header, section.footer,
            section.first_page_header, section.first_page_footer,
            section.even_page_header, section.even_page_footer,
        ]
        for part in parts:
            if part.is_linked_to_previous:
                continue
            yield from part.paragraphs
            for table in part.tables:
                yield from _iter_table_paragraphs(table)


def _run_text(paragraph: Paragraph) -> str:
    return "".join(run.text for run in paragraph.runs)


def substitute_paragraph(paragraph: Paragraph, variables: Mapping[str, str]) -> int:
    """
    Replace tags in a paragraph, including tags split across runs.

    The value is written into the run where the tag starts, so that run's
    formatting applies; tag characters in following runs are removed.

    Returns:
        Number of tags replaced.
    """
    runs = paragraph.runs
    texts = [run.text for run in runs]
    full = "".join(texts)
    matches = [m for m in TAG_PATTERN.finditer(full) if m.group(1) in variables]
    if not matches:
        return 0

    starts = []
    offset = 0
    for text in texts:
        starts.append(offset)
        offset += len(text)

    def run_index(position: int) -> int:
        for i, text in enumerate(texts):
            if starts[i] <= position < starts[i] + len(text):
                return i
        raise IndexError(position)

    new_texts = list(texts)
    # Back to front, so earlier offsets stay valid.
    for match in reversed(matches):
        value = variables[match.group(1)]
        first = run_index(match.start())
        last = run_index(match.end() - 1)
        head = new_texts[first][:match.start() - starts[first]]
        if first == last:
            tail = new_texts[first][match.end() - starts[first]:]
            new_texts[first] = head + value + tail
        else:
            new_texts[first] = head + value
            for i in range(first + 1, last):
                new_texts[i] = ""
            new_texts[last] = new_texts[last][match.end() - starts[last]:]

    for run, text in zip(runs, new_texts):
        if run.text != text:
            run.text = text
    return len(matches)


def normalize_docx(content: bytes) -> bytes:
    """Rewrite the .docx zip with fixed member timestamps."""
    source = zipfile.ZipFile(io.BytesIO(content))
    output = io.BytesIO()
    with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as target:
        for info in source.infolist():
            member = zipfile.ZipInfo(info.filename, date_time=_FIXED_ZIP_TIME)
            member.compress_type = zipfile.ZIP_DEFLATED
            member.external_attr = info.external_attr
            target.writestr(member, source.read(info.filename))
    return output.getvalue()


class TemplateRenderer:
    """
    Merges contract variables into a .docx template.

    Only run text is changed; sections, page sizes, margins and styles are
    left exactly as the template defines them.
    """

    def __init__(self, registry: Optional[TemplateRegistry] = None):
        self._registry = registry

    def find_tags(self, template_bytes: bytes) -> Set[str]:
        """Return every placeholder name present in a template."""
        document = Document(io.BytesIO(template_bytes))
        return self._collect_tags(document)

    @staticmethod
    def _collect_tags(document: DocxDocument) -> Set[str]:
        tags: Set[str] = set()
        for paragraph in iter_paragraphs(document):
            tags.update(TAG_PATTERN.findall(paragraph.text))
        return tags

    def render(
        self,
        template: Template,
        variables: Mapping[str, str],
        template_bytes: Optional[bytes] = None,
    ) -> bytes:
        """
        Render a template with the given variables.

        Args:
            template: Template definition, whose schema is authoritative.
            variables: Placeholder values; keys must equal the schema.
            template_bytes: Template source. Loaded through the registry
                when omitted.

        Returns:
            The rendered .docx bytes. Identical inputs give identical bytes.

        Raises:
            PlaceholderMismatch: A document tag or schema key has no value,
                or a value is supplied for a name outside the schema.
            MissingRequiredField: A value is blank or an unset sentinel.
        """
        if template_bytes is None:
            if self._registry is None:
                raise ValueError("template_bytes is required when no registry is configured")
            template_bytes = self._registry.load_template_bytes(template)

        document = Document(io.BytesIO(template_bytes))
        found = self._collect_tags(document)
        schema = template.schema_set
        supplied = set(variables)

        missing = (found | schema) - supplied
        unexpected = supplied - schema
        if missing or unexpected:
            raise PlaceholderMismatch(
                f"Cannot render template {template.id}",
                missing=list(missing),
                unexpected=list(unexpected),
            )

        for name in sorted(schema - found):
            logger.warning(f"Template {template.id} declares {{{name}}} but its body does not contain it")

        for name, value in variables.items():
            if value is None or not str(value).strip() or str(value).strip().lower() in _SENTINEL_VALUES:
                raise MissingRequiredField(
                    f"Refusing to render an empty or unset value for {{{name}}}",
                    field_name=name,
                )

        values = {name: str(value) for name, value in variables.items()}
        replaced = 0
        for paragraph in iter_paragraphs(document):
            replaced += substitute_paragraph(paragraph, values)

        residue = self._collect_tags(document)
        if residue:
            raise PlaceholderMismatch(
                f"Tags in template {template.id} could not be substituted",
                missing=list(residue),
            )

        core = document.core_properties
        core.modified = core.created or _FIXED_CORE_TIME
        if core.created is None:
            core.created = _FIXED_CORE_TIME

        output = io.BytesIO()
        document.save(output)
        logger.info(f"Rendered template {template.id}: {replaced} placeholder(s) replaced")
        return normalize_docx(output.getvalue())


def unresolved_tags(texts: List[str]) -> Set[str]:
    """Tag names still present in extracted text."""
    tags: Set[str] = set()
    for text in texts:
        tags.update(TAG_PATTERN.findall(text))
    return tags
