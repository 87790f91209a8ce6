"""Layout-preserving converter backed by LibreOffice."""

import io
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Optional

from PyPDF2 import PdfReader, PdfWriter

from ..exceptions import ConversionFailed
from ..interfaces.converter import IDocumentConverter
from ..models.artifact import ConversionResult
from ..models.enums import DocumentFormat
from ..performance import timed_operation
from .geometry import check_docx_geometry, check_pdf_geometry, measure_docx, measure_pdf


logger = logging.getLogger(__name__)

DEFAULT_BINARY = "soffice"
DEFAULT_TIMEOUT = 120


class LibreOfficeConverter(IDocumentConverter):
    """
    Converts rendered contracts to PDF with a headless LibreOffice.

    Each call works in its own temporary directory, including a private
    LibreOffice profile so concurrent conversions do not contend for the
    profile lock. The directory is removed whether or not conversion
    succeeds.
    """

    def __init__(
        self,
        binary: str = DEFAULT_BINARY,
        timeout: float = DEFAULT_TIMEOUT,
        work_dir: Optional[str] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        """
        Args:
            binary: LibreOffice executable name or path.
            timeout: Seconds before a conversion is abandoned.
            work_dir: Parent directory for temporary files.
            runner: Process runner with the ``subprocess.run`` signature.
        """
        self._binary = binary
        self._timeout = timeout
        self._work_dir = work_dir
        self._runner = runner

    @timed_operation("convert_document")
    def convert(
        self,
        content: bytes,
        from_format: DocumentFormat,
        to_format: DocumentFormat,
    ) -> ConversionResult:
        if to_format != DocumentFormat.PDF:
            raise ValueError(f"Unsupported target format: {to_format.value}")
        if from_format == DocumentFormat.PDF:
            return self._normalize_pdf(content)
        if from_format == DocumentFormat.DOCX:
            return self._convert_docx(content)
        raise ValueError(f"Unsupported source format: {from_format.value}")

    def _convert_docx(self, content: bytes) -> ConversionResult:
        expected = measure_docx(content)

        if self._work_dir:
            Path(self._work_dir).mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="contract_esign_", dir=self._work_dir) as tmp:
            tmp_path = Path(tmp)
            source = tmp_path / "contract.docx"
            source.write_bytes(content)
            command = [
                self._binary,
                f"-env:UserInstallation={(tmp_path / 'profile').as_uri()}",
                "--headless",
                "--norestore",
                "--convert-to", "pdf",
                "--outdir", str(tmp_path),
                str(source),
            ]
            logger.info(f"Converting document with {self._binary}")
            try:
                completed = self._runner(
                    command,
                    capture_output=True,
                    timeout=self._timeout,
                    check=False,
                )
            except FileNotFoundError as e:
                raise ConversionFailed(
                    "Converter binary not found",
                    details={"binary": self._binary},
                ) from e
            except subprocess.TimeoutExpired as e:
                raise ConversionFailed(
                    f"Conversion timed out after {self._timeout}s",
                    details={"binary": self._binary, "timeout": self._timeout},
                ) from e

            if completed.returncode != 0:
                stderr = (completed.stderr or b"")
                if isinstance(stderr, bytes):
                    stderr = stderr.decode("utf-8", errors="replace")
                raise ConversionFailed(
                    f"Converter exited with status {completed.returncode}",
                    details={"stderr": stderr[-2000:]},
                )

            output = tmp_path / "contract.pdf"
            if not output.exists():
                raise ConversionFailed("Converter produced no output file")
            pdf_content = output.read_bytes()

        pages = measure_pdf(pdf_content)
        check_docx_geometry(expected, pages)
        logger.info(f"Converted document to PDF: {len(pages)} page(s)")
        return ConversionResult(
            content=pdf_content,
            format=DocumentFormat.PDF,
            page_count=len(pages),
            page_dimensions=pages,
        )

    def _normalize_pdf(self, content: bytes) -> ConversionResult:
        """Rewrite a PDF through PyPDF2 without touching its page boxes."""
        before = measure_pdf(content)
        reader = PdfReader(io.BytesIO(content))
        writer = PdfWriter()
        for page in reader.pages:
            writer.add_page(page)
        output = io.BytesIO()
        writer.write(output)
        pdf_content = output.getvalue()

        after = measure_pdf(pdf_content)
        check_pdf_geometry(before, after)
        return ConversionResult(
            content=pdf_content,
            format=DocumentFormat.PDF,
            page_count=len(after),
            page_dimensions=after,
        )
