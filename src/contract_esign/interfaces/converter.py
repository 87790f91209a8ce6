"""Layout-preserving converter interface."""

from abc import ABC, abstractmethod

from ..models.artifact import ConversionResult
from ..models.enums import DocumentFormat


class IDocumentConverter(ABC):
    """
    Abstract interface for fixed-layout document conversion.

    Implementations guarantee that the output has the same page count and
    page sizes as the input, or raise ``LayoutDriftError``.
    """

    @abstractmethod
    def convert(
        self,
        content: bytes,
        from_format: DocumentFormat,
        to_format: DocumentFormat,
    ) -> ConversionResult:
        """
        Convert a document.

        Args:
            content: Input document bytes.
            from_format: Format of ``content``.
            to_format: Requested output format.

        Returns:
            ConversionResult with output bytes and measured geometry.

        Raises:
            ConversionFailed: The converter failed transiently.
            LayoutDriftError: Output geometry differs from the input.
        """
        pass
