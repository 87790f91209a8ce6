"""Object storage interface for templates and generated artifacts."""

from abc import ABC, abstractmethod


class IObjectStorage(ABC):
    """
    Abstract interface for the object storage collaborator.

    Templates are read by name; generated artifacts are written once.
    """

    @abstractmethod
    def download_template(self, name: str) -> bytes:
        """
        Download a template document.

        Args:
            name: Storage key of the template.

        Returns:
            The template bytes.

        Raises:
            FileNotFoundError: If no object exists under ``name``.
        """
        pass

    @abstractmethod
    def upload_artifact(self, name: str, content: bytes) -> str:
        """
        Store a generated artifact.

        Args:
            name: Object name for the artifact.
            content: Artifact bytes.

        Returns:
            URL or URI under which the artifact can be retrieved.
        """
        pass
