"""Filesystem object storage."""

import logging
from pathlib import Path
from typing import Union

from ..interfaces.storage import IObjectStorage


logger = logging.getLogger(__name__)


class LocalObjectStorage(IObjectStorage):
    """
    Object storage on a local directory.

    Templates are read from ``<root>/templates`` and artifacts written to
    ``<root>/artifacts``.
    """

    def __init__(self, root: Union[str, Path]):
        self._root = Path(root)
        self._templates = self._root / "templates"
        self._artifacts = self._root / "artifacts"

    @staticmethod
    def _safe_name(name: str) -> str:
        if not name or Path(name).name != name:
            raise ValueError(f"Invalid object name: {name!r}")
        return name

    def download_template(self, name: str) -> bytes:
        path = self._templates / self._safe_name(name)
        if not path.is_file():
            raise FileNotFoundError(f"Template not found in storage: {name}")
        return path.read_bytes()

    def upload_artifact(self, name: str, content: bytes) -> str:
        self._artifacts.mkdir(parents=True, exist_ok=True)
        path = self._artifacts / self._safe_name(name)
        path.write_bytes(content)
        logger.info(f"Stored artifact {name} ({len(content)} bytes)")
        return path.resolve().as_uri()

    def put_template(self, name: str, content: bytes) -> None:
        """Place a template in storage."""
        self._templates.mkdir(parents=True, exist_ok=True)
        (self._templates / self._safe_name(name)).write_bytes(content)
