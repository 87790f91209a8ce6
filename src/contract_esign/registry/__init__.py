"""Template registry."""

from .template_registry import TemplateRegistry

__all__ = ["TemplateRegistry"]
