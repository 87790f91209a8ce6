"""Template rendering."""

from .template_renderer import TAG_PATTERN, TemplateRenderer, iter_paragraphs, substitute_paragraph

__all__ = [
    "TAG_PATTERN",
    "TemplateRenderer",
    "iter_paragraphs",
    "substitute_paragraph",
]
