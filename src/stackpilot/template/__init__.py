"""Template loading and normalization."""

from .loader import TemplateLoader, load_template, parse_template

__all__ = [
    "TemplateLoader",
    "load_template",
    "parse_template",
]
