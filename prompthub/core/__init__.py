"""Application logic layer."""

from .library import Library
from .templates import fill_template, parse_template_variables

__all__ = [
    "Library",
    "fill_template",
    "parse_template_variables",
]
