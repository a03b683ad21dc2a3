"""Domain models."""

from .prompt import (
    DEFAULT_CATEGORY,
    FAVORITES_FILTER,
    SEARCHABLE_CONTENT_CHARS,
    LibraryStats,
    Prompt,
    PromptFields,
    PromptSource,
    PromptType,
    PromptVersion,
    SortOption,
    SourceType,
    build_searchable_text,
)

__all__ = [
    "DEFAULT_CATEGORY",
    "FAVORITES_FILTER",
    "SEARCHABLE_CONTENT_CHARS",
    "LibraryStats",
    "Prompt",
    "PromptFields",
    "PromptSource",
    "PromptType",
    "PromptVersion",
    "SortOption",
    "SourceType",
    "build_searchable_text",
]
