"""Substring search, category filtering and sorting over prompt snapshots."""

from __future__ import annotations

from typing import Iterable, Optional

from prompthub.models import FAVORITES_FILTER, Prompt, SortOption


def matches(prompt: Prompt, needle: str) -> bool:
    """Case-insensitive substring match on title, description, content or a tag.

    `needle` must already be casefolded.
    """
    return (
        needle in prompt.title.casefold()
        or needle in prompt.description.casefold()
        or needle in prompt.content.casefold()
        or any(needle in tag.casefold() for tag in prompt.tags)
    )


def lexical_search(query: str, prompts: Iterable[Prompt]) -> list[Prompt]:
    """Return prompts containing `query`, keeping input order."""
    needle = query.strip().casefold()
    if not needle:
        return list(prompts)
    return [p for p in prompts if matches(p, needle)]


def filter_by_category(prompts: Iterable[Prompt], category: Optional[str]) -> list[Prompt]:
    """Restrict to one category; `"favorites"` selects favorites, None keeps all."""
    if category is None:
        return list(prompts)
    if category == FAVORITES_FILTER:
        return [p for p in prompts if p.is_favorite]
    return [p for p in prompts if p.category == category]


def sort_prompts(prompts: Iterable[Prompt], sort: SortOption = "newest") -> list[Prompt]:
    """Order prompts for display. Unknown options keep the given order."""
    items = list(prompts)
    if sort == "newest":
        return sorted(items, key=lambda p: p.created_at, reverse=True)
    if sort == "oldest":
        return sorted(items, key=lambda p: p.created_at)
    if sort == "most-used":
        return sorted(items, key=lambda p: p.usage_count, reverse=True)
    if sort == "least-used":
        return sorted(items, key=lambda p: p.usage_count)
    if sort == "alphabetical":
        return sorted(items, key=lambda p: p.title.casefold())
    return items
