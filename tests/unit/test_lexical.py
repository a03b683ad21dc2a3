"""Unit tests for text matching, category filters and sort orders."""

from datetime import datetime, timedelta, timezone

from conftest import make_prompt
from prompthub.core.search.lexical import filter_by_category, lexical_search, sort_prompts


def test_lexical_search_is_case_insensitive_across_fields(sample_prompts) -> None:
    """'french' matches 'French' in content; title, description and tags count too."""
    assert [p.id for p in lexical_search("french", sample_prompts)] == [2]
    assert [p.id for p in lexical_search("AUTUMN", sample_prompts)] == [1]

    tagged = make_prompt(4, "Plain", "nothing here", tags=["Marketing"], description="Ad copy")
    assert lexical_search("marketing", [tagged]) == [tagged]
    assert lexical_search("ad cop", [tagged]) == [tagged]


def test_lexical_search_does_not_look_at_category(sample_prompts) -> None:
    """Category is a filter, not searchable text for substring matching."""
    prompt = make_prompt(5, "Hello", "world", category="writing")
    assert lexical_search("writing", [prompt]) == []


def test_lexical_search_empty_query_returns_everything(sample_prompts) -> None:
    assert lexical_search("   ", sample_prompts) == sample_prompts


def test_filter_by_category() -> None:
    a = make_prompt(1, "A", "a", category="coding")
    b = make_prompt(2, "B", "b", category="writing", is_favorite=True)

    assert filter_by_category([a, b], None) == [a, b]
    assert filter_by_category([a, b], "coding") == [a]
    assert filter_by_category([a, b], "favorites") == [b]


def test_sort_prompts_options() -> None:
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    old = make_prompt(1, "beta", "x", created_at=base, usage_count=5)
    mid = make_prompt(2, "Alpha", "x", created_at=base + timedelta(days=1), usage_count=0)
    new = make_prompt(3, "gamma", "x", created_at=base + timedelta(days=2), usage_count=2)
    items = [mid, old, new]

    assert [p.id for p in sort_prompts(items, "newest")] == [3, 2, 1]
    assert [p.id for p in sort_prompts(items, "oldest")] == [1, 2, 3]
    assert [p.id for p in sort_prompts(items, "most-used")] == [1, 3, 2]
    assert [p.id for p in sort_prompts(items, "least-used")] == [2, 3, 1]
    assert [p.id for p in sort_prompts(items, "alphabetical")] == [2, 1, 3]
