"""Unit tests for Library (CRUD kept in step with the search index)."""

import sqlite3
from typing import AsyncIterator

import pytest
import pytest_asyncio

from conftest import FakeProvider, ManualScheduler, make_prompt
from prompthub.config import Settings
from prompthub.core.library import Library
from prompthub.core.search import Strategy
from prompthub.database.sqlite import PromptDB
from prompthub.models import DEFAULT_CATEGORY, build_searchable_text


@pytest_asyncio.fixture
async def library(
    settings: Settings, provider: FakeProvider, scheduler: ManualScheduler
) -> AsyncIterator[Library]:
    lib = Library.open(settings, provider=provider, scheduler=scheduler)
    yield lib
    await lib.close()


@pytest.mark.asyncio
async def test_add_embeds_and_parses_variables(library: Library, provider: FakeProvider) -> None:
    prompt = await library.add(
        make_prompt(None, "Haiku writer", "Write a haiku about {{ season }}", tags=["poetry"])
    )

    assert prompt.id is not None
    assert prompt.variables == ["season"]
    assert prompt.embedding == provider.vector(build_searchable_text(prompt.text_fields()))
    assert library.store.get(prompt.id).has_embedding is True


@pytest.mark.asyncio
async def test_add_requires_title_or_content(library: Library) -> None:
    with pytest.raises(ValueError):
        await library.add(make_prompt(None, "  ", ""))


@pytest.mark.asyncio
async def test_add_defers_to_repair_when_embedding_fails(
    library: Library, provider: FakeProvider, scheduler: ManualScheduler, settings: Settings
) -> None:
    provider.fail_on = {"Unlucky"}

    prompt = await library.add(make_prompt(None, "Unlucky", "poem"))

    assert prompt.embedding is None
    assert library.repair.is_scheduled is True

    provider.fail_on = set()
    scheduler.advance(settings.repair_delay)
    await library.repair.wait_idle()
    assert library.get(prompt.id).embedding is not None


@pytest.mark.asyncio
async def test_update_content_records_version_and_reembeds(
    library: Library, provider: FakeProvider
) -> None:
    prompt = await library.add(make_prompt(None, "Fruit", "apple"))

    updated = await library.update(prompt.id, content="zebra {{animal}}")

    assert [v.content for v in updated.versions] == ["apple"]
    assert updated.variables == ["animal"]
    assert updated.embedding == provider.vector(build_searchable_text(updated.text_fields()))


@pytest.mark.asyncio
async def test_metadata_update_does_not_reembed(library: Library, provider: FakeProvider) -> None:
    prompt = await library.add(make_prompt(None, "Fruit", "apple"))
    calls = len(provider.calls)

    toggled = await library.toggle_favorite(prompt.id)
    used = library.increment_usage(prompt.id)

    assert toggled.is_favorite is True
    assert used.usage_count == 1
    assert len(provider.calls) == calls
    assert library.get(prompt.id).embedding == prompt.embedding
    assert library.store.get(prompt.id).prompt.is_favorite is True


@pytest.mark.asyncio
async def test_update_rejects_unknown_prompt_and_fields(library: Library) -> None:
    prompt = await library.add(make_prompt(None, "a", "b"))

    with pytest.raises(KeyError):
        await library.update(9999, title="x")
    with pytest.raises(ValueError):
        await library.update(prompt.id, usage_count=100)


@pytest.mark.asyncio
async def test_version_history_is_capped(
    settings: Settings, provider: FakeProvider, scheduler: ManualScheduler
) -> None:
    settings.max_versions = 2
    library = Library.open(settings, provider=provider, scheduler=scheduler)
    prompt = await library.add(make_prompt(None, "t", "v1"))
    for content in ("v2", "v3", "v4"):
        prompt = await library.update(prompt.id, content=content)

    assert [v.content for v in prompt.versions] == ["v2", "v3"]
    await library.close()


@pytest.mark.asyncio
async def test_restore_version(library: Library) -> None:
    prompt = await library.add(make_prompt(None, "t", "first"))
    await library.update(prompt.id, content="second")

    restored = await library.restore_version(prompt.id, 0)

    assert restored.content == "first"
    assert [v.content for v in restored.versions] == ["first", "second"]
    with pytest.raises(ValueError):
        await library.restore_version(prompt.id, 5)


@pytest.mark.asyncio
async def test_delete_removes_from_search(library: Library) -> None:
    prompt = await library.add(make_prompt(None, "Haiku", "autumn poem"))

    assert await library.delete(prompt.id) is True

    assert library.get(prompt.id) is None
    assert prompt.id not in library.store
    state = await library.search("haiku")
    assert state.results == []
    assert await library.delete(prompt.id) is False


@pytest.mark.asyncio
async def test_bulk_add_leaves_embeddings_to_one_sweep(
    library: Library, provider: FakeProvider, scheduler: ManualScheduler, settings: Settings
) -> None:
    ids = await library.bulk_add(
        [make_prompt(None, "Haiku", "poem"), make_prompt(None, "Mail", "email draft")]
    )

    assert provider.calls == []
    assert library.store.missing_embeddings() == ids
    assert len(scheduler.pending) == 1

    scheduler.advance(settings.repair_delay)
    await library.repair.wait_idle()

    assert library.store.missing_embeddings() == []
    assert all(library.get(i).embedding for i in ids)


@pytest.mark.asyncio
async def test_open_schedules_startup_repair(
    settings: Settings, provider: FakeProvider, scheduler: ManualScheduler
) -> None:
    db = PromptDB(settings.db_path)
    db.init_db()
    db.insert_prompt(make_prompt(None, "Haiku", "autumn poem"))

    library = Library.open(settings, provider=provider, scheduler=scheduler)

    assert [t.when for t in scheduler.pending] == [settings.repair_startup_delay]
    assert len(library.orchestrator.state.results) == 1
    scheduler.advance(settings.repair_startup_delay)
    await library.repair.wait_idle()
    assert library.store.missing_embeddings() == []
    await library.close()


@pytest.mark.asyncio
async def test_list_filters_and_sorts(library: Library) -> None:
    a = await library.add(make_prompt(None, "beta", "x", category="coding"))
    b = await library.add(make_prompt(None, "Alpha", "y", category="writing"))
    await library.toggle_favorite(b.id)

    assert [p.id for p in library.list(sort="alphabetical")] == [b.id, a.id]
    assert [p.id for p in library.list("coding")] == [a.id]
    assert [p.id for p in library.list("favorites")] == [b.id]


@pytest.mark.asyncio
async def test_stats_tags_and_categories(library: Library) -> None:
    a = await library.add(make_prompt(None, "a", "x", category="coding", tags=["py", "cli"]))
    await library.add(make_prompt(None, "b", "y", category="writing", tags=["cli"]))
    await library.toggle_favorite(a.id)
    library.increment_usage(a.id)
    library.increment_usage(a.id)

    stats = library.stats()

    assert (stats.total, stats.favorites, stats.total_usage) == (2, 1, 2)
    assert (stats.categories, stats.tags) == (2, 2)
    assert library.all_tags() == ["py", "cli"]
    assert library.all_categories() == ["coding", "writing"]


@pytest.mark.asyncio
async def test_use_fills_template_and_counts(library: Library) -> None:
    prompt = await library.add(make_prompt(None, "Greeter", "Hello {{name}}, from {{ sender }}"))

    text = library.use(prompt.id, {"name": "Ada"})

    assert text == "Hello Ada, from {{sender}}"
    assert library.get(prompt.id).usage_count == 1
    with pytest.raises(KeyError):
        library.use(9999)


@pytest.mark.asyncio
async def test_search_semantic_and_lexical(settings: Settings, scheduler: ManualScheduler) -> None:
    provider = FakeProvider(ready=False)
    library = Library.open(settings, provider=provider, scheduler=scheduler)
    await library.bulk_add([make_prompt(None, "Haiku", "autumn poem")])

    state = await library.search("haiku", semantic=False)
    assert state.strategy is Strategy.LEXICAL
    assert len(state.results) == 1
    assert provider.warmups == 0

    assert await library.warmup() is True
    assert (await library.repair_now()).repaired == 1
    state = await library.search("verse about fall")
    assert state.strategy is Strategy.VECTOR
    assert [p.title for p in state.results] == ["Haiku"]
    await library.close()


@pytest.mark.asyncio
async def test_warmup_failure_is_reported(library: Library, provider: FakeProvider) -> None:
    provider.ready = False
    provider.fail_load = True
    assert await library.warmup() is False


@pytest.mark.asyncio
async def test_blank_category_keeps_embedding_across_reopen(
    settings: Settings, provider: FakeProvider, scheduler: ManualScheduler
) -> None:
    library = Library.open(settings, provider=provider, scheduler=scheduler)
    draft = make_prompt(None, "Haiku", "autumn poem").model_copy(
        update={"category": "", "description": None}
    )

    prompt = await library.add(draft)

    assert prompt.category == DEFAULT_CATEGORY
    assert prompt.description == ""
    assert prompt.embedding is not None
    await library.close()

    reopened = Library.open(settings, provider=provider, scheduler=scheduler)
    assert reopened.store.missing_embeddings() == []
    assert reopened.get(prompt.id).embedding == prompt.embedding
    await reopened.close()


@pytest.mark.asyncio
async def test_row_with_outdated_searchable_text_is_repaired(
    settings: Settings, provider: FakeProvider, scheduler: ManualScheduler
) -> None:
    db = PromptDB(settings.db_path)
    db.init_db()
    prompt_id = db.insert_prompt(make_prompt(None, "Haiku", "autumn poem", embedding=[1.0]))
    with sqlite3.connect(db.path) as conn:
        conn.execute(
            "UPDATE prompts SET category = '', searchable_text = 'Haiku   autumn poem' "
            "WHERE id = ?",
            (prompt_id,),
        )
        conn.commit()

    library = Library.open(settings, provider=provider, scheduler=scheduler)
    assert library.store.missing_embeddings() == [prompt_id]

    result = await library.repair_now()

    assert result.repaired == 1
    assert library.store.missing_embeddings() == []
    assert library.db.get_prompt(prompt_id).embedding is not None
    await library.close()


@pytest.mark.asyncio
async def test_invalid_update_is_rejected_before_writing(
    settings: Settings, provider: FakeProvider, scheduler: ManualScheduler, library: Library
) -> None:
    prompt = await library.add(make_prompt(None, "Fruit", "apple"))

    for bad in ({"prompt_type": "bogus"}, {"tags": "a,b"}, {"source": {"type": "video"}}):
        with pytest.raises(ValueError):
            await library.update(prompt.id, **bad)

    stored = library.db.get_prompt(prompt.id)
    assert stored.prompt_type == "text"
    assert stored.tags == []
    reopened = Library.open(settings, provider=provider, scheduler=scheduler)
    assert [p.id for p in reopened.list()] == [prompt.id]
    await reopened.close()


@pytest.mark.asyncio
async def test_open_warms_model_after_delay(
    settings: Settings, scheduler: ManualScheduler
) -> None:
    provider = FakeProvider(ready=False)
    haiku = make_prompt(None, "Haiku", "autumn poem")
    db = PromptDB(settings.db_path)
    db.init_db()
    db.insert_prompt(
        haiku.model_copy(
            update={"embedding": provider.vector(build_searchable_text(haiku.text_fields()))}
        )
    )

    library = Library.open(settings, provider=provider, scheduler=scheduler)

    assert [t.when for t in scheduler.pending] == [settings.warmup_delay]
    assert scheduler.advance(settings.warmup_delay) == 1
    await library.warmup_task

    assert provider.warmups == 1
    assert provider.is_ready() is True
    state = await library.search("verse about fall")
    assert state.strategy is Strategy.VECTOR
    await library.close()


@pytest.mark.asyncio
async def test_open_without_warmup(settings: Settings, scheduler: ManualScheduler) -> None:
    provider = FakeProvider(ready=False)
    settings.warmup_on_open = False

    library = Library.open(settings, provider=provider, scheduler=scheduler)

    assert scheduler.pending == []
    assert library.warmup_task is None
    await library.close()

    library = Library.open(settings, provider=provider, scheduler=scheduler, warmup_on_open=True)
    assert len(scheduler.pending) == 1
    await library.close()
    assert scheduler.pending == []
    assert provider.warmups == 0
