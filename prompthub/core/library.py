"""Prompt library: CRUD that keeps the database and search index in step."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from prompthub.config import Settings, get_settings
from prompthub.core.search import (
    EmbeddingProvider,
    EngineError,
    LoopScheduler,
    RecordStore,
    RepairWorker,
    Scheduler,
    SearchOrchestrator,
    SearchState,
    SentenceTransformerProvider,
    StoreWriteFailed,
    Strategy,
    SweepResult,
    filter_by_category,
    lexical_search,
    sort_prompts,
)
from prompthub.core.search.scheduling import TimerHandle
from prompthub.core.templates import fill_template, parse_template_variables
from prompthub.database.sqlite import PromptDB
from prompthub.models import FAVORITES_FILTER, LibraryStats, Prompt, PromptVersion, SortOption

logger = logging.getLogger(__name__)

# Fields a caller may change through update()
_EDITABLE_FIELDS = frozenset(
    {
        "title",
        "content",
        "description",
        "category",
        "tags",
        "prompt_type",
        "target_model",
        "source",
        "is_favorite",
    }
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Library:
    """Orchestrates prompt CRUD, embeddings and search. Depends on Config + DB.

    Every mutation updates the search index before it returns, so search never
    lags behind what `get()` and `list()` report.
    """

    def __init__(
        self,
        db: PromptDB,
        store: RecordStore,
        provider: EmbeddingProvider,
        orchestrator: SearchOrchestrator,
        repair: RepairWorker,
        *,
        scheduler: Optional[Scheduler] = None,
        save_embed_timeout: Optional[float] = 10.0,
        max_versions: int = 10,
    ) -> None:
        self._db = db
        self._store = store
        self._provider = provider
        self._orchestrator = orchestrator
        self._repair = repair
        self._save_embed_timeout = save_embed_timeout
        self._max_versions = max_versions
        self._scheduler = scheduler or LoopScheduler()
        self._warmup_timer: Optional[TimerHandle] = None
        self._warmup_task: Optional[asyncio.Task] = None

    @classmethod
    def open(
        cls,
        settings: Optional[Settings] = None,
        *,
        provider: Optional[EmbeddingProvider] = None,
        scheduler: Optional[Scheduler] = None,
        warmup_on_open: Optional[bool] = None,
    ) -> "Library":
        """Build the library from settings and load the index from disk.

        Must be called with a running event loop: prompts missing an embedding
        get a repair sweep scheduled shortly after start-up, and the embedding
        model is loaded after `warmup_delay` so the first query can rank by
        meaning. `warmup_on_open` overrides the setting of the same name.
        """
        settings = settings or get_settings()
        scheduler = scheduler or LoopScheduler()
        db = PromptDB(settings.db_path)
        db.init_db()
        resynced = db.sync_searchable_text()
        if resynced:
            logger.info("Cleared %d embeddings stored against outdated text", resynced)
        provider = provider or SentenceTransformerProvider(
            settings.embedding_model, device=settings.embedding_device
        )
        store = RecordStore(db.save_embedding)
        repair = RepairWorker(
            store,
            provider,
            scheduler=scheduler,
            delay=settings.repair_delay,
            embed_timeout=settings.search_embed_timeout,
        )
        store.add_invalidation_listener(repair.schedule)
        orchestrator = SearchOrchestrator(
            store,
            provider,
            scheduler=scheduler,
            debounce=settings.search_debounce_ms / 1000,
            embed_timeout=settings.search_embed_timeout,
            top_k=settings.search_top_k,
            min_score=settings.search_min_score,
        )
        library = cls(
            db,
            store,
            provider,
            orchestrator,
            repair,
            scheduler=scheduler,
            save_embed_timeout=settings.save_embed_timeout,
            max_versions=settings.max_versions,
        )
        missing = store.load(db.list_prompts())
        if missing:
            logger.info("%d prompts need embeddings; repair scheduled", missing)
            repair.schedule(delay=settings.repair_startup_delay)
        orchestrator.refresh()
        if warmup_on_open is None:
            warmup_on_open = settings.warmup_on_open
        if warmup_on_open:
            library.schedule_warmup(settings.warmup_delay)
        return library

    @property
    def db(self) -> PromptDB:
        return self._db

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    @property
    def orchestrator(self) -> SearchOrchestrator:
        return self._orchestrator

    @property
    def repair(self) -> RepairWorker:
        return self._repair

    # ---- Create / update / delete ----

    async def add(self, prompt: Prompt) -> Prompt:
        """Save a new prompt and try to embed it right away.

        Raises:
            ValueError: If the prompt has neither title nor content.
        """
        if not prompt.title.strip() and not prompt.content.strip():
            raise ValueError("A prompt needs a title or content")
        draft = self._draft(prompt, _now())
        prompt_id = self._db.insert_prompt(draft)
        self._store.upsert_text(draft.model_copy(update={"id": prompt_id}))
        await self._embed_now(prompt_id)
        self._orchestrator.refresh()
        return self._require(prompt_id)

    @staticmethod
    def _draft(prompt: Prompt, now: datetime) -> Prompt:
        """Validated copy of a new prompt, with the fields the library owns reset."""
        return prompt.normalized(
            id=None,
            variables=parse_template_variables(prompt.content),
            versions=[],
            embedding=None,
            created_at=now,
            updated_at=now,
            usage_count=0,
        )

    async def bulk_add(self, prompts: list[Prompt]) -> list[int]:
        """Import many prompts. Embeddings are left to one background sweep."""
        now = _now()
        drafts = [self._draft(p, now) for p in prompts]
        ids = self._db.bulk_insert(drafts)
        for prompt_id, draft in zip(ids, drafts):
            self._store.upsert_text(draft.model_copy(update={"id": prompt_id}), notify=False)
        if ids:
            self._repair.schedule()
        self._orchestrator.refresh()
        return ids

    async def update(self, prompt_id: int, *, save_version: bool = True, **changes: Any) -> Prompt:
        """Apply field changes.

        A content change pushes the previous content onto the version history
        and re-parses template variables. Any change to title, description,
        category, tags or content invalidates the embedding, which is then
        recomputed (or left to the repair sweep).

        Raises:
            KeyError: If the prompt does not exist.
            ValueError: If a field is not editable or a value is invalid.
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        existing = self._require(prompt_id)

        updates: dict[str, Any] = dict(changes)
        updates["updated_at"] = _now()
        new_content = changes.get("content")
        if new_content is not None and new_content != existing.content:
            updates["variables"] = parse_template_variables(new_content)
            if save_version:
                history = existing.versions + [
                    PromptVersion(content=existing.content, updated_at=existing.updated_at)
                ]
                updates["versions"] = history[-self._max_versions :]

        # Validate before writing: a row that cannot be read back must never land
        updated = existing.normalized(**updates)
        self._db.update_prompt(updated)
        if self._store.upsert_text(updated):
            await self._embed_now(prompt_id)
        self._orchestrator.refresh()
        return self._require(prompt_id)

    async def delete(self, prompt_id: int) -> bool:
        """Delete a prompt. Returns False if it did not exist."""
        removed = self._db.delete_prompt(prompt_id)
        self._store.remove(prompt_id)
        self._orchestrator.refresh()
        return removed

    async def restore_version(self, prompt_id: int, index: int) -> Prompt:
        """Bring back an earlier content revision (recorded as a new version).

        Raises:
            KeyError: If the prompt does not exist.
            ValueError: If there is no version at `index`.
        """
        prompt = self._require(prompt_id)
        if not 0 <= index < len(prompt.versions):
            raise ValueError(f"Prompt {prompt_id} has no version {index}")
        return await self.update(prompt_id, content=prompt.versions[index].content)

    async def toggle_favorite(self, prompt_id: int) -> Prompt:
        prompt = self._require(prompt_id)
        return await self.update(prompt_id, is_favorite=not prompt.is_favorite)

    def increment_usage(self, prompt_id: int) -> Prompt:
        """Count one use of a prompt.

        Raises:
            KeyError: If the prompt does not exist.
        """
        if not self._db.increment_usage(prompt_id, _now()):
            raise KeyError(prompt_id)
        prompt = self._require(prompt_id)
        self._store.upsert_text(prompt)
        return prompt

    def use(self, prompt_id: int, values: Optional[dict[str, str]] = None) -> str:
        """Fill the prompt's template variables and count the use."""
        prompt = self.increment_usage(prompt_id)
        return fill_template(prompt.content, values or {})

    async def _embed_now(self, prompt_id: int) -> None:
        """Embed synchronously within the save timeout; otherwise defer to repair."""
        try:
            await self._store.refresh(prompt_id, self._provider, self._save_embed_timeout)
        except (EngineError, StoreWriteFailed) as exc:
            logger.warning(
                "Embedding for prompt %s deferred to background repair: %s", prompt_id, exc
            )
            self._repair.schedule()

    # ---- Reads ----

    def get(self, prompt_id: int) -> Optional[Prompt]:
        return self._db.get_prompt(prompt_id)

    def _require(self, prompt_id: int) -> Prompt:
        prompt = self._db.get_prompt(prompt_id)
        if prompt is None:
            raise KeyError(prompt_id)
        return prompt

    def list(self, category: Optional[str] = None, sort: SortOption = "newest") -> list[Prompt]:
        """Prompts in a category (`"favorites"` for favorites, None for all)."""
        if category is None:
            prompts = self._db.list_prompts()
        elif category == FAVORITES_FILTER:
            prompts = self._db.list_favorites()
        else:
            prompts = self._db.list_by_category(category)
        return sort_prompts(prompts, sort)

    def all_tags(self) -> list[str]:
        return self._db.get_tag_names()

    def all_categories(self) -> list[str]:
        return self._db.get_categories()

    def stats(self) -> LibraryStats:
        prompts = self._db.list_prompts()
        return LibraryStats(
            total=len(prompts),
            favorites=sum(1 for p in prompts if p.is_favorite),
            total_usage=sum(p.usage_count for p in prompts),
            categories=len({p.category for p in prompts}),
            tags=len({t for p in prompts for t in p.tags}),
        )

    # ---- Search ----

    async def search(
        self, query: str, category: Optional[str] = None, *, semantic: bool = True
    ) -> SearchState:
        """One-shot search (no debounce).

        With `semantic=False` only text matching runs and the embedding model
        is never touched, not even to start a background load.
        """
        if semantic:
            return await self._orchestrator.search(query, category)
        corpus = filter_by_category(self._store.get_all_searchable(), category)
        return SearchState(
            results=sort_prompts(lexical_search(query, corpus)),
            query=query,
            category=category,
            strategy=Strategy.LEXICAL,
        )

    async def warmup(self) -> bool:
        """Load the embedding model now. Returns False if it failed to load."""
        try:
            await self._provider.warmup()
        except EngineError as exc:
            logger.warning("Embedding engine unavailable: %s", exc)
            return False
        return True

    def schedule_warmup(self, delay: float) -> None:
        """Load the embedding model in the background after `delay` seconds.

        No-op when the model is already loaded or a warmup is pending.
        """
        if self._provider.is_ready() or self._warmup_timer is not None:
            return
        self._warmup_timer = self._scheduler.call_later(delay, self._on_warmup_timer)

    @property
    def warmup_task(self) -> Optional[asyncio.Task]:
        """The background warmup started by `schedule_warmup`, once its timer fired."""
        return self._warmup_task

    def _on_warmup_timer(self) -> None:
        self._warmup_timer = None
        if not self._provider.is_ready():
            self._warmup_task = asyncio.get_running_loop().create_task(self.warmup())

    async def repair_now(self) -> SweepResult:
        """Run a repair sweep immediately instead of waiting for the timer."""
        self._repair.cancel()
        return await self._repair.run_sweep()

    async def close(self) -> None:
        if self._warmup_timer is not None:
            self._warmup_timer.cancel()
            self._warmup_timer = None
        if self._warmup_task is not None and not self._warmup_task.done():
            self._warmup_task.cancel()
            await asyncio.gather(self._warmup_task, return_exceptions=True)
        await self._orchestrator.close()
        await self._repair.close()
