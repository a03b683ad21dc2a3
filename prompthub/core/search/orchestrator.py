"""Debounced search pipeline: semantic ranking with text-match fallback.

The orchestrator owns one search session at a time (query, category filter,
sort). Keystrokes restart a quiet-period timer; when it fires, a query is
dispatched with a new sequence number. Only the result of the latest
dispatched sequence is ever published, so a slow early query can never
overwrite a later one.

Strategy per query:
    - engine cold: text match now, start loading the model in the background
    - engine ready: embed the query and rank cached embeddings; an empty
      ranking or any embedding failure falls back to text match
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from prompthub.models import Prompt, SortOption

from .embedding import EmbeddingProvider, embed_with_timeout
from .errors import EngineError, QuerySuperseded
from .lexical import filter_by_category, lexical_search, sort_prompts
from .scheduling import LoopScheduler, Scheduler, TimerHandle
from .similarity import DEFAULT_MIN_SCORE, DEFAULT_TOP_K, rank
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.3
DEFAULT_EMBED_TIMEOUT = 15.0


class Strategy(str, enum.Enum):
    VECTOR = "vector"
    LEXICAL = "lexical"


class Phase(str, enum.Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    QUERYING = "querying"


def choose_strategy(engine_ready: bool, vector_results_non_empty: bool) -> Strategy:
    """Vector results are used only if the engine is up and found something."""
    if engine_ready and vector_results_non_empty:
        return Strategy.VECTOR
    return Strategy.LEXICAL


@dataclass(frozen=True)
class SearchState:
    """What the UI shows: the current result list and a busy flag."""

    results: list[Prompt] = field(default_factory=list)
    is_searching: bool = False
    query: str = ""
    category: Optional[str] = None
    strategy: Optional[Strategy] = None
    seq: int = 0
    scores: dict[int, float] = field(default_factory=dict)


StateListener = Callable[[SearchState], None]


class SearchOrchestrator:
    """Reactive query pipeline between the search box and the record store."""

    def __init__(
        self,
        store: RecordStore,
        provider: EmbeddingProvider,
        *,
        scheduler: Optional[Scheduler] = None,
        debounce: float = DEFAULT_DEBOUNCE,
        embed_timeout: Optional[float] = DEFAULT_EMBED_TIMEOUT,
        top_k: int = DEFAULT_TOP_K,
        min_score: float = DEFAULT_MIN_SCORE,
        sort: SortOption = "newest",
    ) -> None:
        self._store = store
        self._provider = provider
        self._scheduler = scheduler or LoopScheduler()
        self._debounce = debounce
        self._embed_timeout = embed_timeout
        self._top_k = top_k
        self._min_score = min_score

        self._query = ""
        self._category: Optional[str] = None
        self._sort: SortOption = sort
        self._seq = 0
        self._phase = Phase.IDLE
        self._timer: Optional[TimerHandle] = None
        self._state = SearchState()
        self._listeners: list[StateListener] = []
        self._tasks: set[asyncio.Task] = set()
        self._warmup_task: Optional[asyncio.Task] = None

    # ---- Observable state ----

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def query(self) -> str:
        return self._query

    @property
    def category(self) -> Optional[str]:
        return self._category

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener; it receives the current state immediately.

        Returns a callable that unsubscribes.
        """
        self._listeners.append(listener)
        listener(self._state)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ---- Inputs ----

    def set_query(self, text: str) -> None:
        """Handle a keystroke. Clearing the box takes effect immediately."""
        self._query = text
        self._cancel_timer()
        if not text.strip():
            self._invalidate()
            self._show_unfiltered()
            return
        self._phase = Phase.DEBOUNCING
        self._timer = self._scheduler.call_later(self._debounce, self._on_quiet)

    def set_category_filter(self, category: Optional[str]) -> None:
        """Switch category (or `"favorites"`, or None). Starts a new session."""
        self._category = category
        self._restart_session()

    def set_sort(self, sort: SortOption) -> None:
        self._sort = sort
        self._restart_session()

    def refresh(self) -> Optional[asyncio.Task]:
        """Re-run the current session now, e.g. after the library changed."""
        self._cancel_timer()
        if not self._query.strip():
            self._invalidate()
            self._show_unfiltered()
            return None
        return self._dispatch()

    async def search(self, query: str, category: Optional[str] = None) -> SearchState:
        """Run one query immediately, bypassing the debounce window."""
        self._query = query
        self._category = category
        self.refresh()
        await self.wait_idle()
        return self._state

    async def wait_idle(self) -> None:
        """Wait until every dispatched query has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop timers and background work."""
        self._cancel_timer()
        self._invalidate()
        pending = list(self._tasks)
        if self._warmup_task is not None and not self._warmup_task.done():
            pending.append(self._warmup_task)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._phase = Phase.IDLE

    # ---- Session plumbing ----

    def _restart_session(self) -> None:
        self._cancel_timer()
        self._invalidate()
        if not self._query.strip():
            self._show_unfiltered()
            return
        self._phase = Phase.DEBOUNCING
        self._timer = self._scheduler.call_later(self._debounce, self._on_quiet)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _invalidate(self) -> None:
        """Make every in-flight query stale."""
        self._seq += 1

    def _on_quiet(self) -> None:
        self._timer = None
        self._dispatch()

    def _corpus(self) -> list[Prompt]:
        return filter_by_category(self._store.get_all_searchable(), self._category)

    def _show_unfiltered(self) -> None:
        self._phase = Phase.IDLE
        self._publish(
            SearchState(
                results=sort_prompts(self._corpus(), self._sort),
                is_searching=False,
                category=self._category,
                seq=self._seq,
            )
        )

    def _dispatch(self) -> asyncio.Task:
        self._invalidate()
        seq = self._seq
        query = self._query
        corpus = self._corpus()
        self._phase = Phase.QUERYING
        self._publish(
            SearchState(
                results=self._state.results,
                is_searching=True,
                query=query,
                category=self._category,
                strategy=self._state.strategy,
                seq=seq,
                scores=self._state.scores,
            )
        )
        task = asyncio.get_running_loop().create_task(self._run(seq, query, corpus))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, seq: int, query: str, corpus: list[Prompt]) -> None:
        try:
            results, strategy, scores = await self._execute(query, corpus)
            self._ensure_current(seq)
        except QuerySuperseded as exc:
            logger.debug("Dropping stale search result: %s", exc)
            return
        logger.debug("Query #%d (%s) -> %d results", seq, strategy.value, len(results))
        self._phase = Phase.IDLE
        self._publish(
            SearchState(
                results=results,
                is_searching=False,
                query=query,
                category=self._category,
                strategy=strategy,
                seq=seq,
                scores=scores,
            )
        )

    def _ensure_current(self, seq: int) -> None:
        if seq != self._seq:
            raise QuerySuperseded(seq, self._seq)

    async def _execute(
        self, query: str, corpus: list[Prompt]
    ) -> tuple[list[Prompt], Strategy, dict[int, float]]:
        if not self._provider.is_ready():
            self._start_warmup()
            return self._text_match(query, corpus), Strategy.LEXICAL, {}

        try:
            vector = await embed_with_timeout(self._provider, query, self._embed_timeout)
        except EngineError as exc:
            logger.warning("Semantic search unavailable, using text match: %s", exc)
            return self._text_match(query, corpus), Strategy.LEXICAL, {}

        hits = rank(
            vector,
            ((p.id, p.embedding) for p in corpus if p.id is not None),
            top_k=self._top_k,
            min_score=self._min_score,
        )
        if choose_strategy(True, bool(hits)) is Strategy.LEXICAL:
            return self._text_match(query, corpus), Strategy.LEXICAL, {}

        by_id = {p.id: p for p in corpus}
        results = [by_id[hit.id] for hit in hits]
        # Prompts still waiting for an embedding can only match by text
        pending = [p for p in corpus if not p.embedding]
        results.extend(self._text_match(query, pending))
        return results, Strategy.VECTOR, {hit.id: hit.score for hit in hits}

    def _text_match(self, query: str, corpus: list[Prompt]) -> list[Prompt]:
        try:
            return sort_prompts(lexical_search(query, corpus), self._sort)
        except Exception:
            logger.exception("Text search failed; showing unfiltered list")
            return list(corpus)

    def _start_warmup(self) -> None:
        if self._warmup_task is not None and not self._warmup_task.done():
            return
        self._warmup_task = asyncio.get_running_loop().create_task(self._warmup())

    async def _warmup(self) -> None:
        try:
            await self._provider.warmup()
        except Exception as exc:
            logger.warning("Embedding engine warmup failed: %s", exc)

    def _publish(self, state: SearchState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Search state listener failed")
