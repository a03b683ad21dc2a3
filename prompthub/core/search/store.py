"""In-memory index of searchable text and embeddings, kept in step with the DB.

Each record carries a `text_version` that changes whenever its searchable
text changes. Embedding work claims a record at a version; a result is only
accepted if the record still exists at that version, so a vector computed
from old text can never be installed.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from prompthub.models import Prompt, build_searchable_text

from .embedding import EmbeddingProvider, embed_with_timeout
from .errors import StoreWriteFailed

logger = logging.getLogger(__name__)

# (prompt_id, embedding, searchable_text) -> False when the row is gone or moved on
SaveEmbedding = Callable[[int, Optional[list[float]], str], bool]
InvalidationListener = Callable[[int], None]


@dataclass(frozen=True)
class IndexedRecord:
    """One prompt as the search pipeline sees it."""

    prompt: Prompt
    searchable_text: str
    text_version: int

    @property
    def id(self) -> int:
        return self.prompt.id  # type: ignore[return-value]

    @property
    def has_embedding(self) -> bool:
        return bool(self.prompt.embedding)


class RecordStore:
    """Authoritative searchable text and cached embedding per prompt.

    Args:
        save_embedding: Persists an embedding for a prompt (see `SaveEmbedding`).
            Runs in a worker thread.
    """

    def __init__(self, save_embedding: SaveEmbedding) -> None:
        self._save_embedding = save_embedding
        self._records: dict[int, IndexedRecord] = {}
        self._claims: dict[int, int] = {}
        self._versions = itertools.count(1)
        self._listeners: list[InvalidationListener] = []

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, prompt_id: object) -> bool:
        return prompt_id in self._records

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        """Call `listener(prompt_id)` whenever a prompt's embedding goes stale."""
        self._listeners.append(listener)

    def load(self, prompts: Iterable[Prompt]) -> int:
        """Seed the store from persisted prompts. Returns how many lack embeddings."""
        missing = 0
        for prompt in prompts:
            if prompt.id is None:
                continue
            self._records[prompt.id] = IndexedRecord(
                prompt=prompt.model_copy(),
                searchable_text=build_searchable_text(prompt.text_fields()),
                text_version=next(self._versions),
            )
            if not prompt.embedding:
                missing += 1
        return missing

    def upsert_text(self, prompt: Prompt, *, notify: bool = True) -> bool:
        """Record the prompt's current fields.

        When the searchable text differs from what the store holds (or the
        prompt is new), the cached embedding is dropped, the version bumped,
        and invalidation listeners are told so the prompt is queued for
        recomputation. Returns True if the embedding was invalidated.
        """
        if prompt.id is None:
            raise ValueError("Prompt must be persisted before it is indexed")
        text = build_searchable_text(prompt.text_fields())
        current = self._records.get(prompt.id)

        if current is not None and current.searchable_text == text:
            # Metadata only (favorite, usage, ...): keep the cached vector
            self._records[prompt.id] = IndexedRecord(
                prompt=prompt.model_copy(update={"embedding": current.prompt.embedding}),
                searchable_text=text,
                text_version=current.text_version,
            )
            return False

        self._records[prompt.id] = IndexedRecord(
            prompt=prompt.model_copy(update={"embedding": None}),
            searchable_text=text,
            text_version=next(self._versions),
        )
        if notify:
            for listener in self._listeners:
                listener(prompt.id)
        return True

    def remove(self, prompt_id: int) -> None:
        """Drop a prompt. Any embedding work in flight for it is discarded."""
        self._records.pop(prompt_id, None)
        self._claims.pop(prompt_id, None)

    def get(self, prompt_id: int) -> Optional[IndexedRecord]:
        return self._records.get(prompt_id)

    def get_all_searchable(self) -> list[Prompt]:
        """Point-in-time copy of all prompts, safe to rank while the store changes."""
        return [record.prompt.model_copy(deep=True) for record in self._records.values()]

    def missing_embeddings(self) -> list[int]:
        """Ids whose embedding is absent, in insertion order."""
        return [pid for pid, record in self._records.items() if not record.has_embedding]

    # ---- Embedding work ----

    def claim(self, prompt_id: int) -> Optional[IndexedRecord]:
        """Reserve the right to compute this prompt's embedding at its current version.

        Returns None if the prompt is gone, already embedded, or another worker
        holds a claim at the same version. A claim at an older version does not
        block: the newer text supersedes it.
        """
        record = self._records.get(prompt_id)
        if record is None or record.has_embedding:
            return None
        if self._claims.get(prompt_id) == record.text_version:
            return None
        self._claims[prompt_id] = record.text_version
        return record

    def release(self, prompt_id: int, text_version: int) -> None:
        if self._claims.get(prompt_id) == text_version:
            del self._claims[prompt_id]

    def is_current(self, prompt_id: int, text_version: int) -> bool:
        record = self._records.get(prompt_id)
        return record is not None and record.text_version == text_version

    async def refresh(
        self,
        prompt_id: int,
        provider: EmbeddingProvider,
        timeout: Optional[float] = None,
    ) -> bool:
        """Compute and persist the embedding for one prompt.

        Returns True if a fresh embedding was installed, False if there was
        nothing to do or the text changed underneath us.

        Raises:
            EngineError: The provider failed or timed out.
            StoreWriteFailed: Persisting the embedding raised.
        """
        record = self.claim(prompt_id)
        if record is None:
            return False
        version = record.text_version
        try:
            vector = await embed_with_timeout(provider, record.searchable_text, timeout)
            return await self._install(record, vector)
        finally:
            self.release(prompt_id, version)

    async def _install(self, record: IndexedRecord, vector: list[float]) -> bool:
        prompt_id = record.id
        if not self.is_current(prompt_id, record.text_version):
            logger.debug("Discarding embedding for prompt %s: text changed", prompt_id)
            return False
        try:
            saved = await asyncio.to_thread(
                self._save_embedding, prompt_id, vector, record.searchable_text
            )
        except Exception as exc:
            raise StoreWriteFailed(prompt_id, str(exc)) from exc
        if not saved or not self.is_current(prompt_id, record.text_version):
            logger.debug("Embedding for prompt %s not stored: record moved on", prompt_id)
            return False
        current = self._records[prompt_id]
        self._records[prompt_id] = IndexedRecord(
            prompt=current.prompt.model_copy(update={"embedding": vector}),
            searchable_text=current.searchable_text,
            text_version=current.text_version,
        )
        return True
