"""Local text embeddings with a lazily loaded sentence-transformers model."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional, Protocol, Sequence

from .errors import EmbedRuntimeError, EmbedTimeout, EngineError, EngineLoadFailed
from .similarity import normalize

logger = logging.getLogger(__name__)

# Multilingual so Chinese and English prompts share one vector space
DEFAULT_MODEL = "paraphrase-multilingual-MiniLM-L12-v2"

ModelLoader = Callable[[str, Optional[str]], Any]


class EmbeddingProvider(Protocol):
    """Maps text to unit-length vectors and exposes the model lifecycle."""

    def is_ready(self) -> bool:
        ...

    async def warmup(self) -> None:
        ...

    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        ...


def _consume_exception(task: asyncio.Task) -> None:
    # Marks a failed load as retrieved even when no caller is left awaiting it
    if not task.cancelled():
        task.exception()


def _load_sentence_transformer(model_name: str, device: Optional[str]) -> Any:
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name, device=device)


class SentenceTransformerProvider:
    """Embedding provider backed by a sentence-transformers model.

    The model is loaded on first use (or on `warmup()`), in a worker thread so
    the event loop keeps running. Concurrent callers share one in-flight load.
    A failed load is not remembered: the next call tries again.

    `model_name` may be a hub name or a local directory, so the model source
    can be swapped for an offline copy without touching the pipeline.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        *,
        device: Optional[str] = None,
        loader: Optional[ModelLoader] = None,
    ) -> None:
        self._model_name = model_name
        self._device = device
        self._loader = loader or _load_sentence_transformer
        self._model: Any = None
        self._dimension: Optional[int] = None
        self._load_task: Optional[asyncio.Task] = None

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> Optional[int]:
        """Output dimensionality, known once the model has loaded."""
        return self._dimension

    def is_ready(self) -> bool:
        return self._model is not None

    async def warmup(self) -> None:
        """Load the model without embedding anything. No-op when loaded."""
        await self._get_model()

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts, preserving input order in the output."""
        if not texts:
            return []
        model = await self._get_model()
        try:
            return await asyncio.to_thread(self._encode, model, list(texts))
        except Exception as exc:
            raise EmbedRuntimeError(f"encoding failed: {exc}") from exc

    async def _get_model(self) -> Any:
        if self._model is not None:
            return self._model
        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.create_task(self._load())
            self._load_task.add_done_callback(_consume_exception)
        task = self._load_task
        try:
            # shield: a caller timing out must not cancel the shared load
            return await asyncio.shield(task)
        finally:
            if task.done() and self._load_task is task:
                self._load_task = None

    async def _load(self) -> Any:
        started = time.perf_counter()
        logger.info("Loading embedding model %s", self._model_name)
        try:
            model = await asyncio.to_thread(self._loader, self._model_name, self._device)
        except Exception as exc:
            logger.warning("Embedding model %s failed to load: %s", self._model_name, exc)
            raise EngineLoadFailed(
                f"could not load embedding model {self._model_name!r}: {exc}"
            ) from exc

        dimension = getattr(model, "get_sentence_embedding_dimension", None)
        self._dimension = dimension() if callable(dimension) else None
        self._model = model
        logger.info(
            "Embedding model %s ready (dim=%s, %.1fs)",
            self._model_name,
            self._dimension,
            time.perf_counter() - started,
        )
        return model

    @staticmethod
    def _encode(model: Any, texts: list[str]) -> list[list[float]]:
        matrix = model.encode(
            texts,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [normalize([float(x) for x in row]) for row in matrix]


async def embed_with_timeout(
    provider: EmbeddingProvider,
    text: str,
    timeout: Optional[float],
) -> list[float]:
    """Embed one text, converting every failure into an `EngineError`.

    Raises:
        EmbedTimeout: No vector within `timeout` seconds.
        EngineError: The provider failed (load or encode).
    """
    try:
        return await asyncio.wait_for(provider.embed(text), timeout)
    except asyncio.TimeoutError as exc:
        raise EmbedTimeout(f"no embedding after {timeout}s") from exc
    except EngineError:
        raise
    except Exception as exc:
        raise EmbedRuntimeError(str(exc)) from exc
