"""Local semantic search over the prompt library."""

from .embedding import (
    DEFAULT_MODEL,
    EmbeddingProvider,
    SentenceTransformerProvider,
    embed_with_timeout,
)
from .errors import (
    EmbedRuntimeError,
    EmbedTimeout,
    EngineError,
    EngineLoadFailed,
    QuerySuperseded,
    SearchError,
    StoreWriteFailed,
)
from .lexical import filter_by_category, lexical_search, sort_prompts
from .orchestrator import Phase, SearchOrchestrator, SearchState, Strategy, choose_strategy
from .repair import RepairWorker, SweepResult
from .scheduling import LoopScheduler, Scheduler
from .similarity import DEFAULT_MIN_SCORE, DEFAULT_TOP_K, ScoredId, cosine_similarity, rank
from .store import IndexedRecord, RecordStore

__all__ = [
    "DEFAULT_MIN_SCORE",
    "DEFAULT_MODEL",
    "DEFAULT_TOP_K",
    "EmbedRuntimeError",
    "EmbedTimeout",
    "EmbeddingProvider",
    "EngineError",
    "EngineLoadFailed",
    "IndexedRecord",
    "LoopScheduler",
    "Phase",
    "QuerySuperseded",
    "RecordStore",
    "RepairWorker",
    "Scheduler",
    "ScoredId",
    "SearchError",
    "SearchOrchestrator",
    "SearchState",
    "SentenceTransformerProvider",
    "StoreWriteFailed",
    "Strategy",
    "SweepResult",
    "choose_strategy",
    "cosine_similarity",
    "embed_with_timeout",
    "filter_by_category",
    "lexical_search",
    "rank",
    "sort_prompts",
]
