"""Error taxonomy for the semantic search pipeline.

Everything here is caught at the orchestrator or repair boundary and turned
into lexical fallback or a later retry; none of it reaches the user.
"""


class SearchError(Exception):
    """Base class for search pipeline errors."""


class EngineError(SearchError):
    """The embedding engine could not produce a vector."""


class EngineLoadFailed(EngineError):
    """The embedding model could not be loaded. Retryable."""


class EmbedTimeout(EngineError):
    """An embedding call exceeded its caller-side bound."""


class EmbedRuntimeError(EngineError):
    """An embedding call raised while encoding."""


class QuerySuperseded(SearchError):
    """A query result arrived after a newer query was dispatched.

    Not a failure: the result is discarded and never logged as an error.
    """

    def __init__(self, seq: int, latest: int) -> None:
        super().__init__(f"query #{seq} superseded by #{latest}")
        self.seq = seq
        self.latest = latest


class StoreWriteFailed(SearchError):
    """Persisting an embedding failed; the record stays eligible for repair."""

    def __init__(self, prompt_id: int, reason: str) -> None:
        super().__init__(f"could not save embedding for prompt {prompt_id}: {reason}")
        self.prompt_id = prompt_id
