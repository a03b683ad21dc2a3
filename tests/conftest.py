"""Global fixtures: temp DB, fake embedding provider, manual scheduler."""

import asyncio
import re
import tempfile
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

from prompthub.config import Settings
from prompthub.core.search.errors import EmbedRuntimeError, EngineLoadFailed
from prompthub.core.search.similarity import normalize
from prompthub.database.sqlite import PromptDB
from prompthub.models import Prompt

_WORD_RE = re.compile(r"\w+")

# Concept -> words that light it up. Synonyms share a dimension.
VOCAB: dict[str, tuple[str, ...]] = {
    "poetry": ("haiku", "poem", "poetry", "verse"),
    "autumn": ("autumn", "fall"),
    "french": ("french", "français"),
    "python": ("python",),
    "email": ("email", "mail"),
    "apple": ("apple",),
    "zebra": ("zebra",),
}


class FakeProvider:
    """Deterministic embedding provider: one dimension per vocabulary concept.

    Knobs:
        ready: what is_ready() reports; warmup() flips it on unless fail_load.
        fail_load: warmup() raises EngineLoadFailed.
        fail_on: substrings; embedding a text containing one raises.
        gate: when set, embeds wait for it before returning.
    """

    def __init__(self, *, ready: bool = True) -> None:
        self.ready = ready
        self.fail_load = False
        self.fail_on: set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[str] = []
        self.warmups = 0
        self._concepts = list(VOCAB)

    def is_ready(self) -> bool:
        return self.ready

    async def warmup(self) -> None:
        self.warmups += 1
        if self.fail_load:
            raise EngineLoadFailed("fake model unavailable")
        self.ready = True

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not self.ready:
            await self.warmup()
        self.calls.extend(texts)
        if self.gate is not None:
            await self.gate.wait()
        for text in texts:
            if any(marker in text for marker in self.fail_on):
                raise EmbedRuntimeError(f"fake encode failure for {text[:20]!r}")
        return [self.vector(t) for t in texts]

    def vector(self, text: str) -> list[float]:
        words = set(_WORD_RE.findall(text.casefold()))
        raw = [
            1.0 if words.intersection(VOCAB[concept]) else 0.0 for concept in self._concepts
        ]
        return normalize(raw)


class _ManualTimer:
    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves when a test calls advance()."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[_ManualTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(self.now + delay, callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> list[_ManualTimer]:
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds: float) -> int:
        """Move the clock forward and fire due timers in order. Returns how many fired."""
        self.now += seconds
        fired = 0
        while True:
            due = [t for t in self.pending if t.when <= self.now]
            if not due:
                return fired
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            timer.callback()
            fired += 1


def make_prompt(prompt_id: Optional[int] = None, title: str = "", content: str = "", **fields) -> Prompt:
    """Prompt with sensible defaults for tests."""
    return Prompt(id=prompt_id, title=title, content=content, **fields)


@pytest.fixture
def temp_db_path() -> Iterator[Path]:
    """Temporary SQLite path (cleaned up after test)."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = Path(f.name)
    yield path
    if path.exists():
        path.unlink(missing_ok=True)


@pytest.fixture
def db(temp_db_path: Path) -> PromptDB:
    """Initialized PromptDB with temp path."""
    d = PromptDB(temp_db_path)
    d.init_db()
    return d


@pytest.fixture
def settings(temp_db_path: Path, tmp_path: Path) -> Settings:
    """Settings pointing at temp files, independent of the user's environment."""
    return Settings(
        _env_file=None,
        db_path=temp_db_path,
        log_file=tmp_path / "prompthub.log",
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def sample_prompts() -> list[Prompt]:
    """The three-prompt corpus used by the search scenarios."""
    return [
        make_prompt(1, "Autumn haiku", "write a haiku about autumn"),
        make_prompt(2, "Translator", "translate this to French"),
        make_prompt(3, "String reversal", "python function to reverse a string"),
    ]


async def wait_until(condition: Callable[[], object], attempts: int = 200) -> None:
    """Yield to the event loop until `condition()` is truthy."""
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")
