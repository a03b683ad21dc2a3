"""Prompt library schema: prompts, their content history and text fields."""

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

PromptType = Literal["text", "image", "code", "video", "audio", "other"]
SourceType = Literal["text", "image", "mixed"]
SortOption = Literal["newest", "oldest", "most-used", "least-used", "alphabetical"]

DEFAULT_CATEGORY = "uncategorized"
FAVORITES_FILTER = "favorites"
SEARCHABLE_CONTENT_CHARS = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PromptSource(BaseModel):
    """Where a prompt was captured from."""

    url: Optional[str] = None
    type: SourceType = "text"


class PromptVersion(BaseModel):
    """A previous revision of a prompt's content."""

    content: str
    updated_at: datetime = Field(default_factory=_now)
    note: Optional[str] = None


class PromptFields(BaseModel):
    """Text fields that feed a prompt's searchable text."""

    title: str = ""
    description: str = ""
    category: str = DEFAULT_CATEGORY
    tags: list[str] = Field(default_factory=list)
    content: str = ""


class Prompt(BaseModel):
    """A saved prompt in the library.

    `embedding` is the cached semantic vector for the prompt's current
    searchable text; None means it is stale or was never computed.
    """

    id: Optional[int] = None
    title: str
    content: str
    description: str = ""
    category: str = DEFAULT_CATEGORY
    tags: list[str] = Field(default_factory=list)
    prompt_type: PromptType = "text"
    target_model: Optional[str] = None
    source: PromptSource = Field(default_factory=PromptSource)
    variables: list[str] = Field(default_factory=list)
    versions: list[PromptVersion] = Field(default_factory=list)
    embedding: Optional[list[float]] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    usage_count: int = 0
    is_favorite: bool = False

    @field_validator("category", mode="before")
    @classmethod
    def blank_category_is_default(cls, v: Optional[str]) -> str:
        if v is None or not str(v).strip():
            return DEFAULT_CATEGORY
        return v

    @field_validator("description", mode="before")
    @classmethod
    def missing_description_is_empty(cls, v: Optional[str]) -> str:
        return "" if v is None else v

    def normalized(self, **updates: Any) -> "Prompt":
        """Validated copy with `updates` applied.

        Unlike `model_copy(update=...)` this runs the field validators, so what
        is written to the database reads back unchanged.

        Raises:
            ValueError: If a field value is invalid (pydantic `ValidationError`).
        """
        return Prompt.model_validate({**dict(self), **updates})

    def text_fields(self) -> PromptFields:
        """Return the subset of fields that make up the searchable text."""
        return PromptFields(
            title=self.title,
            description=self.description,
            category=self.category,
            tags=list(self.tags),
            content=self.content,
        )


class LibraryStats(BaseModel):
    """Aggregate counters for the stats view."""

    total: int = 0
    favorites: int = 0
    total_usage: int = 0
    categories: int = 0
    tags: int = 0


def build_searchable_text(fields: PromptFields) -> str:
    """Concatenate the text that an embedding is computed from.

    Title, description, category, tags and a bounded content prefix. Any
    change to this string invalidates the prompt's cached embedding.
    """
    return " ".join(
        [
            fields.title,
            fields.description,
            fields.category,
            " ".join(fields.tags),
            fields.content[:SEARCHABLE_CONTENT_CHARS],
        ]
    )
