"""Relational wrapper for SQLite (prompts and their cached embeddings)."""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, get_args

from prompthub.models import (
    Prompt,
    PromptSource,
    PromptType,
    PromptVersion,
    build_searchable_text,
)

_PROMPT_TYPES = get_args(PromptType)

# Columns written from a Prompt on every insert/update (embedding handled apart)
_COLUMNS = (
    "title",
    "content",
    "description",
    "category",
    "tags",
    "prompt_type",
    "target_model",
    "source",
    "variables",
    "versions",
    "created_at",
    "updated_at",
    "usage_count",
    "is_favorite",
)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string, returning None for invalid input."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None


def _loads(raw: Optional[str], default: Any) -> Any:
    try:
        return json.loads(raw) if raw else default
    except json.JSONDecodeError:
        return default


def _string_list(raw: Optional[str]) -> list[str]:
    """JSON list of strings; anything else reads as empty."""
    value = _loads(raw, [])
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _dump_embedding(embedding: Optional[list[float]]) -> Optional[str]:
    return json.dumps(embedding) if embedding else None


def _row_values(prompt: Prompt) -> tuple:
    return (
        prompt.title,
        prompt.content,
        prompt.description,
        prompt.category,
        json.dumps(prompt.tags, ensure_ascii=False),
        prompt.prompt_type,
        prompt.target_model,
        prompt.source.model_dump_json(),
        json.dumps(prompt.variables, ensure_ascii=False),
        json.dumps([v.model_dump(mode="json") for v in prompt.versions], ensure_ascii=False),
        _iso(prompt.created_at),
        _iso(prompt.updated_at),
        prompt.usage_count,
        int(prompt.is_favorite),
    )


_INSERT_SQL = (
    f"INSERT INTO prompts ({', '.join(_COLUMNS)}, searchable_text, embedding) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)}, ?, ?)"
)


class PromptDB:
    """SQLite wrapper for the prompts table. All I/O stays in this module.

    An embedding is only ever stored next to the searchable text it was
    computed from: text changes clear it, and `save_embedding` is a
    compare-and-set on that text.
    """

    def __init__(self, db_path: Path) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def init_db(self) -> None:
        """Create prompts table and indexes if they do not exist."""
        with sqlite3.connect(self._path) as conn:
            # AUTOINCREMENT keeps deleted ids from being handed out again
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS prompts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    description TEXT,
                    category TEXT,
                    tags TEXT,
                    prompt_type TEXT,
                    target_model TEXT,
                    source TEXT,
                    variables TEXT,
                    versions TEXT,
                    searchable_text TEXT,
                    embedding TEXT,
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL,
                    usage_count INTEGER DEFAULT 0,
                    is_favorite INTEGER DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_prompts_category ON prompts(category)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_prompts_updated ON prompts(updated_at)"
            )
            conn.commit()

    # ---- Prompt CRUD ----

    def insert_prompt(self, prompt: Prompt) -> int:
        """Insert a new prompt and return its assigned id."""
        prompt = prompt.normalized()
        with sqlite3.connect(self._path) as conn:
            cursor = conn.execute(
                _INSERT_SQL,
                (
                    *_row_values(prompt),
                    build_searchable_text(prompt.text_fields()),
                    _dump_embedding(prompt.embedding),
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def bulk_insert(self, prompts: list[Prompt]) -> list[int]:
        """Insert many prompts in one transaction. Returns ids in input order."""
        prompts = [p.normalized() for p in prompts]
        ids: list[int] = []
        with sqlite3.connect(self._path) as conn:
            for prompt in prompts:
                cursor = conn.execute(
                    _INSERT_SQL,
                    (
                        *_row_values(prompt),
                        build_searchable_text(prompt.text_fields()),
                        _dump_embedding(prompt.embedding),
                    ),
                )
                ids.append(int(cursor.lastrowid))
            conn.commit()
        return ids

    def get_prompt(self, prompt_id: int) -> Optional[Prompt]:
        """Return one prompt by id or None."""
        with sqlite3.connect(self._path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM prompts WHERE id = ?", (prompt_id,)
            ).fetchone()
        return _row_to_prompt(row) if row else None

    def update_prompt(self, prompt: Prompt) -> None:
        """Update an existing prompt by id.

        The stored embedding survives only if the searchable text is unchanged.
        """
        if prompt.id is None:
            raise ValueError("Cannot update a prompt without an id")
        prompt = prompt.normalized()
        assignments = ", ".join(f"{col}=?" for col in _COLUMNS)
        text = build_searchable_text(prompt.text_fields())
        with sqlite3.connect(self._path) as conn:
            # Right-hand sides see the old row, so the CASE compares old text to new
            conn.execute(
                f"""
                UPDATE prompts SET {assignments},
                    embedding = CASE WHEN searchable_text IS ? THEN embedding ELSE NULL END,
                    searchable_text = ?
                WHERE id = ?
                """,
                (*_row_values(prompt), text, text, prompt.id),
            )
            conn.commit()

    def delete_prompt(self, prompt_id: int) -> bool:
        """Delete a prompt. Returns True if a row was removed."""
        with sqlite3.connect(self._path) as conn:
            cursor = conn.execute("DELETE FROM prompts WHERE id = ?", (prompt_id,))
            conn.commit()
            return cursor.rowcount > 0

    def list_prompts(self) -> list[Prompt]:
        """Return all prompts, most recently updated first."""
        with sqlite3.connect(self._path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM prompts ORDER BY updated_at DESC, id DESC"
            ).fetchall()
        return [_row_to_prompt(r) for r in rows]

    def list_by_category(self, category: str) -> list[Prompt]:
        """Return prompts in one category."""
        with sqlite3.connect(self._path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM prompts WHERE category = ? ORDER BY updated_at DESC, id DESC",
                (category,),
            ).fetchall()
        return [_row_to_prompt(r) for r in rows]

    def list_favorites(self) -> list[Prompt]:
        """Return prompts marked as favorite."""
        with sqlite3.connect(self._path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM prompts WHERE is_favorite = 1 ORDER BY updated_at DESC, id DESC"
            ).fetchall()
        return [_row_to_prompt(r) for r in rows]

    def increment_usage(self, prompt_id: int, updated_at: datetime) -> bool:
        """Bump usage_count by one. Returns False if the prompt does not exist."""
        with sqlite3.connect(self._path) as conn:
            cursor = conn.execute(
                "UPDATE prompts SET usage_count = usage_count + 1, updated_at = ? "
                "WHERE id = ?",
                (_iso(updated_at), prompt_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    # ---- Embeddings ----

    def save_embedding(
        self,
        prompt_id: int,
        embedding: Optional[list[float]],
        searchable_text: str,
    ) -> bool:
        """Store the embedding computed from `searchable_text`.

        Writes only if the row still holds that text. Returns False when the
        prompt is gone or its text has changed since.
        """
        with sqlite3.connect(self._path) as conn:
            cursor = conn.execute(
                "UPDATE prompts SET embedding = ? WHERE id = ? AND searchable_text = ?",
                (_dump_embedding(embedding), prompt_id, searchable_text),
            )
            conn.commit()
            return cursor.rowcount > 0

    def sync_searchable_text(self) -> int:
        """Rewrite `searchable_text` where it disagrees with the row's fields.

        Such rows (written before field normalization, or edited by hand)
        would otherwise refuse every `save_embedding`. Their embedding is
        cleared. Returns how many rows were rewritten.
        """
        with sqlite3.connect(self._path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute("SELECT * FROM prompts").fetchall()
            stale: list[tuple[str, int]] = []
            for row in rows:
                text = build_searchable_text(_row_to_prompt(row).text_fields())
                if text != row["searchable_text"]:
                    stale.append((text, row["id"]))
            if stale:
                conn.executemany(
                    "UPDATE prompts SET searchable_text = ?, embedding = NULL WHERE id = ?",
                    stale,
                )
                conn.commit()
        return len(stale)

    # ---- Vocabulary ----

    def get_tag_names(self) -> list[str]:
        """Return distinct tags across all prompts in first-seen order."""
        with sqlite3.connect(self._path) as conn:
            rows = conn.execute("SELECT tags FROM prompts ORDER BY id ASC").fetchall()
        seen: dict[str, None] = {}
        for (raw,) in rows:
            for tag in _string_list(raw):
                seen.setdefault(tag, None)
        return list(seen)

    def get_categories(self) -> list[str]:
        """Return distinct categories in first-seen order."""
        with sqlite3.connect(self._path) as conn:
            rows = conn.execute(
                "SELECT category FROM prompts GROUP BY category ORDER BY MIN(id) ASC"
            ).fetchall()
        return [r[0] for r in rows if r[0]]


def _row_to_prompt(row: sqlite3.Row) -> Prompt:
    """Convert database row to Prompt, handling malformed data gracefully."""
    versions: list[PromptVersion] = []
    raw_versions = _loads(row["versions"], [])
    for v in raw_versions if isinstance(raw_versions, list) else []:
        try:
            versions.append(PromptVersion.model_validate(v))
        except ValueError:
            continue
    try:
        source = PromptSource.model_validate(_loads(row["source"], {}))
    except ValueError:
        source = PromptSource()

    prompt_type = row["prompt_type"]
    values: dict[str, Any] = {
        "id": row["id"],
        "title": row["title"] or "",
        "content": row["content"] or "",
        "description": row["description"] or "",
        "category": row["category"],
        "tags": _string_list(row["tags"]),
        "prompt_type": prompt_type if prompt_type in _PROMPT_TYPES else "text",
        "target_model": row["target_model"],
        "source": source,
        "variables": _string_list(row["variables"]),
        "versions": versions,
        "usage_count": row["usage_count"] or 0,
        "is_favorite": bool(row["is_favorite"]),
    }
    created_at = _parse_dt(row["created_at"])
    updated_at = _parse_dt(row["updated_at"])
    if created_at:
        values["created_at"] = created_at
    if updated_at:
        values["updated_at"] = updated_at
    prompt = Prompt(**values)

    # A vector stored against other text is stale: surface it as missing
    embedding = _loads(row["embedding"], None) or None
    if embedding and row["searchable_text"] == build_searchable_text(prompt.text_fields()):
        prompt.embedding = embedding
    return prompt
