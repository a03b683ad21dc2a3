"""Environment and settings (Pydantic Settings)."""

from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Default data directory: ~/.prompthub/data/
_data_dir = Path.home() / ".prompthub" / "data"


class Settings(BaseSettings):
    """PromptHub settings loaded from environment and .env.

    Every search knob is handed to the search components explicitly by
    `Library.open()`; nothing under `prompthub.core.search` reads settings.
    """

    model_config = SettingsConfigDict(
        env_prefix="PROMPTHUB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths (local-first data stored in ~/.prompthub/data/)
    db_path: Path = _data_dir / "prompthub.db"

    # Embedding model: a sentence-transformers hub name or a local directory
    embedding_model: str = "paraphrase-multilingual-MiniLM-L12-v2"
    embedding_device: Optional[str] = None

    # Ranking
    search_top_k: int = 20
    search_min_score: float = 0.2

    # Timing (seconds unless noted)
    search_debounce_ms: int = 300
    search_embed_timeout: float = 15.0
    save_embed_timeout: float = 10.0
    repair_delay: float = 5.0
    repair_startup_delay: float = 3.0

    # Load the embedding model shortly after start-up so the first query can use it
    warmup_on_open: bool = True
    warmup_delay: float = 3.0

    # Content
    max_versions: int = 10

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Path = _data_dir / "prompthub.log"


def get_settings() -> Settings:
    """Return application settings (singleton-like)."""
    return Settings()
