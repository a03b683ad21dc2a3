"""Database layer - SQLite wrapper for prompts and cached embeddings."""

from .sqlite import PromptDB

__all__ = ["PromptDB"]
