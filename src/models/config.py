"""Configuration models for the Slack history indexer.

This module defines the configuration structure for the Slack source, chunking,
embeddings, the Qdrant chunk store and the cursor file.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from src.models.errors import ConfigurationError
from src.sources.slack import SlackConfig


class ChunkingConfig(BaseModel):
    """Bounds for window chunks of non-threaded messages."""

    max_messages_per_window: int = Field(default=20, ge=1, description="Max messages in a window chunk")
    max_window_minutes: int = Field(default=10, ge=0, description="Max minutes between first and last message")


class EmbeddingsConfig(BaseModel):
    """Configuration for the embedding model."""

    model_name: str = Field(default="sentence-transformers/all-MiniLM-L6-v2", description="HuggingFace model")
    device: Optional[str] = Field(default=None, description="Torch device, e.g. 'cpu' or 'cuda'")
    normalize: bool = Field(default=True, description="Normalize embeddings to unit length")


class QdrantConfig(BaseModel):
    """Configuration for the Qdrant chunk store."""

    url: str = Field(default="http://localhost:6333", description="Qdrant URL, or ':memory:' for a local store")
    collection_name: str = Field(default="slack_chunks", description="Collection holding chunk vectors")
    vector_size: int = Field(default=384, gt=0, description="Embedding dimension of the collection")
    timeout: int = Field(default=30, description="Request timeout in seconds")


class CursorConfig(BaseModel):
    """Where per-channel indexing cursors are kept."""

    path: str = Field(default="data/slack/channel_cursors.json", description="JSON file with channel cursors")


class IndexerConfig(BaseModel):
    """Main configuration for the indexer."""

    slack: SlackConfig = Field(default_factory=SlackConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    qdrant: QdrantConfig = Field(default_factory=QdrantConfig)
    cursors: CursorConfig = Field(default_factory=CursorConfig)
    use_cursor: bool = Field(default=True, description="Resume from the stored cursor when no oldest ts is given")
    top_k: int = Field(default=5, ge=1, description="Default number of search results")


# Environment variable -> (section, field)
ENV_OVERRIDES: Dict[str, tuple[str, str]] = {
    "HISTORY_PAGE_LIMIT": ("slack", "history_page_limit"),
    "MAX_MESSAGES_PER_WINDOW": ("chunking", "max_messages_per_window"),
    "MAX_WINDOW_MINUTES": ("chunking", "max_window_minutes"),
    "QDRANT_URL": ("qdrant", "url"),
    "QDRANT_COLLECTION": ("qdrant", "collection_name"),
    "EMBEDDINGS_MODEL": ("embeddings", "model_name"),
    "CURSOR_PATH": ("cursors", "path"),
}


class ConfigLoader:
    """Utility class for loading configuration from YAML files."""

    @staticmethod
    def load(path: str, environ: Optional[Dict[str, str]] = None) -> IndexerConfig:
        """Load configuration from a YAML file.

        Environment variables listed in `ENV_OVERRIDES` take precedence over the file.

        Args:
            path: Path to the YAML configuration file. A missing file yields defaults.
            environ: Environment mapping (defaults to `os.environ`).

        Returns:
            IndexerConfig: Loaded configuration object.

        Raises:
            ConfigurationError: If the file is not a mapping or fails validation.
        """
        env = os.environ if environ is None else environ
        raw_data: Dict[str, Any] = {}
        p = Path(path)
        if p.exists():
            with open(p, "r") as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ConfigurationError(f"Configuration file {path} must contain a mapping")
            raw_data = loaded

        for var, (section, key) in ENV_OVERRIDES.items():
            value = env.get(var)
            if value:
                section_data = raw_data.setdefault(section, {}) or {}
                section_data[key] = value
                raw_data[section] = section_data

        try:
            return IndexerConfig(**raw_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e
