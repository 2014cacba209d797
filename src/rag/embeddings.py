"""Embedding provider used for chunk and query vectors.

Any LangChain `Embeddings` implementation can be plugged in; the indexer only
calls `embed_query(text)` once per chunk or query.
"""

import logging

from langchain_core.embeddings import Embeddings
from langchain_huggingface import HuggingFaceEmbeddings

from src.models.config import EmbeddingsConfig
from src.models.errors import ConfigurationError

logger = logging.getLogger(__name__)


def build_embeddings(config: EmbeddingsConfig) -> Embeddings:
    """Create the HuggingFace (sentence-transformers) embedding model from config."""
    model_kwargs = {"device": config.device} if config.device else {}
    logger.info(f"Loading embeddings model {config.model_name}")
    return HuggingFaceEmbeddings(
        model_name=config.model_name,
        model_kwargs=model_kwargs,
        encode_kwargs={"normalize_embeddings": config.normalize},
    )


def check_dimension(embeddings: Embeddings, expected: int) -> int:
    """Embed a sample text and make sure the model matches the store's vector size.

    Raises:
        ConfigurationError: If the model produces vectors of another size.
    """
    size = len(embeddings.embed_query("sample"))
    if size != expected:
        raise ConfigurationError(
            f"Embedding model produces {size}-dimensional vectors but the store expects {expected}"
        )
    return size
