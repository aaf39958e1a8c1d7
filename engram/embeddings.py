"""
Embeddings - optional sentence-transformers helper for producing node vectors.

The store accepts vectors from any source; this module is a convenience for
callers that want local text embeddings. The model is loaded on first use
and shared by every caller.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from .config import settings
from .models import ContentType, MemoryNode

logger = logging.getLogger(__name__)

# Content types with text worth embedding
EMBEDDABLE_TYPES = frozenset({ContentType.TEXT, ContentType.CODE, ContentType.SUMMARY})

# Global model instance (lazy loaded, shared)
_model: Optional[SentenceTransformer] = None


def _get_model() -> SentenceTransformer:
    """Get or create the embedding model."""
    global _model

    if _model is None:
        logger.info(f"Loading embedding model ({settings.embedding_model})...")
        _model = SentenceTransformer(settings.embedding_model)
        logger.info("Embedding model loaded.")

    return _model


def reset_model() -> None:
    """Forget the loaded model (next call reloads it)."""
    global _model
    _model = None


def model_name() -> str:
    return settings.embedding_model


def embed(text: str) -> np.ndarray:
    """Encode one text to a float32 vector."""
    embedding = _get_model().encode(text, convert_to_numpy=True)
    return np.asarray(embedding, dtype=np.float32)


def embed_batch(texts: Sequence[str]) -> List[np.ndarray]:
    """Encode many texts in one model call."""
    if not texts:
        return []
    embeddings = _get_model().encode(list(texts), convert_to_numpy=True)
    return [np.asarray(e, dtype=np.float32) for e in embeddings]


def embed_node(node: MemoryNode) -> bool:
    """
    Fill a detached node's embedding from its text content.

    Store-owned nodes should get their vector via MemoryStore.update() so the
    index follows.

    Returns:
        True if an embedding was set, False for binary or non-text content
    """
    if node.content.type not in EMBEDDABLE_TYPES or not isinstance(node.content.data, str):
        return False
    node.embedding = embed(node.content.data)
    node.embedding_model = model_name()
    return True
