"""
Legacy migration - converts decoded AIF-BIN v2 documents into EngramFiles.

A v2 document is a flat list of embedded chunks:

    {"version": 2, "created": <epoch ms>, "chunks": [
        {"content": "...", "embedding": [...], "metadata": {...}}, ...]}

Every chunk becomes a root node in the warm tier tagged ``migrated-from-v2``.
The result is unsigned and unhashed; the codec fills in security on write.
"""

import logging
from typing import Any, Dict, Optional

from .errors import FormatError
from .ids import IdGenerator
from .models import (
    ContentType,
    DecayTier,
    EngramFile,
    EngramHeader,
    FileMetadata,
    FileStats,
    MemoryNode,
    NodeContent,
    NodeMetadata,
    QualityInfo,
    SchemaConfig,
    TemporalInfo,
    estimate_tokens,
    now_ms,
)

logger = logging.getLogger(__name__)

MIGRATION_TAG = "migrated-from-v2"
DEFAULT_DIMENSIONS = 384


def migrate_v2(
    v2_data: Dict[str, Any],
    *,
    ids: Optional[IdGenerator] = None,
    now: Optional[int] = None
) -> EngramFile:
    """
    Convert a v2 document.

    Args:
        v2_data: Decoded v2 document
        ids: Id generator for the new nodes (prefix "migrated" by default)
        now: Reference time in epoch ms, used for access and modified times

    Returns:
        EngramFile ready for write_container()

    Raises:
        FormatError: The document has no chunk list
    """
    chunks = v2_data.get("chunks")
    if not isinstance(chunks, list):
        raise FormatError("v2 document has no 'chunks' list")

    now = now_ms() if now is None else now
    created = v2_data.get("created", now)
    ids = ids or IdGenerator(prefix="migrated")

    nodes = []
    for chunk in chunks:
        text = chunk.get("content", "")
        nodes.append(MemoryNode(
            id=ids.next(),
            content=NodeContent(type=ContentType.TEXT, data=text, tokens=estimate_tokens(text)),
            temporal=TemporalInfo(
                created=created,
                modified=created,
                accessed=now,
                decay_tier=DecayTier.WARM,
            ),
            quality=QualityInfo(),
            metadata=NodeMetadata(
                tags=[MIGRATION_TAG],
                custom=dict(chunk.get("metadata") or {}),
            ),
            embedding=chunk.get("embedding") or None,
        ))

    first = next((n for n in nodes if n.has_embedding), None)
    header = EngramHeader(
        created=created,
        modified=now,
        metadata=FileMetadata(source="migration", tags=[MIGRATION_TAG]),
        schema=SchemaConfig(
            embedding_model="unknown",
            embedding_dims=int(first.embedding.shape[0]) if first else DEFAULT_DIMENSIONS,
        ),
        stats=FileStats.compute(nodes, [], []),
    )

    logger.info(f"Migrated {len(nodes)} v2 chunks")
    return EngramFile(header=header, nodes=nodes)
