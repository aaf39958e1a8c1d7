"""
Engram Models - Records for hierarchical memory nodes and container files.

Records:
- MemoryNode: one content record in the hierarchy, optionally embedded
- Entity / MemoryLink: relationship payloads carried through unchanged
- Delta: a single logged mutation
- EngramHeader / EngramFile: the serialized container

Every record converts to and from plain dicts (``to_dict`` / ``from_dict``)
so the codec can pack it with msgpack. Embeddings travel as float32 bytes.
"""

import copy
import math
import time
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from . import vectors
from .ids import IdGenerator


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Enumerations
# =============================================================================

class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    CODE = "code"
    SUMMARY = "summary"


class Modality(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    CODE = "code"


class DecayTier(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    ARCHIVE = "archive"


class QualitySource(str, Enum):
    DIRECT = "direct"
    INFERRED = "inferred"
    SUMMARIZED = "summarized"


class DeltaOperation(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    LINK = "link"
    UNLINK = "unlink"


# Kinds accepted by create_link(). Decoded links are kept as they are.
LINK_TYPES = (
    "related", "references", "contradicts", "supersedes",
    "elaborates", "summarizes", "causes", "follows",
)
LINK_CREATORS = ("user", "agent", "system")


def to_plain(value: Any) -> Any:
    """Convert records, enums and arrays into msgpack-friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, np.ndarray):
        return vectors.encode(value)
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value):
        return {f.name: to_plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


# =============================================================================
# Node records
# =============================================================================

@dataclass
class ExternalRef:
    """Pointer to content stored outside the container."""
    type: str  # file | url
    path: str
    hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "path": self.path, "hash": self.hash}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExternalRef":
        return cls(type=data["type"], path=data["path"], hash=data.get("hash"))


@dataclass
class NodeContent:
    """
    Tagged content payload of a node.

    Attributes:
        type: text, image, audio, code or summary
        data: Text, or raw bytes for binary modalities
        mime_type: Optional MIME type for binary data
        language: Optional language (natural or programming)
        tokens: Optional token count
        original_length: For summaries, length of the summarized source
        original_hash: For summaries, hash of the summarized source
        ref: Optional external reference
    """
    type: ContentType
    data: Union[str, bytes]
    mime_type: Optional[str] = None
    language: Optional[str] = None
    tokens: Optional[int] = None
    original_length: Optional[int] = None
    original_hash: Optional[str] = None
    ref: Optional[ExternalRef] = None

    def __post_init__(self):
        self.type = ContentType(self.type)
        if isinstance(self.ref, dict):
            self.ref = ExternalRef.from_dict(self.ref)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "mime_type": self.mime_type,
            "language": self.language,
            "tokens": self.tokens,
            "original_length": self.original_length,
            "original_hash": self.original_hash,
            "ref": self.ref.to_dict() if self.ref else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeContent":
        return cls(
            type=data["type"],
            data=data["data"],
            mime_type=data.get("mime_type"),
            language=data.get("language"),
            tokens=data.get("tokens"),
            original_length=data.get("original_length"),
            original_hash=data.get("original_hash"),
            ref=ExternalRef.from_dict(data["ref"]) if data.get("ref") else None,
        )


@dataclass
class TemporalInfo:
    """Epoch-millisecond timestamps plus the coarse decay tier."""
    created: int
    modified: int
    accessed: int
    expires: Optional[int] = None
    decay_tier: DecayTier = DecayTier.HOT

    def __post_init__(self):
        self.decay_tier = DecayTier(self.decay_tier)

    @classmethod
    def fresh(cls, now: Optional[int] = None) -> "TemporalInfo":
        now = now_ms() if now is None else now
        return cls(created=now, modified=now, accessed=now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "modified": self.modified,
            "accessed": self.accessed,
            "expires": self.expires,
            "decay_tier": self.decay_tier.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemporalInfo":
        return cls(
            created=data["created"],
            modified=data["modified"],
            accessed=data["accessed"],
            expires=data.get("expires"),
            decay_tier=data.get("decay_tier", DecayTier.HOT),
        )


@dataclass
class QualityInfo:
    """Ranking weight of a node."""
    score: float = 0.5
    confidence: float = 1.0
    source: QualitySource = QualitySource.DIRECT
    verified: Optional[bool] = None

    def __post_init__(self):
        self.source = QualitySource(self.source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "confidence": self.confidence,
            "source": self.source.value,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityInfo":
        return cls(
            score=data.get("score", 0.5),
            confidence=data.get("confidence", 1.0),
            source=data.get("source", QualitySource.DIRECT),
            verified=data.get("verified"),
        )


@dataclass
class NodeMetadata:
    """Tags and free-form data attached to a node."""
    source_file: Optional[str] = None
    source_line: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    custom: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_file": self.source_file,
            "source_line": self.source_line,
            "tags": list(self.tags),
            "custom": self.custom,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeMetadata":
        return cls(
            source_file=data.get("source_file"),
            source_line=data.get("source_line"),
            tags=list(data.get("tags") or []),
            custom=dict(data.get("custom") or {}),
        )


# Sub-records that update() merges field-by-field
NODE_RECORDS = {
    "content": NodeContent,
    "temporal": TemporalInfo,
    "quality": QualityInfo,
    "metadata": NodeMetadata,
}

# Fields only the store may change
STRUCTURAL_FIELDS = frozenset({"id", "parent_id", "children", "depth", "path"})


@dataclass(eq=False)
class MemoryNode:
    """
    A single content record in the hierarchy.

    Cross-references (parent, children) are ids; the store owns every record.

    Attributes:
        id: Opaque unique id
        content: Tagged content payload
        temporal: Timestamps and decay tier
        quality: Ranking weight
        metadata: Tags and custom data
        parent_id: Parent id, None for roots
        children: Ordered child ids
        depth: 0 for roots, parent depth + 1 otherwise
        path: "/" + id for roots, parent path + "/" + id otherwise
        embedding: Optional float32 vector
        embedding_model: Name of the model that produced the embedding
    """
    id: str
    content: NodeContent
    temporal: TemporalInfo = field(default_factory=TemporalInfo.fresh)
    quality: QualityInfo = field(default_factory=QualityInfo)
    metadata: NodeMetadata = field(default_factory=NodeMetadata)
    parent_id: Optional[str] = None
    children: List[str] = field(default_factory=list)
    depth: int = 0
    path: str = ""
    embedding: Optional[np.ndarray] = None
    embedding_model: Optional[str] = None

    def __post_init__(self):
        if not self.path:
            self.path = f"/{self.id}"
        if self.embedding is not None:
            self.embedding = vectors.as_vector(self.embedding)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and self.embedding.size > 0

    def copy(self) -> "MemoryNode":
        """Deep copy, detached from the store."""
        return copy.deepcopy(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MemoryNode):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    __hash__ = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "children": list(self.children),
            "depth": self.depth,
            "path": self.path,
            "content": self.content.to_dict(),
            "embedding": vectors.encode(self.embedding),
            "embedding_model": self.embedding_model,
            "temporal": self.temporal.to_dict(),
            "quality": self.quality.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryNode":
        embedding = data.get("embedding")
        if isinstance(embedding, (bytes, bytearray)):
            embedding = vectors.decode(bytes(embedding))
        return cls(
            id=data["id"],
            parent_id=data.get("parent_id"),
            children=list(data.get("children") or []),
            depth=data.get("depth", 0),
            path=data.get("path") or "",
            content=NodeContent.from_dict(data["content"]),
            embedding=embedding,
            embedding_model=data.get("embedding_model"),
            temporal=TemporalInfo.from_dict(data["temporal"]),
            quality=QualityInfo.from_dict(data.get("quality") or {}),
            metadata=NodeMetadata.from_dict(data.get("metadata") or {}),
        )


# =============================================================================
# Entities and links (opaque payloads)
# =============================================================================

@dataclass
class EntityMention:
    node_id: str
    span: Tuple[int, int]
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {"node_id": self.node_id, "span": list(self.span), "confidence": self.confidence}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityMention":
        start, end = data["span"]
        return cls(node_id=data["node_id"], span=(start, end), confidence=data["confidence"])


@dataclass
class EntityRelationship:
    target_id: str
    type: str
    properties: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"target_id": self.target_id, "type": self.type, "properties": self.properties}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityRelationship":
        return cls(target_id=data["target_id"], type=data["type"], properties=data.get("properties"))


@dataclass
class Entity:
    """A named thing mentioned by nodes. Never validated beyond its shape."""
    id: str
    type: str
    name: str
    aliases: Optional[List[str]] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    mentions: List[EntityMention] = field(default_factory=list)
    relationships: List[EntityRelationship] = field(default_factory=list)

    def mentions_node(self, node_id: str) -> bool:
        return any(m.node_id == node_id for m in self.mentions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "aliases": self.aliases,
            "properties": self.properties,
            "mentions": [m.to_dict() for m in self.mentions],
            "relationships": [r.to_dict() for r in self.relationships],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entity":
        return cls(
            id=data["id"],
            type=data["type"],
            name=data["name"],
            aliases=data.get("aliases"),
            properties=dict(data.get("properties") or {}),
            mentions=[EntityMention.from_dict(m) for m in data.get("mentions") or []],
            relationships=[EntityRelationship.from_dict(r) for r in data.get("relationships") or []],
        )


@dataclass
class MemoryLink:
    """A typed edge between two nodes."""
    id: str
    source_id: str
    target_id: str
    type: str
    confidence: float = 0.8
    bidirectional: bool = True
    created: int = field(default_factory=now_ms)
    created_by: str = "system"
    metadata: Optional[Dict[str, Any]] = None

    def touches(self, node_id: str) -> bool:
        return node_id in (self.source_id, self.target_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "type": self.type,
            "confidence": self.confidence,
            "bidirectional": self.bidirectional,
            "created": self.created,
            "created_by": self.created_by,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryLink":
        return cls(
            id=data["id"],
            source_id=data["source_id"],
            target_id=data["target_id"],
            type=data["type"],
            confidence=data.get("confidence", 0.8),
            bidirectional=data.get("bidirectional", True),
            created=data.get("created", 0),
            created_by=data.get("created_by", "system"),
            metadata=data.get("metadata"),
        )


# =============================================================================
# Deltas
# =============================================================================

def _decode_updates(updates: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if updates is None:
        return None
    decoded = dict(updates)
    embedding = decoded.get("embedding")
    if isinstance(embedding, (bytes, bytearray)):
        decoded["embedding"] = vectors.decode(bytes(embedding))
    return decoded


@dataclass
class Delta:
    """
    One logged mutation.

    Only the fields relevant to ``operation`` are set: ``node`` for add,
    ``node_id``/``updates`` for update, ``node_id`` for delete, ``link`` for
    link and ``link_id`` for unlink.
    """
    id: str
    timestamp: int
    operation: DeltaOperation
    node: Optional[MemoryNode] = None
    node_id: Optional[str] = None
    updates: Optional[Dict[str, Any]] = None
    link: Optional[MemoryLink] = None
    link_id: Optional[str] = None

    def __post_init__(self):
        self.operation = DeltaOperation(self.operation)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "operation": self.operation.value,
            "node": self.node.to_dict() if self.node else None,
            "node_id": self.node_id,
            "updates": to_plain(self.updates) if self.updates is not None else None,
            "link": self.link.to_dict() if self.link else None,
            "link_id": self.link_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Delta":
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            operation=data["operation"],
            node=MemoryNode.from_dict(data["node"]) if data.get("node") else None,
            node_id=data.get("node_id"),
            updates=_decode_updates(data.get("updates")),
            link=MemoryLink.from_dict(data["link"]) if data.get("link") else None,
            link_id=data.get("link_id"),
        )


# =============================================================================
# Container header and file
# =============================================================================

def _optional_bytes(data: Dict[str, Any], key: str) -> Optional[bytes]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, (bytes, bytearray)):
        raise ValueError(f"security.{key} must be bytes, got {type(value).__name__}")
    return bytes(value)


@dataclass
class SecurityConfig:
    """How the payload is protected. Rewritten on every container write."""
    encrypted: bool = False
    algorithm: str = "none"  # aes-256-gcm | none
    kdf: str = "none"  # pbkdf2 | none
    salt: Optional[bytes] = None
    nonce: Optional[bytes] = None
    integrity: bytes = b""
    signature: Optional[bytes] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encrypted": self.encrypted,
            "algorithm": self.algorithm,
            "kdf": self.kdf,
            "salt": self.salt,
            "nonce": self.nonce,
            "integrity": self.integrity,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityConfig":
        integrity = _optional_bytes(data, "integrity")
        if integrity is None:
            raise ValueError("security.integrity is missing")
        return cls(
            encrypted=bool(data["encrypted"]),
            algorithm=data.get("algorithm", "none"),
            kdf=data.get("kdf", "none"),
            salt=_optional_bytes(data, "salt"),
            nonce=_optional_bytes(data, "nonce"),
            integrity=integrity,
            signature=_optional_bytes(data, "signature"),
        )


@dataclass
class FileMetadata:
    source: str = "engram"
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    author: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "description": self.description,
            "tags": list(self.tags),
            "author": self.author,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileMetadata":
        return cls(
            source=data.get("source", "engram"),
            description=data.get("description"),
            tags=list(data.get("tags") or []),
            author=data.get("author"),
        )


@dataclass
class SchemaConfig:
    embedding_model: str = "unknown"
    embedding_dims: int = 0
    chunk_strategy: str = "paragraph"  # paragraph | sentence | fixed | semantic
    modalities: List[Modality] = field(default_factory=lambda: [Modality.TEXT])

    def __post_init__(self):
        self.modalities = [Modality(m) for m in self.modalities]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embedding_model": self.embedding_model,
            "embedding_dims": self.embedding_dims,
            "chunk_strategy": self.chunk_strategy,
            "modalities": [m.value for m in self.modalities],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaConfig":
        return cls(
            embedding_model=data.get("embedding_model", "unknown"),
            embedding_dims=data.get("embedding_dims", 0),
            chunk_strategy=data.get("chunk_strategy", "paragraph"),
            modalities=list(data.get("modalities") or []),
        )


@dataclass
class FileStats:
    total_chunks: int = 0
    total_tokens: int = 0
    root_nodes: int = 0
    max_depth: int = 0
    entity_count: int = 0
    link_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileStats":
        return cls(**{f.name: data.get(f.name, 0) for f in fields(cls)})

    @classmethod
    def compute(
        cls,
        nodes: List[MemoryNode],
        entities: List[Entity],
        links: List[MemoryLink]
    ) -> "FileStats":
        """Aggregate statistics over a payload."""
        return cls(
            total_chunks=len(nodes),
            total_tokens=sum(n.content.tokens or 0 for n in nodes),
            root_nodes=sum(1 for n in nodes if n.is_root),
            max_depth=max((n.depth for n in nodes), default=0),
            entity_count=len(entities),
            link_count=len(links),
        )


@dataclass
class EngramHeader:
    """Container header: versions, timestamps, security, metadata, schema, stats."""
    version: Tuple[int, int] = (1, 0)
    created: int = field(default_factory=now_ms)
    modified: int = field(default_factory=now_ms)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    metadata: FileMetadata = field(default_factory=FileMetadata)
    schema: SchemaConfig = field(default_factory=SchemaConfig)
    stats: FileStats = field(default_factory=FileStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": list(self.version),
            "created": self.created,
            "modified": self.modified,
            "security": self.security.to_dict(),
            "metadata": self.metadata.to_dict(),
            "schema": self.schema.to_dict(),
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngramHeader":
        major, minor = data["version"]
        return cls(
            version=(major, minor),
            created=data["created"],
            modified=data["modified"],
            security=SecurityConfig.from_dict(data["security"]),
            metadata=FileMetadata.from_dict(data.get("metadata") or {}),
            schema=SchemaConfig.from_dict(data.get("schema") or {}),
            stats=FileStats.from_dict(data.get("stats") or {}),
        )


@dataclass
class EngramFile:
    """The full logical state carried by one container."""
    header: EngramHeader = field(default_factory=EngramHeader)
    nodes: List[MemoryNode] = field(default_factory=list)
    entities: List[Entity] = field(default_factory=list)
    links: List[MemoryLink] = field(default_factory=list)
    deltas: Optional[List[Delta]] = None

    def payload_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "entities": [e.to_dict() for e in self.entities],
            "links": [link.to_dict() for link in self.links],
            "deltas": [d.to_dict() for d in self.deltas] if self.deltas is not None else None,
        }


# =============================================================================
# Factories
# =============================================================================

def estimate_tokens(data: Union[str, bytes]) -> Optional[int]:
    """Rough token estimate (four characters per token) for textual content."""
    if isinstance(data, str):
        return math.ceil(len(data) / 4)
    return None


def create_node(
    content: Union[str, bytes],
    *,
    type: Union[ContentType, str] = ContentType.TEXT,
    parent_id: Optional[str] = None,
    tags: Optional[List[str]] = None,
    custom: Optional[Dict[str, Any]] = None,
    embedding: Optional[vectors.VectorLike] = None,
    ids: Optional[IdGenerator] = None,
    now: Optional[int] = None,
) -> MemoryNode:
    """
    Create a detached node with a fresh id and default temporal/quality values.

    The node is a root until a store attaches it: depth 0, path "/<id>".
    ``parent_id`` is only recorded here; MemoryStore.add derives depth and path.
    """
    ident = (ids or IdGenerator()).next()
    return MemoryNode(
        id=ident,
        parent_id=parent_id,
        content=NodeContent(type=type, data=content, tokens=estimate_tokens(content)),
        temporal=TemporalInfo.fresh(now),
        quality=QualityInfo(),
        metadata=NodeMetadata(tags=list(tags or []), custom=dict(custom or {})),
        embedding=embedding,
    )


def create_link(
    source_id: str,
    target_id: str,
    type: str = "related",
    *,
    confidence: float = 0.8,
    bidirectional: bool = True,
    created_by: str = "system",
    metadata: Optional[Dict[str, Any]] = None,
    ids: Optional[IdGenerator] = None,
    now: Optional[int] = None,
) -> MemoryLink:
    """
    Create a link with a fresh id.

    Raises:
        ValueError: Unknown link type or creator
    """
    if type not in LINK_TYPES:
        raise ValueError(f"Unknown link type {type!r}; expected one of {LINK_TYPES}")
    if created_by not in LINK_CREATORS:
        raise ValueError(f"Unknown link creator {created_by!r}; expected one of {LINK_CREATORS}")
    return MemoryLink(
        id=(ids or IdGenerator()).next(),
        source_id=source_id,
        target_id=target_id,
        type=type,
        confidence=confidence,
        bidirectional=bidirectional,
        created=now_ms() if now is None else now,
        created_by=created_by,
        metadata=metadata,
    )
