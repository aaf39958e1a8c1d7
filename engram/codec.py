"""
Container Codec - reads and writes .engram files.

Byte layout (bit-exact):

    marker "ENGRAM" (6) | major (1) | minor (1) | header length (4, little-endian)
    | header (msgpack) | payload (msgpack, optionally encrypted)

Writing always recomputes the header's ``modified`` time and the SHA-256
integrity digest over the final payload bytes; values passed in by the
caller are never trusted. Encryption derives an AES-256-GCM key from the
passphrase with PBKDF2-HMAC-SHA256 (random salt, fixed work factor) and
appends the 16-byte tag to the ciphertext.

Reading checks the marker, the version, then the digest over the raw
payload *before* decrypting, so corruption (IntegrityError) is reported
separately from a wrong passphrase (CryptoError).
"""

import hashlib
import hmac
import logging
import os
import struct
from pathlib import Path
from typing import Any, Dict, Optional, Union

import msgpack
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CryptoError, FormatError, IntegrityError, PassphraseRequiredError
from .index import IndexConfig
from .logging_config import with_operation_id
from .models import (
    Delta,
    EngramFile,
    EngramHeader,
    Entity,
    FileMetadata,
    FileStats,
    MemoryLink,
    MemoryNode,
    SchemaConfig,
    SecurityConfig,
    now_ms,
)
from .store import MemoryStore

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

MAGIC = b"ENGRAM"
VERSION_MAJOR = 1
VERSION_MINOR = 0
LEGACY_MAJOR = 2  # AIF-BIN v2 files, convert with engram.migrate.migrate_v2
ENGRAM_EXTENSION = ".engram"

HEADER_OFFSET = 12  # magic(6) + version(2) + header length(4)
_PREAMBLE = struct.Struct("<6sBBI")

CIPHER_NAME = "aes-256-gcm"
KDF_NAME = "pbkdf2"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
SALT_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


# =============================================================================
# Primitives
# =============================================================================

def hash_payload(payload: bytes) -> bytes:
    """SHA-256 digest used as the container's integrity check."""
    return hashlib.sha256(payload).digest()


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """PBKDF2-HMAC-SHA256 key derivation. CPU-bound; blocks for the whole run."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_payload(payload: bytes, passphrase: str) -> Dict[str, bytes]:
    """
    Encrypt with a fresh salt and nonce.

    Returns:
        Dict with ciphertext (tag appended), salt and nonce
    """
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    key = derive_key(passphrase, salt)
    # AESGCM appends the authentication tag to the ciphertext
    ciphertext = AESGCM(key).encrypt(nonce, payload, None)
    return {"ciphertext": ciphertext, "salt": salt, "nonce": nonce}


def decrypt_payload(ciphertext: bytes, passphrase: str, salt: bytes, nonce: bytes) -> bytes:
    """Decrypt and verify the authentication tag."""
    if len(ciphertext) < TAG_LENGTH:
        raise FormatError("Encrypted payload is shorter than its authentication tag")
    key = derive_key(passphrase, salt)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise CryptoError(
            "Authentication failed: wrong passphrase (payload digest was valid)"
        ) from e


def _pack(obj: Any) -> bytes:
    return msgpack.packb(obj, use_bin_type=True)


def _unpack(data: bytes, what: str) -> Any:
    try:
        return msgpack.unpackb(data, raw=False)
    except (msgpack.UnpackException, ValueError, TypeError) as e:
        raise FormatError(f"Malformed {what}: {e}") from e


def ensure_extension(filename: Union[str, Path]) -> str:
    """Append .engram unless the name already ends with it (case-insensitive)."""
    name = str(filename)
    if name.lower().endswith(ENGRAM_EXTENSION):
        return name
    return name + ENGRAM_EXTENSION


# =============================================================================
# Writer
# =============================================================================

@with_operation_id
def write_container(
    file: EngramFile,
    *,
    encrypt: bool = False,
    passphrase: Optional[str] = None,
    now: Optional[int] = None
) -> bytes:
    """
    Serialize an EngramFile to container bytes.

    Args:
        file: Header and payload to write; header security, modified time
              and integrity are replaced
        encrypt: Encrypt the payload
        passphrase: Required when encrypt is set
        now: Override for the modified timestamp (epoch ms)

    Returns:
        The complete container
    """
    if encrypt and not passphrase:
        raise PassphraseRequiredError("Encryption requested without a passphrase")

    payload = _pack(file.payload_dict())

    if encrypt:
        encrypted = encrypt_payload(payload, passphrase)
        final_payload = encrypted["ciphertext"]
        security = SecurityConfig(
            encrypted=True,
            algorithm=CIPHER_NAME,
            kdf=KDF_NAME,
            salt=encrypted["salt"],
            nonce=encrypted["nonce"],
            integrity=hash_payload(final_payload),
            signature=file.header.security.signature,
        )
    else:
        final_payload = payload
        security = SecurityConfig(
            integrity=hash_payload(final_payload),
            signature=file.header.security.signature,
        )

    header = EngramHeader(
        version=(VERSION_MAJOR, VERSION_MINOR),
        created=file.header.created,
        modified=now_ms() if now is None else now,
        security=security,
        metadata=file.header.metadata,
        schema=file.header.schema,
        stats=file.header.stats,
    )
    header_bytes = _pack(header.to_dict())

    preamble = _PREAMBLE.pack(MAGIC, VERSION_MAJOR, VERSION_MINOR, len(header_bytes))
    output = preamble + header_bytes + final_payload

    logger.info(
        f"Wrote container: {len(file.nodes)} nodes, {len(output)} bytes"
        f"{' (encrypted)' if encrypt else ''}"
    )
    return output


def write_file(
    path: Union[str, Path],
    file: EngramFile,
    *,
    encrypt: bool = False,
    passphrase: Optional[str] = None
) -> Path:
    """
    Write a container to disk, adding the .engram extension if missing.

    The whole buffer is built in memory first, then written in one call.

    Returns:
        The path actually written
    """
    target = Path(ensure_extension(path))
    data = write_container(file, encrypt=encrypt, passphrase=passphrase)
    target.write_bytes(data)
    return target


# =============================================================================
# Reader
# =============================================================================

def read_header(data: bytes) -> EngramHeader:
    """Validate the preamble and decode the header without touching the payload."""
    header, _ = _split(data)
    return header


def _split(data: bytes):
    if len(data) < HEADER_OFFSET:
        raise FormatError(f"Invalid Engram file: {len(data)} bytes is shorter than the preamble")

    magic, major, minor, header_len = _PREAMBLE.unpack_from(data, 0)
    if magic != MAGIC:
        raise FormatError("Invalid Engram file: bad magic bytes")

    if major != VERSION_MAJOR:
        if major == LEGACY_MAJOR:
            raise FormatError(
                "This is a v2 file. Convert it with engram.migrate.migrate_v2() first."
            )
        raise FormatError(f"Unsupported version: {major}.{minor}")

    header_end = HEADER_OFFSET + header_len
    if header_end > len(data):
        raise FormatError("Invalid Engram file: header length exceeds file size")

    raw_header = _unpack(data[HEADER_OFFSET:header_end], "header")
    try:
        header = EngramHeader.from_dict(raw_header)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise FormatError(f"Malformed header: {e}") from e

    return header, data[header_end:]


@with_operation_id
def read_container(
    data: bytes,
    *,
    passphrase: Optional[str] = None,
    verify_integrity: bool = True
) -> EngramFile:
    """
    Parse container bytes.

    Args:
        data: Full container
        passphrase: Needed when the payload is encrypted
        verify_integrity: Check the payload digest (on by default)

    Raises:
        FormatError: Bad marker, unsupported version, malformed header or payload
        IntegrityError: Payload digest mismatch
        PassphraseRequiredError: Encrypted payload and no passphrase
        CryptoError: Authentication tag failure (wrong passphrase)
    """
    header, payload = _split(bytes(data))
    security = header.security

    if verify_integrity:
        if not hmac.compare_digest(bytes(security.integrity), hash_payload(payload)):
            raise IntegrityError("Integrity check failed: file may be corrupted or tampered")

    if security.encrypted:
        if not passphrase:
            raise PassphraseRequiredError("File is encrypted. Provide a passphrase.")
        if security.algorithm != CIPHER_NAME or security.kdf != KDF_NAME:
            raise FormatError(
                f"Unsupported encryption scheme {security.algorithm}/{security.kdf}"
            )
        if not security.salt or not security.nonce:
            raise FormatError("Encrypted file is missing its salt or nonce")
        payload = decrypt_payload(payload, passphrase, bytes(security.salt), bytes(security.nonce))

    raw = _unpack(payload, "payload")
    try:
        deltas = raw.get("deltas")
        file = EngramFile(
            header=header,
            nodes=[MemoryNode.from_dict(n) for n in raw["nodes"]],
            entities=[Entity.from_dict(e) for e in raw["entities"]],
            links=[MemoryLink.from_dict(link) for link in raw["links"]],
            deltas=[Delta.from_dict(d) for d in deltas] if deltas is not None else None,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise FormatError(f"Malformed payload: {e}") from e

    logger.info(f"Read container: {len(file.nodes)} nodes")
    return file


def read_file(
    path: Union[str, Path],
    *,
    passphrase: Optional[str] = None,
    verify_integrity: bool = True
) -> EngramFile:
    """Read a container from disk."""
    data = Path(path).read_bytes()
    return read_container(data, passphrase=passphrase, verify_integrity=verify_integrity)


# =============================================================================
# Store bridge
# =============================================================================

def pack_store(
    store: MemoryStore,
    *,
    metadata: Optional[FileMetadata] = None,
    schema: Optional[SchemaConfig] = None,
    include_deltas: bool = False,
    created: Optional[int] = None
) -> EngramFile:
    """
    Snapshot a store into an EngramFile with computed stats.

    When no schema is given, embedding dimensions and model are taken from
    the first embedded node.
    """
    nodes = store.all()
    entities = store.entities
    links = store.links

    if schema is None:
        embedded = next((n for n in nodes if n.has_embedding), None)
        schema = SchemaConfig(
            embedding_model=(embedded.embedding_model if embedded and embedded.embedding_model else "unknown"),
            embedding_dims=int(embedded.embedding.shape[0]) if embedded else 0,
        )

    header = EngramHeader(
        created=now_ms() if created is None else created,
        metadata=metadata or FileMetadata(),
        schema=schema,
        stats=FileStats.compute(nodes, entities, links),
    )
    return EngramFile(
        header=header,
        nodes=nodes,
        entities=entities,
        links=links,
        deltas=list(store.deltas) if include_deltas else None,
    )


def unpack_store(file: EngramFile, index_config: Optional[IndexConfig] = None, **store_kwargs) -> MemoryStore:
    """
    Restore a MemoryStore from an EngramFile.

    Logged deltas, when present, seed the store's delta log.
    """
    store = MemoryStore(
        nodes=file.nodes,
        index_config=index_config,
        entities=file.entities,
        links=file.links,
        **store_kwargs,
    )
    if file.deltas:
        store.deltas.extend(file.deltas)
    return store


def save(
    store: MemoryStore,
    path: Union[str, Path],
    *,
    encrypt: bool = False,
    passphrase: Optional[str] = None,
    metadata: Optional[FileMetadata] = None,
    schema: Optional[SchemaConfig] = None,
    include_deltas: bool = False
) -> Path:
    """Snapshot ``store`` and write it to ``path``."""
    file = pack_store(store, metadata=metadata, schema=schema, include_deltas=include_deltas)
    return write_file(path, file, encrypt=encrypt, passphrase=passphrase)


def load(
    path: Union[str, Path],
    *,
    passphrase: Optional[str] = None,
    index_config: Optional[IndexConfig] = None,
    **store_kwargs
) -> MemoryStore:
    """Read ``path`` and restore a MemoryStore from it."""
    return unpack_store(read_file(path, passphrase=passphrase), index_config, **store_kwargs)
