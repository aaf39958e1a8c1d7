"""
Engram error taxonomy.

Every failure is raised at the point of detection and never retried
internally. The classes are split so callers can tell corruption
(IntegrityError) apart from wrong credentials (CryptoError) and from
version incompatibility (FormatError), since each needs a different fix.
"""


class EngramError(Exception):
    """Base class for all Engram errors."""


class NotFoundError(EngramError, LookupError):
    """An id lookup against the store or index missed."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key!r} not found")


class StructuralError(EngramError, ValueError):
    """A mutation would break the tree invariants (cycles, duplicate ids, ...)."""


class DimensionError(EngramError, ValueError):
    """A vector does not match the dimensionality of the index."""


class CapacityError(EngramError):
    """The approximate index has reached its configured maximum element count."""


class FormatError(EngramError, ValueError):
    """Bad marker, unsupported version, or undecodable header/payload."""


class IntegrityError(EngramError):
    """The payload digest does not match: the file is corrupted or was tampered with."""


class CryptoError(EngramError):
    """Decryption failed (wrong passphrase or bad authentication tag)."""


class PassphraseRequiredError(CryptoError):
    """The container is encrypted and no passphrase was supplied."""
