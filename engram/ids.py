"""
Identifier generation.

Ids look like ``<ms timestamp>-<random>-<counter>`` in base 36. The counter
belongs to a generator instance rather than the process, so stores and tests
can own (or inject) their own sequence.
"""

import secrets
import time
from typing import Callable, Optional

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    """Encode a non-negative integer in lowercase base 36."""
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


class IdGenerator:
    """
    Produces unique, roughly time-sortable string ids.

    Attributes:
        prefix: Optional string prepended as ``<prefix>-``
        clock: Callable returning epoch milliseconds
    """

    def __init__(self, prefix: str = "", clock: Optional[Callable[[], int]] = None):
        self.prefix = prefix
        self.clock = clock or (lambda: int(time.time() * 1000))
        self._counter = 0

    def __call__(self) -> str:
        return self.next()

    def next(self) -> str:
        """Return the next id."""
        timestamp = to_base36(self.clock())
        random_part = "".join(secrets.choice(_ALPHABET) for _ in range(6))
        counter = to_base36(self._counter).rjust(4, "0")
        self._counter += 1
        ident = f"{timestamp}-{random_part}-{counter}"
        return f"{self.prefix}-{ident}" if self.prefix else ident

    @property
    def issued(self) -> int:
        """Number of ids handed out so far."""
        return self._counter
