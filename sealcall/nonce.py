"""
sealcall - Nonce Source

Nonces are "{unix millis, hex}-{16 random bytes, hex}". The time prefix keeps
them ordered for log reading; the random suffix makes them unpredictable.
"""

import secrets
import time
from typing import Protocol


class NonceSource(Protocol):
    def __call__(self) -> str: ...


def new_nonce() -> str:
    """Produce a fresh, single-use token for one exchange."""
    millis = int(time.time() * 1000)
    return f"{millis:x}-{secrets.token_hex(16)}"
