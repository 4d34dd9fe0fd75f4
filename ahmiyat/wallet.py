"""Key material for an account on the chain."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field

from ahmiyat.utils import sha256_hex


@dataclass(frozen=True)
class Wallet:
    """A random 32-byte private key and the hex address derived from it."""

    public_key: str
    private_key: bytes = field(repr=False)

    @classmethod
    def generate(cls) -> "Wallet":
        """Create a wallet from fresh random key material."""
        private_key = secrets.token_bytes(32)
        return cls(public_key=sha256_hex(private_key), private_key=private_key)