"""
sealcall - Crypto Engine
Handles key material, encryption, and signing for sealed remote calls.

Security Architecture:
- Signing: Ed25519 (via nacl.signing)
- Encryption: NaCl Box (Curve25519 + XSalsa20 + Poly1305), keys converted
  from the same Ed25519 keypairs used for signing
- Canonical TBS: "{sha256(content) hex}|{nonce}" binds a signature to one nonce

Each party holds one long-lived keypair. The caller encrypts to and verifies
from the counterparty's public key, and decrypts and signs with its own
private key.
"""

import base64
import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

from nacl.encoding import Base64Encoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.public import Box
from nacl.signing import SigningKey, VerifyKey

from .exceptions import DecryptionError, KeyMaterialError

logger = logging.getLogger(__name__)


class Cipher(Protocol):
    """Capability interface for the asymmetric operations of an exchange."""

    def encrypt(self, plaintext: bytes) -> bytes: ...

    def decrypt(self, ciphertext: bytes) -> bytes: ...

    def sign(self, content: bytes, nonce: bytes) -> bytes: ...

    def verify(self, content: bytes, nonce: bytes, signature: bytes) -> bool: ...


@dataclass(frozen=True)
class KeyMaterial:
    """
    Immutable key binding for one side of an exchange.

    Attributes:
        signing_key: Our own Ed25519 private key (sign + decrypt)
        counterparty_key: The counterparty's Ed25519 public key (verify + encrypt)
    """
    signing_key: SigningKey
    counterparty_key: VerifyKey

    @classmethod
    def from_base64(cls, private_key_b64: str, counterparty_key_b64: str) -> "KeyMaterial":
        """Build key material from Base64 encoded key strings."""
        try:
            signing_key = SigningKey(private_key_b64.strip().encode(), encoder=Base64Encoder)
            counterparty_key = VerifyKey(counterparty_key_b64.strip().encode(), encoder=Base64Encoder)
        except (CryptoError, ValueError, TypeError) as e:
            raise KeyMaterialError(f"Invalid key material: {e}") from e
        return cls(signing_key=signing_key, counterparty_key=counterparty_key)

    @classmethod
    def generate_pair(cls) -> Tuple["KeyMaterial", "KeyMaterial"]:
        """
        Generate two fresh keypairs and cross-wire them.

        Returns:
            (caller_material, counterparty_material)
        """
        caller = SigningKey.generate()
        counterparty = SigningKey.generate()
        return (
            cls(signing_key=caller, counterparty_key=counterparty.verify_key),
            cls(signing_key=counterparty, counterparty_key=caller.verify_key),
        )

    @property
    def verify_key(self) -> VerifyKey:
        return self.signing_key.verify_key


class NaclCipher:
    """
    Default Cipher built on PyNaCl.

    Ciphertexts are nonce (24 bytes) followed by the Box output, so a single
    byte string carries everything the counterparty needs to decrypt.
    """

    def __init__(self, key_material: KeyMaterial):
        self.key_material = key_material
        self._box = Box(
            key_material.signing_key.to_curve25519_private_key(),
            key_material.counterparty_key.to_curve25519_public_key(),
        )

    def encrypt(self, plaintext: bytes) -> bytes:
        return bytes(self._box.encrypt(plaintext))

    def decrypt(self, ciphertext: bytes) -> bytes:
        try:
            return self._box.decrypt(ciphertext)
        except (CryptoError, ValueError, TypeError) as e:
            raise DecryptionError(
                "Decryption failed. Possible causes: "
                "wrong keys, corrupted data, or tampered ciphertext."
            ) from e

    def sign(self, content: bytes, nonce: bytes) -> bytes:
        signed = self.key_material.signing_key.sign(build_tbs(content, nonce))
        return signed.signature

    def verify(self, content: bytes, nonce: bytes, signature: bytes) -> bool:
        try:
            self.key_material.counterparty_key.verify(build_tbs(content, nonce), signature)
            return True
        except (BadSignatureError, CryptoError, ValueError, TypeError):
            return False


def build_tbs(content: bytes, nonce: bytes) -> bytes:
    """
    Build the canonical To-Be-Signed buffer.

    Format: "{sha256(content) hex}|{nonce}"

    The digest prefix has a fixed length, so no (content, nonce) pair can be
    re-split into a different pair with the same buffer.
    """
    digest = hashlib.sha256(content).hexdigest().encode('ascii')
    return digest + b"|" + nonce


def fingerprint(public_key_b64: str) -> str:
    """Calculate the SHA256 fingerprint of a Base64 public key."""
    key_bytes = base64.b64decode(public_key_b64)
    digest = hashlib.sha256(key_bytes).hexdigest()
    # Colon-separated pairs for readability
    return ':'.join(digest[i:i+2] for i in range(0, 16, 2))


class KeyManager:
    """
    Manages the key files of a client.

    Key files:
    - client.private: Ed25519 signing key seed (PROTECT THIS!)
    - client.public: Ed25519 verify key (share with the counterparty)
    - counterparty.public: The counterparty's Ed25519 verify key
    """

    def __init__(self, security_dir: str = "data/security"):
        self.security_dir = Path(security_dir)
        self.security_dir.mkdir(parents=True, exist_ok=True)

        self.private_key_path = self.security_dir / "client.private"
        self.public_key_path = self.security_dir / "client.public"
        self.counterparty_key_path = self.security_dir / "counterparty.public"

        # Cached keys (loaded lazily)
        self._signing_key: Optional[SigningKey] = None
        self._counterparty_key: Optional[VerifyKey] = None

    def generate_keys(self, client_id: str) -> Dict[str, str]:
        """
        Generate a new keypair for this client.
        WARNING: This will overwrite existing keys!

        Returns dict with public key info for sharing.
        """
        signing_key = SigningKey.generate()
        verify_key_b64 = signing_key.verify_key.encode(encoder=Base64Encoder).decode()

        self._write_key_file(
            self.private_key_path,
            signing_key.encode(encoder=Base64Encoder).decode()
        )
        self.public_key_path.write_text(verify_key_b64)

        self._signing_key = signing_key
        logger.info(f"Generated keypair for {client_id} at {self.security_dir}")

        return {
            "client_id": client_id,
            "public_key": verify_key_b64,
            "fingerprint": fingerprint(verify_key_b64),
            "generated_at": datetime.now().isoformat(),
        }

    def _write_key_file(self, path: Path, content: str) -> None:
        """Write a key file with restrictive permissions (owner read/write only)."""
        path.write_text(content)
        os.chmod(path, 0o600)

    def import_counterparty_key(self, public_key_b64: str) -> str:
        """
        Store the counterparty's public key.

        Returns:
            The key fingerprint, for out-of-band confirmation
        """
        try:
            key = VerifyKey(public_key_b64.strip().encode(), encoder=Base64Encoder)
        except (CryptoError, ValueError, TypeError) as e:
            raise KeyMaterialError(f"Invalid counterparty public key: {e}") from e

        self.counterparty_key_path.write_text(public_key_b64.strip())
        self._counterparty_key = key
        return fingerprint(public_key_b64.strip())

    def load_signing_key(self) -> SigningKey:
        """Load the client's Ed25519 signing key."""
        if self._signing_key is None:
            key_b64 = self._read_key_file(self.private_key_path)
            try:
                self._signing_key = SigningKey(key_b64.encode(), encoder=Base64Encoder)
            except (CryptoError, ValueError, TypeError) as e:
                raise KeyMaterialError(f"Invalid signing key at {self.private_key_path}: {e}") from e
        return self._signing_key

    def load_counterparty_key(self) -> VerifyKey:
        """Load the counterparty's Ed25519 verify key."""
        if self._counterparty_key is None:
            key_b64 = self._read_key_file(self.counterparty_key_path)
            try:
                self._counterparty_key = VerifyKey(key_b64.encode(), encoder=Base64Encoder)
            except (CryptoError, ValueError, TypeError) as e:
                raise KeyMaterialError(
                    f"Invalid counterparty key at {self.counterparty_key_path}: {e}"
                ) from e
        return self._counterparty_key

    def _read_key_file(self, path: Path) -> str:
        if not path.exists():
            raise KeyMaterialError(
                f"Key file not found at {path}. "
                "Run generate_keys() or import_counterparty_key() first."
            )
        return path.read_text().strip()

    def get_client_info(self) -> Dict[str, str]:
        """Get this client's public key info for sharing."""
        verify_b64 = self.load_signing_key().verify_key.encode(encoder=Base64Encoder).decode()
        return {
            "public_key": verify_b64,
            "fingerprint": fingerprint(verify_b64),
        }

    def load_key_material(self) -> KeyMaterial:
        """Load both keys as an immutable KeyMaterial binding."""
        return KeyMaterial(
            signing_key=self.load_signing_key(),
            counterparty_key=self.load_counterparty_key(),
        )
