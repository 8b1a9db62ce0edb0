"""
sealcall - Envelope Codec
Bidirectional transform between typed values and envelope ciphertexts.

    encode: value -> JSON -> UTF-8 -> encrypt -> base64url (unpadded)
    decode: base64 (either alphabet) -> decrypt -> UTF-8 -> JSON -> value

Alphabets:
- Request ct and request signatures are base64url without padding, so they
  travel in query strings untouched.
- Response ct and response signatures are standard base64.
- Every decoder accepts both alphabets, with or without padding.
"""

import base64
import binascii
import logging
from functools import lru_cache
from typing import Any, Optional, Protocol, Type, TypeVar

from pydantic import TypeAdapter, ValidationError
from pydantic.errors import PydanticSchemaGenerationError
from pydantic_core import PydanticSerializationError

from .crypto_engine import Cipher
from .exceptions import DecodingError, EncodingError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENCODING = "utf-8"


# =============================================================================
# Base64 helpers
# =============================================================================

def b64url_encode(data: bytes) -> str:
    """URL-safe alphabet, padding stripped."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64_encode(data: bytes) -> str:
    """Standard alphabet, padded."""
    return base64.b64encode(data).decode("ascii")


def b64decode_any(text: str) -> bytes:
    """
    Decode standard or URL-safe base64, padded or not.

    Raises:
        binascii.Error: On characters outside both alphabets or bad length
    """
    cleaned = "".join(text.split()).replace("-", "+").replace("_", "/")
    cleaned += "=" * (-len(cleaned) % 4)
    return base64.b64decode(cleaned, validate=True)


# =============================================================================
# JSON codec
# =============================================================================

class JsonCodec(Protocol):
    """Capability interface for JSON marshalling."""

    def to_json(self, value: Any) -> str: ...

    def from_json(self, text: str, target_type: Type[T]) -> T: ...


@lru_cache(maxsize=256)
def _adapter(target_type: Any) -> TypeAdapter:
    return TypeAdapter(target_type)


class PydanticJsonCodec:
    """
    JsonCodec backed by pydantic TypeAdapters.

    Handles pydantic models, dataclasses, TypedDicts, dicts, lists and
    scalars. Output is compact JSON.
    """

    def to_json(self, value: Any) -> str:
        return _adapter(type(value)).dump_json(value).decode(ENCODING)

    def from_json(self, text: str, target_type: Type[T]) -> T:
        return _adapter(target_type).validate_json(text)


# =============================================================================
# Envelope codec
# =============================================================================

class EnvelopeCodec:
    """Turns commands into ciphertexts and ciphertexts back into values."""

    def __init__(self, cipher: Cipher, json_codec: Optional[JsonCodec] = None):
        self.cipher = cipher
        self.json_codec = json_codec or PydanticJsonCodec()

    def encode(self, command: Any, urlsafe: bool = True) -> str:
        """
        Serialize and encrypt a command.

        Args:
            command: Any value the JSON codec can serialize
            urlsafe: base64url without padding (requests) or standard base64 (responses)

        Returns:
            Encoded ciphertext

        Raises:
            EncodingError: Serialization or encryption failed
        """
        try:
            plaintext = self.json_codec.to_json(command)
        except (PydanticSerializationError, PydanticSchemaGenerationError, TypeError, ValueError) as e:
            logger.error(f"Failed to serialize {type(command).__name__}: {e}")
            raise EncodingError(f"Failed to serialize command: {e}") from e

        try:
            ciphertext = self.cipher.encrypt(plaintext.encode(ENCODING))
        except Exception as e:
            raise EncodingError(f"Failed to encrypt command: {e}") from e

        return b64url_encode(ciphertext) if urlsafe else b64_encode(ciphertext)

    def decode(self, ct: str, target_type: Type[T]) -> T:
        """
        Decrypt and deserialize a ciphertext.

        Raises:
            DecryptionError: Ciphertext does not decrypt under our keys
            DecodingError: Bad base64, bad UTF-8, malformed JSON or schema mismatch
        """
        try:
            ciphertext = b64decode_any(ct)
        except (binascii.Error, ValueError, TypeError, AttributeError) as e:
            raise DecodingError(f"Invalid ciphertext encoding: {e}") from e

        # DecryptionError propagates as is
        plaintext = self.cipher.decrypt(ciphertext)

        try:
            text = plaintext.decode(ENCODING)
        except UnicodeDecodeError as e:
            raise DecodingError(f"Decrypted payload is not valid UTF-8: {e}") from e

        try:
            return self.json_codec.from_json(text, target_type)
        except (ValidationError, PydanticSchemaGenerationError, ValueError, TypeError) as e:
            logger.error(f"Failed to parse decrypted payload as {target_type}: {e}")
            raise DecodingError(f"Failed to parse decrypted payload: {e}") from e
