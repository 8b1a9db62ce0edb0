"""
sealcall - Sealed remote calls over HTTP
Every request is encrypted and signed; every response is verified before
its payload is trusted.

Security Model: Authenticated Encryption + Digital Signatures + Nonce Binding
Library: PyNaCl (libsodium binding)
"""

from .codec import EnvelopeCodec, JsonCodec, PydanticJsonCodec
from .config import Settings, build_client, configure_logging
from .crypto_engine import Cipher, KeyManager, KeyMaterial, NaclCipher
from .exceptions import (
    ApplicationError,
    DecodingError,
    DecryptionError,
    EncodingError,
    KeyMaterialError,
    ProtocolError,
    ReplayError,
    SealcallError,
    TransportError,
    VerificationError,
)
from .exchange import SecureHttpClient
from .models import ResponseEnvelope, RequestEnvelope, SignatureMaterial
from .nonce import new_nonce
from .replay import MemoryReplayProtector, ReplayProtector
from .responder import Responder, SealedResponse

__all__ = [
    'ApplicationError',
    'Cipher',
    'DecodingError',
    'DecryptionError',
    'EncodingError',
    'EnvelopeCodec',
    'JsonCodec',
    'KeyManager',
    'KeyMaterial',
    'KeyMaterialError',
    'MemoryReplayProtector',
    'NaclCipher',
    'ProtocolError',
    'PydanticJsonCodec',
    'ReplayError',
    'ReplayProtector',
    'RequestEnvelope',
    'Responder',
    'ResponseEnvelope',
    'SealcallError',
    'SealedResponse',
    'SecureHttpClient',
    'Settings',
    'SignatureMaterial',
    'TransportError',
    'VerificationError',
    'build_client',
    'configure_logging',
    'new_nonce',
]
