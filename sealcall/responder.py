"""
sealcall - Counterparty Responder
The mirror of SecureHttpClient for the serving side of an exchange.

- open_get / open_post verify the caller's signature and decrypt its command
- seal_response encrypts a result, builds the {code, message, ct} body and
  signs it under a fresh nonce

Framework agnostic: callers pass raw strings in and get a body plus headers
back, so it plugs into FastAPI routes and httpx mock handlers alike.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Type, TypeVar, Union
from urllib.parse import parse_qs

from pydantic import ValidationError

from .codec import ENCODING, EnvelopeCodec, JsonCodec, b64_encode, b64decode_any
from .crypto_engine import Cipher, KeyMaterial, NaclCipher
from .exceptions import ProtocolError, ReplayError, VerificationError
from .models import (
    DEFAULT_SUCCESS_CODE,
    NONCE_HEADER,
    SIGNATURE_HEADER,
    RequestEnvelope,
    ResponseEnvelope,
)
from .nonce import NonceSource, new_nonce
from .replay import ReplayGuard

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SealedResponse:
    """A signed response ready to be written to the wire."""
    body: str
    headers: Dict[str, str] = field(default_factory=dict)
    status_code: int = 200


class Responder:
    """Serving side of the sealed envelope protocol."""

    def __init__(
        self,
        key_material: Optional[KeyMaterial] = None,
        *,
        cipher: Optional[Cipher] = None,
        json_codec: Optional[JsonCodec] = None,
        nonce_source: NonceSource = new_nonce,
        replay_guard: Optional[ReplayGuard] = None,
    ):
        if cipher is None:
            if key_material is None:
                raise ValueError("Either key_material or cipher is required")
            cipher = NaclCipher(key_material)

        self.cipher = cipher
        self.codec = EnvelopeCodec(cipher, json_codec)
        self.nonce_source = nonce_source
        self.replay_guard = replay_guard

    # =========================================================================
    # Inbound
    # =========================================================================

    def open_request(
        self,
        content: str,
        request_nonce: str,
        signature_b64: str,
        ct: str,
        target_type: Type[T] = Any,
    ) -> T:
        """
        Verify a caller's signature over the signed content, then decode ct.

        Args:
            content: Exactly what the caller signed (query string or JSON body)
            request_nonce: Value of the X-Nonce header
            signature_b64: Value of the X-Signature header
            ct: Ciphertext carried in content
            target_type: Type to deserialize the command into

        Raises:
            VerificationError: Missing or invalid signature
            ReplayError: Nonce already used
            DecodingError: ct does not decrypt or parse
        """
        if not request_nonce or not signature_b64:
            raise VerificationError("Request is missing X-Signature or X-Nonce")

        try:
            signature = b64decode_any(signature_b64)
        except ValueError as e:
            raise VerificationError(f"Invalid signature encoding: {e}") from e

        if not self.cipher.verify(content.encode(ENCODING), request_nonce.encode(ENCODING), signature):
            logger.warning("Rejected request: signature verification failed")
            raise VerificationError("signature verification failed")

        if self.replay_guard is not None and not self.replay_guard.check_and_mark(request_nonce, "request"):
            logger.warning(f"Rejected request: replayed nonce {request_nonce}")
            raise ReplayError(f"Request nonce '{request_nonce}' has already been processed")

        return self.codec.decode(ct, target_type)

    def open_get(
        self,
        query_string: str,
        request_nonce: str,
        signature_b64: str,
        target_type: Type[T] = Any,
    ) -> T:
        """Open a sealed GET from its raw query string."""
        values = parse_qs(query_string, keep_blank_values=True).get("ct")
        if not values:
            raise ProtocolError("Query string carries no ct parameter")
        return self.open_request(query_string, request_nonce, signature_b64, values[0], target_type)

    def open_post(
        self,
        body: Union[str, bytes],
        request_nonce: str,
        signature_b64: str,
        target_type: Type[T] = Any,
    ) -> T:
        """Open a sealed POST from its raw JSON body."""
        text = body.decode(ENCODING) if isinstance(body, bytes) else body
        try:
            envelope = RequestEnvelope.model_validate_json(text)
        except ValidationError as e:
            raise ProtocolError(f"Malformed request envelope: {e}") from e
        return self.open_request(text, request_nonce, signature_b64, envelope.ct, target_type)

    # =========================================================================
    # Outbound
    # =========================================================================

    def seal_response(
        self,
        result: Any = None,
        code: Union[int, str] = DEFAULT_SUCCESS_CODE,
        message: str = "success",
        status_code: int = 200,
    ) -> SealedResponse:
        """
        Build a signed response envelope.

        Args:
            result: Value to encrypt into ct; None leaves ct out (failures, confirmations)
            code: Business status code
            message: Human-readable status message
        """
        ct = None if result is None else self.codec.encode(result, urlsafe=False)
        body = ResponseEnvelope(code=code, message=message, ct=ct).to_json()
        return SealedResponse(body=body, headers=self.sign_body(body), status_code=status_code)

    def sign_body(self, body: str) -> Dict[str, str]:
        """Sign an arbitrary body under a fresh nonce and return the headers."""
        token = self.nonce_source()
        signature = self.cipher.sign(body.encode(ENCODING), token.encode(ENCODING))
        return {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: b64_encode(signature),
            NONCE_HEADER: token,
        }
