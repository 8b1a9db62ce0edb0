"""
sealcall - Exchange Engine
Runs one sealed GET or POST exchange against a counterparty.

Request (Encrypt-then-Sign):
1. Encrypt JSON(command) with the counterparty's public key
2. Build the signed content (query string for GET, JSON body for POST)
3. Sign (content, nonce) with our private key
4. Dispatch with X-Signature / X-Nonce / X-Access-Token headers

Response (Verify-then-Decrypt):
1. HTTP status must be 200 or 204
2. X-Signature and X-Nonce must be present and non-blank
3. Signature over (body, nonce) must verify with the counterparty's key
4. Nonce must not have been seen before (when a replay guard is set)
5. Body must parse as {code, message, ct}; a failure code raises
6. ct is decrypted and deserialized into the requested type

The body is never parsed before its signature has verified.
"""

import logging
from typing import Any, Optional, Type, TypeVar, Union

import httpx
from pydantic import ValidationError

from .codec import ENCODING, EnvelopeCodec, JsonCodec, b64decode_any, b64url_encode
from .crypto_engine import Cipher, KeyMaterial, NaclCipher
from .exceptions import (
    ApplicationError,
    ProtocolError,
    ReplayError,
    TransportError,
    VerificationError,
)
from .models import (
    ACCESS_TOKEN_HEADER,
    DEFAULT_SUCCESS_CODE,
    NONCE_HEADER,
    SIGNATURE_HEADER,
    SUCCESS_STATUSES,
    RequestEnvelope,
    ResponseEnvelope,
    SignatureMaterial,
)
from .nonce import NonceSource, new_nonce
from .replay import ReplayGuard

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NO_COMMAND = object()


class SecureHttpClient:
    """
    Client for endpoints that speak the sealed envelope.

    Every request carrying a command is encrypted and signed; every response
    is verified before anything in it is trusted. Endpoints that do not
    answer with a signed envelope fail closed.
    """

    def __init__(
        self,
        key_material: Optional[KeyMaterial] = None,
        *,
        cipher: Optional[Cipher] = None,
        json_codec: Optional[JsonCodec] = None,
        nonce_source: NonceSource = new_nonce,
        replay_guard: Optional[ReplayGuard] = None,
        http_client: Optional[httpx.Client] = None,
        base_url: str = "",
        timeout: float = 30.0,
        success_code: Union[int, str] = DEFAULT_SUCCESS_CODE,
    ):
        if cipher is None:
            if key_material is None:
                raise ValueError("Either key_material or cipher is required")
            cipher = NaclCipher(key_material)

        self.cipher = cipher
        self.codec = EnvelopeCodec(cipher, json_codec)
        self.nonce_source = nonce_source
        self.replay_guard = replay_guard
        self.success_code = success_code

        self._owns_client = http_client is None
        self.http_client = http_client or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self.http_client.close()

    def __enter__(self) -> "SecureHttpClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # =========================================================================
    # GET
    # =========================================================================

    def get(
        self,
        url: str,
        return_type: Type[T],
        command: Any = _NO_COMMAND,
        access_token: str = "",
    ) -> T:
        """
        GET a typed result.

        Without a command the request goes out bare (no ciphertext, no
        signature) but the response still passes the full verification
        pipeline.

        Args:
            url: Endpoint URL (absolute, or relative to base_url)
            return_type: Type to deserialize the decrypted result into
            command: Request payload, sent encrypted as the ct query parameter
            access_token: Sent as X-Access-Token when non-blank

        Returns:
            The decrypted result
        """
        if command is _NO_COMMAND:
            logger.info(f"GET {url} (bare)")
            response = self._dispatch("GET", url)
        else:
            ciphertext = self.codec.encode(command)
            query_string = RequestEnvelope(ct=ciphertext).to_query_string()

            # The signature covers the full query that goes on the wire
            path, _, existing_query = url.partition("?")
            if existing_query:
                query_string = f"{existing_query}&{query_string}"
            material = self._sign(query_string)

            headers = self._signature_headers(material)
            if access_token and access_token.strip():
                headers[ACCESS_TOKEN_HEADER] = access_token

            logger.info(f"GET {url} (sealed, nonce {material.nonce})")
            response = self._dispatch("GET", f"{path}?{query_string}", headers=headers)

        envelope = self._analyze_body(response, url)
        if not envelope.ct:
            raise ProtocolError(f"Response from {url} carries no ciphertext")
        return self.codec.decode(envelope.ct, return_type)

    # =========================================================================
    # POST
    # =========================================================================

    def post(self, url: str, command: Any, access_token: str = "") -> None:
        """
        POST a command and wait for a verified confirmation.

        X-Access-Token is always attached, even when blank.

        Raises:
            ApplicationError: The counterparty rejected the command
        """
        ciphertext = self.codec.encode(command)
        body = RequestEnvelope(ct=ciphertext).to_json()
        material = self._sign(body)

        headers = self._signature_headers(material)
        headers["Content-Type"] = "application/json"
        headers[ACCESS_TOKEN_HEADER] = access_token or ""

        logger.info(f"POST {url} (sealed, nonce {material.nonce})")
        response = self._dispatch("POST", url, headers=headers, content=body.encode(ENCODING))

        self._analyze_body(response, url)

    # =========================================================================
    # Internals
    # =========================================================================

    def _sign(self, content: str) -> SignatureMaterial:
        token = self.nonce_source()
        signature = self.cipher.sign(content.encode(ENCODING), token.encode(ENCODING))
        return SignatureMaterial(nonce=token, signature=signature)

    @staticmethod
    def _signature_headers(material: SignatureMaterial) -> dict:
        # X-Nonce goes out on GET as well; the counterparty cannot verify without it
        return {
            SIGNATURE_HEADER: b64url_encode(material.signature),
            NONCE_HEADER: material.nonce,
        }

    def _dispatch(
        self,
        method: str,
        url: str,
        headers: Optional[dict] = None,
        content: Optional[bytes] = None,
    ) -> httpx.Response:
        try:
            return self.http_client.request(method, url, headers=headers, content=content)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise TransportError(f"Request to {url} failed: {e}") from e

    def _analyze_body(self, response: httpx.Response, url: str) -> ResponseEnvelope:
        """Run the response pipeline and return the verified envelope."""
        if response.status_code not in SUCCESS_STATUSES:
            logger.warning(f"{url} answered HTTP {response.status_code}")
            raise TransportError(
                f"Request error, status code: {response.status_code}",
                status_code=response.status_code,
            )

        signature_b64 = self._require_header(response, SIGNATURE_HEADER)
        response_nonce = self._require_header(response, NONCE_HEADER)

        body = response.content
        if not self._verify_signature(body, response_nonce, signature_b64):
            logger.error(f"SECURITY ALERT: signature verification failed for response from {url}")
            raise VerificationError("signature verification failed")

        source = str(response.request.url)
        if self.replay_guard is not None and not self.replay_guard.check_and_mark(response_nonce, source):
            logger.error(f"SECURITY ALERT: replayed response nonce {response_nonce} from {url}")
            raise ReplayError(f"Response nonce '{response_nonce}' has already been processed")

        if not body.strip() and response.status_code == 204:
            return ResponseEnvelope(code=self.success_code)

        try:
            envelope = ResponseEnvelope.model_validate_json(body)
        except ValidationError as e:
            raise ProtocolError(f"Malformed response envelope from {url}: {e}") from e

        if envelope.failed(self.success_code):
            logger.warning(f"{url} rejected the call: code={envelope.code} message={envelope.message}")
            raise ApplicationError(envelope.code, envelope.message)

        return envelope

    @staticmethod
    def _require_header(response: httpx.Response, name: str) -> str:
        value = response.headers.get(name)
        if value is None:
            raise ProtocolError(f"Response has no {name} header")
        if not value.strip():
            raise ProtocolError(f"Response {name} header is blank")
        return value.strip()

    def _verify_signature(self, content: bytes, response_nonce: str, signature_b64: str) -> bool:
        try:
            signature = b64decode_any(signature_b64)
        except ValueError:
            return False
        return self.cipher.verify(content, response_nonce.encode(ENCODING), signature)
