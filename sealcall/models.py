"""
sealcall - Pydantic Models
Defines the wire schema of request and response envelopes.
"""

import json
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Header names shared by both directions
SIGNATURE_HEADER = "X-Signature"
NONCE_HEADER = "X-Nonce"
ACCESS_TOKEN_HEADER = "X-Access-Token"

SUCCESS_STATUSES = (200, 204)
DEFAULT_SUCCESS_CODE = 0


class RequestEnvelope(BaseModel):
    """Body of a POST request; also the query of a GET request."""
    model_config = ConfigDict(frozen=True)

    ct: str = Field(..., description="Base64URL (unpadded) ciphertext of JSON(command)")

    def to_json(self) -> str:
        """Compact JSON; this exact string is what gets signed."""
        return json.dumps(self.model_dump(), separators=(',', ':'))

    def to_query_string(self) -> str:
        return f"ct={self.ct}"


class ResponseEnvelope(BaseModel):
    """
    Verified response body.

    code/message report protocol-level success independent of HTTP status.
    ct is absent on failures and on confirmations that carry no value.
    """
    code: Union[int, str] = Field(..., description="Business status code")
    message: str = Field(default="", description="Human-readable status message")
    ct: Optional[str] = Field(default=None, description="Base64 ciphertext of JSON(result)")

    @field_validator('message', mode='before')
    @classmethod
    def none_message_to_empty(cls, v):
        return "" if v is None else v

    def failed(self, success_code: Union[int, str] = DEFAULT_SUCCESS_CODE) -> bool:
        return str(self.code) != str(success_code)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(exclude_none=True), separators=(',', ':'))


class SignatureMaterial(BaseModel):
    """A signature together with the nonce it was computed over."""
    model_config = ConfigDict(frozen=True)

    nonce: str = Field(..., description="Single-use token bound into the signature")
    signature: bytes = Field(..., description="Raw Ed25519 signature")
