"""
sealcall - Exception Hierarchy

Every failure of an exchange surfaces as one of these, so callers can tell
"the request never reached or never authenticated" apart from "it reached
but the counterparty rejected it".

    SealcallError
    ├── TransportError      non-success HTTP status or transport failure
    ├── ProtocolError       counterparty response does not follow the envelope
    ├── VerificationError   response signature check failed
    │   └── ReplayError     response nonce already seen
    ├── EncodingError       command could not be serialized
    ├── DecodingError       ciphertext/JSON could not be turned into a value
    │   └── DecryptionError
    ├── ApplicationError    verified response carries a business failure code
    └── KeyMaterialError    key files missing or malformed
"""

from typing import Optional, Union


class SealcallError(Exception):
    """Base exception for all sealcall failures."""
    pass


class TransportError(SealcallError):
    """Raised when the HTTP exchange itself failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(SealcallError):
    """Raised when a response is missing required envelope parts."""
    pass


class VerificationError(SealcallError):
    """Raised when signature verification fails."""
    pass


class ReplayError(VerificationError):
    """Raised when a response nonce has already been processed."""
    pass


class EncodingError(SealcallError):
    """Raised when a command cannot be serialized or encrypted."""
    pass


class DecodingError(SealcallError):
    """Raised when a ciphertext cannot be decoded into the target type."""
    pass


class DecryptionError(DecodingError):
    """Raised when decryption fails."""
    pass


class ApplicationError(SealcallError):
    """Raised when the counterparty reports a business-level failure."""

    def __init__(self, code: Union[int, str], message: str = ""):
        super().__init__(f"Application error, code: {code}, reason: {message}")
        self.code = code
        self.message = message


class KeyMaterialError(SealcallError):
    """Raised when key files are missing or cannot be parsed."""
    pass
